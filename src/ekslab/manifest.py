"""
The resource manifest: identifiers assigned by AWS during provisioning and
needed again by teardown.

On disk it is a shell-sourceable file of `export KEY="value"` lines so that it
stays usable by hand (`source cluster-resources.env`). Version 0 is the
unversioned layout with exactly two subnets stored as SUBNET1_ID / SUBNET2_ID.
"""

from __future__ import annotations

import dataclasses
import re
import typing

import ekslab.errors

if typing.TYPE_CHECKING:
    import pathlib

MANIFEST_VERSION = 1
SUPPORTED_VERSIONS = frozenset([0, MANIFEST_VERSION])

LINE_REGEX = re.compile(r"^(?:export\s+)?([A-Z][A-Z0-9_]*)=(.*)$")
ACCOUNT_ID_REGEX = re.compile("^[0-9]{12}$")

HEADER = (
    "# EKS Cluster Resource Information",
    "# Source this file before running cleanup: source cluster-resources.env",
)

# manifest key -> (field name, required identifier prefix)
KEYS: dict[str, tuple[str, str]] = {
    "CLUSTER_NAME": ("cluster_name", ""),
    "REGION": ("region", ""),
    "NODE_GROUP_NAME": ("node_group_name", ""),
    "DOMAIN_NAME": ("domain_name", ""),
    "SUBDOMAIN": ("subdomain", ""),
    "VPC_ID": ("vpc_id", "vpc-"),
    "SECURITY_GROUP_ID": ("security_group_id", "sg-"),
    "IGW_ID": ("internet_gateway_id", "igw-"),
    "ROUTE_TABLE_ID": ("route_table_id", "rtb-"),
    "ACCOUNT_ID": ("account_id", ""),
    "OIDC_ISSUER": ("oidc_issuer", "https://"),
}

REQUIRED_KEYS = (
    "CLUSTER_NAME",
    "REGION",
    "NODE_GROUP_NAME",
    "VPC_ID",
    "SECURITY_GROUP_ID",
    "IGW_ID",
    "ROUTE_TABLE_ID",
    "ACCOUNT_ID",
)


@dataclasses.dataclass(frozen=True)
class ResourceManifest:
    cluster_name: str
    region: str
    node_group_name: str
    domain_name: str = ""
    subdomain: str = ""
    vpc_id: str = ""
    subnet_ids: tuple[str, ...] = ()
    security_group_id: str = ""
    internet_gateway_id: str = ""
    route_table_id: str = ""
    account_id: str = ""
    oidc_issuer: str = ""
    version: int = MANIFEST_VERSION

    def replace(self, **changes: typing.Any) -> ResourceManifest:
        return dataclasses.replace(self, **changes)

    def validate(self, *, partial: bool = False) -> ResourceManifest:
        """
        Check the manifest against the schema and return it.

        A `partial` manifest is a provisioning checkpoint: only the cluster
        identity is required, but every identifier that is present must still
        be well formed.
        """
        problems: list[str] = []

        if self.version not in SUPPORTED_VERSIONS:
            problems.append(f"unsupported manifest version {self.version!r}")

        values = self.to_dict()
        required = ("CLUSTER_NAME", "REGION", "NODE_GROUP_NAME") if partial else REQUIRED_KEYS
        for key in required:
            if values.get(key, "") == "":
                problems.append(f"missing {key}")

        if not partial and len(self.subnet_ids) == 0:
            problems.append("missing SUBNET_IDS")

        for key, (_, prefix) in KEYS.items():
            value = values.get(key, "")
            if value != "" and prefix != "" and not value.startswith(prefix):
                problems.append(f"{key}={value!r} does not start with {prefix!r}")

        for subnet_id in self.subnet_ids:
            if not subnet_id.startswith("subnet-"):
                problems.append(f"subnet id {subnet_id!r} does not start with 'subnet-'")

        if self.account_id != "" and ACCOUNT_ID_REGEX.match(self.account_id) is None:
            problems.append(f"ACCOUNT_ID={self.account_id!r} is not a 12 digit account id")

        if problems:
            msg = "invalid resource manifest: " + "; ".join(problems)
            raise ekslab.errors.ManifestError(msg)

        return self

    def to_dict(self) -> dict[str, str]:
        ret = {"MANIFEST_VERSION": str(self.version)}
        for key, (field_name, _) in KEYS.items():
            ret[key] = getattr(self, field_name)

        ret["SUBNET_IDS"] = ",".join(self.subnet_ids)

        return ret

    @classmethod
    def from_dict(cls, values: typing.Mapping[str, str]) -> ResourceManifest:
        values = dict(values)

        if "MANIFEST_VERSION" in values:
            try:
                version = int(values.pop("MANIFEST_VERSION"))
            except ValueError as e:
                msg = f"invalid MANIFEST_VERSION: {e}"
                raise ekslab.errors.ManifestError(msg) from e
        else:
            version = 0

        if "SUBNET_IDS" in values:
            subnet_ids = tuple(s.strip() for s in values.pop("SUBNET_IDS").split(",") if s.strip() != "")
        else:
            subnet_ids = tuple(
                values.pop(key) for key in ("SUBNET1_ID", "SUBNET2_ID") if values.get(key, "").strip() != ""
            )

        kwargs: dict[str, typing.Any] = {
            field_name: values.get(key, "") for key, (field_name, _) in KEYS.items()
        }

        return cls(subnet_ids=subnet_ids, version=version, **kwargs)

    def dumps(self) -> str:
        lines = [*HEADER, ""]
        lines.extend(f'export {key}="{_quote(value)}"' for key, value in self.to_dict().items())

        return "\n".join(lines) + "\n"

    @classmethod
    def loads(cls, text: str) -> ResourceManifest:
        return cls.from_dict(parse_env(text))

    def write(self, path: pathlib.Path, *, partial: bool = False) -> pathlib.Path:
        self.validate(partial=partial)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(self.dumps())
        tmp.replace(path)

        return path


def parse_env(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if line == "" or line.startswith("#"):
            continue

        match = LINE_REGEX.match(line)
        if match is None:
            msg = f"line {lineno}: expected KEY=\"value\", got {raw_line!r}"
            raise ekslab.errors.ManifestError(msg)

        key, value = match.groups()
        values[key] = _unquote(value.strip())

    return values


def load(path: pathlib.Path, *, partial: bool = False) -> ResourceManifest:
    if not path.exists():
        msg = f"{str(path)!r} not found; it is written by `ekslab provision`"
        raise ekslab.errors.ManifestError(msg)

    return ResourceManifest.loads(path.read_text()).validate(partial=partial)


def checkpoint_path(path: pathlib.Path) -> pathlib.Path:
    return path.with_name(path.name + ".partial")


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]

    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r"\\([\\\"$`])", r"\1", value[1:-1])

    return value
