from __future__ import annotations

import copy
import dataclasses
import ipaddress
import re
import typing

import deepmerge  # type: ignore
import yaml

import ekslab
import ekslab.errors
import ekslab.waiting

if typing.TYPE_CHECKING:
    import pathlib

API_VERSION = "ekslab/v1"

ACCOUNT_ID_REGEX = re.compile("^[0-9]{12}$")


@dataclasses.dataclass(frozen=True)
class NodeGroupScaling:
    min_size: int = 1
    max_size: int = 3
    desired_size: int = 2

    def __post_init__(self) -> None:
        if not 0 <= self.min_size <= self.desired_size <= self.max_size:
            msg = (
                f"node group scaling must satisfy 0 <= min <= desired <= max, got "
                f"min={self.min_size} desired={self.desired_size} max={self.max_size}"
            )
            raise ekslab.errors.ConfigError(msg)


@dataclasses.dataclass(frozen=True)
class WaitConfig:
    timeout: float = 1800.0
    initial_delay: float = 5.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        for name in ("timeout", "initial_delay", "max_delay"):
            value = getattr(self, name)
            if value <= 0:
                msg = f"wait.{name.replace('_', '-')} must be > 0, got {value}"
                raise ekslab.errors.ConfigError(msg)

    def backoff(self, timeout: float | None = None) -> ekslab.waiting.Backoff:
        return ekslab.waiting.Backoff(
            timeout=self.timeout if timeout is None else timeout,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
        )

    def waiter_config(self, delay: int = 30) -> dict[str, int]:
        """`WaiterConfig` for boto3 waiters, bounded by the configured timeout."""
        return {"Delay": delay, "MaxAttempts": max(1, int(self.timeout // delay))}


@dataclasses.dataclass(frozen=True)
class ClusterConfig:
    cluster_name: str = "dns-test-cluster"
    region: str = "us-west-1"
    node_group_name: str = "dns-test-nodes"
    domain_name: str = "example.com"
    subdomain: str = "eks-test"
    kubernetes_version: str = "1.28"
    vpc_cidr: str = "10.0.0.0/16"
    subnet_cidrs: tuple[str, ...] = ("10.0.1.0/24", "10.0.2.0/24")
    ingress_ports: tuple[int, ...] = (80, 443)
    scaling: NodeGroupScaling = dataclasses.field(default_factory=NodeGroupScaling)
    disk_size: int = 20
    instance_types: tuple[str, ...] = ("t3.medium",)
    ami_type: str = "AL2_x86_64"
    load_balancer_controller_policy_version: str = "v2.6.3"
    external_dns_image: str = "registry.k8s.io/external-dns/external-dns:v0.13.6"
    demo_app_image: str = "nginx:latest"
    wait: WaitConfig = dataclasses.field(default_factory=WaitConfig)

    def __post_init__(self) -> None:
        if len(self.subnet_cidrs) < 2:
            msg = "EKS requires subnets in at least two availability zones"
            raise ekslab.errors.ConfigError(msg)

        try:
            vpc = ipaddress.ip_network(self.vpc_cidr)
            subnets = [ipaddress.ip_network(cidr) for cidr in self.subnet_cidrs]
        except ValueError as e:
            raise ekslab.errors.ConfigError(str(e)) from e

        for cidr, subnet in zip(self.subnet_cidrs, subnets, strict=True):
            if not subnet.subnet_of(vpc):  # type: ignore[arg-type]
                msg = f"subnet {cidr!r} is not inside VPC {self.vpc_cidr!r}"
                raise ekslab.errors.ConfigError(msg)

        for port in self.ingress_ports:
            if not 0 < port < 65536:
                msg = f"invalid ingress port {port!r}"
                raise ekslab.errors.ConfigError(msg)

    @property
    def hostname(self) -> str:
        return f"{self.subdomain}.{self.domain_name}"

    @property
    def ingress_hostname(self) -> str:
        return f"ingress.{self.hostname}"

    @property
    def load_balancer_controller_policy_url(self) -> str:
        return (
            "https://raw.githubusercontent.com/kubernetes-sigs/aws-load-balancer-controller/"
            f"{self.load_balancer_controller_policy_version}/docs/install/iam_policy.json"
        )


@dataclasses.dataclass(frozen=True)
class CrossAccountConfig:
    trusting_account: str = "111122223333"
    trusted_account: str = "444455556666"
    role_name: str = "CrossAccountDeveloperRole"
    user_name: str = "DevUser"
    max_session_duration: int = 3600
    mfa_max_age: int = 3600
    permission_policy_arn: str = str(ekslab.ManagedPolicies.READ_ONLY_ACCESS)
    test_session_duration: int = 900

    def __post_init__(self) -> None:
        for field_name in ("trusting_account", "trusted_account"):
            value = getattr(self, field_name)
            if ACCOUNT_ID_REGEX.match(value) is None:
                msg = f"{field_name} must be a 12 digit AWS account id, got {value!r}"
                raise ekslab.errors.ConfigError(msg)

        for field_name in ("max_session_duration", "mfa_max_age", "test_session_duration"):
            if getattr(self, field_name) <= 0:
                msg = f"{field_name} must be positive"
                raise ekslab.errors.ConfigError(msg)


def _normalize_keys(spec: typing.Any) -> typing.Any:
    if isinstance(spec, dict):
        return {str(k).replace("-", "_"): _normalize_keys(v) for k, v in spec.items()}
    return spec


def _read_spec(path: pathlib.Path | None, kind: str) -> dict[str, typing.Any]:
    if path is None or not path.exists():
        return {}

    docs = [doc for doc in yaml.safe_load_all(path.read_text()) if doc]
    for doc in docs:
        if doc.get("kind") != kind:
            continue

        if doc.get("apiVersion") != API_VERSION:
            msg = f"mismatched config kind={doc.get('kind')!r} apiVersion={doc.get('apiVersion')!r} in {str(path)!r}"
            raise ekslab.errors.ConfigError(msg)

        return _normalize_keys(doc.get("spec") or {})

    return {}


def load_cluster_config(path: pathlib.Path | None = None) -> ClusterConfig:
    # defaults are plain dicts/tuples here; YAML lists replace tuples wholesale
    # while nested mappings (scaling, wait) merge key by key
    spec: dict[str, typing.Any] = dataclasses.asdict(ClusterConfig())
    deepmerge.always_merger.merge(spec, copy.deepcopy(_read_spec(path, ClusterConfig.__name__)))

    try:
        spec["scaling"] = NodeGroupScaling(**spec["scaling"])
        spec["wait"] = WaitConfig(**spec["wait"])

        for key in ("subnet_cidrs", "ingress_ports", "instance_types"):
            spec[key] = tuple(spec[key])

        return ClusterConfig(**spec)
    except TypeError as e:
        msg = f"invalid ClusterConfig in {str(path)!r}: {e}"
        raise ekslab.errors.ConfigError(msg) from e


def load_cross_account_config(path: pathlib.Path | None = None) -> CrossAccountConfig:
    spec = _read_spec(path, CrossAccountConfig.__name__)

    # account ids are commonly written unquoted in YAML
    for key in ("trusting_account", "trusted_account"):
        if key in spec:
            spec[key] = str(spec[key]).zfill(12)

    try:
        return CrossAccountConfig(**spec)
    except TypeError as e:
        msg = f"invalid CrossAccountConfig in {str(path)!r}: {e}"
        raise ekslab.errors.ConfigError(msg) from e
