"""
Teardown of everything `ekslab provision` creates.

Teardown runs in two passes. The resolve pass reads the manifest and looks up
every identifier that can only be derived from a live resource (the cluster's
OIDC issuer, the route table associations) before anything is deleted. The
delete pass then removes resources in reverse creation order, classifying each
provider error: a resource that is already gone counts as removed, dependency
conflicts and throttling are retried with backoff, and anything else is
recorded as a failure so the remaining steps still run.
"""

from __future__ import annotations

import dataclasses
import enum
import functools
import typing

import click
from botocore.exceptions import ClientError, WaiterError

import ekslab
import ekslab.addons
import ekslab.eks
import ekslab.errors
import ekslab.iam
import ekslab.manifest
import ekslab.network
import ekslab.oidc
import ekslab.paths
import ekslab.waiting

if typing.TYPE_CHECKING:
    import pathlib

    import boto3

    import ekslab.config

LOAD_BALANCER_DRAIN_TIMEOUT = 300.0
NETWORK_INTERFACE_DRAIN_TIMEOUT = 300.0


@dataclasses.dataclass(frozen=True)
class TeardownPlan:
    manifest: ekslab.manifest.ResourceManifest
    cluster_exists: bool = False
    oidc_provider_arn: str = ""
    route_table_associations: tuple[str, ...] = ()
    source: pathlib.Path | None = None

    @property
    def role_names(self) -> list[str]:
        name = self.manifest.cluster_name
        return [
            ekslab.RoleNames.load_balancer_controller(name),
            ekslab.RoleNames.external_dns(name),
            ekslab.RoleNames.node(name),
            ekslab.RoleNames.cluster(name),
        ]

    @property
    def policy_arns(self) -> list[str]:
        if self.manifest.account_id == "":
            return []

        name = self.manifest.cluster_name
        return [
            ekslab.policy_arn(self.manifest.account_id, ekslab.PolicyNames.load_balancer_controller(name)),
            ekslab.policy_arn(self.manifest.account_id, ekslab.PolicyNames.external_dns(name)),
        ]


class Outcome(enum.StrEnum):
    REMOVED = "removed"
    ABSENT = "absent"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class ItemRecord:
    kind: str
    ident: str
    outcome: Outcome
    detail: str = ""


@dataclasses.dataclass
class TeardownReport:
    records: list[ItemRecord] = dataclasses.field(default_factory=list)

    def add(self, kind: str, ident: str, outcome: Outcome, detail: str = "") -> ItemRecord:
        rec = ItemRecord(kind=kind, ident=ident, outcome=outcome, detail=detail)
        self.records.append(rec)
        return rec

    def by_outcome(self, outcome: Outcome) -> list[ItemRecord]:
        return [r for r in self.records if r.outcome == outcome]

    @property
    def failed(self) -> list[ItemRecord]:
        return self.by_outcome(Outcome.FAILED)

    @property
    def ok(self) -> bool:
        return len(self.failed) == 0

    def print(self) -> None:
        click.secho("\nTeardown summary", bold=True)
        for outcome, color in (
            (Outcome.REMOVED, "green"),
            (Outcome.ABSENT, "white"),
            (Outcome.SKIPPED, "white"),
            (Outcome.FAILED, "red"),
        ):
            records = self.by_outcome(outcome)
            if len(records) == 0:
                continue
            click.secho(f"  {outcome} ({len(records)})", fg=color, bold=True)
            for rec in records:
                suffix = f": {rec.detail}" if rec.detail else ""
                click.secho(f"    {rec.kind} {rec.ident}{suffix}", fg=color)


def _clients(session: boto3.Session, region: str) -> dict[str, typing.Any]:
    return {
        "ec2": session.client("ec2", region_name=region, config=ekslab.BOTO_CONFIG),
        "eks": session.client("eks", region_name=region, config=ekslab.BOTO_CONFIG),
        "elbv2": session.client("elbv2", region_name=region, config=ekslab.BOTO_CONFIG),
        "iam": session.client("iam", config=ekslab.BOTO_CONFIG),
    }


def _load_manifest(
    cfg: ekslab.config.ClusterConfig,
    paths: ekslab.paths.Paths,
) -> tuple[ekslab.manifest.ResourceManifest, pathlib.Path | None]:
    if paths.manifest.exists():
        return ekslab.manifest.load(paths.manifest), paths.manifest

    checkpoint = ekslab.manifest.checkpoint_path(paths.manifest)
    if checkpoint.exists():
        click.secho(f"Using provisioning checkpoint {checkpoint.name}", fg="yellow")
        return ekslab.manifest.load(checkpoint, partial=True), checkpoint

    click.secho(
        f"No {paths.manifest.name} found, tearing down name-derived resources of {cfg.cluster_name} only",
        fg="yellow",
    )
    return (
        ekslab.manifest.ResourceManifest(
            cluster_name=cfg.cluster_name,
            region=cfg.region,
            node_group_name=cfg.node_group_name,
            domain_name=cfg.domain_name,
            subdomain=cfg.subdomain,
        ),
        None,
    )


def resolve(
    cfg: ekslab.config.ClusterConfig,
    session: boto3.Session,
    paths: ekslab.paths.Paths | None = None,
    cluster_name: str | None = None,
    clients: dict[str, typing.Any] | None = None,
    region: str | None = None,
) -> TeardownPlan:
    """
    Build the teardown plan. Nothing in AWS is modified.

    Identifiers that stop being discoverable once their owner is deleted are
    captured here: the OIDC provider ARN is derived from the cluster's issuer
    while the cluster still exists. An issuer found this way is written back to
    the manifest (or to a checkpoint when there is none) so that a rerun after
    the cluster is gone can still find the provider.
    """
    paths = paths or ekslab.paths.Paths()
    manifest, source = _load_manifest(cfg, paths)

    if cluster_name is not None and manifest.cluster_name != cluster_name:
        msg = f"{source} describes cluster {manifest.cluster_name!r}, not {cluster_name!r}"
        raise ekslab.errors.ConfigError(msg)

    if region is not None and source is not None and manifest.region != region:
        msg = f"{source} describes a cluster in {manifest.region}, not {region}"
        raise ekslab.errors.ConfigError(msg)

    clients = clients or _clients(session, manifest.region)

    if manifest.account_id == "":
        manifest = manifest.replace(account_id=ekslab.aws_current_account_id(session))

    cluster = ekslab.eks.describe_cluster(clients["eks"], manifest.cluster_name)
    if manifest.oidc_issuer == "" and cluster is not None:
        issuer = cluster.get("identity", {}).get("oidc", {}).get("issuer", "")
        if issuer != "":
            manifest = manifest.replace(oidc_issuer=issuer)
            source = _record_issuer(manifest, source, paths)

    provider_arn = ""
    if manifest.oidc_issuer != "":
        provider_arn = ekslab.oidc.provider_arn(manifest.account_id, manifest.oidc_issuer)

    return TeardownPlan(
        manifest=manifest,
        cluster_exists=cluster is not None,
        oidc_provider_arn=provider_arn,
        route_table_associations=tuple(
            ekslab.network.route_table_associations(clients["ec2"], manifest.route_table_id)
        ),
        source=source,
    )


def _record_issuer(
    manifest: ekslab.manifest.ResourceManifest,
    source: pathlib.Path | None,
    paths: ekslab.paths.Paths,
) -> pathlib.Path:
    if source == paths.manifest:
        return manifest.write(source)

    checkpoint = ekslab.manifest.checkpoint_path(paths.manifest)
    click.secho(f"Recording OIDC issuer in {checkpoint.name}", fg="yellow")
    return manifest.write(checkpoint, partial=True)


class Teardown:
    def __init__(
        self,
        plan: TeardownPlan,
        session: boto3.Session,
        wait: ekslab.config.WaitConfig,
        paths: ekslab.paths.Paths | None = None,
        waiter: ekslab.waiting.Waiter | None = None,
        clients: dict[str, typing.Any] | None = None,
    ):
        self.plan = plan
        self.session = session
        self.wait = wait
        self.paths = paths or ekslab.paths.Paths()
        self.waiter = waiter or ekslab.waiting.Waiter(backoff=wait.backoff())
        self.clients = clients or _clients(session, plan.manifest.region)
        self.report = TeardownReport()

    @property
    def manifest(self) -> ekslab.manifest.ResourceManifest:
        return self.plan.manifest

    @functools.cached_property
    def ec2(self) -> typing.Any:
        return self.clients["ec2"]

    @functools.cached_property
    def eks(self) -> typing.Any:
        return self.clients["eks"]

    @functools.cached_property
    def elbv2(self) -> typing.Any:
        return self.clients["elbv2"]

    @functools.cached_property
    def iam(self) -> typing.Any:
        return self.clients["iam"]

    def steps(self) -> list[tuple[str, typing.Callable[[], None]]]:
        return [
            ("cluster-objects", self.delete_cluster_objects),
            ("load-balancer-controller", self.uninstall_load_balancer_controller),
            ("load-balancers", self.wait_for_load_balancers),
            ("node-group", self.delete_node_group),
            ("cluster", self.delete_cluster),
            ("iam", self.delete_iam),
            ("oidc-provider", self.delete_oidc_provider),
            ("network-interfaces", self.wait_for_network_interfaces),
            ("route-table", self.delete_route_table),
            ("subnets", self.delete_subnets),
            ("security-group", self.delete_security_group),
            ("internet-gateway", self.delete_internet_gateway),
            ("vpc", self.delete_vpc),
            ("local-files", self.remove_local_files),
        ]

    def run(self) -> TeardownReport:
        click.secho(
            f"Tearing down cluster {self.manifest.cluster_name} in {self.manifest.region}",
            bold=True,
        )

        for name, func in self.steps():
            click.secho(f"==> {name}", bold=True)
            func()

        self.report.print()
        return self.report

    def _on_retry(self, attempt: int, exc: ClientError, delay: float) -> None:
        click.secho(
            f"  {ekslab.errors.error_code(exc)}: {ekslab.errors.error_message(exc)} "
            f"(attempt {attempt}, retrying in {delay:.0f}s)",
            fg="yellow",
        )

    def _remove(self, kind: str, ident: str, func: typing.Callable[[], typing.Any]) -> Outcome:
        if ident == "":
            self.report.add(kind, ident, Outcome.SKIPPED, "not recorded")
            return Outcome.SKIPPED

        try:
            self.waiter.call(func, f"delete {kind} {ident}", ekslab.errors.TEARDOWN_POLICIES, on_retry=self._on_retry)
        except ClientError as e:
            if ekslab.errors.policy_for(e, ekslab.errors.TEARDOWN_POLICIES) == ekslab.errors.Policy.IGNORE:
                click.secho(f"{kind} {ident} already gone", fg="white")
                self.report.add(kind, ident, Outcome.ABSENT)
                return Outcome.ABSENT

            detail = f"{ekslab.errors.error_code(e)}: {ekslab.errors.error_message(e)}"
            click.secho(f"Failed to delete {kind} {ident}: {detail}", fg="red", err=True)
            self.report.add(kind, ident, Outcome.FAILED, detail)
            return Outcome.FAILED
        except (WaiterError, ekslab.errors.EkslabError) as e:
            click.secho(f"Failed to delete {kind} {ident}: {e}", fg="red", err=True)
            self.report.add(kind, ident, Outcome.FAILED, str(e))
            return Outcome.FAILED

        click.secho(f"Deleted {kind} {ident}", fg="green")
        self.report.add(kind, ident, Outcome.REMOVED)
        return Outcome.REMOVED

    def _in_cluster(self, kind: str, ident: str, func: typing.Callable[[], bool]) -> None:
        if not self.plan.cluster_exists or not self.paths.kubeconfig.exists():
            self.report.add(kind, ident, Outcome.SKIPPED, "cluster not reachable")
            return

        try:
            removed = func()
        except ekslab.errors.ToolError as e:
            click.secho(f"Failed to delete {kind} {ident}: {e}", fg="red", err=True)
            self.report.add(kind, ident, Outcome.FAILED, str(e))
            return

        self.report.add(kind, ident, Outcome.REMOVED if removed else Outcome.ABSENT)

    def delete_cluster_objects(self) -> None:
        for path in (self.paths.demo_app, self.paths.external_dns):
            self._in_cluster(
                "kubernetes-objects",
                path.name,
                functools.partial(ekslab.addons.delete, path, self.paths.kubeconfig),
            )

    def uninstall_load_balancer_controller(self) -> None:
        self._in_cluster(
            "helm-release",
            ekslab.AWS_LOAD_BALANCER_CONTROLLER,
            functools.partial(ekslab.addons.uninstall_load_balancer_controller, self.paths.kubeconfig),
        )

    def wait_for_load_balancers(self) -> None:
        waiter = dataclasses.replace(self.waiter, backoff=self.wait.backoff(timeout=LOAD_BALANCER_DRAIN_TIMEOUT))

        def drained() -> bool:
            remaining = ekslab.network.cluster_load_balancers(
                self.elbv2, self.manifest.cluster_name, self.manifest.vpc_id
            )
            if remaining:
                click.secho(f"  {len(remaining)} load balancer(s) still present", fg="white")
            return len(remaining) == 0

        try:
            waiter.until(drained, f"load balancers of {self.manifest.cluster_name} to be deleted")
        except ekslab.errors.WaitTimeout as e:
            click.secho(f"{e}; continuing", fg="yellow")

    def delete_node_group(self) -> None:
        self._remove(
            "node-group",
            self.manifest.node_group_name,
            lambda: ekslab.eks.delete_nodegroup(
                self.eks, self.wait, self.manifest.cluster_name, self.manifest.node_group_name
            ),
        )

    def delete_cluster(self) -> None:
        self._remove(
            "cluster",
            self.manifest.cluster_name,
            lambda: ekslab.eks.delete_cluster(self.eks, self.wait, self.manifest.cluster_name),
        )

    def delete_iam(self) -> None:
        for role_name in self.plan.role_names:
            self._remove("iam-role", role_name, functools.partial(ekslab.iam.delete_role, self.iam, role_name))

        for arn in self.plan.policy_arns:
            self._remove("iam-policy", arn, functools.partial(ekslab.iam.delete_policy, self.iam, arn))

    def delete_oidc_provider(self) -> None:
        self._remove(
            "oidc-provider",
            self.plan.oidc_provider_arn,
            functools.partial(ekslab.oidc.delete_oidc_provider, self.iam, self.plan.oidc_provider_arn),
        )

    def wait_for_network_interfaces(self) -> None:
        waiter = dataclasses.replace(self.waiter, backoff=self.wait.backoff(timeout=NETWORK_INTERFACE_DRAIN_TIMEOUT))

        for subnet_id in self.manifest.subnet_ids:

            def drained(subnet_id: str = subnet_id) -> bool:
                try:
                    enis = ekslab.network.network_interfaces_in_subnet(self.ec2, subnet_id)
                except ClientError as e:
                    if ekslab.errors.is_kind(e, ekslab.errors.ErrorKind.NOT_FOUND):
                        return True
                    raise
                if enis:
                    click.secho(f"  {subnet_id} still has network interfaces {enis}", fg="white")
                return len(enis) == 0

            try:
                waiter.until(drained, f"network interfaces in {subnet_id} to be released")
            except ekslab.errors.WaitTimeout as e:
                click.secho(f"{e}; continuing", fg="yellow")

    def delete_route_table(self) -> None:
        for association_id in self.plan.route_table_associations:
            self._remove(
                "route-table-association",
                association_id,
                functools.partial(self.ec2.disassociate_route_table, AssociationId=association_id),
            )

        rtb = self.manifest.route_table_id
        if rtb != "":
            self._remove(
                "route",
                f"{rtb}:{ekslab.ANYWHERE_CIDR}",
                functools.partial(
                    self.ec2.delete_route, RouteTableId=rtb, DestinationCidrBlock=ekslab.ANYWHERE_CIDR
                ),
            )

        self._remove("route-table", rtb, functools.partial(self.ec2.delete_route_table, RouteTableId=rtb))

    def delete_subnets(self) -> None:
        if len(self.manifest.subnet_ids) == 0:
            self.report.add("subnet", "", Outcome.SKIPPED, "not recorded")
            return

        for subnet_id in self.manifest.subnet_ids:
            self._remove("subnet", subnet_id, functools.partial(self.ec2.delete_subnet, SubnetId=subnet_id))

    def delete_security_group(self) -> None:
        group_id = self.manifest.security_group_id
        self._remove("security-group", group_id, functools.partial(self.ec2.delete_security_group, GroupId=group_id))

    def delete_internet_gateway(self) -> None:
        igw_id = self.manifest.internet_gateway_id
        if igw_id != "" and self.manifest.vpc_id != "":
            self._remove(
                "internet-gateway-attachment",
                f"{igw_id}:{self.manifest.vpc_id}",
                functools.partial(
                    self.ec2.detach_internet_gateway, InternetGatewayId=igw_id, VpcId=self.manifest.vpc_id
                ),
            )

        self._remove(
            "internet-gateway",
            igw_id,
            functools.partial(self.ec2.delete_internet_gateway, InternetGatewayId=igw_id),
        )

    def delete_vpc(self) -> None:
        vpc_id = self.manifest.vpc_id
        self._remove("vpc", vpc_id, functools.partial(self.ec2.delete_vpc, VpcId=vpc_id))

    def remove_local_files(self) -> None:
        if not self.report.ok:
            click.secho(
                f"{len(self.report.failed)} item(s) failed; keeping {self.paths.manifest.name} for a rerun",
                fg="yellow",
                bold=True,
            )
            return

        for path in [
            self.paths.manifest,
            ekslab.manifest.checkpoint_path(self.paths.manifest),
            *self.paths.rendered_files(),
        ]:
            if path.exists():
                path.unlink()
                click.secho(f"Removed {path.name}", fg="green")


def teardown(
    cfg: ekslab.config.ClusterConfig,
    session: boto3.Session,
    paths: ekslab.paths.Paths | None = None,
    cluster_name: str | None = None,
    waiter: ekslab.waiting.Waiter | None = None,
    clients: dict[str, typing.Any] | None = None,
    region: str | None = None,
) -> TeardownReport:
    paths = paths or ekslab.paths.Paths()
    plan = resolve(cfg, session, paths, cluster_name=cluster_name, clients=clients, region=region)

    return Teardown(plan, session, cfg.wait, paths=paths, waiter=waiter, clients=clients).run()
