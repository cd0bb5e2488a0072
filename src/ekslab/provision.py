from __future__ import annotations

import functools
import typing

import click

import ekslab
import ekslab.addons
import ekslab.eks
import ekslab.errors
import ekslab.iam
import ekslab.manifest
import ekslab.network
import ekslab.oidc
import ekslab.paths
import ekslab.steps
import ekslab.waiting

if typing.TYPE_CHECKING:
    import pathlib

    import boto3

    import ekslab.config


class Provisioner:
    """
    Creates the networking, IAM identities, EKS cluster, node group and add-ons
    for one cluster, in a fixed order, and records what it made in the manifest.

    Any failure aborts the run; nothing is rolled back. After every completed
    step the identifiers gathered so far are written to a checkpoint next to
    the manifest, so a failed run can be resumed with `start_at` or cleaned up
    by teardown.
    """

    def __init__(
        self,
        cfg: ekslab.config.ClusterConfig,
        session: boto3.Session,
        paths: ekslab.paths.Paths | None = None,
        waiter: ekslab.waiting.Waiter | None = None,
        thumbprint: typing.Callable[[str], str] | None = None,
        fetch_policy: typing.Callable[[str], dict[str, typing.Any]] | None = None,
    ):
        self.cfg = cfg
        self.session = session
        self.paths = paths or ekslab.paths.Paths()
        self.waiter = waiter or ekslab.waiting.Waiter(backoff=cfg.wait.backoff(timeout=120.0))
        self.thumbprint = thumbprint
        self.fetch_policy = fetch_policy or ekslab.addons.download_load_balancer_controller_policy
        self.manifest = ekslab.manifest.ResourceManifest(
            cluster_name=cfg.cluster_name,
            region=cfg.region,
            node_group_name=cfg.node_group_name,
            domain_name=cfg.domain_name,
            subdomain=cfg.subdomain,
        )

    @functools.cached_property
    def ec2(self) -> typing.Any:
        return self.session.client("ec2", region_name=self.cfg.region, config=ekslab.BOTO_CONFIG)

    @functools.cached_property
    def eks(self) -> typing.Any:
        return self.session.client("eks", region_name=self.cfg.region, config=ekslab.BOTO_CONFIG)

    @functools.cached_property
    def iam(self) -> typing.Any:
        return self.session.client("iam", config=ekslab.BOTO_CONFIG)

    @property
    def checkpoint(self) -> pathlib.Path:
        return ekslab.manifest.checkpoint_path(self.paths.manifest)

    def steps(self) -> list[tuple[str, ekslab.steps.StepFunc]]:
        return [
            ("cluster-role", self.create_cluster_role),
            ("node-role", self.create_node_role),
            ("vpc", self.create_vpc),
            ("internet-gateway", self.create_internet_gateway),
            ("subnets", self.create_subnets),
            ("route-table", self.create_route_table),
            ("security-group", self.create_security_group),
            ("iam-propagation", self.wait_for_iam_roles),
            ("account", self.resolve_account),
            ("cluster", self.create_cluster),
            ("kubeconfig", self.write_kubeconfig),
            ("node-group", self.create_node_group),
            ("oidc-provider", self.create_oidc_provider),
            ("load-balancer-controller", self.install_load_balancer_controller),
            ("external-dns", self.install_external_dns),
            ("demo-app", self.deploy_demo_app),
        ]

    def run(self, start_at: str | None = None) -> ekslab.manifest.ResourceManifest:
        if start_at is not None and self.checkpoint.exists():
            self.manifest = ekslab.manifest.load(self.checkpoint, partial=True)
            click.secho(f"Resuming from {self.checkpoint.name} at step {start_at!r}", fg="yellow")

        click.secho(
            f"Provisioning cluster {self.cfg.cluster_name} in {self.cfg.region} for {self.cfg.hostname}",
            bold=True,
        )

        ekslab.steps.run_steps(self.steps(), start_at=start_at, on_complete=self._save_checkpoint)

        self.manifest.write(self.paths.manifest)
        self.checkpoint.unlink(missing_ok=True)
        click.secho(f"Resource information saved to {self.paths.manifest}", fg="green", bold=True)

        return self.manifest

    def _save_checkpoint(self, _step: str) -> None:
        self.manifest.write(self.checkpoint, partial=True)

    def _update(self, **changes: typing.Any) -> None:
        self.manifest = self.manifest.replace(**changes)

    def _account_id(self) -> str:
        if self.manifest.account_id == "":
            self._update(account_id=ekslab.aws_current_account_id(self.session))

        return self.manifest.account_id

    def _issuer(self) -> str:
        if self.manifest.oidc_issuer == "":
            issuer, ok = ekslab.eks.cluster_oidc_issuer_url(self.eks, self.cfg.cluster_name)
            if not ok:
                msg = f"cluster {self.cfg.cluster_name!r} has no OIDC issuer"
                raise ekslab.errors.EkslabError(msg)
            self._update(oidc_issuer=issuer)

        return self.manifest.oidc_issuer

    def create_cluster_role(self) -> None:
        role_name = ekslab.RoleNames.cluster(self.cfg.cluster_name)
        ekslab.iam.create_role(
            self.iam,
            role_name,
            ekslab.iam.build_service_assume_role_policy(ekslab.ServicePrincipals.EKS),
            f"EKS cluster service role for {self.cfg.cluster_name}",
        )
        ekslab.iam.attach_role_policies(self.iam, role_name, [ekslab.ManagedPolicies.EKS_CLUSTER])

    def create_node_role(self) -> None:
        role_name = ekslab.RoleNames.node(self.cfg.cluster_name)
        ekslab.iam.create_role(
            self.iam,
            role_name,
            ekslab.iam.build_service_assume_role_policy(ekslab.ServicePrincipals.EC2),
            f"EKS node group role for {self.cfg.cluster_name}",
        )
        ekslab.iam.attach_role_policies(
            self.iam,
            role_name,
            [
                ekslab.ManagedPolicies.EKS_WORKER_NODE,
                ekslab.ManagedPolicies.EKS_CNI,
                ekslab.ManagedPolicies.ECR_READ_ONLY,
            ],
        )

    def create_vpc(self) -> None:
        self._update(vpc_id=ekslab.network.create_vpc(self.ec2, self.cfg.cluster_name, self.cfg.vpc_cidr))

    def create_internet_gateway(self) -> None:
        self._update(
            internet_gateway_id=ekslab.network.create_internet_gateway(
                self.ec2, self.cfg.cluster_name, self.manifest.vpc_id
            )
        )

    def create_subnets(self) -> None:
        self._update(
            subnet_ids=ekslab.network.create_subnets(
                self.ec2, self.cfg.cluster_name, self.manifest.vpc_id, self.cfg.subnet_cidrs
            )
        )

    def create_route_table(self) -> None:
        self._update(
            route_table_id=ekslab.network.create_route_table(
                self.ec2,
                self.cfg.cluster_name,
                self.manifest.vpc_id,
                self.manifest.internet_gateway_id,
                self.manifest.subnet_ids,
            )
        )

    def create_security_group(self) -> None:
        self._update(
            security_group_id=ekslab.network.create_security_group(
                self.ec2, self.cfg.cluster_name, self.manifest.vpc_id, self.cfg.ingress_ports
            )
        )

    def wait_for_iam_roles(self) -> None:
        role_names = [ekslab.RoleNames.cluster(self.cfg.cluster_name), ekslab.RoleNames.node(self.cfg.cluster_name)]

        self.waiter.until(
            lambda: all(ekslab.iam.role_exists(self.iam, name) for name in role_names),
            f"IAM roles {role_names} to propagate",
        )

    def resolve_account(self) -> None:
        click.secho(f"Account: {self._account_id()}", fg="white")

    def create_cluster(self) -> None:
        ekslab.eks.create_cluster(
            self.eks,
            self.cfg,
            ekslab.role_arn(self._account_id(), ekslab.RoleNames.cluster(self.cfg.cluster_name)),
            self.manifest.subnet_ids,
            self.manifest.security_group_id,
        )

    def write_kubeconfig(self) -> None:
        self.paths.kubeconfig.parent.mkdir(parents=True, exist_ok=True)
        self.paths.kubeconfig.write_text(ekslab.eks.kubeconfig(self.eks, self.cfg.cluster_name, self.cfg.region))
        click.secho(f"Wrote {self.paths.kubeconfig}", fg="green")

    def create_node_group(self) -> None:
        ekslab.eks.create_nodegroup(
            self.eks,
            self.cfg,
            ekslab.role_arn(self._account_id(), ekslab.RoleNames.node(self.cfg.cluster_name)),
            self.manifest.subnet_ids,
        )

    def create_oidc_provider(self) -> None:
        ekslab.oidc.ensure_oidc_provider(self.iam, self._account_id(), self._issuer(), thumbprint=self.thumbprint)

    def _create_service_account_role(
        self,
        role_name: str,
        policy_name: str,
        policy_document: dict[str, typing.Any],
        service_account: str,
    ) -> str:
        account_id = self._account_id()
        policy_arn = ekslab.iam.ensure_policy(self.iam, policy_name, policy_document, account_id)
        role_arn = ekslab.iam.create_role(
            self.iam,
            role_name,
            ekslab.iam.build_irsa_role_assume_role_policy(
                ekslab.KUBE_SYSTEM_NAMESPACE,
                account_id,
                [ekslab.oidc.clean_issuer(self._issuer())],
                [service_account],
            ),
            f"{service_account} role for {self.cfg.cluster_name}",
        )
        ekslab.iam.attach_role_policies(self.iam, role_name, [policy_arn])

        return role_arn

    def install_load_balancer_controller(self) -> None:
        role_arn = self._create_service_account_role(
            ekslab.RoleNames.load_balancer_controller(self.cfg.cluster_name),
            ekslab.PolicyNames.load_balancer_controller(self.cfg.cluster_name),
            self.fetch_policy(self.cfg.load_balancer_controller_policy_url),
            ekslab.AWS_LOAD_BALANCER_CONTROLLER,
        )

        sa_path = ekslab.addons.write_documents(
            self.paths.load_balancer_controller_service_account,
            [ekslab.addons.service_account(ekslab.AWS_LOAD_BALANCER_CONTROLLER, role_arn)],
        )
        ekslab.addons.apply(sa_path, self.paths.kubeconfig)
        ekslab.addons.install_load_balancer_controller(self.cfg, self.manifest.vpc_id, self.paths.kubeconfig)

    def install_external_dns(self) -> None:
        role_arn = self._create_service_account_role(
            ekslab.RoleNames.external_dns(self.cfg.cluster_name),
            ekslab.PolicyNames.external_dns(self.cfg.cluster_name),
            ekslab.iam.build_external_dns_policy(),
            ekslab.EXTERNAL_DNS,
        )

        path = ekslab.addons.write_documents(
            self.paths.external_dns,
            ekslab.addons.render_external_dns(self.cfg, role_arn),
        )
        ekslab.addons.apply(path, self.paths.kubeconfig)

    def deploy_demo_app(self) -> None:
        path = ekslab.addons.write_documents(self.paths.demo_app, ekslab.addons.render_demo_app(self.cfg))
        ekslab.addons.apply(path, self.paths.kubeconfig)
        click.secho(
            f"Test application will be available at {self.cfg.hostname} and {self.cfg.ingress_hostname} "
            "after DNS propagation",
            fg="green",
        )
