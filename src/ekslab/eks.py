from __future__ import annotations

import typing

import click
import yaml
from botocore.exceptions import ClientError

import ekslab
import ekslab.errors

if typing.TYPE_CHECKING:
    import ekslab.config

CONTROL_PLANE_LOG_TYPES = ["api", "audit", "authenticator", "controllerManager", "scheduler"]


def create_cluster(
    eks: typing.Any,
    cfg: ekslab.config.ClusterConfig,
    role_arn: str,
    subnet_ids: typing.Sequence[str],
    security_group_id: str,
) -> None:
    eks.create_cluster(
        name=cfg.cluster_name,
        version=cfg.kubernetes_version,
        roleArn=role_arn,
        resourcesVpcConfig={
            "subnetIds": list(subnet_ids),
            "securityGroupIds": [security_group_id],
            "endpointPrivateAccess": True,
            "endpointPublicAccess": True,
        },
        logging={"clusterLogging": [{"types": CONTROL_PLANE_LOG_TYPES, "enabled": True}]},
        tags={str(ekslab.TagKeys.NAME): cfg.cluster_name},
    )
    click.secho(f"Cluster {cfg.cluster_name} creation initiated, waiting for it to become active", fg="white")

    eks.get_waiter("cluster_active").wait(name=cfg.cluster_name, WaiterConfig=cfg.wait.waiter_config())
    click.secho(f"Cluster {cfg.cluster_name} is active", fg="green", bold=True)


def create_nodegroup(
    eks: typing.Any,
    cfg: ekslab.config.ClusterConfig,
    node_role_arn: str,
    subnet_ids: typing.Sequence[str],
) -> None:
    eks.create_nodegroup(
        clusterName=cfg.cluster_name,
        nodegroupName=cfg.node_group_name,
        scalingConfig={
            "minSize": cfg.scaling.min_size,
            "maxSize": cfg.scaling.max_size,
            "desiredSize": cfg.scaling.desired_size,
        },
        diskSize=cfg.disk_size,
        instanceTypes=list(cfg.instance_types),
        amiType=cfg.ami_type,
        nodeRole=node_role_arn,
        subnets=list(subnet_ids),
        tags={str(ekslab.TagKeys.NAME): cfg.node_group_name},
    )
    click.secho(f"Node group {cfg.node_group_name} creation initiated, waiting for it to become active", fg="white")

    eks.get_waiter("nodegroup_active").wait(
        clusterName=cfg.cluster_name,
        nodegroupName=cfg.node_group_name,
        WaiterConfig=cfg.wait.waiter_config(),
    )
    click.secho(f"Node group {cfg.node_group_name} is active", fg="green", bold=True)


def describe_cluster(eks: typing.Any, cluster_name: str) -> dict[str, typing.Any] | None:
    """The cluster description, or None when no such cluster exists."""
    try:
        return eks.describe_cluster(name=cluster_name)["cluster"]
    except ClientError as e:
        if ekslab.errors.is_kind(e, ekslab.errors.ErrorKind.NOT_FOUND):
            return None
        raise


def cluster_oidc_issuer_url(eks: typing.Any, cluster_name: str) -> tuple[str, bool]:
    cluster = describe_cluster(eks, cluster_name)
    if cluster is None:
        return "", False

    issuer_url = cluster.get("identity", {}).get("oidc", {}).get("issuer", "")
    return issuer_url, issuer_url.strip() != ""


def kubeconfig(eks: typing.Any, cluster_name: str, region: str) -> str:
    cluster = eks.describe_cluster(name=cluster_name)["cluster"]

    return yaml.safe_dump(
        {
            "apiVersion": "v1",
            "clusters": [
                {
                    "cluster": {
                        "certificate-authority-data": cluster["certificateAuthority"]["data"],
                        "server": cluster["endpoint"],
                    },
                    "name": cluster_name,
                }
            ],
            "contexts": [{"context": {"cluster": cluster_name, "user": cluster_name}, "name": cluster_name}],
            "current-context": cluster_name,
            "kind": "Config",
            "preferences": {},
            "users": [
                {
                    "name": cluster_name,
                    "user": {
                        "exec": {
                            "apiVersion": "client.authentication.k8s.io/v1beta1",
                            "args": ["--region", region, "eks", "get-token", "--cluster-name", cluster_name],
                            "command": "aws",
                            "env": None,
                            "provideClusterInfo": False,
                        }
                    },
                }
            ],
        },
        default_flow_style=False,
    )


def delete_nodegroup(eks: typing.Any, wait: ekslab.config.WaitConfig, cluster_name: str, nodegroup_name: str) -> None:
    eks.delete_nodegroup(clusterName=cluster_name, nodegroupName=nodegroup_name)
    click.secho(f"Waiting for node group {nodegroup_name} deletion to complete", fg="white")

    eks.get_waiter("nodegroup_deleted").wait(
        clusterName=cluster_name,
        nodegroupName=nodegroup_name,
        WaiterConfig=wait.waiter_config(),
    )


def delete_cluster(eks: typing.Any, wait: ekslab.config.WaitConfig, cluster_name: str) -> None:
    eks.delete_cluster(name=cluster_name)
    click.secho(f"Waiting for cluster {cluster_name} deletion to complete", fg="white")

    eks.get_waiter("cluster_deleted").wait(name=cluster_name, WaiterConfig=wait.waiter_config())
