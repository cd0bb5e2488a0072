from __future__ import annotations

import enum
import typing

import boto3
import botocore.config

KUBE_SYSTEM_NAMESPACE = "kube-system"
DEFAULT_NAMESPACE = "default"
ANYWHERE_CIDR = "0.0.0.0/0"
STS_AUDIENCE = "sts.amazonaws.com"
POLICY_VERSION = "2012-10-17"

AWS_LOAD_BALANCER_CONTROLLER = "aws-load-balancer-controller"
EXTERNAL_DNS = "external-dns"

MANIFEST_FILENAME = "cluster-resources.env"
KUBECONFIG_FILENAME = "kubeconfig.yaml"
EXTERNAL_DNS_FILENAME = "external-dns.yaml"
DEMO_APP_FILENAME = "test-app.yaml"
LBC_SERVICE_ACCOUNT_FILENAME = "aws-load-balancer-controller-sa.yaml"
ASSUME_ROLE_POLICY_FILENAME = "assume-role-policy.json"

BOTO_CONFIG = botocore.config.Config(retries={"mode": "standard", "max_attempts": 10})


class ManagedPolicies(enum.StrEnum):
    EKS_CLUSTER = "arn:aws:iam::aws:policy/AmazonEKSClusterPolicy"
    EKS_WORKER_NODE = "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy"
    EKS_CNI = "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy"
    ECR_READ_ONLY = "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly"
    READ_ONLY_ACCESS = "arn:aws:iam::aws:policy/ReadOnlyAccess"


class ServicePrincipals(enum.StrEnum):
    EKS = "eks.amazonaws.com"
    EC2 = "ec2.amazonaws.com"


class TagKeys(enum.StrEnum):
    NAME = "Name"
    ELB_ROLE = "kubernetes.io/role/elb"
    ELBV2_CLUSTER = "elbv2.k8s.aws/cluster"

    @staticmethod
    def kubernetes_cluster(cluster_name: str) -> str:
        return f"kubernetes.io/cluster/{cluster_name}"


class RoleNames:
    """Names of the IAM identities derived from a cluster name."""

    @staticmethod
    def cluster(cluster_name: str) -> str:
        return f"{cluster_name}-cluster-role"

    @staticmethod
    def node(cluster_name: str) -> str:
        return f"{cluster_name}-node-role"

    @staticmethod
    def load_balancer_controller(cluster_name: str) -> str:
        return f"AmazonEKSLoadBalancerControllerRole-{cluster_name}"

    @staticmethod
    def external_dns(cluster_name: str) -> str:
        return f"ExternalDNSRole-{cluster_name}"


class PolicyNames:
    @staticmethod
    def load_balancer_controller(cluster_name: str) -> str:
        return f"AWSLoadBalancerControllerIAMPolicy-{cluster_name}"

    @staticmethod
    def external_dns(cluster_name: str) -> str:
        return f"ExternalDNSPolicy-{cluster_name}"


def role_arn(account_id: str, role_name: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"


def policy_arn(account_id: str, policy_name: str) -> str:
    return f"arn:aws:iam::{account_id}:policy/{policy_name}"


def user_arn(account_id: str, user_name: str) -> str:
    return f"arn:aws:iam::{account_id}:user/{user_name}"


class AWSSessionCredentials(typing.TypedDict):
    AccessKeyId: str
    SecretAccessKey: str
    SessionToken: str
    Expiration: str


class AWSSessionAssumedRoleUser(typing.TypedDict):
    AssumedRoleId: str
    Arn: str


class AWSSession(typing.TypedDict):
    Credentials: AWSSessionCredentials
    AssumedRoleUser: AWSSessionAssumedRoleUser


class AWSCallerIdentity(typing.TypedDict):
    UserId: str
    Account: str
    Arn: str


def aws_session(exe_env: dict[str, str] | None = None, region: str | None = None) -> boto3.Session:
    return boto3.Session(
        aws_access_key_id=exe_env.get("AWS_ACCESS_KEY_ID") if exe_env else None,
        aws_secret_access_key=exe_env.get("AWS_SECRET_ACCESS_KEY") if exe_env else None,
        aws_session_token=exe_env.get("AWS_SESSION_TOKEN") if exe_env else None,
        region_name=region,
    )


def aws_env_from_session_credentials(
    credentials: AWSSessionCredentials,
) -> dict[str, str]:
    return {
        "AWS_ACCESS_KEY_ID": credentials["AccessKeyId"],
        "AWS_SECRET_ACCESS_KEY": credentials["SecretAccessKey"],
        "AWS_SESSION_TOKEN": credentials["SessionToken"],
    }


def aws_whoami(session: boto3.Session) -> AWSCallerIdentity:
    response = session.client("sts").get_caller_identity()

    return {
        "UserId": response["UserId"],
        "Account": response["Account"],
        "Arn": response["Arn"],
    }


def aws_current_account_id(session: boto3.Session) -> str:
    return aws_whoami(session)["Account"]


def aws_assume_role(
    session: boto3.Session,
    role_arn: str,
    session_name: str,
    external_id: str | None = None,
    duration_seconds: int | None = None,
    mfa_serial: str | None = None,
    token_code: str | None = None,
) -> AWSSession:
    assume_role_kwargs: dict[str, typing.Any] = {
        "RoleArn": role_arn,
        "RoleSessionName": session_name,
    }

    if external_id is not None:
        assume_role_kwargs["ExternalId"] = external_id

    if duration_seconds is not None:
        assume_role_kwargs["DurationSeconds"] = duration_seconds

    if mfa_serial is not None:
        assume_role_kwargs["SerialNumber"] = mfa_serial
        assume_role_kwargs["TokenCode"] = token_code

    response = session.client("sts").assume_role(**assume_role_kwargs)

    # Convert boto3 response format to match the expected format
    return {
        "Credentials": {
            "AccessKeyId": response["Credentials"]["AccessKeyId"],
            "SecretAccessKey": response["Credentials"]["SecretAccessKey"],
            "SessionToken": response["Credentials"]["SessionToken"],
            "Expiration": response["Credentials"]["Expiration"].isoformat(),
        },
        "AssumedRoleUser": {
            "AssumedRoleId": response["AssumedRoleUser"]["AssumedRoleId"],
            "Arn": response["AssumedRoleUser"]["Arn"],
        },
    }


def aws_session_from_credentials(credentials: AWSSessionCredentials, region: str | None = None) -> boto3.Session:
    return aws_session(aws_env_from_session_credentials(credentials), region=region)
