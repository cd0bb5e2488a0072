from __future__ import annotations

import json
import typing

import click
from botocore.exceptions import ClientError

import ekslab
import ekslab.errors


def build_service_assume_role_policy(service: str) -> dict[str, typing.Any]:
    return {
        "Version": ekslab.POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": service},
                "Action": "sts:AssumeRole",
            }
        ],
    }


def build_irsa_role_assume_role_policy(
    namespace: str,
    account_id: str,
    oidc_url_tails: list[str],
    service_accounts: list[str],
) -> dict[str, typing.Any]:
    return {
        "Version": ekslab.POLICY_VERSION,
        "Statement": [
            {
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Effect": "Allow",
                "Principal": {
                    "Federated": f"arn:aws:iam::{account_id}:oidc-provider/{oidc_url_tail}",
                },
                "Condition": {
                    "StringEquals": {
                        f"{oidc_url_tail}:aud": ekslab.STS_AUDIENCE,
                    }
                    | {
                        f"{oidc_url_tail}:sub": [
                            f"system:serviceaccount:{namespace}:{account}" for account in service_accounts
                        ],
                    }
                },
            }
            for oidc_url_tail in oidc_url_tails
        ],
    }


def build_external_dns_policy() -> dict[str, typing.Any]:
    return {
        "Version": ekslab.POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["route53:ChangeResourceRecordSets"],
                "Resource": ["arn:aws:route53:::hostedzone/*"],
            },
            {
                "Effect": "Allow",
                "Action": ["route53:ListHostedZones", "route53:ListResourceRecordSets"],
                "Resource": ["*"],
            },
        ],
    }


def build_cross_account_trust_policy(
    trusted_principal_arn: str,
    external_id: str,
    mfa_max_age: int,
) -> dict[str, typing.Any]:
    return {
        "Version": ekslab.POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"AWS": trusted_principal_arn},
                "Action": "sts:AssumeRole",
                "Condition": {
                    "StringEquals": {"sts:ExternalId": external_id},
                    "Bool": {"aws:MultiFactorAuthPresent": "true"},
                    "NumericLessThan": {"aws:MultiFactorAuthAge": str(mfa_max_age)},
                },
            }
        ],
    }


def build_assumer_policy(role_arn: str, external_id: str) -> dict[str, typing.Any]:
    return {
        "Version": ekslab.POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Action": "sts:AssumeRole",
                "Resource": role_arn,
                "Condition": {"StringEquals": {"sts:ExternalId": external_id}},
            }
        ],
    }


def create_role(
    iam: typing.Any,
    role_name: str,
    trust_policy: dict[str, typing.Any],
    description: str,
    max_session_duration: int | None = None,
) -> str:
    kwargs: dict[str, typing.Any] = {
        "RoleName": role_name,
        "AssumeRolePolicyDocument": json.dumps(trust_policy),
        "Description": description,
    }
    if max_session_duration is not None:
        kwargs["MaxSessionDuration"] = max_session_duration

    role = iam.create_role(**kwargs)["Role"]
    click.secho(f"Created IAM role {role_name}", fg="green")

    return role["Arn"]


def attach_role_policies(iam: typing.Any, role_name: str, policy_arns: typing.Iterable[str]) -> None:
    for arn in policy_arns:
        iam.attach_role_policy(RoleName=role_name, PolicyArn=arn)
        click.secho(f"Attached {arn} to {role_name}", fg="green")


def ensure_policy(iam: typing.Any, policy_name: str, document: dict[str, typing.Any], account_id: str) -> str:
    """Create a customer managed policy, treating an existing one of the same name as success."""
    arn = ekslab.policy_arn(account_id, policy_name)
    try:
        iam.create_policy(PolicyName=policy_name, PolicyDocument=json.dumps(document))
    except ClientError as e:
        if not ekslab.errors.is_kind(e, ekslab.errors.ErrorKind.ALREADY_EXISTS):
            raise
        click.secho(f"Policy {policy_name} already exists", fg="yellow")
    else:
        click.secho(f"Created IAM policy {policy_name}", fg="green")

    return arn


def role_exists(iam: typing.Any, role_name: str) -> bool:
    try:
        iam.get_role(RoleName=role_name)
    except ClientError as e:
        if ekslab.errors.is_kind(e, ekslab.errors.ErrorKind.NOT_FOUND):
            return False
        raise

    return True


def delete_role(iam: typing.Any, role_name: str) -> None:
    """Detach managed policies, drop inline policies, then delete the role."""
    paginator = iam.get_paginator("list_attached_role_policies")
    for page in paginator.paginate(RoleName=role_name):
        for policy in page.get("AttachedPolicies", []):
            iam.detach_role_policy(RoleName=role_name, PolicyArn=policy["PolicyArn"])

    for policy_name in iam.list_role_policies(RoleName=role_name).get("PolicyNames", []):
        iam.delete_role_policy(RoleName=role_name, PolicyName=policy_name)

    iam.delete_role(RoleName=role_name)


def delete_policy(iam: typing.Any, policy_arn: str) -> None:
    """Delete a customer managed policy after removing its non-default versions."""
    for version in iam.list_policy_versions(PolicyArn=policy_arn).get("Versions", []):
        if not version.get("IsDefaultVersion", False):
            iam.delete_policy_version(PolicyArn=policy_arn, VersionId=version["VersionId"])

    iam.delete_policy(PolicyArn=policy_arn)
