from __future__ import annotations

import dataclasses
import fnmatch
import json
import typing

import click
from botocore.exceptions import ClientError

import ekslab
import ekslab.errors
import ekslab.iam
import ekslab.junkdrawer
import ekslab.paths

if typing.TYPE_CHECKING:
    import boto3

    import ekslab.config

ASSUME_ROLE_ACTION = "sts:AssumeRole"


@dataclasses.dataclass(frozen=True)
class CrossAccountSetupResult:
    role_arn: str
    external_id: str
    trust_policy: dict[str, typing.Any]
    assumer_policy: dict[str, typing.Any]


@dataclasses.dataclass(frozen=True)
class AccessCheckResult:
    caller_arn: str
    assumed_arn: str
    role_arn: str

    @property
    def ok(self) -> bool:
        return assumed_arn_belongs_to_role(self.assumed_arn, self.role_arn)


def setup(
    cfg: ekslab.config.CrossAccountConfig,
    session: boto3.Session,
    paths: ekslab.paths.Paths | None = None,
    keep_policy_file: bool = False,
    external_id: str | None = None,
) -> CrossAccountSetupResult:
    """
    Create a role in the trusting account that a user of the trusted account
    may assume with the returned external id and a recent MFA session.

    The companion policy for the trusted side is written to disk for the
    operator to copy and, unless `keep_policy_file` is set, removed again
    before returning. Provider errors propagate.
    """
    paths = paths or ekslab.paths.Paths()
    iam = session.client("iam", config=ekslab.BOTO_CONFIG)

    caller_account = ekslab.aws_current_account_id(session)
    if caller_account != cfg.trusting_account:
        click.secho(
            f"Current credentials belong to {caller_account}, not the trusting account {cfg.trusting_account}",
            fg="yellow",
        )

    external_id = external_id or ekslab.junkdrawer.generate_external_id()
    trusted_principal = ekslab.user_arn(cfg.trusted_account, cfg.user_name)
    trust_policy = ekslab.iam.build_cross_account_trust_policy(trusted_principal, external_id, cfg.mfa_max_age)

    role_arn = ekslab.iam.create_role(
        iam,
        cfg.role_name,
        trust_policy,
        f"Read only access for {trusted_principal}",
        max_session_duration=cfg.max_session_duration,
    )
    ekslab.iam.attach_role_policies(iam, cfg.role_name, [cfg.permission_policy_arn])

    assumer_policy = ekslab.iam.build_assumer_policy(role_arn, external_id)
    policy_file = paths.assume_role_policy
    policy_file.parent.mkdir(parents=True, exist_ok=True)
    policy_file.write_text(json.dumps(assumer_policy, indent=2) + "\n")

    click.secho(f"\nExternal ID: {external_id}", fg="yellow", bold=True)
    click.secho("Share it with the trusted account out of band; it is not stored anywhere else.", fg="yellow")
    click.secho(f"\nPolicy for {trusted_principal} ({policy_file.name}):", bold=True)
    click.echo(json.dumps(assumer_policy, indent=2))

    print_next_steps(cfg, role_arn, external_id, policy_file.name)

    if not keep_policy_file:
        policy_file.unlink(missing_ok=True)
        click.secho(f"Removed {policy_file.name}; copy the policy above before closing this terminal", fg="white")

    return CrossAccountSetupResult(
        role_arn=role_arn,
        external_id=external_id,
        trust_policy=trust_policy,
        assumer_policy=assumer_policy,
    )


def print_next_steps(
    cfg: ekslab.config.CrossAccountConfig,
    role_arn: str,
    external_id: str,
    policy_file_name: str,
) -> None:
    click.secho("\nNext steps:", bold=True)
    click.secho(
        f"1. In account {cfg.trusted_account}, attach the policy in {policy_file_name} to user {cfg.user_name}",
        fg="white",
    )
    click.secho(f"2. Give {cfg.user_name} an MFA device and sign in with it", fg="white")
    click.secho("3. Assume the role:", fg="white")
    click.echo(
        f"   aws sts assume-role --role-arn {role_arn} --role-session-name TestSession "
        f"--external-id {external_id} --serial-number <mfa-device-arn> --token-code <code>"
    )
    click.secho(
        f"4. Or run: ekslab cross-account test --role-arn {role_arn} --external-id {external_id} "
        "--mfa-serial <mfa-device-arn> --token-code <code>",
        fg="white",
    )


def assumed_arn_belongs_to_role(assumed_arn: str, role_arn: str) -> bool:
    """
    True when `assumed_arn` is an STS assumed-role session of `role_arn`.

    arn:aws:iam::<acct>:role/<path/>Name is assumed as
    arn:aws:sts::<acct>:assumed-role/Name/<session>.
    """
    try:
        _, partition, _, _, account, resource = role_arn.split(":", 5)
    except ValueError:
        return False

    role_name = resource.rsplit("/", 1)[-1]
    prefix = f"arn:{partition}:sts::{account}:assumed-role/{role_name}/"

    return assumed_arn.startswith(prefix) and len(assumed_arn) > len(prefix)


def check_access(
    session: boto3.Session,
    role_arn: str,
    external_id: str,
    duration_seconds: int = 900,
    mfa_serial: str | None = None,
    token_code: str | None = None,
) -> AccessCheckResult:
    """
    Assume `role_arn` from the current credentials and confirm who the
    temporary credentials identify as.

    A refused AssumeRole is reported with the provider's own code and message
    and re-raised.
    """
    if (mfa_serial is None) != (token_code is None):
        msg = "--mfa-serial and --token-code must be given together"
        raise ekslab.errors.ConfigError(msg)

    caller = ekslab.aws_whoami(session)
    click.secho(f"Current identity: {caller['Arn']}", fg="white")

    try:
        assumed = ekslab.aws_assume_role(
            session,
            role_arn,
            ekslab.junkdrawer.assume_role_session_name(),
            external_id=external_id,
            duration_seconds=duration_seconds,
            mfa_serial=mfa_serial,
            token_code=token_code,
        )
    except ClientError as e:
        click.secho(
            f"AssumeRole failed: {ekslab.errors.error_code(e)}: {ekslab.errors.error_message(e)}",
            fg="red",
            bold=True,
            err=True,
        )
        raise

    click.secho(f"Credentials expire at {assumed['Credentials']['Expiration']}", fg="white")

    assumed_session = ekslab.aws_session_from_credentials(assumed["Credentials"], region=session.region_name)
    identity = ekslab.aws_whoami(assumed_session)

    result = AccessCheckResult(caller_arn=caller["Arn"], assumed_arn=identity["Arn"], role_arn=role_arn)
    if result.ok:
        click.secho(f"Assumed identity: {identity['Arn']}", fg="green", bold=True)
    else:
        click.secho(f"Assumed identity {identity['Arn']} does not belong to {role_arn}", fg="red", bold=True)

    return result


def _as_list(value: typing.Any) -> list[typing.Any]:
    return value if isinstance(value, list) else [value]


def _numbers(values: list[typing.Any]) -> list[float] | None:
    try:
        return [float(v) for v in values]
    except (TypeError, ValueError):
        return None


def _string_equals(actual: typing.Any, expected: list[typing.Any]) -> bool:
    return str(actual) in [str(v) for v in expected]


def _string_like(actual: typing.Any, expected: list[typing.Any]) -> bool:
    return any(fnmatch.fnmatchcase(str(actual), str(pattern)) for pattern in expected)


def _bool(actual: typing.Any, expected: list[typing.Any]) -> bool:
    return str(actual).lower() in [str(v).lower() for v in expected]


def _numeric(compare: typing.Callable[[float, float], bool]) -> typing.Callable[[typing.Any, list[typing.Any]], bool]:
    def check(actual: typing.Any, expected: list[typing.Any]) -> bool:
        actual_numbers = _numbers([actual])
        expected_numbers = _numbers(expected)
        if actual_numbers is None or expected_numbers is None:
            return False
        return any(compare(actual_numbers[0], e) for e in expected_numbers)

    return check


CONDITION_OPERATORS: dict[str, typing.Callable[[typing.Any, list[typing.Any]], bool]] = {
    "StringEquals": _string_equals,
    "StringLike": _string_like,
    "Bool": _bool,
    "NumericLessThan": _numeric(lambda a, e: a < e),
    "NumericLessThanEquals": _numeric(lambda a, e: a <= e),
}


def _action_matches(statement: dict[str, typing.Any], action: str) -> bool:
    return any(
        fnmatch.fnmatchcase(action.lower(), str(pattern).lower()) for pattern in _as_list(statement.get("Action", []))
    )


def _principal_matches(statement: dict[str, typing.Any], principal_arn: str) -> bool:
    principal = statement.get("Principal", {})
    if principal == "*":
        return True

    allowed = _as_list(principal.get("AWS", [])) if isinstance(principal, dict) else []
    account = principal_arn.split(":")[4] if principal_arn.count(":") >= 5 else ""

    return any(
        p in ("*", principal_arn, account, f"arn:aws:iam::{account}:root") for p in allowed
    )


def _conditions_match(statement: dict[str, typing.Any], context: typing.Mapping[str, typing.Any]) -> bool:
    for operator, conditions in statement.get("Condition", {}).items():
        check = CONDITION_OPERATORS.get(operator)
        if check is None:
            msg = f"unsupported condition operator {operator!r}"
            raise ValueError(msg)

        for key, expected in conditions.items():
            if key not in context:
                return False
            if not check(context[key], _as_list(expected)):
                return False

    return True


def evaluate_trust_policy(
    policy: dict[str, typing.Any],
    principal_arn: str,
    context: typing.Mapping[str, typing.Any],
    action: str = ASSUME_ROLE_ACTION,
) -> bool:
    """
    Decide whether a trust policy lets `principal_arn` perform `action`.

    A matching Deny statement wins over any Allow. Actions match
    case-insensitively with `*` and `?` wildcards. NotAction, NotPrincipal and
    condition operators outside CONDITION_OPERATORS are not understood. A
    condition key missing from `context` fails its condition, as IAM does for
    every operator without the IfExists suffix.
    """
    allowed = False
    for statement in _as_list(policy.get("Statement", [])):
        effect = statement.get("Effect")
        if effect not in ("Allow", "Deny"):
            continue
        if not _action_matches(statement, action):
            continue
        if not _principal_matches(statement, principal_arn):
            continue
        if not _conditions_match(statement, context):
            continue

        if effect == "Deny":
            return False
        allowed = True

    return allowed
