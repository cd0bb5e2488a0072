from __future__ import annotations

import enum
import typing

from botocore.exceptions import ClientError, WaiterError


class EkslabError(Exception):
    pass


class ConfigError(EkslabError):
    pass


class ManifestError(EkslabError):
    pass


class FetchError(EkslabError):
    pass


class ToolError(EkslabError):
    def __init__(self, command: typing.Sequence[str], returncode: int | None, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"{self.command[0]!r} failed: {detail}")


class WaitTimeout(EkslabError):
    def __init__(self, description: str, elapsed: float, attempts: int):
        self.description = description
        self.elapsed = elapsed
        self.attempts = attempts
        super().__init__(f"timed out after {elapsed:.0f}s ({attempts} attempts) waiting for {description}")


class WaitCancelled(EkslabError):
    pass


class StepFailed(EkslabError):
    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"step {step!r} failed: {cause}")


class ErrorKind(enum.StrEnum):
    NOT_FOUND = "not-found"
    ALREADY_EXISTS = "already-exists"
    PERMISSION_DENIED = "permission-denied"
    DEPENDENCY_CONFLICT = "dependency-conflict"
    THROTTLED = "throttled"
    UNKNOWN = "unknown"


class Policy(enum.StrEnum):
    IGNORE = "ignore"
    RETRY = "retry"
    ESCALATE = "escalate"


_CODES: dict[str, ErrorKind] = {
    "NoSuchEntity": ErrorKind.NOT_FOUND,
    "ResourceNotFoundException": ErrorKind.NOT_FOUND,
    "NotFoundException": ErrorKind.NOT_FOUND,
    "Gateway.NotAttached": ErrorKind.NOT_FOUND,
    "LoadBalancerNotFound": ErrorKind.NOT_FOUND,
    "EntityAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "InvalidPermission.Duplicate": ErrorKind.ALREADY_EXISTS,
    "Resource.AlreadyAssociated": ErrorKind.ALREADY_EXISTS,
    "AccessDenied": ErrorKind.PERMISSION_DENIED,
    "AccessDeniedException": ErrorKind.PERMISSION_DENIED,
    "UnauthorizedOperation": ErrorKind.PERMISSION_DENIED,
    "AuthFailure": ErrorKind.PERMISSION_DENIED,
    "InvalidClientTokenId": ErrorKind.PERMISSION_DENIED,
    "ExpiredToken": ErrorKind.PERMISSION_DENIED,
    "DependencyViolation": ErrorKind.DEPENDENCY_CONFLICT,
    "DeleteConflict": ErrorKind.DEPENDENCY_CONFLICT,
    "ResourceInUseException": ErrorKind.DEPENDENCY_CONFLICT,
    "ConcurrentModification": ErrorKind.DEPENDENCY_CONFLICT,
    "IncorrectState": ErrorKind.DEPENDENCY_CONFLICT,
    "Throttling": ErrorKind.THROTTLED,
    "ThrottlingException": ErrorKind.THROTTLED,
    "RequestLimitExceeded": ErrorKind.THROTTLED,
    "TooManyRequestsException": ErrorKind.THROTTLED,
}

TEARDOWN_POLICIES: dict[ErrorKind, Policy] = {
    ErrorKind.NOT_FOUND: Policy.IGNORE,
    ErrorKind.ALREADY_EXISTS: Policy.ESCALATE,
    ErrorKind.PERMISSION_DENIED: Policy.ESCALATE,
    ErrorKind.DEPENDENCY_CONFLICT: Policy.RETRY,
    ErrorKind.THROTTLED: Policy.RETRY,
    ErrorKind.UNKNOWN: Policy.ESCALATE,
}

def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")

    if isinstance(exc, WaiterError):
        return (exc.last_response or {}).get("Error", {}).get("Code", "")

    return ""


def error_message(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Message", str(exc))

    return str(exc)


def classify(exc: BaseException) -> ErrorKind:
    code = error_code(exc)
    if code == "":
        return ErrorKind.UNKNOWN

    if code in _CODES:
        return _CODES[code]

    # EC2 spells most of these as `<Resource>.NotFound` / `<Resource>.AlreadyExists`
    if code.endswith(("NotFound", ".NotFound")):
        return ErrorKind.NOT_FOUND

    if code.endswith(("AlreadyExists", ".Duplicate")):
        return ErrorKind.ALREADY_EXISTS

    return ErrorKind.UNKNOWN


def policy_for(exc: BaseException, policies: typing.Mapping[ErrorKind, Policy]) -> Policy:
    return policies.get(classify(exc), Policy.ESCALATE)


def is_kind(exc: BaseException, *kinds: ErrorKind) -> bool:
    return classify(exc) in kinds
