from __future__ import annotations

import re
from dataclasses import dataclass

from mint.aws import GetCallerIdentityApi
from mint.errors import UserFacingError

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


class IdentityError(UserFacingError):
    """Raised when the caller ARN cannot be turned into an owner name."""


@dataclass(frozen=True)
class OwnerContext:
    owner: str
    owner_arn: str
    region: str


def normalize_arn(arn: str) -> str:
    """Derive a tag-safe owner name from the trailing identifier of an ARN.

    ``arn:aws:sts::123:assumed-role/Dev/Ryan.Smith@example.com`` becomes
    ``ryan-smith``.
    """
    if not arn:
        raise IdentityError("Error: Caller identity returned an empty ARN.")
    parts = arn.split(":", 5)
    if len(parts) < 6 or not parts[5]:
        raise IdentityError(f"Error: Malformed caller ARN: {arn}")

    identifier = parts[5].split("/")[-1]
    at = identifier.find("@")
    if at > 0:
        identifier = identifier[:at]
    identifier = _NON_ALNUM_RE.sub("-", identifier.lower()).strip("-")
    if not identifier:
        raise IdentityError(f"Error: Caller ARN normalized to an empty owner name: {arn}")
    return identifier


def resolve_owner(api: GetCallerIdentityApi, region: str) -> OwnerContext:
    identity = api.get_caller_identity()
    arn = str(identity.get("Arn") or "")
    return OwnerContext(owner=normalize_arn(arn), owner_arn=arn, region=region)
