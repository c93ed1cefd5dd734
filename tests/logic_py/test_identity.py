from __future__ import annotations

import pytest

from mint.identity import IdentityError, OwnerContext, normalize_arn, resolve_owner


@pytest.mark.parametrize(
    ("arn", "expected"),
    [
        ("arn:aws:iam::123456789012:user/ryan", "ryan"),
        ("arn:aws:iam::123456789012:root", "root"),
        ("arn:aws:sts::123456789012:assumed-role/DevRole/Ryan.Smith@example.com", "ryan-smith"),
        ("arn:aws:sts::123456789012:assumed-role/AWSReservedSSO_Dev/__jo__ann__", "jo-ann"),
        ("arn:aws:iam::123456789012:user/path/to/Build_Bot", "build-bot"),
    ],
)
def test_normalize_arn(arn, expected):
    assert normalize_arn(arn) == expected


@pytest.mark.parametrize(
    "arn",
    ["", "not-an-arn", "arn:aws:iam::123456789012:", "arn:aws:iam::123456789012:user/", "arn:aws:iam::1:user/@@@"],
)
def test_normalize_arn_rejects_unusable_values(arn):
    with pytest.raises(IdentityError):
        normalize_arn(arn)


def test_resolve_owner_uses_caller_identity():
    class FakeSts:
        def get_caller_identity(self):
            return {"Arn": "arn:aws:iam::123456789012:user/Alice", "Account": "123456789012"}

    ctx = resolve_owner(FakeSts(), "eu-west-1")

    assert ctx == OwnerContext(owner="alice", owner_arn="arn:aws:iam::123456789012:user/Alice", region="eu-west-1")
