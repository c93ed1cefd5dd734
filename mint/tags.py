from __future__ import annotations

from typing import Any, Iterable, Mapping

TAG_MINT = "mint"
TAG_COMPONENT = "mint:component"
TAG_VM = "mint:vm"
TAG_OWNER = "mint:owner"
TAG_OWNER_ARN = "mint:owner-arn"
TAG_BOOTSTRAP = "mint:bootstrap"
TAG_BOOTSTRAP_FAILURE_PHASE = "mint:bootstrap-failure-phase"
TAG_NAME = "Name"
TAG_ROOT_VOLUME_GB = "mint:root-volume-gb"
TAG_PROJECT_VOLUME_GB = "mint:project-volume-gb"

COMPONENT_INSTANCE = "instance"
COMPONENT_PROJECT_VOLUME = "project-volume"
COMPONENT_ELASTIC_IP = "elastic-ip"
COMPONENT_SECURITY_GROUP = "security-group"
COMPONENT_ADMIN = "admin"

BOOTSTRAP_PENDING = "pending"
BOOTSTRAP_COMPLETE = "complete"
BOOTSTRAP_FAILED = "failed"
BOOTSTRAP_UNKNOWN = "unknown"
BOOTSTRAP_STATUSES = frozenset({BOOTSTRAP_PENDING, BOOTSTRAP_COMPLETE, BOOTSTRAP_FAILED})

Filter = dict[str, Any]


def display_name(owner: str, vm_name: str) -> str:
    return f"mint/{owner}/{vm_name}"


def resource_tags(
    owner: str,
    owner_arn: str,
    vm_name: str,
    *,
    component: str = "",
    bootstrap: str = "",
    extra: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the tag set every Mint-managed resource carries.

    The marker, owner, owner ARN, VM and Name tags are always present;
    component and bootstrap tags are added only when given.
    """
    tags = {
        TAG_MINT: "true",
        TAG_OWNER: owner,
        TAG_OWNER_ARN: owner_arn,
        TAG_VM: vm_name,
        TAG_NAME: display_name(owner, vm_name),
    }
    if component:
        tags[TAG_COMPONENT] = component
    if bootstrap:
        tags[TAG_BOOTSTRAP] = bootstrap
    if extra:
        tags.update(extra)
    return tags


def to_tag_list(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def from_tag_list(tag_list: Iterable[Mapping[str, Any]] | None) -> dict[str, str]:
    tags: dict[str, str] = {}
    for tag in tag_list or ():
        key = tag.get("Key")
        if isinstance(key, str):
            value = tag.get("Value")
            tags[key] = value if isinstance(value, str) else ""
    return tags


def tag_specification(resource_type: str, tags: Mapping[str, str]) -> dict[str, Any]:
    return {"ResourceType": resource_type, "Tags": to_tag_list(tags)}


def tag_filter(key: str, *values: str) -> Filter:
    return {"Name": f"tag:{key}", "Values": list(values)}


def filter_by_owner(owner: str) -> list[Filter]:
    return [tag_filter(TAG_MINT, "true"), tag_filter(TAG_OWNER, owner)]


def filter_by_owner_and_vm(owner: str, vm_name: str) -> list[Filter]:
    return [*filter_by_owner(owner), tag_filter(TAG_VM, vm_name)]


def filter_by_component(owner: str, vm_name: str, component: str) -> list[Filter]:
    return [*filter_by_owner_and_vm(owner, vm_name), tag_filter(TAG_COMPONENT, component)]


def normalize_bootstrap_status(value: str | None) -> str:
    if value in BOOTSTRAP_STATUSES:
        return value
    return BOOTSTRAP_UNKNOWN
