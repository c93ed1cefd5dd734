from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping

from mint.aws import DescribeInstancesApi
from mint.tags import (
    TAG_BOOTSTRAP,
    TAG_OWNER,
    TAG_VM,
    filter_by_owner,
    filter_by_owner_and_vm,
    from_tag_list,
    normalize_bootstrap_status,
)

InstanceState = Literal["pending", "running", "shutting-down", "stopping", "stopped", "terminated"]

STATE_PENDING = "pending"
STATE_RUNNING = "running"
STATE_SHUTTING_DOWN = "shutting-down"
STATE_STOPPING = "stopping"
STATE_STOPPED = "stopped"
STATE_TERMINATED = "terminated"

_EXCLUDED_STATES = frozenset({STATE_TERMINATED, STATE_SHUTTING_DOWN})


class VMLookupError(RuntimeError):
    """Raised when tag-based discovery finds more than one live VM for a name."""


@dataclass
class VM:
    id: str
    name: str
    owner: str
    state: str
    instance_type: str
    public_ip: str | None = None
    launch_time: datetime | None = None
    bootstrap_status: str = "unknown"
    tags: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "owner": self.owner,
            "state": self.state,
            "instance_type": self.instance_type,
            "public_ip": self.public_ip,
            "launch_time": self.launch_time.isoformat() if self.launch_time else None,
            "bootstrap_status": self.bootstrap_status,
        }


def instance_state(instance: Mapping[str, Any]) -> str:
    state = instance.get("State") or {}
    return str(state.get("Name") or "")


def parse_instance(instance: Mapping[str, Any]) -> VM:
    tags = from_tag_list(instance.get("Tags"))
    launch_time = instance.get("LaunchTime")
    return VM(
        id=str(instance.get("InstanceId") or ""),
        name=tags.get(TAG_VM, ""),
        owner=tags.get(TAG_OWNER, ""),
        state=instance_state(instance),
        instance_type=str(instance.get("InstanceType") or ""),
        public_ip=instance.get("PublicIpAddress") or None,
        launch_time=launch_time if isinstance(launch_time, datetime) else None,
        bootstrap_status=normalize_bootstrap_status(tags.get(TAG_BOOTSTRAP)),
        tags=tags,
    )


def _describe_live(api: DescribeInstancesApi, filters: list[dict[str, Any]]) -> list[VM]:
    vms: list[VM] = []
    for instance in api.describe_instances(filters=filters):
        if instance_state(instance) in _EXCLUDED_STATES:
            continue
        vms.append(parse_instance(instance))
    return vms


def find_vm(api: DescribeInstancesApi, owner: str, vm_name: str) -> VM | None:
    """Return the live VM tagged with owner and vm_name, or None when absent."""
    vms = _describe_live(api, filter_by_owner_and_vm(owner, vm_name))
    if not vms:
        return None
    if len(vms) > 1:
        ids = ", ".join(vm.id for vm in vms)
        raise VMLookupError(
            f"Error: Multiple VMs found for owner '{owner}', vm '{vm_name}' ({len(vms)} instances: {ids}).\n"
            "Terminate the extra instances before retrying."
        )
    return vms[0]


def list_vms(api: DescribeInstancesApi, owner: str) -> list[VM]:
    return sorted(_describe_live(api, filter_by_owner(owner)), key=lambda vm: (vm.name, vm.id))
