from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from mint.aws import AwsError, DescribeInstancesApi, StopInstancesApi
from mint.errors import PreconditionError, StepError
from mint.identity import OwnerContext
from mint.progress import ProgressWriter, quiet
from mint.vm import STATE_PENDING, STATE_STOPPED, STATE_STOPPING, find_vm


@dataclass
class StopResult:
    instance_id: str
    vm_name: str
    already_stopped: bool

    @property
    def message(self) -> str:
        if self.already_stopped:
            return f"VM '{self.vm_name}' ({self.instance_id}) is already stopped."
        return f"VM '{self.vm_name}' ({self.instance_id}) stopped. Volumes and Elastic IP persist."

    def as_dict(self) -> dict[str, object]:
        return {
            "instance_id": self.instance_id,
            "vm_name": self.vm_name,
            "already_stopped": self.already_stopped,
            "message": self.message,
        }


class StopApi(DescribeInstancesApi, StopInstancesApi, Protocol):
    pass


class Stopper:
    """Stop a running VM; its project volume and Elastic IP are kept for the next up."""

    def __init__(self, api: StopApi, *, progress: ProgressWriter | None = None) -> None:
        self.api = api
        self.progress = progress or quiet()

    def run(self, ctx: OwnerContext, vm_name: str) -> StopResult:
        self.progress.detail(f"Discovering VM '{vm_name}' for owner '{ctx.owner}'...")
        found = find_vm(self.api, ctx.owner, vm_name)
        if found is None:
            raise PreconditionError(f"Error: No VM '{vm_name}' found. Run 'mint up' first to create one.")
        if found.state in (STATE_STOPPED, STATE_STOPPING):
            return StopResult(instance_id=found.id, vm_name=vm_name, already_stopped=True)
        if found.state == STATE_PENDING:
            raise PreconditionError(
                f"Error: VM '{vm_name}' ({found.id}) is pending. Wait for it to start, then retry."
            )

        self.progress.line(f"Stopping instance {found.id}...")
        try:
            self.api.stop_instance(found.id)
        except AwsError as exc:
            raise StepError(f"stopping instance {found.id}", exc) from exc
        return StopResult(instance_id=found.id, vm_name=vm_name, already_stopped=False)
