from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Protocol, TypeVar

from mint.aws import (
    AwsError,
    DescribeInstancesApi,
    DescribeInstanceTypesApi,
    ModifyInstanceTypeApi,
    StartInstancesApi,
    StopInstancesApi,
)
from mint.errors import PreconditionError, StepError
from mint.identity import OwnerContext
from mint.progress import ProgressWriter, quiet
from mint.vm import STATE_RUNNING, STATE_STOPPED, find_vm
from mint.waiters import (
    DEFAULT_INSTANCE_WAIT,
    Clock,
    WaitCancelledError,
    WaitFailedError,
    WaitPolicy,
    WaitTimeoutError,
    wait_for_instance_state,
)

T = TypeVar("T")

_RESIZABLE_STATES = frozenset({STATE_RUNNING, STATE_STOPPED})


@dataclass(frozen=True)
class ResizeRequest:
    instance_type: str


@dataclass
class ResizeResult:
    instance_id: str
    vm_name: str
    previous_type: str
    instance_type: str
    was_running: bool

    @property
    def message(self) -> str:
        return f"VM '{self.vm_name}' ({self.instance_id}) resized to {self.instance_type}."

    def as_dict(self) -> dict[str, object]:
        return {
            "instance_id": self.instance_id,
            "vm_name": self.vm_name,
            "previous_type": self.previous_type,
            "instance_type": self.instance_type,
            "was_running": self.was_running,
            "message": self.message,
        }


class ResizeApi(
    DescribeInstancesApi,
    DescribeInstanceTypesApi,
    StopInstancesApi,
    StartInstancesApi,
    ModifyInstanceTypeApi,
    Protocol,
):
    pass


def validate_instance_type(api: DescribeInstanceTypesApi, instance_type: str, region: str) -> None:
    if not instance_type:
        raise PreconditionError("Error: Instance type must not be empty.")
    try:
        offered = api.describe_instance_types(instance_type)
    except AwsError as exc:
        raise PreconditionError(f"Error: Validating instance type '{instance_type}' failed: {exc}") from exc
    if not offered:
        raise PreconditionError(
            f"Error: Invalid instance type: instance type '{instance_type}' is not available in {region}."
        )


class Resizer:
    """Change a VM's instance type, stopping and restarting it only when it was running."""

    def __init__(
        self,
        api: ResizeApi,
        *,
        wait_policy: WaitPolicy = DEFAULT_INSTANCE_WAIT,
        clock: Clock | None = None,
        progress: ProgressWriter | None = None,
    ) -> None:
        self.api = api
        self.wait_policy = wait_policy
        self.clock = clock
        self.progress = progress or quiet()

    def run(
        self,
        ctx: OwnerContext,
        vm_name: str,
        request: ResizeRequest,
        cancel: threading.Event | None = None,
    ) -> ResizeResult:
        target = request.instance_type
        self.progress.line(f"Discovering VM '{vm_name}' for owner '{ctx.owner}'...")
        found = find_vm(self.api, ctx.owner, vm_name)
        if found is None:
            raise PreconditionError(f"Error: No VM '{vm_name}' found. Run 'mint up' first to create one.")
        if found.state not in _RESIZABLE_STATES:
            raise PreconditionError(
                f"Error: VM '{vm_name}' is {found.state}; it must be running or stopped to resize."
            )
        if found.instance_type == target:
            raise PreconditionError(f"Error: VM '{vm_name}' is already running instance type {target}.")

        self.progress.line(f"Validating instance type '{target}'...")
        validate_instance_type(self.api, target, ctx.region)

        was_running = found.state == STATE_RUNNING
        if was_running:
            self.progress.line(f"Stopping instance {found.id}...")
            self._step(f"stopping instance {found.id}", lambda: self.api.stop_instance(found.id))
            self.progress.line(f"Waiting for instance {found.id} to stop...")
            self._step(
                f"waiting for instance {found.id} to stop",
                lambda: wait_for_instance_state(
                    self.api,
                    found.id,
                    STATE_STOPPED,
                    policy=self.wait_policy,
                    clock=self.clock,
                    cancel=cancel,
                ),
            )

        self.progress.line(f"Modifying instance type to {target}...")
        self._step(
            f"modifying instance type of {found.id}",
            lambda: self.api.modify_instance_type(found.id, target),
        )

        if was_running:
            self.progress.line(f"Starting instance {found.id}...")
            self._step(f"starting instance {found.id}", lambda: self.api.start_instance(found.id))

        return ResizeResult(
            instance_id=found.id,
            vm_name=vm_name,
            previous_type=found.instance_type,
            instance_type=target,
            was_running=was_running,
        )

    def _step(self, step: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except (AwsError, WaitTimeoutError, WaitFailedError, WaitCancelledError) as exc:
            raise StepError(step, exc) from exc
