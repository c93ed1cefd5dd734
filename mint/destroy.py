from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Protocol

from mint.aws import (
    AwsError,
    DeleteVolumeApi,
    DescribeAddressesApi,
    DescribeInstancesApi,
    DescribeVolumesApi,
    DetachVolumeApi,
    ReleaseAddressApi,
    TerminateInstancesApi,
)
from mint.errors import PreconditionError, StepError
from mint.identity import OwnerContext
from mint.progress import ProgressWriter, quiet
from mint.tags import COMPONENT_ELASTIC_IP, COMPONENT_PROJECT_VOLUME, filter_by_component
from mint.vm import STATE_TERMINATED, find_vm
from mint.waiters import (
    DEFAULT_INSTANCE_WAIT,
    Clock,
    WaitCancelledError,
    WaitFailedError,
    WaitPolicy,
    WaitTimeoutError,
    wait_for_instance_state,
)


@dataclass
class DestroyResult:
    instance_id: str
    volumes_deleted: int = 0
    address_released: bool = False
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def as_dict(self) -> dict[str, object]:
        return {
            "instance_id": self.instance_id,
            "volumes_deleted": self.volumes_deleted,
            "address_released": self.address_released,
            "warnings": list(self.warnings),
        }


class DestroyApi(
    DescribeInstancesApi,
    TerminateInstancesApi,
    DescribeVolumesApi,
    DetachVolumeApi,
    DeleteVolumeApi,
    DescribeAddressesApi,
    ReleaseAddressApi,
    Protocol,
):
    pass


class Destroyer:
    """Terminate a VM, then clean up its project volumes and Elastic IP.

    Only the terminate call is fatal. Every later failure is appended to the
    result's warnings and the sequence continues. The owner's shared
    persistent storage is never touched.
    """

    def __init__(
        self,
        api: DestroyApi,
        *,
        wait_for_termination: bool = True,
        wait_policy: WaitPolicy = DEFAULT_INSTANCE_WAIT,
        clock: Clock | None = None,
        progress: ProgressWriter | None = None,
    ) -> None:
        self.api = api
        self.wait_for_termination = wait_for_termination
        self.wait_policy = wait_policy
        self.clock = clock
        self.progress = progress or quiet()

    def run(
        self,
        ctx: OwnerContext,
        vm_name: str,
        *,
        confirmed: bool,
        cancel: threading.Event | None = None,
    ) -> DestroyResult:
        if not confirmed:
            raise PreconditionError("Error: Destroy not confirmed.")
        found = find_vm(self.api, ctx.owner, vm_name)
        if found is None:
            raise PreconditionError(f"Error: No VM '{vm_name}' found for owner '{ctx.owner}'. Nothing to destroy.")

        result = DestroyResult(instance_id=found.id)
        self.progress.line(f"Terminating instance {found.id}...")
        try:
            self.api.terminate_instance(found.id)
        except AwsError as exc:
            raise StepError(f"terminating instance {found.id}", exc) from exc

        if self.wait_for_termination:
            self._wait_terminated(found.id, result, cancel)
        self._delete_project_volumes(ctx.owner, vm_name, result)
        self._release_addresses(ctx.owner, vm_name, result)
        return result

    def _wait_terminated(self, instance_id: str, result: DestroyResult, cancel: threading.Event | None) -> None:
        self.progress.line(f"Waiting for instance {instance_id} to terminate...")
        try:
            wait_for_instance_state(
                self.api,
                instance_id,
                STATE_TERMINATED,
                policy=self.wait_policy,
                clock=self.clock,
                cancel=cancel,
            )
        except (AwsError, WaitTimeoutError, WaitFailedError, WaitCancelledError) as exc:
            self._warn(result, f"failed waiting for instance {instance_id} to terminate: {exc}")

    def _delete_project_volumes(self, owner: str, vm_name: str, result: DestroyResult) -> None:
        try:
            volumes = self.api.describe_volumes(
                filters=filter_by_component(owner, vm_name, COMPONENT_PROJECT_VOLUME)
            )
        except AwsError as exc:
            self._warn(result, f"failed to discover project volumes: {exc}")
            return

        for volume in volumes:
            volume_id = str(volume.get("VolumeId") or "")
            if volume.get("State") == "in-use":
                self.progress.detail(f"Detaching volume {volume_id}")
                try:
                    self.api.detach_volume(volume_id, force=True)
                except AwsError as exc:
                    # Delete is still attempted.
                    self._warn(result, f"failed to detach volume {volume_id}: {exc}")
            self.progress.detail(f"Deleting volume {volume_id}")
            try:
                self.api.delete_volume(volume_id)
            except AwsError as exc:
                self._warn(result, f"failed to delete volume {volume_id}: {exc}")
                continue
            result.volumes_deleted += 1

    def _release_addresses(self, owner: str, vm_name: str, result: DestroyResult) -> None:
        try:
            addresses = self.api.describe_addresses(
                filters=filter_by_component(owner, vm_name, COMPONENT_ELASTIC_IP)
            )
        except AwsError as exc:
            self._warn(result, f"failed to discover Elastic IP: {exc}")
            return

        for address in addresses:
            allocation_id = str(address.get("AllocationId") or "")
            self.progress.detail(f"Releasing Elastic IP {allocation_id}")
            try:
                self.api.release_address(allocation_id)
            except AwsError as exc:
                self._warn(result, f"failed to release Elastic IP {allocation_id}: {exc}")
                continue
            result.address_released = True

    def _warn(self, result: DestroyResult, message: str) -> None:
        result.warn(message)
        self.progress.detail(f"Warning: {message}")
