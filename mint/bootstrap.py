from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from pathlib import Path

from mint.aws import AwsError, DescribeInstancesApi
from mint.errors import PreconditionError
from mint.progress import ProgressWriter, quiet
from mint.tags import BOOTSTRAP_COMPLETE, BOOTSTRAP_FAILED, TAG_BOOTSTRAP_FAILURE_PHASE
from mint.vm import VM, VMLookupError, find_vm
from mint.waiters import (
    Clock,
    SystemClock,
    WaitCancelledError,
    WaitPolicy,
    WaitTimeoutError,
    format_elapsed,
    poll_until,
)

DEFAULT_BOOTSTRAP_POLICY = WaitPolicy(timeout_seconds=15 * 60, poll_seconds=15)
USER_DATA_TEMPLATE = Path(__file__).resolve().with_name("userdata.sh")
_PLACEHOLDER_RE = re.compile(r"__MINT_[A-Z_]+__")

OUTCOME_COMPLETE = "complete"
OUTCOME_FAILED = "failed"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_CANCELLED = "cancelled"


@dataclass(frozen=True)
class BootstrapOutcome:
    status: str
    error: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == OUTCOME_COMPLETE


def failure_phase(vm: VM) -> str:
    return vm.tags.get(TAG_BOOTSTRAP_FAILURE_PHASE, "")


def bootstrap_failed_message(instance_id: str, phase: str = "") -> str:
    if phase:
        return f"bootstrap failed on instance {instance_id} (phase: {phase})"
    return f"bootstrap failed on instance {instance_id}"


def load_user_data_template(path: Path = USER_DATA_TEMPLATE) -> str:
    return path.read_text(encoding="utf-8")


def render_user_data(
    template: str,
    *,
    vm_name: str,
    project_device: str,
    idle_timeout_minutes: int,
) -> str:
    rendered = (
        template.replace("__MINT_VM_NAME__", vm_name)
        .replace("__MINT_PROJECT_DEV__", project_device)
        .replace("__MINT_IDLE_TIMEOUT__", str(idle_timeout_minutes))
    )
    leftover = sorted(set(_PLACEHOLDER_RE.findall(rendered)))
    if leftover:
        raise PreconditionError(
            f"Error: User data template has unsubstituted placeholders: {', '.join(leftover)}"
        )
    return rendered


class BootstrapPoller:
    """Watch the guest-reported bootstrap tag until it settles or the budget runs out.

    Outcomes other than complete are advisory: they are returned, never raised,
    so the caller can still hand back a usable VM.
    """

    def __init__(
        self,
        api: DescribeInstancesApi,
        *,
        policy: WaitPolicy = DEFAULT_BOOTSTRAP_POLICY,
        clock: Clock | None = None,
        progress: ProgressWriter | None = None,
    ) -> None:
        self.api = api
        self.policy = policy
        self.clock = clock or SystemClock()
        self.progress = progress or quiet()

    def poll(
        self,
        owner: str,
        vm_name: str,
        instance_id: str,
        cancel: threading.Event | None = None,
    ) -> BootstrapOutcome:
        start = self.clock.monotonic()

        def elapsed() -> float:
            return self.clock.monotonic() - start

        def check() -> BootstrapOutcome | None:
            try:
                found = find_vm(self.api, owner, vm_name)
            except VMLookupError as exc:
                # Duplicate VMs never resolve by waiting.
                detail = str(exc).removeprefix("Error: ")
                message = f"bootstrap check for instance {instance_id} failed: {detail}"
                self.progress.line(f"Bootstrap failed: {message}")
                return BootstrapOutcome(OUTCOME_FAILED, error=message, elapsed_seconds=elapsed())
            except AwsError as exc:
                # Transient describe failures do not end the wait.
                self.progress.line(
                    f"Waiting for bootstrap... {format_elapsed(elapsed())} (check failed: {exc})"
                )
                return None
            if found is None:
                self.progress.line(
                    f"Waiting for bootstrap... {format_elapsed(elapsed())} "
                    f"(check failed: VM not found for owner '{owner}', vm '{vm_name}')"
                )
                return None
            if found.bootstrap_status == BOOTSTRAP_COMPLETE:
                self.progress.line("Bootstrap complete.")
                return BootstrapOutcome(OUTCOME_COMPLETE, elapsed_seconds=elapsed())
            if found.bootstrap_status == BOOTSTRAP_FAILED:
                message = bootstrap_failed_message(instance_id, failure_phase(found))
                self.progress.line(f"Bootstrap failed: {message}")
                return BootstrapOutcome(OUTCOME_FAILED, error=message, elapsed_seconds=elapsed())
            self.progress.line(f"Waiting for bootstrap... {format_elapsed(elapsed())}")
            return None

        try:
            return poll_until(
                check,
                description=f"bootstrap of instance {instance_id}",
                policy=self.policy,
                clock=self.clock,
                cancel=cancel,
            )
        except WaitTimeoutError:
            self.progress.line(f"Bootstrap timed out. Instance {instance_id} left running.")
            return BootstrapOutcome(
                OUTCOME_TIMEOUT,
                error=f"bootstrap timed out for instance {instance_id} after {format_elapsed(elapsed())}",
                elapsed_seconds=elapsed(),
            )
        except WaitCancelledError:
            return BootstrapOutcome(
                OUTCOME_CANCELLED,
                error=f"bootstrap poll cancelled for instance {instance_id}",
                elapsed_seconds=elapsed(),
            )
