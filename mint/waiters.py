from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar

from mint.aws import (
    INSTANCE_NOT_FOUND_CODE,
    VOLUME_NOT_FOUND_CODE,
    AwsError,
    DescribeInstancesApi,
    DescribeVolumesApi,
)
from mint.vm import (
    STATE_PENDING,
    STATE_RUNNING,
    STATE_SHUTTING_DOWN,
    STATE_STOPPED,
    STATE_STOPPING,
    STATE_TERMINATED,
    instance_state,
)

T = TypeVar("T")

# States from which the target can no longer be reached; mirrors the failure
# acceptors of the EC2 instance waiters.
_INSTANCE_FAILURE_STATES: dict[str, frozenset[str]] = {
    STATE_RUNNING: frozenset({STATE_SHUTTING_DOWN, STATE_TERMINATED, STATE_STOPPING}),
    STATE_STOPPED: frozenset({STATE_PENDING, STATE_TERMINATED}),
    STATE_TERMINATED: frozenset({STATE_PENDING, STATE_STOPPING}),
}
_VOLUME_FAILURE_STATES = frozenset({"deleted", "error"})


class WaitTimeoutError(RuntimeError):
    """Raised when a bounded wait reaches its deadline."""


class WaitCancelledError(RuntimeError):
    """Raised when the caller's cancel event is set during a wait."""


class WaitFailedError(RuntimeError):
    """Raised when a resource enters a state from which the target is unreachable."""


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> None: ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> None:
        if cancel is None:
            time.sleep(seconds)
            return
        cancel.wait(seconds)


@dataclass(frozen=True)
class WaitPolicy:
    timeout_seconds: float
    poll_seconds: float


DEFAULT_INSTANCE_WAIT = WaitPolicy(timeout_seconds=600, poll_seconds=5)
DEFAULT_VOLUME_WAIT = WaitPolicy(timeout_seconds=300, poll_seconds=3)


def format_elapsed(seconds: float) -> str:
    total = int(round(seconds))
    minutes, secs = divmod(total, 60)
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def poll_until(
    check: Callable[[], T | None],
    *,
    description: str,
    policy: WaitPolicy,
    clock: Clock | None = None,
    cancel: threading.Event | None = None,
) -> T:
    """Call check at a fixed interval until it returns a value.

    Sleeps are clipped to the remaining budget, so the loop never blocks past
    its deadline. Exceptions raised by check propagate unchanged.
    """
    clock = clock or SystemClock()
    start = clock.monotonic()
    deadline = start + policy.timeout_seconds
    while True:
        if cancel is not None and cancel.is_set():
            raise WaitCancelledError(f"cancelled while waiting for {description}")
        result = check()
        if result is not None:
            return result
        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            elapsed = format_elapsed(clock.monotonic() - start)
            raise WaitTimeoutError(f"timed out after {elapsed} waiting for {description}")
        clock.sleep(min(policy.poll_seconds, remaining), cancel)


def wait_for_instance_state(
    api: DescribeInstancesApi,
    instance_id: str,
    target: str,
    *,
    policy: WaitPolicy = DEFAULT_INSTANCE_WAIT,
    clock: Clock | None = None,
    cancel: threading.Event | None = None,
) -> dict[str, Any]:
    failure_states = _INSTANCE_FAILURE_STATES.get(target, frozenset())

    def check() -> dict[str, Any] | None:
        try:
            instances = api.describe_instances(instance_ids=[instance_id])
        except AwsError as exc:
            # Freshly launched instances may not be visible yet.
            if exc.code == INSTANCE_NOT_FOUND_CODE and target != STATE_TERMINATED:
                return None
            if exc.code == INSTANCE_NOT_FOUND_CODE:
                return {"InstanceId": instance_id, "State": {"Name": STATE_TERMINATED}}
            raise
        if not instances:
            if target == STATE_TERMINATED:
                return {"InstanceId": instance_id, "State": {"Name": STATE_TERMINATED}}
            return None
        instance = instances[0]
        state = instance_state(instance)
        if state == target:
            return instance
        if state in failure_states:
            raise WaitFailedError(
                f"instance {instance_id} entered state '{state}' while waiting for '{target}'"
            )
        return None

    return poll_until(
        check,
        description=f"instance {instance_id} to be {target}",
        policy=policy,
        clock=clock,
        cancel=cancel,
    )


def wait_for_volume_available(
    api: DescribeVolumesApi,
    volume_id: str,
    *,
    policy: WaitPolicy = DEFAULT_VOLUME_WAIT,
    clock: Clock | None = None,
    cancel: threading.Event | None = None,
) -> dict[str, Any]:
    def check() -> dict[str, Any] | None:
        try:
            volumes = api.describe_volumes(volume_ids=[volume_id])
        except AwsError as exc:
            if exc.code == VOLUME_NOT_FOUND_CODE:
                return None
            raise
        if not volumes:
            return None
        volume = volumes[0]
        state = str(volume.get("State") or "")
        if state == "available":
            return volume
        if state in _VOLUME_FAILURE_STATES:
            raise WaitFailedError(f"volume {volume_id} entered state '{state}' while waiting for 'available'")
        return None

    return poll_until(
        check,
        description=f"volume {volume_id} to be available",
        policy=policy,
        clock=clock,
        cancel=cancel,
    )
