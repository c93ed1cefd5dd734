from __future__ import annotations

import pytest

from fake_aws import CTX, FakeClock, FakeEc2
from mint.aws import AwsError
from mint.errors import PreconditionError, StepError
from mint.resize import ResizeRequest, Resizer, validate_instance_type
from mint.waiters import WaitPolicy


def _resize(fake: FakeEc2, target: str, **kwargs):
    return Resizer(fake, clock=FakeClock(), **kwargs).run(CTX, "default", ResizeRequest(target))


def test_resize_to_current_type_is_rejected_without_side_effects():
    fake = FakeEc2()
    fake.add_vm("default", "running", instance_type="t3.medium")

    with pytest.raises(PreconditionError) as exc_info:
        _resize(fake, "t3.medium")

    assert "already running instance type t3.medium" in str(exc_info.value)
    assert fake.call_names() == ["describe_instances"]


def test_running_resize_stops_waits_modifies_then_starts():
    fake = FakeEc2()
    instance_id = fake.add_vm("default", "running", instance_type="t3.medium")

    result = _resize(fake, "m6i.xlarge")

    names = fake.call_names()
    assert fake.mutating_calls() == ["stop_instance", "modify_instance_type", "start_instance"]
    stop_index = names.index("stop_instance")
    modify_index = names.index("modify_instance_type")
    assert "describe_instances" in names[stop_index + 1 : modify_index]
    assert result.was_running is True
    assert result.previous_type == "t3.medium"
    assert result.message == f"VM 'default' ({instance_id}) resized to m6i.xlarge."
    assert fake.instances[instance_id]["InstanceType"] == "m6i.xlarge"


def test_stopped_resize_only_modifies():
    fake = FakeEc2()
    instance_id = fake.add_vm("default", "stopped", instance_type="t3.medium")

    result = _resize(fake, "m6i.2xlarge")

    assert fake.mutating_calls() == ["modify_instance_type"]
    assert result.was_running is False
    assert fake.state_of(instance_id) == "stopped"


def test_unknown_instance_type_is_rejected_before_mutation():
    fake = FakeEc2()
    fake.add_vm("default", "running", instance_type="t3.medium")

    with pytest.raises(PreconditionError) as exc_info:
        _resize(fake, "m99.huge")

    assert "instance type 'm99.huge' is not available in us-west-2" in str(exc_info.value)
    assert fake.mutating_calls() == []


@pytest.mark.parametrize("state", ["pending", "stopping"])
def test_illegal_entry_state_is_rejected_immediately(state):
    fake = FakeEc2()
    fake.add_vm("default", state)

    with pytest.raises(PreconditionError) as exc_info:
        _resize(fake, "m6i.xlarge")

    assert "must be running or stopped" in str(exc_info.value)
    assert fake.call_names() == ["describe_instances"]


def test_missing_vm_is_rejected():
    fake = FakeEc2()

    with pytest.raises(PreconditionError) as exc_info:
        _resize(fake, "m6i.xlarge")

    assert "No VM 'default' found" in str(exc_info.value)


def test_stop_that_never_completes_blocks_modify():
    class StuckStopping(FakeEc2):
        def stop_instance(self, instance_id):
            super().stop_instance(instance_id)
            self.transitions.pop(instance_id)

    fake = StuckStopping()
    fake.add_vm("default", "running", instance_type="t3.medium")

    with pytest.raises(StepError) as exc_info:
        _resize(fake, "m6i.xlarge", wait_policy=WaitPolicy(timeout_seconds=30, poll_seconds=5))

    assert "to stop" in str(exc_info.value)
    assert "timed out" in str(exc_info.value)
    assert "modify_instance_type" not in fake.call_names()


def test_modify_failure_keeps_provider_text():
    fake = FakeEc2()
    fake.add_vm("default", "stopped", instance_type="t3.medium")
    fake.failures["modify_instance_type"] = AwsError(
        "ec2 modify_instance_attribute: Unsupported: not on this AMI", code="Unsupported"
    )

    with pytest.raises(StepError) as exc_info:
        _resize(fake, "m6i.xlarge")

    assert "Unsupported: not on this AMI" in str(exc_info.value)


def test_validate_instance_type_rejects_empty():
    with pytest.raises(PreconditionError):
        validate_instance_type(FakeEc2(), "", "us-west-2")
