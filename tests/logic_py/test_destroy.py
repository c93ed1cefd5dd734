from __future__ import annotations

import pytest

from fake_aws import CTX, FakeClock, FakeEc2
from mint.aws import AwsError
from mint.destroy import Destroyer
from mint.errors import PreconditionError, StepError
from mint.waiters import WaitPolicy


def _destroy(fake: FakeEc2, **kwargs):
    return Destroyer(fake, clock=FakeClock(), **kwargs).run(CTX, "default", confirmed=True)


def test_destroy_with_one_failing_volume_delete_reports_warning():
    fake = FakeEc2()
    instance_id = fake.add_vm("default", "running")
    fake.add_volume("alice", "default")
    bad_volume = fake.add_volume("alice", "default")
    allocation_id = fake.add_address("alice", "default")
    fake.failures[f"delete_volume:{bad_volume}"] = AwsError(
        "ec2 delete_volume: VolumeInUse: still attached", code="VolumeInUse"
    )

    result = _destroy(fake)

    assert result.instance_id == instance_id
    assert fake.state_of(instance_id) == "terminated"
    assert result.volumes_deleted == 1
    assert result.address_released is True
    assert result.warnings == [
        f"failed to delete volume {bad_volume}: ec2 delete_volume: VolumeInUse: still attached"
    ]
    assert allocation_id not in fake.addresses


def test_destroy_order_terminates_first_then_volumes_then_address():
    fake = FakeEc2()
    fake.add_vm("default", "running")
    fake.add_volume("alice", "default")
    fake.add_address("alice", "default")

    _destroy(fake)

    assert fake.mutating_calls() == ["terminate_instance", "delete_volume", "release_address"]
    names = fake.call_names()
    assert names.index("describe_instances", 1) < names.index("describe_volumes")


def test_destroy_only_touches_this_vms_project_volumes():
    fake = FakeEc2()
    fake.add_vm("default", "running")
    mine = fake.add_volume("alice", "default")
    other_vm = fake.add_volume("alice", "other")
    other_owner = fake.add_volume("bob", "default")
    root_like = fake.add_volume("alice", "default", component="root")

    _destroy(fake)

    assert mine not in fake.volumes
    assert {other_vm, other_owner, root_like} <= set(fake.volumes)


def test_in_use_volume_is_force_detached_before_delete():
    fake = FakeEc2()
    fake.add_vm("default", "running")
    volume_id = fake.add_volume("alice", "default", state="in-use")

    result = _destroy(fake, wait_for_termination=False)

    assert ("detach_volume", (volume_id, True)) in fake.calls
    assert fake.mutating_calls() == ["terminate_instance", "detach_volume", "delete_volume"]
    assert result.volumes_deleted == 1


def test_detach_failure_is_a_warning_and_delete_is_still_attempted():
    fake = FakeEc2()
    fake.add_vm("default", "running")
    volume_id = fake.add_volume("alice", "default", state="in-use")
    fake.failures["detach_volume"] = AwsError("ec2 detach_volume: IncorrectState: busy", code="IncorrectState")

    result = _destroy(fake)

    assert result.warnings == [f"failed to detach volume {volume_id}: ec2 detach_volume: IncorrectState: busy"]
    assert result.volumes_deleted == 1


def test_volume_discovery_failure_does_not_block_address_release():
    fake = FakeEc2()
    fake.add_vm("default", "running")
    fake.add_address("alice", "default")
    fake.failures["describe_volumes"] = AwsError("ec2 describe_volumes: Throttling: slow", code="Throttling")

    result = _destroy(fake, wait_for_termination=False)

    assert result.address_released is True
    assert result.warnings == ["failed to discover project volumes: ec2 describe_volumes: Throttling: slow"]


def test_release_failure_is_recorded_after_volume_warnings():
    fake = FakeEc2()
    fake.add_vm("default", "running")
    volume_id = fake.add_volume("alice", "default")
    allocation_id = fake.add_address("alice", "default")
    fake.failures["delete_volume"] = AwsError("vol err", code="X")
    fake.failures["release_address"] = AwsError("eip err", code="Y")

    result = _destroy(fake)

    assert result.warnings == [
        f"failed to delete volume {volume_id}: vol err",
        f"failed to release Elastic IP {allocation_id}: eip err",
    ]
    assert result.address_released is False
    assert result.volumes_deleted == 0


def test_termination_wait_timeout_is_a_warning():
    class SlowTerminate(FakeEc2):
        def terminate_instance(self, instance_id):
            super().terminate_instance(instance_id)
            self.transitions.pop(instance_id)

    fake = SlowTerminate()
    instance_id = fake.add_vm("default", "running")
    fake.add_volume("alice", "default")

    result = _destroy(fake, wait_policy=WaitPolicy(timeout_seconds=20, poll_seconds=5))

    assert len(result.warnings) == 1
    assert result.warnings[0].startswith(f"failed waiting for instance {instance_id} to terminate")
    assert result.volumes_deleted == 1


def test_terminate_failure_is_fatal_and_stops_cleanup():
    fake = FakeEc2()
    fake.add_vm("default", "running")
    fake.add_volume("alice", "default")
    fake.failures["terminate_instance"] = AwsError(
        "ec2 terminate_instances: OperationNotPermitted: protected", code="OperationNotPermitted"
    )

    with pytest.raises(StepError) as exc_info:
        _destroy(fake)

    assert "OperationNotPermitted: protected" in str(exc_info.value)
    assert "describe_volumes" not in fake.call_names()


def test_unconfirmed_destroy_makes_no_calls():
    fake = FakeEc2()
    fake.add_vm("default", "running")

    with pytest.raises(PreconditionError):
        Destroyer(fake, clock=FakeClock()).run(CTX, "default", confirmed=False)

    assert fake.calls == []


def test_missing_vm_is_rejected():
    fake = FakeEc2()

    with pytest.raises(PreconditionError) as exc_info:
        _destroy(fake)

    assert "Nothing to destroy" in str(exc_info.value)
    assert fake.mutating_calls() == []


def test_result_as_dict():
    fake = FakeEc2()
    instance_id = fake.add_vm("default", "running")

    assert _destroy(fake).as_dict() == {
        "instance_id": instance_id,
        "volumes_deleted": 0,
        "address_released": False,
        "warnings": [],
    }
