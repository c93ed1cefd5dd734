from __future__ import annotations

import json
import sys

import pytest

from fake_aws import CTX, FakeEc2
from mint import main as main_cli
from mint.cli import confirm_destroy
from mint.config import MintConfig
from mint.errors import PreconditionError
from mint.progress import ProgressWriter


def test_parse_up_defaults(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(sys, "argv", ["mint", "up"])
    args = main_cli.parse_args()
    assert args.command == "up"
    assert args.vm == "default"
    assert args.json is False
    assert args.volume_iops == 0


@pytest.mark.parametrize(
    "argv",
    [
        ["--vm", "dev", "--json", "status"],
        ["status", "--vm", "dev", "--json"],
        ["--json", "status", "--vm", "dev"],
    ],
)
def test_global_flags_work_on_either_side_of_the_command(argv):
    args = main_cli.parse_args(argv)
    assert args.command == "status"
    assert args.vm == "dev"
    assert args.json is True


def test_parse_resize_and_destroy():
    resize = main_cli.parse_args(["resize", "m6i.2xlarge", "--region", "eu-west-1"])
    assert resize.instance_type == "m6i.2xlarge"
    assert resize.region == "eu-west-1"

    destroy = main_cli.parse_args(["destroy", "--yes"])
    assert destroy.yes is True


@pytest.mark.parametrize(
    "argv",
    [
        ["up", "--volume-iops", "2999"],
        ["up", "--volume-iops", "fast"],
        ["--vm", "Dev_Box", "up"],
        ["resize", "huge"],
        [],
    ],
)
def test_parse_rejects_invalid_arguments(argv):
    with pytest.raises(SystemExit):
        main_cli.parse_args(argv)


def _install_runtime(monkeypatch: pytest.MonkeyPatch, fake: FakeEc2) -> None:
    monkeypatch.setenv("MINT_WAIT_POLL_SECONDS", "0")
    monkeypatch.setenv("MINT_BOOTSTRAP_POLL_SECONDS", "0")

    def build_runtime(args):
        return main_cli.Runtime(
            api=fake,
            ctx=CTX,
            config=MintConfig(region="us-west-2"),
            progress=ProgressWriter(enabled=not args.json, verbose=args.verbose),
            as_json=args.json,
        )

    monkeypatch.setattr(main_cli, "build_runtime", build_runtime)
    monkeypatch.setattr(main_cli, "install_interrupt_handler", lambda cancel: None)


def test_up_json_for_running_vm(monkeypatch: pytest.MonkeyPatch, capsys):
    fake = FakeEc2()
    instance_id = fake.add_vm("dev", "running")
    _install_runtime(monkeypatch, fake)

    main_cli.main(["up", "--vm", "dev", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["instance_id"] == instance_id
    assert payload["already_running"] is True
    assert payload["bootstrap_status"] == "complete"
    assert fake.mutating_calls() == []


def test_status_reports_missing_vm(monkeypatch: pytest.MonkeyPatch, capsys):
    _install_runtime(monkeypatch, FakeEc2())

    main_cli.main(["status", "--vm", "dev"])

    assert "No VM 'dev' found" in capsys.readouterr().out


def test_status_all_json_lists_only_callers_vms(monkeypatch: pytest.MonkeyPatch, capsys):
    fake = FakeEc2()
    fake.add_vm("b", "stopped")
    fake.add_vm("a", "running")
    fake.add_vm("theirs", "running", owner="bob")
    _install_runtime(monkeypatch, fake)

    main_cli.main(["status", "--all", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert [vm["name"] for vm in payload["vms"]] == ["a", "b"]


def test_resize_prints_result(monkeypatch: pytest.MonkeyPatch, capsys):
    fake = FakeEc2()
    instance_id = fake.add_vm("default", "stopped")
    _install_runtime(monkeypatch, fake)

    main_cli.main(["resize", "m6i.xlarge"])

    out = capsys.readouterr().out
    assert f"VM 'default' ({instance_id}) resized to m6i.xlarge." in out
    assert "VM remains stopped." in out


def test_down_then_up_restarts_the_vm(monkeypatch: pytest.MonkeyPatch, capsys):
    fake = FakeEc2()
    instance_id = fake.add_vm("dev", "running")
    _install_runtime(monkeypatch, fake)

    main_cli.main(["down", "--vm", "dev"])
    fake.instances[instance_id]["State"]["Name"] = "stopped"
    main_cli.main(["--json", "up", "--vm", "dev"])

    out = capsys.readouterr().out
    assert f"VM 'dev' ({instance_id}) stopped. Volumes and Elastic IP persist." in out
    payload = json.loads(out[out.index("{") :])
    assert payload["restarted"] is True
    assert fake.mutating_calls() == ["stop_instance", "start_instance"]


def test_destroy_with_yes(monkeypatch: pytest.MonkeyPatch, capsys):
    fake = FakeEc2()
    instance_id = fake.add_vm("dev", "running")
    fake.add_volume("alice", "dev")
    _install_runtime(monkeypatch, fake)

    main_cli.main(["destroy", "--vm", "dev", "--yes"])

    out = capsys.readouterr().out
    assert fake.state_of(instance_id) == "terminated"
    assert "1 project volume(s) deleted." in out
    assert f"VM 'dev' ({instance_id}) destroyed." in out


def test_destroy_prompts_for_the_vm_name(monkeypatch: pytest.MonkeyPatch, capsys):
    fake = FakeEc2()
    instance_id = fake.add_vm("dev", "running")
    _install_runtime(monkeypatch, fake)
    monkeypatch.setattr("builtins.input", lambda prompt: "dev")

    main_cli.main(["destroy", "--vm", "dev"])

    assert fake.state_of(instance_id) == "terminated"
    assert "permanently destroy VM 'dev'" in capsys.readouterr().out


def test_destroy_aborts_on_wrong_confirmation(monkeypatch: pytest.MonkeyPatch, capsys):
    fake = FakeEc2()
    instance_id = fake.add_vm("dev", "running")
    _install_runtime(monkeypatch, fake)
    monkeypatch.setattr("builtins.input", lambda prompt: "prod")

    with pytest.raises(SystemExit) as exc_info:
        main_cli.main(["destroy", "--vm", "dev"])

    assert exc_info.value.code == 1
    assert "Destroy aborted." in capsys.readouterr().err
    assert fake.state_of(instance_id) == "running"
    assert fake.mutating_calls() == []


def test_json_destroy_requires_yes(monkeypatch: pytest.MonkeyPatch, capsys):
    fake = FakeEc2()
    fake.add_vm("dev", "running")
    _install_runtime(monkeypatch, fake)

    with pytest.raises(SystemExit):
        main_cli.main(["destroy", "--vm", "dev", "--json"])

    assert "--json destroy requires --yes" in capsys.readouterr().err
    assert fake.calls == []


def test_destroy_without_vm_does_not_prompt(monkeypatch: pytest.MonkeyPatch, capsys):
    _install_runtime(monkeypatch, FakeEc2())

    def fail_input(prompt):
        raise AssertionError("prompted")

    monkeypatch.setattr("builtins.input", fail_input)

    with pytest.raises(SystemExit):
        main_cli.main(["destroy", "--vm", "dev"])

    assert "Nothing to destroy." in capsys.readouterr().err


def test_confirm_destroy_without_input():
    def no_input(prompt):
        raise EOFError

    with pytest.raises(PreconditionError) as exc_info:
        confirm_destroy("dev", read=no_input)
    assert "No confirmation input received" in str(exc_info.value)


def test_wait_policies_read_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MINT_BOOTSTRAP_TIMEOUT_SECONDS", "60")
    monkeypatch.setenv("MINT_WAIT_TIMEOUT_SECONDS", "not-a-number")

    assert main_cli.bootstrap_policy().timeout_seconds == 60
    assert main_cli.bootstrap_policy().poll_seconds == 15
    assert main_cli.wait_policy().timeout_seconds == 600
