from __future__ import annotations

import argparse
import json
import threading
from dataclasses import dataclass, field

import boto3

from mint.aws import AwsClient
from mint.bootstrap import DEFAULT_BOOTSTRAP_POLICY, BootstrapPoller
from mint.cli import add_global_args, confirm_destroy, install_interrupt_handler, instance_type, volume_iops
from mint.config import MintConfig, env_int, load_config
from mint.destroy import Destroyer, DestroyResult
from mint.errors import PreconditionError, UserFacingError, main_guard
from mint.events import EventLog
from mint.identity import OwnerContext, resolve_owner
from mint.paths import default_state_dir
from mint.progress import ProgressWriter
from mint.provision import ProvisionConfig, Provisioner, ProvisionResult
from mint.resize import ResizeRequest, Resizer, ResizeResult
from mint.stop import Stopper, StopResult
from mint.vm import VM, find_vm, list_vms
from mint.waiters import DEFAULT_INSTANCE_WAIT, WaitPolicy


@dataclass
class Runtime:
    api: AwsClient
    ctx: OwnerContext
    config: MintConfig
    progress: ProgressWriter
    as_json: bool = False
    cancel: threading.Event = field(default_factory=threading.Event)


def bootstrap_policy() -> WaitPolicy:
    return WaitPolicy(
        timeout_seconds=env_int("MINT_BOOTSTRAP_TIMEOUT_SECONDS", int(DEFAULT_BOOTSTRAP_POLICY.timeout_seconds)),
        poll_seconds=env_int("MINT_BOOTSTRAP_POLL_SECONDS", int(DEFAULT_BOOTSTRAP_POLICY.poll_seconds)),
    )


def wait_policy() -> WaitPolicy:
    return WaitPolicy(
        timeout_seconds=env_int("MINT_WAIT_TIMEOUT_SECONDS", int(DEFAULT_INSTANCE_WAIT.timeout_seconds)),
        poll_seconds=env_int("MINT_WAIT_POLL_SECONDS", int(DEFAULT_INSTANCE_WAIT.poll_seconds)),
    )


def build_runtime(args: argparse.Namespace) -> Runtime:
    config = load_config()
    region = args.region or config.region
    events = EventLog(default_state_dir())
    session = boto3.Session(profile_name=args.profile or None, region_name=region or None)
    api = AwsClient(session, region=region, events=events)
    if not api.region:
        raise UserFacingError(
            "Error: No AWS region configured. Pass --region or set region in ~/.config/mint/config.toml."
        )
    ctx = resolve_owner(api, api.region)
    events.command(args.command, args.vm, ctx.owner_arn)
    return Runtime(
        api=api,
        ctx=ctx,
        config=config,
        progress=ProgressWriter(enabled=not args.json, verbose=args.verbose),
        as_json=args.json,
    )


def _print_json(payload: dict[str, object]) -> None:
    print(json.dumps(payload, indent=2))


def render_provision(vm_name: str, result: ProvisionResult, *, as_json: bool) -> None:
    if as_json:
        _print_json(result.as_dict())
        return
    if result.already_running:
        print(f"VM '{vm_name}' is already running.")
    elif result.restarted:
        print(f"VM '{vm_name}' restarted.")
    else:
        print(f"VM '{vm_name}' created.")
    print(f"  instance: {result.instance_id}")
    print(f"  public ip: {result.public_ip or '(unavailable)'}")
    if result.volume_id:
        print(f"  project volume: {result.volume_id}")
    if result.allocation_id:
        print(f"  elastic ip allocation: {result.allocation_id}")
    print(f"  bootstrap: {result.bootstrap_status}")
    if result.bootstrap_error:
        print(f"Warning: {result.bootstrap_error}")


def render_resize(result: ResizeResult, *, as_json: bool) -> None:
    if as_json:
        _print_json(result.as_dict())
        return
    print(result.message)
    if not result.was_running:
        print("  VM remains stopped.")


def render_stop(result: StopResult, *, as_json: bool) -> None:
    if as_json:
        _print_json(result.as_dict())
        return
    print(result.message)


def render_destroy(vm_name: str, result: DestroyResult, *, as_json: bool) -> None:
    if as_json:
        _print_json(result.as_dict())
        return
    print("Instance terminated.")
    if result.volumes_deleted:
        print(f"{result.volumes_deleted} project volume(s) deleted.")
    if result.address_released:
        print("Elastic IP released.")
    for warning in result.warnings:
        print(f"Warning: {warning}")
    print(f"VM '{vm_name}' ({result.instance_id}) destroyed.")


def render_status(vms: list[VM], *, as_json: bool) -> None:
    if as_json:
        _print_json({"vms": [vm.as_dict() for vm in vms]})
        return
    if not vms:
        print("No Mint VMs found.")
        print("Run `mint up` to create one.")
        return
    for vm in vms:
        print(f"VM: {vm.name}")
        print(f"  id: {vm.id}")
        print(f"  state: {vm.state}")
        print(f"  type: {vm.instance_type}")
        print(f"  ip: {vm.public_ip or '(unavailable)'}")
        print(f"  bootstrap: {vm.bootstrap_status}")


def _handle_up(args: argparse.Namespace, rt: Runtime) -> None:
    config = ProvisionConfig(
        instance_type=rt.config.instance_type,
        volume_size_gb=rt.config.volume_size_gb,
        volume_iops=args.volume_iops or rt.config.volume_iops,
        idle_timeout_minutes=rt.config.idle_timeout_minutes,
    )
    provisioner = Provisioner(
        rt.api,
        poller=BootstrapPoller(rt.api, policy=bootstrap_policy(), progress=rt.progress),
        wait_policy=wait_policy(),
        progress=rt.progress,
    )
    result = provisioner.run(rt.ctx, args.vm, config, cancel=rt.cancel)
    render_provision(args.vm, result, as_json=rt.as_json)


def _handle_resize(args: argparse.Namespace, rt: Runtime) -> None:
    resizer = Resizer(rt.api, wait_policy=wait_policy(), progress=rt.progress)
    result = resizer.run(rt.ctx, args.vm, ResizeRequest(args.instance_type), cancel=rt.cancel)
    render_resize(result, as_json=rt.as_json)


def _handle_down(args: argparse.Namespace, rt: Runtime) -> None:
    result = Stopper(rt.api, progress=rt.progress).run(rt.ctx, args.vm)
    render_stop(result, as_json=rt.as_json)


def _handle_destroy(args: argparse.Namespace, rt: Runtime) -> None:
    if not args.yes:
        if rt.as_json:
            raise PreconditionError("Error: --json destroy requires --yes.")
        if find_vm(rt.api, rt.ctx.owner, args.vm) is None:
            raise PreconditionError(
                f"Error: No VM '{args.vm}' found for owner '{rt.ctx.owner}'. Nothing to destroy."
            )
        confirm_destroy(args.vm)
    destroyer = Destroyer(rt.api, wait_policy=wait_policy(), progress=rt.progress)
    result = destroyer.run(rt.ctx, args.vm, confirmed=True, cancel=rt.cancel)
    render_destroy(args.vm, result, as_json=rt.as_json)


def _handle_status(args: argparse.Namespace, rt: Runtime) -> None:
    if args.all:
        render_status(list_vms(rt.api, rt.ctx.owner), as_json=rt.as_json)
        return
    found = find_vm(rt.api, rt.ctx.owner, args.vm)
    if found is None and not rt.as_json:
        print(f"No VM '{args.vm}' found. Run `mint up` to create it.")
        return
    render_status([found] if found else [], as_json=rt.as_json)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mint",
        description="Mint developer VM lifecycle on AWS EC2",
    )
    add_global_args(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)

    up_parser = subparsers.add_parser(
        "up",
        help="Create the VM, or start it if it is stopped",
    )
    up_parser.add_argument(
        "--volume-iops",
        type=volume_iops,
        default=0,
        help="IOPS for the project volume (gp3, 3000-16000; default uses config)",
    )
    add_global_args(up_parser, subcommand=True)
    up_parser.set_defaults(handler=_handle_up)

    down_parser = subparsers.add_parser(
        "down",
        help="Stop the VM; volumes and Elastic IP persist for the next up",
    )
    add_global_args(down_parser, subcommand=True)
    down_parser.set_defaults(handler=_handle_down)

    resize_parser = subparsers.add_parser(
        "resize",
        help="Change the VM's instance type",
    )
    resize_parser.add_argument("instance_type", type=instance_type, help="Target instance type")
    add_global_args(resize_parser, subcommand=True)
    resize_parser.set_defaults(handler=_handle_resize)

    destroy_parser = subparsers.add_parser(
        "destroy",
        help="Terminate the VM and delete its project volumes and Elastic IP",
    )
    destroy_parser.add_argument("--yes", action="store_true", help="Skip interactive confirmation")
    add_global_args(destroy_parser, subcommand=True)
    destroy_parser.set_defaults(handler=_handle_destroy)

    status_parser = subparsers.add_parser(
        "status",
        help="Show the VM (or all of your VMs with --all)",
    )
    status_parser.add_argument("--all", action="store_true")
    add_global_args(status_parser, subcommand=True)
    status_parser.set_defaults(handler=_handle_status)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    def run() -> None:
        handler = getattr(args, "handler", None)
        if handler is None:
            raise RuntimeError(f"Unhandled command: {getattr(args, 'command', '<missing>')}")
        rt = build_runtime(args)
        install_interrupt_handler(rt.cancel)
        handler(args, rt)

    main_guard(run)


if __name__ == "__main__":
    main()
