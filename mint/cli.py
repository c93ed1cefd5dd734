from __future__ import annotations

import argparse
import re
import signal
import threading
from typing import Callable

from mint.errors import PreconditionError

_VM_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_INSTANCE_TYPE_RE = re.compile(r"^[a-z0-9-]+\.[a-z0-9-]+$")


def vm_name(value: str) -> str:
    if not _VM_NAME_RE.match(value):
        raise argparse.ArgumentTypeError(
            f"invalid VM name: '{value}' (use lowercase letters, digits and hyphens)"
        )
    return value


def instance_type(value: str) -> str:
    if not _INSTANCE_TYPE_RE.match(value):
        raise argparse.ArgumentTypeError(f"invalid instance type: '{value}' (expected e.g. m6i.xlarge)")
    return value


def volume_iops(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from exc
    if parsed < 3000 or parsed > 16000:
        raise argparse.ArgumentTypeError("volume IOPS must be between 3000 and 16000")
    return parsed


def add_global_args(parser: argparse.ArgumentParser, *, subcommand: bool = False) -> None:
    """Add the shared flags; on subcommands they only override values given there."""

    def default(value: object) -> object:
        return argparse.SUPPRESS if subcommand else value

    parser.add_argument("--vm", type=vm_name, default=default("default"), help="Target VM name (default: default)")
    parser.add_argument("--json", action="store_true", default=default(False), help="Machine-readable JSON output")
    parser.add_argument(
        "--verbose", action="store_true", default=default(False), help="Show detailed progress steps"
    )
    parser.add_argument("--region", default=default(""), help="AWS region (overrides config)")
    parser.add_argument("--profile", default=default(""), help="AWS profile name (overrides AWS_PROFILE)")


def install_interrupt_handler(cancel: threading.Event) -> None:
    """First Ctrl-C asks running waits to stop; a second one interrupts immediately."""

    def _handle_signal(_sig: int, _frame: object) -> None:
        cancel.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _handle_signal)


def confirm_destroy(name: str, read: Callable[[str], str] | None = None) -> None:
    read = read or input
    print(f"This will permanently destroy VM '{name}'.")
    print("  - The instance will be terminated (root volume is deleted with it)")
    print("  - Project volumes will be deleted")
    print("  - The Elastic IP will be released")
    print("  - Your persistent user storage is preserved")
    try:
        answer = read(f"\nType the VM name '{name}' to confirm: ").strip()
    except EOFError as exc:
        raise PreconditionError("Error: No confirmation input received. Destroy aborted.") from exc
    if answer != name:
        raise PreconditionError(
            f"Error: Confirmation '{answer}' does not match VM name '{name}'. Destroy aborted."
        )
