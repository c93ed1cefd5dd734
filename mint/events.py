from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

_EVENT_LOG_MAX_BYTES_ENV = "MINT_EVENT_LOG_MAX_BYTES"
_DEFAULT_EVENT_LOG_MAX_BYTES = 5 * 1024 * 1024
API_CALL_LOG_FILE = "api-calls.jsonl"
AUDIT_LOG_FILE = "audit.jsonl"


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _max_log_size_bytes() -> int:
    raw = os.getenv(_EVENT_LOG_MAX_BYTES_ENV)
    if raw is None:
        return _DEFAULT_EVENT_LOG_MAX_BYTES
    try:
        value = int(raw)
    except ValueError:
        return _DEFAULT_EVENT_LOG_MAX_BYTES
    if value <= 0:
        return _DEFAULT_EVENT_LOG_MAX_BYTES
    return value


def _maybe_rotate(path: Path) -> None:
    if not path.exists():
        return
    if path.stat().st_size < _max_log_size_bytes():
        return
    rotated = path.with_name(path.name + ".1")
    rotated.unlink(missing_ok=True)
    path.replace(rotated)


def _append_event(log_dir: Path, filename: str, payload: Mapping[str, Any]) -> None:
    try:
        path = log_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        _maybe_rotate(path)
        record = {"timestamp": _timestamp(), **payload}
        encoded = (json.dumps(record, sort_keys=True, separators=(",", ":")) + "\n").encode("utf-8")

        fd = os.open(path, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o600)
        try:
            os.write(fd, encoded)
        finally:
            os.close(fd)
    except OSError:
        # Diagnostic logs must not disrupt orchestration.
        return


class EventLog:
    """Best-effort JSON-lines log of AWS calls and command invocations."""

    def __init__(self, log_dir: Path | None) -> None:
        self.log_dir = log_dir

    def api_call(
        self,
        service: str,
        operation: str,
        *,
        duration_ms: int,
        error_code: str = "",
    ) -> None:
        if self.log_dir is None:
            return
        payload: dict[str, Any] = {
            "service": service,
            "operation": operation,
            "duration_ms": duration_ms,
            "result": "error" if error_code else "success",
        }
        if error_code:
            payload["error_code"] = error_code
        _append_event(self.log_dir, API_CALL_LOG_FILE, payload)

    def command(self, command: str, vm_name: str, owner_arn: str) -> None:
        if self.log_dir is None:
            return
        _append_event(
            self.log_dir,
            AUDIT_LOG_FILE,
            {"command": command, "vm_name": vm_name, "caller_arn": owner_arn},
        )
