from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from mint.errors import UserFacingError
from mint.paths import default_config_file
from mint.provision import (
    DEFAULT_IDLE_TIMEOUT_MINUTES,
    DEFAULT_INSTANCE_TYPE,
    DEFAULT_VOLUME_IOPS,
    DEFAULT_VOLUME_SIZE_GB,
)

_REGION_RE = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d+$")
MIN_VOLUME_SIZE_GB = 50
MIN_VOLUME_IOPS = 3000
MAX_VOLUME_IOPS = 16000
MIN_IDLE_TIMEOUT_MINUTES = 15


class ConfigError(UserFacingError):
    pass


@dataclass(frozen=True)
class MintConfig:
    region: str = ""
    instance_type: str = DEFAULT_INSTANCE_TYPE
    volume_size_gb: int = DEFAULT_VOLUME_SIZE_GB
    volume_iops: int = DEFAULT_VOLUME_IOPS
    idle_timeout_minutes: int = DEFAULT_IDLE_TIMEOUT_MINUTES


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _int_value(data: Mapping[str, Any], key: str, default: int, path: Path) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: Invalid value for {key} in {path}: {value!r} is not an integer.")
    return value


def validate_volume_iops(value: int, *, source: str = "volume_iops") -> int:
    if value < MIN_VOLUME_IOPS or value > MAX_VOLUME_IOPS:
        raise ConfigError(
            f"Error: Invalid value for {source}: must be between {MIN_VOLUME_IOPS} "
            f"and {MAX_VOLUME_IOPS} (got {value})."
        )
    return value


def parse_config(data: Mapping[str, Any], path: Path) -> MintConfig:
    region = data.get("region", "")
    if not isinstance(region, str) or (region and not _REGION_RE.match(region)):
        raise ConfigError(
            f"Error: Invalid value for region in {path}: {region!r} does not match AWS region format "
            "(e.g., us-west-2)."
        )
    instance_type = data.get("instance_type", DEFAULT_INSTANCE_TYPE)
    if not isinstance(instance_type, str) or not instance_type.strip():
        raise ConfigError(f"Error: Invalid value for instance_type in {path}: cannot be empty.")

    volume_size_gb = _int_value(data, "volume_size_gb", DEFAULT_VOLUME_SIZE_GB, path)
    if volume_size_gb < MIN_VOLUME_SIZE_GB:
        raise ConfigError(
            f"Error: Invalid value for volume_size_gb in {path}: must be >= {MIN_VOLUME_SIZE_GB} "
            f"(got {volume_size_gb})."
        )
    volume_iops = validate_volume_iops(_int_value(data, "volume_iops", DEFAULT_VOLUME_IOPS, path))
    idle_timeout = _int_value(data, "idle_timeout_minutes", DEFAULT_IDLE_TIMEOUT_MINUTES, path)
    if idle_timeout < MIN_IDLE_TIMEOUT_MINUTES:
        raise ConfigError(
            f"Error: Invalid value for idle_timeout_minutes in {path}: must be >= "
            f"{MIN_IDLE_TIMEOUT_MINUTES} (got {idle_timeout})."
        )
    return MintConfig(
        region=region,
        instance_type=instance_type.strip(),
        volume_size_gb=volume_size_gb,
        volume_iops=volume_iops,
        idle_timeout_minutes=idle_timeout,
    )


def load_config(path: Path | None = None) -> MintConfig:
    path = path or default_config_file()
    if not path.exists():
        return MintConfig()
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Error: Could not parse {path}: {exc}") from exc
    return parse_config(data, path)
