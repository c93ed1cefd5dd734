from __future__ import annotations

import os
from pathlib import Path

CONFIG_DIR_ENV = "MINT_CONFIG_DIR"
STATE_DIR_ENV = "MINT_STATE_DIR"
CONFIG_FILENAME = "config.toml"


def default_config_dir() -> Path:
    override = os.getenv(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "mint"


def default_config_file() -> Path:
    return default_config_dir() / CONFIG_FILENAME


def default_state_dir() -> Path:
    override = os.getenv(STATE_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mint" / "state"
