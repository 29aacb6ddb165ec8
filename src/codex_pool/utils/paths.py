# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/utils/paths.py

import os
from pathlib import Path

ACCOUNTS_FILE_NAME = "openai-accounts.json"
SNAPSHOTS_FILE_NAME = "codex-snapshots.json"
CODEX_CLI_AUTH_FILE = Path.home() / ".codex" / "auth.json"
OPENCODE_AUTH_FILE = Path.home() / ".local" / "share" / "opencode" / "auth.json"


def get_config_dir() -> Path:
    """Directory holding the shared account pool file."""
    override = os.getenv("OPENAI_CODEX_CONFIG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "codex-pool"


def get_cache_dir() -> Path:
    """Directory holding usage snapshots."""
    override = os.getenv("OPENAI_CODEX_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    return get_config_dir() / "cache"


def get_accounts_file() -> Path:
    return get_config_dir() / ACCOUNTS_FILE_NAME


def get_snapshots_file() -> Path:
    return get_cache_dir() / SNAPSHOTS_FILE_NAME
