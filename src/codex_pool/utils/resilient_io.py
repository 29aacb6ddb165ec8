# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/utils/resilient_io.py
"""
Small disk helpers shared by the account store and the usage tracker.

Writes are atomic: data goes to a sibling temp file which is then renamed
over the target, so a concurrent reader sees either the old or the new file.
Both helpers report failure through their return value and the given logger
instead of raising.
"""

import json
import logging
import os
import secrets
from pathlib import Path
from typing import Any, Optional, Union


def safe_mkdir(path: Union[str, Path], logger: logging.Logger) -> bool:
    """Create a directory (and parents) if missing."""
    try:
        Path(path).mkdir(parents=True, exist_ok=True)
        return True
    except OSError as e:
        logger.warning(f"Could not create directory '{path}': {e}")
        return False


def safe_read_json(
    path: Union[str, Path],
    logger: logging.Logger,
) -> Optional[Any]:
    """
    Read and parse a JSON file.

    Returns None when the file is missing, unreadable, or not valid JSON.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read '{path.name}': {e}")
        return None


def safe_write_json(
    path: Union[str, Path],
    data: Any,
    logger: logging.Logger,
    secure_permissions: bool = False,
    indent: Optional[int] = 2,
) -> bool:
    """
    Atomically write `data` as JSON to `path`.

    Args:
        path: Destination file; its directory is created when absent
        data: JSON-serializable payload
        logger: Logger used for failure reports
        secure_permissions: Restrict the file to the owner (0600)
        indent: JSON indentation

    Returns:
        True if the file was written, False otherwise.
    """
    path = Path(path)
    if not safe_mkdir(path.parent, logger):
        return False

    tmp_path = path.with_name(f"{path.name}.{secrets.token_hex(6)}.tmp")
    try:
        payload = json.dumps(data, indent=indent)
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
        mode = 0o600 if secure_permissions else 0o644
        fd = os.open(tmp_path, flags, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        if secure_permissions:
            os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"Failed to write '{path.name}': {e}")
        try:
            tmp_path.unlink()
        except OSError:
            pass
        return False
