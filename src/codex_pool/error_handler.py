# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/error_handler.py
"""
Error types and the best-effort call wrappers.

Secondary work (usage telemetry, foreign credential import, notifications,
snapshot persistence) goes through `best_effort` / `best_effort_sync`, so a
failure there is logged and dropped instead of failing the request path.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

lib_logger = logging.getLogger("codex_pool")

T = TypeVar("T")


def mask_secret(secret: Optional[str]) -> str:
    """Mask a token for log output, keeping the first and last 4 chars."""
    if not secret or len(secret) <= 12:
        return "****"
    return f"{secret[:4]}...{secret[-4:]}"


class CodexPoolError(Exception):
    """Base class for errors raised by codex_pool."""


class CredentialNeedsReauthError(CodexPoolError):
    """The refresh token was rejected permanently and must be re-issued."""

    def __init__(self, message: str, account_label: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.account_label = account_label


class NoAvailableAccountsError(CodexPoolError):
    """Every account is missing, disabled, or failed token refresh."""


def _report(label: str, error: Exception, warn: bool) -> None:
    message = f"{label} failed (ignored): {error}"
    if warn:
        lib_logger.warning(message)
    else:
        lib_logger.debug(message)


async def best_effort(
    label: str,
    fn: Callable[..., Union[T, Awaitable[T]]],
    *args: Any,
    warn: bool = False,
    **kwargs: Any,
) -> Optional[T]:
    """
    Run a secondary operation, awaiting it if it returns an awaitable.

    Any `Exception` is logged under `label` and None is returned.
    """
    try:
        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result
    except Exception as e:
        _report(label, e, warn)
        return None


def best_effort_sync(
    label: str,
    fn: Callable[..., T],
    *args: Any,
    warn: bool = False,
    **kwargs: Any,
) -> Optional[T]:
    """Synchronous counterpart of `best_effort`."""
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        _report(label, e, warn)
        return None
