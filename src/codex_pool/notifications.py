# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/notifications.py

import logging
import math
import time
from typing import Callable, Optional

from .accounts.types import ManagedAccount
from .error_handler import best_effort_sync

lib_logger = logging.getLogger("codex_pool")

ACCOUNT_NOTICE_DEBOUNCE_MS = 5000

NoticeSink = Callable[[str, str], None]


def _log_sink(message: str, variant: str) -> None:
    if variant == "warning":
        lib_logger.warning(message)
    else:
        lib_logger.info(message)


def format_retry_after(retry_after_ms: int) -> str:
    """Whole minutes, or whole hours once an hour or longer."""
    minutes = math.ceil(max(0, retry_after_ms) / 60000)
    if minutes >= 60:
        return f"{math.ceil(minutes / 60)}h"
    return f"{minutes}m"


class AccountNotifier:
    """
    User-facing notices about which account is serving requests.

    The "using account" notice is debounced per account; the debounce state
    lives on the instance. Delivery goes to `sink(message, variant)`, which
    defaults to the library logger; sink errors are ignored.
    """

    def __init__(
        self,
        quiet: bool = False,
        sink: Optional[NoticeSink] = None,
        debounce_ms: int = ACCOUNT_NOTICE_DEBOUNCE_MS,
    ):
        self.quiet = quiet
        self.sink = sink or _log_sink
        self.debounce_ms = debounce_ms
        self.last_notice_index: Optional[int] = None
        self.last_notice_time: float = 0

    def _emit(self, message: str, variant: str) -> None:
        if self.quiet:
            return
        best_effort_sync("Account notice", self.sink, message, variant)

    def account_in_use(self, account: ManagedAccount, total_accounts: int) -> None:
        if self.quiet or total_accounts <= 1:
            return

        now = time.time() * 1000
        if (
            self.last_notice_index == account.index
            and now - self.last_notice_time < self.debounce_ms
        ):
            return

        self.last_notice_index = account.index
        self.last_notice_time = now
        plan = f" [{account.plan_type}]" if account.plan_type else ""
        self._emit(
            f"Using {account.label}{plan} ({account.index + 1}/{total_accounts})", "info"
        )

    def rate_limited(self, account: ManagedAccount, retry_after_ms: int) -> None:
        self._emit(
            f"{account.label} rate limited. Retry in {format_retry_after(retry_after_ms)}.",
            "warning",
        )

    def switching(self, from_account: ManagedAccount, to_account: ManagedAccount) -> None:
        plan = f" [{to_account.plan_type}]" if to_account.plan_type else ""
        self._emit(f"Switching {from_account.label} → {to_account.label}{plan}", "info")
