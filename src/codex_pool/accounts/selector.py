# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/accounts/selector.py

import logging
import os
from typing import Optional

from .store import AccountStore
from .types import ManagedAccount, MultiAccountConfig, now_ms

lib_logger = logging.getLogger("codex_pool")


class AccountSelector:
    """
    Picks the account for the next request.

    Strategies:
    - sticky: keep using the active account until it becomes unavailable
    - round-robin: rotate a cursor through the pool on every pick
    - hybrid: sticky within one process, but each new process starts one
      account further along (the advance is persisted)

    Selection never performs network I/O. When every account is limited, the
    one whose limit lifts soonest is returned; accounts at the failure ceiling
    are never returned.
    """

    def __init__(self, store: AccountStore, pid: Optional[int] = None):
        self.store = store
        self.round_robin_cursor: int = 0
        self._initialized = False
        self._pid = os.getpid() if pid is None else pid
        store.subscribe(self.reset)

    @property
    def config(self) -> MultiAccountConfig:
        return self.store.config

    def reset(self) -> None:
        """Forget strategy state; the next selection re-initializes it."""
        self._initialized = False
        count = self.store.count
        if count == 0:
            self.round_robin_cursor = 0
        else:
            self.round_robin_cursor = min(max(self.store.active_index, 0), count - 1)

    def _initialize_strategy(self) -> None:
        store = self.store
        count = store.count
        if count == 0:
            store.active_index = 0
            self.round_robin_cursor = 0
            self._initialized = True
            return

        if not 0 <= store.active_index < count:
            store.active_index = 0

        if self.config.strategy == "hybrid" and count > 1:
            store.active_index = (store.active_index + 1) % count
            store.save()

        if self.config.pid_offset_enabled and count > 1:
            store.active_index = (store.active_index + abs(self._pid) % count) % count

        self.round_robin_cursor = store.active_index
        self._initialized = True
        lib_logger.debug(
            f"Selection strategy '{self.config.strategy}' starting at account "
            f"{store.active_index + 1}/{count}"
        )

    def is_available(
        self, account: ManagedAccount, model: Optional[str] = None, now: Optional[int] = None
    ) -> bool:
        now = now_ms() if now is None else now
        if account.is_disabled:
            return False
        if account.global_rate_limit_reset and account.global_rate_limit_reset > now:
            return False
        if model and self.config.per_model_rate_limits:
            model_reset = account.rate_limit_resets.get(model)
            if model_reset and model_reset > now:
                return False
        return True

    def _reset_time(self, account: ManagedAccount, model: Optional[str]) -> int:
        model_reset = 0
        if model and self.config.per_model_rate_limits:
            model_reset = account.rate_limit_resets.get(model) or 0
        return max(account.global_rate_limit_reset or 0, model_reset)

    def select_account(self, model: Optional[str] = None) -> Optional[ManagedAccount]:
        """Return the account to use for `model`, or None if none is usable."""
        if not self._initialized:
            self._initialize_strategy()

        accounts = self.store.accounts
        count = len(accounts)
        if count == 0:
            return None

        round_robin = self.config.strategy == "round-robin"
        start = self.round_robin_cursor if round_robin else self.store.active_index
        start %= count
        now = now_ms()

        for offset in range(count):
            index = (start + offset) % count
            account = accounts[index]
            if not self.is_available(account, model, now):
                continue
            self.store.active_index = index
            if round_robin:
                self.round_robin_cursor = (index + 1) % count
            account.last_used = now
            return account

        return self._least_rate_limited(model, now)

    def peek_account(self) -> Optional[ManagedAccount]:
        """First usable account from the active index on; selection state is left as is."""
        accounts = self.store.accounts
        count = len(accounts)
        if count == 0:
            return None
        start = self.store.active_index % count
        for offset in range(count):
            account = accounts[(start + offset) % count]
            if not account.is_disabled:
                return account
        return None

    def _least_rate_limited(self, model: Optional[str], now: int) -> Optional[ManagedAccount]:
        # Strict "<" in index order: ties go to the lowest index
        best: Optional[ManagedAccount] = None
        best_reset = 0
        for account in self.store.accounts:
            if account.is_disabled:
                continue
            reset = self._reset_time(account, model)
            if best is None or reset < best_reset:
                best = account
                best_reset = reset

        if best is None:
            lib_logger.warning("No usable OpenAI Codex account: all disabled or pool empty")
            return None

        self.store.active_index = best.index
        if self.config.strategy == "round-robin":
            self.round_robin_cursor = (best.index + 1) % self.store.count
        best.last_used = now
        lib_logger.debug(
            f"All accounts rate limited; falling back to account {best.index + 1} "
            f"(resets in {max(0, best_reset - now) // 1000}s)"
        )
        return best
