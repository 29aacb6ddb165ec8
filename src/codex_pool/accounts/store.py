# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/accounts/store.py
"""
Durable account pool.

The store owns the account list, the active index, and every piece of
per-account runtime state (tokens, rate-limit resets, failure counters). The
whole pool is written on each save; two processes sharing the file resolve
conflicts by last-write-wins.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from .types import (
    AccountPoolSnapshot,
    ManagedAccount,
    MultiAccountConfig,
    TokenRefreshResult,
    now_ms,
)
from ..error_handler import best_effort_sync, mask_secret
from ..utils.openai_codex_jwt import extract_claims
from ..utils.paths import CODEX_CLI_AUTH_FILE, OPENCODE_AUTH_FILE, get_accounts_file
from ..utils.resilient_io import safe_read_json, safe_write_json

lib_logger = logging.getLogger("codex_pool")

INVALID_GRANT_SIGNATURE = "invalid_grant"


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> TokenRefreshResult: ...


class AccountStore:
    """
    Owns the account pool and persists it to a versioned JSON file.

    Shape changes (add, remove, load) are announced to subscribers, which is
    how the selector knows to re-run its one-shot strategy initialization.
    """

    def __init__(
        self,
        file_path: Optional[Union[str, Path]] = None,
        config: Optional[MultiAccountConfig] = None,
        refresher: Optional[TokenRefresher] = None,
    ):
        self.file_path = Path(file_path) if file_path else get_accounts_file()
        self.config = config or MultiAccountConfig()
        self.accounts: List[ManagedAccount] = []
        self.active_index: int = 0
        self._refresher = refresher
        self._listeners: List[Callable[[], None]] = []

    # =========================================================================
    # POOL ACCESS
    # =========================================================================

    @property
    def count(self) -> int:
        return len(self.accounts)

    def get_active_account(self) -> Optional[ManagedAccount]:
        if not self.accounts:
            return None
        if 0 <= self.active_index < len(self.accounts):
            return self.accounts[self.active_index]
        return self.accounts[0]

    def subscribe(self, callback: Callable[[], None]) -> None:
        """Register a callback fired whenever the pool changes shape."""
        self._listeners.append(callback)

    def _pool_changed(self) -> None:
        for callback in self._listeners:
            callback()

    def _clamp_active_index(self) -> None:
        if not self.accounts:
            self.active_index = 0
        elif not 0 <= self.active_index < len(self.accounts):
            self.active_index = 0

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def load(self) -> None:
        """
        Load the pool from disk.

        A missing file, unreadable JSON, or an unknown version resets to an
        empty pool. Never raises.
        """
        data = None
        if self.file_path.exists():
            data = safe_read_json(self.file_path, lib_logger)

        snapshot = AccountPoolSnapshot.from_dict(data) if data is not None else None
        if snapshot is None:
            if data is not None:
                lib_logger.warning(
                    f"Ignoring unrecognized account pool file '{self.file_path.name}'"
                )
            self.accounts = []
            self.active_index = 0
        else:
            self.accounts = snapshot.accounts
            self.active_index = snapshot.active_index
            self._clamp_active_index()
            lib_logger.debug(f"Loaded {len(self.accounts)} OpenAI Codex account(s)")

        self._pool_changed()

    def save(self) -> bool:
        """Write the full pool to disk (owner-only permissions)."""
        snapshot = AccountPoolSnapshot(
            accounts=self.accounts, active_index=self.active_index
        )
        return safe_write_json(
            self.file_path, snapshot.to_dict(), lib_logger, secure_permissions=True
        )

    # =========================================================================
    # MEMBERSHIP
    # =========================================================================

    def _find_existing(
        self, refresh_token: str, user_id: Optional[str], account_id: Optional[str]
    ) -> Optional[ManagedAccount]:
        for account in self.accounts:
            if user_id and account.user_id:
                if account.user_id == user_id and account.account_id == account_id:
                    return account
            elif account.refresh_token == refresh_token:
                return account
        return None

    def add_or_update_account(
        self,
        refresh_token: str,
        access_token: Optional[str] = None,
        expires_at: Optional[int] = None,
        email: Optional[str] = None,
    ) -> ManagedAccount:
        """
        Add an account, or refresh an existing one with the same identity.

        Identity is the (user id, account id) pair when both sides know the
        user id, otherwise the exact refresh token. A matched account has its
        failure counter cleared.
        """
        claims = extract_claims(access_token) if access_token else None
        account_id = claims.account_id if claims else None
        user_id = claims.user_id if claims else None
        plan_type = claims.plan_type if claims else None
        email = email or (claims.email if claims else None)

        existing = self._find_existing(refresh_token, user_id, account_id)
        if existing is not None:
            existing.refresh_token = refresh_token
            existing.access_token = access_token or existing.access_token
            if expires_at is not None:
                existing.expires_at = expires_at
            existing.email = email or existing.email
            existing.user_id = user_id or existing.user_id
            existing.account_id = account_id or existing.account_id
            existing.plan_type = plan_type or existing.plan_type
            existing.consecutive_failures = 0
            existing.last_refresh_error = None
            self.save()
            self._pool_changed()
            lib_logger.info(f"Updated OpenAI Codex account {existing.label}")
            return existing

        account = ManagedAccount(
            index=len(self.accounts),
            refresh_token=refresh_token,
            email=email,
            user_id=user_id,
            account_id=account_id,
            plan_type=plan_type,
            access_token=access_token,
            expires_at=expires_at,
        )
        self.accounts.append(account)
        self.save()
        self._pool_changed()
        lib_logger.info(
            f"Added OpenAI Codex account {account.label} ({len(self.accounts)} total)"
        )
        return account

    def import_foreign_credential(
        self, source_path: Optional[Union[str, Path]] = None
    ) -> Optional[ManagedAccount]:
        """
        Import a single OAuth credential owned by another tool.

        Without an explicit path, the opencode auth file and then the Codex CLI
        auth file are tried. Read or parse problems are logged and ignored.
        """
        candidates = [Path(source_path)] if source_path else [OPENCODE_AUTH_FILE, CODEX_CLI_AUTH_FILE]
        for path in candidates:
            record = best_effort_sync(
                f"Credential import from '{path}'", _read_foreign_credential, path
            )
            if not record:
                continue
            refresh_token = record["refresh"]
            if any(a.refresh_token == refresh_token for a in self.accounts):
                lib_logger.debug(f"Credential in '{path}' already in the pool")
                continue
            lib_logger.info(f"Importing OpenAI Codex credential from '{path}'")
            return self.add_or_update_account(
                refresh_token,
                access_token=record.get("access"),
                expires_at=record.get("expires"),
            )
        return None

    def remove_account(self, account: ManagedAccount) -> bool:
        """Drop an account and re-index the rest densely."""
        position = next(
            (i for i, candidate in enumerate(self.accounts) if candidate is account),
            None,
        )
        if position is None:
            return False

        del self.accounts[position]
        for i, remaining in enumerate(self.accounts):
            remaining.index = i

        if self.active_index >= len(self.accounts):
            self.active_index = max(0, len(self.accounts) - 1)

        self.save()
        self._pool_changed()
        lib_logger.warning(
            f"Removed OpenAI Codex account {account.email or mask_secret(account.refresh_token)} "
            f"({len(self.accounts)} remaining)"
        )
        return True

    # =========================================================================
    # RUNTIME STATE
    # =========================================================================

    def mark_rate_limited(
        self, account: ManagedAccount, retry_after_ms: int, model: Optional[str] = None
    ) -> None:
        reset_at = now_ms() + max(0, int(retry_after_ms))
        if model and self.config.per_model_rate_limits:
            account.rate_limit_resets[model] = reset_at
        else:
            account.global_rate_limit_reset = reset_at

        if self.config.debug:
            scope = model if model and self.config.per_model_rate_limits else "all models"
            lib_logger.debug(
                f"Account {account.index + 1} rate limited for {scope}, "
                f"resets in {max(0, int(retry_after_ms)) // 1000}s"
            )

    def mark_refresh_failed(self, account: ManagedAccount, error_text: str) -> bool:
        """
        Record a credential failure.

        Returns True when the failure was a revoked grant and the account was
        removed from the pool.
        """
        account.consecutive_failures += 1
        account.last_refresh_error = error_text
        account.is_refreshing = False
        lib_logger.warning(
            f"Token failure for {account.label} "
            f"({account.consecutive_failures} consecutive): {error_text}"
        )

        if (
            self.config.remove_on_invalid_grant
            and INVALID_GRANT_SIGNATURE in (error_text or "")
        ):
            return self.remove_account(account)
        return False

    def update_account_tokens(
        self,
        account: ManagedAccount,
        access_token: str,
        refresh_token: str,
        expires_at: Optional[int],
    ) -> None:
        account.access_token = access_token
        account.refresh_token = refresh_token
        account.expires_at = expires_at
        account.consecutive_failures = 0
        account.is_refreshing = False
        account.last_refresh_error = None

        claims = extract_claims(access_token)
        if claims:
            account.account_id = claims.account_id or account.account_id
            account.user_id = claims.user_id or account.user_id
            account.plan_type = claims.plan_type or account.plan_type
            account.email = account.email or claims.email

        self.save()

    def is_token_fresh(self, account: ManagedAccount) -> bool:
        """True when no refresh is needed right now."""
        if not account.expires_at:
            return True
        return account.expires_at > now_ms() + self.config.proactive_refresh_threshold_ms

    async def ensure_valid_token(self, account: ManagedAccount) -> bool:
        """
        Make sure the account holds a usable access token.

        A refresh already in flight for this account is not duplicated; the
        caller gets whether a cached access token exists.
        """
        if self.is_token_fresh(account):
            return True

        if account.is_refreshing:
            return bool(account.access_token)

        if self._refresher is None:
            from ..providers.openai_codex_auth import OpenAICodexTokenRefresher

            self._refresher = OpenAICodexTokenRefresher()

        account.is_refreshing = True
        try:
            result = await self._refresher.refresh(account.refresh_token)
        except Exception as e:
            self.mark_refresh_failed(account, str(e))
            return False

        if result.success and result.access_token:
            self.update_account_tokens(
                account,
                result.access_token,
                result.refresh_token or account.refresh_token,
                result.expires_at,
            )
            lib_logger.info(f"Refreshed token for {account.label}")
            return True

        self.mark_refresh_failed(account, result.error or "Token refresh failed")
        return False


def _read_foreign_credential(path: Path) -> Optional[Dict[str, Any]]:
    """
    Normalize a foreign credential file to {refresh, access, expires}.

    Supports `{"openai": {"type": "oauth", ...}}` and the Codex CLI
    `{"tokens": {...}}` layout.
    """
    if not path.exists():
        return None
    data = safe_read_json(path, lib_logger)
    if not isinstance(data, dict):
        return None

    entry = data.get("openai")
    if isinstance(entry, dict):
        if entry.get("type") != "oauth" or not entry.get("refresh"):
            return None
        return {
            "refresh": str(entry["refresh"]),
            "access": entry.get("access") if isinstance(entry.get("access"), str) else None,
            "expires": entry.get("expires") if isinstance(entry.get("expires"), int) else None,
        }

    tokens = data.get("tokens")
    if isinstance(tokens, dict) and isinstance(tokens.get("refresh_token"), str):
        access = tokens.get("access_token")
        access = access if isinstance(access, str) else None
        claims = extract_claims(access) if access else None
        return {
            "refresh": tokens["refresh_token"],
            "access": access,
            "expires": claims.expires_ms if claims else None,
        }

    return None
