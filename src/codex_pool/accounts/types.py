# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Account pool types.

`ManagedAccount` is the in-memory account; `AccountPoolSnapshot` is the
versioned on-disk form of the whole pool. Persisted keys stay camelCase so
the file can be shared with other tools that read the same pool.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

lib_logger = logging.getLogger("codex_pool")

SelectionStrategy = Literal["sticky", "round-robin", "hybrid"]
SELECTION_STRATEGIES = ("sticky", "round-robin", "hybrid")

POOL_FILE_VERSION = 1
MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_REFRESH_THRESHOLD_MS = 5 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _opt_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclass
class MultiAccountConfig:
    """Pool behaviour switches."""

    strategy: SelectionStrategy = "sticky"
    debug: bool = False
    quiet_mode: bool = False
    pid_offset_enabled: bool = False
    proactive_refresh_threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS
    remove_on_invalid_grant: bool = True
    per_model_rate_limits: bool = True

    @classmethod
    def from_env(cls) -> "MultiAccountConfig":
        """Build a config from OPENAI_CODEX_* environment variables."""
        config = cls()

        strategy = os.getenv("OPENAI_CODEX_STRATEGY", "").strip().lower()
        if strategy:
            if strategy in SELECTION_STRATEGIES:
                config.strategy = strategy  # type: ignore[assignment]
            else:
                lib_logger.warning(
                    f"Unknown OPENAI_CODEX_STRATEGY '{strategy}', using 'sticky'"
                )

        config.debug = _env_bool("OPENAI_CODEX_DEBUG", config.debug)
        config.quiet_mode = _env_bool("OPENAI_CODEX_QUIET", config.quiet_mode)
        config.pid_offset_enabled = _env_bool(
            "OPENAI_CODEX_PID_OFFSET", config.pid_offset_enabled
        )
        config.remove_on_invalid_grant = _env_bool(
            "OPENAI_CODEX_REMOVE_ON_INVALID_GRANT", config.remove_on_invalid_grant
        )
        config.per_model_rate_limits = _env_bool(
            "OPENAI_CODEX_PER_MODEL_RATE_LIMITS", config.per_model_rate_limits
        )

        threshold = os.getenv("OPENAI_CODEX_REFRESH_THRESHOLD_MS")
        if threshold:
            try:
                config.proactive_refresh_threshold_ms = max(0, int(threshold))
            except ValueError:
                lib_logger.warning(
                    f"Invalid OPENAI_CODEX_REFRESH_THRESHOLD_MS '{threshold}', "
                    f"using {config.proactive_refresh_threshold_ms}"
                )
        return config


@dataclass
class TokenRefreshResult:
    """Outcome of a refresh-token exchange."""

    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: Optional[str] = None) -> "TokenRefreshResult":
        return cls(success=False, error=error)


@dataclass
class ManagedAccount:
    """One OAuth identity in the pool, with its runtime state."""

    index: int
    refresh_token: str
    email: Optional[str] = None
    user_id: Optional[str] = None
    account_id: Optional[str] = None
    plan_type: Optional[str] = None
    access_token: Optional[str] = None
    expires_at: Optional[int] = None
    added_at: int = field(default_factory=now_ms)
    last_used: int = 0
    rate_limit_resets: Dict[str, int] = field(default_factory=dict)
    global_rate_limit_reset: Optional[int] = None
    consecutive_failures: int = 0
    is_refreshing: bool = False
    last_refresh_error: Optional[str] = None

    @property
    def label(self) -> str:
        return self.email or f"Account {self.index + 1}"

    @property
    def is_disabled(self) -> bool:
        return self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES

    def to_dict(self) -> Dict[str, Any]:
        # is_refreshing is process-local and never written out
        return {
            "index": self.index,
            "email": self.email,
            "userId": self.user_id,
            "accountId": self.account_id,
            "planType": self.plan_type,
            "addedAt": self.added_at,
            "lastUsed": self.last_used,
            "parts": {"refreshToken": self.refresh_token},
            "access": self.access_token,
            "expires": self.expires_at,
            "rateLimitResets": dict(self.rate_limit_resets),
            "globalRateLimitReset": self.global_rate_limit_reset,
            "consecutiveFailures": self.consecutive_failures,
            "lastRefreshError": self.last_refresh_error,
        }

    @classmethod
    def from_dict(cls, index: int, data: Dict[str, Any]) -> Optional["ManagedAccount"]:
        """Parse one persisted account; None when it has no refresh token."""
        parts = data.get("parts")
        refresh_token = parts.get("refreshToken") if isinstance(parts, dict) else None
        if not isinstance(refresh_token, str) or not refresh_token:
            return None

        resets = data.get("rateLimitResets")
        rate_limit_resets = {}
        if isinstance(resets, dict):
            for model, reset in resets.items():
                reset_ms = _opt_int(reset)
                if reset_ms is not None:
                    rate_limit_resets[str(model)] = reset_ms

        return cls(
            index=index,
            refresh_token=refresh_token,
            email=_opt_str(data.get("email")),
            user_id=_opt_str(data.get("userId")),
            account_id=_opt_str(data.get("accountId")),
            plan_type=_opt_str(data.get("planType")),
            access_token=_opt_str(data.get("access")),
            expires_at=_opt_int(data.get("expires")),
            added_at=_opt_int(data.get("addedAt")) or now_ms(),
            last_used=_opt_int(data.get("lastUsed")) or 0,
            rate_limit_resets=rate_limit_resets,
            global_rate_limit_reset=_opt_int(data.get("globalRateLimitReset")),
            consecutive_failures=max(0, _opt_int(data.get("consecutiveFailures")) or 0),
            last_refresh_error=_opt_str(data.get("lastRefreshError")),
        )


@dataclass
class AccountPoolSnapshot:
    """Versioned persisted form of the pool."""

    accounts: List[ManagedAccount] = field(default_factory=list)
    active_index: int = 0
    version: int = POOL_FILE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "accounts": [account.to_dict() for account in self.accounts],
            "activeAccountIndex": self.active_index,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["AccountPoolSnapshot"]:
        """
        Parse a pool file payload.

        Returns None for anything that is not a version-1 pool; callers treat
        that as an empty pool.
        """
        if not isinstance(data, dict) or data.get("version") != POOL_FILE_VERSION:
            return None
        raw_accounts = data.get("accounts")
        if not isinstance(raw_accounts, list):
            return None

        accounts: List[ManagedAccount] = []
        for raw in raw_accounts:
            if not isinstance(raw, dict):
                continue
            account = ManagedAccount.from_dict(len(accounts), raw)
            if account is not None:
                accounts.append(account)

        active_index = _opt_int(data.get("activeAccountIndex")) or 0
        return cls(accounts=accounts, active_index=active_index)
