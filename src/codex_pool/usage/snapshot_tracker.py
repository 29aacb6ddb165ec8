# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/usage/snapshot_tracker.py
"""
Per-account usage snapshots.

Snapshots come from the `x-codex-*` response headers or from the backend
usage endpoint. They are keyed by account identity rather than pool index, so
reordering the pool does not mix them up, and persisted to their own file
with merge-on-save: every write re-reads the disk map and keeps the newer
entry per key, which lets several processes update the file concurrently.
"""

import asyncio
import copy
import hashlib
import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import httpx

from .types import CreditsBalance, UsageSnapshot, UsageWindow
from ..accounts.types import ManagedAccount, now_ms
from ..error_handler import best_effort
from ..utils.paths import get_snapshots_file
from ..utils.resilient_io import safe_read_json, safe_write_json

lib_logger = logging.getLogger("codex_pool")

STALENESS_TTL_MS = 15 * 60 * 1000
SNAPSHOT_RETENTION_MS = 7 * 24 * 60 * 60 * 1000
# Reset timestamps below this are epoch seconds
EPOCH_SECONDS_THRESHOLD = 2_000_000_000

WHAM_USAGE_URL = "https://chatgpt.com/backend-api/wham/usage"
CODEX_USAGE_URL = "https://api.openai.com/api/codex/usage"

HEADER_PRIMARY_USED_PERCENT = "x-codex-primary-used-percent"
HEADER_PRIMARY_WINDOW_MINUTES = "x-codex-primary-window-minutes"
HEADER_PRIMARY_RESET_AT = "x-codex-primary-reset-at"
HEADER_SECONDARY_USED_PERCENT = "x-codex-secondary-used-percent"
HEADER_SECONDARY_WINDOW_MINUTES = "x-codex-secondary-window-minutes"
HEADER_SECONDARY_RESET_AT = "x-codex-secondary-reset-at"
HEADER_CREDITS_HAS_CREDITS = "x-codex-credits-has-credits"
HEADER_CREDITS_UNLIMITED = "x-codex-credits-unlimited"
HEADER_CREDITS_BALANCE = "x-codex-credits-balance"

BAR_WIDTH = 20
MONTH_NAMES = [
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
]


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def snapshot_key(account: ManagedAccount) -> str:
    """Stable identity for an account's usage snapshot."""
    if account.account_id and account.email and account.plan_type:
        return f"{account.account_id}|{account.email.lower()}|{account.plan_type}"
    if account.refresh_token:
        return hashlib.sha256(account.refresh_token.encode("utf-8")).hexdigest()
    if account.email:
        return f"email:{account.email.lower()}"
    if account.account_id:
        return f"account:{account.account_id}"
    if account.index is not None:
        return f"index:{account.index}"
    return "unknown"


def _parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _parse_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip()
    if not text:
        return None
    return text in ("true", "1")


def _to_epoch_ms(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(value * 1000) if value < EPOCH_SECONDS_THRESHOLD else int(value)


def _merge_window(
    existing: Optional[UsageWindow],
    used_percent: Optional[float],
    window_minutes: Optional[float],
    reset_at: Optional[int],
) -> Optional[UsageWindow]:
    if used_percent is None and window_minutes is None and reset_at is None:
        return copy.copy(existing) if existing else None
    if used_percent is None:
        used_percent = existing.used_percent if existing else 0
    if window_minutes is None:
        window_minutes = existing.window_minutes if existing else 0
    if reset_at is None:
        reset_at = existing.reset_at if existing else 0
    return UsageWindow(
        used_percent=max(0, min(100, used_percent)),
        window_minutes=max(0, window_minutes),
        reset_at=reset_at,
    )


def _merge_credits(
    existing: Optional[CreditsBalance],
    has_credits: Optional[bool],
    unlimited: Optional[bool],
    balance: Optional[str],
) -> Optional[CreditsBalance]:
    if has_credits is None and unlimited is None and balance is None:
        return copy.copy(existing) if existing else None
    return CreditsBalance(
        has_credits=has_credits if has_credits is not None else bool(existing and existing.has_credits),
        unlimited=unlimited if unlimited is not None else bool(existing and existing.unlimited),
        balance=balance if balance is not None else (existing.balance if existing else "0"),
    )


def _format_window(minutes: float) -> Optional[str]:
    minutes = int(minutes)
    if minutes <= 0:
        return None
    if minutes % (24 * 60) == 0:
        return f"{minutes // (24 * 60)}d"
    if minutes % 60 == 0:
        return f"{minutes // 60}h"
    return f"{minutes}m"


def _format_reset(reset_at: int, now: int) -> str:
    reset = datetime.fromtimestamp(reset_at / 1000)
    time_str = f"{reset.hour:02d}:{reset.minute:02d}"
    if reset_at - now > 24 * 60 * 60 * 1000:
        return f" (resets {time_str} on {reset.day} {MONTH_NAMES[reset.month - 1]})"
    return f" (resets {time_str})"


def _render_bar(label: str, window: Optional[UsageWindow], stale_label: str, now: int) -> str:
    padded = f"{label}:".ljust(16)
    if window is None:
        return f"  {padded} [{'-' * BAR_WIDTH}] unknown"

    left = window.left_percent
    filled = min(BAR_WIDTH, int(math.floor(left / 100 * BAR_WIDTH + 0.5)))
    bar = "#" * filled + "-" * (BAR_WIDTH - filled)
    reset_str = _format_reset(window.reset_at, now) if window.reset_at > 0 else ""
    status = f"{int(math.floor(left + 0.5))}% left".ljust(9)
    return f"  {padded} [{bar}] {status}{reset_str}{stale_label}"


# =============================================================================
# TRACKER
# =============================================================================


class UsageSnapshotTracker:
    """
    Keyed store of usage snapshots with disk merge persistence.

    The snapshot file is loaded lazily on first use. Every update is
    persisted; persistence failures are logged and never raised.
    """

    def __init__(self, file_path: Optional[Union[str, Path]] = None):
        self.file_path = Path(file_path) if file_path else get_snapshots_file()
        self._snapshots: Dict[str, UsageSnapshot] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            disk = await asyncio.to_thread(self._read_disk)
            if disk is not None:
                self._snapshots = disk
            self._loaded = True

    def _read_disk(self) -> Optional[Dict[str, UsageSnapshot]]:
        if not self.file_path.exists():
            return None
        data = safe_read_json(self.file_path, lib_logger)
        if not isinstance(data, list):
            return None
        snapshots: Dict[str, UsageSnapshot] = {}
        for entry in data:
            if not isinstance(entry, list) or len(entry) != 2:
                continue
            key, raw = entry
            snapshot = UsageSnapshot.from_dict(raw)
            if isinstance(key, str) and snapshot is not None:
                snapshots[key] = snapshot
        return snapshots

    def _merge_and_write(
        self, memory: Dict[str, UsageSnapshot], now: int
    ) -> Tuple[Dict[str, UsageSnapshot], bool]:
        """Merge `memory` into the disk map, prune, write. Runs off the event loop."""
        disk = self._read_disk()
        if disk is not None:
            for key, memory_value in memory.items():
                disk_value = disk.get(key)
                if disk_value is None or memory_value.updated_at > disk_value.updated_at:
                    disk[key] = memory_value
            merged = disk
        else:
            merged = dict(memory)

        kept = {
            key: value
            for key, value in merged.items()
            if now - value.updated_at <= SNAPSHOT_RETENTION_MS
        }
        payload = [[key, value.to_dict()] for key, value in kept.items()]
        written = safe_write_json(self.file_path, payload, lib_logger, secure_permissions=True)
        return kept, written

    async def save(self) -> bool:
        """Merge with the on-disk map and write atomically."""
        async with self._save_lock:
            memory = dict(self._snapshots)
            result = await best_effort(
                "Usage snapshot save",
                asyncio.to_thread,
                self._merge_and_write,
                memory,
                now_ms(),
            )
            if result is None:
                return False

            merged, written = result
            # Updates recorded while the merge ran are newer than the copy taken above
            for key, value in self._snapshots.items():
                if memory.get(key) is value:
                    continue
                current = merged.get(key)
                if current is None or value.updated_at >= current.updated_at:
                    merged[key] = value
            self._snapshots = merged
            return written

    # =========================================================================
    # UPDATES
    # =========================================================================

    def _store(
        self,
        account: ManagedAccount,
        primary: Optional[UsageWindow],
        secondary: Optional[UsageWindow],
        credits: Optional[CreditsBalance],
    ) -> UsageSnapshot:
        snapshot = UsageSnapshot(
            account_id=account.account_id or "",
            email=account.email or "",
            plan=account.plan_type or "",
            updated_at=now_ms(),
            primary=primary,
            secondary=secondary,
            credits=credits,
        )
        self._snapshots[snapshot_key(account)] = snapshot
        return snapshot

    async def record_from_headers(
        self, account: ManagedAccount, headers: Mapping[str, str]
    ) -> UsageSnapshot:
        """Merge the `x-codex-*` headers of an upstream response."""
        await self._ensure_loaded()
        lowered = {str(k).lower(): v for k, v in headers.items()}
        existing = self._snapshots.get(snapshot_key(account))

        primary = _merge_window(
            existing.primary if existing else None,
            _parse_number(lowered.get(HEADER_PRIMARY_USED_PERCENT)),
            _parse_number(lowered.get(HEADER_PRIMARY_WINDOW_MINUTES)),
            _to_epoch_ms(_parse_number(lowered.get(HEADER_PRIMARY_RESET_AT))),
        )
        secondary = _merge_window(
            existing.secondary if existing else None,
            _parse_number(lowered.get(HEADER_SECONDARY_USED_PERCENT)),
            _parse_number(lowered.get(HEADER_SECONDARY_WINDOW_MINUTES)),
            _to_epoch_ms(_parse_number(lowered.get(HEADER_SECONDARY_RESET_AT))),
        )
        credits = _merge_credits(
            existing.credits if existing else None,
            _parse_bool(lowered.get(HEADER_CREDITS_HAS_CREDITS)),
            _parse_bool(lowered.get(HEADER_CREDITS_UNLIMITED)),
            lowered.get(HEADER_CREDITS_BALANCE),
        )

        snapshot = self._store(account, primary, secondary, credits)
        await self.save()
        return snapshot

    async def record_from_backend_query(
        self, account: ManagedAccount, usage: Optional[Dict[str, Any]]
    ) -> Optional[UsageSnapshot]:
        """
        Merge a normalized backend usage payload.

        Expected shape (every part optional):
            {"primary": {"used_percent", "window_minutes", "resets_at"},
             "secondary": {...},
             "credits": {"has_credits", "unlimited", "balance"}}
        """
        if not usage:
            return None
        await self._ensure_loaded()
        existing = self._snapshots.get(snapshot_key(account))

        def window(name: str, current: Optional[UsageWindow]) -> Optional[UsageWindow]:
            data = usage.get(name)
            if not isinstance(data, dict):
                return copy.copy(current) if current else None
            return _merge_window(
                current,
                _parse_number(data.get("used_percent")),
                _parse_number(data.get("window_minutes")),
                _to_epoch_ms(_parse_number(data.get("resets_at"))),
            )

        credits_data = usage.get("credits")
        if isinstance(credits_data, dict):
            balance = credits_data.get("balance")
            credits = _merge_credits(
                existing.credits if existing else None,
                _parse_bool(credits_data.get("has_credits")),
                _parse_bool(credits_data.get("unlimited")),
                str(balance) if balance is not None else None,
            )
        else:
            credits = copy.copy(existing.credits) if existing and existing.credits else None

        snapshot = self._store(
            account,
            window("primary", existing.primary if existing else None),
            window("secondary", existing.secondary if existing else None),
            credits,
        )
        await self.save()
        return snapshot

    async def fetch_from_backend(
        self,
        account: ManagedAccount,
        access_token: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> bool:
        """Query the backend usage endpoint and merge the result. Best-effort."""
        is_chatgpt_token = len(access_token.split(".")) == 3
        url = WHAM_USAGE_URL if is_chatgpt_token else CODEX_USAGE_URL
        headers = {
            "Authorization": f"Bearer {access_token}",
            "OpenAI-Account-Id": account.account_id or "",
            "Accept": "application/json",
            "User-Agent": "codex_cli_rs",
            "Origin": "https://chatgpt.com",
        }

        try:
            if client is not None:
                response = await client.get(url, headers=headers, timeout=30)
            else:
                async with httpx.AsyncClient() as owned_client:
                    response = await owned_client.get(url, headers=headers, timeout=30)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            lib_logger.debug(
                f"Usage query for {account.label} failed: HTTP {e.response.status_code}"
            )
            return False
        except (httpx.RequestError, ValueError) as e:
            lib_logger.debug(f"Usage query for {account.label} failed: {e}")
            return False

        if not isinstance(data, dict):
            return False

        usage: Dict[str, Any] = {}
        rate_limit = data.get("rate_limit")
        if isinstance(rate_limit, dict):
            for source, target in (("primary_window", "primary"), ("secondary_window", "secondary")):
                window = rate_limit.get(source)
                if not isinstance(window, dict):
                    continue
                seconds = _parse_number(window.get("limit_window_seconds"))
                usage[target] = {
                    "used_percent": window.get("used_percent"),
                    "window_minutes": seconds / 60 if seconds is not None else None,
                    "resets_at": window.get("reset_at"),
                }

        credits = data.get("credits")
        if isinstance(credits, dict):
            usage["credits"] = credits

        await self.record_from_backend_query(account, usage)
        return True

    # =========================================================================
    # READS
    # =========================================================================

    async def get_snapshot(self, account: ManagedAccount) -> Optional[UsageSnapshot]:
        """Return a copy of the account's snapshot with `is_stale` filled in."""
        await self._ensure_loaded()
        snapshot = self._snapshots.get(snapshot_key(account))
        if snapshot is None:
            return None
        result = copy.deepcopy(snapshot)
        result.is_stale = now_ms() - snapshot.updated_at > STALENESS_TTL_MS
        return result

    async def get_all_snapshots(self) -> Dict[str, UsageSnapshot]:
        await self._ensure_loaded()
        return copy.deepcopy(self._snapshots)

    async def render(self, account: ManagedAccount) -> List[str]:
        """Fixed-width usage bars for the account, plus a credits line."""
        snapshot = await self.get_snapshot(account)
        now = now_ms()

        if snapshot is None:
            return [
                _render_bar("5h limit", None, "", now),
                _render_bar("Weekly limit", None, "", now),
            ]

        stale_label = " (stale)" if snapshot.is_stale else ""
        lines = []

        primary_label = _format_window(snapshot.primary.window_minutes if snapshot.primary else 0)
        lines.append(
            _render_bar(f"{primary_label or '5h'} limit", snapshot.primary, stale_label, now)
        )

        secondary_label = _format_window(
            snapshot.secondary.window_minutes if snapshot.secondary else 0
        )
        secondary_header = (
            "Weekly limit"
            if secondary_label in (None, "7d")
            else f"{secondary_label} limit"
        )
        lines.append(_render_bar(secondary_header, snapshot.secondary, stale_label, now))

        if snapshot.credits:
            credit_str = (
                "unlimited"
                if snapshot.credits.unlimited
                else f"{snapshot.credits.balance} credits"
            )
            lines.append(f"  Credits  {credit_str}{stale_label}")

        return lines
