# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/status.py
"""Operator-facing account status report."""

from typing import List, Optional

import httpx

from .accounts.store import AccountStore
from .error_handler import best_effort
from .usage.snapshot_tracker import UsageSnapshotTracker


async def build_status_report(
    store: AccountStore,
    tracker: UsageSnapshotTracker,
    client: Optional[httpx.AsyncClient] = None,
    refresh_usage: bool = True,
) -> List[str]:
    """
    One block per account: position, ACTIVE/READY, identity, plan, usage bars.

    With `refresh_usage`, accounts holding an unexpired access token are first
    re-queried from the backend usage endpoint.
    """
    lines = ["OpenAI Codex Status", ""]

    if store.count == 0:
        lines.extend(["  Accounts: 0", "", "Add accounts:", "  codex-pool --import ~/.codex/auth.json"])
        return lines

    if refresh_usage:
        for account in store.accounts:
            if account.access_token and store.is_token_fresh(account):
                await best_effort(
                    f"Usage query for {account.label}",
                    tracker.fetch_from_backend,
                    account,
                    account.access_token,
                    client,
                )

    active = store.get_active_account()
    for account in store.accounts:
        state = "ACTIVE" if account is active else "READY"
        plan = account.plan_type or "Unknown"
        lines.append(f"{account.index + 1}. {state} {account.label} [{plan}]")
        if account.is_disabled:
            lines.append(
                f"  Disabled after {account.consecutive_failures} failures: "
                f"{account.last_refresh_error or 'unknown error'}"
            )
        lines.extend(await tracker.render(account))
        lines.append("")

    return lines
