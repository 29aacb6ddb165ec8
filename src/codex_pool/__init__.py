# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Multi-account OpenAI Codex request routing.

Public API:
    AccountStore: durable account pool
    AccountSelector: sticky / round-robin / hybrid account selection
    RequestOrchestrator: upstream calls with refresh, failover and retry
    UsageSnapshotTracker: per-account usage windows from response headers
    MultiAccountConfig: pool behaviour switches
"""

from .accounts import AccountSelector, AccountStore, ManagedAccount, MultiAccountConfig
from .client import RequestOrchestrator
from .notifications import AccountNotifier
from .providers import OpenAICodexTokenRefresher
from .usage import UsageSnapshotTracker

__all__ = [
    "AccountSelector",
    "AccountStore",
    "ManagedAccount",
    "MultiAccountConfig",
    "RequestOrchestrator",
    "AccountNotifier",
    "OpenAICodexTokenRefresher",
    "UsageSnapshotTracker",
]
