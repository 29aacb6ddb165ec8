# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .types import (
    AccountPoolSnapshot,
    ManagedAccount,
    MultiAccountConfig,
    SelectionStrategy,
    TokenRefreshResult,
    MAX_CONSECUTIVE_FAILURES,
)
from .store import AccountStore
from .selector import AccountSelector

__all__ = [
    "AccountPoolSnapshot",
    "ManagedAccount",
    "MultiAccountConfig",
    "SelectionStrategy",
    "TokenRefreshResult",
    "MAX_CONSECUTIVE_FAILURES",
    "AccountStore",
    "AccountSelector",
]
