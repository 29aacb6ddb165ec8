# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .types import CreditsBalance, UsageSnapshot, UsageWindow
from .snapshot_tracker import UsageSnapshotTracker, snapshot_key

__all__ = [
    "CreditsBalance",
    "UsageSnapshot",
    "UsageWindow",
    "UsageSnapshotTracker",
    "snapshot_key",
]
