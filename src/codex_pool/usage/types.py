# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Usage snapshot types.

Rate limit structure reported by the Codex API:
- Primary window: short-term limit (normally 5 hours)
- Secondary window: long-term limit (normally weekly)
- Credits: account credit balance info
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


def _num(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


@dataclass
class UsageWindow:
    """One rate limit window. `reset_at` is epoch ms, 0 when unknown."""

    used_percent: float = 0
    window_minutes: float = 0
    reset_at: int = 0

    @property
    def left_percent(self) -> float:
        return max(0.0, 100.0 - self.used_percent)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usedPercent": self.used_percent,
            "windowMinutes": self.window_minutes,
            "resetAt": self.reset_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["UsageWindow"]:
        if not isinstance(data, dict):
            return None
        return cls(
            used_percent=_num(data.get("usedPercent")),
            window_minutes=_num(data.get("windowMinutes")),
            reset_at=int(_num(data.get("resetAt"))),
        )


@dataclass
class CreditsBalance:
    has_credits: bool = False
    unlimited: bool = False
    balance: str = "0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasCredits": self.has_credits,
            "unlimited": self.unlimited,
            "balance": self.balance,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["CreditsBalance"]:
        if not isinstance(data, dict):
            return None
        balance = data.get("balance")
        return cls(
            has_credits=bool(data.get("hasCredits", False)),
            unlimited=bool(data.get("unlimited", False)),
            balance=str(balance) if balance is not None else "0",
        )


@dataclass
class UsageSnapshot:
    """Usage telemetry for one account; `is_stale` is computed, never stored."""

    account_id: str = ""
    email: str = ""
    plan: str = ""
    updated_at: int = 0
    primary: Optional[UsageWindow] = None
    secondary: Optional[UsageWindow] = None
    credits: Optional[CreditsBalance] = None
    is_stale: bool = field(default=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "email": self.email,
            "plan": self.plan,
            "updatedAt": self.updated_at,
            "primary": self.primary.to_dict() if self.primary else None,
            "secondary": self.secondary.to_dict() if self.secondary else None,
            "credits": self.credits.to_dict() if self.credits else None,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["UsageSnapshot"]:
        if not isinstance(data, dict):
            return None
        return cls(
            account_id=str(data.get("accountId") or ""),
            email=str(data.get("email") or ""),
            plan=str(data.get("plan") or ""),
            updated_at=int(_num(data.get("updatedAt"))),
            primary=UsageWindow.from_dict(data.get("primary")),
            secondary=UsageWindow.from_dict(data.get("secondary")),
            credits=CreditsBalance.from_dict(data.get("credits")),
        )
