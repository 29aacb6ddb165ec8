# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""JWT claim helpers for OpenAI Codex OAuth tokens.

Payloads are decoded without signature verification. The claims only feed
account metadata (account id, user id, plan, email, expiry), never auth
decisions.
"""

import base64
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

AUTH_CLAIM = "https://api.openai.com/auth"
PROFILE_CLAIM = "https://api.openai.com/profile"
ACCOUNT_ID_CLAIM = "https://api.openai.com/auth.chatgpt_account_id"


@dataclass
class CodexTokenClaims:
    """Identity fields recovered from an access token."""

    account_id: Optional[str] = None
    user_id: Optional[str] = None
    plan_type: Optional[str] = None
    email: Optional[str] = None
    expires_ms: Optional[int] = None


def decode_jwt_unverified(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode JWT payload without signature verification."""
    if not token or not isinstance(token, str):
        return None

    parts = token.split(".")
    if len(parts) < 2:
        return None

    payload_segment = parts[1]
    padding = "=" * (-len(payload_segment) % 4)

    try:
        payload_bytes = base64.urlsafe_b64decode(payload_segment + padding)
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _auth_claim_value(payload: Dict[str, Any], key: str) -> Optional[str]:
    auth_claim = payload.get(AUTH_CLAIM)
    if isinstance(auth_claim, dict):
        value = auth_claim.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_account_id_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """Extract the ChatGPT account id from known claim locations."""
    if not payload:
        return None

    direct = payload.get(ACCOUNT_ID_CLAIM)
    if isinstance(direct, str) and direct.strip():
        return direct.strip()

    nested = _auth_claim_value(payload, "chatgpt_account_id")
    if nested:
        return nested

    # Older tokens only carry organizations[0].id
    orgs = payload.get("organizations")
    if isinstance(orgs, list) and orgs and isinstance(orgs[0], dict):
        org_id = orgs[0].get("id")
        if isinstance(org_id, str) and org_id.strip():
            return org_id.strip()

    return None


def extract_email_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """Email from the profile claim, then the top-level `email` claim."""
    if not payload:
        return None

    profile = payload.get(PROFILE_CLAIM)
    if isinstance(profile, dict):
        email = profile.get("email")
        if isinstance(email, str) and email.strip():
            return email.strip()

    email = payload.get("email")
    if isinstance(email, str) and email.strip():
        return email.strip()

    return None


def extract_expiry_ms_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[int]:
    """Extract JWT exp claim and convert to milliseconds."""
    if not payload:
        return None

    exp = payload.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return int(float(exp) * 1000)

    return None


def extract_claims(token: Optional[str]) -> Optional[CodexTokenClaims]:
    """Decode an access token into `CodexTokenClaims`, or None if undecodable."""
    payload = decode_jwt_unverified(token)
    if payload is None:
        return None
    return CodexTokenClaims(
        account_id=extract_account_id_from_payload(payload),
        user_id=_auth_claim_value(payload, "chatgpt_user_id"),
        plan_type=_auth_claim_value(payload, "chatgpt_plan_type"),
        email=extract_email_from_payload(payload),
        expires_ms=extract_expiry_ms_from_payload(payload),
    )
