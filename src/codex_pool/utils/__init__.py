# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/utils/__init__.py

from .paths import (
    get_config_dir,
    get_cache_dir,
    get_accounts_file,
    get_snapshots_file,
)
from .resilient_io import safe_write_json, safe_read_json, safe_mkdir
from .openai_codex_jwt import (
    AUTH_CLAIM,
    PROFILE_CLAIM,
    ACCOUNT_ID_CLAIM,
    CodexTokenClaims,
    decode_jwt_unverified,
    extract_account_id_from_payload,
    extract_email_from_payload,
    extract_expiry_ms_from_payload,
    extract_claims,
)

__all__ = [
    "get_config_dir",
    "get_cache_dir",
    "get_accounts_file",
    "get_snapshots_file",
    "safe_write_json",
    "safe_read_json",
    "safe_mkdir",
    "AUTH_CLAIM",
    "PROFILE_CLAIM",
    "ACCOUNT_ID_CLAIM",
    "CodexTokenClaims",
    "decode_jwt_unverified",
    "extract_account_id_from_payload",
    "extract_email_from_payload",
    "extract_expiry_ms_from_payload",
    "extract_claims",
]
