# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Mirrowel

"""
Admin and utility API routes.

- Account status report (/v1/accounts/status)
- Model list for the active account (/v1/models)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from codex_pool.error_handler import NoAvailableAccountsError
from codex_pool.status import build_status_report
from codex_proxy.dependencies import get_pool, verify_api_key
from codex_proxy.startup import PoolState

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/v1/accounts/status", response_class=PlainTextResponse)
async def account_status(
    refresh: bool = True,
    pool: PoolState = Depends(get_pool),
    _=Depends(verify_api_key),
):
    """Per-account status with usage bars, as plain text."""
    lines = await build_status_report(
        pool.store, pool.tracker, client=pool.client, refresh_usage=refresh
    )
    return "\n".join(lines)


@router.get("/v1/models")
async def list_models(
    pool: PoolState = Depends(get_pool),
    _=Depends(verify_api_key),
):
    """Models the Codex backend offers to the currently selected account."""
    account = pool.selector.peek_account()
    if account is None:
        raise NoAvailableAccountsError("No available OpenAI accounts")
    if not await pool.store.ensure_valid_token(account):
        raise HTTPException(status_code=401, detail="Account token refresh failed")
    if not account.access_token or not account.account_id:
        raise HTTPException(status_code=401, detail="Account has no usable access token")

    models = await pool.catalog.fetch_models(
        account.access_token, account.account_id, pool.client
    )
    return {
        "object": "list",
        "data": [
            {
                "id": model["slug"],
                "object": "model",
                "owned_by": "openai",
                "display_name": model.get("display_name", model["slug"]),
            }
            for model in models
        ],
    }
