# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Mirrowel

"""FastAPI dependencies: pool access and proxy API key verification."""

import os

from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader

from codex_proxy.startup import PoolState

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)
x_api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


def get_pool(request: Request) -> PoolState:
    """Dependency to get the pool components from the app state."""
    return request.app.state.pool


async def verify_api_key(
    auth: str = Depends(api_key_header),
    x_api_key: str = Depends(x_api_key_header),
):
    """
    Verify the proxy API key.

    Accepts `Authorization: Bearer <key>` or `x-api-key: <key>`. If
    PROXY_API_KEY is not set, verification is skipped (open access mode).
    """
    proxy_api_key = os.getenv("PROXY_API_KEY")
    if not proxy_api_key:
        return auth or x_api_key
    if auth and auth == f"Bearer {proxy_api_key}":
        return auth
    if x_api_key and x_api_key == proxy_api_key:
        return x_api_key
    raise HTTPException(status_code=401, detail="Invalid or missing API Key")
