# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Mirrowel

"""
Codex Responses API routes.

Requests are forwarded through the account pool; streamed upstream bodies are
passed through chunk by chunk.
"""

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from codex_proxy.dependencies import get_pool, verify_api_key
from codex_proxy.startup import PoolState

logger = logging.getLogger(__name__)
router = APIRouter()

# Framing headers recomputed by the ASGI server
_HOP_HEADERS = {"content-length", "content-encoding", "transfer-encoding", "connection"}


def _forward_headers(upstream: httpx.Response) -> dict:
    return {
        name: value
        for name, value in upstream.headers.items()
        if name.lower() not in _HOP_HEADERS
    }


@router.post("/v1/responses")
@router.post("/responses")
async def create_response(
    request: Request,
    pool: PoolState = Depends(get_pool),
    _=Depends(verify_api_key),
):
    """Forward a Responses API call through the account pool."""
    body = await request.body()

    try:
        upstream = await pool.orchestrator.execute(
            body=body or None,
            headers=dict(request.headers),
            path="/responses",
        )
    except httpx.RequestError as e:
        logger.error(f"Upstream request failed: {e}")
        raise HTTPException(status_code=502, detail=f"Upstream request failed: {e}")

    if not upstream.is_closed:
        return StreamingResponse(
            upstream.aiter_bytes(),
            status_code=upstream.status_code,
            headers=_forward_headers(upstream),
            background=BackgroundTask(upstream.aclose),
        )

    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=_forward_headers(upstream),
    )
