# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Mirrowel

"""
FastAPI application factory.

This module provides the create_app() function for creating and configuring
the FastAPI application instance.
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from codex_pool.error_handler import NoAvailableAccountsError
from codex_proxy.startup import PoolState, lifespan


def create_app(pool: Optional[PoolState] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        pool: Prebuilt pool components; built from the environment when omitted

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Codex Account Pool Proxy",
        description="Routes OpenAI Codex requests across a pool of OAuth accounts",
        version="1.0.0",
        lifespan=lambda app: lifespan(app, pool),
    )

    _configure_cors(app)
    _register_error_handlers(app)
    _register_routes(app)

    return app


def _configure_cors(app: FastAPI) -> None:
    """Configure CORS middleware from environment variables."""
    # PROXY_CORS_ORIGINS: comma-separated list or "*" for all
    cors_origins_env = os.getenv("PROXY_CORS_ORIGINS", "*")
    cors_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]

    if cors_origins == ["*"]:
        logging.debug(
            "CORS is configured to allow all origins (*). "
            "Set PROXY_CORS_ORIGINS to a specific domain list for production."
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _register_error_handlers(app: FastAPI) -> None:
    """Map pool exhaustion to the same 503 body the request path returns."""

    @app.exception_handler(NoAvailableAccountsError)
    async def _no_accounts(request: Request, exc: NoAvailableAccountsError):
        return JSONResponse(status_code=503, content={"error": str(exc)})


def _register_routes(app: FastAPI) -> None:
    """Register all API routes."""
    from codex_proxy.routes import admin, responses

    app.include_router(responses.router)
    app.include_router(admin.router)
