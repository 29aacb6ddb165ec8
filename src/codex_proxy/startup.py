# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Mirrowel

"""
Application startup and shutdown logic.

Builds the account pool components from the environment and ties their
lifecycle to the FastAPI app.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import FastAPI

from codex_pool import (
    AccountNotifier,
    AccountSelector,
    AccountStore,
    MultiAccountConfig,
    OpenAICodexTokenRefresher,
    RequestOrchestrator,
    UsageSnapshotTracker,
)
from codex_pool.models_catalog import CodexModelCatalog

logger = logging.getLogger(__name__)


@dataclass
class PoolState:
    """Everything the routes need, stored on `app.state.pool`."""

    store: AccountStore
    selector: AccountSelector
    tracker: UsageSnapshotTracker
    orchestrator: RequestOrchestrator
    catalog: CodexModelCatalog
    client: httpx.AsyncClient


def build_pool_state(
    config: Optional[MultiAccountConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
    import_foreign: bool = True,
) -> PoolState:
    """Load the account pool and wire the request path around it."""
    config = config or MultiAccountConfig.from_env()
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=30.0))

    store = AccountStore(config=config, refresher=OpenAICodexTokenRefresher(client=client))
    store.load()
    if import_foreign:
        store.import_foreign_credential()

    selector = AccountSelector(store)
    tracker = UsageSnapshotTracker()
    orchestrator = RequestOrchestrator(
        store,
        selector,
        tracker=tracker,
        notifier=AccountNotifier(quiet=config.quiet_mode),
        client=client,
    )
    return PoolState(
        store=store,
        selector=selector,
        tracker=tracker,
        orchestrator=orchestrator,
        catalog=CodexModelCatalog(),
        client=client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI, pool: Optional[PoolState] = None):
    """
    Manage the pool's HTTP client with the app's lifespan.

    A prebuilt `pool` is used as-is and left open on shutdown.
    """
    owns_pool = pool is None
    state = pool or build_pool_state()
    app.state.pool = state

    if state.store.count == 0:
        logging.warning("=" * 70)
        logging.warning("NO OPENAI CODEX ACCOUNTS CONFIGURED")
        logging.warning("The proxy is running but every request will return 503.")
        logging.warning("  Import one with: codex-pool --import ~/.codex/auth.json")
        logging.warning("=" * 70)
    else:
        logging.info(
            f"Account pool ready: {state.store.count} account(s), "
            f"strategy '{state.store.config.strategy}'"
        )

    yield

    if owns_pool:
        await state.client.aclose()
        logging.info("Account pool closed.")
