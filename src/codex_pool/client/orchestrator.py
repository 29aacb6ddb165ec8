# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/client/orchestrator.py

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from .fetch_helpers import (
    build_codex_headers,
    build_upstream_url,
    extract_model,
    handle_error_response,
    handle_success_response,
    parse_request_body,
    prepare_codex_body,
    resolve_api_base,
    retry_after_ms_from_response,
)
from ..accounts.selector import AccountSelector
from ..accounts.store import AccountStore
from ..accounts.types import ManagedAccount
from ..error_handler import best_effort
from ..notifications import AccountNotifier
from ..usage.snapshot_tracker import UsageSnapshotTracker
from ..utils.openai_codex_jwt import extract_claims

lib_logger = logging.getLogger("codex_pool")

NO_ACCOUNTS_ERROR = "No available OpenAI accounts"
REFRESH_EXHAUSTED_ERROR = "All accounts failed token refresh"
NO_ACCOUNT_ID_ERROR = "NO_ACCOUNT_ID"

BodyTransformer = Callable[[Dict[str, Any]], Dict[str, Any]]


@dataclass
class _Attempt:
    """Which account the next upstream call uses, and how many retries were spent."""

    account: ManagedAccount
    retry_count: int = 0


def _json_response(status_code: int, error: str) -> httpx.Response:
    return httpx.Response(status_code, json={"error": error})


class RequestOrchestrator:
    """
    Runs one logical request against the account pool.

    Each pass of the loop is one upstream attempt. Rate-limited accounts are
    parked and the request moves to the next account, at most once per
    account; a 401 is retried on another account only once. Token refresh
    failures switch accounts without spending the retry budget.
    """

    def __init__(
        self,
        store: AccountStore,
        selector: AccountSelector,
        tracker: Optional[UsageSnapshotTracker] = None,
        notifier: Optional[AccountNotifier] = None,
        client: Optional[httpx.AsyncClient] = None,
        api_base: Optional[str] = None,
        body_transformer: Optional[BodyTransformer] = None,
    ):
        self.store = store
        self.selector = selector
        self.tracker = tracker
        self.notifier = notifier or AccountNotifier(quiet=store.config.quiet_mode)
        self.api_base = api_base or resolve_api_base()
        self.body_transformer = body_transformer or prepare_codex_body
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=30.0))
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _resolve_account_id(self, account: ManagedAccount) -> Optional[str]:
        if account.account_id:
            return account.account_id
        claims = extract_claims(account.access_token)
        return claims.account_id if claims else None

    def _switch(self, current: ManagedAccount, model: Optional[str]) -> Optional[ManagedAccount]:
        """Next account for `model`, or None if selection lands on `current` again."""
        candidate = self.selector.select_account(model)
        if candidate is None or candidate is current:
            return None
        self.notifier.switching(current, candidate)
        return candidate

    async def execute(
        self,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        path: str = "/responses",
        method: str = "POST",
    ) -> httpx.Response:
        """
        Send one request through the pool.

        Returns the upstream response (open for streaming requests, read
        otherwise) or a synthetic JSON error response.
        """
        payload = parse_request_body(body)
        model = extract_model(payload)
        is_streaming = bool(payload and payload.get("stream") is True)

        account = self.selector.select_account(model)
        if account is None:
            lib_logger.warning("No available OpenAI Codex account for request")
            return _json_response(503, NO_ACCOUNTS_ERROR)

        self.notifier.account_in_use(account, self.store.count)

        attempt = _Attempt(account=account)
        refresh_hops = 0

        while True:
            account = attempt.account

            if not await self.store.ensure_valid_token(account):
                refresh_hops += 1
                next_account = None
                if refresh_hops <= self.store.count:
                    next_account = self._switch(account, model)
                if next_account is None:
                    return _json_response(401, REFRESH_EXHAUSTED_ERROR)
                attempt = _Attempt(account=next_account, retry_count=attempt.retry_count)
                continue

            account_id = self._resolve_account_id(account)
            if not account_id:
                lib_logger.warning(f"No account id for account {account.index + 1}")
                return _json_response(401, NO_ACCOUNT_ID_ERROR)

            content = None
            prompt_cache_key = None
            if payload is not None:
                upstream_body = self.body_transformer(payload)
                prompt_cache_key = upstream_body.get("prompt_cache_key")
                content = json.dumps(upstream_body).encode("utf-8")
            elif body is not None:
                content = body if isinstance(body, bytes) else str(body).encode("utf-8")

            request = self.client.build_request(
                method,
                build_upstream_url(path, self.api_base),
                headers=build_codex_headers(
                    headers,
                    account_id,
                    account.access_token or "",
                    prompt_cache_key if isinstance(prompt_cache_key, str) else None,
                ),
                content=content,
            )
            response = await self.client.send(request, stream=True)

            if self.tracker is not None:
                await best_effort(
                    "Usage snapshot update",
                    self.tracker.record_from_headers,
                    account,
                    dict(response.headers),
                )

            lib_logger.debug(
                f"Codex upstream {response.status_code} via account {account.index + 1} "
                f"(attempt {attempt.retry_count + 1})"
            )

            if response.status_code == 429:
                await response.aread()
                retry_after_ms = retry_after_ms_from_response(response)
                self.store.mark_rate_limited(account, retry_after_ms, model)
                self.notifier.rate_limited(account, retry_after_ms)

                if attempt.retry_count < self.store.count - 1:
                    next_account = self._switch(account, model)
                    if next_account is not None:
                        await response.aclose()
                        attempt = _Attempt(next_account, attempt.retry_count + 1)
                        continue

            if response.status_code == 401 and attempt.retry_count < 1:
                self.store.mark_refresh_failed(account, "401 Unauthorized")
                next_account = self._switch(account, model)
                if next_account is not None:
                    await response.aclose()
                    attempt = _Attempt(next_account, attempt.retry_count + 1)
                    continue

            if not response.is_success:
                return await handle_error_response(response)

            return await handle_success_response(response, is_streaming)
