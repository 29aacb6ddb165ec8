# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/models_catalog.py

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .client.fetch_helpers import (
    CODEX_MODELS_PATH,
    CODEX_ORIGINATOR,
    client_version,
    codex_user_agent,
    resolve_api_base,
)

lib_logger = logging.getLogger("codex_pool")

MODELS_CACHE_TTL_SECONDS = 5 * 60


class CodexModelCatalog:
    """
    Models the Codex backend offers to an account, cached per account id.

    On a failed fetch the previous (possibly expired) list is returned, or an
    empty list when nothing was cached yet.
    """

    def __init__(self, api_base: Optional[str] = None, ttl_seconds: float = MODELS_CACHE_TTL_SECONDS):
        self.api_base = (api_base or resolve_api_base()).rstrip("/")
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[str, Tuple[List[Dict[str, Any]], float]] = {}

    async def fetch_models(
        self,
        access_token: str,
        account_id: str,
        client: httpx.AsyncClient,
    ) -> List[Dict[str, Any]]:
        cached = self._cache.get(account_id)
        if cached and time.time() - cached[1] < self.ttl_seconds:
            return cached[0]

        url = f"{self.api_base}{CODEX_MODELS_PATH}?client_version={client_version()}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "chatgpt-account-id": account_id,
            "User-Agent": codex_user_agent(),
            "originator": CODEX_ORIGINATOR,
            "Accept": "application/json",
        }

        try:
            response = await client.get(url, headers=headers, timeout=20.0)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            lib_logger.warning(f"Failed to fetch Codex models: HTTP {e.response.status_code}")
            return cached[0] if cached else []
        except (httpx.RequestError, ValueError) as e:
            lib_logger.warning(f"Failed to fetch Codex models: {e}")
            return cached[0] if cached else []

        raw_models = payload.get("models") if isinstance(payload, dict) else None
        models: List[Dict[str, Any]] = []
        seen = set()
        for item in raw_models or []:
            if not isinstance(item, dict):
                continue
            slug = item.get("slug")
            if isinstance(slug, str) and slug and slug not in seen:
                seen.add(slug)
                models.append(item)

        self._cache[account_id] = (models, time.time())
        lib_logger.debug(f"Fetched {len(models)} Codex models for account {account_id}")
        return models

    async def is_model_available(
        self,
        model_slug: str,
        access_token: str,
        account_id: str,
        client: httpx.AsyncClient,
    ) -> bool:
        models = await self.fetch_models(access_token, account_id, client)
        return any(model.get("slug") == model_slug for model in models)
