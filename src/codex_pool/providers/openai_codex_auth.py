# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/providers/openai_codex_auth.py

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

from ..accounts.types import TokenRefreshResult
from ..error_handler import CredentialNeedsReauthError, mask_secret
from ..utils.openai_codex_jwt import decode_jwt_unverified, extract_expiry_ms_from_payload

lib_logger = logging.getLogger("codex_pool")

# OAuth constants
CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
TOKEN_ENDPOINT = "https://auth.openai.com/oauth/token"

MAX_RATE_LIMIT_WAIT_SECONDS = 5


class OpenAICodexTokenRefresher:
    """
    Exchanges a refresh token for a fresh access/refresh/expiry triple.

    `refresh()` never raises: every failure comes back as
    `TokenRefreshResult(success=False, error=...)`. A rejected grant yields an
    error text starting with `invalid_grant`, which the account store uses to
    decide whether the account should be dropped.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        timeout: float = 30.0,
    ):
        self._client = client
        self.max_retries = max(1, max_retries)
        self.timeout = timeout

    async def refresh(self, refresh_token: str) -> TokenRefreshResult:
        if not refresh_token:
            return TokenRefreshResult.failed("No refresh token")

        try:
            if self._client is not None:
                token_data = await self._request_tokens(self._client, refresh_token)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    token_data = await self._request_tokens(client, refresh_token)
        except CredentialNeedsReauthError as e:
            lib_logger.warning(f"OpenAI Codex refresh rejected: {e.message}")
            return TokenRefreshResult.failed(e.message)
        except httpx.HTTPStatusError as e:
            lib_logger.warning(
                f"OpenAI Codex refresh failed with HTTP {e.response.status_code}"
            )
            return TokenRefreshResult.failed(f"HTTP {e.response.status_code}")
        except (httpx.RequestError, ValueError) as e:
            lib_logger.warning(f"OpenAI Codex refresh failed: {e}")
            return TokenRefreshResult.failed(str(e))

        access_token = token_data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            return TokenRefreshResult.failed("Refresh response missing access_token")

        new_refresh = token_data.get("refresh_token")
        if not isinstance(new_refresh, str) or not new_refresh:
            new_refresh = refresh_token

        expires_in = token_data.get("expires_in")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            expires_at = int((time.time() + float(expires_in)) * 1000)
        else:
            expires_at = extract_expiry_ms_from_payload(decode_jwt_unverified(access_token))

        lib_logger.debug(f"OpenAI Codex token refreshed for {mask_secret(refresh_token)}")
        return TokenRefreshResult(
            success=True,
            access_token=access_token,
            refresh_token=new_refresh,
            expires_at=expires_at,
        )

    async def _request_tokens(
        self, client: httpx.AsyncClient, refresh_token: str
    ) -> Dict[str, Any]:
        """POST the refresh grant with retry/backoff on 429, 5xx and network errors."""
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }

        for attempt in range(self.max_retries):
            is_last = attempt >= self.max_retries - 1
            try:
                response = await client.post(
                    TOKEN_ENDPOINT,
                    headers=headers,
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                        "client_id": CLIENT_ID,
                    },
                )
                response.raise_for_status()
                payload = response.json()
                if not isinstance(payload, dict):
                    raise ValueError("Refresh response is not a JSON object")
                return payload

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code

                error_type = ""
                error_desc = ""
                try:
                    payload = e.response.json()
                    error_type = str(payload.get("error", "") or "")
                    error_desc = str(
                        payload.get("error_description", "") or payload.get("message", "")
                    )
                except ValueError:
                    error_desc = e.response.text

                if status_code in (400, 401, 403) and (
                    error_type == "invalid_grant" or "invalid_grant" in error_desc.lower()
                ):
                    detail = f": {error_desc}" if error_desc else ""
                    raise CredentialNeedsReauthError(f"invalid_grant{detail}")

                if status_code == 429 and not is_last:
                    retry_after = e.response.headers.get("Retry-After", "1")
                    try:
                        wait_seconds = max(1, int(float(retry_after)))
                    except ValueError:
                        wait_seconds = 1
                    await asyncio.sleep(min(wait_seconds, MAX_RATE_LIMIT_WAIT_SECONDS))
                    continue

                if 500 <= status_code < 600 and not is_last:
                    await asyncio.sleep(2**attempt)
                    continue

                raise

            except httpx.RequestError:
                if not is_last:
                    await asyncio.sleep(2**attempt)
                    continue
                raise

        raise ValueError("OpenAI Codex token refresh exhausted retries")
