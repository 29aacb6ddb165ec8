# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/client/fetch_helpers.py
"""
Building blocks for one upstream Codex call: URL rewrite, body
normalization, header construction, 429 reset probing, and error/success
response post-processing.
"""

import json
import logging
import os
import platform
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import httpx

lib_logger = logging.getLogger("codex_pool")

DEFAULT_API_BASE = "https://chatgpt.com/backend-api"
RESPONSES_PATH = "/responses"
CODEX_RESPONSES_PATH = "/codex/responses"
CODEX_MODELS_PATH = "/codex/models"
CODEX_ORIGINATOR = "codex_cli_rs"
CODEX_CLIENT_VERSION = "0.98.0"

DEFAULT_RETRY_AFTER_MS = 60_000
EPOCH_SECONDS_THRESHOLD = 2_000_000_000

USAGE_LIMIT_PATTERN = re.compile(
    r"usage_limit_reached|usage_not_included|rate_limit_exceeded|usage limit",
    re.IGNORECASE,
)

# Inbound headers that must not reach the upstream
_DROPPED_REQUEST_HEADERS = {
    "x-api-key",
    "authorization",
    "host",
    "content-length",
    "connection",
    "accept-encoding",
    "cookie",
}
# Body-framing headers that no longer match once the body is re-encoded
_DROPPED_RESPONSE_HEADERS = {"content-length", "content-encoding", "transfer-encoding"}


def resolve_api_base() -> str:
    return os.getenv("OPENAI_CODEX_API_BASE", DEFAULT_API_BASE).rstrip("/")


def client_version() -> str:
    return os.getenv("OPENAI_CODEX_CLIENT_VERSION", CODEX_CLIENT_VERSION)


def codex_user_agent() -> str:
    system = platform.system()
    os_type = {"Darwin": "Mac OS", "Windows": "Windows"}.get(system, "Linux")
    return (
        f"{CODEX_ORIGINATOR}/{client_version()} "
        f"({os_type} {platform.release()}; {platform.machine()}) Terminal"
    )


def build_upstream_url(path: str, api_base: Optional[str] = None) -> str:
    """
    Map an inbound path onto the Codex backend.

    `/v1/responses` and `/responses` both become `{base}/codex/responses`; the
    `client_version` query parameter is always appended.
    """
    base = (api_base or resolve_api_base()).rstrip("/")
    parts = urlsplit(path)
    route = parts.path or "/"
    if route.startswith("/v1/"):
        route = route[3:]
    if route.endswith(RESPONSES_PATH) and not route.endswith(CODEX_RESPONSES_PATH):
        route = route[: -len(RESPONSES_PATH)] + CODEX_RESPONSES_PATH

    query = f"{parts.query}&" if parts.query else ""
    return f"{base}{route}?{query}client_version={client_version()}"


def parse_request_body(body: Any) -> Optional[Dict[str, Any]]:
    """Best-effort JSON parse of a request body; None if not a JSON object."""
    if body is None:
        return None
    if isinstance(body, dict):
        return body
    try:
        parsed = json.loads(body)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_model(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if not payload:
        return None
    model = payload.get("model")
    return model if isinstance(model, str) and model else None


def prepare_codex_body(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Default body normalization: the backend only serves streamed, unstored calls."""
    prepared = dict(payload)
    prepared["store"] = False
    prepared["stream"] = True
    return prepared


def build_codex_headers(
    incoming: Optional[Mapping[str, str]],
    account_id: str,
    access_token: str,
    prompt_cache_key: Optional[str] = None,
) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for name, value in (incoming or {}).items():
        if name.lower() not in _DROPPED_REQUEST_HEADERS:
            headers[name.lower()] = value

    headers["authorization"] = f"Bearer {access_token}"
    headers["chatgpt-account-id"] = account_id
    headers["openai-beta"] = "responses=experimental"
    headers["originator"] = CODEX_ORIGINATOR
    headers["version"] = client_version()
    headers["user-agent"] = codex_user_agent()
    headers["content-type"] = "application/json"

    if prompt_cache_key:
        headers["conversation_id"] = prompt_cache_key
        headers["session_id"] = prompt_cache_key
    else:
        headers.pop("conversation_id", None)
        headers.pop("session_id", None)

    headers["accept"] = "text/event-stream"
    return headers


def _reset_to_ms_from_now(value: Any, now_ms: int) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return max(0, int(parsed.timestamp() * 1000) - now_ms)
    if isinstance(value, (int, float)):
        reset_ms = value * 1000 if value < EPOCH_SECONDS_THRESHOLD else value
        return max(0, int(reset_ms) - now_ms)
    return None


def retry_after_ms_from_response(response: httpx.Response) -> int:
    """
    Work out how long a 429 account should be parked.

    Order: `Retry-After` seconds, then a reset timestamp in the body
    (`error.resets_at`, `error.details.resets_at`, `resets_at`), then an
    explicit `retry_after` seconds field, then 60s. The body must be read.
    """
    retry_header = response.headers.get("retry-after")
    if retry_header:
        try:
            return max(0, int(float(retry_header) * 1000))
        except ValueError:
            pass

    try:
        parsed = json.loads(response.content or b"")
    except ValueError:
        parsed = None
    if not isinstance(parsed, dict):
        return DEFAULT_RETRY_AFTER_MS

    now_ms = int(time.time() * 1000)
    error = parsed.get("error") if isinstance(parsed.get("error"), dict) else {}
    details = error.get("details") if isinstance(error.get("details"), dict) else {}

    for candidate in (error.get("resets_at"), details.get("resets_at"), parsed.get("resets_at")):
        reset_ms = _reset_to_ms_from_now(candidate, now_ms)
        if reset_ms is not None:
            return reset_ms

    for key in ("retry_after", "retry_after_seconds"):
        value = error.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return max(0, int(value * 1000))

    return DEFAULT_RETRY_AFTER_MS


def _request_of(response: httpx.Response) -> Optional[httpx.Request]:
    try:
        return response.request
    except RuntimeError:
        return None


def _copy_headers(response: httpx.Response) -> List[Tuple[str, str]]:
    return [
        (name, value)
        for name, value in response.headers.items()
        if name.lower() not in _DROPPED_RESPONSE_HEADERS
    ]


def map_usage_limit_404(response: httpx.Response) -> Optional[httpx.Response]:
    """Re-label a 404 that really reports an exhausted usage limit as a 429."""
    if response.status_code != 404:
        return None
    text = response.text
    if not text:
        return None

    code = ""
    try:
        parsed = json.loads(text)
        error = parsed.get("error") if isinstance(parsed, dict) else None
        if isinstance(error, dict):
            code = str(error.get("code") or error.get("type") or "")
    except ValueError:
        code = ""

    if not USAGE_LIMIT_PATTERN.search(f"{code} {text}"):
        return None

    return httpx.Response(
        429,
        headers=_copy_headers(response),
        content=response.content,
        request=_request_of(response),
        extensions={"reason_phrase": b"Too Many Requests"},
    )


async def handle_error_response(response: httpx.Response) -> httpx.Response:
    await response.aread()
    lib_logger.debug(f"Codex upstream error {response.status_code}: {response.text[:500]}")
    mapped = map_usage_limit_404(response)
    if mapped is not None:
        lib_logger.info("Codex usage-limit 404 remapped to 429")
        return mapped
    return response


def parse_sse_events(text: str) -> List[Dict[str, Any]]:
    """Split an SSE body into its JSON `data:` payloads."""
    events: List[Dict[str, Any]] = []
    data_lines: List[str] = []

    def flush() -> None:
        payload = "\n".join(data_lines).strip()
        data_lines.clear()
        if not payload or payload == "[DONE]":
            return
        try:
            parsed = json.loads(payload)
        except ValueError:
            lib_logger.debug(f"Codex SSE non-JSON payload ignored: {payload[:200]}")
            return
        if isinstance(parsed, dict):
            events.append(parsed)

    for line in text.splitlines():
        if line == "":
            flush()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    flush()
    return events


def sse_to_final_response(text: str) -> Optional[Dict[str, Any]]:
    """The `response` object of the terminal `response.done`/`response.completed` event."""
    for event in parse_sse_events(text):
        if event.get("type") in ("response.done", "response.completed"):
            final = event.get("response")
            if isinstance(final, dict):
                return final
    return None


async def handle_success_response(
    response: httpx.Response, is_streaming: bool
) -> httpx.Response:
    """
    Streaming callers get the open upstream response. Everyone else gets the
    final response object as JSON, or the raw body if no final event came.
    """
    if is_streaming:
        if "content-type" not in response.headers:
            response.headers["content-type"] = "text/event-stream"
        return response

    await response.aread()
    final = sse_to_final_response(response.text)
    if final is None:
        lib_logger.debug("Codex response had no final event; returning raw body")
        return response

    headers = [
        (name, value)
        for name, value in _copy_headers(response)
        if name.lower() != "content-type"
    ]
    headers.append(("content-type", "application/json"))
    return httpx.Response(
        response.status_code,
        headers=headers,
        content=json.dumps(final).encode("utf-8"),
        request=_request_of(response),
    )
