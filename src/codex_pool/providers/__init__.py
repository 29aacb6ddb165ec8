# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .openai_codex_auth import OpenAICodexTokenRefresher

__all__ = ["OpenAICodexTokenRefresher"]
