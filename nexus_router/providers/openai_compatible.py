"""OpenAI-compatible chat completions adapter (OpenAI, Groq, and friends)."""

from __future__ import annotations

import logging
from typing import Any, Dict, Sequence

from nexus_router.core.errors import FailureKind
from nexus_router.core.schemas import AdapterResponse, ChatMessage

from .base import ProviderAdapter, as_messages

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"


class OpenAICompatibleAdapter(ProviderAdapter):
    """Adapter for any endpoint speaking the /chat/completions protocol."""

    provider = "openai"
    default_base_url = OPENAI_BASE_URL

    def _get_headers(self) -> Dict[str, str]:
        headers = super()._get_headers()
        headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_body(self, messages: Sequence[ChatMessage]) -> Dict[str, Any]:
        return {
            "model": self._model_name,
            "messages": [{"role": m.role, "content": m.content} for m in as_messages(messages)],
        }

    async def process(self, messages: Sequence[ChatMessage]) -> AdapterResponse:
        data = await self._post_json(f"{self._base_url}/chat/completions", self._build_body(messages))
        return self._parse_response(data)

    def _parse_response(self, data: Dict[str, Any]) -> AdapterResponse:
        choices = data.get("choices") or []
        if not choices:
            raise self._error(FailureKind.OTHER, f"{self.provider} returned no choices")

        choice = choices[0]
        finish_reason = choice.get("finish_reason")
        if finish_reason == "content_filter":
            raise self._error(FailureKind.CONTENT_POLICY, f"{self.provider} filtered the completion")

        message = choice.get("message") or {}
        content = message.get("content")
        if content is None:
            raise self._error(FailureKind.OTHER, f"{self.provider} returned an empty message")

        usage = data.get("usage") or {}
        return AdapterResponse(
            content=content,
            finish_reason=finish_reason,
            usage_tokens=int(usage.get("total_tokens", 0) or 0),
        )


class GroqAdapter(OpenAICompatibleAdapter):
    provider = "groq"
    default_base_url = GROQ_BASE_URL
