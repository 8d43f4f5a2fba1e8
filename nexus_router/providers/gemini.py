"""Gemini adapter for Google's Generative Language API.

Uses httpx directly instead of the google-genai SDK. The key travels in the
x-goog-api-key header, never in the URL, so it cannot leak into logs.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from nexus_router.core.errors import FailureKind
from nexus_router.core.schemas import AdapterResponse, ChatMessage

from .base import ProviderAdapter, as_messages

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"

_BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"}


class GeminiAdapter(ProviderAdapter):
    """Standalone adapter for generateContent."""

    provider = "gemini"
    default_base_url = GEMINI_BASE_URL

    def _get_headers(self) -> Dict[str, str]:
        headers = super()._get_headers()
        headers["x-goog-api-key"] = self.api_key
        return headers

    def _map_messages(
        self, messages: Sequence[ChatMessage]
    ) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
        """Map chat messages to Gemini contents plus a system instruction."""
        contents: List[Dict[str, Any]] = []
        system_parts: List[Dict[str, Any]] = []

        for m in as_messages(messages):
            if m.role == "system":
                system_parts.append({"text": m.content})
                continue
            role = "model" if m.role == "assistant" else "user"
            # Merge consecutive turns from the same role
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].append({"text": m.content})
            else:
                contents.append({"role": role, "parts": [{"text": m.content}]})

        if not contents:
            contents = [{"role": "user", "parts": [{"text": ""}]}]

        system_instruction = {"parts": system_parts} if system_parts else None
        return system_instruction, contents

    async def process(self, messages: Sequence[ChatMessage]) -> AdapterResponse:
        system_instruction, contents = self._map_messages(messages)
        body: Dict[str, Any] = {"contents": contents}
        if system_instruction:
            body["systemInstruction"] = system_instruction

        url = f"{self._base_url}/v1beta/models/{self._model_name}:generateContent"
        data = await self._post_json(url, body)
        return self._parse_response(data)

    def _parse_response(self, data: Dict[str, Any]) -> AdapterResponse:
        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise self._error(
                FailureKind.CONTENT_POLICY, f"gemini blocked the prompt: {feedback['blockReason']}"
            )

        candidates = data.get("candidates") or []
        if not candidates:
            raise self._error(FailureKind.OTHER, "gemini returned no candidates")

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        if finish_reason in _BLOCKED_FINISH_REASONS:
            raise self._error(FailureKind.CONTENT_POLICY, f"gemini stopped generation: {finish_reason}")

        parts = (candidate.get("content") or {}).get("parts") or []
        # Thought parts are internal reasoning, not part of the answer
        text = "".join(p.get("text", "") for p in parts if not p.get("thought"))

        usage_meta = data.get("usageMetadata") or {}
        usage_tokens = usage_meta.get("totalTokenCount")
        if usage_tokens is None:
            usage_tokens = usage_meta.get("promptTokenCount", 0) + usage_meta.get("candidatesTokenCount", 0)

        return AdapterResponse(
            content=text,
            finish_reason=finish_reason,
            usage_tokens=int(usage_tokens or 0),
        )
