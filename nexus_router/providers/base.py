"""Adapter capability shared by every provider.

An adapter owns one httpx.AsyncClient bound to one model and one credential.
It turns a conversation into a provider request and normalizes every
failure into a ClassifiedError, so the router never sees raw transport or
HTTP errors.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx

from nexus_router.core.errors import ClassifiedError, FailureKind, classify_error, classify_status
from nexus_router.core.schemas import AdapterResponse, ChatMessage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0


class ProviderAdapter(ABC):
    """Base class for httpx-backed provider adapters."""

    provider: str = "unknown"
    default_base_url: str = ""

    def __init__(
        self,
        model_name: str,
        api_key: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        provider_name: Optional[str] = None,
    ):
        if not api_key:
            raise ValueError(f"{type(self).__name__} requires an API key")
        self._model_name = model_name
        self.api_key = api_key
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._http_client = http_client
        self._owns_client = http_client is None
        if provider_name:
            self.provider = provider_name

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def aclose(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _error(self, kind: FailureKind, message: str, status_code: Optional[int] = None) -> ClassifiedError:
        return ClassifiedError(
            kind, message, provider=self.provider, model=self._model_name, status_code=status_code,
        )

    async def _post_json(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST a JSON body and return the decoded JSON response.

        Raises:
            ClassifiedError: On transport errors, non-2xx statuses and
                undecodable payloads.
        """
        client = self._get_client()
        try:
            response = await client.post(url, json=body, headers=self._get_headers())
        except httpx.HTTPError as e:
            raise classify_error(e, provider=self.provider, model=self._model_name) from e

        if response.status_code >= 400:
            text = response.text
            kind = classify_status(response.status_code, text)
            logger.debug(f"{self.provider}:{self._model_name} returned {response.status_code} ({kind.value})")
            raise self._error(kind, f"{self.provider} API error {response.status_code}: {text[:500]}", response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise self._error(FailureKind.OTHER, f"{self.provider} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise self._error(FailureKind.OTHER, f"{self.provider} returned an unexpected payload")
        return data

    @abstractmethod
    async def process(self, messages: Sequence[ChatMessage]) -> AdapterResponse:
        """Run one completion for the conversation.

        Raises:
            ClassifiedError: On any failure.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self._model_name!r}, base_url={self._base_url!r})"


def as_messages(messages: Sequence[Any]) -> List[ChatMessage]:
    """Accept ChatMessage objects or {"role", "content"} dicts."""
    return [m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in messages]
