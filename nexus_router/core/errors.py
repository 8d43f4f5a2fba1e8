"""Failure Taxonomy - Normalized errors for provider calls.

Every adapter translates provider-specific failures into one of a small set of
kinds so the router can react uniformly:
1. RATE_LIMIT: quota or throttling (429, "quota exceeded")
2. INVALID_CREDENTIAL: authentication failures (401/403, "API key not valid")
3. CONTENT_POLICY: the prompt or output was blocked by a safety filter
4. CONTEXT_TOO_LONG: the conversation does not fit the model's window
5. TIMEOUT: the remote call did not finish in time
6. OTHER: anything else (5xx, malformed payloads, connection drops)
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    """Normalized reason a candidate attempt failed."""

    RATE_LIMIT = "RATE_LIMIT"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    CONTENT_POLICY = "CONTENT_POLICY"
    CONTEXT_TOO_LONG = "CONTEXT_TOO_LONG"
    TIMEOUT = "TIMEOUT"
    OTHER = "OTHER"

    @property
    def blames_credential(self) -> bool:
        """Whether this failure should count against the credential's health."""
        return self not in (FailureKind.CONTENT_POLICY, FailureKind.CONTEXT_TOO_LONG)


class RouterError(Exception):
    """Base class for router errors."""


class ConfigurationError(RouterError, ValueError):
    """Raised when provider or policy configuration fails validation."""


class ClassifiedError(RouterError):
    """A provider failure normalized into a FailureKind."""

    def __init__(
        self,
        kind: FailureKind,
        message: str = "",
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message or kind.value)
        self.kind = kind
        self.provider = provider
        self.model = model
        self.status_code = status_code

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(kind={self.kind.value}, provider={self.provider!r}, "
            f"model={self.model!r}, status_code={self.status_code!r})"
        )


# Message fragments seen in the wild, checked in order
_RATE_LIMIT_INDICATORS = (
    "rate limit", "rate_limit", "too many requests", "quota exceeded",
    "resource_exhausted", "insufficient_quota",
)
_CREDENTIAL_INDICATORS = (
    "api key not valid", "incorrect api key", "invalid api key", "invalid_api_key",
    "authentication failed", "unauthorized", "permission_denied",
)
_CONTENT_POLICY_INDICATORS = (
    "content_policy", "content policy", "content_filter", "safety", "blocked",
)
_CONTEXT_INDICATORS = (
    "context_length_exceeded", "maximum context length", "context window",
    "too many tokens", "exceeds the maximum number of tokens",
)


def classify_status(status_code: int, body: str = "") -> FailureKind:
    """Map an HTTP status code (plus response body hints) to a FailureKind."""
    text = body.lower()

    if status_code == 429:
        return FailureKind.RATE_LIMIT
    if status_code in (401, 403):
        return FailureKind.INVALID_CREDENTIAL
    if status_code in (408, 504):
        return FailureKind.TIMEOUT
    if status_code in (400, 413, 422):
        # Gemini reports bad keys as 400 INVALID_ARGUMENT
        if any(s in text for s in _CREDENTIAL_INDICATORS):
            return FailureKind.INVALID_CREDENTIAL
        if any(s in text for s in _CONTEXT_INDICATORS) or status_code == 413:
            return FailureKind.CONTEXT_TOO_LONG
        if any(s in text for s in _CONTENT_POLICY_INDICATORS):
            return FailureKind.CONTENT_POLICY
    if any(s in text for s in _RATE_LIMIT_INDICATORS):
        return FailureKind.RATE_LIMIT
    return FailureKind.OTHER


def classify_error(
    exc: BaseException,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> ClassifiedError:
    """Normalize any exception raised during a candidate attempt.

    Already-classified errors pass through (with provider/model filled in),
    timeouts become TIMEOUT, HTTP errors are mapped by status code and body,
    and everything else falls back to message inspection.
    """
    if isinstance(exc, ClassifiedError):
        if exc.provider is None:
            exc.provider = provider
        if exc.model is None:
            exc.model = model
        return exc

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ClassifiedError(
            FailureKind.TIMEOUT, str(exc) or "request timed out",
            provider=provider, model=model,
        )

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        try:
            body = exc.response.text
        except httpx.ResponseNotRead:
            body = ""
        return ClassifiedError(
            classify_status(status, body), f"HTTP {status}: {body[:200]}",
            provider=provider, model=model, status_code=status,
        )

    status = getattr(exc, "status_code", None)
    message = str(exc)
    if isinstance(status, int):
        kind = classify_status(status, message)
    else:
        text = message.lower()
        if any(s in text for s in _RATE_LIMIT_INDICATORS):
            kind = FailureKind.RATE_LIMIT
        elif any(s in text for s in _CREDENTIAL_INDICATORS):
            kind = FailureKind.INVALID_CREDENTIAL
        elif any(s in text for s in _CONTEXT_INDICATORS):
            kind = FailureKind.CONTEXT_TOO_LONG
        elif any(s in text for s in _CONTENT_POLICY_INDICATORS):
            kind = FailureKind.CONTENT_POLICY
        elif "timeout" in text or "timed out" in text:
            kind = FailureKind.TIMEOUT
        else:
            kind = FailureKind.OTHER
        status = None

    logger.debug(f"Classified {type(exc).__name__} from {provider}:{model} as {kind.value}")
    return ClassifiedError(
        kind, message or type(exc).__name__,
        provider=provider, model=model, status_code=status,
    )
