"""Request, response and signal types shared across the router."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import FailureKind

DEFAULT_INTENT = "default"


def credential_fingerprint(credential: Optional[str]) -> str:
    """Stable, non-reversible short id for a credential.

    Used as the persistence key and in logs so raw API keys never leave
    memory. Two keys sharing a vendor prefix ("sk-proj-") still get
    distinct fingerprints.
    """
    if not credential:
        return "NO_KEY"
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:8]


class ChatMessage(BaseModel):
    """One turn of a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"] = "user"
    content: str


class GenerationRequest(BaseModel):
    """A text generation request routed by the orchestrator."""

    messages: List[ChatMessage] = Field(min_length=1)
    intent: str = DEFAULT_INTENT

    @field_validator("intent")
    @classmethod
    def _blank_intent_is_default(cls, v: str) -> str:
        return v.strip() or DEFAULT_INTENT

    @classmethod
    def from_prompt(cls, prompt: str, intent: str = DEFAULT_INTENT) -> "GenerationRequest":
        """Build a single-turn request from a bare prompt."""
        return cls(messages=[ChatMessage(role="user", content=prompt)], intent=intent)


class StressSignal(BaseModel):
    """External instability signal used to modulate provider weights.

    purity: 1.0 = healthy environment, 0.0 = fully degraded.
    instability_count: number of outstanding instability events.
    """

    purity: float = 1.0
    instability_count: int = Field(default=0, ge=0)

    @field_validator("purity")
    @classmethod
    def _clamp_purity(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @property
    def stress(self) -> float:
        """0 when healthy, growing with impurity and instability."""
        return (1.0 - self.purity) + 0.1 * self.instability_count


@dataclass
class AdapterResponse:
    """What a provider adapter returns on success."""

    content: str
    finish_reason: Optional[str] = None
    usage_tokens: int = 0


@dataclass
class AttemptRecord:
    """One entry of a request's fallback path."""

    provider: str
    model: str
    credential_fingerprint: str
    success: bool
    latency_ms: float = 0.0
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    score: Optional[float] = None

    @property
    def label(self) -> str:
        return f"{self.provider}:{self.model}:{self.credential_fingerprint}"


@dataclass
class GenerationResult:
    """Result of Orchestrator.generate_text.

    On failure `error` describes why and `error_code` is one of
    COOLING_DOWN, NO_VIABLE_CANDIDATE, ATTEMPTS_EXHAUSTED, DEADLINE_EXCEEDED.
    """

    success: bool
    content: Optional[str] = None
    provider_used: Optional[str] = None
    model_used: Optional[str] = None
    latency_ms: float = 0.0
    finish_reason: Optional[str] = None
    usage_tokens: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: List[AttemptRecord] = field(default_factory=list)

    @property
    def fallback_path(self) -> List[str]:
        """Ordered candidate labels attempted during the request."""
        return [a.label for a in self.attempts]
