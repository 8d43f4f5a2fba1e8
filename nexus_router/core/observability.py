"""Observability utilities for consistent Logfire logging.

Centralized structured events for the routing lifecycle:
- Candidate selection and per-attempt failures
- Successful completions
- Sleep-mode transitions (global backpressure)
- Credential quarantine and policy adaptation

Nothing is emitted until configure_observability() has enabled Logfire;
before that every helper is a no-op. Helpers never raise.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

import logfire

if TYPE_CHECKING:
    from nexus_router.settings import ObservabilitySettings

logger = logging.getLogger(__name__)

_logfire_enabled = False


def configure_observability(settings: "ObservabilitySettings") -> bool:
    """Apply the package log level and configure Logfire from settings.

    Returns whether structured events are enabled.
    """
    global _logfire_enabled

    level = logging.getLevelName(settings.log_level.upper())
    if isinstance(level, int):
        logging.getLogger("nexus_router").setLevel(level)
    else:
        logger.warning(f"Unknown log level {settings.log_level!r}, leaving logging unchanged")

    if not settings.logfire_enabled:
        _logfire_enabled = False
        return False

    token = settings.logfire_token.get_secret_value() if settings.logfire_token else None
    try:
        logfire.configure(
            token=token,
            service_name=settings.service_name,
            send_to_logfire="if-token-present",
            console=False,
        )
        _logfire_enabled = True
    except Exception as e:
        logger.warning(f"Logfire configuration failed, structured events disabled: {e}")
        _logfire_enabled = False
    return _logfire_enabled


def is_enabled() -> bool:
    return _logfire_enabled


def disable_observability() -> None:
    """Turn structured events off again (useful for testing)."""
    global _logfire_enabled
    _logfire_enabled = False


# =============================================================================
# SELECTION & ATTEMPTS
# =============================================================================

def log_candidate_selected(
    provider: str,
    model: str,
    credential: str,
    intent: str,
    score: float,
    attempt: int,
    **extra_fields: Any,
) -> None:
    """Log the candidate chosen for an attempt.

    Args:
        provider: Provider name
        model: Model name
        credential: Credential fingerprint (never the raw key)
        intent: Request intent driving the policy
        score: Policy score of the candidate
        attempt: 1-based attempt number within the request
    """
    if not _logfire_enabled:
        return
    try:
        logfire.info(
            "Candidate selected: {provider}:{model} (score {score:.3f})",
            provider=provider,
            model=model,
            credential=credential,
            intent=intent,
            score=score,
            attempt=attempt,
            **extra_fields,
        )
    except Exception as e:
        logger.debug(f"Failed to log candidate selection: {e}")


def log_attempt_failed(
    provider: str,
    model: str,
    credential: str,
    failure_kind: str,
    latency_ms: float,
    attempt: int,
    error: Optional[str] = None,
) -> None:
    """Log a failed attempt that will fall back to the next candidate."""
    if not _logfire_enabled:
        return
    try:
        logfire.warn(
            "Attempt failed: {provider}:{model} ({failure_kind})",
            provider=provider,
            model=model,
            credential=credential,
            failure_kind=failure_kind,
            latency_ms=latency_ms,
            attempt=attempt,
            error=error,
        )
    except Exception as e:
        logger.debug(f"Failed to log attempt failure: {e}")


def log_request_succeeded(
    provider: str,
    model: str,
    intent: str,
    latency_ms: float,
    attempts: int,
    usage_tokens: int = 0,
) -> None:
    """Log a completed request."""
    if not _logfire_enabled:
        return
    try:
        logfire.info(
            "Request served by {provider}:{model} in {latency_ms:.0f}ms",
            provider=provider,
            model=model,
            intent=intent,
            latency_ms=latency_ms,
            attempts=attempts,
            usage_tokens=usage_tokens,
        )
    except Exception as e:
        logger.debug(f"Failed to log request success: {e}")


# =============================================================================
# BACKPRESSURE & HEALTH
# =============================================================================

def log_sleep_entered(reason: str, sleep_seconds: float, fallback_path: list) -> None:
    """Log the router entering sleep mode."""
    if not _logfire_enabled:
        return
    try:
        logfire.error(
            "Router sleeping for {sleep_seconds:.0f}s: {reason}",
            reason=reason,
            sleep_seconds=sleep_seconds,
            fallback_path=fallback_path,
        )
    except Exception as e:
        logger.debug(f"Failed to log sleep transition: {e}")


def log_woke_up() -> None:
    """Log the router leaving sleep mode."""
    if not _logfire_enabled:
        return
    try:
        logfire.info("Router woke up, credentials reset")
    except Exception as e:
        logger.debug(f"Failed to log wake transition: {e}")


def log_credential_quarantined(provider: str, credential: str) -> None:
    """Log a credential being permanently benched."""
    if not _logfire_enabled:
        return
    try:
        logfire.error(
            "Credential quarantined: {provider}:{credential}",
            provider=provider,
            credential=credential,
        )
    except Exception as e:
        logger.debug(f"Failed to log quarantine: {e}")


def log_policy_adapted(intent: str, w_q: float, w_l: float, w_c: float) -> None:
    """Log the weights of a policy after a learning step."""
    if not _logfire_enabled:
        return
    try:
        logfire.debug(
            "Policy {intent} adapted",
            intent=intent,
            w_q=w_q,
            w_l=w_l,
            w_c=w_c,
        )
    except Exception as e:
        logger.debug(f"Failed to log policy adaptation: {e}")
