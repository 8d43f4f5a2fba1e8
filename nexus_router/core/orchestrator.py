"""Orchestrator - Sequential fallback routing with global backpressure.

Per request:
1. While sleeping, reject immediately (COOLING_DOWN) without touching any adapter
2. After the sleep timer elapses, the first request wakes the router and
   resets every credential governor
3. Up to max_attempts_per_request times: take the best candidate not yet
   tried in this request, call it through the connection pool, feed the
   outcome back into the ledger and the governor, fall back on failure
4. No viable candidate left, or attempts exhausted: enter sleep mode

Attempts within a request are strictly sequential. No lock is held while an
adapter call is in flight.
"""

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Union

from .connection_pool import ConnectionPool
from .credential_governor import CredentialGovernor
from .errors import classify_error
from .observability import (
    log_attempt_failed,
    log_candidate_selected,
    log_request_succeeded,
    log_sleep_entered,
    log_woke_up,
)
from .performance_ledger import PerformanceLedger
from .policy_engine import Candidate, CandidateKey, PolicyEngine, ProviderWeights
from .provider_config import PolicyWeights
from .schemas import (
    AdapterResponse,
    AttemptRecord,
    ChatMessage,
    GenerationRequest,
    GenerationResult,
    StressSignal,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_SLEEP_SECONDS = 300.0
DEFAULT_STRESS_INTERVAL_SECONDS = 60.0

COOLING_DOWN = "COOLING_DOWN"
NO_VIABLE_CANDIDATE = "NO_VIABLE_CANDIDATE"
ATTEMPTS_EXHAUSTED = "ATTEMPTS_EXHAUSTED"
DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"

StressSource = Callable[[], Union[Optional[StressSignal], Awaitable[Optional[StressSignal]]]]


class RouterPhase(str, Enum):
    ACTIVE = "active"
    SLEEPING = "sleeping"


@dataclass(frozen=True)
class RouterState:
    """Immutable router state; replaced as a whole under the state lock."""

    phase: RouterPhase = RouterPhase.ACTIVE
    until: Optional[float] = None
    reason: Optional[str] = None

    @classmethod
    def active(cls) -> "RouterState":
        return cls()

    @classmethod
    def sleeping(cls, until: float, reason: str) -> "RouterState":
        return cls(RouterPhase.SLEEPING, until, reason)

    @property
    def is_sleeping(self) -> bool:
        return self.phase == RouterPhase.SLEEPING


class Orchestrator:
    """Routes generation requests across all configured candidates."""

    def __init__(
        self,
        governors: Mapping[str, CredentialGovernor],
        ledger: PerformanceLedger,
        pool: ConnectionPool,
        policy: PolicyEngine,
        *,
        max_attempts_per_request: int = DEFAULT_MAX_ATTEMPTS,
        sleep_duration: float = DEFAULT_SLEEP_SECONDS,
        stress_interval: float = DEFAULT_STRESS_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts_per_request < 1:
            raise ValueError("max_attempts_per_request must be at least 1")
        self._governors = dict(governors)
        self._ledger = ledger
        self._pool = pool
        self._policy = policy
        self.max_attempts_per_request = max_attempts_per_request
        self.sleep_duration = sleep_duration
        self.stress_interval = stress_interval
        self._clock = clock

        self._state = RouterState.active()
        self._state_lock = threading.Lock()
        self._stress_task: Optional[asyncio.Task] = None

    @property
    def policy(self) -> PolicyEngine:
        return self._policy

    @property
    def ledger(self) -> PerformanceLedger:
        return self._ledger

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def governors(self) -> Dict[str, CredentialGovernor]:
        return dict(self._governors)

    # =========================================================================
    # Sleep mode
    # =========================================================================

    def state(self) -> RouterState:
        with self._state_lock:
            return self._state

    def is_sleeping(self) -> bool:
        state = self.state()
        return state.is_sleeping and state.until is not None and self._clock() < state.until

    def _admit(self, now: float) -> Optional[GenerationResult]:
        """Return a rejection while cooling down; wake the router once the timer has passed."""
        with self._state_lock:
            state = self._state
            if not state.is_sleeping:
                return None
            if now < state.until:
                return GenerationResult(
                    success=False,
                    error=f"Router is cooling down for another {state.until - now:.1f}s ({state.reason})",
                    error_code=COOLING_DOWN,
                )
            self._state = RouterState.active()

        # Only the request that swapped the state gets here
        for governor in self._governors.values():
            governor.reset_all()
        logger.info("☀️ Router woke up, all non-quarantined credentials reset")
        log_woke_up()
        return None

    def _enter_sleep(self, reason: str, attempts: List[AttemptRecord]) -> None:
        until = self._clock() + self.sleep_duration
        with self._state_lock:
            self._state = RouterState.sleeping(until, reason)
        path = [a.label for a in attempts]
        logger.error(f"😴 Router entering sleep mode for {self.sleep_duration:.0f}s: {reason} (path: {path})")
        log_sleep_entered(reason, self.sleep_duration, path)

    # =========================================================================
    # Request path
    # =========================================================================

    async def _process(self, adapter, messages: List[ChatMessage], candidate: Candidate) -> AdapterResponse:
        # Timeouts raised by the adapter itself are candidate failures, not the caller's deadline
        try:
            return await adapter.process(messages)
        except asyncio.TimeoutError as e:
            raise classify_error(e, provider=candidate.provider, model=candidate.model) from e

    async def generate_text(
        self,
        request: Union[GenerationRequest, str],
        *,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """Route one request. Never raises for provider failures.

        Args:
            request: The request, or a bare prompt for the default intent
            timeout: Optional deadline in seconds for the whole request

        Returns:
            GenerationResult with the fallback path of every attempt.
        """
        if isinstance(request, str):
            request = GenerationRequest.from_prompt(request)

        rejection = self._admit(self._clock())
        if rejection is not None:
            return rejection

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        messages = list(request.messages)
        attempts: List[AttemptRecord] = []
        tried: Set[CandidateKey] = set()

        for attempt_number in range(1, self.max_attempts_per_request + 1):
            scored = self._policy.best_candidate(request.intent, exclude=tried)
            if scored is None:
                reason = "no viable candidate"
                self._enter_sleep(reason, attempts)
                return GenerationResult(
                    success=False,
                    error=f"No viable candidate after {len(attempts)} attempt(s)",
                    error_code=NO_VIABLE_CANDIDATE,
                    attempts=attempts,
                )

            candidate = scored.candidate
            tried.add(candidate.key)
            governor = self._governors[candidate.provider]
            log_candidate_selected(
                candidate.provider, candidate.model, candidate.fingerprint,
                request.intent, scored.score, attempt_number,
            )

            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return self._deadline_result(attempts)

            try:
                adapter = self._pool.acquire(candidate.provider, candidate.model, candidate.credential)
            except Exception as e:
                # No remote call was made, so there is no latency to learn from
                self._record_failure(candidate, scored.score, governor, attempts, attempt_number, e, None)
                continue

            started = self._clock()
            try:
                call = self._process(adapter, messages, candidate)
                if remaining is None:
                    response = await call
                else:
                    response = await asyncio.wait_for(call, timeout=remaining)
            except asyncio.TimeoutError:
                attempts.append(AttemptRecord(
                    candidate.provider, candidate.model, candidate.fingerprint,
                    success=False, latency_ms=(self._clock() - started) * 1000.0,
                    error="deadline exceeded", score=scored.score,
                ))
                return self._deadline_result(attempts)
            except Exception as e:
                latency_ms = (self._clock() - started) * 1000.0
                self._record_failure(candidate, scored.score, governor, attempts, attempt_number, e, latency_ms)
                continue

            latency_ms = (self._clock() - started) * 1000.0
            self._ledger.record(
                candidate.provider, candidate.model, candidate.credential, latency_ms, success=True,
            )
            governor.report_success(candidate.credential)
            attempts.append(AttemptRecord(
                candidate.provider, candidate.model, candidate.fingerprint,
                success=True, latency_ms=latency_ms, score=scored.score,
            ))
            log_request_succeeded(
                candidate.provider, candidate.model, request.intent,
                latency_ms, attempt_number, response.usage_tokens,
            )
            return GenerationResult(
                success=True,
                content=response.content,
                provider_used=candidate.provider,
                model_used=candidate.model,
                latency_ms=latency_ms,
                finish_reason=response.finish_reason,
                usage_tokens=response.usage_tokens,
                attempts=attempts,
            )

        self._enter_sleep("all attempts exhausted", attempts)
        return GenerationResult(
            success=False,
            error=f"All {len(attempts)} attempt(s) failed",
            error_code=ATTEMPTS_EXHAUSTED,
            attempts=attempts,
        )

    def _record_failure(
        self,
        candidate: Candidate,
        score: float,
        governor: CredentialGovernor,
        attempts: List[AttemptRecord],
        attempt_number: int,
        exc: Exception,
        latency_ms: Optional[float],
    ) -> None:
        """Feed one failed attempt into the ledger, the governor and the fallback path.

        latency_ms is None when the adapter could not be built.
        """
        error = classify_error(exc, provider=candidate.provider, model=candidate.model)
        self._ledger.record(
            candidate.provider, candidate.model, candidate.credential,
            latency_ms, success=False, failure_reason=error.kind,
        )
        governor.report_outcome(candidate.credential, error.kind)
        attempts.append(AttemptRecord(
            candidate.provider, candidate.model, candidate.fingerprint,
            success=False, latency_ms=latency_ms or 0.0, failure_kind=error.kind,
            error=str(error), score=score,
        ))
        logger.warning(
            f"Attempt {attempt_number} on {candidate.label} failed "
            f"({error.kind.value}): {error}"
        )
        log_attempt_failed(
            candidate.provider, candidate.model, candidate.fingerprint,
            error.kind.value, latency_ms or 0.0, attempt_number, str(error),
        )

    def _deadline_result(self, attempts: List[AttemptRecord]) -> GenerationResult:
        logger.warning(f"Request deadline exceeded after {len(attempts)} attempt(s)")
        return GenerationResult(
            success=False,
            error="Request deadline exceeded",
            error_code=DEADLINE_EXCEEDED,
            attempts=attempts,
        )

    # =========================================================================
    # External signals
    # =========================================================================

    def update_heuristics(
        self,
        intent: Optional[str],
        success: bool,
        latency: float,
        provider: str,
        model: str,
    ) -> Optional[PolicyWeights]:
        """Learning pulse from an external component after a completed interaction."""
        return self._policy.learn_from_interaction(intent, success, latency, provider, model)

    def ingest_stress_signal(self, signal: StressSignal) -> Dict[str, ProviderWeights]:
        return self._policy.apply_stress(signal)

    def start_stress_modulation(self, source: StressSource, interval: Optional[float] = None) -> asyncio.Task:
        """Poll `source` every `interval` seconds and apply what it returns.

        The source may be sync or async; returning None skips a tick.
        interval defaults to the router's configured stress interval.
        """
        if interval is None:
            interval = self.stress_interval
        if interval <= 0:
            raise ValueError("interval must be positive")
        if self._stress_task is not None and not self._stress_task.done():
            self._stress_task.cancel()
        self._stress_task = asyncio.create_task(self._stress_loop(source, interval))
        logger.info(f"Started stress modulation loop ({interval}s)")
        return self._stress_task

    async def _stress_loop(self, source: StressSource, interval: float) -> None:
        while True:
            try:
                signal = source()
                if inspect.isawaitable(signal):
                    signal = await signal
                if signal is not None:
                    self.ingest_stress_signal(signal)
            except Exception as e:
                logger.error(f"Stress modulation loop error: {e}")
            await asyncio.sleep(interval)

    # =========================================================================
    # Lifecycle & diagnostics
    # =========================================================================

    async def start(self) -> None:
        """Start background pruning and checkpointing."""
        await self._pool.start()
        await self._ledger.start()

    async def aclose(self) -> None:
        """Stop background tasks, close adapters and flush the ledger."""
        if self._stress_task is not None:
            self._stress_task.cancel()
            try:
                await self._stress_task
            except asyncio.CancelledError:
                pass
            self._stress_task = None
        await self._pool.stop()
        await self._pool.close_all()
        await self._ledger.stop()

    async def __aenter__(self) -> "Orchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def status(self) -> Dict[str, Any]:
        state = self.state()
        now = self._clock()
        return {
            "state": state.phase.value,
            "sleep_remaining_seconds": (
                max(0.0, state.until - now) if state.is_sleeping and state.until is not None else 0.0
            ),
            "sleep_reason": state.reason,
            "governors": {name: g.status() for name, g in self._governors.items()},
            "pool": self._pool.stats(),
            "policy": self._policy.status(),
            "ledger_records": len(self._ledger),
        }
