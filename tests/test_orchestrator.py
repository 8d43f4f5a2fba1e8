"""Tests for the orchestrator's routing loop and sleep-mode backpressure."""

import asyncio

import httpx
import pytest

from conftest import HANG, provider_entry

from nexus_router.core.credential_governor import CredentialStatus
from nexus_router.core.errors import ClassifiedError, FailureKind
from nexus_router.core.orchestrator import (
    ATTEMPTS_EXHAUSTED,
    COOLING_DOWN,
    DEADLINE_EXCEEDED,
    NO_VIABLE_CANDIDATE,
    RouterPhase,
)
from nexus_router.core.schemas import AdapterResponse, GenerationRequest, StressSignal, credential_fingerprint


@pytest.fixture
def providers():
    """alpha scores above beta above gamma."""
    return {
        "alpha": provider_entry(credentials=["a1"], quality_weight=1.0),
        "beta": provider_entry(credentials=["b1"], quality_weight=0.5),
        "gamma": provider_entry(credentials=["g1"], quality_weight=0.0),
    }


def rate_limited(provider="alpha"):
    return ClassifiedError(FailureKind.RATE_LIMIT, "429 Too Many Requests", provider=provider, status_code=429)


class TestSuccessPath:
    """Tests for requests that succeed."""

    async def test_first_attempt_uses_best_candidate(self, make_router, fake_factory, providers):
        """The top-scored candidate serves the request."""
        router = make_router(providers)
        result = await router.generate_text(GenerationRequest.from_prompt("hello"))

        assert result.success
        assert result.provider_used == "alpha"
        assert result.model_used == "m0"
        assert result.content == "reply from alpha:m0"
        assert result.usage_tokens == 7
        assert result.finish_reason == "stop"
        assert result.fallback_path == [f"alpha:m0:{credential_fingerprint('a1')}"]
        assert fake_factory.calls == [("alpha", "m0", "a1")]

    async def test_success_recorded(self, make_router, fake_factory, providers, clock):
        """Latency and success land in the ledger."""
        fake_factory.latency["alpha"] = 0.25
        router = make_router(providers)
        result = await router.generate_text("hello")

        metrics = router.ledger.metrics("alpha", "m0", "a1")
        assert result.latency_ms == pytest.approx(250.0)
        assert metrics.total_calls == 1
        assert metrics.success_rate == 1.0
        assert metrics.avg_latency == pytest.approx(250.0)

    async def test_bare_prompt_accepted(self, make_router, providers):
        """A plain string is routed with the default intent."""
        router = make_router(providers)
        assert (await router.generate_text("hi")).success

    async def test_adapter_response_passed_through(self, make_router, fake_factory, providers):
        """Content, finish reason and usage come from the adapter."""
        fake_factory.script("alpha", "m0", AdapterResponse("custom", "length", 42))
        router = make_router(providers)
        result = await router.generate_text("hi")
        assert (result.content, result.finish_reason, result.usage_tokens) == ("custom", "length", 42)

    async def test_concurrent_requests(self, make_router, providers):
        """Independent requests run concurrently without interfering."""
        router = make_router(providers)
        results = await asyncio.gather(*(router.generate_text(f"q{i}") for i in range(20)))
        assert all(r.success for r in results)
        assert router.ledger.metrics("alpha", "m0", "a1").total_calls == 20


class TestFallback:
    """Tests for retrying across candidates."""

    async def test_falls_back_to_next_best(self, make_router, fake_factory, providers):
        """A failed candidate is followed by the next-best one."""
        fake_factory.script("alpha", "m0", rate_limited())
        router = make_router(providers)

        result = await router.generate_text("hello")

        assert result.success
        assert result.provider_used == "beta"
        assert [a.provider for a in result.attempts] == ["alpha", "beta"]
        assert result.attempts[0].failure_kind == FailureKind.RATE_LIMIT
        assert result.attempts[1].success

    async def test_failure_recorded_in_ledger_and_governor(self, make_router, fake_factory, providers):
        """A failure updates both the ledger and the credential's health."""
        fake_factory.script("alpha", "m0", rate_limited())
        router = make_router(providers)
        await router.generate_text("hello")

        metrics = router.ledger.metrics("alpha", "m0", "a1")
        assert metrics.failure_profile == {"RATE_LIMIT": 1}
        assert router.governors["alpha"].status_of("a1") == CredentialStatus.IMPAIRED

    async def test_same_candidate_not_retried_within_request(self, make_router, fake_factory):
        """Each attempt in a request goes to a different candidate."""
        fake_factory.always("solo", "m0", ClassifiedError(FailureKind.CONTENT_POLICY, "blocked"))
        fake_factory.always("solo", "m1", ClassifiedError(FailureKind.CONTENT_POLICY, "blocked"))
        router = make_router({"solo": provider_entry(models=["m0", "m1"], credentials=["k1"])})

        result = await router.generate_text("hello")

        assert [(a.provider, a.model) for a in result.attempts] == [("solo", "m0"), ("solo", "m1")]
        assert result.error_code == NO_VIABLE_CANDIDATE

    async def test_content_policy_does_not_impair_credential(self, make_router, fake_factory, providers):
        """Request-side failures leave the key active."""
        fake_factory.script("alpha", "m0", ClassifiedError(FailureKind.CONTENT_POLICY, "blocked"))
        router = make_router(providers)
        await router.generate_text("hello")
        assert router.governors["alpha"].status_of("a1") == CredentialStatus.ACTIVE

    async def test_raw_content_policy_error_keeps_key_active(self, make_router, fake_factory):
        """A plain exception mentioning a content policy falls back to the next model on the same key."""
        fake_factory.script("solo", "m0", RuntimeError("Request rejected: content policy violation"))
        router = make_router({"solo": provider_entry(models=["m0", "m1"], credentials=["k1"])})

        result = await router.generate_text("hello")

        assert result.success
        assert result.model_used == "m1"
        assert result.attempts[0].failure_kind == FailureKind.CONTENT_POLICY
        assert router.governors["solo"].status_of("k1") == CredentialStatus.ACTIVE
        assert not router.is_sleeping()

    async def test_raw_exceptions_are_classified(self, make_router, fake_factory, providers):
        """Adapter errors never reach the caller raw."""
        fake_factory.script("alpha", "m0", httpx.ConnectError("connection refused"))
        fake_factory.script("beta", "m0", TimeoutError("slow upstream"))
        router = make_router(providers)

        result = await router.generate_text("hello")

        assert result.success
        assert result.provider_used == "gamma"
        assert [a.failure_kind for a in result.attempts[:2]] == [FailureKind.OTHER, FailureKind.TIMEOUT]

    async def test_adapter_build_failure_is_candidate_failure(self, make_router, fake_factory, providers):
        """A candidate whose adapter cannot be built is skipped as OTHER."""
        fake_factory.fail_builds.add(("alpha", "m0"))
        router = make_router(providers)

        result = await router.generate_text("hello")

        assert result.success
        assert result.provider_used == "beta"
        assert result.attempts[0].failure_kind == FailureKind.OTHER

    async def test_build_failure_does_not_look_fast(self, make_router, fake_factory, providers):
        """A candidate that cannot be built gets its failure counted but no near-zero latency."""
        fake_factory.fail_builds.add(("alpha", "m0"))
        router = make_router(providers)

        await router.generate_text("hello")

        metrics = router.ledger.metrics("alpha", "m0", "a1")
        assert metrics.total_calls == 1
        assert metrics.failure_profile == {"OTHER": 1}
        assert metrics.avg_latency == 500.0

    async def test_invalid_credential_quarantined(self, make_router, fake_factory, providers):
        """An authentication failure benches the key for future requests."""
        fake_factory.script("alpha", "m0", ClassifiedError(FailureKind.INVALID_CREDENTIAL, "bad key"))
        router = make_router(providers)

        await router.generate_text("hello")
        second = await router.generate_text("again")

        assert router.governors["alpha"].status_of("a1") == CredentialStatus.QUARANTINED
        assert second.provider_used == "beta"
        assert ("alpha", "m0", "a1") not in fake_factory.calls[2:]

    async def test_rotates_to_second_credential(self, make_router, fake_factory):
        """When one key is rate limited the same model is tried with the next key."""
        fake_factory.script("p", "m0", rate_limited("p"), credential="k1")
        router = make_router({"p": provider_entry(credentials=["k1", "k2"])})

        result = await router.generate_text("hello")

        assert result.success
        assert [a.credential_fingerprint for a in result.attempts] == [
            credential_fingerprint("k1"), credential_fingerprint("k2"),
        ]


class TestExhaustionAndSleep:
    """Tests for terminal failures and sleep mode."""

    async def test_attempts_never_exceed_limit(self, make_router, fake_factory):
        """The loop stops at max_attempts_per_request."""
        providers = {f"p{i}": provider_entry(credentials=[f"k{i}"]) for i in range(6)}
        for name in providers:
            fake_factory.always(name, "m0", ClassifiedError(FailureKind.OTHER, "500"))
        router = make_router(providers, max_attempts=3)

        result = await router.generate_text("hello")

        assert not result.success
        assert result.error_code == ATTEMPTS_EXHAUSTED
        assert len(result.attempts) == 3
        assert len(fake_factory.calls) == 3
        assert router.is_sleeping()

    async def test_no_viable_candidate_sleeps(self, make_router, fake_factory, providers):
        """Running out of candidates is terminal and carries the full path."""
        for name in providers:
            fake_factory.always(name, "m0", ClassifiedError(FailureKind.OTHER, "500"))
        router = make_router(providers)

        result = await router.generate_text("hello")

        assert result.error_code == NO_VIABLE_CANDIDATE
        assert [a.provider for a in result.attempts] == ["alpha", "beta", "gamma"]
        assert len(result.fallback_path) == 3
        assert router.state().phase == RouterPhase.SLEEPING

    async def test_no_credentials_at_all(self, make_router, fake_factory):
        """A router without usable keys fails fast and sleeps."""
        router = make_router({"p": provider_entry(credentials=[])})
        result = await router.generate_text("hello")
        assert result.error_code == NO_VIABLE_CANDIDATE
        assert result.attempts == []
        assert fake_factory.calls == []

    async def test_sleeping_router_rejects_without_adapter_calls(self, make_router, fake_factory, providers, clock):
        """A request 1ms after exhaustion is rejected with no network call."""
        for name in providers:
            fake_factory.script(name, "m0", ClassifiedError(FailureKind.OTHER, "500"))
        router = make_router(providers, sleep_ms=300_000)
        await router.generate_text("hello")
        calls_before = len(fake_factory.calls)

        clock.advance(0.001)
        rejected = await router.generate_text("again")

        assert not rejected.success
        assert rejected.error_code == COOLING_DOWN
        assert rejected.attempts == []
        assert len(fake_factory.calls) == calls_before

        clock.advance(299.0)
        assert (await router.generate_text("still")).error_code == COOLING_DOWN
        assert len(fake_factory.calls) == calls_before

    async def test_wakes_after_sleep_and_resets_governors(self, make_router, fake_factory, providers, clock):
        """After the timer passes the next request wakes the router and resets keys."""
        for name in providers:
            fake_factory.script(name, "m0", rate_limited(name))
        router = make_router(providers, sleep_ms=60_000)
        await router.generate_text("hello")
        assert router.governors["alpha"].status_of("a1") == CredentialStatus.IMPAIRED

        clock.advance(60.001)
        result = await router.generate_text("after the break")

        assert result.success
        assert result.provider_used == "alpha"
        assert router.state().phase == RouterPhase.ACTIVE
        assert not router.is_sleeping()

    async def test_quarantine_survives_wake(self, make_router, fake_factory, providers, clock):
        """Waking never reactivates a quarantined key."""
        fake_factory.script("alpha", "m0", ClassifiedError(FailureKind.INVALID_CREDENTIAL, "bad key"))
        fake_factory.script("beta", "m0", ClassifiedError(FailureKind.OTHER, "500"))
        fake_factory.script("gamma", "m0", ClassifiedError(FailureKind.OTHER, "500"))
        router = make_router(providers, sleep_ms=1000)
        await router.generate_text("hello")

        clock.advance(2)
        result = await router.generate_text("again")

        assert result.provider_used == "beta"
        assert router.governors["alpha"].status_of("a1") == CredentialStatus.QUARANTINED


class TestDeadlines:
    """Tests for caller deadlines and cancellation."""

    async def test_deadline_exceeded(self, make_router, fake_factory, providers):
        """A hanging call is abandoned when the deadline passes."""
        fake_factory.script("alpha", "m0", HANG)
        router = make_router(providers)

        result = await router.generate_text("hello", timeout=0.05)

        assert not result.success
        assert result.error_code == DEADLINE_EXCEEDED
        assert [a.provider for a in result.attempts] == ["alpha"]

    async def test_deadline_attempt_not_recorded_and_no_sleep(self, make_router, fake_factory, providers):
        """The interrupted attempt touches neither ledger nor governor, and the router stays awake."""
        fake_factory.script("alpha", "m0", HANG)
        router = make_router(providers)

        await router.generate_text("hello", timeout=0.05)

        assert router.ledger.metrics("alpha", "m0", "a1").total_calls == 0
        assert router.governors["alpha"].status_of("a1") == CredentialStatus.ACTIVE
        assert not router.is_sleeping()
        assert (await router.generate_text("next")).success

    async def test_deadline_spans_fallbacks(self, make_router, fake_factory, providers):
        """Earlier failures are recorded; the deadline stops the loop."""
        fake_factory.script("alpha", "m0", rate_limited())
        fake_factory.script("beta", "m0", HANG)
        router = make_router(providers)

        result = await router.generate_text("hello", timeout=0.05)

        assert result.error_code == DEADLINE_EXCEEDED
        assert [a.provider for a in result.attempts] == ["alpha", "beta"]
        assert router.ledger.metrics("alpha", "m0", "a1").total_calls == 1
        assert router.ledger.metrics("beta", "m0", "b1").total_calls == 0

    async def test_generous_deadline_succeeds(self, make_router, providers):
        """A deadline that is not hit changes nothing."""
        router = make_router(providers)
        assert (await router.generate_text("hello", timeout=5)).success

    async def test_cancellation_propagates(self, make_router, fake_factory, providers):
        """Cancelling the caller's task cancels the request."""
        fake_factory.script("alpha", "m0", HANG)
        router = make_router(providers)

        task = asyncio.create_task(router.generate_text("hello"))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert router.ledger.metrics("alpha", "m0", "a1").total_calls == 0


class TestSignalsAndLifecycle:
    """Tests for learning pulses, stress signals and lifecycle."""

    async def test_update_heuristics_delegates(self, make_router, providers):
        """Learning pulses adapt the intent's policy."""
        router = make_router(providers)
        before = router.policy.policies()["CodeGeneration"]
        weights = router.update_heuristics("CodeGeneration", False, 2500, "alpha", "m0")
        assert weights == router.policy.policies()["CodeGeneration"]
        assert weights != before

    async def test_ingest_stress_signal(self, make_router, providers):
        """Stress signals reach the policy engine."""
        router = make_router(providers)
        router.ingest_stress_signal(StressSignal(purity=0.0))
        assert router.policy.effective_weights("alpha").latency == pytest.approx(2.0)

    async def test_stress_modulation_timer(self, make_router, providers):
        """The timer pulls signals from the source and applies them."""
        router = make_router(providers)
        pulls = []

        def source():
            pulls.append(1)
            return StressSignal(purity=0.5)

        router.start_stress_modulation(source, interval=0.01)
        for _ in range(100):
            if router.policy.stress > 0:
                break
            await asyncio.sleep(0.01)
        await router.aclose()

        assert router.policy.stress == pytest.approx(0.5)
        count = len(pulls)
        await asyncio.sleep(0.03)
        assert len(pulls) == count

    async def test_stress_source_errors_do_not_stop_timer(self, make_router, providers):
        """A failing source is logged and polled again."""
        router = make_router(providers)
        outcomes = [RuntimeError("sensor offline"), None, StressSignal(purity=0.0, instability_count=2)]

        async def source():
            outcome = outcomes.pop(0) if outcomes else None
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        router.start_stress_modulation(source, interval=0.01)
        for _ in range(100):
            if router.policy.stress > 0:
                break
            await asyncio.sleep(0.01)
        await router.aclose()

        assert router.policy.stress == pytest.approx(1.2)

    async def test_context_manager_closes_adapters(self, make_router, fake_factory, providers):
        """Leaving the context closes every pooled adapter."""
        router = make_router(providers)
        async with router:
            await router.generate_text("hello")
        assert fake_factory.adapters and all(a.closed for a in fake_factory.adapters)

    async def test_shutdown_flushes_ledger(self, make_router, providers, tmp_path):
        """aclose() checkpoints performance history."""
        path = tmp_path / "perf.json"
        router = make_router(providers, ledger_path=path)
        await router.start()
        await router.generate_text("hello")
        await router.aclose()
        assert path.exists()

    async def test_status_snapshot(self, make_router, fake_factory, providers):
        """status() reports state, governors, pool and policy without raw keys."""
        for name in providers:
            fake_factory.script(name, "m0", ClassifiedError(FailureKind.OTHER, "500"))
        router = make_router(providers, sleep_ms=10_000)
        await router.generate_text("hello")

        status = router.status()

        assert status["state"] == "sleeping"
        assert status["sleep_remaining_seconds"] == pytest.approx(10.0)
        assert set(status["governors"]) == {"alpha", "beta", "gamma"}
        assert status["pool"]["builds"] == 3
        assert "default" in status["policy"]["policies"]
        assert status["ledger_records"] == 3
        assert "'a1'" not in repr(status["governors"])
