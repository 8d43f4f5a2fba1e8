"""Pytest configuration and fixtures for nexus-router tests.

This file intentionally keeps the test environment lean (no extra deps).
To support `async def` tests without pytest-asyncio, we provide a minimal
hook that runs coroutine test functions using the stdlib's asyncio.

Fixtures:
- clock: a controllable monotonic clock shared by every component
- fake_factory: an adapter factory producing scriptable fake adapters
- make_router: builds a fully wired Orchestrator over fake adapters
"""

import asyncio
import inspect
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import pytest

from nexus_router.core.observability import disable_observability
from nexus_router.core.provider_config import ProviderConfig, build_router_config
from nexus_router.core.schemas import AdapterResponse
from nexus_router.factory import build_router
from nexus_router.settings import (
    LedgerSettings,
    PoolSettings,
    RouterSettings,
    Settings,
    clear_settings_cache,
)

# Sentinel outcome: the fake adapter blocks until cancelled
HANG = "hang"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeAdapter:
    """Adapter whose outcomes are scripted through its factory."""

    def __init__(self, factory: "FakeAdapterFactory", provider: str, model: str, credential: str):
        self.factory = factory
        self.provider = provider
        self.model = model
        self.credential = credential
        self.closed = False
        self.calls = 0

    async def process(self, messages) -> AdapterResponse:
        self.calls += 1
        self.factory.calls.append((self.provider, self.model, self.credential))
        outcome = self.factory.next_outcome(self.provider, self.model, self.credential)

        if self.factory.clock is not None and self.factory.latency:
            self.factory.clock.advance(self.factory.latency.get(self.provider, 0.0))

        if outcome == HANG:
            await asyncio.sleep(30)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, AdapterResponse):
            return outcome
        return AdapterResponse(
            content=f"reply from {self.provider}:{self.model}",
            finish_reason="stop",
            usage_tokens=7,
        )

    async def aclose(self) -> None:
        self.closed = True


class FakeAdapterFactory:
    """Builds FakeAdapters and records every build and call.

    Outcomes are queued per (provider, model) or per
    (provider, model, credential); the credential-specific queue wins.
    An empty queue means success. `always` sets a repeating outcome.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.builds: List[Tuple[str, str, str]] = []
        self.adapters: List[FakeAdapter] = []
        self.calls: List[Tuple[str, str, str]] = []
        self.fail_builds: set = set()
        self.latency: Dict[str, float] = {}
        self._queues: Dict[Tuple[str, ...], List[Any]] = {}
        self._always: Dict[Tuple[str, ...], Any] = {}

    def script(self, provider: str, model: str, *outcomes: Any, credential: Optional[str] = None) -> None:
        key = (provider, model, credential) if credential else (provider, model)
        self._queues.setdefault(key, []).extend(outcomes)

    def always(self, provider: str, model: str, outcome: Any) -> None:
        self._always[(provider, model)] = outcome

    def next_outcome(self, provider: str, model: str, credential: str) -> Any:
        for key in ((provider, model, credential), (provider, model)):
            queue = self._queues.get(key)
            if queue:
                return queue.pop(0)
        return self._always.get((provider, model))

    def __call__(self, config: ProviderConfig, model: str, credential: str) -> FakeAdapter:
        if (config.name, model) in self.fail_builds:
            raise RuntimeError(f"cannot build {config.name}:{model}")
        adapter = FakeAdapter(self, config.name, model, credential)
        self.builds.append((config.name, model, credential))
        self.adapters.append(adapter)
        return adapter


def provider_entry(
    models=("m0",),
    credentials=("key-1",),
    quality_weight: float = 1.0,
    latency_weight: float = 1.0,
    cost_weight: float = 1.0,
    costs: Optional[Dict[str, float]] = None,
) -> Dict[str, Any]:
    """Raw provider config with every model ranked in list order."""
    models = list(models)
    return {
        "kind": "openai",
        "models": models,
        "modelOrder": {m: i for i, m in enumerate(models)},
        "costPerUnit": costs or {m: 0.001 for m in models},
        "qualityWeight": quality_weight,
        "latencyWeight": latency_weight,
        "costWeight": cost_weight,
        "credentials": list(credentials),
    }


@pytest.fixture(autouse=True)
def isolate_environment(tmp_path, monkeypatch):
    """Keep tests away from real keys, .env files and the user's data dir."""
    for name in list(os.environ):
        if name.startswith("NEXUS_ROUTER_") or "_API_KEY" in name or name == "LOGFIRE_TOKEN":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    disable_observability()
    yield
    logging.getLogger("nexus_router").setLevel(logging.NOTSET)
    clear_settings_cache()
    disable_observability()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_factory(clock) -> FakeAdapterFactory:
    return FakeAdapterFactory(clock)


@pytest.fixture
def make_router(clock, fake_factory):
    """Build an Orchestrator over fake adapters from raw provider entries."""

    def _make(
        providers: Dict[str, Dict[str, Any]],
        *,
        policies: Optional[Dict[str, Dict[str, float]]] = None,
        max_attempts: int = 5,
        sleep_ms: int = 300_000,
        cache_per_credential: bool = True,
        ledger_path=None,
    ):
        raw: Dict[str, Any] = {"providers": providers}
        if policies:
            raw["policies"] = policies
        config = build_router_config(raw, environ={})
        settings = Settings(
            router=RouterSettings(max_attempts_per_request=max_attempts, sleep_duration_ms=sleep_ms),
            pool=PoolSettings(cache_per_credential=cache_per_credential),
            ledger=LedgerSettings(path=ledger_path, persist=ledger_path is not None),
        )
        return build_router(settings, config, adapter_factory=fake_factory, clock=clock)

    return _make


def pytest_pyfunc_call(pyfuncitem: pytest.Item) -> bool | None:
    """Enable running `async def` tests without external plugins.

    If the test function is a coroutine function, execute it via asyncio.run.
    Return True to signal that the call was handled, allowing pytest to
    proceed without complaining about missing async plugins.
    """
    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        kwargs = {
            name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
        }
        asyncio.run(test_func(**kwargs))
        return True
    return None
