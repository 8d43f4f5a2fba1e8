"""Composition root: builds a fully wired Orchestrator.

    orchestrator = build_router()
    async with orchestrator:
        result = await orchestrator.generate_text(GenerationRequest.from_prompt("hi"))

Every component is an explicit instance owned by the returned Orchestrator;
nothing is looked up globally at request time.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Dict, Mapping, Optional

from nexus_router.core.connection_pool import ConnectionPool
from nexus_router.core.credential_governor import CredentialGovernor
from nexus_router.core.observability import configure_observability
from nexus_router.core.orchestrator import Orchestrator
from nexus_router.core.performance_ledger import PerformanceLedger
from nexus_router.core.policy_engine import PolicyEngine
from nexus_router.core.provider_config import RouterConfig, load_router_config
from nexus_router.providers import AdapterFactory, make_adapter_factory
from nexus_router.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def build_governors(
    config: RouterConfig,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, CredentialGovernor]:
    return {
        name: CredentialGovernor(name, provider.credentials, clock=clock)
        for name, provider in config.providers.items()
    }


def build_router(
    settings: Optional[Settings] = None,
    config: Optional[RouterConfig] = None,
    adapter_factory: Optional[AdapterFactory] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Orchestrator:
    """Wire ledger, governors, pool, policy engine and orchestrator together.

    Args:
        settings: Settings to use; defaults to get_settings()
        config: Provider/policy configuration; defaults to the providers
            file from settings, or the built-in defaults
        adapter_factory: Builds adapters for the pool; defaults to the
            httpx adapters with the pool's timeouts
        environ: Environment used for credential discovery
        clock: Monotonic clock shared by every component
    """
    settings = settings or get_settings()
    configure_observability(settings.observability)

    if config is None:
        env = dict(settings.api.as_environ())
        env.update(os.environ if environ is None else environ)
        config = load_router_config(settings.paths.providers_file, env)

    ledger = PerformanceLedger(
        settings.ledger_path if settings.ledger.persist else None,
        ema_alpha=settings.router.ema_alpha,
        stripes=settings.ledger.stripes,
        checkpoint_interval=settings.ledger.checkpoint_interval_seconds,
    )
    governors = build_governors(config, clock)

    if adapter_factory is None:
        adapter_factory = make_adapter_factory(
            timeout=settings.pool.request_timeout_seconds,
            connect_timeout=settings.pool.connect_timeout_seconds,
        )
    pool = ConnectionPool(
        adapter_factory,
        config.providers,
        cache_per_credential=settings.pool.cache_per_credential,
        dormancy_threshold=settings.pool.dormancy_threshold_seconds,
        prune_interval=settings.pool.prune_interval_seconds,
        clock=clock,
    )
    policy = PolicyEngine.from_settings(config, ledger, governors, settings.router)

    orchestrator = Orchestrator(
        governors,
        ledger,
        pool,
        policy,
        max_attempts_per_request=settings.router.max_attempts_per_request,
        sleep_duration=settings.router.sleep_duration_seconds,
        stress_interval=settings.router.stress_interval_seconds,
        clock=clock,
    )

    usable = [name for name, g in governors.items() if len(g)]
    logger.info(
        f"Router ready: {len(config.providers)} provider(s), "
        f"{len(usable)} with credentials ({', '.join(sorted(usable)) or 'none'})"
    )
    return orchestrator
