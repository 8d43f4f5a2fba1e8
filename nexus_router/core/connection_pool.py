"""Connection Pool - Adapter cache with idle pruning.

Implements lazy adapter management for every candidate:
1. Adapters are built on first use through an injected factory and cached
2. Each cache hit refreshes the adapter's last-used time
3. A background loop prunes adapters idle past the dormancy threshold

Cache granularity is explicit. By default the key is
(provider, model, credential fingerprint) so credential rotation always
reaches the wire. With cache_per_credential=False the key is
(provider, model) and the adapter built with the first credential is reused
for every later credential until it is pruned.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import ClassifiedError, FailureKind
from .provider_config import ProviderConfig
from .schemas import credential_fingerprint

if TYPE_CHECKING:
    from nexus_router.providers import AdapterFactory, ProviderAdapter

logger = logging.getLogger(__name__)

DEFAULT_DORMANCY_THRESHOLD_SECONDS = 15 * 60
DEFAULT_PRUNE_INTERVAL_SECONDS = 10 * 60

PoolKey = Tuple[str, ...]


@dataclass
class PooledAdapter:
    """A cached adapter plus its usage bookkeeping."""

    adapter: "ProviderAdapter"
    provider: str
    model: str
    credential_fingerprint: str
    created_at: float
    last_used: float
    uses: int = 0

    def idle_for(self, now: float) -> float:
        return now - self.last_used


@dataclass
class PoolStats:
    """Statistics for the adapter cache."""

    builds: int = 0
    reuses: int = 0
    prunes: int = 0
    build_errors: int = 0


class ConnectionPool:
    """Explicitly owned cache of provider adapters.

    The cache lock guards the map only; adapters are closed after being
    removed from the map, outside the lock.
    """

    def __init__(
        self,
        factory: "AdapterFactory",
        providers: Mapping[str, ProviderConfig],
        *,
        cache_per_credential: bool = True,
        dormancy_threshold: float = DEFAULT_DORMANCY_THRESHOLD_SECONDS,
        prune_interval: float = DEFAULT_PRUNE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = factory
        self._providers = dict(providers)
        self.cache_per_credential = cache_per_credential
        self.dormancy_threshold = dormancy_threshold
        self.prune_interval = prune_interval
        self._clock = clock

        self._cache: Dict[PoolKey, PooledAdapter] = {}
        self._lock = threading.Lock()
        self._stats = PoolStats()

        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _key(self, provider: str, model: str, credential: str) -> PoolKey:
        if self.cache_per_credential:
            return (provider, model, credential_fingerprint(credential))
        return (provider, model)

    def acquire(self, provider: str, model: str, credential: str) -> "ProviderAdapter":
        """Return a cached adapter for the candidate, building one if needed.

        Raises:
            ClassifiedError: OTHER, when the provider is unknown or the
                factory fails. The pool stays usable.
        """
        key = self._key(provider, model, credential)
        with self._lock:
            now = self._clock()
            entry = self._cache.get(key)
            if entry is not None:
                entry.last_used = now
                entry.uses += 1
                self._stats.reuses += 1
                return entry.adapter

            config = self._providers.get(provider)
            try:
                if config is None:
                    raise ValueError(f"unknown provider '{provider}'")
                adapter = self._factory(config, model, credential)
            except Exception as e:
                self._stats.build_errors += 1
                logger.error(f"Failed to build adapter for {provider}:{model}: {e}")
                raise ClassifiedError(
                    FailureKind.OTHER, f"adapter construction failed: {e}",
                    provider=provider, model=model,
                ) from e

            self._cache[key] = PooledAdapter(
                adapter=adapter,
                provider=provider,
                model=model,
                credential_fingerprint=credential_fingerprint(credential),
                created_at=now,
                last_used=now,
                uses=1,
            )
            self._stats.builds += 1

        logger.debug(f"Built adapter for {provider}:{model}:{credential_fingerprint(credential)}")
        return adapter

    async def _close(self, entries: List[PooledAdapter]) -> None:
        for entry in entries:
            try:
                await entry.adapter.aclose()
            except Exception as e:
                logger.warning(f"Error closing adapter {entry.provider}:{entry.model}: {e}")

    async def prune_idle(self) -> int:
        """Remove and close adapters idle longer than the dormancy threshold."""
        with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._cache.items()
                if entry.idle_for(now) > self.dormancy_threshold
            ]
            removed = [self._cache.pop(key) for key in expired]
            self._stats.prunes += len(removed)

        if removed:
            await self._close(removed)
            logger.info(f"🧹 Pruned {len(removed)} idle adapter(s)")
        return len(removed)

    async def close_all(self) -> None:
        """Close every cached adapter."""
        with self._lock:
            removed = list(self._cache.values())
            self._cache.clear()
        await self._close(removed)
        if removed:
            logger.info(f"Closed {len(removed)} adapter(s)")

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, key: PoolKey) -> bool:
        with self._lock:
            return key in self._cache

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "cached": len(self._cache),
                "builds": self._stats.builds,
                "reuses": self._stats.reuses,
                "prunes": self._stats.prunes,
                "build_errors": self._stats.build_errors,
                "cache_per_credential": self.cache_per_credential,
            }

    async def start(self) -> None:
        """Start the background prune loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._prune_loop())
        logger.info(f"Started adapter prune loop ({self.prune_interval}s)")

    async def stop(self) -> None:
        """Stop the background prune loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stopped adapter prune loop")

    async def _prune_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.prune_interval)
            try:
                await self.prune_idle()
            except Exception as e:
                logger.error(f"Adapter prune loop error: {e}")
