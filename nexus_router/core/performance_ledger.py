"""Performance Ledger - Rolling per-candidate statistics with durable checkpoints.

Tracks, for every provider:model:credential candidate:
1. EMA latency (seeded to the first observation, updated on every attempt)
2. Success / failure counts and a failure-reason histogram
3. Last-seen wall clock time

State is a JSON document keyed by "provider:model:fingerprint". It is loaded
at construction, checkpointed by a background task when dirty, and written
atomically (temp file + os.replace). A corrupt or missing file starts an
empty ledger instead of raising.
"""

import asyncio
import json
import logging
import math
import os
import tempfile
import threading
import time
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import FailureKind
from .schemas import credential_fingerprint

logger = logging.getLogger(__name__)

# Optimistic defaults so unseen candidates get a fair first trial
UNSEEN_AVG_LATENCY_MS = 500.0
UNSEEN_SUCCESS_RATE = 0.9
CONFIDENCE_SATURATION_CALLS = 100


class PerformanceRecord(BaseModel):
    """Persisted statistics for one candidate."""

    model_config = ConfigDict(populate_by_name=True)

    ema_latency: float = Field(default=0.0, ge=0.0, alias="emaLatency")
    success_count: int = Field(default=0, ge=0, alias="successCount")
    failure_count: int = Field(default=0, ge=0, alias="failureCount")
    failure_reasons: Dict[str, int] = Field(default_factory=dict, alias="failureReasons")
    total_calls: int = Field(default=0, ge=0, alias="totalCalls")
    last_seen: float = Field(default=0.0, alias="lastSeen")

    @property
    def success_rate(self) -> float:
        if self.total_calls == 0:
            return UNSEEN_SUCCESS_RATE
        return self.success_count / self.total_calls


@dataclass
class CandidateMetrics:
    """Read-only view of a candidate's performance used for scoring."""

    avg_latency: float
    success_rate: float
    total_calls: int
    confidence: float
    failure_profile: Dict[str, int] = field(default_factory=dict)


def record_key(provider: str, model: str, credential: Optional[str]) -> str:
    return f"{provider}:{model}:{credential_fingerprint(credential)}"


def confidence_for(total_calls: int) -> float:
    """Grows logarithmically with call count, saturating at 1.0 around 100 calls."""
    return min(1.0, math.log1p(total_calls) / math.log1p(CONFIDENCE_SATURATION_CALLS))


class PerformanceLedger:
    """Thread-safe store of per-candidate performance.

    Record updates take one of N striped locks chosen by key, so concurrent
    requests for different candidates rarely contend. Key creation and
    whole-ledger copies take the index lock; file writes take the write lock.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        *,
        ema_alpha: float = 0.1,
        stripes: int = 16,
        checkpoint_interval: float = 5.0,
        wall_clock: Callable[[], float] = time.time,
    ):
        if not 0.0 < ema_alpha <= 1.0:
            raise ValueError("ema_alpha must be in (0, 1]")

        self.path = Path(path) if path is not None else None
        self.ema_alpha = ema_alpha
        self.checkpoint_interval = checkpoint_interval
        self._wall_clock = wall_clock

        self._records: Dict[str, PerformanceRecord] = {}
        self._stripes = [threading.Lock() for _ in range(max(1, stripes))]
        self._index_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._dirty = False

        self._running = False
        self._task: Optional[asyncio.Task] = None

        self._load()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        """Load persisted state. Never raises."""
        if self.path is None:
            return
        if not self.path.exists():
            logger.info(f"No performance history at {self.path}, starting empty")
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"❌ Performance history at {self.path} is unreadable, starting empty: {e}")
            return

        if not isinstance(data, dict):
            logger.error(f"❌ Performance history at {self.path} is not a JSON object, starting empty")
            return

        loaded = 0
        for key, raw in data.items():
            try:
                self._records[key] = PerformanceRecord.model_validate(raw)
                loaded += 1
            except ValidationError as e:
                logger.warning(f"Skipping malformed performance record {key}: {e.error_count()} error(s)")
        logger.info(f"Loaded {loaded} performance record(s) from {self.path}")

    def flush(self) -> bool:
        """Write the ledger to disk if anything changed since the last flush.

        Returns True when a file was written. Failures are logged and the
        in-memory state remains authoritative.
        """
        if self.path is None or not self._dirty:
            return False

        # Cleared before copying so updates racing with the write re-dirty it
        self._dirty = False
        payload = {
            key: record.model_dump(by_alias=True)
            for key, record in self.snapshot().items()
        }

        with self._write_lock:
            tmp_name = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    prefix=".performance-", suffix=".tmp", dir=str(self.path.parent)
                )
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, sort_keys=True)
                os.replace(tmp_name, self.path)
                tmp_name = None
            except OSError as e:
                self._dirty = True
                logger.error(f"❌ Failed to checkpoint performance ledger to {self.path}: {e}")
                return False
            finally:
                if tmp_name is not None and os.path.exists(tmp_name):
                    os.unlink(tmp_name)

        logger.debug(f"Checkpointed {len(payload)} performance record(s) to {self.path}")
        return True

    @property
    def dirty(self) -> bool:
        return self._dirty

    # -------------------------------------------------------------------------
    # Recording & queries
    # -------------------------------------------------------------------------

    def _stripe_for(self, key: str) -> threading.Lock:
        return self._stripes[zlib.crc32(key.encode("utf-8")) % len(self._stripes)]

    def _get_or_create(self, key: str) -> PerformanceRecord:
        record = self._records.get(key)
        if record is None:
            with self._index_lock:
                record = self._records.setdefault(key, PerformanceRecord())
        return record

    def record(
        self,
        provider: str,
        model: str,
        credential: Optional[str],
        latency_ms: Optional[float],
        success: bool,
        failure_reason: Optional[Union[FailureKind, str]] = None,
    ) -> None:
        """Record one attempt's outcome.

        A latency of None means no remote call was made; counts are updated
        but the EMA is left alone (seeded with the unseen default).
        """
        key = record_key(provider, model, credential)
        record = self._get_or_create(key)

        with self._stripe_for(key):
            if latency_ms is None:
                if record.total_calls == 0:
                    record.ema_latency = UNSEEN_AVG_LATENCY_MS
            elif record.total_calls == 0:
                record.ema_latency = max(0.0, float(latency_ms))
            else:
                latency_ms = max(0.0, float(latency_ms))
                record.ema_latency = (
                    self.ema_alpha * latency_ms + (1.0 - self.ema_alpha) * record.ema_latency
                )

            record.total_calls += 1
            if success:
                record.success_count += 1
            else:
                record.failure_count += 1
                reason = failure_reason.value if isinstance(failure_reason, FailureKind) else (
                    failure_reason or FailureKind.OTHER.value
                )
                record.failure_reasons[reason] = record.failure_reasons.get(reason, 0) + 1
            record.last_seen = self._wall_clock()

        self._dirty = True

    def metrics(self, provider: str, model: str, credential: Optional[str]) -> CandidateMetrics:
        key = record_key(provider, model, credential)
        record = self._records.get(key)
        if record is None:
            return CandidateMetrics(
                avg_latency=UNSEEN_AVG_LATENCY_MS,
                success_rate=UNSEEN_SUCCESS_RATE,
                total_calls=0,
                confidence=0.0,
            )

        with self._stripe_for(key):
            if record.total_calls == 0:
                avg_latency = UNSEEN_AVG_LATENCY_MS
            else:
                avg_latency = record.ema_latency
            return CandidateMetrics(
                avg_latency=avg_latency,
                success_rate=record.success_rate,
                total_calls=record.total_calls,
                confidence=confidence_for(record.total_calls),
                failure_profile=dict(record.failure_reasons),
            )

    def snapshot(self) -> Dict[str, PerformanceRecord]:
        """Deep copy of every record, for diagnostics and checkpoints."""
        with self._index_lock:
            items = list(self._records.items())
        copies = {}
        for key, record in items:
            with self._stripe_for(key):
                copies[key] = record.model_copy(deep=True)
        return copies

    def keys(self) -> List[str]:
        with self._index_lock:
            return sorted(self._records)

    def __len__(self) -> int:
        return len(self._records)

    # -------------------------------------------------------------------------
    # Background checkpointing
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background checkpoint loop."""
        if self._running or self.path is None:
            return
        self._running = True
        self._task = asyncio.create_task(self._checkpoint_loop())
        logger.info(f"Started performance checkpoint loop ({self.checkpoint_interval}s)")

    async def stop(self) -> None:
        """Stop the checkpoint loop and flush whatever is pending."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.flush()

    async def _checkpoint_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.checkpoint_interval)
            try:
                await asyncio.to_thread(self.flush)
            except Exception as e:
                logger.error(f"Performance checkpoint loop error: {e}")
