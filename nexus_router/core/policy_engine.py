"""Policy Engine - Multi-objective candidate scoring with online learning.

For every (provider, model, credential) candidate:

    qualityProxy = 1 - rank/modelCount                      (0.5 if unranked)
    quality      = qualityProxy * providerQualityWeight * 0.4 + successRate * 0.6
    normLatency  = min(avgLatency, latencyCap) / latencyCap
    normCost     = min(costPerUnit, costCap) / costCap
    score        = w_q*quality - w_l*normLatency*providerLatencyWeight
                   - w_c*normCost*providerCostWeight

(w_q, w_l, w_c) come from the request intent's policy and adapt after every
interaction. Provider weights are the base configuration modulated by an
external stress signal. Chronically failing candidates are circuit-broken
before scoring.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, List, Mapping, Optional, Tuple

from .credential_governor import CredentialGovernor
from .observability import log_policy_adapted
from .performance_ledger import CandidateMetrics, PerformanceLedger
from .provider_config import PolicyWeights, ProviderConfig, RouterConfig
from .schemas import DEFAULT_INTENT, StressSignal, credential_fingerprint

logger = logging.getLogger(__name__)

QUALITY_PROXY_SHARE = 0.4
SUCCESS_RATE_SHARE = 0.6
PROVIDER_WEIGHT_MIN = 0.1
PROVIDER_WEIGHT_MAX = 2.0
LATENCY_LEARNING_SCALE_MS = 1000.0
COST_LEARNING_SCALE = 0.01
FAILURE_QUALITY_PENALTY = 1.5

CandidateKey = Tuple[str, str, str]


@dataclass(frozen=True)
class Candidate:
    """One provider + model + credential combination."""

    provider: str
    model: str
    credential: str = field(repr=False)

    @property
    def fingerprint(self) -> str:
        return credential_fingerprint(self.credential)

    @property
    def key(self) -> CandidateKey:
        return (self.provider, self.model, self.fingerprint)

    @property
    def label(self) -> str:
        return f"{self.provider}:{self.model}:{self.fingerprint}"


@dataclass
class ScoredCandidate:
    candidate: Candidate
    score: float
    quality_score: float
    metrics: CandidateMetrics


@dataclass(frozen=True)
class ProviderWeights:
    """Effective provider multipliers after stress modulation."""

    quality: float
    latency: float
    cost: float

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "ProviderWeights":
        return cls(config.quality_weight, config.latency_weight, config.cost_weight)


def _clamp(value: float, low: float = PROVIDER_WEIGHT_MIN, high: float = PROVIDER_WEIGHT_MAX) -> float:
    return max(low, min(high, value))


class PolicyEngine:
    """Scores candidates and adapts per-intent policies.

    One lock guards both the policy table and the effective provider
    weights; scoring copies what it needs under the lock and computes
    outside it.
    """

    def __init__(
        self,
        config: RouterConfig,
        ledger: PerformanceLedger,
        governors: Mapping[str, CredentialGovernor],
        *,
        min_calls_for_circuit_breaker: int = 10,
        min_success_rate: float = 0.2,
        max_latency_consideration_ms: float = 5000.0,
        max_cost_consideration_per_unit: float = 0.05,
        learning_rate: float = 0.01,
    ):
        self._config = config
        self._ledger = ledger
        self._governors = governors
        self.min_calls_for_circuit_breaker = min_calls_for_circuit_breaker
        self.min_success_rate = min_success_rate
        self.max_latency_ms = max_latency_consideration_ms
        self.max_cost = max_cost_consideration_per_unit
        self.learning_rate = learning_rate

        self._lock = threading.Lock()
        self._policies: Dict[str, Dict[str, float]] = {
            intent: weights.model_dump() for intent, weights in config.policies.policies.items()
        }
        self._effective: Dict[str, ProviderWeights] = {
            name: ProviderWeights.from_config(provider) for name, provider in config.providers.items()
        }
        self._stress = 0.0

    @classmethod
    def from_settings(cls, config, ledger, governors, settings) -> "PolicyEngine":
        return cls(
            config,
            ledger,
            governors,
            min_calls_for_circuit_breaker=settings.min_calls_for_circuit_breaker,
            min_success_rate=settings.min_success_rate,
            max_latency_consideration_ms=settings.max_latency_consideration_ms,
            max_cost_consideration_per_unit=settings.max_cost_consideration_per_unit,
            learning_rate=settings.learning_rate,
        )

    def _resolve_intent(self, intent: Optional[str]) -> str:
        """Caller holds the lock."""
        if intent and intent in self._policies:
            return intent
        return DEFAULT_INTENT

    # =========================================================================
    # Scoring
    # =========================================================================

    def is_circuit_broken(self, metrics: CandidateMetrics) -> bool:
        return (
            metrics.total_calls > self.min_calls_for_circuit_breaker
            and metrics.success_rate < self.min_success_rate
        )

    def score(
        self,
        provider: ProviderConfig,
        model: str,
        metrics: CandidateMetrics,
        weights: Mapping[str, float],
        provider_weights: ProviderWeights,
    ) -> Tuple[float, float]:
        """Return (score, quality_score) for one candidate."""
        quality_score = (
            provider.quality_proxy(model) * provider_weights.quality * QUALITY_PROXY_SHARE
            + metrics.success_rate * SUCCESS_RATE_SHARE
        )
        norm_latency = min(metrics.avg_latency, self.max_latency_ms) / self.max_latency_ms
        norm_cost = min(provider.cost_of(model), self.max_cost) / self.max_cost

        score = (
            weights["w_q"] * quality_score
            - weights["w_l"] * norm_latency * provider_weights.latency
            - weights["w_c"] * norm_cost * provider_weights.cost
        )
        return score, quality_score

    def rank_candidates(
        self,
        intent: Optional[str] = None,
        exclude: Optional[Collection[CandidateKey]] = None,
    ) -> List[ScoredCandidate]:
        """All viable candidates, best first.

        Ties break by provider name, then model name, then credential
        rotation order.
        """
        exclude = exclude or ()
        with self._lock:
            weights = dict(self._policies[self._resolve_intent(intent)])
            effective = dict(self._effective)

        ranked: List[Tuple[float, str, str, int, ScoredCandidate]] = []
        for name in self._config.provider_names:
            governor = self._governors.get(name)
            if governor is None:
                continue
            credentials = governor.rotation()
            if not credentials:
                continue

            provider = self._config.providers[name]
            provider_weights = effective[name]
            for model in provider.models:
                for position, credential in enumerate(credentials):
                    candidate = Candidate(name, model, credential)
                    if candidate.key in exclude:
                        continue

                    metrics = self._ledger.metrics(name, model, credential)
                    if self.is_circuit_broken(metrics):
                        logger.debug(
                            f"⚡ Circuit open for {candidate.label} "
                            f"({metrics.success_rate:.0%} over {metrics.total_calls} calls)"
                        )
                        continue

                    score, quality_score = self.score(provider, model, metrics, weights, provider_weights)
                    ranked.append((
                        -score, name, model, position,
                        ScoredCandidate(candidate, score, quality_score, metrics),
                    ))

        ranked.sort(key=lambda item: item[:4])
        return [item[4] for item in ranked]

    def best_candidate(
        self,
        intent: Optional[str] = None,
        exclude: Optional[Collection[CandidateKey]] = None,
    ) -> Optional[ScoredCandidate]:
        ranked = self.rank_candidates(intent, exclude)
        return ranked[0] if ranked else None

    # =========================================================================
    # Learning
    # =========================================================================

    def update_heuristics(
        self,
        intent: Optional[str],
        success: bool,
        latency: float,
        cost_proxy: float,
        quality_proxy: float,
    ) -> PolicyWeights:
        """Nudge the intent's policy toward what just worked (or away from what failed).

        Weights are clamped to >= 0 and renormalized to sum to 1; if
        clamping zeroes all three they reset to an even split. Unknown
        intents learn into the default policy.
        """
        lr = self.learning_rate
        latency_term = lr * (latency / LATENCY_LEARNING_SCALE_MS)
        cost_term = lr * (cost_proxy / COST_LEARNING_SCALE)

        with self._lock:
            resolved = self._resolve_intent(intent)
            w = self._policies[resolved]
            if success:
                w_q = w["w_q"] + lr * quality_proxy
                w_l = w["w_l"] - latency_term
                w_c = w["w_c"] - cost_term
            else:
                w_q = w["w_q"] - lr * (FAILURE_QUALITY_PENALTY - quality_proxy)
                w_l = w["w_l"] + latency_term
                w_c = w["w_c"] + cost_term

            w_q, w_l, w_c = max(0.0, w_q), max(0.0, w_l), max(0.0, w_c)
            total = w_q + w_l + w_c
            if total <= 0:
                w_q = w_l = w_c = 1.0 / 3.0
            else:
                w_q, w_l, w_c = w_q / total, w_l / total, w_c / total

            self._policies[resolved] = {"w_q": w_q, "w_l": w_l, "w_c": w_c}

        log_policy_adapted(resolved, w_q, w_l, w_c)
        return PolicyWeights(w_q=w_q, w_l=w_l, w_c=w_c)

    def learn_from_interaction(
        self,
        intent: Optional[str],
        success: bool,
        latency: float,
        provider: str,
        model: str,
    ) -> Optional[PolicyWeights]:
        """Learning pulse from a completed interaction on a known candidate."""
        config = self._config.providers.get(provider)
        if config is None or model not in config.models:
            logger.warning(f"Ignoring learning pulse for unknown candidate {provider}:{model}")
            return None
        return self.update_heuristics(
            intent,
            success,
            latency,
            cost_proxy=config.cost_of(model),
            quality_proxy=config.quality_proxy(model),
        )

    # =========================================================================
    # Stress modulation
    # =========================================================================

    def apply_stress(self, signal: StressSignal) -> Dict[str, ProviderWeights]:
        """Recompute effective provider weights from base config and stress.

        Higher stress pulls quality weight down and pushes latency and cost
        weights up, each bounded to [0.1, 2.0].
        """
        stress = signal.stress
        factor = 1.0 + stress
        updated = {
            name: ProviderWeights(
                quality=_clamp(provider.quality_weight / factor),
                latency=_clamp(provider.latency_weight * factor),
                cost=_clamp(provider.cost_weight * factor),
            )
            for name, provider in self._config.providers.items()
        }
        with self._lock:
            self._effective = updated
            self._stress = stress

        logger.info(f"Applied stress {stress:.2f} (purity {signal.purity:.2f}, instability {signal.instability_count})")
        return dict(updated)

    def effective_weights(self, provider: str) -> Optional[ProviderWeights]:
        with self._lock:
            return self._effective.get(provider)

    @property
    def stress(self) -> float:
        with self._lock:
            return self._stress

    def policies(self) -> Dict[str, PolicyWeights]:
        """Copy of the current policy table."""
        with self._lock:
            return {intent: PolicyWeights(**w) for intent, w in self._policies.items()}

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "stress": self._stress,
                "policies": {intent: dict(w) for intent, w in self._policies.items()},
                "provider_weights": {
                    name: {"quality": w.quality, "latency": w.latency, "cost": w.cost}
                    for name, w in self._effective.items()
                },
            }
