"""Core routing infrastructure.

This module provides:
- PerformanceLedger: Rolling per-candidate latency and success statistics
- CredentialGovernor: Per-provider credential health and rotation
- ConnectionPool: Adapter cache with idle pruning
- PolicyEngine: Multi-objective scoring and online policy learning
- Orchestrator: Sequential fallback routing with sleep-mode backpressure
"""

from .connection_pool import ConnectionPool, PooledAdapter
from .credential_governor import CredentialGovernor, CredentialRecord, CredentialStatus
from .errors import (
    ClassifiedError,
    ConfigurationError,
    FailureKind,
    RouterError,
    classify_error,
    classify_status,
)
from .orchestrator import (
    ATTEMPTS_EXHAUSTED,
    COOLING_DOWN,
    DEADLINE_EXCEEDED,
    NO_VIABLE_CANDIDATE,
    Orchestrator,
    RouterPhase,
    RouterState,
)
from .performance_ledger import CandidateMetrics, PerformanceLedger, PerformanceRecord
from .policy_engine import Candidate, PolicyEngine, ProviderWeights, ScoredCandidate
from .provider_config import (
    PolicyTable,
    PolicyWeights,
    ProviderConfig,
    RouterConfig,
    build_router_config,
    default_router_config,
    load_router_config,
)
from .schemas import (
    AdapterResponse,
    AttemptRecord,
    ChatMessage,
    GenerationRequest,
    GenerationResult,
    StressSignal,
    credential_fingerprint,
)

__all__ = [
    # Components
    "ConnectionPool",
    "PooledAdapter",
    "CredentialGovernor",
    "CredentialRecord",
    "CredentialStatus",
    "Orchestrator",
    "RouterPhase",
    "RouterState",
    "PerformanceLedger",
    "PerformanceRecord",
    "CandidateMetrics",
    "PolicyEngine",
    "Candidate",
    "ScoredCandidate",
    "ProviderWeights",
    # Errors
    "ClassifiedError",
    "ConfigurationError",
    "FailureKind",
    "RouterError",
    "classify_error",
    "classify_status",
    # Result codes
    "ATTEMPTS_EXHAUSTED",
    "COOLING_DOWN",
    "DEADLINE_EXCEEDED",
    "NO_VIABLE_CANDIDATE",
    # Configuration
    "PolicyTable",
    "PolicyWeights",
    "ProviderConfig",
    "RouterConfig",
    "build_router_config",
    "default_router_config",
    "load_router_config",
    # Schemas
    "AdapterResponse",
    "AttemptRecord",
    "ChatMessage",
    "GenerationRequest",
    "GenerationResult",
    "StressSignal",
    "credential_fingerprint",
]
