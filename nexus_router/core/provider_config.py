"""Provider & Policy Configuration - validated at load time.

Single source of truth for:
1. Which providers, models and credentials the router may use
2. Per-model quality rank and cost
3. Per-intent quality/latency/cost policy weights

Configuration is read from a JSON file (see PathSettings.providers_file) or
falls back to the built-in defaults below. Credential entries of the form
"$ENV_VAR" are resolved from the environment, and every provider also picks
up <PROVIDER>_API_KEY and <PROVIDER>_API_KEY_<n> variables.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import ConfigurationError
from .schemas import DEFAULT_INTENT

logger = logging.getLogger(__name__)

DEFAULT_COST_PER_UNIT = 0.001
UNRANKED_QUALITY_PROXY = 0.5
PLACEHOLDER_MARKER = "YOUR_"


def is_placeholder_credential(value: Optional[str]) -> bool:
    """True for empty strings and template values such as 'sk-YOUR_OPENAI_KEY_1'."""
    return not value or not value.strip() or PLACEHOLDER_MARKER in value


class ProviderConfig(BaseModel):
    """Static description of one provider.

    The three weights here are the *base* weights; the policy engine derives
    effective weights from them when a stress signal arrives.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, protected_namespaces=())

    name: str
    kind: Optional[str] = None  # adapter family; defaults to the provider name
    base_url: Optional[str] = None
    models: List[str] = Field(min_length=1)
    model_order: Dict[str, int] = Field(default_factory=dict, alias="modelOrder")
    cost_per_unit: Dict[str, float] = Field(default_factory=dict, alias="costPerUnit")
    quality_weight: float = Field(default=1.0, ge=0.0, alias="qualityWeight")
    latency_weight: float = Field(default=1.0, ge=0.0, alias="latencyWeight")
    cost_weight: float = Field(default=1.0, ge=0.0, alias="costWeight")
    credentials: List[str] = Field(default_factory=list)

    @field_validator("models")
    @classmethod
    def _unique_models(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("model names must be unique")
        return v

    @model_validator(mode="after")
    def _check_model_maps(self) -> "ProviderConfig":
        unknown = (set(self.model_order) | set(self.cost_per_unit)) - set(self.models)
        if unknown:
            raise ValueError(f"modelOrder/costPerUnit reference unknown models: {sorted(unknown)}")
        if any(rank < 0 for rank in self.model_order.values()):
            raise ValueError("modelOrder ranks must be non-negative")
        if any(cost < 0 for cost in self.cost_per_unit.values()):
            raise ValueError("costPerUnit values must be non-negative")
        return self

    @property
    def adapter_kind(self) -> str:
        return (self.kind or self.name).lower()

    def quality_proxy(self, model: str) -> float:
        """1 - rank/modelCount; lower rank means higher presumed quality."""
        rank = self.model_order.get(model)
        if rank is None:
            return UNRANKED_QUALITY_PROXY
        return 1.0 - (rank / len(self.models))

    def cost_of(self, model: str) -> float:
        return self.cost_per_unit.get(model, DEFAULT_COST_PER_UNIT)


class PolicyWeights(BaseModel):
    """Quality / latency / cost weights for one intent."""

    model_config = ConfigDict(populate_by_name=True)

    w_q: float = Field(ge=0.0)
    w_l: float = Field(ge=0.0)
    w_c: float = Field(ge=0.0)

    @model_validator(mode="after")
    def _not_all_zero(self) -> "PolicyWeights":
        if self.w_q + self.w_l + self.w_c <= 0:
            raise ValueError("policy weights must not all be zero")
        return self

    @property
    def total(self) -> float:
        return self.w_q + self.w_l + self.w_c


DEFAULT_POLICIES: Dict[str, Dict[str, float]] = {
    DEFAULT_INTENT:      {"w_q": 0.6, "w_l": 0.3, "w_c": 0.1},
    "ChitChat":          {"w_q": 0.2, "w_l": 0.7, "w_c": 0.1},
    "QuestionAnswering": {"w_q": 0.7, "w_l": 0.2, "w_c": 0.1},
    "CodeGeneration":    {"w_q": 0.8, "w_l": 0.1, "w_c": 0.1},
    "CreativeRequest":   {"w_q": 0.9, "w_l": 0.0, "w_c": 0.1},
    "PersonalVent":      {"w_q": 0.5, "w_l": 0.4, "w_c": 0.1},
    "ImageGeneration":   {"w_q": 0.7, "w_l": 0.1, "w_c": 0.2},
}


class PolicyTable(BaseModel):
    """Intent -> weights, always containing a 'default' entry."""

    policies: Dict[str, PolicyWeights]

    @field_validator("policies")
    @classmethod
    def _require_default(cls, v: Dict[str, PolicyWeights]) -> Dict[str, PolicyWeights]:
        if DEFAULT_INTENT not in v:
            raise ValueError(f"policy table must contain a '{DEFAULT_INTENT}' entry")
        return v

    @classmethod
    def defaults(cls) -> "PolicyTable":
        return cls(policies={k: PolicyWeights(**w) for k, w in DEFAULT_POLICIES.items()})


DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "openai": {
        "models": ["gpt-4o", "gpt-4-turbo", "gpt-3.5-turbo"],
        "modelOrder": {"gpt-4o": 0, "gpt-4-turbo": 1, "gpt-3.5-turbo": 2},
        "costPerUnit": {"gpt-4o": 0.005, "gpt-4-turbo": 0.01, "gpt-3.5-turbo": 0.0005},
        "qualityWeight": 1.0,
        "latencyWeight": 1.0,
        "costWeight": 1.0,
    },
    "gemini": {
        "models": ["gemini-1.5-pro-latest", "gemini-pro"],
        "modelOrder": {"gemini-1.5-pro-latest": 0, "gemini-pro": 1},
        "costPerUnit": {"gemini-1.5-pro-latest": 0.0035, "gemini-pro": 0.0005},
        "qualityWeight": 0.9,
        "latencyWeight": 1.0,
        "costWeight": 1.0,
    },
    "groq": {
        "models": ["llama3-8b-8192", "llama3-70b-8192"],
        # 70b is slower and pricier on Groq, so it ranks below 8b here
        "modelOrder": {"llama3-8b-8192": 0, "llama3-70b-8192": 1},
        "costPerUnit": {"llama3-8b-8192": 0.0001, "llama3-70b-8192": 0.0008},
        "qualityWeight": 0.8,
        "latencyWeight": 0.5,
        "costWeight": 1.0,
    },
}


class RouterConfig(BaseModel):
    """Complete, validated routing configuration."""

    providers: Dict[str, ProviderConfig]
    policies: PolicyTable = Field(default_factory=PolicyTable.defaults)

    @property
    def provider_names(self) -> List[str]:
        return sorted(self.providers)


def discover_env_credentials(provider: str, environ: Optional[Mapping[str, str]] = None) -> List[str]:
    """Collect <PROVIDER>_API_KEY and <PROVIDER>_API_KEY_<n> values, numbered keys in order."""
    env = os.environ if environ is None else environ
    prefix = f"{provider.upper()}_API_KEY"
    pattern = re.compile(rf"^{re.escape(prefix)}(?:_(\d+))?$")

    found = []
    for name, value in env.items():
        match = pattern.match(name)
        if match:
            index = int(match.group(1)) if match.group(1) else 0
            found.append((index, value))

    return [value for _, value in sorted(found)]


def _resolve_credentials(
    provider: str,
    declared: List[str],
    environ: Optional[Mapping[str, str]],
) -> List[str]:
    """Expand $ENV references, merge discovered env keys, drop placeholders and dupes."""
    env = os.environ if environ is None else environ
    resolved = []
    for value in declared:
        if value.startswith("$"):
            value = env.get(value[1:], "")
        resolved.append(value)
    resolved.extend(discover_env_credentials(provider, env))

    credentials: List[str] = []
    for value in resolved:
        if is_placeholder_credential(value):
            continue
        value = value.strip()
        if value not in credentials:
            credentials.append(value)
    return credentials


def build_router_config(
    raw: Mapping[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> RouterConfig:
    """Validate a raw mapping ({"providers": {...}, "policies": {...}}) into RouterConfig.

    Raises:
        ConfigurationError: If any provider or policy entry fails validation.
    """
    raw_providers = raw.get("providers")
    if not isinstance(raw_providers, Mapping) or not raw_providers:
        raise ConfigurationError("configuration must define at least one provider")

    providers: Dict[str, ProviderConfig] = {}
    try:
        for name, entry in raw_providers.items():
            entry = dict(entry)
            entry.setdefault("name", name)
            entry["credentials"] = _resolve_credentials(
                name, list(entry.get("credentials") or entry.get("apiKeys") or []), environ
            )
            entry.pop("apiKeys", None)
            providers[name] = ProviderConfig.model_validate(entry)

        raw_policies = raw.get("policies")
        if raw_policies:
            policies = PolicyTable(policies=raw_policies)
        else:
            policies = PolicyTable.defaults()
    except ValidationError as e:
        raise ConfigurationError(f"invalid router configuration: {e}") from e

    for name, provider in providers.items():
        if not provider.credentials:
            logger.warning(f"⚠️ Provider {name} has no usable credentials and will be skipped")

    return RouterConfig(providers=providers, policies=policies)


def default_router_config(environ: Optional[Mapping[str, str]] = None) -> RouterConfig:
    """Built-in OpenAI / Gemini / Groq configuration with env-sourced credentials."""
    return build_router_config({"providers": DEFAULT_PROVIDERS}, environ)


def load_router_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RouterConfig:
    """Load configuration from a JSON file, or the defaults if it does not exist."""
    if path is None or not Path(path).exists():
        if path is not None:
            logger.info(f"No provider config at {path}, using built-in defaults")
        return default_router_config(environ)

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"provider config {path} is not valid JSON: {e}") from e

    config = build_router_config(raw, environ)
    logger.info(f"Loaded {len(config.providers)} providers from {path}")
    return config
