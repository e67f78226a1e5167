"""Engine configuration.

One explicit EngineConfig is passed to every component at construction.
Nothing in the engine reads environment state; load_config() is the only
way a file reaches the engine, and the caller decides when to call it.

Usage:
    from patternbank.config import EngineConfig, load_config

    config = EngineConfig(dedup_threshold=0.95)
    config = load_config("patternbank.yaml")
"""

import json
from dataclasses import dataclass, asdict, fields, replace
from pathlib import Path
from typing import Optional

import yaml
from jsonschema import validate, ValidationError as SchemaError

from .db.schema import CONFIDENCE_FLOOR, CONFIDENCE_CEILING
from .errors import ValidationError


@dataclass(frozen=True)
class EngineConfig:
    """Weights, thresholds and cadence for one engine instance."""

    # Retrieval scoring
    similarity_weight: float = 0.65
    recency_weight: float = 0.15
    reliability_weight: float = 0.20
    diversity_weight: float = 0.10
    recency_tau_days: float = 30.0
    reliability_usage_scale: float = 10.0
    default_k: int = 5

    # Confidence learning
    success_multiplier: float = 1.20
    failure_multiplier: float = 0.85
    confidence_floor: float = 0.05
    confidence_ceiling: float = 0.95
    initial_confidence: float = 0.5
    max_conflict_retries: int = 3

    # Distillation
    distill_partial_min_confidence: float = 0.6

    # Consolidation
    dedup_threshold: float = 0.92
    contradiction_threshold: float = 0.75
    prune_confidence: float = 0.10
    prune_max_usage: int = 1
    prune_age_days: float = 90.0
    consolidate_every: int = 20
    consolidation_lease_seconds: float = 3600.0

    # Fixed embedding dimension, checked on write when set
    embedding_dim: Optional[int] = None

    def __post_init__(self):
        problems = []
        for name in ("similarity_weight", "recency_weight", "reliability_weight", "diversity_weight"):
            if getattr(self, name) < 0:
                problems.append(f"{name} must be >= 0")
        if not CONFIDENCE_FLOOR <= self.confidence_floor < self.confidence_ceiling <= CONFIDENCE_CEILING:
            problems.append(
                f"require {CONFIDENCE_FLOOR} <= confidence_floor < confidence_ceiling <= {CONFIDENCE_CEILING}"
            )
        if not self.confidence_floor <= self.initial_confidence <= self.confidence_ceiling:
            problems.append("initial_confidence must lie within [confidence_floor, confidence_ceiling]")
        if self.success_multiplier < 1.0:
            problems.append("success_multiplier must be >= 1")
        if not 0.0 < self.failure_multiplier <= 1.0:
            problems.append("failure_multiplier must be in (0, 1]")
        if not -1.0 <= self.contradiction_threshold < self.dedup_threshold <= 1.0:
            problems.append("require contradiction_threshold < dedup_threshold <= 1")
        if self.recency_tau_days <= 0 or self.reliability_usage_scale <= 0:
            problems.append("recency_tau_days and reliability_usage_scale must be > 0")
        if not 0.0 <= self.distill_partial_min_confidence <= 1.0:
            problems.append("distill_partial_min_confidence must be in [0, 1]")
        if self.consolidate_every < 1 or self.max_conflict_retries < 1 or self.default_k < 1:
            problems.append("consolidate_every, max_conflict_retries and default_k must be >= 1")
        if self.prune_age_days < 0 or self.prune_max_usage < 0:
            problems.append("prune_age_days and prune_max_usage must be >= 0")
        if self.embedding_dim is not None and self.embedding_dim < 1:
            problems.append("embedding_dim must be >= 1")
        if problems:
            raise ValidationError("Invalid engine config: " + "; ".join(problems))

    def to_dict(self) -> dict:
        return asdict(self)

    def with_overrides(self, **overrides) -> "EngineConfig":
        return replace(self, **overrides)


def _config_schema() -> dict:
    """JSON schema for config files, derived from the dataclass fields."""
    props = {}
    for f in fields(EngineConfig):
        if f.name == "embedding_dim":
            props[f.name] = {"type": ["integer", "null"]}
        elif f.type in (int, "int"):
            props[f.name] = {"type": "integer"}
        else:
            props[f.name] = {"type": "number"}
    return {"type": "object", "properties": props, "additionalProperties": False}


CONFIG_SCHEMA = _config_schema()


def config_from_dict(data: dict) -> EngineConfig:
    """Build a config from a mapping, validating keys and types first."""
    if data is None:
        data = {}
    try:
        validate(instance=data, schema=CONFIG_SCHEMA)
    except SchemaError as e:
        raise ValidationError(f"Invalid engine config: {e.message}") from e
    return EngineConfig(**data)


def load_config(path) -> EngineConfig:
    """Load an EngineConfig from a YAML or JSON file.

    A top-level ``engine:`` key is unwrapped if present, so the engine
    section can live inside a larger orchestration config.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ValidationError("Config file not found", path=str(config_path))

    content = config_path.read_text()
    try:
        if config_path.suffix.lower() == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"Syntax error in {config_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError(f"Config root in {config_path} must be a mapping")
    if isinstance(data.get("engine"), dict):
        data = data["engine"]
    return config_from_dict(data)
