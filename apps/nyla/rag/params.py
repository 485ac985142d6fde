"""
Retrieval configuration.

`RetrievalParameters` is the versioned, bounds-checked parameter snapshot a
query runs with. The rest of the YAML config (chunking policy, thresholds,
boosts) is loaded once into `NylaConfig`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from ..infra.env import get_config_path
from .errors import ConfigurationBoundsError

logger = logging.getLogger(__name__)


DEFAULT_FIELD_BUDGETS: Dict[str, int] = {
    "technical_spec": 150,
    "how_to": 200,
    "blockchain_info": 120,
    "feature": 100,
    "qa_pair": 180,
    "general": 130,
    "marketing": 50,
    "boilerplate": 30,
}

DEFAULT_BOUNDS: Dict[str, Tuple[float, float]] = {
    "dense_top_k": (10, 100),
    "bm25_top_k": (10, 100),
    "rerank_top_k": (3, 20),
    "fusion_alpha": (0.1, 0.9),
    "min_score": (0.01, 0.5),
    "mmr_lambda": (0.1, 0.95),
    "max_query_expansions": (0, 5),
    "expansion_discount": (0.5, 1.0),
}

INT_PARAMETERS = ("dense_top_k", "bm25_top_k", "rerank_top_k", "max_query_expansions")


class RetrievalParameters(BaseModel):
    """Immutable parameter snapshot; every change produces a new version."""
    model_config = ConfigDict(frozen=True)

    version: int = 1
    dense_top_k: int = 40
    bm25_top_k: int = 40
    rerank_top_k: int = 10
    fusion_alpha: float = 0.6
    min_score: float = 0.1
    mmr_lambda: float = 0.82
    max_query_expansions: int = 3
    expansion_discount: float = 0.8
    field_budgets: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_FIELD_BUDGETS))

    def tunable(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"version", "field_budgets"})

    def updated(
        self,
        changes: Dict[str, Any],
        bounds: Optional[Dict[str, Tuple[float, float]]] = None,
        strict: bool = False,
    ) -> "RetrievalParameters":
        """
        Return the next version with `changes` applied and clamped to bounds.

        Unknown keys are ignored with a warning. With strict=True an
        out-of-range value raises ConfigurationBoundsError instead.
        """
        values = self.model_dump()
        for name, value in changes.items():
            if name == "version":
                continue
            if name == "field_budgets":
                merged = dict(values["field_budgets"])
                merged.update({k: max(1, int(v)) for k, v in (value or {}).items()})
                values["field_budgets"] = merged
                continue
            if name not in values:
                logger.warning("Ignoring unknown retrieval parameter %s", name)
                continue
            values[name] = clamp_parameter(name, value, bounds or DEFAULT_BOUNDS, strict=strict)
        values["version"] = self.version + 1
        return RetrievalParameters(**values)


def clamp_parameter(
    name: str,
    value: Union[int, float],
    bounds: Dict[str, Tuple[float, float]],
    strict: bool = False,
) -> Union[int, float]:
    """Clamp one value into its allowed range, warning when it had to move."""
    if name in INT_PARAMETERS:
        value = int(round(value))
    else:
        value = float(value)
    if name not in bounds:
        return value
    low, high = bounds[name]
    if low <= value <= high:
        return value
    error = ConfigurationBoundsError(name, value, low, high)
    if strict:
        raise error
    clamped = min(max(value, low), high)
    if name in INT_PARAMETERS:
        clamped = int(clamped)
    logger.warning("%s; clamped to %s", error, clamped)
    return clamped


class ChunkingConfig(BaseModel):
    en_token_range: Tuple[int, int] = (200, 300)
    zh_char_range: Tuple[int, int] = (350, 500)
    overlap_ratio: float = 0.175
    overlap_bounds: Tuple[float, float] = (0.15, 0.20)


class BM25Config(BaseModel):
    k1: float = 1.2
    b: float = 0.75
    exact_signal_weight: float = 0.4
    exact_signal_step: float = 0.1
    exact_signal_max_weight: float = 0.8


class RerankConfig(BaseModel):
    fusion_weight: float = 0.3
    similarity_weight: float = 0.7
    social_boost: float = 1.4
    rich_social_boost: float = 1.8
    rich_social_min_tokens: int = 100
    intent_type_boost: float = 0.15
    stale_after_days: float = 7.0
    stale_penalty: float = 0.5


class MMRConfig(BaseModel):
    min_similarity: float = 0.1
    max_iterations: int = 100
    intent_adjustment: float = 0.2
    cluster_threshold: float = 0.92
    candidate_pool_factor: float = 2.0


class AggregationConfig(BaseModel):
    enabled: bool = True
    max_tokens: int = 1200
    multi_hit_bonus: float = 0.1
    max_multi_hit_bonus: float = 0.3


class FilterConfig(BaseModel):
    marketing_threshold: float = 0.7
    boilerplate_threshold: float = 0.8
    quality_threshold: float = 0.3
    min_content_length: int = 20
    max_content_length: int = 5000
    min_word_count: int = 5


class ConsistencyConfig(BaseModel):
    threshold: float = 0.7
    min_improvement: float = 0.1
    chunk_floor: float = 0.5


class TunerConfig(BaseModel):
    auto_tune: bool = True
    min_queries_for_tuning: int = 50
    max_history: int = 1000
    latency_threshold_ms: float = 3000.0
    relevance_threshold: float = 0.6
    success_rate_threshold: float = 0.8


class EmbeddingConfig(BaseModel):
    model: str = "mistralai/codestral-embed-2505"
    batch_size: int = 32
    cache_size: int = 2048
    cache_ttl_seconds: float = 3600.0
    max_failure_ratio: float = 0.5


class NylaConfig(BaseModel):
    """Everything in configs/retrieval.yaml."""
    parameters: RetrievalParameters = Field(default_factory=RetrievalParameters)
    bounds: Dict[str, Tuple[float, float]] = Field(default_factory=lambda: dict(DEFAULT_BOUNDS))
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    bm25: BM25Config = Field(default_factory=BM25Config)
    rerank: RerankConfig = Field(default_factory=RerankConfig)
    mmr: MMRConfig = Field(default_factory=MMRConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    filter: FilterConfig = Field(default_factory=FilterConfig)
    consistency: ConsistencyConfig = Field(default_factory=ConsistencyConfig)
    tuner: TunerConfig = Field(default_factory=TunerConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)


def load_config(path: Optional[Union[str, Path]] = None) -> NylaConfig:
    """
    Load the retrieval config from YAML.

    Parameters outside their bounds are clamped (with a warning) so a bad
    config file never produces an unusable parameter snapshot.
    """
    cfg_path = Path(path) if path else get_config_path()
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        with open(cfg_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.warning("Config %s not found, using built-in defaults", cfg_path)

    bounds = dict(DEFAULT_BOUNDS)
    bounds.update({k: tuple(v) for k, v in (raw.get("bounds") or {}).items()})
    raw_params = raw.pop("parameters", None) or {}
    raw["bounds"] = bounds

    config = NylaConfig.model_validate(raw)
    config.parameters = RetrievalParameters().updated(raw_params, bounds).model_copy(update={"version": 1})
    return config


def describe(params: RetrievalParameters) -> List[str]:
    """One `name=value` line per tunable parameter, for logs."""
    return [f"{k}={v}" for k, v in sorted(params.tunable().items())]
