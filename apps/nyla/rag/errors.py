"""
Error taxonomy for the retrieval core.

Only IndexBuildError is meant to reach callers; every other error is caught by
the stage that owns it and turned into a logged degradation.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class RetrievalError(Exception):
    """Base class for retrieval-core errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        details = ", ".join(f"{k}={v!r}" for k, v in sorted(self.context.items()))
        return f"{base} ({details})"


class SchemaValidationError(RetrievalError):
    """A source record is missing required fields or has invalid values."""

    def __init__(self, record_id: Optional[str], problems: List[str]):
        super().__init__(
            f"Invalid source record {record_id or '<unknown>'}: {'; '.join(problems)}",
            record_id=record_id,
        )
        self.record_id = record_id
        self.problems = problems


class EmbeddingError(RetrievalError):
    """The embedding provider failed for one item or systemically."""


class IndexBuildError(RetrievalError):
    """Building a new index snapshot failed; the serving snapshot is untouched."""


class SearchMethodError(RetrievalError):
    """Dense or lexical search failed for one query variant."""

    def __init__(self, method: str, message: str, **context: Any):
        super().__init__(f"{method} search failed: {message}", method=method, **context)
        self.method = method


class RerankError(RetrievalError):
    """Reranking failed; callers fall back to fusion order."""


class ConsistencyRepairFailure(RetrievalError):
    """Language self-repair did not improve the ordering enough."""


class ConfigurationBoundsError(RetrievalError):
    """A parameter value fell outside its allowed range."""

    def __init__(self, name: str, value: Any, low: Any, high: Any):
        super().__init__(
            f"Parameter {name}={value!r} outside [{low}, {high}]",
            name=name,
        )
        self.name = name
        self.value = value
        self.low = low
        self.high = high
