"""
Verdict records handed to the reporter.

Every Region produces exactly one of Opportunity, NoOpportunity, Skipped
or InsufficientSamples.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .region import RegionId


class PatternKind(Enum):
    """SIMD idioms the matcher knows about."""
    MAP = "map"
    MASKED_SELECT = "masked-select"
    REDUCTION = "reduction"
    STRIDED_GATHER = "strided-gather"
    STRIDED_SCATTER = "strided-scatter"


class Divergence(Enum):
    UNIFORM = "uniform"
    DIVERGENT = "divergent"


class NoOpportunityReason(Enum):
    DEPENDENT = "dependent"
    NO_MATCHING_PATTERN = "no-matching-pattern"
    UNKNOWN_INSTRUCTION = "unknown-instruction"


class SkipReason(Enum):
    TOO_LARGE = "too-large"


@dataclass(frozen=True)
class Opportunity:
    region: RegionId
    pattern: PatternKind
    unit_count: int
    element_width: Optional[int]
    divergence: Divergence
    class_count: int = 1
    detail: str = ""


@dataclass(frozen=True)
class NoOpportunity:
    region: RegionId
    reason: NoOpportunityReason
    detail: str = ""


@dataclass(frozen=True)
class Skipped:
    region: RegionId
    reason: SkipReason
    detail: str = ""


@dataclass(frozen=True)
class InsufficientSamples:
    region: RegionId
    unit_count: int = 0


Verdict = Union[Opportunity, NoOpportunity, Skipped, InsufficientSamples]


def verdict_to_dict(verdict: Verdict) -> dict[str, Any]:
    """JSON-ready mapping with a stable key order."""
    if isinstance(verdict, Opportunity):
        return {
            "verdict": "opportunity",
            "region": str(verdict.region),
            "pattern": verdict.pattern.value,
            "unit_count": verdict.unit_count,
            "element_width": verdict.element_width,
            "divergence": verdict.divergence.value,
            "class_count": verdict.class_count,
            "detail": verdict.detail,
        }
    if isinstance(verdict, NoOpportunity):
        return {
            "verdict": "no-opportunity",
            "region": str(verdict.region),
            "reason": verdict.reason.value,
            "detail": verdict.detail,
        }
    if isinstance(verdict, Skipped):
        return {
            "verdict": "skipped",
            "region": str(verdict.region),
            "reason": verdict.reason.value,
            "detail": verdict.detail,
        }
    if isinstance(verdict, InsufficientSamples):
        return {
            "verdict": "insufficient-samples",
            "region": str(verdict.region),
            "unit_count": verdict.unit_count,
        }
    raise TypeError(f"not a verdict: {verdict!r}")
