"""Weighted variant selection.

Variants occupy contiguous ranges of the bucket space in declaration order.
Weights are percentages; when they do not sum to 100 they are scaled
proportionally so the ranges still cover the whole space.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

from flagkit.core.errors import ConfigurationError, ErrorCode
from flagkit.core.feature_flags.hashing import BUCKET_SPACE, PERCENT_SCALE
from flagkit.core.feature_flags.models import Variant

logger = logging.getLogger(__name__)

CONTROL_VARIANT = "control"


@dataclass(frozen=True)
class SelectedVariant:
    name: str
    payload: Any = None


@dataclass(frozen=True)
class VariantRange:
    """Half-open bucket range ``[start, end)`` owned by a variant."""

    variant: Variant
    start: int
    end: int

    def contains(self, bucket: int) -> bool:
        return self.start <= bucket < self.end


def build_ranges(variants: Sequence[Variant]) -> Tuple[VariantRange, ...]:
    """Build cumulative bucket ranges for ``variants``.

    Raises:
        ConfigurationError: no variants, a negative weight or a zero total.
    """
    if not variants:
        raise ConfigurationError("no variants defined", code=ErrorCode.INVALID_WEIGHTS)

    for variant in variants:
        if variant.weight < 0:
            raise ConfigurationError(
                f"variant '{variant.name}' has negative weight {variant.weight}",
                code=ErrorCode.INVALID_WEIGHTS,
            )

    total = sum(variant.weight for variant in variants)
    if total <= 0:
        raise ConfigurationError("variant weights sum to zero", code=ErrorCode.INVALID_WEIGHTS)

    if total == 100:
        boundaries = _percent_boundaries(variants)
    else:
        logger.warning(
            f"Variant weights sum to {total}, not 100; normalizing proportionally",
            extra={"error_code": ErrorCode.INVALID_WEIGHTS.value},
        )
        boundaries = _normalized_boundaries(variants, total)

    ranges: List[VariantRange] = []
    start = 0
    for variant, end in zip(variants, boundaries):
        ranges.append(VariantRange(variant=variant, start=start, end=end))
        start = end
    return tuple(ranges)


def _percent_boundaries(variants: Sequence[Variant]) -> List[int]:
    boundaries = []
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.weight
        boundaries.append(int(round(cumulative * PERCENT_SCALE)))
    boundaries[-1] = BUCKET_SPACE
    return boundaries


def _normalized_boundaries(variants: Sequence[Variant], total: float) -> List[int]:
    boundaries = []
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.weight
        boundaries.append(int(cumulative * BUCKET_SPACE // total))
    boundaries[-1] = BUCKET_SPACE
    return boundaries


def control_variant(variants: Sequence[Variant]) -> Variant:
    """Variant served when a subject cannot be bucketed."""
    for variant in variants:
        if variant.name == CONTROL_VARIANT:
            return variant
    return variants[0]


class VariantSelector:
    """Maps a bucket to a weighted variant."""

    def select_variant(self, variants: Sequence[Variant], bucket: int) -> SelectedVariant:
        """Pick the variant whose range contains ``bucket``.

        Raises:
            ConfigurationError: the weights cannot form ranges.
            ValueError: ``bucket`` is outside ``[0, 10000)``.
        """
        if not 0 <= bucket < BUCKET_SPACE:
            raise ValueError(f"bucket must be in [0, {BUCKET_SPACE}), got {bucket}")

        for variant_range in build_ranges(variants):
            if variant_range.contains(bucket):
                variant = variant_range.variant
                return SelectedVariant(name=variant.name, payload=variant.payload)

        # unreachable: the last range always ends at BUCKET_SPACE
        last = variants[-1]
        return SelectedVariant(name=last.name, payload=last.payload)


__all__ = [
    "CONTROL_VARIANT",
    "SelectedVariant",
    "VariantRange",
    "VariantSelector",
    "build_ranges",
    "control_variant",
]
