# deviation.py
"""
Airkeeper – Deviation
=====================
Decides whether the distance between the on-chain beacon value and a
fresh API value justifies an update.

Deviation is computed in fixed point with 16 decimals of a percent and
truncated, so the comparison against the threshold is exact integer math.
An on-chain value of zero is replaced by one as the divisor; this is an
approximation that downstream consumers rely on and is kept as is.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Union

from airkeeper.constants import DEVIATION_UNITS_PER_PERCENT
from airkeeper.exceptions import InvalidThreshold

_PRECISION = DEVIATION_UNITS_PER_PERCENT

Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class DeviationResult:
    within_threshold: bool
    delta: int
    deviation_percent: Decimal
    up_to_date: bool = False


def validate_threshold(threshold: Number) -> Decimal:
    """Return the threshold as Decimal or raise InvalidThreshold.

    Valid thresholds are in (0, 100] with at most two decimal places.
    """
    try:
        value = Decimal(str(threshold).strip())
    except (InvalidOperation, ValueError):
        raise InvalidThreshold(f"deviation threshold '{threshold}' is not a number")

    if not value.is_finite() or value <= 0 or value > 100:
        raise InvalidThreshold(
            f"deviation threshold '{threshold}' must be larger than 0 and less than or equal to 100"
        )
    scaled = value * 100
    if scaled != scaled.to_integral_value():
        raise InvalidThreshold(f"deviation threshold '{threshold}' has more than 2 decimal places")
    return value


def calculate_deviation(on_chain_value: int, api_value: int) -> int:
    """Deviation in units of 1e-16 percent."""
    delta = abs(on_chain_value - api_value)
    divisor = abs(on_chain_value) or 1
    return delta * _PRECISION * 100 // divisor


def evaluate(on_chain_value: int, api_value: int, threshold: Number) -> DeviationResult:
    """Compare both values against ``threshold`` percent."""
    threshold_value = validate_threshold(threshold)
    delta = abs(int(on_chain_value) - int(api_value))
    if delta == 0:
        return DeviationResult(True, 0, Decimal(0), up_to_date=True)

    deviation = calculate_deviation(int(on_chain_value), int(api_value))
    threshold_units = int(threshold_value * 100) * _PRECISION // 100
    return DeviationResult(
        within_threshold=deviation <= threshold_units,
        delta=delta,
        deviation_percent=Decimal(deviation) / Decimal(_PRECISION),
    )
