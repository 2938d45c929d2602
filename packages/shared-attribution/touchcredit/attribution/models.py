"""
Attribution models - distribute conversion credit across a journey.

Supports five models:
- First-touch: Credit to the first touchpoint
- Last-touch: Credit to the last touchpoint
- Linear: Equal credit to all touchpoints
- Time-decay: More credit to recent touchpoints (2^(-days/half_life))
- Position-based: 40% first, 40% last, 20% middle

Every model is a pure function of a non-empty journey and its parameters and
returns one weight per touchpoint, in journey order, summing to 1.0. Empty
journeys are handled by the conversion processor.
"""

from __future__ import annotations

import math
from collections.abc import Callable

from touchcredit.attribution.config import AttributionModelConfig
from touchcredit.attribution.exceptions import InvalidParameters
from touchcredit.attribution.journey import Journey
from touchcredit.attribution.schema import ModelType

WeightFunction = Callable[[Journey, AttributionModelConfig], list[float]]


def _check_journey(journey: Journey) -> int:
    if journey.is_empty:
        raise ValueError("Attribution models require a non-empty journey")
    return len(journey)


def first_touch(journey: Journey, config: AttributionModelConfig) -> list[float]:
    """Attribute everything to the first touchpoint."""
    n = _check_journey(journey)
    return [1.0] + [0.0] * (n - 1)


def last_touch(journey: Journey, config: AttributionModelConfig) -> list[float]:
    """Attribute everything to the last touchpoint before conversion."""
    n = _check_journey(journey)
    return [0.0] * (n - 1) + [1.0]


def linear(journey: Journey, config: AttributionModelConfig) -> list[float]:
    """Distribute credit equally across all touchpoints."""
    n = _check_journey(journey)
    return [1.0 / n] * n


def time_decay(journey: Journey, config: AttributionModelConfig) -> list[float]:
    """
    More credit to touchpoints closer to the conversion.

    weight(i) is proportional to 2^(-days_before(i) / half_life). Exponents
    are taken relative to the closest touchpoint so long journeys with a
    short half-life cannot underflow to an all-zero distribution.
    """
    _check_journey(journey)
    half_life = config.half_life_days
    if not half_life > 0:
        raise InvalidParameters(
            "Time-decay half-life must be positive",
            fields={"half_life_days": "must be > 0"},
        )

    days = [max(journey.days_before_conversion(tp), 0.0) for tp in journey]
    nearest = min(days)
    raw = [math.pow(2.0, -(d - nearest) / half_life) for d in days]
    total = math.fsum(raw)
    return [w / total for w in raw]


def position_based(journey: Journey, config: AttributionModelConfig) -> list[float]:
    """
    first_pct to the first touchpoint, last_pct to the last, the remainder
    split evenly over the middle.

    A single touchpoint takes all credit; two touchpoints split 50/50 since
    there is no middle segment to hold the remainder.
    """
    n = _check_journey(journey)
    first_pct, last_pct = config.first_pct, config.last_pct
    if first_pct < 0 or last_pct < 0 or first_pct + last_pct > 1 + 1e-12:
        raise InvalidParameters(
            "Position-based split must be non-negative and sum to <= 1",
            fields={"first_pct": "first_pct + last_pct must be <= 1"},
        )

    if n == 1:
        return [1.0]
    if n == 2:
        return [0.5, 0.5]

    middle = (1.0 - first_pct - last_pct) / (n - 2)
    return [first_pct] + [middle] * (n - 2) + [last_pct]


MODEL_FUNCTIONS: dict[ModelType, WeightFunction] = {
    ModelType.FIRST_TOUCH: first_touch,
    ModelType.LAST_TOUCH: last_touch,
    ModelType.LINEAR: linear,
    ModelType.TIME_DECAY: time_decay,
    ModelType.POSITION_BASED: position_based,
}


def compute_weights(journey: Journey, config: AttributionModelConfig) -> list[float]:
    """Run the model selected by ``config.model_type`` over ``journey``.

    Args:
        journey: Non-empty, ordered journey.
        config: Model configuration.

    Returns:
        One non-negative weight per touchpoint, summing to 1.0.

    Raises:
        InvalidParameters: If the configuration is out of domain.
        ValueError: If the journey is empty.
    """
    config.validate()
    return MODEL_FUNCTIONS[config.model_type](journey, config)
