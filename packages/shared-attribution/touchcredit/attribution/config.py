"""Configuration for attribution models and the processing layer.

Model and processing configuration are immutable objects passed explicitly
into every processor invocation. ``AttributionSettings`` loads deployment
settings from the environment and builds them.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, replace
from typing import Any

from pydantic import BaseModel, Field

from touchcredit.attribution.exceptions import InvalidParameters
from touchcredit.attribution.schema import ModelType

DEFAULT_ATTRIBUTION_WINDOW_DAYS = 90
DEFAULT_HALF_LIFE_DAYS = 7.0
DEFAULT_FIRST_PCT = 0.4
DEFAULT_LAST_PCT = 0.4

_FLOAT_PARAMETERS = ("half_life_days", "first_pct", "last_pct")
_INT_PARAMETERS = ("attribution_window_days",)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce_parameter(name: str, value: Any, errors: dict[str, str]) -> float | int | None:
    """Convert a parameter override to its numeric type, recording errors."""
    try:
        if isinstance(value, bool):
            raise TypeError(name)
        number = float(value)
    except (ValueError, TypeError):
        errors[name] = "must be numeric"
        return None
    if not math.isfinite(number):
        errors[name] = "must be a finite number"
        return None
    if name in _INT_PARAMETERS:
        if not number.is_integer():
            errors[name] = "must be a whole number of days"
            return None
        return int(number)
    return number


@dataclass(frozen=True)
class AttributionModelConfig:
    """Parameters for one attribution model.

    Example:
        >>> config = AttributionModelConfig(ModelType.TIME_DECAY, half_life_days=3)
        >>> config.validate()
    """

    model_type: ModelType
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS
    first_pct: float = DEFAULT_FIRST_PCT
    last_pct: float = DEFAULT_LAST_PCT
    attribution_window_days: int = DEFAULT_ATTRIBUTION_WINDOW_DAYS

    def validate(self) -> AttributionModelConfig:
        """Check parameter domains.

        Returns:
            The config itself, for chaining.

        Raises:
            InvalidParameters: If any parameter is out of domain.
        """
        errors: dict[str, str] = {
            name: "must be numeric"
            for name in _INT_PARAMETERS + _FLOAT_PARAMETERS
            if not _is_number(getattr(self, name))
        }
        if errors:
            raise InvalidParameters(
                f"Invalid parameters for {self.model_type.value} model",
                fields=errors,
            )
        if self.attribution_window_days <= 0:
            errors["attribution_window_days"] = "must be > 0"
        if self.model_type == ModelType.TIME_DECAY and not self.half_life_days > 0:
            errors["half_life_days"] = "must be > 0"
        if self.model_type == ModelType.POSITION_BASED:
            if not 0 <= self.first_pct <= 1:
                errors["first_pct"] = "must be between 0 and 1"
            if not 0 <= self.last_pct <= 1:
                errors["last_pct"] = "must be between 0 and 1"
            if not errors and self.first_pct + self.last_pct > 1 + 1e-12:
                errors["first_pct"] = "first_pct + last_pct must be <= 1"
        if errors:
            raise InvalidParameters(
                f"Invalid parameters for {self.model_type.value} model",
                fields=errors,
            )
        return self

    def parameters(self) -> dict[str, Any]:
        """Return the parameters that affect this model's output."""
        params: dict[str, Any] = {"attribution_window_days": self.attribution_window_days}
        if self.model_type == ModelType.TIME_DECAY:
            params["half_life_days"] = self.half_life_days
        elif self.model_type == ModelType.POSITION_BASED:
            params["first_pct"] = self.first_pct
            params["last_pct"] = self.last_pct
        return params

    def with_parameters(self, **overrides: Any) -> AttributionModelConfig:
        """Return a validated copy with ``overrides`` applied."""
        unknown = set(overrides) - set(_INT_PARAMETERS + _FLOAT_PARAMETERS)
        if unknown:
            raise InvalidParameters(
                "Unknown model parameters",
                fields={name: "is not a model parameter" for name in sorted(unknown)},
            )
        coerced: dict[str, Any] = {}
        errors: dict[str, str] = {}
        for name, value in overrides.items():
            coerced[name] = _coerce_parameter(name, value, errors)
        if errors:
            raise InvalidParameters(
                f"Invalid parameters for {self.model_type.value} model",
                fields=errors,
            )
        return replace(self, **coerced).validate()


@dataclass(frozen=True)
class ProcessingConfig:
    """The set of active attribution models for one processing invocation."""

    models: tuple[AttributionModelConfig, ...] = field(
        default_factory=lambda: tuple(AttributionModelConfig(m) for m in ModelType)
    )

    def __post_init__(self) -> None:
        seen = set()
        for model in self.models:
            if model.model_type in seen:
                raise InvalidParameters(
                    f"Duplicate model configuration: {model.model_type.value}",
                    fields={"models": "each model type may appear once"},
                )
            seen.add(model.model_type)
            model.validate()

    @property
    def model_types(self) -> list[ModelType]:
        return [m.model_type for m in self.models]

    @property
    def max_window_days(self) -> int:
        """Largest attribution window among active models."""
        return max((m.attribution_window_days for m in self.models), default=0)

    def get(self, model_type: ModelType) -> AttributionModelConfig | None:
        for model in self.models:
            if model.model_type == model_type:
                return model
        return None

    def with_model(self, model: AttributionModelConfig) -> ProcessingConfig:
        """Return a new config with ``model`` replacing (or added to) the set."""
        models = [m for m in self.models if m.model_type != model.model_type]
        models.append(model.validate())
        order = list(ModelType)
        models.sort(key=lambda m: order.index(m.model_type))
        return ProcessingConfig(models=tuple(models))


class AttributionSettings(BaseModel):
    """Deployment settings for the attribution engine."""

    attribution_window_days: int = DEFAULT_ATTRIBUTION_WINDOW_DAYS
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS
    first_pct: float = DEFAULT_FIRST_PCT
    last_pct: float = DEFAULT_LAST_PCT
    active_models: list[ModelType] = Field(default_factory=lambda: list(ModelType))

    queue_max_size: int = 1_000
    worker_count: int = 4
    max_attempts: int = 5
    backoff_multiplier: float = 0.5
    max_backoff_seconds: float = 30.0

    snapshot_ttl_seconds: int = 3_600  # 1 hour

    bigquery_project_id: str | None = None
    bigquery_dataset: str = "touchcredit"

    @classmethod
    def from_env(cls) -> AttributionSettings:
        """Load settings from ``TOUCHCREDIT_*`` environment variables."""
        values: dict[str, Any] = {}
        env_map = {
            "TOUCHCREDIT_ATTRIBUTION_WINDOW_DAYS": "attribution_window_days",
            "TOUCHCREDIT_HALF_LIFE_DAYS": "half_life_days",
            "TOUCHCREDIT_FIRST_PCT": "first_pct",
            "TOUCHCREDIT_LAST_PCT": "last_pct",
            "TOUCHCREDIT_QUEUE_MAX_SIZE": "queue_max_size",
            "TOUCHCREDIT_WORKER_COUNT": "worker_count",
            "TOUCHCREDIT_MAX_ATTEMPTS": "max_attempts",
            "TOUCHCREDIT_BACKOFF_MULTIPLIER": "backoff_multiplier",
            "TOUCHCREDIT_MAX_BACKOFF_SECONDS": "max_backoff_seconds",
            "TOUCHCREDIT_SNAPSHOT_TTL_SECONDS": "snapshot_ttl_seconds",
            "TOUCHCREDIT_BQ_DATASET": "bigquery_dataset",
        }
        for env_name, field_name in env_map.items():
            value = os.getenv(env_name)
            if value is not None:
                values[field_name] = value

        project_id = os.getenv("TOUCHCREDIT_PROJECT_ID") or os.getenv("GCP_PROJECT_ID")
        if project_id:
            values["bigquery_project_id"] = project_id

        active = os.getenv("TOUCHCREDIT_ACTIVE_MODELS")
        if active:
            values["active_models"] = [
                ModelType.parse(name) for name in active.split(",") if name.strip()
            ]

        return cls(**values)

    def to_processing_config(self) -> ProcessingConfig:
        """Build the immutable processing configuration.

        Raises:
            InvalidParameters: If any resulting model parameter is invalid.
        """
        return ProcessingConfig(
            models=tuple(
                AttributionModelConfig(
                    model_type=model_type,
                    half_life_days=self.half_life_days,
                    first_pct=self.first_pct,
                    last_pct=self.last_pct,
                    attribution_window_days=self.attribution_window_days,
                )
                for model_type in dict.fromkeys(self.active_models)
            )
        )
