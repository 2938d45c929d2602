"""
Ingestion normalizers - transform source rows into attribution records.

Each normalizer handles one record type:
- TouchpointNormalizer: marketing interactions from the collection layer
- ConversionEventNormalizer: purchases, signups and other conversions
- SpendNormalizer: daily channel/campaign spend from ad platform syncs
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import pandas as pd

from touchcredit.attribution.exceptions import ValidationError
from touchcredit.attribution.schema import ConversionEvent, SpendRecord, Touchpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RejectedRecord:
    """A source row that failed validation."""

    row_index: int
    error: ValidationError

    def to_dict(self) -> dict[str, Any]:
        return {"row_index": self.row_index, **self.error.to_payload()}


@dataclass
class NormalizationResult(Generic[T]):
    """Records produced by a normalizer, plus any rejected rows."""

    records: list[T] = field(default_factory=list)
    rejected: list[RejectedRecord] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.rejected


def _clean_value(value: Any) -> Any:
    """Convert pandas missing values and timestamps to plain Python values."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    return value


class RecordNormalizer(ABC, Generic[T]):
    """Base class for record normalizers.

    Subclasses provide a default field map (source column -> canonical field)
    and a ``build`` method turning a canonical dict into a record.
    """

    def __init__(self, field_map: dict[str, str] | None = None):
        """
        Initialize normalizer.

        Args:
            field_map: Mapping of source fields to canonical fields. Merged
                over the default mapping.
        """
        self.field_map = {**self._default_field_map(), **(field_map or {})}

    @abstractmethod
    def _default_field_map(self) -> dict[str, str]:
        """Default field mappings for common sources."""
        pass  # pragma: no cover

    @abstractmethod
    def build(self, row: dict[str, Any]) -> T:
        """Build a record from a canonical row.

        Raises:
            ValidationError: If the row is malformed.
        """
        pass  # pragma: no cover

    def _to_dataframe(
        self,
        data: pd.DataFrame | list[dict[str, Any]],
    ) -> pd.DataFrame:
        """Convert input to DataFrame."""
        if isinstance(data, pd.DataFrame):
            return data
        return pd.DataFrame(data)

    def map_row(self, row: dict[str, Any]) -> dict[str, Any]:
        """Apply the field map; the first non-null value for a field wins."""
        mapped: dict[str, Any] = {}
        for source_field, value in row.items():
            value = _clean_value(value)
            target = self.field_map.get(source_field, source_field)
            if target in mapped and mapped[target] is not None:
                continue
            mapped[target] = value
        mapped["raw_data"] = {k: _clean_value(v) for k, v in row.items()}
        return mapped

    def normalize(
        self,
        data: pd.DataFrame | list[dict[str, Any]],
        strict: bool = True,
    ) -> NormalizationResult[T]:
        """
        Normalize source data to records.

        Args:
            data: Source data as DataFrame or list of dicts
            strict: Raise on the first invalid row instead of collecting it

        Returns:
            NormalizationResult with records and rejected rows

        Raises:
            ValidationError: In strict mode, for the first invalid row.
        """
        df = self._to_dataframe(data)
        result: NormalizationResult[T] = NormalizationResult()

        for position, (_, row) in enumerate(df.iterrows()):
            canonical = self.map_row(row.to_dict())
            try:
                result.records.append(self.build(canonical))
            except ValidationError as e:
                if strict:
                    raise
                result.rejected.append(RejectedRecord(row_index=position, error=e))

        if result.rejected:
            logger.warning(
                f"{type(self).__name__} rejected {len(result.rejected)} of {len(df)} rows"
            )
        return result


class TouchpointNormalizer(RecordNormalizer[Touchpoint]):
    """
    Normalize touchpoint rows from the collection layer.

    Example:
        normalizer = TouchpointNormalizer(field_map={"visitor": "customer_id"})
        result = normalizer.normalize(rows, strict=False)
        touchpoints = result.records
    """

    def _default_field_map(self) -> dict[str, str]:
        return {
            # Id variants
            "touchpoint_id": "id",
            "event_id": "id",
            # Customer variants
            "customer_email": "customer_id",
            "user_id": "customer_id",
            # Timestamp variants
            "touchpoint_date": "timestamp",
            "occurred_at": "timestamp",
            "event_time": "timestamp",
            # Channel variants
            "marketing_channel": "channel",
            "medium": "channel",
            # Campaign variants
            "utm_campaign_id": "campaign_id",
            # Cost variants
            "spend": "cost",
        }

    def build(self, row: dict[str, Any]) -> Touchpoint:
        return Touchpoint.from_dict(row)


class ConversionEventNormalizer(RecordNormalizer[ConversionEvent]):
    """Normalize conversion rows (orders, signups, leads)."""

    def _default_field_map(self) -> dict[str, str]:
        return {
            # Id variants
            "conversion_id": "id",
            "event_id": "id",
            # Customer variants
            "customer_email": "customer_id",
            "user_id": "customer_id",
            # Timestamp variants
            "conversion_date": "timestamp",
            "order_date": "timestamp",
            "created_at": "timestamp",
            # Revenue variants
            "conversion_value": "revenue",
            "total_amount": "revenue",
            "value": "revenue",
            "amount": "revenue",
        }

    def build(self, row: dict[str, Any]) -> ConversionEvent:
        return ConversionEvent.from_dict(row)


class SpendNormalizer(RecordNormalizer[SpendRecord]):
    """Normalize daily spend rows from ad platform syncs."""

    def _default_field_map(self) -> dict[str, str]:
        return {
            "date": "day",
            "spend_date": "day",
            "cost": "amount",
            "spend": "amount",
            "marketing_channel": "channel",
        }

    def build(self, row: dict[str, Any]) -> SpendRecord:
        return SpendRecord.from_dict(row)
