"""
Model comparison - run every attribution model over the same conversions.

Reports how much the models disagree about each channel's share of a
conversion. Existing results are read as-is; only missing
(conversion, model) pairs are computed.
"""

from __future__ import annotations

import logging
import statistics
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import pandas as pd

from touchcredit.attribution.config import AttributionModelConfig, ProcessingConfig
from touchcredit.attribution.exceptions import InvalidParameters, NotFound
from touchcredit.attribution.processor import ConversionProcessor
from touchcredit.attribution.schema import AttributionResult, Channel, ModelType
from touchcredit.attribution.storage import ConversionStore
from touchcredit.reporting.performance import period_bounds

logger = logging.getLogger(__name__)


@dataclass
class ChannelDivergence:
    """Revenue credited to one channel by each model."""

    channel: Channel
    revenue_by_model: dict[ModelType, float]

    @property
    def variance(self) -> float:
        """Population variance of the channel's revenue across models."""
        values = list(self.revenue_by_model.values())
        return statistics.pvariance(values) if len(values) > 1 else 0.0

    @property
    def spread(self) -> float:
        """Max minus min revenue across models."""
        values = list(self.revenue_by_model.values())
        return max(values) - min(values) if values else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "revenue_by_model": {m.value: v for m, v in self.revenue_by_model.items()},
            "variance": self.variance,
            "spread": self.spread,
        }


@dataclass
class ConversionComparison:
    """One result per model for a single conversion."""

    conversion_id: str
    results: dict[ModelType, AttributionResult]
    computed: list[ModelType] = field(default_factory=list)

    @property
    def divergence(self) -> list[ChannelDivergence]:
        """Per-channel revenue by model, largest spread first."""
        channels: set[Channel] = set()
        for result in self.results.values():
            channels.update(c.channel for c in result.credits if c.channel is not None)

        rows = []
        for channel in channels:
            revenue_by_model = {
                model_type: sum(
                    c.attributed_revenue for c in result.credits if c.channel == channel
                )
                for model_type, result in self.results.items()
            }
            rows.append(ChannelDivergence(channel=channel, revenue_by_model=revenue_by_model))
        rows.sort(key=lambda d: (-d.spread, d.channel.value))
        return rows

    @property
    def max_spread(self) -> float:
        return max((d.spread for d in self.divergence), default=0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversion_id": self.conversion_id,
            "results": {m.value: r.to_dict() for m, r in self.results.items()},
            "computed": [m.value for m in self.computed],
            "divergence": [d.to_dict() for d in self.divergence],
        }


@dataclass
class ModelTotals:
    """Attributed totals for one model across a conversion set.

    ``conversions`` counts every compared conversion; the average is taken
    over ``attributed_conversions`` only, so unattributed revenue does not
    dilute it.
    """

    model_type: ModelType
    total_attributed_value: float = 0.0
    unattributed_value: float = 0.0
    conversions: int = 0
    attributed_conversions: int = 0

    @property
    def average_per_conversion(self) -> float:
        if self.attributed_conversions == 0:
            return 0.0
        return self.total_attributed_value / self.attributed_conversions

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_type": self.model_type.value,
            "total_attributed_value": self.total_attributed_value,
            "unattributed_value": self.unattributed_value,
            "conversions": self.conversions,
            "attributed_conversions": self.attributed_conversions,
            "average_per_conversion": self.average_per_conversion,
        }


@dataclass
class ModelComparisonReport:
    """Comparisons for a conversion set plus per-model totals."""

    comparisons: list[ConversionComparison] = field(default_factory=list)

    @property
    def totals(self) -> dict[ModelType, ModelTotals]:
        totals: dict[ModelType, ModelTotals] = {}
        for comparison in self.comparisons:
            for model_type, result in comparison.results.items():
                entry = totals.setdefault(model_type, ModelTotals(model_type=model_type))
                entry.conversions += 1
                if result.is_unattributed:
                    entry.unattributed_value += result.revenue
                else:
                    entry.attributed_conversions += 1
                    entry.total_attributed_value += sum(
                        c.attributed_revenue for c in result.credits
                    )
        return totals

    @property
    def computed_pairs(self) -> int:
        """Number of (conversion, model) results computed for this report."""
        return sum(len(c.computed) for c in self.comparisons)

    def to_dict(self) -> dict[str, Any]:
        return {
            "comparisons": [c.to_dict() for c in self.comparisons],
            "totals": {m.value: t.to_dict() for m, t in self.totals.items()},
            "computed_pairs": self.computed_pairs,
        }

    def to_dataframe(self) -> pd.DataFrame:
        """Long-form revenue by conversion, channel and model."""
        columns = ["conversion_id", "channel", "model_type", "attributed_revenue"]
        rows = [
            {
                "conversion_id": comparison.conversion_id,
                "channel": divergence.channel.value,
                "model_type": model_type.value,
                "attributed_revenue": revenue,
            }
            for comparison in self.comparisons
            for divergence in comparison.divergence
            for model_type, revenue in divergence.revenue_by_model.items()
        ]
        return pd.DataFrame(rows, columns=columns)


class ModelComparisonService:
    """
    Compare all attribution models for one conversion or a set.

    Example:
        service = ModelComparisonService(processor, conversions, lambda: config)
        comparison = service.compare("order-1001")
        for row in comparison.divergence:
            print(row.channel, row.spread)
    """

    def __init__(
        self,
        processor: ConversionProcessor,
        conversion_store: ConversionStore,
        config_provider: Callable[[], ProcessingConfig] | None = None,
    ):
        """
        Initialize comparison service.

        Args:
            processor: Processor used to compute missing results.
            conversion_store: Source of conversion events.
            config_provider: Returns the active config; its parameters are
                used for models it contains, defaults for the others.
        """
        self.processor = processor
        self.conversion_store = conversion_store
        self.config_provider = config_provider or ProcessingConfig

    def compare(self, conversion_id: str) -> ConversionComparison:
        """Return one result per model type for a conversion.

        Raises:
            NotFound: If the conversion does not exist.
            DataUnavailable: If a missing result could not be computed.
        """
        conversion = self.conversion_store.get(conversion_id)
        if conversion is None:
            raise NotFound(f"Conversion not found: {conversion_id}")

        results: dict[ModelType, AttributionResult] = {}
        missing: list[AttributionModelConfig] = []
        active = self.config_provider()
        for model_type in ModelType:
            existing = self.processor.result_store.get(conversion_id, model_type)
            if existing is not None:
                results[model_type] = existing
            else:
                missing.append(active.get(model_type) or AttributionModelConfig(model_type))

        computed: list[ModelType] = []
        if missing:
            report = self.processor.process(conversion, ProcessingConfig(models=tuple(missing)))
            if report.errors:
                raise report.errors[0]
            for model in missing:
                results[model.model_type] = report.results[model.model_type]
                computed.append(model.model_type)
            logger.info(
                f"Computed {len(computed)} missing model result(s) for conversion {conversion_id}"
            )

        ordered = {m: results[m] for m in ModelType}
        return ConversionComparison(
            conversion_id=conversion_id, results=ordered, computed=computed
        )

    def compare_set(self, conversion_ids: Iterable[str]) -> ModelComparisonReport:
        """Compare every model across a conversion set.

        Duplicate ids are compared once, in first-seen order.
        """
        report = ModelComparisonReport()
        seen: set[str] = set()
        for conversion_id in conversion_ids:
            if conversion_id in seen:
                continue
            seen.add(conversion_id)
            report.comparisons.append(self.compare(conversion_id))
        return report

    def compare_period(
        self,
        period_start: date | datetime,
        period_end: date | datetime,
    ) -> ModelComparisonReport:
        """Compare every model across the conversions in a period.

        Plain dates cover whole days, as in the performance reports.

        Raises:
            InvalidParameters: If the period ends before it starts.
        """
        start, end = period_bounds(period_start, period_end)
        conversions = self.conversion_store.list_conversions(since=start, until=end)
        logger.info(f"Comparing models for {len(conversions)} conversion(s) in period")
        return self.compare_set(c.id for c in conversions)

    def attribution_analysis(
        self,
        model_type: ModelType | None = None,
        conversion_id: str | None = None,
        period_start: date | datetime | None = None,
        period_end: date | datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Flatten the latest stored results into one row per credit.

        Only stored results are read; nothing is computed. Rows are ordered by
        conversion id, model and credit order.

        Args:
            model_type: Restrict to one model; all models when None.
            conversion_id: Restrict to one conversion.
            period_start: Start of the conversion-time period.
            period_end: End of the conversion-time period.
            limit: Maximum number of rows to return.

        Raises:
            InvalidParameters: If only one period bound is given, the period is
                reversed, or ``limit`` is below 1.
        """
        if limit is not None and limit < 1:
            raise InvalidParameters("limit must be >= 1", fields={"limit": "must be >= 1"})

        since = until = None
        if period_start is not None or period_end is not None:
            if period_start is None or period_end is None:
                missing = "period_start" if period_start is None else "period_end"
                raise InvalidParameters(
                    "period_start and period_end must be given together",
                    fields={missing: "required when filtering by period"},
                )
            since, until = period_bounds(period_start, period_end)

        model_types = [model_type] if model_type is not None else list(ModelType)
        results: list[AttributionResult] = []
        for mt in model_types:
            if conversion_id is not None:
                result = self.processor.result_store.get(conversion_id, mt)
                if result is None:
                    continue
                timestamp = result.conversion_timestamp
                if since is not None and (timestamp is None or not since <= timestamp <= until):
                    continue
                results.append(result)
            else:
                results.extend(self.processor.result_store.latest_results(mt, since, until))

        order = list(ModelType)
        results.sort(key=lambda r: (r.conversion_id, order.index(r.model_type)))

        rows = []
        for result in results:
            for credit in sorted(result.credits, key=lambda c: c.order):
                rows.append(
                    {
                        "conversion_id": result.conversion_id,
                        "model_type": result.model_type.value,
                        "computation_version": result.computation_version,
                        "status": result.status.value,
                        "revenue": result.revenue,
                        **credit.to_dict(),
                    }
                )
                if limit is not None and len(rows) >= limit:
                    return rows
        return rows
