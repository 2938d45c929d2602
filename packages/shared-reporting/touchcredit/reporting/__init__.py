"""
TouchCredit Reporting - Channel performance and model comparison.

Supports:
- Channel and campaign ROI/ROAS snapshots with append-only history
- Trend reports by day, week or month
- Side-by-side comparison of every attribution model

Usage:
    from touchcredit.reporting import ChannelPerformanceAggregator, ModelComparisonService

    aggregator = ChannelPerformanceAggregator(result_store, spend_source)
    report = aggregator.report(start, end, ModelType.LINEAR)
    df = report.to_dataframe()

    comparison = ModelComparisonService(processor, conversion_store)
    divergence = comparison.compare("order-1001").divergence
"""

from touchcredit.reporting.comparison import (
    ChannelDivergence,
    ConversionComparison,
    ModelComparisonReport,
    ModelComparisonService,
    ModelTotals,
)
from touchcredit.reporting.performance import (
    ChannelPerformanceAggregator,
    ChannelPerformanceSnapshot,
    GroupBy,
    InMemorySnapshotStore,
    InMemorySpendSource,
    PerformanceReport,
    SnapshotStore,
    SpendSource,
    TimeBucket,
)

__all__ = [
    "ChannelPerformanceAggregator",
    "ChannelPerformanceSnapshot",
    "PerformanceReport",
    "GroupBy",
    "TimeBucket",
    "SpendSource",
    "InMemorySpendSource",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "ModelComparisonService",
    "ModelComparisonReport",
    "ConversionComparison",
    "ChannelDivergence",
    "ModelTotals",
]
