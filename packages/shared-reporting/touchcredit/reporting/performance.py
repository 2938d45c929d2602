"""
Channel performance aggregation - roll attribution results up into ROI.

Sums attributed revenue by channel or campaign over a reporting period,
joins it against externally supplied spend and computes ROI/ROAS.
Snapshots are append-only: recomputing a period stores a new snapshot
version and keeps the superseded ones for trend analysis.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time, timedelta
from enum import Enum
from typing import Any, Protocol

import pandas as pd

from touchcredit.attribution.exceptions import InvalidParameters
from touchcredit.attribution.schema import (
    AttributionResult,
    Channel,
    ModelType,
    SpendRecord,
    ensure_utc,
    parse_timestamp,
)
from touchcredit.attribution.storage import ResultStore

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_TTL_SECONDS = 3600
INSUFFICIENT_SPEND_DATA = "insufficient_spend_data"


class GroupBy(str, Enum):
    """Grouping key for performance rows."""

    CHANNEL = "channel"
    CAMPAIGN = "campaign"


class TimeBucket(str, Enum):
    """Bucket size for trend reports."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    def next_start(self, start: datetime) -> datetime:
        """Return the start of the bucket following the one at ``start``."""
        if self == TimeBucket.DAY:
            return start + timedelta(days=1)
        if self == TimeBucket.WEEK:
            return start + timedelta(days=7)
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1, day=1)
        return start.replace(month=start.month + 1, day=1)


class SpendSource(Protocol):
    """Daily spend supplied by the external sync subsystem."""

    def fetch_spend(
        self,
        since: date,
        until: date,
        channel: Channel | None = None,
        campaign_id: str | None = None,
    ) -> list[SpendRecord]: ...


class InMemorySpendSource:
    """Thread-safe in-memory spend source."""

    def __init__(self, records: Iterable[SpendRecord] | None = None):
        self._lock = threading.Lock()
        self._records: list[SpendRecord] = list(records or [])

    def add(self, record: SpendRecord) -> None:
        with self._lock:
            self._records.append(record)

    def extend(self, records: Iterable[SpendRecord]) -> None:
        with self._lock:
            self._records.extend(records)

    def fetch_spend(
        self,
        since: date,
        until: date,
        channel: Channel | None = None,
        campaign_id: str | None = None,
    ) -> list[SpendRecord]:
        with self._lock:
            records = list(self._records)
        return [
            r
            for r in records
            if since <= r.day <= until
            and (channel is None or r.channel == channel)
            and (campaign_id is None or r.campaign_id == campaign_id)
        ]


@dataclass(frozen=True)
class ChannelPerformanceSnapshot:
    """Attributed revenue against spend for one channel or campaign and period."""

    group_by: GroupBy
    channel: Channel | None
    campaign_id: str | None
    period_start: datetime
    period_end: datetime
    model_type: ModelType
    attributed_revenue: float
    spend: float
    attributed_conversions: int = 0
    snapshot_version: int = 0
    source_watermark: int = 0
    computed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> tuple[Any, ...]:
        """Identity of the period/group this snapshot describes."""
        return snapshot_key(
            self.group_by,
            self.channel,
            self.campaign_id,
            self.period_start,
            self.period_end,
            self.model_type,
        )

    @property
    def roi(self) -> float | None:
        """(revenue - spend) / spend, or None when there is no spend."""
        if self.spend <= 0:
            return None
        return (self.attributed_revenue - self.spend) / self.spend

    @property
    def roas(self) -> float | None:
        """revenue / spend, or None when there is no spend."""
        if self.spend <= 0:
            return None
        return self.attributed_revenue / self.spend

    @property
    def spend_status(self) -> str:
        return "ok" if self.spend > 0 else INSUFFICIENT_SPEND_DATA

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_by": self.group_by.value,
            "channel": self.channel.value if self.channel else None,
            "campaign_id": self.campaign_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "model_type": self.model_type.value,
            "attributed_revenue": self.attributed_revenue,
            "spend": self.spend,
            "roi": self.roi,
            "roas": self.roas,
            "spend_status": self.spend_status,
            "attributed_conversions": self.attributed_conversions,
            "snapshot_version": self.snapshot_version,
            "source_watermark": self.source_watermark,
            "computed_at": self.computed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelPerformanceSnapshot:
        """Rebuild a snapshot from :meth:`to_dict` output; derived fields are ignored."""
        return cls(
            group_by=GroupBy(data["group_by"]),
            channel=Channel.parse(data["channel"]) if data.get("channel") else None,
            campaign_id=data.get("campaign_id"),
            period_start=parse_timestamp(data["period_start"], "period_start"),
            period_end=parse_timestamp(data["period_end"], "period_end"),
            model_type=ModelType.parse(data["model_type"]),
            attributed_revenue=float(data["attributed_revenue"]),
            spend=float(data["spend"]),
            attributed_conversions=int(data.get("attributed_conversions") or 0),
            snapshot_version=int(data.get("snapshot_version") or 0),
            source_watermark=int(data.get("source_watermark") or 0),
            computed_at=parse_timestamp(data["computed_at"], "computed_at"),
        )


def snapshot_key(
    group_by: GroupBy,
    channel: Channel | None,
    campaign_id: str | None,
    period_start: datetime,
    period_end: datetime,
    model_type: ModelType,
) -> tuple[Any, ...]:
    return (group_by, channel, campaign_id, period_start, period_end, model_type)


class SnapshotStore(Protocol):
    """Append-only history of performance snapshots."""

    def save(self, snapshot: ChannelPerformanceSnapshot) -> ChannelPerformanceSnapshot: ...

    def latest(self, key: tuple[Any, ...]) -> ChannelPerformanceSnapshot | None: ...

    def history(self, key: tuple[Any, ...]) -> list[ChannelPerformanceSnapshot]: ...


class InMemorySnapshotStore:
    """Thread-safe in-memory snapshot history."""

    def __init__(self):
        self._lock = threading.Lock()
        self._history: dict[tuple[Any, ...], list[ChannelPerformanceSnapshot]] = defaultdict(list)

    def save(self, snapshot: ChannelPerformanceSnapshot) -> ChannelPerformanceSnapshot:
        """Append ``snapshot`` as the next version for its key."""
        with self._lock:
            history = self._history[snapshot.key]
            stored = replace(snapshot, snapshot_version=len(history) + 1)
            history.append(stored)
            return stored

    def latest(self, key: tuple[Any, ...]) -> ChannelPerformanceSnapshot | None:
        with self._lock:
            history = self._history.get(key)
            return history[-1] if history else None

    def history(self, key: tuple[Any, ...]) -> list[ChannelPerformanceSnapshot]:
        with self._lock:
            return list(self._history.get(key, []))


@dataclass
class PerformanceReport:
    """Every channel or campaign row for one period and model."""

    period_start: datetime
    period_end: datetime
    model_type: ModelType
    group_by: GroupBy
    rows: list[ChannelPerformanceSnapshot] = field(default_factory=list)
    unattributed_revenue: float = 0.0
    unattributed_conversions: int = 0

    @property
    def attributed_revenue(self) -> float:
        return sum(r.attributed_revenue for r in self.rows)

    @property
    def total_revenue(self) -> float:
        return self.attributed_revenue + self.unattributed_revenue

    @property
    def total_spend(self) -> float:
        return sum(r.spend for r in self.rows)

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "model_type": self.model_type.value,
            "group_by": self.group_by.value,
            "rows": [r.to_dict() for r in self.rows],
            "attributed_revenue": self.attributed_revenue,
            "unattributed_revenue": self.unattributed_revenue,
            "unattributed_conversions": self.unattributed_conversions,
            "total_revenue": self.total_revenue,
            "total_spend": self.total_spend,
        }

    def to_dataframe(self) -> pd.DataFrame:
        """Rows as a DataFrame sorted by attributed revenue, highest first."""
        columns = [
            "channel",
            "campaign_id",
            "attributed_revenue",
            "spend",
            "roi",
            "roas",
            "attributed_conversions",
            "spend_status",
        ]
        if not self.rows:
            return pd.DataFrame(columns=columns)
        df = pd.DataFrame([r.to_dict() for r in self.rows])[columns]
        return df.sort_values("attributed_revenue", ascending=False).reset_index(drop=True)


def period_bounds(
    period_start: date | datetime,
    period_end: date | datetime,
) -> tuple[datetime, datetime]:
    """Normalize a reporting period to inclusive UTC datetimes.

    Plain dates cover whole days: the start at midnight, the end through the
    last microsecond of that day.

    Raises:
        InvalidParameters: If the period ends before it starts.
    """
    if isinstance(period_start, datetime):
        start = ensure_utc(period_start)
    else:
        start = datetime.combine(period_start, time.min, tzinfo=UTC)
    if isinstance(period_end, datetime):
        end = ensure_utc(period_end)
    else:
        end = datetime.combine(period_end, time.max, tzinfo=UTC)
    if end < start:
        raise InvalidParameters(
            "period_end must not be before period_start",
            fields={"period_end": "must be >= period_start"},
        )
    return start, end


class ChannelPerformanceAggregator:
    """
    Compute channel and campaign performance from stored attribution results.

    Uses the latest result version per conversion, filtered by conversion
    timestamp. Unattributed revenue is reported separately and never
    assigned to a channel.

    Example:
        aggregator = ChannelPerformanceAggregator(results, spend)
        snapshot = aggregator.get_or_compute(
            start, end, ModelType.LINEAR, channel=Channel.EMAIL
        )
        print(snapshot.roi, snapshot.roas)
    """

    def __init__(
        self,
        result_store: ResultStore,
        spend_source: SpendSource,
        snapshot_store: SnapshotStore | None = None,
        ttl_seconds: int = DEFAULT_SNAPSHOT_TTL_SECONDS,
    ):
        """
        Initialize aggregator.

        Args:
            result_store: Attribution results to read.
            spend_source: Spend supplied by the sync subsystem.
            snapshot_store: Snapshot history (default: in-memory).
            ttl_seconds: Maximum snapshot age before it is recomputed.
        """
        self.result_store = result_store
        self.spend_source = spend_source
        self.snapshot_store = snapshot_store or InMemorySnapshotStore()
        self.ttl_seconds = ttl_seconds

    def compute(
        self,
        period_start: date | datetime,
        period_end: date | datetime,
        model_type: ModelType,
        channel: Channel | None = None,
        campaign_id: str | None = None,
    ) -> ChannelPerformanceSnapshot:
        """Recompute and store a snapshot for a channel or campaign.

        Raises:
            InvalidParameters: If neither channel nor campaign_id is given,
                or the period is inverted.
        """
        group_by = self._group_by(channel, campaign_id)
        start, end = period_bounds(period_start, period_end)

        watermark = self.result_store.watermark()
        results = self.result_store.latest_results(model_type, since=start, until=end)

        revenue = 0.0
        conversions: set[str] = set()
        for result in results:
            for credit in result.credits:
                if credit.is_unattributed:
                    continue
                if channel is not None and credit.channel != channel:
                    continue
                if campaign_id is not None and credit.campaign_id != campaign_id:
                    continue
                revenue += credit.attributed_revenue
                if credit.weight > 0:
                    conversions.add(result.conversion_id)

        spend = sum(
            r.amount
            for r in self.spend_source.fetch_spend(
                start.date(), end.date(), channel=channel, campaign_id=campaign_id
            )
        )

        snapshot = self.snapshot_store.save(
            ChannelPerformanceSnapshot(
                group_by=group_by,
                channel=channel,
                campaign_id=campaign_id,
                period_start=start,
                period_end=end,
                model_type=model_type,
                attributed_revenue=revenue,
                spend=spend,
                attributed_conversions=len(conversions),
                source_watermark=watermark,
            )
        )
        if snapshot.roi is None:
            logger.info(
                f"No spend for {group_by.value} {channel or campaign_id} "
                f"{start.date()}..{end.date()}: {INSUFFICIENT_SPEND_DATA}"
            )
        return snapshot

    def is_stale(self, snapshot: ChannelPerformanceSnapshot) -> bool:
        """Return True if results changed since the snapshot or it outlived the TTL."""
        if snapshot.source_watermark < self.result_store.watermark():
            return True
        age = datetime.now(UTC) - snapshot.computed_at
        return age.total_seconds() > self.ttl_seconds

    def get_or_compute(
        self,
        period_start: date | datetime,
        period_end: date | datetime,
        model_type: ModelType,
        channel: Channel | None = None,
        campaign_id: str | None = None,
    ) -> ChannelPerformanceSnapshot:
        """Return the latest snapshot, recomputing it if absent or stale."""
        group_by = self._group_by(channel, campaign_id)
        start, end = period_bounds(period_start, period_end)
        key = snapshot_key(group_by, channel, campaign_id, start, end, model_type)

        latest = self.snapshot_store.latest(key)
        if latest is not None and not self.is_stale(latest):
            return latest
        return self.compute(start, end, model_type, channel=channel, campaign_id=campaign_id)

    async def get_or_compute_async(
        self,
        period_start: date | datetime,
        period_end: date | datetime,
        model_type: ModelType,
        channel: Channel | None = None,
        campaign_id: str | None = None,
    ) -> ChannelPerformanceSnapshot:
        """Async wrapper for :meth:`get_or_compute`."""
        return await asyncio.to_thread(
            self.get_or_compute, period_start, period_end, model_type, channel, campaign_id
        )

    def report(
        self,
        period_start: date | datetime,
        period_end: date | datetime,
        model_type: ModelType,
        group_by: GroupBy = GroupBy.CHANNEL,
    ) -> PerformanceReport:
        """Compute a snapshot for every channel or campaign with results or spend."""
        start, end = period_bounds(period_start, period_end)
        results = self.result_store.latest_results(model_type, since=start, until=end)
        spend_records = self.spend_source.fetch_spend(start.date(), end.date())

        report = PerformanceReport(
            period_start=start, period_end=end, model_type=model_type, group_by=group_by
        )
        groups: set[tuple[Channel | None, str | None]] = set()
        for result in results:
            if result.is_unattributed:
                report.unattributed_revenue += result.revenue
                report.unattributed_conversions += 1
                continue
            groups.update(self._group_keys(result, group_by))
        for record in spend_records:
            if group_by == GroupBy.CHANNEL:
                groups.add((record.channel, None))
            elif record.campaign_id is not None:
                groups.add((None, record.campaign_id))

        for channel, campaign_id in sorted(groups, key=lambda g: (str(g[0]), str(g[1]))):
            report.rows.append(
                self.compute(start, end, model_type, channel=channel, campaign_id=campaign_id)
            )
        report.rows.sort(key=lambda r: r.attributed_revenue, reverse=True)
        return report

    def trend(
        self,
        period_start: date | datetime,
        period_end: date | datetime,
        model_type: ModelType,
        bucket: TimeBucket = TimeBucket.WEEK,
        channel: Channel | None = None,
        campaign_id: str | None = None,
    ) -> list[ChannelPerformanceSnapshot]:
        """Snapshots for consecutive buckets covering the period.

        Buckets start at ``period_start`` and never overlap; the last one is
        cut off at ``period_end``.
        """
        start, end = period_bounds(period_start, period_end)
        snapshots = []
        bucket_start = start
        while bucket_start <= end:
            next_start = bucket.next_start(bucket_start)
            bucket_end = min(next_start - timedelta(microseconds=1), end)
            snapshots.append(
                self.get_or_compute(
                    bucket_start, bucket_end, model_type, channel=channel, campaign_id=campaign_id
                )
            )
            bucket_start = next_start
        return snapshots

    def _group_by(self, channel: Channel | None, campaign_id: str | None) -> GroupBy:
        if channel is None and campaign_id is None:
            raise InvalidParameters(
                "Either channel or campaign_id is required",
                fields={"channel": "required without campaign_id"},
            )
        return GroupBy.CAMPAIGN if campaign_id is not None else GroupBy.CHANNEL

    def _group_keys(
        self, result: AttributionResult, group_by: GroupBy
    ) -> set[tuple[Channel | None, str | None]]:
        keys = set()
        for credit in result.credits:
            if credit.is_unattributed:
                continue
            if group_by == GroupBy.CHANNEL and credit.channel is not None:
                keys.add((credit.channel, None))
            elif group_by == GroupBy.CAMPAIGN and credit.campaign_id is not None:
                keys.add((None, credit.campaign_id))
        return keys
