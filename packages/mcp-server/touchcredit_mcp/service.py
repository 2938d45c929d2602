"""
AttributionService - wires stores, processing and reporting together.

The MCP tools call into one service instance. Active model configuration
is an immutable ``ProcessingConfig``; a historical recompute swaps the
reference for a new config and every later invocation reads the new one.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from typing import Any

from touchcredit.attribution import (
    AttributionModelConfig,
    AttributionResult,
    AttributionSettings,
    Channel,
    ConversionEvent,
    ConversionQueue,
    ConversionProcessor,
    CustomerLockManager,
    InMemoryConversionStore,
    InMemoryJobStore,
    InMemoryResultStore,
    InMemoryTouchpointStore,
    InvalidParameters,
    JourneyAssembler,
    ModelType,
    NotFound,
    ProcessingConfig,
    RecomputeJob,
    RecomputeJobRunner,
    Touchpoint,
    WorkerPool,
)
from touchcredit.attribution.schema import parse_timestamp
from touchcredit.attribution.storage import (
    ConversionStore,
    JobStore,
    ResultStore,
    TouchpointStore,
)
from touchcredit.reporting import (
    ChannelPerformanceAggregator,
    ChannelPerformanceSnapshot,
    ConversionComparison,
    GroupBy,
    InMemorySnapshotStore,
    InMemorySpendSource,
    ModelComparisonReport,
    ModelComparisonService,
    PerformanceReport,
    SnapshotStore,
    SpendSource,
    TimeBucket,
)

logger = logging.getLogger(__name__)


def parse_model_type(value: str | ModelType) -> ModelType:
    """Parse a model type.

    Raises:
        InvalidParameters: If the model type is unknown.
    """
    try:
        return ModelType.parse(value)
    except ValueError as e:
        raise InvalidParameters(
            f"Unknown model type: {value}",
            fields={"model_type": f"must be one of {', '.join(m.value for m in ModelType)}"},
        ) from e


def parse_channel(value: str | Channel | None) -> Channel | None:
    """Parse an optional channel.

    Raises:
        InvalidParameters: If the channel is unknown.
    """
    if value is None or value == "":
        return None
    try:
        return Channel.parse(value)
    except ValueError as e:
        raise InvalidParameters(
            f"Unknown channel: {value}",
            fields={"channel": f"must be one of {', '.join(c.value for c in Channel)}"},
        ) from e


def parse_period_value(value: str | date | datetime, field_name: str) -> date | datetime:
    """Parse a period boundary; ``YYYY-MM-DD`` strings stay whole-day dates."""
    if isinstance(value, (date, datetime)):
        return value
    text = str(value).strip()
    if len(text) == 10:
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
    return parse_timestamp(text, field_name)


class AttributionService:
    """
    Facade over the attribution engine.

    Example:
        service = AttributionService()
        service.ingest_touchpoint({"id": "tp-1", "customer_id": "c-1", ...})
        service.ingest_conversion({"id": "o-1", "customer_id": "c-1", ...}, wait=True)
        result = service.get_attribution_result("o-1", "linear")
    """

    def __init__(
        self,
        settings: AttributionSettings | None = None,
        touchpoint_store: TouchpointStore | None = None,
        conversion_store: ConversionStore | None = None,
        result_store: ResultStore | None = None,
        job_store: JobStore | None = None,
        spend_source: SpendSource | None = None,
        snapshot_store: SnapshotStore | None = None,
    ):
        self.settings = settings or AttributionSettings()
        self._config = self.settings.to_processing_config()
        self._config_lock = threading.Lock()

        self.touchpoints = touchpoint_store or InMemoryTouchpointStore()
        self.conversions = conversion_store or InMemoryConversionStore()
        self.results = result_store or InMemoryResultStore()
        self.job_store = job_store or InMemoryJobStore()
        self.spend = spend_source or InMemorySpendSource()

        self.locks = CustomerLockManager()
        self.processor = ConversionProcessor(
            JourneyAssembler(self.touchpoints), self.results, self.locks
        )
        self.queue = ConversionQueue(self.settings.queue_max_size)
        self.workers = WorkerPool(
            self.processor,
            self.queue,
            self.get_config,
            worker_count=self.settings.worker_count,
            max_attempts=self.settings.max_attempts,
            backoff_multiplier=self.settings.backoff_multiplier,
            max_backoff=self.settings.max_backoff_seconds,
        )
        self.jobs = RecomputeJobRunner(
            self.processor,
            self.conversions,
            self.job_store,
            max_attempts=self.settings.max_attempts,
            backoff_multiplier=self.settings.backoff_multiplier,
            max_backoff=self.settings.max_backoff_seconds,
        )
        self.aggregator = ChannelPerformanceAggregator(
            self.results,
            self.spend,
            snapshot_store or InMemorySnapshotStore(),
            ttl_seconds=self.settings.snapshot_ttl_seconds,
        )
        self.comparison = ModelComparisonService(self.processor, self.conversions, self.get_config)

    @classmethod
    def from_settings(cls, settings: AttributionSettings | None = None) -> AttributionService:
        """Build a service, backed by BigQuery when a project is configured."""
        settings = settings or AttributionSettings.from_env()
        if not settings.bigquery_project_id:
            logger.info("No BigQuery project configured; using in-memory stores")
            return cls(settings)

        from touchcredit.bigquery import (
            AttributionBigQueryClient,
            BigQueryConfig,
            BigQueryConversionStore,
            BigQueryJobStore,
            BigQueryResultStore,
            BigQuerySnapshotStore,
            BigQuerySpendSource,
            BigQueryTouchpointStore,
        )

        client = AttributionBigQueryClient(
            BigQueryConfig(
                project_id=settings.bigquery_project_id,
                dataset=settings.bigquery_dataset,
            )
        )
        logger.info(
            f"Using BigQuery stores in {settings.bigquery_project_id}.{settings.bigquery_dataset}"
        )
        return cls(
            settings,
            touchpoint_store=BigQueryTouchpointStore(client),
            conversion_store=BigQueryConversionStore(client),
            result_store=BigQueryResultStore(client),
            job_store=BigQueryJobStore(client),
            spend_source=BigQuerySpendSource(client),
            snapshot_store=BigQuerySnapshotStore(client),
        )

    def get_config(self) -> ProcessingConfig:
        """Return the active processing configuration."""
        with self._config_lock:
            return self._config

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def ingest_touchpoint(self, data: dict[str, Any] | Touchpoint) -> dict[str, Any]:
        """Validate and store a touchpoint.

        Waits for any in-flight attribution of the same customer so the
        touchpoint never lands in a half-assembled journey.

        Raises:
            ValidationError: If customer_id, timestamp or channel is missing.
            Conflict: If a different touchpoint with the same id exists.
        """
        touchpoint = data if isinstance(data, Touchpoint) else Touchpoint.from_dict(data)
        with self.locks.hold(touchpoint.customer_id):
            stored = self.touchpoints.append(touchpoint)
        return {"touchpoint_id": touchpoint.id, "stored": stored}

    def ingest_conversion(
        self,
        data: dict[str, Any] | ConversionEvent,
        wait: bool = False,
    ) -> dict[str, Any]:
        """Store a conversion and attribute it under every active model.

        Args:
            data: Conversion record.
            wait: Process on the calling thread instead of the worker queue.

        Raises:
            ValidationError: If the record is malformed.
            Conflict: If a different conversion with the same id exists.
            Throttled: If the processing queue is full.
        """
        conversion = data if isinstance(data, ConversionEvent) else ConversionEvent.from_dict(data)
        stored = self.conversions.add(conversion)

        if wait:
            report = self.workers.process_with_retry(conversion)
            return {
                "conversion_id": conversion.id,
                "stored": stored,
                "queued": False,
                "report": report.to_dict(),
            }

        self.workers.start()
        self.queue.submit(conversion)
        return {"conversion_id": conversion.id, "stored": stored, "queued": True}

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_attribution_result(
        self,
        conversion_id: str,
        model_type: str | ModelType,
        computation_version: int | None = None,
    ) -> AttributionResult:
        """Return a result version, or the latest when no version is given.

        Raises:
            NotFound: If no such result exists.
        """
        model = parse_model_type(model_type)
        result = self.results.get(conversion_id, model, computation_version)
        if result is None:
            version = f" v{computation_version}" if computation_version is not None else ""
            raise NotFound(f"No {model.value} result{version} for conversion {conversion_id}")
        return result

    def compare_models(self, conversion_id: str) -> ConversionComparison:
        return self.comparison.compare(conversion_id)

    def compare_model_set(self, conversion_ids: list[str]) -> ModelComparisonReport:
        return self.comparison.compare_set(conversion_ids)

    def compare_models_for_period(
        self,
        period_start: str | date | datetime,
        period_end: str | date | datetime,
    ) -> ModelComparisonReport:
        return self.comparison.compare_period(
            parse_period_value(period_start, "period_start"),
            parse_period_value(period_end, "period_end"),
        )

    def get_attribution_analysis(
        self,
        model_type: str | ModelType | None = None,
        conversion_id: str | None = None,
        period_start: str | date | datetime | None = None,
        period_end: str | date | datetime | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Return flattened credit rows from the latest stored results."""
        return self.comparison.attribution_analysis(
            model_type=parse_model_type(model_type) if model_type else None,
            conversion_id=conversion_id or None,
            period_start=parse_period_value(period_start, "period_start") if period_start else None,
            period_end=parse_period_value(period_end, "period_end") if period_end else None,
            limit=limit,
        )

    def get_channel_performance(
        self,
        period_start: str | date | datetime,
        period_end: str | date | datetime,
        model_type: str | ModelType,
        channel: str | Channel | None = None,
        campaign_id: str | None = None,
    ) -> ChannelPerformanceSnapshot:
        """Return the channel or campaign snapshot, recomputing if absent or stale."""
        return self.aggregator.get_or_compute(
            parse_period_value(period_start, "period_start"),
            parse_period_value(period_end, "period_end"),
            parse_model_type(model_type),
            channel=parse_channel(channel),
            campaign_id=campaign_id or None,
        )

    def get_performance_report(
        self,
        period_start: str | date | datetime,
        period_end: str | date | datetime,
        model_type: str | ModelType,
        group_by: str | GroupBy = GroupBy.CHANNEL,
    ) -> PerformanceReport:
        try:
            grouping = GroupBy(group_by)
        except ValueError as e:
            raise InvalidParameters(
                f"Unknown grouping: {group_by}",
                fields={"group_by": "must be channel or campaign"},
            ) from e
        return self.aggregator.report(
            parse_period_value(period_start, "period_start"),
            parse_period_value(period_end, "period_end"),
            parse_model_type(model_type),
            group_by=grouping,
        )

    def get_channel_trend(
        self,
        period_start: str | date | datetime,
        period_end: str | date | datetime,
        model_type: str | ModelType,
        bucket: str | TimeBucket = TimeBucket.WEEK,
        channel: str | Channel | None = None,
        campaign_id: str | None = None,
    ) -> list[ChannelPerformanceSnapshot]:
        try:
            time_bucket = TimeBucket(bucket)
        except ValueError as e:
            raise InvalidParameters(
                f"Unknown bucket: {bucket}",
                fields={"bucket": "must be day, week or month"},
            ) from e
        return self.aggregator.trend(
            parse_period_value(period_start, "period_start"),
            parse_period_value(period_end, "period_end"),
            parse_model_type(model_type),
            bucket=time_bucket,
            channel=parse_channel(channel),
            campaign_id=campaign_id or None,
        )

    # -------------------------------------------------------------------------
    # Recompute jobs
    # -------------------------------------------------------------------------

    def recompute_historical(
        self,
        model_type: str | ModelType,
        new_parameters: dict[str, Any] | None,
        from_date: str | datetime,
        background: bool = True,
    ) -> RecomputeJob:
        """Apply new model parameters and recompute results from ``from_date``.

        Existing results stay as history; the job appends a new version per
        conversion.

        Raises:
            InvalidParameters: If the parameters are unknown or out of domain.
        """
        model_type = parse_model_type(model_type)
        start = parse_timestamp(from_date, "from_date")

        with self._config_lock:
            current = self._config.get(model_type) or AttributionModelConfig(model_type)
            model = current.with_parameters(**(new_parameters or {}))
            self._config = self._config.with_model(model)

        logger.info(f"Active {model_type.value} parameters now {model.parameters()}")
        job = self.jobs.create(model, start)
        if background:
            self.jobs.start(job.job_id)
            return self.jobs.get(job.job_id)
        return self.jobs.run(job.job_id)

    def get_job_status(self, job_id: str) -> RecomputeJob:
        return self.jobs.get(job_id)

    def cancel_job(self, job_id: str) -> RecomputeJob:
        return self.jobs.cancel(job_id)

    def resume_job(self, job_id: str, background: bool = True) -> RecomputeJob:
        return self.jobs.resume(job_id, background=background)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def redrive_dead_letters(self) -> int:
        """Re-queue conversions parked after exhausting their attempts."""
        self.workers.start()
        return self.workers.redrive()

    def shutdown(self) -> None:
        """Stop the worker pool."""
        self.workers.stop()
