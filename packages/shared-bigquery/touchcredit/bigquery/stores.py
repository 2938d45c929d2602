"""BigQuery-backed stores for the attribution engine.

Every table is append-only. Results, jobs and snapshots keep their history
as rows; job checkpoints are new revisions rather than updates. Version and
identity checks run inside a per-store lock, so one process never writes a
conflicting row. BigQuery failures surface as ``DataUnavailable``.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import UTC, date, datetime
from typing import Any

from touchcredit.attribution.exceptions import Conflict, ValidationError
from touchcredit.attribution.jobs import RecomputeJob
from touchcredit.attribution.schema import (
    AttributionResult,
    Channel,
    ConversionEvent,
    ModelType,
    SpendRecord,
    Touchpoint,
    ensure_utc,
)
from touchcredit.bigquery.client import AttributionBigQueryClient
from touchcredit.reporting.performance import ChannelPerformanceSnapshot

logger = logging.getLogger(__name__)

CREATE_TOUCHPOINTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS `{table_id}` (
    touchpoint_id STRING NOT NULL,
    customer_id STRING NOT NULL,
    channel STRING NOT NULL,
    timestamp TIMESTAMP NOT NULL,
    campaign_id STRING,
    cost FLOAT64,
    touchpoint_type STRING,
    campaign_name STRING,
    utm_source STRING,
    utm_medium STRING,
    utm_campaign STRING,
    raw_data JSON,
    ingested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP()
)
PARTITION BY DATE(timestamp)
CLUSTER BY customer_id
"""

CREATE_CONVERSIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS `{table_id}` (
    conversion_id STRING NOT NULL,
    customer_id STRING NOT NULL,
    timestamp TIMESTAMP NOT NULL,
    revenue FLOAT64 NOT NULL,
    conversion_type STRING,
    currency STRING,
    order_id STRING,
    source_platform STRING,
    ingested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP()
)
CLUSTER BY conversion_id
"""

CREATE_RESULTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS `{table_id}` (
    conversion_id STRING NOT NULL,
    model_type STRING NOT NULL,
    computation_version INT64 NOT NULL,
    status STRING NOT NULL,
    revenue FLOAT64,
    customer_id STRING,
    conversion_timestamp TIMESTAMP,
    parameters JSON,
    credits JSON,
    job_id STRING,
    computed_at TIMESTAMP NOT NULL
)
CLUSTER BY model_type, conversion_id
"""

CREATE_SPEND_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS `{table_id}` (
    channel STRING NOT NULL,
    campaign_id STRING,
    day DATE NOT NULL,
    amount FLOAT64 NOT NULL
)
PARTITION BY day
"""

CREATE_JOBS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS `{table_id}` (
    job_id STRING NOT NULL,
    revision INT64 NOT NULL,
    status STRING NOT NULL,
    payload JSON NOT NULL,
    recorded_at TIMESTAMP NOT NULL
)
"""

CREATE_SNAPSHOTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS `{table_id}` (
    snapshot_key STRING NOT NULL,
    snapshot_version INT64 NOT NULL,
    payload JSON NOT NULL,
    computed_at TIMESTAMP NOT NULL
)
"""


def _load_json(value: Any, default: Any) -> Any:
    """Decode a JSON column; the client may already return parsed values."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class BigQueryTable:
    """Base class for a store backed by one table in the attribution dataset."""

    table: str = ""
    create_sql: str = ""

    def __init__(self, client: AttributionBigQueryClient):
        self.bq = client
        self._lock = threading.RLock()

    @property
    def table_id(self) -> str:
        return self.bq.table_id(self.table)

    def ensure_table_exists(self) -> None:
        """Create the table if it doesn't exist."""
        self.bq.execute(self.create_sql.format(table_id=self.table_id))
        logger.info(f"Ensured table exists: {self.table_id}")


class BigQueryTouchpointStore(BigQueryTable):
    """Touchpoint storage in the ``touchpoints`` table."""

    table = "touchpoints"
    create_sql = CREATE_TOUCHPOINTS_TABLE_SQL

    COLUMNS = (
        "touchpoint_id, customer_id, channel, timestamp, campaign_id, cost, "
        "touchpoint_type, campaign_name, utm_source, utm_medium, utm_campaign, raw_data"
    )

    def append(self, touchpoint: Touchpoint) -> bool:
        """Append a touchpoint.

        Returns:
            True if stored, False if an identical touchpoint already exists.

        Raises:
            Conflict: If a different touchpoint with the same id exists.
        """
        with self._lock:
            existing = self.get(touchpoint.id)
            if existing is not None:
                if existing == touchpoint:
                    return False
                raise Conflict(
                    f"Touchpoint {touchpoint.id} already exists with different content"
                )

            sql = f"""
            INSERT INTO `{self.table_id}` ({self.COLUMNS})
            VALUES (
                @touchpoint_id, @customer_id, @channel, @timestamp, @campaign_id, @cost,
                @touchpoint_type, @campaign_name, @utm_source, @utm_medium, @utm_campaign,
                PARSE_JSON(@raw_data)
            )
            """
            self.bq.execute(
                sql,
                params={
                    "touchpoint_id": touchpoint.id,
                    "customer_id": touchpoint.customer_id,
                    "channel": touchpoint.channel.value,
                    "timestamp": touchpoint.timestamp,
                    "campaign_id": touchpoint.campaign_id,
                    "cost": touchpoint.cost,
                    "touchpoint_type": touchpoint.touchpoint_type.value,
                    "campaign_name": touchpoint.campaign_name,
                    "utm_source": touchpoint.utm_source,
                    "utm_medium": touchpoint.utm_medium,
                    "utm_campaign": touchpoint.utm_campaign,
                    "raw_data": json.dumps(touchpoint.raw_data, default=str),
                },
                types={"cost": "FLOAT64"},
            )
        logger.debug(f"Stored touchpoint {touchpoint.id} for {touchpoint.customer_id}")
        return True

    def get(self, touchpoint_id: str) -> Touchpoint | None:
        sql = f"""
        SELECT {self.COLUMNS}
        FROM `{self.table_id}`
        WHERE touchpoint_id = @touchpoint_id
        LIMIT 1
        """
        result = self.bq.query(sql, params={"touchpoint_id": touchpoint_id})
        return self._row_to_touchpoint(result.rows[0]) if result.rows else None

    def fetch_touchpoints(
        self, customer_id: str, since: datetime, until: datetime
    ) -> list[Touchpoint]:
        """Touchpoints for a customer with since <= timestamp <= until."""
        sql = f"""
        SELECT {self.COLUMNS}
        FROM `{self.table_id}`
        WHERE customer_id = @customer_id
          AND timestamp BETWEEN @since AND @until
        ORDER BY timestamp, touchpoint_id
        """
        result = self.bq.query(
            sql,
            params={
                "customer_id": customer_id,
                "since": ensure_utc(since),
                "until": ensure_utc(until),
            },
        )
        return [self._row_to_touchpoint(row) for row in result.rows]

    def _row_to_touchpoint(self, row: dict[str, Any]) -> Touchpoint:
        data = dict(row)
        data["id"] = data.pop("touchpoint_id")
        data["raw_data"] = _load_json(data.get("raw_data"), {})
        return Touchpoint.from_dict(data)


class BigQueryConversionStore(BigQueryTable):
    """Conversion storage in the ``conversions`` table."""

    table = "conversions"
    create_sql = CREATE_CONVERSIONS_TABLE_SQL

    COLUMNS = (
        "conversion_id, customer_id, timestamp, revenue, conversion_type, "
        "currency, order_id, source_platform"
    )

    def add(self, conversion: ConversionEvent) -> bool:
        """Store a conversion.

        Returns:
            True if stored, False if an identical conversion already exists.

        Raises:
            Conflict: If a different conversion with the same id exists.
        """
        with self._lock:
            existing = self.get(conversion.id)
            if existing is not None:
                if existing == conversion:
                    return False
                raise Conflict(
                    f"Conversion {conversion.id} already exists with different content"
                )

            sql = f"""
            INSERT INTO `{self.table_id}` ({self.COLUMNS})
            VALUES (
                @conversion_id, @customer_id, @timestamp, @revenue, @conversion_type,
                @currency, @order_id, @source_platform
            )
            """
            self.bq.execute(
                sql,
                params={
                    "conversion_id": conversion.id,
                    "customer_id": conversion.customer_id,
                    "timestamp": conversion.timestamp,
                    "revenue": float(conversion.revenue),
                    "conversion_type": conversion.conversion_type.value,
                    "currency": conversion.currency,
                    "order_id": conversion.order_id,
                    "source_platform": conversion.source_platform.value,
                },
            )
        logger.debug(f"Stored conversion {conversion.id}")
        return True

    def get(self, conversion_id: str) -> ConversionEvent | None:
        sql = f"""
        SELECT {self.COLUMNS}
        FROM `{self.table_id}`
        WHERE conversion_id = @conversion_id
        LIMIT 1
        """
        result = self.bq.query(sql, params={"conversion_id": conversion_id})
        return self._row_to_conversion(result.rows[0]) if result.rows else None

    def list_conversions(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        after_id: str | None = None,
        limit: int | None = None,
    ) -> list[ConversionEvent]:
        """List conversions in ascending id order."""
        conditions = []
        params: dict[str, Any] = {}
        if since is not None:
            conditions.append("timestamp >= @since")
            params["since"] = ensure_utc(since)
        if until is not None:
            conditions.append("timestamp <= @until")
            params["until"] = ensure_utc(until)
        if after_id is not None:
            conditions.append("conversion_id > @after_id")
            params["after_id"] = after_id

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        limit_clause = ""
        if limit is not None:
            limit_clause = "LIMIT @limit"
            params["limit"] = int(limit)

        sql = f"""
        SELECT {self.COLUMNS}
        FROM `{self.table_id}`
        {where}
        ORDER BY conversion_id
        {limit_clause}
        """
        result = self.bq.query(sql, params=params or None)
        return [self._row_to_conversion(row) for row in result.rows]

    def _row_to_conversion(self, row: dict[str, Any]) -> ConversionEvent:
        data = dict(row)
        data["id"] = data.pop("conversion_id")
        return ConversionEvent.from_dict(data)


class BigQueryResultStore(BigQueryTable):
    """Append-only attribution result storage in the ``attribution_results`` table."""

    table = "attribution_results"
    create_sql = CREATE_RESULTS_TABLE_SQL

    COLUMNS = (
        "conversion_id, model_type, computation_version, status, revenue, customer_id, "
        "conversion_timestamp, parameters, credits, job_id, computed_at"
    )

    def save(self, result: AttributionResult) -> bool:
        """Persist a new result version.

        Returns:
            True if inserted, False if the identical version already exists.

        Raises:
            ValidationError: If the version is not positive.
            Conflict: If the version exists with a different payload, or is
                not newer than the latest stored version.
        """
        if result.computation_version < 1:
            raise ValidationError(
                "computation_version must be >= 1",
                fields={"computation_version": "must be >= 1"},
            )

        with self._lock:
            existing = self.get(
                result.conversion_id, result.model_type, result.computation_version
            )
            if existing is not None:
                if existing.same_payload(result):
                    return False
                raise Conflict(
                    f"Result {result.conversion_id}/{result.model_type.value} "
                    f"v{result.computation_version} already exists; "
                    "request a new computation_version"
                )
            latest = self.latest_version(result.conversion_id, result.model_type)
            if result.computation_version <= latest:
                raise Conflict(
                    f"Result version {result.computation_version} is not newer than "
                    f"v{latest} for {result.conversion_id}/{result.model_type.value}"
                )

            payload = result.to_dict()
            sql = f"""
            INSERT INTO `{self.table_id}` ({self.COLUMNS})
            VALUES (
                @conversion_id, @model_type, @computation_version, @status, @revenue,
                @customer_id, @conversion_timestamp, PARSE_JSON(@parameters),
                PARSE_JSON(@credits), @job_id, @computed_at
            )
            """
            self.bq.execute(
                sql,
                params={
                    "conversion_id": result.conversion_id,
                    "model_type": result.model_type.value,
                    "computation_version": result.computation_version,
                    "status": result.status.value,
                    "revenue": float(result.revenue),
                    "customer_id": result.customer_id,
                    "conversion_timestamp": result.conversion_timestamp,
                    "parameters": json.dumps(payload["parameters"]),
                    "credits": json.dumps(payload["credits"]),
                    "job_id": result.job_id,
                    "computed_at": result.computed_at,
                },
                types={"conversion_timestamp": "TIMESTAMP"},
            )
        logger.debug(
            f"Stored result {result.conversion_id}/{result.model_type.value} "
            f"v{result.computation_version}"
        )
        return True

    def get(
        self,
        conversion_id: str,
        model_type: ModelType,
        computation_version: int | None = None,
    ) -> AttributionResult | None:
        """Return a result version, or the latest when no version is given."""
        params: dict[str, Any] = {
            "conversion_id": conversion_id,
            "model_type": model_type.value,
        }
        version_clause = ""
        if computation_version is not None:
            version_clause = "AND computation_version = @computation_version"
            params["computation_version"] = computation_version

        sql = f"""
        SELECT {self.COLUMNS}
        FROM `{self.table_id}`
        WHERE conversion_id = @conversion_id
          AND model_type = @model_type
          {version_clause}
        ORDER BY computation_version DESC
        LIMIT 1
        """
        result = self.bq.query(sql, params=params)
        return self._row_to_result(result.rows[0]) if result.rows else None

    def latest_version(self, conversion_id: str, model_type: ModelType) -> int:
        """Return the latest stored version, or 0 if none exists."""
        sql = f"""
        SELECT MAX(computation_version) AS latest
        FROM `{self.table_id}`
        WHERE conversion_id = @conversion_id
          AND model_type = @model_type
        """
        result = self.bq.query(
            sql, params={"conversion_id": conversion_id, "model_type": model_type.value}
        )
        if not result.rows:
            return 0
        return int(result.rows[0].get("latest") or 0)

    def history(self, conversion_id: str, model_type: ModelType) -> list[AttributionResult]:
        """Return every stored version in ascending version order."""
        sql = f"""
        SELECT {self.COLUMNS}
        FROM `{self.table_id}`
        WHERE conversion_id = @conversion_id
          AND model_type = @model_type
        ORDER BY computation_version
        """
        result = self.bq.query(
            sql, params={"conversion_id": conversion_id, "model_type": model_type.value}
        )
        return [self._row_to_result(row) for row in result.rows]

    def latest_results(
        self,
        model_type: ModelType,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AttributionResult]:
        """Latest result per conversion for a model, filtered by conversion time."""
        conditions = ["model_type = @model_type"]
        params: dict[str, Any] = {"model_type": model_type.value}
        if since is not None:
            conditions.append("conversion_timestamp >= @since")
            params["since"] = ensure_utc(since)
        if until is not None:
            conditions.append("conversion_timestamp <= @until")
            params["until"] = ensure_utc(until)

        sql = f"""
        SELECT {self.COLUMNS}
        FROM `{self.table_id}`
        WHERE {' AND '.join(conditions)}
        QUALIFY ROW_NUMBER() OVER (
            PARTITION BY conversion_id ORDER BY computation_version DESC
        ) = 1
        ORDER BY conversion_id
        """
        result = self.bq.query(sql, params=params)
        return [self._row_to_result(row) for row in result.rows]

    def watermark(self) -> int:
        """Row count of the append-only table; advances on every insert."""
        sql = f"SELECT COUNT(1) AS row_count FROM `{self.table_id}`"
        result = self.bq.query(sql)
        if not result.rows:
            return 0
        return int(result.rows[0].get("row_count") or 0)

    def _row_to_result(self, row: dict[str, Any]) -> AttributionResult:
        data = dict(row)
        data["parameters"] = _load_json(data.get("parameters"), {})
        data["credits"] = _load_json(data.get("credits"), [])
        return AttributionResult.from_dict(data)


class BigQuerySpendSource(BigQueryTable):
    """Daily spend from the ``spend`` table, written by the sync subsystem."""

    table = "spend"
    create_sql = CREATE_SPEND_TABLE_SQL

    def fetch_spend(
        self,
        since: date,
        until: date,
        channel: Channel | None = None,
        campaign_id: str | None = None,
    ) -> list[SpendRecord]:
        conditions = ["day BETWEEN @since AND @until"]
        params: dict[str, Any] = {"since": since, "until": until}
        if channel is not None:
            conditions.append("channel = @channel")
            params["channel"] = channel.value
        if campaign_id is not None:
            conditions.append("campaign_id = @campaign_id")
            params["campaign_id"] = campaign_id

        sql = f"""
        SELECT channel, campaign_id, day, amount
        FROM `{self.table_id}`
        WHERE {' AND '.join(conditions)}
        ORDER BY day
        """
        result = self.bq.query(sql, params=params, types={"since": "DATE", "until": "DATE"})

        records = []
        for row in result.rows:
            try:
                records.append(SpendRecord.from_dict(row))
            except ValidationError as e:
                logger.warning(f"Skipping invalid spend row: {e.fields}")
        return records


class BigQueryJobStore(BigQueryTable):
    """Recompute job checkpoints as revisions in the ``recompute_jobs`` table."""

    table = "recompute_jobs"
    create_sql = CREATE_JOBS_TABLE_SQL

    def __init__(self, client: AttributionBigQueryClient):
        super().__init__(client)
        self._last_revision = 0

    def _next_revision(self) -> int:
        self._last_revision = max(time.time_ns(), self._last_revision + 1)
        return self._last_revision

    def save(self, job: RecomputeJob) -> None:
        sql = f"""
        INSERT INTO `{self.table_id}` (job_id, revision, status, payload, recorded_at)
        VALUES (@job_id, @revision, @status, PARSE_JSON(@payload), @recorded_at)
        """
        with self._lock:
            self.bq.execute(
                sql,
                params={
                    "job_id": job.job_id,
                    "revision": self._next_revision(),
                    "status": job.status.value,
                    "payload": json.dumps(job.to_dict()),
                    "recorded_at": datetime.now(UTC),
                },
            )

    def get(self, job_id: str) -> RecomputeJob | None:
        sql = f"""
        SELECT payload
        FROM `{self.table_id}`
        WHERE job_id = @job_id
        ORDER BY revision DESC
        LIMIT 1
        """
        result = self.bq.query(sql, params={"job_id": job_id})
        if not result.rows:
            return None
        return RecomputeJob.from_dict(_load_json(result.rows[0]["payload"], {}))


def snapshot_key_string(key: tuple[Any, ...]) -> str:
    """Stable string form of a snapshot key."""
    parts = []
    for part in key:
        if part is None:
            parts.append("")
        elif isinstance(part, datetime):
            parts.append(part.isoformat())
        else:
            parts.append(str(getattr(part, "value", part)))
    return "|".join(parts)


class BigQuerySnapshotStore(BigQueryTable):
    """Append-only performance snapshot history in the ``performance_snapshots`` table."""

    table = "performance_snapshots"
    create_sql = CREATE_SNAPSHOTS_TABLE_SQL

    def save(self, snapshot: ChannelPerformanceSnapshot) -> ChannelPerformanceSnapshot:
        """Append ``snapshot`` as the next version for its key."""
        key = snapshot_key_string(snapshot.key)
        with self._lock:
            sql = f"""
            SELECT MAX(snapshot_version) AS latest
            FROM `{self.table_id}`
            WHERE snapshot_key = @snapshot_key
            """
            result = self.bq.query(sql, params={"snapshot_key": key})
            latest = int(result.rows[0].get("latest") or 0) if result.rows else 0

            stored = ChannelPerformanceSnapshot.from_dict(
                {**snapshot.to_dict(), "snapshot_version": latest + 1}
            )
            sql = f"""
            INSERT INTO `{self.table_id}` (snapshot_key, snapshot_version, payload, computed_at)
            VALUES (@snapshot_key, @snapshot_version, PARSE_JSON(@payload), @computed_at)
            """
            self.bq.execute(
                sql,
                params={
                    "snapshot_key": key,
                    "snapshot_version": stored.snapshot_version,
                    "payload": json.dumps(stored.to_dict()),
                    "computed_at": stored.computed_at,
                },
            )
        return stored

    def latest(self, key: tuple[Any, ...]) -> ChannelPerformanceSnapshot | None:
        sql = f"""
        SELECT payload
        FROM `{self.table_id}`
        WHERE snapshot_key = @snapshot_key
        ORDER BY snapshot_version DESC
        LIMIT 1
        """
        result = self.bq.query(sql, params={"snapshot_key": snapshot_key_string(key)})
        if not result.rows:
            return None
        return ChannelPerformanceSnapshot.from_dict(_load_json(result.rows[0]["payload"], {}))

    def history(self, key: tuple[Any, ...]) -> list[ChannelPerformanceSnapshot]:
        sql = f"""
        SELECT payload
        FROM `{self.table_id}`
        WHERE snapshot_key = @snapshot_key
        ORDER BY snapshot_version
        """
        result = self.bq.query(sql, params={"snapshot_key": snapshot_key_string(key)})
        return [
            ChannelPerformanceSnapshot.from_dict(_load_json(row["payload"], {}))
            for row in result.rows
        ]


def ensure_tables_exist(client: AttributionBigQueryClient) -> None:
    """Create every attribution table that does not exist yet."""
    for store_cls in (
        BigQueryTouchpointStore,
        BigQueryConversionStore,
        BigQueryResultStore,
        BigQuerySpendSource,
        BigQueryJobStore,
        BigQuerySnapshotStore,
    ):
        store_cls(client).ensure_table_exists()
