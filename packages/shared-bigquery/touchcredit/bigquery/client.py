"""
AttributionBigQueryClient - BigQuery access for the attribution dataset.

Provides:
- One dataset holding touchpoints, conversions, results, spend and jobs
- Statement validation (reads select, writes only append)
- Parameterized queries with type inference
- Async query execution support
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.cloud import bigquery
from pydantic import BaseModel

from touchcredit.attribution.exceptions import DataUnavailable
from touchcredit.bigquery.validation import QueryValidator

logger = logging.getLogger(__name__)


class BigQueryConfig(BaseModel):
    """Configuration for BigQuery client."""

    project_id: str | None = None
    credentials_path: str | None = None
    dataset: str = "touchcredit"
    location: str = "US"
    max_results: int = 10_000
    timeout: int = 300  # 5 minutes

    @classmethod
    def from_env(cls) -> BigQueryConfig:
        """Load configuration from environment variables."""
        return cls(
            project_id=os.getenv("TOUCHCREDIT_PROJECT_ID") or os.getenv("GCP_PROJECT_ID"),
            credentials_path=os.getenv("GOOGLE_APPLICATION_CREDENTIALS"),
            dataset=os.getenv("TOUCHCREDIT_BQ_DATASET", "touchcredit"),
            location=os.getenv("TOUCHCREDIT_BQ_LOCATION", "US"),
        )


@dataclass
class QueryResult:
    """Result of a BigQuery query."""

    rows: list[dict[str, Any]]
    total_rows: int
    bytes_processed: int
    cache_hit: bool


class AttributionBigQueryClient:
    """
    BigQuery client scoped to the attribution dataset.

    Example:
        client = AttributionBigQueryClient(BigQueryConfig(project_id="acme-analytics"))
        result = client.query(
            f"SELECT conversion_id FROM `{client.table_id('conversions')}` LIMIT 10"
        )
    """

    def __init__(
        self,
        config: BigQueryConfig | None = None,
        client: bigquery.Client | None = None,
    ):
        self.config = config or BigQueryConfig.from_env()
        if self.config.project_id:
            QueryValidator.validate_project_dataset(self.config.project_id, self.config.dataset)
        else:
            QueryValidator.sanitize_identifier(self.config.dataset)
        self._client = client

    @property
    def dataset_id(self) -> str:
        """Get the attribution dataset ID."""
        return self.config.dataset

    @property
    def client(self) -> bigquery.Client:
        """Lazy initialization of BigQuery client."""
        if self._client is None:
            self._client = bigquery.Client(
                project=self.config.project_id,
                location=self.config.location,
            )
        return self._client

    def table_id(self, table: str) -> str:
        """Fully qualified id for a table in the attribution dataset."""
        QueryValidator.sanitize_identifier(table)
        return f"{self.config.project_id}.{self.dataset_id}.{table}"

    def query(
        self,
        sql: str,
        params: dict[str, Any] | None = None,
        max_results: int | None = None,
        types: dict[str, str] | None = None,
    ) -> QueryResult:
        """
        Execute a read query.

        Args:
            sql: SQL query string
            params: Query parameters for parameterized queries
            max_results: Maximum rows to return (default: 10,000)
            types: Explicit BigQuery types for parameters, by name

        Returns:
            QueryResult with rows, metadata, and cost info

        Raises:
            DataUnavailable: If BigQuery cannot be reached or the query fails.
        """
        QueryValidator.validate(sql)
        job_config = self._job_config(params, types)

        try:
            query_job = self.client.query(sql, job_config=job_config)
            result = query_job.result(
                max_results=max_results or self.config.max_results,
                timeout=self.config.timeout,
            )
            rows = [dict(row.items()) for row in result]
        except google_exceptions.GoogleAPIError as e:
            logger.warning(f"BigQuery read failed: {e}")
            raise DataUnavailable("Attribution data source is unavailable") from e

        return QueryResult(
            rows=rows,
            total_rows=result.total_rows or len(rows),
            bytes_processed=query_job.total_bytes_processed or 0,
            cache_hit=query_job.cache_hit or False,
        )

    async def query_async(
        self,
        sql: str,
        params: dict[str, Any] | None = None,
        max_results: int | None = None,
    ) -> QueryResult:
        """Async wrapper for query execution."""
        return await asyncio.to_thread(self.query, sql, params, max_results)

    def execute(
        self,
        sql: str,
        params: dict[str, Any] | None = None,
        types: dict[str, str] | None = None,
    ) -> None:
        """
        Execute an append (INSERT) or CREATE TABLE IF NOT EXISTS statement.

        Raises:
            DataUnavailable: If BigQuery cannot be reached or the statement fails.
        """
        QueryValidator.validate(sql, allow_writes=True)
        job_config = self._job_config(params, types)

        try:
            self.client.query(sql, job_config=job_config).result(timeout=self.config.timeout)
        except google_exceptions.GoogleAPIError as e:
            logger.warning(f"BigQuery write failed: {e}")
            raise DataUnavailable("Attribution data store is unavailable") from e

    def _job_config(
        self,
        params: dict[str, Any] | None,
        types: dict[str, str] | None,
    ) -> bigquery.QueryJobConfig:
        job_config = bigquery.QueryJobConfig()
        if params:
            types = types or {}
            job_config.query_parameters = [
                bigquery.ScalarQueryParameter(
                    name, types.get(name) or self._infer_type(value), value
                )
                for name, value in params.items()
            ]
        return job_config

    def _infer_type(self, value: Any) -> str:
        """Infer BigQuery type from Python value."""
        if isinstance(value, bool):
            return "BOOL"
        if isinstance(value, int):
            return "INT64"
        if isinstance(value, float):
            return "FLOAT64"
        if isinstance(value, datetime):
            return "TIMESTAMP"
        if isinstance(value, date):
            return "DATE"
        return "STRING"
