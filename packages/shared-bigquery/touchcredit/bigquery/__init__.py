"""
TouchCredit BigQuery - Durable storage for the attribution engine.

Usage:
    from touchcredit.bigquery import (
        AttributionBigQueryClient,
        BigQueryResultStore,
        BigQueryTouchpointStore,
        ensure_tables_exist,
    )

    client = AttributionBigQueryClient()
    ensure_tables_exist(client)

    touchpoints = BigQueryTouchpointStore(client)
    results = BigQueryResultStore(client)
"""

from touchcredit.bigquery.client import AttributionBigQueryClient, BigQueryConfig, QueryResult
from touchcredit.bigquery.stores import (
    BigQueryConversionStore,
    BigQueryJobStore,
    BigQueryResultStore,
    BigQuerySnapshotStore,
    BigQuerySpendSource,
    BigQueryTouchpointStore,
    ensure_tables_exist,
)
from touchcredit.bigquery.validation import QueryValidator

__all__ = [
    "AttributionBigQueryClient",
    "BigQueryConfig",
    "QueryResult",
    "QueryValidator",
    "BigQueryTouchpointStore",
    "BigQueryConversionStore",
    "BigQueryResultStore",
    "BigQuerySpendSource",
    "BigQueryJobStore",
    "BigQuerySnapshotStore",
    "ensure_tables_exist",
]
