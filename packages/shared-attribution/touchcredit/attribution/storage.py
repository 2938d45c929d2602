"""Stores for touchpoints, conversions, attribution results and jobs.

The protocols describe the logical schema the engine relies on. The
in-memory implementations are thread-safe and are the default backend; the
``touchcredit.bigquery`` package provides durable implementations.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from touchcredit.attribution.exceptions import Conflict, ValidationError
from touchcredit.attribution.journey import journey_sort_key
from touchcredit.attribution.schema import (
    AttributionResult,
    ConversionEvent,
    ModelType,
    Touchpoint,
    ensure_utc,
)

if TYPE_CHECKING:
    from touchcredit.attribution.jobs import RecomputeJob

logger = logging.getLogger(__name__)


class TouchpointStore(Protocol):
    """Append-only touchpoint storage."""

    def append(self, touchpoint: Touchpoint) -> bool: ...

    def fetch_touchpoints(
        self, customer_id: str, since: datetime, until: datetime
    ) -> list[Touchpoint]: ...


class ConversionStore(Protocol):
    """Conversion event storage."""

    def add(self, conversion: ConversionEvent) -> bool: ...

    def get(self, conversion_id: str) -> ConversionEvent | None: ...

    def list_conversions(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        after_id: str | None = None,
        limit: int | None = None,
    ) -> list[ConversionEvent]: ...


class ResultStore(Protocol):
    """Append-only, versioned attribution result storage."""

    def save(self, result: AttributionResult) -> bool: ...

    def get(
        self,
        conversion_id: str,
        model_type: ModelType,
        computation_version: int | None = None,
    ) -> AttributionResult | None: ...

    def latest_version(self, conversion_id: str, model_type: ModelType) -> int: ...

    def history(self, conversion_id: str, model_type: ModelType) -> list[AttributionResult]: ...

    def latest_results(
        self,
        model_type: ModelType,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AttributionResult]: ...

    def watermark(self) -> int: ...


class JobStore(Protocol):
    """Persistence for recompute job state and cursors."""

    def save(self, job: RecomputeJob) -> None: ...

    def get(self, job_id: str) -> RecomputeJob | None: ...


class InMemoryTouchpointStore:
    """Thread-safe in-memory touchpoint store, indexed by customer."""

    def __init__(self, touchpoints: list[Touchpoint] | None = None):
        self._lock = threading.RLock()
        self._by_id: dict[str, Touchpoint] = {}
        self._by_customer: dict[str, list[Touchpoint]] = defaultdict(list)
        for touchpoint in touchpoints or []:
            self.append(touchpoint)

    def append(self, touchpoint: Touchpoint) -> bool:
        """Append a touchpoint.

        Returns:
            True if stored, False if an identical touchpoint already exists.

        Raises:
            Conflict: If a different touchpoint with the same id exists.
        """
        with self._lock:
            existing = self._by_id.get(touchpoint.id)
            if existing is not None:
                if existing == touchpoint:
                    return False
                raise Conflict(
                    f"Touchpoint {touchpoint.id} already exists with different content"
                )
            self._by_id[touchpoint.id] = touchpoint
            self._by_customer[touchpoint.customer_id].append(touchpoint)
            return True

    def get(self, touchpoint_id: str) -> Touchpoint | None:
        with self._lock:
            return self._by_id.get(touchpoint_id)

    def fetch_touchpoints(
        self,
        customer_id: str,
        since: datetime,
        until: datetime,
    ) -> list[Touchpoint]:
        since, until = ensure_utc(since), ensure_utc(until)
        with self._lock:
            selected = [
                tp for tp in self._by_customer.get(customer_id, []) if since <= tp.timestamp <= until
            ]
        selected.sort(key=journey_sort_key)
        return selected

    def __len__(self) -> int:
        return len(self._by_id)


class InMemoryConversionStore:
    """Thread-safe in-memory conversion store."""

    def __init__(self, conversions: list[ConversionEvent] | None = None):
        self._lock = threading.RLock()
        self._by_id: dict[str, ConversionEvent] = {}
        for conversion in conversions or []:
            self.add(conversion)

    def add(self, conversion: ConversionEvent) -> bool:
        """Store a conversion.

        Returns:
            True if stored, False if an identical conversion already exists.

        Raises:
            Conflict: If a different conversion with the same id exists.
        """
        with self._lock:
            existing = self._by_id.get(conversion.id)
            if existing is not None:
                if existing == conversion:
                    return False
                raise Conflict(
                    f"Conversion {conversion.id} already exists with different content"
                )
            self._by_id[conversion.id] = conversion
            return True

    def get(self, conversion_id: str) -> ConversionEvent | None:
        with self._lock:
            return self._by_id.get(conversion_id)

    def list_conversions(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        after_id: str | None = None,
        limit: int | None = None,
    ) -> list[ConversionEvent]:
        """List conversions in ascending id order.

        Args:
            since: Only conversions at or after this time.
            until: Only conversions at or before this time.
            after_id: Only conversions with an id greater than this cursor.
            limit: Maximum number of conversions to return.
        """
        with self._lock:
            conversions = list(self._by_id.values())
        if since is not None:
            conversions = [c for c in conversions if c.timestamp >= ensure_utc(since)]
        if until is not None:
            conversions = [c for c in conversions if c.timestamp <= ensure_utc(until)]
        if after_id is not None:
            conversions = [c for c in conversions if c.id > after_id]
        conversions.sort(key=lambda c: c.id)
        if limit is not None:
            conversions = conversions[:limit]
        return conversions


class InMemoryResultStore:
    """Thread-safe, append-only attribution result store.

    Example:
        >>> store = InMemoryResultStore()
        >>> store.save(result)
        True
        >>> store.save(result)  # identical re-save is a no-op
        False
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._versions: dict[tuple[str, ModelType], dict[int, AttributionResult]] = defaultdict(
            dict
        )
        self._watermark = 0

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

        key = (result.conversion_id, result.model_type)
        with self._lock:
            versions = self._versions[key]
            existing = versions.get(result.computation_version)
            if existing is not None:
                if existing.same_payload(result):
                    return False
                raise Conflict(
                    f"Result {result.conversion_id}/{result.model_type.value} "
                    f"v{result.computation_version} already exists; "
                    "request a new computation_version"
                )
            latest = max(versions, default=0)
            if result.computation_version <= latest:
                raise Conflict(
                    f"Result version {result.computation_version} is not newer than "
                    f"v{latest} for {result.conversion_id}/{result.model_type.value}"
                )
            versions[result.computation_version] = result
            self._watermark += 1

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
        with self._lock:
            versions = self._versions.get((conversion_id, model_type))
            if not versions:
                return None
            if computation_version is None:
                return versions[max(versions)]
            return versions.get(computation_version)

    def latest_version(self, conversion_id: str, model_type: ModelType) -> int:
        """Return the latest stored version, or 0 if none exists."""
        with self._lock:
            return max(self._versions.get((conversion_id, model_type), {}), default=0)

    def history(self, conversion_id: str, model_type: ModelType) -> list[AttributionResult]:
        """Return every stored version in ascending version order."""
        with self._lock:
            versions = self._versions.get((conversion_id, model_type), {})
            return [versions[v] for v in sorted(versions)]

    def latest_results(
        self,
        model_type: ModelType,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AttributionResult]:
        """Latest result per conversion for a model, filtered by conversion time."""
        with self._lock:
            latest = [
                versions[max(versions)]
                for (_, mt), versions in self._versions.items()
                if mt == model_type and versions
            ]
        if since is not None:
            since = ensure_utc(since)
            latest = [
                r for r in latest if r.conversion_timestamp and r.conversion_timestamp >= since
            ]
        if until is not None:
            until = ensure_utc(until)
            latest = [
                r for r in latest if r.conversion_timestamp and r.conversion_timestamp <= until
            ]
        latest.sort(key=lambda r: r.conversion_id)
        return latest

    def watermark(self) -> int:
        """Monotonic counter that advances on every insert."""
        with self._lock:
            return self._watermark


class InMemoryJobStore:
    """Thread-safe in-memory recompute job store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._jobs: dict[str, RecomputeJob] = {}

    def save(self, job: RecomputeJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = replace(job)

    def get(self, job_id: str) -> RecomputeJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None
