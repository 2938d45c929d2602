"""Bounded conversion queue and the worker pool that drains it.

Ingestion never blocks on processing: conversions are queued, and when the
queue is full the newest submission is rejected with ``Throttled``. Workers
retry conversions whose sources are unavailable with exponential backoff and
park them in a dead-letter list once attempts are exhausted.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from touchcredit.attribution.config import ProcessingConfig
from touchcredit.attribution.exceptions import AttributionError, Throttled, internal_error_payload
from touchcredit.attribution.processor import ConversionProcessor, ProcessingReport
from touchcredit.attribution.schema import ConversionEvent

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1_000
DEFAULT_WORKER_COUNT = 4
DEFAULT_MAX_ATTEMPTS = 5


def _log_retry(state: RetryCallState) -> None:
    conversion = state.args[0] if state.args else None
    logger.warning(
        f"Retrying conversion {getattr(conversion, 'id', '?')} "
        f"after attempt {state.attempt_number}"
    )


def build_retrying(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_multiplier: float = 0.5,
    max_backoff: float = 30.0,
) -> Retrying:
    """Retry policy for processor calls returning a ``ProcessingReport``.

    Retries while the report has retryable failures and returns the last
    report once attempts are exhausted instead of raising.
    """
    return Retrying(
        retry=retry_if_result(lambda report: report.is_retryable),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_multiplier, max=max_backoff),
        before_sleep=_log_retry,
        retry_error_callback=lambda state: state.outcome.result(),
    )


class ConversionQueue:
    """Bounded FIFO of conversions awaiting attribution.

    Overflow policy: reject newest. ``submit`` raises ``Throttled`` when the
    queue is full; the caller retries with backoff.
    """

    def __init__(self, max_size: int = DEFAULT_QUEUE_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._queue: queue.Queue[ConversionEvent] = queue.Queue(maxsize=max_size)

    def submit(self, conversion: ConversionEvent) -> None:
        """Enqueue a conversion without blocking.

        Raises:
            Throttled: If the queue is full.
        """
        try:
            self._queue.put_nowait(conversion)
        except queue.Full as e:
            logger.warning(f"Conversion queue full ({self.max_size}); rejecting {conversion.id}")
            raise Throttled(
                f"Processing queue is full; retry conversion {conversion.id} later"
            ) from e

    def get(self, timeout: float | None = None) -> ConversionEvent | None:
        """Return the next conversion, or None if none arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    def join(self) -> None:
        """Block until every queued conversion has been processed."""
        self._queue.join()

    def __len__(self) -> int:
        return self._queue.qsize()

    @property
    def is_full(self) -> bool:
        return self._queue.full()


@dataclass
class DeadLetterEntry:
    """A conversion parked after exhausting its attempts."""

    conversion: ConversionEvent
    attempts: int
    error: dict[str, Any]
    report: ProcessingReport | None = None
    parked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversion_id": self.conversion.id,
            "attempts": self.attempts,
            "error": self.error,
            "parked_at": self.parked_at.isoformat(),
        }


class WorkerPool:
    """Parallel processors consuming the conversion queue.

    Example:
        >>> pool = WorkerPool(processor, ConversionQueue(), lambda: config)
        >>> pool.start()
        >>> pool.queue.submit(conversion)
        >>> pool.drain()
        >>> pool.stop()
    """

    def __init__(
        self,
        processor: ConversionProcessor,
        conversion_queue: ConversionQueue,
        config_provider: Callable[[], ProcessingConfig],
        worker_count: int = DEFAULT_WORKER_COUNT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_multiplier: float = 0.5,
        max_backoff: float = 30.0,
    ):
        """Initialize the worker pool.

        Args:
            processor: Processor used for each conversion.
            conversion_queue: Queue to consume.
            config_provider: Returns the processing config for each invocation.
            worker_count: Number of worker threads.
            max_attempts: Attempts per conversion before dead-lettering.
            backoff_multiplier: Exponential backoff multiplier in seconds.
            max_backoff: Upper bound on a single backoff wait in seconds.
        """
        self.processor = processor
        self.queue = conversion_queue
        self.config_provider = config_provider
        self.worker_count = worker_count
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff = max_backoff

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._dead_letters: list[DeadLetterEntry] = []
        self.processed = 0

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def dead_letters(self) -> list[DeadLetterEntry]:
        with self._lock:
            return list(self._dead_letters)

    def start(self) -> None:
        """Start the worker threads. Calling it again while running is a no-op."""
        with self._lock:
            if self.is_running:
                return
            self._stop.clear()
            self._threads = [
                threading.Thread(target=self._work, name=f"attribution-worker-{i}", daemon=True)
                for i in range(self.worker_count)
            ]
            for thread in self._threads:
                thread.start()
        logger.info(f"Started {self.worker_count} attribution workers")

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal workers to stop and wait for them to exit."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Stopped attribution workers")

    def drain(self) -> None:
        """Block until the queue is empty and all work is finished."""
        self.queue.join()

    def process_with_retry(self, conversion: ConversionEvent) -> ProcessingReport:
        """Process a conversion, retrying while its failures are retryable.

        Returns:
            The report from the last attempt.
        """
        retrying = build_retrying(self.max_attempts, self.backoff_multiplier, self.max_backoff)
        return retrying(self.processor.process, conversion, self.config_provider())

    def redrive(self) -> int:
        """Re-submit dead-lettered conversions to the queue.

        Returns:
            Number of conversions re-submitted. Entries that cannot be
            queued because the queue is full stay parked.
        """
        with self._lock:
            entries, self._dead_letters = self._dead_letters, []

        submitted = 0
        for index, entry in enumerate(entries):
            try:
                self.queue.submit(entry.conversion)
            except Throttled:
                with self._lock:
                    self._dead_letters.extend(entries[index:])
                break
            submitted += 1

        logger.info(f"Re-drove {submitted} dead-lettered conversion(s)")
        return submitted

    def _work(self) -> None:
        while not self._stop.is_set():
            conversion = self.queue.get(timeout=0.1)
            if conversion is None:
                continue
            try:
                self._handle(conversion)
            finally:
                self.queue.task_done()

    def _handle(self, conversion: ConversionEvent) -> None:
        try:
            report = self.process_with_retry(conversion)
        except AttributionError as e:
            self._park(conversion, self.max_attempts, e.to_payload())
            return
        except Exception:
            logger.exception(f"Unexpected failure processing conversion {conversion.id}")
            self._park(conversion, 1, internal_error_payload())
            return

        with self._lock:
            self.processed += 1
        if report.is_retryable:
            errors = report.errors
            payload = errors[0].to_payload() if errors else internal_error_payload()
            self._park(conversion, self.max_attempts, payload, report)

    def _park(
        self,
        conversion: ConversionEvent,
        attempts: int,
        error: dict[str, Any],
        report: ProcessingReport | None = None,
    ) -> None:
        logger.warning(
            f"Parking conversion {conversion.id} after {attempts} attempt(s): {error.get('code')}"
        )
        with self._lock:
            self._dead_letters.append(
                DeadLetterEntry(conversion=conversion, attempts=attempts, error=error, report=report)
            )

