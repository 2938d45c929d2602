"""Tests for the conversion queue and worker pool."""

import threading
from unittest.mock import Mock

import pytest

from touchcredit.attribution.config import AttributionModelConfig, ProcessingConfig
from touchcredit.attribution.exceptions import DataUnavailable, Throttled
from touchcredit.attribution.journey import JourneyAssembler
from touchcredit.attribution.processor import ConversionProcessor
from touchcredit.attribution.schema import ConversionEvent, ModelType, Touchpoint
from touchcredit.attribution.storage import InMemoryResultStore, InMemoryTouchpointStore
from touchcredit.attribution.workers import ConversionQueue, WorkerPool, build_retrying

CONFIG = ProcessingConfig(models=(AttributionModelConfig(ModelType.LINEAR),))


class FlakySource:
    """Touchpoint source that fails a fixed number of times before recovering."""

    def __init__(self, store, failures):
        self.store = store
        self.failures = failures
        self.calls = 0

    def fetch_touchpoints(self, customer_id, since, until):
        self.calls += 1
        if self.calls <= self.failures:
            raise DataUnavailable("touchpoint store unreachable")
        return self.store.fetch_touchpoints(customer_id, since, until)


@pytest.fixture
def conversion(sample_conversion_data):
    return ConversionEvent.from_dict(sample_conversion_data)


@pytest.fixture
def touchpoints(sample_touchpoint_data):
    return InMemoryTouchpointStore([Touchpoint.from_dict(d) for d in sample_touchpoint_data])


def make_pool(source, results, queue=None, max_attempts=3):
    processor = ConversionProcessor(JourneyAssembler(source), results)
    return WorkerPool(
        processor,
        queue if queue is not None else ConversionQueue(10),
        lambda: CONFIG,
        worker_count=2,
        max_attempts=max_attempts,
        backoff_multiplier=0,
        max_backoff=0,
    )


class TestConversionQueue:
    """Test ConversionQueue."""

    def test_reject_newest_when_full(self, conversion):
        """Test a full queue raises Throttled for the new submission."""
        queue = ConversionQueue(max_size=1)
        queue.submit(conversion)

        with pytest.raises(Throttled) as exc:
            queue.submit(conversion)

        assert exc.value.retryable is True
        assert exc.value.code == "THROTTLED"
        assert len(queue) == 1
        assert queue.is_full

    def test_get_timeout(self):
        """Test get returns None when empty."""
        assert ConversionQueue().get(timeout=0.01) is None

    def test_invalid_size(self):
        """Test the queue needs room for at least one conversion."""
        with pytest.raises(ValueError):
            ConversionQueue(0)


class TestBuildRetrying:
    """Test the retry policy."""

    def test_retries_until_success(self):
        """Test retryable reports are retried."""
        retryable = Mock(is_retryable=True)
        done = Mock(is_retryable=False)
        func = Mock(side_effect=[retryable, done])

        report = build_retrying(max_attempts=3, backoff_multiplier=0, max_backoff=0)(func)

        assert report is done
        assert func.call_count == 2

    def test_returns_last_report_when_exhausted(self):
        """Test the final report is returned instead of raising."""
        retryable = Mock(is_retryable=True)
        func = Mock(return_value=retryable)

        report = build_retrying(max_attempts=3, backoff_multiplier=0, max_backoff=0)(func)

        assert report is retryable
        assert func.call_count == 3

    def test_final_report_not_retried(self):
        """Test a report without retryable failures is returned after one call."""
        failed = Mock(is_retryable=False, is_success=False)
        func = Mock(return_value=failed)

        report = build_retrying(max_attempts=3, backoff_multiplier=0, max_backoff=0)(func)

        assert report is failed
        assert func.call_count == 1


class TestWorkerPool:
    """Test WorkerPool."""

    def test_process_with_retry_recovers(self, touchpoints, conversion):
        """Test transient source failures are retried transparently."""
        source = FlakySource(touchpoints, failures=2)
        results = InMemoryResultStore()
        pool = make_pool(source, results)

        report = pool.process_with_retry(conversion)

        assert report.is_success
        assert source.calls == 3
        assert results.get(conversion.id, ModelType.LINEAR) is not None

    def test_workers_drain_queue(self, touchpoints, sample_conversion_data):
        """Test queued conversions are processed by the workers."""
        results = InMemoryResultStore()
        pool = make_pool(touchpoints, results)
        pool.start()
        try:
            for i in range(5):
                pool.queue.submit(
                    ConversionEvent.from_dict({**sample_conversion_data, "id": f"ORD-{i}"})
                )
            pool.drain()
        finally:
            pool.stop()

        assert pool.processed == 5
        assert len(results.latest_results(ModelType.LINEAR)) == 5
        assert not pool.is_running

    def test_concurrent_start_creates_one_set_of_workers(self, touchpoints):
        """Test racing start() calls spawn worker_count threads in total."""

        def attribution_workers():
            return {t for t in threading.enumerate() if t.name.startswith("attribution-worker-")}

        before = attribution_workers()
        pool = make_pool(touchpoints, InMemoryResultStore())
        barrier = threading.Barrier(4)

        def start():
            barrier.wait()
            pool.start()

        starters = [threading.Thread(target=start) for _ in range(4)]
        try:
            for starter in starters:
                starter.start()
            for starter in starters:
                starter.join(timeout=5)
            pool.start()

            assert len(pool._threads) == pool.worker_count
            assert len(attribution_workers() - before) == pool.worker_count
        finally:
            pool.stop()
        assert not pool.is_running

    def test_exhausted_attempts_dead_lettered(self, touchpoints, conversion):
        """Test conversions are parked after max attempts."""
        source = FlakySource(touchpoints, failures=100)
        pool = make_pool(source, InMemoryResultStore(), max_attempts=2)
        pool.start()
        try:
            pool.queue.submit(conversion)
            pool.drain()
        finally:
            pool.stop()

        assert source.calls == 2
        [entry] = pool.dead_letters
        assert entry.conversion == conversion
        assert entry.attempts == 2
        assert entry.error["category"] == "data_unavailable"
        assert entry.to_dict()["conversion_id"] == conversion.id

    def test_redrive(self, touchpoints, conversion):
        """Test dead-lettered conversions are re-queued and processed once the source recovers."""
        source = FlakySource(touchpoints, failures=2)
        results = InMemoryResultStore()
        pool = make_pool(source, results, max_attempts=2)
        pool.start()
        try:
            pool.queue.submit(conversion)
            pool.drain()
            assert len(pool.dead_letters) == 1

            assert pool.redrive() == 1
            pool.drain()
        finally:
            pool.stop()

        assert pool.dead_letters == []
        assert results.get(conversion.id, ModelType.LINEAR) is not None

    def test_redrive_keeps_entries_when_queue_full(self, touchpoints, sample_conversion_data):
        """Test entries stay parked when the queue has no room."""
        source = FlakySource(touchpoints, failures=100)
        queue = ConversionQueue(1)
        pool = make_pool(source, InMemoryResultStore(), queue=queue, max_attempts=1)
        for i in range(2):
            pool._handle(ConversionEvent.from_dict({**sample_conversion_data, "id": f"ORD-{i}"}))
        assert len(pool.dead_letters) == 2

        assert pool.redrive() == 1
        assert len(pool.dead_letters) == 1
        assert len(queue) == 1
