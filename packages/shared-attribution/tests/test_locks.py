"""Tests for per-customer locks."""

import threading
import time

import pytest

from touchcredit.attribution.locks import CustomerLockManager


class TestCustomerLockManager:
    """Test CustomerLockManager."""

    def test_hold_and_release(self):
        """Test the lock is held inside the context and cleaned up after."""
        locks = CustomerLockManager()

        with locks.hold("CUST-001"):
            assert locks.is_locked("CUST-001")
            assert not locks.is_locked("CUST-002")

        assert not locks.is_locked("CUST-001")
        assert locks._locks == {}

    def test_same_customer_serialized(self):
        """Test holders of the same customer never overlap."""
        locks = CustomerLockManager()
        active = []
        overlaps = []

        def worker():
            with locks.hold("CUST-001"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []

    def test_different_customers_do_not_contend(self):
        """Test a held customer lock does not block another customer."""
        locks = CustomerLockManager(timeout=0.5)
        acquired = threading.Event()

        def other():
            with locks.hold("CUST-002"):
                acquired.set()

        with locks.hold("CUST-001"):
            thread = threading.Thread(target=other)
            thread.start()
            assert acquired.wait(timeout=1.0)
            thread.join()

    def test_timeout(self):
        """Test waiting past the timeout raises TimeoutError."""
        locks = CustomerLockManager(timeout=0.05)
        errors = []

        def contender():
            try:
                with locks.hold("CUST-001"):
                    pass
            except TimeoutError as e:
                errors.append(e)

        with locks.hold("CUST-001"):
            thread = threading.Thread(target=contender)
            thread.start()
            thread.join()

        assert len(errors) == 1
        assert locks._locks == {}

    def test_release_on_exception(self):
        """Test the lock is released when the body raises."""
        locks = CustomerLockManager()

        with pytest.raises(RuntimeError):
            with locks.hold("CUST-001"):
                raise RuntimeError("boom")

        assert not locks.is_locked("CUST-001")
