"""Per-customer advisory locks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class CustomerLockManager:
    """Serializes work on the same customer's journey.

    Conversions for different customers never contend. Holders for the same
    customer (journey assembly + weighting, touchpoint ingestion) wait for
    each other.

    Example:
        >>> locks = CustomerLockManager()
        >>> with locks.hold("cust-42"):
        ...     journey = assembler.assemble("cust-42", ts, 90)
    """

    def __init__(self, timeout: float | None = None):
        """Initialize the lock manager.

        Args:
            timeout: Seconds to wait for a customer lock; None waits forever.
        """
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}

    @contextmanager
    def hold(self, customer_id: str) -> Iterator[None]:
        """Hold the advisory lock for ``customer_id``.

        Raises:
            TimeoutError: If the lock cannot be acquired within ``timeout``.
        """
        with self._guard:
            lock = self._locks.setdefault(customer_id, threading.Lock())
            self._holders[customer_id] = self._holders.get(customer_id, 0) + 1

        try:
            acquired = lock.acquire(timeout=-1 if self.timeout is None else self.timeout)
            if not acquired:
                raise TimeoutError(f"Timed out waiting for customer lock: {customer_id}")
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._holders[customer_id] -= 1
                if self._holders[customer_id] == 0:
                    # No holders or waiters left
                    del self._holders[customer_id]
                    del self._locks[customer_id]

    def is_locked(self, customer_id: str) -> bool:
        """Return True if some holder currently owns the customer's lock."""
        with self._guard:
            lock = self._locks.get(customer_id)
        return lock is not None and lock.locked()
