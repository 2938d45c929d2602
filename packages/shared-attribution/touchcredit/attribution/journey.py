"""Journey assembly - ordered touchpoints preceding a conversion."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from touchcredit.attribution.exceptions import DataUnavailable
from touchcredit.attribution.schema import Touchpoint, ensure_utc

logger = logging.getLogger(__name__)


class TouchpointSource(Protocol):
    """Read-only access to the touchpoint store."""

    def fetch_touchpoints(
        self,
        customer_id: str,
        since: datetime,
        until: datetime,
    ) -> list[Touchpoint]:
        """Return the customer's touchpoints with ``since <= timestamp <= until``.

        Raises:
            DataUnavailable: If the source cannot be reached.
        """
        ...


def journey_sort_key(touchpoint: Touchpoint) -> tuple[datetime, str]:
    """Ascending timestamp, ties broken by touchpoint id."""
    return (touchpoint.timestamp, touchpoint.id)


@dataclass(frozen=True)
class Journey:
    """Ordered touchpoints for one customer inside an attribution window."""

    customer_id: str
    conversion_timestamp: datetime
    window_days: int
    touchpoints: tuple[Touchpoint, ...] = ()

    def __len__(self) -> int:
        return len(self.touchpoints)

    def __iter__(self) -> Iterator[Touchpoint]:
        return iter(self.touchpoints)

    def __getitem__(self, index: int) -> Touchpoint:
        return self.touchpoints[index]

    @property
    def is_empty(self) -> bool:
        return not self.touchpoints

    @property
    def window_start(self) -> datetime:
        return self.conversion_timestamp - timedelta(days=self.window_days)

    def days_before_conversion(self, touchpoint: Touchpoint) -> float:
        """Fractional days between ``touchpoint`` and the conversion."""
        delta = self.conversion_timestamp - touchpoint.timestamp
        return delta.total_seconds() / 86_400

    def restrict(self, window_days: int) -> Journey:
        """Return the sub-journey for a narrower attribution window."""
        if window_days >= self.window_days:
            return self
        start = self.conversion_timestamp - timedelta(days=window_days)
        return Journey(
            customer_id=self.customer_id,
            conversion_timestamp=self.conversion_timestamp,
            window_days=window_days,
            touchpoints=tuple(tp for tp in self.touchpoints if tp.timestamp >= start),
        )

    @classmethod
    def from_touchpoints(
        cls,
        customer_id: str,
        conversion_timestamp: datetime,
        window_days: int,
        touchpoints: Sequence[Touchpoint],
    ) -> Journey:
        """Filter ``touchpoints`` to the window and order them deterministically."""
        until = ensure_utc(conversion_timestamp)
        since = until - timedelta(days=window_days)
        selected = [
            tp
            for tp in touchpoints
            if tp.customer_id == customer_id and since <= tp.timestamp <= until
        ]
        selected.sort(key=journey_sort_key)
        return cls(
            customer_id=customer_id,
            conversion_timestamp=until,
            window_days=window_days,
            touchpoints=tuple(selected),
        )


class JourneyAssembler:
    """Builds journeys from a touchpoint source.

    Example:
        >>> assembler = JourneyAssembler(touchpoint_store)
        >>> journey = assembler.assemble("cust-42", conversion.timestamp, 90)
        >>> [tp.channel for tp in journey]
    """

    def __init__(self, source: TouchpointSource):
        self.source = source

    def assemble(
        self,
        customer_id: str,
        conversion_timestamp: datetime,
        window_days: int,
    ) -> Journey:
        """Assemble the journey preceding a conversion.

        Touchpoints after the conversion are excluded; an empty journey is a
        valid result.

        Raises:
            DataUnavailable: If the touchpoint source is unreachable.
        """
        until = ensure_utc(conversion_timestamp)
        since = until - timedelta(days=window_days)
        try:
            touchpoints = self.source.fetch_touchpoints(customer_id, since, until)
        except DataUnavailable:
            logger.warning(f"Touchpoint source unavailable for customer {customer_id}")
            raise

        journey = Journey.from_touchpoints(customer_id, until, window_days, touchpoints)
        logger.debug(
            f"Assembled journey for {customer_id}: {len(journey)} touchpoints "
            f"in {window_days}-day window"
        )
        return journey
