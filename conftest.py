"""Shared pytest fixtures for TouchCredit packages."""

from datetime import UTC, datetime, timedelta

import pytest


@pytest.fixture
def conversion_time():
    """Fixed conversion timestamp used across journeys."""
    return datetime(2025, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def sample_touchpoint_data(conversion_time):
    """Three-step journey: paid search 10 days out, email 3 days out, direct at conversion."""
    return [
        {
            "id": "tp-001",
            "customer_id": "CUST-001",
            "channel": "paid-search",
            "campaign_id": "brand-search",
            "timestamp": (conversion_time - timedelta(days=10)).isoformat(),
            "cost": 2.5,
        },
        {
            "id": "tp-002",
            "customer_id": "CUST-001",
            "channel": "email",
            "campaign_id": "spring-newsletter",
            "timestamp": (conversion_time - timedelta(days=3)).isoformat(),
        },
        {
            "id": "tp-003",
            "customer_id": "CUST-001",
            "channel": "direct",
            "timestamp": conversion_time.isoformat(),
        },
    ]


@pytest.fixture
def sample_conversion_data(conversion_time):
    """A €1000 purchase closing the sample journey."""
    return {
        "id": "ORD-001",
        "customer_id": "CUST-001",
        "timestamp": conversion_time.isoformat(),
        "revenue": 1000.0,
        "currency": "EUR",
        "conversion_type": "purchase",
    }
