"""Tests for record normalizers."""

from datetime import UTC, date, datetime

import pandas as pd
import pytest

from touchcredit.attribution.exceptions import ValidationError
from touchcredit.attribution.normalizer import (
    ConversionEventNormalizer,
    SpendNormalizer,
    TouchpointNormalizer,
)
from touchcredit.attribution.schema import Channel


class TestTouchpointNormalizer:
    """Test TouchpointNormalizer."""

    def test_normalize_list(self):
        """Test normalizing rows with source column names."""
        rows = [
            {
                "event_id": "EV-1",
                "user_id": "CUST-001",
                "occurred_at": "2025-02-20T08:00:00Z",
                "marketing_channel": "paid-social",
                "utm_campaign_id": "spring",
                "spend": 0.75,
            }
        ]
        result = TouchpointNormalizer().normalize(rows)

        assert result.is_clean
        [touchpoint] = result.records
        assert touchpoint.id == "EV-1"
        assert touchpoint.customer_id == "CUST-001"
        assert touchpoint.channel == Channel.PAID_SOCIAL
        assert touchpoint.campaign_id == "spring"
        assert touchpoint.cost == 0.75
        assert touchpoint.raw_data["event_id"] == "EV-1"

    def test_custom_field_map(self):
        """Test custom mappings merge over the defaults."""
        normalizer = TouchpointNormalizer(field_map={"visitor": "customer_id"})
        result = normalizer.normalize(
            [
                {
                    "id": "tp-1",
                    "visitor": "V-9",
                    "timestamp": "2025-02-20T08:00:00",
                    "channel": "email",
                }
            ]
        )
        assert result.records[0].customer_id == "V-9"

    def test_dataframe_with_timestamps_and_missing_values(self):
        """Test pandas timestamps and NaN values are cleaned."""
        df = pd.DataFrame(
            [
                {
                    "id": "tp-1",
                    "customer_id": "CUST-001",
                    "timestamp": pd.Timestamp("2025-02-20 08:00:00"),
                    "channel": "direct",
                    "cost": float("nan"),
                },
                {
                    "id": "tp-2",
                    "customer_id": "CUST-001",
                    "timestamp": pd.Timestamp("2025-02-21 08:00:00"),
                    "channel": "email",
                    "cost": 1.0,
                },
            ]
        )
        result = TouchpointNormalizer().normalize(df)

        assert [t.cost for t in result.records] == [None, 1.0]
        assert result.records[0].timestamp == datetime(2025, 2, 20, 8, 0, tzinfo=UTC)

    def test_strict_raises(self):
        """Test strict mode raises on the first invalid row."""
        with pytest.raises(ValidationError):
            TouchpointNormalizer().normalize([{"id": "tp-1"}])

    def test_lenient_collects_rejections(self):
        """Test lenient mode collects rejected rows with their position."""
        rows = [
            {"id": "tp-1", "customer_id": "c", "timestamp": "2025-01-01", "channel": "email"},
            {"id": "tp-2", "customer_id": "c", "timestamp": "2025-01-01", "channel": "telegraph"},
        ]
        result = TouchpointNormalizer().normalize(rows, strict=False)

        assert len(result.records) == 1
        assert not result.is_clean
        rejected = result.rejected[0].to_dict()
        assert rejected["row_index"] == 1
        assert rejected["category"] == "validation"
        assert "channel" in rejected["fields"]


class TestConversionEventNormalizer:
    """Test ConversionEventNormalizer."""

    def test_order_rows(self):
        """Test POS-style order rows."""
        rows = [
            {
                "conversion_id": "ORD-1",
                "customer_email": "jane@example.com",
                "order_date": "2025-03-01T12:00:00Z",
                "total_amount": 150.0,
            }
        ]
        [conversion] = ConversionEventNormalizer().normalize(rows).records

        assert conversion.id == "ORD-1"
        assert conversion.customer_id == "jane@example.com"
        assert conversion.revenue == 150.0

    def test_negative_revenue_rejected(self):
        """Test negative revenue rows are rejected."""
        rows = [{"id": "ORD-1", "customer_id": "c", "timestamp": "2025-03-01", "revenue": -10}]
        result = ConversionEventNormalizer().normalize(rows, strict=False)

        assert result.records == []
        assert result.rejected[0].error.fields["revenue"] == "must be >= 0"


class TestSpendNormalizer:
    """Test SpendNormalizer."""

    def test_spend_rows(self):
        """Test ad platform spend rows."""
        rows = [
            {"date": "2025-03-01", "marketing_channel": "paid-search", "cost": 200.0},
            {"spend_date": "2025-03-02", "channel": "email", "spend": 50, "campaign_id": "c-1"},
        ]
        records = SpendNormalizer().normalize(rows).records

        assert [(r.channel, r.day, r.amount) for r in records] == [
            (Channel.PAID_SEARCH, date(2025, 3, 1), 200.0),
            (Channel.EMAIL, date(2025, 3, 2), 50.0),
        ]
        assert records[1].campaign_id == "c-1"
