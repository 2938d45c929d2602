"""Tests for attribution schema."""

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from touchcredit.attribution.exceptions import ValidationError
from touchcredit.attribution.schema import (
    AttributionCredit,
    AttributionResult,
    Channel,
    ConversionEvent,
    ConversionType,
    ModelType,
    ResultStatus,
    SpendRecord,
    Touchpoint,
    TouchpointPosition,
    TouchpointType,
    ensure_utc,
    parse_timestamp,
)


class TestEnums:
    """Test schema enums."""

    def test_channel_parse_accepts_hyphens(self):
        """Test hyphenated channel names map to snake_case values."""
        assert Channel.parse("paid-search") == Channel.PAID_SEARCH
        assert Channel.parse(" Email ") == Channel.EMAIL
        assert Channel.parse(Channel.DIRECT) == Channel.DIRECT

    def test_channel_parse_unknown(self):
        """Test unknown channels raise ValueError."""
        with pytest.raises(ValueError):
            Channel.parse("carrier-pigeon")

    def test_model_type_values(self):
        """Test the five model types."""
        assert {m.value for m in ModelType} == {
            "first_touch",
            "last_touch",
            "linear",
            "time_decay",
            "position_based",
        }
        assert ModelType.parse("time-decay") == ModelType.TIME_DECAY

    def test_position_for_index(self):
        """Test journey positions."""
        assert TouchpointPosition.for_index(0, 1) == TouchpointPosition.ONLY
        assert TouchpointPosition.for_index(0, 3) == TouchpointPosition.FIRST
        assert TouchpointPosition.for_index(1, 3) == TouchpointPosition.MIDDLE
        assert TouchpointPosition.for_index(2, 3) == TouchpointPosition.LAST


class TestTimestamps:
    """Test timestamp helpers."""

    def test_naive_datetime_is_utc(self):
        """Test naive datetimes are interpreted as UTC."""
        value = ensure_utc(datetime(2025, 1, 1, 9, 0))
        assert value.tzinfo == UTC
        assert value.hour == 9

    def test_aware_datetime_converted(self):
        """Test aware datetimes are converted to UTC."""
        value = ensure_utc(datetime(2025, 1, 1, 9, 0, tzinfo=timezone(timedelta(hours=2))))
        assert value.hour == 7

    def test_parse_zulu(self):
        """Test parsing ISO-8601 with a Z suffix."""
        assert parse_timestamp("2025-01-15T10:30:00Z") == datetime(
            2025, 1, 15, 10, 30, tzinfo=UTC
        )

    def test_parse_invalid(self):
        """Test invalid timestamps raise ValidationError with the field name."""
        with pytest.raises(ValidationError) as exc:
            parse_timestamp("not-a-date", "from_date")
        assert "from_date" in exc.value.fields

    def test_parse_missing(self):
        """Test missing timestamps raise ValidationError."""
        with pytest.raises(ValidationError):
            parse_timestamp(None)


class TestTouchpoint:
    """Test Touchpoint dataclass."""

    def test_from_dict(self, sample_touchpoint_data):
        """Test creating a touchpoint from a dict."""
        touchpoint = Touchpoint.from_dict(sample_touchpoint_data[0])

        assert touchpoint.id == "tp-001"
        assert touchpoint.customer_id == "CUST-001"
        assert touchpoint.channel == Channel.PAID_SEARCH
        assert touchpoint.campaign_id == "brand-search"
        assert touchpoint.cost == 2.5
        assert touchpoint.touchpoint_type == TouchpointType.CLICK
        assert touchpoint.timestamp.tzinfo == UTC

    def test_from_dict_missing_fields(self):
        """Test missing required fields are reported together."""
        with pytest.raises(ValidationError) as exc:
            Touchpoint.from_dict({"id": "tp-1"})

        assert set(exc.value.fields) == {"customer_id", "timestamp", "channel"}
        assert exc.value.category == "validation"

    def test_from_dict_unknown_channel(self):
        """Test unknown channels are rejected."""
        with pytest.raises(ValidationError) as exc:
            Touchpoint.from_dict(
                {
                    "id": "tp-1",
                    "customer_id": "c",
                    "channel": "fax",
                    "timestamp": "2025-01-01T00:00:00Z",
                }
            )
        assert "channel" in exc.value.fields

    def test_negative_cost_rejected(self):
        """Test negative cost is rejected."""
        with pytest.raises(ValidationError) as exc:
            Touchpoint.from_dict(
                {
                    "id": "tp-1",
                    "customer_id": "c",
                    "channel": "email",
                    "timestamp": "2025-01-01T00:00:00Z",
                    "cost": -1,
                }
            )
        assert exc.value.fields["cost"] == "must be >= 0"

    @pytest.mark.parametrize("cost", ["nan", "inf", float("-inf")])
    def test_non_finite_cost_rejected(self, cost):
        """Test NaN and infinite costs are rejected."""
        with pytest.raises(ValidationError) as exc:
            Touchpoint.from_dict(
                {
                    "id": "tp-1",
                    "customer_id": "c",
                    "channel": "email",
                    "timestamp": "2025-01-01T00:00:00Z",
                    "cost": cost,
                }
            )
        assert exc.value.fields["cost"] == "must be a finite number"

    def test_raw_data_not_compared(self):
        """Test raw_data does not affect equality."""
        ts = datetime(2025, 1, 1, tzinfo=UTC)
        a = Touchpoint("tp", "c", Channel.EMAIL, ts, raw_data={"a": 1})
        b = Touchpoint("tp", "c", Channel.EMAIL, ts, raw_data={"b": 2})
        assert a == b

    def test_to_dict(self, sample_touchpoint_data):
        """Test serializing a touchpoint."""
        data = Touchpoint.from_dict(sample_touchpoint_data[0]).to_dict()
        assert data["channel"] == "paid_search"
        assert data["touchpoint_type"] == "click"


class TestConversionEvent:
    """Test ConversionEvent dataclass."""

    def test_from_dict(self, sample_conversion_data):
        """Test creating a conversion from a dict."""
        conversion = ConversionEvent.from_dict(sample_conversion_data)

        assert conversion.id == "ORD-001"
        assert conversion.revenue == 1000.0
        assert conversion.currency == "EUR"
        assert conversion.conversion_type == ConversionType.PURCHASE

    def test_negative_revenue_rejected(self, sample_conversion_data):
        """Test negative revenue raises ValidationError."""
        with pytest.raises(ValidationError) as exc:
            ConversionEvent.from_dict({**sample_conversion_data, "revenue": -5})
        assert exc.value.fields["revenue"] == "must be >= 0"

    def test_negative_revenue_rejected_in_constructor(self):
        """Test the constructor enforces non-negative revenue."""
        with pytest.raises(ValidationError):
            ConversionEvent("o", "c", datetime(2025, 1, 1, tzinfo=UTC), revenue=-1.0)

    def test_non_numeric_revenue(self, sample_conversion_data):
        """Test non-numeric revenue is rejected."""
        with pytest.raises(ValidationError) as exc:
            ConversionEvent.from_dict({**sample_conversion_data, "revenue": "lots"})
        assert exc.value.fields["revenue"] == "must be numeric"

    @pytest.mark.parametrize("revenue", ["nan", "inf", "-inf", "Infinity"])
    def test_non_finite_revenue(self, sample_conversion_data, revenue):
        """Test NaN and infinite revenue are rejected."""
        with pytest.raises(ValidationError) as exc:
            ConversionEvent.from_dict({**sample_conversion_data, "revenue": revenue})
        assert exc.value.fields["revenue"] == "must be a finite number"

    def test_non_finite_revenue_rejected_in_constructor(self):
        """Test the constructor rejects NaN revenue."""
        with pytest.raises(ValidationError) as exc:
            ConversionEvent("o", "c", datetime(2025, 1, 1, tzinfo=UTC), revenue=float("nan"))
        assert exc.value.fields == {"revenue": "must be a finite number"}

    def test_defaults(self):
        """Test default currency and type."""
        conversion = ConversionEvent.from_dict(
            {"id": "o", "customer_id": "c", "timestamp": "2025-01-01T00:00:00"}
        )
        assert conversion.revenue == 0.0
        assert conversion.currency == "USD"
        assert conversion.timestamp.tzinfo == UTC


class TestAttributionResult:
    """Test AttributionResult dataclass."""

    def _result(self, **overrides):
        values = {
            "conversion_id": "ORD-001",
            "model_type": ModelType.LINEAR,
            "computation_version": 1,
            "credits": (
                AttributionCredit("tp-1", 0.5, 50.0, Channel.EMAIL, order=0),
                AttributionCredit("tp-2", 0.5, 50.0, Channel.DIRECT, order=1),
            ),
            "revenue": 100.0,
            "customer_id": "CUST-001",
            "conversion_timestamp": datetime(2025, 3, 1, tzinfo=UTC),
        }
        values.update(overrides)
        return AttributionResult(**values)

    def test_key_and_total_weight(self):
        """Test identity key and weight sum."""
        result = self._result()
        assert result.key == ("ORD-001", ModelType.LINEAR, 1)
        assert result.total_weight == pytest.approx(1.0)
        assert not result.is_unattributed

    def test_same_payload_ignores_computed_at(self):
        """Test computed_at and job_id do not affect payload equality."""
        a = self._result()
        b = self._result(computed_at=datetime(2030, 1, 1, tzinfo=UTC), job_id="job-x")
        assert a.same_payload(b)

    def test_same_payload_detects_credit_change(self):
        """Test different credits are a different payload."""
        a = self._result()
        b = self._result(credits=(AttributionCredit("tp-1", 1.0, 100.0, Channel.EMAIL),))
        assert not a.same_payload(b)

    def test_dict_round_trip(self):
        """Test serialization preserves the payload."""
        result = self._result(parameters={"attribution_window_days": 90})
        restored = AttributionResult.from_dict(result.to_dict())
        assert restored.same_payload(result)
        assert restored.conversion_timestamp == result.conversion_timestamp

    def test_unattributed_credit(self):
        """Test the synthetic unattributed credit."""
        credit = AttributionCredit(None, 1.0, 100.0, position=TouchpointPosition.UNATTRIBUTED)
        result = self._result(credits=(credit,), status=ResultStatus.UNATTRIBUTED)
        assert credit.is_unattributed
        assert result.is_unattributed
        assert result.to_dict()["credits"][0]["channel"] is None


class TestSpendRecord:
    """Test SpendRecord dataclass."""

    def test_from_dict(self):
        """Test creating a spend record."""
        record = SpendRecord.from_dict(
            {"channel": "paid-social", "day": "2025-03-01", "amount": "120.5"}
        )
        assert record.channel == Channel.PAID_SOCIAL
        assert record.day == date(2025, 3, 1)
        assert record.amount == 120.5
        assert record.campaign_id is None

    def test_day_from_datetime(self):
        """Test datetime values are truncated to the day."""
        record = SpendRecord.from_dict(
            {"channel": "email", "day": datetime(2025, 3, 1, 15, 0), "amount": 1}
        )
        assert record.day == date(2025, 3, 1)

    def test_negative_amount(self):
        """Test negative spend is rejected."""
        with pytest.raises(ValidationError):
            SpendRecord(Channel.EMAIL, date(2025, 3, 1), -1.0)

    @pytest.mark.parametrize("amount", ["nan", "inf"])
    def test_non_finite_amount(self, amount):
        """Test NaN and infinite spend are rejected."""
        with pytest.raises(ValidationError) as exc:
            SpendRecord.from_dict({"channel": "email", "day": "2025-03-01", "amount": amount})
        assert exc.value.fields["amount"] == "must be a finite number"

    def test_non_finite_amount_in_constructor(self):
        """Test the constructor rejects infinite spend."""
        with pytest.raises(ValidationError):
            SpendRecord(Channel.EMAIL, date(2025, 3, 1), float("inf"))

    def test_invalid_day(self):
        """Test invalid days are rejected."""
        with pytest.raises(ValidationError) as exc:
            SpendRecord.from_dict({"channel": "email", "day": "yesterday", "amount": 1})
        assert "day" in exc.value.fields
