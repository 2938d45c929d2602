"""
Attribution schema - touchpoints, conversions and attribution results.

This schema models the records the engine consumes and produces:
- Touchpoints: immutable marketing interactions per customer
- Conversion events: immutable business outcomes with revenue
- Attribution results: append-only, versioned credit distributions

All timestamps are stored as timezone-aware datetime objects in UTC.
Naive datetimes are interpreted as UTC on the way in.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from touchcredit.attribution.exceptions import ValidationError


class Channel(str, Enum):
    """Marketing channel a touchpoint belongs to."""

    PAID_SEARCH = "paid_search"
    PAID_SOCIAL = "paid_social"
    ORGANIC_SEARCH = "organic_search"
    EMAIL = "email"
    DIRECT = "direct"
    REFERRAL = "referral"
    DISPLAY = "display"
    AFFILIATE = "affiliate"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | Channel) -> Channel:
        """Parse a channel, accepting hyphenated spellings (``paid-search``)."""
        if isinstance(value, Channel):
            return value
        return cls(str(value).strip().lower().replace("-", "_"))


class TouchpointType(str, Enum):
    """Kind of marketing interaction."""

    IMPRESSION = "impression"
    CLICK = "click"
    VISIT = "visit"
    ENGAGEMENT = "engagement"
    EMAIL = "email"
    SOCIAL = "social"


class ConversionType(str, Enum):
    """Type of conversion event."""

    PURCHASE = "purchase"
    SIGNUP = "signup"
    LEAD = "lead"
    TRIAL = "trial"
    SUBSCRIPTION = "subscription"


class SourcePlatform(str, Enum):
    """Platform a conversion was recorded on."""

    SHOPIFY = "shopify"
    KAJABI = "kajabi"
    WEBSITE = "website"
    MANUAL = "manual"
    API = "api"


class ModelType(str, Enum):
    """Attribution model variants."""

    FIRST_TOUCH = "first_touch"
    LAST_TOUCH = "last_touch"
    LINEAR = "linear"
    TIME_DECAY = "time_decay"  # More credit to touchpoints near the conversion
    POSITION_BASED = "position_based"  # 40% first, 40% last, 20% middle

    @classmethod
    def parse(cls, value: str | ModelType) -> ModelType:
        """Parse a model type, accepting hyphenated spellings."""
        if isinstance(value, ModelType):
            return value
        return cls(str(value).strip().lower().replace("-", "_"))


class TouchpointPosition(str, Enum):
    """Position of a touchpoint within its journey."""

    ONLY = "only"
    FIRST = "first"
    MIDDLE = "middle"
    LAST = "last"
    UNATTRIBUTED = "unattributed"

    @classmethod
    def for_index(cls, index: int, size: int) -> TouchpointPosition:
        """Return the position of journey index ``index`` in a journey of ``size``."""
        if size == 1:
            return cls.ONLY
        if index == 0:
            return cls.FIRST
        if index == size - 1:
            return cls.LAST
        return cls.MIDDLE


class ResultStatus(str, Enum):
    """Outcome of attributing a conversion under one model."""

    ATTRIBUTED = "attributed"
    UNATTRIBUTED = "unattributed"


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any, field_name: str = "timestamp") -> datetime:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime.

    Raises:
        ValidationError: If the value is missing or not a valid timestamp.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError as e:
            raise ValidationError(
                f"Invalid {field_name} format: {value}",
                fields={field_name: "must be an ISO-8601 timestamp"},
            ) from e
    raise ValidationError(
        f"Missing required field: {field_name}",
        fields={field_name: "is required"},
    )


def _require(data: dict[str, Any], *names: str) -> dict[str, str]:
    """Return field errors for required keys that are missing or blank."""
    errors = {}
    for name in names:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors[name] = "is required"
    return errors


def _parse_amount(value: Any, field_name: str, errors: dict[str, str]) -> float:
    """Parse a non-negative monetary amount, recording errors."""
    if value is None:
        return 0.0
    try:
        amount = float(value)
    except (ValueError, TypeError):
        errors[field_name] = "must be numeric"
        return 0.0
    if not math.isfinite(amount):
        errors[field_name] = "must be a finite number"
    elif amount < 0:
        errors[field_name] = "must be >= 0"
    return amount


@dataclass(frozen=True)
class Touchpoint:
    """
    A single recorded marketing interaction for a customer.

    Immutable once ingested.

    Example:
        touchpoint = Touchpoint(
            id="tp-001",
            customer_id="cust-42",
            channel=Channel.PAID_SEARCH,
            timestamp=datetime(2025, 1, 5, tzinfo=UTC),
            campaign_id="brand-search",
            cost=1.25,
        )
    """

    id: str
    customer_id: str
    channel: Channel
    timestamp: datetime
    campaign_id: str | None = None
    cost: float | None = None

    touchpoint_type: TouchpointType = TouchpointType.CLICK
    campaign_name: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None

    raw_data: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage or transport."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "channel": self.channel.value,
            "campaign_id": self.campaign_id,
            "timestamp": self.timestamp.isoformat(),
            "cost": self.cost,
            "touchpoint_type": self.touchpoint_type.value,
            "campaign_name": self.campaign_name,
            "utm_source": self.utm_source,
            "utm_medium": self.utm_medium,
            "utm_campaign": self.utm_campaign,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Touchpoint:
        """Create a Touchpoint from a dictionary.

        Raises:
            ValidationError: If ``id``, ``customer_id``, ``timestamp`` or
                ``channel`` is missing, or a value is out of domain.
        """
        errors = _require(data, "id", "customer_id", "timestamp", "channel")

        channel = None
        if "channel" not in errors:
            try:
                channel = Channel.parse(data["channel"])
            except ValueError:
                errors["channel"] = f"unknown channel: {data['channel']}"

        touchpoint_type = TouchpointType.CLICK
        if data.get("touchpoint_type"):
            try:
                touchpoint_type = TouchpointType(data["touchpoint_type"])
            except ValueError:
                errors["touchpoint_type"] = f"unknown touchpoint type: {data['touchpoint_type']}"

        cost = None
        if data.get("cost") is not None:
            cost = _parse_amount(data["cost"], "cost", errors)

        timestamp = None
        if "timestamp" not in errors:
            try:
                timestamp = parse_timestamp(data["timestamp"])
            except ValidationError as e:
                errors.update(e.fields)

        if errors:
            raise ValidationError("Invalid touchpoint record", fields=errors)

        return cls(
            id=str(data["id"]),
            customer_id=str(data["customer_id"]),
            channel=channel,
            timestamp=timestamp,
            campaign_id=data.get("campaign_id") or None,
            cost=cost,
            touchpoint_type=touchpoint_type,
            campaign_name=data.get("campaign_name"),
            utm_source=data.get("utm_source"),
            utm_medium=data.get("utm_medium"),
            utm_campaign=data.get("utm_campaign"),
            raw_data=data.get("raw_data", {}),
        )


@dataclass(frozen=True)
class ConversionEvent:
    """
    A business outcome with an associated revenue value.

    Immutable once ingested.
    """

    id: str
    customer_id: str
    timestamp: datetime
    revenue: float = 0.0
    conversion_type: ConversionType = ConversionType.PURCHASE

    currency: str = "USD"
    order_id: str | None = None
    source_platform: SourcePlatform = SourcePlatform.API

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))
        if not math.isfinite(self.revenue):
            raise ValidationError(
                "Conversion revenue must be a finite number",
                fields={"revenue": "must be a finite number"},
            )
        if self.revenue < 0:
            raise ValidationError(
                "Conversion revenue must be >= 0",
                fields={"revenue": "must be >= 0"},
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage or transport."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "timestamp": self.timestamp.isoformat(),
            "revenue": self.revenue,
            "conversion_type": self.conversion_type.value,
            "currency": self.currency,
            "order_id": self.order_id,
            "source_platform": self.source_platform.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversionEvent:
        """Create a ConversionEvent from a dictionary.

        Raises:
            ValidationError: If a required field is missing, revenue is
                negative, or an enum value is unknown.
        """
        errors = _require(data, "id", "customer_id", "timestamp")
        revenue = _parse_amount(data.get("revenue", 0), "revenue", errors)

        conversion_type = ConversionType.PURCHASE
        if data.get("conversion_type"):
            try:
                conversion_type = ConversionType(data["conversion_type"])
            except ValueError:
                errors["conversion_type"] = f"unknown conversion type: {data['conversion_type']}"

        source_platform = SourcePlatform.API
        if data.get("source_platform"):
            try:
                source_platform = SourcePlatform(data["source_platform"])
            except ValueError:
                errors["source_platform"] = f"unknown source platform: {data['source_platform']}"

        timestamp = None
        if "timestamp" not in errors:
            try:
                timestamp = parse_timestamp(data["timestamp"])
            except ValidationError as e:
                errors.update(e.fields)

        if errors:
            raise ValidationError("Invalid conversion record", fields=errors)

        return cls(
            id=str(data["id"]),
            customer_id=str(data["customer_id"]),
            timestamp=timestamp,
            revenue=revenue,
            conversion_type=conversion_type,
            currency=data.get("currency") or "USD",
            order_id=data.get("order_id"),
            source_platform=source_platform,
        )


@dataclass(frozen=True)
class AttributionCredit:
    """Credit assigned to one touchpoint (or the unattributed bucket)."""

    touchpoint_id: str | None
    weight: float
    attributed_revenue: float
    channel: Channel | None = None
    campaign_id: str | None = None
    position: TouchpointPosition = TouchpointPosition.ONLY
    order: int = 0
    time_to_conversion_hours: float | None = None

    @property
    def is_unattributed(self) -> bool:
        """Return True for the synthetic unattributed entry."""
        return self.touchpoint_id is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "touchpoint_id": self.touchpoint_id,
            "weight": self.weight,
            "attributed_revenue": self.attributed_revenue,
            "channel": self.channel.value if self.channel else None,
            "campaign_id": self.campaign_id,
            "position": self.position.value,
            "order": self.order,
            "time_to_conversion_hours": self.time_to_conversion_hours,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttributionCredit:
        return cls(
            touchpoint_id=data.get("touchpoint_id"),
            weight=float(data["weight"]),
            attributed_revenue=float(data["attributed_revenue"]),
            channel=Channel(data["channel"]) if data.get("channel") else None,
            campaign_id=data.get("campaign_id"),
            position=TouchpointPosition(data.get("position", "only")),
            order=int(data.get("order", 0)),
            time_to_conversion_hours=data.get("time_to_conversion_hours"),
        )


@dataclass(frozen=True)
class AttributionResult:
    """
    Credit distribution for one conversion under one model.

    Results are append-only: a recomputation produces a new result with a
    higher ``computation_version`` and never replaces an existing one.
    """

    conversion_id: str
    model_type: ModelType
    computation_version: int
    credits: tuple[AttributionCredit, ...]
    status: ResultStatus = ResultStatus.ATTRIBUTED
    revenue: float = 0.0
    customer_id: str | None = None
    conversion_timestamp: datetime | None = None
    parameters: dict[str, Any] = field(default_factory=dict, hash=False)
    computed_at: datetime = field(default_factory=lambda: datetime.now(UTC), compare=False)
    job_id: str | None = field(default=None, compare=False)

    @property
    def key(self) -> tuple[str, ModelType, int]:
        """Identity of this result version."""
        return (self.conversion_id, self.model_type, self.computation_version)

    @property
    def is_unattributed(self) -> bool:
        return self.status == ResultStatus.UNATTRIBUTED

    @property
    def total_weight(self) -> float:
        return sum(c.weight for c in self.credits)

    def same_payload(self, other: AttributionResult) -> bool:
        """Return True if ``other`` carries the same credits and inputs."""
        return (
            self.key == other.key
            and self.status == other.status
            and self.credits == other.credits
            and self.revenue == other.revenue
            and self.parameters == other.parameters
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage or transport."""
        return {
            "conversion_id": self.conversion_id,
            "model_type": self.model_type.value,
            "computation_version": self.computation_version,
            "status": self.status.value,
            "revenue": self.revenue,
            "customer_id": self.customer_id,
            "conversion_timestamp": (
                self.conversion_timestamp.isoformat() if self.conversion_timestamp else None
            ),
            "parameters": dict(self.parameters),
            "computed_at": self.computed_at.isoformat(),
            "job_id": self.job_id,
            "credits": [c.to_dict() for c in self.credits],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttributionResult:
        conversion_timestamp = data.get("conversion_timestamp")
        computed_at = data.get("computed_at")
        return cls(
            conversion_id=data["conversion_id"],
            model_type=ModelType(data["model_type"]),
            computation_version=int(data["computation_version"]),
            credits=tuple(AttributionCredit.from_dict(c) for c in data.get("credits", [])),
            status=ResultStatus(data.get("status", "attributed")),
            revenue=float(data.get("revenue", 0.0)),
            customer_id=data.get("customer_id"),
            conversion_timestamp=(
                parse_timestamp(conversion_timestamp, "conversion_timestamp")
                if conversion_timestamp
                else None
            ),
            parameters=dict(data.get("parameters") or {}),
            computed_at=(
                parse_timestamp(computed_at, "computed_at") if computed_at else datetime.now(UTC)
            ),
            job_id=data.get("job_id"),
        )


@dataclass(frozen=True)
class SpendRecord:
    """Spend for a channel (optionally a campaign) on one day.

    Supplied by the external ingestion/sync subsystem.
    """

    channel: Channel
    day: date
    amount: float
    campaign_id: str | None = None

    def __post_init__(self) -> None:
        if not math.isfinite(self.amount):
            raise ValidationError(
                "Spend must be a finite number", fields={"amount": "must be a finite number"}
            )
        if self.amount < 0:
            raise ValidationError("Spend must be >= 0", fields={"amount": "must be >= 0"})

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "campaign_id": self.campaign_id,
            "day": self.day.isoformat(),
            "amount": self.amount,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpendRecord:
        """Create a SpendRecord from a dictionary.

        Raises:
            ValidationError: If channel, day or amount is missing or invalid.
        """
        errors = _require(data, "channel", "day", "amount")
        amount = 0.0
        if "amount" not in errors:
            amount = _parse_amount(data["amount"], "amount", errors)

        channel = None
        if "channel" not in errors:
            try:
                channel = Channel.parse(data["channel"])
            except ValueError:
                errors["channel"] = f"unknown channel: {data['channel']}"

        day = None
        if "day" not in errors:
            value = data["day"]
            if isinstance(value, datetime):
                day = value.date()
            elif isinstance(value, date):
                day = value
            else:
                try:
                    day = date.fromisoformat(str(value)[:10])
                except ValueError:
                    errors["day"] = "must be an ISO-8601 date"

        if errors:
            raise ValidationError("Invalid spend record", fields=errors)

        return cls(
            channel=channel,
            day=day,
            amount=amount,
            campaign_id=data.get("campaign_id") or None,
        )
