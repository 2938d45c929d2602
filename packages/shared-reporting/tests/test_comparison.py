"""Tests for model comparison."""

from datetime import UTC, date, datetime
from unittest.mock import Mock

import pytest

from touchcredit.attribution.config import AttributionModelConfig, ProcessingConfig
from touchcredit.attribution.exceptions import DataUnavailable, InvalidParameters, NotFound
from touchcredit.attribution.journey import JourneyAssembler
from touchcredit.attribution.processor import ConversionProcessor
from touchcredit.attribution.schema import Channel, ConversionEvent, ModelType, Touchpoint
from touchcredit.attribution.storage import (
    InMemoryConversionStore,
    InMemoryResultStore,
    InMemoryTouchpointStore,
)
from touchcredit.reporting.comparison import (
    ChannelDivergence,
    ModelComparisonService,
)


@pytest.fixture
def conversion(sample_conversion_data):
    return ConversionEvent.from_dict(sample_conversion_data)


@pytest.fixture
def results():
    return InMemoryResultStore()


@pytest.fixture
def processor(sample_touchpoint_data, results):
    touchpoints = InMemoryTouchpointStore([Touchpoint.from_dict(d) for d in sample_touchpoint_data])
    return ConversionProcessor(JourneyAssembler(touchpoints), results)


@pytest.fixture
def conversions(conversion, sample_conversion_data):
    return InMemoryConversionStore(
        [
            conversion,
            ConversionEvent.from_dict(
                {**sample_conversion_data, "id": "ORD-002", "customer_id": "CUST-NEW"}
            ),
        ]
    )


@pytest.fixture
def service(processor, conversions):
    return ModelComparisonService(processor, conversions)


class TestChannelDivergence:
    """Test ChannelDivergence statistics."""

    def test_variance_and_spread(self):
        """Test population variance and spread across models."""
        divergence = ChannelDivergence(
            Channel.DIRECT,
            {ModelType.FIRST_TOUCH: 0.0, ModelType.LAST_TOUCH: 1000.0},
        )
        assert divergence.spread == 1000.0
        assert divergence.variance == pytest.approx(250000.0)

    def test_single_model(self):
        """Test a single model has no variance."""
        divergence = ChannelDivergence(Channel.DIRECT, {ModelType.LINEAR: 5.0})
        assert divergence.variance == 0.0
        assert divergence.spread == 0.0


class TestCompare:
    """Test ModelComparisonService.compare."""

    def test_computes_all_models(self, service, results, conversion):
        """Test every model is computed when nothing is stored."""
        comparison = service.compare(conversion.id)

        assert list(comparison.results) == list(ModelType)
        assert comparison.computed == list(ModelType)
        assert results.get(conversion.id, ModelType.LINEAR) is not None

    def test_only_missing_models_computed(self, service, processor, conversion):
        """Test existing results are reused as-is."""
        processor.process(
            conversion,
            ProcessingConfig(
                models=(
                    AttributionModelConfig(ModelType.LINEAR),
                    AttributionModelConfig(ModelType.LAST_TOUCH),
                )
            ),
        )
        existing = processor.result_store.get(conversion.id, ModelType.LINEAR)

        comparison = service.compare(conversion.id)

        assert set(comparison.computed) == {
            ModelType.FIRST_TOUCH,
            ModelType.TIME_DECAY,
            ModelType.POSITION_BASED,
        }
        assert comparison.results[ModelType.LINEAR] is existing

    def test_second_compare_computes_nothing(self, service, conversion):
        """Test repeated comparisons read stored results."""
        service.compare(conversion.id)
        assert service.compare(conversion.id).computed == []

    def test_divergence(self, service, conversion):
        """Test per-channel revenue by model."""
        comparison = service.compare(conversion.id)
        by_channel = {d.channel: d for d in comparison.divergence}

        direct = by_channel[Channel.DIRECT]
        assert direct.revenue_by_model[ModelType.LAST_TOUCH] == pytest.approx(1000.0)
        assert direct.revenue_by_model[ModelType.FIRST_TOUCH] == pytest.approx(0.0)
        assert direct.revenue_by_model[ModelType.POSITION_BASED] == pytest.approx(400.0)
        assert comparison.max_spread == pytest.approx(1000.0)
        assert comparison.divergence[0].spread == pytest.approx(1000.0)

    def test_uses_active_parameters(self, processor, conversions, conversion):
        """Test missing models use the active configuration's parameters."""
        active = ProcessingConfig(
            models=(AttributionModelConfig(ModelType.TIME_DECAY, half_life_days=1),)
        )
        service = ModelComparisonService(processor, conversions, lambda: active)

        comparison = service.compare(conversion.id)

        assert comparison.results[ModelType.TIME_DECAY].parameters["half_life_days"] == 1
        assert comparison.results[ModelType.LINEAR].parameters == {"attribution_window_days": 90}

    def test_unknown_conversion(self, service):
        """Test NotFound for unknown conversions."""
        with pytest.raises(NotFound):
            service.compare("ORD-404")

    def test_source_unavailable(self, results, conversions, conversion):
        """Test availability failures propagate."""
        source = Mock()
        source.fetch_touchpoints.side_effect = DataUnavailable("down")
        service = ModelComparisonService(
            ConversionProcessor(JourneyAssembler(source), results), conversions
        )

        with pytest.raises(DataUnavailable):
            service.compare(conversion.id)

    def test_to_dict(self, service, conversion):
        """Test serialization."""
        data = service.compare(conversion.id).to_dict()

        assert set(data["results"]) == {m.value for m in ModelType}
        assert data["divergence"][0]["channel"] == "direct"


class TestCompareSet:
    """Test ModelComparisonService.compare_set."""

    def test_totals(self, service):
        """Test per-model totals across attributed and unattributed conversions."""
        report = service.compare_set(["ORD-001", "ORD-002", "ORD-001"])

        assert [c.conversion_id for c in report.comparisons] == ["ORD-001", "ORD-002"]
        assert report.computed_pairs == 10
        totals = report.totals[ModelType.LINEAR]
        assert totals.conversions == 2
        assert totals.attributed_conversions == 1
        assert totals.total_attributed_value == pytest.approx(1000.0)
        assert totals.unattributed_value == pytest.approx(1000.0)
        assert totals.average_per_conversion == pytest.approx(1000.0)

    def test_totals_all_unattributed(self, service):
        """Test the average is zero when no conversion was attributed."""
        totals = service.compare_set(["ORD-002"]).totals[ModelType.LINEAR]

        assert totals.conversions == 1
        assert totals.attributed_conversions == 0
        assert totals.average_per_conversion == 0.0
        assert totals.to_dict()["attributed_conversions"] == 0

    def test_to_dataframe(self, service):
        """Test long-form DataFrame export."""
        df = service.compare_set(["ORD-001"]).to_dataframe()

        assert list(df.columns) == ["conversion_id", "channel", "model_type", "attributed_revenue"]
        assert len(df) == 3 * len(ModelType)
        last_touch_direct = df[(df["channel"] == "direct") & (df["model_type"] == "last_touch")]
        assert last_touch_direct["attributed_revenue"].iloc[0] == pytest.approx(1000.0)

    def test_empty_set(self, service):
        """Test an empty set yields an empty report."""
        report = service.compare_set([])
        assert report.comparisons == []
        assert report.to_dict()["totals"] == {}


class TestComparePeriod:
    """Test ModelComparisonService.compare_period."""

    @pytest.fixture
    def later(self, conversions, sample_conversion_data):
        conversions.add(
            ConversionEvent.from_dict(
                {
                    **sample_conversion_data,
                    "id": "ORD-003",
                    "customer_id": "CUST-NEW",
                    "timestamp": "2025-04-01T09:00:00Z",
                }
            )
        )
        return conversions

    def test_whole_day_period(self, service, later):
        """Test plain dates select every conversion on those days."""
        report = service.compare_period(date(2025, 3, 1), date(2025, 3, 1))

        assert [c.conversion_id for c in report.comparisons] == ["ORD-001", "ORD-002"]
        assert report.totals[ModelType.LINEAR].conversions == 2

    def test_datetime_period(self, service, later):
        """Test datetime bounds are applied as given."""
        report = service.compare_period(
            datetime(2025, 3, 15, tzinfo=UTC), datetime(2025, 4, 30, tzinfo=UTC)
        )
        assert [c.conversion_id for c in report.comparisons] == ["ORD-003"]

    def test_empty_period(self, service):
        """Test a period without conversions yields an empty report."""
        report = service.compare_period(date(2024, 1, 1), date(2024, 1, 31))
        assert report.comparisons == []

    def test_reversed_period(self, service):
        """Test a period ending before it starts is rejected."""
        with pytest.raises(InvalidParameters) as exc:
            service.compare_period(date(2025, 3, 2), date(2025, 3, 1))
        assert "period_end" in exc.value.fields


class TestAttributionAnalysis:
    """Test ModelComparisonService.attribution_analysis."""

    @pytest.fixture
    def compared(self, service):
        service.compare_set(["ORD-001", "ORD-002"])
        return service

    def test_nothing_stored(self, service, results):
        """Test only stored results are read."""
        assert service.attribution_analysis() == []
        assert results.latest_results(ModelType.LINEAR) == []

    def test_rows_for_one_model(self, compared):
        """Test one row per credit, ordered by conversion and credit order."""
        rows = compared.attribution_analysis(model_type=ModelType.LINEAR)

        assert [(r["conversion_id"], r["touchpoint_id"]) for r in rows] == [
            ("ORD-001", "tp-001"),
            ("ORD-001", "tp-002"),
            ("ORD-001", "tp-003"),
            ("ORD-002", None),
        ]
        first = rows[0]
        assert first["model_type"] == "linear"
        assert first["computation_version"] == 1
        assert first["channel"] == "paid_search"
        assert first["campaign_id"] == "brand-search"
        assert first["position"] == "first"
        assert first["weight"] == pytest.approx(1 / 3)
        assert first["attributed_revenue"] == pytest.approx(1000.0 / 3)
        assert first["time_to_conversion_hours"] == pytest.approx(240.0)
        assert rows[-1]["status"] == "unattributed"
        assert rows[-1]["position"] == "unattributed"
        assert rows[-1]["attributed_revenue"] == pytest.approx(1000.0)

    def test_rows_for_one_conversion(self, compared):
        """Test filtering by conversion covers every model in order."""
        rows = compared.attribution_analysis(conversion_id="ORD-001")

        assert len(rows) == 3 * len(ModelType)
        assert list(dict.fromkeys(r["model_type"] for r in rows)) == [m.value for m in ModelType]
        assert {r["conversion_id"] for r in rows} == {"ORD-001"}

    def test_period_filter(self, compared):
        """Test the period filters on conversion time."""
        assert compared.attribution_analysis(
            period_start=date(2025, 4, 1), period_end=date(2025, 4, 30)
        ) == []
        rows = compared.attribution_analysis(
            model_type=ModelType.LAST_TOUCH,
            conversion_id="ORD-001",
            period_start=date(2025, 3, 1),
            period_end=date(2025, 3, 1),
        )
        assert len(rows) == 3

    def test_limit(self, compared):
        """Test the row limit."""
        assert len(compared.attribution_analysis(limit=2)) == 2

    def test_invalid_arguments(self, compared):
        """Test bad limits and half-open periods are invalid parameters."""
        with pytest.raises(InvalidParameters) as exc:
            compared.attribution_analysis(limit=0)
        assert exc.value.fields == {"limit": "must be >= 1"}

        with pytest.raises(InvalidParameters) as exc:
            compared.attribution_analysis(period_start=date(2025, 3, 1))
        assert "period_end" in exc.value.fields
