"""Conversion processor - orchestrates attribution for one conversion.

For every active model the processor moves a conversion through:

    PENDING -> JOURNEY_ASSEMBLED -> WEIGHTED -> PERSISTED

with ``UNATTRIBUTED`` as the valid terminal state for empty journeys and
``FAILED`` when the touchpoint source or result store is unavailable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from touchcredit.attribution.config import AttributionModelConfig, ProcessingConfig
from touchcredit.attribution.exceptions import (
    AttributionError,
    Conflict,
    DataUnavailable,
    ValidationError,
)
from touchcredit.attribution.journey import Journey, JourneyAssembler
from touchcredit.attribution.locks import CustomerLockManager
from touchcredit.attribution.models import compute_weights
from touchcredit.attribution.schema import (
    AttributionCredit,
    AttributionResult,
    ConversionEvent,
    ModelType,
    ResultStatus,
    TouchpointPosition,
)
from touchcredit.attribution.storage import ResultStore

logger = logging.getLogger(__name__)


class ProcessingState(str, Enum):
    """State of one conversion x model pair."""

    PENDING = "pending"
    JOURNEY_ASSEMBLED = "journey_assembled"
    WEIGHTED = "weighted"
    PERSISTED = "persisted"
    UNATTRIBUTED = "unattributed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProcessingState.PERSISTED,
            ProcessingState.UNATTRIBUTED,
            ProcessingState.FAILED,
        )


@dataclass
class ModelOutcome:
    """Outcome of attributing one conversion under one model."""

    model_type: ModelType
    state: ProcessingState = ProcessingState.PENDING
    computation_version: int | None = None
    result: AttributionResult | None = None
    inserted: bool = False  # False when the version already existed
    error: AttributionError | None = None

    @property
    def is_retryable(self) -> bool:
        return self.state == ProcessingState.FAILED and bool(self.error and self.error.retryable)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_type": self.model_type.value,
            "state": self.state.value,
            "computation_version": self.computation_version,
            "inserted": self.inserted,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_payload() if self.error else None,
        }


@dataclass
class ProcessingReport:
    """Result of processing a conversion for all requested models."""

    conversion_id: str
    outcomes: list[ModelOutcome] = field(default_factory=list)
    touchpoints_found: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_success(self) -> bool:
        """Return True if no model failed."""
        return all(o.state != ProcessingState.FAILED for o in self.outcomes)

    @property
    def is_retryable(self) -> bool:
        """Return True if some model failed with a retryable error."""
        return any(o.is_retryable for o in self.outcomes)

    @property
    def results(self) -> dict[ModelType, AttributionResult]:
        return {o.model_type: o.result for o in self.outcomes if o.result is not None}

    @property
    def errors(self) -> list[AttributionError]:
        return [o.error for o in self.outcomes if o.error is not None]

    @property
    def duration_seconds(self) -> float | None:
        """Return processing duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def outcome(self, model_type: ModelType) -> ModelOutcome | None:
        for outcome in self.outcomes:
            if outcome.model_type == model_type:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversion_id": self.conversion_id,
            "success": self.is_success,
            "touchpoints_found": self.touchpoints_found,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "duration_seconds": self.duration_seconds,
        }


def build_result(
    conversion: ConversionEvent,
    journey: Journey,
    model: AttributionModelConfig,
    computation_version: int,
    job_id: str | None = None,
) -> AttributionResult:
    """Run ``model`` over ``journey`` and convert weights to revenue.

    An empty journey yields a single unattributed credit of weight 1.0.
    """
    revenue = conversion.revenue
    if journey.is_empty:
        credits: tuple[AttributionCredit, ...] = (
            AttributionCredit(
                touchpoint_id=None,
                weight=1.0,
                attributed_revenue=revenue,
                position=TouchpointPosition.UNATTRIBUTED,
            ),
        )
        status = ResultStatus.UNATTRIBUTED
    else:
        weights = compute_weights(journey, model)
        size = len(journey)
        credits = tuple(
            AttributionCredit(
                touchpoint_id=tp.id,
                weight=weight,
                attributed_revenue=weight * revenue,
                channel=tp.channel,
                campaign_id=tp.campaign_id,
                position=TouchpointPosition.for_index(index, size),
                order=index,
                time_to_conversion_hours=round(journey.days_before_conversion(tp) * 24, 4),
            )
            for index, (tp, weight) in enumerate(zip(journey, weights, strict=True))
        )
        status = ResultStatus.ATTRIBUTED

    return AttributionResult(
        conversion_id=conversion.id,
        model_type=model.model_type,
        computation_version=computation_version,
        credits=credits,
        status=status,
        revenue=revenue,
        customer_id=conversion.customer_id,
        conversion_timestamp=conversion.timestamp,
        parameters=model.parameters(),
        job_id=job_id,
    )


class ConversionProcessor:
    """Assembles journeys, runs models and persists attribution results.

    The journey is assembled once per conversion, using the widest window
    among the models being computed, and narrowed per model. The customer
    lock is held for assembly and weighting only, not for persistence.

    Example:
        >>> processor = ConversionProcessor(JourneyAssembler(touchpoints), results)
        >>> report = processor.process(conversion, ProcessingConfig())
        >>> report.results[ModelType.LINEAR].credits
    """

    def __init__(
        self,
        assembler: JourneyAssembler,
        result_store: ResultStore,
        locks: CustomerLockManager | None = None,
    ):
        self.assembler = assembler
        self.result_store = result_store
        self.locks = locks or CustomerLockManager()

    def process(
        self,
        conversion: ConversionEvent,
        config: ProcessingConfig,
        computation_version: int | None = None,
    ) -> ProcessingReport:
        """Attribute a conversion under every model in ``config``.

        Args:
            conversion: The conversion to attribute.
            config: Active models and their parameters.
            computation_version: Version to compute. When None, version 1 is
                computed for models without results and models that already
                have results are left untouched. When given, an existing
                result at that version is returned unchanged.

        Returns:
            ProcessingReport with one outcome per model.
        """
        if computation_version is not None and computation_version < 1:
            raise ValidationError(
                "computation_version must be >= 1",
                fields={"computation_version": "must be >= 1"},
            )

        targets: dict[ModelType, int] = {}
        report = ProcessingReport(conversion_id=conversion.id, started_at=datetime.now(UTC))

        for model in config.models:
            outcome = ModelOutcome(model_type=model.model_type)
            report.outcomes.append(outcome)
            try:
                existing = self.result_store.get(
                    conversion.id, model.model_type, computation_version
                )
            except DataUnavailable as e:
                self._fail(outcome, e)
                continue
            if existing is not None:
                self._mark_persisted(outcome, existing, inserted=False)
            else:
                targets[model.model_type] = computation_version or 1

        return self._run(conversion, config, targets, report)

    def recompute(
        self,
        conversion: ConversionEvent,
        config: ProcessingConfig,
        job_id: str,
    ) -> ProcessingReport:
        """Compute the next version for every model in ``config``.

        Models whose latest result was already written by ``job_id`` are
        skipped, so a resumed job never writes twice for a conversion.
        """
        targets: dict[ModelType, int] = {}
        report = ProcessingReport(conversion_id=conversion.id, started_at=datetime.now(UTC))

        for model in config.models:
            outcome = ModelOutcome(model_type=model.model_type)
            report.outcomes.append(outcome)
            try:
                latest = self.result_store.get(conversion.id, model.model_type)
            except DataUnavailable as e:
                self._fail(outcome, e)
                continue
            if latest is not None and latest.job_id == job_id:
                self._mark_persisted(outcome, latest, inserted=False)
            else:
                targets[model.model_type] = (latest.computation_version if latest else 0) + 1

        return self._run(conversion, config, targets, report, job_id=job_id)

    async def process_async(
        self,
        conversion: ConversionEvent,
        config: ProcessingConfig,
        computation_version: int | None = None,
    ) -> ProcessingReport:
        """Async wrapper for :meth:`process`."""
        return await asyncio.to_thread(self.process, conversion, config, computation_version)

    def _run(
        self,
        conversion: ConversionEvent,
        config: ProcessingConfig,
        targets: dict[ModelType, int],
        report: ProcessingReport,
        job_id: str | None = None,
    ) -> ProcessingReport:
        if not targets:
            report.completed_at = datetime.now(UTC)
            return report

        models = [m for m in config.models if m.model_type in targets]
        pending = [report.outcome(m.model_type) for m in models]
        window = max(m.attribution_window_days for m in models)
        computed: list[tuple[ModelOutcome, AttributionResult]] = []

        with self.locks.hold(conversion.customer_id):
            try:
                journey = self.assembler.assemble(conversion.customer_id, conversion.timestamp, window)
            except DataUnavailable as e:
                for outcome in pending:
                    self._fail(outcome, e)
                report.completed_at = datetime.now(UTC)
                return report

            report.touchpoints_found = len(journey)
            for model, outcome in zip(models, pending, strict=True):
                outcome.state = ProcessingState.JOURNEY_ASSEMBLED
                result = build_result(
                    conversion,
                    journey.restrict(model.attribution_window_days),
                    model,
                    targets[model.model_type],
                    job_id=job_id,
                )
                outcome.state = ProcessingState.WEIGHTED
                outcome.computation_version = result.computation_version
                computed.append((outcome, result))

        for outcome, result in computed:
            try:
                inserted = self.result_store.save(result)
            except (Conflict, DataUnavailable) as e:
                self._fail(outcome, e)
                continue
            if not inserted:
                # Another processor persisted this version first
                result = self.result_store.get(
                    result.conversion_id, result.model_type, result.computation_version
                ) or result
            self._mark_persisted(outcome, result, inserted=inserted)

        report.completed_at = datetime.now(UTC)
        logger.info(
            f"Processed conversion {conversion.id}: {report.touchpoints_found} touchpoints, "
            f"{len(computed)} model(s) computed"
        )
        return report

    def _mark_persisted(
        self,
        outcome: ModelOutcome,
        result: AttributionResult,
        inserted: bool,
    ) -> None:
        outcome.result = result
        outcome.inserted = inserted
        outcome.computation_version = result.computation_version
        outcome.state = (
            ProcessingState.UNATTRIBUTED if result.is_unattributed else ProcessingState.PERSISTED
        )

    def _fail(self, outcome: ModelOutcome, error: AttributionError) -> None:
        outcome.state = ProcessingState.FAILED
        outcome.error = error
        logger.warning(
            f"Attribution failed for model {outcome.model_type.value}: "
            f"{error.category} ({error.code})"
        )
