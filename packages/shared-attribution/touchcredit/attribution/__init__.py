"""
TouchCredit Attribution - Multi-touch attribution engine.

Distributes credit for each conversion across the customer's touchpoints
in the attribution window under five models:
- first_touch / last_touch: all credit to one end of the journey
- linear: equal credit
- time_decay: exponential decay by half-life before conversion
- position_based: first/last share with the remainder spread evenly

Usage:
    from touchcredit.attribution import (
        ConversionProcessor,
        InMemoryResultStore,
        InMemoryTouchpointStore,
        JourneyAssembler,
        ProcessingConfig,
    )

    touchpoints = InMemoryTouchpointStore()
    processor = ConversionProcessor(JourneyAssembler(touchpoints), InMemoryResultStore())
    report = processor.process(conversion, ProcessingConfig())
"""

from touchcredit.attribution.config import (
    AttributionModelConfig,
    AttributionSettings,
    ProcessingConfig,
)
from touchcredit.attribution.exceptions import (
    AttributionError,
    Conflict,
    DataUnavailable,
    InvalidParameters,
    NotFound,
    Throttled,
    ValidationError,
)
from touchcredit.attribution.jobs import JobStatus, RecomputeJob, RecomputeJobRunner
from touchcredit.attribution.journey import Journey, JourneyAssembler, TouchpointSource
from touchcredit.attribution.locks import CustomerLockManager
from touchcredit.attribution.models import compute_weights
from touchcredit.attribution.normalizer import (
    ConversionEventNormalizer,
    NormalizationResult,
    SpendNormalizer,
    TouchpointNormalizer,
)
from touchcredit.attribution.processor import (
    ConversionProcessor,
    ProcessingReport,
    ProcessingState,
)
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
)
from touchcredit.attribution.storage import (
    ConversionStore,
    InMemoryConversionStore,
    InMemoryJobStore,
    InMemoryResultStore,
    InMemoryTouchpointStore,
    JobStore,
    ResultStore,
    TouchpointStore,
)
from touchcredit.attribution.workers import ConversionQueue, WorkerPool

__all__ = [
    # Schema
    "Channel",
    "TouchpointType",
    "ConversionType",
    "ModelType",
    "TouchpointPosition",
    "ResultStatus",
    "Touchpoint",
    "ConversionEvent",
    "AttributionCredit",
    "AttributionResult",
    "SpendRecord",
    # Configuration
    "AttributionModelConfig",
    "ProcessingConfig",
    "AttributionSettings",
    # Errors
    "AttributionError",
    "ValidationError",
    "InvalidParameters",
    "DataUnavailable",
    "Throttled",
    "Conflict",
    "NotFound",
    # Journeys and models
    "Journey",
    "JourneyAssembler",
    "TouchpointSource",
    "compute_weights",
    # Processing
    "ConversionProcessor",
    "ProcessingReport",
    "ProcessingState",
    "CustomerLockManager",
    "ConversionQueue",
    "WorkerPool",
    "RecomputeJob",
    "RecomputeJobRunner",
    "JobStatus",
    # Storage
    "TouchpointStore",
    "ConversionStore",
    "ResultStore",
    "JobStore",
    "InMemoryTouchpointStore",
    "InMemoryConversionStore",
    "InMemoryResultStore",
    "InMemoryJobStore",
    # Normalizers
    "TouchpointNormalizer",
    "ConversionEventNormalizer",
    "SpendNormalizer",
    "NormalizationResult",
]
