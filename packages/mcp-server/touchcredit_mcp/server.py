"""
TouchCredit MCP Server - Main entry point.

MCP server exposing the attribution engine:
- Touchpoint and conversion ingestion
- Attribution results and model comparison
- Channel performance, ROI/ROAS and trends
- Historical recompute jobs
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from fastmcp import FastMCP

from touchcredit.attribution import AttributionError, ModelType
from touchcredit.attribution.exceptions import internal_error_payload
from touchcredit_mcp.service import AttributionService

logger = logging.getLogger(__name__)

# Initialize server
mcp = FastMCP("TouchCredit Attribution Engine")

_service: AttributionService | None = None


def get_service() -> AttributionService:
    """Return the process-wide service, building it from the environment on first use."""
    global _service
    if _service is None:
        _service = AttributionService.from_settings()
    return _service


def set_service(service: AttributionService | None) -> None:
    """Replace the service instance (used by tests and embedding hosts)."""
    global _service
    _service = service


def _call(tool: str, operation: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    """Run a tool operation and map failures to categorized error payloads."""
    try:
        return {"success": True, **operation()}
    except AttributionError as e:
        logger.warning(
            f"{tool} rejected: {e.category} ({e.code})", extra={"tool": tool, "code": e.code}
        )
        return {"success": False, "error": e.to_payload()}
    except Exception:
        logger.exception(f"{tool} failed", extra={"tool": tool})
        return {"success": False, "error": internal_error_payload()}


# =============================================================================
# Ingestion Tools
# =============================================================================


@mcp.tool()
def ingest_touchpoint(touchpoint: dict) -> dict:
    """
    Ingest a marketing touchpoint.

    Args:
        touchpoint: Touchpoint record with id, customer_id, channel and
            timestamp (ISO-8601); optional campaign_id, cost, touchpoint_type,
            campaign_name and utm_* fields

    Returns:
        Whether the touchpoint was stored (False for an identical duplicate)
    """
    return _call("ingest_touchpoint", lambda: get_service().ingest_touchpoint(touchpoint))


@mcp.tool()
def ingest_conversion(conversion: dict, wait: bool = False) -> dict:
    """
    Ingest a conversion and attribute it under every active model.

    Args:
        conversion: Conversion record with id, customer_id, timestamp and
            revenue; optional conversion_type, currency, order_id
        wait: Process immediately and return the processing report instead
            of queueing

    Returns:
        Storage and queueing status, plus the report when wait=True.
        A full queue is reported as a THROTTLED error; retry with backoff.
    """
    return _call(
        "ingest_conversion", lambda: get_service().ingest_conversion(conversion, wait=wait)
    )


# =============================================================================
# Attribution Tools
# =============================================================================


@mcp.tool()
def get_attribution_result(
    conversion_id: str,
    model_type: str,
    computation_version: int | None = None,
) -> dict:
    """
    Get the attribution result for a conversion under one model.

    Args:
        conversion_id: Conversion identifier
        model_type: first_touch, last_touch, linear, time_decay or position_based
        computation_version: Specific version (default: latest)

    Returns:
        Result with per-touchpoint weight and attributed revenue
    """
    return _call(
        "get_attribution_result",
        lambda: {
            "result": get_service()
            .get_attribution_result(conversion_id, model_type, computation_version)
            .to_dict()
        },
    )


@mcp.tool()
def compare_models(conversion_id: str) -> dict:
    """
    Compare every attribution model for one conversion.

    Missing model results are computed; existing ones are reused.

    Args:
        conversion_id: Conversion identifier

    Returns:
        One result per model type and per-channel divergence across models
    """
    return _call(
        "compare_models",
        lambda: {"comparison": get_service().compare_models(conversion_id).to_dict()},
    )


@mcp.tool()
def compare_model_set(conversion_ids: list[str]) -> dict:
    """
    Compare every attribution model across a set of conversions.

    Args:
        conversion_ids: Conversion identifiers

    Returns:
        Per-conversion comparisons and per-model totals
    """
    return _call(
        "compare_model_set",
        lambda: {"report": get_service().compare_model_set(conversion_ids).to_dict()},
    )


@mcp.tool()
def compare_models_for_period(period_start: str, period_end: str) -> dict:
    """
    Compare every attribution model across the conversions in a period.

    Args:
        period_start: Period start (YYYY-MM-DD or ISO-8601 timestamp)
        period_end: Period end, inclusive

    Returns:
        Per-conversion comparisons and per-model totals
    """
    return _call(
        "compare_models_for_period",
        lambda: {
            "report": get_service()
            .compare_models_for_period(period_start, period_end)
            .to_dict()
        },
    )


@mcp.tool()
def get_attribution_analysis(
    model_type: str | None = None,
    conversion_id: str | None = None,
    period_start: str | None = None,
    period_end: str | None = None,
    limit: int = 100,
) -> dict:
    """
    Get one row per touchpoint credit from the latest stored results.

    Nothing is computed; conversions without stored results are absent.

    Args:
        model_type: Restrict to one model (all models when omitted)
        conversion_id: Restrict to one conversion
        period_start: Conversion period start, given together with period_end
        period_end: Conversion period end, inclusive
        limit: Maximum number of rows

    Returns:
        Rows with conversion, model, version, touchpoint, channel, campaign,
        position, weight, attributed revenue and time to conversion
    """

    def operation() -> dict[str, Any]:
        rows = get_service().get_attribution_analysis(
            model_type=model_type,
            conversion_id=conversion_id,
            period_start=period_start,
            period_end=period_end,
            limit=limit,
        )
        return {"rows": rows, "count": len(rows)}

    return _call("get_attribution_analysis", operation)


# =============================================================================
# Performance Tools
# =============================================================================


@mcp.tool()
def get_channel_performance(
    period_start: str,
    period_end: str,
    model_type: str,
    channel: str | None = None,
    campaign_id: str | None = None,
) -> dict:
    """
    Get attributed revenue, spend, ROI and ROAS for a channel or campaign.

    Recomputes the snapshot if it is absent or stale. ROI and ROAS are null
    with spend_status "insufficient_spend_data" when there is no spend.

    Args:
        period_start: Period start (YYYY-MM-DD or ISO-8601 timestamp)
        period_end: Period end, inclusive
        model_type: Attribution model to report on
        channel: Channel (e.g., "email", "paid_search")
        campaign_id: Campaign identifier

    Returns:
        Channel performance snapshot
    """
    return _call(
        "get_channel_performance",
        lambda: {
            "snapshot": get_service()
            .get_channel_performance(period_start, period_end, model_type, channel, campaign_id)
            .to_dict()
        },
    )


@mcp.tool()
def get_performance_report(
    period_start: str,
    period_end: str,
    model_type: str,
    group_by: str = "channel",
) -> dict:
    """
    Get performance for every channel or campaign in a period.

    Args:
        period_start: Period start (YYYY-MM-DD or ISO-8601 timestamp)
        period_end: Period end, inclusive
        model_type: Attribution model to report on
        group_by: "channel" or "campaign"

    Returns:
        Rows per channel/campaign plus unattributed revenue
    """
    return _call(
        "get_performance_report",
        lambda: {
            "report": get_service()
            .get_performance_report(period_start, period_end, model_type, group_by)
            .to_dict()
        },
    )


@mcp.tool()
def get_channel_trend(
    period_start: str,
    period_end: str,
    model_type: str,
    bucket: str = "week",
    channel: str | None = None,
    campaign_id: str | None = None,
) -> dict:
    """
    Get channel or campaign performance per day, week or month.

    Args:
        period_start: Period start (YYYY-MM-DD or ISO-8601 timestamp)
        period_end: Period end, inclusive
        model_type: Attribution model to report on
        bucket: "day", "week" or "month"
        channel: Channel
        campaign_id: Campaign identifier

    Returns:
        One snapshot per bucket
    """
    return _call(
        "get_channel_trend",
        lambda: {
            "snapshots": [
                s.to_dict()
                for s in get_service().get_channel_trend(
                    period_start, period_end, model_type, bucket, channel, campaign_id
                )
            ]
        },
    )


# =============================================================================
# Recompute Job Tools
# =============================================================================


@mcp.tool()
def recompute_historical(
    model_type: str,
    new_parameters: dict,
    from_date: str,
) -> dict:
    """
    Apply new model parameters and recompute historical results.

    Starts a cancellable, resumable background job. Existing results are
    kept; each conversion gets a new computation version.

    Args:
        model_type: Model to recompute
        new_parameters: Any of half_life_days, first_pct, last_pct,
            attribution_window_days
        from_date: Recompute conversions at or after this ISO-8601 timestamp

    Returns:
        The job, including its job_id
    """
    return _call(
        "recompute_historical",
        lambda: {
            "job": get_service()
            .recompute_historical(model_type, new_parameters, from_date)
            .to_dict()
        },
    )


@mcp.tool()
def get_job_status(job_id: str) -> dict:
    """
    Get the status and progress of a recompute job.

    Args:
        job_id: Job identifier returned by recompute_historical
    """
    return _call(
        "get_job_status", lambda: {"job": get_service().get_job_status(job_id).to_dict()}
    )


@mcp.tool()
def cancel_job(job_id: str) -> dict:
    """
    Cancel a recompute job between conversions.

    Args:
        job_id: Job identifier
    """
    return _call("cancel_job", lambda: {"job": get_service().cancel_job(job_id).to_dict()})


@mcp.tool()
def resume_job(job_id: str) -> dict:
    """
    Resume a cancelled or failed recompute job after its last completed conversion.

    Args:
        job_id: Job identifier
    """
    return _call("resume_job", lambda: {"job": get_service().resume_job(job_id).to_dict()})


@mcp.tool()
def redrive_dead_letters() -> dict:
    """
    Re-queue conversions that exhausted their processing attempts.

    Returns:
        Number of conversions re-queued
    """
    return _call(
        "redrive_dead_letters", lambda: {"redriven": get_service().redrive_dead_letters()}
    )


# =============================================================================
# Resources
# =============================================================================


@mcp.resource("models://list")
def list_models() -> str:
    """List attribution models with their active parameters."""
    config = get_service().get_config()
    lines = []
    for model_type in ModelType:
        model = config.get(model_type)
        if model is None:
            lines.append(f"- {model_type.value} (inactive)")
        else:
            params = ", ".join(f"{k}={v}" for k, v in model.parameters().items())
            lines.append(f"- {model_type.value}: {params}")
    return "\n".join(lines)


# =============================================================================
# Prompts
# =============================================================================


@mcp.prompt()
def review_attribution(conversion_id: str) -> str:
    """
    Prompt for reviewing how models credit a conversion.

    Args:
        conversion_id: Conversion to review
    """
    return f"""Review the attribution of conversion "{conversion_id}".

Steps:
1. Run compare_models("{conversion_id}") to get every model's result
2. Identify the channels with the largest spread across models
3. Explain why first-touch, last-touch and time-decay disagree for this journey
4. Recommend which model best reflects this customer's path

Include:
- The journey in order, with time to conversion for each touchpoint
- Revenue credited to each channel under each model
- Any unattributed revenue
"""


@mcp.prompt()
def channel_roi_review(period_start: str, period_end: str, model_type: str = "linear") -> str:
    """Prompt for reviewing channel ROI over a period."""
    return f"""Review channel ROI from {period_start} to {period_end} under the {model_type} model.

Steps:
1. Run get_performance_report("{period_start}", "{period_end}", "{model_type}")
2. Rank channels by ROAS; flag any with insufficient spend data
3. Run get_channel_trend for the top and bottom channels by week
4. Compare against the position_based model to check sensitivity

Include:
- Attributed revenue, spend, ROI and ROAS per channel
- Unattributed revenue share
- Budget recommendations
"""


# =============================================================================
# Entry Point
# =============================================================================


def main():
    """Run the MCP server."""
    logging.basicConfig(level=logging.INFO)
    mcp.run()


if __name__ == "__main__":
    main()
