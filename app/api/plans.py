"""Plan generation API endpoints."""

import json
from functools import lru_cache
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from app.core.errors import ConfigurationError
from app.core.logging import get_logger
from app.core.schemas_pipeline import GeneratePlanRequest, PipelineOutcome
from app.graphs.plan_pipeline_graph import PlanPipeline

logger = get_logger(__name__)

router = APIRouter()


@lru_cache
def get_plan_pipeline() -> PlanPipeline:
    """Process-wide pipeline so cache and duration history survive across requests."""
    return PlanPipeline()


def _validate(pipeline: PlanPipeline, request: GeneratePlanRequest) -> None:
    try:
        pipeline.validate_request(request.idea)
    except ConfigurationError as e:
        logger.error(f"Plan generation misconfigured: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.post("/generate", response_model=PipelineOutcome)
async def generate_plan(
    request: GeneratePlanRequest,
    pipeline: PlanPipeline = Depends(get_plan_pipeline),
) -> PipelineOutcome:
    """
    Run the full pipeline and return the outcome.

    A failed stage is reported in the body with ``success: false``; only
    request and configuration problems produce error status codes.
    """
    _validate(pipeline, request)
    outcome = await pipeline.run(request.idea, request.language)
    if not outcome.success:
        logger.warning(
            f"Plan generation failed at {outcome.failed_stage}: {outcome.error}",
            extra={"run_id": outcome.run.id},
        )
    return outcome


@router.post("/generate/stream")
async def generate_plan_stream(
    request: GeneratePlanRequest,
    pipeline: PlanPipeline = Depends(get_plan_pipeline),
) -> StreamingResponse:
    """
    Run the pipeline, streaming run snapshots as Server-Sent Events.

    Each stage change is sent as ``{"type": "status", "run": ...}``; the last
    event is ``{"type": "complete", "run": ..., "outcome": ...}``.
    """
    _validate(pipeline, request)

    async def generate() -> AsyncGenerator[str, None]:
        try:
            async for event in pipeline.stream(request.idea, request.language):
                yield f"data: {event.model_dump_json()}\n\n"
        except Exception as e:
            logger.error(f"Error in plan stream: {e}", exc_info=True)
            yield f"data: {json.dumps({'type': 'error', 'message': str(e)})}\n\n"

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/stats")
async def get_plan_stats(pipeline: PlanPipeline = Depends(get_plan_pipeline)) -> dict[str, Any]:
    """Cache, parser strategy and event counters for this process."""
    return pipeline.stats()
