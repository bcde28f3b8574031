"""Hairstyle generation API endpoints.

This module implements REST endpoints for the generation flow:
- POST /api/simulation/generate - Admit, serve from cache or generate, then charge
- GET /api/simulation/queue-status - Active jobs and estimated wait for a new job
- GET /api/simulation/queue-status/{job_id} - Position of one running job
- GET /api/simulation/generation-limit - Caller's free allowance and credit balance
- GET /api/simulation/cache-stats - Generation cache counters

Failures leave through the ServiceError handler as {"success": false, "error": kind, ...}.
"""

import base64
import binascii

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from hairsim.api.dependencies import (
    get_current_user_id,
    get_generation_cache,
    get_job_tracker,
    get_orchestrator,
    get_quota_ledger,
)
from hairsim.services.exceptions import ImageTooLargeError, InvalidImageError
from hairsim.services.generation.cache import GenerationCache
from hairsim.services.generation.job_tracker import JobTracker, format_wait_time
from hairsim.services.generation.orchestrator import GenerationOrchestrator, GenerationRequest
from hairsim.services.quota.ledger import QuotaLedger

logger = structlog.get_logger()
router = APIRouter(prefix="/api/simulation", tags=["simulation"])

MAX_IMAGE_BYTES = 10 * 1024 * 1024


# Request/Response Models


class GenerateRequest(BaseModel):
    """Request model for a hairstyle generation."""

    model_config = ConfigDict(populate_by_name=True)

    image_base64: str = Field(
        ...,
        alias="imageBase64",
        description="Source photo as base64 or a data URI",
        min_length=1,
    )
    haircut: str = Field(
        default="Random",
        description="Target hairstyle description",
        max_length=200,
    )
    hair_color: str = Field(
        default="Random",
        description="Target hair color ('Random' keeps the model's choice)",
        max_length=200,
    )
    model: str = Field(
        default="replicate",
        description="Generation model identifier",
        max_length=50,
    )
    gender: str | None = Field(
        default=None,
        description="Subject gender hint (omit or 'Auto-detect' to let the model decide)",
        max_length=20,
    )


class GenerateData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    result_image: str = Field(..., alias="resultImage")
    cached: bool
    funding_source: str = Field(..., alias="fundingSource")
    charged: bool
    job_id: str | None = Field(default=None, alias="jobId")
    options: dict[str, str]


class GenerateResponse(BaseModel):
    success: bool = True
    message: str
    data: GenerateData


def decode_image(image_base64: str) -> bytes:
    """Decode a base64 payload, accepting a data:image/...;base64, prefix.

    Raises:
        InvalidImageError: Empty or undecodable input (400)
        ImageTooLargeError: Decoded image over MAX_IMAGE_BYTES (413)
    """
    payload = image_base64.strip()
    if payload.startswith("data:"):
        _, _, payload = payload.partition(",")

    try:
        image_bytes = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImageError("Image must be valid base64") from e

    if not image_bytes:
        raise InvalidImageError("Image is required")
    if len(image_bytes) > MAX_IMAGE_BYTES:
        raise ImageTooLargeError(
            f"Image exceeds {MAX_IMAGE_BYTES // (1024 * 1024)}MB limit",
            maxBytes=MAX_IMAGE_BYTES,
        )
    return image_bytes


@router.post("/generate", response_model=GenerateResponse, response_model_by_alias=True)
async def generate_simulation(
    body: GenerateRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> GenerateResponse:
    """Generate (or reuse) a hairstyle transformation for the caller.

    HTTP Status Codes:
        200: Result delivered (fresh or cached)
        400: InvalidImage
        403: QuotaExceeded (body carries remaining and creditBalance)
        413: ImageTooLarge
        422: ProviderRejected
        503: ProviderUnavailable
        504: ProviderTimeout
    """
    image_bytes = decode_image(body.image_base64)
    options = {
        "haircut": body.haircut or "Random",
        "hair_color": body.hair_color or "Random",
        "gender": body.gender or "Auto-detect",
        "model": body.model,
    }

    outcome = await orchestrator.generate(
        GenerationRequest(
            user_id=user_id,
            image_content=body.image_base64,
            image_bytes=image_bytes,
            style=options["haircut"],
            color=options["hair_color"],
            model=body.model,
            gender=body.gender or "",
        )
    )

    return GenerateResponse(
        message=(
            "Simulation served from cache" if outcome.cached else "Simulation generated successfully"
        ),
        data=GenerateData(
            result_image=outcome.result_reference,
            cached=outcome.cached,
            funding_source=outcome.funding_source.value,
            charged=outcome.charged,
            job_id=outcome.job_id,
            options=options,
        ),
    )


@router.get("/queue-status")
async def get_queue_status(
    user_id: str = Depends(get_current_user_id),
    tracker: JobTracker = Depends(get_job_tracker),
):
    """Current load and the estimated wait for a job started now."""
    snapshot = tracker.snapshot()
    return {
        "success": True,
        "data": {
            "activeJobs": snapshot.active_count,
            "averageProcessingTimeSeconds": round(snapshot.average_processing_time, 1),
            "estimatedWaitSeconds": snapshot.estimated_wait_for_next,
            "estimatedWaitFormatted": format_wait_time(snapshot.estimated_wait_for_next),
        },
    }


@router.get("/queue-status/{job_id}")
async def get_job_status(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    tracker: JobTracker = Depends(get_job_tracker),
):
    """Position and remaining-time estimate of a running job.

    HTTP Status Codes:
        200: Job is running
        404: Job is unknown or already finished
    """
    progress = tracker.get_job_position(job_id)
    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    return {
        "success": True,
        "data": {
            "jobId": progress.job_id,
            "position": progress.position,
            "totalInQueue": progress.total_in_queue,
            "elapsedSeconds": progress.elapsed_seconds,
            "estimatedRemainingSeconds": progress.estimated_remaining_seconds,
            "estimatedRemainingFormatted": format_wait_time(progress.estimated_remaining_seconds),
            "status": progress.status,
        },
    }


@router.get("/generation-limit")
async def get_generation_limit(
    user_id: str = Depends(get_current_user_id),
    ledger: QuotaLedger = Depends(get_quota_ledger),
):
    """Caller's daily free allowance and purchased credit balance."""
    report = await ledger.report(user_id)
    return {"success": True, "data": report.to_dict()}


@router.get("/cache-stats")
async def get_cache_stats(
    user_id: str = Depends(get_current_user_id),
    cache: GenerationCache = Depends(get_generation_cache),
):
    return {"success": True, "data": cache.stats()}
