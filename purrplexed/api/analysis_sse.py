"""
SSE relay for analysis runs.

The relay runs the analysis server-side and forwards every update as a
Server-Sent Event. Each event's ``data`` is ``{"event": ..., "payload": ...}``,
the same framing the streamed backend contract uses, so a Purrplexed relay
can itself serve as a ``stream`` backend.
"""
import logging
from contextlib import aclosing
from functools import lru_cache

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sse_starlette.sse import EventSourceResponse

from purrplexed.services.analysis_events import Failed
from purrplexed.services.analysis_schemas import CapturedPhoto
from purrplexed.services.analysis_session import AnalysisSession
from purrplexed.services.exceptions import InvalidImageError, QuotaExceededError
from purrplexed.services.image_encoder import ImageEncoder
from purrplexed.services.parallel_analysis_service import (
    GENERIC_FAILURE_MESSAGE,
    ParallelAnalysisService,
)
from purrplexed.services.transport import HTTPAnalysisTransport
from purrplexed.services.usage_meter import UsageMeter, build_usage_meter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analysis"])


@lru_cache
def get_usage_meter() -> UsageMeter:
    return build_usage_meter()


@lru_cache
def get_analysis_service() -> ParallelAnalysisService:
    return ParallelAnalysisService(HTTPAnalysisTransport())


@lru_cache
def get_image_encoder() -> ImageEncoder:
    return ImageEncoder()


@router.post("/analysis/stream")
async def stream_analysis(
    file: UploadFile = File(...),
    service: ParallelAnalysisService = Depends(get_analysis_service),
    meter: UsageMeter = Depends(get_usage_meter),
    encoder: ImageEncoder = Depends(get_image_encoder),
):
    """
    Analyze an uploaded cat photo, streaming progress via Server-Sent Events.

    Events (SSE event name = update kind):
    - started / uploadStarted / uploadCompleted
    - emotionSummaryCompleted, bodyLanguageCompleted, contextualEmotionCompleted,
      ownerAdviceCompleted, catJokesCompleted: {decoded stage result}
    - partialFailures: {"errors": [...]}
    - failed: {"message": "..."}

    Returns:
        EventSourceResponse with SSE stream

    Raises:
        HTTPException 400: Upload is not a readable image
        HTTPException 429: Free daily quota exhausted
    """
    image_data = await file.read()
    try:
        encoder.validate(image_data)
    except InvalidImageError as e:
        raise HTTPException(status_code=400, detail=str(e))

    session = AnalysisSession(service, meter)
    try:
        session.ensure_quota()
    except QuotaExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))

    photo = CapturedPhoto(image_data)

    async def event_generator():
        try:
            async with aclosing(session.updates(photo)) as updates:
                async for update in updates:
                    yield update.to_sse()
        except QuotaExceededError:
            # Quota ran out between the pre-check and the run
            logger.info("Quota exhausted before stream start")
            yield Failed(message=GENERIC_FAILURE_MESSAGE).to_sse()

    return EventSourceResponse(event_generator())


@router.get("/usage")
async def get_usage(meter: UsageMeter = Depends(get_usage_meter)):
    """Remaining free analyses for today."""
    return {
        "daily_limit": meter.daily_limit,
        "remaining": meter.remaining_free_count(),
        "can_start_job": meter.can_start_job(),
        "premium": meter.daily_limit is None,
    }
