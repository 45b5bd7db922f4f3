import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from newsdesk.config import Settings, get_settings
from newsdesk.pipeline import IngestionPipeline, PipelineError
from newsdesk.refresher import refresh_all
from newsdesk.schemas import (
    NewsResponse,
    RefreshRequest,
    SlotAvailability,
    SlotsResponse,
    TimeSlot,
)

logger = logging.getLogger(__name__)

router = APIRouter()

VALID_SLOTS = [slot.value for slot in TimeSlot]


def get_pipeline(request: Request) -> IngestionPipeline:
    """FastAPI dependency returning the pipeline built by the app lifespan."""
    return request.app.state.pipeline


def error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    body = {"status": "error", "error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def parse_slot(value: Optional[str]) -> Optional[TimeSlot]:
    try:
        return TimeSlot(value)
    except ValueError:
        return None


@router.get("/news", response_model=NewsResponse)
async def get_news(
    time_slot: Optional[str] = Query(None, alias="timeSlot"),
    force: bool = False,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """
    Return today's edition for a time slot.
    force=true skips the cached copy and rebuilds it (the result is still cached).
    """
    slot = parse_slot(time_slot)
    if slot is None:
        logger.info(f"[/news] Rejected time slot {time_slot!r}")
        return error_response(400, f"Invalid time slot. Must be one of: {', '.join(VALID_SLOTS)}")

    if not pipeline.scheduler.is_slot_open(slot):
        return error_response(404, f"The {slot.value} edition is not available yet")

    try:
        block = await pipeline.get_or_refresh(slot, force=force)
    except PipelineError as e:
        logger.error(f"[/news] {slot.value} failed: {e}")
        return error_response(500, "Failed to fetch news", details=str(e))

    logger.info(f"[/news] Returning {len(block.stories)} stories for {block.date} {slot.value}")
    return NewsResponse(time=block.time, date=block.date, stories=block.stories)


@router.get("/news/slots", response_model=SlotsResponse)
def get_slots(pipeline: IngestionPipeline = Depends(get_pipeline)):
    """Which editions are open right now, and which one opens next."""
    scheduler = pipeline.scheduler
    return SlotsResponse(
        date=scheduler.today(),
        slots=[
            SlotAvailability(time=slot, hour=scheduler.hour_of(slot), open=scheduler.is_slot_open(slot))
            for slot in scheduler.slots
        ],
        next_slot=scheduler.next_slot(),
    )


@router.post("/news/refresh")
async def refresh_news(
    payload: Optional[RefreshRequest] = Body(None),
    authorization: Optional[str] = Header(None),
    pipeline: IngestionPipeline = Depends(get_pipeline),
    settings: Settings = Depends(get_settings),
):
    """
    Rebuild one edition, or every edition when no timeSlot is given.
    Requires `Authorization: Bearer <CRON_SECRET>` when a secret is configured.
    """
    if settings.cron_secret and authorization != f"Bearer {settings.cron_secret}":
        return error_response(401, "Unauthorized")

    if payload is None or payload.time_slot is None:
        results = await refresh_all(pipeline)
        return {"status": "success", "results": results}

    slot = parse_slot(payload.time_slot)
    if slot is None:
        return error_response(400, f"Invalid time slot. Must be one of: {', '.join(VALID_SLOTS)}")

    try:
        block = await pipeline.get_or_refresh(slot, force=True)
    except PipelineError as e:
        return error_response(500, "Failed to process update", details=str(e))

    return {"status": "success", "time": slot.value, "date": block.date, "storiesCount": len(block.stories)}


@router.get("/health")
def health(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "env": {
            "newsApiKey": bool(settings.news_api_key),
            "openAiKey": bool(settings.openai_api_key),
        },
    }
