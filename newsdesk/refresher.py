import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from newsdesk.pipeline import IngestionPipeline, PipelineError
from newsdesk.schemas import TimeSlot

logger = logging.getLogger(__name__)

REFRESH_INTERVAL_SECONDS = 60  # must be shorter than the refresh window


class RefreshService:
    """
    Background loop that rebuilds each edition once, inside the first minutes
    after its hour. Requests outside that window rely on the cache alone.
    """

    def __init__(
        self,
        interval_seconds: int = REFRESH_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._refreshed: Set[Tuple[str, TimeSlot]] = set()

    async def run(self, pipeline: IngestionPipeline):
        """Entry point for the background task."""
        logger.info("RefreshService started, checking every %ds", self.interval_seconds)
        while True:
            await self.tick(pipeline)
            await asyncio.sleep(self.interval_seconds)

    async def tick(self, pipeline: IngestionPipeline) -> List[TimeSlot]:
        """Refresh every slot that is due and not yet refreshed today. Returns the refreshed slots."""
        now = self.clock()
        scheduler = pipeline.scheduler
        date = scheduler.today(now)

        # Entries for earlier days are no longer needed
        self._refreshed = {entry for entry in self._refreshed if entry[0] == date}

        refreshed = []
        for slot in scheduler.slots:
            if not scheduler.is_due_for_refresh(slot, now) or (date, slot) in self._refreshed:
                continue
            try:
                await pipeline.get_or_refresh(slot, date=date, force=True)
            except PipelineError as e:
                # Retried on the next tick while the window is still open
                logger.error(f"[{slot.value}] Scheduled refresh failed: {e}")
                continue
            self._refreshed.add((date, slot))
            refreshed.append(slot)
        return refreshed


async def refresh_all(pipeline: IngestionPipeline, date: Optional[str] = None) -> Dict[str, str]:
    """Force a rebuild of every slot for the day. Returns a per-slot outcome."""
    date = date or pipeline.scheduler.today()
    results: Dict[str, str] = {}
    for slot in pipeline.scheduler.slots:
        try:
            block = await pipeline.get_or_refresh(slot, date=date, force=True)
            results[slot.value] = f"ok ({len(block.stories)} stories)"
        except PipelineError as e:
            logger.error(f"[{slot.value}] Manual refresh failed: {e}")
            results[slot.value] = f"error: {e}"
    return results
