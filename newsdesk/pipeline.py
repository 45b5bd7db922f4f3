import asyncio
import logging
import time
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Union

from newsdesk.cache import SlotCache, cache_key
from newsdesk.classifier import CategoryClassifier, classifier as default_classifier
from newsdesk.editorial import EditorialProcessor
from newsdesk.fetcher import BaseSource
from newsdesk.scheduler import SlotScheduler
from newsdesk.schemas import Category, RawArticle, Story, TimeBlock, TimeSlot

logger = logging.getLogger(__name__)

OVERALL_TIMEOUT_SECONDS = 9.0
FETCH_WINDOW = timedelta(hours=48)
REFRESH_LOCK_SECONDS = 30
PEER_POLL_SECONDS = 0.25
FALLBACK_RESERVE_SECONDS = 0.5  # kept back from the model calls for building the fallback story


class PipelineError(Exception):
    """No category produced a story, so there is no edition to serve or cache."""


class IngestionPipeline:
    """
    Serves editions from SlotCache and rebuilds them on a miss.

    A rebuild fans out one task per category (fetch → classify → select/rewrite),
    waits at most `overall_timeout` for them, and caches whatever succeeded.
    Concurrent requests for the same (date, slot) share one rebuild; the rebuild
    runs detached, so a caller that goes away does not cancel it for the others.
    """

    def __init__(
        self,
        cache: SlotCache,
        source: BaseSource,
        processor: EditorialProcessor,
        scheduler: SlotScheduler,
        categories: Optional[Sequence[Union[Category, str]]] = None,
        classifier: Optional[CategoryClassifier] = None,
        overall_timeout: float = OVERALL_TIMEOUT_SECONDS,
        fetch_window: timedelta = FETCH_WINDOW,
        refresh_lock_seconds: int = REFRESH_LOCK_SECONDS,
        fallback_reserve: float = FALLBACK_RESERVE_SECONDS,
    ):
        self.cache = cache
        self.source = source
        self.processor = processor
        self.scheduler = scheduler
        self.categories: List[Category] = [Category(c) for c in (categories or list(Category))]
        self.classifier = classifier or default_classifier
        self.overall_timeout = overall_timeout
        self.fetch_window = fetch_window
        self.refresh_lock_seconds = refresh_lock_seconds
        self.fallback_reserve = fallback_reserve

        # key → running rebuild, shared by every concurrent caller
        self._inflight: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, settings, cache: SlotCache, source: BaseSource,
                      processor: EditorialProcessor) -> "IngestionPipeline":
        return cls(
            cache=cache,
            source=source,
            processor=processor,
            scheduler=SlotScheduler.from_settings(settings),
            categories=settings.categories,
            overall_timeout=settings.overall_timeout_seconds,
            fetch_window=timedelta(hours=settings.fetch_window_hours),
            refresh_lock_seconds=settings.refresh_lock_seconds,
            fallback_reserve=settings.fallback_reserve_seconds,
        )

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    async def get_or_refresh(
        self,
        slot: Union[TimeSlot, str],
        date: Optional[str] = None,
        force: bool = False,
    ) -> TimeBlock:
        """
        Return the edition for (date, slot), rebuilding it if it is not cached.
        force=True skips the cache read but still writes the result through it.
        Raises PipelineError if the rebuild produced no stories.
        """
        slot = TimeSlot(slot)
        date = date or self.scheduler.today()
        key = cache_key(date, slot)

        if not force:
            block = await asyncio.to_thread(self.cache.get, date, slot)
            if block is not None:
                return block

        task = self._inflight.get(key)
        if task is None:
            logger.info(f"[{key}] Starting refresh{' (forced)' if force else ''}")
            task = asyncio.create_task(self._refresh(date, slot))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            logger.info(f"[{key}] Joining refresh already in progress")

        return await asyncio.shield(task)

    def is_refreshing(self, date: str, slot: Union[TimeSlot, str]) -> bool:
        return cache_key(date, slot) in self._inflight

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Retrieve the outcome so an unawaited failure is not reported as lost
        if not task.cancelled():
            task.exception()

    # -----------------------------------------------------------------------
    # Refresh
    # -----------------------------------------------------------------------

    async def _refresh(self, date: str, slot: TimeSlot) -> TimeBlock:
        key = cache_key(date, slot)

        acquired = await asyncio.to_thread(
            self.cache.acquire_refresh, date, slot, self.refresh_lock_seconds
        )
        if not acquired:
            block = await self._await_peer(date, slot)
            if block is not None:
                return block
            logger.warning(f"[{key}] Peer refresh did not finish in time, refreshing here")

        try:
            block = await self._assemble(date, slot)
            await asyncio.to_thread(self.cache.set, date, slot, block)
            return block
        finally:
            if acquired:
                await asyncio.to_thread(self.cache.release_refresh, date, slot)

    async def _await_peer(self, date: str, slot: TimeSlot) -> Optional[TimeBlock]:
        """Poll the cache while another worker holds the refresh marker."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.overall_timeout
        while loop.time() < deadline:
            await asyncio.sleep(PEER_POLL_SECONDS)
            block = await asyncio.to_thread(self.cache.get, date, slot)
            if block is not None:
                return block
        return None

    async def _assemble(self, date: str, slot: TimeSlot) -> TimeBlock:
        key = cache_key(date, slot)
        # Model calls must return before this, leaving time to build fallbacks
        editorial_deadline = time.monotonic() + max(self.overall_timeout - self.fallback_reserve, 0.0)
        tasks = {
            asyncio.create_task(self._process_category(category, editorial_deadline)): category
            for category in self.categories
        }

        done, pending = await asyncio.wait(tasks, timeout=self.overall_timeout)
        for task in pending:
            logger.warning(f"[{tasks[task].value}] Timed out after {self.overall_timeout}s, skipping")
            task.cancel()

        stories: List[Story] = []
        for task in done:
            story = task.result()  # _process_category never raises
            if story is not None:
                stories.append(story)

        if not stories:
            raise PipelineError(f"No stories could be produced for {key}")

        missing = len(self.categories) - len(stories)
        if missing:
            logger.warning(f"[{key}] Assembled {len(stories)} stories, {missing} categories missing")
        else:
            logger.info(f"[{key}] Assembled {len(stories)} stories")

        return TimeBlock(time=slot, date=date, stories=stories)

    async def _process_category(self, category: Category, deadline: float) -> Optional[Story]:
        try:
            articles = await asyncio.to_thread(self.source.fetch, category, self.fetch_window)
            candidates = self._candidates(category, articles)
            if not candidates:
                logger.warning(f"[{category.value}] No candidate articles")
                return None
            return await asyncio.to_thread(self.processor.process, category, candidates, deadline)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{category.value}] Failed to produce a story: {e}")
            return None

    def _candidates(self, category: Category, articles: List[RawArticle]) -> List[RawArticle]:
        """Articles belonging to this category, classifying the untagged ones by keyword."""
        candidates = []
        for article in articles:
            tag = article.category
            if tag is None:
                tag = self.classifier.classify(article)
                if tag is None:
                    continue
                article = article.model_copy(update={"category": tag})
            if tag == category:
                candidates.append(article)
        return candidates

    # -----------------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------------

    async def invalidate(self, slot: Union[TimeSlot, str], date: Optional[str] = None) -> None:
        date = date or self.scheduler.today()
        await asyncio.to_thread(self.cache.invalidate, date, TimeSlot(slot))
