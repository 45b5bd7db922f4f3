"""
Tests for IngestionPipeline: fake source, real editorial fallbacks, in-memory cache tiers.
Async code is driven with asyncio.run(); no network calls.
"""
import asyncio
import threading
import time
from collections import Counter
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from newsdesk.cache import MemoryTier, SlotCache
from newsdesk.editorial import EditorialProcessor
from newsdesk.fetcher import DEFAULT_WINDOW, BaseSource
from newsdesk.pipeline import IngestionPipeline, PipelineError
from newsdesk.scheduler import SlotScheduler
from newsdesk.schemas import Category, RawArticle, TimeBlock, TimeSlot

DATE = "2024-01-01"
NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

def make_article(title: str, category=None, hours_ago: int = 1, **kwargs) -> RawArticle:
    defaults = {
        "title": title,
        "description": f"About {title}",
        "published_at": NOW - timedelta(hours=hours_ago),
        "source_name": "Wire",
        "url": f"https://example.com/{title.replace(' ', '-').lower()}",
        "category": category,
    }
    defaults.update(kwargs)
    return RawArticle(**defaults)


def tagged_articles(count: int = 3) -> dict:
    return {
        category: [make_article(f"{category.value} story {i}", category, hours_ago=i) for i in range(count)]
        for category in Category
    }


class FakeSource(BaseSource):
    """Returns canned articles per category and counts calls. Thread-safe."""
    source_name = "fake"

    def __init__(self, articles=None, latency=0.0, slow=None, failing=()):
        super().__init__()
        self.articles = articles if articles is not None else tagged_articles()
        self.latency = latency
        self.slow = slow or {}          # category → extra seconds
        self.failing = set(failing)
        self.calls = Counter()
        self._lock = threading.Lock()

    def fetch(self, category, window=DEFAULT_WINDOW):
        with self._lock:
            self.calls[category] += 1
        delay = self.latency + self.slow.get(category, 0.0)
        if delay:
            time.sleep(delay)
        if category in self.failing:
            raise RuntimeError(f"{category.value} provider exploded")
        return list(self.articles.get(category, []))


def hanging_client(timeouts: list) -> MagicMock:
    """
    A language-model client whose calls block for their whole timeout and then
    time out, as a stalled provider would. Records the timeout of every call.
    """
    client = MagicMock()

    def with_options(timeout):
        timeouts.append(timeout)
        bounded = MagicMock()

        def create(**kwargs):
            time.sleep(timeout)
            raise TimeoutError("request timed out")

        bounded.chat.completions.create.side_effect = create
        return bounded

    client.with_options.side_effect = with_options
    return client


def make_pipeline(source=None, cache=None, processor=None, **kwargs) -> IngestionPipeline:
    return IngestionPipeline(
        cache=cache or SlotCache(MemoryTier(), MemoryTier()),
        source=source or FakeSource(),
        processor=processor or EditorialProcessor(None),
        scheduler=SlotScheduler(),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Refresh and cache
# ---------------------------------------------------------------------------

class TestGetOrRefresh:
    def test_builds_one_story_per_category(self):
        pipeline = make_pipeline()
        block = asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

        assert block.time == TimeSlot.MORNING
        assert block.date == DATE
        assert sorted(s.category.value for s in block.stories) == sorted(c.value for c in Category)

    def test_story_ids_unique_within_block(self):
        block = asyncio.run(make_pipeline().get_or_refresh("10AM", date=DATE))
        assert len({s.id for s in block.stories}) == len(block.stories)

    def test_result_is_cached(self):
        pipeline = make_pipeline()
        block = asyncio.run(pipeline.get_or_refresh("3PM", date=DATE))
        assert pipeline.cache.get(DATE, "3PM") == block

    def test_cached_slot_is_not_refetched(self):
        source = FakeSource()
        pipeline = make_pipeline(source=source)

        async def twice():
            first = await pipeline.get_or_refresh("10AM", date=DATE)
            second = await pipeline.get_or_refresh("10AM", date=DATE)
            return first, second

        first, second = asyncio.run(twice())
        assert first == second
        assert all(count == 1 for count in source.calls.values())

    def test_cached_slot_makes_no_language_model_calls(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = RuntimeError("offline")
        client.with_options.return_value = client
        pipeline = make_pipeline(processor=EditorialProcessor(client))

        asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))
        calls_after_refresh = client.chat.completions.create.call_count
        asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

        assert client.chat.completions.create.call_count == calls_after_refresh

    def test_default_date_is_today(self):
        pipeline = make_pipeline()
        block = asyncio.run(pipeline.get_or_refresh("10AM"))
        assert block.date == pipeline.scheduler.today()

    def test_force_bypasses_cache_but_writes_through(self):
        source = FakeSource()
        pipeline = make_pipeline(source=source)
        old = TimeBlock(time=TimeSlot.MORNING, date=DATE, stories=[])
        pipeline.cache.set(DATE, "10AM", old)

        block = asyncio.run(pipeline.get_or_refresh("10AM", date=DATE, force=True))

        assert len(block.stories) == len(Category)
        assert pipeline.cache.get(DATE, "10AM") == block
        assert source.calls[Category.TECH] == 1

    def test_configured_categories_only(self):
        source = FakeSource()
        pipeline = make_pipeline(source=source, categories=["tech", "ai"])
        block = asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

        assert {s.category for s in block.stories} == {Category.TECH, Category.AI}
        assert set(source.calls) == {Category.TECH, Category.AI}

    def test_invalid_slot_rejected(self):
        with pytest.raises(ValueError):
            asyncio.run(make_pipeline().get_or_refresh("noon", date=DATE))


# ---------------------------------------------------------------------------
# Partial and total failure
# ---------------------------------------------------------------------------

class TestFailures:
    def test_partial_coverage_is_success(self):
        articles = tagged_articles()
        articles[Category.HEALTH] = []
        source = FakeSource(articles=articles, failing={Category.FINANCE})
        block = asyncio.run(make_pipeline(source=source).get_or_refresh("10AM", date=DATE))

        categories = {s.category for s in block.stories}
        assert categories == {Category.TECH, Category.SCIENCE, Category.AI}

    def test_all_sources_empty_is_hard_failure(self):
        pipeline = make_pipeline(source=FakeSource(articles={}))
        with pytest.raises(PipelineError):
            asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

    def test_hard_failure_is_not_cached(self):
        pipeline = make_pipeline(source=FakeSource(articles={}))
        with pytest.raises(PipelineError):
            asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))
        assert pipeline.cache.get(DATE, "10AM") is None

    def test_retry_after_hard_failure_fetches_again(self):
        source = FakeSource(articles={})
        pipeline = make_pipeline(source=source)
        with pytest.raises(PipelineError):
            asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

        source.articles = tagged_articles()
        block = asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

        assert len(block.stories) == len(Category)
        assert source.calls[Category.TECH] == 2

    def test_processor_crash_skips_category(self):
        class CrashingProcessor(EditorialProcessor):
            def process(self, category, candidates, deadline=None):
                if category == Category.AI:
                    raise RuntimeError("boom")
                return super().process(category, candidates, deadline)

        block = asyncio.run(make_pipeline(processor=CrashingProcessor(None)).get_or_refresh("10AM", date=DATE))

        assert Category.AI not in {s.category for s in block.stories}
        assert len(block.stories) == len(Category) - 1

    def test_overall_timeout_keeps_finished_categories(self):
        source = FakeSource(slow={Category.SCIENCE: 1.0})
        pipeline = make_pipeline(source=source, overall_timeout=0.3)
        block = asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

        categories = {s.category for s in block.stories}
        assert Category.SCIENCE not in categories
        assert len(categories) == len(Category) - 1

    def test_overall_timeout_with_nothing_finished_is_hard_failure(self):
        source = FakeSource(latency=0.6)
        pipeline = make_pipeline(source=source, overall_timeout=0.1)
        with pytest.raises(PipelineError):
            asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))
        assert pipeline.cache.get(DATE, "10AM") is None


# ---------------------------------------------------------------------------
# Classification of untagged articles
# ---------------------------------------------------------------------------

class TestUntaggedArticles:
    def test_untagged_articles_routed_by_keyword(self):
        feed = [
            make_article("Stock market hits record"),
            make_article("Hospital opens new wing"),
            make_article("Local bakery wins award"),
        ]
        # A general feed returns the same untagged set for every category
        source = FakeSource(articles={c: feed for c in Category})
        block = asyncio.run(make_pipeline(source=source).get_or_refresh("10AM", date=DATE))

        by_category = {s.category: s.headline for s in block.stories}
        assert by_category == {
            Category.FINANCE: "Stock market hits record",
            Category.HEALTH: "Hospital opens new wing",
        }

    def test_source_tag_wins_over_keywords(self):
        # The title reads like finance, but the source searched for tech
        article = make_article("Stock market loves this gadget", Category.TECH)
        source = FakeSource(articles={Category.TECH: [article]})
        block = asyncio.run(make_pipeline(source=source).get_or_refresh("10AM", date=DATE))

        assert [s.category for s in block.stories] == [Category.TECH]


# ---------------------------------------------------------------------------
# At-most-one refresh per (date, slot)
# ---------------------------------------------------------------------------

class TestRefreshGuard:
    def test_concurrent_cold_requests_share_one_refresh(self):
        source = FakeSource(latency=0.5)
        pipeline = make_pipeline(source=source)

        async def both():
            return await asyncio.gather(
                pipeline.get_or_refresh("10AM", date=DATE),
                pipeline.get_or_refresh("10AM", date=DATE),
            )

        first, second = asyncio.run(both())
        assert first == second
        for category in Category:
            assert source.calls[category] == 1, f"{category.value} fetched {source.calls[category]} times"

    def test_many_concurrent_requests_share_one_refresh(self):
        source = FakeSource(latency=0.2)
        pipeline = make_pipeline(source=source)

        async def many():
            return await asyncio.gather(*[pipeline.get_or_refresh("8PM", date=DATE) for _ in range(10)])

        blocks = asyncio.run(many())
        assert all(block == blocks[0] for block in blocks)
        assert sum(source.calls.values()) == len(Category)

    def test_different_slots_refresh_independently(self):
        source = FakeSource(latency=0.1)
        pipeline = make_pipeline(source=source)

        async def two_slots():
            return await asyncio.gather(
                pipeline.get_or_refresh("10AM", date=DATE),
                pipeline.get_or_refresh("3PM", date=DATE),
            )

        asyncio.run(two_slots())
        assert source.calls[Category.TECH] == 2

    def test_cancelled_caller_does_not_cancel_refresh(self):
        source = FakeSource(latency=0.3)
        pipeline = make_pipeline(source=source)

        async def scenario():
            caller = asyncio.create_task(pipeline.get_or_refresh("10AM", date=DATE))
            await asyncio.sleep(0.05)
            caller.cancel()
            return await pipeline.get_or_refresh("10AM", date=DATE)

        block = asyncio.run(scenario())
        assert len(block.stories) == len(Category)
        assert source.calls[Category.TECH] == 1
        assert pipeline.cache.get(DATE, "10AM") == block

    def test_inflight_entry_cleared_after_refresh(self):
        pipeline = make_pipeline()
        asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))
        assert pipeline.is_refreshing(DATE, "10AM") is False

    def test_marker_released_after_success(self):
        pipeline = make_pipeline()
        asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))
        assert pipeline.cache.acquire_refresh(DATE, "10AM", 30) is True

    def test_marker_released_after_hard_failure(self):
        pipeline = make_pipeline(source=FakeSource(articles={}))
        with pytest.raises(PipelineError):
            asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))
        assert pipeline.cache.acquire_refresh(DATE, "10AM", 30) is True

    def test_waits_for_peer_holding_marker(self):
        # Another worker sharing the durable tier is mid-refresh
        durable = MemoryTier()
        peer_cache = SlotCache(MemoryTier(), durable)
        source = FakeSource()
        pipeline = make_pipeline(source=source, cache=SlotCache(MemoryTier(), durable))
        peer_block = TimeBlock(time=TimeSlot.MORNING, date=DATE, stories=[])
        assert peer_cache.acquire_refresh(DATE, "10AM", 30)

        async def scenario():
            async def peer_finishes():
                await asyncio.sleep(0.3)
                peer_cache.set(DATE, "10AM", peer_block)
                peer_cache.release_refresh(DATE, "10AM")

            results = await asyncio.gather(pipeline.get_or_refresh("10AM", date=DATE), peer_finishes())
            return results[0]

        block = asyncio.run(scenario())
        assert block == peer_block
        assert sum(source.calls.values()) == 0

    def test_refreshes_itself_when_peer_never_finishes(self):
        durable = MemoryTier()
        SlotCache(MemoryTier(), durable).acquire_refresh(DATE, "10AM", 60)
        source = FakeSource()
        pipeline = make_pipeline(source=source, cache=SlotCache(MemoryTier(), durable), overall_timeout=0.5)

        block = asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))
        assert len(block.stories) == len(Category)
        assert source.calls[Category.TECH] == 1


# ---------------------------------------------------------------------------
# Language-model calls under the overall deadline
# ---------------------------------------------------------------------------

class TestEditorialDeadline:
    def test_rewrite_timing_out_still_yields_fallback_story(self):
        timeouts = []
        article = make_article("Markets slide", Category.FINANCE, description="Stocks fell sharply.")
        pipeline = make_pipeline(
            source=FakeSource(articles={Category.FINANCE: [article]}),
            processor=EditorialProcessor(hanging_client(timeouts), timeout=0.8),
            categories=["finance"],
            overall_timeout=0.9,
            fallback_reserve=0.2,
        )

        block = asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

        assert [(s.headline, s.content) for s in block.stories] == [("Markets slide", "Stocks fell sharply.")]
        assert timeouts and max(timeouts) <= 0.7

    def test_slow_selection_leaves_rewrite_no_time_but_story_survives(self):
        timeouts = []
        articles = [
            make_article("Older finance story", Category.FINANCE, hours_ago=5),
            make_article("Newest finance story", Category.FINANCE, hours_ago=1),
        ]
        pipeline = make_pipeline(
            source=FakeSource(articles={Category.FINANCE: articles}),
            processor=EditorialProcessor(hanging_client(timeouts), timeout=0.8),
            categories=["finance"],
            overall_timeout=0.9,
            fallback_reserve=0.2,
        )

        block = asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

        assert [s.headline for s in block.stories] == ["Newest finance story"]
        assert all(t <= 0.7 for t in timeouts)

    def test_llm_timeout_caps_each_call_when_time_is_plentiful(self):
        timeouts = []
        article = make_article("Markets slide", Category.FINANCE)
        pipeline = make_pipeline(
            source=FakeSource(articles={Category.FINANCE: [article]}),
            processor=EditorialProcessor(hanging_client(timeouts), timeout=0.1),
            categories=["finance"],
            overall_timeout=5.0,
        )

        asyncio.run(pipeline.get_or_refresh("10AM", date=DATE))

        assert timeouts == [0.1]
