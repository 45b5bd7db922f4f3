import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import feedparser
import requests

from newsdesk.schemas import Category, RawArticle

logger = logging.getLogger(__name__)

NEWS_API_URL = "https://newsapi.org/v2/everything"
DEFAULT_TIMEOUT_SECONDS = 8.0
DEFAULT_WINDOW = timedelta(hours=48)
FEED_REUSE_SECONDS = 60.0

# Search phrases per category: the first is required, the rest are alternatives
CATEGORY_QUERIES: Dict[Category, List[str]] = {
    Category.TECH: [
        "technology innovation", "tech startup", "software development",
        "digital technology", "tech industry", "emerging technology",
    ],
    Category.FINANCE: [
        "business finance", "stock market", "financial technology",
        "investment news", "venture capital", "startup funding",
    ],
    Category.SCIENCE: [
        "scientific discovery", "research breakthrough", "space exploration",
        "quantum computing", "scientific innovation", "research development",
    ],
    Category.HEALTH: [
        "healthcare innovation", "medical technology", "health research",
        "digital health", "medical breakthrough", "healthcare startup",
    ],
    Category.AI: [
        "artificial intelligence", "machine learning", "AI technology",
        "neural networks", "AI research", "deep learning",
    ],
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def strip_html(text: str) -> str:
    """Remove HTML tags from a string, returning clean plain text."""
    return re.sub(r"<[^>]+>", "", text or "").strip()


def parse_date(entry) -> datetime:
    """
    Extract a UTC datetime from a feedparser entry.
    Falls back to the current time if no date is found.
    """
    parsed = getattr(entry, "published_parsed", None) or getattr(entry, "updated_parsed", None)
    if parsed:
        return datetime(*parsed[:6], tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp such as "2024-01-01T09:30:00Z" into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def build_query(category: Category) -> str:
    """`"technology innovation" OR tech startup OR ...` for the given category."""
    phrases = CATEGORY_QUERIES[category]
    main, alternatives = phrases[0], phrases[1:]
    return " OR ".join([f'"{main}"', *alternatives])


def within_window(article: RawArticle, window: timedelta, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return article.published_at >= now - window


# ---------------------------------------------------------------------------
# Base source: subclass this to add a new provider
# ---------------------------------------------------------------------------

class BaseSource(ABC):
    """
    Abstract base class for article providers.
    fetch() never raises: provider trouble is logged and reported as an empty list,
    which the pipeline treats as "no story for this category".
    """
    source_name: str

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout = timeout

    @abstractmethod
    def fetch(self, category: Category, window: timedelta = DEFAULT_WINDOW) -> List[RawArticle]:
        """Return recent candidate articles for the category."""


# ---------------------------------------------------------------------------
# NewsAPI: one search request per category
# ---------------------------------------------------------------------------

class NewsApiSource(BaseSource):
    source_name = "newsapi"

    def __init__(self, api_key: str, timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 page_size: int = 10, url: str = NEWS_API_URL):
        super().__init__(timeout)
        self.api_key = api_key
        self.page_size = page_size
        self.url = url

    def fetch(self, category: Category, window: timedelta = DEFAULT_WINDOW) -> List[RawArticle]:
        now = datetime.now(timezone.utc)
        params = {
            "q": build_query(category),
            "language": "en",
            "sortBy": "publishedAt",
            "from": (now - window).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "pageSize": self.page_size,
        }

        try:
            response = requests.get(
                self.url,
                params=params,
                headers={"X-Api-Key": self.api_key},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.warning(f"[{category.value}] NewsAPI timed out after {self.timeout}s")
            return []
        except requests.exceptions.RequestException as e:
            logger.warning(f"[{category.value}] NewsAPI request failed: {e}")
            return []

        if response.status_code == 429:
            logger.warning(f"[{category.value}] NewsAPI rate limit reached")
            return []

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"[{category.value}] NewsAPI returned non-JSON body (HTTP {response.status_code})")
            return []

        if not isinstance(data, dict) or data.get("status") != "ok" or not response.ok:
            message = data.get("message") if isinstance(data, dict) else None
            logger.warning(f"[{category.value}] NewsAPI error (HTTP {response.status_code}): {message}")
            return []

        items = data.get("articles")
        if not isinstance(items, list):
            logger.warning(f"[{category.value}] NewsAPI payload has no articles list")
            return []

        articles = []
        for item in items:
            article = self._to_article(item, category)
            if article is None:
                continue
            if within_window(article, window, now):
                articles.append(article)

        logger.info(f"[{category.value}] Fetched {len(articles)} articles from NewsAPI")
        return articles

    @staticmethod
    def _to_article(item, category: Category) -> Optional[RawArticle]:
        if not isinstance(item, dict):
            return None

        title = (item.get("title") or "").strip()
        url = item.get("url")
        published_at = parse_iso(item.get("publishedAt"))
        if not title or not url or published_at is None:
            logger.debug(f"[{category.value}] Skipping article with missing title, url or date")
            return None

        source = item.get("source") or {}
        return RawArticle(
            title=title,
            description=item.get("description") or None,
            content=item.get("content") or None,
            published_at=published_at,
            source_name=source.get("name") or "Unknown source",
            image_url=item.get("urlToImage") or None,
            url=url,
            category=category,
        )


# ---------------------------------------------------------------------------
# RSS: general feeds, categorized later by the keyword classifier
# ---------------------------------------------------------------------------

class FeedSource(BaseSource):
    """
    Reads a fixed list of RSS feeds. Articles come back untagged, so the same
    set is returned for every category and the pipeline classifies them.

    Feeds are downloaded in parallel and the whole download is bounded by
    `timeout`; a feed still running at that point is skipped. The download is
    shared by every fetch() within `reuse_seconds`, so one refresh reads each
    feed once rather than once per category.
    """
    source_name = "rss"

    def __init__(
        self,
        feed_urls: List[str],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        reuse_seconds: float = FEED_REUSE_SECONDS,
    ):
        super().__init__(timeout)
        self.feed_urls = list(feed_urls)
        self.reuse_seconds = reuse_seconds
        self._lock = threading.Lock()
        self._fetched_at: Optional[float] = None
        self._articles: List[RawArticle] = []

    def fetch(self, category: Category, window: timedelta = DEFAULT_WINDOW) -> List[RawArticle]:
        now = datetime.now(timezone.utc)
        articles = [a for a in self._all_articles() if within_window(a, window, now)]
        logger.info(f"[{category.value}] {len(articles)} feed articles inside the window")
        return articles

    def _all_articles(self) -> List[RawArticle]:
        # Concurrent callers wait here and reuse the download the first one made
        with self._lock:
            stale = self._fetched_at is None or time.monotonic() - self._fetched_at >= self.reuse_seconds
            if stale:
                self._articles = self._download_all()
                self._fetched_at = time.monotonic()
            return list(self._articles)

    def _download_all(self) -> List[RawArticle]:
        if not self.feed_urls:
            return []

        executor = ThreadPoolExecutor(max_workers=len(self.feed_urls))
        futures = {executor.submit(self._fetch_feed, url): url for url in self.feed_urls}
        done, pending = wait(futures, timeout=self.timeout)
        # Stragglers are abandoned; their own request timeout ends the threads
        executor.shutdown(wait=False, cancel_futures=True)

        for future in pending:
            logger.warning(f"[rss] {futures[future]} did not finish within {self.timeout}s, skipping")

        articles = []
        for future in futures:
            if future in done:
                articles.extend(future.result())  # _fetch_feed never raises
        logger.info(f"[rss] Fetched {len(articles)} articles from {len(done)}/{len(self.feed_urls)} feeds")
        return articles

    def _fetch_feed(self, feed_url: str) -> List[RawArticle]:
        try:
            # feedparser has no timeout of its own, so the bytes are fetched with requests
            response = requests.get(feed_url, timeout=self.timeout)
            response.raise_for_status()
            feed = feedparser.parse(response.content)
        except Exception as e:
            # Log the error and return an empty list so other feeds are unaffected
            logger.warning(f"[rss] Failed to fetch {feed_url}: {e}")
            return []

        feed_title = feed.get("feed", {}).get("title") or feed_url
        articles = []
        for entry in feed.entries:
            link = entry.get("link")
            title = strip_html(entry.get("title", ""))
            if not link or not title:
                continue

            # RSS body may be in 'summary' or nested inside 'content'
            raw_body = (
                entry.get("summary")
                or (entry.get("content") or [{}])[0].get("value")
                or ""
            )
            media = entry.get("media_content") or entry.get("media_thumbnail") or [{}]

            articles.append(RawArticle(
                title=title,
                description=strip_html(raw_body) or None,
                published_at=parse_date(entry),
                source_name=feed_title,
                image_url=media[0].get("url"),
                url=link,
            ))
        return articles


def build_source(settings) -> BaseSource:
    """NewsAPI when a key is configured, otherwise the RSS feeds."""
    if settings.news_api_key:
        return NewsApiSource(
            api_key=settings.news_api_key,
            timeout=settings.source_timeout_seconds,
            page_size=settings.page_size,
        )
    logger.warning("NEWS_API_KEY is not set, falling back to RSS feeds")
    return FeedSource(
        settings.feed_urls,
        timeout=settings.source_timeout_seconds,
        reuse_seconds=settings.feed_reuse_seconds,
    )
