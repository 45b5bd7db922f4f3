import json
import logging
import re
import time
import uuid
from typing import Any, List, Optional

from openai import OpenAI
from pydantic import ValidationError

from newsdesk.schemas import Category, RawArticle, RewriteResult, SelectionResult, Story

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Decoding parameters: fixed so output length and variability stay predictable
# ---------------------------------------------------------------------------

TEMPERATURE = 0.7
SELECTION_MAX_TOKENS = 150
REWRITE_MAX_TOKENS = 400     # ≈ 250 words of output
MAX_CANDIDATES = 5
LLM_TIMEOUT_SECONDS = 8.0
PARAGRAPH_BREAK = "\n\n"

SELECTION_PROMPT = """You are an expert news editor for a modern, minimalist news platform.
Your task is to analyze the provided articles and select the most intriguing and impactful story.

Consider these factors:
1. Novelty and uniqueness of the story
2. Potential impact on readers' lives or society
3. Scientific or technological advancement
4. Cultural or social significance

From the articles provided, select the one that would most make someone want to learn more.
Your response must be valid JSON with this format:
{"selectedIndex": number, "reason": "Brief explanation of why this story is most intriguing"}

IMPORTANT: Your response must be ONLY the JSON object, with no additional text before or after."""

REWRITE_PROMPT = """You are a skilled news writer for a modern, minimalist news platform.
Rewrite the provided article with these guidelines:

1. Create a concise, intriguing headline that makes readers want to learn more
2. Summarize the key points in 3 to 4 short paragraphs, about 150 words in total
3. Maintain a clear, engaging style
4. Focus on facts and impact
5. Use simple language but don't oversimplify complex topics

Your response must be valid JSON with this format, where paragraphs are separated by "\\n\\n":
{"headline": "Your rewritten headline", "content": "First paragraph\\n\\nSecond paragraph\\n\\nThird paragraph"}

IMPORTANT:
1. Your response must be ONLY the JSON object, with no additional text before or after
2. Use "\\n\\n" for paragraph breaks in the content
3. Do not use actual newlines in the JSON, keep it all on one line"""


class EditorialError(Exception):
    """A selection or rewrite call failed or returned something unusable."""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def parse_json_response(raw: Optional[str]) -> Any:
    """
    Parse a model reply as strict JSON.
    Markdown code fences are stripped and literal newlines collapsed to spaces first.
    """
    if not raw or not raw.strip():
        raise EditorialError("Empty response from language model")

    text = raw.strip()
    text = re.sub(r"^```(?:json)?\s*", "", text)
    text = re.sub(r"\s*```$", "", text)
    text = text.strip().replace("\r", " ").replace("\n", " ")

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise EditorialError(f"Response is not valid JSON: {e}") from e


def validate_selection(obj: Any, candidate_count: int) -> SelectionResult:
    if not isinstance(obj, dict):
        raise EditorialError("Selection response is not a JSON object")

    index = obj.get("selectedIndex")
    reason = obj.get("reason")

    # bool is a subclass of int in Python, but true/false is not an index
    if not isinstance(index, int) or isinstance(index, bool):
        raise EditorialError(f"selectedIndex must be an integer, got {index!r}")
    if not 0 <= index < candidate_count:
        raise EditorialError(f"selectedIndex {index} out of range for {candidate_count} candidates")
    if not isinstance(reason, str) or not reason.strip():
        raise EditorialError("reason must be a non-empty string")

    return SelectionResult(selected_index=index, reason=reason.strip())


def validate_rewrite(obj: Any) -> RewriteResult:
    if not isinstance(obj, dict):
        raise EditorialError("Rewrite response is not a JSON object")

    headline = obj.get("headline")
    content = obj.get("content")
    if not isinstance(headline, str) or not isinstance(content, str):
        raise EditorialError("headline and content must both be strings")

    # Models sometimes double-escape the paragraph marker
    content = content.replace("\\n", "\n").strip()
    if not headline.strip() or not content:
        raise EditorialError("headline and content must not be empty")
    try:
        return RewriteResult(headline=headline.strip(), content=content)
    except ValidationError as e:
        raise EditorialError(str(e)) from e


def by_recency(articles: List[RawArticle]) -> List[RawArticle]:
    return sorted(articles, key=lambda a: a.published_at, reverse=True)


def placeholder_image(category: Category) -> str:
    return f"https://placehold.co/600x400?text={category.value}+News"


# ---------------------------------------------------------------------------
# EditorialProcessor
# ---------------------------------------------------------------------------

class EditorialProcessor:
    """
    Turns a category's candidate articles into one Story:
    pick the most intriguing candidate, then rewrite it into short-form style.

    Both language-model calls are optional for the outcome. A failed selection
    falls back to the most recent candidate, a failed rewrite to the original
    title and description. Neither ever affects other categories.
    """

    def __init__(
        self,
        client: Optional[OpenAI],
        model: str = "gpt-4o-mini",
        temperature: float = TEMPERATURE,
        selection_max_tokens: int = SELECTION_MAX_TOKENS,
        rewrite_max_tokens: int = REWRITE_MAX_TOKENS,
        max_candidates: int = MAX_CANDIDATES,
        timeout: float = LLM_TIMEOUT_SECONDS,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.selection_max_tokens = selection_max_tokens
        self.rewrite_max_tokens = rewrite_max_tokens
        self.max_candidates = max_candidates
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "EditorialProcessor":
        client = None
        if settings.openai_api_key:
            # Retries are disabled so the per-call timeout bounds the whole call
            client = OpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.llm_timeout_seconds,
                max_retries=0,
            )
        else:
            logger.warning("OPENAI_API_KEY is not set, stories will use original article text")
        return cls(
            client=client,
            model=settings.openai_model,
            temperature=settings.temperature,
            selection_max_tokens=settings.selection_max_tokens,
            rewrite_max_tokens=settings.rewrite_max_tokens,
            max_candidates=settings.max_candidates,
            timeout=settings.llm_timeout_seconds,
        )

    # --- Language-model calls ---

    def _client_for(self, deadline: Optional[float]) -> OpenAI:
        """
        The client to call with. When a deadline (a time.monotonic() value) is set,
        the call may use only the time left before it.
        """
        if self.client is None:
            raise EditorialError("No language model client configured")
        if deadline is None:
            return self.client
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise EditorialError("No time left before the deadline")
        return self.client.with_options(timeout=min(self.timeout, remaining))

    def _complete(self, system: str, user: str, max_tokens: int, deadline: Optional[float] = None) -> str:
        client = self._client_for(deadline)
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self.temperature,
                max_tokens=max_tokens,
            )
            content = response.choices[0].message.content
        except EditorialError:
            raise
        except Exception as e:
            raise EditorialError(f"Language model call failed: {e}") from e
        if not content:
            raise EditorialError("No content in language model response")
        return content

    def select(self, candidates: List[RawArticle], deadline: Optional[float] = None) -> SelectionResult:
        """Ask the model which candidate is most intriguing. Raises EditorialError."""
        context = "\n\n".join(
            f"Article {i}:\nTitle: {a.title}\nDescription: {a.description or ''}\nContent: {a.content or ''}"
            for i, a in enumerate(candidates)
        )
        raw = self._complete(SELECTION_PROMPT, context, self.selection_max_tokens, deadline)
        return validate_selection(parse_json_response(raw), len(candidates))

    def rewrite(self, article: RawArticle, category: Category,
                deadline: Optional[float] = None) -> RewriteResult:
        """Ask the model for a headline and 3-4 short paragraphs. Raises EditorialError."""
        context = (
            f"Title: {article.title}\n"
            f"Description: {article.description or ''}\n"
            f"Content: {article.content or ''}\n"
            f"Category: {category.value}\n"
            f"Source: {article.source_name}"
        )
        raw = self._complete(REWRITE_PROMPT, context, self.rewrite_max_tokens, deadline)
        return validate_rewrite(parse_json_response(raw))

    # --- Orchestration ---

    def process(self, category: Category, candidates: List[RawArticle],
                deadline: Optional[float] = None) -> Story:
        """
        Build the Story for one category.
        deadline: time.monotonic() value by which both model calls must have
        returned, so the fallback text is still ready in time.
        Raises EditorialError only when there are no candidates at all.
        """
        if not candidates:
            raise EditorialError(f"No candidate articles for {category.value}")

        ranked = by_recency(candidates)[: self.max_candidates]

        chosen = ranked[0]
        if len(ranked) > 1:
            try:
                selection = self.select(ranked, deadline)
                chosen = ranked[selection.selected_index]
                logger.info(f"[{category.value}] Selected '{chosen.title[:60]}': {selection.reason}")
            except EditorialError as e:
                logger.warning(f"[{category.value}] Selection failed, using most recent article: {e}")

        try:
            rewritten = self.rewrite(chosen, category, deadline)
            headline, content = rewritten.headline, rewritten.content
        except EditorialError as e:
            logger.warning(f"[{category.value}] Rewrite failed, using original text: {e}")
            headline = chosen.title
            content = chosen.description or chosen.content or chosen.title

        return Story(
            id=uuid.uuid4().hex,
            timestamp=chosen.published_at,
            category=category,
            headline=headline,
            content=content,
            source=chosen.source_name,
            image=chosen.image_url or placeholder_image(category),
            original_url=chosen.url,
        )
