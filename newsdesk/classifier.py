import logging
import re
from typing import Dict, List, Optional

from newsdesk.schemas import Category, RawArticle

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Keyword table: declaration order is the tie-break order.
# The first category with any matching keyword wins, regardless of match count.
# Entries are regular expressions; plain words match anywhere, \b marks a word edge.
# ---------------------------------------------------------------------------

CATEGORY_KEYWORDS: Dict[Category, List[str]] = {
    Category.TECH: [
        "technology", "software", "startup", "smartphone", r"\bapps?\b", "cloud",
        "semiconductor", "chip", "cyber", "gadget", "silicon valley", "developer",
    ],
    Category.FINANCE: [
        "stock", "market", "investor", "investment", "finance", "financial",
        "bank", "earnings", "venture capital", "funding", "economy", "inflation",
    ],
    Category.SCIENCE: [
        "science", "scientist", "research", "discovery", "space", "nasa",
        "physics", "quantum", "astronom", "climate", "species", "telescope",
    ],
    Category.HEALTH: [
        "health", "medical", "medicine", "patient", "hospital", "disease",
        "vaccine", "clinical", "drug", "cancer", "therapy", "healthcare",
    ],
    Category.AI: [
        "artificial intelligence", r"\bai\b", "machine learning", "neural network",
        "deep learning", "chatbot", "language model", "llm", "openai", "deepmind",
    ],
}


class CategoryClassifier:
    """
    Keyword fallback for articles whose source did not tag a category.
    Case-insensitive search over title, description and content.
    """

    def __init__(self, keywords: Optional[Dict[Category, List[str]]] = None):
        self.keywords = keywords or CATEGORY_KEYWORDS
        self._patterns = [
            (category, re.compile("|".join(f"(?:{word})" for word in words), re.IGNORECASE))
            for category, words in self.keywords.items()
            if words
        ]

    def classify_text(self, text: str) -> Optional[Category]:
        for category, pattern in self._patterns:
            if pattern.search(text or ""):
                return category
        return None

    def classify(self, article: RawArticle) -> Optional[Category]:
        text = " ".join(
            part for part in (article.title, article.description, article.content) if part
        )
        category = self.classify_text(text)
        if category is None:
            logger.debug(f"No category matched for '{article.title[:60]}'")
        return category


# Shared instance: used by the pipeline for untagged articles
classifier = CategoryClassifier()
