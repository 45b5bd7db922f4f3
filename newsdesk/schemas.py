from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Category(str, Enum):
    """Topic tags, in the declared order used for classification tie-breaks."""
    TECH = "tech"
    FINANCE = "finance"
    SCIENCE = "science"
    HEALTH = "health"
    AI = "ai"


class TimeSlot(str, Enum):
    """Daily publication windows."""
    MORNING = "10AM"
    AFTERNOON = "3PM"
    EVENING = "8PM"


class RawArticle(BaseModel):
    """A candidate article as returned by an ArticleSource, before any editing."""
    title: str
    description: Optional[str] = None
    content: Optional[str] = None
    published_at: datetime
    source_name: str = "Unknown source"
    image_url: Optional[str] = None
    url: str
    category: Optional[Category] = None  # set by sources that search per category


class Story(BaseModel):
    """One rewritten, categorized news item. Serialized with camelCase originalUrl."""
    id: str
    timestamp: datetime
    category: Category
    headline: str
    content: str
    source: str
    image: str
    original_url: str = Field(alias="originalUrl")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class TimeBlock(BaseModel):
    """The finished bundle of stories for one (date, slot) pair."""
    time: TimeSlot
    date: str
    stories: List[Story] = []

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class SelectionResult(BaseModel):
    selected_index: int
    reason: str


class RewriteResult(BaseModel):
    headline: str
    content: str


# ---------------------------------------------------------------------------
# HTTP response shapes
# ---------------------------------------------------------------------------

class NewsResponse(BaseModel):
    """Shape returned by GET /news."""
    status: Literal["success"] = "success"
    time: TimeSlot
    date: str
    stories: List[Story]

    model_config = ConfigDict(populate_by_name=True)


class SlotAvailability(BaseModel):
    time: TimeSlot
    hour: int
    open: bool


class SlotsResponse(BaseModel):
    """Shape returned by GET /news/slots."""
    date: str
    slots: List[SlotAvailability]
    next_slot: TimeSlot = Field(serialization_alias="nextSlot")


class RefreshRequest(BaseModel):
    time_slot: Optional[str] = Field(default=None, alias="timeSlot")

    model_config = ConfigDict(populate_by_name=True)
