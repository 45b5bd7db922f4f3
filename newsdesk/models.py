from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from newsdesk.database import Base


class CacheEntry(Base):
    __tablename__ = "cache_entries"

    # "news:{date}:{slot}" for editions, "lock:news:{date}:{slot}" for refresh markers
    key = Column(String, primary_key=True, index=True)
    payload = Column(Text, nullable=False)           # serialized TimeBlock JSON
    written_at = Column(DateTime(timezone=True), nullable=False,
                        default=lambda: datetime.now(timezone.utc))
    ttl_seconds = Column(Integer, nullable=False)    # lazy expiry, checked on read
