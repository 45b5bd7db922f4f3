import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from newsdesk.models import CacheEntry
from newsdesk.schemas import TimeBlock, TimeSlot

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def cache_key(date: str, slot: Union[TimeSlot, str]) -> str:
    """Composite key for one edition, e.g. "news:2024-01-01:10AM"."""
    return f"news:{date}:{TimeSlot(slot).value}"


def lock_key(date: str, slot: Union[TimeSlot, str]) -> str:
    """Key of the "refresh in progress" marker for one edition."""
    return f"lock:{cache_key(date, slot)}"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class CacheRecord:
    payload: str
    written_at: datetime
    ttl_seconds: int

    def expires_at(self) -> datetime:
        return self.written_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at()


# ---------------------------------------------------------------------------
# Tiers: every storage technology implements the same operations
# ---------------------------------------------------------------------------

class CacheTier(ABC):
    """
    Key/value storage for serialized cache records.
    Tiers store and return records as-is; expiry is decided by SlotCache on read.
    """
    name: str

    @abstractmethod
    def get(self, key: str) -> Optional[CacheRecord]:
        """Return the stored record, or None if the key is absent."""

    @abstractmethod
    def set(self, key: str, record: CacheRecord) -> None:
        """Store a record, replacing any existing one."""

    @abstractmethod
    def add(self, key: str, record: CacheRecord, now: datetime) -> bool:
        """
        Atomically store a record only if the key is absent or holds an expired record.
        Returns True if this call wrote the record.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the key. Deleting a missing key is not an error."""

    @abstractmethod
    def discard(self, key: str, record: CacheRecord) -> None:
        """Remove the key only if it still holds this record (same write time)."""


class MemoryTier(CacheTier):
    """Fast in-process tier. Lives as long as the process that built it."""
    name = "fast"

    def __init__(self):
        self._records: Dict[str, CacheRecord] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheRecord]:
        with self._lock:
            return self._records.get(key)

    def set(self, key: str, record: CacheRecord) -> None:
        with self._lock:
            self._records[key] = record

    def add(self, key: str, record: CacheRecord, now: datetime) -> bool:
        with self._lock:
            existing = self._records.get(key)
            if existing is not None and not existing.is_expired(now):
                return False
            self._records[key] = record
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def discard(self, key: str, record: CacheRecord) -> None:
        with self._lock:
            current = self._records.get(key)
            if current is not None and current.written_at == record.written_at:
                del self._records[key]

    def __len__(self) -> int:
        return len(self._records)


class SqlTier(CacheTier):
    """
    Durable tier backed by the cache_entries table.
    Shared by every process that points at the same database.
    """
    name = "durable"

    def __init__(self, session_factory):
        """session_factory: callable that returns a new SQLAlchemy Session (e.g. SessionLocal)"""
        self.session_factory = session_factory

    def get(self, key: str) -> Optional[CacheRecord]:
        db = self.session_factory()
        try:
            row = db.get(CacheEntry, key)
            if row is None:
                return None
            return CacheRecord(
                payload=row.payload,
                written_at=_as_utc(row.written_at),
                ttl_seconds=row.ttl_seconds,
            )
        finally:
            db.close()

    def set(self, key: str, record: CacheRecord) -> None:
        db = self.session_factory()
        try:
            # merge() performs an upsert: inserts if new, updates if the key already exists
            db.merge(CacheEntry(
                key=key,
                payload=record.payload,
                written_at=record.written_at,
                ttl_seconds=record.ttl_seconds,
            ))
            db.commit()
        finally:
            db.close()

    def add(self, key: str, record: CacheRecord, now: datetime) -> bool:
        db = self.session_factory()
        try:
            row = db.get(CacheEntry, key)
            if row is not None:
                existing = CacheRecord(row.payload, _as_utc(row.written_at), row.ttl_seconds)
                if not existing.is_expired(now):
                    return False
                # Take over an abandoned marker; a concurrent taker loses on the insert below
                db.query(CacheEntry).filter(
                    CacheEntry.key == key,
                    CacheEntry.payload == row.payload,
                ).delete(synchronize_session=False)
                db.expunge_all()
            db.add(CacheEntry(
                key=key,
                payload=record.payload,
                written_at=record.written_at,
                ttl_seconds=record.ttl_seconds,
            ))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self.session_factory()
        try:
            db.query(CacheEntry).filter(CacheEntry.key == key).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def discard(self, key: str, record: CacheRecord) -> None:
        db = self.session_factory()
        try:
            # A row rewritten by another process since it was read has a new written_at
            db.query(CacheEntry).filter(
                CacheEntry.key == key,
                CacheEntry.written_at == record.written_at,
            ).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()


# ---------------------------------------------------------------------------
# SlotCache: two tiers behind one get/set/invalidate contract
# ---------------------------------------------------------------------------

class SlotCache:
    """
    Holds finished TimeBlocks keyed by (date, slot).

    Reads go fast tier → durable tier, backfilling the fast tier on a durable hit.
    Tier errors are logged and degrade to a miss, so a cache outage costs a
    re-fetch rather than an error page. Nothing here raises to the caller.
    """

    def __init__(
        self,
        fast: CacheTier,
        durable: CacheTier,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.fast = fast
        self.durable = durable
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    # --- Editions ---

    def get(self, date: str, slot: Union[TimeSlot, str]) -> Optional[TimeBlock]:
        key = cache_key(date, slot)

        record = self._read(self.fast, key)
        if record is not None:
            block = self._decode(key, record, date, slot)
            if block is not None:
                logger.debug(f"[{key}] Fast tier hit")
                return block

        record = self._read(self.durable, key)
        if record is None:
            logger.info(f"[{key}] Cache miss")
            return None

        block = self._decode(key, record, date, slot)
        if block is None:
            return None

        # Backfill keeps the original written_at so both tiers expire together
        try:
            self.fast.set(key, record)
        except Exception as e:
            logger.warning(f"[{key}] Fast tier backfill failed: {e}")

        logger.info(f"[{key}] Durable tier hit")
        return block

    def set(self, date: str, slot: Union[TimeSlot, str], block: TimeBlock) -> None:
        key = cache_key(date, slot)
        record = CacheRecord(
            payload=block.model_dump_json(by_alias=True),
            written_at=self.clock(),
            ttl_seconds=self.ttl_seconds,
        )

        durable_ok = self._write(self.durable, key, record)
        fast_ok = self._write(self.fast, key, record)

        if not durable_ok and fast_ok:
            logger.warning(f"[{key}] Stored in fast tier only; value lives until this process exits")
        elif not durable_ok and not fast_ok:
            logger.error(f"[{key}] Both cache tiers rejected the write")
        else:
            logger.info(f"[{key}] Cached {len(block.stories)} stories")

    def invalidate(self, date: str, slot: Union[TimeSlot, str]) -> None:
        key = cache_key(date, slot)
        for tier in (self.fast, self.durable):
            try:
                tier.delete(key)
            except Exception as e:
                logger.warning(f"[{key}] {tier.name} tier delete failed: {e}")
        logger.info(f"[{key}] Invalidated")

    # --- Refresh markers ---

    def acquire_refresh(self, date: str, slot: Union[TimeSlot, str], ttl_seconds: int) -> bool:
        """
        Write a short-lived "refresh in progress" marker in the durable tier.
        Returns False if another worker holds an unexpired marker for this edition.
        If the durable tier is unreachable the refresh proceeds unguarded.
        """
        key = lock_key(date, slot)
        now = self.clock()
        record = CacheRecord(payload=uuid.uuid4().hex, written_at=now, ttl_seconds=ttl_seconds)
        try:
            acquired = self.durable.add(key, record, now)
        except Exception as e:
            logger.warning(f"[{key}] Could not write refresh marker, refreshing unguarded: {e}")
            return True

        if not acquired:
            logger.info(f"[{key}] Refresh already in progress elsewhere")
        return acquired

    def release_refresh(self, date: str, slot: Union[TimeSlot, str]) -> None:
        key = lock_key(date, slot)
        try:
            self.durable.delete(key)
        except Exception as e:
            # The marker expires on its own after its TTL
            logger.warning(f"[{key}] Could not clear refresh marker: {e}")

    # --- Internals ---

    def _read(self, tier: CacheTier, key: str) -> Optional[CacheRecord]:
        try:
            record = tier.get(key)
        except Exception as e:
            logger.warning(f"[{key}] {tier.name} tier read failed: {e}")
            return None

        if record is None:
            return None

        if record.is_expired(self.clock()):
            logger.info(f"[{key}] Expired entry in {tier.name} tier, evicting")
            try:
                tier.discard(key, record)
            except Exception as e:
                logger.warning(f"[{key}] {tier.name} tier eviction failed: {e}")
            return None

        return record

    def _write(self, tier: CacheTier, key: str, record: CacheRecord) -> bool:
        try:
            tier.set(key, record)
            return True
        except Exception as e:
            logger.error(f"[{key}] {tier.name} tier write failed: {e}")
            return False

    def _decode(self, key: str, record: CacheRecord, date: str, slot) -> Optional[TimeBlock]:
        try:
            block = TimeBlock.model_validate_json(record.payload)
        except ValidationError as e:
            logger.warning(f"[{key}] Discarding undecodable cache entry: {e}")
            return None

        # A block from another day is never served, whatever its TTL says
        if block.date != date or block.time != TimeSlot(slot):
            logger.warning(f"[{key}] Cached block is for {block.date}/{block.time.value}, ignoring")
            return None

        return block
