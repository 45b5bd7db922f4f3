from datetime import datetime, timezone
from typing import Dict, List, Optional, Union
from zoneinfo import ZoneInfo

from newsdesk.config import DEFAULT_SLOT_HOURS
from newsdesk.schemas import TimeSlot


class SlotScheduler:
    """
    Time-of-day rules for editions. Holds only static configuration;
    every answer is a pure function of the `now` passed in.

    Naive datetimes are read as wall-clock time in the scheduler's timezone,
    aware ones are converted to it first.
    """

    def __init__(
        self,
        slot_hours: Optional[Dict[str, int]] = None,
        tz: str = "UTC",
        always_open: bool = False,
        refresh_window_minutes: int = 5,
    ):
        hours = slot_hours or DEFAULT_SLOT_HOURS
        self.slot_hours: Dict[TimeSlot, int] = {TimeSlot(name): int(hour) for name, hour in hours.items()}
        missing = set(TimeSlot) - set(self.slot_hours)
        if missing:
            raise ValueError(f"No hour configured for slots: {sorted(s.value for s in missing)}")

        self.tz = ZoneInfo(tz)
        self.always_open = always_open
        self.refresh_window_minutes = refresh_window_minutes

    @classmethod
    def from_settings(cls, settings) -> "SlotScheduler":
        return cls(
            slot_hours=settings.slot_hours,
            tz=settings.slot_timezone,
            always_open=settings.always_open,
            refresh_window_minutes=settings.refresh_window_minutes,
        )

    # --- Ordering ---

    @property
    def slots(self) -> List[TimeSlot]:
        """All slots ordered by their hour of day."""
        return sorted(self.slot_hours, key=self.slot_hours.get)

    def hour_of(self, slot: Union[TimeSlot, str]) -> int:
        return self.slot_hours[TimeSlot(slot)]

    # --- Rules ---

    def is_slot_open(self, slot: Union[TimeSlot, str], now: Optional[datetime] = None) -> bool:
        """True once local time reaches the slot's hour. Always True with the development override."""
        if self.always_open:
            return True
        return self._local(now).hour >= self.hour_of(slot)

    def is_due_for_refresh(self, slot: Union[TimeSlot, str], now: Optional[datetime] = None) -> bool:
        """True only during the first few minutes after the slot's hour."""
        local = self._local(now)
        return local.hour == self.hour_of(slot) and local.minute < self.refresh_window_minutes

    def open_slots(self, now: Optional[datetime] = None) -> List[TimeSlot]:
        return [slot for slot in self.slots if self.is_slot_open(slot, now)]

    def next_slot(self, now: Optional[datetime] = None) -> TimeSlot:
        """The next slot to open; after the last one, the first slot of tomorrow."""
        hour = self._local(now).hour
        for slot in self.slots:
            if hour < self.slot_hours[slot]:
                return slot
        return self.slots[0]

    def today(self, now: Optional[datetime] = None) -> str:
        """Calendar day (YYYY-MM-DD) in the scheduler's timezone."""
        return self._local(now).date().isoformat()

    def _local(self, now: Optional[datetime]) -> datetime:
        if now is None:
            return datetime.now(timezone.utc).astimezone(self.tz)
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)
