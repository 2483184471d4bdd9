from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class LockType(str, Enum):
    UNLOCKED = "UNLOCKED"
    SOFT_LOCKED = "SOFT_LOCKED"
    HARD_LOCKED = "HARD_LOCKED"

    @classmethod
    def parse(cls, value: Any) -> "LockType":
        if isinstance(value, LockType):
            return value
        text = str(value or "").strip().upper().replace("-", "_")
        aliases = {"SOFT": "SOFT_LOCKED", "HARD": "HARD_LOCKED", "NONE": "UNLOCKED", "OPEN": "UNLOCKED"}
        return cls(aliases.get(text, text))

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {LockType.UNLOCKED: 0, LockType.SOFT_LOCKED: 1, LockType.HARD_LOCKED: 2}

_DAY_NAMES = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}


def _parse_hhmm(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    parsed = time.fromisoformat(str(value).strip())
    return parsed.hour * 60 + parsed.minute


class ScheduledWindow(BaseModel):
    """
    A time window that forces a lock type while it is active.

    ``recurring`` windows repeat on the given weekdays between ``start_time``
    and ``end_time`` (inclusive minutes, local to ``timezone``); a start later
    than the end spans midnight. ``range`` windows cover ``[start, end)``;
    a date-only end covers that whole day.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    kind: Literal["recurring", "range"]
    lock_type: LockType = LockType.HARD_LOCKED
    reason: Optional[str] = None
    days_of_week: List[str] = Field(default_factory=list)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    timezone: str = "UTC"
    start: Optional[Union[datetime, date]] = None
    end: Optional[Union[datetime, date]] = None

    @field_validator("lock_type", mode="before")
    @classmethod
    def _lock_type(cls, value: Any) -> LockType:
        return LockType.parse(value)

    @field_validator("start", "end", mode="before")
    @classmethod
    def _range_bound(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip()
            if len(text) == 10:
                return date.fromisoformat(text)
            if text.endswith("Z"):
                text = f"{text[:-1]}+00:00"
            return datetime.fromisoformat(text)
        return value

    @field_validator("days_of_week")
    @classmethod
    def _days(cls, value: List[str]) -> List[str]:
        normalized = []
        for day in value:
            key = str(day or "").strip().lower()
            if key not in _DAY_NAMES:
                raise ValueError(f"unknown day of week: {day!r}")
            normalized.append(key)
        return normalized

    @field_validator("timezone")
    @classmethod
    def _tz(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value!r}") from exc
        return value

    @model_validator(mode="after")
    def _check_shape(self) -> "ScheduledWindow":
        if self.kind == "recurring":
            _parse_hhmm(self.start_time)
            _parse_hhmm(self.end_time)
            return self
        if self.start is None or self.end is None:
            raise ValueError("range windows require start and end")
        if self.range_end() <= self.range_start():
            raise ValueError("range window end must be after start")
        return self

    def _zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def _as_datetime(self, value: Union[datetime, date], *, end: bool) -> datetime:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=self._zone())
            return value.astimezone(timezone.utc)
        day = value + timedelta(days=1) if end else value
        return datetime(day.year, day.month, day.day, tzinfo=self._zone()).astimezone(timezone.utc)

    def range_start(self) -> datetime:
        return self._as_datetime(self.start, end=False)

    def range_end(self) -> datetime:
        return self._as_datetime(self.end, end=True)

    def _day_allowed(self, weekday: int) -> bool:
        if not self.days_of_week:
            return True
        return weekday in {_DAY_NAMES[d] for d in self.days_of_week}

    def is_active(self, now: datetime) -> bool:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        if self.kind == "range":
            return self.range_start() <= now < self.range_end()

        local = now.astimezone(self._zone())
        minute = local.hour * 60 + local.minute
        start = _parse_hhmm(self.start_time)
        end = _parse_hhmm(self.end_time)
        start = 0 if start is None else start
        end = 24 * 60 if end is None else end
        weekday = local.weekday()
        # [start, end); end <= start wraps past midnight.
        if start < end:
            return self._day_allowed(weekday) and start <= minute < end
        if minute >= start:
            return self._day_allowed(weekday)
        if minute < end:
            return self._day_allowed((weekday - 1) % 7)
        return False


class EnvironmentLock(BaseModel):
    """
    Snapshot of one environment's lock state. ``lock_type`` is the effective
    state (schedule overlay applied); ``manual_lock_type`` is what operators set.
    """

    model_config = ConfigDict(frozen=True)

    environment_id: str
    lock_type: LockType
    manual_lock_type: LockType
    reason: Optional[str] = None
    set_by: Optional[str] = None
    set_at: Optional[datetime] = None
    auto_relock_at: Optional[datetime] = None
    relock_type: Optional[LockType] = None
    ticket_id: Optional[str] = None
    source: Literal["default", "manual", "schedule"] = "manual"
    active_window: Optional[str] = None
    scheduled_windows: List[ScheduledWindow] = Field(default_factory=list)
    version: int = 0

    @property
    def is_hard_locked(self) -> bool:
        return self.lock_type == LockType.HARD_LOCKED

    @property
    def is_soft_locked(self) -> bool:
        return self.lock_type == LockType.SOFT_LOCKED
