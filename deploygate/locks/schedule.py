from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from deploygate.locks.types import EnvironmentLock, ScheduledWindow
from deploygate.utils.timeutil import ensure_utc


def active_windows(windows: Sequence[ScheduledWindow], now: datetime) -> List[ScheduledWindow]:
    at = ensure_utc(now)
    return [window for window in windows if window.is_active(at)]


def effective_window(windows: Sequence[ScheduledWindow], now: datetime) -> Optional[ScheduledWindow]:
    """
    Most restrictive active window; equal lock types resolve to the one declared first.
    """
    chosen: Optional[ScheduledWindow] = None
    for window in active_windows(windows, now):
        if chosen is None or window.lock_type.severity > chosen.lock_type.severity:
            chosen = window
    return chosen


def overlay(manual: EnvironmentLock, windows: Sequence[ScheduledWindow], now: datetime) -> EnvironmentLock:
    """
    Effective lock state as a pure function of (manual state, schedules, now).
    An active window wins over the manual state; outside every window the
    manual state applies.
    """
    window = effective_window(windows, now)
    if window is None:
        return manual.model_copy(
            update={
                "lock_type": manual.manual_lock_type,
                "source": "manual" if manual.source == "schedule" else manual.source,
                "active_window": None,
                "scheduled_windows": list(windows),
            }
        )
    return manual.model_copy(
        update={
            "lock_type": window.lock_type,
            "source": "schedule",
            "active_window": window.name,
            "reason": window.reason or manual.reason,
            "scheduled_windows": list(windows),
        }
    )
