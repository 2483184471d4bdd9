from deploygate.locks.schedule import effective_window, overlay
from deploygate.locks.types import EnvironmentLock, LockType, ScheduledWindow

__all__ = [
    "EnvironmentLock",
    "LockType",
    "ScheduledWindow",
    "effective_window",
    "overlay",
]
