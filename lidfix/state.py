from __future__ import annotations

import enum
from dataclasses import dataclass


class LidState(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    UNKNOWN = "unknown"


@dataclass
class MonitorState:
    """Holds mutable runtime state for the lid monitor.

    ``closed_count`` is the debounce counter: consecutive CLOSED readings since
    the last OPEN reading or the last suspend attempt. UNKNOWN readings leave
    both ``lid`` and ``closed_count`` untouched. The remaining fields are
    bookkeeping reported over the control socket."""
    lid: LidState = LidState.OPEN
    closed_count: int = 0
    enabled: bool = True

    last_reading: LidState = LidState.UNKNOWN
    unknown_readings: int = 0

    suspend_attempts: int = 0
    suspend_failures: int = 0
    consecutive_failures: int = 0
    last_suspend_ts: float = 0.0
    last_error: str = ""
    loop_errors: int = 0
