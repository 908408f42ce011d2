"""Engine events delivered to subscribers (notifier, operator console)."""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict


class EventKind(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"
    ENTRY = "entry"
    BRACKET_PLACED = "bracket_placed"
    BRACKET_FAILURE = "bracket_failure"
    ENTRY_REJECTED = "entry_rejected"
    POSITION_CLOSED = "position_closed"
    TARGET_REACHED = "target_reached"
    LOSS_LIMIT = "loss_limit"
    HALTED = "halted"
    DAILY_SUMMARY = "daily_summary"
    SETTINGS_UPDATED = "settings_updated"
    ERROR = "error"


@dataclass(frozen=True)
class EngineEvent:
    kind: EventKind
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[EngineEvent], None]
