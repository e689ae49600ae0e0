"""Shared data types for sessions and the events they publish."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SessionStatus(Enum):
    """Lifecycle of one managed shell session."""

    IDLE = "idle"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    TERMINATED = "terminated"


class EventKind(Enum):
    """What a :class:`SessionEvent` reports to subscribers."""

    STARTED = "started"
    OUTPUT = "output"
    ERROR = "error"
    QUESTION = "question"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class EmittedRecord:
    """One flushed, cleaned block of output and the command it answers."""

    session_id: str
    text: str
    command: str | None = None


@dataclass(frozen=True)
class SessionEvent:
    """Notification handed to the broadcast layer.

    OUTPUT events carry the :class:`EmittedRecord` in ``record``; QUESTION
    events list the detected choices in ``options``.
    """

    kind: EventKind
    session_id: str
    text: str = ""
    options: tuple[str, ...] = ()
    record: EmittedRecord | None = None


@dataclass(frozen=True)
class SessionInfo:
    """Read-only snapshot of a session for list and status views."""

    session_id: str
    pid: int | None
    status: SessionStatus
    started_at: datetime
    last_activity: datetime
    current_task: str | None = None
    command_history: tuple[str, ...] = field(default_factory=tuple)
