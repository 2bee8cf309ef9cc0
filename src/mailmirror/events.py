"""
Lifecycle events

Jobs and connections report what happens to them through explicit listener
objects handed to the orchestrator / connection manager at construction.
Listeners run on the thread that produced the event, outside any lock, so
a listener may call back into the orchestrator (for example to pause a job).
"""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from mailmirror.models import utcnow
from mailmirror.utils.imap_common import safe_print


class SyncEventType(str, Enum):
    STARTED = "started"
    RUNNING = "running"
    FOLDERS_DISCOVERED = "folders_discovered"
    FOLDER_COMPLETED = "folder_completed"
    BATCH_COMPLETED = "batch_completed"
    PAUSED = "paused"
    RESUMED = "resumed"
    STOPPED = "stopped"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class ConnectionEventType(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    MAX_RECONNECT_ATTEMPTS_REACHED = "max_reconnect_attempts_reached"


@dataclass
class SyncEvent:
    type: SyncEventType
    job_id: str
    snapshot: dict
    payload: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def progress(self) -> dict:
        return self.snapshot.get("progress", {})

    @property
    def stats(self) -> dict:
        return self.snapshot.get("stats", {})

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "job_id": self.job_id,
            "timestamp": self.timestamp.isoformat(),
            "snapshot": self.snapshot,
            "payload": self.payload,
        }


@dataclass
class ConnectionEvent:
    type: ConnectionEventType
    connection_id: str
    attempts: int = 0
    error: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


class EventListener:
    """Observer interface. Subclasses override handle_event."""

    def handle_event(self, event) -> None:
        raise NotImplementedError


class CallbackListener(EventListener):
    def __init__(self, callback):
        self._callback = callback

    def handle_event(self, event) -> None:
        self._callback(event)


class QueueListener(EventListener):
    """Channel-style listener: events are put on a queue for another thread to consume."""

    def __init__(self, maxsize=0):
        self.queue = queue.Queue(maxsize=maxsize)

    def handle_event(self, event) -> None:
        self.queue.put(event)

    def drain(self) -> list:
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events


class EventDispatcher:
    def __init__(self, listeners=None, log_fn=safe_print):
        self._listeners = list(listeners or [])
        self._log_fn = log_fn

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def dispatch(self, event) -> None:
        for listener in list(self._listeners):
            try:
                listener.handle_event(event)
            except Exception as e:
                # A failing observer must not break the job that produced the event.
                self._log_fn(f"Event listener {type(listener).__name__} failed on {event.type.value}: {e}")
