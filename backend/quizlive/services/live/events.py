"""Typed publish/subscribe channel between the engine and the realtime gateway."""

import enum
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List


class EventKind(str, enum.Enum):
    SESSION_STARTED = 'session_started'
    SESSION_ENDED = 'session_ended'
    PARTICIPANT_JOINED = 'participant_joined'
    PARTICIPANT_LEFT = 'participant_left'
    PARTICIPANT_DISCONNECTED = 'participant_disconnected'
    QUESTION_CHANGED = 'question_changed'
    TIMER_UPDATED = 'timer_updated'
    TIMER_EXPIRED = 'timer_expired'
    SCORE_UPDATED = 'score_updated'
    LEADERBOARD_UPDATED = 'leaderboard_updated'
    QUIZ_PAUSED = 'quiz_paused'
    QUIZ_RESUMED = 'quiz_resumed'


Handler = Callable[[Dict[str, Any]], None]


class EventBus:
    """Fan-out of engine events to any number of handlers per kind.

    Publishing is fire-and-forget: a handler that raises is logged and the
    remaining handlers still run.
    """

    def __init__(self, logger=None):
        self._handlers: Dict[EventKind, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger(__name__)

    def subscribe(self, kind: EventKind, handler: Handler) -> Callable[[], None]:
        kind = EventKind(kind)
        with self._lock:
            self._handlers[kind].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers[kind]:
                    self._handlers[kind].remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: Callable[[EventKind, Dict[str, Any]], None]) -> None:
        for kind in EventKind:
            self.subscribe(kind, lambda payload, _kind=kind: handler(_kind, payload))

    def publish(self, kind: EventKind, payload: Dict[str, Any]) -> None:
        kind = EventKind(kind)
        with self._lock:
            handlers = list(self._handlers[kind])
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                self._logger.exception(f"[event-handler-error] kind={kind.value} session={payload.get('sessionId')}")
