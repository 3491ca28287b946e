"""Live session engine: store, scoring, timers and the session state machine.

Nothing in this package touches Flask or Socket.IO directly. The app factory
wires it to ``socketio`` background tasks and the realtime gateway subscribes
to its event bus.
"""

from .errors import LiveSessionError
from .events import EventBus, EventKind
from .lifecycle import SYSTEM, AnswerResult, SessionController
from .store import SessionConfig, SessionStore
from .timers import TimerCoordinator

__all__ = [
    'AnswerResult',
    'EventBus',
    'EventKind',
    'LiveSessionError',
    'SYSTEM',
    'SessionConfig',
    'SessionController',
    'SessionStore',
    'TimerCoordinator',
]
