"""Participant-side connection to a live session.

``LiveClient`` keeps one participant attached to a session across network
drops: after an unexpected disconnect it reconnects with exponential backoff
and joins again with the same participant id, which the server treats as a
reconnect (score and answers are kept). When every attempt fails it publishes
``connection_failed`` to its local subscribers.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError

NAMESPACE = '/ws'

# Server events relayed to local subscribers
SERVER_EVENTS = (
    'connected',
    'session_joined',
    'session_started',
    'session_ended',
    'participant_joined',
    'participant_left',
    'participant_disconnected',
    'question_changed',
    'timer_updated',
    'timer_expired',
    'score_updated',
    'leaderboard_updated',
    'quiz_paused',
    'quiz_resumed',
    'answer_submitted',
    'leaderboard',
    'pong',
    'error',
    'left',
)


class ReconnectPolicy:
    """Bounded exponential backoff: ``base_delay * 2 ** (attempt - 1)``, capped."""

    def __init__(self, attempts: int = 5, base_delay: float = 2.0, max_delay: float = 30.0):
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))

    def delays(self):
        for attempt in range(1, self.attempts + 1):
            yield attempt, self.delay(attempt)


class LiveClient:

    def __init__(self, url: str, session_id: str, name: Optional[str] = None,
                 participant_id: Optional[str] = None, sio=None, policy: Optional[ReconnectPolicy] = None,
                 heartbeat_sec: float = 25, namespace: str = NAMESPACE, sleep: Callable = time.sleep,
                 logger=None):
        self.url = url
        self.session_id = session_id
        self.name = name
        self.participant_id = participant_id
        self.namespace = namespace
        self.policy = policy or ReconnectPolicy()
        self._sio = sio or socketio.Client(reconnection=False)
        self._heartbeat_sec = heartbeat_sec
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)
        self._subscribers: Dict[str, List[Callable[[Any], None]]] = defaultdict(list)
        self._closing = False
        self._reconnecting = threading.Lock()
        self._heartbeat_generation = 0
        self.last_state: Optional[Dict[str, Any]] = None

        self._sio.on('connect', self._on_connect, namespace=namespace)
        self._sio.on('disconnect', self._on_disconnect, namespace=namespace)
        for event in SERVER_EVENTS:
            self._sio.on(event, self._relay(event), namespace=namespace)

    # ---- local pub/sub ----

    def on(self, event: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        self._subscribers[event].append(handler)

        def unsubscribe():
            if handler in self._subscribers[event]:
                self._subscribers[event].remove(handler)

        return unsubscribe

    def _publish(self, event: str, payload: Any = None) -> None:
        for handler in list(self._subscribers.get(event, ())):
            try:
                handler(payload)
            except Exception:
                self._logger.exception(f"[client-handler-error] event={event}")

    def _relay(self, event: str):
        def handler(data=None):
            if event == 'session_joined' and isinstance(data, dict):
                participant = data.get('participant') or {}
                if participant.get('id'):
                    self.participant_id = participant['id']
                self.last_state = data.get('session')
            self._publish(event, data)

        return handler

    # ---- connection ----

    def connect(self) -> bool:
        """Connect and join. Returns False once every retry has failed."""
        self._closing = False
        if self._try_connect():
            return True
        return self._retry()

    def disconnect(self) -> None:
        self._closing = True
        self._heartbeat_generation += 1
        if self._sio.connected:
            self._sio.disconnect()

    @property
    def connected(self) -> bool:
        return bool(self._sio.connected)

    def _try_connect(self) -> bool:
        try:
            self._sio.connect(self.url, namespaces=[self.namespace])
            return True
        except SocketConnectionError as exc:
            self._logger.info(f"[client-connect-failed] url={self.url} error={exc}")
            return False

    def _retry(self) -> bool:
        if not self._reconnecting.acquire(blocking=False):
            return False
        try:
            for attempt, delay in self.policy.delays():
                if self._closing:
                    return False
                self._logger.info(f"[client-reconnect] attempt={attempt}/{self.policy.attempts} delay={delay}s")
                self._publish('reconnecting', {'attempt': attempt, 'delay': delay})
                self._sleep(delay)
                if self._try_connect():
                    return True
            self._publish('connection_failed', {'attempts': self.policy.attempts})
            return False
        finally:
            self._reconnecting.release()

    def _on_connect(self):
        self.join()
        if self._heartbeat_sec > 0:
            self._heartbeat_generation += 1
            self._sio.start_background_task(self._heartbeat, self._heartbeat_generation)

    def _on_disconnect(self, reason=None):
        self._heartbeat_generation += 1
        self._publish('disconnected', {'reason': reason})
        if not self._closing:
            self._sio.start_background_task(self._retry)

    def _heartbeat(self, generation: int) -> None:
        while generation == self._heartbeat_generation and self._sio.connected:
            self._sio.emit('ping', {'timestamp': time.time()}, namespace=self.namespace)
            self._sio.sleep(self._heartbeat_sec)

    # ---- session actions ----

    def join(self) -> None:
        payload = {'sessionId': self.session_id, 'name': self.name}
        if self.participant_id:
            payload['participantId'] = self.participant_id
        self._sio.emit('join_session', payload, namespace=self.namespace)

    def leave(self) -> None:
        self._sio.emit('leave_session', {'sessionId': self.session_id}, namespace=self.namespace)

    def submit_answer(self, question_index: int, answer) -> None:
        self._sio.emit('submit_answer', {
            'sessionId': self.session_id,
            'participantId': self.participant_id,
            'questionIndex': question_index,
            'answer': answer,
            'timestamp': int(time.time() * 1000),
        }, namespace=self.namespace)

    def request_leaderboard(self, limit: Optional[int] = None) -> None:
        payload = {'sessionId': self.session_id}
        if limit is not None:
            payload['limit'] = limit
        self._sio.emit('request_leaderboard', payload, namespace=self.namespace)
