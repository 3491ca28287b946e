import functools
import threading
from typing import Any, Dict, Optional

from flask import request
from flask_socketio import emit, join_room, leave_room

from quizlive.services.live import EventKind, LiveSessionError
from quizlive.services.live.errors import Forbidden, InvalidPayload

NAMESPACE = '/ws'

# Engine events fanned out unchanged to everyone in the session room
_ROOM_EVENTS = (
    EventKind.SESSION_STARTED,
    EventKind.SESSION_ENDED,
    EventKind.PARTICIPANT_JOINED,
    EventKind.PARTICIPANT_LEFT,
    EventKind.PARTICIPANT_DISCONNECTED,
    EventKind.TIMER_UPDATED,
    EventKind.TIMER_EXPIRED,
    EventKind.SCORE_UPDATED,
    EventKind.QUIZ_PAUSED,
    EventKind.QUIZ_RESUMED,
)


def room_for(session_id: str) -> str:
    return f"session:{session_id}"


def host_room_for(session_id: str) -> str:
    return f"session:{session_id}:host"


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _payload(data) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidPayload('Event payload must be an object')
    return data


def _require(data: Dict[str, Any], key: str):
    value = data.get(key)
    if value in (None, ''):
        raise InvalidPayload(f'{key} is required')
    return value


def guarded(handler):
    """Report expected rejections to the sender as an ``error`` event."""

    @functools.wraps(handler)
    def wrapper(self, *args):
        try:
            return handler(self, *args)
        except LiveSessionError as exc:
            self._logger.info(f"[ws-rejected] event={handler.__name__} sid={_get_sid()} code={exc.code}")
            emit('error', exc.to_dict())
            return {'ok': False, 'error': exc.to_dict()}

    return wrapper


class RealtimeGateway:
    """Binds Socket.IO connections to sessions and relays engine events to rooms.

    Each connection (sid) is associated with one session, either as the host
    or as one participant. Disconnecting only marks the participant offline;
    joining again with the same participant id restores it.
    """

    def __init__(self, sio, controller, logger):
        self._sio = sio
        self._controller = controller
        self._logger = logger
        self._connections: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

        bus = controller.bus
        for kind in _ROOM_EVENTS:
            bus.subscribe(kind, functools.partial(self._broadcast, kind))
        bus.subscribe(EventKind.QUESTION_CHANGED, self._broadcast_question)
        bus.subscribe(EventKind.LEADERBOARD_UPDATED, self._broadcast_leaderboard)

    # ---- outbound ----

    def _broadcast(self, kind: EventKind, payload: Dict[str, Any]) -> None:
        self._sio.emit(kind.value, payload, to=room_for(payload['sessionId']), namespace=NAMESPACE)

    def _broadcast_question(self, payload: Dict[str, Any]) -> None:
        session_id = payload['sessionId']
        public = {k: v for k, v in payload.items() if k != 'hostQuestion'}
        self._sio.emit(EventKind.QUESTION_CHANGED.value, public, to=room_for(session_id), namespace=NAMESPACE)
        host_view = dict(public, question=payload['hostQuestion'])
        self._sio.emit('question_changed_host', host_view, to=host_room_for(session_id), namespace=NAMESPACE)

    def _broadcast_leaderboard(self, payload: Dict[str, Any]) -> None:
        session_id = payload['sessionId']
        room = room_for(session_id) if payload.get('visible', True) else host_room_for(session_id)
        self._sio.emit(EventKind.LEADERBOARD_UPDATED.value, payload, to=room, namespace=NAMESPACE)

    # ---- connection registry ----

    def connection(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            ctx = self._connections.get(sid)
            return dict(ctx) if ctx else None

    def _bind(self, sid: str, session_id: str, participant_id=None, host_id=None) -> None:
        with self._lock:
            if participant_id is not None:
                # a reconnect supersedes the participant's stale connection
                stale = [
                    other for other, ctx in self._connections.items()
                    if other != sid and ctx['session_id'] == session_id and ctx['participant_id'] == participant_id
                ]
                for other in stale:
                    del self._connections[other]
            self._connections[sid] = {
                'session_id': session_id,
                'participant_id': participant_id,
                'is_host': host_id is not None,
                'host_id': host_id,
            }

    def _unbind(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._connections.pop(sid, None)

    def _context(self, data: Dict[str, Any]) -> Dict[str, Any]:
        ctx = self.connection(_get_sid())
        if ctx is None:
            raise InvalidPayload('Join a session first')
        session_id = data.get('sessionId')
        if session_id and session_id != ctx['session_id']:
            raise Forbidden('Connection is not joined to that session')
        return ctx

    def _host_context(self, data: Dict[str, Any]) -> Dict[str, Any]:
        ctx = self._context(data)
        if not ctx['is_host']:
            raise Forbidden()
        return ctx

    def _release(self, sid: str, keep=None) -> None:
        """Drop the connection's current binding.

        A participant left behind is marked offline, unless it is ``keep``,
        the ``(session_id, participant_id)`` the connection is rebinding to.
        """
        ctx = self._unbind(sid)
        if not ctx:
            return
        session_id = ctx['session_id']
        leave_room(room_for(session_id))
        if ctx['is_host']:
            leave_room(host_room_for(session_id))
            self._controller.host_disconnected(session_id)
        elif keep != (session_id, ctx['participant_id']):
            self._mark_offline(session_id, ctx['participant_id'])

    def _mark_offline(self, session_id: str, participant_id: str) -> None:
        try:
            self._controller.mark_disconnected(session_id, participant_id)
        except LiveSessionError as exc:
            # participant already removed or session purged
            self._logger.info(f"[ws-disconnect] session={session_id} skipped reason={exc.code}")

    # ---- inbound ----

    def on_connect(self, auth=None):
        emit('connected', {'message': f'Connected to {NAMESPACE}'})

    def on_disconnect(self, reason=None):
        ctx = self._unbind(_get_sid())
        if not ctx:
            return
        session_id = ctx['session_id']
        if ctx['is_host']:
            self._logger.info(f"[ws-disconnect] session={session_id} host")
            self._controller.host_disconnected(session_id)
            return
        self._logger.info(f"[ws-disconnect] session={session_id} participant={ctx['participant_id']}")
        self._mark_offline(session_id, ctx['participant_id'])

    @guarded
    def on_join_session(self, data=None):
        data = _payload(data)
        session_id = _require(data, 'sessionId')
        sid = _get_sid()
        if data.get('role') == 'host' or data.get('hostId'):
            host_id = data.get('hostId')
            if not self._controller.is_host(session_id, host_id):
                raise Forbidden('Host identity does not match this session')
            # count the new host connection before releasing any previous binding
            self._controller.host_connected(session_id)
            self._release(sid)
            self._bind(sid, session_id, host_id=host_id)
            join_room(room_for(session_id))
            join_room(host_room_for(session_id))
            self._logger.info(f"[ws-join] session={session_id} host={host_id}")
            reply = {
                'role': 'host',
                'session': self._controller.describe(session_id),
                'state': self._controller.session_state(session_id, include_correct=True),
                'stats': self._controller.stats(session_id),
            }
            emit('session_joined', reply)
            return {'ok': True}

        participant, reconnected = self._controller.join(
            session_id, data.get('name'), data.get('participantId')
        )
        self._release(sid, keep=(session_id, participant.id))
        self._bind(sid, session_id, participant_id=participant.id)
        join_room(room_for(session_id))
        self._logger.info(
            f"[ws-join] session={session_id} participant={participant.id} reconnected={reconnected}"
        )
        reply = {
            'role': 'participant',
            'participant': participant.to_dict(),
            'reconnected': reconnected,
            'session': self._controller.session_state(session_id),
        }
        emit('session_joined', reply)
        return {'ok': True, 'participantId': participant.id}

    @guarded
    def on_leave_session(self, data=None):
        data = _payload(data)
        sid = _get_sid()
        ctx = self._context(data)
        session_id = ctx['session_id']
        if not ctx['is_host']:
            self._controller.leave(session_id, ctx['participant_id'])
        self._release(sid, keep=(session_id, ctx['participant_id']))
        emit('left', {'sessionId': session_id})
        return {'ok': True}

    @guarded
    def on_start_quiz(self, data=None):
        # quizData from the client is ignored; the session runs on its own quiz snapshot
        ctx = self._host_context(_payload(data))
        self._controller.start(ctx['session_id'], ctx['host_id'])
        return {'ok': True}

    @guarded
    def on_pause_quiz(self, data=None):
        ctx = self._host_context(_payload(data))
        self._controller.pause(ctx['session_id'], ctx['host_id'])
        return {'ok': True}

    @guarded
    def on_resume_quiz(self, data=None):
        ctx = self._host_context(_payload(data))
        self._controller.resume(ctx['session_id'], ctx['host_id'])
        return {'ok': True}

    @guarded
    def on_change_question(self, data=None):
        data = _payload(data)
        ctx = self._host_context(data)
        question_data = data.get('questionData') or {}
        if not isinstance(question_data, dict):
            raise InvalidPayload('questionData must be an object')
        question_index = question_data.get('questionIndex', data.get('questionIndex'))
        self._controller.change_question(ctx['session_id'], ctx['host_id'], question_index)
        return {'ok': True}

    @guarded
    def on_end_quiz(self, data=None):
        ctx = self._host_context(_payload(data))
        results = self._controller.end(ctx['session_id'], ctx['host_id'])
        return {'ok': True, 'results': results}

    @guarded
    def on_submit_answer(self, data=None):
        data = _payload(data)
        ctx = self._context(data)
        if ctx['is_host']:
            raise Forbidden('Hosts cannot submit answers')
        participant_id = ctx['participant_id']
        if data.get('participantId') not in (None, participant_id):
            raise Forbidden('Cannot answer for another participant')
        if 'answer' not in data:
            raise InvalidPayload('answer is required')
        result = self._controller.submit_answer(
            ctx['session_id'],
            participant_id,
            data.get('questionIndex'),
            data['answer'],
            client_timestamp=data.get('timestamp'),
        )
        emit('answer_submitted', result.to_dict())
        return {'ok': True, **result.to_dict()}

    @guarded
    def on_request_leaderboard(self, data=None):
        data = _payload(data)
        ctx = self._context(data)
        session = self._controller.get_session(ctx['session_id'])
        if not ctx['is_host'] and not session.config.show_leaderboard:
            raise Forbidden('Leaderboard is hidden for this session')
        leaderboard = self._controller.leaderboard(ctx['session_id'], data.get('limit'))
        emit('leaderboard', {'sessionId': ctx['session_id'], 'leaderboard': leaderboard})
        return {'ok': True}

    def on_ping(self, data=None):
        emit('pong', data or {})


def register_socketio_handlers(gateway: RealtimeGateway, namespace: str = NAMESPACE) -> None:
    """Register the gateway's Socket.IO event handlers on ``namespace``."""
    from quizlive import socketio

    handlers = {
        'connect': gateway.on_connect,
        'disconnect': gateway.on_disconnect,
        'join_session': gateway.on_join_session,
        'leave_session': gateway.on_leave_session,
        'start_quiz': gateway.on_start_quiz,
        'pause_quiz': gateway.on_pause_quiz,
        'resume_quiz': gateway.on_resume_quiz,
        'change_question': gateway.on_change_question,
        'end_quiz': gateway.on_end_quiz,
        'submit_answer': gateway.on_submit_answer,
        'request_leaderboard': gateway.on_request_leaderboard,
        'ping': gateway.on_ping,
    }
    for event, handler in handlers.items():
        socketio.on_event(event, handler, namespace=namespace)
