"""In-memory registry of live sessions, participants and scores.

The store is the single writer of session state. Every mutation runs under
the owning session's lock, so two operations on the same session never
interleave while operations on different sessions proceed in parallel.
``Participant.score`` is the only copy of a participant's score; the
map-shaped view is derived on demand by :meth:`SessionStore.score_map`.
"""

import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .errors import (
    CapacityExceeded,
    DuplicateAnswer,
    InvalidPayload,
    LateJoinForbidden,
    NotFound,
    ParticipantConflict,
    SessionEnded,
    SessionNotActive,
)


WAITING = 'waiting'
ACTIVE = 'active'
PAUSED = 'paused'
ENDED = 'ended'

_TRANSITIONS = {
    WAITING: {ACTIVE, ENDED},
    ACTIVE: {PAUSED, ENDED},
    PAUSED: {ACTIVE, ENDED},
    ENDED: set(),
}

# wire key -> attribute
_CONFIG_KEYS = {
    'maxParticipants': 'max_participants',
    'questionTimeLimit': 'question_time_limit',
    'showCorrectAnswers': 'show_correct_answers',
    'allowLateJoin': 'allow_late_join',
    'shuffleQuestions': 'shuffle_questions',
    'shuffleAnswers': 'shuffle_answers',
    'autoAdvance': 'auto_advance',
    'showLeaderboard': 'show_leaderboard',
}
_INT_FIELDS = ('max_participants', 'question_time_limit')


def iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class SessionConfig:
    max_participants: int = 50
    question_time_limit: int = 30  # seconds
    show_correct_answers: bool = True
    allow_late_join: bool = True
    shuffle_questions: bool = False
    shuffle_answers: bool = True
    auto_advance: bool = True
    show_leaderboard: bool = True

    @property
    def time_limit_ms(self) -> int:
        return self.question_time_limit * 1000

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]] = None, defaults: Optional['SessionConfig'] = None) -> 'SessionConfig':
        """Build a config from wire (camelCase) or attribute keys, filling gaps from ``defaults``."""
        base = defaults or cls()
        values = {f.name: getattr(base, f.name) for f in fields(cls)}
        if raw is not None and not isinstance(raw, dict):
            raise InvalidPayload('config must be an object')
        for key, value in (raw or {}).items():
            attr = _CONFIG_KEYS.get(key) or (key if key in values else None)
            if attr is None or value is None:
                continue
            values[attr] = value
        for attr in _INT_FIELDS:
            value = values[attr]
            if isinstance(value, bool):
                raise InvalidPayload(f'{attr} must be an integer')
            try:
                values[attr] = int(value)
            except (TypeError, ValueError):
                raise InvalidPayload(f'{attr} must be an integer')
            if values[attr] < 1:
                raise InvalidPayload(f'{attr} must be at least 1')
        for attr in values:
            if attr not in _INT_FIELDS:
                values[attr] = bool(values[attr])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {wire: getattr(self, attr) for wire, attr in _CONFIG_KEYS.items()}


@dataclass(frozen=True)
class AnswerRecord:
    question_index: int
    answer: Any
    submitted_at: float
    response_time_ms: Optional[int] = None
    client_timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'questionIndex': self.question_index,
            'answer': self.answer,
            'submittedAt': iso(self.submitted_at),
            'responseTime': self.response_time_ms,
        }


@dataclass
class Participant:
    id: str
    name: str
    joined_at: float
    connected: bool = True
    score: int = 0
    answers: Dict[int, AnswerRecord] = field(default_factory=dict)

    @property
    def answered_count(self) -> int:
        return len(self.answers)

    def to_dict(self, include_answers: bool = False) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'connected': self.connected,
            'score': self.score,
            'answeredQuestions': self.answered_count,
            'joinedAt': iso(self.joined_at),
        }
        if include_answers:
            data['answers'] = [self.answers[i].to_dict() for i in sorted(self.answers)]
        return data


@dataclass
class Session:
    id: str
    quiz_id: Any
    config: SessionConfig
    created_at: float
    host_id: Optional[str] = None
    title: Optional[str] = None
    questions: List[Dict[str, Any]] = field(default_factory=list)
    status: str = WAITING
    current_question_index: int = 0
    current_question_start_time: Optional[float] = None
    question_closed: bool = False
    # position in the run -> index into ``questions``
    question_order: List[int] = field(default_factory=list)
    # position in the run -> display order of that question's answers
    answer_orders: Dict[int, List[int]] = field(default_factory=dict)
    participants: Dict[str, Participant] = field(default_factory=dict)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    paused_at: Optional[float] = None
    lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def question_count(self) -> int:
        return len(self.question_order)

    @property
    def is_last_question(self) -> bool:
        return self.current_question_index >= self.question_count - 1

    def question_at(self, index: int) -> Dict[str, Any]:
        if index < 0 or index >= self.question_count:
            raise InvalidPayload(f'questionIndex {index} is out of range')
        return self.questions[self.question_order[index]]

    def current_question(self) -> Dict[str, Any]:
        return self.question_at(self.current_question_index)

    def transition(self, status: str) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(f'illegal transition {self.status} -> {status}')
        self.status = status

    def set_question(self, index: int, now: float) -> None:
        if self.status == ACTIVE and index < self.current_question_index:
            raise ValueError('question index may not move backwards while active')
        self.current_question_index = index
        self.current_question_start_time = now
        self.question_closed = False

    def question_payload(self, index: Optional[int] = None, include_correct: bool = False) -> Dict[str, Any]:
        """Question as shown to clients; correctness flags only when ``include_correct``."""
        index = self.current_question_index if index is None else index
        question = self.question_at(index)
        answers = list(question.get('answers') or [])
        order = self.answer_orders.get(index) or list(range(len(answers)))
        shown = []
        for i in order:
            entry = {'text': answers[i].get('text')}
            if include_correct:
                entry['correct'] = bool(answers[i].get('correct'))
            shown.append(entry)
        payload = {
            'id': question.get('id'),
            'text': question.get('text'),
            'type': question.get('type'),
            'points': question.get('points'),
            'answers': shown,
        }
        # short answers would leak the solution
        if question.get('type') == 'short-answer' and not include_correct:
            payload['answers'] = []
        return payload

    def public_dict(self) -> Dict[str, Any]:
        """Session view that is safe to send to participants."""
        return {
            'id': self.id,
            'quizId': self.quiz_id,
            'title': self.title,
            'status': self.status,
            'currentQuestion': self.current_question_index,
            'totalQuestions': self.question_count,
            'participantCount': len(self.participants),
            'config': {
                'questionTimeLimit': self.config.question_time_limit,
                'showCorrectAnswers': self.config.show_correct_answers,
                'showLeaderboard': self.config.show_leaderboard,
            },
        }

    def to_dict(self) -> Dict[str, Any]:
        start = self.current_question_start_time
        return {
            'id': self.id,
            'quizId': self.quiz_id,
            'title': self.title,
            'hostId': self.host_id,
            'status': self.status,
            'config': self.config.to_dict(),
            'currentQuestion': self.current_question_index,
            'currentQuestionStartTime': int(start * 1000) if start is not None else None,
            'questionClosed': self.question_closed,
            'totalQuestions': self.question_count,
            'participants': [p.to_dict(include_answers=True) for p in self.participants.values()],
            'createdAt': iso(self.created_at),
            'startedAt': iso(self.started_at),
            'endedAt': iso(self.ended_at),
        }


def require_active(session: Session) -> None:
    if session.status == ENDED:
        raise SessionEnded()
    if session.status != ACTIVE:
        raise SessionNotActive()


class SessionStore:
    """Owns every live session; constructed once per application."""

    def __init__(self, clock=time.time, default_config: Optional[SessionConfig] = None):
        self._clock = clock
        self._default_config = default_config or SessionConfig()
        self._sessions: Dict[str, Session] = {}
        self._participant_index: Dict[str, str] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._sessions)

    def __contains__(self, session_id) -> bool:
        with self._registry_lock:
            return session_id in self._sessions

    @property
    def default_config(self) -> SessionConfig:
        return self._default_config

    def create_session(self, quiz_id, config=None, host_id=None, quiz: Optional[Dict[str, Any]] = None) -> Session:
        if not isinstance(config, SessionConfig):
            config = SessionConfig.from_dict(config, self._default_config)
        quiz = quiz or {}
        questions = list(quiz.get('questions') or [])
        session = Session(
            id=uuid.uuid4().hex,
            quiz_id=quiz_id,
            config=config,
            created_at=self._clock(),
            host_id=host_id,
            title=quiz.get('title'),
            questions=questions,
            question_order=list(range(len(questions))),
        )
        with self._registry_lock:
            self._sessions[session.id] = session
        return session

    def get_session(self, session_id) -> Session:
        with self._registry_lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFound('Session not found')
        return session

    @contextmanager
    def locked(self, session_id):
        """Yield the session with its lock held."""
        session = self.get_session(session_id)
        with session.lock:
            with self._registry_lock:
                if self._sessions.get(session_id) is not session:
                    raise NotFound('Session not found')
            yield session

    def list_sessions(self, statuses: Optional[Iterable[str]] = None) -> List[Session]:
        with self._registry_lock:
            sessions = list(self._sessions.values())
        if statuses is not None:
            wanted = set(statuses)
            sessions = [s for s in sessions if s.status in wanted]
        return sessions

    def add_participant(self, session_id, name: str, participant_id: Optional[str] = None) -> Participant:
        with self.locked(session_id) as session:
            if session.status == ENDED:
                raise SessionEnded()
            if len(session.participants) >= session.config.max_participants:
                raise CapacityExceeded()
            if session.status in (ACTIVE, PAUSED) and not session.config.allow_late_join:
                raise LateJoinForbidden()
            pid = participant_id or uuid.uuid4().hex
            if pid in session.participants:
                raise ParticipantConflict('Participant already joined this session')
            with self._registry_lock:
                owner = self._participant_index.get(pid)
                if owner is not None and owner != session.id:
                    other = self._sessions.get(owner)
                    if other is not None and other.status != ENDED:
                        raise ParticipantConflict()
                self._participant_index[pid] = session.id
            participant = Participant(id=pid, name=name, joined_at=self._clock())
            session.participants[pid] = participant
            return participant

    def remove_participant(self, session_id, participant_id) -> Participant:
        with self.locked(session_id) as session:
            participant = session.participants.pop(participant_id, None)
            if participant is None:
                raise NotFound('Participant not found')
            with self._registry_lock:
                if self._participant_index.get(participant_id) == session.id:
                    del self._participant_index[participant_id]
            return participant

    def get_participant(self, session_id, participant_id) -> Participant:
        with self.locked(session_id) as session:
            return self._participant(session, participant_id)

    def set_connected(self, session_id, participant_id, connected: bool) -> Participant:
        with self.locked(session_id) as session:
            participant = self._participant(session, participant_id)
            participant.connected = connected
            return participant

    def record_answer(self, session_id, participant_id, question_index: int, answer,
                      timestamp: Optional[float] = None, client_timestamp: Optional[float] = None) -> AnswerRecord:
        with self.locked(session_id) as session:
            participant = self._participant(session, participant_id)
            require_active(session)
            if question_index in participant.answers:
                raise DuplicateAnswer()
            submitted_at = self._clock() if timestamp is None else timestamp
            response_time_ms = None
            if session.current_question_start_time is not None:
                response_time_ms = max(0, int(round((submitted_at - session.current_question_start_time) * 1000)))
            record = AnswerRecord(
                question_index=question_index,
                answer=answer,
                submitted_at=submitted_at,
                response_time_ms=response_time_ms,
                client_timestamp=client_timestamp,
            )
            participant.answers[question_index] = record
            return record

    def apply_score_delta(self, session_id, participant_id, delta: int) -> int:
        if delta < 0:
            raise ValueError('score deltas may not be negative')
        with self.locked(session_id) as session:
            participant = self._participant(session, participant_id)
            participant.score += int(delta)
            return participant.score

    def score_map(self, session_id) -> Dict[str, int]:
        with self.locked(session_id) as session:
            return {pid: p.score for pid, p in session.participants.items()}

    def purge_ended(self, retention_sec: float, now: Optional[float] = None) -> List[str]:
        """Drop sessions that ended more than ``retention_sec`` ago, with all participant state."""
        now = self._clock() if now is None else now
        with self._registry_lock:
            expired = [
                s for s in self._sessions.values()
                if s.status == ENDED and s.ended_at is not None and now - s.ended_at > retention_sec
            ]
            for session in expired:
                del self._sessions[session.id]
                for pid in list(session.participants):
                    if self._participant_index.get(pid) == session.id:
                        del self._participant_index[pid]
        return [s.id for s in expired]

    @staticmethod
    def _participant(session: Session, participant_id) -> Participant:
        participant = session.participants.get(participant_id)
        if participant is None:
            raise NotFound('Participant not found')
        return participant
