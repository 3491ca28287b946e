"""Session state machine: waiting -> active <-> paused -> ended.

The controller is the only caller that mutates sessions through the store.
Each public operation takes the session lock for its whole duration, so a
question change and an answer for the old question cannot interleave, and
publishes the resulting events before releasing it so subscribers see them
in order.
"""

import itertools
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from . import scoring
from .errors import (
    AlreadyActive,
    Forbidden,
    InvalidPayload,
    LiveSessionError,
    NotFound,
    NotPaused,
    QuestionClosed,
    QuizNotPublished,
    SessionEnded,
    SessionNotActive,
)
from .events import EventBus, EventKind
from .leaderboard import DEFAULT_LIMIT, as_dicts, project
from .store import ACTIVE, ENDED, PAUSED, WAITING, Session, SessionStore, iso, require_active
from .timers import TimerCoordinator


# Actor used for transitions the engine triggers itself (timer expiry, abandoned host).
SYSTEM = object()

PUBLISHED = 'published'


@dataclass(frozen=True)
class AnswerResult:
    participant_id: str
    question_index: int
    correct: bool
    points: int
    score: int
    response_time_ms: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'participantId': self.participant_id,
            'questionIndex': self.question_index,
            'isCorrect': self.correct,
            'points': self.points,
            'score': self.score,
            'responseTime': self.response_time_ms,
        }


def _is_index(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class SessionController:

    def __init__(self, store: SessionStore, timers: TimerCoordinator, bus: EventBus,
                 quiz_loader: Optional[Callable[[Any], Optional[Dict[str, Any]]]] = None,
                 logger=None, clock=time.time, reveal_delay: float = 2.0,
                 leaderboard_limit: int = DEFAULT_LIMIT, final_leaderboard_limit: Optional[int] = None,
                 retention_sec: float = 24 * 60 * 60, host_grace_sec: float = 0, rng=None):
        self._store = store
        self._timers = timers
        self._bus = bus
        self._quiz_loader = quiz_loader
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._reveal_delay = reveal_delay
        self._leaderboard_limit = leaderboard_limit
        self._final_limit = final_leaderboard_limit
        self._retention_sec = retention_sec
        self._host_grace_sec = host_grace_sec
        self._rng = rng or random.Random()
        self._hosts_online: Dict[str, int] = {}
        self._abandon_tokens: Dict[str, int] = {}
        self._presence_lock = threading.Lock()
        self._tokens = itertools.count(1)
        timers.set_expiry_handler(self.handle_timer_expired)

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def timers(self) -> TimerCoordinator:
        return self._timers

    @property
    def bus(self) -> EventBus:
        return self._bus

    # ---- creation and lookup ----

    def create_session(self, quiz_id, config=None, host_id=None) -> Session:
        if quiz_id in (None, ''):
            raise InvalidPayload('quizId is required')
        if not host_id:
            raise InvalidPayload('hostId is required')
        quiz = self._quiz_loader(quiz_id) if self._quiz_loader else None
        if quiz is None:
            raise NotFound('Quiz not found')
        if quiz.get('status') != PUBLISHED:
            raise QuizNotPublished()
        if not quiz.get('questions'):
            raise InvalidPayload('Quiz has no questions')
        session = self._store.create_session(quiz_id, config, host_id=host_id, quiz=quiz)
        self._logger.info(f"[session-create] session={session.id} quiz={quiz_id} host={host_id}")
        return session

    def get_session(self, session_id) -> Session:
        return self._store.get_session(session_id)

    def describe(self, session_id) -> Dict[str, Any]:
        """Full host-facing view of a session."""
        with self._store.locked(session_id) as session:
            return session.to_dict()

    def is_host(self, session_id, actor_id) -> bool:
        session = self._store.get_session(session_id)
        return actor_id is not None and session.host_id is not None and str(actor_id) == str(session.host_id)

    def list_active(self) -> List[Session]:
        return self._store.list_sessions((WAITING, ACTIVE, PAUSED))

    # ---- participants ----

    def join(self, session_id, name=None, participant_id=None):
        """Add a participant, or reconnect one whose id is already in the session.

        Returns ``(participant, reconnected)``.
        """
        with self._store.locked(session_id) as session:
            existing = session.participants.get(participant_id) if participant_id else None
            if existing is not None:
                existing.connected = True
                self._logger.info(f"[participant-reconnect] session={session.id} participant={existing.id}")
                self._bus.publish(EventKind.PARTICIPANT_JOINED, {
                    'sessionId': session.id,
                    'participant': existing.to_dict(),
                    'participantCount': len(session.participants),
                    'reconnected': True,
                })
                return existing, True
            if not isinstance(name, str) or not name.strip():
                raise InvalidPayload('Participant name is required')
            participant = self._store.add_participant(session.id, name.strip(), participant_id)
            self._logger.info(
                f"[participant-join] session={session.id} participant={participant.id} name={participant.name!r}"
            )
            self._bus.publish(EventKind.PARTICIPANT_JOINED, {
                'sessionId': session.id,
                'participant': participant.to_dict(),
                'participantCount': len(session.participants),
                'reconnected': False,
            })
            return participant, False

    def leave(self, session_id, participant_id):
        with self._store.locked(session_id) as session:
            participant = self._store.remove_participant(session.id, participant_id)
            self._logger.info(f"[participant-leave] session={session.id} participant={participant_id}")
            self._bus.publish(EventKind.PARTICIPANT_LEFT, {
                'sessionId': session.id,
                'participantId': participant.id,
                'name': participant.name,
                'participantCount': len(session.participants),
            })
            self._publish_leaderboard(session)
            return participant

    def mark_disconnected(self, session_id, participant_id):
        with self._store.locked(session_id) as session:
            participant = self._store.set_connected(session.id, participant_id, False)
            self._bus.publish(EventKind.PARTICIPANT_DISCONNECTED, {
                'sessionId': session.id,
                'participantId': participant.id,
                'name': participant.name,
            })
            return participant

    # ---- state machine ----

    def start(self, session_id, actor_id) -> Session:
        with self._store.locked(session_id) as session:
            self._require_host(session, actor_id)
            if session.status == ACTIVE:
                raise AlreadyActive()
            if session.status == ENDED:
                raise SessionEnded()
            now = self._clock()
            if session.started_at is None:
                session.started_at = now
                if session.config.shuffle_questions:
                    order = list(range(len(session.questions)))
                    self._rng.shuffle(order)
                    session.question_order = order
            session.set_question(0, now)
            session.paused_at = None
            session.transition(ACTIVE)
            self._shuffle_answers(session, 0)
            self._logger.info(
                f"[session-start] session={session.id} quiz={session.quiz_id} participants={len(session.participants)}"
            )
            self._bus.publish(EventKind.SESSION_STARTED, {
                'sessionId': session.id,
                'session': session.public_dict(),
            })
            self._show_current_question(session)
            return session

    def pause(self, session_id, actor_id) -> Session:
        with self._store.locked(session_id) as session:
            self._require_host(session, actor_id)
            require_active(session)
            session.transition(PAUSED)
            session.paused_at = self._clock()
            remaining = self._timers.pause(session.id)
            self._logger.info(f"[session-pause] session={session.id} question={session.current_question_index}")
            self._bus.publish(EventKind.QUIZ_PAUSED, {
                'sessionId': session.id,
                'questionIndex': session.current_question_index,
                'remaining': remaining,
                'session': session.public_dict(),
            })
            return session

    def resume(self, session_id, actor_id) -> Session:
        with self._store.locked(session_id) as session:
            self._require_host(session, actor_id)
            if session.status != PAUSED:
                raise NotPaused()
            now = self._clock()
            # the pause does not count towards the answer time
            if session.paused_at is not None and session.current_question_start_time is not None:
                session.current_question_start_time += now - session.paused_at
            session.paused_at = None
            session.transition(ACTIVE)
            remaining = None if session.question_closed else self._timers.resume(session.id)
            self._logger.info(f"[session-resume] session={session.id} question={session.current_question_index}")
            self._bus.publish(EventKind.QUIZ_RESUMED, {
                'sessionId': session.id,
                'questionIndex': session.current_question_index,
                'remaining': remaining,
                'session': session.public_dict(),
            })
            if session.question_closed and session.config.auto_advance:
                self._schedule_advance(session)
            return session

    def advance_question(self, session_id, actor_id, expected_index: Optional[int] = None) -> Session:
        """Move to the next question, or end the session after the last one.

        ``expected_index`` is set by auto-advance; if the session has moved on
        (or stopped) since it was scheduled, nothing happens.
        """
        with self._store.locked(session_id) as session:
            self._require_host(session, actor_id)
            if expected_index is not None and (
                session.status != ACTIVE or session.current_question_index != expected_index
            ):
                self._logger.info(
                    f"[advance-abort] session={session.id} expected={expected_index} "
                    f"actual={session.current_question_index} status={session.status}"
                )
                return session
            require_active(session)
            if session.is_last_question:
                self._end_locked(session)
                return session
            self._move_to(session, session.current_question_index + 1)
            return session

    def change_question(self, session_id, actor_id, question_index=None) -> Session:
        """Jump forward to ``question_index``; without one, same as :meth:`advance_question`."""
        if question_index is None:
            return self.advance_question(session_id, actor_id)
        if not _is_index(question_index):
            raise InvalidPayload('questionIndex must be an integer')
        with self._store.locked(session_id) as session:
            self._require_host(session, actor_id)
            require_active(session)
            if question_index <= session.current_question_index or question_index >= session.question_count:
                raise InvalidPayload(
                    f'questionIndex must be between {session.current_question_index + 1} '
                    f'and {session.question_count - 1}'
                )
            self._move_to(session, question_index)
            return session

    def end(self, session_id, actor_id) -> List[Dict[str, Any]]:
        """End the session and return the final leaderboard."""
        with self._store.locked(session_id) as session:
            self._require_host(session, actor_id)
            if session.status == ENDED:
                raise SessionEnded()
            return self._end_locked(session)

    # ---- answers and timer ----

    def submit_answer(self, session_id, participant_id, question_index, answer,
                      client_timestamp: Optional[float] = None) -> AnswerResult:
        if not _is_index(question_index) or question_index < 0:
            raise InvalidPayload('questionIndex must be a non-negative integer')
        with self._store.locked(session_id) as session:
            self._store.get_participant(session.id, participant_id)
            require_active(session)
            if question_index != session.current_question_index or session.question_closed:
                raise QuestionClosed()
            record = self._store.record_answer(
                session.id, participant_id, question_index, answer, client_timestamp=client_timestamp
            )
            question = session.current_question()
            correct = scoring.is_correct(question, answer)
            points = scoring.score(question, answer, record.response_time_ms, session.config.time_limit_ms)
            total = self._store.apply_score_delta(session.id, participant_id, points)
            self._logger.info(
                f"[answer] session={session.id} participant={participant_id} question={question_index} "
                f"correct={correct} points={points} score={total}"
            )
            self._bus.publish(EventKind.SCORE_UPDATED, {
                'sessionId': session.id,
                'participantId': participant_id,
                'questionIndex': question_index,
                'score': total,
            })
            self._publish_leaderboard(session)
            return AnswerResult(
                participant_id=participant_id,
                question_index=question_index,
                correct=correct,
                points=points,
                score=total,
                response_time_ms=record.response_time_ms,
            )

    def handle_timer_expired(self, session_id, question_index: int) -> None:
        try:
            with self._store.locked(session_id) as session:
                # a pause can land between the last tick and this handler
                if session.status not in (ACTIVE, PAUSED) or session.current_question_index != question_index:
                    return
                session.question_closed = True
                payload = {'sessionId': session.id, 'questionIndex': question_index}
                if session.config.show_correct_answers:
                    payload['correctAnswer'] = scoring.correct_answer(session.current_question())
                self._bus.publish(EventKind.TIMER_EXPIRED, payload)
                # resume schedules the advance for a question closed while paused
                if session.config.auto_advance and session.status == ACTIVE:
                    self._schedule_advance(session)
        except NotFound:
            self._logger.info(f"[timer-orphan] session={session_id} no longer exists")

    # ---- projections ----

    def leaderboard(self, session_id, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._store.locked(session_id) as session:
            return as_dicts(project(session.participants.values(), self._limit(limit)))

    def stats(self, session_id) -> Dict[str, Any]:
        with self._store.locked(session_id) as session:
            participants = list(session.participants.values())
            scores = [p.score for p in participants]
            average = sum(scores) / len(scores) if scores else 0
            now = self._clock()
            if session.started_at is None:
                duration = 0
            else:
                duration = round((session.ended_at or now) - session.started_at)
            answered_current = 0
            if session.status in (ACTIVE, PAUSED):
                answered_current = sum(1 for p in participants if session.current_question_index in p.answers)
            timer = self._timers.snapshot(session.id)
            return {
                'sessionId': session.id,
                'status': session.status,
                'participantCount': len(participants),
                'connectedCount': sum(1 for p in participants if p.connected),
                'currentQuestion': session.current_question_index,
                'totalQuestions': session.question_count,
                'answersForCurrentQuestion': answered_current,
                'averageScore': round(average),
                'timeRemaining': timer[0] if timer else None,
                'duration': duration,
                'createdAt': iso(session.created_at),
                'startedAt': iso(session.started_at),
                'endedAt': iso(session.ended_at),
            }

    def session_info(self, session_id) -> Dict[str, Any]:
        """What a would-be participant sees before joining."""
        with self._store.locked(session_id) as session:
            return {
                'id': session.id,
                'status': session.status,
                'participantCount': len(session.participants),
                'maxParticipants': session.config.max_participants,
                'allowLateJoin': session.config.allow_late_join,
                'quiz': {
                    'id': session.quiz_id,
                    'title': session.title,
                    'questionCount': session.question_count,
                },
            }

    def session_state(self, session_id, include_correct: bool = False) -> Dict[str, Any]:
        """Snapshot used to restore a client after (re)joining."""
        with self._store.locked(session_id) as session:
            state = session.public_dict()
            state['question'] = None
            state['timer'] = None
            if session.status in (ACTIVE, PAUSED):
                state['question'] = session.question_payload(include_correct=include_correct)
                state['questionClosed'] = session.question_closed
                timer = self._timers.snapshot(session.id)
                if timer:
                    state['timer'] = {'remaining': timer[0], 'total': timer[1]}
            return state

    # ---- host presence and housekeeping ----

    def host_connected(self, session_id) -> None:
        with self._presence_lock:
            self._hosts_online[session_id] = self._hosts_online.get(session_id, 0) + 1
            self._abandon_tokens.pop(session_id, None)

    def host_disconnected(self, session_id) -> None:
        with self._presence_lock:
            count = max(0, self._hosts_online.get(session_id, 0) - 1)
            self._hosts_online[session_id] = count
            if count > 0 or self._host_grace_sec <= 0:
                return
            token = next(self._tokens)
            self._abandon_tokens[session_id] = token
        self._logger.info(f"[host-gone] session={session_id} grace={self._host_grace_sec}s")
        self._timers.defer(self._host_grace_sec, self._end_if_abandoned, session_id, token)

    def sweep_expired(self, now: Optional[float] = None) -> List[str]:
        purged = self._store.purge_ended(self._retention_sec, now=now)
        for session_id in purged:
            self._timers.stop(session_id)
            with self._presence_lock:
                self._hosts_online.pop(session_id, None)
                self._abandon_tokens.pop(session_id, None)
        if purged:
            self._logger.info(f"[sweep] purged={len(purged)} sessions")
        return purged

    # ---- internals ----

    def _require_host(self, session: Session, actor_id) -> None:
        if actor_id is SYSTEM:
            return
        if actor_id is None or session.host_id is None or str(actor_id) != str(session.host_id):
            raise Forbidden()

    def _limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._leaderboard_limit
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise InvalidPayload('limit must be an integer')
        if limit < 1:
            raise InvalidPayload('limit must be at least 1')
        return limit

    def _move_to(self, session: Session, index: int) -> None:
        session.set_question(index, self._clock())
        self._shuffle_answers(session, index)
        self._logger.info(f"[question] session={session.id} index={index}/{session.question_count - 1}")
        self._show_current_question(session)

    def _show_current_question(self, session: Session) -> None:
        index = session.current_question_index
        self._bus.publish(EventKind.QUESTION_CHANGED, {
            'sessionId': session.id,
            'questionIndex': index,
            'questionNumber': index + 1,
            'totalQuestions': session.question_count,
            'timeLimit': session.config.question_time_limit,
            'question': session.question_payload(index),
            'hostQuestion': session.question_payload(index, include_correct=True),
        })
        self._timers.start(session.id, index, session.config.question_time_limit)

    def _shuffle_answers(self, session: Session, index: int) -> None:
        if not session.config.shuffle_answers:
            return
        question = session.question_at(index)
        if question.get('type') == scoring.SHORT_ANSWER:
            return
        order = list(range(len(question.get('answers') or [])))
        self._rng.shuffle(order)
        session.answer_orders[index] = order

    def _end_locked(self, session: Session) -> List[Dict[str, Any]]:
        self._timers.stop(session.id)
        session.transition(ENDED)
        session.ended_at = self._clock()
        session.paused_at = None
        results = as_dicts(project(session.participants.values(), self._final_limit))
        self._logger.info(
            f"[session-end] session={session.id} question={session.current_question_index} "
            f"participants={len(session.participants)}"
        )
        self._bus.publish(EventKind.SESSION_ENDED, {
            'sessionId': session.id,
            'results': results,
            'session': session.public_dict(),
        })
        return results

    def _publish_leaderboard(self, session: Session) -> None:
        self._bus.publish(EventKind.LEADERBOARD_UPDATED, {
            'sessionId': session.id,
            'leaderboard': as_dicts(project(session.participants.values(), self._leaderboard_limit)),
            'visible': session.config.show_leaderboard,
        })

    def _schedule_advance(self, session: Session) -> None:
        self._timers.defer(self._reveal_delay, self._auto_advance, session.id, session.current_question_index)

    def _auto_advance(self, session_id, expected_index: int) -> None:
        try:
            self.advance_question(session_id, SYSTEM, expected_index=expected_index)
        except LiveSessionError as exc:
            self._logger.info(f"[auto-advance-skip] session={session_id} reason={exc.code}")

    def _end_if_abandoned(self, session_id, token: int) -> None:
        with self._presence_lock:
            if self._hosts_online.get(session_id, 0) > 0 or self._abandon_tokens.get(session_id) != token:
                return
            self._abandon_tokens.pop(session_id, None)
        try:
            self.end(session_id, SYSTEM)
            self._logger.info(f"[session-abandoned] session={session_id} ended without a host")
        except (NotFound, SessionEnded) as exc:
            self._logger.info(f"[session-abandoned] session={session_id} skipped reason={exc.code}")
