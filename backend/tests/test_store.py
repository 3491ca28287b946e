import pytest

from quizlive.services.live import SessionConfig, SessionStore
from quizlive.services.live.errors import (
    CapacityExceeded,
    DuplicateAnswer,
    InvalidPayload,
    LateJoinForbidden,
    NotFound,
    ParticipantConflict,
    SessionEnded,
    SessionNotActive,
)
from quizlive.services.live.store import ACTIVE, ENDED, PAUSED, WAITING

from conftest import FakeClock, make_quiz


@pytest.fixture()
def store(clock):
    return SessionStore(clock=clock)


def _session(store, **config):
    return store.create_session(1, config, host_id='host-1', quiz=make_quiz())


def _activate(store, session, clock):
    session.transition(ACTIVE)
    session.set_question(0, clock())


def test_create_session_fills_defaults(store):
    session = _session(store)
    assert session.status == WAITING
    assert session.current_question_index == 0
    assert session.question_count == 3
    assert session.config == SessionConfig()
    assert store.get_session(session.id) is session
    assert session.id != _session(store).id


def test_config_accepts_wire_keys_and_rejects_bad_values(store):
    session = _session(store, maxParticipants=2, questionTimeLimit=10, allowLateJoin=False)
    assert session.config.max_participants == 2
    assert session.config.question_time_limit == 10
    assert session.config.allow_late_join is False
    assert session.config.to_dict()['maxParticipants'] == 2
    with pytest.raises(InvalidPayload):
        _session(store, maxParticipants=0)
    with pytest.raises(InvalidPayload):
        _session(store, questionTimeLimit='soon')


def test_get_unknown_session_raises(store):
    with pytest.raises(NotFound):
        store.get_session('missing')


def test_capacity_is_never_exceeded(store):
    session = _session(store, maxParticipants=2)
    store.add_participant(session.id, 'Ann')
    store.add_participant(session.id, 'Ben')
    with pytest.raises(CapacityExceeded):
        store.add_participant(session.id, 'Cid')
    assert len(session.participants) == 2


def test_late_join_rules(store, clock):
    open_session = _session(store)
    _activate(store, open_session, clock)
    assert store.add_participant(open_session.id, 'Late').name == 'Late'

    closed = _session(store, allowLateJoin=False)
    _activate(store, closed, clock)
    with pytest.raises(LateJoinForbidden):
        store.add_participant(closed.id, 'Late')
    closed.transition(PAUSED)
    with pytest.raises(LateJoinForbidden):
        store.add_participant(closed.id, 'Late')

    closed.transition(ENDED)
    with pytest.raises(SessionEnded):
        store.add_participant(closed.id, 'Late')


def test_participant_id_is_unique_across_live_sessions(store):
    first = _session(store)
    second = _session(store)
    store.add_participant(first.id, 'Ann', participant_id='p-1')
    with pytest.raises(ParticipantConflict):
        store.add_participant(second.id, 'Ann', participant_id='p-1')
    with pytest.raises(ParticipantConflict):
        store.add_participant(first.id, 'Ann again', participant_id='p-1')
    # once the first session has ended the id is free again
    first.transition(ENDED)
    assert store.add_participant(second.id, 'Ann', participant_id='p-1').id == 'p-1'


def test_record_answer_requires_active_session(store, clock):
    session = _session(store)
    p = store.add_participant(session.id, 'Ann')
    with pytest.raises(SessionNotActive):
        store.record_answer(session.id, p.id, 0, 'Paris')
    session.transition(ENDED)
    with pytest.raises(SessionEnded):
        store.record_answer(session.id, p.id, 0, 'Paris')
    assert p.answers == {}


def test_duplicate_answer_leaves_state_unchanged(store, clock):
    session = _session(store)
    p = store.add_participant(session.id, 'Ann')
    _activate(store, session, clock)
    clock.advance(1.5)
    record = store.record_answer(session.id, p.id, 0, 'Paris', client_timestamp=123)
    assert record.response_time_ms == 1500
    assert record.client_timestamp == 123
    store.apply_score_delta(session.id, p.id, 150)

    clock.advance(1)
    with pytest.raises(DuplicateAnswer):
        store.record_answer(session.id, p.id, 0, 'Lyon')
    assert p.answers[0].answer == 'Paris'
    assert p.score == 150


def test_score_deltas_accumulate_and_reject_negative(store):
    session = _session(store)
    p = store.add_participant(session.id, 'Ann')
    assert store.apply_score_delta(session.id, p.id, 10) == 10
    assert store.apply_score_delta(session.id, p.id, 0) == 10
    assert store.apply_score_delta(session.id, p.id, 5) == 15
    with pytest.raises(ValueError):
        store.apply_score_delta(session.id, p.id, -1)
    assert store.score_map(session.id) == {p.id: 15}


def test_remove_participant_releases_state(store):
    session = _session(store)
    p = store.add_participant(session.id, 'Ann', participant_id='p-1')
    store.apply_score_delta(session.id, p.id, 10)
    store.remove_participant(session.id, 'p-1')
    assert store.score_map(session.id) == {}
    with pytest.raises(NotFound):
        store.remove_participant(session.id, 'p-1')
    # the id can be reused elsewhere immediately
    other = _session(store)
    assert store.add_participant(other.id, 'Ann', participant_id='p-1').score == 0


def test_set_connected(store):
    session = _session(store)
    p = store.add_participant(session.id, 'Ann')
    store.set_connected(session.id, p.id, False)
    assert p.connected is False
    with pytest.raises(NotFound):
        store.set_connected(session.id, 'nobody', True)


def test_status_transitions_are_monotonic(store):
    session = _session(store)
    with pytest.raises(ValueError):
        session.transition(PAUSED)
    session.transition(ACTIVE)
    session.transition(PAUSED)
    session.transition(ACTIVE)
    session.transition(ENDED)
    with pytest.raises(ValueError):
        session.transition(ACTIVE)


def test_question_index_cannot_move_backwards_while_active(store, clock):
    session = _session(store)
    _activate(store, session, clock)
    session.set_question(2, clock())
    with pytest.raises(ValueError):
        session.set_question(1, clock())


def test_short_answer_payload_hides_solution(store):
    session = _session(store)
    assert session.question_payload(2)['answers'] == []
    assert session.question_payload(2, include_correct=True)['answers'] == [{'text': 'Mars', 'correct': True}]
    assert 'correct' not in session.question_payload(0)['answers'][0]


def test_purge_ended_drops_old_sessions():
    clock = FakeClock()
    store = SessionStore(clock=clock)
    old = store.create_session(1, None, quiz=make_quiz())
    store.add_participant(old.id, 'Ann', participant_id='p-1')
    old.transition(ENDED)
    old.ended_at = clock()
    fresh = store.create_session(1, None, quiz=make_quiz())

    assert store.purge_ended(60, now=clock() + 30) == []
    assert store.purge_ended(60, now=clock() + 61) == [old.id]
    assert old.id not in store
    assert fresh.id in store
    assert len(store) == 1
