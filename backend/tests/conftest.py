import os
import sys
import pytest

# Ensure the backend root (containing the `quizlive` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from quizlive import create_app, db, socketio
from quizlive.services.live import (
    EventBus, SessionConfig, SessionController, SessionStore, TimerCoordinator,
)


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ORIGINS = []
    HOST_ABANDON_GRACE_SEC = 1
    ANSWER_REVEAL_DELAY_SEC = 0


SAMPLE_QUESTIONS = [
    {'id': 'q1', 'text': 'Capital of France?', 'type': 'multiple-choice', 'points': 100, 'answers': [
        {'text': 'Paris', 'correct': True},
        {'text': 'Lyon', 'correct': False},
        {'text': 'Nice', 'correct': False},
    ]},
    {'id': 'q2', 'text': 'The sky is blue.', 'type': 'true-false', 'points': 50, 'answers': [
        {'text': 'True', 'correct': True},
        {'text': 'False', 'correct': False},
    ]},
    {'id': 'q3', 'text': 'Red planet?', 'type': 'short-answer', 'points': 10, 'answers': [
        {'text': 'Mars', 'correct': True},
    ]},
]


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import quizlive.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def quiz_id(flask_app):
    from quizlive.models import build_quiz
    quiz = build_quiz('Geography', [
        {k: v for k, v in q.items() if k != 'id'} for q in SAMPLE_QUESTIONS
    ])
    return quiz.id


@pytest.fixture()
def draft_quiz_id(flask_app):
    from quizlive.models import build_quiz
    quiz = build_quiz('Draft', [SAMPLE_QUESTIONS[0]], status='draft')
    return quiz.id


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def events(bus):
    """Every published event, in order, as ``(kind value, payload)``."""
    received = []
    bus.subscribe_all(lambda kind, payload: received.append((kind.value, payload)))
    return received


def make_quiz(status='published', questions=None):
    return {
        'id': 1,
        'title': 'Geography',
        'status': status,
        'questions': SAMPLE_QUESTIONS if questions is None else questions,
    }


@pytest.fixture()
def quizzes():
    return {1: make_quiz(), 2: make_quiz(status='draft'), 3: make_quiz(questions=[])}


@pytest.fixture()
def controller(bus, clock, quizzes):
    store = SessionStore(clock=clock)
    timers = TimerCoordinator(bus, enabled=False)
    return SessionController(
        store,
        timers,
        bus,
        quiz_loader=quizzes.get,
        clock=clock,
        reveal_delay=0,
    )


def no_shuffle(**overrides):
    config = {'shuffleAnswers': False}
    config.update(overrides)
    return config
