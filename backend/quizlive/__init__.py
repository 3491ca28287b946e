from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
socketio = SocketIO(async_mode=None)


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    flask_app.logger.setLevel(flask_app.config.get('LOG_LEVEL', 'INFO'))

    origins = flask_app.config.get('CORS_ORIGINS') or []
    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=origins)

    # One engine per app; handlers and routes reach it through app.extensions
    controller = _build_engine(flask_app)
    flask_app.extensions['quizlive'] = controller

    from quizlive.api.sessions import sessions
    flask_app.register_blueprint(sessions, url_prefix='/api/sessions')

    from quizlive.socketio_events import RealtimeGateway, register_socketio_handlers
    gateway = RealtimeGateway(socketio, controller, logger=flask_app.logger)
    register_socketio_handlers(gateway)
    flask_app.extensions['quizlive_gateway'] = gateway

    if not flask_app.config.get('TESTING'):
        socketio.start_background_task(_sweep_forever, flask_app, controller)

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database with a sample published quiz."""
        from quizlive.models import build_quiz
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            quiz = build_quiz('Sample Quiz', [
                {'text': 'What is the capital of France?', 'type': 'multiple-choice', 'points': 100, 'answers': [
                    {'text': 'Paris', 'correct': True},
                    {'text': 'Lyon'},
                    {'text': 'Marseille'},
                    {'text': 'Nice'},
                ]},
                {'text': 'Python is dynamically typed.', 'type': 'true-false', 'points': 50, 'answers': [
                    {'text': 'True', 'correct': True},
                    {'text': 'False'},
                ]},
                {'text': 'Which planet is known as the red planet?', 'type': 'short-answer', 'points': 150,
                 'answers': [{'text': 'Mars', 'correct': True}]},
            ])
            print(f'Database has been reset and seeded! Sample quiz id: {quiz.id}')

    flask_app.cli.add_command(db_reset_command)

    return flask_app


def _build_engine(flask_app):
    from quizlive.models import get_quiz_by_id
    from quizlive.services.live import (
        EventBus, SessionConfig, SessionController, SessionStore, TimerCoordinator,
    )

    cfg = flask_app.config
    # Timers only run in the background outside tests; tests drive ticks by hand
    timers_enabled = not cfg.get('TESTING') or cfg.get('ENABLE_TIMERS_IN_TESTS', False)

    def load_quiz(quiz_id):
        with flask_app.app_context():
            return get_quiz_by_id(quiz_id)

    bus = EventBus(logger=flask_app.logger)
    store = SessionStore(default_config=SessionConfig(
        max_participants=int(cfg.get('MAX_PARTICIPANTS', 50)),
        question_time_limit=int(cfg.get('QUESTION_TIME_LIMIT_SEC', 30)),
    ))
    timers = TimerCoordinator(
        bus,
        spawn=socketio.start_background_task,
        sleep=socketio.sleep,
        tick_seconds=float(cfg.get('TIMER_TICK_SEC', 1)),
        enabled=timers_enabled,
        logger=flask_app.logger,
    )
    return SessionController(
        store,
        timers,
        bus,
        quiz_loader=load_quiz,
        logger=flask_app.logger,
        reveal_delay=float(cfg.get('ANSWER_REVEAL_DELAY_SEC', 2)),
        leaderboard_limit=int(cfg.get('LEADERBOARD_LIMIT', 10)),
        final_leaderboard_limit=int(cfg.get('FINAL_LEADERBOARD_LIMIT', 0)) or None,
        retention_sec=float(cfg.get('SESSION_RETENTION_SEC', 24 * 60 * 60)),
        host_grace_sec=float(cfg.get('HOST_ABANDON_GRACE_SEC', 300)),
    )


def _sweep_forever(flask_app, controller):
    interval = int(flask_app.config.get('SESSION_SWEEP_INTERVAL_SEC', 3600))
    while True:
        socketio.sleep(interval)
        try:
            controller.sweep_expired()
        except Exception:
            flask_app.logger.exception('[sweep-error] purge of ended sessions failed')
