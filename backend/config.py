import os


def _origins(raw):
    return [o.strip() for o in raw.split(',') if o.strip()]


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///quizlive.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ORIGINS = _origins(os.environ.get(
        'CORS_ORIGINS', 'http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000'
    ))
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    # Session defaults (per-session config overrides these)
    QUESTION_TIME_LIMIT_SEC = int(os.environ.get('QUESTION_TIME_LIMIT_SEC', '30'))
    MAX_PARTICIPANTS = int(os.environ.get('MAX_PARTICIPANTS', '50'))
    # Answer-reveal window between timer expiry and auto-advance (seconds)
    ANSWER_REVEAL_DELAY_SEC = float(os.environ.get('ANSWER_REVEAL_DELAY_SEC', '2'))
    LEADERBOARD_LIMIT = int(os.environ.get('LEADERBOARD_LIMIT', '10'))
    # 0 includes every participant in the final results
    FINAL_LEADERBOARD_LIMIT = int(os.environ.get('FINAL_LEADERBOARD_LIMIT', '0'))
    # Ended sessions are purged after this long (seconds)
    SESSION_RETENTION_SEC = int(os.environ.get('SESSION_RETENTION_SEC', str(24 * 60 * 60)))
    SESSION_SWEEP_INTERVAL_SEC = int(os.environ.get('SESSION_SWEEP_INTERVAL_SEC', '3600'))
    # End a session once its last host connection has been gone this long. 0 disables.
    HOST_ABANDON_GRACE_SEC = int(os.environ.get('HOST_ABANDON_GRACE_SEC', '300'))
    TIMER_TICK_SEC = float(os.environ.get('TIMER_TICK_SEC', '1'))
