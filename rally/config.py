import os

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_float(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _normalize_database_url(raw_url):
    if not raw_url:
        return raw_url
    if raw_url.startswith('postgres://'):
        return raw_url.replace('postgres://', 'postgresql://', 1)
    return raw_url


class BaseConfig:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-prod')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_EXPIRATION_HOURS = 24
    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '*')
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'threading')

    # Tournament engine
    ENGINE_ENABLED = _env_bool('ENGINE_ENABLED', True)
    ENGINE_INTERVAL_SECONDS = _env_float('ENGINE_INTERVAL_SECONDS', 30.0)
    REGISTRATION_WINDOW_DAYS = _env_int('REGISTRATION_WINDOW_DAYS', 7)
    RESULT_GRACE_HOURS = _env_int('RESULT_GRACE_HOURS', 48)
    TOURNAMENT_MIN_PLAYERS = _env_int('TOURNAMENT_MIN_PLAYERS', 4)
    TOURNAMENT_MAX_PLAYERS = _env_int('TOURNAMENT_MAX_PLAYERS', 8)

    # Proposal ranking collaborator (empty key = chronological picks only)
    OPENAI_API_KEY = os.environ.get('OPENAI_API_KEY', '')
    OPENAI_MODEL = os.environ.get('OPENAI_MODEL', 'gpt-4.1-mini')
    OPENAI_API_URL = os.environ.get(
        'OPENAI_API_URL', 'https://api.openai.com/v1/chat/completions'
    )
    SCHEDULER_TIMEOUT_SECONDS = _env_float('SCHEDULER_TIMEOUT_SECONDS', 8.0)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(
        os.environ.get(
            'DATABASE_URL',
            'sqlite:///' + os.path.join(basedir, '..', 'rally_dev.db')
        )
    )


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    ENGINE_ENABLED = False
    OPENAI_API_KEY = ''


class ProductionConfig(BaseConfig):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(os.environ.get('DATABASE_URL'))


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
