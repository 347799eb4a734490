from flask import Flask, request, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_cors import CORS
from rally.config import config

db = SQLAlchemy()
socketio = SocketIO()


def _parse_allowed_origins(raw_origins):
    if not raw_origins:
        return '*'

    if isinstance(raw_origins, (list, tuple, set)):
        cleaned = [origin for origin in raw_origins if origin]
        return cleaned or '*'

    raw_text = str(raw_origins).strip()
    if not raw_text or raw_text == '*':
        return '*'

    origins = [origin.strip() for origin in raw_text.split(',') if origin.strip()]
    return origins or '*'


def get_engine(app=None):
    """The TournamentEngine bound to ``app`` (or the current app)."""
    from flask import current_app
    app = app or current_app
    return app.extensions['tournament_engine']


def create_app(config_name='development'):
    app = Flask(__name__)
    app.config.from_object(config[config_name])

    allowed_origins = _parse_allowed_origins(app.config.get('CORS_ALLOWED_ORIGINS', '*'))
    if str(config_name).strip().lower() == 'production':
        secret_key = str(app.config.get('SECRET_KEY') or '').strip()
        if not secret_key or secret_key == 'dev-secret-key-change-in-prod':
            raise RuntimeError('SECRET_KEY must be set to a non-default value in production')
        if allowed_origins == '*':
            raise RuntimeError('CORS_ALLOWED_ORIGINS must be explicitly set in production')

    db.init_app(app)
    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins,
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE', 'threading'),
    )
    CORS(app, resources={r'/api/*': {'origins': allowed_origins}})

    @app.before_request
    def _reject_foreign_origin_for_mutating_api_requests():
        if request.method in {'GET', 'HEAD', 'OPTIONS'}:
            return None
        if not request.path.startswith('/api/'):
            return None

        origin = str(request.headers.get('Origin') or '').strip()
        if not origin:
            return None
        if allowed_origins != '*' and origin not in allowed_origins:
            return jsonify({'error': 'Invalid request origin'}), 403
        return None

    from rally.routes import api_bp
    app.register_blueprint(api_bp, url_prefix='/api')

    from rally.services.tournament_engine import TournamentEngine
    app.extensions['tournament_engine'] = TournamentEngine(
        app,
        interval_seconds=app.config.get('ENGINE_INTERVAL_SECONDS', 30.0),
        registration_window_days=app.config.get('REGISTRATION_WINDOW_DAYS', 7),
        result_grace_hours=app.config.get('RESULT_GRACE_HOURS', 48),
    )

    with app.app_context():
        from rally import models  # noqa: F401
        db.create_all()

    return app
