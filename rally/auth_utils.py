from functools import wraps
from flask import request, jsonify, current_app
import jwt
from rally.app import db
from rally.models import Player


def generate_token(player_id):
    """Generate a JWT token for a player."""
    from datetime import datetime, timedelta, timezone
    payload = {
        'player_id': player_id,
        'exp': datetime.now(timezone.utc) + timedelta(
            hours=current_app.config.get('JWT_EXPIRATION_HOURS', 24)
        ),
    }
    return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm='HS256')


def _normalize_bearer_token(raw_token):
    token = str(raw_token or '').strip()
    if token.startswith('Bearer '):
        token = token.split(' ', 1)[1].strip()
    return token


def _decode_player_from_token(token):
    normalized = _normalize_bearer_token(token)
    if not normalized:
        return None, 'Authentication required'
    try:
        payload = jwt.decode(
            normalized, current_app.config['SECRET_KEY'], algorithms=['HS256']
        )
        player = db.session.get(Player, payload.get('player_id'))
        if not player:
            return None, 'Player not found'
        return player, None
    except jwt.ExpiredSignatureError:
        return None, 'Token expired'
    except jwt.InvalidTokenError:
        return None, 'Invalid token'


def login_required(f):
    """Decorator to require authentication on a route."""
    @wraps(f)
    def decorated(*args, **kwargs):
        player, error = _decode_player_from_token(request.headers.get('Authorization', ''))
        if error:
            return jsonify({'error': error}), 401
        request.current_player = player
        return f(*args, **kwargs)
    return decorated
