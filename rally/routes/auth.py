import logging
import re
from flask import request, jsonify
from sqlalchemy.exc import IntegrityError
from rally.app import db
from rally.auth_utils import generate_token
from rally.models import Player
from rally.routes import api_bp

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


@api_bp.route('/health', methods=['GET'])
def health():
    return jsonify({'ok': True})


@api_bp.route('/auth/login', methods=['POST'])
def login():
    """Email sign-in; the player profile is created on first login."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data.get('email'):
        return jsonify({'error': 'Email is required'}), 400

    email = str(data['email']).strip().lower()
    if len(email) > 120 or not _EMAIL_RE.match(email):
        return jsonify({'error': 'Invalid email'}), 400

    player = Player.query.filter_by(email=email).first()
    created = False
    if not player:
        player = Player(email=email)
        db.session.add(player)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            player = Player.query.filter_by(email=email).first()
        else:
            created = True
            logger.info('Created player %s', player.id)

    token = generate_token(player.id)
    return jsonify({'token': token, 'player': player.to_dict(), 'created': created})
