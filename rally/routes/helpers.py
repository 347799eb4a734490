"""Shared request parsing and lookup helpers for the API routes."""
from datetime import datetime
from flask import jsonify
from rally.app import db
from rally.models import Match
from rally.services.match_actions import validate_sets

FINISHED_MATCH_STATUSES = {'completed', 'cancelled'}


def parse_iso_datetime(raw_value):
    raw = str(raw_value or '').strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        return parsed.astimezone().replace(tzinfo=None)
    return parsed


def parse_time_choice(data):
    """(datetime, label) out of a ``{'datetime', 'label'}`` payload, or None."""
    if not isinstance(data, dict):
        return None
    proposed_for = parse_iso_datetime(data.get('datetime'))
    label = str(data.get('label') or '').strip()[:80]
    if proposed_for is None or not label:
        return None
    return proposed_for, label


def parse_result_payload(data, match):
    """``((winner_id, sets), error_response)`` out of a score report body."""
    if not isinstance(data, dict):
        return None, (jsonify({'error': 'Invalid JSON payload'}), 400)
    winner_id = data.get('winner_id')
    if winner_id not in match.player_ids:
        return None, (jsonify({'error': 'Winner must be one of the match players'}), 400)
    sets, error_message = validate_sets(data.get('sets'))
    if error_message:
        return None, (jsonify({'error': error_message}), 400)
    return (winner_id, sets), None


def player_match_or_error(match_id, player, allow_finished=True):
    """Look up a match the player takes part in. Returns ``(match, error_response)``."""
    match = db.session.get(Match, match_id)
    if not match:
        return None, (jsonify({'error': 'Match not found'}), 404)
    if not match.involves(player.id):
        return None, (jsonify({'error': 'Not your match'}), 403)
    if not allow_finished and match.status in FINISHED_MATCH_STATUSES:
        return None, (jsonify({'error': 'Match already finished'}), 409)
    return match, None
