from flask import request, jsonify
from rally.app import db
from rally.auth_utils import login_required
from rally.models import SKILL_BANDS, Player
from rally.routes import api_bp
from rally.services.match_actions import (
    availability_impact, set_player_availability, validate_slots,
)


@api_bp.route('/players/me', methods=['GET'])
@login_required
def get_me():
    return jsonify({'player': request.current_player.to_dict()})


@api_bp.route('/players/me', methods=['PUT'])
@login_required
def update_me():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400

    player = request.current_player
    text_fields = {'name': 120, 'city': 100, 'county': 80}
    for field, max_len in text_fields.items():
        if field not in data:
            continue
        raw_value = data.get(field)
        setattr(player, field, '' if raw_value is None else str(raw_value).strip()[:max_len])

    if 'skill_band' in data:
        band = data.get('skill_band')
        if band in (None, ''):
            player.skill_band = None
        else:
            band = str(band).strip()
            if band not in SKILL_BANDS:
                return jsonify({'error': f'Skill band must be one of {", ".join(SKILL_BANDS)}'}), 400
            player.skill_band = band

    db.session.commit()
    return jsonify({'player': player.to_dict()})


@api_bp.route('/players/<player_id>', methods=['GET'])
@login_required
def get_player(player_id):
    player = db.session.get(Player, player_id)
    if not player:
        return jsonify({'error': 'Player not found'}), 404
    data = player.to_dict()
    data.pop('email', None)
    return jsonify({'player': data})


@api_bp.route('/players/me/availability', methods=['GET'])
@login_required
def get_my_availability():
    return jsonify({'slots': [slot.to_dict() for slot in request.current_player.availability]})


@api_bp.route('/players/me/availability', methods=['PUT'])
@login_required
def set_my_availability():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400

    slots, error = validate_slots(data.get('slots'))
    if error:
        return jsonify({'error': error}), 400

    player = request.current_player
    set_player_availability(player, slots)
    db.session.commit()
    return jsonify({'slots': [slot.to_dict() for slot in player.availability]})


@api_bp.route('/players/<player_id>/availability-impact', methods=['GET'])
@login_required
def get_availability_impact(player_id):
    player = request.current_player
    if player_id not in (player.id, 'me'):
        return jsonify({'error': 'Not your profile'}), 403

    impact = availability_impact(player)
    if not impact['open_matches']:
        return jsonify({'suggestions': [], 'message': 'All your matches are scheduled!'})
    return jsonify({'suggestions': impact['suggestions']})
