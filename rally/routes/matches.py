from flask import current_app, request, jsonify
from sqlalchemy import or_
from rally.app import db
from rally.auth_utils import login_required
from rally.models import Match, Player
from rally.routes import api_bp
from rally.routes.helpers import (
    parse_result_payload, parse_time_choice, player_match_or_error,
)
from rally.services.match_actions import (
    accept_time, create_challenge, propose_times, report_match_result,
    schedule_directly, scheduling_info,
)
from rally.services.proposal_ranking import MAX_PROPOSALS, ranker_from_config


@api_bp.route('/matches', methods=['GET'])
@login_required
def list_my_matches():
    player = request.current_player
    status = (request.args.get('status') or '').strip().lower()
    query = Match.query.filter(or_(
        Match.home_player_id == player.id,
        Match.away_player_id == player.id,
    ))
    if status:
        query = query.filter(Match.status == status)
    matches = query.order_by(Match.created_at.desc()).all()
    return jsonify({'matches': [match.to_dict() for match in matches]})


@api_bp.route('/matches', methods=['POST'])
@login_required
def challenge():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400

    player = request.current_player
    opponent_id = str(data.get('opponent_id') or '').strip()
    if not opponent_id:
        return jsonify({'error': 'opponent_id is required'}), 400
    if opponent_id == player.id:
        return jsonify({'error': 'You cannot challenge yourself'}), 400
    opponent = db.session.get(Player, opponent_id)
    if not opponent:
        return jsonify({'error': 'Opponent not found'}), 404

    match = create_challenge(
        player, opponent,
        ranker=ranker_from_config(current_app.config),
        venue=str(data.get('venue') or '').strip()[:120],
    )
    return jsonify({'match': match.to_dict()}), 201


@api_bp.route('/matches/<match_id>', methods=['GET'])
@login_required
def get_match(match_id):
    match, error = player_match_or_error(match_id, request.current_player)
    if error:
        return error
    return jsonify({'match': match.to_dict()})


@api_bp.route('/matches/<match_id>/accept-time', methods=['POST'])
@login_required
def accept_proposed_time(match_id):
    player = request.current_player
    match, error = player_match_or_error(match_id, player, allow_finished=False)
    if error:
        return error

    data = request.get_json(silent=True)
    proposal_id = data.get('proposal_id') if isinstance(data, dict) else None
    if not proposal_id:
        return jsonify({'error': 'proposal_id is required'}), 400
    proposal = next((p for p in match.proposals if p.id == proposal_id), None)
    if not proposal:
        return jsonify({'error': 'Proposal not found'}), 404

    scheduled = accept_time(match, player.id, proposal)
    return jsonify({'match': match.to_dict(), 'scheduled': scheduled})


@api_bp.route('/matches/<match_id>/schedule', methods=['POST'])
@login_required
def schedule_match(match_id):
    match, error = player_match_or_error(match_id, request.current_player, allow_finished=False)
    if error:
        return error

    choice = parse_time_choice(request.get_json(silent=True))
    if not choice:
        return jsonify({'error': 'datetime and label are required'}), 400
    schedule_directly(match, *choice)
    return jsonify({'match': match.to_dict(), 'scheduled': True})


@api_bp.route('/matches/<match_id>/flex-accept', methods=['POST'])
@login_required
def flex_accept(match_id):
    match, error = player_match_or_error(match_id, request.current_player, allow_finished=False)
    if error:
        return error

    choice = parse_time_choice(request.get_json(silent=True))
    if not choice:
        return jsonify({'error': 'datetime and label are required'}), 400
    schedule_directly(match, *choice, tier=2)
    return jsonify({'match': match.to_dict(), 'scheduled': True})


@api_bp.route('/matches/<match_id>/propose-times', methods=['POST'])
@login_required
def propose_match_times(match_id):
    player = request.current_player
    match, error = player_match_or_error(match_id, player, allow_finished=False)
    if error:
        return error

    data = request.get_json(silent=True)
    raw_times = data.get('times') if isinstance(data, dict) else None
    if not isinstance(raw_times, list) or not raw_times:
        return jsonify({'error': 'times are required'}), 400

    times = []
    for raw_time in raw_times[:MAX_PROPOSALS]:
        choice = parse_time_choice(raw_time)
        if not choice:
            return jsonify({'error': 'Each time needs a datetime and a label'}), 400
        times.append(choice)

    propose_times(match, player.id, times)
    return jsonify({'match': match.to_dict()})


@api_bp.route('/matches/<match_id>/result', methods=['POST'])
@login_required
def report_result(match_id):
    player = request.current_player
    match, error = player_match_or_error(match_id, player, allow_finished=False)
    if error:
        return error
    if match.tournament_id:
        return jsonify({'error': 'Tournament results are reported on the tournament'}), 409

    result, error = parse_result_payload(request.get_json(silent=True), match)
    if error:
        return error
    winner_id, sets = result

    report_match_result(match, player.id, winner_id, sets)
    return jsonify({'match': match.to_dict()})


@api_bp.route('/matches/<match_id>/scheduling-info', methods=['GET'])
@login_required
def get_scheduling_info(match_id):
    player = request.current_player
    match, error = player_match_or_error(match_id, player)
    if error:
        return error

    info = scheduling_info(match)
    opponent = db.session.get(Player, match.opponent_of(player.id))
    if player.id == match.home_player_id:
        info['my_slots'], info['opponent_slots'] = info['slots_a'], info['slots_b']
    else:
        info['my_slots'], info['opponent_slots'] = info['slots_b'], info['slots_a']
    info['opponent_name'] = opponent.display_name if opponent else 'Opponent'
    return jsonify(info)
