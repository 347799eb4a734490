from flask import current_app, request, jsonify
from sqlalchemy import func
from rally.app import db, get_engine
from rally.auth_utils import login_required
from rally.models import (
    SKILL_BANDS, TOURNAMENT_STATUSES, Match, PendingResult, Player,
    Tournament, TournamentParticipant,
)
from rally.routes import api_bp
from rally.routes.helpers import parse_result_payload
from rally.services.match_actions import report_tournament_result
from rally.services.tournament_engine import open_tournament
from rally.time_utils import utcnow_naive


def _tournament_or_404(tournament_id):
    tournament = db.session.get(Tournament, tournament_id)
    if not tournament:
        return None, (jsonify({'error': 'Tournament not found'}), 404)
    return tournament, None


@api_bp.route('/tournaments', methods=['GET'])
def list_tournaments():
    county = (request.args.get('county') or '').strip()
    band = (request.args.get('band') or '').strip()
    status = (request.args.get('status') or '').strip().lower()
    month = (request.args.get('month') or '').strip()

    query = Tournament.query
    if status:
        if status not in TOURNAMENT_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(Tournament.status == status)
    if county:
        query = query.filter(func.lower(Tournament.county) == county.lower())
    if band:
        query = query.filter(Tournament.band == band)
    if month:
        query = query.filter(Tournament.month == month)

    tournaments = query.order_by(Tournament.created_at.desc()).all()
    return jsonify({'tournaments': [t.to_dict(include_rounds=False) for t in tournaments]})


@api_bp.route('/tournaments', methods=['POST'])
@login_required
def create_tournament():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400

    county = str(data.get('county') or '').strip()[:80]
    band = str(data.get('band') or '').strip()
    if not county:
        return jsonify({'error': 'County is required'}), 400
    if band not in SKILL_BANDS:
        return jsonify({'error': f'Band must be one of {", ".join(SKILL_BANDS)}'}), 400

    now = utcnow_naive()
    month = str(data.get('month') or now.strftime('%Y-%m')).strip()
    existing = Tournament.query.filter(
        func.lower(Tournament.county) == county.lower(),
        Tournament.band == band,
        Tournament.month == month,
    ).first()
    if existing:
        return jsonify({'error': 'A tournament already exists for this county, band and month',
                        'tournament_id': existing.id}), 409

    tournament = open_tournament(
        county, band, month=month,
        name=str(data.get('name') or '').strip()[:200] or None,
        now=now,
        min_players=current_app.config.get('TOURNAMENT_MIN_PLAYERS', 4),
        max_players=current_app.config.get('TOURNAMENT_MAX_PLAYERS', 8),
    )
    db.session.commit()
    return jsonify({'tournament': tournament.to_dict()}), 201


@api_bp.route('/tournaments/<tournament_id>', methods=['GET'])
def get_tournament(tournament_id):
    tournament, error = _tournament_or_404(tournament_id)
    if error:
        return error
    players = Player.query.filter(Player.id.in_(tournament.player_ids)).all() if tournament.player_ids else []
    return jsonify({
        'tournament': tournament.to_dict(),
        'player_names': {player.id: player.display_name for player in players},
    })


@api_bp.route('/tournaments/<tournament_id>/matches', methods=['GET'])
def get_tournament_matches(tournament_id):
    tournament, error = _tournament_or_404(tournament_id)
    if error:
        return error

    rounds = tournament.round_number_by_match_id()
    pending = {row.match_id: row.to_dict() for row in tournament.pending_results}
    matches = Match.query.filter_by(tournament_id=tournament.id).order_by(Match.created_at.asc()).all()

    payload = []
    for match in matches:
        data = match.to_dict()
        data['round'] = rounds.get(match.id, 0)
        data['pending_result'] = pending.get(match.id)
        payload.append(data)
    return jsonify({'matches': payload})


@api_bp.route('/tournaments/<tournament_id>/join', methods=['POST'])
@login_required
def join_tournament(tournament_id):
    tournament, error = _tournament_or_404(tournament_id)
    if error:
        return error

    player = request.current_player
    if player.id in tournament.player_ids:
        return jsonify({'tournament': tournament.to_dict(), 'already_joined': True})
    if tournament.status != 'registration':
        return jsonify({'error': 'Tournament is not open for registration'}), 409
    if len(tournament.participants) >= tournament.max_players:
        return jsonify({'error': 'Tournament is full'}), 409

    position = max((row.position for row in tournament.participants), default=-1) + 1
    tournament.participants.append(TournamentParticipant(player_id=player.id, position=position))
    db.session.commit()

    activated = get_engine().activate_tournament_if_ready(tournament.id)
    db.session.refresh(tournament)
    response = {
        'tournament': tournament.to_dict(),
        'already_joined': False,
        'activated': activated,
    }
    if activated:
        response['scheduling_result'] = tournament.scheduling_result
    return jsonify(response)


@api_bp.route('/tournaments/<tournament_id>/leave', methods=['DELETE'])
@login_required
def leave_tournament(tournament_id):
    tournament, error = _tournament_or_404(tournament_id)
    if error:
        return error
    if tournament.status != 'registration':
        return jsonify({'error': 'Roster is locked once the tournament starts'}), 409

    entry = TournamentParticipant.query.filter_by(
        tournament_id=tournament.id,
        player_id=request.current_player.id,
    ).first()
    if entry:
        tournament.participants.remove(entry)
        db.session.commit()
    return jsonify({'tournament': tournament.to_dict()})


@api_bp.route('/tournaments/<tournament_id>/matches/<match_id>/score', methods=['POST'])
@login_required
def report_score(tournament_id, match_id):
    tournament, error = _tournament_or_404(tournament_id)
    if error:
        return error
    match = db.session.get(Match, match_id)
    if not match or match.tournament_id != tournament.id:
        return jsonify({'error': 'Match not found'}), 404

    player = request.current_player
    if not match.involves(player.id):
        return jsonify({'error': 'Not your match'}), 403
    if match.status == 'completed':
        return jsonify({'error': 'Match already completed'}), 409

    result, error = parse_result_payload(request.get_json(silent=True), match)
    if error:
        return error
    winner_id, sets = result

    status = report_tournament_result(tournament, match, player.id, winner_id, sets)
    if status == 'already_reported':
        return jsonify({'error': 'You already reported this result'}), 409
    if status == 'disputed':
        grace_hours = current_app.config.get('RESULT_GRACE_HOURS', 48)
        pending = PendingResult.query.filter_by(match_id=match.id).first()
        return jsonify({
            'status': status,
            'message': f"Reports don't match. The first report is confirmed after {grace_hours}h.",
            'pending_result': pending.to_dict() if pending else None,
        })
    return jsonify({'status': status, 'match': match.to_dict()})
