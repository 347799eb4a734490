from flask import current_app, request, jsonify
from sqlalchemy import func
from rally.app import db
from rally.auth_utils import login_required
from rally.models import SKILL_BANDS, PoolEntry, Tournament
from rally.routes import api_bp
from rally.services.match_actions import join_pool
from rally.time_utils import utcnow_naive


def _current_month(now):
    return now.strftime('%Y-%m')


def _tournament_for(county, band, month):
    return Tournament.query.filter(
        func.lower(Tournament.county) == county.lower(),
        Tournament.band == band,
        Tournament.month == month,
    ).order_by(Tournament.created_at.asc()).first()


def _pool_entries(county, band=None):
    query = PoolEntry.query.filter(func.lower(PoolEntry.county) == county.lower())
    if band:
        query = query.filter(PoolEntry.band == band)
    return query.order_by(PoolEntry.created_at.asc()).all()


@api_bp.route('/pool/signup', methods=['POST'])
@login_required
def pool_signup():
    data = request.get_json(silent=True) or {}
    county = data.get('county') if isinstance(data, dict) else None

    entry, created, error = join_pool(request.current_player, county=county)
    if error:
        return jsonify({'error': error}), 400
    if not created:
        return jsonify({'entry': entry.to_dict(), 'already_signed_up': True})
    return jsonify({'entry': entry.to_dict()}), 201


@api_bp.route('/pool/leave', methods=['DELETE'])
@login_required
def pool_leave():
    entry = PoolEntry.query.filter_by(player_id=request.current_player.id).first()
    if not entry:
        return jsonify({'error': 'Not in the pool'}), 404
    db.session.delete(entry)
    db.session.commit()
    return jsonify({'ok': True})


@api_bp.route('/pool/status', methods=['GET'])
@login_required
def pool_status():
    player = request.current_player
    needed = current_app.config.get('TOURNAMENT_MAX_PLAYERS', 8)
    county = (request.args.get('county') or '').strip() or player.county
    if not player.skill_band or not county:
        return jsonify({'in_pool': False, 'count': 0, 'needed': needed})

    now = utcnow_naive()
    month = _current_month(now)
    band = player.skill_band
    entries = _pool_entries(county, band)
    tournament = _tournament_for(county, band, month)

    days_remaining = None
    if tournament and tournament.status == 'registration' and tournament.registration_opened_at:
        window_days = current_app.config.get('REGISTRATION_WINDOW_DAYS', 7)
        elapsed_days = (now - tournament.registration_opened_at).days
        days_remaining = max(0, window_days - elapsed_days)

    county_entries = _pool_entries(county)
    band_breakdown = []
    total_interest = 0
    for other_band in SKILL_BANDS:
        pool_count = sum(1 for row in county_entries if row.band == other_band)
        band_tournament = _tournament_for(county, other_band, month)
        tournament_count = len(band_tournament.participants) if band_tournament else 0
        if pool_count or tournament_count:
            band_breakdown.append({
                'band': other_band,
                'pool_count': pool_count,
                'tournament_count': tournament_count,
            })
        total_interest += pool_count + tournament_count

    return jsonify({
        'in_pool': any(row.player_id == player.id for row in entries),
        'count': len(entries) + (len(tournament.participants) if tournament else 0),
        'needed': needed,
        'band': band,
        'county': county,
        'tournament_id': tournament.id if tournament else None,
        'days_remaining': days_remaining,
        'total_county_interest': total_interest,
        'band_breakdown': band_breakdown,
    })
