"""Player-driven match operations: results, time acceptance, proposals, challenges."""
from datetime import datetime
from sqlalchemy import or_
from rally.app import db
from rally.models import (
    Match, PendingResult, Player, PoolEntry, TimeProposal, AvailabilitySlot,
)
from rally.services.proposal_ranking import MAX_PROPOSALS, generate_match_proposals
from rally.services.scheduler import (
    book_match_time, evaluate_pair, overlap_options, slot_impact, to_minutes,
)
from rally.services.standings import compute_standings
from rally.time_utils import utcnow_naive

_MIN_SETS = 2
_MAX_SETS = 3
_MAX_SET_GAMES = 7
_MAX_SLOTS_PER_PLAYER = 21
_MAX_NEAR_MISSES_SHOWN = 5
_MAX_SUGGESTIONS = 3


# ── Validation ───────────────────────────────────────────────────────

def _coerce_games(raw_value):
    if isinstance(raw_value, bool):
        return None
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        return None
    if value < 0 or value > _MAX_SET_GAMES:
        return None
    return value


def validate_sets(raw_sets):
    """Normalize a list of set scores. Returns ``(sets, error)``."""
    if not isinstance(raw_sets, list):
        return None, 'Sets must be a list'
    if len(raw_sets) < _MIN_SETS or len(raw_sets) > _MAX_SETS:
        return None, f'A match has {_MIN_SETS} or {_MAX_SETS} sets'

    sets = []
    for raw_set in raw_sets:
        if not isinstance(raw_set, dict):
            return None, 'Each set must be an object'
        a_games = _coerce_games(raw_set.get('a_games'))
        b_games = _coerce_games(raw_set.get('b_games'))
        if a_games is None or b_games is None:
            return None, f'Games per set must be between 0 and {_MAX_SET_GAMES}'
        if a_games == b_games:
            return None, 'A set cannot end level'
        normalized = {'a_games': a_games, 'b_games': b_games}

        tiebreak = raw_set.get('tiebreak')
        if tiebreak is not None:
            if not isinstance(tiebreak, dict):
                return None, 'Tiebreak must be an object'
            try:
                a_points = int(tiebreak.get('a_points'))
                b_points = int(tiebreak.get('b_points'))
            except (TypeError, ValueError):
                return None, 'Tiebreak points must be numbers'
            if a_points < 0 or b_points < 0:
                return None, 'Tiebreak points must be non-negative'
            normalized['tiebreak'] = {'a_points': a_points, 'b_points': b_points}
        sets.append(normalized)
    return sets, None


def validate_slots(raw_slots):
    """Normalize weekly availability input. Returns ``(slots, error)``."""
    if not isinstance(raw_slots, list):
        return None, 'Slots must be a list'
    if len(raw_slots) > _MAX_SLOTS_PER_PLAYER:
        return None, f'At most {_MAX_SLOTS_PER_PLAYER} slots allowed'

    slots = []
    for raw_slot in raw_slots:
        if not isinstance(raw_slot, dict):
            return None, 'Each slot must be an object'
        dow = raw_slot.get('day_of_week')
        if isinstance(dow, bool) or not isinstance(dow, int) or not 0 <= dow <= 6:
            return None, 'day_of_week must be 0 (Sunday) to 6 (Saturday)'
        start_time = str(raw_slot.get('start_time') or '').strip()
        end_time = str(raw_slot.get('end_time') or '').strip()
        try:
            datetime.strptime(start_time, '%H:%M')
            datetime.strptime(end_time, '%H:%M')
        except ValueError:
            return None, 'Times must be HH:MM'
        if to_minutes(end_time) <= to_minutes(start_time):
            return None, 'end_time must be after start_time'
        slots.append({'day_of_week': dow, 'start_time': start_time, 'end_time': end_time})
    return slots, None


def format_score(sets):
    """'6-4, 7-6(7-5)' from the home player's side."""
    parts = []
    for set_score in sets or []:
        text = f"{set_score['a_games']}-{set_score['b_games']}"
        tiebreak = set_score.get('tiebreak')
        if tiebreak:
            text += f"({tiebreak['a_points']}-{tiebreak['b_points']})"
        parts.append(text)
    return ', '.join(parts)


# ── Availability and pool ────────────────────────────────────────────

def set_player_availability(player, slots):
    """Replace all of ``player``'s weekly slots. Caller commits."""
    player.availability = [
        AvailabilitySlot(
            day_of_week=slot['day_of_week'],
            start_time=slot['start_time'],
            end_time=slot['end_time'],
        )
        for slot in slots
    ]
    return player.availability


def availability_by_player(player_ids):
    grouped = {player_id: [] for player_id in player_ids}
    if not grouped:
        return grouped
    rows = AvailabilitySlot.query.filter(AvailabilitySlot.player_id.in_(list(grouped))).all()
    for row in rows:
        grouped[row.player_id].append(row)
    return grouped


def join_pool(player, county=None, now=None):
    """Put ``player`` in the waiting pool for a county (theirs by default) and their band.

    Returns ``(entry, created, error)``; an existing entry is returned unchanged.
    """
    county = str(county or player.county or '').strip()
    if not county or not player.skill_band:
        return None, False, 'Set your county and skill band first'
    existing = PoolEntry.query.filter_by(player_id=player.id).first()
    if existing:
        return existing, False, None
    entry = PoolEntry(
        player_id=player.id,
        county=county,
        band=player.skill_band,
        created_at=now or utcnow_naive(),
    )
    db.session.add(entry)
    db.session.commit()
    return entry, True, None


def _open_tournament_matches(player_id):
    matches = Match.query.filter(
        Match.tournament_id.isnot(None),
        or_(Match.home_player_id == player_id, Match.away_player_id == player_id),
    ).all()
    return [
        match for match in matches
        if match.status == 'pending'
        or (match.status == 'scheduling' and match.scheduling_tier == 3)
    ]


def availability_impact(player, now=None):
    """Suggest up to three extra weekly slots ranked by how many of the player's
    unscheduled tournament matches each would give a shared window.
    """
    now = now or utcnow_naive()
    open_matches = _open_tournament_matches(player.id)
    if not open_matches:
        return {'open_matches': 0, 'suggestions': []}

    opponent_ids = [match.opponent_of(player.id) for match in open_matches]
    opponent_slots = availability_by_player(opponent_ids)
    names = {
        row.id: row.display_name
        for row in Player.query.filter(Player.id.in_(set(opponent_ids))).all()
    }

    suggestions = []
    for candidate, unlocked in slot_impact(player.availability, opponent_slots, now, limit=None):
        unlocked = set(unlocked)
        freed = [opponent_id for opponent_id in opponent_ids if opponent_id in unlocked]
        suggestions.append({
            'slot': dict(candidate),
            'matches_unlocked': len(freed),
            'opponent_names': [names.get(opponent_id, 'Opponent') for opponent_id in freed],
        })
    suggestions.sort(key=lambda item: item['matches_unlocked'], reverse=True)
    return {'open_matches': len(open_matches), 'suggestions': suggestions[:_MAX_SUGGESTIONS]}


# ── Results ──────────────────────────────────────────────────────────

def confirm_match_result(match, winner_id, sets, reported_by, reported_at,
                         confirmed_by, now=None):
    now = now or utcnow_naive()
    match.winner_id = winner_id
    match.sets = sets
    match.score = format_score(sets)
    match.reported_by = reported_by
    match.reported_at = reported_at
    match.confirmed_by = confirmed_by
    match.confirmed_at = now
    match.status = 'completed'
    match.updated_at = now
    return match


def recompute_tournament_standings(tournament):
    matches = Match.query.filter_by(tournament_id=tournament.id).all()
    tournament.standings = compute_standings(tournament.player_ids, matches, tournament.month)
    return tournament.standings


def report_tournament_result(tournament, match, reporter_id, winner_id, sets, now=None):
    """Record one side's claim for a tournament match.

    Returns ``'awaiting_confirmation'`` for a first report, ``'confirmed'``
    when the opponent's report agrees (match completed, standings rebuilt),
    ``'disputed'`` when it does not (the first claim stays pending and is
    auto-confirmed later), or ``'already_reported'``.
    """
    now = now or utcnow_naive()
    existing = PendingResult.query.filter_by(match_id=match.id).first()

    if existing is None:
        row = PendingResult(
            tournament_id=tournament.id,
            match_id=match.id,
            winner_id=winner_id,
            reported_by=reporter_id,
            reported_at=now,
        )
        row.sets = sets
        db.session.add(row)
        db.session.commit()
        return 'awaiting_confirmation'

    if existing.reported_by == reporter_id:
        return 'already_reported'

    if existing.winner_id != winner_id or existing.sets != sets:
        return 'disputed'

    confirm_match_result(
        match, existing.winner_id, existing.sets,
        existing.reported_by, existing.reported_at,
        confirmed_by=reporter_id, now=now,
    )
    db.session.delete(existing)
    db.session.flush()
    recompute_tournament_standings(tournament)
    db.session.commit()
    return 'confirmed'


def report_match_result(match, reporter_id, winner_id, sets, now=None):
    """Complete an ad-hoc match on one player's report. Ratings are not touched."""
    now = now or utcnow_naive()
    confirm_match_result(
        match, winner_id, sets, reporter_id, now,
        confirmed_by=reporter_id, now=now,
    )
    db.session.commit()
    return match


# ── Scheduling ───────────────────────────────────────────────────────

def accept_time(match, player_id, proposal, now=None):
    """Add ``player_id`` to ``proposal``'s acceptors. Returns True once both accepted.

    A scheduled match keeps its booked time until both players accept a new one.
    """
    now = now or utcnow_naive()
    accepted = set(proposal.accepted_by)
    accepted.add(player_id)
    proposal.accepted_by = accepted

    both_accepted = all(pid in accepted for pid in match.player_ids)
    if both_accepted:
        match.status = 'scheduled'
        match.scheduled_at = proposal.proposed_for
    elif match.status != 'scheduled':
        match.status = 'scheduling'
    match.updated_at = now
    db.session.commit()
    return both_accepted


def propose_times(match, player_id, times, now=None):
    """Replace open proposals with up to three manual ones, accepted by the proposer.

    ``times`` is a list of ``(datetime, label)``. A scheduled match stays booked
    at its current time until one of the new proposals is accepted by both.
    """
    now = now or utcnow_naive()
    proposals = []
    for proposed_for, label in times[:MAX_PROPOSALS]:
        proposal = TimeProposal(proposed_for=proposed_for, label=label)
        proposal.accepted_by = [player_id]
        proposals.append(proposal)
    match.proposals = proposals
    if match.status != 'scheduled':
        match.status = 'scheduling'
    if match.scheduling_tier is None:
        match.scheduling_tier = 3
    match.updated_at = now
    db.session.commit()
    return proposals


def schedule_directly(match, proposed_for, label, tier=None, now=None):
    """Book ``match`` outright, e.g. from a flexed near-miss window."""
    proposal = book_match_time(match, proposed_for, label, tier=tier, now=now)
    db.session.commit()
    return proposal


def create_challenge(challenger, opponent, ranker=None, now=None, venue=''):
    """Create an ad-hoc match and run it through the scheduling tiers.

    Tier 1 offers up to three ranked windows for the players to accept.
    Tier 2 stores the best near miss and tier 3 leaves proposing to the players.
    """
    now = now or utcnow_naive()
    slots = availability_by_player([challenger.id, opponent.id])
    verdict = evaluate_pair(slots[challenger.id], slots[opponent.id], now)

    match = Match(
        home_player_id=challenger.id,
        away_player_id=opponent.id,
        status='pending',
        venue=venue or '',
        scheduling_tier=verdict.tier,
        created_at=now,
        updated_at=now,
    )

    if verdict.tier == 1:
        context = {
            'player_a_name': challenger.display_name,
            'player_b_name': opponent.display_name,
            'city': challenger.city or opponent.city,
            'slots_a': slots[challenger.id],
            'slots_b': slots[opponent.id],
            'from_date': now,
        }
        picks = generate_match_proposals(verdict.overlaps, context, ranker)
        match.proposals = [
            TimeProposal(proposed_for=proposed_for, label=label)
            for proposed_for, label in picks
        ]
        match.status = 'scheduling'
    elif verdict.tier == 2:
        match.near_miss = verdict.near_misses[0]

    db.session.add(match)
    db.session.commit()
    return match


def scheduling_info(match, now=None):
    now = now or utcnow_naive()
    slots = availability_by_player(list(match.player_ids))
    slots_a = slots[match.home_player_id]
    slots_b = slots[match.away_player_id]
    verdict = evaluate_pair(slots_a, slots_b, now)
    return {
        'match_id': match.id,
        'tier': verdict.tier,
        'overlaps': overlap_options(verdict.overlaps),
        'near_misses': verdict.near_misses[:_MAX_NEAR_MISSES_SHOWN],
        'slots_a': [slot.to_dict() for slot in slots_a],
        'slots_b': [slot.to_dict() for slot in slots_b],
    }
