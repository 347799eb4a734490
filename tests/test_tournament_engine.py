"""Tests for the tournament lifecycle engine."""
import threading
from datetime import datetime, timedelta
import pytest
from sqlalchemy.orm.attributes import set_committed_value
from rally.app import create_app, db
from rally.config import config
from rally.models import (
    AvailabilitySlot, Match, PendingResult, Player, PoolEntry, Tournament,
    TournamentParticipant, TournamentRound,
)
from rally.services import tournament_engine as engine_module
from rally.services.match_actions import confirm_match_result
from rally.services.tournament_engine import TournamentEngine, open_tournament

NOW = datetime(2026, 10, 19, 12, 0)
SATURDAY_MORNING = [(6, '09:00', '11:00')]


@pytest.fixture
def engine(app):
    return TournamentEngine(app, now_fn=lambda: NOW)


def _tournament_with(players, opened_at=NOW, county='Alameda', band='3.5'):
    tournament = open_tournament(county, band, month='2026-10', now=opened_at)
    for position, player in enumerate(players):
        tournament.participants.append(
            TournamentParticipant(player_id=player.id, position=position, joined_at=opened_at)
        )
    db.session.commit()
    return tournament


def _players(make_player, count, slots=SATURDAY_MORNING, **kwargs):
    return [make_player(slots=slots, **kwargs) for _ in range(count)]


def _finish(match, winner_id, now=NOW):
    if winner_id == match.home_player_id:
        sets = [{'a_games': 6, 'b_games': 2}, {'a_games': 6, 'b_games': 2}]
    else:
        sets = [{'a_games': 2, 'b_games': 6}, {'a_games': 2, 'b_games': 6}]
    confirm_match_result(match, winner_id, sets, winner_id, now, confirmed_by=match.opponent_of(winner_id), now=now)


def test_full_roster_activates_and_schedules_every_match(engine, make_player):
    players = _players(make_player, 8)
    tournament = _tournament_with(players)

    assert engine.activate_tournament_if_ready(tournament.id) is True

    tournament = db.session.get(Tournament, tournament.id)
    assert tournament.status == 'active'
    assert tournament.activated_at == NOW
    assert len(tournament.rounds) == 7
    assert all(len(rnd.pairings) == 4 for rnd in tournament.rounds)

    matches = Match.query.filter_by(tournament_id=tournament.id).all()
    assert len(matches) == 28
    assert tournament.round_robin_match_ids() == {m.id for m in matches}
    pairs = {frozenset(m.player_ids) for m in matches}
    assert len(pairs) == 28
    assert all(m.status == 'scheduled' and m.scheduling_tier == 1 for m in matches)
    assert all(m.scheduled_at == datetime(2026, 10, 24, 9, 0) for m in matches)

    result = tournament.scheduling_result
    assert result['scheduled_count'] == 28
    assert result['failed_count'] == 0
    assert result['near_miss_count'] == 0
    assert [entry['played'] for entry in tournament.standings] == [0] * 8


def test_activation_is_idempotent(engine, make_player):
    tournament = _tournament_with(_players(make_player, 8))
    assert engine.activate_tournament_if_ready(tournament.id) is True
    assert engine.activate_tournament_if_ready(tournament.id) is False
    engine.tick()
    assert Match.query.filter_by(tournament_id=tournament.id).count() == 28
    assert TournamentRound.query.filter_by(tournament_id=tournament.id).count() == 7


def test_minimum_roster_activates_after_registration_window(engine, make_player):
    players = _players(make_player, 6)
    waiting = _tournament_with(players[:3], opened_at=NOW - timedelta(days=7), band='3.0')
    early = _tournament_with(players[:5], opened_at=NOW - timedelta(days=6, hours=23))
    due = _tournament_with(players, opened_at=NOW - timedelta(days=7), band='4.0')

    engine.tick()

    assert db.session.get(Tournament, waiting.id).status == 'registration'
    assert db.session.get(Tournament, early.id).status == 'registration'
    due = db.session.get(Tournament, due.id)
    assert due.status == 'active'
    assert len(due.player_ids) == 6
    assert len(due.rounds) == 5
    assert Match.query.filter_by(tournament_id=due.id).count() == 15


def test_odd_roster_creates_no_match_for_byes(engine, make_player):
    tournament = _tournament_with(_players(make_player, 5), opened_at=NOW - timedelta(days=8))
    engine.tick()
    tournament = db.session.get(Tournament, tournament.id)
    byes = [p for rnd in tournament.rounds for p in rnd.pairings if p.is_bye]
    assert len(byes) == 5
    assert all(p.match_id is None for p in byes)
    assert Match.query.filter_by(tournament_id=tournament.id).count() == 10


def test_unschedulable_pairs_are_tagged_with_their_tier(engine, make_player):
    early = make_player(slots=[(6, '08:00', '09:00')])
    late = make_player(slots=[(6, '09:00', '11:00')])
    weekday = make_player(slots=[(2, '18:00', '20:00')])
    other = make_player(slots=[(2, '18:00', '20:00')])
    tournament = _tournament_with([early, late, weekday, other], opened_at=NOW - timedelta(days=7))

    engine.tick()

    tournament = db.session.get(Tournament, tournament.id)
    result = tournament.scheduling_result
    assert result['scheduled_count'] == 1
    assert result['near_miss_count'] == 1
    assert result['failed_count'] == 5
    near_miss_match = db.session.get(Match, result['near_miss_match_ids'][0])
    assert set(near_miss_match.player_ids) == {early.id, late.id}
    assert near_miss_match.status == 'pending'
    assert near_miss_match.near_miss['gap_minutes'] == 0


def test_failed_activation_rolls_back_everything(engine, make_player, monkeypatch):
    tournament = _tournament_with(_players(make_player, 8))
    tournament_id = tournament.id

    def broken_scheduler(*args, **kwargs):
        raise RuntimeError('scheduler down')

    monkeypatch.setattr(engine_module, 'auto_schedule_matches', broken_scheduler)
    assert engine.activate_tournament_if_ready(tournament_id) is False
    assert db.session.get(Tournament, tournament_id).status == 'registration'
    assert Match.query.count() == 0
    assert TournamentRound.query.count() == 0

    monkeypatch.undo()
    assert engine.activate_tournament_if_ready(tournament_id) is True
    assert Match.query.filter_by(tournament_id=tournament_id).count() == 28


def test_pool_players_are_admitted_and_trigger_activation(engine, make_player):
    tournament = _tournament_with([], county='Alameda')
    pool_players = _players(make_player, 8)
    other_band = make_player(skill_band='4.0')
    for offset, player in enumerate(pool_players):
        db.session.add(PoolEntry(
            player_id=player.id, county='alameda', band='3.5',
            created_at=NOW - timedelta(minutes=60 - offset),
        ))
    db.session.add(PoolEntry(player_id=other_band.id, county='Alameda', band='4.0'))
    db.session.commit()

    engine.tick()

    tournament = db.session.get(Tournament, tournament.id)
    assert tournament.player_ids == [player.id for player in pool_players]
    assert tournament.status == 'active'
    assert [entry.player_id for entry in PoolEntry.query.all()] == [other_band.id]


def test_pool_admission_stops_at_max_players(engine, make_player):
    tournament = _tournament_with(_players(make_player, 6))
    waiting = _players(make_player, 3)
    for offset, player in enumerate(waiting):
        db.session.add(PoolEntry(
            player_id=player.id, county='Alameda', band='3.5',
            created_at=NOW - timedelta(minutes=10 - offset),
        ))
    db.session.commit()

    engine.tick()

    tournament = db.session.get(Tournament, tournament.id)
    assert len(tournament.player_ids) == 8
    assert tournament.status == 'active'
    assert [entry.player_id for entry in PoolEntry.query.all()] == [waiting[2].id]


def test_round_robin_completion_creates_finals_then_completes(engine, make_player):
    players = _players(make_player, 4)
    rank = {player.id: index for index, player in enumerate(players)}
    tournament = _tournament_with(players, opened_at=NOW - timedelta(days=7))
    engine.tick()

    matches = Match.query.filter_by(tournament_id=tournament.id).all()
    for match in matches[:-1]:
        _finish(match, min(match.player_ids, key=rank.get))
    db.session.commit()
    engine.tick()
    assert db.session.get(Tournament, tournament.id).status == 'active'

    _finish(matches[-1], min(matches[-1].player_ids, key=rank.get))
    db.session.commit()
    engine.tick()

    tournament = db.session.get(Tournament, tournament.id)
    assert tournament.status == 'finals'
    assert [entry['player_id'] for entry in tournament.standings] == [p.id for p in players]
    champ = db.session.get(Match, tournament.champ_match_id)
    third = db.session.get(Match, tournament.third_match_id)
    assert champ.player_ids == (players[0].id, players[1].id)
    assert third.player_ids == (players[2].id, players[3].id)
    assert champ.status == 'pending' and champ.scheduled_at is None
    assert champ.scheduling_tier is None

    _finish(champ, players[1].id)
    _finish(third, players[2].id)
    db.session.commit()
    engine.tick()

    tournament = db.session.get(Tournament, tournament.id)
    assert tournament.status == 'completed'
    assert tournament.completed_at == NOW
    entries = {entry['player_id']: entry for entry in tournament.standings}
    assert entries[players[1].id]['played'] == 4
    assert entries[players[0].id]['losses'] == 1


def test_fewer_than_four_players_stay_active(engine, make_player):
    players = _players(make_player, 3)
    tournament = open_tournament('Alameda', '3.5', month='2026-10', now=NOW - timedelta(days=8),
                                 min_players=3)
    for position, player in enumerate(players):
        tournament.participants.append(TournamentParticipant(player_id=player.id, position=position))
    db.session.commit()
    engine.tick()

    for match in Match.query.filter_by(tournament_id=tournament.id).all():
        _finish(match, match.home_player_id)
    db.session.commit()
    engine.tick()

    tournament = db.session.get(Tournament, tournament.id)
    assert tournament.status == 'active'
    assert tournament.champ_match_id is None


def test_stale_pending_result_is_auto_confirmed(engine, make_player):
    tournament = _tournament_with(_players(make_player, 4), opened_at=NOW - timedelta(days=7))
    engine.tick()
    stale_match, fresh_match = Match.query.filter_by(tournament_id=tournament.id).limit(2).all()

    sets = [{'a_games': 6, 'b_games': 3}, {'a_games': 7, 'b_games': 5}]
    stale = PendingResult(
        tournament_id=tournament.id, match_id=stale_match.id,
        winner_id=stale_match.home_player_id, reported_by=stale_match.away_player_id,
        reported_at=NOW - timedelta(hours=49),
    )
    stale.sets = sets
    fresh = PendingResult(
        tournament_id=tournament.id, match_id=fresh_match.id,
        winner_id=fresh_match.away_player_id, reported_by=fresh_match.away_player_id,
        reported_at=NOW - timedelta(hours=47),
    )
    fresh.sets = sets
    db.session.add_all([stale, fresh])
    db.session.commit()

    engine.tick()

    stale_match = db.session.get(Match, stale_match.id)
    assert stale_match.status == 'completed'
    assert stale_match.winner_id == stale_match.home_player_id
    assert stale_match.sets == sets
    assert stale_match.score == '6-3, 7-5'
    assert stale_match.confirmed_by == 'auto'
    assert stale_match.reported_by == stale_match.away_player_id
    remaining = PendingResult.query.filter_by(tournament_id=tournament.id).all()
    assert [row.match_id for row in remaining] == [fresh_match.id]

    tournament = db.session.get(Tournament, tournament.id)
    entries = {entry['player_id']: entry for entry in tournament.standings}
    assert entries[stale_match.home_player_id]['wins'] == 1
    assert entries[stale_match.away_player_id]['losses'] == 1


def test_one_failing_tournament_does_not_stop_the_tick(engine, make_player, monkeypatch):
    first = _tournament_with(_players(make_player, 4), opened_at=NOW - timedelta(days=9), band='3.0')
    second = _tournament_with(_players(make_player, 4), opened_at=NOW - timedelta(days=8), band='4.0')
    engine.tick()
    for tournament in (first, second):
        for match in Match.query.filter_by(tournament_id=tournament.id).all():
            _finish(match, match.home_player_id)
    db.session.commit()

    real_compute = engine_module.compute_standings
    calls = {'n': 0}

    def flaky_compute(*args, **kwargs):
        calls['n'] += 1
        if calls['n'] == 1:
            raise RuntimeError('bad row')
        return real_compute(*args, **kwargs)

    monkeypatch.setattr(engine_module, 'compute_standings', flaky_compute)
    engine.tick()

    assert db.session.get(Tournament, first.id).status == 'active'
    assert db.session.get(Tournament, second.id).status == 'finals'


def test_start_and_stop_control_the_background_loop(engine, monkeypatch):
    started = []
    monkeypatch.setattr(
        engine_module.socketio, 'start_background_task',
        lambda target, *args: started.append((target, args)) or 'task',
    )
    assert engine.running is False
    engine.start()
    engine.start()
    assert engine.running is True
    assert len(started) == 1
    stop_event = started[0][1][0]

    engine.stop()
    assert engine.running is False
    assert stop_event.is_set()


def test_concurrent_activation_claims_the_tournament_once(tmp_path, monkeypatch):
    monkeypatch.setattr(
        config['testing'], 'SQLALCHEMY_DATABASE_URI', f"sqlite:///{tmp_path / 'rally.db'}",
    )
    file_app = create_app('testing')
    engine = TournamentEngine(file_app, now_fn=lambda: NOW)
    with file_app.app_context():
        players = []
        for n in range(8):
            player = Player(email=f'racer{n}@test.com', name=f'Racer {n}', county='Alameda',
                            skill_band='3.5')
            player.availability = [AvailabilitySlot(day_of_week=6, start_time='09:00',
                                                    end_time='11:00')]
            players.append(player)
        db.session.add_all(players)
        db.session.commit()
        tournament_id = _tournament_with(players).id

    barrier = threading.Barrier(4, timeout=10)
    results = []

    def activate():
        with file_app.app_context():
            barrier.wait()
            results.append(engine.activate_tournament_if_ready(tournament_id))
            db.session.remove()

    threads = [threading.Thread(target=activate) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    with file_app.app_context():
        assert sorted(results) == [False, False, False, True]
        assert db.session.get(Tournament, tournament_id).status == 'active'
        assert Match.query.filter_by(tournament_id=tournament_id).count() == 28
        assert TournamentRound.query.filter_by(tournament_id=tournament_id).count() == 7
        db.session.remove()
        db.drop_all()


def test_activation_locks_are_released(engine, make_player):
    tournament = _tournament_with(_players(make_player, 8))
    assert engine.activate_tournament_if_ready(tournament.id) is True
    assert tournament.id not in engine._locks


def test_finals_are_created_once_from_a_stale_view(engine, make_player):
    players = _players(make_player, 4)
    tournament = _tournament_with(players, opened_at=NOW - timedelta(days=7))
    engine.tick()
    for match in Match.query.filter_by(tournament_id=tournament.id).all():
        _finish(match, match.home_player_id)
    db.session.commit()

    tournament = db.session.get(Tournament, tournament.id)
    engine._advance_to_finals(tournament, NOW)
    first_champ = tournament.champ_match_id
    set_committed_value(tournament, 'status', 'active')
    engine._advance_to_finals(tournament, NOW)

    db.session.expire_all()
    tournament = db.session.get(Tournament, tournament.id)
    assert tournament.status == 'finals'
    assert tournament.champ_match_id == first_champ
    assert Match.query.filter_by(tournament_id=tournament.id).count() == 8


def test_auto_confirm_skips_matches_completed_elsewhere(engine, make_player):
    tournament = _tournament_with(_players(make_player, 4), opened_at=NOW - timedelta(days=7))
    engine.tick()
    match = Match.query.filter_by(tournament_id=tournament.id).first()
    stale = PendingResult(
        tournament_id=tournament.id, match_id=match.id,
        winner_id=match.away_player_id, reported_by=match.away_player_id,
        reported_at=NOW - timedelta(hours=50),
    )
    stale.sets = [{'a_games': 2, 'b_games': 6}, {'a_games': 3, 'b_games': 6}]
    db.session.add(stale)
    _finish(match, match.home_player_id)
    db.session.commit()

    engine.tick()

    match = db.session.get(Match, match.id)
    assert match.winner_id == match.home_player_id
    assert match.confirmed_by == match.away_player_id
    assert PendingResult.query.filter_by(match_id=match.id).count() == 0
