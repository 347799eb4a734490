"""
Tournament lifecycle engine.

Drives every tournament through registration -> active -> finals -> completed.
A background loop calls ``tick()`` periodically; join requests call
``activate_tournament_if_ready`` directly. Each tick:

1. admits waiting pool players into registration tournaments,
2. activates registration tournaments that are full or past their window,
3. moves finished round robins to finals,
4. completes tournaments whose finals are done,
5. auto-confirms results left unconfirmed past the grace period.

Activation claims the tournament with ``UPDATE ... WHERE status='registration'``
and creates rounds, pairings and matches in the same commit, so a failed or
repeated activation never leaves duplicate matches behind. The finals and
completion steps claim their transition the same way, and auto-confirmation
claims each match with ``UPDATE ... WHERE status != 'completed'``, so engines in
several worker processes never apply a step twice.
"""
import logging
import threading
import weakref
from datetime import timedelta
from sqlalchemy import func
from rally.app import db, socketio
from rally.models import (
    Match, PendingResult, PoolEntry, Tournament, TournamentParticipant,
    TournamentPairing, TournamentRound, new_id,
)
from rally.services.match_actions import (
    availability_by_player, confirm_match_result, recompute_tournament_standings,
)
from rally.services.round_robin import generate_round_robin, pairings_by_ids
from rally.services.scheduler import auto_schedule_matches
from rally.services.standings import compute_standings, empty_standings
from rally.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

FINALS_PLAYERS = 4


class TournamentEngine:
    def __init__(self, app=None, interval_seconds=30.0, now_fn=utcnow_naive,
                 registration_window_days=7, result_grace_hours=48):
        self.app = app
        self.interval_seconds = float(interval_seconds)
        self.now_fn = now_fn
        self.registration_window = timedelta(days=registration_window_days)
        self.result_grace = timedelta(hours=result_grace_hours)
        self._stop_event = threading.Event()
        self._stop_event.set()
        self._task = None
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ── Loop control ─────────────────────────────────────────────────

    @property
    def running(self):
        return not self._stop_event.is_set()

    def start(self):
        """Start the periodic loop; the first tick runs straight away."""
        if self.running:
            return
        if self.app is None:
            raise RuntimeError('TournamentEngine.start() needs an app')
        # Each run gets its own event so a stale loop never resumes.
        self._stop_event = threading.Event()
        self._task = socketio.start_background_task(self._run, self._stop_event)
        logger.info('Tournament engine started (interval %.0fs)', self.interval_seconds)

    def stop(self):
        """Stop scheduling further ticks. A tick already in flight finishes."""
        if not self.running:
            return
        self._stop_event.set()
        self._task = None
        logger.info('Tournament engine stopped')

    def _run(self, stop_event):
        while not stop_event.is_set():
            with self.app.app_context():
                try:
                    self.tick()
                except Exception:
                    logger.exception('Tournament engine tick failed')
                    db.session.rollback()
                finally:
                    db.session.remove()
            stop_event.wait(self.interval_seconds)

    def tick(self):
        """One pass over every live tournament. Needs an app context."""
        now = self.now_fn()
        self._for_each('registration', self._admit_pool_players, now)
        for tournament_id in self._tournament_ids('registration'):
            self.activate_tournament_if_ready(tournament_id)
        self._for_each('active', self._advance_to_finals, now)
        self._for_each('finals', self._complete_if_finals_done, now)
        self._for_each(('active', 'finals'), self._auto_confirm_stale_results, now)

    # ── Helpers ──────────────────────────────────────────────────────

    def _lock_for(self, tournament_id):
        # Entries vanish once no caller holds the lock.
        with self._locks_guard:
            lock = self._locks.get(tournament_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[tournament_id] = lock
            return lock

    @staticmethod
    def _tournament_ids(statuses):
        if isinstance(statuses, str):
            statuses = (statuses,)
        rows = (
            db.session.query(Tournament.id)
            .filter(Tournament.status.in_(statuses))
            .order_by(Tournament.created_at.asc(), Tournament.id.asc())
            .all()
        )
        return [row.id for row in rows]

    def _for_each(self, statuses, handler, now):
        allowed = (statuses,) if isinstance(statuses, str) else tuple(statuses)
        for tournament_id in self._tournament_ids(allowed):
            try:
                tournament = db.session.get(Tournament, tournament_id)
                if tournament is None or tournament.status not in allowed:
                    continue
                handler(tournament, now)
            except Exception:
                db.session.rollback()
                logger.exception(
                    'Tournament %s failed during %s', tournament_id, handler.__name__
                )

    def is_ready(self, tournament, now=None):
        now = now or self.now_fn()
        count = len(tournament.participants)
        if count >= tournament.max_players:
            return True
        if count < tournament.min_players:
            return False
        opened_at = tournament.registration_opened_at or tournament.created_at
        return opened_at is not None and now - opened_at >= self.registration_window

    # ── Registration ─────────────────────────────────────────────────

    def _admit_pool_players(self, tournament, now):
        entries = (
            PoolEntry.query
            .filter(
                func.lower(PoolEntry.county) == (tournament.county or '').lower(),
                PoolEntry.band == tournament.band,
            )
            .order_by(PoolEntry.created_at.asc(), PoolEntry.id.asc())
            .all()
        )
        if not entries:
            return

        members = set(tournament.player_ids)
        position = max((row.position for row in tournament.participants), default=-1) + 1
        admitted = 0
        for entry in entries:
            if entry.player_id in members:
                db.session.delete(entry)
                continue
            if len(members) >= tournament.max_players:
                break
            tournament.participants.append(TournamentParticipant(
                player_id=entry.player_id,
                position=position,
                joined_at=now,
            ))
            members.add(entry.player_id)
            position += 1
            admitted += 1
            db.session.delete(entry)

        db.session.commit()
        if admitted:
            logger.info(
                'Admitted %d pool player(s) into tournament %s (%d/%d)',
                admitted, tournament.id, len(members), tournament.max_players,
            )
        if len(members) >= tournament.max_players:
            self.activate_tournament_if_ready(tournament.id)

    def activate_tournament_if_ready(self, tournament_id):
        """Activate the tournament if it is ready. True only for the call that activated it."""
        with self._lock_for(tournament_id):
            try:
                tournament = db.session.get(Tournament, tournament_id, populate_existing=True)
                if tournament is None or tournament.status != 'registration':
                    return False
                now = self.now_fn()
                if not self.is_ready(tournament, now):
                    return False
                return self._activate(tournament, now)
            except Exception:
                db.session.rollback()
                logger.exception('Activation of tournament %s failed', tournament_id)
                return False

    def _activate(self, tournament, now):
        claimed = (
            Tournament.query
            .filter(Tournament.id == tournament.id, Tournament.status == 'registration')
            .update({'status': 'active', 'activated_at': now}, synchronize_session=False)
        )
        if claimed != 1:
            db.session.rollback()
            return False
        tournament.status = 'active'
        tournament.activated_at = now

        player_ids = list(tournament.player_ids)
        rounds = generate_round_robin(len(player_ids))
        round_rows = {}
        for rnd in rounds:
            row = TournamentRound(
                round_number=rnd['round_number'],
                target_week=rnd['target_week'],
            )
            tournament.rounds.append(row)
            round_rows[rnd['round_number']] = row

        matches = []
        for rnd, home_id, away_id in pairings_by_ids(rounds, player_ids):
            pairing = TournamentPairing(home_player_id=home_id, away_player_id=away_id)
            round_rows[rnd['round_number']].pairings.append(pairing)
            if home_id is None or away_id is None:
                continue
            match = Match(
                id=new_id(),
                tournament_id=tournament.id,
                home_player_id=home_id,
                away_player_id=away_id,
                status='pending',
                created_at=now,
                updated_at=now,
            )
            db.session.add(match)
            pairing.match_id = match.id
            matches.append(match)

        tournament.standings = empty_standings(player_ids)
        result = auto_schedule_matches(matches, availability_by_player(player_ids), now, now=now)
        tournament.scheduling_result = result
        db.session.commit()

        logger.info(
            'Activated tournament %s: %d players, %d rounds, %d matches '
            '(%d scheduled, %d near misses)',
            tournament.id, len(player_ids), len(rounds), len(matches),
            result['scheduled_count'], result['near_miss_count'],
        )
        return True

    # ── Finals and completion ────────────────────────────────────────

    def _advance_to_finals(self, tournament, now):
        match_ids = tournament.round_robin_match_ids()
        if not match_ids:
            return
        matches = Match.query.filter(Match.id.in_(match_ids)).all()
        if len(matches) != len(match_ids):
            return
        if any(match.status != 'completed' for match in matches):
            return

        standings = compute_standings(tournament.player_ids, matches, tournament.month)
        if len(standings) < FINALS_PLAYERS:
            return

        seeds = [entry['player_id'] for entry in standings[:FINALS_PLAYERS]]
        champ_id, third_id = new_id(), new_id()
        claimed = (
            Tournament.query
            .filter(Tournament.id == tournament.id, Tournament.status == 'active')
            .update({
                'status': 'finals',
                'champ_match_id': champ_id,
                'third_match_id': third_id,
            }, synchronize_session=False)
        )
        if claimed != 1:
            db.session.rollback()
            return
        champ = Match(
            id=champ_id, tournament_id=tournament.id,
            home_player_id=seeds[0], away_player_id=seeds[1],
            status='pending', created_at=now, updated_at=now,
        )
        third = Match(
            id=third_id, tournament_id=tournament.id,
            home_player_id=seeds[2], away_player_id=seeds[3],
            status='pending', created_at=now, updated_at=now,
        )
        db.session.add_all([champ, third])
        tournament.standings = standings
        tournament.champ_match_id = champ_id
        tournament.third_match_id = third_id
        tournament.status = 'finals'
        db.session.commit()
        logger.info('Tournament %s moved to finals', tournament.id)

    def _complete_if_finals_done(self, tournament, now):
        finals_ids = [tournament.champ_match_id, tournament.third_match_id]
        if not all(finals_ids):
            return
        finals = [db.session.get(Match, match_id) for match_id in finals_ids]
        if any(match is None or match.status != 'completed' for match in finals):
            return

        claimed = (
            Tournament.query
            .filter(Tournament.id == tournament.id, Tournament.status == 'finals')
            .update({'status': 'completed', 'completed_at': now}, synchronize_session=False)
        )
        if claimed != 1:
            db.session.rollback()
            return
        recompute_tournament_standings(tournament)
        tournament.status = 'completed'
        tournament.completed_at = now
        db.session.commit()
        logger.info('Tournament %s completed', tournament.id)

    # ── Disputes ─────────────────────────────────────────────────────

    def _auto_confirm_stale_results(self, tournament, now):
        cutoff = now - self.result_grace
        stale = [
            row for row in tournament.pending_results
            if row.reported_at is not None and row.reported_at <= cutoff
        ]
        if not stale:
            return

        confirmed = 0
        for row in stale:
            match = db.session.get(Match, row.match_id)
            if match is None:
                logger.warning(
                    'Pending result for missing match %s in tournament %s',
                    row.match_id, tournament.id,
                )
                continue
            claimed = (
                Match.query
                .filter(Match.id == match.id, Match.status != 'completed')
                .update({'status': 'completed'}, synchronize_session=False)
            )
            if not claimed:
                PendingResult.query.filter_by(id=row.id).delete(synchronize_session=False)
                continue
            confirm_match_result(
                match, row.winner_id, row.sets, row.reported_by, row.reported_at,
                confirmed_by='auto', now=now,
            )
            tournament.pending_results.remove(row)
            confirmed += 1

        if not confirmed:
            db.session.commit()
            return
        db.session.flush()
        recompute_tournament_standings(tournament)
        db.session.commit()
        logger.info('Auto-confirmed %d result(s) in tournament %s', confirmed, tournament.id)


def open_tournament(county, band, month=None, name=None, now=None,
                    min_players=4, max_players=8):
    """Open a registration tournament for a county and band. Caller commits."""
    now = now or utcnow_naive()
    month = month or now.strftime('%Y-%m')
    tournament = Tournament(
        name=name or f'{county} {band} {month}',
        month=month,
        county=county,
        band=band,
        status='registration',
        min_players=min_players,
        max_players=max_players,
        registration_opened_at=now,
        created_at=now,
    )
    tournament.standings = []
    db.session.add(tournament)
    return tournament
