import json
import uuid
from rally.app import db
from rally.time_utils import utcnow_naive

SKILL_BANDS = ('3.0', '3.5', '4.0')
MATCH_STATUSES = ('pending', 'scheduling', 'scheduled', 'completed', 'cancelled')
TOURNAMENT_STATUSES = ('registration', 'active', 'finals', 'completed')


def new_id():
    return str(uuid.uuid4())


def _safe_json(raw_value, fallback=None):
    if fallback is None:
        fallback = {}
    if not raw_value:
        return fallback
    try:
        return json.loads(raw_value)
    except (TypeError, ValueError):
        return fallback


def _dump_json(value):
    if value is None:
        return None
    return json.dumps(value)


def _iso(value):
    return value.isoformat() if value else None


class Player(db.Model):
    """Participant directory entry."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(120), default='')
    city = db.Column(db.String(100), default='')
    county = db.Column(db.String(80), default='')
    skill_band = db.Column(db.String(5), nullable=True)  # 3.0, 3.5, 4.0
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    availability = db.relationship(
        'AvailabilitySlot',
        backref='player',
        cascade='all, delete-orphan',
        order_by='AvailabilitySlot.day_of_week, AvailabilitySlot.start_time',
    )

    @property
    def display_name(self):
        return self.name or self.email

    def to_dict(self):
        return {
            'id': self.id, 'email': self.email, 'name': self.name,
            'city': self.city, 'county': self.county,
            'skill_band': self.skill_band,
            'created_at': _iso(self.created_at),
        }


class AvailabilitySlot(db.Model):
    """Recurring weekly slot, e.g. Saturdays 09:00-12:00."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    player_id = db.Column(db.String(36), db.ForeignKey('player.id'), nullable=False)
    day_of_week = db.Column(db.Integer, nullable=False)  # 0 = Sunday ... 6 = Saturday
    start_time = db.Column(db.String(5), nullable=False)  # HH:MM
    end_time = db.Column(db.String(5), nullable=False)

    __table_args__ = (
        db.Index('ix_availability_slot_player_day', 'player_id', 'day_of_week'),
    )

    def to_dict(self):
        return {
            'id': self.id, 'player_id': self.player_id,
            'day_of_week': self.day_of_week,
            'start_time': self.start_time, 'end_time': self.end_time,
        }


class PoolEntry(db.Model):
    """A player waiting to be placed into a tournament for their county and band."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    player_id = db.Column(db.String(36), db.ForeignKey('player.id'), nullable=False, unique=True)
    county = db.Column(db.String(80), nullable=False)
    band = db.Column(db.String(5), nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.Index('ix_pool_entry_county_band', 'county', 'band'),
    )

    player = db.relationship('Player', backref=db.backref('pool_entry', uselist=False))

    def to_dict(self):
        return {
            'id': self.id, 'player_id': self.player_id,
            'county': self.county, 'band': self.band,
            'created_at': _iso(self.created_at),
        }


# ── Matches ──────────────────────────────────────────────────────────

class Match(db.Model):
    """A singles match, either inside a tournament or an ad-hoc challenge."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=True)
    home_player_id = db.Column(db.String(36), db.ForeignKey('player.id'), nullable=False)
    away_player_id = db.Column(db.String(36), db.ForeignKey('player.id'), nullable=False)
    status = db.Column(db.String(20), default='pending')
    # pending, scheduling, scheduled, completed, cancelled
    scheduled_at = db.Column(db.DateTime, nullable=True)
    venue = db.Column(db.String(120), default='')
    scheduling_tier = db.Column(db.Integer, nullable=True)  # 1 auto, 2 flex, 3 propose & pick
    near_miss_json = db.Column(db.Text, nullable=True)
    # Result, set once the match is confirmed
    winner_id = db.Column(db.String(36), nullable=True)
    sets_json = db.Column(db.Text, nullable=True)
    score = db.Column(db.String(80), nullable=True)
    reported_by = db.Column(db.String(36), nullable=True)
    reported_at = db.Column(db.DateTime, nullable=True)
    confirmed_by = db.Column(db.String(36), nullable=True)  # player id or 'auto'
    confirmed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.Index('ix_match_tournament_status', 'tournament_id', 'status'),
        db.Index('ix_match_home_player', 'home_player_id'),
        db.Index('ix_match_away_player', 'away_player_id'),
    )

    tournament = db.relationship('Tournament', backref='matches')
    home_player = db.relationship('Player', foreign_keys=[home_player_id])
    away_player = db.relationship('Player', foreign_keys=[away_player_id])
    proposals = db.relationship(
        'TimeProposal',
        backref='match',
        lazy='joined',
        cascade='all, delete-orphan',
        order_by='TimeProposal.proposed_for',
    )

    @property
    def near_miss(self):
        return _safe_json(self.near_miss_json, None)

    @near_miss.setter
    def near_miss(self, value):
        self.near_miss_json = _dump_json(value)

    @property
    def sets(self):
        return _safe_json(self.sets_json, [])

    @sets.setter
    def sets(self, value):
        self.sets_json = _dump_json(value)

    @property
    def player_ids(self):
        return (self.home_player_id, self.away_player_id)

    def involves(self, player_id):
        return player_id in self.player_ids

    def opponent_of(self, player_id):
        if player_id == self.home_player_id:
            return self.away_player_id
        return self.home_player_id

    def result_dict(self):
        if not self.winner_id:
            return None
        return {
            'winner_id': self.winner_id,
            'sets': self.sets,
            'score': self.score,
            'reported_by': self.reported_by,
            'reported_at': _iso(self.reported_at),
            'confirmed_by': self.confirmed_by,
            'confirmed_at': _iso(self.confirmed_at),
        }

    def to_dict(self):
        return {
            'id': self.id,
            'tournament_id': self.tournament_id,
            'home_player_id': self.home_player_id,
            'away_player_id': self.away_player_id,
            'status': self.status,
            'proposals': [p.to_dict() for p in self.proposals],
            'scheduled_at': _iso(self.scheduled_at),
            'venue': self.venue,
            'scheduling_tier': self.scheduling_tier,
            'near_miss': self.near_miss,
            'result': self.result_dict(),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class TimeProposal(db.Model):
    """A concrete time offered for a match and the players who accepted it."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    match_id = db.Column(db.String(36), db.ForeignKey('match.id'), nullable=False)
    proposed_for = db.Column(db.DateTime, nullable=False)
    label = db.Column(db.String(80), default='')
    accepted_by_json = db.Column(db.Text, default='[]')

    @property
    def accepted_by(self):
        return _safe_json(self.accepted_by_json, [])

    @accepted_by.setter
    def accepted_by(self, value):
        self.accepted_by_json = json.dumps(sorted(set(value or [])))

    def to_dict(self):
        return {
            'id': self.id,
            'datetime': _iso(self.proposed_for),
            'label': self.label,
            'accepted_by': self.accepted_by,
        }


# ── Tournaments ──────────────────────────────────────────────────────

class Tournament(db.Model):
    """Monthly county/band round-robin with finals."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), default='')
    month = db.Column(db.String(7), nullable=False)  # YYYY-MM
    county = db.Column(db.String(80), nullable=False)
    band = db.Column(db.String(5), nullable=False)
    status = db.Column(db.String(20), default='registration')
    # registration, active, finals, completed
    min_players = db.Column(db.Integer, default=4)
    max_players = db.Column(db.Integer, default=8)
    standings_json = db.Column(db.Text, default='[]')
    scheduling_result_json = db.Column(db.Text, nullable=True)
    champ_match_id = db.Column(db.String(36), nullable=True)
    third_match_id = db.Column(db.String(36), nullable=True)
    registration_opened_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    activated_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.Index('ix_tournament_status', 'status'),
        db.Index('ix_tournament_county_band_month', 'county', 'band', 'month'),
    )

    participants = db.relationship(
        'TournamentParticipant',
        backref='tournament',
        cascade='all, delete-orphan',
        order_by='TournamentParticipant.position',
    )
    rounds = db.relationship(
        'TournamentRound',
        backref='tournament',
        cascade='all, delete-orphan',
        order_by='TournamentRound.round_number',
    )
    pending_results = db.relationship(
        'PendingResult',
        backref='tournament',
        cascade='all, delete-orphan',
    )

    @property
    def player_ids(self):
        return [row.player_id for row in self.participants]

    @property
    def standings(self):
        return _safe_json(self.standings_json, [])

    @standings.setter
    def standings(self, value):
        self.standings_json = json.dumps(value or [])

    @property
    def scheduling_result(self):
        return _safe_json(self.scheduling_result_json, None)

    @scheduling_result.setter
    def scheduling_result(self, value):
        self.scheduling_result_json = _dump_json(value)

    def round_robin_match_ids(self):
        return {
            pairing.match_id
            for rnd in self.rounds
            for pairing in rnd.pairings
            if pairing.match_id
        }

    def round_number_by_match_id(self):
        return {
            pairing.match_id: rnd.round_number
            for rnd in self.rounds
            for pairing in rnd.pairings
            if pairing.match_id
        }

    def to_dict(self, include_rounds=True):
        data = {
            'id': self.id,
            'name': self.name,
            'month': self.month,
            'county': self.county,
            'band': self.band,
            'status': self.status,
            'player_ids': self.player_ids,
            'min_players': self.min_players,
            'max_players': self.max_players,
            'standings': self.standings,
            'pending_results': {
                row.match_id: row.to_dict() for row in self.pending_results
            },
            'registration_opened_at': _iso(self.registration_opened_at),
            'activated_at': _iso(self.activated_at),
            'completed_at': _iso(self.completed_at),
            'finals_matches': {
                'champ_match_id': self.champ_match_id,
                'third_match_id': self.third_match_id,
            } if self.champ_match_id else None,
            'scheduling_result': self.scheduling_result,
            'created_at': _iso(self.created_at),
        }
        if include_rounds:
            data['rounds'] = [rnd.to_dict() for rnd in self.rounds]
        return data


class TournamentParticipant(db.Model):
    """Roster entry; position is the join order."""
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False)
    player_id = db.Column(db.String(36), db.ForeignKey('player.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    joined_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'player_id', name='uq_tournament_participant_unique'),
    )

    player = db.relationship('Player', backref='tournament_entries')


class TournamentRound(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False)
    round_number = db.Column(db.Integer, nullable=False)
    target_week = db.Column(db.Integer, nullable=False)

    pairings = db.relationship(
        'TournamentPairing',
        backref='round',
        cascade='all, delete-orphan',
        order_by='TournamentPairing.id',
    )

    def to_dict(self):
        return {
            'round_number': self.round_number,
            'target_week': self.target_week,
            'pairings': [p.to_dict() for p in self.pairings],
        }


class TournamentPairing(db.Model):
    """A round-robin pairing bound to player ids; a NULL side is the bye."""
    id = db.Column(db.Integer, primary_key=True)
    round_id = db.Column(db.Integer, db.ForeignKey('tournament_round.id'), nullable=False)
    home_player_id = db.Column(db.String(36), nullable=True)
    away_player_id = db.Column(db.String(36), nullable=True)
    match_id = db.Column(db.String(36), db.ForeignKey('match.id'), nullable=True)

    @property
    def is_bye(self):
        return self.home_player_id is None or self.away_player_id is None

    def to_dict(self):
        return {
            'home_player_id': self.home_player_id,
            'away_player_id': self.away_player_id,
            'match_id': self.match_id,
            'bye': self.is_bye,
        }


class PendingResult(db.Model):
    """Self-reported score awaiting the opponent's confirmation."""
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False)
    match_id = db.Column(db.String(36), db.ForeignKey('match.id'), nullable=False, unique=True)
    winner_id = db.Column(db.String(36), nullable=False)
    sets_json = db.Column(db.Text, nullable=False)
    reported_by = db.Column(db.String(36), nullable=False)
    reported_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    @property
    def sets(self):
        return _safe_json(self.sets_json, [])

    @sets.setter
    def sets(self, value):
        self.sets_json = json.dumps(value or [])

    def to_dict(self):
        return {
            'winner_id': self.winner_id,
            'sets': self.sets,
            'reported_by': self.reported_by,
            'reported_at': _iso(self.reported_at),
        }
