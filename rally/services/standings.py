"""
Tournament standings.

Standings are always rebuilt from scratch out of the completed matches; nothing
here mutates stored state. Ranking order:

1. Wins (descending)
2. Set difference (descending)
3. Game difference (descending)
4. Head-to-head, when exactly two players are level
5. Deterministic FNV-1a hash of the player id and the tournament month
"""
_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def fnv1a(text):
    """32-bit FNV-1a hash."""
    value = _FNV_OFFSET
    for char in text:
        value ^= ord(char)
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value


def tiebreak_key(player_id, month=''):
    return fnv1a(f'{month}:{player_id}')


def _field(match, name):
    if isinstance(match, dict):
        return match.get(name)
    return getattr(match, name, None)


def _new_entry(player_id, player_ids):
    return {
        'player_id': player_id,
        'played': 0,
        'wins': 0,
        'losses': 0,
        'sets_won': 0,
        'sets_lost': 0,
        'set_diff': 0,
        'games_won': 0,
        'games_lost': 0,
        'game_diff': 0,
        'head_to_head': {other: 'pending' for other in player_ids if other != player_id},
    }


def empty_standings(player_ids):
    return [_new_entry(pid, player_ids) for pid in player_ids]


def ranking_key(entry):
    """Sort key for the canonical order (wins, set diff, game diff)."""
    return (-entry['wins'], -entry['set_diff'], -entry['game_diff'])


def _apply_head_to_head(ranked):
    i = 0
    while i < len(ranked):
        j = i
        while j + 1 < len(ranked) and ranking_key(ranked[j + 1]) == ranking_key(ranked[i]):
            j += 1
        if j == i + 1:
            first, second = ranked[i], ranked[j]
            if first['head_to_head'].get(second['player_id']) == 'loss':
                ranked[i], ranked[j] = second, first
        i = j + 1
    return ranked


def compute_standings(player_ids, matches, month=''):
    """Rank ``player_ids`` from the completed subset of ``matches``.

    ``matches`` may hold ORM rows or dicts exposing ``home_player_id``,
    ``away_player_id``, ``status``, ``winner_id`` and ``sets`` (a list of
    ``{'a_games', 'b_games'}`` from the home player's side).
    """
    player_ids = list(player_ids)
    entries = {pid: _new_entry(pid, player_ids) for pid in player_ids}
    record = {}

    for match in matches:
        if _field(match, 'status') != 'completed':
            continue
        winner_id = _field(match, 'winner_id')
        if not winner_id:
            continue
        home_id = _field(match, 'home_player_id')
        away_id = _field(match, 'away_player_id')
        home = entries.get(home_id)
        away = entries.get(away_id)
        if home is None or away is None:
            continue
        if winner_id not in (home_id, away_id):
            continue

        winner, loser = (home, away) if winner_id == home_id else (away, home)
        winner['played'] += 1
        loser['played'] += 1
        winner['wins'] += 1
        loser['losses'] += 1
        pair = (winner_id, loser['player_id'])
        record[pair] = record.get(pair, 0) + 1

        for set_score in _field(match, 'sets') or []:
            a_games = int(set_score.get('a_games', 0))
            b_games = int(set_score.get('b_games', 0))
            home['games_won'] += a_games
            home['games_lost'] += b_games
            away['games_won'] += b_games
            away['games_lost'] += a_games
            if a_games > b_games:
                home['sets_won'] += 1
                away['sets_lost'] += 1
            else:
                home['sets_lost'] += 1
                away['sets_won'] += 1

    # A split series stays 'pending'.
    for (winner_id, loser_id), wins in record.items():
        losses = record.get((loser_id, winner_id), 0)
        if wins > losses:
            entries[winner_id]['head_to_head'][loser_id] = 'win'
            entries[loser_id]['head_to_head'][winner_id] = 'loss'

    for entry in entries.values():
        entry['set_diff'] = entry['sets_won'] - entry['sets_lost']
        entry['game_diff'] = entry['games_won'] - entry['games_lost']

    ranked = sorted(
        entries.values(),
        key=lambda entry: ranking_key(entry) + (tiebreak_key(entry['player_id'], month),),
    )
    return _apply_head_to_head(ranked)
