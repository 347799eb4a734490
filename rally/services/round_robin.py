"""
Round-robin pairing generator (circle method).

Positions 0..N-1 refer to the roster order at the moment the schedule is
built. Player 0 stays fixed while the others rotate one step per round. An odd
roster gets a virtual extra seat; whoever lands on it draws the bye, which is
reported as BYE_INDEX.

    N even -> N-1 rounds of N/2 pairings
    N odd  -> N rounds of (N+1)/2 pairings, exactly one of them a bye
"""

BYE_INDEX = -1
TARGET_WEEKS = 4


def is_bye(pairing):
    return pairing['home_index'] == BYE_INDEX or pairing['away_index'] == BYE_INDEX


def _to_pairing(a, b, bye_seat):
    return {
        'home_index': BYE_INDEX if a == bye_seat else a,
        'away_index': BYE_INDEX if b == bye_seat else b,
    }


def assign_target_weeks(rounds, weeks=TARGET_WEEKS):
    """Spread rounds evenly over the month: 7 rounds -> weeks 1,1,2,2,3,3,4."""
    total = len(rounds)
    for i, rnd in enumerate(rounds):
        rnd['target_week'] = (i * weeks) // total + 1
    return rounds


def generate_round_robin(player_count):
    """Return the list of rounds for ``player_count`` participants.

    Each round is ``{'round_number', 'target_week', 'pairings'}`` where every
    pairing is ``{'home_index', 'away_index'}``. Fewer than two participants
    produce no rounds.
    """
    if player_count < 2:
        return []

    seats = player_count if player_count % 2 == 0 else player_count + 1
    bye_seat = seats - 1 if seats != player_count else None
    half = seats // 2
    rotating = list(range(1, seats))

    rounds = []
    for round_index in range(seats - 1):
        pairings = [_to_pairing(0, rotating[0], bye_seat)]
        for i in range(1, half):
            pairings.append(_to_pairing(rotating[i], rotating[-i], bye_seat))
        rounds.append({
            'round_number': round_index + 1,
            'target_week': 0,
            'pairings': pairings,
        })
        rotating.insert(0, rotating.pop())

    return assign_target_weeks(rounds)


def pairings_by_ids(rounds, player_ids):
    """Resolve index pairings against a roster, yielding (round, home_id, away_id).

    The bye side resolves to None. Call this once, on the frozen roster.
    """
    for rnd in rounds:
        for pairing in rnd['pairings']:
            home = pairing['home_index']
            away = pairing['away_index']
            yield (
                rnd,
                None if home == BYE_INDEX else player_ids[home],
                None if away == BYE_INDEX else player_ids[away],
            )
