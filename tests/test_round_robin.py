"""Tests for the circle-method round-robin generator."""
from itertools import combinations
import pytest
from rally.services.round_robin import (
    BYE_INDEX, generate_round_robin, is_bye, pairings_by_ids,
)


def _real_pairs(rounds):
    pairs = []
    for rnd in rounds:
        for pairing in rnd['pairings']:
            if not is_bye(pairing):
                pairs.append(frozenset((pairing['home_index'], pairing['away_index'])))
    return pairs


@pytest.mark.parametrize('count', range(2, 11))
def test_every_pair_meets_exactly_once(count):
    pairs = _real_pairs(generate_round_robin(count))
    expected = {frozenset(pair) for pair in combinations(range(count), 2)}
    assert len(pairs) == len(expected)
    assert set(pairs) == expected


def test_even_roster_round_shape():
    rounds = generate_round_robin(8)
    assert len(rounds) == 7
    assert all(len(rnd['pairings']) == 4 for rnd in rounds)
    assert not any(is_bye(p) for rnd in rounds for p in rnd['pairings'])
    for rnd in rounds:
        seats = [i for p in rnd['pairings'] for i in (p['home_index'], p['away_index'])]
        assert sorted(seats) == list(range(8))


def test_odd_roster_has_one_bye_per_round():
    rounds = generate_round_robin(5)
    assert len(rounds) == 5
    byes_by_player = []
    for rnd in rounds:
        byes = [p for p in rnd['pairings'] if is_bye(p)]
        assert len(byes) == 1
        bye = byes[0]
        byes_by_player.append(bye['home_index'] if bye['away_index'] == BYE_INDEX else bye['away_index'])
    assert sorted(byes_by_player) == list(range(5))


@pytest.mark.parametrize('count', [0, 1])
def test_fewer_than_two_players_produce_no_rounds(count):
    assert generate_round_robin(count) == []


def test_rounds_are_numbered_and_spread_over_four_weeks():
    rounds = generate_round_robin(8)
    assert [rnd['round_number'] for rnd in rounds] == list(range(1, 8))
    assert [rnd['target_week'] for rnd in rounds] == [1, 1, 2, 2, 3, 3, 4]


def test_pairings_by_ids_maps_bye_to_none():
    rounds = generate_round_robin(3)
    resolved = list(pairings_by_ids(rounds, ['a', 'b', 'c']))
    byes = [(home, away) for _, home, away in resolved if home is None or away is None]
    assert len(byes) == 3
    real = {frozenset((home, away)) for _, home, away in resolved if home and away}
    assert real == {frozenset(('a', 'b')), frozenset(('a', 'c')), frozenset(('b', 'c'))}
