"""Tests for the three-tier availability scheduler."""
from datetime import date, datetime
from rally.models import Match
from rally.services.scheduler import (
    MIN_MATCH_MINUTES, auto_schedule_matches, combine_date_time, evaluate_pair,
    find_near_misses, find_overlaps, format_proposal_label, horizon_dates,
    slot_impact, summarize_availability, to_minutes,
)

MONDAY = date(2026, 10, 19)
SUN, MON, TUE, WED, THU, FRI, SAT = range(7)


def _slot(dow, start, end):
    return {'day_of_week': dow, 'start_time': start, 'end_time': end}


def test_horizon_is_the_fourteen_days_after_from_date():
    days = horizon_dates(MONDAY)
    assert len(days) == 14
    assert days[0] == date(2026, 10, 20)
    assert days[-1] == date(2026, 11, 2)
    assert horizon_dates(datetime(2026, 10, 19, 23, 59))[0] == date(2026, 10, 20)


def test_overlaps_are_chronological_and_use_the_shared_window():
    overlaps = find_overlaps(
        [_slot(SAT, '09:00', '12:00'), _slot(WED, '18:00', '21:00')],
        [_slot(SAT, '10:00', '13:00'), _slot(WED, '19:00', '20:30')],
        MONDAY,
    )
    assert [(o.date, o.start_time, o.end_time) for o in overlaps] == [
        (date(2026, 10, 21), '19:00', '20:30'),
        (date(2026, 10, 24), '10:00', '12:00'),
        (date(2026, 10, 28), '19:00', '20:30'),
        (date(2026, 10, 31), '10:00', '12:00'),
    ]


def test_overlap_must_reach_minimum_match_length():
    exact = find_overlaps([_slot(THU, '18:00', '19:15')], [_slot(THU, '17:00', '20:00')], MONDAY)
    assert len(exact) == 2
    assert to_minutes(exact[0].end_time) - to_minutes(exact[0].start_time) == MIN_MATCH_MINUTES

    short = find_overlaps([_slot(THU, '18:00', '19:14')], [_slot(THU, '17:00', '20:00')], MONDAY)
    assert short == []


def test_ten_minute_gap_is_one_near_miss():
    near_misses = find_near_misses(
        [_slot(TUE, '18:00', '19:00')],
        [_slot(TUE, '19:10', '20:30')],
        MONDAY,
    )
    assert len(near_misses) == 1
    near_miss = near_misses[0]
    assert near_miss['overlap_minutes'] == 0
    assert near_miss['gap_minutes'] == 10
    assert near_miss['flex_needed'] == 85
    assert near_miss['date'] == '2026-10-20'
    assert near_miss['day_of_week'] == TUE
    assert near_miss['suggestion'] == '10-min gap, shift 85 min to create a window'
    window = near_miss['flexed_window']
    assert to_minutes(window['end_time']) - to_minutes(window['start_time']) == MIN_MATCH_MINUTES
    assert to_minutes(window['start_time']) >= to_minutes('18:00')
    assert to_minutes(window['end_time']) <= to_minutes('20:30')


def test_short_overlap_and_back_to_back_suggestions():
    short = find_near_misses([_slot(FRI, '09:00', '10:00')], [_slot(FRI, '09:30', '11:00')], MONDAY)
    assert short[0]['overlap_minutes'] == 30
    assert short[0]['flex_needed'] == 45
    assert short[0]['suggestion'].startswith('You overlap for 30 min')

    adjacent = find_near_misses([_slot(FRI, '09:00', '10:00')], [_slot(FRI, '10:00', '11:00')], MONDAY)
    assert adjacent[0]['gap_minutes'] == 0
    assert adjacent[0]['flex_needed'] == 75
    assert 'back-to-back' in adjacent[0]['suggestion']


def test_wide_gaps_and_large_flex_are_not_reported():
    assert find_near_misses([_slot(MON, '08:00', '09:00')], [_slot(MON, '10:01', '11:00')], MONDAY) == []
    # 20-minute gap needs 95 minutes of flex.
    assert find_near_misses([_slot(MON, '08:00', '09:00')], [_slot(MON, '09:20', '11:00')], MONDAY) == []
    kept = find_near_misses([_slot(MON, '08:00', '09:00')], [_slot(MON, '09:15', '11:00')], MONDAY)
    assert kept[0]['flex_needed'] == 90


def test_near_misses_sorted_by_flex_and_never_playable():
    slots_a = [_slot(TUE, '18:00', '19:00'), _slot(WED, '18:00', '19:30'), _slot(SAT, '08:00', '12:00')]
    slots_b = [_slot(TUE, '19:10', '20:30'), _slot(WED, '18:30', '20:00'), _slot(SAT, '11:00', '13:00')]
    near_misses = find_near_misses(slots_a, slots_b, MONDAY)
    flex = [item['flex_needed'] for item in near_misses]
    assert flex == sorted(flex)
    assert flex[0] == 15
    assert all(item['overlap_minutes'] < MIN_MATCH_MINUTES for item in near_misses)


def test_evaluate_pair_tiers():
    assert evaluate_pair([_slot(SAT, '09:00', '12:00')], [_slot(SAT, '09:00', '12:00')], MONDAY).tier == 1
    tier_two = evaluate_pair([_slot(SAT, '09:00', '10:00')], [_slot(SAT, '10:00', '12:00')], MONDAY)
    assert tier_two.tier == 2 and tier_two.near_misses
    assert evaluate_pair([_slot(SAT, '09:00', '10:00')], [_slot(SUN, '09:00', '12:00')], MONDAY).tier == 3
    assert evaluate_pair([], [_slot(SUN, '09:00', '12:00')], MONDAY).tier == 3


def test_labels_and_datetimes():
    assert format_proposal_label(date(2026, 2, 14), '10:00') == 'Sat 14 Feb · 10:00am'
    assert format_proposal_label(date(2026, 2, 14), '13:30') == 'Sat 14 Feb · 1:30pm'
    assert format_proposal_label(date(2026, 2, 15), '00:15') == 'Sun 15 Feb · 12:15am'
    assert combine_date_time(date(2026, 2, 14), '18:45') == datetime(2026, 2, 14, 18, 45)
    assert combine_date_time('2026-02-14', '07:05') == datetime(2026, 2, 14, 7, 5)


def test_summarize_availability():
    assert summarize_availability([]) == 'no recurring availability set'
    assert summarize_availability([_slot(SAT, '09:00', '12:00')]) == 'Saturday 09:00-12:00'


def test_auto_schedule_books_tier_one_and_tags_the_rest(app):
    availability = {
        'a': [_slot(SAT, '09:00', '12:00')],
        'b': [_slot(SAT, '10:00', '12:00')],
        'c': [_slot(SAT, '12:00', '13:00')],
        'd': [_slot(MON, '06:00', '07:00')],
    }
    tier_one = Match(id='m1', home_player_id='a', away_player_id='b', status='pending')
    tier_two = Match(id='m2', home_player_id='a', away_player_id='c', status='pending')
    tier_three = Match(id='m3', home_player_id='c', away_player_id='d', status='pending')

    result = auto_schedule_matches([tier_one, tier_two, tier_three], availability, MONDAY)

    assert result == {
        'scheduled_count': 1,
        'failed_count': 2,
        'failed_match_ids': ['m2', 'm3'],
        'near_miss_count': 1,
        'near_miss_match_ids': ['m2'],
    }
    assert tier_one.status == 'scheduled'
    assert tier_one.scheduling_tier == 1
    assert tier_one.scheduled_at == datetime(2026, 10, 24, 10, 0)
    assert tier_one.proposals[0].accepted_by == ['a', 'b']
    assert tier_one.proposals[0].label == 'Sat 24 Oct · 10:00am'

    assert tier_two.status == 'pending'
    assert tier_two.scheduling_tier == 2
    assert tier_two.near_miss['gap_minutes'] == 0
    assert tier_three.status == 'pending'
    assert tier_three.scheduling_tier == 3
    assert tier_three.near_miss is None


def test_one_match_per_day_pushes_second_booking_to_next_week(app):
    availability = {pid: [_slot(SAT, '09:00', '12:00')] for pid in 'abc'}
    first = Match(id='m1', home_player_id='a', away_player_id='b', status='pending')
    second = Match(id='m2', home_player_id='a', away_player_id='c', status='pending')

    auto_schedule_matches([first, second], availability, MONDAY, one_match_per_day=True)

    assert first.scheduled_at == datetime(2026, 10, 24, 9, 0)
    assert second.scheduled_at == datetime(2026, 10, 31, 9, 0)


def test_slot_impact_ranks_slots_by_opponents_unlocked():
    mine = [_slot(THU, '10:00', '12:00')]
    opponents = {
        'ben': [_slot(TUE, '18:00', '20:00')],
        'cal': [_slot(TUE, '18:00', '20:00'), _slot(SAT, '09:00', '12:00')],
        'dan': [_slot(THU, '09:00', '12:00'), _slot(MON, '07:00', '09:00')],
    }

    ranked = slot_impact(mine, opponents, MONDAY)

    assert [(candidate['label'], unlocked) for candidate, unlocked in ranked] == [
        ('Tue evening', ['ben', 'cal']),
        ('Sat morning', ['cal']),
    ]


def test_slot_impact_skips_slots_already_held():
    mine = [_slot(TUE, '18:00', '19:00')]
    opponents = {'ben': [_slot(TUE, '18:00', '20:00')]}
    assert slot_impact(mine, opponents, MONDAY) == []
    assert slot_impact([], {}, MONDAY) == []
