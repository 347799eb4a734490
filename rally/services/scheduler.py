"""
Availability scheduler: turns two recurring weekly calendars into a meeting time.

Tier 1  both players share a window of at least MIN_MATCH_MINUTES.
Tier 2  a near miss: a short overlap, back-to-back slots or a small gap that a
        modest adjustment from one or both players would turn into a match.
Tier 3  nothing close; the players propose and accept times by hand.

All matching happens on (date, "HH:MM", "HH:MM") triples in the players' local,
timezone-naive terms. Turning a window into a datetime or a label is a separate
formatting step (``combine_date_time`` / ``format_proposal_label``).
"""
from collections import namedtuple
from datetime import date as date_cls, datetime, timedelta
from rally.models import TimeProposal
from rally.time_utils import utcnow_naive

DAY_NAMES = ['Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday']
SHORT_DAY = ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat']
MONTH_NAMES = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun',
               'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']

HORIZON_DAYS = 14
MIN_MATCH_MINUTES = 75
MAX_GAP_MINUTES = 60
MAX_FLEX_MINUTES = 90

OverlapWindow = namedtuple('OverlapWindow', ['date', 'start_time', 'end_time'])
SchedulingVerdict = namedtuple('SchedulingVerdict', ['tier', 'overlaps', 'near_misses'])


def to_minutes(hhmm):
    hours, _, minutes = str(hhmm).partition(':')
    return int(hours or 0) * 60 + int(minutes or 0)


def to_time_str(total_minutes):
    return f'{total_minutes // 60:02d}:{total_minutes % 60:02d}'


def day_of_week(day):
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def _slot_field(slot, name):
    if isinstance(slot, dict):
        return slot.get(name)
    return getattr(slot, name, None)


def _slots_on(slots, dow):
    day_slots = []
    for slot in slots or []:
        if _slot_field(slot, 'day_of_week') != dow:
            continue
        start = to_minutes(_slot_field(slot, 'start_time'))
        end = to_minutes(_slot_field(slot, 'end_time'))
        if end <= start:
            continue
        day_slots.append((start, end))
    return sorted(day_slots)


def horizon_dates(from_date, days=HORIZON_DAYS):
    """The ``days`` calendar dates following ``from_date``."""
    if isinstance(from_date, datetime):
        from_date = from_date.date()
    return [from_date + timedelta(days=offset) for offset in range(1, days + 1)]


def find_overlaps(slots_a, slots_b, from_date):
    """Every shared window of at least MIN_MATCH_MINUTES over the horizon, in date order."""
    overlaps = []
    for day in horizon_dates(from_date):
        dow = day_of_week(day)
        day_windows = []
        for a_start, a_end in _slots_on(slots_a, dow):
            for b_start, b_end in _slots_on(slots_b, dow):
                start = max(a_start, b_start)
                end = min(a_end, b_end)
                if end - start >= MIN_MATCH_MINUTES:
                    day_windows.append((start, end))
        for start, end in sorted(day_windows):
            overlaps.append(OverlapWindow(day, to_time_str(start), to_time_str(end)))
    return overlaps


def _flexed_window(a_start, a_end, b_start, b_end):
    union_start = min(a_start, b_start)
    union_end = max(a_end, b_end)
    midpoint = (max(a_start, b_start) + min(a_end, b_end)) // 2
    start = midpoint - MIN_MATCH_MINUTES // 2
    start = max(union_start, min(start, union_end - MIN_MATCH_MINUTES))
    end = min(start + MIN_MATCH_MINUTES, union_end)
    return {'start_time': to_time_str(start), 'end_time': to_time_str(end)}


def _suggestion(overlap_minutes, gap_minutes, flex_needed):
    if overlap_minutes > 0:
        return f'You overlap for {overlap_minutes} min, extend by {flex_needed} min for a full match'
    if gap_minutes == 0:
        return f'Your slots are back-to-back, shift {flex_needed} min to create a window'
    return f'{gap_minutes}-min gap, shift {flex_needed} min to create a window'


def find_near_misses(slots_a, slots_b, from_date):
    """Slot pairs that fall short of a playable window but could be flexed into one.

    A weekly conflict is reported once, on its first date in the horizon.
    Results are sorted by the flex needed, smallest first.
    """
    near_misses = []
    seen = set()
    for day in horizon_dates(from_date):
        dow = day_of_week(day)
        for a_start, a_end in _slots_on(slots_a, dow):
            for b_start, b_end in _slots_on(slots_b, dow):
                overlap_minutes = max(0, min(a_end, b_end) - max(a_start, b_start))
                if overlap_minutes >= MIN_MATCH_MINUTES:
                    continue

                gap_minutes = 0
                if overlap_minutes == 0:
                    if a_end <= b_start:
                        gap_minutes = b_start - a_end
                    elif b_end <= a_start:
                        gap_minutes = a_start - b_end
                if gap_minutes > MAX_GAP_MINUTES:
                    continue

                flex_needed = MIN_MATCH_MINUTES - overlap_minutes + gap_minutes
                if flex_needed > MAX_FLEX_MINUTES:
                    continue

                key = (dow, a_start, a_end, b_start, b_end)
                if key in seen:
                    continue
                seen.add(key)

                near_misses.append({
                    'day_of_week': dow,
                    'date': day.isoformat(),
                    'slot_a': {'start_time': to_time_str(a_start), 'end_time': to_time_str(a_end)},
                    'slot_b': {'start_time': to_time_str(b_start), 'end_time': to_time_str(b_end)},
                    'overlap_minutes': overlap_minutes,
                    'gap_minutes': gap_minutes,
                    'flex_needed': flex_needed,
                    'suggestion': _suggestion(overlap_minutes, gap_minutes, flex_needed),
                    'flexed_window': _flexed_window(a_start, a_end, b_start, b_end),
                })

    near_misses.sort(key=lambda item: item['flex_needed'])
    return near_misses


def evaluate_pair(slots_a, slots_b, from_date):
    overlaps = find_overlaps(slots_a, slots_b, from_date)
    if overlaps:
        return SchedulingVerdict(1, overlaps, [])
    near_misses = find_near_misses(slots_a, slots_b, from_date)
    if near_misses:
        return SchedulingVerdict(2, [], near_misses)
    return SchedulingVerdict(3, [], [])


# ── Formatting ───────────────────────────────────────────────────────

def combine_date_time(day, hhmm):
    if isinstance(day, str):
        day = date_cls.fromisoformat(day[:10])
    elif isinstance(day, datetime):
        day = day.date()
    minutes = to_minutes(hhmm)
    return datetime(day.year, day.month, day.day, minutes // 60, minutes % 60)


def format_proposal_label(day, start_time):
    """e.g. 'Sat 15 Feb · 10:00am'."""
    minutes = to_minutes(start_time)
    hour, minute = divmod(minutes, 60)
    suffix = 'pm' if hour >= 12 else 'am'
    hour12 = 12 if hour % 12 == 0 else hour % 12
    return (
        f'{SHORT_DAY[day_of_week(day)]} {day.day} {MONTH_NAMES[day.month - 1]}'
        f' · {hour12}:{minute:02d}{suffix}'
    )


def summarize_availability(slots):
    if not slots:
        return 'no recurring availability set'
    parts = []
    for slot in slots:
        dow = _slot_field(slot, 'day_of_week')
        day_name = DAY_NAMES[dow] if isinstance(dow, int) and 0 <= dow <= 6 else '?'
        parts.append(f"{day_name} {_slot_field(slot, 'start_time')}-{_slot_field(slot, 'end_time')}")
    return ', '.join(parts)


def overlap_options(overlaps, limit=10):
    return [
        {
            'datetime': combine_date_time(window.date, window.start_time).isoformat(),
            'label': format_proposal_label(window.date, window.start_time),
        }
        for window in overlaps[:limit]
    ]


# ── Availability impact ──────────────────────────────────────────────

COMMON_SLOTS = [
    {'day_of_week': 1, 'start_time': '07:00', 'end_time': '09:00', 'label': 'Mon morning'},
    {'day_of_week': 1, 'start_time': '12:00', 'end_time': '14:00', 'label': 'Mon lunch'},
    {'day_of_week': 1, 'start_time': '18:00', 'end_time': '20:00', 'label': 'Mon evening'},
    {'day_of_week': 2, 'start_time': '07:00', 'end_time': '09:00', 'label': 'Tue morning'},
    {'day_of_week': 2, 'start_time': '18:00', 'end_time': '20:00', 'label': 'Tue evening'},
    {'day_of_week': 3, 'start_time': '07:00', 'end_time': '09:00', 'label': 'Wed morning'},
    {'day_of_week': 3, 'start_time': '12:00', 'end_time': '14:00', 'label': 'Wed lunch'},
    {'day_of_week': 3, 'start_time': '18:00', 'end_time': '20:00', 'label': 'Wed evening'},
    {'day_of_week': 4, 'start_time': '07:00', 'end_time': '09:00', 'label': 'Thu morning'},
    {'day_of_week': 4, 'start_time': '18:00', 'end_time': '20:00', 'label': 'Thu evening'},
    {'day_of_week': 5, 'start_time': '07:00', 'end_time': '09:00', 'label': 'Fri morning'},
    {'day_of_week': 5, 'start_time': '17:00', 'end_time': '19:00', 'label': 'Fri evening'},
    {'day_of_week': 6, 'start_time': '09:00', 'end_time': '12:00', 'label': 'Sat morning'},
    {'day_of_week': 6, 'start_time': '14:00', 'end_time': '17:00', 'label': 'Sat afternoon'},
    {'day_of_week': 0, 'start_time': '09:00', 'end_time': '12:00', 'label': 'Sun morning'},
    {'day_of_week': 0, 'start_time': '14:00', 'end_time': '17:00', 'label': 'Sun afternoon'},
]


def slot_impact(my_slots, opponent_slots, from_date, candidates=None, limit=3):
    """Which extra weekly slot would open up the most currently blocked opponents.

    ``opponent_slots`` maps opponent id to that opponent's slots. Candidates the
    player already starts a slot at are skipped. Returns up to ``limit``
    ``(candidate, unlocked_opponent_ids)`` pairs, most unlocked first.
    """
    my_slots = list(my_slots or [])
    blocked = [
        opponent_id for opponent_id, slots in opponent_slots.items()
        if not find_overlaps(my_slots, slots, from_date)
    ]
    if not blocked:
        return []

    existing = {
        (_slot_field(slot, 'day_of_week'), _slot_field(slot, 'start_time'))
        for slot in my_slots
    }
    results = []
    for candidate in COMMON_SLOTS if candidates is None else candidates:
        if (candidate['day_of_week'], candidate['start_time']) in existing:
            continue
        trial = my_slots + [candidate]
        unlocked = [
            opponent_id for opponent_id in blocked
            if find_overlaps(trial, opponent_slots[opponent_id], from_date)
        ]
        if unlocked:
            results.append((candidate, unlocked))
    results.sort(key=lambda item: len(item[1]), reverse=True)
    return results[:limit]


# ── Writing verdicts back to matches ─────────────────────────────────

def book_match_time(match, proposed_for, label, tier=None, now=None):
    """Schedule ``match`` at ``proposed_for`` with a single proposal both players accept."""
    now = now or utcnow_naive()
    proposal = TimeProposal(proposed_for=proposed_for, label=label)
    proposal.accepted_by = [match.home_player_id, match.away_player_id]
    match.proposals = [proposal]
    match.status = 'scheduled'
    match.scheduled_at = proposed_for
    if tier is not None:
        match.scheduling_tier = tier
    match.updated_at = now
    return proposal


def auto_schedule_matches(matches, availability_by_player, from_date,
                          one_match_per_day=False, now=None):
    """Run every match through the tiers and write the verdict back onto it.

    Tier 1 matches are booked on their earliest shared window. Everything
    else stays pending, tagged with its tier (and best near miss for tier 2).
    With ``one_match_per_day`` a player is booked at most once per date.
    Returns the SchedulingResult summary.
    """
    now = now or utcnow_naive()
    booked_dates = {}
    scheduled_count = 0
    failed_match_ids = []
    near_miss_match_ids = []

    for match in matches:
        slots_a = availability_by_player.get(match.home_player_id, [])
        slots_b = availability_by_player.get(match.away_player_id, [])

        overlaps = find_overlaps(slots_a, slots_b, from_date)
        if one_match_per_day:
            taken = (
                booked_dates.get(match.home_player_id, set())
                | booked_dates.get(match.away_player_id, set())
            )
            overlaps = [window for window in overlaps if window.date not in taken]

        if overlaps:
            chosen = overlaps[0]
            for player_id in match.player_ids:
                booked_dates.setdefault(player_id, set()).add(chosen.date)
            book_match_time(
                match,
                combine_date_time(chosen.date, chosen.start_time),
                format_proposal_label(chosen.date, chosen.start_time),
                tier=1,
                now=now,
            )
            match.near_miss = None
            scheduled_count += 1
            continue

        failed_match_ids.append(match.id)
        near_misses = find_near_misses(slots_a, slots_b, from_date)
        if near_misses:
            near_miss_match_ids.append(match.id)
            match.scheduling_tier = 2
            match.near_miss = near_misses[0]
        else:
            match.scheduling_tier = 3
            match.near_miss = None
        match.updated_at = now

    return {
        'scheduled_count': scheduled_count,
        'failed_count': len(failed_match_ids),
        'failed_match_ids': failed_match_ids,
        'near_miss_count': len(near_miss_match_ids),
        'near_miss_match_ids': near_miss_match_ids,
    }
