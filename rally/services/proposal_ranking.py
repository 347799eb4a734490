"""Pick and label up to three tier-1 windows for an ad-hoc challenge."""
import json
import logging
from datetime import datetime
import requests
from rally.services.scheduler import (
    combine_date_time, format_proposal_label, summarize_availability,
)

logger = logging.getLogger(__name__)

MAX_PROPOSALS = 3
MAX_RANKED_CANDIDATES = 6


class ProposalRanker:
    """Strategy interface: ``pick(candidates, context) -> [(datetime, label)]``.

    ``candidates`` are OverlapWindow tuples in chronological order; ``context``
    is a dict with ``player_a_name``, ``player_b_name``, ``city``, ``slots_a``,
    ``slots_b`` and ``from_date``.
    """

    def pick(self, candidates, context):
        raise NotImplementedError


class ChronologicalRanker(ProposalRanker):
    """The earliest windows first. Always available, never fails."""

    def pick(self, candidates, context=None):
        return [
            (
                combine_date_time(window.date, window.start_time),
                format_proposal_label(window.date, window.start_time),
            )
            for window in candidates[:MAX_PROPOSALS]
        ]


def _build_prompt(candidates, context):
    from_date = context.get('from_date') or datetime.now()
    window_lines = ', '.join(
        combine_date_time(window.date, window.start_time).isoformat(timespec='minutes')
        for window in candidates[:MAX_RANKED_CANDIDATES]
    )
    name_a = context.get('player_a_name') or 'Player A'
    name_b = context.get('player_b_name') or 'Player B'
    expected = min(MAX_PROPOSALS, len(candidates))
    return (
        f"You are scheduling a tennis match between {name_a} and {name_b} "
        f"in {context.get('city') or 'their area'}.\n"
        f"Today is {from_date.date().isoformat()}. A match takes about 2 hours.\n\n"
        f"{name_a} is available: {summarize_availability(context.get('slots_a'))}\n"
        f"{name_b} is available: {summarize_availability(context.get('slots_b'))}\n\n"
        f"Available overlapping windows: {window_lines}\n\n"
        f"Pick the {expected} best options (prefer weekends and morning slots). "
        f'Return ONLY JSON of the form {{"proposals": [{{"datetime": "YYYY-MM-DDTHH:MM:00", '
        f'"label": "Sat 15 Feb · 10:00am"}}]}} with exactly {expected} entries.'
    )


def parse_ranked_proposals(payload, candidates):
    """Extract (datetime, label) picks out of a chat-completions payload.

    Exactly min(3, len(candidates)) distinct picks are expected, each starting
    one of the windows offered to the model. Raises ValueError otherwise.
    """
    expected = min(MAX_PROPOSALS, len(candidates))
    offered = {
        combine_date_time(window.date, window.start_time)
        for window in candidates[:MAX_RANKED_CANDIDATES]
    }
    try:
        content = payload['choices'][0]['message']['content']
    except (KeyError, IndexError, TypeError) as exc:
        raise ValueError('Missing completion content') from exc

    parsed = json.loads(content or '')
    if isinstance(parsed, dict):
        parsed = next(iter(parsed.values()), None)
    if not isinstance(parsed, list) or len(parsed) != expected:
        raise ValueError('Expected a list of proposals')

    picks = []
    for item in parsed:
        if not isinstance(item, dict):
            raise ValueError('Proposal must be an object')
        label = str(item.get('label') or '').strip()
        if not label:
            raise ValueError('Proposal label missing')
        when = datetime.fromisoformat(str(item.get('datetime') or '')).replace(tzinfo=None)
        if when not in offered:
            raise ValueError(f'{when.isoformat()} is not one of the offered windows')
        if any(when == picked for picked, _ in picks):
            raise ValueError(f'{when.isoformat()} picked twice')
        picks.append((when, label[:80]))
    return picks


class OpenAIRanker(ProposalRanker):
    """Asks an OpenAI-compatible chat endpoint to choose and label windows.

    Any failure (timeout, transport error, non-2xx, bad output) returns the
    fallback's picks instead.
    """

    def __init__(self, api_key, model='gpt-4.1-mini', timeout=8.0,
                 api_url='https://api.openai.com/v1/chat/completions', fallback=None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.api_url = api_url
        self.fallback = fallback or ChronologicalRanker()

    def pick(self, candidates, context):
        expected = min(MAX_PROPOSALS, len(candidates))
        if expected == 0:
            return []

        body = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': 'You are a scheduling assistant. Respond only with valid JSON.'},
                {'role': 'user', 'content': _build_prompt(candidates, context)},
            ],
            'max_tokens': 400,
            'temperature': 0.3,
            'response_format': {'type': 'json_object'},
        }
        try:
            response = requests.post(
                self.api_url,
                json=body,
                headers={'Authorization': f'Bearer {self.api_key}'},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning('Proposal ranking request failed: %s', exc)
            return self.fallback.pick(candidates, context)

        if not response.ok:
            logger.warning('Proposal ranking returned HTTP %s', response.status_code)
            return self.fallback.pick(candidates, context)

        try:
            return parse_ranked_proposals(response.json(), candidates)
        except ValueError as exc:
            logger.warning('Unusable proposal ranking output: %s', exc)
            return self.fallback.pick(candidates, context)


def ranker_from_config(app_config):
    api_key = str(app_config.get('OPENAI_API_KEY') or '').strip()
    if not api_key:
        return ChronologicalRanker()
    return OpenAIRanker(
        api_key,
        model=app_config.get('OPENAI_MODEL', 'gpt-4.1-mini'),
        timeout=app_config.get('SCHEDULER_TIMEOUT_SECONDS', 8.0),
        api_url=app_config.get('OPENAI_API_URL', 'https://api.openai.com/v1/chat/completions'),
    )


def generate_match_proposals(overlaps, context, ranker=None):
    """Up to three (datetime, label) picks out of ``overlaps``; never raises."""
    if not overlaps:
        return []
    fallback = ChronologicalRanker()
    ranker = ranker or fallback
    try:
        picks = ranker.pick(overlaps, context)
    except Exception:
        logger.exception('Proposal ranker %s failed', type(ranker).__name__)
        return fallback.pick(overlaps, context)
    return picks or fallback.pick(overlaps, context)
