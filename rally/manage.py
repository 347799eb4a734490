"""CLI utility for operating tournaments outside the web process."""

import argparse
import json

from rally.app import create_app, db, get_engine
from rally.models import SKILL_BANDS, Tournament
from rally.services.tournament_engine import open_tournament


def _build_parser():
    parser = argparse.ArgumentParser(
        description='Open tournaments and drive the tournament engine by hand.',
    )
    parser.add_argument(
        '--env',
        default='development',
        choices=['development', 'testing', 'production'],
        help='App config environment to use (default: development).',
    )
    commands = parser.add_subparsers(dest='command', required=True)

    open_cmd = commands.add_parser('open', help='Open a registration tournament.')
    open_cmd.add_argument('--county', required=True)
    open_cmd.add_argument('--band', required=True, choices=SKILL_BANDS)
    open_cmd.add_argument('--month', help='YYYY-MM (default: current month).')
    open_cmd.add_argument('--name')

    commands.add_parser('tick', help='Run one engine pass over every tournament.')

    activate_cmd = commands.add_parser('activate', help='Activate a tournament if it is ready.')
    activate_cmd.add_argument('tournament_id')

    list_cmd = commands.add_parser('list', help='List tournaments.')
    list_cmd.add_argument('--status')
    return parser


def main(argv=None):
    args = _build_parser().parse_args(argv)
    app = create_app(args.env)

    with app.app_context():
        if args.command == 'open':
            tournament = open_tournament(
                args.county, args.band, month=args.month, name=args.name,
                min_players=app.config.get('TOURNAMENT_MIN_PLAYERS', 4),
                max_players=app.config.get('TOURNAMENT_MAX_PLAYERS', 8),
            )
            db.session.commit()
            result = tournament.to_dict(include_rounds=False)
        elif args.command == 'tick':
            get_engine(app).tick()
            result = {'ok': True}
        elif args.command == 'activate':
            activated = get_engine(app).activate_tournament_if_ready(args.tournament_id)
            result = {'tournament_id': args.tournament_id, 'activated': activated}
        else:
            query = Tournament.query
            if args.status:
                query = query.filter(Tournament.status == args.status)
            result = {
                'tournaments': [
                    t.to_dict(include_rounds=False)
                    for t in query.order_by(Tournament.created_at.asc()).all()
                ],
            }
        print(json.dumps(result, indent=2))
        return 0


if __name__ == '__main__':
    raise SystemExit(main())
