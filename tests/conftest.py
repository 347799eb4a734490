import pytest
from rally.app import create_app, db
from rally.auth_utils import generate_token
from rally.models import AvailabilitySlot, Player


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_player(app):
    """Create a player, optionally with weekly slots as (dow, start, end) tuples."""
    counter = {'n': 0}

    def _make(name=None, county='Alameda', skill_band='3.5', slots=(), email=None):
        counter['n'] += 1
        n = counter['n']
        player = Player(
            email=email or f'player{n}@test.com',
            name=name or f'Player {n}',
            city='Oakland',
            county=county,
            skill_band=skill_band,
        )
        player.availability = [
            AvailabilitySlot(day_of_week=dow, start_time=start, end_time=end)
            for dow, start, end in slots
        ]
        db.session.add(player)
        db.session.commit()
        return player

    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(player):
        token = generate_token(player.id)
        return {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}
    return _headers
