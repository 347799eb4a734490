"""HTTP API: blueprint registration."""
from flask import Blueprint

api_bp = Blueprint('api', __name__)

# Route modules register their routes by importing api_bp.
# These imports MUST come after api_bp is defined.
from rally.routes import auth, players, pool, tournaments, matches  # noqa: E402, F401
