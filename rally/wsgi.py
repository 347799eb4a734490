"""WSGI entrypoint used by Gunicorn."""
import logging
import os

from rally.app import create_app, get_engine

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO'),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

config_name = os.environ.get('FLASK_ENV', 'production')
app = create_app(config_name)

# Each worker runs its own engine loop. Lifecycle steps claim their rows, so
# extra loops only repeat work; ENGINE_ENABLED=0 turns them off.
if app.config.get('ENGINE_ENABLED', True):
    get_engine(app).start()
