#!/usr/bin/env python3
"""Entry point for the Rally tournament server."""
import logging
import os
from rally.app import create_app, get_engine, socketio

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO'),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger('rally')

config_name = os.environ.get('FLASK_ENV', 'development')
app = create_app(config_name)

if __name__ == '__main__':
    if app.config.get('ENGINE_ENABLED', True):
        get_engine(app).start()
    port = int(os.environ.get('PORT', 5001))
    logger.info('Rally starting on http://localhost:%s', port)
    socketio.run(
        app, host='0.0.0.0', port=port,
        debug=(config_name == 'development'),
        use_reloader=False,
        allow_unsafe_werkzeug=True,
    )
