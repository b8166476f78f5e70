import eventlet
eventlet.monkey_patch()

import logging
import os
import sys

from whitenoise import WhiteNoise

from silent_auction import create_app
from silent_auction.config import Config
from silent_auction.db import create_sample_data, init_db
from silent_auction.extensions import socketio

logger = logging.getLogger(__name__)

app = create_app(Config)

# Serve static files
app.wsgi_app = WhiteNoise(app.wsgi_app, root=os.path.join(app.root_path, '..', 'static'))
if os.environ.get('RENDER') == 'true':
    # In production, also serve uploaded files from the persistent disk
    app.wsgi_app.add_files(app.config['UPLOAD_FOLDER'], prefix='uploads/')


# The block below is for local development only.
if __name__ == '__main__':
    # `python app.py init` creates the schema and demo data; anything else runs the server.
    if len(sys.argv) > 1 and sys.argv[1] == 'init':
        logger.info("🚀 Initializing database and creating sample data...")
        with app.app_context():
            init_db()
            create_sample_data()
        logger.info("✅ Database initialized successfully.")
    else:
        logger.info("🚀 Starting Flask development server...")
        # Note: run `python app.py init` once to set up the database.
        socketio.run(app, host='127.0.0.1', port=5000, debug=True)
