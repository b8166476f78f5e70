import logging
from datetime import datetime

from flask import Flask

from silent_auction.config import Config
from silent_auction.extensions import limiter, socketio

__version__ = '1.0.0'


def get_time_left(end_time_str):
    """Calculate time left for an auction with more precision."""
    try:
        if isinstance(end_time_str, str):
            # Handles ISO format strings from JSON/DB
            end_time = datetime.fromisoformat(end_time_str)
        else:
            end_time = end_time_str

        now = datetime.now()
        if end_time <= now:
            return "Ended"

        time_diff = end_time - now
        hours, remainder = divmod(time_diff.seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        if time_diff.days > 0:
            return f"{time_diff.days}d {hours}h left"
        if hours > 0:
            return f"{hours}h {minutes}m left"
        if minutes > 0:
            return f"{minutes}m {seconds}s left"
        return f"{seconds}s left"
    except (ValueError, TypeError):
        # Catches parsing errors or a missing end time
        return "Unknown"


def create_app(config_object=Config):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = Flask(__name__, template_folder='../templates', static_folder='../static')
    app.config.from_object(config_object)
    app.secret_key = app.config['SECRET_KEY']

    # Socket.IO handlers must be registered before init_app binds them to the server
    from silent_auction import realtime  # noqa: F401
    socketio.init_app(app, async_mode=app.config['SOCKETIO_ASYNC_MODE'])
    limiter.init_app(app)

    from silent_auction import db
    db.init_pool(app)

    from silent_auction.errors import register_error_handlers
    register_error_handlers(app)

    from silent_auction.views import register_blueprints
    register_blueprints(app)

    app.jinja_env.globals.update(get_time_left=get_time_left)

    if app.config['AUCTION_SWEEP_ENABLED']:
        from silent_auction.sweeper import start_sweeper
        start_sweeper(app)
    return app
