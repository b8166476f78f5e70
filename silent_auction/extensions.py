from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO

socketio = SocketIO()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["100 per minute"],
)

LOGIN_LIMIT = "5 per 15 minutes"
AUTH_LIMIT = "20 per minute"
BID_LIMIT = "30 per minute"
PAYMENT_LIMIT = "10 per minute"
