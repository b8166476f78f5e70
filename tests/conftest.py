import pytest

from silent_auction import create_app
from silent_auction.config import TestConfig
from silent_auction.extensions import socketio


class FakeCursor:
    """Stands in for a dictionary cursor: replays scripted rows and records every statement."""

    def __init__(self, fetchone=(), fetchall=(), rowcount=1):
        self.executed = []
        self._one = list(fetchone)
        self._all = list(fetchall)
        self.rowcount = rowcount
        self.lastrowid = 0

    def execute(self, sql, params=None):
        self.executed.append((' '.join(sql.split()), params))
        self.lastrowid += 1

    def fetchone(self):
        return self._one.pop(0) if self._one else None

    def fetchall(self):
        return self._all.pop(0) if self._all else []

    def statements(self, prefix):
        return [sql for sql, _ in self.executed if sql.startswith(prefix)]


@pytest.fixture(scope='session')
def app():
    return create_app(TestConfig)


@pytest.fixture
def app_context(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def socketio_client(app, client):
    sio = socketio.test_client(app, flask_test_client=client)
    yield sio
    if sio.is_connected():
        sio.disconnect()


@pytest.fixture
def emitted(monkeypatch):
    """Captures socketio.emit calls instead of sending them."""
    calls = []
    monkeypatch.setattr(socketio, 'emit', lambda event, data, **kwargs: calls.append((event, data, kwargs)))
    return calls


@pytest.fixture
def login(client):
    """Puts a user in the test client's session without touching the database."""
    def login_as(user_id=1, role='STUDENT', school_id=1, name='Test U.'):
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
            sess['role'] = role
            sess['school_id'] = school_id
            sess['user_name'] = name
            sess['is_admin'] = role in ('SITE_ADMIN', 'SCHOOL_ADMIN')
    return login_as


@pytest.fixture
def make_cursor():
    return FakeCursor
