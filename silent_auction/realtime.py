import logging
import threading
from collections import defaultdict, deque
from datetime import datetime
from decimal import Decimal

from flask import request, session
from flask_socketio import emit, join_room, leave_room

from silent_auction.extensions import socketio

logger = logging.getLogger(__name__)

HISTORY_SIZE = 50
REPLAY_SIZE = 10
RESOURCE_TYPES = ('auction', 'artwork')


def room_for(resource_type, resource_id):
    return f'{resource_type}:{resource_id}'


def to_jsonable(value):
    if isinstance(value, Decimal):
        return f'{value:.2f}'
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class EventHub:
    """In-memory bookkeeping for socket clients: recent events per room and subscription counts."""

    def __init__(self, history_size=HISTORY_SIZE):
        self._lock = threading.Lock()
        self._history = defaultdict(lambda: deque(maxlen=history_size))
        self._clients = {}
        self._subscriptions = defaultdict(set)

    def client_connected(self, sid, user_id=None):
        with self._lock:
            self._clients[sid] = user_id

    def client_disconnected(self, sid):
        with self._lock:
            self._clients.pop(sid, None)
            for room in list(self._subscriptions):
                self._drop(room, sid)

    def subscribe(self, sid, room):
        with self._lock:
            self._subscriptions[room].add(sid)

    def unsubscribe(self, sid, room):
        with self._lock:
            self._drop(room, sid)

    def _drop(self, room, sid):
        members = self._subscriptions.get(room)
        if members is None:
            return
        members.discard(sid)
        if not members:
            del self._subscriptions[room]

    def record(self, room, event_type, payload):
        event = {'type': event_type, 'data': to_jsonable(payload), 'timestamp': datetime.now().isoformat()}
        with self._lock:
            self._history[room].append(event)
        return event

    def recent(self, room, count=REPLAY_SIZE):
        with self._lock:
            return list(self._history[room])[-count:] if room in self._history else []

    def get_stats(self):
        with self._lock:
            return {
                'connected_clients': len(self._clients),
                'authenticated_users': len({u for u in self._clients.values() if u is not None}),
                'subscriptions': sum(len(members) for members in self._subscriptions.values()),
                'resources_tracked': len(self._history),
            }


hub = EventHub()


def broadcast(resource_type, resource_id, event_type, payload):
    room = room_for(resource_type, resource_id)
    event = hub.record(room, event_type, payload)
    socketio.emit(event_type, event['data'], room=room)
    return event


def broadcast_bid_update(result):
    payload = {
        'artwork_id': result['artwork_id'],
        'auction_id': result['auction_id'],
        'bid_id': result['bid_id'],
        'amount': result['amount'],
        'bidder_name': result.get('bidder_name'),
        'bid_count': result['bid_count'],
        'minimum_bid': result['minimum_bid'],
        'ends_at': result['ends_at'],
    }
    broadcast('artwork', result['artwork_id'], 'bid_update', payload)
    broadcast('auction', result['auction_id'], 'bid_update', payload)
    if result.get('extended'):
        broadcast('auction', result['auction_id'], 'auction_extended',
                  {'auction_id': result['auction_id'], 'ends_at': result['ends_at']})


def broadcast_auction_status(auction_id, status, **extra):
    payload = dict(extra, auction_id=auction_id, status=status)
    return broadcast('auction', auction_id, 'auction_status_change', payload)


def broadcast_ending_soon(auction_id, ends_at):
    return broadcast('auction', auction_id, 'auction_ending_soon', {'auction_id': auction_id, 'ends_at': ends_at})


@socketio.on('connect')
def handle_connect():
    user_id = session.get('user_id')
    hub.client_connected(request.sid, user_id)
    if user_id:
        join_room(str(user_id))
    emit('connection', {'authenticated': bool(user_id), 'timestamp': datetime.now().isoformat()})


@socketio.on('disconnect')
def handle_disconnect(*args):
    hub.client_disconnected(request.sid)


@socketio.on('join')
def handle_join(data):
    if 'user_id' in session and str(session['user_id']) == str((data or {}).get('room')):
        join_room(str(session['user_id']))


@socketio.on('authenticate')
def handle_authenticate(data=None):
    user_id = session.get('user_id')
    if not user_id:
        emit('error', {'message': 'Not authenticated'})
        return
    hub.client_connected(request.sid, user_id)
    join_room(str(user_id))
    emit('authenticated', {'user_id': user_id, 'role': session.get('role')})


def _resource_room(data):
    data = data or {}
    resource_type = data.get('resource_type')
    try:
        resource_id = int(data.get('resource_id'))
    except (TypeError, ValueError):
        return None
    if resource_type not in RESOURCE_TYPES:
        return None
    return room_for(resource_type, resource_id)


@socketio.on('subscribe')
def handle_subscribe(data):
    if 'user_id' not in session:
        emit('error', {'message': 'Please login to subscribe to live updates'})
        return
    room = _resource_room(data)
    if not room:
        emit('error', {'message': 'resource_type must be auction or artwork with a numeric resource_id'})
        return
    join_room(room)
    hub.subscribe(request.sid, room)
    emit('subscribed', {'room': room, 'recent_events': hub.recent(room, REPLAY_SIZE)})


@socketio.on('unsubscribe')
def handle_unsubscribe(data):
    room = _resource_room(data)
    if not room:
        return
    leave_room(room)
    hub.unsubscribe(request.sid, room)
    emit('unsubscribed', {'room': room})


@socketio.on('ping')
def handle_ping(data=None):
    emit('pong', {'timestamp': datetime.now().isoformat()})
