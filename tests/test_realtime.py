from datetime import datetime
from decimal import Decimal

from silent_auction import realtime


def received(sio, name):
    return [event['args'][0] for event in sio.get_received() if event['name'] == name]


def test_to_jsonable():
    value = {'amount': Decimal('25'), 'at': datetime(2026, 3, 14, 12, 0), 'items': (Decimal('1.5'),)}
    assert realtime.to_jsonable(value) == {'amount': '25.00', 'at': '2026-03-14T12:00:00', 'items': ['1.50']}


def test_event_hub_keeps_bounded_history():
    hub = realtime.EventHub(history_size=3)
    for i in range(5):
        hub.record('auction:1', 'bid_update', {'amount': Decimal(i)})
    recent = hub.recent('auction:1')
    assert [e['data']['amount'] for e in recent] == ['2.00', '3.00', '4.00']
    assert hub.recent('auction:2') == []


def test_event_hub_stats():
    hub = realtime.EventHub()
    hub.client_connected('a', user_id=1)
    hub.client_connected('b')
    hub.subscribe('a', 'artwork:4')
    hub.subscribe('b', 'artwork:4')
    hub.client_disconnected('b')
    assert hub.get_stats() == {'connected_clients': 1, 'authenticated_users': 1, 'subscriptions': 1,
                               'resources_tracked': 0}


def test_broadcast_bid_update_hits_both_rooms(emitted):
    realtime.broadcast_bid_update({'artwork_id': 4, 'auction_id': 1, 'bid_id': 9, 'amount': Decimal('25.00'),
                                   'bidder_name': 'Ada L.', 'bid_count': 4, 'minimum_bid': Decimal('26.00'),
                                   'ends_at': datetime(2026, 3, 14, 12, 5), 'extended': True})
    rooms = [(event, kwargs['room']) for event, _, kwargs in emitted]
    assert rooms == [('bid_update', 'artwork:4'), ('bid_update', 'auction:1'), ('auction_extended', 'auction:1')]
    assert emitted[0][1]['amount'] == '25.00'


def test_connect_anonymous(socketio_client):
    [payload] = received(socketio_client, 'connection')
    assert payload['authenticated'] is False


def test_subscribe_requires_login(socketio_client):
    socketio_client.get_received()
    socketio_client.emit('subscribe', {'resource_type': 'auction', 'resource_id': 1})
    assert received(socketio_client, 'error')


def test_ping(socketio_client):
    socketio_client.get_received()
    socketio_client.emit('ping')
    assert received(socketio_client, 'pong')


def test_subscribed_client_receives_room_events(app, client, login):
    from silent_auction.extensions import socketio

    login(user_id=3)
    sio = socketio.test_client(app, flask_test_client=client)
    try:
        [payload] = received(sio, 'connection')
        assert payload['authenticated'] is True

        sio.emit('subscribe', {'resource_type': 'auction', 'resource_id': '77'})
        [subscribed] = received(sio, 'subscribed')
        assert subscribed['room'] == 'auction:77'

        realtime.broadcast_auction_status(77, 'ENDED')
        [change] = received(sio, 'auction_status_change')
        assert change == {'auction_id': 77, 'status': 'ENDED'}

        sio.emit('subscribe', {'resource_type': 'user', 'resource_id': 1})
        assert received(sio, 'error')
    finally:
        sio.disconnect()


def test_unsubscribe_prunes_empty_rooms():
    hub = realtime.EventHub()
    hub.unsubscribe('a', 'auction:9')
    assert 'auction:9' not in hub._subscriptions

    hub.subscribe('a', 'auction:1')
    hub.subscribe('b', 'auction:1')
    hub.subscribe('a', 'artwork:4')
    hub.unsubscribe('a', 'auction:1')
    assert hub._subscriptions == {'auction:1': {'b'}, 'artwork:4': {'a'}}
    hub.client_disconnected('b')
    assert hub._subscriptions == {'artwork:4': {'a'}}
