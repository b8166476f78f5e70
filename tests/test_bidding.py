from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from silent_auction import bidding, lifecycle
from silent_auction.errors import InvalidStateTransition, PermissionDenied, ValidationError

NOW = datetime(2026, 3, 14, 12, 0, 0)
INCREMENT = Decimal('1.00')
MAX_BID = Decimal('9999999.99')


def make_auction(**overrides):
    auction = {'id': 1, 'school_id': 1, 'title': 'Spring Show', 'auction_status': lifecycle.LIVE,
               'visibility': 'PUBLIC', 'starts_at': NOW - timedelta(hours=1), 'ends_at': NOW + timedelta(hours=2),
               'auto_extend_minutes': 5, 'created_by_user_id': 20}
    auction.update(overrides)
    return auction


def make_artwork(**overrides):
    artwork = {'id': 4, 'auction_id': 1, 'title': 'Blue Heron', 'artwork_status': lifecycle.APPROVED,
               'created_by_user_id': 30, 'starting_bid_amount': Decimal('10.00'), 'reserve_bid_amount': None,
               'current_bid': Decimal('20.00'), 'current_bidder_id': 7, 'bid_count': 3}
    artwork.update(overrides)
    return artwork


def make_bidder(**overrides):
    bidder = {'id': 3, 'role': 'STUDENT', 'school_id': 1, 'account_status': 'ACTIVE', 'first_name': 'Ada',
              'last_name': 'Lovelace'}
    bidder.update(overrides)
    return bidder


def check(amount, auction=None, artwork=None, bidder=None, now=NOW):
    return bidding.check_bid(auction or make_auction(), artwork or make_artwork(), bidder or make_bidder(),
                             Decimal(amount), now, INCREMENT, MAX_BID)


def test_minimum_bid():
    assert bidding.minimum_bid(make_artwork(current_bid=None), INCREMENT) == Decimal('10.00')
    assert bidding.minimum_bid(make_artwork(), INCREMENT) == Decimal('21.00')


def test_accepts_bid_at_minimum():
    assert check('21.00') == Decimal('21.00')


def test_rejects_bid_below_minimum():
    with pytest.raises(ValidationError) as exc:
        check('20.50')
    assert exc.value.code == 'BID_TOO_LOW'
    assert exc.value.details == {'minimum_bid': '21.00'}


@pytest.mark.parametrize('auction', [
    make_auction(auction_status=lifecycle.APPROVED),
    make_auction(ends_at=NOW),
    make_auction(starts_at=NOW + timedelta(minutes=1)),
])
def test_rejects_when_auction_not_open(auction):
    with pytest.raises(InvalidStateTransition) as exc:
        check('50', auction=auction)
    assert exc.value.code == 'AUCTION_NOT_ACTIVE'


def test_rejects_withdrawn_artwork():
    with pytest.raises(InvalidStateTransition) as exc:
        check('50', artwork=make_artwork(artwork_status=lifecycle.WITHDRAWN))
    assert exc.value.code == 'ARTWORK_NOT_AVAILABLE'


@pytest.mark.parametrize('bidder,code', [
    (make_bidder(account_status='SUSPENDED'), 'ACCOUNT_NOT_ACTIVE'),
    (make_bidder(role='TEACHER'), 'ROLE_CANNOT_BID'),
    (make_bidder(id=30), 'SELF_BID'),
])
def test_rejects_ineligible_bidder(bidder, code):
    with pytest.raises(PermissionDenied) as exc:
        check('50', bidder=bidder)
    assert exc.value.code == code


def test_school_only_auction_rejects_outsiders():
    with pytest.raises(PermissionDenied) as exc:
        check('50', auction=make_auction(visibility='SCHOOL_ONLY'), bidder=make_bidder(school_id=2))
    assert exc.value.code == 'AUCTION_NOT_VISIBLE'


def test_rejects_raising_own_winning_bid():
    with pytest.raises(ValidationError) as exc:
        check('50', bidder=make_bidder(id=7))
    assert exc.value.code == 'ALREADY_HIGHEST'


def test_extension_window():
    ends_at = NOW + timedelta(minutes=3)
    assert bidding.extension_for(ends_at, NOW, 5) == NOW + timedelta(minutes=5)
    assert bidding.extension_for(NOW + timedelta(minutes=5), NOW, 5) == NOW + timedelta(minutes=5)
    assert bidding.extension_for(NOW + timedelta(minutes=5, seconds=1), NOW, 5) is None
    assert bidding.extension_for(ends_at, NOW, 0) is None


def place(make_cursor, auction):
    cursor = make_cursor(fetchone=[{'auction_id': 1}, auction, make_artwork(), make_bidder()])
    result = bidding.place_bid(cursor, 4, 3, Decimal('25.00'), ip_address='10.0.0.1', now=NOW)
    return cursor, result


def test_place_bid_updates_cache_and_notifies_outbid(app_context, make_cursor, emitted):
    cursor, result = place(make_cursor, make_auction())

    assert result['previous_bidder_id'] == 7
    assert result['bid_count'] == 4
    assert result['minimum_bid'] == Decimal('26.00')
    assert result['bidder_name'] == 'Ada L.'
    assert result['extended'] is False
    assert cursor.statements('UPDATE bids SET bid_status')
    assert cursor.statements('INSERT INTO bids')
    assert cursor.statements('UPDATE artwork SET current_bid')
    assert not cursor.statements('UPDATE auctions')
    # the outbid bidder gets an in-app notification pushed to their room
    assert emitted[0][0] == 'new_notification'
    assert emitted[0][2]['room'] == '7'


def test_place_bid_in_final_minutes_extends_auction(app_context, make_cursor, emitted):
    cursor, result = place(make_cursor, make_auction(ends_at=NOW + timedelta(minutes=2)))

    assert result['extended'] is True
    assert result['ends_at'] == NOW + timedelta(minutes=5)
    assert cursor.statements('UPDATE auctions SET ends_at')


def withdraw(make_cursor, status, auction=None, refresh=()):
    rows = [{'id': 50, 'artwork_id': 4, 'bidder_user_id': 3}, {'auction_id': 1}, auction or make_auction(),
            make_artwork(), {'id': 50, 'artwork_id': 4, 'bid_amount': Decimal('25.00'), 'bid_status': status}]
    cursor = make_cursor(fetchone=rows + list(refresh))
    return cursor, bidding.withdraw_bid(cursor, 50, 3, now=NOW)


def test_only_the_bidder_can_withdraw(make_cursor):
    cursor = make_cursor(fetchone=[{'id': 50, 'artwork_id': 4, 'bidder_user_id': 7}])
    with pytest.raises(PermissionDenied) as exc:
        bidding.withdraw_bid(cursor, 50, 3, now=NOW)
    assert exc.value.code == 'NOT_BID_OWNER'


def test_leading_bid_locked_near_the_end(app_context, make_cursor):
    with pytest.raises(ValidationError) as exc:
        withdraw(make_cursor, lifecycle.BID_ACTIVE, make_auction(ends_at=NOW + timedelta(minutes=4)))
    assert exc.value.code == 'WITHDRAWAL_WINDOW_CLOSED'


def test_outbid_bid_can_be_withdrawn_near_the_end(app_context, make_cursor):
    cursor, result = withdraw(make_cursor, lifecycle.BID_OUTBID, make_auction(ends_at=NOW + timedelta(minutes=4)),
                              refresh=[{'id': 60, 'bidder_user_id': 7, 'bid_amount': Decimal('30.00')},
                                       {'count': 3}])
    assert result['current_bid'] == Decimal('30.00')
    assert cursor.executed[5][1] == (lifecycle.BID_CANCELLED, NOW, 50)


def test_withdrawing_leader_restores_next_highest(app_context, make_cursor):
    next_best = {'id': 44, 'bidder_user_id': 8, 'bid_amount': Decimal('22.00')}
    cursor, result = withdraw(make_cursor, lifecycle.BID_ACTIVE, refresh=[None, next_best, {'count': 2}])

    assert result == {'bid_id': 50, 'artwork_id': 4, 'auction_id': 1, 'current_bid': Decimal('22.00'),
                      'current_bidder_id': 8}
    assert ('UPDATE bids SET bid_status = %s WHERE id = %s', (lifecycle.BID_ACTIVE, 44)) in cursor.executed
    [(_, params)] = [(sql, p) for sql, p in cursor.executed if sql.startswith('UPDATE artwork SET current_bid')]
    assert params == (Decimal('22.00'), 8, 2, NOW, 4)


def test_withdrawing_only_bid_clears_cache(app_context, make_cursor):
    cursor, result = withdraw(make_cursor, lifecycle.BID_ACTIVE, refresh=[None, None, {'count': 0}])
    assert result['current_bid'] is None
    [(_, params)] = [(sql, p) for sql, p in cursor.executed if sql.startswith('UPDATE artwork SET current_bid')]
    assert params == (None, None, 0, NOW, 4)


@pytest.mark.parametrize('status', [lifecycle.BID_CANCELLED, lifecycle.BID_ACCEPTED])
def test_settled_or_cancelled_bid_cannot_be_withdrawn(app_context, make_cursor, status):
    with pytest.raises(InvalidStateTransition):
        withdraw(make_cursor, status)


def test_withdraw_requires_live_auction(app_context, make_cursor):
    with pytest.raises(InvalidStateTransition) as exc:
        withdraw(make_cursor, lifecycle.BID_OUTBID, make_auction(auction_status=lifecycle.ENDED))
    assert exc.value.code == 'AUCTION_NOT_ACTIVE'
