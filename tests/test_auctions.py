import base64
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from silent_auction import auctions, lifecycle
from silent_auction.errors import InvalidStateTransition, PermissionDenied, ValidationError

NOW = datetime(2026, 3, 14, 12, 0, 0)


def test_platform_fee_uses_percentage_above_minimum():
    assert auctions.calculate_platform_fee(Decimal('2000.00'), Decimal('3.5'), Decimal('50.00')) == Decimal('70.00')


def test_platform_fee_minimum_applies():
    assert auctions.calculate_platform_fee(Decimal('100.00'), Decimal('3.5'), Decimal('50.00')) == Decimal('50.00')


def test_no_fee_when_nothing_sold():
    assert auctions.calculate_platform_fee(Decimal('0'), Decimal('3.5'), Decimal('50.00')) == Decimal('0.00')


def test_reserve_met():
    assert auctions.reserve_met({'reserve_bid_amount': None}, Decimal('1.00'))
    assert auctions.reserve_met({'reserve_bid_amount': Decimal('50.00')}, Decimal('50.00'))
    assert not auctions.reserve_met({'reserve_bid_amount': Decimal('50.00')}, Decimal('49.99'))


def test_qr_code_is_png():
    data = base64.b64decode(auctions.generate_qr_code('http://localhost/auction/1'))
    assert data.startswith(b'\x89PNG')


def valid_fields(**overrides):
    data = {'title': 'Spring Show', 'description': 'Student work from the spring term.',
            'starts_at': '2026-03-15T09:00', 'ends_at': '2026-03-20T17:00'}
    data.update(overrides)
    return data


def test_validate_auction_fields():
    cleaned = auctions.validate_auction_fields(valid_fields(platform_fee_percentage='4', visibility='SCHOOL_ONLY'),
                                               now=NOW)
    assert cleaned['starts_at'] == datetime(2026, 3, 15, 9, 0)
    assert cleaned['platform_fee_percentage'] == Decimal('4.00')
    assert cleaned['visibility'] == 'SCHOOL_ONLY'


@pytest.mark.parametrize('overrides', [
    {'title': 'ab'},
    {'description': 'short'},
    {'ends_at': '2026-03-14T11:00'},
    {'starts_at': '2026-03-21T09:00'},
    {'platform_fee_percentage': '150'},
    {'platform_fee_minimum': '-1'},
    {'visibility': 'EVERYONE'},
    {'auto_extend_minutes': '90'},
])
def test_validate_auction_fields_rejects(overrides):
    with pytest.raises(ValidationError):
        auctions.validate_auction_fields(valid_fields(**overrides), now=NOW)


def test_partial_update_only_checks_given_fields():
    assert auctions.validate_auction_fields({'title': 'New title'}, partial=True, now=NOW) == {'title': 'New title'}


def live_auction(**overrides):
    auction = {'id': 1, 'school_id': 1, 'title': 'Spring Show', 'auction_status': lifecycle.LIVE,
               'starts_at': NOW - timedelta(days=1), 'ends_at': NOW - timedelta(minutes=1),
               'created_by_user_id': 20, 'platform_fee_percentage': Decimal('10.00'),
               'platform_fee_minimum': Decimal('5.00')}
    auction.update(overrides)
    return auction


def test_close_auction_settles_against_reserve(app_context, make_cursor, emitted):
    artworks = [{'id': 11, 'title': 'Reserve not met', 'reserve_bid_amount': Decimal('100.00')},
                {'id': 12, 'title': 'Sold', 'reserve_bid_amount': None}]
    cursor = make_cursor(
        fetchone=[live_auction(),
                  {'id': 101, 'bidder_user_id': 4, 'bid_amount': Decimal('80.00')},
                  {'id': 102, 'bidder_user_id': 9, 'bid_amount': Decimal('60.00')}],
        fetchall=[artworks, [{'bidder_user_id': 9}, {'bidder_user_id': 4}]])

    result = auctions.close_auction(cursor, 1, now=NOW)

    assert result['already_closed'] is False
    assert result['winners'] == [{'artwork_id': 12, 'winner_user_id': 9, 'amount': Decimal('60.00')}]
    assert result['total_revenue'] == Decimal('60.00')
    assert result['platform_fee_total'] == Decimal('6.00')
    updates = [params for sql, params in cursor.executed if sql.startswith('UPDATE bids SET bid_status')]
    assert (lifecycle.BID_REJECTED, 101) in updates
    assert (lifecycle.BID_ACCEPTED, 102) in updates
    # winner hears "you won", the losing bidder hears the auction ended
    notified = {kwargs['room']: data['type'] for _, data, kwargs in emitted}
    assert notified == {'9': 'BID_ACCEPTED', '4': 'AUCTION_ENDED'}


def test_close_auction_is_idempotent(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(auction_status=lifecycle.ENDED)])
    result = auctions.close_auction(cursor, 1, now=NOW)
    assert result['already_closed'] is True
    assert len(cursor.executed) == 1


def test_sweep_skips_auction_extended_by_late_bid(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(ends_at=NOW + timedelta(minutes=4))])
    result = auctions.close_auction(cursor, 1, now=NOW)
    assert result.get('skipped') is True


def test_close_by_admin_of_other_school_is_denied(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(school_id=2)])
    with pytest.raises(PermissionDenied) as exc:
        auctions.close_auction(cursor, 1, now=NOW, actor={'id': 5, 'role': 'SCHOOL_ADMIN', 'school_id': 1})
    assert exc.value.code == 'CROSS_SCHOOL_ACCESS_DENIED'


def test_start_requires_approved_artwork(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(auction_status=lifecycle.APPROVED, ends_at=NOW + timedelta(days=1)),
                                   {'total': 2, 'approved': 0}])
    with pytest.raises(ValidationError) as exc:
        auctions.start_auction(cursor, 1, now=NOW)
    assert exc.value.code == 'NO_ARTWORK'


def test_reject_requires_reason(make_cursor):
    with pytest.raises(ValidationError):
        auctions.reject_auction(make_cursor(), 1, {'id': 5, 'role': 'SITE_ADMIN', 'school_id': None}, '  ')


def test_reject_only_pending(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(auction_status=lifecycle.DRAFT)])
    with pytest.raises(InvalidStateTransition):
        auctions.reject_auction(cursor, 1, {'id': 5, 'role': 'SITE_ADMIN', 'school_id': None}, 'Needs photos')


OWNER = {'id': 20, 'role': 'TEACHER', 'school_id': 1}
SCHOOL_ADMIN = {'id': 5, 'role': 'SCHOOL_ADMIN', 'school_id': 1}
SITE_ADMIN = {'id': 1, 'role': 'SITE_ADMIN', 'school_id': None}


def test_teacher_cannot_cancel_live_auction(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(ends_at=NOW + timedelta(hours=2))])
    with pytest.raises(PermissionDenied):
        auctions.cancel_auction(cursor, 1, OWNER, 'Gallery closed')
    assert not cursor.statements('UPDATE')


def test_admin_cancels_live_auction_and_its_bids(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(ends_at=NOW + timedelta(hours=2)),
                                   live_auction(auction_status=lifecycle.CANCELLED)])
    result = auctions.cancel_auction(cursor, 1, SCHOOL_ADMIN, 'Gallery closed')
    assert result['auction_status'] == lifecycle.CANCELLED
    [(_, params)] = [(sql, p) for sql, p in cursor.executed if sql.startswith('UPDATE bids SET bid_status')]
    assert params == (lifecycle.BID_CANCELLED, 1, lifecycle.BID_ACTIVE, lifecycle.BID_OUTBID)
    assert cursor.statements('INSERT INTO admin_audit_logs')


def test_owner_cancels_draft(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(auction_status=lifecycle.DRAFT), live_auction()])
    auctions.cancel_auction(cursor, 1, OWNER)
    assert cursor.statements('UPDATE auctions SET auction_status')
    assert cursor.statements('UPDATE bids SET bid_status')


def test_cancelling_twice_leaves_bids_alone(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(auction_status=lifecycle.CANCELLED),
                                   {'status': lifecycle.CANCELLED}, live_auction()], rowcount=0)
    auctions.cancel_auction(cursor, 1, SITE_ADMIN)
    assert not cursor.statements('UPDATE bids')
    assert not cursor.statements('INSERT INTO admin_audit_logs')


@pytest.mark.parametrize('hours', ['0', '-1', '720.5', 'abc', 'NaN', None])
def test_extend_auction_bounds(make_cursor, hours):
    cursor = make_cursor(fetchone=[live_auction()])
    with pytest.raises(ValidationError):
        auctions.extend_auction(cursor, 1, SITE_ADMIN, hours)
    assert cursor.executed == []


def test_extend_auction_by_maximum(make_cursor):
    auction = live_auction(auction_status=lifecycle.APPROVED, ends_at=NOW + timedelta(days=1))
    cursor = make_cursor(fetchone=[auction, auction])
    auctions.extend_auction(cursor, 1, SCHOOL_ADMIN, 720)
    [(_, params)] = [(sql, p) for sql, p in cursor.executed if sql.startswith('UPDATE auctions SET ends_at')]
    assert params[0] == NOW + timedelta(days=1, hours=720)


@pytest.mark.parametrize('status', [lifecycle.DRAFT, lifecycle.PENDING_APPROVAL, lifecycle.ENDED])
def test_extend_requires_approved_or_live(make_cursor, status):
    cursor = make_cursor(fetchone=[live_auction(auction_status=status)])
    with pytest.raises(InvalidStateTransition):
        auctions.extend_auction(cursor, 1, SITE_ADMIN, 2)


def test_extend_requires_admin(make_cursor):
    with pytest.raises(PermissionDenied):
        auctions.extend_auction(make_cursor(fetchone=[live_auction()]), 1, OWNER, 2)


@pytest.mark.parametrize('status', [lifecycle.PENDING_APPROVAL, lifecycle.APPROVED, lifecycle.LIVE])
def test_only_drafts_can_be_updated_or_deleted(make_cursor, status):
    cursor = make_cursor(fetchone=[live_auction(auction_status=status)])
    with pytest.raises(InvalidStateTransition):
        auctions.update_auction(cursor, 1, OWNER, {'title': 'New title'})
    cursor = make_cursor(fetchone=[live_auction(auction_status=status)])
    with pytest.raises(InvalidStateTransition):
        auctions.delete_auction(cursor, 1, OWNER)
    assert not cursor.statements('DELETE')


def test_update_draft(make_cursor):
    draft = live_auction(auction_status=lifecycle.DRAFT, ends_at=NOW + timedelta(days=2))
    cursor = make_cursor(fetchone=[draft, dict(draft, title='New title')])
    result = auctions.update_auction(cursor, 1, OWNER, {'title': 'New title', 'auction_status': 'LIVE'})
    assert result['title'] == 'New title'
    [(sql, params)] = [(s, p) for s, p in cursor.executed if s.startswith('UPDATE auctions')]
    assert sql.startswith('UPDATE auctions SET title = %s, updated_at = %s')
    assert params[0] == 'New title'


def test_delete_draft_removes_its_artwork(make_cursor):
    cursor = make_cursor(fetchone=[live_auction(auction_status=lifecycle.DRAFT)])
    auctions.delete_auction(cursor, 1, OWNER)
    assert cursor.statements('DELETE FROM artwork') == ['DELETE FROM artwork WHERE auction_id = %s']
    assert cursor.statements('DELETE FROM auctions')
