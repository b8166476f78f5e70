"""Bid placement and withdrawal.

Every write path locks the auction row and then the artwork row with
SELECT ... FOR UPDATE, in that order, inside the caller's transaction. The
artwork row caches current_bid/current_bidder_id so the "is this the new
highest bid" check and the update happen under the same lock.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app

from silent_auction import lifecycle
from silent_auction.audit import log_audit
from silent_auction.errors import (AuthenticationError, InvalidStateTransition, NotFound, PermissionDenied,
                                   ValidationError)
from silent_auction.notifications import queue_notification
from silent_auction.roles import can_view_auction, has_permission

logger = logging.getLogger(__name__)

BIDDER_NAME_SQL = "CONCAT(u.first_name, ' ', LEFT(COALESCE(u.last_name, ''), 1), '.')"


def minimum_bid(artwork, increment):
    """Smallest acceptable next bid: the starting bid, or current bid plus the increment."""
    if artwork.get('current_bid') is None:
        return Decimal(artwork['starting_bid_amount'])
    return Decimal(artwork['current_bid']) + Decimal(increment)


def auction_is_open(auction, now):
    return (auction['auction_status'] == lifecycle.LIVE
            and auction['starts_at'] <= now < auction['ends_at'])


def check_bid(auction, artwork, bidder, amount, now, increment, max_amount):
    """Validates a bid against locked auction/artwork rows. Returns the minimum that applied."""
    if not auction_is_open(auction, now):
        raise InvalidStateTransition('This auction is not accepting bids', code='AUCTION_NOT_ACTIVE')
    if artwork['artwork_status'] != lifecycle.APPROVED:
        raise InvalidStateTransition('This artwork is not available for bidding', code='ARTWORK_NOT_AVAILABLE')
    if bidder.get('account_status') != 'ACTIVE':
        raise PermissionDenied('Your account is not active', code='ACCOUNT_NOT_ACTIVE')
    if not has_permission(bidder.get('role'), 'bids:create'):
        raise PermissionDenied('Your role cannot place bids', code='ROLE_CANNOT_BID')
    if not can_view_auction(bidder, auction):
        raise PermissionDenied('This auction is not open to you', code='AUCTION_NOT_VISIBLE')
    if artwork.get('created_by_user_id') == bidder['id']:
        raise PermissionDenied('You cannot bid on your own artwork.', code='SELF_BID')
    if artwork.get('current_bidder_id') == bidder['id']:
        raise ValidationError('You already have the highest bid', code='ALREADY_HIGHEST')
    if amount > max_amount:
        raise ValidationError(f'Bid cannot exceed ${max_amount}', code='BID_TOO_HIGH')

    minimum = minimum_bid(artwork, increment)
    if amount < minimum:
        raise ValidationError(f'Bid must be at least ${minimum:.2f}', code='BID_TOO_LOW',
                              details={'minimum_bid': f'{minimum:.2f}'})
    return minimum


def extension_for(ends_at, now, window_minutes):
    """New end time when a bid lands inside the auto-extend window, otherwise None."""
    if not window_minutes:
        return None
    window = timedelta(minutes=window_minutes)
    if ends_at - now <= window:
        return now + window
    return None


def _lock_auction(cursor, auction_id):
    cursor.execute('''SELECT id, school_id, title, auction_status, visibility, starts_at, ends_at,
                             auto_extend_minutes, created_by_user_id
                      FROM auctions WHERE id = %s FOR UPDATE''', (auction_id,))
    auction = cursor.fetchone()
    if not auction:
        raise NotFound('Auction not found')
    return auction


def _lock_artwork(cursor, artwork_id):
    cursor.execute('''SELECT id, auction_id, title, artwork_status, created_by_user_id, starting_bid_amount,
                             reserve_bid_amount, current_bid, current_bidder_id, bid_count
                      FROM artwork WHERE id = %s FOR UPDATE''', (artwork_id,))
    artwork = cursor.fetchone()
    if not artwork:
        raise NotFound('Artwork not found')
    return artwork


def _auction_id_for(cursor, artwork_id):
    cursor.execute('SELECT auction_id FROM artwork WHERE id = %s', (artwork_id,))
    row = cursor.fetchone()
    if not row:
        raise NotFound('Artwork not found')
    return row['auction_id']


def place_bid(cursor, artwork_id, user_id, amount, ip_address=None, now=None):
    now = now or datetime.now()
    config = current_app.config
    increment = config['BID_MIN_INCREMENT']

    auction = _lock_auction(cursor, _auction_id_for(cursor, artwork_id))
    artwork = _lock_artwork(cursor, artwork_id)

    cursor.execute('SELECT id, role, school_id, account_status, first_name, last_name FROM users WHERE id = %s',
                   (user_id,))
    bidder = cursor.fetchone()
    if not bidder:
        raise AuthenticationError('Please login first')

    check_bid(auction, artwork, bidder, amount, now, increment, config['MAX_BID_AMOUNT'])
    previous_bidder_id = artwork['current_bidder_id']

    cursor.execute("UPDATE bids SET bid_status = %s WHERE artwork_id = %s AND bid_status = %s",
                   (lifecycle.BID_OUTBID, artwork_id, lifecycle.BID_ACTIVE))
    cursor.execute('''INSERT INTO bids (artwork_id, auction_id, bidder_user_id, bid_amount, bid_status, ip_address,
                        placed_at)
                      VALUES (%s, %s, %s, %s, %s, %s, %s)''',
                   (artwork_id, auction['id'], user_id, amount, lifecycle.BID_ACTIVE, ip_address, now))
    bid_id = cursor.lastrowid
    cursor.execute('''UPDATE artwork SET current_bid = %s, current_bidder_id = %s, bid_count = bid_count + 1,
                        updated_at = %s WHERE id = %s''', (amount, user_id, now, artwork_id))

    ends_at = auction['ends_at']
    new_end = extension_for(ends_at, now, auction['auto_extend_minutes'])
    if new_end:
        cursor.execute('''UPDATE auctions SET ends_at = %s, auto_extend_count = auto_extend_count + 1,
                            ending_soon_notified_at = NULL, updated_at = %s WHERE id = %s''',
                       (new_end, now, auction['id']))
        log_audit(cursor, None, 'AUCTION_AUTO_EXTENDED', 'auction', auction['id'],
                  {'previous_ends_at': ends_at, 'new_ends_at': new_end}, ip_address)
        logger.info(f"Auction {auction['id']} auto-extended to {new_end}")
        ends_at = new_end

    log_audit(cursor, user_id, 'BID_PLACED', 'artwork', artwork_id,
              {'bid_id': bid_id, 'amount': amount, 'previous_bid': artwork['current_bid']}, ip_address)

    # Notify previous highest bidder
    if previous_bidder_id and previous_bidder_id != user_id:
        queue_notification(cursor, previous_bidder_id, 'BID_OUTBID', {
            'artwork_title': artwork['title'], 'auction_title': auction['title'],
            'auction_id': auction['id'], 'artwork_id': artwork_id, 'current_bid': f'{amount:.2f}',
        })

    return {
        'bid_id': bid_id,
        'artwork_id': artwork_id,
        'auction_id': auction['id'],
        'amount': amount,
        'bidder_name': f"{bidder['first_name']} {(bidder['last_name'] or '')[:1]}.",
        'bid_count': (artwork['bid_count'] or 0) + 1,
        'minimum_bid': amount + increment,
        'previous_bidder_id': previous_bidder_id,
        'ends_at': ends_at,
        'extended': new_end is not None,
    }


def _refresh_artwork_cache(cursor, artwork_id, now):
    """Re-derives current_bid/current_bidder_id/bid_count from the bids table."""
    cursor.execute('''SELECT id, bidder_user_id, bid_amount FROM bids
                      WHERE artwork_id = %s AND bid_status = %s LIMIT 1''', (artwork_id, lifecycle.BID_ACTIVE))
    leader = cursor.fetchone()
    if not leader:
        cursor.execute('''SELECT id, bidder_user_id, bid_amount FROM bids
                          WHERE artwork_id = %s AND bid_status = %s
                          ORDER BY bid_amount DESC, placed_at ASC LIMIT 1''', (artwork_id, lifecycle.BID_OUTBID))
        leader = cursor.fetchone()
        if leader:
            cursor.execute('UPDATE bids SET bid_status = %s WHERE id = %s', (lifecycle.BID_ACTIVE, leader['id']))

    cursor.execute('SELECT COUNT(*) AS count FROM bids WHERE artwork_id = %s AND bid_status != %s',
                   (artwork_id, lifecycle.BID_CANCELLED))
    count = cursor.fetchone()['count']
    cursor.execute('''UPDATE artwork SET current_bid = %s, current_bidder_id = %s, bid_count = %s, updated_at = %s
                      WHERE id = %s''',
                   (leader['bid_amount'] if leader else None, leader['bidder_user_id'] if leader else None,
                    count, now, artwork_id))
    return leader


def withdraw_bid(cursor, bid_id, user_id, now=None):
    now = now or datetime.now()
    cursor.execute('SELECT id, artwork_id, bidder_user_id FROM bids WHERE id = %s', (bid_id,))
    bid = cursor.fetchone()
    if not bid:
        raise NotFound('Bid not found')
    if bid['bidder_user_id'] != user_id:
        raise PermissionDenied('You can only withdraw your own bids', code='NOT_BID_OWNER')

    auction = _lock_auction(cursor, _auction_id_for(cursor, bid['artwork_id']))
    _lock_artwork(cursor, bid['artwork_id'])
    cursor.execute('SELECT id, artwork_id, bid_amount, bid_status FROM bids WHERE id = %s FOR UPDATE', (bid_id,))
    bid = cursor.fetchone()

    if not auction_is_open(auction, now):
        raise InvalidStateTransition('Bids can only be withdrawn while the auction is live',
                                     code='AUCTION_NOT_ACTIVE')
    if bid['bid_status'] not in (lifecycle.BID_ACTIVE, lifecycle.BID_OUTBID):
        raise InvalidStateTransition(f"A {bid['bid_status'].lower()} bid cannot be withdrawn",
                                     code='BID_NOT_WITHDRAWABLE')
    cutoff = timedelta(minutes=current_app.config['BID_WITHDRAW_CUTOFF_MINUTES'])
    if bid['bid_status'] == lifecycle.BID_ACTIVE and auction['ends_at'] - now < cutoff:
        raise ValidationError('The leading bid cannot be withdrawn this close to the end of the auction',
                              code='WITHDRAWAL_WINDOW_CLOSED')

    cursor.execute('UPDATE bids SET bid_status = %s, withdrawn_at = %s WHERE id = %s',
                   (lifecycle.BID_CANCELLED, now, bid_id))
    leader = _refresh_artwork_cache(cursor, bid['artwork_id'], now)
    log_audit(cursor, user_id, 'BID_WITHDRAWN', 'artwork', bid['artwork_id'],
              {'bid_id': bid_id, 'amount': bid['bid_amount']})
    return {
        'bid_id': bid_id,
        'artwork_id': bid['artwork_id'],
        'auction_id': auction['id'],
        'current_bid': leader['bid_amount'] if leader else None,
        'current_bidder_id': leader['bidder_user_id'] if leader else None,
    }


def get_bid_history(cursor, artwork_id, limit=50):
    cursor.execute(f'''SELECT b.id, b.bid_amount, b.bid_status, b.placed_at, {BIDDER_NAME_SQL} AS bidder_name
                       FROM bids b JOIN users u ON b.bidder_user_id = u.id
                       WHERE b.artwork_id = %s AND b.bid_status != %s
                       ORDER BY b.bid_amount DESC, b.placed_at ASC LIMIT %s''',
                   (artwork_id, lifecycle.BID_CANCELLED, limit))
    return cursor.fetchall()


def get_bidding_state(cursor, artwork_id, now=None):
    now = now or datetime.now()
    cursor.execute('''SELECT a.id, a.auction_id, a.artwork_status, a.starting_bid_amount, a.current_bid,
                             a.current_bidder_id, a.bid_count, au.auction_status, au.starts_at, au.ends_at
                      FROM artwork a JOIN auctions au ON a.auction_id = au.id WHERE a.id = %s''', (artwork_id,))
    row = cursor.fetchone()
    if not row:
        raise NotFound('Artwork not found')
    active = auction_is_open(row, now) and row['artwork_status'] == lifecycle.APPROVED
    return {
        'artwork_id': row['id'],
        'auction_id': row['auction_id'],
        'current_bid': row['current_bid'],
        'current_bidder_id': row['current_bidder_id'],
        'minimum_bid': minimum_bid(row, current_app.config['BID_MIN_INCREMENT']),
        'total_bids': row['bid_count'] or 0,
        'time_remaining': max(0, int((row['ends_at'] - now).total_seconds())),
        'auction_active': active,
        'ends_at': row['ends_at'],
    }


def get_user_bid_history(cursor, user_id, limit, offset):
    cursor.execute('SELECT COUNT(*) AS count FROM bids WHERE bidder_user_id = %s', (user_id,))
    total = cursor.fetchone()['count']
    cursor.execute('''SELECT b.id, b.artwork_id, b.auction_id, b.bid_amount, b.bid_status, b.placed_at,
                             a.title AS artwork_title, au.title AS auction_title, au.auction_status
                      FROM bids b JOIN artwork a ON b.artwork_id = a.id JOIN auctions au ON b.auction_id = au.id
                      WHERE b.bidder_user_id = %s ORDER BY b.placed_at DESC LIMIT %s OFFSET %s''',
                   (user_id, limit, offset))
    return total, cursor.fetchall()


def get_user_active_auctions(cursor, user_id):
    cursor.execute('''SELECT a.id AS artwork_id, a.title AS artwork_title, a.current_bid, a.current_bidder_id,
                             au.id AS auction_id, au.title AS auction_title, au.ends_at,
                             MAX(b.bid_amount) AS my_highest_bid
                      FROM bids b JOIN artwork a ON b.artwork_id = a.id JOIN auctions au ON a.auction_id = au.id
                      WHERE b.bidder_user_id = %s AND au.auction_status = %s AND b.bid_status != %s
                      GROUP BY a.id, a.title, a.current_bid, a.current_bidder_id, au.id, au.title, au.ends_at
                      ORDER BY au.ends_at ASC''', (user_id, lifecycle.LIVE, lifecycle.BID_CANCELLED))
    rows = cursor.fetchall()
    for row in rows:
        row['is_winning'] = row['current_bidder_id'] == user_id
    return rows


def get_auction_winners(cursor, auction_id):
    cursor.execute('SELECT id, auction_status FROM auctions WHERE id = %s', (auction_id,))
    auction = cursor.fetchone()
    if not auction:
        raise NotFound('Auction not found')
    if auction['auction_status'] != lifecycle.ENDED:
        raise InvalidStateTransition('Winners are only available once the auction has ended',
                                     code='AUCTION_NOT_ENDED')
    cursor.execute(f'''SELECT a.id AS artwork_id, a.title AS artwork_title, a.winner_user_id,
                              a.winning_bid_amount, {BIDDER_NAME_SQL} AS winner_name
                       FROM artwork a JOIN users u ON a.winner_user_id = u.id
                       WHERE a.auction_id = %s AND a.artwork_status = %s ORDER BY a.id''',
                   (auction_id, lifecycle.SOLD))
    return cursor.fetchall()
