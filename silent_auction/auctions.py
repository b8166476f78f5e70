import base64
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from io import BytesIO

import qrcode
from flask import current_app

from silent_auction import lifecycle
from silent_auction.audit import log_admin_action, log_audit
from silent_auction.errors import InvalidStateTransition, NotFound, PermissionDenied, ValidationError
from silent_auction.notifications import queue_notification
from silent_auction.roles import (ADMIN_ROLES, SITE_ADMIN, TEACHER, can_access_school_resource, can_edit_auction,
                                  can_view_artwork, can_view_auction, has_permission, sanitize_response_by_role)
from silent_auction.validation import (pagination_meta, parse_datetime, sanitize_search_query, sanitize_string,
                                       validate_choice)

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')
VISIBILITY_CHOICES = ('PUBLIC', 'SCHOOL_ONLY', 'INVITED_ONLY')
MAX_EXTEND_HOURS = 720
UPDATABLE_FIELDS = ('title', 'description', 'starts_at', 'ends_at', 'charity_beneficiary_name', 'visibility',
                    'auto_extend_minutes', 'payment_gateway_id')

AUCTION_COLUMNS = '''a.id, a.school_id, a.title, a.description, a.auction_status, a.starts_at, a.ends_at,
    a.created_by_user_id, a.approved_by_user_id, a.approval_notes, a.payment_gateway_id,
    a.platform_fee_percentage, a.platform_fee_minimum, a.charity_beneficiary_name, a.visibility,
    a.auto_extend_minutes, a.auto_extend_count, a.total_revenue, a.platform_fee_total, a.created_at,
    s.name AS school_name'''


def calculate_platform_fee(hammer_amount, percentage, minimum):
    """Percentage of the hammer price with a floor, rounded to cents. Nothing sold means no fee."""
    hammer_amount = Decimal(hammer_amount)
    if hammer_amount <= 0:
        return Decimal('0.00')
    fee = hammer_amount * Decimal(percentage) / Decimal(100)
    return max(fee, Decimal(minimum)).quantize(CENTS, rounding=ROUND_HALF_UP)


def generate_qr_code(url):
    qr = qrcode.QRCode(version=1, error_correction=qrcode.constants.ERROR_CORRECT_L, box_size=8, border=2)
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000", back_color="#fff")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode()


def reserve_met(artwork, amount):
    reserve = artwork.get('reserve_bid_amount')
    return reserve is None or Decimal(amount) >= Decimal(reserve)


def validate_auction_fields(data, partial=False, now=None):
    """Cleans auction input. With partial=True only the keys present are validated."""
    now = now or datetime.now()
    cleaned = {}

    if not partial or 'title' in data:
        title = sanitize_string(data.get('title'), 255)
        if len(title) < 3:
            raise ValidationError('Title must be at least 3 characters')
        cleaned['title'] = title
    if not partial or 'description' in data:
        description = sanitize_string(data.get('description'), 5000)
        if len(description) < 10:
            raise ValidationError('Description must be at least 10 characters')
        cleaned['description'] = description
    if not partial or 'starts_at' in data:
        cleaned['starts_at'] = parse_datetime(data.get('starts_at'), 'starts_at')
    if not partial or 'ends_at' in data:
        cleaned['ends_at'] = parse_datetime(data.get('ends_at'), 'ends_at')
        if cleaned['ends_at'] <= now:
            raise ValidationError('End time must be in the future')
    if 'starts_at' in cleaned and 'ends_at' in cleaned and cleaned['ends_at'] <= cleaned['starts_at']:
        raise ValidationError('End time must be after start time')

    if 'platform_fee_percentage' in data:
        cleaned['platform_fee_percentage'] = _fee_percentage(data['platform_fee_percentage'])
    if 'platform_fee_minimum' in data:
        cleaned['platform_fee_minimum'] = _fee_minimum(data['platform_fee_minimum'])
    if 'visibility' in data:
        cleaned['visibility'] = validate_choice(data['visibility'], VISIBILITY_CHOICES, 'visibility')
    if 'auto_extend_minutes' in data:
        try:
            minutes = int(data['auto_extend_minutes'])
        except (TypeError, ValueError):
            raise ValidationError('auto_extend_minutes must be an integer')
        if not 0 <= minutes <= 60:
            raise ValidationError('auto_extend_minutes must be between 0 and 60')
        cleaned['auto_extend_minutes'] = minutes
    if 'charity_beneficiary_name' in data:
        cleaned['charity_beneficiary_name'] = sanitize_string(data['charity_beneficiary_name'], 255) or None
    if data.get('payment_gateway_id') is not None:
        try:
            cleaned['payment_gateway_id'] = int(data['payment_gateway_id'])
        except (TypeError, ValueError):
            raise ValidationError('payment_gateway_id must be an integer')
    return cleaned


def _fee_percentage(value):
    try:
        percentage = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError('Platform fee percentage must be a number')
    if not Decimal(0) <= percentage <= Decimal(100):
        raise ValidationError('Platform fee percentage must be between 0 and 100')
    return percentage.quantize(CENTS)


def _fee_minimum(value):
    try:
        minimum = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError('Platform fee minimum must be a number')
    if minimum < 0:
        raise ValidationError('Platform fee minimum cannot be negative')
    return minimum.quantize(CENTS)


def load_auction(cursor, auction_id, lock=False):
    cursor.execute(f'''SELECT {AUCTION_COLUMNS} FROM auctions a LEFT JOIN schools s ON a.school_id = s.id
                       WHERE a.id = %s{' FOR UPDATE' if lock else ''}''', (auction_id,))
    auction = cursor.fetchone()
    if not auction:
        raise NotFound('Auction not found')
    return auction


def require_editor(user, auction):
    if not can_edit_auction(user, auction):
        raise PermissionDenied('You are not authorized to modify this auction.')


def require_school_admin(user, auction):
    if not user or user.get('role') not in ADMIN_ROLES:
        raise PermissionDenied('Administrator access required')
    if not can_access_school_resource(user, auction['school_id']):
        raise PermissionDenied('School administrators can only manage their own school',
                               code='CROSS_SCHOOL_ACCESS_DENIED')


def _check_gateway(cursor, gateway_id, school_id):
    cursor.execute('SELECT id, school_id, is_active FROM payment_gateways WHERE id = %s', (gateway_id,))
    gateway = cursor.fetchone()
    if not gateway or not gateway['is_active'] or gateway['school_id'] not in (None, school_id):
        raise ValidationError('Payment gateway is not available for this school')


def create_auction(cursor, user, data):
    if not has_permission(user['role'], 'auctions:create'):
        raise PermissionDenied('Your role cannot create auctions')
    cleaned = validate_auction_fields(data)

    school_id = data.get('school_id') if user['role'] == SITE_ADMIN else user.get('school_id')
    if school_id is None:
        raise ValidationError('Valid school ID is required')
    cursor.execute('SELECT id FROM schools WHERE id = %s', (school_id,))
    if not cursor.fetchone():
        raise NotFound('School not found')
    if not can_access_school_resource(user, school_id):
        raise PermissionDenied('You can only create auctions for your own school', code='CROSS_SCHOOL_ACCESS_DENIED')
    if cleaned.get('payment_gateway_id'):
        _check_gateway(cursor, cleaned['payment_gateway_id'], school_id)

    config = current_app.config
    now = datetime.now()
    cursor.execute('''INSERT INTO auctions (school_id, title, description, auction_status, starts_at, ends_at,
                        created_by_user_id, payment_gateway_id, platform_fee_percentage, platform_fee_minimum,
                        charity_beneficiary_name, visibility, auto_extend_minutes, created_at, updated_at)
                      VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)''',
                   (school_id, cleaned['title'], cleaned['description'], lifecycle.DRAFT, cleaned['starts_at'],
                    cleaned['ends_at'], user['id'], cleaned.get('payment_gateway_id'),
                    cleaned.get('platform_fee_percentage', config['PLATFORM_FEE_PERCENTAGE']),
                    cleaned.get('platform_fee_minimum', config['PLATFORM_FEE_MINIMUM']),
                    cleaned.get('charity_beneficiary_name'), cleaned.get('visibility', 'PUBLIC'),
                    cleaned.get('auto_extend_minutes', config['DEFAULT_AUTO_EXTEND_MINUTES']), now, now))
    auction_id = cursor.lastrowid
    log_admin_action(cursor, user['id'], 'AUCTION_CREATED', 'auction', auction_id, None,
                     {'title': cleaned['title'], 'school_id': school_id})
    logger.info(f"Auction {auction_id} created by user {user['id']}")
    return load_auction(cursor, auction_id)


def list_auction_artwork(cursor, auction, user):
    cursor.execute('''SELECT id, auction_id, created_by_user_id, title, description, artist_name, artist_grade,
                             medium, dimensions, starting_bid_amount, reserve_bid_amount, current_bid, bid_count,
                             image_url, artwork_status, rejection_reason, winner_user_id, winning_bid_amount
                      FROM artwork WHERE auction_id = %s ORDER BY id''', (auction['id'],))
    return [sanitize_response_by_role(a, user) for a in cursor.fetchall() if can_view_artwork(user, a, auction)]


def get_auction(cursor, auction_id, user):
    auction = load_auction(cursor, auction_id)
    if not can_view_auction(user, auction):
        # Hidden auctions look exactly like missing ones.
        raise NotFound('Auction not found')
    auction['artwork'] = list_auction_artwork(cursor, auction, user)
    auction['artwork_count'] = len(auction['artwork'])
    auction['total_bids'] = sum(a.get('bid_count') or 0 for a in auction['artwork'])
    auction['can_edit'] = can_edit_auction(user, auction)
    return sanitize_response_by_role(auction, user)


def visibility_clause(user):
    """SQL fragment limiting a listing to auctions the user may see."""
    public = "a.auction_status IN ('APPROVED', 'LIVE', 'ENDED')"
    if not user:
        return f"{public} AND a.visibility = 'PUBLIC'", []
    role = user.get('role')
    if role == SITE_ADMIN:
        return '1 = 1', []
    if role in ADMIN_ROLES:
        return 'a.school_id = %s', [user.get('school_id')]
    if role == TEACHER:
        return (f"(a.school_id = %s OR a.created_by_user_id = %s OR ({public} AND a.visibility = 'PUBLIC'))",
                [user.get('school_id'), user['id']])
    return f"{public} AND (a.visibility = 'PUBLIC' OR a.school_id = %s)", [user.get('school_id')]


def list_auctions(cursor, user, filters, limit, offset):
    where, params = visibility_clause(user)
    clauses, params = [where], list(params)

    status = filters.get('status')
    if status:
        clauses.append('a.auction_status = %s')
        params.append(validate_choice(status, lifecycle.AUCTION_STATUSES, 'status'))
    if filters.get('school_id'):
        clauses.append('a.school_id = %s')
        params.append(int(filters['school_id']))
    search = sanitize_search_query(filters.get('search'))
    if search:
        clauses.append('(a.title LIKE %s OR a.description LIKE %s)')
        params.extend([f'%{search}%', f'%{search}%'])
    if filters.get('active_only'):
        clauses.append('a.auction_status = %s AND a.ends_at > %s')
        params.extend([lifecycle.LIVE, datetime.now()])

    where_sql = ' AND '.join(clauses)
    cursor.execute(f'SELECT COUNT(*) AS count FROM auctions a WHERE {where_sql}', tuple(params))
    total = cursor.fetchone()['count']
    cursor.execute(f'''SELECT {AUCTION_COLUMNS},
                              (SELECT COUNT(*) FROM artwork w WHERE w.auction_id = a.id) AS artwork_count,
                              (SELECT COALESCE(SUM(w.bid_count), 0) FROM artwork w WHERE w.auction_id = a.id)
                                  AS total_bids
                       FROM auctions a LEFT JOIN schools s ON a.school_id = s.id
                       WHERE {where_sql} ORDER BY a.ends_at ASC LIMIT %s OFFSET %s''',
                   tuple(params) + (limit, offset))
    auctions = [sanitize_response_by_role(a, user) for a in cursor.fetchall()]
    return {'auctions': auctions, 'pagination': pagination_meta(limit, offset, total)}


def get_active_auctions(cursor, now=None):
    now = now or datetime.now()
    cursor.execute(f'''SELECT {AUCTION_COLUMNS} FROM auctions a LEFT JOIN schools s ON a.school_id = s.id
                       WHERE a.auction_status = %s AND a.ends_at > %s AND a.visibility = 'PUBLIC'
                       ORDER BY a.ends_at ASC''', (lifecycle.LIVE, now))
    return [sanitize_response_by_role(a, None) for a in cursor.fetchall()]


def update_auction(cursor, auction_id, user, data):
    auction = load_auction(cursor, auction_id, lock=True)
    require_editor(user, auction)
    lifecycle.require_status(auction, (lifecycle.DRAFT,))

    updates = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS}
    if not updates:
        raise ValidationError('No valid fields to update')
    cleaned = validate_auction_fields(updates, partial=True)
    starts_at = cleaned.get('starts_at', auction['starts_at'])
    ends_at = cleaned.get('ends_at', auction['ends_at'])
    if ends_at <= starts_at:
        raise ValidationError('End time must be after start time')
    if cleaned.get('payment_gateway_id'):
        _check_gateway(cursor, cleaned['payment_gateway_id'], auction['school_id'])

    assignments = ', '.join(f'{column} = %s' for column in cleaned)
    cursor.execute(f'UPDATE auctions SET {assignments}, updated_at = %s WHERE id = %s',
                   tuple(cleaned.values()) + (datetime.now(), auction_id))
    log_admin_action(cursor, user['id'], 'AUCTION_UPDATED', 'auction', auction_id,
                     {k: auction.get(k) for k in cleaned}, cleaned)
    return load_auction(cursor, auction_id)


def delete_auction(cursor, auction_id, user):
    auction = load_auction(cursor, auction_id, lock=True)
    require_editor(user, auction)
    if auction['auction_status'] != lifecycle.DRAFT:
        raise InvalidStateTransition(f"Cannot delete auction with status {auction['auction_status']}. "
                                     "Only draft auctions can be deleted.")
    cursor.execute('DELETE FROM artwork WHERE auction_id = %s', (auction_id,))
    cursor.execute('DELETE FROM auctions WHERE id = %s', (auction_id,))
    log_admin_action(cursor, user['id'], 'AUCTION_DELETED', 'auction', auction_id, {'title': auction['title']})


def _artwork_counts(cursor, auction_id):
    cursor.execute('''SELECT COUNT(*) AS total, COALESCE(SUM(artwork_status = 'APPROVED'), 0) AS approved
                      FROM artwork WHERE auction_id = %s AND artwork_status != %s''',
                   (auction_id, lifecycle.WITHDRAWN))
    row = cursor.fetchone()
    return int(row['total']), int(row['approved'])


def submit_for_approval(cursor, auction_id, user):
    auction = load_auction(cursor, auction_id, lock=True)
    require_editor(user, auction)
    total, _ = _artwork_counts(cursor, auction_id)
    if total == 0:
        raise ValidationError('Add at least one artwork before submitting for approval', code='NO_ARTWORK')
    lifecycle.transition_auction(cursor, auction_id, lifecycle.PENDING_APPROVAL)
    log_audit(cursor, user['id'], 'AUCTION_SUBMITTED', 'auction', auction_id)
    return load_auction(cursor, auction_id)


def approve_auction(cursor, auction_id, admin, notes=None):
    auction = load_auction(cursor, auction_id, lock=True)
    require_school_admin(admin, auction)
    lifecycle.transition_auction(cursor, auction_id, lifecycle.APPROVED,
                                 {'approved_by_user_id': admin['id'], 'approval_notes': notes})
    log_admin_action(cursor, admin['id'], 'AUCTION_APPROVED', 'auction', auction_id,
                     {'auction_status': auction['auction_status']}, {'auction_status': lifecycle.APPROVED}, notes)
    if auction['created_by_user_id']:
        queue_notification(cursor, auction['created_by_user_id'], 'AUCTION_APPROVED',
                           {'auction_id': auction_id, 'auction_title': auction['title']})
    return load_auction(cursor, auction_id)


def reject_auction(cursor, auction_id, admin, notes):
    notes = sanitize_string(notes, 2000)
    if not notes:
        raise ValidationError('A reason is required when rejecting an auction')
    auction = load_auction(cursor, auction_id, lock=True)
    require_school_admin(admin, auction)
    if auction['auction_status'] != lifecycle.PENDING_APPROVAL:
        raise InvalidStateTransition('Only auctions pending approval can be rejected')
    lifecycle.transition_auction(cursor, auction_id, lifecycle.DRAFT, {'approval_notes': notes})
    log_admin_action(cursor, admin['id'], 'AUCTION_REJECTED', 'auction', auction_id,
                     {'auction_status': auction['auction_status']}, {'auction_status': lifecycle.DRAFT}, notes)
    if auction['created_by_user_id']:
        queue_notification(cursor, auction['created_by_user_id'], 'AUCTION_REJECTED',
                           {'auction_id': auction_id, 'auction_title': auction['title'], 'notes': notes})
    return load_auction(cursor, auction_id)


def start_auction(cursor, auction_id, user=None, now=None):
    """APPROVED -> LIVE. user=None means the sweep is starting it on schedule."""
    now = now or datetime.now()
    auction = load_auction(cursor, auction_id, lock=True)
    if user is not None:
        require_editor(user, auction)
    if auction['auction_status'] == lifecycle.LIVE:
        return auction
    _, approved = _artwork_counts(cursor, auction_id)
    if approved == 0:
        raise ValidationError('Cannot start auction without approved artwork', code='NO_ARTWORK')
    if auction['ends_at'] <= now:
        raise InvalidStateTransition('Auction end time has already passed', code='AUCTION_EXPIRED')

    extra = {'starts_at': now} if auction['starts_at'] > now else None
    lifecycle.transition_auction(cursor, auction_id, lifecycle.LIVE, extra)
    log_audit(cursor, user['id'] if user else None, 'AUCTION_STARTED', 'auction', auction_id)
    return load_auction(cursor, auction_id)


def close_auction(cursor, auction_id, now=None, actor=None):
    """LIVE -> ENDED: settle each approved artwork against its reserve and record revenue."""
    now = now or datetime.now()
    auction = load_auction(cursor, auction_id, lock=True)
    if actor is not None:
        require_school_admin(actor, auction)
    if auction['auction_status'] == lifecycle.ENDED:
        return {'auction_id': auction_id, 'already_closed': True, 'winners': []}
    if actor is None and auction['ends_at'] > now:
        # A late bid extended the auction after the sweep picked it up.
        return {'auction_id': auction_id, 'already_closed': False, 'skipped': True, 'winners': []}
    lifecycle.transition_auction(cursor, auction_id, lifecycle.ENDED)

    cursor.execute('''SELECT id, title, reserve_bid_amount FROM artwork
                      WHERE auction_id = %s AND artwork_status = %s FOR UPDATE''', (auction_id, lifecycle.APPROVED))
    artworks = cursor.fetchall()

    winners = []
    revenue = Decimal('0.00')
    fees = Decimal('0.00')
    for artwork in artworks:
        cursor.execute('''SELECT id, bidder_user_id, bid_amount FROM bids WHERE artwork_id = %s AND bid_status = %s
                          ORDER BY bid_amount DESC LIMIT 1''', (artwork['id'], lifecycle.BID_ACTIVE))
        top = cursor.fetchone()
        if top and reserve_met(artwork, top['bid_amount']):
            lifecycle.transition_artwork(cursor, artwork['id'], lifecycle.SOLD,
                                         {'winner_user_id': top['bidder_user_id'],
                                          'winning_bid_amount': top['bid_amount']})
            cursor.execute('UPDATE bids SET bid_status = %s WHERE id = %s', (lifecycle.BID_ACCEPTED, top['id']))
            revenue += top['bid_amount']
            fees += calculate_platform_fee(top['bid_amount'], auction['platform_fee_percentage'],
                                           auction['platform_fee_minimum'])
            winners.append({'artwork_id': artwork['id'], 'winner_user_id': top['bidder_user_id'],
                            'amount': top['bid_amount']})
            queue_notification(cursor, top['bidder_user_id'], 'BID_ACCEPTED', {
                'artwork_title': artwork['title'], 'auction_title': auction['title'], 'auction_id': auction_id,
                'artwork_id': artwork['id'], 'amount': f"{top['bid_amount']:.2f}",
            })
        else:
            lifecycle.transition_artwork(cursor, artwork['id'], lifecycle.UNSOLD)
            if top:
                cursor.execute('UPDATE bids SET bid_status = %s WHERE id = %s', (lifecycle.BID_REJECTED, top['id']))

    cursor.execute('''UPDATE auctions SET total_revenue = %s, platform_fee_total = %s, updated_at = %s
                      WHERE id = %s''', (revenue, fees, now, auction_id))

    winner_ids = {w['winner_user_id'] for w in winners}
    cursor.execute('SELECT DISTINCT bidder_user_id FROM bids WHERE auction_id = %s AND bid_status != %s',
                   (auction_id, lifecycle.BID_CANCELLED))
    for row in cursor.fetchall():
        if row['bidder_user_id'] not in winner_ids:
            queue_notification(cursor, row['bidder_user_id'], 'AUCTION_ENDED',
                               {'auction_id': auction_id, 'auction_title': auction['title']})

    log_audit(cursor, actor['id'] if actor else None, 'AUCTION_CLOSED', 'auction', auction_id,
              {'total_revenue': revenue, 'platform_fee_total': fees, 'sold': len(winners)})
    logger.info(f"Auction {auction_id} closed: {len(winners)} sold, revenue {revenue}")
    return {'auction_id': auction_id, 'already_closed': False, 'winners': winners,
            'total_revenue': revenue, 'platform_fee_total': fees}


def cancel_auction(cursor, auction_id, user, reason=None):
    auction = load_auction(cursor, auction_id, lock=True)
    require_editor(user, auction)
    if auction['auction_status'] == lifecycle.LIVE:
        # Pulling a running auction is an administrative action.
        require_school_admin(user, auction)
    changed = lifecycle.transition_auction(cursor, auction_id, lifecycle.CANCELLED,
                                           {'approval_notes': sanitize_string(reason, 2000) or None})
    if changed:
        cursor.execute('UPDATE bids SET bid_status = %s WHERE auction_id = %s AND bid_status IN (%s, %s)',
                       (lifecycle.BID_CANCELLED, auction_id, lifecycle.BID_ACTIVE, lifecycle.BID_OUTBID))
        log_admin_action(cursor, user['id'], 'AUCTION_CANCELLED', 'auction', auction_id,
                         {'auction_status': auction['auction_status']}, {'auction_status': lifecycle.CANCELLED},
                         reason)
    return load_auction(cursor, auction_id)


def extend_auction(cursor, auction_id, admin, hours):
    try:
        hours = Decimal(str(hours))
    except ArithmeticError:
        raise ValidationError('hours must be a number')
    if not hours.is_finite():
        raise ValidationError('hours must be a number')
    if not Decimal(0) < hours <= MAX_EXTEND_HOURS:
        raise ValidationError(f'Extension must be greater than 0 and at most {MAX_EXTEND_HOURS} hours')
    auction = load_auction(cursor, auction_id, lock=True)
    require_school_admin(admin, auction)
    lifecycle.require_status(auction, (lifecycle.APPROVED, lifecycle.LIVE))

    new_end = auction['ends_at'] + timedelta(hours=float(hours))
    cursor.execute('UPDATE auctions SET ends_at = %s, ending_soon_notified_at = NULL, updated_at = %s WHERE id = %s',
                   (new_end, datetime.now(), auction_id))
    log_admin_action(cursor, admin['id'], 'AUCTION_EXTENDED', 'auction', auction_id,
                     {'ends_at': auction['ends_at']}, {'ends_at': new_end})
    return load_auction(cursor, auction_id)


def set_auction_fee(cursor, auction_id, admin, percentage, minimum=None):
    auction = load_auction(cursor, auction_id, lock=True)
    require_school_admin(admin, auction)
    if auction['auction_status'] in (lifecycle.ENDED, lifecycle.CANCELLED):
        raise InvalidStateTransition('Fees cannot change once an auction is finished')
    new_percentage = _fee_percentage(percentage)
    new_minimum = _fee_minimum(minimum) if minimum is not None else auction['platform_fee_minimum']
    cursor.execute('''UPDATE auctions SET platform_fee_percentage = %s, platform_fee_minimum = %s, updated_at = %s
                      WHERE id = %s''', (new_percentage, new_minimum, datetime.now(), auction_id))
    log_admin_action(cursor, admin['id'], 'AUCTION_FEE_CHANGED', 'auction', auction_id,
                     {'platform_fee_percentage': auction['platform_fee_percentage'],
                      'platform_fee_minimum': auction['platform_fee_minimum']},
                     {'platform_fee_percentage': new_percentage, 'platform_fee_minimum': new_minimum})
    return load_auction(cursor, auction_id)


# --- Scheduled lifecycle ---
def due_to_start(cursor, now):
    cursor.execute('SELECT id FROM auctions WHERE auction_status = %s AND starts_at <= %s AND ends_at > %s',
                   (lifecycle.APPROVED, now, now))
    return [row['id'] for row in cursor.fetchall()]


def due_to_close(cursor, now):
    cursor.execute('SELECT id FROM auctions WHERE auction_status = %s AND ends_at <= %s',
                   (lifecycle.LIVE, now))
    return [row['id'] for row in cursor.fetchall()]


def due_ending_soon(cursor, now, minutes):
    cursor.execute('''SELECT id FROM auctions WHERE auction_status = %s AND ends_at > %s AND ends_at <= %s
                      AND ending_soon_notified_at IS NULL''',
                   (lifecycle.LIVE, now, now + timedelta(minutes=minutes)))
    return [row['id'] for row in cursor.fetchall()]


def notify_ending_soon(cursor, auction_id, now):
    """Warns every bidder once. Returns the auction's end time, or None if already handled."""
    cursor.execute('''UPDATE auctions SET ending_soon_notified_at = %s
                      WHERE id = %s AND auction_status = %s AND ending_soon_notified_at IS NULL''',
                   (now, auction_id, lifecycle.LIVE))
    if cursor.rowcount != 1:
        return None
    auction = load_auction(cursor, auction_id)
    cursor.execute('SELECT DISTINCT bidder_user_id FROM bids WHERE auction_id = %s AND bid_status IN (%s, %s)',
                   (auction_id, lifecycle.BID_ACTIVE, lifecycle.BID_OUTBID))
    for row in cursor.fetchall():
        queue_notification(cursor, row['bidder_user_id'], 'AUCTION_ENDING', {
            'auction_id': auction_id, 'auction_title': auction['title'],
            'ends_at': auction['ends_at'].strftime('%b %d, %I:%M %p'),
        })
    return auction['ends_at']
