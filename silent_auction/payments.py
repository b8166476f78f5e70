import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app

from silent_auction import lifecycle
from silent_auction.audit import log_admin_action
from silent_auction.auctions import calculate_platform_fee
from silent_auction.errors import InvalidStateTransition, NotFound, PermissionDenied, ValidationError
from silent_auction.notifications import queue_notification
from silent_auction.roles import ADMIN_ROLES, SITE_ADMIN, can_access_school_resource
from silent_auction.validation import pagination_meta, parse_amount, sanitize_string, validate_choice

logger = logging.getLogger(__name__)

COMPLETED = 'COMPLETED'
REFUNDED = 'REFUNDED'
TRANSACTION_STATUSES = ('PENDING', COMPLETED, 'FAILED', REFUNDED)

# Score per triggered rule; a total above FRAUD_BLOCK_SCORE blocks the charge.
FRAUD_RULE_SCORES = {
    'TRANSACTION_AMOUNT_EXCEEDS_LIMIT': 25,
    'DAILY_SPENDING_LIMIT_EXCEEDED': 20,
    'TRANSACTION_FREQUENCY_LIMIT_EXCEEDED': 15,
}
FRAUD_BLOCK_SCORE = 30


def fraud_score(amount, daily_total, daily_count, config):
    flagged = []
    if amount > config['FRAUD_MAX_TRANSACTION']:
        flagged.append('TRANSACTION_AMOUNT_EXCEEDS_LIMIT')
    if daily_total + amount > config['FRAUD_MAX_DAILY_AMOUNT']:
        flagged.append('DAILY_SPENDING_LIMIT_EXCEEDED')
    if daily_count >= config['FRAUD_MAX_DAILY_COUNT']:
        flagged.append('TRANSACTION_FREQUENCY_LIMIT_EXCEEDED')
    return min(sum(FRAUD_RULE_SCORES[rule] for rule in flagged), 100), flagged


def _check_fraud(cursor, user_id, amount, now):
    cursor.execute('''SELECT COALESCE(SUM(total_amount), 0) AS total, COUNT(*) AS count FROM transactions
                      WHERE buyer_user_id = %s AND transaction_status = %s AND created_at > %s''',
                   (user_id, COMPLETED, now - timedelta(hours=24)))
    row = cursor.fetchone()
    score, flagged = fraud_score(amount, Decimal(row['total']), row['count'], current_app.config)
    if flagged:
        logger.warning(f"Payment by user {user_id} flagged {flagged} (score {score})")
    if score > FRAUD_BLOCK_SCORE:
        raise PermissionDenied('This payment could not be processed. Please contact the school.',
                               code='TRANSACTION_BLOCKED_FRAUD_DETECTION')


def charge_demo_gateway(gateway, amount, idempotency_key):
    """For demo, payment is always successful."""
    return {'transaction_id': f"demo_{uuid.uuid4().hex}", 'amount': amount,
            'gateway_type': gateway['gateway_type'] if gateway else 'DEMO'}


def _serialize(row):
    return {k: v for k, v in row.items()}


def checkout(cursor, artwork_id, user, idempotency_key=None, gateway_id=None, now=None):
    now = now or datetime.now()
    idempotency_key = sanitize_string(idempotency_key, 64) or None
    if idempotency_key:
        cursor.execute('SELECT * FROM transactions WHERE idempotency_key = %s', (idempotency_key,))
        existing = cursor.fetchone()
        if existing:
            if existing['buyer_user_id'] != user['id']:
                raise ValidationError('Idempotency key already used', code='IDEMPOTENCY_CONFLICT')
            return _serialize(existing), False

    cursor.execute('''SELECT a.id, a.title, a.artwork_status, a.winner_user_id, a.winning_bid_amount, a.auction_id,
                             au.auction_status, au.platform_fee_percentage, au.platform_fee_minimum,
                             au.payment_gateway_id, au.title AS auction_title
                      FROM artwork a JOIN auctions au ON a.auction_id = au.id WHERE a.id = %s FOR UPDATE''',
                   (artwork_id,))
    artwork = cursor.fetchone()
    if not artwork:
        raise NotFound('Artwork not found')
    if artwork['auction_status'] != lifecycle.ENDED or artwork['artwork_status'] != lifecycle.SOLD:
        raise InvalidStateTransition('This artwork is not ready for payment', code='NOT_PAYABLE')
    if artwork['winner_user_id'] != user['id']:
        raise PermissionDenied('You are not the winner of this artwork.', code='NOT_WINNER')

    cursor.execute('SELECT id FROM transactions WHERE artwork_id = %s AND transaction_status = %s',
                   (artwork_id, COMPLETED))
    if cursor.fetchone():
        raise InvalidStateTransition('This artwork has already been paid for', code='ALREADY_PAID')

    hammer = artwork['winning_bid_amount']
    fee = calculate_platform_fee(hammer, artwork['platform_fee_percentage'], artwork['platform_fee_minimum'])
    total = hammer + fee
    _check_fraud(cursor, user['id'], total, now)

    gateway = None
    gateway_id = gateway_id or artwork['payment_gateway_id']
    if gateway_id:
        cursor.execute('SELECT id, gateway_type FROM payment_gateways WHERE id = %s AND is_active = 1', (gateway_id,))
        gateway = cursor.fetchone()
        if not gateway:
            raise ValidationError('Payment gateway is not available', code='GATEWAY_UNAVAILABLE')
    idempotency_key = idempotency_key or uuid.uuid4().hex
    charge = charge_demo_gateway(gateway, total, idempotency_key)

    cursor.execute('''INSERT INTO transactions (auction_id, artwork_id, buyer_user_id, payment_gateway_id,
                        hammer_amount, platform_fee, total_amount, transaction_status, gateway_transaction_id,
                        idempotency_key, created_at)
                      VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)''',
                   (artwork['auction_id'], artwork_id, user['id'], gateway_id, hammer, fee, total,
                    COMPLETED, charge['transaction_id'], idempotency_key, now))
    transaction_id = cursor.lastrowid
    queue_notification(cursor, user['id'], 'PAYMENT_RECEIPT', {
        'artwork_title': artwork['title'], 'auction_title': artwork['auction_title'],
        'auction_id': artwork['auction_id'], 'transaction_id': transaction_id,
        'hammer_amount': f'{hammer:.2f}', 'platform_fee': f'{fee:.2f}', 'total_amount': f'{total:.2f}',
    })
    logger.info(f"Payment {transaction_id} completed for artwork {artwork_id}: {total}")
    return get_transaction(cursor, transaction_id, user), True


def get_transaction(cursor, transaction_id, user):
    cursor.execute('''SELECT t.*, au.school_id, a.title AS artwork_title FROM transactions t
                      JOIN auctions au ON t.auction_id = au.id JOIN artwork a ON t.artwork_id = a.id
                      WHERE t.id = %s''', (transaction_id,))
    row = cursor.fetchone()
    if not row:
        raise NotFound('Transaction not found')
    is_owner = row['buyer_user_id'] == user['id']
    if not is_owner and not (user['role'] in ADMIN_ROLES and can_access_school_resource(user, row['school_id'])):
        raise NotFound('Transaction not found')
    return _serialize(row)


def refund_transaction(cursor, transaction_id, admin, reason, amount=None):
    reason = sanitize_string(reason, 2000)
    if not reason:
        raise ValidationError('A refund reason is required')
    cursor.execute('''SELECT t.*, au.school_id FROM transactions t JOIN auctions au ON t.auction_id = au.id
                      WHERE t.id = %s FOR UPDATE''', (transaction_id,))
    txn = cursor.fetchone()
    if not txn:
        raise NotFound('Transaction not found')
    if not can_access_school_resource(admin, txn['school_id']):
        raise PermissionDenied('School administrators can only manage their own school',
                               code='CROSS_SCHOOL_ACCESS_DENIED')
    if txn['transaction_status'] != COMPLETED:
        raise InvalidStateTransition('Only completed transactions can be refunded')

    refund_amount = txn['total_amount'] if amount in (None, '') else parse_amount(amount, txn['total_amount'])
    now = datetime.now()
    cursor.execute('''UPDATE transactions SET transaction_status = %s, refunded_at = %s
                      WHERE id = %s AND transaction_status = %s''', (REFUNDED, now, transaction_id, COMPLETED))
    cursor.execute('''INSERT INTO refunds (transaction_id, amount, reason, refunded_by_user_id, created_at)
                      VALUES (%s, %s, %s, %s, %s)''', (transaction_id, refund_amount, reason, admin['id'], now))
    log_admin_action(cursor, admin['id'], 'PAYMENT_REFUNDED', 'transaction', transaction_id,
                     {'transaction_status': COMPLETED},
                     {'transaction_status': REFUNDED, 'refund_amount': refund_amount}, reason)
    logger.info(f"Transaction {transaction_id} refunded {refund_amount} by admin {admin['id']}")
    return {'transaction_id': transaction_id, 'refund_amount': refund_amount, 'status': REFUNDED}


def list_transactions(cursor, admin, filters, limit, offset):
    clauses, params = ['1 = 1'], []
    if admin['role'] != SITE_ADMIN:
        clauses.append('au.school_id = %s')
        params.append(admin.get('school_id'))
    if filters.get('status'):
        clauses.append('t.transaction_status = %s')
        params.append(validate_choice(filters['status'], TRANSACTION_STATUSES, 'status'))
    if filters.get('auction_id'):
        clauses.append('t.auction_id = %s')
        params.append(int(filters['auction_id']))

    where = ' AND '.join(clauses)
    cursor.execute(f'''SELECT COUNT(*) AS count FROM transactions t JOIN auctions au ON t.auction_id = au.id
                       WHERE {where}''', tuple(params))
    total = cursor.fetchone()['count']
    cursor.execute(f'''SELECT t.id, t.auction_id, t.artwork_id, t.buyer_user_id, t.hammer_amount, t.platform_fee,
                              t.total_amount, t.transaction_status, t.created_at, t.refunded_at,
                              a.title AS artwork_title, u.email AS buyer_email
                       FROM transactions t JOIN auctions au ON t.auction_id = au.id
                       JOIN artwork a ON t.artwork_id = a.id JOIN users u ON t.buyer_user_id = u.id
                       WHERE {where} ORDER BY t.created_at DESC LIMIT %s OFFSET %s''',
                   tuple(params) + (limit, offset))
    return {'transactions': cursor.fetchall(), 'pagination': pagination_meta(limit, offset, total)}
