from flask import Blueprint, request

from silent_auction import db, payments
from silent_auction.errors import ValidationError
from silent_auction.extensions import PAYMENT_LIMIT, limiter
from silent_auction.roles import admin_required, current_user, login_required
from silent_auction.views import get_json, ok

bp = Blueprint('payments', __name__, url_prefix='/api/payments')


@bp.route('/checkout', methods=['POST'])
@login_required
@limiter.limit(PAYMENT_LIMIT)
def checkout():
    data = get_json()
    try:
        artwork_id = int(data.get('artwork_id'))
    except (TypeError, ValueError):
        raise ValidationError('artwork_id is required')
    idempotency_key = request.headers.get('Idempotency-Key') or data.get('idempotency_key')
    with db.transaction() as c:
        transaction, created = payments.checkout(c, artwork_id, current_user(), idempotency_key,
                                                 data.get('gateway_id'))
    return ok(201 if created else 200, message='Payment successful', transaction=transaction)


@bp.route('/<int:transaction_id>')
@login_required
def get_transaction(transaction_id):
    with db.transaction() as c:
        transaction = payments.get_transaction(c, transaction_id, current_user())
    return ok(transaction=transaction)


@bp.route('/<int:transaction_id>/refund', methods=['POST'])
@admin_required
@limiter.limit(PAYMENT_LIMIT)
def refund(transaction_id):
    data = get_json()
    with db.transaction() as c:
        result = payments.refund_transaction(c, transaction_id, current_user(), data.get('reason'),
                                             data.get('amount'))
    return ok(message='Refund processed', refund=result)
