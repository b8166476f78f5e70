import logging

from flask import Blueprint, current_app, request, session

from silent_auction import admin, artwork, bidding, db, realtime
from silent_auction.errors import ValidationError
from silent_auction.extensions import BID_LIMIT, limiter
from silent_auction.roles import admin_required, current_user, login_required
from silent_auction.validation import pagination_meta, parse_amount, parse_pagination
from silent_auction.views import client_ip, get_json, ok

logger = logging.getLogger(__name__)

bp = Blueprint('bids', __name__, url_prefix='/api/bids')


@bp.route('', methods=['POST'])
@login_required
@limiter.limit(BID_LIMIT)
def place_bid():
    data = get_json()
    try:
        artwork_id = int(data.get('artwork_id'))
    except (TypeError, ValueError):
        raise ValidationError('artwork_id is required')
    amount = parse_amount(data.get('amount'), current_app.config['MAX_BID_AMOUNT'], 'Bid amount')

    with db.transaction() as c:
        result = bidding.place_bid(c, artwork_id, session['user_id'], amount, client_ip())

    # --- Emit real-time update to all watchers after a successful commit ---
    realtime.broadcast_bid_update(result)
    logger.info(f"Bid {result['bid_id']} of {amount} placed on artwork {artwork_id}")
    return ok(201, message='Bid placed successfully', bid=result)


@bp.route('/<int:bid_id>/withdraw', methods=['POST'])
@login_required
@limiter.limit(BID_LIMIT)
def withdraw_bid(bid_id):
    with db.transaction() as c:
        result = bidding.withdraw_bid(c, bid_id, session['user_id'])
    realtime.broadcast('artwork', result['artwork_id'], 'bid_withdrawn', result)
    return ok(message='Bid withdrawn', bid=result)


@bp.route('/artwork/<int:artwork_id>/history')
def bid_history(artwork_id):
    limit = min(request.args.get('limit', 50, type=int), 100)
    with db.transaction() as c:
        artwork.get_artwork(c, artwork_id, current_user())
        bids = bidding.get_bid_history(c, artwork_id, limit)
    return ok(artwork_id=artwork_id, bids=bids)


@bp.route('/artwork/<int:artwork_id>/state')
def bidding_state(artwork_id):
    with db.transaction() as c:
        artwork.get_artwork(c, artwork_id, current_user())
        state = bidding.get_bidding_state(c, artwork_id)
    return ok(**state)


@bp.route('/me')
@login_required
def my_bids():
    limit, offset = parse_pagination(request.args)
    with db.transaction() as c:
        total, bids = bidding.get_user_bid_history(c, session['user_id'], limit, offset)
    return ok(bids=bids, pagination=pagination_meta(limit, offset, total))


@bp.route('/me/active')
@login_required
def my_active_bids():
    with db.transaction() as c:
        items = bidding.get_user_active_auctions(c, session['user_id'])
    return ok(items=items)


@bp.route('/stats')
@admin_required
def bid_stats():
    with db.transaction() as c:
        stats = admin.get_bid_stats(c, current_user())
    return ok(stats=stats)
