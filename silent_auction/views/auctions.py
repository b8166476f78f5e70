import logging

from flask import Blueprint, current_app, request, session

from silent_auction import artwork, auctions, bidding, db, lifecycle, realtime
from silent_auction.errors import NotFound
from silent_auction.roles import (SCHOOL_ADMIN, SITE_ADMIN, TEACHER, can_view_auction, current_user, login_required,
                                  role_required)
from silent_auction.validation import parse_pagination
from silent_auction.views import form_or_json, get_json, ok

logger = logging.getLogger(__name__)

bp = Blueprint('auctions', __name__, url_prefix='/api')

AUCTION_MANAGERS = (SITE_ADMIN, SCHOOL_ADMIN, TEACHER)


@bp.route('/auctions')
def list_auctions():
    limit, offset = parse_pagination(request.args)
    filters = {
        'status': request.args.get('status'),
        'school_id': request.args.get('school_id', type=int),
        'search': request.args.get('search'),
        'active_only': request.args.get('active_only') == 'true',
    }
    with db.transaction() as c:
        result = auctions.list_auctions(c, current_user(), filters, limit, offset)
    return ok(**result)


@bp.route('/auctions', methods=['POST'])
@role_required(*AUCTION_MANAGERS)
def create_auction():
    data = get_json()
    with db.transaction() as c:
        auction = auctions.create_auction(c, current_user(), data)
    return ok(201, message='Auction created', auction=auction)


@bp.route('/auctions/active')
def active_auctions():
    with db.transaction() as c:
        result = auctions.get_active_auctions(c)
    return ok(auctions=result)


@bp.route('/auctions/<int:auction_id>')
def get_auction(auction_id):
    with db.transaction() as c:
        auction = auctions.get_auction(c, auction_id, current_user())
    return ok(auction=auction)


@bp.route('/auctions/<int:auction_id>', methods=['PUT'])
@role_required(*AUCTION_MANAGERS)
def update_auction(auction_id):
    data = get_json()
    with db.transaction() as c:
        auction = auctions.update_auction(c, auction_id, current_user(), data)
    return ok(message='Auction updated', auction=auction)


@bp.route('/auctions/<int:auction_id>', methods=['DELETE'])
@role_required(*AUCTION_MANAGERS)
def delete_auction(auction_id):
    with db.transaction() as c:
        auctions.delete_auction(c, auction_id, current_user())
    return ok(message='Auction deleted')


@bp.route('/auctions/<int:auction_id>/submit', methods=['POST'])
@role_required(*AUCTION_MANAGERS)
def submit_auction(auction_id):
    with db.transaction() as c:
        auction = auctions.submit_for_approval(c, auction_id, current_user())
    return ok(message='Auction submitted for approval', auction=auction)


@bp.route('/auctions/<int:auction_id>/start', methods=['POST'])
@role_required(*AUCTION_MANAGERS)
def start_auction(auction_id):
    with db.transaction() as c:
        auction = auctions.start_auction(c, auction_id, current_user())
    realtime.broadcast_auction_status(auction_id, lifecycle.LIVE, ends_at=auction['ends_at'])
    return ok(message='Auction is live', auction=auction)


@bp.route('/auctions/<int:auction_id>/close', methods=['POST'])
@role_required(SITE_ADMIN, SCHOOL_ADMIN)
def close_auction(auction_id):
    with db.transaction() as c:
        result = auctions.close_auction(c, auction_id, actor=current_user())
    if not result['already_closed']:
        realtime.broadcast_auction_status(auction_id, lifecycle.ENDED, total_revenue=result['total_revenue'],
                                          sold=len(result['winners']))
    return ok(message='Auction closed', **result)


@bp.route('/auctions/<int:auction_id>/cancel', methods=['POST'])
@role_required(*AUCTION_MANAGERS)
def cancel_auction(auction_id):
    reason = get_json().get('reason')
    with db.transaction() as c:
        auction = auctions.cancel_auction(c, auction_id, current_user(), reason)
    realtime.broadcast_auction_status(auction_id, lifecycle.CANCELLED)
    return ok(message='Auction cancelled', auction=auction)


@bp.route('/auctions/<int:auction_id>/qr')
def auction_qr(auction_id):
    with db.transaction() as c:
        auction = auctions.load_auction(c, auction_id)
    if not can_view_auction(current_user(), auction):
        raise NotFound('Auction not found')
    url = f"{current_app.config['SITE_URL'].rstrip('/')}/auction/{auction_id}"
    return ok(url=url, qr_code_base64=auctions.generate_qr_code(url))


@bp.route('/auctions/<int:auction_id>/winners')
def auction_winners(auction_id):
    with db.transaction() as c:
        auction = auctions.load_auction(c, auction_id)
        if not can_view_auction(current_user(), auction):
            raise NotFound('Auction not found')
        winners = bidding.get_auction_winners(c, auction_id)
    return ok(auction_id=auction_id, winners=winners)


# --- Artwork ---
@bp.route('/auctions/<int:auction_id>/artwork')
def list_artwork(auction_id):
    user = current_user()
    with db.transaction() as c:
        auction = auctions.load_auction(c, auction_id)
        if not can_view_auction(user, auction):
            raise NotFound('Auction not found')
        items = auctions.list_auction_artwork(c, auction, user)
    return ok(artwork=items)


@bp.route('/auctions/<int:auction_id>/artwork', methods=['POST'])
@login_required
def create_artwork(auction_id):
    data = form_or_json()
    with db.transaction() as c:
        item = artwork.create_artwork(c, current_user(), auction_id, data, request.files.get('image_file'))
    return ok(201, message='Artwork submitted', artwork=item)


@bp.route('/artwork/<int:artwork_id>')
def get_artwork(artwork_id):
    with db.transaction() as c:
        item = artwork.get_artwork(c, artwork_id, current_user())
    return ok(artwork=item)


@bp.route('/artwork/<int:artwork_id>', methods=['PUT'])
@login_required
def update_artwork(artwork_id):
    data = form_or_json()
    with db.transaction() as c:
        item = artwork.update_artwork(c, artwork_id, current_user(), data, request.files.get('image_file'))
    return ok(message='Artwork updated', artwork=item)


@bp.route('/artwork/<int:artwork_id>/submit', methods=['POST'])
@login_required
def submit_artwork(artwork_id):
    with db.transaction() as c:
        item = artwork.submit_artwork(c, artwork_id, current_user())
    return ok(message='Artwork submitted for approval', artwork=item)


@bp.route('/artwork/<int:artwork_id>/approve', methods=['POST'])
@role_required(*AUCTION_MANAGERS)
def approve_artwork(artwork_id):
    with db.transaction() as c:
        item = artwork.approve_artwork(c, artwork_id, current_user())
    return ok(message='Artwork approved', artwork=item)


@bp.route('/artwork/<int:artwork_id>/reject', methods=['POST'])
@role_required(*AUCTION_MANAGERS)
def reject_artwork(artwork_id):
    reason = get_json().get('reason')
    with db.transaction() as c:
        item = artwork.reject_artwork(c, artwork_id, current_user(), reason)
    return ok(message='Artwork rejected', artwork=item)


@bp.route('/artwork/<int:artwork_id>/withdraw', methods=['POST'])
@login_required
def withdraw_artwork(artwork_id):
    with db.transaction() as c:
        item = artwork.withdraw_artwork(c, artwork_id, current_user())
    logger.info(f"Artwork {artwork_id} withdrawn by user {session['user_id']}")
    return ok(message='Artwork withdrawn', artwork=item)
