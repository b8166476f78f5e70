import logging

from flask import Blueprint, request

from silent_auction import admin, auctions, db, lifecycle, payments, realtime, schools
from silent_auction.errors import ValidationError
from silent_auction.roles import SITE_ADMIN, admin_required, current_user, role_required
from silent_auction.validation import parse_pagination
from silent_auction.views import get_json, ok

logger = logging.getLogger(__name__)

bp = Blueprint('admin', __name__, url_prefix='/api/admin')


@bp.route('/dashboard')
@admin_required
def dashboard():
    with db.transaction() as c:
        stats = admin.get_dashboard_stats(c, current_user())
    return ok(stats=stats)


@bp.route('/auctions/pending')
@admin_required
def pending_auctions():
    with db.transaction() as c:
        items = admin.get_pending_auctions(c, current_user())
    return ok(auctions=items)


@bp.route('/auctions/<int:auction_id>/approve', methods=['POST'])
@admin_required
def approve_auction(auction_id):
    notes = get_json().get('notes')
    with db.transaction() as c:
        auction = auctions.approve_auction(c, auction_id, current_user(), notes)
    realtime.broadcast_auction_status(auction_id, lifecycle.APPROVED)
    return ok(message='Auction approved', auction=auction)


@bp.route('/auctions/<int:auction_id>/reject', methods=['POST'])
@admin_required
def reject_auction(auction_id):
    data = get_json()
    notes = data.get('notes') or data.get('reason')
    with db.transaction() as c:
        auction = auctions.reject_auction(c, auction_id, current_user(), notes)
    return ok(message='Auction returned to draft', auction=auction)


@bp.route('/auctions/<int:auction_id>/fee', methods=['PUT', 'POST'])
@admin_required
def set_fee(auction_id):
    data = get_json()
    if data.get('platform_fee_percentage') is None:
        raise ValidationError('platform_fee_percentage is required')
    with db.transaction() as c:
        auction = auctions.set_auction_fee(c, auction_id, current_user(), data['platform_fee_percentage'],
                                           data.get('platform_fee_minimum'))
    return ok(message='Platform fee updated', auction=auction)


@bp.route('/auctions/<int:auction_id>/extend', methods=['POST'])
@admin_required
def extend_auction(auction_id):
    hours = get_json().get('hours')
    if hours is None:
        raise ValidationError('hours is required')
    with db.transaction() as c:
        auction = auctions.extend_auction(c, auction_id, current_user(), hours)
    realtime.broadcast('auction', auction_id, 'auction_extended', {'auction_id': auction_id,
                                                                   'ends_at': auction['ends_at']})
    return ok(message='Auction extended', auction=auction)


@bp.route('/auctions/<int:auction_id>/close', methods=['POST'])
@admin_required
def close_auction(auction_id):
    with db.transaction() as c:
        result = auctions.close_auction(c, auction_id, actor=current_user())
    if not result['already_closed']:
        realtime.broadcast_auction_status(auction_id, lifecycle.ENDED, total_revenue=result['total_revenue'],
                                          sold=len(result['winners']))
    return ok(message='Auction closed', **result)


# --- Users ---
@bp.route('/users')
@admin_required
def list_users():
    limit, offset = parse_pagination(request.args)
    filters = {k: request.args.get(k) for k in ('role', 'status', 'search')}
    with db.transaction() as c:
        result = admin.list_users(c, current_user(), filters, limit, offset)
    return ok(**result)


@bp.route('/users/<int:user_id>/role', methods=['PUT', 'POST'])
@role_required(SITE_ADMIN)
def change_role(user_id):
    data = get_json()
    with db.transaction() as c:
        result = admin.change_user_role(c, current_user(), user_id, data.get('role'), data.get('reason'))
    return ok(message='Role updated', user=result)


@bp.route('/users/<int:user_id>/status', methods=['PUT', 'POST'])
@admin_required
def change_status(user_id):
    data = get_json()
    with db.transaction() as c:
        result = admin.change_user_status(c, current_user(), user_id, data.get('status'), data.get('reason'))
    return ok(message='Account status updated', user=result)


@bp.route('/users/<int:user_id>/reset-2fa', methods=['POST'])
@admin_required
def reset_2fa(user_id):
    reason = get_json().get('reason')
    with db.transaction() as c:
        result = admin.reset_user_2fa(c, current_user(), user_id, reason)
    return ok(message='Two-factor authentication reset', user=result)


@bp.route('/users/<int:user_id>', methods=['DELETE'])
@admin_required
def deactivate_user(user_id):
    reason = get_json().get('reason')
    with db.transaction() as c:
        result = admin.deactivate_user(c, current_user(), user_id, reason)
    return ok(message='User deactivated', user=result)


# --- Payments, audit and health ---
@bp.route('/payments')
@admin_required
def list_payments():
    limit, offset = parse_pagination(request.args)
    filters = {'status': request.args.get('status'), 'auction_id': request.args.get('auction_id', type=int)}
    with db.transaction() as c:
        result = payments.list_transactions(c, current_user(), filters, limit, offset)
    return ok(**result)


@bp.route('/audit-log')
@admin_required
def audit_log():
    limit, offset = parse_pagination(request.args)
    filters = {k: request.args.get(k) for k in ('action', 'admin_id', 'resource_type')}
    with db.transaction() as c:
        result = admin.get_audit_log(c, current_user(), filters, limit, offset)
    return ok(**result)


@bp.route('/health')
@admin_required
def health():
    return ok(health=admin.get_system_health())


@bp.route('/schools/import', methods=['POST'])
@role_required(SITE_ADMIN)
def import_schools():
    file = request.files.get('file')
    if not file or not file.filename:
        raise ValidationError('CSV file is required')
    text = file.read().decode('utf-8-sig', errors='replace')
    with db.transaction() as c:
        result = schools.import_schools_csv(c, text)
    logger.info(f"Schools imported by admin {current_user()['id']}: {result['imported']}")
    return ok(message=f"Imported {result['imported']} schools", **result)
