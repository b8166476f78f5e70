from flask import Blueprint, request, session

from silent_auction import auth, db, notifications
from silent_auction.roles import login_required
from silent_auction.validation import pagination_meta, parse_pagination
from silent_auction.views import get_json, ok

bp = Blueprint('users', __name__, url_prefix='/api')


@bp.route('/users/me')
@login_required
def profile():
    with db.transaction() as c:
        user = auth.load_user(c, session['user_id'])
    return ok(user=auth.public_user(user))


@bp.route('/users/me', methods=['PUT'])
@login_required
def update_profile():
    data = get_json()
    with db.transaction() as c:
        user = auth.load_user(c, session['user_id'], lock=True)
        user = auth.update_profile(c, user, data)
    session['user_name'] = auth.display_name(user)
    return ok(message='Profile updated', user=auth.public_user(user))


@bp.route('/notifications/summary')
@login_required
def notifications_summary():
    with db.transaction() as c:
        unread_count, recent = notifications.get_summary(c, session['user_id'])
    return ok(unread_count=unread_count, notifications=recent)


@bp.route('/notifications')
@login_required
def list_notifications():
    limit, offset = parse_pagination(request.args)
    with db.transaction() as c:
        total, items = notifications.list_notifications(c, session['user_id'], limit, offset)
    return ok(notifications=items, pagination=pagination_meta(limit, offset, total))


@bp.route('/notifications/mark-read', methods=['POST'])
@login_required
def mark_notifications_as_read():
    notification_id = get_json().get('notification_id')
    with db.transaction() as c:
        updated = notifications.mark_read(c, session['user_id'],
                                          int(notification_id) if notification_id is not None else None)
    return ok(updated=updated)


@bp.route('/notifications/preferences')
@login_required
def get_preferences():
    with db.transaction() as c:
        prefs = notifications.get_preferences(c, session['user_id'])
    return ok(preferences=prefs)


@bp.route('/notifications/preferences', methods=['PUT'])
@login_required
def update_preferences():
    data = get_json()
    with db.transaction() as c:
        prefs = notifications.update_preferences(c, session['user_id'], data)
    return ok(message='Preferences saved', preferences=prefs)


@bp.route('/notifications/unsubscribe', methods=['POST'])
@login_required
def unsubscribe():
    with db.transaction() as c:
        notifications.unsubscribe(c, session['user_id'])
    return ok(message='You have been unsubscribed from notification emails')
