"""Role hierarchy, per-resource visibility rules and the route decorators built on them."""
import logging
from functools import wraps

from flask import jsonify, redirect, session, url_for

logger = logging.getLogger(__name__)

SITE_ADMIN = 'SITE_ADMIN'
SCHOOL_ADMIN = 'SCHOOL_ADMIN'
TEACHER = 'TEACHER'
STUDENT = 'STUDENT'
BIDDER = 'BIDDER'

# Highest privilege first.
ROLE_HIERARCHY = [SITE_ADMIN, SCHOOL_ADMIN, TEACHER, STUDENT, BIDDER]
ADMIN_ROLES = (SITE_ADMIN, SCHOOL_ADMIN)

PERMISSIONS = {
    SITE_ADMIN: {
        'auctions:create', 'auctions:read', 'auctions:update', 'auctions:delete', 'auctions:approve',
        'artwork:create', 'artwork:approve', 'users:manage', 'users:change_role', 'payments:refund',
        'payments:read', 'schools:import', 'audit:read', 'bids:read_all',
    },
    SCHOOL_ADMIN: {
        'auctions:create', 'auctions:read', 'auctions:update', 'auctions:delete', 'auctions:approve',
        'artwork:create', 'artwork:approve', 'users:manage', 'payments:refund', 'payments:read',
        'audit:read', 'bids:read_all',
    },
    TEACHER: {
        'auctions:create', 'auctions:read', 'auctions:update', 'artwork:create', 'artwork:approve',
        'students:invite',
    },
    STUDENT: {'auctions:read', 'artwork:create', 'bids:create', 'payments:create'},
    BIDDER: {'auctions:read', 'bids:create', 'payments:create'},
}

PUBLICLY_VISIBLE_STATUSES = ('APPROVED', 'LIVE', 'ENDED')
PUBLIC_ARTWORK_STATUSES = ('APPROVED', 'SOLD', 'UNSOLD')

# Fields hidden from bidders: creator/artist contact info and the reserve price.
SENSITIVE_FIELDS = ('created_by_user_id', 'created_by_email', 'approved_by_user_id', 'approval_notes',
                    'reserve_bid_amount', 'rejection_reason', 'artist_email')


def can_access_role(user_role, required_role):
    """True if user_role sits at or above required_role in the hierarchy."""
    if user_role not in ROLE_HIERARCHY or required_role not in ROLE_HIERARCHY:
        logger.warning(f"Invalid role comparison: {user_role} vs {required_role}")
        return False
    return ROLE_HIERARCHY.index(user_role) <= ROLE_HIERARCHY.index(required_role)


def has_permission(role, permission):
    return permission in PERMISSIONS.get(role, set())


def is_admin(user):
    return bool(user) and user.get('role') in ADMIN_ROLES


def is_resource_owner(user, owner_id):
    return bool(user) and owner_id is not None and user.get('id') == owner_id


def can_access_school_resource(user, school_id):
    if not user:
        return False
    if user.get('role') == SITE_ADMIN:
        return True
    return school_id is not None and user.get('school_id') == school_id


def can_view_auction(user, auction):
    if not auction:
        return False
    publicly_visible = auction['auction_status'] in PUBLICLY_VISIBLE_STATUSES
    if not user:
        return publicly_visible and auction.get('visibility', 'PUBLIC') == 'PUBLIC'

    role = user.get('role')
    same_school = user.get('school_id') is not None and user.get('school_id') == auction.get('school_id')
    if role == SITE_ADMIN:
        return True
    if role == SCHOOL_ADMIN:
        return same_school
    if role == TEACHER and (same_school or is_resource_owner(user, auction.get('created_by_user_id'))):
        return True
    if not publicly_visible:
        return False
    return auction.get('visibility', 'PUBLIC') == 'PUBLIC' or same_school


def can_edit_auction(user, auction):
    if not user or not auction:
        return False
    role = user.get('role')
    if role == SITE_ADMIN:
        return True
    if role == SCHOOL_ADMIN:
        return user.get('school_id') == auction.get('school_id')
    if role == TEACHER:
        return is_resource_owner(user, auction.get('created_by_user_id'))
    return False


def can_approve_artwork(user, artwork, auction):
    if not user or not artwork or not auction:
        return False
    role = user.get('role')
    if role in ADMIN_ROLES:
        return can_access_school_resource(user, auction.get('school_id'))
    if role == TEACHER:
        return is_resource_owner(user, auction.get('created_by_user_id'))
    return False


def can_view_artwork(user, artwork, auction):
    if not artwork or not can_view_auction(user, auction):
        return False
    if artwork['artwork_status'] in PUBLIC_ARTWORK_STATUSES:
        return True
    return is_resource_owner(user, artwork.get('created_by_user_id')) or can_edit_auction(user, auction)


def sanitize_response_by_role(record, user):
    """Returns a copy of record with sensitive fields dropped for bidder-tier viewers."""
    if record is None:
        return None
    if user and user.get('role') in (SITE_ADMIN, SCHOOL_ADMIN, TEACHER):
        return dict(record)
    return {k: v for k, v in record.items() if k not in SENSITIVE_FIELDS}


# --- Session helpers ---
def current_user():
    """The logged-in user as stored in the session, or None."""
    if 'user_id' not in session:
        return None
    return {
        'id': session['user_id'],
        'name': session.get('user_name'),
        'role': session.get('role', BIDDER),
        'school_id': session.get('school_id'),
    }


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'success': False, 'message': 'Please login first'}), 401
        return f(*args, **kwargs)
    return decorated_function


def role_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if 'user_id' not in session:
                return jsonify({'success': False, 'message': 'Please login first'}), 401
            if session.get('role') not in roles:
                return jsonify({'success': False, 'message': 'Forbidden'}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


admin_required = role_required(SITE_ADMIN, SCHOOL_ADMIN)


def admin_page_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if session.get('role') not in ADMIN_ROLES:
            # Redirect non-admins to the homepage
            return redirect(url_for('pages.index'))
        return f(*args, **kwargs)
    return decorated_function
