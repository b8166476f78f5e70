import logging

from flask import Blueprint, redirect, request, session, url_for

from silent_auction import auth, db
from silent_auction.errors import AuthenticationError, ValidationError
from silent_auction.extensions import AUTH_LIMIT, LOGIN_LIMIT, limiter
from silent_auction.roles import login_required
from silent_auction.views import get_json, ok

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__, url_prefix='/api/auth')


@bp.route('/register', methods=['POST'])
@limiter.limit(AUTH_LIMIT)
def register():
    data = get_json()
    with db.transaction() as c:
        user = auth.register_user(c, data)
    return ok(201, message='Registration successful', user=auth.public_user(user))


@bp.route('/login', methods=['POST'])
@limiter.limit(LOGIN_LIMIT)
def login():
    data = get_json()
    if not data.get('email') or not data.get('password'):
        raise ValidationError('Email and password are required')
    if not isinstance(data['email'], str) or not isinstance(data['password'], str):
        raise ValidationError('Email and password must be strings')
    with db.transaction() as c:
        user, error = auth.authenticate(c, data.get('email'), data.get('password'))
    # Failed attempts are committed before the error is reported.
    if error:
        raise error

    session.clear()
    if user['two_fa_enabled']:
        session['pending_2fa_user_id'] = user['id']
        return ok(message='Enter your two-factor code', requires_2fa=True)
    auth.start_session(user)
    logger.info(f"User {user['id']} logged in")
    return ok(message='Login successful', requires_2fa=False, user=auth.public_user(user))


@bp.route('/2fa/verify-login', methods=['POST'])
@limiter.limit(LOGIN_LIMIT)
def verify_login():
    user_id = session.get('pending_2fa_user_id')
    if not user_id:
        raise AuthenticationError('No login awaiting verification', code='2FA_NOT_PENDING')
    code = get_json().get('code')
    with db.transaction() as c:
        user = auth.load_user(c, user_id, lock=True)
        method = auth.verify_second_factor(c, user, code)
    auth.start_session(user)
    logger.info(f"User {user['id']} logged in with {method}")
    return ok(message='Login successful', method=method, user=auth.public_user(user))


@bp.route('/logout', methods=['GET', 'POST'])
def logout():
    session.clear()
    if request.method == 'GET':
        return redirect(url_for('pages.index'))
    return ok(message='Logged out')


@bp.route('/me')
@login_required
def me():
    with db.transaction() as c:
        user = auth.load_user(c, session['user_id'])
    return ok(user=auth.public_user(user))


@bp.route('/2fa/setup', methods=['POST'])
@login_required
@limiter.limit(AUTH_LIMIT)
def setup_2fa():
    with db.transaction() as c:
        user = auth.load_user(c, session['user_id'])
    return ok(**auth.begin_2fa_setup(user))


@bp.route('/2fa/confirm', methods=['POST'])
@login_required
@limiter.limit(AUTH_LIMIT)
def confirm_2fa():
    code = get_json().get('code')
    with db.transaction() as c:
        user = auth.load_user(c, session['user_id'], lock=True)
        codes = auth.confirm_2fa_setup(c, user, code)
    return ok(message='Two-factor authentication enabled. Store these backup codes safely.', backup_codes=codes)


@bp.route('/2fa/disable', methods=['POST'])
@login_required
@limiter.limit(AUTH_LIMIT)
def disable_2fa():
    password = get_json().get('password')
    with db.transaction() as c:
        user = auth.load_user(c, session['user_id'], lock=True)
        auth.disable_2fa(c, user, password)
    return ok(message='Two-factor authentication disabled')


@bp.route('/2fa/backup-codes', methods=['POST'])
@login_required
@limiter.limit(AUTH_LIMIT)
def backup_codes():
    password = get_json().get('password')
    with db.transaction() as c:
        user = auth.load_user(c, session['user_id'], lock=True)
        codes = auth.regenerate_backup_codes(c, user, password)
    return ok(backup_codes=codes)


@bp.route('/password-reset/request', methods=['POST'])
@limiter.limit(AUTH_LIMIT)
def request_password_reset():
    email = get_json().get('email')
    if not email:
        raise ValidationError('Email is required')
    with db.transaction() as c:
        auth.request_password_reset(c, email)
    # Same answer whether or not the account exists.
    return ok(message='If that email is registered, a reset link has been sent.')


@bp.route('/password-reset/confirm', methods=['POST'])
@limiter.limit(AUTH_LIMIT)
def confirm_password_reset():
    data = get_json()
    with db.transaction() as c:
        auth.reset_password(c, data.get('token'), data.get('password'))
    return ok(message='Password has been reset. Please log in.')


@bp.route('/change-password', methods=['POST'])
@login_required
@limiter.limit(AUTH_LIMIT)
def change_password():
    data = get_json()
    with db.transaction() as c:
        user = auth.load_user(c, session['user_id'], lock=True)
        auth.change_password(c, user, data.get('current_password'), data.get('new_password'))
    return ok(message='Password changed')
