import base64
import hashlib
import json
import logging
import secrets
from datetime import datetime, timedelta
from io import BytesIO

import pyotp
import qrcode
from flask import current_app, session
from werkzeug.security import check_password_hash, generate_password_hash

from silent_auction.errors import AuthenticationError, NotFound, PermissionDenied, ValidationError
from silent_auction.notifications import render_email, send_email
from silent_auction.roles import ADMIN_ROLES, BIDDER, STUDENT
from silent_auction.validation import password_errors, sanitize_string, validate_email

logger = logging.getLogger(__name__)

BACKUP_CODE_COUNT = 8
USER_COLUMNS = '''id, email, password_hash, first_name, last_name, phone, role, school_id, account_status,
    two_fa_enabled, two_fa_secret, backup_codes, failed_login_attempts, account_locked_until, last_login, created_at'''
PUBLIC_USER_FIELDS = ('id', 'email', 'first_name', 'last_name', 'phone', 'role', 'school_id', 'account_status',
                      'two_fa_enabled', 'last_login', 'created_at')


def hash_token(token):
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def public_user(user):
    data = {k: user.get(k) for k in PUBLIC_USER_FIELDS}
    data['two_fa_enabled'] = bool(data['two_fa_enabled'])
    return data


def display_name(user):
    return f"{user.get('first_name') or ''} {user.get('last_name') or ''}".strip() or user['email']


def load_user(cursor, user_id, lock=False):
    cursor.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = %s{' FOR UPDATE' if lock else ''}", (user_id,))
    user = cursor.fetchone()
    if not user:
        raise NotFound('User not found')
    return user


def start_session(user):
    session.pop('pending_2fa_user_id', None)
    session['user_id'] = user['id']
    session['user_name'] = display_name(user)
    session['role'] = user['role']
    session['school_id'] = user['school_id']
    # Store admin status in session for easy access
    session['is_admin'] = user['role'] in ADMIN_ROLES


def register_user(cursor, data):
    email = sanitize_string(data.get('email'), 254).lower()
    password = data.get('password') or ''
    first_name = sanitize_string(data.get('first_name'), 100)
    last_name = sanitize_string(data.get('last_name'), 100)

    if not all([email, password, first_name, last_name]):
        raise ValidationError('All fields required')
    if not validate_email(email):
        raise ValidationError('Invalid email address')
    problems = password_errors(password)
    if problems:
        raise ValidationError('Password does not meet requirements', code='WEAK_PASSWORD', details=problems)

    cursor.execute('SELECT id FROM users WHERE email = %s', (email,))
    if cursor.fetchone():
        raise ValidationError('Email already registered', code='EMAIL_TAKEN')

    role, school_id, token_row = BIDDER, None, None
    token = data.get('registration_token')
    if token:
        cursor.execute('''SELECT id, school_id, student_email, token_status, expires_at FROM registration_tokens
                          WHERE token = %s FOR UPDATE''', (token,))
        token_row = cursor.fetchone()
        if not token_row or token_row['token_status'] != 'PENDING' or token_row['expires_at'] < datetime.now():
            raise ValidationError('Registration link is invalid or has expired', code='INVALID_TOKEN')
        if token_row['student_email'].lower() != email:
            raise ValidationError('This registration link was issued for a different email address',
                                  code='INVALID_TOKEN')
        role, school_id = STUDENT, token_row['school_id']

    now = datetime.now()
    cursor.execute('''INSERT INTO users (email, password_hash, first_name, last_name, phone, role, school_id,
                        account_status, created_at, updated_at)
                      VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)''',
                   (email, generate_password_hash(password), first_name, last_name,
                    sanitize_string(data.get('phone'), 32) or None, role, school_id, 'ACTIVE', now, now))
    user_id = cursor.lastrowid
    if token_row:
        cursor.execute("UPDATE registration_tokens SET token_status = 'USED', used_at = %s WHERE id = %s",
                       (now, token_row['id']))
    logger.info(f"User registered: {email} ({role})")
    return load_user(cursor, user_id)


def authenticate(cursor, email, password, now=None):
    """Checks credentials with lockout.

    Returns (user, None) on success. A wrong password returns (None, error) instead of raising so the
    caller can commit the failed-attempt counter before reporting it.
    """
    now = now or datetime.now()
    config = current_app.config
    email = sanitize_string(email, 254).lower()
    if not email or not password:
        raise ValidationError('Email and password are required')
    if not isinstance(password, str):
        raise ValidationError('Password must be a string')

    cursor.execute(f'SELECT {USER_COLUMNS} FROM users WHERE email = %s FOR UPDATE', (email,))
    user = cursor.fetchone()
    if not user:
        raise AuthenticationError('Invalid credentials', code='INVALID_CREDENTIALS')

    locked_until = user['account_locked_until']
    if locked_until and locked_until > now:
        minutes = max(1, int((locked_until - now).total_seconds() // 60) + 1)
        raise AuthenticationError(f'Account is locked. Try again in {minutes} minutes.', code='ACCOUNT_LOCKED')
    if user['account_status'] in ('SUSPENDED', 'INACTIVE'):
        raise PermissionDenied('This account has been disabled', code='ACCOUNT_DISABLED')

    if not check_password_hash(user['password_hash'], password):
        attempts = (user['failed_login_attempts'] or 0) + 1
        if attempts >= config['MAX_LOGIN_ATTEMPTS']:
            cursor.execute('''UPDATE users SET failed_login_attempts = 0, account_locked_until = %s WHERE id = %s''',
                           (now + timedelta(minutes=config['LOCKOUT_MINUTES']), user['id']))
            logger.warning(f"Account {email} locked after {attempts} failed logins")
        else:
            cursor.execute('UPDATE users SET failed_login_attempts = %s WHERE id = %s', (attempts, user['id']))
        return None, AuthenticationError('Invalid credentials', code='INVALID_CREDENTIALS')

    cursor.execute('''UPDATE users SET failed_login_attempts = 0, account_locked_until = NULL, last_login = %s
                      WHERE id = %s''', (now, user['id']))
    return user, None


# --- Two-factor authentication ---
def generate_backup_codes(count=BACKUP_CODE_COUNT):
    return [secrets.token_hex(4).upper() for _ in range(count)]


def hash_backup_codes(codes):
    return json.dumps([hash_token(code) for code in codes])


def consume_backup_code(stored, code):
    """Returns the remaining hashed codes if code matched, otherwise None."""
    hashes = json.loads(stored or '[]')
    if code is None:
        return None
    candidate = hash_token(str(code).strip().upper())
    if candidate not in hashes:
        return None
    hashes.remove(candidate)
    return hashes


def verify_totp(secret, code):
    if not secret or not code:
        return False
    return pyotp.TOTP(secret).verify(str(code).strip(), valid_window=current_app.config['TOTP_VALID_WINDOW'])


def qr_code_base64(data):
    img = qrcode.make(data)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode()


def begin_2fa_setup(user):
    """Creates a pending secret kept in the session until the user proves they can generate codes."""
    if user['two_fa_enabled']:
        raise ValidationError('Two-factor authentication is already enabled', code='2FA_ALREADY_ENABLED')
    secret = pyotp.random_base32()
    session['pending_2fa_secret'] = secret
    uri = pyotp.TOTP(secret).provisioning_uri(name=user['email'], issuer_name=current_app.config['TOTP_ISSUER'])
    return {'secret': secret, 'otpauth_url': uri, 'qr_code_base64': qr_code_base64(uri)}


def confirm_2fa_setup(cursor, user, code):
    secret = session.get('pending_2fa_secret')
    if not secret:
        raise ValidationError('Start two-factor setup first', code='2FA_SETUP_NOT_STARTED')
    if not verify_totp(secret, code):
        raise ValidationError('Invalid verification code', code='INVALID_2FA_CODE')
    codes = generate_backup_codes()
    cursor.execute('''UPDATE users SET two_fa_enabled = 1, two_fa_secret = %s, backup_codes = %s, updated_at = %s
                      WHERE id = %s''', (secret, hash_backup_codes(codes), datetime.now(), user['id']))
    session.pop('pending_2fa_secret', None)
    logger.info(f"2FA enabled for user {user['id']}")
    return codes


def verify_second_factor(cursor, user, code):
    """Accepts a TOTP code or an unused backup code."""
    if verify_totp(user['two_fa_secret'], code):
        return 'totp'
    remaining = consume_backup_code(user['backup_codes'], code)
    if remaining is None:
        raise AuthenticationError('Invalid verification code', code='INVALID_2FA_CODE')
    cursor.execute('UPDATE users SET backup_codes = %s WHERE id = %s', (json.dumps(remaining), user['id']))
    logger.info(f"Backup code used by user {user['id']}, {len(remaining)} remaining")
    return 'backup_code'


def _require_password(user, password):
    if not isinstance(password, str) or not check_password_hash(user['password_hash'], password):
        raise AuthenticationError('Password is incorrect', code='INVALID_PASSWORD')


def disable_2fa(cursor, user, password):
    _require_password(user, password)
    cursor.execute('''UPDATE users SET two_fa_enabled = 0, two_fa_secret = NULL, backup_codes = NULL, updated_at = %s
                      WHERE id = %s''', (datetime.now(), user['id']))


def regenerate_backup_codes(cursor, user, password):
    _require_password(user, password)
    if not user['two_fa_enabled']:
        raise ValidationError('Two-factor authentication is not enabled')
    codes = generate_backup_codes()
    cursor.execute('UPDATE users SET backup_codes = %s WHERE id = %s', (hash_backup_codes(codes), user['id']))
    return codes


# --- Passwords ---
def request_password_reset(cursor, email):
    """Emails a reset link if the account exists. Callers always report success."""
    email = sanitize_string(email, 254).lower()
    cursor.execute('SELECT id, email, first_name FROM users WHERE email = %s', (email,))
    user = cursor.fetchone()
    if not user:
        logger.info(f"Password reset requested for unknown email {email}")
        return None

    token = secrets.token_urlsafe(32)
    now = datetime.now()
    cursor.execute('''INSERT INTO password_reset_tokens (user_id, token_hash, expires_at, created_at)
                      VALUES (%s, %s, %s, %s)''',
                   (user['id'], hash_token(token),
                    now + timedelta(hours=current_app.config['PASSWORD_RESET_HOURS']), now))
    reset_url = f"{current_app.config['SITE_URL']}/reset-password?token={token}"
    html = render_email('password_reset', {'first_name': user['first_name'], 'reset_url': reset_url})
    send_email(user['email'], 'Reset your password', html, f"Reset your password: {reset_url}")
    return token


def reset_password(cursor, token, new_password, now=None):
    now = now or datetime.now()
    problems = password_errors(new_password)
    if problems:
        raise ValidationError('Password does not meet requirements', code='WEAK_PASSWORD', details=problems)
    cursor.execute('''SELECT id, user_id, expires_at, used_at FROM password_reset_tokens
                      WHERE token_hash = %s FOR UPDATE''', (hash_token(str(token or '')),))
    row = cursor.fetchone()
    if not row or row['used_at'] is not None or row['expires_at'] < now:
        raise ValidationError('Reset link is invalid or has expired', code='INVALID_TOKEN')
    cursor.execute('UPDATE password_reset_tokens SET used_at = %s WHERE id = %s', (now, row['id']))
    cursor.execute('''UPDATE users SET password_hash = %s, failed_login_attempts = 0, account_locked_until = NULL,
                        updated_at = %s WHERE id = %s''', (generate_password_hash(new_password), now, row['user_id']))
    return row['user_id']


def change_password(cursor, user, current_password, new_password):
    _require_password(user, current_password)
    problems = password_errors(new_password)
    if problems:
        raise ValidationError('Password does not meet requirements', code='WEAK_PASSWORD', details=problems)
    cursor.execute('UPDATE users SET password_hash = %s, updated_at = %s WHERE id = %s',
                   (generate_password_hash(new_password), datetime.now(), user['id']))


def update_profile(cursor, user, data):
    updates = {}
    for field, length in (('first_name', 100), ('last_name', 100), ('phone', 32)):
        if field in data:
            updates[field] = sanitize_string(data[field], length)
    if not updates.get('first_name', 'x') or not updates.get('last_name', 'x'):
        raise ValidationError('Name fields cannot be empty')
    if not updates:
        raise ValidationError('No valid fields to update')
    assignments = ', '.join(f'{column} = %s' for column in updates)
    cursor.execute(f'UPDATE users SET {assignments}, updated_at = %s WHERE id = %s',
                   tuple(updates.values()) + (datetime.now(), user['id']))
    return load_user(cursor, user['id'])
