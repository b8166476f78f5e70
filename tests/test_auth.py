import json
from datetime import datetime, timedelta

import pyotp
import pytest
from flask import session
from werkzeug.security import generate_password_hash

from silent_auction import auth
from silent_auction.errors import AuthenticationError, PermissionDenied, ValidationError

NOW = datetime(2026, 3, 14, 12, 0, 0)
PASSWORD = 'Correct-Horse-9'


def stored_user(**overrides):
    user = {'id': 3, 'email': 'ada@example.com', 'password_hash': generate_password_hash(PASSWORD),
            'first_name': 'Ada', 'last_name': 'Lovelace', 'phone': None, 'role': 'BIDDER', 'school_id': None,
            'account_status': 'ACTIVE', 'two_fa_enabled': 0, 'two_fa_secret': None, 'backup_codes': None,
            'failed_login_attempts': 0, 'account_locked_until': None, 'last_login': None, 'created_at': NOW}
    user.update(overrides)
    return user


def test_authenticate_success_resets_counter(app_context, make_cursor):
    cursor = make_cursor(fetchone=[stored_user(failed_login_attempts=2)])
    user, error = auth.authenticate(cursor, 'ADA@example.com', PASSWORD, now=NOW)
    assert error is None
    assert user['id'] == 3
    assert cursor.statements('UPDATE users SET failed_login_attempts = 0, account_locked_until = NULL')


def test_wrong_password_counts_attempt(app_context, make_cursor):
    cursor = make_cursor(fetchone=[stored_user(failed_login_attempts=1)])
    user, error = auth.authenticate(cursor, 'ada@example.com', 'wrong', now=NOW)
    assert user is None
    assert isinstance(error, AuthenticationError)
    assert cursor.executed[-1] == ('UPDATE users SET failed_login_attempts = %s WHERE id = %s', (2, 3))


def test_fifth_failure_locks_account(app_context, make_cursor):
    cursor = make_cursor(fetchone=[stored_user(failed_login_attempts=4)])
    _, error = auth.authenticate(cursor, 'ada@example.com', 'wrong', now=NOW)
    assert error.code == 'INVALID_CREDENTIALS'
    sql, params = cursor.executed[-1]
    assert 'account_locked_until = %s' in sql
    assert params[0] == NOW + timedelta(minutes=30)


def test_locked_account_is_refused(app_context, make_cursor):
    cursor = make_cursor(fetchone=[stored_user(account_locked_until=NOW + timedelta(minutes=10))])
    with pytest.raises(AuthenticationError) as exc:
        auth.authenticate(cursor, 'ada@example.com', PASSWORD, now=NOW)
    assert exc.value.code == 'ACCOUNT_LOCKED'


def test_suspended_account_is_refused(app_context, make_cursor):
    cursor = make_cursor(fetchone=[stored_user(account_status='SUSPENDED')])
    with pytest.raises(PermissionDenied):
        auth.authenticate(cursor, 'ada@example.com', PASSWORD, now=NOW)


def test_unknown_email(app_context, make_cursor):
    with pytest.raises(AuthenticationError):
        auth.authenticate(make_cursor(), 'nobody@example.com', PASSWORD, now=NOW)


def registration(**overrides):
    data = {'email': 'Grace@Example.com', 'password': PASSWORD, 'first_name': 'Grace', 'last_name': 'Hopper'}
    data.update(overrides)
    return data


def test_register_rejects_weak_password(make_cursor):
    with pytest.raises(ValidationError) as exc:
        auth.register_user(make_cursor(), registration(password='weak'))
    assert exc.value.code == 'WEAK_PASSWORD'
    assert 'Password must be at least 12 characters long' in exc.value.details


def test_register_rejects_taken_email(make_cursor):
    with pytest.raises(ValidationError) as exc:
        auth.register_user(make_cursor(fetchone=[{'id': 1}]), registration())
    assert exc.value.code == 'EMAIL_TAKEN'


def test_register_with_token_creates_student(make_cursor):
    token_row = {'id': 8, 'school_id': 2, 'student_email': 'grace@example.com', 'token_status': 'PENDING',
                 'expires_at': datetime.now() + timedelta(days=1)}
    cursor = make_cursor(fetchone=[None, token_row, stored_user(id=2, role='STUDENT')])
    auth.register_user(cursor, registration(registration_token='abc'))
    insert = [params for sql, params in cursor.executed if sql.startswith('INSERT INTO users')][0]
    assert insert[0] == 'grace@example.com'
    assert insert[5:7] == ('STUDENT', 2)
    assert cursor.statements("UPDATE registration_tokens SET token_status = 'USED'")


def test_register_token_for_other_email(make_cursor):
    token_row = {'id': 8, 'school_id': 2, 'student_email': 'someone@example.com', 'token_status': 'PENDING',
                 'expires_at': datetime.now() + timedelta(days=1)}
    with pytest.raises(ValidationError) as exc:
        auth.register_user(make_cursor(fetchone=[None, token_row]), registration(registration_token='abc'))
    assert exc.value.code == 'INVALID_TOKEN'


def test_backup_codes_are_single_use():
    codes = auth.generate_backup_codes()
    assert len(set(codes)) == auth.BACKUP_CODE_COUNT
    stored = auth.hash_backup_codes(codes)
    assert codes[0] not in stored

    remaining = auth.consume_backup_code(stored, codes[0].lower())
    assert len(remaining) == auth.BACKUP_CODE_COUNT - 1
    assert auth.consume_backup_code(json.dumps(remaining), codes[0]) is None


def test_verify_totp(app_context):
    secret = pyotp.random_base32()
    assert auth.verify_totp(secret, pyotp.TOTP(secret).now())
    assert not auth.verify_totp(secret, '')
    assert not auth.verify_totp(None, '123456')


def test_second_factor_accepts_backup_code(app_context, make_cursor):
    codes = auth.generate_backup_codes()
    user = stored_user(two_fa_enabled=1, two_fa_secret=pyotp.random_base32(),
                       backup_codes=auth.hash_backup_codes(codes))
    cursor = make_cursor()
    assert auth.verify_second_factor(cursor, user, codes[3]) == 'backup_code'
    sql, params = cursor.executed[0]
    assert sql == 'UPDATE users SET backup_codes = %s WHERE id = %s'
    assert len(json.loads(params[0])) == auth.BACKUP_CODE_COUNT - 1


def test_second_factor_rejects_bad_code(app_context, make_cursor):
    user = stored_user(two_fa_enabled=1, two_fa_secret=pyotp.random_base32(), backup_codes='[]')
    with pytest.raises(AuthenticationError):
        auth.verify_second_factor(make_cursor(), user, 'NOPE')


def test_2fa_setup_keeps_secret_in_session(app):
    with app.test_request_context('/api/auth/2fa/setup', method='POST'):
        setup = auth.begin_2fa_setup(stored_user())
        assert session['pending_2fa_secret'] == setup['secret']
        assert setup['otpauth_url'].startswith('otpauth://totp/')
        assert setup['qr_code_base64']


def test_2fa_setup_refused_when_enabled(app):
    with app.test_request_context('/api/auth/2fa/setup', method='POST'):
        with pytest.raises(ValidationError):
            auth.begin_2fa_setup(stored_user(two_fa_enabled=1))


def test_start_session(app):
    with app.test_request_context('/'):
        session['pending_2fa_user_id'] = 3
        auth.start_session(stored_user(role='SCHOOL_ADMIN', school_id=4))
        assert session['user_id'] == 3
        assert session['user_name'] == 'Ada Lovelace'
        assert session['is_admin'] is True
        assert 'pending_2fa_user_id' not in session


def test_authenticate_rejects_non_string_password(app_context, make_cursor):
    cursor = make_cursor(fetchone=[stored_user()])
    with pytest.raises(ValidationError):
        auth.authenticate(cursor, 'ada@example.com', 12345, now=NOW)
    assert cursor.executed == []


def test_second_factor_rejects_numeric_code(app_context, make_cursor):
    user = stored_user(two_fa_enabled=1, two_fa_secret=None,
                       backup_codes=auth.hash_backup_codes(auth.generate_backup_codes()))
    with pytest.raises(AuthenticationError) as exc:
        auth.verify_second_factor(make_cursor(), user, 123456)
    assert exc.value.code == 'INVALID_2FA_CODE'


def test_numeric_password_confirmation_is_refused(make_cursor):
    with pytest.raises(AuthenticationError) as exc:
        auth.disable_2fa(make_cursor(), stored_user(two_fa_enabled=1), 12345)
    assert exc.value.code == 'INVALID_PASSWORD'


def test_request_password_reset_stores_only_the_hash(app_context, make_cursor):
    cursor = make_cursor(fetchone=[{'id': 3, 'email': 'ada@example.com', 'first_name': 'Ada'}])
    token = auth.request_password_reset(cursor, ' ADA@example.com ')
    [(_, params)] = [(sql, p) for sql, p in cursor.executed if sql.startswith('INSERT INTO password_reset_tokens')]
    assert params[0] == 3
    assert params[1] == auth.hash_token(token)
    assert token not in params


def test_request_password_reset_for_unknown_email(app_context, make_cursor):
    cursor = make_cursor()
    assert auth.request_password_reset(cursor, 'nobody@example.com') is None
    assert not cursor.statements('INSERT')


@pytest.mark.parametrize('row', [
    None,
    {'id': 1, 'user_id': 3, 'expires_at': NOW + timedelta(hours=1), 'used_at': NOW - timedelta(minutes=5)},
    {'id': 1, 'user_id': 3, 'expires_at': NOW - timedelta(seconds=1), 'used_at': None},
])
def test_reset_password_rejects_used_or_expired_token(make_cursor, row):
    cursor = make_cursor(fetchone=[row])
    with pytest.raises(ValidationError) as exc:
        auth.reset_password(cursor, 'token', 'N3w-Password-Here', now=NOW)
    assert exc.value.code == 'INVALID_TOKEN'
    assert not cursor.statements('UPDATE')


def test_reset_password_clears_lockout(make_cursor):
    row = {'id': 8, 'user_id': 3, 'expires_at': NOW + timedelta(minutes=30), 'used_at': None}
    cursor = make_cursor(fetchone=[row])
    assert auth.reset_password(cursor, 'token', 'N3w-Password-Here', now=NOW) == 3
    assert cursor.executed[1] == ('UPDATE password_reset_tokens SET used_at = %s WHERE id = %s', (NOW, 8))
    sql, params = cursor.executed[2]
    assert 'failed_login_attempts = 0, account_locked_until = NULL' in sql
    assert params[-1] == 3


def test_reset_password_with_numeric_token(make_cursor):
    with pytest.raises(ValidationError):
        auth.reset_password(make_cursor(), 424242, 'N3w-Password-Here', now=NOW)
