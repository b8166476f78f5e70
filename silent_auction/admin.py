import logging
from datetime import datetime, time

from silent_auction import db, lifecycle
from silent_auction.audit import log_admin_action
from silent_auction.errors import NotFound, PermissionDenied, ValidationError
from silent_auction.realtime import hub
from silent_auction.roles import SITE_ADMIN, STUDENT, can_access_school_resource
from silent_auction.validation import (pagination_meta, sanitize_search_query, sanitize_string, validate_choice,
                                       validate_role)

logger = logging.getLogger(__name__)

ACCOUNT_STATUSES = ('ACTIVE', 'SUSPENDED', 'LOCKED', 'INACTIVE')

USER_COLUMNS = '''u.id, u.email, u.first_name, u.last_name, u.role, u.school_id, u.account_status,
                  u.two_fa_enabled, u.last_login, u.created_at, s.name AS school_name'''


def _school_scope(admin, column):
    """SQL filter limiting a school admin to their own school."""
    if admin['role'] == SITE_ADMIN:
        return '1 = 1', ()
    return f'{column} = %s', (admin.get('school_id'),)


def get_dashboard_stats(cursor, admin, now=None):
    now = now or datetime.now()
    clause, params = _school_scope(admin, 'school_id')
    stats = {}

    cursor.execute(f'''SELECT
                          SUM(auction_status = %s) AS active_auctions,
                          SUM(auction_status = %s) AS pending_approvals
                       FROM auctions WHERE {clause}''', (lifecycle.LIVE, lifecycle.PENDING_APPROVAL) + params)
    row = cursor.fetchone()
    stats['active_auctions'] = int(row['active_auctions'] or 0)
    stats['pending_approvals'] = int(row['pending_approvals'] or 0)

    art_clause, art_params = _school_scope(admin, 'au.school_id')
    cursor.execute(f'''SELECT COUNT(*) AS count FROM artwork a JOIN auctions au ON a.auction_id = au.id
                       WHERE {art_clause} AND a.artwork_status IN (%s, %s)''',
                   art_params + (lifecycle.SUBMITTED, lifecycle.PENDING_APPROVAL))
    stats['pending_artwork'] = cursor.fetchone()['count']

    cursor.execute(f'''SELECT COALESCE(SUM(t.total_amount), 0) AS revenue FROM transactions t
                       JOIN auctions au ON t.auction_id = au.id
                       WHERE {art_clause} AND t.transaction_status = 'COMPLETED' AND t.created_at >= %s''',
                   art_params + (datetime.combine(now.date(), time.min),))
    stats['today_revenue'] = cursor.fetchone()['revenue']

    cursor.execute(f'''SELECT COUNT(*) AS total_users, SUM(role = %s) AS students FROM users WHERE {clause}''',
                   (STUDENT,) + params)
    row = cursor.fetchone()
    stats['total_users'] = row['total_users']
    stats['students'] = int(row['students'] or 0)

    # Sold artwork with no completed payment yet.
    cursor.execute(f'''SELECT COUNT(*) AS count FROM artwork a JOIN auctions au ON a.auction_id = au.id
                       WHERE {art_clause} AND a.artwork_status = %s AND NOT EXISTS (
                           SELECT 1 FROM transactions t WHERE t.artwork_id = a.id
                           AND t.transaction_status = 'COMPLETED')''', art_params + (lifecycle.SOLD,))
    stats['open_transactions'] = cursor.fetchone()['count']
    return stats


def get_pending_auctions(cursor, admin):
    clause, params = _school_scope(admin, 'a.school_id')
    cursor.execute(f'''SELECT a.id, a.title, a.school_id, s.name AS school_name, a.starts_at, a.ends_at,
                              a.created_by_user_id, a.updated_at,
                              (SELECT COUNT(*) FROM artwork WHERE auction_id = a.id) AS artwork_count
                       FROM auctions a JOIN schools s ON a.school_id = s.id
                       WHERE {clause} AND a.auction_status = %s ORDER BY a.updated_at''',
                   params + (lifecycle.PENDING_APPROVAL,))
    return cursor.fetchall()


def list_users(cursor, admin, filters, limit, offset):
    clause, params = _school_scope(admin, 'u.school_id')
    clauses, params = [clause], list(params)
    if filters.get('role'):
        clauses.append('u.role = %s')
        params.append(validate_role(filters['role']))
    if filters.get('status'):
        clauses.append('u.account_status = %s')
        params.append(validate_choice(filters['status'], ACCOUNT_STATUSES, 'status'))
    search = sanitize_search_query(filters.get('search'))
    if search:
        clauses.append('(u.email LIKE %s OR u.first_name LIKE %s OR u.last_name LIKE %s)')
        params.extend([f'%{search}%'] * 3)

    where = ' AND '.join(clauses)
    cursor.execute(f'SELECT COUNT(*) AS count FROM users u WHERE {where}', tuple(params))
    total = cursor.fetchone()['count']
    cursor.execute(f'''SELECT {USER_COLUMNS} FROM users u LEFT JOIN schools s ON u.school_id = s.id
                       WHERE {where} ORDER BY u.created_at DESC LIMIT %s OFFSET %s''',
                   tuple(params) + (limit, offset))
    return {'users': cursor.fetchall(), 'pagination': pagination_meta(limit, offset, total)}


def _load_managed_user(cursor, admin, user_id):
    cursor.execute('SELECT id, email, role, school_id, account_status, two_fa_enabled FROM users WHERE id = %s '
                   'FOR UPDATE', (user_id,))
    user = cursor.fetchone()
    if not user:
        raise NotFound('User not found')
    if admin['role'] != SITE_ADMIN:
        if user['role'] == SITE_ADMIN or not can_access_school_resource(admin, user['school_id']):
            raise PermissionDenied('School administrators can only manage their own school',
                                   code='CROSS_SCHOOL_ACCESS_DENIED')
    return user


def _not_self(admin, user_id, message):
    if admin['id'] == user_id:
        raise ValidationError(message, code='SELF_MODIFICATION')


def change_user_role(cursor, admin, user_id, role, reason=None):
    if admin['role'] != SITE_ADMIN:
        raise PermissionDenied('Only site administrators can change roles')
    _not_self(admin, user_id, 'You cannot change your own role')
    role = validate_role(role)
    user = _load_managed_user(cursor, admin, user_id)
    cursor.execute('UPDATE users SET role = %s, updated_at = %s WHERE id = %s', (role, datetime.now(), user_id))
    log_admin_action(cursor, admin['id'], 'USER_ROLE_CHANGED', 'user', user_id,
                     {'role': user['role']}, {'role': role}, reason)
    logger.info(f"Admin {admin['id']} changed user {user_id} role {user['role']} -> {role}")
    return {'id': user_id, 'role': role}


def change_user_status(cursor, admin, user_id, status, reason=None):
    _not_self(admin, user_id, 'You cannot change your own account status')
    status = validate_choice(status, ACCOUNT_STATUSES, 'status')
    user = _load_managed_user(cursor, admin, user_id)
    extra = ', failed_login_attempts = 0, account_locked_until = NULL' if status == 'ACTIVE' else ''
    cursor.execute(f'UPDATE users SET account_status = %s{extra}, updated_at = %s WHERE id = %s',
                   (status, datetime.now(), user_id))
    log_admin_action(cursor, admin['id'], 'USER_STATUS_CHANGED', 'user', user_id,
                     {'account_status': user['account_status']}, {'account_status': status}, reason)
    return {'id': user_id, 'account_status': status}


def reset_user_2fa(cursor, admin, user_id, reason=None):
    user = _load_managed_user(cursor, admin, user_id)
    cursor.execute('''UPDATE users SET two_fa_enabled = 0, two_fa_secret = NULL, backup_codes = NULL,
                      updated_at = %s WHERE id = %s''', (datetime.now(), user_id))
    log_admin_action(cursor, admin['id'], 'USER_2FA_RESET', 'user', user_id,
                     {'two_fa_enabled': bool(user['two_fa_enabled'])}, {'two_fa_enabled': False}, reason)
    return {'id': user_id, 'two_fa_enabled': False}


def deactivate_user(cursor, admin, user_id, reason=None):
    _not_self(admin, user_id, 'You cannot deactivate your own account')
    user = _load_managed_user(cursor, admin, user_id)
    cursor.execute('UPDATE users SET account_status = %s, updated_at = %s WHERE id = %s',
                   ('INACTIVE', datetime.now(), user_id))
    log_admin_action(cursor, admin['id'], 'USER_DEACTIVATED', 'user', user_id,
                     {'account_status': user['account_status']}, {'account_status': 'INACTIVE'}, reason)
    return {'id': user_id, 'account_status': 'INACTIVE'}


def get_audit_log(cursor, admin, filters, limit, offset):
    clauses, params = ['1 = 1'], []
    if admin['role'] != SITE_ADMIN:
        # School admins see actions taken by admins of their school.
        clauses.append('u.school_id = %s')
        params.append(admin.get('school_id'))
    if filters.get('action'):
        clauses.append('l.action = %s')
        params.append(sanitize_string(filters['action'], 100).upper())
    if filters.get('admin_id'):
        try:
            admin_id = int(filters['admin_id'])
        except ValueError:
            raise ValidationError('admin_id must be an integer')
        clauses.append('l.admin_id = %s')
        params.append(admin_id)
    if filters.get('resource_type'):
        clauses.append('l.resource_type = %s')
        params.append(sanitize_string(filters['resource_type'], 50))

    where = ' AND '.join(clauses)
    cursor.execute(f'''SELECT COUNT(*) AS count FROM admin_audit_logs l LEFT JOIN users u ON l.admin_id = u.id
                       WHERE {where}''', tuple(params))
    total = cursor.fetchone()['count']
    cursor.execute(f'''SELECT l.id, l.admin_id, u.email AS admin_email, l.action, l.resource_type, l.resource_id,
                              l.old_values, l.new_values, l.reason, l.created_at
                       FROM admin_audit_logs l LEFT JOIN users u ON l.admin_id = u.id
                       WHERE {where} ORDER BY l.created_at DESC LIMIT %s OFFSET %s''',
                   tuple(params) + (limit, offset))
    return {'entries': cursor.fetchall(), 'pagination': pagination_meta(limit, offset, total)}


def get_bid_stats(cursor, admin):
    clause, params = _school_scope(admin, 'au.school_id')
    cursor.execute(f'''SELECT COUNT(*) AS total_bids,
                              COUNT(DISTINCT b.bidder_user_id) AS unique_bidders,
                              COALESCE(AVG(b.bid_amount), 0) AS average_bid,
                              COALESCE(MAX(b.bid_amount), 0) AS highest_bid,
                              SUM(b.bid_status = %s) AS active_bids
                       FROM bids b JOIN auctions au ON b.auction_id = au.id WHERE {clause}''',
                   (lifecycle.BID_ACTIVE,) + params)
    row = cursor.fetchone()
    row['active_bids'] = int(row['active_bids'] or 0)
    return row


def get_system_health():
    pool = db.db_pool
    database_ok = db.ping()
    return {
        'status': 'healthy' if database_ok else 'degraded',
        'database': {
            'connected': database_ok,
            'pool_name': pool.pool_name if pool else None,
            'pool_size': pool.pool_size if pool else 0,
        },
        'realtime': hub.get_stats(),
        'timestamp': datetime.now().isoformat(),
    }
