import csv
import io
import logging
import uuid
from datetime import datetime, timedelta

from flask import current_app

from silent_auction import lifecycle
from silent_auction.audit import log_audit
from silent_auction.errors import InvalidStateTransition, NotFound, ValidationError
from silent_auction.roles import SITE_ADMIN
from silent_auction.validation import sanitize_string, validate_email

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ('email', 'first_name', 'last_name')
MAX_STUDENT_ROWS = 500

TOKEN_PENDING = 'PENDING'
TOKEN_USED = 'USED'
TOKEN_REVOKED = 'REVOKED'


def parse_student_csv(text):
    """Parses a class roster. Returns (students, errors); errors are 'Row N: ...' strings."""
    if isinstance(text, bytes):
        try:
            text = text.decode('utf-8-sig')
        except UnicodeDecodeError:
            raise ValidationError('CSV must be UTF-8 encoded')
    if not isinstance(text, str):
        raise ValidationError('CSV must be text')
    reader = csv.DictReader(io.StringIO(text))
    headers = [h.strip().lower() for h in (reader.fieldnames or [])]
    missing = [column for column in REQUIRED_COLUMNS if column not in headers]
    if missing:
        raise ValidationError(f"CSV is missing required columns: {', '.join(missing)}")
    reader.fieldnames = headers

    students, errors, seen = [], [], set()
    for row_number, row in enumerate(reader, start=2):
        if row_number - 1 > MAX_STUDENT_ROWS:
            raise ValidationError(f'CSV cannot contain more than {MAX_STUDENT_ROWS} students')
        email = sanitize_string(row.get('email'), 254).lower()
        first_name = sanitize_string(row.get('first_name'), 100)
        last_name = sanitize_string(row.get('last_name'), 100)
        if not email and not first_name and not last_name:
            continue
        if not validate_email(email):
            errors.append(f'Row {row_number}: invalid email "{email}"')
            continue
        if not first_name or not last_name:
            errors.append(f'Row {row_number}: first_name and last_name are required')
            continue
        if email in seen:
            errors.append(f'Row {row_number}: duplicate email "{email}"')
            continue
        seen.add(email)
        students.append({'email': email, 'first_name': first_name, 'last_name': last_name})
    return students, errors


def registration_link(token):
    return f"{current_app.config['SITE_URL'].rstrip('/')}/register?token={token}"


def create_registration_tokens(cursor, teacher, students, now=None):
    now = now or datetime.now()
    expires_at = now + timedelta(days=current_app.config['REGISTRATION_TOKEN_DAYS'])
    created, skipped = [], []
    for student in students:
        cursor.execute('SELECT id FROM users WHERE email = %s', (student['email'],))
        if cursor.fetchone():
            skipped.append({'email': student['email'], 'reason': 'Account already exists'})
            continue
        token = str(uuid.uuid4())
        cursor.execute('''INSERT INTO registration_tokens (token, teacher_user_id, school_id, student_email,
                            student_first_name, student_last_name, token_status, expires_at, created_at)
                          VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)''',
                       (token, teacher['id'], teacher.get('school_id'), student['email'], student['first_name'],
                        student['last_name'], TOKEN_PENDING, expires_at, now))
        created.append({'id': cursor.lastrowid, 'email': student['email'], 'token': token,
                        'registration_link': registration_link(token), 'expires_at': expires_at})
    log_audit(cursor, teacher['id'], 'STUDENTS_INVITED', 'registration_token', None,
              {'created': len(created), 'skipped': len(skipped)})
    logger.info(f"Teacher {teacher['id']} created {len(created)} registration tokens")
    return {'tokens': created, 'skipped': skipped}


def _owner_clause(teacher, column):
    if teacher['role'] == SITE_ADMIN:
        return '1 = 1', ()
    return f'{column} = %s', (teacher['id'],)


def get_submissions(cursor, teacher):
    clause, params = _owner_clause(teacher, 'au.created_by_user_id')
    cursor.execute(f'''SELECT a.id, a.title, a.artist_name, a.artist_grade, a.medium, a.image_url,
                              a.starting_bid_amount, a.artwork_status, a.created_at,
                              au.id AS auction_id, au.title AS auction_title
                       FROM artwork a JOIN auctions au ON a.auction_id = au.id
                       WHERE {clause} AND a.artwork_status IN (%s, %s)
                       ORDER BY a.created_at''',
                   params + (lifecycle.SUBMITTED, lifecycle.PENDING_APPROVAL))
    return cursor.fetchall()


def get_teacher_auctions(cursor, teacher):
    clause, params = _owner_clause(teacher, 'au.created_by_user_id')
    cursor.execute(f'''SELECT au.id, au.title, au.auction_status, au.starts_at, au.ends_at,
                              COUNT(DISTINCT a.id) AS artwork_count,
                              COALESCE(SUM(a.bid_count), 0) AS bid_count,
                              MAX(a.current_bid) AS current_high_bid
                       FROM auctions au LEFT JOIN artwork a ON a.auction_id = au.id
                       WHERE {clause}
                       GROUP BY au.id, au.title, au.auction_status, au.starts_at, au.ends_at
                       ORDER BY au.created_at DESC''', params)
    return cursor.fetchall()


def get_token(cursor, teacher, token_id):
    clause, params = _owner_clause(teacher, 'teacher_user_id')
    cursor.execute(f'''SELECT id, token, student_email, student_first_name, student_last_name, token_status,
                              expires_at, used_at, created_at
                       FROM registration_tokens WHERE id = %s AND {clause}''', (token_id,) + params)
    token = cursor.fetchone()
    if not token:
        raise NotFound('Registration token not found')
    token['registration_link'] = registration_link(token['token'])
    return token


def revoke_token(cursor, teacher, token_id):
    token = get_token(cursor, teacher, token_id)
    if token['token_status'] != TOKEN_PENDING:
        raise InvalidStateTransition(f"Token is already {token['token_status'].lower()}")
    cursor.execute('UPDATE registration_tokens SET token_status = %s WHERE id = %s AND token_status = %s',
                   (TOKEN_REVOKED, token_id, TOKEN_PENDING))
    log_audit(cursor, teacher['id'], 'REGISTRATION_TOKEN_REVOKED', 'registration_token', token_id)
    return {'id': token_id, 'token_status': TOKEN_REVOKED}
