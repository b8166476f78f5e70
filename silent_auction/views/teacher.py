import logging

from flask import Blueprint, request

from silent_auction import db, teacher
from silent_auction.errors import ValidationError
from silent_auction.roles import SCHOOL_ADMIN, SITE_ADMIN, TEACHER, current_user, role_required
from silent_auction.views import get_json, ok

logger = logging.getLogger(__name__)

bp = Blueprint('teacher', __name__, url_prefix='/api/teacher')

teacher_required = role_required(TEACHER, SCHOOL_ADMIN, SITE_ADMIN)


@bp.route('/csv-upload', methods=['POST'])
@teacher_required
def csv_upload():
    file = request.files.get('file')
    if file and file.filename:
        if not file.filename.lower().endswith('.csv'):
            raise ValidationError('Please upload a .csv file')
        text = file.read()
    else:
        text = get_json().get('csv')
    if not text:
        raise ValidationError('CSV file is required')

    students, errors = teacher.parse_student_csv(text)
    if not students:
        raise ValidationError('No valid students found in CSV', details=errors)
    with db.transaction() as c:
        result = teacher.create_registration_tokens(c, current_user(), students)
    return ok(201, message=f"Created {len(result['tokens'])} registration links", errors=errors, **result)


@bp.route('/submissions')
@teacher_required
def submissions():
    with db.transaction() as c:
        items = teacher.get_submissions(c, current_user())
    return ok(submissions=items)


@bp.route('/auctions')
@teacher_required
def auctions():
    with db.transaction() as c:
        items = teacher.get_teacher_auctions(c, current_user())
    return ok(auctions=items)


@bp.route('/tokens/<int:token_id>')
@teacher_required
def get_token(token_id):
    with db.transaction() as c:
        token = teacher.get_token(c, current_user(), token_id)
    return ok(token=token)


@bp.route('/tokens/<int:token_id>', methods=['DELETE'])
@teacher_required
def revoke_token(token_id):
    with db.transaction() as c:
        result = teacher.revoke_token(c, current_user(), token_id)
    return ok(message='Registration link revoked', token=result)
