import logging
import os
from datetime import datetime

from flask import current_app
from werkzeug.utils import secure_filename

from silent_auction import lifecycle
from silent_auction.audit import log_audit
from silent_auction.auctions import load_auction
from silent_auction.errors import InvalidStateTransition, NotFound, PermissionDenied, ValidationError
from silent_auction.notifications import queue_notification
from silent_auction.roles import (can_access_school_resource, can_approve_artwork, can_edit_auction,
                                  can_view_artwork, has_permission, is_resource_owner, sanitize_response_by_role)
from silent_auction.validation import parse_amount, sanitize_string

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif', 'webp', 'bmp'}
OPEN_AUCTION_STATUSES = (lifecycle.DRAFT, lifecycle.PENDING_APPROVAL, lifecycle.APPROVED)
EDITABLE_STATUSES = (lifecycle.DRAFT, lifecycle.PENDING_APPROVAL, lifecycle.REJECTED)
EDITABLE_FIELDS = ('title', 'description', 'artist_name', 'artist_grade', 'medium', 'dimensions',
                   'starting_bid_amount', 'reserve_bid_amount')


def upload_folder():
    return current_app.config.get('UPLOAD_FOLDER') or os.path.join(current_app.root_path, 'static', 'uploads')


def check_image(file):
    if not file or not file.filename:
        return False
    ext = file.filename.rsplit('.', 1)[-1].lower() if '.' in file.filename else ''
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise ValidationError(f"Invalid file type. Allowed: {', '.join(sorted(ALLOWED_IMAGE_EXTENSIONS))}")
    # Add a file size limit
    if len(file.read()) > current_app.config['MAX_UPLOAD_BYTES']:
        raise ValidationError('File is too large. The limit is 5MB.')
    file.seek(0)  # Reset file pointer after reading
    return True


def save_image(file):
    """Stores an uploaded image and returns its public URL, or None when no file was sent."""
    if not check_image(file):
        return None
    folder = upload_folder()
    os.makedirs(folder, exist_ok=True)
    filename = secure_filename(f"{datetime.now().strftime('%Y%m%d%H%M%S')}_{file.filename}")
    file.save(os.path.join(folder, filename))
    # Store a direct URL path for the uploaded file
    return f"/uploads/{filename}"


def discard_image(image_url):
    if not image_url:
        return
    path = os.path.join(upload_folder(), image_url.rsplit('/', 1)[-1])
    try:
        os.remove(path)
    except OSError as e:
        logger.warning(f"Could not remove upload {path}: {e}")


def validate_artwork_fields(data, partial=False, maximum=None):
    cleaned = {}
    if not partial or 'title' in data:
        cleaned['title'] = sanitize_string(data.get('title'), 255)
        if not cleaned['title']:
            raise ValidationError('Artwork title is required')
    if not partial or 'artist_name' in data:
        cleaned['artist_name'] = sanitize_string(data.get('artist_name'), 255)
        if not cleaned['artist_name']:
            raise ValidationError('Artist name is required')
    for field, length in (('description', 5000), ('artist_grade', 20), ('medium', 100), ('dimensions', 100)):
        if field in data:
            cleaned[field] = sanitize_string(data[field], length) or None

    kwargs = {'maximum': maximum} if maximum is not None else {}
    if not partial or 'starting_bid_amount' in data:
        cleaned['starting_bid_amount'] = parse_amount(data.get('starting_bid_amount'), field='Starting bid', **kwargs)
    if data.get('reserve_bid_amount') not in (None, ''):
        cleaned['reserve_bid_amount'] = parse_amount(data['reserve_bid_amount'], field='Reserve price', **kwargs)
        if 'starting_bid_amount' in cleaned and cleaned['reserve_bid_amount'] < cleaned['starting_bid_amount']:
            raise ValidationError('Reserve price cannot be lower than the starting bid')
    return cleaned


def load_artwork(cursor, artwork_id, lock=False):
    cursor.execute(f'''SELECT * FROM artwork WHERE id = %s{' FOR UPDATE' if lock else ''}''', (artwork_id,))
    artwork = cursor.fetchone()
    if not artwork:
        raise NotFound('Artwork not found')
    return artwork


def create_artwork(cursor, user, auction_id, data, image_file=None):
    if not has_permission(user['role'], 'artwork:create'):
        raise PermissionDenied('Your role cannot submit artwork')
    auction = load_auction(cursor, auction_id, lock=True)
    if not can_access_school_resource(user, auction['school_id']):
        raise PermissionDenied('You can only submit artwork to your own school', code='CROSS_SCHOOL_ACCESS_DENIED')
    lifecycle.require_status(auction, OPEN_AUCTION_STATUSES)
    cleaned = validate_artwork_fields(data, maximum=current_app.config['MAX_BID_AMOUNT'])

    status = lifecycle.DRAFT if data.get('save_as_draft') else lifecycle.PENDING_APPROVAL
    now = datetime.now()
    # Nothing is written to the upload folder until the request has passed every check.
    image_url = save_image(image_file)
    try:
        cursor.execute('''INSERT INTO artwork (auction_id, created_by_user_id, title, description, artist_name,
                            artist_grade, medium, dimensions, starting_bid_amount, reserve_bid_amount, image_url,
                            artwork_status, created_at, updated_at)
                          VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)''',
                       (auction_id, user['id'], cleaned['title'], cleaned.get('description'), cleaned['artist_name'],
                        cleaned.get('artist_grade'), cleaned.get('medium'), cleaned.get('dimensions'),
                        cleaned['starting_bid_amount'], cleaned.get('reserve_bid_amount'), image_url, status, now, now))
        artwork_id = cursor.lastrowid
        log_audit(cursor, user['id'], 'ARTWORK_CREATED', 'artwork', artwork_id, {'auction_id': auction_id})
        return load_artwork(cursor, artwork_id)
    except Exception:
        discard_image(image_url)
        raise


def get_artwork(cursor, artwork_id, user):
    artwork = load_artwork(cursor, artwork_id)
    auction = load_auction(cursor, artwork['auction_id'])
    if not can_view_artwork(user, artwork, auction):
        raise NotFound('Artwork not found')
    return sanitize_response_by_role(artwork, user)


def _require_owner_or_editor(user, artwork, auction):
    if not (is_resource_owner(user, artwork['created_by_user_id']) or can_edit_auction(user, auction)):
        raise PermissionDenied('You are not authorized to modify this artwork.')


def update_artwork(cursor, artwork_id, user, data, image_file=None):
    artwork = load_artwork(cursor, artwork_id, lock=True)
    auction = load_auction(cursor, artwork['auction_id'])
    _require_owner_or_editor(user, artwork, auction)
    lifecycle.require_status(artwork, EDITABLE_STATUSES, 'Artwork', 'artwork_status')

    cleaned = validate_artwork_fields({k: v for k, v in data.items() if k in EDITABLE_FIELDS}, partial=True,
                                      maximum=current_app.config['MAX_BID_AMOUNT'])
    starting = cleaned.get('starting_bid_amount', artwork['starting_bid_amount'])
    reserve = cleaned.get('reserve_bid_amount', artwork['reserve_bid_amount'])
    if reserve is not None and reserve < starting:
        raise ValidationError('Reserve price cannot be lower than the starting bid')
    if not cleaned and not check_image(image_file):
        raise ValidationError('No valid fields to update')

    image_url = save_image(image_file)
    if image_url:
        cleaned['image_url'] = image_url
    try:
        assignments = ', '.join(f'{column} = %s' for column in cleaned)
        cursor.execute(f'UPDATE artwork SET {assignments}, updated_at = %s WHERE id = %s',
                       tuple(cleaned.values()) + (datetime.now(), artwork_id))
        # Edits to rejected work go back for review.
        if artwork['artwork_status'] == lifecycle.REJECTED:
            lifecycle.transition_artwork(cursor, artwork_id, lifecycle.PENDING_APPROVAL, {'rejection_reason': None})
        return load_artwork(cursor, artwork_id)
    except Exception:
        discard_image(image_url)
        raise


def submit_artwork(cursor, artwork_id, user):
    artwork = load_artwork(cursor, artwork_id, lock=True)
    auction = load_auction(cursor, artwork['auction_id'])
    _require_owner_or_editor(user, artwork, auction)
    lifecycle.transition_artwork(cursor, artwork_id, lifecycle.PENDING_APPROVAL)
    return load_artwork(cursor, artwork_id)


def _review_context(artwork, auction, **extra):
    return dict(extra, artwork_title=artwork['title'], auction_title=auction['title'], auction_id=auction['id'])


def approve_artwork(cursor, artwork_id, user):
    artwork = load_artwork(cursor, artwork_id, lock=True)
    auction = load_auction(cursor, artwork['auction_id'])
    if not can_approve_artwork(user, artwork, auction):
        raise PermissionDenied('You are not allowed to approve this artwork')
    lifecycle.require_status(auction, OPEN_AUCTION_STATUSES + (lifecycle.LIVE,))
    lifecycle.transition_artwork(cursor, artwork_id, lifecycle.APPROVED,
                                 {'approved_by_user_id': user['id'], 'rejection_reason': None})
    log_audit(cursor, user['id'], 'ARTWORK_APPROVED', 'artwork', artwork_id)
    if artwork['created_by_user_id'] and artwork['created_by_user_id'] != user['id']:
        queue_notification(cursor, artwork['created_by_user_id'], 'ARTWORK_APPROVED',
                           _review_context(artwork, auction))
    return load_artwork(cursor, artwork_id)


def reject_artwork(cursor, artwork_id, user, reason):
    reason = sanitize_string(reason, 2000)
    if not reason:
        raise ValidationError('A reason is required when rejecting artwork')
    artwork = load_artwork(cursor, artwork_id, lock=True)
    auction = load_auction(cursor, artwork['auction_id'])
    if not can_approve_artwork(user, artwork, auction):
        raise PermissionDenied('You are not allowed to review this artwork')
    lifecycle.transition_artwork(cursor, artwork_id, lifecycle.REJECTED, {'rejection_reason': reason})
    log_audit(cursor, user['id'], 'ARTWORK_REJECTED', 'artwork', artwork_id, {'reason': reason})
    if artwork['created_by_user_id'] and artwork['created_by_user_id'] != user['id']:
        queue_notification(cursor, artwork['created_by_user_id'], 'ARTWORK_REJECTED',
                           _review_context(artwork, auction, reason=reason))
    return load_artwork(cursor, artwork_id)


def withdraw_artwork(cursor, artwork_id, user):
    artwork = load_artwork(cursor, artwork_id, lock=True)
    auction = load_auction(cursor, artwork['auction_id'])
    _require_owner_or_editor(user, artwork, auction)
    if artwork['bid_count']:
        raise InvalidStateTransition('Artwork with bids cannot be withdrawn', code='ARTWORK_HAS_BIDS')
    lifecycle.transition_artwork(cursor, artwork_id, lifecycle.WITHDRAWN)
    log_audit(cursor, user['id'], 'ARTWORK_WITHDRAWN', 'artwork', artwork_id)
    return load_artwork(cursor, artwork_id)
