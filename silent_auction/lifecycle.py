"""Auction and artwork status machines.

Status changes are written as a single conditional UPDATE so two requests (or a
request racing the sweep) can never both move the same row out of a status.
"""
from datetime import datetime

from silent_auction.errors import InvalidStateTransition, NotFound

DRAFT = 'DRAFT'
PENDING_APPROVAL = 'PENDING_APPROVAL'
APPROVED = 'APPROVED'
LIVE = 'LIVE'
ENDED = 'ENDED'
CANCELLED = 'CANCELLED'

AUCTION_STATUSES = (DRAFT, PENDING_APPROVAL, APPROVED, LIVE, ENDED, CANCELLED)

AUCTION_TRANSITIONS = {
    DRAFT: (PENDING_APPROVAL, CANCELLED),
    PENDING_APPROVAL: (APPROVED, DRAFT, CANCELLED),
    APPROVED: (LIVE, CANCELLED),
    LIVE: (ENDED, CANCELLED),
    ENDED: (),
    CANCELLED: (),
}

SUBMITTED = 'SUBMITTED'
REJECTED = 'REJECTED'
WITHDRAWN = 'WITHDRAWN'
SOLD = 'SOLD'
UNSOLD = 'UNSOLD'

ARTWORK_STATUSES = (DRAFT, SUBMITTED, PENDING_APPROVAL, APPROVED, REJECTED, WITHDRAWN, SOLD, UNSOLD)

ARTWORK_TRANSITIONS = {
    DRAFT: (PENDING_APPROVAL, WITHDRAWN),
    SUBMITTED: (PENDING_APPROVAL, WITHDRAWN),
    PENDING_APPROVAL: (APPROVED, REJECTED, WITHDRAWN),
    REJECTED: (PENDING_APPROVAL, WITHDRAWN),
    APPROVED: (SOLD, UNSOLD, WITHDRAWN),
    WITHDRAWN: (),
    SOLD: (),
    UNSOLD: (),
}

BID_ACTIVE = 'ACTIVE'
BID_OUTBID = 'OUTBID'
BID_ACCEPTED = 'ACCEPTED'
BID_REJECTED = 'REJECTED'
BID_CANCELLED = 'CANCELLED'


def sources_for(target, transitions):
    return tuple(status for status, targets in transitions.items() if target in targets)


def can_transition(current, target, transitions=AUCTION_TRANSITIONS):
    return target in transitions.get(current, ())


def _compare_and_set(cursor, table, status_column, record_id, target, transitions, extra, label):
    sources = sources_for(target, transitions)
    if not sources:
        raise InvalidStateTransition(f'{label} cannot move to {target}')

    assignments = [f'{status_column} = %s', 'updated_at = %s']
    params = [target, datetime.now()]
    for column, value in (extra or {}).items():
        assignments.append(f'{column} = %s')
        params.append(value)
    placeholders = ', '.join(['%s'] * len(sources))
    params.append(record_id)
    params.extend(sources)

    cursor.execute(f'UPDATE {table} SET {", ".join(assignments)} '
                   f'WHERE id = %s AND {status_column} IN ({placeholders})', tuple(params))
    if cursor.rowcount == 1:
        return True

    cursor.execute(f'SELECT {status_column} AS status FROM {table} WHERE id = %s', (record_id,))
    row = cursor.fetchone()
    if not row:
        raise NotFound(f'{label} not found')
    if row['status'] == target:
        return False
    raise InvalidStateTransition(f"Cannot move {label.lower()} from {row['status']} to {target}",
                                 details={'current_status': row['status'], 'target_status': target})


def transition_auction(cursor, auction_id, target, extra=None):
    """Moves an auction to target. Returns False when it was already there."""
    return _compare_and_set(cursor, 'auctions', 'auction_status', auction_id, target,
                            AUCTION_TRANSITIONS, extra, 'Auction')


def transition_artwork(cursor, artwork_id, target, extra=None):
    return _compare_and_set(cursor, 'artwork', 'artwork_status', artwork_id, target,
                            ARTWORK_TRANSITIONS, extra, 'Artwork')


def require_status(record, allowed, label='Auction', status_key='auction_status'):
    if record[status_key] not in allowed:
        raise InvalidStateTransition(
            f"{label} is {record[status_key]}; this action requires {' or '.join(allowed)}",
            details={'current_status': record[status_key]})
