import re
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from silent_auction.errors import ValidationError
from silent_auction.roles import ROLE_HIERARCHY

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
SEARCH_STRIP_RE = re.compile(r"[%_;'\"\\*]")
CENTS = Decimal('0.01')

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def sanitize_string(value, max_length=255):
    if value is None:
        return ''
    value = str(value).replace('\x00', '').strip()
    return value[:max_length]


def validate_email(email):
    return bool(email) and len(email) <= 254 and EMAIL_RE.match(email) is not None


def password_errors(password):
    """Lists every unmet password rule; empty when the password is strong enough."""
    errors = []
    if not isinstance(password, str):
        password = ''
    if len(password) < 12:
        errors.append('Password must be at least 12 characters long')
    if not re.search(r'[A-Z]', password):
        errors.append('Password must contain an uppercase letter')
    if not re.search(r'[a-z]', password):
        errors.append('Password must contain a lowercase letter')
    if not re.search(r'\d', password):
        errors.append('Password must contain a number')
    if not re.search(r'[^A-Za-z0-9]', password):
        errors.append('Password must contain a special character')
    return errors


def validate_url(url):
    return bool(url) and re.match(r'^https?://[^\s/$.?#][^\s]*$', url, re.IGNORECASE) is not None


def sanitize_search_query(query):
    return SEARCH_STRIP_RE.sub('', sanitize_string(query, 100))


def parse_amount(value, maximum=Decimal('999999.99'), field='amount'):
    """Parses a positive money amount into a two-place Decimal."""
    if value is None or value == '' or isinstance(value, bool):
        raise ValidationError(f'{field} is required')
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f'{field} must be a number')
    if not amount.is_finite():
        raise ValidationError(f'{field} must be a number')
    if amount > maximum:
        raise ValidationError(f'{field} must not exceed {maximum}', code='AMOUNT_TOO_LARGE')
    # Sub-cent amounts round to zero.
    if amount <= 0 or amount.quantize(CENTS, rounding=ROUND_HALF_UP) <= 0:
        raise ValidationError(f'{field} must be greater than zero')
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_datetime(value, field='date'):
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if not value:
        raise ValidationError(f'{field} is required')
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'Invalid {field}; use ISO 8601 (YYYY-MM-DDTHH:MM)')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def parse_pagination(args):
    try:
        limit = int(args.get('limit', DEFAULT_PAGE_SIZE))
        offset = int(args.get('offset', 0))
    except (TypeError, ValueError):
        raise ValidationError('limit and offset must be integers')
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)
    return limit, offset


def pagination_meta(limit, offset, total):
    return {
        'limit': limit,
        'offset': offset,
        'total': total,
        'pages': (total + limit - 1) // limit if limit else 0,
        'has_more': offset + limit < total,
    }


def validate_choice(value, choices, field):
    if value not in choices:
        raise ValidationError(f"Invalid {field}. Must be one of: {', '.join(choices)}")
    return value


def validate_role(role):
    return validate_choice(role, ROLE_HIERARCHY, 'role')
