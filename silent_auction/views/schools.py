from flask import Blueprint, request

from silent_auction import schools
from silent_auction.errors import ValidationError
from silent_auction.roles import current_user, is_admin
from silent_auction.views import ok

bp = Blueprint('schools', __name__, url_prefix='/api/schools')


def _state_arg(value):
    if not value:
        return None
    value = value.strip().upper()
    if len(value) != 2 or not value.isalpha():
        raise ValidationError('State must be a two-letter code')
    return value


@bp.route('')
def list_schools():
    state = _state_arg(request.args.get('state'))
    limit = max(1, min(request.args.get('limit', schools.MAX_RESULTS, type=int), schools.MAX_RESULTS))
    # Only admins may bypass the cache and hit the directory API on demand.
    force_refresh = request.args.get('refresh') == 'true' and is_admin(current_user())
    items = schools.get_schools(state, request.args.get('city'), request.args.get('search'), limit,
                                force_refresh=force_refresh)
    return ok(schools=items, count=len(items))


@bp.route('/states')
def list_states():
    return ok(states=schools.get_states())


@bp.route('/by-state/<state>')
def schools_by_state(state):
    state = _state_arg(state)
    items = schools.get_schools(state)
    return ok(state=state, schools=items, count=len(items))
