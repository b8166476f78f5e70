from flask import jsonify, request

from silent_auction.errors import ValidationError
from silent_auction.realtime import to_jsonable


def ok(status_code=200, **payload):
    """JSON success response; Decimals and datetimes are made JSON serializable."""
    return jsonify(to_jsonable(dict(payload, success=True))), status_code


def get_json():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def form_or_json():
    """Multipart uploads send fields as form data; everything else is JSON."""
    if request.files or request.form:
        return request.form.to_dict()
    return get_json()


def client_ip():
    return request.headers.get('X-Forwarded-For', request.remote_addr or '').split(',')[0].strip()


def register_blueprints(app):
    from silent_auction.views import admin, auctions, auth, bids, pages, payments, schools, teacher, users

    for module in (pages, auth, auctions, bids, users, payments, admin, teacher, schools):
        app.register_blueprint(module.bp)
