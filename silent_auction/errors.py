import logging

import mysql.connector
from flask import jsonify, request

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base error raised by service functions and rendered as JSON by the app."""
    status_code = 400
    default_code = 'BAD_REQUEST'

    def __init__(self, message, code=None, status_code=None, details=None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self):
        payload = {'success': False, 'message': self.message, 'code': self.code}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(ServiceError):
    status_code = 400
    default_code = 'VALIDATION_ERROR'


class AuthenticationError(ServiceError):
    status_code = 401
    default_code = 'AUTHENTICATION_REQUIRED'


class PermissionDenied(ServiceError):
    status_code = 403
    default_code = 'FORBIDDEN'


class NotFound(ServiceError):
    status_code = 404
    default_code = 'NOT_FOUND'


class InvalidStateTransition(ServiceError):
    status_code = 409
    default_code = 'INVALID_STATE_TRANSITION'


class DatabaseUnavailable(ServiceError):
    status_code = 500
    default_code = 'DATABASE_UNAVAILABLE'

    def __init__(self, message='Database connection failed', **kwargs):
        super().__init__(message, **kwargs)


def register_error_handlers(app):
    @app.errorhandler(ServiceError)
    def handle_service_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(mysql.connector.Error)
    def handle_mysql_error(error):
        logger.error(f"Database error on {request.path}: {error}", exc_info=True)
        return jsonify({'success': False, 'message': 'A database error occurred. Please try again.',
                        'code': 'DATABASE_ERROR'}), 500

    @app.errorhandler(404)
    def handle_not_found(error):
        logger.warning(f"404 error: {request.url}")
        if request.path.startswith('/api/'):
            return jsonify({'success': False, 'message': 'Not found', 'code': 'NOT_FOUND'}), 404
        return "Page not found", 404

    @app.errorhandler(429)
    def handle_rate_limited(error):
        return jsonify({'success': False, 'message': 'Too many requests. Please slow down.',
                        'code': 'RATE_LIMITED'}), 429

    @app.errorhandler(500)
    def handle_internal_error(error):
        logger.error(f"500 error: {error}", exc_info=True)
        if request.path.startswith('/api/'):
            return jsonify({'success': False, 'message': 'An unexpected error occurred. Please try again.',
                            'code': 'INTERNAL_ERROR'}), 500
        return "An unexpected error occurred", 500
