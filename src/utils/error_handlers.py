"""
Global error handlers for the automation engine API.

Anything a route does not turn into a response itself ends up here and is
rendered with the standard JSON error envelope.
"""

import logging
from flask import request
from werkzeug.exceptions import HTTPException
from sqlalchemy.exc import SQLAlchemyError

from src.extensions import db
from src.services.automation.errors import AutomationError
from .error_handling import (
    create_error_response,
    handle_exception,
    handle_not_found_error,
    handle_validation_error,
)

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register the global error handlers on the Flask app."""

    @app.errorhandler(404)
    def not_found_error(error):
        return handle_not_found_error(f"Endpoint {request.path}")

    @app.errorhandler(405)
    def method_not_allowed_error(error):
        return create_error_response(
            'BAD_REQUEST',
            f"Method {request.method} is not allowed on {request.path}",
            {'allowed_methods': sorted(error.valid_methods or [])},
            status_code=405
        )

    @app.errorhandler(400)
    def bad_request_error(error):
        return handle_validation_error("Request body is not valid JSON" if request.is_json else "Invalid request data")

    @app.errorhandler(AutomationError)
    def automation_error(error):
        """Automation errors raised outside a route's own try/except."""
        db.session.rollback()
        logger.warning(f"{type(error).__name__} on {request.method} {request.path}: {str(error)}")
        return handle_exception(error, "automation operation")

    @app.errorhandler(SQLAlchemyError)
    def database_error(error):
        db.session.rollback()
        return handle_exception(error, "database operation")

    @app.errorhandler(HTTPException)
    def http_error(error):
        return create_error_response(
            'BAD_REQUEST',
            error.description or "HTTP error occurred",
            status_code=error.code
        )

    @app.errorhandler(Exception)
    def generic_error(error):
        db.session.rollback()
        logger.error(f"Unhandled exception on {request.method} {request.path}: {type(error).__name__}: {str(error)}")
        return handle_exception(error, "request processing")
