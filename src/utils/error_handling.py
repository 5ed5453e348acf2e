"""
Error responses for the automation engine API.

Every error leaves the API in the same envelope:

    {"error": {"code": ..., "message": ..., "timestamp": ..., "details": {...}}}

handle_exception() maps automation engine exceptions, SQLAlchemy errors and
plain Python errors onto that envelope.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import jsonify
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

from src.services.automation.errors import (
    ConfigurationError,
    DeliveryError,
    EntityNotFoundError,
    InvalidTransitionError,
    SequenceValidationError,
)

logger = logging.getLogger(__name__)

# Error code -> HTTP status
STATUS_CODES = {
    'VALIDATION_ERROR': 400,
    'BAD_REQUEST': 400,
    'INVALID_SEQUENCE': 400,
    'INVALID_CONFIGURATION': 400,
    'UNAUTHORIZED': 401,
    'NOT_FOUND': 404,
    'CONFLICT': 409,
    'INVALID_TRANSITION': 409,
    'INTERNAL_ERROR': 500,
    'DATABASE_ERROR': 500,
    'DELIVERY_ERROR': 502,
}

ERROR_CODES = {code: code for code in STATUS_CODES}


def create_error_response(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    status_code: Optional[int] = None
) -> tuple:
    """Build the (json_response, status) pair for an error code.

    Unknown codes are reported as INTERNAL_ERROR; status_code overrides the
    status normally associated with the code.
    """
    if code not in STATUS_CODES:
        logger.warning(f"Unknown error code {code}, reporting INTERNAL_ERROR")
        code = 'INTERNAL_ERROR'

    body = {
        'code': code,
        'message': message,
        'timestamp': datetime.utcnow().isoformat()
    }
    if details:
        body['details'] = details

    return jsonify({'error': body}), status_code or STATUS_CODES[code]


def handle_validation_error(message: str, details: Optional[Dict[str, Any]] = None) -> tuple:
    return create_error_response('VALIDATION_ERROR', message, details)


def handle_not_found_error(resource: str, resource_id: Optional[str] = None) -> tuple:
    message = f"{resource} not found" if not resource_id else f"{resource} not found with id: {resource_id}"
    return create_error_response('NOT_FOUND', message)


def handle_unauthorized_error(message: str = "Authentication required") -> tuple:
    return create_error_response('UNAUTHORIZED', message)


def handle_database_error(error: Exception, operation: str = "database operation") -> tuple:
    logger.error(f"Database error during {operation}: {str(error)}")
    if isinstance(error, IntegrityError):
        return create_error_response('CONFLICT', f"Constraint violation during {operation}")
    return create_error_response('DATABASE_ERROR', f"Database error during {operation}")


def handle_internal_error(error: Exception, operation: str = "operation") -> tuple:
    logger.error(f"Internal error during {operation}: {type(error).__name__}: {str(error)}")
    return create_error_response('INTERNAL_ERROR', f"An unexpected error occurred during {operation}")


def handle_automation_error(error: Exception) -> Optional[tuple]:
    """Map automation engine exceptions to responses. Returns None for anything else."""
    if isinstance(error, EntityNotFoundError):
        return create_error_response('NOT_FOUND', str(error), {'entity': error.entity})
    if isinstance(error, InvalidTransitionError):
        return create_error_response('INVALID_TRANSITION', str(error), {
            'current': str(getattr(error.current, 'value', error.current)),
            'target': str(getattr(error.target, 'value', error.target))
        })
    if isinstance(error, SequenceValidationError):
        return create_error_response('INVALID_SEQUENCE', str(error), {'errors': error.errors})
    if isinstance(error, ConfigurationError):
        return create_error_response('INVALID_CONFIGURATION', str(error), {
            'sequence_id': error.sequence_id,
            'key': error.key
        })
    if isinstance(error, DeliveryError):
        logger.error(f"Delivery error on {error.channel}: {str(error)}")
        return create_error_response('DELIVERY_ERROR', str(error), {'channel': error.channel})
    return None


# Plain Python errors raised while reading request data are the client's fault
_CLIENT_ERROR_MESSAGES = (
    (KeyError, "Missing required field: {}"),
    (TypeError, "Invalid data type: {}"),
    (ValueError, "{}"),
)


def handle_exception(error: Exception, operation: str = "operation") -> tuple:
    """Turn any exception raised inside a route into an error response."""
    response = handle_automation_error(error)
    if response is not None:
        return response

    if isinstance(error, HTTPException):
        return create_error_response('BAD_REQUEST', error.description, status_code=error.code)
    if isinstance(error, SQLAlchemyError):
        return handle_database_error(error, operation)

    for error_type, template in _CLIENT_ERROR_MESSAGES:
        if isinstance(error, error_type):
            return handle_validation_error(template.format(str(error)))

    return handle_internal_error(error, operation)


def validate_required_fields(data: Dict[str, Any], required_fields: List[str]) -> Optional[tuple]:
    """Return a validation error response when a required field is missing, None or blank."""
    missing_fields = [
        field for field in required_fields
        if data.get(field) is None or (isinstance(data.get(field), str) and not data[field].strip())
    ]
    if not missing_fields:
        return None

    return handle_validation_error(
        f"Missing required fields: {', '.join(missing_fields)}",
        {'missing_fields': missing_fields, 'required_fields': required_fields}
    )
