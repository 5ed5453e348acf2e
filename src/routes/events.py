"""
Inbound domain events.

The surrounding product posts its business events here; each one is
evaluated synchronously against the organization's active sequences.
"""

import logging
from flask import Blueprint, jsonify, request

from src.extensions import db
from src.models import Customer, ReviewRequest
from src.services.automation.execution_service import ExecutionService
from src.services.automation.trigger_evaluator import TriggerEvaluator
from src.utils.error_handling import (
    handle_exception,
    handle_not_found_error,
    validate_required_fields,
)

logger = logging.getLogger(__name__)

events_bp = Blueprint('events', __name__)


def _started_response(trigger, executions):
    return jsonify({
        'trigger': trigger,
        'executions_started': len(executions),
        'executions': [execution.to_dict() for execution in executions]
    }), 200


def _load_customer(data):
    customer = db.session.get(Customer, data['customer_id'])
    if not customer:
        return None, handle_not_found_error("Customer", data['customer_id'])
    return customer, None


@events_bp.route('/customer-created', methods=['POST'])
def customer_created():
    try:
        data = request.get_json(silent=True) or {}
        error = validate_required_fields(data, ['customer_id'])
        if error:
            return error

        customer, error = _load_customer(data)
        if error:
            return error

        executions = TriggerEvaluator().on_customer_created(customer)
        return _started_response('CUSTOMER_CREATED', executions)

    except Exception as e:
        logger.error(f"Error processing customer-created event: {str(e)}")
        return handle_exception(e, "processing customer-created event")


@events_bp.route('/service-completed', methods=['POST'])
def service_completed():
    try:
        data = request.get_json(silent=True) or {}
        error = validate_required_fields(data, ['customer_id'])
        if error:
            return error

        customer, error = _load_customer(data)
        if error:
            return error

        executions = TriggerEvaluator().on_service_completed(customer, data.get('service_type'))
        return _started_response('SERVICE_COMPLETED', executions)

    except Exception as e:
        logger.error(f"Error processing service-completed event: {str(e)}")
        return handle_exception(e, "processing service-completed event")


@events_bp.route('/review-completed', methods=['POST'])
def review_completed():
    try:
        data = request.get_json(silent=True) or {}
        error = validate_required_fields(data, ['review_request_id'])
        if error:
            return error

        review_request = db.session.get(ReviewRequest, data['review_request_id'])
        if not review_request:
            return handle_not_found_error("Review request", data['review_request_id'])

        executions = TriggerEvaluator().on_review_request_completed(review_request)
        return _started_response('REVIEW_COMPLETED', executions)

    except Exception as e:
        logger.error(f"Error processing review-completed event: {str(e)}")
        return handle_exception(e, "processing review-completed event")


@events_bp.route('/review-request-created', methods=['POST'])
def review_request_created():
    """Start the organization's default sequence for a new review request."""
    try:
        data = request.get_json(silent=True) or {}
        error = validate_required_fields(data, ['review_request_id'])
        if error:
            return error

        review_request = db.session.get(ReviewRequest, data['review_request_id'])
        if not review_request:
            return handle_not_found_error("Review request", data['review_request_id'])

        execution = ExecutionService().start_default_sequence(review_request)
        if execution is None:
            return jsonify({'message': 'No default sequence configured', 'execution': None}), 200

        return jsonify({'execution': execution.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error starting default sequence: {str(e)}")
        return handle_exception(e, "starting default sequence")
