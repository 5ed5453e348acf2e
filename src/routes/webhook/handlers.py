"""
Main webhook event handlers.

This module contains the inbound webhook handling functionality:
- Automation webhook trigger (starts WEBHOOK sequences by key)
- Delivery status callback from channel providers
"""

import hashlib
import hmac
import logging
from flask import request, jsonify, current_app

from src.extensions import db
from src.routes.webhook import webhook_bp
from src.services.automation.execution_service import ExecutionService
from src.services.automation.trigger_evaluator import TriggerEvaluator
from src.utils.error_handling import (
    handle_exception,
    handle_unauthorized_error,
    validate_required_fields,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'X-Webhook-Signature'
DELIVERED_STATUSES = ('delivered', 'DELIVERED')


def verify_webhook_signature(payload_body, signature_header, secret):
    """Verify a "sha256=<hex hmac>" webhook signature."""
    if not signature_header or not secret:
        return False

    try:
        expected_signature = hmac.new(
            secret.encode('utf-8'),
            payload_body,
            hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(f"sha256={expected_signature}", signature_header)
    except Exception as e:
        logger.error(f"Signature verification error: {str(e)}")
        return False


@webhook_bp.route('/automation/<webhook_key>', methods=['POST'])
def automation_webhook(webhook_key):
    """Fire the WEBHOOK trigger for a customer."""
    try:
        payload = request.get_json(silent=True) or {}
        error = validate_required_fields(payload, ['customer_id'])
        if error:
            return error

        customer_id = payload['customer_id']
        event_data = {key: value for key, value in payload.items() if key != 'customer_id'}

        logger.info(f"Automation webhook '{webhook_key}' received for customer {customer_id}")
        executions = TriggerEvaluator().on_webhook_received(webhook_key, customer_id, event_data)

        return jsonify({
            'webhook_key': webhook_key,
            'executions_started': len(executions),
            'executions': [execution.to_dict() for execution in executions]
        }), 200

    except Exception as e:
        logger.error(f"Error processing automation webhook '{webhook_key}': {str(e)}")
        return handle_exception(e, "processing automation webhook")


@webhook_bp.route('/delivery', methods=['POST'])
def delivery_status():
    """Delivery status callback; confirmed deliveries mark the step DELIVERED."""
    try:
        secret = current_app.config.get('DELIVERY_WEBHOOK_SECRET')
        if secret:
            signature = request.headers.get(SIGNATURE_HEADER)
            if not verify_webhook_signature(request.get_data(), signature, secret):
                logger.warning("Delivery webhook rejected: invalid signature")
                return handle_unauthorized_error("Invalid webhook signature")

        payload = request.get_json(silent=True) or {}
        error = validate_required_fields(payload, ['message_id', 'status'])
        if error:
            return error

        message_id = payload['message_id']
        status = payload['status']

        if status not in DELIVERED_STATUSES:
            logger.info(f"Delivery status '{status}' for message {message_id} acknowledged")
            return jsonify({'message': 'Status acknowledged', 'status': status}), 200

        step = ExecutionService().mark_delivered_by_message_id(message_id)
        return jsonify({
            'message': 'Delivery recorded',
            'step_execution': step.to_dict()
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error processing delivery webhook: {str(e)}")
        return handle_exception(e, "processing delivery webhook")
