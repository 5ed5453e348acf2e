"""
Execution inspection and control endpoints.

This module contains functionality for:
- Listing and inspecting executions with their steps and audit events
- Cancelling an execution
- Execution statistics and the metrics snapshot
- Validating a sequence definition
"""

import logging
from flask import jsonify, request

from src.extensions import db
from src.models import Execution, ExecutionEvent, SequenceDefinition
from src.services.automation.execution_service import ExecutionService
from src.services.automation.metrics import get_metrics_sink
from src.services.automation.sequence_validation import validate_sequence
from src.services.automation.state_machine import ExecutionStatus
from src.utils.error_handling import (
    handle_exception,
    handle_not_found_error,
    handle_validation_error,
)

logger = logging.getLogger(__name__)

# Import the blueprint from the package
from . import automation_bp


@automation_bp.route('/executions', methods=['GET'])
def list_executions():
    """List executions, newest first, filtered by status, customer or sequence."""
    try:
        query = Execution.query

        status = request.args.get('status')
        if status:
            status = status.upper()
            if status not in [s.value for s in ExecutionStatus]:
                return handle_validation_error(f"Invalid status '{status}'")
            query = query.filter_by(status=status)

        for field in ('customer_id', 'sequence_id', 'organization_id'):
            value = request.args.get(field)
            if value:
                query = query.filter(getattr(Execution, field) == value)

        limit = min(request.args.get('limit', 50, type=int), 200)
        executions = query.order_by(Execution.started_at.desc()).limit(limit).all()

        return jsonify({
            'executions': [execution.to_dict() for execution in executions],
            'count': len(executions)
        })

    except Exception as e:
        logger.error(f"Error listing executions: {str(e)}")
        return handle_exception(e, "listing executions")


@automation_bp.route('/executions/<execution_id>', methods=['GET'])
def get_execution(execution_id):
    """Get an execution with its step executions."""
    try:
        execution = db.session.get(Execution, execution_id)
        if not execution:
            return handle_not_found_error("Execution", execution_id)

        return jsonify({'execution': execution.to_dict(include_steps=True)})

    except Exception as e:
        logger.error(f"Error getting execution {execution_id}: {str(e)}")
        return handle_exception(e, "getting execution")


@automation_bp.route('/executions/<execution_id>/events', methods=['GET'])
def get_execution_events(execution_id):
    """Audit trail of an execution, oldest first."""
    try:
        if not db.session.get(Execution, execution_id):
            return handle_not_found_error("Execution", execution_id)

        events = ExecutionEvent.query.filter_by(execution_id=execution_id).order_by(
            ExecutionEvent.timestamp.asc()
        ).all()
        return jsonify({
            'execution_id': execution_id,
            'events': [event.to_dict() for event in events]
        })

    except Exception as e:
        logger.error(f"Error getting events for execution {execution_id}: {str(e)}")
        return handle_exception(e, "getting execution events")


@automation_bp.route('/executions/<execution_id>/cancel', methods=['POST'])
def cancel_execution(execution_id):
    """Cancel an execution; its open steps are skipped."""
    try:
        data = request.get_json(silent=True) or {}
        reason = data.get('reason') or 'cancelled via API'

        service = ExecutionService()
        cancelled = service.cancel_execution(execution_id, reason=reason)
        execution = service.get_execution(execution_id)

        message = 'Execution cancelled' if cancelled else f"Execution already {execution.status.lower()}"
        return jsonify({
            'message': message,
            'cancelled': cancelled,
            'execution': execution.to_dict(include_steps=True)
        })

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error cancelling execution {execution_id}: {str(e)}")
        return handle_exception(e, "cancelling execution")


@automation_bp.route('/stats', methods=['GET'])
def get_stats():
    """Execution and step counts for monitoring."""
    try:
        return jsonify(ExecutionService().get_execution_stats())

    except Exception as e:
        logger.error(f"Error getting execution stats: {str(e)}")
        return handle_exception(e, "getting execution stats")


@automation_bp.route('/metrics', methods=['GET'])
def get_metrics():
    """Snapshot of the trigger and dispatch counters."""
    try:
        sink = get_metrics_sink()
        return jsonify({
            'backend': type(sink).__name__,
            'counters': sink.snapshot()
        })

    except Exception as e:
        logger.error(f"Error getting metrics: {str(e)}")
        return handle_exception(e, "getting metrics")


@automation_bp.route('/sequences/<sequence_id>/validate', methods=['GET'])
def validate_sequence_definition(sequence_id):
    """Validate a stored sequence definition."""
    try:
        sequence = db.session.get(SequenceDefinition, sequence_id)
        if not sequence:
            return handle_not_found_error("Sequence", sequence_id)

        result = validate_sequence(sequence)
        return jsonify({
            'sequence_id': sequence_id,
            'valid': result['valid'],
            'errors': result['errors'],
            'warnings': result['warnings']
        })

    except Exception as e:
        logger.error(f"Error validating sequence {sequence_id}: {str(e)}")
        return handle_exception(e, "validating sequence")
