"""
Dispatch scheduler control endpoints.

- GET  /scheduler/status: loop state, last cycle summary and dispatch settings
- POST /scheduler/start, /scheduler/stop: manage the background loop
- POST /scheduler/run: run one dispatch cycle now
"""

import logging
from flask import current_app, jsonify

from src.services.automation.scheduling import RetryPolicy
from src.services.scheduler import get_dispatch_scheduler
from src.utils.error_handling import handle_exception

logger = logging.getLogger(__name__)

from . import automation_bp


def _dispatch_settings():
    settings = current_app.config
    return {
        'batch_size': settings.get('DISPATCH_BATCH_SIZE'),
        'max_workers': settings.get('DISPATCH_MAX_WORKERS'),
        'claim_timeout_seconds': settings.get('DISPATCH_CLAIM_TIMEOUT_SECONDS'),
        'retry_policy': RetryPolicy.from_config(settings).to_dict()
    }


@automation_bp.route('/scheduler/status', methods=['GET'])
def get_scheduler_status():
    try:
        status = get_dispatch_scheduler().get_status()
        status['settings'] = _dispatch_settings()
        return jsonify(status)

    except Exception as e:
        logger.error(f"Error reading scheduler status: {str(e)}")
        return handle_exception(e, "reading scheduler status")


@automation_bp.route('/scheduler/start', methods=['POST'])
def start_scheduler():
    try:
        scheduler = get_dispatch_scheduler()
        already_running = scheduler.running
        if not already_running:
            scheduler.start()
            logger.info("Dispatch scheduler started via API")

        return jsonify({
            'message': 'Scheduler is already running' if already_running else 'Scheduler started',
            'scheduler': scheduler.get_status()
        })

    except Exception as e:
        logger.error(f"Error starting scheduler: {str(e)}")
        return handle_exception(e, "starting scheduler")


@automation_bp.route('/scheduler/stop', methods=['POST'])
def stop_scheduler():
    try:
        scheduler = get_dispatch_scheduler()
        was_running = scheduler.running
        if was_running:
            scheduler.stop()
            logger.info("Dispatch scheduler stopped via API")

        return jsonify({
            'message': 'Scheduler stopped' if was_running else 'Scheduler is already stopped',
            'scheduler': scheduler.get_status()
        })

    except Exception as e:
        logger.error(f"Error stopping scheduler: {str(e)}")
        return handle_exception(e, "stopping scheduler")


@automation_bp.route('/scheduler/run', methods=['POST'])
def run_dispatch_cycle():
    """Run one dispatch cycle now and return its summary."""
    try:
        summary = get_dispatch_scheduler().run_once()
        logger.info(f"Manual dispatch cycle: {summary}")
        return jsonify({
            'message': 'Dispatch cycle completed',
            'summary': summary
        })

    except Exception as e:
        logger.error(f"Error running dispatch cycle: {str(e)}")
        return handle_exception(e, "running dispatch cycle")
