"""
Background dispatch scheduler.

DispatchScheduler runs Dispatcher.run_once() on a fixed interval in a
daemon thread, inside an app context. Several processes may run it at
once; the dispatcher's atomic claim keeps them from sending a step twice.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from flask import current_app, has_app_context

from src.services.automation.dispatcher import Dispatcher, create_dispatcher

logger = logging.getLogger(__name__)

# Global scheduler instance
_dispatch_scheduler = None


def get_dispatch_scheduler():
    """Get the global scheduler instance."""
    global _dispatch_scheduler
    if _dispatch_scheduler is None:
        _dispatch_scheduler = DispatchScheduler()
    return _dispatch_scheduler


class DispatchScheduler:
    """Simple background scheduler that runs a dispatch cycle on a fixed interval."""

    def __init__(self, app=None, dispatcher: Optional[Dispatcher] = None):
        self.app = app
        self.dispatcher = dispatcher
        self.running = False
        self.thread = None
        self._stop_event = threading.Event()

        self.interval_seconds = 60
        self.last_run_at: Optional[datetime] = None
        self.last_summary: Optional[Dict[str, int]] = None
        self.last_error: Optional[str] = None
        self.cycles = 0

        if app is not None:
            self.init_app(app, dispatcher)

    def init_app(self, app, dispatcher: Optional[Dispatcher] = None):
        """Initialize the scheduler with the Flask app."""
        self.app = app
        self.interval_seconds = int(app.config.get('DISPATCH_INTERVAL_SECONDS', 60))
        # A dispatcher built for a previous app must not be reused
        self.dispatcher = dispatcher

        logger.info(f"Dispatch scheduler initialized (interval {self.interval_seconds}s)")

    def _get_dispatcher(self) -> Dispatcher:
        """Get dispatcher instance (lazy initialization)."""
        if self.dispatcher is None:
            self.dispatcher = create_dispatcher(self.app)
        return self.dispatcher

    def start(self):
        """Start the background processing thread."""
        if self.app is None:
            raise RuntimeError("Scheduler has no app; call init_app() first")

        if self.running:
            logger.warning("Scheduler is already running")
            return

        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._process_loop, name='dispatch-scheduler', daemon=True)
        self.thread.start()
        logger.info("Dispatch scheduler started successfully")

    def stop(self, timeout: float = 30):
        """Stop the background processing thread."""
        if not self.running:
            logger.info("Scheduler is already stopped")
            return

        logger.info("Stopping scheduler...")
        self.running = False
        self._stop_event.set()

        if self.thread and self.thread.is_alive():
            logger.info("Waiting for scheduler thread to terminate...")
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning(f"Scheduler thread did not terminate within {timeout} seconds")

        logger.info("Scheduler stopped")

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run a single dispatch cycle inside an app context."""
        if has_app_context() and current_app._get_current_object() is self.app:
            summary = self._get_dispatcher().run_once(now)
        else:
            with self.app.app_context():
                summary = self._get_dispatcher().run_once(now)

        self.last_run_at = datetime.utcnow()
        self.last_summary = summary
        self.last_error = None
        self.cycles += 1
        return summary

    def _process_loop(self):
        """Main processing loop for the scheduler."""
        logger.info("Starting scheduler processing loop")

        while self.running:
            try:
                self.run_once()
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"Error in scheduler processing loop: {str(e)}")

            # Returns early when stop() is called
            self._stop_event.wait(self.interval_seconds)

        logger.info("Scheduler processing loop ended")

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'thread_alive': bool(self.thread and self.thread.is_alive()),
            'interval_seconds': self.interval_seconds,
            'cycles': self.cycles,
            'last_run_at': self.last_run_at.isoformat() if self.last_run_at else None,
            'last_summary': self.last_summary,
            'last_error': self.last_error
        }
