"""
Metrics sink port.

The trigger evaluator and dispatcher report counters through a
MetricsSink so the engine can run (and be tested) without a metrics
backend. Counters are observational only: a failing sink never breaks
the operation that reported to it.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

TRIGGERS_FIRED = 'automation.triggers.fired'
TRIGGERS_SKIPPED = 'automation.triggers.skipped'
STEPS_DISPATCHED = 'automation.steps.dispatched'
EXECUTIONS_FINISHED = 'automation.executions.finished'
CLAIMS_RECOVERED = 'automation.claims.recovered'


def format_tags(tags: Optional[Dict[str, Any]]) -> str:
    """Stable "key=value,key=value" form of a tag dict."""
    if not tags:
        return ''
    return ','.join(f"{key}={tags[key]}" for key in sorted(tags))


class MetricsSink:
    """Base sink. Subclasses implement increment()."""

    def increment(self, name: str, tags: Optional[Dict[str, Any]] = None, amount: int = 1):
        raise NotImplementedError

    def record_trigger(self, trigger_type: str, sequence_id: str, success: bool):
        self.increment(TRIGGERS_FIRED, {
            'trigger_type': trigger_type,
            'sequence_id': sequence_id,
            'success': str(bool(success)).lower()
        })

    def record_trigger_skipped(self, trigger_type: str, sequence_id: str, reason: str):
        self.increment(TRIGGERS_SKIPPED, {
            'trigger_type': trigger_type,
            'sequence_id': sequence_id,
            'reason': reason
        })

    def record_step(self, outcome: str, channel: Optional[str] = None):
        self.increment(STEPS_DISPATCHED, {'outcome': outcome, 'channel': channel or 'unknown'})

    def record_execution_finished(self, status: str):
        self.increment(EXECUTIONS_FINISHED, {'status': status})

    def record_claims_recovered(self, count: int):
        if count:
            self.increment(CLAIMS_RECOVERED, amount=count)

    def snapshot(self) -> Dict[str, int]:
        return {}


class NullMetricsSink(MetricsSink):
    def increment(self, name, tags=None, amount=1):
        pass


class InMemoryMetricsSink(MetricsSink):
    """Thread-safe in-process counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str], int] = defaultdict(int)

    def increment(self, name, tags=None, amount=1):
        with self._lock:
            self._counters[(name, format_tags(tags))] += amount

    def count(self, name: str, **tags) -> int:
        """Sum of every counter for name whose tags include all the given tags."""
        wanted = {f"{key}={value}" for key, value in tags.items()}
        total = 0
        with self._lock:
            for (counter_name, counter_tags), value in self._counters.items():
                if counter_name != name:
                    continue
                present = set(counter_tags.split(',')) if counter_tags else set()
                if wanted <= present:
                    total += value
        return total

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                f"{name}[{tags}]" if tags else name: value
                for (name, tags), value in sorted(self._counters.items())
            }

    def reset(self):
        with self._lock:
            self._counters.clear()


class DatabaseMetricsSink(MetricsSink):
    """Daily counters persisted in the metric_counters table."""

    def increment(self, name, tags=None, amount=1):
        from src.extensions import db
        from src.models.metric_counter import MetricCounter

        try:
            MetricCounter.increment(name, format_tags(tags), amount)
        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to record metric {name}: {str(e)}")

    def snapshot(self) -> Dict[str, int]:
        from src.extensions import db
        from src.models.metric_counter import MetricCounter

        rows = db.session.query(
            MetricCounter.name, MetricCounter.tags, db.func.sum(MetricCounter.count)
        ).group_by(MetricCounter.name, MetricCounter.tags).all()
        return {
            f"{name}[{tags}]" if tags else name: int(total or 0)
            for name, tags, total in rows
        }


# Global sink instance, configured by init_metrics()
_metrics_sink: Optional[MetricsSink] = None


def create_metrics_sink(backend: str) -> MetricsSink:
    if backend == 'database':
        return DatabaseMetricsSink()
    if backend == 'none':
        return NullMetricsSink()
    if backend != 'memory':
        logger.warning(f"Unknown metrics backend '{backend}', using in-memory counters")
    return InMemoryMetricsSink()


def init_metrics(app) -> MetricsSink:
    global _metrics_sink
    _metrics_sink = create_metrics_sink(app.config.get('METRICS_BACKEND', 'memory'))
    logger.info(f"Metrics sink initialized: {type(_metrics_sink).__name__}")
    return _metrics_sink


def get_metrics_sink() -> MetricsSink:
    """Get the global metrics sink."""
    global _metrics_sink
    if _metrics_sink is None:
        _metrics_sink = InMemoryMetricsSink()
    return _metrics_sink
