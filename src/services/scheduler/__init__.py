"""
Scheduler services package.

- core.py: DispatchScheduler, the background loop that runs the automation
  dispatcher on a fixed interval
"""

from .core import DispatchScheduler, get_dispatch_scheduler

__all__ = ['DispatchScheduler', 'get_dispatch_scheduler']
