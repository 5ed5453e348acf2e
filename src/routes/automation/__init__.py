"""
Automation routes package.

This package contains the automation engine's operational endpoints:
- scheduler_control.py: Dispatch scheduler management endpoints
- executions.py: Execution inspection, cancellation, statistics and metrics
"""

from flask import Blueprint

# Create the main automation blueprint
automation_bp = Blueprint('automation', __name__)

# Import all route modules to register them
from . import scheduler_control
from . import executions

# Export the blueprint
__all__ = ['automation_bp']
