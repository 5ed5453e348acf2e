"""
Webhook routes package.

This package contains inbound webhook endpoints:
- handlers.py: Automation webhook triggers and channel delivery callbacks
"""

from flask import Blueprint

# Create the main webhook blueprint
webhook_bp = Blueprint('webhook', __name__)

# Import all route modules to register them
from . import handlers

# Export the blueprint
__all__ = ['webhook_bp']
