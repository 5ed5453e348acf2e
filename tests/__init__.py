"""
Testing package for the automation engine.

This package contains:
- Unit tests for models, the state machine and eligibility conditions
- Trigger evaluation and dispatcher tests against an in-memory database
- API endpoint tests
- Shared fixtures in conftest.py
"""
