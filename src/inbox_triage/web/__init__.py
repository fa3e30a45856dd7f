"""JSON API for inbox triage.

Provides a FastAPI application for:
- Batch and single-conversation retriage
- Human corrections
- Sender-rule candidates and behavior stats
- A nightly scheduler for stats and rules-only retriage
"""

from inbox_triage.web.app import create_app

__all__ = ["create_app"]
