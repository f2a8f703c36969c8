"""
HTTP surface: liveness, readiness, relay state and the dead letter queue.
"""

from .app import create_app

__all__ = ["create_app"]
