"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from shipflow.api.routes import webhooks

__all__ = [
    "webhooks",
]
