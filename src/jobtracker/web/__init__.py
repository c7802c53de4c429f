"""HTTP surface for the job tracker sync engine.

Provides a FastAPI app exposing:
- On-demand Gmail sync trigger
- Sync status for the signed-in owner
- Health check
"""

from jobtracker.web.app import create_app

__all__ = ["create_app"]
