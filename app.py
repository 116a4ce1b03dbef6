"""
App assembly entry point.

Re-exports the FastAPI `app` from `farmers_service.api.main` so the service
can be started with `uvicorn app:app`.
"""

from farmers_service.api.main import app  # noqa: F401
