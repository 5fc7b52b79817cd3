"""
Core module - configuration, database and response formatting.

Request context lives in ``core.request_context`` and is imported directly;
it depends on the ORM models, which in turn depend on ``core.db``.
"""
from .config import Settings, get_settings
from .db import AsyncSessionLocal, Base, engine, get_session, get_session_factory
from .responses import ErrorCodes, success_response, error_response

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "get_session",
    "get_session_factory",
    "Base",
    "engine",
    "AsyncSessionLocal",
    # Responses
    "ErrorCodes",
    "success_response",
    "error_response",
]
