"""Core application utilities."""

from .clock import Clock, utc_now
from .config import Settings, get_settings
from .database import (
    build_engine,
    build_session_factory,
    close_db,
    get_engine,
    get_session,
    get_session_context,
    get_session_factory,
    init_db,
)
from .errors import (
    ConcurrentUpdateError,
    InvalidServiceError,
    PhaseNotInSetError,
    ProjectNotFoundError,
    TransientStoreError,
    WorkflowError,
)

__all__ = [
    # Clock
    "Clock",
    "utc_now",
    # Config
    "Settings",
    "get_settings",
    # Database
    "build_engine",
    "build_session_factory",
    "get_engine",
    "get_session_factory",
    "get_session",
    "get_session_context",
    "init_db",
    "close_db",
    # Errors
    "WorkflowError",
    "ConcurrentUpdateError",
    "ProjectNotFoundError",
    "InvalidServiceError",
    "PhaseNotInSetError",
    "TransientStoreError",
]
