"""SQLAlchemy ORM models for the sync server."""

from backend.models.autopilot import AutopilotRule
from backend.models.base import Base
from backend.models.sync import SyncRecord

__all__ = [
    "AutopilotRule",
    "Base",
    "SyncRecord",
]
