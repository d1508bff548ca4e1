"""
Upkeep - SQLAlchemy ORM Models

This package contains the database models for the update pipeline.
"""

from upkeep.database import Base

# Import all models to ensure they're registered with Base.metadata
from upkeep.models.update_attempt import (
    UpdateAttempt,
    UpdateAttemptStatus,
    can_transition,
    ensure_transition,
)

__all__ = [
    "Base",
    "UpdateAttempt",
    "UpdateAttemptStatus",
    "can_transition",
    "ensure_transition",
]
