"""
API Routes Package
"""
from upkeep.api.routes import updates

__all__ = [
    "updates",
]
