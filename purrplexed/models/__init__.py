"""
Database models for Purrplexed.

Import all models here so Base.metadata sees them before create_all().
"""

from purrplexed.database import Base
from purrplexed.models.usage_counter import UsageCounter

__all__ = [
    "Base",
    "UsageCounter",
]
