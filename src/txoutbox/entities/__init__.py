"""
Versioned entities with optimistic concurrency control.
"""

from .models import VersionedEntity
from .store import VersionedEntityStore, bump_version

__all__ = [
    "VersionedEntity",
    "VersionedEntityStore",
    "bump_version",
]
