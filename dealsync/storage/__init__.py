"""Storage module - PostgreSQL persistence."""

from dealsync.storage.database import (
    DatabaseStorage,
    build_entity_upsert,
    build_fingerprint_upsert,
)
from dealsync.storage.models import Base, DealRecord, DealTracking, SyncRunLog

__all__ = [
    "Base",
    "DatabaseStorage",
    "DealRecord",
    "DealTracking",
    "SyncRunLog",
    "build_entity_upsert",
    "build_fingerprint_upsert",
]
