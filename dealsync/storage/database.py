"""
PostgreSQL Storage for Deals

Async database operations with upsert support. Uses PostgreSQL ON CONFLICT
for insert-or-update, so every batch commit is independently durable and
replaying a batch is harmless.
"""

from datetime import datetime, timezone
from typing import Any, Sequence

from rich.console import Console
from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.dialects.postgresql import Insert, insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dealsync.config import settings
from dealsync.exceptions import FingerprintLookupError
from dealsync.sync.planner import chunk_ids
from dealsync.storage.models import Base, DealRecord, DealTracking, SyncRunLog

console = Console()

# Upper bound on bind parameters in one IN (...) lookup
LOOKUP_CHUNK_SIZE = 1000

# Columns of deals_cache written by the upsert (everything but keys and timestamps)
ENTITY_UPDATE_COLUMNS = (
    "title",
    "value",
    "currency",
    "status",
    "stage_id",
    "closing_date",
    "closing_date_raw",
    "created_date",
    "attributes",
    "estado",
    "pairs_quantity",
    "seller",
    "designer",
    "utm_source",
    "utm_medium",
    "contact_id",
    "organization_id",
    "api_updated_at",
    "last_synced_at",
    "sync_status",
)


def build_entity_upsert(rows: list[dict[str, Any]]) -> Insert:
    """INSERT ... ON CONFLICT (deal_id) DO UPDATE for deals_cache."""
    stmt = pg_insert(DealRecord).values(rows)
    return stmt.on_conflict_do_update(
        index_elements=["deal_id"],
        set_={
            **{column: stmt.excluded[column] for column in ENTITY_UPDATE_COLUMNS},
            "updated_at": func.now(),
        },
    )


def build_fingerprint_upsert(rows: list[dict[str, Any]]) -> Insert:
    """
    INSERT ... ON CONFLICT (deal_id) DO UPDATE for deals_processed_tracking.

    deal_api_updated_at keeps the larger of the stored and incoming value, so
    a late or replayed write never moves a fingerprint backwards.
    """
    stmt = pg_insert(DealTracking).values(rows)
    return stmt.on_conflict_do_update(
        index_elements=["deal_id"],
        set_={
            "deal_api_updated_at": func.greatest(
                DealTracking.__table__.c.deal_api_updated_at,
                stmt.excluded.deal_api_updated_at,
            ),
            "deal_created_at": stmt.excluded.deal_created_at,
            "last_checked_at": stmt.excluded.last_checked_at,
            "has_closing_date": stmt.excluded.has_closing_date,
            "has_any_target_fields": stmt.excluded.has_any_target_fields,
            "target_fields_found": stmt.excluded.target_fields_found,
            "sync_batch_id": stmt.excluded.sync_batch_id,
        },
    )


class DatabaseStorage:
    """
    Async PostgreSQL storage for deals.

    Features:
    - Async SQLAlchemy with asyncpg driver
    - Upserts using PostgreSQL ON CONFLICT
    - Fingerprint store for the change tracker
    - Run ledger for sync history and health
    """

    def __init__(self, database_url: str | None = None) -> None:
        """
        Initialize database storage.

        Args:
            database_url: Database connection URL. Defaults to settings.
        """
        self.database_url = database_url or settings.database_url
        self._engine = create_async_engine(
            self.database_url,
            echo=False,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
        )
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def initialize(self) -> None:
        """Create missing tables."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close the database connection."""
        await self._engine.dispose()

    async def __aenter__(self) -> "DatabaseStorage":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def get_session(self) -> AsyncSession:
        """Get a new database session."""
        return self._session_factory()

    # ========== Fingerprints ==========

    async def get_fingerprints(self, deal_ids: Sequence[str]) -> dict[str, datetime]:
        """
        Batch lookup of last-seen modification times.

        Returns:
            deal_id -> deal_api_updated_at for deals that have a fingerprint

        Raises:
            FingerprintLookupError: If the table cannot be read or the
                database is unreachable (asyncpg connect errors are OSErrors)
        """
        found: dict[str, datetime] = {}
        try:
            async with self.get_session() as session:
                for chunk in chunk_ids(list(deal_ids), LOOKUP_CHUNK_SIZE):
                    stmt = select(
                        DealTracking.deal_id, DealTracking.deal_api_updated_at
                    ).where(DealTracking.deal_id.in_(chunk))
                    result = await session.execute(stmt)
                    found.update({row.deal_id: row.deal_api_updated_at for row in result})
        except (SQLAlchemyError, OSError) as e:
            raise FingerprintLookupError(str(e)) from e
        return found

    async def upsert_fingerprints(self, rows: list[dict[str, Any]]) -> int:
        """Upsert tracking rows. Rows must have unique deal ids."""
        if not rows:
            return 0
        async with self.get_session() as session:
            await session.execute(build_fingerprint_upsert(rows))
            await session.commit()
        return len(rows)

    async def delete_all_fingerprints(self) -> int:
        """Drop all tracking state. Only used by clear-first rebuilds."""
        async with self.get_session() as session:
            result = await session.execute(delete(DealTracking))
            await session.commit()
            return result.rowcount or 0

    # ========== Entities ==========

    async def upsert_entities(self, rows: list[dict[str, Any]]) -> int:
        """
        Upsert one batch of normalized deals in a single transaction.

        Database errors propagate unchanged so the writer can classify them.
        """
        if not rows:
            return 0
        async with self.get_session() as session:
            await session.execute(build_entity_upsert(rows))
            await session.commit()
        return len(rows)

    async def delete_all_entities(self) -> int:
        """Empty the deal cache."""
        async with self.get_session() as session:
            result = await session.execute(delete(DealRecord))
            await session.commit()
            return result.rowcount or 0

    # ========== Run Ledger ==========

    async def start_run(self) -> int:
        """Insert a running ledger row and return its id."""
        async with self.get_session() as session:
            run = SyncRunLog(
                sync_started_at=datetime.now(timezone.utc),
                sync_status="running",
                summary={},
            )
            session.add(run)
            await session.commit()
            return run.id

    async def finish_run(
        self,
        run_id: int,
        status: str,
        deals_processed: int = 0,
        deals_added: int = 0,
        deals_updated: int = 0,
        deals_failed: int = 0,
        error_message: str | None = None,
        duration_seconds: float | None = None,
        summary: dict[str, Any] | None = None,
    ) -> None:
        """Record the final state of a run."""
        async with self.get_session() as session:
            await session.execute(
                update(SyncRunLog)
                .where(SyncRunLog.id == run_id)
                .values(
                    sync_completed_at=datetime.now(timezone.utc),
                    sync_status=status,
                    deals_processed=deals_processed,
                    deals_added=deals_added,
                    deals_updated=deals_updated,
                    deals_failed=deals_failed,
                    error_message=error_message,
                    sync_duration_seconds=duration_seconds,
                    summary=summary or {},
                )
            )
            await session.commit()

    async def get_recent_runs(self, limit: int = 10) -> list[SyncRunLog]:
        """Most recent runs, newest first."""
        async with self.get_session() as session:
            result = await session.execute(
                select(SyncRunLog).order_by(desc(SyncRunLog.sync_started_at)).limit(limit)
            )
            return list(result.scalars().all())

    async def get_stats(self) -> dict[str, int]:
        """Row counts for the status command."""
        async with self.get_session() as session:
            deals = await session.execute(select(func.count()).select_from(DealRecord))
            tracked = await session.execute(select(func.count()).select_from(DealTracking))
            runs = await session.execute(select(func.count()).select_from(SyncRunLog))
            return {
                "deals": deals.scalar() or 0,
                "tracked": tracked.scalar() or 0,
                "sync_runs": runs.scalar() or 0,
            }
