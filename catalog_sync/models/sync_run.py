"""Sync run model.

One row per pipeline execution. `api_cursor` is the last continuation cursor
whose page was durably committed; it is the resume point for the next run once
this run is completed (or resolved by an operator).
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from catalog_sync.stores.postgres import Base


class SyncStatus(PyEnum):
    """Run state. Everything except RUNNING is terminal."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncStatus.RUNNING


class SyncRunType(PyEnum):
    """What started the run."""

    INCREMENTAL = "incremental"
    FULL = "full"
    MANUAL_SKU = "manual_sku"


class SyncRun(Base):
    """Bookkeeping for one sync execution."""

    __tablename__ = "catalog_sync_runs"
    __table_args__ = (
        # At most one running run per catalog, enforced by the database itself.
        Index(
            "uq_catalog_sync_runs_one_running",
            "status",
            unique=True,
            postgresql_where=text("status = 'RUNNING'"),
            sqlite_where=text("status = 'RUNNING'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    run_type: Mapped[SyncRunType] = mapped_column(Enum(SyncRunType), default=SyncRunType.INCREMENTAL)
    triggered_by: Mapped[str] = mapped_column(String(200))  # opaque audit label
    status: Mapped[SyncStatus] = mapped_column(Enum(SyncStatus), default=SyncStatus.RUNNING, index=True)

    # Cursors
    start_cursor: Mapped[str | None] = mapped_column(Text)
    api_cursor: Mapped[str | None] = mapped_column(Text)
    last_successful_sku: Mapped[str | None] = mapped_column(String(100))

    # Counters
    processed: Mapped[int] = mapped_column(Integer, default=0)
    created: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    rate_limit_hits: Mapped[int] = mapped_column(Integer, default=0)

    error_message: Mapped[str | None] = mapped_column(Text)

    # Timestamps
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    def __repr__(self) -> str:
        return f"<SyncRun {self.id} {self.run_type.value} {self.status.value}>"
