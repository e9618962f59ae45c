"""Per-SKU audit trail for sync runs.

Diagnostic only: one row per record outcome within a run. Failed rows carry
the mapping/validation cause so swallowed record errors stay traceable.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from catalog_sync.stores.postgres import Base


class SyncSkuLog(Base):
    """Outcome of one raw record within a sync run."""

    __tablename__ = "catalog_sync_sku_log"

    id: Mapped[int] = mapped_column(primary_key=True)

    sync_run_id: Mapped[int] = mapped_column(ForeignKey("catalog_sync_runs.id"), index=True)
    external_id: Mapped[str | None] = mapped_column(String(100))
    sku: Mapped[str] = mapped_column(String(100), index=True)
    outcome: Mapped[str] = mapped_column(String(20))  # created/updated/failed
    error_message: Mapped[str | None] = mapped_column(Text)

    logged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
