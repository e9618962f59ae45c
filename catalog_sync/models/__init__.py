"""SQLAlchemy ORM models.

Models represent database tables:
- catalog_products: Canonical product rows reconciled from the provider
- catalog_sync_runs: One row per sync execution (status, cursor, counters)
- catalog_sync_sku_log: Per-SKU outcome trail for audits
"""

from catalog_sync.models.product import CanonicalProduct
from catalog_sync.models.sync_run import SyncRun, SyncRunType, SyncStatus
from catalog_sync.models.sync_sku_log import SyncSkuLog

__all__ = ["CanonicalProduct", "SyncRun", "SyncRunType", "SyncSkuLog", "SyncStatus"]
