"""Sync orchestrator: provider pages -> canonical products, one run at a time.

Flow (incremental run):
1. Take the run lock (Redis when available, plus the database's one-running-run guard)
2. Resume from the api_cursor of the most recent completed run (None if none)
3. Create a catalog_sync_runs row (status=running, counters zero)
4. Loop, strictly in order:
   - stop if an operator cancelled the run
   - fetch the page at the cursor (rate limits retried with bounded backoff)
   - reconcile the page in one transaction
   - only then commit the page's next cursor + counters onto the run row
   - stop when the provider reports no more pages
5. Finalize the run (completed / failed / cancelled) and return a SyncResult

Failure policy:
- RateLimitedError: retried transparently up to the policy's cap, counted in
  rate_limit_hits. Exhausting retries is a provider failure.
- ProviderError / page timeout / page commit failure: the run ends `failed` with
  the cursor and counters of every page committed before it. Callers get a
  structured result, never an exception.
- A failed run's cursor is NOT picked up automatically. An operator resolves the
  run (failed -> completed) to make its cursor the next resume point.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar

from redis.exceptions import RedisError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_sync.models import SyncRun, SyncRunType, SyncStatus
from catalog_sync.services.catalog_client import (
    CatalogPage,
    ProviderError,
    RateLimitedError,
    RemoteCatalogClient,
)
from catalog_sync.services.product_store import (
    OUTCOME_CREATED,
    OUTCOME_FAILED,
    OUTCOME_UPDATED,
    PageCommitError,
    PageReconcileResult,
    ProductUpsertStore,
    utcnow,
)
from catalog_sync.settings import Settings, get_settings
from catalog_sync.stores.postgres import get_session_factory, session_scope
from catalog_sync.stores.redis import acquire_lock, release_lock, sync_lock_key

logger = logging.getLogger("catalog_sync")

T = TypeVar("T")

# Result status for an invocation refused because another run is active.
STATUS_REJECTED = "rejected"

Notifier = Callable[[str, str], Awaitable[None]]


class SyncAlreadyRunningError(RuntimeError):
    """Another sync run holds the catalog."""


@dataclass(frozen=True)
class SyncPolicy:
    """Retry/backoff and bookkeeping knobs for one orchestrator."""

    page_size: int = 100
    max_rate_limit_retries: int = 5
    base_retry_ms: int = 1_000
    max_retry_ms: int = 60_000
    rate_limit_floor: int = 10
    request_timeout_s: float = 30.0
    lock_ttl_s: int = 6 * 3600
    abandon_after_s: int = 30 * 60
    stale_threshold_hours: int = 36
    consecutive_fail_limit: int = 3

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SyncPolicy:
        s = settings or get_settings()
        return cls(
            page_size=s.catalog_page_size,
            max_rate_limit_retries=s.sync_max_rate_limit_retries,
            base_retry_ms=s.sync_base_retry_ms,
            max_retry_ms=s.sync_max_retry_ms,
            rate_limit_floor=s.sync_rate_limit_floor,
            request_timeout_s=s.catalog_request_timeout_s,
            lock_ttl_s=s.sync_lock_ttl_s,
            abandon_after_s=s.sync_abandon_after_s,
            stale_threshold_hours=s.sync_stale_threshold_hours,
            consecutive_fail_limit=s.sync_consecutive_fail_limit,
        )


@dataclass
class SyncCounters:
    """Running totals owned by a single run."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    rate_limit_hits: int = 0
    last_sku: str | None = None

    def add_page(self, result: PageReconcileResult, record_count: int) -> None:
        self.processed += record_count
        self.created += result.created
        self.updated += result.updated
        self.failed += result.failed
        if result.last_sku:
            self.last_sku = result.last_sku

    def column_values(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "rate_limit_hits": self.rate_limit_hits,
            "last_successful_sku": self.last_sku,
        }


@dataclass
class SyncResult:
    """Structured run summary returned to schedulers and operators."""

    status: str
    run_id: int | None
    run_type: str
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    rate_limit_hits: int = 0
    api_cursor: str | None = None
    error: str | None = None
    sku: str | None = None
    outcome: str | None = None

    @classmethod
    def from_run(cls, run: SyncRun, **kwargs: Any) -> SyncResult:
        return cls(
            status=run.status.value,
            run_id=run.id,
            run_type=run.run_type.value,
            processed=run.processed,
            created=run.created,
            updated=run.updated,
            failed=run.failed,
            rate_limit_hits=run.rate_limit_hits,
            api_cursor=run.api_cursor,
            error=run.error_message,
            **kwargs,
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


async def _log_escalation(subject: str, body: str) -> None:
    logger.error(f"ESCALATION: {subject}: {body}")


def backoff_with_jitter(attempt: int, base_ms: int, max_ms: int) -> int:
    """Exponential backoff with full jitter, in milliseconds."""
    ceiling = min(base_ms * (2**attempt), max_ms)
    return int(random.uniform(0, ceiling))


class SyncOrchestrator:
    """Drives sync runs against one catalog."""

    def __init__(
        self,
        client: RemoteCatalogClient,
        store: ProductUpsertStore | None = None,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        policy: SyncPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        notifier: Notifier | None = None,
        lock_key: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self._session_factory = session_factory
        self.store = store or ProductUpsertStore(session_factory, clock=clock)
        self.policy = policy or SyncPolicy.from_settings()
        self._sleep = sleep
        self._notify = notifier or _log_escalation
        self.lock_key = lock_key or sync_lock_key()
        self._clock = clock

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ============================================================
    # Entry points
    # ============================================================

    async def run_incremental_sync(self, triggered_by: str = "cron") -> SyncResult:
        """Resume from the last completed run's cursor and sync to the end of the catalog."""
        return await self._run_paged(SyncRunType.INCREMENTAL, triggered_by, resume=True)

    async def run_full_sync(self, triggered_by: str = "manual") -> SyncResult:
        """Sync the whole catalog from the first page."""
        return await self._run_paged(SyncRunType.FULL, triggered_by, resume=False)

    async def run_manual_sku_sync(self, sku: str, triggered_by: str = "manual") -> SyncResult:
        """Fetch and reconcile a single SKU as its own run."""
        run_type = SyncRunType.MANUAL_SKU
        try:
            async with self._run_lock():
                run = await self._create_run(run_type, triggered_by, start_cursor=None)
                counters = SyncCounters()
                outcome: str | None = None
                status = SyncStatus.COMPLETED
                error: str | None = None
                try:
                    raw = await self._with_rate_limit_retry(
                        lambda: self.client.fetch_product(sku),
                        counters,
                        label=f"sku={sku}",
                        run_id=run.id,
                    )
                    if raw is None:
                        outcome = "not_found"
                        logger.info(f"Manual sync: sku={sku} not found at catalog provider")
                    else:
                        page_result = await self.store.reconcile_page([raw], sync_run_id=run.id)
                        counters.add_page(page_result, 1)
                        outcome = _single_outcome(page_result)
                except (ProviderError, PageCommitError) as e:
                    status, error = SyncStatus.FAILED, str(e)
                    logger.error(f"Manual sync for sku={sku} failed: {e}")
                except Exception as e:
                    status, error = SyncStatus.FAILED, f"{type(e).__name__}: {e}"
                    logger.exception(f"Manual sync for sku={sku} failed unexpectedly")

                final = await self._finalize(run.id, status, counters, error)
        except SyncAlreadyRunningError as e:
            return self._rejected(run_type, str(e), sku=sku)

        logger.info(f"Manual sync sku={sku}: {outcome or final.status.value}")
        return SyncResult.from_run(final, sku=sku, outcome=outcome)

    # ============================================================
    # Operator actions
    # ============================================================

    async def cancel_run(self, run_id: int) -> bool:
        """Mark a running run cancelled; the loop stops before its next page fetch."""
        async with session_scope(self.session_factory) as session:
            res = await session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == SyncStatus.RUNNING)
                .values(status=SyncStatus.CANCELLED, completed_at=self._clock())
            )
            cancelled = (res.rowcount or 0) == 1
        if cancelled:
            logger.info(f"Sync run {run_id} cancelled by operator")
        return cancelled

    async def resolve_run(self, run_id: int) -> bool:
        """Mark an investigated failed run completed so its cursor becomes the resume point."""
        async with session_scope(self.session_factory) as session:
            res = await session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == SyncStatus.FAILED)
                .values(status=SyncStatus.COMPLETED, completed_at=self._clock())
            )
            resolved = (res.rowcount or 0) == 1
        if resolved:
            logger.info(f"Sync run {run_id} resolved by operator; its cursor is now the resume point")
        return resolved

    async def get_run_status(self, run_id: int | None = None) -> SyncResult | None:
        """Summary of one run, or of the most recent run when run_id is None."""
        async with session_scope(self.session_factory) as session:
            if run_id is None:
                res = await session.execute(select(SyncRun).order_by(SyncRun.id.desc()).limit(1))
                run = res.scalar_one_or_none()
            else:
                run = await session.get(SyncRun, run_id)
        return SyncResult.from_run(run) if run else None

    # ============================================================
    # Paged run
    # ============================================================

    async def _run_paged(self, run_type: SyncRunType, triggered_by: str, resume: bool) -> SyncResult:
        try:
            async with self._run_lock():
                start_cursor = await self._load_resume_cursor() if resume else None
                run = await self._create_run(run_type, triggered_by, start_cursor=start_cursor)
                logger.info(
                    f"Sync run {run.id} ({run_type.value}) started by {triggered_by!r}, "
                    f"cursor={start_cursor!r}"
                )
                final = await self._drive(run.id, start_cursor)
        except SyncAlreadyRunningError as e:
            return self._rejected(run_type, str(e))

        if final.status is SyncStatus.COMPLETED:
            await self._mark_stale_products()
        elif final.status is SyncStatus.FAILED:
            await self._check_consecutive_failures()

        logger.info(
            f"Sync run {final.id} {final.status.value}: {final.processed} processed, "
            f"{final.created} created, {final.updated} updated, {final.failed} failed, "
            f"{final.rate_limit_hits} rate-limit hits"
        )
        return SyncResult.from_run(final)

    async def _drive(self, run_id: int, start_cursor: str | None) -> SyncRun:
        """Page loop. Returns the finalized run row."""
        counters = SyncCounters()
        cursor = start_cursor
        status = SyncStatus.COMPLETED
        error: str | None = None

        try:
            while True:
                if not await self._still_running(run_id, f"before fetching cursor={cursor!r}"):
                    break

                page = await self._fetch_page_with_retry(run_id, cursor, counters)

                if not page.records:
                    logger.info(f"Sync run {run_id}: empty page at cursor={cursor!r}, end of catalog")
                    break

                # Cancelled or swept as abandoned while the fetch was in flight.
                if not await self._still_running(run_id, f"discarding fetched page at cursor={cursor!r}"):
                    break

                page_result = await self.store.reconcile_page(page.records, sync_run_id=run_id)
                counters.add_page(page_result, len(page.records))

                # The page is durable; only now may the cursor move past it.
                if not await self._commit_progress(run_id, page.next_cursor, counters):
                    logger.warning(
                        f"Sync run {run_id} is no longer running; progress past cursor={cursor!r} not recorded"
                    )
                    break
                cursor = page.next_cursor
                logger.info(
                    f"Sync run {run_id}: page committed ({len(page.records)} records, "
                    f"+{page_result.created} created, +{page_result.updated} updated, "
                    f"+{page_result.failed} failed), next cursor={cursor!r}"
                )

                if not page.has_more:
                    break
                if cursor is None:
                    logger.warning(f"Sync run {run_id}: provider reported more pages without a cursor; stopping")
                    break

                await self._respect_rate_limit_floor(run_id, page, counters)
        except (ProviderError, PageCommitError) as e:
            status, error = SyncStatus.FAILED, str(e)
            logger.error(f"Sync run {run_id} failed at cursor={cursor!r}: {e}")
        except asyncio.CancelledError:
            await self._finalize(run_id, SyncStatus.CANCELLED, counters, "host task cancelled")
            raise
        except Exception as e:
            status, error = SyncStatus.FAILED, f"{type(e).__name__}: {e}"
            logger.exception(f"Sync run {run_id} failed unexpectedly at cursor={cursor!r}")

        return await self._finalize(run_id, status, counters, error)

    async def _fetch_page_with_retry(self, run_id: int, cursor: str | None, counters: SyncCounters) -> CatalogPage:
        return await self._with_rate_limit_retry(
            lambda: self.client.fetch_page(cursor, self.policy.page_size),
            counters,
            label=f"cursor={cursor!r}",
            run_id=run_id,
        )

    async def _with_rate_limit_retry(
        self,
        call: Callable[[], Awaitable[T]],
        counters: SyncCounters,
        *,
        label: str,
        run_id: int | None = None,
    ) -> T:
        """Run one provider call with the page timeout and bounded rate-limit retries.

        Raises:
            ProviderError: on provider failure, timeout, or exhausted retries.
        """
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(call(), timeout=self.policy.request_timeout_s)
            except asyncio.TimeoutError as e:
                raise ProviderError(
                    f"Catalog request timed out after {self.policy.request_timeout_s}s ({label})"
                ) from e
            except RateLimitedError as e:
                counters.rate_limit_hits += 1
                if attempt >= self.policy.max_rate_limit_retries:
                    raise ProviderError(
                        f"Rate limit retries exhausted after {attempt + 1} attempts ({label})",
                        status_code=429,
                    ) from e
                wait_ms = self._rate_limit_wait_ms(e.retry_after_ms, attempt)
                logger.warning(
                    f"Catalog rate limit hit, waiting {wait_ms}ms "
                    f"(attempt {attempt + 1}/{self.policy.max_rate_limit_retries + 1}, {label})"
                )
                await self._touch_heartbeat(run_id)
                await self._sleep(wait_ms / 1000)
                attempt += 1

    def _rate_limit_wait_ms(self, retry_after_ms: int | None, attempt: int) -> int:
        if retry_after_ms is not None:
            return min(max(retry_after_ms, 0), self.policy.max_retry_ms)
        return backoff_with_jitter(attempt, self.policy.base_retry_ms, self.policy.max_retry_ms)

    async def _respect_rate_limit_floor(self, run_id: int, page: CatalogPage, counters: SyncCounters) -> None:
        """Pause before the next page when the provider's quota is nearly spent."""
        if page.rate_limit_remaining >= self.policy.rate_limit_floor:
            return
        wait_ms = min(max(page.rate_limit_reset_ms, 1_000), self.policy.max_retry_ms)
        counters.rate_limit_hits += 1
        logger.warning(
            f"Catalog rate limit low ({page.rate_limit_remaining} remaining), pausing {wait_ms}ms"
        )
        await self._touch_heartbeat(run_id)
        await self._sleep(wait_ms / 1000)

    # ============================================================
    # Run bookkeeping
    # ============================================================

    @asynccontextmanager
    async def _run_lock(self) -> AsyncGenerator[None, None]:
        """Redis lock around the whole run; the database guard still applies without Redis."""
        acquired: bool | None
        try:
            acquired = await acquire_lock(self.lock_key, ttl=self.policy.lock_ttl_s)
        except RuntimeError:
            # Redis not initialized (tests / minimal deployments)
            acquired = None
        except RedisError as e:
            logger.warning(f"Redis lock unavailable ({e}); relying on database run guard")
            acquired = None

        if acquired is False:
            raise SyncAlreadyRunningError(f"Sync lock {self.lock_key!r} is held by another run")

        try:
            yield
        finally:
            if acquired:
                try:
                    await release_lock(self.lock_key)
                except RedisError as e:
                    logger.warning(f"Failed to release sync lock {self.lock_key!r}: {e}")

    async def _load_resume_cursor(self) -> str | None:
        """api_cursor of the most recently completed full/incremental run."""
        async with session_scope(self.session_factory) as session:
            res = await session.execute(
                select(SyncRun.api_cursor)
                .where(
                    SyncRun.status == SyncStatus.COMPLETED,
                    SyncRun.run_type.in_([SyncRunType.FULL, SyncRunType.INCREMENTAL]),
                )
                .order_by(SyncRun.completed_at.desc(), SyncRun.id.desc())
                .limit(1)
            )
            return res.scalar_one_or_none()

    async def _create_run(
        self,
        run_type: SyncRunType,
        triggered_by: str,
        start_cursor: str | None,
    ) -> SyncRun:
        """Insert the running row, after retiring runs abandoned by a crashed host.

        Raises:
            SyncAlreadyRunningError: if a live run already exists.
        """
        now = self._clock()
        try:
            async with session_scope(self.session_factory) as session:
                await self._fail_abandoned_runs(session, now)

                res = await session.execute(
                    select(SyncRun.id).where(SyncRun.status == SyncStatus.RUNNING).limit(1)
                )
                active_id = res.scalar_one_or_none()
                if active_id is not None:
                    raise SyncAlreadyRunningError(f"Sync run {active_id} is still running")

                run = SyncRun(
                    run_type=run_type,
                    triggered_by=triggered_by[:200],
                    status=SyncStatus.RUNNING,
                    start_cursor=start_cursor,
                    api_cursor=start_cursor,
                    processed=0,
                    created=0,
                    updated=0,
                    failed=0,
                    rate_limit_hits=0,
                    started_at=now,
                    heartbeat_at=now,
                )
                session.add(run)
                await session.flush()
        except IntegrityError as e:
            # Lost the race against a concurrent start (one-running-run index).
            raise SyncAlreadyRunningError("Another sync run started concurrently") from e
        return run

    async def _fail_abandoned_runs(self, session: AsyncSession, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.policy.abandon_after_s)
        res = await session.execute(
            update(SyncRun)
            .where(
                SyncRun.status == SyncStatus.RUNNING,
                func.coalesce(SyncRun.heartbeat_at, SyncRun.started_at) < cutoff,
            )
            .values(
                status=SyncStatus.FAILED,
                completed_at=now,
                error_message=f"abandoned: no heartbeat for {self.policy.abandon_after_s}s",
            )
        )
        if res.rowcount:
            logger.warning(f"Marked {res.rowcount} abandoned sync run(s) as failed")

    async def _still_running(self, run_id: int, context: str) -> bool:
        """False once an operator cancelled the run or another starter swept it as abandoned."""
        async with session_scope(self.session_factory) as session:
            res = await session.execute(select(SyncRun.status).where(SyncRun.id == run_id))
            status = res.scalar_one()
        if status is SyncStatus.RUNNING:
            return True
        if status is SyncStatus.CANCELLED:
            logger.info(f"Sync run {run_id} cancelled; stopping ({context})")
        else:
            logger.warning(f"Sync run {run_id} was marked {status.value} elsewhere; stopping ({context})")
        return False

    async def _commit_progress(self, run_id: int, cursor: str | None, counters: SyncCounters) -> bool:
        """Persist the resume cursor and interim counters (after the page commit).

        Returns False when the run has left RUNNING, in which case nothing is written.
        """
        async with session_scope(self.session_factory) as session:
            res = await session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == SyncStatus.RUNNING)
                .values(api_cursor=cursor, heartbeat_at=self._clock(), **counters.column_values())
            )
            return (res.rowcount or 0) == 1

    async def _touch_heartbeat(self, run_id: int | None) -> None:
        """Keep a run that is waiting out a rate limit from looking abandoned."""
        if run_id is None:
            return
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == SyncStatus.RUNNING)
                .values(heartbeat_at=self._clock())
            )

    async def _finalize(
        self,
        run_id: int,
        status: SyncStatus,
        counters: SyncCounters,
        error: str | None,
    ) -> SyncRun:
        """Move a running run to its terminal state; terminal states are never overwritten."""
        async with session_scope(self.session_factory) as session:
            values: dict[str, Any] = {
                "status": status,
                "completed_at": self._clock(),
                "error_message": error,
                **counters.column_values(),
            }
            await session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == SyncStatus.RUNNING)
                .values(**values)
            )
            res = await session.execute(
                select(SyncRun).where(SyncRun.id == run_id).execution_options(populate_existing=True)
            )
            return res.scalar_one()

    async def _mark_stale_products(self) -> None:
        try:
            await self.store.mark_stale_products(self.policy.stale_threshold_hours)
        except PageCommitError as e:
            logger.warning(f"Stale product marking failed: {e}")

    async def _check_consecutive_failures(self) -> None:
        """Escalate when the last N runs all failed."""
        limit = self.policy.consecutive_fail_limit
        async with session_scope(self.session_factory) as session:
            res = await session.execute(
                select(SyncRun.status).order_by(SyncRun.id.desc()).limit(limit)
            )
            statuses = list(res.scalars())

        if len(statuses) < limit or any(s is not SyncStatus.FAILED for s in statuses):
            return

        await self._notify(
            f"Catalog sync failure: {limit} consecutive failed runs",
            f"The last {limit} catalog sync runs have all failed. Manual investigation is "
            "required; check catalog_sync_runs and catalog_sync_sku_log for details.",
        )

    def _rejected(self, run_type: SyncRunType, reason: str, sku: str | None = None) -> SyncResult:
        logger.warning(f"Sync ({run_type.value}) rejected: {reason}")
        return SyncResult(
            status=STATUS_REJECTED,
            run_id=None,
            run_type=run_type.value,
            error=reason,
            sku=sku,
        )


def _single_outcome(result: PageReconcileResult) -> str:
    if result.created:
        return OUTCOME_CREATED
    if result.updated:
        return OUTCOME_UPDATED
    return OUTCOME_FAILED
