"""Usage metering: lifetime, billing-period and rolling-monthly counters.

Operations:
    record_request(account_id)                  → +1 request on all three request counters
    record_storage_delta(account_id, delta)     → stored bytes (+ both / − lifetime only)
    reset_period(account_id, db=None)           → zero period counters (webhook processor only)

Every counter change is a single UPDATE statement so the database applies the
check-then-act parts (monthly rollover, floor at zero) against the current row.
Metering is best-effort: failures are logged and dropped, never raised to the
request that triggered them.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog
from fastapi import Depends
from sqlalchemy import case, update
from sqlalchemy.orm import Session

from app.core.auth import AuthContext, get_current_account
from app.core.db import SessionLocal
from app.core.instrumentation import METERING_DROPPED
from app.core.models import BillingAccount
from config.settings import get_settings

logger = structlog.get_logger()

MONTHLY_WINDOW = timedelta(days=30)


class UsageMeter:
    """Applies counter updates for one account at a time."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def record_request(self, account_id: int, now: datetime | None = None) -> bool:
        """Count one API request. Returns False when the update failed or hit no row."""
        now = now or datetime.now(timezone.utc)
        window_expired = BillingAccount.monthly_reset_at <= now - MONTHLY_WINDOW
        stmt = (
            update(BillingAccount)
            .where(BillingAccount.id == account_id)
            .values(
                lifetime_request_count=BillingAccount.lifetime_request_count + 1,
                period_request_count=BillingAccount.period_request_count + 1,
                monthly_request_count=case(
                    (window_expired, 1),
                    else_=BillingAccount.monthly_request_count + 1,
                ),
                monthly_reset_at=case(
                    (window_expired, now),
                    else_=BillingAccount.monthly_reset_at,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        return self._execute(stmt, "record_request", account_id)

    def record_storage_delta(self, account_id: int, delta_bytes: int) -> bool:
        """Track stored bytes. Deletions only reduce the lifetime counter."""
        if delta_bytes == 0:
            return True
        values: dict = {
            "lifetime_stored_bytes": case(
                (BillingAccount.lifetime_stored_bytes + delta_bytes < 0, 0),
                else_=BillingAccount.lifetime_stored_bytes + delta_bytes,
            ),
        }
        if delta_bytes > 0:
            values["period_stored_bytes"] = BillingAccount.period_stored_bytes + delta_bytes
        stmt = (
            update(BillingAccount)
            .where(BillingAccount.id == account_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self._execute(stmt, "record_storage_delta", account_id, delta_bytes=delta_bytes)

    def reset_period(self, account_id: int, db: Session | None = None) -> None:
        """Zero the period counters.

        With ``db`` the reset joins the caller's transaction (and errors
        propagate so the caller rolls back); without it the reset commits on
        its own session.
        """
        stmt = (
            update(BillingAccount)
            .where(BillingAccount.id == account_id)
            .values(period_request_count=0, period_stored_bytes=0)
            .execution_options(synchronize_session=False)
        )
        if db is not None:
            db.execute(stmt)
            return
        own = self._session_factory()
        try:
            own.execute(stmt)
            own.commit()
        finally:
            own.close()
        logger.info("metering.period_reset", account_id=account_id)

    def _execute(self, stmt, operation: str, account_id: int, **context) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(stmt)
            db.commit()
            if result.rowcount == 0:
                logger.warning(f"metering.{operation}.account_missing", account_id=account_id, **context)
                return False
            return True
        except Exception as exc:
            db.rollback()
            logger.warning(f"metering.{operation}_failed", account_id=account_id, error=str(exc), **context)
            return False
        finally:
            db.close()


class MeteringDispatcher:
    """Non-blocking front for UsageMeter.

    Callers enqueue and return immediately; worker tasks apply the updates in a
    thread. When the queue is full the update is dropped: the meter feeds a
    cost estimate, so undercounting is acceptable, blocking a request is not.
    """

    def __init__(self, meter: UsageMeter, maxsize: int = 1000, workers: int = 1) -> None:
        self._meter = meter
        self._queue: asyncio.Queue[tuple[str, int, int]] = asyncio.Queue(maxsize=maxsize)
        self._worker_count = max(1, workers)
        self._workers: list[asyncio.Task] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit_request(self, account_id: int) -> bool:
        return self._submit("request", account_id, 0)

    def submit_storage_delta(self, account_id: int, delta_bytes: int) -> bool:
        return self._submit("storage", account_id, delta_bytes)

    def _submit(self, kind: str, account_id: int, amount: int) -> bool:
        try:
            self._queue.put_nowait((kind, account_id, amount))
            return True
        except asyncio.QueueFull:
            METERING_DROPPED.labels(kind=kind).inc()
            logger.warning("metering.dropped", kind=kind, account_id=account_id, reason="queue_full")
            return False

    async def _apply(self, kind: str, account_id: int, amount: int) -> None:
        if kind == "request":
            await asyncio.to_thread(self._meter.record_request, account_id)
        else:
            await asyncio.to_thread(self._meter.record_storage_delta, account_id, amount)

    async def _worker(self) -> None:
        while True:
            kind, account_id, amount = await self._queue.get()
            try:
                await self._apply(kind, account_id, amount)
            except Exception as exc:
                logger.warning("metering.worker_failed", kind=kind, account_id=account_id, error=str(exc))
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [asyncio.create_task(self._worker()) for _ in range(self._worker_count)]
        logger.info("metering.dispatcher_started", workers=self._worker_count)

    async def drain(self) -> None:
        """Apply everything queued so far (used on shutdown and in tests)."""
        while not self._queue.empty():
            kind, account_id, amount = self._queue.get_nowait()
            try:
                await self._apply(kind, account_id, amount)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        if self._workers:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        await self.drain()
        logger.info("metering.dispatcher_stopped")


usage_meter = UsageMeter()
_settings = get_settings()
metering_dispatcher = MeteringDispatcher(
    usage_meter,
    maxsize=_settings.metering_queue_size,
    workers=_settings.metering_workers,
)


def record_request(account_id: int) -> bool:
    """Fire-and-forget request metering for any code path."""
    return metering_dispatcher.submit_request(account_id)


def record_storage_delta(account_id: int, delta_bytes: int) -> bool:
    """Fire-and-forget storage metering (uploads positive, deletions negative)."""
    return metering_dispatcher.submit_storage_delta(account_id, delta_bytes)


def track_api_request(user: AuthContext = Depends(get_current_account)) -> AuthContext:
    """Router dependency: meter the call for the authenticated account."""
    record_request(user.account_id)
    return user
