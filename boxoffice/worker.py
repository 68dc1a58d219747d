"""Background loop that drains the ticket delivery outbox."""
from __future__ import annotations
import asyncio
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from .config import OUTBOX_INTERVAL_SECONDS, OUTBOX_BATCH_SIZE
from .delivery import DeliveryAdapter
from .infra.sql import GatedAsyncSession, Gated
from .model import outbox


class OutboxWorker:

    def __init__(
        self,
        SessionAsync: async_sessionmaker,
        gated: Gated,
        adapter: DeliveryAdapter,
        interval: float = OUTBOX_INTERVAL_SECONDS,
        batch_size: int = OUTBOX_BATCH_SIZE,
    ) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated
        self.adapter = adapter
        self.interval = interval
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    async def run_once(
        self, order_id: Optional[str] = None
    ) -> outbox.DrainReport:
        async with self.SessionAsync() as session:
            db = GatedAsyncSession(session=session, gated=self.gated)
            return await outbox.drain(
                db, self.adapter,
                max_batch=1 if order_id else self.batch_size,
                order_id=order_id,
            )

    async def _loop(self) -> None:
        logger.info("Outbox worker started (every {}s, batch {})",
                    self.interval, self.batch_size)
        while not self._stop.is_set():
            try:
                report = await self.run_once()
                if report.processed:
                    logger.info("Outbox drained: {}", report.as_dict())
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Outbox drain cycle failed")
            try:
                await asyncio.wait_for(self._stop.wait(), self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox worker stopped")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None
