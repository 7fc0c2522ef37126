"""
Auto-cancel sweeper: cancel pending orders older than the stale threshold.
- Goes through the state machine like any other actor (SYSTEM). The guard decides races, not the sweeper.
- IllegalTransition / UnknownOrder = someone else got there first; skipped silently.
- Busy is retried a bounded number of times per cycle; orders are processed independently.
- Prometheus /metrics on SWEEPER_METRICS_PORT. Graceful shutdown on SIGTERM.
Run: python -m order_lifecycle.sweeper
"""
import asyncio
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from redis.exceptions import RedisError

from order_lifecycle import metrics
from order_lifecycle.clock import Clock
from order_lifecycle.config import settings
from order_lifecycle.errors import Busy, IllegalTransition, LifecycleError, UnknownOrder
from order_lifecycle.models import SYSTEM, AuditAction, Order
from order_lifecycle.redis_client import SweepLease
from order_lifecycle.state_machine import OrderStateMachine
from order_lifecycle.storage import LifecycleStore

logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_WAIT_SEC = 30


@dataclass
class SweepReport:
    started_at: datetime
    candidates: int = 0
    canceled: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    busy: list[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "candidates": self.candidates,
            "canceled": self.canceled,
            "skipped": self.skipped,
            "busy": self.busy,
        }


def _format_elapsed(elapsed: timedelta) -> str:
    minutes = int(elapsed.total_seconds() // 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


class AutoCancelSweeper:
    def __init__(
        self,
        machine: OrderStateMachine,
        store: LifecycleStore,
        clock: Clock,
        threshold: timedelta = timedelta(hours=settings.stale_order_hours),
        batch_size: int = settings.sweep_batch_size,
        concurrency: int = settings.sweep_concurrency,
        busy_retries: int = settings.sweep_busy_retries,
        busy_backoff_sec: float = 0.2,
        lease: SweepLease | None = None,
    ):
        self.machine = machine
        self.store = store
        self.clock = clock
        self.threshold = threshold
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.busy_retries = busy_retries
        self.busy_backoff_sec = busy_backoff_sec
        self.lease = lease

    async def sweep_once(self) -> SweepReport:
        """
        One pass over stale pending orders. Skips and busy orders are reported, not raised.
        A storage error on one order is raised only after every other order has been attempted.
        """
        started = time.monotonic()
        now = self.clock.now()
        report = SweepReport(started_at=now)
        candidates = await self.store.list_pending_orders(created_before=now - self.threshold, limit=self.batch_size)
        report.candidates = len(candidates)
        metrics.sweeper_candidates.set(len(candidates))

        sem = asyncio.Semaphore(self.concurrency)
        # every order runs to completion even if another one hits a storage error
        outcomes = await asyncio.gather(
            *(self._cancel_one(order, now, sem) for order in candidates), return_exceptions=True
        )
        failures: list[BaseException] = []
        for order, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Auto-cancel of order_id=%s failed: %s", order.id, outcome)
                failures.append(outcome)
                continue
            getattr(report, outcome).append(order.id)
            metrics.sweeper_orders_total.labels(outcome=outcome).inc()

        metrics.sweep_duration_seconds.observe(time.monotonic() - started)
        logger.info(
            "Sweep done: candidates=%d canceled=%d skipped=%d busy=%d",
            report.candidates, len(report.canceled), len(report.skipped), len(report.busy),
        )
        if failures:
            raise failures[0]
        return report

    async def _cancel_one(self, order: Order, now: datetime, sem: asyncio.Semaphore) -> str:
        elapsed = now - order.created_at
        metadata = {
            "elapsed_seconds": int(elapsed.total_seconds()),
            "elapsed": _format_elapsed(elapsed),
            "threshold_hours": self.threshold.total_seconds() / 3600,
        }
        async with sem:
            for attempt in range(self.busy_retries + 1):
                try:
                    await self.machine.apply_transition(order.id, AuditAction.AUTO_CANCELED, SYSTEM, metadata)
                    logger.info("Auto-canceled order_id=%s after %s", order.id, metadata["elapsed"])
                    return "canceled"
                except (IllegalTransition, UnknownOrder) as e:
                    logger.info("Skipped order_id=%s: %s", order.id, e)
                    return "skipped"
                except Busy:
                    if attempt < self.busy_retries:
                        await asyncio.sleep(self.busy_backoff_sec * (2 ** attempt))
        logger.warning("order_id=%s still busy after %d retries, leaving it for the next sweep",
                       order.id, self.busy_retries)
        return "busy"

    async def _acquire_lease(self) -> bool:
        if self.lease is None:
            return True
        try:
            return await self.lease.acquire()
        except RedisError as e:
            # the state machine still decides every race, so sweep without the lease
            logger.warning("Sweep lease unavailable (%s), sweeping without it", e)
            return True

    async def _release_lease(self) -> None:
        if self.lease is None:
            return
        try:
            await self.lease.release()
        except RedisError as e:
            logger.warning("Could not release sweep lease, it will expire on its own: %s", e)

    async def run(self, shutdown_event: asyncio.Event, interval_sec: float = settings.sweep_interval_seconds) -> None:
        logger.info("Sweeper started (threshold=%s, interval=%ss, concurrency=%d)",
                    self.threshold, interval_sec, self.concurrency)
        while not shutdown_event.is_set():
            if await self._acquire_lease():
                try:
                    await self.sweep_once()
                except LifecycleError as e:
                    logger.error("Sweep failed, retrying next cycle: %s", e)
                except Exception as e:
                    logger.exception("Unexpected sweep failure, retrying next cycle: %s", e)
                finally:
                    await self._release_lease()
            else:
                logger.info("Another sweeper holds the lease, skipping this cycle")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval_sec)
            except asyncio.TimeoutError:
                pass
        logger.info("Sweeper stopped.")


async def run_sweeper(shutdown_event: asyncio.Event) -> None:
    from order_lifecycle.redis_client import close_redis, get_redis
    from order_lifecycle.services import build_services

    services = await build_services()
    r = await get_redis()
    lease = SweepLease(r, ttl_ms=settings.sweep_interval_seconds * 1000) if r is not None else None
    sweeper = AutoCancelSweeper(services.machine, services.store, services.clock, lease=lease)
    task = asyncio.create_task(sweeper.run(shutdown_event))
    stop = asyncio.create_task(shutdown_event.wait())
    try:
        done, _ = await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            stop.cancel()
            # run() returns only after shutdown; re-raise anything else
            task.result()
            return
        logger.info("Graceful shutdown: waiting for the current sweep (max %ds) ...", GRACEFUL_SHUTDOWN_WAIT_SEC)
        try:
            await asyncio.wait_for(task, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC)
        except asyncio.TimeoutError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
    finally:
        await services.close()
        await close_redis()


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.sweeper_metrics_port)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.sweeper_metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_sweeper(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
