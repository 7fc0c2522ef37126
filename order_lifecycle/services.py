"""
Wires the store, clock, state machine and query service for one process.
"""
from dataclasses import dataclass, field
from datetime import timedelta

from order_lifecycle.audit_query import AuditQueryService
from order_lifecycle.clock import Clock, SystemClock
from order_lifecycle.config import Settings, settings as default_settings
from order_lifecycle.redis_client import WebhookCache, get_redis
from order_lifecycle.state_machine import OrderStateMachine
from order_lifecycle.storage import LifecycleStore, MemoryStore


@dataclass
class LifecycleServices:
    store: LifecycleStore
    clock: Clock
    machine: OrderStateMachine
    audit: AuditQueryService
    webhook_cache: WebhookCache | None = None
    settings: Settings = field(default_factory=lambda: default_settings)

    @classmethod
    def create(
        cls,
        store: LifecycleStore,
        clock: Clock | None = None,
        webhook_cache: WebhookCache | None = None,
        settings: Settings | None = None,
    ) -> "LifecycleServices":
        settings = settings or default_settings
        clock = clock or SystemClock()
        machine = OrderStateMachine(
            store,
            clock,
            stale_after=timedelta(hours=settings.stale_order_hours),
            max_attempts=settings.transition_max_attempts,
            retry_backoff_ms=settings.transition_retry_backoff_ms,
        )
        audit = AuditQueryService(
            store,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
        )
        return cls(store=store, clock=clock, machine=machine, audit=audit,
                   webhook_cache=webhook_cache, settings=settings)

    async def close(self) -> None:
        await self.store.close()


async def build_services(settings: Settings | None = None) -> LifecycleServices:
    settings = settings or default_settings
    if settings.storage_backend == "memory":
        store: LifecycleStore = MemoryStore()
    else:
        from order_lifecycle.db import PostgresStore

        store = await PostgresStore.connect(settings.database_url, lock_timeout_ms=settings.lock_timeout_ms)
    r = await get_redis()
    cache = WebhookCache(r, settings.webhook_idempotency_ttl_seconds) if r is not None else None
    return LifecycleServices.create(store, webhook_cache=cache, settings=settings)
