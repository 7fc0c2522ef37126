"""
Order/event storage interface plus an in-process implementation.
Only the state machine writes through this interface; everything else reads.
"""
import asyncio
from datetime import datetime

from order_lifecycle.errors import DuplicateIdempotencyKey, UnknownOrder, VersionConflict
from order_lifecycle.models import (
    PAYMENT_ACTIONS,
    AuditAction,
    AuditEvent,
    AuditFilters,
    AuditSummary,
    HumanActor,
    Order,
    OrderStatus,
)


class LifecycleStore:
    """
    Persistent home of orders (current state, versioned) and the append-only audit log.
    There is no update or delete for events.
    """

    async def create_order(self, order: Order) -> Order:
        raise NotImplementedError

    async def get_order(self, order_id: int) -> Order | None:
        raise NotImplementedError

    async def list_pending_orders(self, created_before: datetime, limit: int) -> list[Order]:
        """Pending orders with created_at <= created_before, oldest first."""
        raise NotImplementedError

    async def append_event(self, event: AuditEvent) -> int:
        """Append one event and return its id."""
        raise NotImplementedError

    async def commit_transition(self, order: Order, expected_version: int, event: AuditEvent) -> AuditEvent:
        """
        Atomically replace the order (only if the stored version still equals expected_version)
        and append the event. Either both happen or neither does.
        Raises VersionConflict or DuplicateIdempotencyKey.
        """
        raise NotImplementedError

    async def has_event(self, order_id: int, action: AuditAction) -> bool:
        raise NotImplementedError

    async def find_event_by_idempotency_key(self, key: str) -> AuditEvent | None:
        raise NotImplementedError

    async def list_events(self, order_id: int, offset: int = 0, limit: int | None = None) -> tuple[int, list[AuditEvent]]:
        """(total, events) for one order, oldest first."""
        raise NotImplementedError

    async def list_events_for_orders(self, order_ids: list[int]) -> dict[int, list[AuditEvent]]:
        raise NotImplementedError

    async def search_orders(self, filters: AuditFilters, offset: int, limit: int) -> tuple[int, list[Order]]:
        """(total matching, one page) ordered by created_at descending."""
        raise NotImplementedError

    async def summarize(self, filters: AuditFilters) -> AuditSummary:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def summarize_events(events: list[AuditEvent]) -> tuple[bool, bool, bool]:
    """Whether an order has a payment, release and truck-exit event attributed to a person."""
    human = [e for e in events if isinstance(e.actor, HumanActor)]
    return (
        any(e.action in PAYMENT_ACTIONS for e in human),
        any(e.action is AuditAction.ORDER_RELEASED for e in human),
        any(e.action is AuditAction.TRUCK_EXIT_RECORDED for e in human),
    )


def _contains(haystack: str | None, needle: str) -> bool:
    return bool(haystack) and needle in haystack.lower()


def matches_filters(order: Order, events: list[AuditEvent], filters: AuditFilters) -> bool:
    if filters.q:
        needle = filters.q.lower()
        text_hit = (
            needle in str(order.id)
            or _contains(order.reference, needle)
            or _contains(order.customer_name, needle)
            or _contains(order.customer_email, needle)
            or any(_contains(item.product_name, needle) for item in order.line_items)
            or any(isinstance(e.actor, HumanActor) and _contains(e.actor.email, needle) for e in events)
        )
        if not text_hit:
            return False
    if filters.has_event_filter:
        start, end = filters.start, filters.end
        for e in events:
            if filters.action is not None and e.action is not filters.action:
                continue
            if start is not None and e.timestamp < start:
                continue
            if end is not None and e.timestamp > end:
                continue
            break
        else:
            return False
    return True


class MemoryStore(LifecycleStore):
    """Single-process store. Writes are serialised by one asyncio lock; reads yield to the loop."""

    def __init__(self) -> None:
        self._orders: dict[int, Order] = {}
        self._events: dict[int, list[AuditEvent]] = {}
        self._keys: dict[str, AuditEvent] = {}
        self._next_event_id = 1
        self._lock = asyncio.Lock()

    async def create_order(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise ValueError(f"order {order.id} already exists")
            if any(o.reference == order.reference for o in self._orders.values()):
                raise ValueError(f"reference {order.reference} already assigned")
            if order.updated_at is None:
                order = order.model_copy(update={"updated_at": order.created_at})
            self._orders[order.id] = order
            self._events[order.id] = []
            return order

    async def get_order(self, order_id: int) -> Order | None:
        await asyncio.sleep(0)
        return self._orders.get(order_id)

    async def list_pending_orders(self, created_before: datetime, limit: int) -> list[Order]:
        pending = [
            o for o in self._orders.values()
            if o.status is OrderStatus.PENDING and o.created_at <= created_before
        ]
        pending.sort(key=lambda o: (o.created_at, o.id))
        return pending[:limit]

    def _append_locked(self, event: AuditEvent) -> AuditEvent:
        if event.order_id not in self._orders:
            raise UnknownOrder(event.order_id)
        if event.idempotency_key is not None and event.idempotency_key in self._keys:
            raise DuplicateIdempotencyKey(event.idempotency_key)
        stored = event.model_copy(update={"id": self._next_event_id})
        self._next_event_id += 1
        self._events[stored.order_id].append(stored)
        if stored.idempotency_key is not None:
            self._keys[stored.idempotency_key] = stored
        return stored

    async def append_event(self, event: AuditEvent) -> int:
        async with self._lock:
            return self._append_locked(event).id

    async def commit_transition(self, order: Order, expected_version: int, event: AuditEvent) -> AuditEvent:
        async with self._lock:
            current = self._orders.get(order.id)
            if current is None or current.version != expected_version:
                raise VersionConflict(order.id, expected_version)
            stored = self._append_locked(event)
            self._orders[order.id] = order
            return stored

    async def has_event(self, order_id: int, action: AuditAction) -> bool:
        return any(e.action is action for e in self._events.get(order_id, ()))

    async def find_event_by_idempotency_key(self, key: str) -> AuditEvent | None:
        return self._keys.get(key)

    async def list_events(self, order_id: int, offset: int = 0, limit: int | None = None) -> tuple[int, list[AuditEvent]]:
        events = self._events.get(order_id, [])
        end = None if limit is None else offset + limit
        return len(events), list(events[offset:end])

    async def list_events_for_orders(self, order_ids: list[int]) -> dict[int, list[AuditEvent]]:
        return {oid: list(self._events.get(oid, [])) for oid in order_ids}

    def _filtered(self, filters: AuditFilters) -> list[Order]:
        found = [o for o in self._orders.values() if matches_filters(o, self._events[o.id], filters)]
        found.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return found

    async def search_orders(self, filters: AuditFilters, offset: int, limit: int) -> tuple[int, list[Order]]:
        found = self._filtered(filters)
        return len(found), found[offset:offset + limit]

    async def summarize(self, filters: AuditFilters) -> AuditSummary:
        summary = AuditSummary()
        for order in self._filtered(filters):
            payment, release, exit_ = summarize_events(self._events[order.id])
            summary.total += 1
            summary.payment += payment
            summary.release += release
            summary.exit += exit_
        return summary
