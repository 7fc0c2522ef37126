"""
Read side of the audit trail: filtered order search, per-order timelines and summary counts.
Never writes. Storage errors propagate as StorageFailure; no partial results.
"""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from order_lifecycle import metrics
from order_lifecycle.errors import UnknownOrder
from order_lifecycle.models import (
    PAYMENT_ACTIONS,
    AuditAction,
    AuditEvent,
    AuditFilters,
    AuditSummary,
    HumanActor,
    Order,
    OrderStatus,
    ReleaseType,
)
from order_lifecycle.storage import LifecycleStore


class AuditOrderRow(BaseModel):
    id: int
    order_reference: str
    created_at: datetime
    status: OrderStatus
    release_type: ReleaseType | None = None
    customer_name: str = ""
    customer_email: str = ""
    product: str = ""
    quantity: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")

    payment_confirmed_at: datetime | None = None
    payment_user_name: str | None = None
    payment_user_email: str | None = None

    released_at: datetime | None = None
    release_user_name: str | None = None
    release_user_email: str | None = None

    truck_exit_at: datetime | None = None
    truck_exit_user_name: str | None = None
    truck_exit_user_email: str | None = None


class AuditPage(BaseModel):
    count: int
    page: int
    page_size: int
    results: list[AuditOrderRow]


class EventPage(BaseModel):
    count: int
    page: int
    page_size: int
    results: list[AuditEvent]


def _latest(events: list[AuditEvent], actions) -> tuple[datetime | None, str | None, str | None]:
    """Most recent event of the given kinds attributed to a person; system events carry no user."""
    for event in reversed(events):
        if event.action in actions and isinstance(event.actor, HumanActor):
            return event.timestamp, event.actor.name or None, event.actor.email or None
    return None, None, None


def build_row(order: Order, events: list[AuditEvent]) -> AuditOrderRow:
    paid_at, paid_name, paid_email = _latest(events, PAYMENT_ACTIONS)
    released_at, rel_name, rel_email = _latest(events, {AuditAction.ORDER_RELEASED})
    exit_at, exit_name, exit_email = _latest(events, {AuditAction.TRUCK_EXIT_RECORDED})
    return AuditOrderRow(
        id=order.id,
        order_reference=order.reference,
        created_at=order.created_at,
        status=order.status,
        release_type=order.release_type,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        product=", ".join(item.product_name for item in order.line_items),
        quantity=sum((item.quantity for item in order.line_items), Decimal("0")),
        amount=order.total_price,
        payment_confirmed_at=paid_at,
        payment_user_name=paid_name,
        payment_user_email=paid_email,
        released_at=released_at,
        release_user_name=rel_name,
        release_user_email=rel_email,
        truck_exit_at=exit_at,
        truck_exit_user_name=exit_name,
        truck_exit_user_email=exit_email,
    )


class AuditQueryService:
    def __init__(self, store: LifecycleStore, default_page_size: int = 50, max_page_size: int = 500):
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def _bounds(self, page: int, page_size: int | None) -> tuple[int, int, int]:
        if page < 1:
            raise ValueError("page must be >= 1")
        size = page_size or self.default_page_size
        size = max(1, min(size, self.max_page_size))
        return page, size, (page - 1) * size

    async def search(self, filters: AuditFilters, page: int = 1, page_size: int | None = None) -> AuditPage:
        """Orders matching filters, newest first. count covers the whole filtered set."""
        page, size, offset = self._bounds(page, page_size)
        total, orders = await self.store.search_orders(filters, offset, size)
        events = await self.store.list_events_for_orders([o.id for o in orders])
        metrics.audit_queries_total.labels(kind="search").inc()
        return AuditPage(
            count=total,
            page=page,
            page_size=size,
            results=[build_row(o, events.get(o.id, [])) for o in orders],
        )

    async def summarize(self, filters: AuditFilters) -> AuditSummary:
        """Counts over the full filtered set, regardless of paging."""
        metrics.audit_queries_total.labels(kind="summary").inc()
        return await self.store.summarize(filters)

    @staticmethod
    def page_summary(page: AuditPage) -> AuditSummary:
        """
        Counts over the rows of one page only. total is the number of rows on the page.
        Uses the same rule as summarize: an order counts once it has a person-attributed event of the kind.
        """
        rows = page.results
        return AuditSummary(
            total=len(rows),
            payment=sum(1 for r in rows if r.payment_confirmed_at is not None),
            release=sum(1 for r in rows if r.released_at is not None),
            exit=sum(1 for r in rows if r.truck_exit_at is not None),
        )

    async def list_events(self, order_id: int, page: int = 1, page_size: int | None = None) -> EventPage:
        page, size, offset = self._bounds(page, page_size)
        if await self.store.get_order(order_id) is None:
            raise UnknownOrder(order_id)
        total, events = await self.store.list_events(order_id, offset, size)
        metrics.audit_queries_total.labels(kind="events").inc()
        return EventPage(count=total, page=page, page_size=size, results=events)

    async def get_timeline(self, order_id: int) -> list[AuditEvent]:
        """Every event for one order, oldest first, metadata verbatim."""
        if await self.store.get_order(order_id) is None:
            raise UnknownOrder(order_id)
        _, events = await self.store.list_events(order_id)
        metrics.audit_queries_total.labels(kind="timeline").inc()
        return events
