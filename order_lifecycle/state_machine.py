"""
Applies order transitions. The only writer of order state and the audit log.

Each attempt reads the order, checks the guard, then commits status + event as one
compare-and-set on the order version. A lost race re-reads and re-checks, so the
loser of two concurrent transitions sees the winner's status and fails its guard.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping

from order_lifecycle import metrics
from order_lifecycle.clock import Clock
from order_lifecycle.config import settings
from order_lifecycle.errors import (
    Busy,
    DuplicateIdempotencyKey,
    DuplicateIdempotent,
    IllegalTransition,
    UnknownOrder,
    VersionConflict,
)
from order_lifecycle.models import (
    EDITABLE_FIELDS,
    AuditAction,
    AuditEvent,
    HumanActor,
    Order,
    OrderStatus,
    SystemActor,
)
from order_lifecycle.order_state import (
    ONCE_PER_ORDER,
    is_already_satisfied,
    is_valid_transition,
    next_status,
)
from order_lifecycle.storage import LifecycleStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    order: Order
    event: AuditEvent | None
    applied: bool  # False = idempotent no-op, nothing written

    @property
    def new_status(self) -> OrderStatus:
        return self.order.status


class OrderStateMachine:
    def __init__(
        self,
        store: LifecycleStore,
        clock: Clock,
        stale_after: timedelta = timedelta(hours=settings.stale_order_hours),
        max_attempts: int = settings.transition_max_attempts,
        retry_backoff_ms: int = settings.transition_retry_backoff_ms,
    ):
        self.store = store
        self.clock = clock
        self.stale_after = stale_after
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_ms = retry_backoff_ms

    async def apply_transition(
        self,
        order_id: int,
        action: AuditAction | str,
        actor: HumanActor | SystemActor,
        metadata: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> TransitionResult:
        """
        Apply one action to one order.
        Raises UnknownOrder, IllegalTransition, Busy (retryable) or StorageFailure.
        Replays of an already-applied webhook/idempotency key return applied=False.
        """
        action = AuditAction(action)
        metadata = dict(metadata or {})
        for attempt in range(1, self.max_attempts + 1):
            try:
                try:
                    result = await self._attempt(order_id, action, actor, metadata, idempotency_key)
                except DuplicateIdempotencyKey:
                    # another request committed the same key between our lookup and our write
                    await self._check_idempotency_key(order_id, action, idempotency_key)
                    continue
            except VersionConflict:
                logger.info("Version conflict on order_id=%s action=%s (attempt %d/%d)",
                            order_id, action.value, attempt, self.max_attempts)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_backoff_ms * attempt / 1000)
                continue
            except DuplicateIdempotent as dup:
                order = await self._load(order_id)
                metrics.transitions_duplicate_total.labels(action=action.value).inc()
                logger.info("Duplicate %s for order_id=%s, already recorded as event_id=%s",
                            action.value, order_id, dup.event.id if dup.event else None)
                return TransitionResult(order=order, event=dup.event, applied=False)
            except IllegalTransition as e:
                metrics.transitions_rejected_total.labels(reason=e.code, action=action.value).inc()
                raise
            except UnknownOrder as e:
                metrics.transitions_rejected_total.labels(reason=e.code, action=action.value).inc()
                raise
            metrics.transitions_applied_total.labels(action=action.value).inc()
            logger.info("Applied %s to order_id=%s -> %s (event_id=%s)",
                        action.value, order_id, result.order.status.value, result.event.id)
            return result

        metrics.transitions_rejected_total.labels(reason=Busy.code, action=action.value).inc()
        logger.warning("Gave up on order_id=%s action=%s after %d attempt(s)", order_id, action.value, self.max_attempts)
        raise Busy(order_id, attempts=self.max_attempts)

    async def _load(self, order_id: int) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise UnknownOrder(order_id)
        return order

    async def _check_idempotency_key(self, order_id: int, action: AuditAction, idempotency_key: str) -> None:
        """Raise DuplicateIdempotent if the key already recorded this action, IllegalTransition if it recorded another."""
        existing = await self.store.find_event_by_idempotency_key(idempotency_key)
        if existing is None:
            return
        if existing.order_id != order_id or existing.action is not action:
            raise IllegalTransition(
                order_id, action.value,
                reason=f"idempotency key {idempotency_key} already used by order {existing.order_id} "
                       f"for {existing.action.value}",
            )
        raise DuplicateIdempotent(existing)

    async def _attempt(
        self,
        order_id: int,
        action: AuditAction,
        actor: HumanActor | SystemActor,
        metadata: dict,
        idempotency_key: str | None,
    ) -> TransitionResult:
        metadata = dict(metadata)
        if idempotency_key:
            await self._check_idempotency_key(order_id, action, idempotency_key)

        order = await self._load(order_id)
        current = order.status

        if is_already_satisfied(current, action):
            raise DuplicateIdempotent(await self._last_event(order_id, action), order_id=order_id)
        if not is_valid_transition(current, action):
            raise IllegalTransition(order_id, action.value, current.value)

        changes: dict[str, Any] = {}
        now = self.clock.now()
        if action is AuditAction.AUTO_CANCELED:
            self._check_auto_cancel(order, actor, now)
        elif action in ONCE_PER_ORDER:
            if await self.store.has_event(order_id, action):
                raise IllegalTransition(order_id, action.value, current.value,
                                        reason=f"{action.value} already recorded for order {order_id}")
        elif action is AuditAction.ORDER_UPDATED:
            changes = self._field_changes(order, metadata)

        # keep each order's timeline non-decreasing even if the clock lags the last write
        timestamp = max(now, order.last_modified)
        updated = order.model_copy(update={
            **changes,
            "status": next_status(current, action),
            "version": order.version + 1,
            "updated_at": timestamp,
        })
        if updated.status != current:
            metadata.setdefault("from_status", current.value)
            metadata.setdefault("to_status", updated.status.value)
        event = AuditEvent(
            order_id=order_id,
            action=action,
            timestamp=timestamp,
            actor=actor,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        stored = await self.store.commit_transition(updated, order.version, event)
        return TransitionResult(order=updated, event=stored, applied=True)

    def _check_auto_cancel(self, order: Order, actor, now) -> None:
        if not isinstance(actor, SystemActor):
            raise IllegalTransition(order.id, AuditAction.AUTO_CANCELED.value, order.status.value,
                                    reason="auto-cancel is reserved for the system actor")
        age = now - order.created_at
        if age < self.stale_after:
            raise IllegalTransition(order.id, AuditAction.AUTO_CANCELED.value, order.status.value,
                                    reason=f"order {order.id} is only {age} old")

    def _field_changes(self, order: Order, metadata: dict) -> dict[str, Any]:
        raw = metadata.get("changes")
        if not isinstance(raw, dict) or not raw:
            raise IllegalTransition(order.id, AuditAction.ORDER_UPDATED.value, order.status.value,
                                    reason="ORDER_UPDATED needs a non-empty 'changes' mapping")
        forbidden = sorted(set(raw) - EDITABLE_FIELDS)
        if forbidden:
            raise IllegalTransition(order.id, AuditAction.ORDER_UPDATED.value, order.status.value,
                                    reason=f"fields not editable: {', '.join(forbidden)}")
        # validate through the model so bad values never reach the store
        candidate = Order.model_validate({**order.model_dump(), **raw})
        return {field: getattr(candidate, field) for field in raw}

    async def _last_event(self, order_id: int, action: AuditAction) -> AuditEvent | None:
        _, events = await self.store.list_events(order_id)
        for event in reversed(events):
            if event.action is action:
                return event
        return None
