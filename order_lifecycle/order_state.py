"""
Order lifecycle state machine rules. Valid transitions enforce business rules.
"""
from typing import Iterable, NamedTuple

from order_lifecycle.models import AuditAction, AuditEvent, OrderStatus


class Transition(NamedTuple):
    sources: frozenset[OrderStatus]
    target: OrderStatus | None  # None = event-only, status unchanged


_ANY = frozenset(OrderStatus)

# Requested action -> statuses it may be applied from, and where it leads
VALID_TRANSITIONS: dict[AuditAction, Transition] = {
    AuditAction.PAYMENT_CONFIRMED: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.PAID),
    AuditAction.PAYMENT_WEBHOOK_CONFIRMED: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.PAID),
    AuditAction.ORDER_CANCELED: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.CANCELED),
    AuditAction.AUTO_CANCELED: Transition(frozenset({OrderStatus.PENDING}), OrderStatus.CANCELED),
    AuditAction.ORDER_RELEASED: Transition(frozenset({OrderStatus.PAID}), OrderStatus.RELEASED),
    AuditAction.TRUCK_EXIT_RECORDED: Transition(frozenset({OrderStatus.RELEASED}), None),
    AuditAction.SECURITY_EXIT: Transition(frozenset({OrderStatus.RELEASED}), None),
    AuditAction.ORDER_UPDATED: Transition(_ANY, None),
    # historical only; cannot be requested
    AuditAction.ORDER_STATUS_CHANGED: Transition(frozenset(), None),
}

# Event-only actions that may be recorded at most once per order
ONCE_PER_ORDER = frozenset({AuditAction.TRUCK_EXIT_RECORDED, AuditAction.SECURITY_EXIT})

# Webhook confirmations that arrive after payment already landed are satisfied, not illegal
ALREADY_SATISFIED: dict[AuditAction, frozenset[OrderStatus]] = {
    AuditAction.PAYMENT_WEBHOOK_CONFIRMED: frozenset({OrderStatus.PAID, OrderStatus.RELEASED}),
}


def is_valid_transition(current_state: OrderStatus, action: AuditAction) -> bool:
    """True if action is allowed from current_state."""
    rule = VALID_TRANSITIONS.get(action)
    return rule is not None and current_state in rule.sources


def is_already_satisfied(current_state: OrderStatus, action: AuditAction) -> bool:
    return current_state in ALREADY_SATISFIED.get(action, frozenset())


def next_status(current_state: OrderStatus, action: AuditAction) -> OrderStatus:
    target = VALID_TRANSITIONS[action].target
    return current_state if target is None else target


def replay_status(events: Iterable[AuditEvent], initial: OrderStatus = OrderStatus.PENDING) -> OrderStatus:
    """Rebuild an order's status by replaying its timeline, oldest first."""
    status = initial
    for event in events:
        if event.action is AuditAction.ORDER_STATUS_CHANGED:
            target = event.metadata.get("to")
            if isinstance(target, str):
                status = OrderStatus.parse(target)
            continue
        status = next_status(status, event.action)
    return status
