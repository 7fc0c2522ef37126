"""
Failure taxonomy for transitions and queries.
"""


class LifecycleError(Exception):
    code = "lifecycle_error"


class UnknownOrder(LifecycleError):
    code = "unknown_order"

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"order {order_id} does not exist")


class IllegalTransition(LifecycleError):
    """Requested action does not apply to the order's current status. Never retried."""
    code = "illegal_transition"

    def __init__(self, order_id: int, action: str, current_status: str | None = None, reason: str = ""):
        self.order_id = order_id
        self.action = action
        self.current_status = current_status
        self.reason = reason or f"{action} not allowed from status {current_status}"
        super().__init__(self.reason)


class DuplicateIdempotent(LifecycleError):
    """The action was already applied. Callers treat this as success."""
    code = "duplicate_idempotent"

    def __init__(self, event=None, order_id: int | None = None):
        self.event = event
        self.order_id = event.order_id if event is not None else order_id
        super().__init__(f"already applied to order {self.order_id}")


class Busy(LifecycleError):
    """Could not get exclusive access to the order in time. Safe to retry later."""
    code = "busy"

    def __init__(self, order_id: int, attempts: int = 0):
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"order {order_id} is busy (gave up after {attempts} attempt(s))")


class StorageFailure(LifecycleError):
    code = "storage_failure"


class VersionConflict(Exception):
    """Raised by a store when the compare-and-set on the order version loses. Transaction rolls back."""

    def __init__(self, order_id: int, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(f"order {order_id} is no longer at version {expected_version}")


class DuplicateIdempotencyKey(Exception):
    """Raised by a store when the idempotency key is already recorded. Transaction rolls back."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(key)
