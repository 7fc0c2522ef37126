"""
Domain records: orders, actors, audit events and the filters used to query them.
All records are immutable; state changes produce new copies.
"""
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, JsonValue, field_validator


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    RELEASED = "released"
    CANCELED = "canceled"

    @classmethod
    def parse(cls, raw: "str | OrderStatus") -> "OrderStatus":
        """Accepts any letter case and the legacy spelling 'cancelled'."""
        if isinstance(raw, OrderStatus):
            return raw
        value = (raw or "").strip().lower()
        if value == "cancelled":
            value = "canceled"
        return cls(value)


class ReleaseType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class AuditAction(str, Enum):
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_WEBHOOK_CONFIRMED = "PAYMENT_WEBHOOK_CONFIRMED"
    ORDER_RELEASED = "ORDER_RELEASED"
    TRUCK_EXIT_RECORDED = "TRUCK_EXIT_RECORDED"
    SECURITY_EXIT = "SECURITY_EXIT"
    ORDER_CANCELED = "ORDER_CANCELED"
    AUTO_CANCELED = "AUTO_CANCELED"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
    ORDER_UPDATED = "ORDER_UPDATED"


PAYMENT_ACTIONS = frozenset({AuditAction.PAYMENT_CONFIRMED, AuditAction.PAYMENT_WEBHOOK_CONFIRMED})


class HumanActor(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["human"] = "human"
    id: str
    name: str = ""
    email: str = ""
    role: str = ""


class SystemActor(BaseModel):
    """The sweeper and internal fixups. Carries no identity."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["system"] = "system"


Actor = Annotated[Union[HumanActor, SystemActor], Field(discriminator="kind")]

SYSTEM = SystemActor()


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_name: str
    quantity: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0")


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    reference: str
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime
    updated_at: datetime | None = None
    version: int = 0
    total_price: Decimal = Decimal("0")
    line_items: tuple[LineItem, ...] = ()
    release_type: ReleaseType | None = None
    customer_name: str = ""
    customer_email: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, value):
        return OrderStatus.parse(value)

    @property
    def last_modified(self) -> datetime:
        return self.updated_at or self.created_at


# Fields an ORDER_UPDATED event may change.
EDITABLE_FIELDS = frozenset({"total_price", "line_items", "release_type", "customer_name", "customer_email"})


class AuditEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int | None = None  # assigned by the store on append
    order_id: int
    action: AuditAction
    timestamp: datetime
    actor: Actor
    metadata: dict[str, JsonValue] = Field(default_factory=dict)
    idempotency_key: str | None = None


def start_of_day_utc(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day_utc(day: date) -> datetime:
    return datetime.combine(day, time.max, tzinfo=timezone.utc)


class AuditFilters(BaseModel):
    """Audit search filters. Date bounds are whole UTC days, inclusive on both ends."""
    model_config = ConfigDict(frozen=True)

    q: str | None = None
    action: AuditAction | None = None
    date_from: date | None = None
    date_to: date | None = None

    @field_validator("q", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("date_from", "date_to", mode="before")
    @classmethod
    def _day_only(cls, value):
        # Accept full timestamps from older clients; only the UTC day is significant.
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            return value.date()
        if isinstance(value, str) and "T" in value:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc)
            return parsed.date()
        return value

    @property
    def start(self) -> datetime | None:
        return start_of_day_utc(self.date_from) if self.date_from else None

    @property
    def end(self) -> datetime | None:
        return end_of_day_utc(self.date_to) if self.date_to else None

    @property
    def has_event_filter(self) -> bool:
        return self.action is not None or self.date_from is not None or self.date_to is not None


class AuditSummary(BaseModel):
    total: int = 0
    payment: int = 0
    release: int = 0
    exit: int = 0
