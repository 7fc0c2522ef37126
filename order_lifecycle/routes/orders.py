from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, JsonValue, field_validator

from order_lifecycle.actors import resolve_actor
from order_lifecycle.deps import get_services
from order_lifecycle.models import AuditAction, HumanActor
from order_lifecycle.services import LifecycleServices

router = APIRouter(prefix="/orders", tags=["orders"])

# operators confirm payments with PAYMENT_CONFIRMED; gateway confirmations arrive via /webhooks/payments
GATEWAY_ONLY_ACTIONS = frozenset({AuditAction.PAYMENT_WEBHOOK_CONFIRMED})


class TransitionBody(BaseModel):
    action: AuditAction = Field(..., description="Audit action to apply")
    metadata: dict[str, JsonValue] = Field(default_factory=dict, description="Context recorded with the event")
    idempotency_key: str | None = Field(default=None, description="Retries with the same key are applied once")

    @field_validator("action")
    @classmethod
    def not_gateway_only(cls, action: AuditAction) -> AuditAction:
        if action in GATEWAY_ONLY_ACTIONS:
            raise ValueError(f"{action.value} is recorded by the payment webhook only")
        return action


@router.post("/{order_id}/transitions")
async def request_transition(
    order_id: int,
    body: TransitionBody,
    actor: HumanActor = Depends(resolve_actor),
    services: LifecycleServices = Depends(get_services),
) -> JSONResponse:
    """
    Apply an action to an order on behalf of the authenticated operator.
    New transition -> 201. Already applied (idempotent replay) -> 200.
    Illegal for the current status -> 409, unknown order -> 404, busy -> 503.
    """
    result = await services.machine.apply_transition(
        order_id, body.action, actor, body.metadata, idempotency_key=body.idempotency_key
    )
    return JSONResponse(
        status_code=201 if result.applied else 200,
        content={
            "status": "applied" if result.applied else "already_processed",
            "order_id": order_id,
            "new_status": result.new_status.value,
            "event_id": result.event.id if result.event else None,
        },
    )


@router.get("/{order_id}/timeline")
async def get_order_timeline(order_id: int, services: LifecycleServices = Depends(get_services)) -> dict:
    """Every audit event for the order, oldest first."""
    events = await services.audit.get_timeline(order_id)
    return {
        "order_id": order_id,
        "count": len(events),
        "results": [e.model_dump(mode="json") for e in events],
    }
