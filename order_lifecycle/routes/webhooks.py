import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from order_lifecycle.actors import gateway_actor
from order_lifecycle.deps import get_services
from order_lifecycle.metrics import webhooks_received_total
from order_lifecycle.models import AuditAction
from order_lifecycle.services import LifecycleServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SUCCESS_STATUSES = frozenset({"success", "successful", "paid", "completed"})


class PaymentNotification(BaseModel):
    provider: str = Field(default="gateway", description="Gateway name; namespaces the transaction id")
    transaction_id: str = Field(..., description="Gateway transaction id, used as idempotency key")
    order_id: int
    status: str = Field(..., description="Gateway payment status")
    amount: Decimal | None = None
    occurred_at: datetime | None = Field(default=None, description="When the gateway saw the payment")


async def _already_seen(cache, idempotency_key: str) -> bool:
    try:
        return await cache.seen(idempotency_key)
    except RedisError as e:
        logger.warning("Webhook cache unavailable, deferring to the store for %s: %s", idempotency_key, e)
        return False


async def _remember(cache, idempotency_key: str) -> None:
    try:
        await cache.remember(idempotency_key)
    except RedisError as e:
        logger.warning("Could not cache webhook %s after commit: %s", idempotency_key, e)


@router.post("/payments")
async def payment_webhook(
    body: PaymentNotification,
    services: LifecycleServices = Depends(get_services),
) -> JSONResponse:
    """
    Payment gateway callback. Authenticity is verified before the request reaches this service.
    Redeliveries of the same transaction are acknowledged with 200 already_processed and change nothing.
    """
    idempotency_key = f"{body.provider}:{body.transaction_id}"
    if body.status.strip().lower() not in SUCCESS_STATUSES:
        webhooks_received_total.labels(outcome="ignored").inc()
        return JSONResponse(
            status_code=202,
            content={"status": "ignored", "transaction_id": body.transaction_id, "gateway_status": body.status},
        )

    cache = services.webhook_cache
    if cache is not None and await _already_seen(cache, idempotency_key):
        webhooks_received_total.labels(outcome="duplicate").inc()
        return JSONResponse(
            status_code=200,
            content={"status": "already_processed", "transaction_id": body.transaction_id},
        )

    metadata = {"provider": body.provider, "transaction_id": body.transaction_id}
    if body.amount is not None:
        metadata["amount"] = str(body.amount)
    if body.occurred_at is not None:
        metadata["gateway_occurred_at"] = body.occurred_at.isoformat()

    result = await services.machine.apply_transition(
        body.order_id,
        AuditAction.PAYMENT_WEBHOOK_CONFIRMED,
        gateway_actor(services.settings),
        metadata,
        idempotency_key=idempotency_key,
    )
    if cache is not None:
        await _remember(cache, idempotency_key)
    webhooks_received_total.labels(outcome="applied" if result.applied else "duplicate").inc()
    return JSONResponse(
        status_code=200,
        content={
            "status": "applied" if result.applied else "already_processed",
            "transaction_id": body.transaction_id,
            "order_id": body.order_id,
            "new_status": result.new_status.value,
        },
    )
