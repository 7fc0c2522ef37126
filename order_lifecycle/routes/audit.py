from datetime import date

from fastapi import APIRouter, Depends, Query, Request

from order_lifecycle.deps import get_services
from order_lifecycle.models import AuditAction, AuditFilters
from order_lifecycle.services import LifecycleServices

router = APIRouter(prefix="/audit", tags=["audit"])


def audit_filters(
    q: str | None = Query(default=None, description="Order id, reference, customer, product or actor email"),
    action: AuditAction | None = Query(default=None),
    date_from: date | None = Query(default=None, alias="from", description="UTC day, inclusive"),
    date_to: date | None = Query(default=None, alias="to", description="UTC day, inclusive"),
) -> AuditFilters:
    return AuditFilters(q=q, action=action, date_from=date_from, date_to=date_to)


def _page_url(request: Request, page: int) -> str:
    return str(request.url.include_query_params(page=page))


@router.get("/orders")
async def query_audit(
    request: Request,
    filters: AuditFilters = Depends(audit_filters),
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    services: LifecycleServices = Depends(get_services),
) -> dict:
    result = await services.audit.search(filters, page, page_size)
    last_page = max(1, -(-result.count // result.page_size))
    body = result.model_dump(mode="json")
    body["next"] = _page_url(request, result.page + 1) if result.page < last_page else None
    body["previous"] = _page_url(request, result.page - 1) if result.page > 1 else None
    return body


@router.get("/orders/summary")
async def audit_summary(
    filters: AuditFilters = Depends(audit_filters),
    services: LifecycleServices = Depends(get_services),
) -> dict:
    """Counts over the whole filtered set, not a page."""
    summary = await services.audit.summarize(filters)
    return summary.model_dump()


@router.get("/orders/{order_id}/events")
async def order_events(
    order_id: int,
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    services: LifecycleServices = Depends(get_services),
) -> dict:
    result = await services.audit.list_events(order_id, page, page_size or services.settings.timeline_page_size)
    return result.model_dump(mode="json")
