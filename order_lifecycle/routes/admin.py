from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from order_lifecycle.deps import get_services
from order_lifecycle.services import LifecycleServices
from order_lifecycle.sweeper import AutoCancelSweeper

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/sweep")
async def run_sweep(services: LifecycleServices = Depends(get_services)) -> JSONResponse:
    """
    Run one auto-cancel sweep now, in addition to the scheduled sweeper.
    Returns which orders were canceled, skipped (already moved on) or left busy.
    """
    cfg = services.settings
    sweeper = AutoCancelSweeper(
        services.machine,
        services.store,
        services.clock,
        threshold=services.machine.stale_after,
        batch_size=cfg.sweep_batch_size,
        concurrency=cfg.sweep_concurrency,
        busy_retries=cfg.sweep_busy_retries,
    )
    report = await sweeper.sweep_once()
    return JSONResponse(status_code=200, content={"status": "ok", **report.as_dict()})
