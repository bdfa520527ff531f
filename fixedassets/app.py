"""
FastAPI application - administrative REST API for the depreciation engine.
Run with: python -m fixedassets
"""
import logging
import os
import secrets
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from fixedassets.database import init_db
from fixedassets.scheduler import scheduler
from services.depreciation_service import DepreciationService, RunMode
from services.schedule_service import ScheduleService

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Fixed Asset Depreciation", version="1.0.0")

API_KEY = os.environ.get("FIXEDASSETS_API_KEY")
ALLOW_INSECURE = os.environ.get("FIXEDASSETS_ALLOW_INSECURE", "false").lower() == "true"
ENABLE_SCHEDULER = os.environ.get("DEPRECIATION_ENABLE_SCHEDULER", "true").lower() in {"1", "true", "yes", "on"}
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("FIXEDASSETS_ALLOWED_ORIGINS", "http://localhost:8001").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_admin_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")):
    """Protect administrative endpoints with API key."""
    if ALLOW_INSECURE:
        return

    if not API_KEY:
        raise HTTPException(
            status_code=503,
            detail="FIXEDASSETS_API_KEY is not configured. Set it or enable FIXEDASSETS_ALLOW_INSECURE=true only for development.",
        )

    if not x_api_key or not secrets.compare_digest(x_api_key, API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


def _unwrap(result: dict):
    """Turn a service envelope into a response, mapping failures to HTTP errors."""
    if result.get("success"):
        return result
    error = result.get("error") or "Request failed"
    if "not found" in str(error).lower():
        raise HTTPException(404, error)
    raise HTTPException(400, error)


# ============================================================================
# Pydantic Schemas
# ============================================================================

class ScheduleUpdate(BaseModel):
    frequency: Optional[str] = None
    execution_time: Optional[str] = None
    timezone: Optional[str] = None
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    cron_expression: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class RunRequest(BaseModel):
    mode: str = RunMode.CATCH_UP.value


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup():
    init_db()
    if ENABLE_SCHEDULER:
        scheduler.start()
    else:
        logger.warning("[APP] DEPRECIATION_ENABLE_SCHEDULER=false. Automatic runs are disabled.")
    if ALLOW_INSECURE:
        logger.warning("[SECURITY] FIXEDASSETS_ALLOW_INSECURE=true. API key checks are disabled.")
    elif not API_KEY:
        logger.error("[SECURITY] FIXEDASSETS_API_KEY is not set. Administrative API endpoints will reject requests.")
    logger.info("[APP] Fixed asset depreciation API started on http://0.0.0.0:8001")


@app.on_event("shutdown")
async def shutdown():
    scheduler.shutdown()


@app.get("/health")
def health():
    return {"status": "ok", "scheduler": scheduler.get_status()}


# ============================================================================
# API - Schedule
# ============================================================================

@app.get("/api/schedule")
def get_schedule(_auth: None = Depends(require_admin_api_key)):
    """Current automatic depreciation schedule."""
    return _unwrap(ScheduleService.get_schedule())


@app.put("/api/schedule")
def update_schedule(updates: ScheduleUpdate, _auth: None = Depends(require_admin_api_key)):
    """Edit frequency, time, timezone or active flag. Takes effect on the next tick."""
    changes = updates.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(400, "No fields to update")
    return _unwrap(ScheduleService.update_schedule(changes))


@app.post("/api/schedule/toggle")
def toggle_schedule(_auth: None = Depends(require_admin_api_key)):
    return _unwrap(ScheduleService.toggle_schedule())


@app.get("/api/schedule/status")
def get_schedule_status(_auth: None = Depends(require_admin_api_key)):
    """Whether the schedule would fire right now, why, and when it fires next."""
    return _unwrap(ScheduleService.get_status())


@app.post("/api/schedule/trigger")
def trigger_run(request: Optional[RunRequest] = None, _auth: None = Depends(require_admin_api_key)):
    """Run depreciation immediately and return the full result, including per-asset details."""
    mode = request.mode if request else RunMode.CATCH_UP.value
    result = ScheduleService.trigger_run(mode=mode, trigger="manual")
    if result.get("data") is None:
        raise HTTPException(400, result.get("error"))
    return result


# ============================================================================
# API - Run History
# ============================================================================

@app.get("/api/runs")
def list_runs(limit: int = Query(20, ge=1, le=200), _auth: None = Depends(require_admin_api_key)):
    return _unwrap(ScheduleService.get_run_history(limit=limit))


@app.get("/api/runs/{run_id}")
def get_run(run_id: int, _auth: None = Depends(require_admin_api_key)):
    return _unwrap(ScheduleService.get_run(run_id))


# ============================================================================
# API - Asset Depreciation
# ============================================================================

@app.get("/api/assets/{asset_id}/depreciation")
def get_asset_depreciation(asset_id: int, _auth: None = Depends(require_admin_api_key)):
    """Depreciation summary and history for one asset."""
    return _unwrap(DepreciationService.get_asset_summary(asset_id))


@app.get("/api/assets/{asset_id}/depreciation/preview")
def preview_asset_depreciation(asset_id: int, _auth: None = Depends(require_admin_api_key)):
    """Projected schedule of the periods not yet recorded. Nothing is saved."""
    return _unwrap(DepreciationService.preview_asset(asset_id))


@app.post("/api/assets/{asset_id}/depreciation")
def generate_asset_depreciation(asset_id: int, request: Optional[RunRequest] = None,
                                _auth: None = Depends(require_admin_api_key)):
    mode = request.mode if request else RunMode.CATCH_UP.value
    return _unwrap(DepreciationService.generate_for_asset(asset_id, mode))


@app.get("/api/depreciation/summary")
def get_depreciation_summary(_auth: None = Depends(require_admin_api_key)):
    """System-wide depreciation counts."""
    return _unwrap(DepreciationService.get_system_summary())


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
