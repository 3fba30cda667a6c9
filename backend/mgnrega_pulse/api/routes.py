import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mgnrega_pulse.core.errors import PulseError
from mgnrega_pulse.services.staleness import MONTH_LABELS, Period

router = APIRouter(prefix="/api/v1")

DISTRICT_CODE = r"^\d{3,4}$"
STATE_CODE = r"^\d{1,2}$"
FIN_YEAR = r"^\d{4}-\d{4}$"
MONTH = "^(" + "|".join(MONTH_LABELS) + ")$"
YEAR_MONTH = r"^\d{4}-(0[1-9]|1[0-2])$"


def get_services(request: Request):
    return request.app.state.services


class UploadRequest(BaseModel):
    data: List[Dict[str, Any]]
    source: str = "manual_upload"


class CacheClearRequest(BaseModel):
    pattern: Optional[str] = None


class DistrictRequest(BaseModel):
    district_code: str = Field(..., pattern=DISTRICT_CODE)
    district_name: str = Field(..., min_length=1)
    state_code: str = Field(..., pattern=STATE_CODE)
    state_name: str = Field(..., min_length=1)


# ---------- HEALTH ----------
@router.get("/health")
async def health(services=Depends(get_services)):
    body = {
        "status": "ok",
        "time": datetime.now(timezone.utc).isoformat(),
        "services": {},
    }
    try:
        await asyncio.to_thread(services.store.ping)
        body["services"]["database"] = {"status": "connected"}
    except PulseError as e:
        body["services"]["database"] = {"status": "disconnected", "error": e.message}

    cache_stats = services.cache.stats()
    body["services"]["cache"] = {
        "status": "active",
        "keys": cache_stats["keyCount"],
        "hitRate": f"{cache_stats['hitRate']}%",
    }
    healthy = body["services"]["database"]["status"] == "connected"
    if not healthy:
        body["status"] = "degraded"
    return JSONResponse(status_code=200 if healthy else 503, content=body)


@router.get("/stats")
async def stats(services=Depends(get_services)):
    return {"success": True, **(await services.orchestrator.stats())}


# ---------- STATES ----------
@router.get("/states")
async def list_states(services=Depends(get_services)):
    result = await services.orchestrator.list_parents()
    return {**result.to_dict(), "count": len(result.data)}


@router.get("/states/{state_code}/districts")
async def list_districts(state_code: str = Path(..., pattern=STATE_CODE), services=Depends(get_services)):
    result = await services.orchestrator.list_children(state_code)
    return {**result.to_dict(), "count": len(result.data)}


@router.post("/states/{state_code}/sync")
async def sync_state(state_code: str = Path(..., pattern=STATE_CODE),
                     finYear: str = Query(..., pattern=FIN_YEAR),
                     services=Depends(get_services)):
    result = await services.etl.sync_parent(state_code, finYear)
    return {"success": True, **result, "message": "State data synced successfully"}


# ---------- DISTRICTS ----------
@router.get("/districts/{district_code}/data")
async def district_data(district_code: str = Path(..., pattern=DISTRICT_CODE),
                        month: str = Query(..., pattern=MONTH),
                        year: str = Query(..., pattern=FIN_YEAR),
                        services=Depends(get_services)):
    period = Period.from_fiscal(year, month)
    result = await services.orchestrator.get_entity_data(district_code, period)
    return result.to_dict()


@router.get("/districts/{district_code}/history")
async def district_history(district_code: str = Path(..., pattern=DISTRICT_CODE),
                           startDate: str = Query(..., pattern=YEAR_MONTH),
                           endDate: str = Query(..., pattern=YEAR_MONTH),
                           services=Depends(get_services)):
    result = await services.orchestrator.get_history(
        district_code, Period.parse(startDate), Period.parse(endDate))
    return result.to_dict()


@router.get("/districts/{district_code}/comparison")
async def district_comparison(district_code: str = Path(..., pattern=DISTRICT_CODE),
                              services=Depends(get_services)):
    result = await services.orchestrator.get_comparison(district_code)
    return result.to_dict()


@router.get("/districts/{district_code}/latest")
async def district_latest(district_code: str = Path(..., pattern=DISTRICT_CODE),
                          services=Depends(get_services)):
    result = await services.orchestrator.get_latest(district_code)
    return result.to_dict()


# ---------- ADMIN ----------
@router.post("/admin/upload")
async def upload(body: UploadRequest, services=Depends(get_services)):
    return await services.etl.manual_upsert(body.data, source=body.source)


@router.post("/admin/districts", status_code=201)
async def register_district(body: DistrictRequest, services=Depends(get_services)):
    entity = await services.orchestrator.register_entity(
        body.district_code, body.district_name, body.state_code, body.state_name)
    return {"success": True, "data": entity}


@router.post("/admin/sync")
async def trigger_sync(services=Depends(get_services)):
    result = await services.etl.trigger_sync()
    return {"success": result.get("success", False), "data": result}


@router.get("/admin/sync/status")
async def sync_status(services=Depends(get_services)):
    return {"success": True, "data": services.etl.sync_status()}


@router.post("/admin/cache/clear")
async def clear_cache(body: CacheClearRequest, services=Depends(get_services)):
    cleared = services.orchestrator.invalidate(body.pattern)
    return {"success": True, "message": "Cache cleared successfully", "cleared": cleared}


@router.post("/admin/cleanup")
async def cleanup(days: Optional[int] = Query(None, ge=1), services=Depends(get_services)):
    return {"success": True, **(await services.etl.cleanup(days))}


@router.get("/admin/snapshots")
async def snapshots(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                    services=Depends(get_services)):
    items, total = await asyncio.to_thread(services.store.list_audits, page, limit)
    return {
        "success": True,
        "count": len(items),
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit,
        "data": items,
    }
