"""FastAPI application for operator-triggered syncs and sync status."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from usagesync.db.session import create_engine_from_env
from usagesync.ingest import load_vendor_catalog
from usagesync.jobs.sync import run_sync
from usagesync.logic.snapshots import Vendor
from usagesync.store.vendor_configs import get_tenant_id, sync_statuses
from usagesync.utils.dates import utc_now

app = FastAPI(title="Usage Sync API")


class TriggerRequest(BaseModel):
    vendor: Vendor
    dry_run: bool = False


class TriggerResponse(BaseModel):
    vendor: Vendor
    status: str
    dry_run: bool
    records_written: int
    seat_records_written: int
    deltas: list[dict[str, Any]]
    new_members: list[dict[str, Any]]
    vendor_total_delta_cents: int | None = None
    message: str


class VendorStatusResponse(BaseModel):
    vendor: Vendor
    category: str
    last_sync_at: datetime | None
    last_sync_status: str | None
    is_stale: bool


def get_engine() -> Engine:
    return create_engine_from_env()


def _no_tenant(exc: LookupError) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "NO_TENANT", "message": str(exc)})


@app.post("/sync/trigger", response_model=TriggerResponse)
async def trigger_sync(payload: TriggerRequest, engine: Engine = Depends(get_engine)) -> TriggerResponse:
    try:
        report = await run_sync([payload.vendor], dry_run=payload.dry_run, engine=engine)
    except LookupError as exc:
        raise _no_tenant(exc) from exc
    result = report.result_for(payload.vendor)
    if result is None:  # pragma: no cover - every catalog vendor yields a result
        raise HTTPException(status_code=404, detail={"code": "UNKNOWN_VENDOR", "message": payload.vendor.value})
    if result.status == "skipped":
        raise HTTPException(status_code=400, detail={"code": "NOT_CONFIGURED", "message": result.message})
    if result.status == "failed":
        raise HTTPException(status_code=502, detail={"code": "SYNC_FAILED", "message": result.message})
    return TriggerResponse(
        vendor=result.vendor,
        status=result.status,
        dry_run=result.dry_run,
        records_written=result.records_written,
        seat_records_written=result.seat_records_written,
        deltas=[delta.to_dict() for delta in result.deltas],
        new_members=[member.to_dict() for member in result.new_members],
        vendor_total_delta_cents=result.vendor_total_delta_cents,
        message=result.message,
    )


@app.get("/sync/status", response_model=list[VendorStatusResponse])
def sync_status(engine: Engine = Depends(get_engine)) -> list[VendorStatusResponse]:
    try:
        tenant_id = get_tenant_id(engine)
    except LookupError as exc:
        raise _no_tenant(exc) from exc
    statuses = sync_statuses(engine, tenant_id, load_vendor_catalog(), as_of=utc_now())
    return [
        VendorStatusResponse(
            vendor=status.vendor,
            category=status.category,
            last_sync_at=status.last_sync_at,
            last_sync_status=status.last_sync_status,
            is_stale=status.is_stale,
        )
        for status in statuses
    ]
