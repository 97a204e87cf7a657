"""Tenant lookup, vendor credentials and per-vendor sync status."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from usagesync.db.schema import tenants, vendor_configs
from usagesync.ingest.models import VendorSpec
from usagesync.logic.snapshots import Vendor
from usagesync.utils.dates import as_utc, to_db

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_MINUTES = 360


@dataclass(slots=True)
class VendorConfig:
    id: str
    vendor: Vendor
    encrypted_credentials: str | None
    last_sync_at: datetime | None
    last_sync_status: str | None
    staleness_threshold_minutes: int


@dataclass(slots=True)
class VendorStatus:
    vendor: Vendor
    category: str
    last_sync_at: datetime | None
    last_sync_status: str | None
    is_stale: bool


def get_tenant_id(engine: Engine, slug: str | None = None) -> str:
    slug = slug or os.environ.get("TENANT_SLUG")
    query = select(tenants.c.id).order_by(tenants.c.created_at, tenants.c.id).limit(1)
    if slug:
        query = select(tenants.c.id).where(tenants.c.slug == slug)
    with engine.connect() as conn:
        tenant_id = conn.execute(query).scalar_one_or_none()
    if tenant_id is None:
        raise LookupError(f"No tenant found for slug {slug!r}" if slug else "No tenant found")
    return tenant_id


def load_vendor_configs(engine: Engine, tenant_id: str) -> dict[Vendor, VendorConfig]:
    with engine.connect() as conn:
        rows = conn.execute(select(vendor_configs).where(vendor_configs.c.tenant_id == tenant_id)).mappings().all()
    configs: dict[Vendor, VendorConfig] = {}
    for row in rows:
        try:
            vendor = Vendor(row["vendor"])
        except ValueError:
            logger.warning("Ignoring config for unsupported vendor %s", row["vendor"])
            continue
        configs[vendor] = VendorConfig(
            id=row["id"],
            vendor=vendor,
            encrypted_credentials=row["encrypted_credentials"],
            last_sync_at=as_utc(row["last_sync_at"]) if row["last_sync_at"] else None,
            last_sync_status=row["last_sync_status"],
            staleness_threshold_minutes=row["staleness_threshold_minutes"] or DEFAULT_STALENESS_MINUTES,
        )
    return configs


def record_sync_status(engine: Engine, tenant_id: str, vendor: Vendor, status: str, *, at: datetime) -> None:
    """Store the outcome of a sync; successful syncs also move ``last_sync_at``."""
    values: dict[str, object] = {"last_sync_status": status[:500]}
    if status == "success":
        values["last_sync_at"] = to_db(at)
    with engine.begin() as conn:
        conn.execute(
            update(vendor_configs)
            .where(vendor_configs.c.tenant_id == tenant_id, vendor_configs.c.vendor == vendor.value)
            .values(**values)
        )


def sync_statuses(
    engine: Engine,
    tenant_id: str,
    catalog: dict[Vendor, VendorSpec],
    *,
    as_of: datetime,
) -> list[VendorStatus]:
    configs = load_vendor_configs(engine, tenant_id)
    now = as_utc(as_of)
    statuses: list[VendorStatus] = []
    for vendor, spec in catalog.items():
        config = configs.get(vendor)
        if config is None:
            statuses.append(VendorStatus(vendor, spec.category, None, None, True))
            continue
        threshold = timedelta(minutes=config.staleness_threshold_minutes)
        is_stale = config.last_sync_at is None or now - config.last_sync_at > threshold
        statuses.append(
            VendorStatus(vendor, spec.category, config.last_sync_at, config.last_sync_status, is_stale)
        )
    return statuses
