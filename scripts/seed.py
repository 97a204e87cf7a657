"""Seed the database with a tenant and encrypted vendor credentials.

Credentials come from the environment as JSON, e.g.
``CURSOR_CREDENTIALS='{"apiKey": "..."}'``.
"""

from __future__ import annotations

import json
import os
import uuid

from dotenv import load_dotenv
from sqlalchemy import insert, select, update

from usagesync.db.migrate import run_migrations
from usagesync.db.schema import tenants, vendor_configs
from usagesync.db.session import create_engine_from_env
from usagesync.ingest import load_vendor_catalog
from usagesync.utils.crypto import encrypt_credentials

DEFAULT_TENANT = {"name": "Demo Team", "slug": "demo"}


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    run_migrations(engine)
    slug = os.environ.get("TENANT_SLUG", DEFAULT_TENANT["slug"])
    with engine.begin() as conn:
        tenant_id = conn.execute(select(tenants.c.id).where(tenants.c.slug == slug)).scalar_one_or_none()
        if tenant_id is None:
            tenant_id = str(uuid.uuid4())
            conn.execute(insert(tenants).values(id=tenant_id, name=DEFAULT_TENANT["name"], slug=slug))
        for vendor, spec in load_vendor_catalog().items():
            raw = os.environ.get(f"{vendor.value.upper()}_CREDENTIALS")
            if spec.category != "api" or not raw:
                continue
            encrypted = encrypt_credentials(json.loads(raw))
            existing = conn.execute(
                select(vendor_configs.c.id).where(
                    vendor_configs.c.tenant_id == tenant_id, vendor_configs.c.vendor == vendor.value
                )
            ).scalar_one_or_none()
            if existing:
                conn.execute(
                    update(vendor_configs)
                    .where(vendor_configs.c.id == existing)
                    .values(encrypted_credentials=encrypted)
                )
            else:
                conn.execute(
                    insert(vendor_configs).values(
                        id=str(uuid.uuid4()),
                        tenant_id=tenant_id,
                        vendor=vendor.value,
                        encrypted_credentials=encrypted,
                    )
                )
            print(f"Stored credentials for {vendor.value}")
    print("Seed complete")


if __name__ == "__main__":
    main()
