"""Table definitions for the usage ledger and sync state."""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, MetaData, Table, Text, func
from sqlalchemy.dialects.postgresql import JSONB

metadata = MetaData()

SnapshotJSON = JSON().with_variant(JSONB(), "postgresql")

tenants = Table(
    "tenants",
    metadata,
    Column("id", Text, primary_key=True),
    Column("name", Text, nullable=False),
    Column("slug", Text, nullable=False, unique=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

members = Table(
    "members",
    metadata,
    Column("id", Text, primary_key=True),
    Column("tenant_id", Text, ForeignKey("tenants.id"), nullable=False),
    Column("name", Text, nullable=False),
    Column("email", Text, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Index("idx_members_tenant_id", "tenant_id"),
)

member_identities = Table(
    "member_identities",
    metadata,
    Column("id", Text, primary_key=True),
    Column("member_id", Text, ForeignKey("members.id"), nullable=False),
    Column("vendor", Text, nullable=False),
    Column("vendor_username", Text),
    Column("vendor_email", Text),
    Index("idx_member_identities_vendor", "vendor"),
)

usage_records = Table(
    "usage_records",
    metadata,
    Column("id", Text, primary_key=True),
    Column("tenant_id", Text, ForeignKey("tenants.id"), nullable=False),
    Column("member_id", Text, ForeignKey("members.id")),
    Column("vendor", Text, nullable=False),
    Column("spend_cents", Integer, nullable=False),
    Column("tokens", Integer),
    Column("period_start", DateTime, nullable=False),
    Column("period_end", DateTime, nullable=False),
    Column("confidence", Text, nullable=False, server_default="high"),
    Column("source_type", Text, nullable=False, server_default="api"),
    Column("vendor_username", Text),
    Column("vendor_email", Text),
    Column("synced_at", DateTime, nullable=False),
    Index("idx_usage_records_tenant_vendor", "tenant_id", "vendor"),
    Index("idx_usage_records_tenant_member_period", "tenant_id", "member_id", "period_start"),
)

vendor_configs = Table(
    "vendor_configs",
    metadata,
    Column("id", Text, primary_key=True),
    Column("tenant_id", Text, ForeignKey("tenants.id"), nullable=False),
    Column("vendor", Text, nullable=False),
    Column("encrypted_credentials", Text),
    Column("last_sync_at", DateTime),
    Column("last_sync_status", Text),
    Column("staleness_threshold_minutes", Integer, nullable=False, server_default="360"),
    Index("idx_vendor_configs_tenant_vendor", "tenant_id", "vendor"),
)

# One row per vendor: the latest capture plus the end-of-prior-day diff base.
vendor_snapshots = Table(
    "vendor_snapshots",
    metadata,
    Column("vendor", Text, primary_key=True),
    Column("snapshot", SnapshotJSON, nullable=False),
    Column("previous_snapshot", SnapshotJSON),
    Column("captured_at", DateTime, nullable=False),
)
