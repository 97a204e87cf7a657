"""Daily usage records derived from snapshot diffs."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import delete, func, insert, select
from sqlalchemy.engine import Connection, Engine

from usagesync.db.schema import usage_records
from usagesync.ledger.members import MemberResolver, build_member_lookup
from usagesync.logic.snapshots import Confidence, MemberDelta, MemberSnapshot, SourceType, Vendor
from usagesync.utils.dates import day_bounds, month_bounds, to_db

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DailyRecord:
    vendor: Vendor
    vendor_email: str | None
    vendor_username: str | None
    spend_cents: int
    tokens: int | None
    confidence: Confidence
    source_type: SourceType


@dataclass(slots=True)
class WriteResult:
    records_written: int
    resolved: int
    unresolved: int
    dry_run: bool = False


def deltas_to_records(
    vendor: Vendor,
    deltas: Iterable[MemberDelta],
    new_members: Iterable[MemberSnapshot],
    source_type: SourceType,
) -> list[DailyRecord]:
    records: list[DailyRecord] = []
    for delta in deltas:
        if delta.delta_spend_cents <= 0:
            continue
        records.append(
            DailyRecord(
                vendor=vendor,
                vendor_email=delta.vendor_email,
                vendor_username=delta.vendor_username,
                spend_cents=delta.delta_spend_cents,
                tokens=delta.delta_tokens,
                confidence="medium",
                source_type=source_type,
            )
        )
    # New members contribute their whole cumulative value to today.
    for member in new_members:
        if member.spend_cents <= 0:
            continue
        records.append(
            DailyRecord(
                vendor=vendor,
                vendor_email=member.vendor_email,
                vendor_username=member.vendor_username,
                spend_cents=member.spend_cents,
                tokens=member.tokens,
                confidence="medium",
                source_type=source_type,
            )
        )
    return records


class DailyRecordWriter:
    """Writes one day's usage rows per vendor, replacing earlier rows for that day."""

    def __init__(self, engine: Engine, resolver: MemberResolver | None = None) -> None:
        self.engine = engine
        self.resolver = resolver

    def write_daily_records(
        self,
        tenant_id: str,
        records: Sequence[DailyRecord],
        *,
        as_of: datetime,
        dry_run: bool = False,
    ) -> WriteResult:
        if not records:
            return WriteResult(records_written=0, resolved=0, unresolved=0, dry_run=dry_run)
        vendor = records[0].vendor
        if any(record.vendor != vendor for record in records):
            raise ValueError("write_daily_records expects records for a single vendor")
        day_start, day_end = day_bounds(as_of)
        source_types = sorted({record.source_type for record in records})

        if dry_run:
            with self.engine.connect() as conn:
                rows = self._build_rows(conn, tenant_id, records, day_start, day_end, as_of)
            result = _summarize(rows, dry_run=True)
            logger.info(
                "Dry run: would write %s %s records (%s unresolved)",
                result.records_written,
                vendor.value,
                result.unresolved,
            )
            return result

        with self.engine.begin() as conn:
            removed = conn.execute(
                delete(usage_records).where(
                    usage_records.c.tenant_id == tenant_id,
                    usage_records.c.vendor == vendor.value,
                    usage_records.c.period_start >= to_db(day_start),
                    usage_records.c.period_end <= to_db(day_end),
                    usage_records.c.source_type.in_(source_types),
                )
            ).rowcount
            rows = self._build_rows(conn, tenant_id, records, day_start, day_end, as_of)
            conn.execute(insert(usage_records), rows)
        if removed:
            logger.info("Replaced %s existing %s records for %s", removed, vendor.value, day_start.to_date_string())
        result = _summarize(rows, dry_run=False)
        if result.unresolved:
            logger.info("%s %s records have no matching member", result.unresolved, vendor.value)
        return result

    def write_seat_cost_records(
        self,
        tenant_id: str,
        vendor: Vendor,
        members: Sequence[MemberSnapshot],
        default_cents: int | None,
        source_type: SourceType,
        *,
        as_of: datetime,
        dry_run: bool = False,
    ) -> int:
        """Write the month's seat fees once, on the first sync of the calendar month."""
        month_start, month_end = month_bounds(as_of)
        seats = [
            (member, member.seat_cost_cents if member.seat_cost_cents is not None else default_cents)
            for member in members
        ]
        seats = [(member, cents) for member, cents in seats if cents and cents > 0]
        if not seats:
            return 0

        with self.engine.begin() as conn:
            existing = conn.execute(
                select(func.count())
                .select_from(usage_records)
                .where(
                    usage_records.c.tenant_id == tenant_id,
                    usage_records.c.vendor == vendor.value,
                    usage_records.c.period_start == to_db(month_start),
                    usage_records.c.period_end == to_db(month_end),
                )
            ).scalar_one()
            if existing:
                return 0
            if dry_run:
                logger.info("Dry run: would write %s %s seat records", len(seats), vendor.value)
                return len(seats)
            resolve = self._resolver_for(conn, tenant_id, vendor)
            rows = [
                _row(
                    tenant_id,
                    resolve(member.vendor_email, member.vendor_username),
                    vendor,
                    member.vendor_email,
                    member.vendor_username,
                    cents,
                    None,
                    month_start,
                    month_end,
                    "high",
                    source_type,
                    as_of,
                )
                for member, cents in seats
            ]
            conn.execute(insert(usage_records), rows)
        return len(rows)

    def _build_rows(
        self,
        conn: Connection,
        tenant_id: str,
        records: Sequence[DailyRecord],
        day_start: datetime,
        day_end: datetime,
        as_of: datetime,
    ) -> list[dict[str, object]]:
        resolve = self._resolver_for(conn, tenant_id, records[0].vendor)
        return [
            _row(
                tenant_id,
                resolve(record.vendor_email, record.vendor_username),
                record.vendor,
                record.vendor_email,
                record.vendor_username,
                record.spend_cents,
                record.tokens,
                day_start,
                day_end,
                record.confidence,
                record.source_type,
                as_of,
            )
            for record in records
        ]

    def _resolver_for(self, conn: Connection, tenant_id: str, vendor: Vendor) -> MemberResolver:
        if self.resolver is not None:
            return self.resolver
        return build_member_lookup(conn, tenant_id, vendor.value).resolve


def _row(
    tenant_id: str,
    member_id: str | None,
    vendor: Vendor,
    vendor_email: str | None,
    vendor_username: str | None,
    spend_cents: int,
    tokens: int | None,
    period_start: datetime,
    period_end: datetime,
    confidence: Confidence,
    source_type: SourceType,
    synced_at: datetime,
) -> dict[str, object]:
    return {
        "id": str(uuid.uuid4()),
        "tenant_id": tenant_id,
        "member_id": member_id,
        "vendor": vendor.value,
        "vendor_email": vendor_email,
        "vendor_username": vendor_username,
        "spend_cents": spend_cents,
        "tokens": tokens,
        "period_start": to_db(period_start),
        "period_end": to_db(period_end),
        "confidence": confidence,
        "source_type": source_type,
        "synced_at": to_db(synced_at),
    }


def _summarize(rows: Sequence[dict[str, object]], *, dry_run: bool) -> WriteResult:
    unresolved = sum(1 for row in rows if row["member_id"] is None)
    return WriteResult(
        records_written=len(rows),
        resolved=len(rows) - unresolved,
        unresolved=unresolved,
        dry_run=dry_run,
    )
