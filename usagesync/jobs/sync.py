"""Daily usage sync orchestration.

For each vendor: fetch the cumulative snapshot, load the diff base, compute
the diff, write today's records, then rotate the stored snapshot. Vendors are
independent; one vendor failing never stops the others.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal

import httpx
from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from usagesync.db.session import create_engine_from_env
from usagesync.ingest import load_vendor_catalog
from usagesync.ingest.captures import capture_path, load_capture
from usagesync.ingest.fetchers import API_FETCHERS, Fetcher
from usagesync.ingest.models import VendorSpec
from usagesync.ledger.records import DailyRecordWriter, deltas_to_records
from usagesync.logic.snapshots import MemberDelta, MemberSnapshot, SnapshotDiff, Vendor, VendorSnapshot, compute_diff
from usagesync.store.snapshots import SnapshotStore
from usagesync.store.vendor_configs import VendorConfig, get_tenant_id, load_vendor_configs, record_sync_status
from usagesync.utils.crypto import CredentialError, decrypt_credentials
from usagesync.utils.dates import as_utc, utc_now

logger = logging.getLogger(__name__)

SYNC_CONCURRENCY = int(os.environ.get("SYNC_CONCURRENCY", 4))
FETCH_TIMEOUT_SECONDS = float(os.environ.get("FETCH_TIMEOUT_SECONDS", 60))

SyncStatus = Literal["synced", "baseline", "skipped", "failed"]


class FetchFailure(RuntimeError):
    """The vendor snapshot could not be obtained this run."""


class WriteFailure(RuntimeError):
    """Daily records could not be written; the snapshot was not rotated."""


class VendorNotConfigured(RuntimeError):
    """No credentials or capture exist for the vendor."""


@dataclass(slots=True)
class VendorSyncResult:
    vendor: Vendor
    status: SyncStatus
    records_written: int = 0
    seat_records_written: int = 0
    deltas: list[MemberDelta] = field(default_factory=list)
    new_members: list[MemberSnapshot] = field(default_factory=list)
    vendor_total_delta_cents: int | None = None
    dry_run: bool = False
    message: str = ""


@dataclass(slots=True)
class SyncReport:
    results: list[VendorSyncResult]
    dry_run: bool = False

    @property
    def failed(self) -> list[VendorSyncResult]:
        return [result for result in self.results if result.status == "failed"]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def result_for(self, vendor: Vendor) -> VendorSyncResult | None:
        return next((result for result in self.results if result.vendor == vendor), None)


class VendorSyncer:
    """Turns one fetched snapshot into daily records and a rotated baseline.

    Records are written before the snapshot is saved: if the write fails the
    baseline stays put and the next run recomputes the same delta.
    """

    def __init__(
        self,
        engine: Engine,
        tenant_id: str,
        *,
        as_of: datetime,
        dry_run: bool = False,
        store: SnapshotStore | None = None,
        writer: DailyRecordWriter | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.as_of = as_of
        self.dry_run = dry_run
        self.store = store or SnapshotStore(engine)
        self.writer = writer or DailyRecordWriter(engine)

    def sync_snapshot(self, spec: VendorSpec, current: VendorSnapshot) -> VendorSyncResult:
        vendor = spec.vendor
        base = self.store.load_diff_base(vendor)
        if base is None:
            if not self.dry_run:
                self.store.save_snapshot(vendor, current, as_of=self.as_of)
            verb = "would be saved" if self.dry_run else "saved"
            logger.info("%s: first run, baseline of %s members %s", vendor.value, len(current.members), verb)
            return VendorSyncResult(
                vendor=vendor,
                status="baseline",
                dry_run=self.dry_run,
                message=f"Baseline snapshot {verb} for {vendor.value}; deltas start with the next sync",
            )

        diff = compute_diff(current, base)
        _log_diff(diff)
        records = deltas_to_records(vendor, diff.deltas, diff.new_members, spec.source_type)
        try:
            written = self.writer.write_daily_records(
                self.tenant_id, records, as_of=self.as_of, dry_run=self.dry_run
            )
            seats_written = self.writer.write_seat_cost_records(
                self.tenant_id,
                vendor,
                current.members,
                spec.seat_cost_cents,
                spec.source_type,
                as_of=self.as_of,
                dry_run=self.dry_run,
            )
        except SQLAlchemyError as exc:
            raise WriteFailure(f"Writing {vendor.value} records failed: {exc}") from exc

        # No-change days still advance the baseline.
        if not self.dry_run:
            self.store.save_snapshot(vendor, current, as_of=self.as_of)

        verb = "Would write" if self.dry_run else "Wrote"
        return VendorSyncResult(
            vendor=vendor,
            status="synced",
            records_written=written.records_written,
            seat_records_written=seats_written,
            deltas=diff.deltas,
            new_members=diff.new_members,
            vendor_total_delta_cents=diff.vendor_total_delta_cents,
            dry_run=self.dry_run,
            message=f"{verb} {written.records_written} daily records for {vendor.value}",
        )


def select_vendors(
    catalog: dict[Vendor, VendorSpec],
    names: Iterable[str | Vendor] | None = None,
    *,
    api_only: bool = False,
) -> list[VendorSpec]:
    specs = list(catalog.values())
    if names:
        wanted = {Vendor(name) for name in names}
        specs = [spec for spec in specs if spec.vendor in wanted]
    if api_only:
        specs = [spec for spec in specs if spec.category == "api"]
    return specs


async def fetch_api_snapshot(
    spec: VendorSpec,
    config: VendorConfig | None,
    fetcher: Fetcher | None,
    *,
    timeout: float,
) -> VendorSnapshot:
    if config is None or not config.encrypted_credentials:
        raise VendorNotConfigured(f"No credentials configured for {spec.vendor.value}")
    if fetcher is None:
        raise VendorNotConfigured(f"No fetcher available for {spec.vendor.value}")
    try:
        credentials = decrypt_credentials(config.encrypted_credentials)
        snapshot = await asyncio.wait_for(fetcher(credentials), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise FetchFailure(f"{spec.vendor.value} fetch timed out after {timeout:.0f}s") from exc
    except (CredentialError, httpx.HTTPError, KeyError, ValueError) as exc:
        raise FetchFailure(f"{spec.vendor.value} fetch failed: {exc}") from exc
    logger.info("%s: fetched %s members", spec.vendor.value, len(snapshot.members))
    return snapshot


async def load_manual_snapshot(spec: VendorSpec, directory: Path | None = None) -> VendorSnapshot:
    try:
        snapshot = load_capture(spec.vendor, directory)
    except (OSError, ValueError, KeyError) as exc:
        raise FetchFailure(f"Unreadable {spec.vendor.value} capture: {exc}") from exc
    if snapshot is None:
        raise VendorNotConfigured(f"No capture found at {capture_path(spec.vendor, directory)}")
    logger.info("%s: loaded capture with %s members", spec.vendor.value, len(snapshot.members))
    return snapshot


async def run_vendor_pipeline(
    spec: VendorSpec,
    source: Callable[[], Awaitable[VendorSnapshot]],
    syncer: VendorSyncer,
    engine: Engine,
) -> VendorSyncResult:
    vendor = spec.vendor
    loop = asyncio.get_running_loop()
    try:
        snapshot = await source()
        result = await loop.run_in_executor(None, syncer.sync_snapshot, spec, snapshot)
    except VendorNotConfigured as exc:
        logger.warning("Skipping %s: %s", vendor.value, exc)
        return VendorSyncResult(vendor=vendor, status="skipped", dry_run=syncer.dry_run, message=str(exc))
    except (FetchFailure, WriteFailure) as exc:
        logger.warning("%s sync failed: %s", vendor.value, exc)
        result = VendorSyncResult(vendor=vendor, status="failed", dry_run=syncer.dry_run, message=str(exc))
    except Exception as exc:
        logger.exception("Unexpected error syncing %s", vendor.value)
        result = VendorSyncResult(
            vendor=vendor, status="failed", dry_run=syncer.dry_run, message=f"{type(exc).__name__}: {exc}"
        )

    if not syncer.dry_run:
        status = "success" if result.status != "failed" else result.message
        try:
            await loop.run_in_executor(
                None, lambda: record_sync_status(engine, syncer.tenant_id, vendor, status, at=syncer.as_of)
            )
        except SQLAlchemyError as exc:
            logger.warning("Could not record sync status for %s: %s", vendor.value, exc)
    return result


async def run_sync(
    vendors: Iterable[str | Vendor] | None = None,
    *,
    dry_run: bool = False,
    api_only: bool = False,
    as_of: datetime | None = None,
    engine: Engine | None = None,
    fetchers: dict[Vendor, Fetcher] | None = None,
    concurrency: int | None = None,
    fetch_timeout: float | None = None,
    capture_directory: Path | None = None,
) -> SyncReport:
    load_dotenv()
    engine = engine or create_engine_from_env()
    specs = select_vendors(load_vendor_catalog(), vendors, api_only=api_only)
    moment = as_utc(as_of) if as_of else utc_now()
    fetchers = API_FETCHERS if fetchers is None else fetchers
    timeout = fetch_timeout or FETCH_TIMEOUT_SECONDS
    logger.info("Usage sync %sat %s for %s", "(dry run) " if dry_run else "", moment.isoformat(), [s.vendor.value for s in specs])

    loop = asyncio.get_running_loop()
    tenant_id = await loop.run_in_executor(None, get_tenant_id, engine)
    configs = await loop.run_in_executor(None, load_vendor_configs, engine, tenant_id)
    syncer = VendorSyncer(engine, tenant_id, as_of=moment, dry_run=dry_run)
    semaphore = asyncio.Semaphore(concurrency or SYNC_CONCURRENCY)

    async def sync_api_vendor(spec: VendorSpec) -> VendorSyncResult:
        async with semaphore:
            return await run_vendor_pipeline(
                spec,
                lambda: fetch_api_snapshot(
                    spec, configs.get(spec.vendor), fetchers.get(spec.vendor), timeout=timeout
                ),
                syncer,
                engine,
            )

    api_specs = [spec for spec in specs if spec.category == "api"]
    results = list(await asyncio.gather(*(sync_api_vendor(spec) for spec in api_specs)))

    # Manual captures run one at a time after the API batch.
    for spec in specs:
        if spec.category != "manual":
            continue
        results.append(
            await run_vendor_pipeline(
                spec, lambda spec=spec: load_manual_snapshot(spec, capture_directory), syncer, engine
            )
        )

    report = SyncReport(results=results, dry_run=dry_run)
    _log_summary(report)
    return report


def _log_diff(diff: SnapshotDiff) -> None:
    vendor = diff.vendor.value
    if diff.is_empty:
        logger.info("%s: no changes since last sync", vendor)
    for delta in diff.deltas:
        name = delta.vendor_username or delta.vendor_email or "(unknown)"
        reset = " [billing reset]" if delta.billing_reset else ""
        logger.info("%s: %s +%s%s", vendor, name, _format_currency(delta.delta_spend_cents), reset)
    for member in diff.new_members:
        name = member.vendor_username or member.vendor_email or "(unknown)"
        logger.info("%s: %s %s (new member)", vendor, name, _format_currency(member.spend_cents))
    if diff.vendor_total_delta_cents is not None:
        logger.info("%s: pool total +%s", vendor, _format_currency(diff.vendor_total_delta_cents))


def _log_summary(report: SyncReport) -> None:
    counts: dict[str, int] = {}
    for result in report.results:
        counts[result.status] = counts.get(result.status, 0) + 1
    logger.info(
        "Usage sync done%s: %s",
        " (dry run, no changes made)" if report.dry_run else "",
        ", ".join(f"{count} {status}" for status, count in sorted(counts.items())) or "no vendors selected",
    )


def _format_currency(cents: int | None) -> str:
    if cents is None:
        return "-"
    return f"${cents/100:.2f}"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Sync vendor usage snapshots into daily usage records.")
    parser.add_argument("--vendor", action="append", choices=[vendor.value for vendor in Vendor])
    parser.add_argument("--dry-run", action="store_true", help="fetch and diff without writing anything")
    parser.add_argument("--api-only", action="store_true", help="skip vendors that need a manual capture")
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    report = asyncio.run(run_sync(args.vendor, dry_run=args.dry_run, api_only=args.api_only))
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
