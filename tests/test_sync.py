import asyncio
import shutil
from pathlib import Path

import httpx
import pendulum
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import TENANT_ID
from usagesync.db.schema import usage_records
from usagesync.ingest import load_vendor_catalog
from usagesync.ingest.captures import save_capture
from usagesync.jobs import sync
from usagesync.jobs.sync import VendorSyncer, WriteFailure, run_sync, select_vendors
from usagesync.logic.snapshots import MemberSnapshot, Vendor, VendorSnapshot
from usagesync.store.snapshots import SnapshotStore
from usagesync.store.vendor_configs import load_vendor_configs

CAPTURES = Path(__file__).parent / "fixtures" / "captures"
DAY_ONE = pendulum.datetime(2026, 3, 9, 6, tz="UTC")
DAY_TWO = pendulum.datetime(2026, 3, 10, 6, tz="UTC")


class FakeFetcher:
    def __init__(self, *members, error=None):
        self.snapshot = VendorSnapshot(vendor=Vendor.CURSOR, members=list(members))
        self.error = error
        self.credentials = []

    async def __call__(self, credentials):
        self.credentials.append(credentials)
        if self.error is not None:
            raise self.error
        return self.snapshot


def _cursor(*members):
    return {Vendor.CURSOR: FakeFetcher(*members)}


def _daily_rows(engine, vendor=Vendor.CURSOR, as_of=DAY_TWO):
    day_end = as_of.end_of("day")
    with engine.connect() as conn:
        rows = conn.execute(
            select(usage_records)
            .where(usage_records.c.vendor == vendor.value, usage_records.c.period_end == day_end.naive())
            .order_by(usage_records.c.spend_cents)
        ).mappings().all()
    return rows


def _seat_rows(engine, vendor=Vendor.CURSOR):
    with engine.connect() as conn:
        return conn.execute(
            select(usage_records).where(
                usage_records.c.vendor == vendor.value, usage_records.c.confidence == "high"
            )
        ).mappings().all()


@pytest.mark.asyncio
async def test_first_sync_saves_baseline_only(seeded_engine):
    fetchers = _cursor(MemberSnapshot("alice@acme.com", None, 500))

    report = await run_sync([Vendor.CURSOR], as_of=DAY_ONE, engine=seeded_engine, fetchers=fetchers)

    result = report.result_for(Vendor.CURSOR)
    assert result.status == "baseline"
    assert result.records_written == 0
    assert fetchers[Vendor.CURSOR].credentials == [{"apiKey": "cursor-key"}]
    assert SnapshotStore(seeded_engine).load_diff_base(Vendor.CURSOR) == fetchers[Vendor.CURSOR].snapshot
    assert _daily_rows(seeded_engine, as_of=DAY_ONE) == []
    config = load_vendor_configs(seeded_engine, TENANT_ID)[Vendor.CURSOR]
    assert config.last_sync_status == "success"
    assert config.last_sync_at == DAY_ONE


@pytest.mark.asyncio
async def test_second_day_writes_deltas_and_seats(seeded_engine):
    await run_sync(
        [Vendor.CURSOR],
        as_of=DAY_ONE,
        engine=seeded_engine,
        fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 500), MemberSnapshot("bob.personal@gmail.com", None, 200)),
    )
    report = await run_sync(
        [Vendor.CURSOR],
        as_of=DAY_TWO,
        engine=seeded_engine,
        fetchers=_cursor(
            MemberSnapshot("alice@acme.com", None, 800, tokens=40),
            MemberSnapshot("bob.personal@gmail.com", None, 200),
            MemberSnapshot(None, "CarolCodes", 150),
        ),
    )

    result = report.result_for(Vendor.CURSOR)
    assert result.status == "synced"
    assert result.records_written == 2
    assert result.seat_records_written == 3
    assert [d.delta_spend_cents for d in result.deltas] == [300]
    assert [m.vendor_username for m in result.new_members] == ["CarolCodes"]
    assert report.exit_code == 0

    rows = _daily_rows(seeded_engine)
    assert [(row["member_id"], row["spend_cents"], row["source_type"]) for row in rows] == [
        ("m-carol", 150, "api"),
        ("m-alice", 300, "api"),
    ]
    seats = _seat_rows(seeded_engine)
    assert {row["member_id"] for row in seats} == {"m-alice", "m-bob", "m-carol"}
    assert {row["spend_cents"] for row in seats} == {4000}


@pytest.mark.asyncio
async def test_rerun_on_same_day_is_idempotent(seeded_engine):
    await run_sync([Vendor.CURSOR], as_of=DAY_ONE, engine=seeded_engine, fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 500)))
    await run_sync([Vendor.CURSOR], as_of=DAY_TWO, engine=seeded_engine, fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 800)))
    report = await run_sync(
        [Vendor.CURSOR],
        as_of=DAY_TWO.add(hours=12),
        engine=seeded_engine,
        fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 900)),
    )

    assert report.result_for(Vendor.CURSOR).seat_records_written == 0
    # Both runs diff against the end of day one.
    assert [row["spend_cents"] for row in _daily_rows(seeded_engine)] == [400]
    assert len(_seat_rows(seeded_engine)) == 1


@pytest.mark.asyncio
async def test_billing_reset_writes_current_value(seeded_engine):
    await run_sync([Vendor.CURSOR], as_of=DAY_ONE, engine=seeded_engine, fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 900)))
    report = await run_sync([Vendor.CURSOR], as_of=DAY_TWO, engine=seeded_engine, fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 100)))

    delta = report.result_for(Vendor.CURSOR).deltas[0]
    assert (delta.delta_spend_cents, delta.billing_reset) == (100, True)
    assert [row["spend_cents"] for row in _daily_rows(seeded_engine)] == [100]


@pytest.mark.asyncio
async def test_one_vendor_failing_does_not_stop_others(seeded_engine):
    request = httpx.Request("POST", "https://api.cursor.com/teams/spend")
    error = httpx.HTTPStatusError("unauthorized", request=request, response=httpx.Response(401, request=request))
    openai = FakeFetcher(MemberSnapshot("alice@openai-org.com", None, 50))
    openai.snapshot.vendor = Vendor.OPENAI
    fetchers = {Vendor.CURSOR: FakeFetcher(error=error), Vendor.OPENAI: openai}

    report = await run_sync(api_only=True, as_of=DAY_ONE, engine=seeded_engine, fetchers=fetchers)

    assert report.result_for(Vendor.CURSOR).status == "failed"
    assert report.result_for(Vendor.OPENAI).status == "baseline"
    assert report.result_for(Vendor.COPILOT).status == "skipped"
    assert report.exit_code == 1
    assert SnapshotStore(seeded_engine).load_state(Vendor.CURSOR) is None
    configs = load_vendor_configs(seeded_engine, TENANT_ID)
    assert "unauthorized" in configs[Vendor.CURSOR].last_sync_status
    assert configs[Vendor.CURSOR].last_sync_at is None
    assert configs[Vendor.OPENAI].last_sync_status == "success"


@pytest.mark.asyncio
async def test_fetch_timeout_marks_vendor_failed(seeded_engine):
    async def slow(credentials):
        await asyncio.sleep(5)

    report = await run_sync(
        [Vendor.CURSOR], as_of=DAY_ONE, engine=seeded_engine, fetchers={Vendor.CURSOR: slow}, fetch_timeout=0.05
    )

    result = report.result_for(Vendor.CURSOR)
    assert result.status == "failed"
    assert "timed out" in result.message


@pytest.mark.asyncio
async def test_undecryptable_credentials_fail_the_vendor(seeded_engine, monkeypatch):
    monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", "cd" * 32)
    fetchers = _cursor(MemberSnapshot("alice@acme.com", None, 500))

    report = await run_sync([Vendor.CURSOR], as_of=DAY_ONE, engine=seeded_engine, fetchers=fetchers)

    assert report.result_for(Vendor.CURSOR).status == "failed"
    assert fetchers[Vendor.CURSOR].credentials == []


@pytest.mark.asyncio
async def test_unconfigured_vendor_is_skipped(seeded_engine):
    report = await run_sync([Vendor.COPILOT], as_of=DAY_ONE, engine=seeded_engine, fetchers={})

    result = report.result_for(Vendor.COPILOT)
    assert result.status == "skipped"
    assert report.exit_code == 0


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(seeded_engine):
    await run_sync([Vendor.CURSOR], as_of=DAY_ONE, engine=seeded_engine, fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 500)))
    before = load_vendor_configs(seeded_engine, TENANT_ID)[Vendor.CURSOR]

    report = await run_sync(
        [Vendor.CURSOR],
        dry_run=True,
        as_of=DAY_TWO,
        engine=seeded_engine,
        fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 800)),
    )

    result = report.result_for(Vendor.CURSOR)
    assert result.dry_run is True
    assert result.records_written == 1
    assert result.message.startswith("Would write")
    assert _daily_rows(seeded_engine) == []
    assert _seat_rows(seeded_engine) == []
    state = SnapshotStore(seeded_engine).load_state(Vendor.CURSOR)
    assert state.captured_at == DAY_ONE
    assert load_vendor_configs(seeded_engine, TENANT_ID)[Vendor.CURSOR] == before


@pytest.mark.asyncio
async def test_dry_run_first_sync_stores_no_baseline(seeded_engine):
    report = await run_sync(
        [Vendor.CURSOR], dry_run=True, as_of=DAY_ONE, engine=seeded_engine, fetchers=_cursor(MemberSnapshot("a@x.com", None, 5))
    )

    assert report.result_for(Vendor.CURSOR).status == "baseline"
    assert SnapshotStore(seeded_engine).load_state(Vendor.CURSOR) is None


def test_write_failure_keeps_previous_baseline(seeded_engine):
    class BrokenWriter:
        def write_daily_records(self, *args, **kwargs):
            raise OperationalError("INSERT INTO usage_records", {}, Exception("disk I/O error"))

        def write_seat_cost_records(self, *args, **kwargs):
            return 0

    store = SnapshotStore(seeded_engine)
    base = VendorSnapshot(vendor=Vendor.CURSOR, members=[MemberSnapshot("alice@acme.com", None, 500)])
    store.save_snapshot(Vendor.CURSOR, base, as_of=DAY_ONE)
    syncer = VendorSyncer(seeded_engine, TENANT_ID, as_of=DAY_TWO, writer=BrokenWriter())
    current = VendorSnapshot(vendor=Vendor.CURSOR, members=[MemberSnapshot("alice@acme.com", None, 800)])

    with pytest.raises(WriteFailure):
        syncer.sync_snapshot(load_vendor_catalog()[Vendor.CURSOR], current)

    state = store.load_state(Vendor.CURSOR)
    assert state.snapshot == base
    assert state.captured_at == DAY_ONE


@pytest.mark.asyncio
async def test_manual_vendor_reads_capture(seeded_engine, tmp_path):
    shutil.copy(CAPTURES / "claude.json", tmp_path / "claude.json")
    first = await run_sync([Vendor.CLAUDE], as_of=DAY_ONE, engine=seeded_engine, capture_directory=tmp_path)
    assert first.result_for(Vendor.CLAUDE).status == "baseline"

    save_capture(
        VendorSnapshot(
            vendor=Vendor.CLAUDE,
            members=[
                MemberSnapshot("alice@acme.com", "Alice", 2100),
                MemberSnapshot("dave@contractor.io", "Dave", 300),
                MemberSnapshot("erin@acme.com", "Erin", 0),
            ],
            vendor_total_cents=9600,
        ),
        tmp_path,
    )
    report = await run_sync([Vendor.CLAUDE], as_of=DAY_TWO, engine=seeded_engine, capture_directory=tmp_path)

    result = report.result_for(Vendor.CLAUDE)
    assert result.status == "synced"
    assert result.vendor_total_delta_cents == 600
    rows = _daily_rows(seeded_engine, Vendor.CLAUDE)
    assert [(row["member_id"], row["spend_cents"], row["source_type"]) for row in rows] == [("m-alice", 600, "scraper")]


@pytest.mark.asyncio
async def test_missing_capture_is_skipped(seeded_engine, tmp_path):
    report = await run_sync([Vendor.KIRO], as_of=DAY_ONE, engine=seeded_engine, capture_directory=tmp_path)

    assert report.result_for(Vendor.KIRO).status == "skipped"


def test_select_vendors():
    catalog = load_vendor_catalog()

    assert [spec.vendor for spec in select_vendors(catalog, api_only=True)] == [
        Vendor.CURSOR,
        Vendor.COPILOT,
        Vendor.OPENAI,
    ]
    assert [spec.vendor for spec in select_vendors(catalog, ["claude", Vendor.CURSOR])] == [Vendor.CURSOR, Vendor.CLAUDE]


def test_main_returns_report_exit_code(monkeypatch):
    calls = []

    async def fake_run_sync(vendors, *, dry_run, api_only):
        calls.append((vendors, dry_run, api_only))
        return sync.SyncReport(results=[sync.VendorSyncResult(vendor=Vendor.CURSOR, status="failed")])

    monkeypatch.setattr(sync, "run_sync", fake_run_sync)

    assert sync.main(["--vendor", "cursor", "--dry-run"]) == 1
    assert calls == [(["cursor"], True, False)]


@pytest.mark.asyncio
async def test_rerun_with_unchanged_upstream_keeps_rows(seeded_engine):
    await run_sync([Vendor.CURSOR], as_of=DAY_ONE, engine=seeded_engine, fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 500)))
    await run_sync([Vendor.CURSOR], as_of=DAY_TWO, engine=seeded_engine, fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 800)))
    first = [(row["member_id"], row["spend_cents"], row["period_start"]) for row in _daily_rows(seeded_engine)]

    report = await run_sync(
        [Vendor.CURSOR],
        as_of=DAY_TWO.add(hours=12),
        engine=seeded_engine,
        fetchers=_cursor(MemberSnapshot("alice@acme.com", None, 800)),
    )

    assert report.result_for(Vendor.CURSOR).records_written == 1
    assert [(row["member_id"], row["spend_cents"], row["period_start"]) for row in _daily_rows(seeded_engine)] == first
    assert first == [("m-alice", 300, pendulum.datetime(2026, 3, 10).naive())]
    assert [row["spend_cents"] for row in _seat_rows(seeded_engine)] == [4000]
