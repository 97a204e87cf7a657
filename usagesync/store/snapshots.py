"""Persistence of per-vendor snapshots with day-rollover rotation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from usagesync.db.schema import vendor_snapshots
from usagesync.logic.snapshots import Vendor, VendorSnapshot
from usagesync.utils.dates import as_utc, day_bounds, to_db

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VendorSnapshotState:
    vendor: Vendor
    snapshot: VendorSnapshot
    previous_snapshot: VendorSnapshot | None
    captured_at: datetime


class SnapshotStore:
    """One row per vendor holding the latest snapshot and the diff base.

    ``previous_snapshot`` is the vendor's state at the end of the prior UTC
    day. It only moves on the first save of a new day, so every sync during
    a day diffs against the same base.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def load_state(self, vendor: Vendor) -> VendorSnapshotState | None:
        with self.engine.connect() as conn:
            row = self._select_row(conn, vendor)
        if row is None:
            return None
        previous = row["previous_snapshot"]
        return VendorSnapshotState(
            vendor=vendor,
            snapshot=VendorSnapshot.from_dict(row["snapshot"]),
            previous_snapshot=VendorSnapshot.from_dict(previous) if previous else None,
            captured_at=as_utc(row["captured_at"]),
        )

    def load_diff_base(self, vendor: Vendor) -> VendorSnapshot | None:
        """Return the snapshot to diff against, or None if never synced.

        Before the first rotation there is no prior-day state, so the latest
        snapshot is used instead.
        """
        state = self.load_state(vendor)
        if state is None:
            return None
        return state.previous_snapshot or state.snapshot

    def save_snapshot(self, vendor: Vendor, snapshot: VendorSnapshot, *, as_of: datetime) -> None:
        today_start, _ = day_bounds(as_of)
        captured_at = to_db(as_of)
        payload = snapshot.to_dict()
        with self.engine.begin() as conn:
            row = self._select_row(conn, vendor)
            if row is None:
                conn.execute(
                    insert(vendor_snapshots).values(
                        vendor=vendor.value,
                        snapshot=payload,
                        previous_snapshot=None,
                        captured_at=captured_at,
                    )
                )
                logger.info("Stored first snapshot for %s", vendor.value)
                return
            values = {"snapshot": payload, "captured_at": captured_at}
            if as_utc(row["captured_at"]) < today_start:
                values["previous_snapshot"] = row["snapshot"]
                logger.info("Rotated %s snapshot captured %s into diff base", vendor.value, row["captured_at"])
            conn.execute(
                update(vendor_snapshots)
                .where(vendor_snapshots.c.vendor == vendor.value)
                .values(**values)
            )

    def _select_row(self, conn: Connection, vendor: Vendor):
        return (
            conn.execute(select(vendor_snapshots).where(vendor_snapshots.c.vendor == vendor.value))
            .mappings()
            .first()
        )
