"""Snapshot fetchers for API-polled vendors."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from usagesync.ingest.copilot import fetch_copilot_snapshot
from usagesync.ingest.cursor import fetch_cursor_snapshot
from usagesync.ingest.openai_usage import fetch_openai_snapshot
from usagesync.logic.snapshots import Vendor, VendorSnapshot

Fetcher = Callable[[dict[str, Any]], Awaitable[VendorSnapshot]]

API_FETCHERS: dict[Vendor, Fetcher] = {
    Vendor.CURSOR: fetch_cursor_snapshot,
    Vendor.COPILOT: fetch_copilot_snapshot,
    Vendor.OPENAI: fetch_openai_snapshot,
}
