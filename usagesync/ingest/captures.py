"""Out-of-band captures for vendors without a usable API.

A capture step (an operator running a browser scrape) writes the vendor's
snapshot to ``<CAPTURE_DIR>/<vendor>.json``; the sync consumes it from there.
"""

from __future__ import annotations

import json
import os
import pathlib

from usagesync.logic.snapshots import Vendor, VendorSnapshot

DEFAULT_CAPTURE_DIR = "captures"


def capture_dir() -> pathlib.Path:
    return pathlib.Path(os.environ.get("CAPTURE_DIR", DEFAULT_CAPTURE_DIR))


def capture_path(vendor: Vendor, directory: pathlib.Path | None = None) -> pathlib.Path:
    return (directory or capture_dir()) / f"{vendor.value}.json"


def save_capture(snapshot: VendorSnapshot, directory: pathlib.Path | None = None) -> pathlib.Path:
    path = capture_path(snapshot.vendor, directory)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(snapshot.to_dict(), indent=2))
    return path


def load_capture(vendor: Vendor, directory: pathlib.Path | None = None) -> VendorSnapshot | None:
    path = capture_path(vendor, directory)
    if not path.exists():
        return None
    snapshot = VendorSnapshot.from_dict(json.loads(path.read_text()))
    if snapshot.vendor != vendor:
        raise ValueError(f"Capture {path} holds a {snapshot.vendor.value} snapshot, expected {vendor.value}")
    return snapshot
