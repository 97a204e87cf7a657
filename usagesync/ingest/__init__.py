"""Vendor catalog and snapshot sources."""

from __future__ import annotations

import pathlib

import yaml

from usagesync.ingest.models import VendorSpec
from usagesync.logic.snapshots import Vendor

VENDORS_PATH = pathlib.Path(__file__).with_name("vendors.yml")


def load_vendor_catalog() -> dict[Vendor, VendorSpec]:
    data = yaml.safe_load(VENDORS_PATH.read_text())
    catalog: dict[Vendor, VendorSpec] = {}
    for item in data:
        vendor = Vendor(item["name"])
        catalog[vendor] = VendorSpec(
            vendor=vendor,
            category=item["category"],
            seat_cost_cents=item.get("seat_cost_cents"),
        )
    return catalog
