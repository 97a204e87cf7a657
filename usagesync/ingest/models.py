"""Vendor catalog models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from usagesync.logic.snapshots import SourceType, Vendor

VendorCategory = Literal["api", "manual"]


@dataclass(slots=True)
class VendorSpec:
    vendor: Vendor
    category: VendorCategory
    seat_cost_cents: int | None = None

    @property
    def source_type(self) -> SourceType:
        return "api" if self.category == "api" else "scraper"
