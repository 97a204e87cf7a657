"""Snapshot types and diff logic for the daily usage sync.

A snapshot is a vendor's report of *cumulative* spend per member for the
current billing cycle. Diffing today's snapshot against the end of the prior
day yields the day's incremental usage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping

SourceType = Literal["api", "manual", "scraper"]
Confidence = Literal["high", "medium", "low"]

UNKNOWN_MEMBER_KEY = "unknown"


class Vendor(str, Enum):
    CURSOR = "cursor"
    CLAUDE = "claude"
    COPILOT = "copilot"
    KIRO = "kiro"
    REPLIT = "replit"
    OPENAI = "openai"


@dataclass(slots=True)
class MemberSnapshot:
    vendor_email: str | None
    vendor_username: str | None
    spend_cents: int
    tokens: int | None = None
    seat_cost_cents: int | None = None

    def __post_init__(self) -> None:
        if self.spend_cents < 0:
            raise ValueError(f"spend_cents must be >= 0, got {self.spend_cents}")
        if self.tokens is not None and self.tokens < 0:
            raise ValueError(f"tokens must be >= 0, got {self.tokens}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "vendor_email": self.vendor_email,
            "vendor_username": self.vendor_username,
            "spend_cents": self.spend_cents,
            "tokens": self.tokens,
        }
        if self.seat_cost_cents is not None:
            data["seat_cost_cents"] = self.seat_cost_cents
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MemberSnapshot:
        return cls(
            vendor_email=data.get("vendor_email"),
            vendor_username=data.get("vendor_username"),
            spend_cents=int(data.get("spend_cents") or 0),
            tokens=_optional_int(data.get("tokens")),
            seat_cost_cents=_optional_int(data.get("seat_cost_cents")),
        )


@dataclass(slots=True)
class VendorSnapshot:
    vendor: Vendor
    members: list[MemberSnapshot] = field(default_factory=list)
    # Only set for vendors billed as one shared pool.
    vendor_total_cents: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "vendor": self.vendor.value,
            "members": [member.to_dict() for member in self.members],
        }
        if self.vendor_total_cents is not None:
            data["vendor_total_cents"] = self.vendor_total_cents
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VendorSnapshot:
        return cls(
            vendor=Vendor(data["vendor"]),
            members=[MemberSnapshot.from_dict(item) for item in data.get("members") or []],
            vendor_total_cents=_optional_int(data.get("vendor_total_cents")),
        )


@dataclass(slots=True)
class MemberDelta:
    vendor_email: str | None
    vendor_username: str | None
    delta_spend_cents: int
    delta_tokens: int | None
    billing_reset: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "vendor_email": self.vendor_email,
            "vendor_username": self.vendor_username,
            "delta_spend_cents": self.delta_spend_cents,
            "delta_tokens": self.delta_tokens,
            "billing_reset": self.billing_reset,
        }


@dataclass(slots=True)
class SnapshotDiff:
    vendor: Vendor
    deltas: list[MemberDelta]
    new_members: list[MemberSnapshot]
    vendor_total_delta_cents: int | None = None

    @property
    def is_empty(self) -> bool:
        return not self.deltas and not self.new_members


def member_key(member: MemberSnapshot | MemberDelta) -> str:
    """Best-effort identity used to match members across snapshots.

    Email wins over username. A person reported by email in one snapshot and
    by username in the other gets two different keys.
    """
    for value in (member.vendor_email, member.vendor_username):
        if value and value.strip():
            return value.strip().lower()
    return UNKNOWN_MEMBER_KEY


def cumulative_delta(current: int, base: int) -> tuple[int, bool]:
    """Return ``(delta, billing_reset)`` for two cumulative counters.

    A drop means a new billing cycle started, so the current value is the
    whole delta. Vendor-side corrections that lower spend look the same.
    """
    if current < base:
        return current, True
    return current - base, False


def compute_diff(current: VendorSnapshot, base: VendorSnapshot) -> SnapshotDiff:
    base_index = {member_key(member): member for member in base.members}
    deltas: list[MemberDelta] = []
    new_members: list[MemberSnapshot] = []

    for member in current.members:
        previous = base_index.get(member_key(member))
        if previous is None:
            new_members.append(member)
            continue
        delta_spend, billing_reset = cumulative_delta(member.spend_cents, previous.spend_cents)
        if delta_spend == 0:
            continue
        delta_tokens: int | None = None
        if member.tokens is not None and previous.tokens is not None:
            delta_tokens, _ = cumulative_delta(member.tokens, previous.tokens)
        deltas.append(
            MemberDelta(
                vendor_email=member.vendor_email,
                vendor_username=member.vendor_username,
                delta_spend_cents=delta_spend,
                delta_tokens=delta_tokens,
                billing_reset=billing_reset,
            )
        )

    vendor_total_delta: int | None = None
    if current.vendor_total_cents is not None and base.vendor_total_cents is not None:
        vendor_total_delta, _ = cumulative_delta(current.vendor_total_cents, base.vendor_total_cents)

    return SnapshotDiff(
        vendor=current.vendor,
        deltas=deltas,
        new_members=new_members,
        vendor_total_delta_cents=vendor_total_delta,
    )


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)
