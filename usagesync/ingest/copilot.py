"""GitHub Copilot seat snapshots."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from usagesync.logic.snapshots import MemberSnapshot, Vendor, VendorSnapshot
from usagesync.utils.retry import retry_async

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
PER_PAGE = 100
SEAT_TIERS_CENTS = {"enterprise": 3900, "business": 1900}


class CopilotClient:
    def __init__(self, organization: str, token: str, *, session: httpx.AsyncClient | None = None) -> None:
        self.organization = organization
        self.session = session or httpx.AsyncClient(timeout=float(os.environ.get("HTTP_TIMEOUT_SECONDS", 30)))
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch_snapshot(self) -> VendorSnapshot:
        seats: list[dict[str, Any]] = []
        page = 1
        while True:
            response = await retry_async(self.session.get)(
                f"{GITHUB_API}/orgs/{self.organization}/copilot/billing/seats",
                params={"per_page": PER_PAGE, "page": page},
                headers=self.headers,
            )
            response.raise_for_status()
            batch = response.json().get("seats") or []
            seats.extend(batch)
            if len(batch) < PER_PAGE:
                break
            page += 1

        members: list[MemberSnapshot] = []
        for seat in seats:
            assignee = seat.get("assignee") or {}
            login = assignee.get("login")
            if not login:
                continue
            # Copilot is pure subscription: no variable spend to diff.
            members.append(
                MemberSnapshot(
                    vendor_email=assignee.get("email") or None,
                    vendor_username=login,
                    spend_cents=0,
                    tokens=None,
                    seat_cost_cents=SEAT_TIERS_CENTS.get(seat.get("plan_type") or ""),
                )
            )
        logger.info("Fetched %s Copilot seats for %s", len(members), self.organization)
        return VendorSnapshot(vendor=Vendor.COPILOT, members=members)


async def fetch_copilot_snapshot(credentials: dict[str, Any]) -> VendorSnapshot:
    client = CopilotClient(credentials["organization"], credentials["pat"])
    try:
        return await client.fetch_snapshot()
    finally:
        await client.close()
