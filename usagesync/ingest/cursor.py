"""Cursor team spend snapshots."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from usagesync.logic.snapshots import MemberSnapshot, Vendor, VendorSnapshot
from usagesync.utils.retry import retry_async

logger = logging.getLogger(__name__)

CURSOR_SPEND_ENDPOINT = "https://api.cursor.com/teams/spend"
PAGE_SIZE = 100
# Blended USD per 1M tokens, used to estimate tokens from spend.
BLENDED_RATE_USD = 6


def estimate_tokens(spend_cents: int) -> int:
    if spend_cents <= 0:
        return 0
    return round(spend_cents / 100 / BLENDED_RATE_USD * 1_000_000)


class CursorClient:
    def __init__(self, api_key: str, *, session: httpx.AsyncClient | None = None) -> None:
        self.api_key = api_key
        self.session = session or httpx.AsyncClient(timeout=float(os.environ.get("HTTP_TIMEOUT_SECONDS", 30)))

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch_snapshot(self) -> VendorSnapshot:
        members: list[MemberSnapshot] = []
        page = 1
        while True:
            data = await self._fetch_page(page)
            for item in data.get("teamMemberSpend") or []:
                # Overage only; seat fees are written separately once a month.
                spend_cents = int(item.get("spendCents") or 0)
                members.append(
                    MemberSnapshot(
                        vendor_email=item.get("email") or None,
                        vendor_username=item.get("name") or None,
                        spend_cents=spend_cents,
                        tokens=estimate_tokens(spend_cents),
                    )
                )
            if page >= int(data.get("totalPages") or 1):
                break
            page += 1
        logger.info("Fetched %s Cursor members", len(members))
        return VendorSnapshot(vendor=Vendor.CURSOR, members=members)

    async def _fetch_page(self, page: int) -> dict[str, Any]:
        payload = {
            "searchTerm": "",
            "sortBy": "amount",
            "sortDirection": "desc",
            "page": page,
            "pageSize": PAGE_SIZE,
        }
        response = await retry_async(self.session.post)(
            CURSOR_SPEND_ENDPOINT, json=payload, auth=(self.api_key, "")
        )
        response.raise_for_status()
        return response.json()


async def fetch_cursor_snapshot(credentials: dict[str, Any]) -> VendorSnapshot:
    client = CursorClient(credentials["apiKey"])
    try:
        return await client.fetch_snapshot()
    finally:
        await client.close()
