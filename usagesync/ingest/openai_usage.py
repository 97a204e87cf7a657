"""OpenAI organization usage snapshots.

Spend is estimated from per-model token counts since the start of the
current UTC month, grouped by user.
"""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from datetime import datetime
from typing import Any

import httpx

from usagesync.logic.snapshots import MemberSnapshot, Vendor, VendorSnapshot
from usagesync.utils.dates import month_bounds, utc_now
from usagesync.utils.retry import retry_async

logger = logging.getLogger(__name__)

OPENAI_API = "https://api.openai.com/v1/organization"
USAGE_ENDPOINTS = ("usage/completions", "usage/embeddings")

# USD per 1M tokens (input, output).
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4o": (2.5, 10),
    "gpt-4.1-nano": (0.1, 0.4),
    "gpt-4.1-mini": (0.4, 1.6),
    "gpt-4.1": (2, 8),
    "o1-mini": (1.1, 4.4),
    "o1": (15, 60),
    "o3-mini": (1.1, 4.4),
    "o3": (10, 40),
    "o4-mini": (1.1, 4.4),
    "gpt-4-turbo": (10, 30),
    "gpt-3.5-turbo": (0.5, 1.5),
    "text-embedding-3-large": (0.13, 0),
    "text-embedding-3-small": (0.02, 0),
}
DEFAULT_PRICING = (3.0, 12.0)


def model_pricing(model: str) -> tuple[float, float]:
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    # Longest prefix first so "gpt-4o-mini-2024" does not match "gpt-4o".
    for prefix in sorted(MODEL_PRICING, key=len, reverse=True):
        if model.startswith(prefix):
            return MODEL_PRICING[prefix]
    return DEFAULT_PRICING


def usage_cost_cents(model: str, input_tokens: int, output_tokens: int) -> int:
    input_rate, output_rate = model_pricing(model)
    return round((input_tokens / 1e6 * input_rate + output_tokens / 1e6 * output_rate) * 100)


class OpenAIUsageClient:
    def __init__(self, admin_api_key: str, *, session: httpx.AsyncClient | None = None) -> None:
        self.session = session or httpx.AsyncClient(timeout=float(os.environ.get("HTTP_TIMEOUT_SECONDS", 30)))
        self.headers = {"Authorization": f"Bearer {admin_api_key}"}

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch_snapshot(self, *, as_of: datetime | None = None) -> VendorSnapshot:
        moment = as_of or utc_now()
        month_start, _ = month_bounds(moment)
        users = await self._fetch_users()
        totals: dict[str, dict[str, int]] = defaultdict(lambda: {"tokens": 0, "spend_cents": 0})
        for endpoint in USAGE_ENDPOINTS:
            async for result in self._iter_usage(endpoint, int(month_start.timestamp()), int(moment.timestamp())):
                user_id = result.get("user_id")
                if not user_id:
                    continue
                input_tokens = int(result.get("input_tokens") or 0)
                output_tokens = int(result.get("output_tokens") or 0)
                model = result.get("model") or "unknown"
                totals[user_id]["tokens"] += input_tokens + output_tokens
                totals[user_id]["spend_cents"] += usage_cost_cents(model, input_tokens, output_tokens)

        members = []
        for user_id, total in totals.items():
            user = users.get(user_id, {})
            members.append(
                MemberSnapshot(
                    vendor_email=user.get("email") or None,
                    vendor_username=user.get("name") or None,
                    spend_cents=total["spend_cents"],
                    tokens=total["tokens"] or None,
                )
            )
        logger.info("Fetched OpenAI usage for %s users", len(members))
        return VendorSnapshot(vendor=Vendor.OPENAI, members=members)

    async def _fetch_users(self) -> dict[str, dict[str, Any]]:
        users: dict[str, dict[str, Any]] = {}
        params: dict[str, Any] = {"limit": 100}
        while True:
            data = await self._get_json(f"{OPENAI_API}/users", params)
            for user in data.get("data") or []:
                users[user["id"]] = user
            if not data.get("has_more"):
                return users
            params = {"limit": 100, "after": data.get("last_id")}

    async def _iter_usage(self, endpoint: str, start_time: int, end_time: int):
        page: str | None = None
        while True:
            params: list[tuple[str, Any]] = [
                ("start_time", start_time),
                ("end_time", end_time),
                ("bucket_width", "1d"),
                ("group_by[]", "user_id"),
                ("group_by[]", "model"),
                ("limit", 30),
            ]
            if page:
                params.append(("page", page))
            data = await self._get_json(f"{OPENAI_API}/{endpoint}", params)
            for bucket in data.get("data") or []:
                for result in bucket.get("results") or []:
                    yield result
            page = data.get("next_page")
            if not data.get("has_more") or not page:
                return

    async def _get_json(self, url: str, params: Any) -> dict[str, Any]:
        response = await retry_async(self.session.get)(url, params=params, headers=self.headers)
        response.raise_for_status()
        return response.json()


async def fetch_openai_snapshot(credentials: dict[str, Any]) -> VendorSnapshot:
    client = OpenAIUsageClient(credentials["adminApiKey"])
    try:
        return await client.fetch_snapshot()
    finally:
        await client.close()
