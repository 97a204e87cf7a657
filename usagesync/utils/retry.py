"""Retry helpers for vendor HTTP calls."""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable

import httpx

RETRY_EXCEPTIONS = (httpx.TransportError, asyncio.TimeoutError)
RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def retry_async(func: Callable[..., Awaitable[httpx.Response]], *, attempts: int = 3, base_delay: float = 1.0):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        delay = base_delay
        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            try:
                response = await func(*args, **kwargs)
            except RETRY_EXCEPTIONS:
                if last_attempt:
                    raise
            else:
                if response.status_code not in RETRY_STATUS_CODES or last_attempt:
                    return response
            await asyncio.sleep(delay + random.random())
            delay *= 2
    return wrapper
