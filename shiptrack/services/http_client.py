"""
Outbound HTTP for the Shipway tracking API and the status webhook.

Each helper makes exactly one request. A failed Shipway chunk is counted and
picked up by the next sync pass; the webhook dispatcher runs its own attempt
loop using `backoff_delay`.
"""
from typing import Optional

import httpx

DEFAULT_TIMEOUT = 30.0
BACKOFF_BASE = 1.0  # seconds
BACKOFF_MAX = 60.0


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based): 1, 2, 4, ..."""
    if attempt <= 0:
        return 0.0
    return min(BACKOFF_BASE * (2 ** (attempt - 1)), BACKOFF_MAX)


async def get_once(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        return await client.get(url, params=params, headers=headers or {})


async def post_once(
    url: str,
    *,
    json: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        return await client.post(url, json=json or {}, headers=headers or {})
