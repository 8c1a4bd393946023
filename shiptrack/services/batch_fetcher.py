"""
Batch fetcher: splits a store's AWBs into carrier-sized chunks and issues one
Shipway call per chunk. A failed chunk yields no tracking for its AWBs and
never stops the remaining chunks.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional

from shiptrack.config import settings
from shiptrack.services.credentials import CredentialResolver
from shiptrack.services.errors import CarrierFetchError
from shiptrack.services.shipway_service import ShipwayService

logger = logging.getLogger(__name__)


def chunked(items: list[str], size: int) -> list[list[str]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


@dataclass
class ChunkResult:
    index: int
    total: int
    awbs: list[str]
    tracking: dict[str, dict] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class FetchResult:
    tracking: dict[str, dict] = field(default_factory=dict)
    chunks: int = 0
    failed_chunks: int = 0
    failed_awbs: list[str] = field(default_factory=list)


class BatchFetcher:
    def __init__(
        self,
        client: ShipwayService,
        credentials: CredentialResolver,
        *,
        batch_size: Optional[int] = None,
        chunk_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.credentials = credentials
        self.batch_size = batch_size or settings.CARRIER_BATCH_SIZE
        self.chunk_delay = chunk_delay
        self._sleep = sleep

    async def iter_chunks(self, account_code: str, awbs: list[str]) -> AsyncIterator[ChunkResult]:
        """
        Yield one ChunkResult per carrier call, pausing `chunk_delay` between calls.
        Raises CredentialError (before any call) when the store cannot be resolved.
        """
        unique_awbs = list(dict.fromkeys(str(a).strip() for a in awbs if str(a or "").strip()))
        if not unique_awbs:
            return
        auth_token = self.credentials.resolve(account_code)
        chunks = chunked(unique_awbs, self.batch_size)
        for index, chunk in enumerate(chunks, start=1):
            logger.info(
                "[CARRIER] Fetching batch %s/%s (%s AWBs) for store %s", index, len(chunks), len(chunk), account_code
            )
            try:
                tracking = await self.client.fetch_tracking_batch(chunk, auth_token)
                logger.info("[CARRIER] Batch %s/%s: %s/%s AWBs have tracking data", index, len(chunks), len(tracking), len(chunk))
                yield ChunkResult(index=index, total=len(chunks), awbs=chunk, tracking=tracking)
            except CarrierFetchError as e:
                logger.warning("[CARRIER] Batch %s/%s failed for store %s: %s", index, len(chunks), account_code, e)
                yield ChunkResult(index=index, total=len(chunks), awbs=chunk, error=str(e))
            if index < len(chunks) and self.chunk_delay > 0:
                await self._sleep(self.chunk_delay)

    async def fetch(self, account_code: str, awbs: list[str]) -> FetchResult:
        """Fetch all chunks for one store and merge them into a single AWB → tracking map."""
        result = FetchResult()
        async for chunk in self.iter_chunks(account_code, awbs):
            result.chunks += 1
            if chunk.failed:
                result.failed_chunks += 1
                result.failed_awbs.extend(chunk.awbs)
                continue
            result.tracking.update(chunk.tracking)
        return result
