"""
Shipway tracking API client.
- Get tracking: GET /api/tracking?awb_numbers=AWB1,AWB2&tracking_history=1 with the store's
  token in the Authorization header (max 50 AWBs per call).
- Response: [{ awb, tracking_details: { shipment_status, shipment_details[], shipment_track_activities[] } }]
Absence of an entry for a requested AWB is not an error.
"""
import logging
from typing import Any, Optional

import httpx

from shiptrack.config import settings
from shiptrack.services.errors import CarrierFetchError
from shiptrack.services.http_client import get_once

logger = logging.getLogger(__name__)


def parse_tracking_response(data: Any) -> dict[str, dict]:
    """
    Map AWB → tracking_details for every entry that carries a shipment_status.
    Raises CarrierFetchError when the body is not a JSON array.
    """
    if not isinstance(data, list):
        message = data.get("message") if isinstance(data, dict) else None
        raise CarrierFetchError(f"Malformed tracking response: {message or type(data).__name__}")
    tracking: dict[str, dict] = {}
    for item in data:
        if not isinstance(item, dict) or item.get("awb") in (None, ""):
            continue
        awb = str(item["awb"]).strip()
        details = item.get("tracking_details")
        if not isinstance(details, dict) or not details.get("shipment_status"):
            logger.debug("[CARRIER] No tracking_details for AWB %s", awb)
            continue
        tracking[awb] = details
    return tracking


class ShipwayService:
    """Shipway tracking client. One instance may be shared by all stores; the token is per call."""

    def __init__(
        self,
        tracking_url: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.tracking_url = (tracking_url or settings.SHIPWAY_TRACKING_URL).rstrip("/")
        self.transport = transport

    def _headers(self, auth_token: str) -> dict:
        return {"Authorization": auth_token, "Content-Type": "application/json"}

    async def fetch_tracking_batch(
        self,
        awbs: list[str],
        auth_token: str,
        *,
        tracking_history: bool = True,
        timeout: Optional[float] = None,
    ) -> dict[str, dict]:
        """One API call for up to CARRIER_BATCH_SIZE AWBs. Returns AWB → tracking_details."""
        awb_list = [str(a).strip() for a in awbs if str(a or "").strip()]
        if not awb_list:
            return {}
        params = {
            "awb_numbers": ",".join(awb_list),
            "tracking_history": "1" if tracking_history else "0",
        }
        try:
            resp = await get_once(
                self.tracking_url,
                params=params,
                headers=self._headers(auth_token),
                timeout=timeout or settings.CARRIER_BATCH_TIMEOUT,
                transport=self.transport,
            )
        except httpx.TimeoutException as e:
            raise CarrierFetchError("Request timeout - Shipway API not responding") from e
        except httpx.HTTPError as e:
            raise CarrierFetchError(f"Network error: {e}") from e

        if not resp.is_success:
            raise CarrierFetchError(f"Shipway API returned status {resp.status_code}", resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise CarrierFetchError("Shipway API returned a non-JSON body") from e
        return parse_tracking_response(data)

    async def get_tracking(self, awb: str, auth_token: str) -> Optional[dict]:
        """Tracking details for a single AWB, or None when Shipway has nothing for it."""
        results = await self.fetch_tracking_batch(
            [awb], auth_token, timeout=settings.CARRIER_FETCH_TIMEOUT
        )
        return results.get(str(awb).strip())
