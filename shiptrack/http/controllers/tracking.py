"""
Tracking sync routes: trigger a sync pass, refresh one shipment, read sync status.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status

from shiptrack.http.requests.schemas import ShipmentSyncResponse, SyncRunResponse, SyncStatusResponse
from shiptrack.models import LifecycleClass
from shiptrack.services.tracking_sync import SyncState, TrackingSyncService
from shiptrack.workers.scheduler import get_workers_status

logger = logging.getLogger(__name__)
router = APIRouter()

_sync_service: TrackingSyncService | None = None


def get_sync_service() -> TrackingSyncService:
    """Process-wide sync service; one guard and one credential cache per process."""
    global _sync_service
    if _sync_service is None:
        _sync_service = TrackingSyncService()
    return _sync_service


@router.get("/status", response_model=SyncStatusResponse)
async def get_tracking_status(service: TrackingSyncService = Depends(get_sync_service)):
    """Per-lifecycle sync state and last result, plus background worker status."""
    return {**service.get_sync_status(), "workers": get_workers_status()}


@router.post("/sync/{lifecycle}", response_model=SyncRunResponse)
async def trigger_sync(lifecycle: str, service: TrackingSyncService = Depends(get_sync_service)):
    """Run one sync pass for `active` or `inactive` shipments and return its result."""
    try:
        lifecycle_class = LifecycleClass(lifecycle.lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown lifecycle '{lifecycle}'. Use 'active' or 'inactive'.",
        )
    if service.guard.state(lifecycle_class) is SyncState.RUNNING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{lifecycle_class.value.capitalize()} tracking sync already in progress",
        )

    result = await service.run_sync(lifecycle_class)
    if not result.get("success") and "already in progress" in result.get("message", ""):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result["message"])
    return result


@router.post("/shipments/{account_code}/{order_id}/sync", response_model=ShipmentSyncResponse)
async def sync_single_shipment(
    account_code: str,
    order_id: str,
    service: TrackingSyncService = Depends(get_sync_service),
):
    """Refresh tracking for one shipment."""
    result = await service.sync_shipment(order_id, account_code)
    if not result.get("success") and result.get("message", "").endswith("not found"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result["message"])
    return result
