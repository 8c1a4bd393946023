"""
Pydantic schemas for request/response validation (Http/Requests).
"""
from pydantic import BaseModel
from typing import Optional, Dict, Any


# Tracking sync schemas
class SyncRunResponse(BaseModel):
    success: bool
    message: str
    lifecycle: str
    processed: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    changed_count: int = 0
    failed_chunks: int = 0
    failed_stores: int = 0
    webhook: Optional[Dict[str, Any]] = None
    validation: Optional[Dict[str, Any]] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class LifecycleSyncStatus(BaseModel):
    state: str
    is_running: bool
    last_started_at: Optional[str] = None
    last_finished_at: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None


class SyncStatusResponse(BaseModel):
    active: LifecycleSyncStatus
    inactive: LifecycleSyncStatus
    workers: Dict[str, Any] = {}


class ShipmentSyncResponse(BaseModel):
    success: bool
    message: str
    status_changed: bool = False
    previous_status: Optional[str] = None
    current_status: Optional[str] = None
    webhook: Optional[Dict[str, Any]] = None
