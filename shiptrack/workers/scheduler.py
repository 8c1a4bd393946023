"""
Worker Scheduler Configuration

Registers and schedules the tracking workers: hourly sync of active
shipments, daily sync of inactive (delivered) shipments, and a daily
cleanup of old tracking events.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from shiptrack.config import settings
from shiptrack.database import SessionLocal
from shiptrack.services.tracking_maintenance import cleanup_old_tracking_events
from shiptrack.services.tracking_sync import TrackingSyncService

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SEC = 60


def run_tracking_cleanup_worker() -> Dict[str, Any]:
    db = SessionLocal()
    try:
        return cleanup_old_tracking_events(db)
    finally:
        db.close()


class WorkerScheduler:
    """Scheduler for running background workers at specified intervals."""

    def __init__(self, sync_service: Optional[TrackingSyncService] = None):
        self.sync_service = sync_service or TrackingSyncService()
        self.workers = {
            "active_tracking": {
                "func": self.sync_service.sync_active,
                "interval": settings.ACTIVE_SYNC_INTERVAL_SEC,
                "last_run": None,
                "enabled": True,
            },
            "inactive_tracking": {
                "func": self.sync_service.sync_inactive,
                "interval": settings.INACTIVE_SYNC_INTERVAL_SEC,
                "last_run": None,
                "enabled": True,
            },
            "tracking_cleanup": {
                "func": run_tracking_cleanup_worker,
                "interval": 86400,  # daily
                "last_run": None,
                "enabled": True,
            },
        }
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def run_worker(self, worker_name: str, worker_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run a single worker and log results.

        Args:
            worker_name: Name of the worker
            worker_config: Worker configuration

        Returns:
            Worker result
        """
        try:
            logger.info(f"Starting worker: {worker_name}")
            func = worker_config["func"]
            if inspect.iscoroutinefunction(func):
                result = await func()
            else:
                result = await asyncio.get_running_loop().run_in_executor(None, func)

            worker_config["last_run"] = datetime.now(timezone.utc)

            if result.get("success", False):
                logger.info(f"Worker {worker_name} completed: {result.get('message', 'No message')}")
            else:
                logger.error(f"Worker {worker_name} failed: {result.get('message', 'Unknown error')}")

            return result

        except Exception as e:
            logger.error(f"Worker {worker_name} crashed: {e}")
            worker_config["last_run"] = datetime.now(timezone.utc)
            return {
                "success": False,
                "message": f"Worker crashed: {str(e)}",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    def due_workers(self, current_time: datetime) -> list:
        """Names of enabled workers whose interval has elapsed."""
        due = []
        for worker_name, worker_config in self.workers.items():
            if not worker_config["enabled"]:
                continue
            last_run = worker_config["last_run"]
            if last_run is None or (current_time - last_run).total_seconds() >= worker_config["interval"]:
                due.append(worker_name)
        return due

    async def start_scheduler(self):
        """Start the background worker scheduler."""
        self.running = True
        logger.info("🚀 Worker scheduler started")

        while self.running:
            for worker_name in self.due_workers(datetime.now(timezone.utc)):
                worker_config = self.workers[worker_name]
                # Mark before the run so a long sync is not started again on the next tick
                worker_config["last_run"] = datetime.now(timezone.utc)
                asyncio.create_task(self.run_worker(worker_name, worker_config))

            await asyncio.sleep(CHECK_INTERVAL_SEC)

    def start(self):
        self._task = asyncio.create_task(self.start_scheduler())

    def stop_scheduler(self):
        """Stop the background worker scheduler."""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        logger.info("⏹️ Worker scheduler stopped")

    def get_worker_status(self) -> Dict[str, Any]:
        """Get current status of all workers."""
        status = {}

        for worker_name, worker_config in self.workers.items():
            last_run = worker_config["last_run"]
            next_run = None

            if last_run:
                next_run = last_run + timedelta(seconds=worker_config["interval"])

            status[worker_name] = {
                "enabled": worker_config["enabled"],
                "last_run": last_run.isoformat() if last_run else None,
                "next_run": next_run.isoformat() if next_run else None,
                "interval_seconds": worker_config["interval"],
                "status": "running" if self.running else "stopped",
            }

        return status


_scheduler: Optional[WorkerScheduler] = None


def get_scheduler(sync_service: Optional[TrackingSyncService] = None) -> WorkerScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = WorkerScheduler(sync_service)
    return _scheduler


def start_background_workers(sync_service: Optional[TrackingSyncService] = None):
    """Start the background worker scheduler."""
    try:
        get_scheduler(sync_service).start()
        logger.info("✅ Background workers started successfully")
    except RuntimeError as e:
        logger.error(f"❌ Failed to start background workers: {e}")


def stop_background_workers():
    """Stop the background worker scheduler."""
    if _scheduler is not None:
        _scheduler.stop_scheduler()


def get_workers_status() -> Dict[str, Any]:
    """Get status of all background workers."""
    if _scheduler is None:
        return {}
    return _scheduler.get_worker_status()
