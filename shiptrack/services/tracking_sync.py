"""
Tracking Sync Service - drives one tracking sync pass for a lifecycle class.

Population (active | inactive) → group by store → chunked Shipway fetch →
per shipment: normalize, detect transition, commit → one webhook for all
status changes → consistency validation.

Runs for the same lifecycle class never overlap: a second call while one is
RUNNING is rejected with "already in progress". Active and inactive runs are
guarded independently.
"""
import asyncio
import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from shiptrack.config import settings
from shiptrack.database import SessionLocal
from shiptrack.models import Shipment, LifecycleClass
from shiptrack.services.batch_fetcher import BatchFetcher
from shiptrack.services.credentials import CredentialResolver
from shiptrack.services.errors import CarrierFetchError, CredentialError, TrackingError
from shiptrack.services.shipway_service import ShipwayService
from shiptrack.services.status_normalizer import StatusNormalizer
from shiptrack.services.tracking_events import build_tracking_events
from shiptrack.services.tracking_maintenance import validate_handover_tracking
from shiptrack.services.tracking_persistence import ShipmentKey, TrackingWriter, get_shipment
from shiptrack.services.transition_detector import detect_transition
from shiptrack.services.webhook_service import StatusChange, WebhookDispatcher

logger = logging.getLogger(__name__)

LOG_TAGS = {
    LifecycleClass.ACTIVE: "[ACTIVE_SYNC]",
    LifecycleClass.INACTIVE: "[INACTIVE_SYNC]",
}


class SyncState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class SyncGuard:
    """Mutex-guarded IDLE/RUNNING state per lifecycle class."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states = {lifecycle: SyncState.IDLE for lifecycle in LifecycleClass}

    def try_acquire(self, lifecycle: LifecycleClass) -> bool:
        with self._lock:
            if self._states[lifecycle] is SyncState.RUNNING:
                return False
            self._states[lifecycle] = SyncState.RUNNING
            return True

    def release(self, lifecycle: LifecycleClass) -> None:
        with self._lock:
            self._states[lifecycle] = SyncState.IDLE

    def state(self, lifecycle: LifecycleClass) -> SyncState:
        with self._lock:
            return self._states[lifecycle]


@dataclass(frozen=True)
class ShipmentSnapshot:
    """What the run needs from a shipment row, detached from any session."""

    key: ShipmentKey
    awb: str
    status: Optional[str]
    handover_at: Optional[datetime]


@dataclass
class SyncCounters:
    processed: int = 0
    success: int = 0
    errors: int = 0
    skipped: int = 0
    failed_chunks: int = 0
    failed_stores: int = 0
    changes: list[StatusChange] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_population(db: Session, lifecycle: LifecycleClass) -> dict[str, list[ShipmentSnapshot]]:
    """Shipments of one lifecycle class that have an AWB, grouped by store."""
    rows = (
        db.query(Shipment)
        .filter(Shipment.lifecycle == lifecycle.value)
        .filter(Shipment.awb.isnot(None), Shipment.awb != "")
        .order_by(Shipment.account_code, Shipment.order_id)
        .all()
    )
    grouped: dict[str, list[ShipmentSnapshot]] = {}
    for row in rows:
        grouped.setdefault(row.account_code, []).append(
            ShipmentSnapshot(
                key=ShipmentKey(row.order_id, row.account_code),
                awb=str(row.awb).strip(),
                status=row.current_shipment_status,
                handover_at=row.handover_at,
            )
        )
    return grouped


class TrackingSyncService:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        client: Optional[ShipwayService] = None,
        credentials: Optional[CredentialResolver] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        guard: Optional[SyncGuard] = None,
        batch_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        chunk_delays: Optional[dict[LifecycleClass, float]] = None,
        store_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.client = client or ShipwayService()
        self.credentials = credentials or CredentialResolver(session_factory)
        self.dispatcher = dispatcher or WebhookDispatcher(sleep=sleep)
        self.guard = guard or SyncGuard()
        self.batch_size = batch_size or settings.CARRIER_BATCH_SIZE
        self.max_concurrency = max(1, max_concurrency or settings.SYNC_MAX_CONCURRENCY)
        self.chunk_delays = chunk_delays or {
            LifecycleClass.ACTIVE: settings.ACTIVE_CHUNK_DELAY_SEC,
            LifecycleClass.INACTIVE: settings.INACTIVE_CHUNK_DELAY_SEC,
        }
        self.store_delay = settings.STORE_DELAY_SEC if store_delay is None else store_delay
        self._sleep = sleep
        self.last_results: dict[LifecycleClass, dict] = {}

    async def sync_active(self) -> dict:
        return await self.run_sync(LifecycleClass.ACTIVE)

    async def sync_inactive(self) -> dict:
        return await self.run_sync(LifecycleClass.INACTIVE)

    async def run_sync(self, lifecycle: LifecycleClass) -> dict:
        """
        One full pass for `lifecycle`. Always returns a result dict; only a
        database failure marks the run as failed.
        """
        lifecycle = LifecycleClass(lifecycle)
        tag = LOG_TAGS[lifecycle]
        if not self.guard.try_acquire(lifecycle):
            logger.warning("%s Sync already in progress, skipping", tag)
            return {
                "success": False,
                "message": f"{lifecycle.value.capitalize()} tracking sync already in progress",
                "lifecycle": lifecycle.value,
                "timestamp": _utcnow().isoformat(),
            }

        started_at = _utcnow()
        try:
            result = await self._run(lifecycle, started_at)
        except SQLAlchemyError as e:
            logger.exception("%s Sync aborted, database unavailable: %s", tag, e)
            result = {
                "success": False,
                "message": f"Sync aborted: {e}",
                "lifecycle": lifecycle.value,
                "started_at": started_at.isoformat(),
                "finished_at": _utcnow().isoformat(),
            }
        finally:
            self.guard.release(lifecycle)
        self.last_results[lifecycle] = result
        return result

    async def _run(self, lifecycle: LifecycleClass, started_at: datetime) -> dict:
        tag = LOG_TAGS[lifecycle]
        db = self.session_factory()
        try:
            population = load_population(db, lifecycle)
            normalizer = StatusNormalizer.from_db(db)
        finally:
            db.close()

        total = sum(len(shipments) for shipments in population.values())
        logger.info("%s Starting sync: %s shipments across %s stores", tag, total, len(population))
        counters = SyncCounters()
        if not total:
            return self._result(lifecycle, counters, started_at, message=f"No {lifecycle.value} shipments to sync")

        fetcher = BatchFetcher(
            self.client,
            self.credentials,
            batch_size=self.batch_size,
            chunk_delay=self.chunk_delays[lifecycle],
            sleep=self._sleep,
        )
        writer = TrackingWriter()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        for store_index, (account_code, shipments) in enumerate(population.items()):
            if store_index > 0 and self.store_delay > 0:
                await self._sleep(self.store_delay)
            await self._sync_store(tag, account_code, shipments, fetcher, writer, normalizer, semaphore, counters)

        webhook_result = await self._dispatch(tag, counters.changes)
        validation = self._validate(tag)

        message = (
            f"Processed {counters.processed} shipments: {counters.success} succeeded, "
            f"{counters.errors} failed, {counters.skipped} without data, {len(counters.changes)} changed"
        )
        logger.info("%s %s", tag, message)
        return self._result(
            lifecycle, counters, started_at, message=message, webhook=webhook_result, validation=validation
        )

    async def _sync_store(
        self,
        tag: str,
        account_code: str,
        shipments: list[ShipmentSnapshot],
        fetcher: BatchFetcher,
        writer: TrackingWriter,
        normalizer: StatusNormalizer,
        semaphore: asyncio.Semaphore,
        counters: SyncCounters,
    ) -> None:
        by_awb: dict[str, list[ShipmentSnapshot]] = {}
        for shipment in shipments:
            by_awb.setdefault(shipment.awb, []).append(shipment)
        logger.info("%s Store %s: %s shipments", tag, account_code, len(shipments))

        seen = 0
        try:
            async for chunk in fetcher.iter_chunks(account_code, list(by_awb)):
                chunk_shipments = [s for awb in chunk.awbs for s in by_awb.get(awb, [])]
                seen += len(chunk_shipments)
                counters.processed += len(chunk_shipments)
                if chunk.failed:
                    counters.failed_chunks += 1
                    counters.errors += len(chunk_shipments)
                    continue
                await self._process_chunk(chunk_shipments, chunk.tracking, writer, normalizer, semaphore, counters)
        except CredentialError as e:
            logger.error("%s Skipping store %s: %s", tag, account_code, e)
            counters.failed_stores += 1
            counters.processed += len(shipments) - seen
            counters.errors += len(shipments) - seen
        except OperationalError:
            raise
        except (TrackingError, SQLAlchemyError) as e:
            logger.error("%s Store %s failed: %s", tag, account_code, e)
            counters.failed_stores += 1
            counters.processed += len(shipments) - seen
            counters.errors += len(shipments) - seen

    async def _process_chunk(
        self,
        shipments: list[ShipmentSnapshot],
        tracking: dict[str, dict],
        writer: TrackingWriter,
        normalizer: StatusNormalizer,
        semaphore: asyncio.Semaphore,
        counters: SyncCounters,
    ) -> None:
        fetched_at = _utcnow().replace(tzinfo=None)
        outcomes = await asyncio.gather(
            *(
                self._process_shipment(s, tracking.get(s.awb), writer, normalizer, semaphore, fetched_at)
                for s in shipments
            ),
            return_exceptions=True,
        )
        for shipment, outcome in zip(shipments, outcomes):
            if isinstance(outcome, OperationalError) or (
                isinstance(outcome, BaseException) and not isinstance(outcome, Exception)
            ):
                raise outcome
            if isinstance(outcome, Exception):
                logger.error("Failed to sync order %s: %s", shipment.key, outcome)
                counters.errors += 1
            elif outcome is None:
                counters.skipped += 1
            else:
                counters.success += 1
                if outcome.new_status is not None:
                    counters.changes.append(outcome)

    async def _process_shipment(
        self,
        shipment: ShipmentSnapshot,
        tracking_details: Optional[dict],
        writer: TrackingWriter,
        normalizer: StatusNormalizer,
        semaphore: asyncio.Semaphore,
        fetched_at: datetime,
    ) -> Optional[StatusChange]:
        """
        None when the carrier had nothing for this AWB. Otherwise a StatusChange,
        whose new_status is None when the status did not change.
        """
        if not tracking_details:
            return None
        events = build_tracking_events(tracking_details, normalizer, fetched_at)
        transition = detect_transition(shipment.status, events, previous_handover_at=shipment.handover_at)
        if not transition.has_update:
            return None

        async with semaphore:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None, self._commit, shipment.key, events, transition, writer, tracking_details
            )

        if transition.status_changed:
            logger.info(
                "Order %s: %s -> %s", shipment.key, transition.previous_status or "(none)", transition.new_status
            )
            return StatusChange(shipment.key, transition.new_status, transition.previous_status)
        return StatusChange(shipment.key, None, transition.previous_status)

    def _commit(self, key, events, transition, writer: TrackingWriter, tracking_details) -> None:
        db = self.session_factory()
        try:
            writer.commit(db, key, events, transition, tracking_details=tracking_details)
        finally:
            db.close()

    async def _dispatch(self, tag: str, changes: list[StatusChange]) -> dict:
        db = self.session_factory()
        try:
            result = await self.dispatcher.send_status_update(db, changes)
        finally:
            db.close()
        if changes and not result.get("success"):
            logger.warning("%s Webhook not delivered: %s", tag, result.get("message"))
        return result

    def _validate(self, tag: str) -> Optional[dict]:
        db = self.session_factory()
        try:
            validation = validate_handover_tracking(db)
            logger.info(
                "%s Validation: handover_tab=%s tracking_tab=%s divergent=%s",
                tag,
                validation["handover_tab"],
                validation["tracking_tab"],
                validation["divergent"],
            )
            return validation
        except SQLAlchemyError as e:
            logger.error("%s Validation failed: %s", tag, e)
            return None
        finally:
            db.close()

    def _result(
        self,
        lifecycle: LifecycleClass,
        counters: SyncCounters,
        started_at: datetime,
        *,
        message: str,
        webhook: Optional[dict] = None,
        validation: Optional[dict] = None,
    ) -> dict:
        return {
            "success": True,
            "message": message,
            "lifecycle": lifecycle.value,
            "processed": counters.processed,
            "success_count": counters.success,
            "error_count": counters.errors,
            "skipped_count": counters.skipped,
            "changed_count": len(counters.changes),
            "failed_chunks": counters.failed_chunks,
            "failed_stores": counters.failed_stores,
            "webhook": webhook,
            "validation": validation,
            "started_at": started_at.isoformat(),
            "finished_at": _utcnow().isoformat(),
        }

    async def sync_shipment(self, order_id: str, account_code: str) -> dict:
        """
        Sync one shipment on demand, whatever its lifecycle class. Not guarded:
        the per-shipment commit is idempotent. Sends a webhook if the status changed.
        """
        key = ShipmentKey(order_id, account_code)
        db = self.session_factory()
        try:
            shipment = get_shipment(db, key)
            if shipment is None:
                return {"success": False, "message": f"Shipment {key} not found"}
            if not (shipment.awb or "").strip():
                return {"success": False, "message": f"Shipment {key} has no AWB"}
            snapshot = ShipmentSnapshot(key, str(shipment.awb).strip(), shipment.current_shipment_status, shipment.handover_at)
            normalizer = StatusNormalizer.from_db(db)
        finally:
            db.close()

        try:
            token = self.credentials.resolve(account_code)
            tracking_details = await self.client.get_tracking(snapshot.awb, token)
        except (CredentialError, CarrierFetchError) as e:
            logger.error("Sync of %s failed: %s", key, e)
            return {"success": False, "message": str(e)}

        writer = TrackingWriter()
        change = await self._process_shipment(
            snapshot,
            tracking_details,
            writer,
            normalizer,
            asyncio.Semaphore(1),
            _utcnow().replace(tzinfo=None),
        )
        if change is None:
            return {"success": True, "message": "No tracking data", "status_changed": False, "current_status": snapshot.status}

        changed = change.new_status is not None
        webhook = await self._dispatch("[SHIPMENT_SYNC]", [change] if changed else [])
        return {
            "success": True,
            "message": "Status updated" if changed else "Status unchanged",
            "status_changed": changed,
            "previous_status": snapshot.status,
            "current_status": change.new_status if changed else snapshot.status,
            "webhook": webhook,
        }

    def get_sync_status(self) -> dict:
        status = {}
        for lifecycle in LifecycleClass:
            last = self.last_results.get(lifecycle) or {}
            state = self.guard.state(lifecycle)
            status[lifecycle.value] = {
                "state": state.value,
                "is_running": state is SyncState.RUNNING,
                "last_started_at": last.get("started_at"),
                "last_finished_at": last.get("finished_at"),
                "last_result": last or None,
            }
        return status
