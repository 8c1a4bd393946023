"""
Maintenance over persisted tracking data: the post-sync consistency check,
retention cleanup and the handover backfill from stored history.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shiptrack.config import settings
from shiptrack.models import Shipment, TrackingEvent, LifecycleClass
from shiptrack.services.status_normalizer import StatusNormalizer

logger = logging.getLogger(__name__)


def validate_handover_tracking(db: Session) -> dict:
    """
    Cross-table consistency counts. Informational: callers log the result.
    - handover_tab: active shipments not yet handed over
    - tracking_tab: active shipments already handed over
    - divergent: shipments whose stored status differs from their latest event
    """
    active = db.query(Shipment).filter(Shipment.lifecycle == LifecycleClass.ACTIVE.value)
    handover_tab = active.filter(Shipment.is_handover.is_(False)).count()
    tracking_tab = active.filter(Shipment.is_handover.is_(True)).count()

    latest_status = (
        select(TrackingEvent.status)
        .where(TrackingEvent.shipment_id == Shipment.id)
        .order_by(TrackingEvent.event_time.desc(), TrackingEvent.sequence.desc())
        .limit(1)
        .correlate(Shipment)
        .scalar_subquery()
    )
    divergent = (
        db.query(func.count(Shipment.id))
        .filter(latest_status.isnot(None))
        .filter(Shipment.current_shipment_status != latest_status)
        .scalar()
    ) or 0
    if divergent:
        logger.warning("[VALIDATION] %s shipment(s) have a status that differs from their latest event", divergent)
    return {"handover_tab": handover_tab, "tracking_tab": tracking_tab, "divergent": divergent}


def cleanup_old_tracking_events(db: Session, retention_days: int | None = None) -> dict:
    """Delete events older than the retention window. Shipment projections are not touched."""
    days = retention_days if retention_days is not None else settings.TRACKING_RETENTION_DAYS
    cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days)
    try:
        deleted = (
            db.query(TrackingEvent)
            .filter(TrackingEvent.event_time < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[CLEANUP] Failed: %s", e)
        return {"success": False, "message": str(e), "timestamp": datetime.now(timezone.utc).isoformat()}
    logger.info("[CLEANUP] Removed %s tracking events older than %s days", deleted, days)
    return {
        "success": True,
        "message": "Cleanup completed",
        "deleted_count": deleted,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _is_handover_event(normalizer: StatusNormalizer, event: TrackingEvent) -> bool:
    text = event.activity or event.status
    return normalizer.recognizes(text) and normalizer.is_handover(text)


def backfill_handover_from_history(db: Session, normalizer: StatusNormalizer, *, dry_run: bool = False) -> dict:
    """
    For shipments not marked handed over but with stored events, set handover
    from the first qualifying event. Uses the same first-write-wins update as
    the sync, so a handover recorded meanwhile is never replaced.
    """
    candidates = (
        db.query(Shipment)
        .filter(Shipment.is_handover.is_(False))
        .filter(Shipment.events.any())
        .all()
    )
    fixed = 0
    skipped = 0
    for shipment in candidates:
        events = (
            db.query(TrackingEvent)
            .filter(TrackingEvent.shipment_id == shipment.id)
            .order_by(TrackingEvent.event_time.asc(), TrackingEvent.sequence.asc())
            .all()
        )
        # Stored events keep the carrier's raw text in `activity`; free text is never a handover
        first = next((e for e in events if _is_handover_event(normalizer, e)), None)
        if first is None:
            skipped += 1
            continue
        logger.info(
            "[BACKFILL] %s order %s (%s): handover event %r at %s",
            "Would fix" if dry_run else "Fixing",
            shipment.order_id,
            shipment.account_code,
            first.activity or first.status,
            first.event_time,
        )
        if not dry_run:
            db.query(Shipment).filter(Shipment.id == shipment.id, Shipment.handover_at.is_(None)).update(
                {Shipment.is_handover: True, Shipment.handover_at: first.event_time},
                synchronize_session=False,
            )
        fixed += 1
    if not dry_run:
        db.commit()
    return {"candidates": len(candidates), "fixed": fixed, "skipped": skipped, "dry_run": dry_run}
