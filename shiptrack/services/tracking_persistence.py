"""
Idempotent persistence of tracking history and the shipment status projection.

All writes for one shipment happen in one transaction: new events are
inserted first, the projection (status, lifecycle, handover) last. A failure
rolls back the whole shipment, so the projection never points past the
events that were actually stored. Re-running with the same data inserts
nothing and leaves the projection as it was.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shiptrack.models import Shipment, TrackingEvent, ReturnWarehouseRecord
from shiptrack.services.tracking_events import NormalizedEvent, ReturnWarehouse, resolve_return_warehouse
from shiptrack.services.transition_detector import TransitionResult, chronological

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShipmentKey:
    order_id: str
    account_code: str

    def __str__(self) -> str:
        return f"{self.order_id}|{self.account_code}"


@dataclass(frozen=True)
class CommitResult:
    inserted_events: int = 0
    projection_updated: bool = False
    handover_set: bool = False
    rto_updated: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_shipment(db: Session, key: ShipmentKey, *, for_update: bool = False) -> Optional[Shipment]:
    query = db.query(Shipment).filter(
        Shipment.order_id == key.order_id,
        Shipment.account_code == key.account_code,
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def upsert_return_warehouse(
    db: Session,
    shipment: Shipment,
    rto_status: Optional[str],
    warehouse: Optional[ReturnWarehouse],
    *,
    initial_status: Optional[str] = None,
) -> ReturnWarehouseRecord:
    """
    One record per shipment. `rto_status` of None leaves the stored status
    alone; a new record then starts at `initial_status`. The location only
    moves forward in time: a dated location older than the stored one is
    ignored, and an undated (delivered_to) location only fills an empty record.
    """
    record = db.query(ReturnWarehouseRecord).filter(ReturnWarehouseRecord.shipment_id == shipment.id).first()
    if record is None:
        record = ReturnWarehouseRecord(
            shipment_id=shipment.id,
            order_id=shipment.order_id,
            account_code=shipment.account_code,
            rto_status=rto_status or initial_status,
        )
        db.add(record)
        db.flush()
    elif rto_status is not None:
        record.rto_status = rto_status

    if warehouse is None:
        return record
    if warehouse.activity_date is None:
        if not record.rto_wh:
            record.rto_wh = warehouse.location
        return record
    if record.activity_date is None or warehouse.activity_date >= record.activity_date:
        record.rto_wh = warehouse.location
        record.activity_date = warehouse.activity_date
    else:
        logger.info(
            "[RTO] Ignoring older activity for order %s (%s < %s)",
            shipment.order_id,
            warehouse.activity_date,
            record.activity_date,
        )
    return record


class TrackingWriter:
    """
    Writes one shipment's fetched history. Events are ordered by
    (event_time, sequence), where sequence is the per-shipment write order.
    The event carrying the new status (the snapshot, when the carrier sent
    one) is always left as the latest event under that ordering, so the
    projection and the history agree.
    """

    def _row(self, shipment: Shipment, event: NormalizedEvent, sequence: int, event_time: datetime) -> TrackingEvent:
        return TrackingEvent(
            shipment_id=shipment.id,
            order_id=shipment.order_id,
            account_code=shipment.account_code,
            status=event.status,
            event_time=event_time,
            sequence=sequence,
            activity=event.activity,
            location=event.location,
        )

    def _write_events(self, db: Session, shipment: Shipment, ordered: list[NormalizedEvent]) -> list[TrackingEvent]:
        history = db.query(TrackingEvent).filter(TrackingEvent.shipment_id == shipment.id).all()
        by_key = {(row.status, row.event_time): row for row in history}
        next_sequence = max((row.sequence for row in history), default=-1) + 1
        inserted = []

        *earlier, head = ordered
        for event in earlier:
            if (event.status, event.event_time) in by_key:
                continue
            row = self._row(shipment, event, next_sequence, event.event_time)
            next_sequence += 1
            by_key[(row.status, row.event_time)] = row
            inserted.append(row)

        latest = max(history, key=lambda row: (row.event_time, row.sequence), default=None)
        # A fetch-time snapshot of an unchanged status carries no new information
        if (
            head.synthetic_time
            and head.status == shipment.current_shipment_status
            and (latest is None or latest.status == head.status)
        ):
            return inserted

        head_time = head.event_time
        if latest is not None and latest.event_time > head_time:
            head_time = latest.event_time
        row = by_key.get((head.status, head_time))
        if row is None:
            row = self._row(shipment, head, next_sequence, head_time)
            by_key[(row.status, row.event_time)] = row
            inserted.append(row)
        else:
            top = max((r.sequence for r in by_key.values() if r.event_time == head_time), default=row.sequence)
            if row.sequence < top:
                row.sequence = next_sequence
        return inserted

    def commit(
        self,
        db: Session,
        key: ShipmentKey,
        events: Iterable[NormalizedEvent],
        transition: TransitionResult,
        *,
        tracking_details: Optional[dict] = None,
    ) -> CommitResult:
        """
        Insert unseen events, then update the projection. Handover fields are
        written with a conditional UPDATE so the first recorded handover wins.
        Raises SQLAlchemyError after rolling back.
        """
        ordered = chronological(events)
        if not transition.has_update or not ordered:
            return CommitResult()
        head = ordered[-1]
        try:
            shipment = get_shipment(db, key, for_update=True)
            if shipment is None:
                logger.warning("Shipment %s not found; skipping commit", key)
                return CommitResult()

            rows = self._write_events(db, shipment, ordered)
            db.add_all(rows)
            db.flush()

            shipment.current_shipment_status = transition.new_status
            if transition.lifecycle is not None:
                shipment.lifecycle = transition.lifecycle.value
            shipment.last_synced_at = _utcnow()
            db.flush()

            handover_set = False
            if transition.handover_at is not None:
                updated = (
                    db.query(Shipment)
                    .filter(Shipment.id == shipment.id, Shipment.handover_at.is_(None))
                    .update(
                        {Shipment.is_handover: True, Shipment.handover_at: transition.handover_at},
                        synchronize_session=False,
                    )
                )
                handover_set = updated == 1

            rto_updated = False
            returns = [event for event in ordered if event.is_return]
            if returns:
                warehouse = resolve_return_warehouse(tracking_details) if tracking_details else None
                upsert_return_warehouse(
                    db,
                    shipment,
                    head.status if head.is_return else None,
                    warehouse,
                    initial_status=returns[-1].status,
                )
                rto_updated = True

            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        if handover_set:
            logger.info("Handover recorded for order %s at %s", key.order_id, transition.handover_at)
        return CommitResult(
            inserted_events=len(rows),
            projection_updated=True,
            handover_set=handover_set,
            rto_updated=rto_updated,
        )
