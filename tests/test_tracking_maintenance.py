"""
Maintenance tests: validation counts, retention cleanup, handover backfill
"""
from datetime import datetime, timedelta, timezone

from shiptrack.models import Shipment, TrackingEvent, LifecycleClass
from shiptrack.services.status_normalizer import StatusNormalizer
from shiptrack.services.tracking_maintenance import (
    backfill_handover_from_history, cleanup_old_tracking_events, validate_handover_tracking,
)


def _add_event(db, shipment, status, when, activity=None, sequence=0):
    db.add(TrackingEvent(
        shipment_id=shipment.id,
        order_id=shipment.order_id,
        account_code=shipment.account_code,
        status=status,
        event_time=when,
        sequence=sequence,
        activity=activity or status,
    ))
    db.commit()


class TestValidateHandoverTracking:
    def test_counts(self, db_session, make_shipment):
        a = make_shipment(order_id="A", status="In Transit", is_handover=True)
        make_shipment(order_id="B", status="Shipment Booked")
        make_shipment(order_id="C", status="Delivered", lifecycle=LifecycleClass.INACTIVE.value, is_handover=True)
        _add_event(db_session, a, "Out for Delivery", datetime(2026, 1, 12))

        result = validate_handover_tracking(db_session)

        assert result == {"handover_tab": 1, "tracking_tab": 1, "divergent": 1}


class TestCleanupOldTrackingEvents:
    def test_removes_only_old_events(self, db_session, make_shipment):
        shipment = make_shipment(status="In Transit")
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        _add_event(db_session, shipment, "Shipment Booked", now - timedelta(days=120))
        _add_event(db_session, shipment, "In Transit", now - timedelta(days=2))

        result = cleanup_old_tracking_events(db_session, retention_days=90)

        assert result["success"] is True
        assert result["deleted_count"] == 1
        assert db_session.query(TrackingEvent).count() == 1
        assert db_session.query(Shipment).one().current_shipment_status == "In Transit"


class TestBackfillHandover:
    def test_sets_first_qualifying_event(self, db_session, make_shipment):
        shipment = make_shipment(status="In Transit")
        _add_event(db_session, shipment, "Shipment Booked", datetime(2026, 1, 9))
        _add_event(db_session, shipment, "In Transit", datetime(2026, 1, 10), activity="Picked Up")
        _add_event(db_session, shipment, "In Transit", datetime(2026, 1, 11), activity="In Transit")
        make_shipment(order_id="NOHANDOVER", awb="AWB2")
        other = db_session.query(Shipment).filter(Shipment.order_id == "NOHANDOVER").one()
        _add_event(db_session, other, "Shipment Booked", datetime(2026, 1, 9))

        result = backfill_handover_from_history(db_session, StatusNormalizer())
        db_session.expire_all()

        assert result == {"candidates": 2, "fixed": 1, "skipped": 1, "dry_run": False}
        fixed = db_session.query(Shipment).filter(Shipment.order_id == "ORD1").one()
        assert fixed.is_handover is True
        assert fixed.handover_at == datetime(2026, 1, 10)

    def test_dry_run_changes_nothing(self, db_session, make_shipment):
        shipment = make_shipment()
        _add_event(db_session, shipment, "In Transit", datetime(2026, 1, 10))

        result = backfill_handover_from_history(db_session, StatusNormalizer(), dry_run=True)
        db_session.expire_all()

        assert result["fixed"] == 1
        assert db_session.query(Shipment).one().is_handover is False

    def test_unrecognized_activity_text_is_not_a_handover(self, db_session, make_shipment):
        shipment = make_shipment(status="Shipment Booked")
        _add_event(db_session, shipment, "Manifest received at origin warehouse", datetime(2026, 1, 9))

        result = backfill_handover_from_history(db_session, StatusNormalizer())
        db_session.expire_all()

        assert result["fixed"] == 0
        assert result["skipped"] == 1
        assert db_session.query(Shipment).one().handover_at is None
