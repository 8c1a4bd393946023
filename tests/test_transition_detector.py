"""
Transition Detector Tests
"""
import random
from datetime import datetime, timedelta

from shiptrack.models import LifecycleClass
from shiptrack.services.tracking_events import NormalizedEvent
from shiptrack.services.transition_detector import detect_transition


BASE = datetime(2026, 1, 10, 8, 0, 0)


def _event(status, hours, is_handover=False, snapshot=False):
    return NormalizedEvent(
        status=status,
        raw_status=status,
        event_time=BASE + timedelta(hours=hours),
        is_handover=is_handover,
        snapshot=snapshot,
    )


class TestDetectTransition:
    def test_empty_history_is_no_update(self):
        for events in (None, []):
            result = detect_transition("In Transit", events)
            assert result.has_update is False
            assert result.status_changed is False
            assert result.new_status == "In Transit"

    def test_new_status_is_last_event(self):
        events = [_event("Delivered", 5), _event("In Transit", 1), _event("Out for Delivery", 3)]
        result = detect_transition("In Transit", events)
        assert result.new_status == "Delivered"
        assert result.status_changed is True
        assert result.lifecycle == LifecycleClass.INACTIVE

    def test_unchanged_status(self):
        result = detect_transition("In Transit", [_event("In Transit", 1)])
        assert result.has_update is True
        assert result.status_changed is False
        assert result.lifecycle == LifecycleClass.ACTIVE

    def test_only_exact_delivered_is_inactive(self):
        assert detect_transition(None, [_event("RTO Delivered", 1)]).lifecycle == LifecycleClass.ACTIVE

    def test_snapshot_sorts_after_activity_with_same_time(self):
        events = [_event("Delivered", 2, snapshot=True), _event("Out for Delivery", 2)]
        assert detect_transition(None, events).new_status == "Delivered"

    def test_handover_is_earliest_qualifying_event_regardless_of_order(self):
        """Exactly one qualifying event: its time is reported for any input order"""
        events = [
            _event("Shipment Booked", 0),
            _event("In Transit", 4, is_handover=True),
            _event("Pickup Failed", 2),
            _event("Delivered", 9),
        ]
        for _ in range(5):
            random.shuffle(events)
            result = detect_transition(None, events)
            assert result.handover_at == BASE + timedelta(hours=4)

    def test_recorded_handover_is_never_proposed_again(self):
        events = [_event("Picked Up", 1, is_handover=True), _event("In Transit", 3, is_handover=True)]
        result = detect_transition("In Transit", events, previous_handover_at=BASE + timedelta(hours=3))
        assert result.handover_at is None
