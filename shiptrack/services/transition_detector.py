"""
Transition detection for one shipment: compares the stored status with a
freshly fetched, normalized event history.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from shiptrack.models import LifecycleClass
from shiptrack.services.status_normalizer import DELIVERED
from shiptrack.services.tracking_events import NormalizedEvent


@dataclass(frozen=True)
class TransitionResult:
    has_update: bool
    new_status: Optional[str]
    previous_status: Optional[str]
    status_changed: bool = False
    lifecycle: Optional[LifecycleClass] = None
    handover_at: Optional[datetime] = None
    events: tuple[NormalizedEvent, ...] = field(default_factory=tuple)


def chronological(events: Iterable[NormalizedEvent]) -> list[NormalizedEvent]:
    """Stable sort by event time; a status snapshot goes after activities with the same time."""
    return sorted(events, key=lambda e: (e.event_time, e.snapshot))


def lifecycle_for_status(status: Optional[str]) -> LifecycleClass:
    return LifecycleClass.INACTIVE if status == DELIVERED else LifecycleClass.ACTIVE


def first_handover_time(events: Iterable[NormalizedEvent]) -> Optional[datetime]:
    """Time of the earliest handover-qualifying event (events must be chronological)."""
    for event in events:
        if event.is_handover:
            return event.event_time
    return None


def detect_transition(
    previous_status: Optional[str],
    events: Optional[Iterable[NormalizedEvent]],
    *,
    previous_handover_at: Optional[datetime] = None,
) -> TransitionResult:
    """
    An empty or missing history means "no update this cycle", never a change.
    handover_at is only proposed when none is recorded yet.
    """
    ordered = chronological(events or [])
    if not ordered:
        return TransitionResult(has_update=False, new_status=previous_status, previous_status=previous_status)

    new_status = ordered[-1].status
    handover_at = None
    if previous_handover_at is None:
        handover_at = first_handover_time(ordered)

    return TransitionResult(
        has_update=True,
        new_status=new_status,
        previous_status=previous_status,
        status_changed=new_status != previous_status,
        lifecycle=lifecycle_for_status(new_status),
        handover_at=handover_at,
        events=tuple(ordered),
    )
