"""
Turning a Shipway tracking_details payload into normalized tracking events,
and picking the latest valid activity for return-warehouse resolution.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from shiptrack.services.status_normalizer import StatusNormalizer

logger = logging.getLogger(__name__)

# Shipway sends "1970-01-01 05:30:00" (epoch in IST) when it has no real date
MIN_VALID_YEAR = 1971


@dataclass(frozen=True)
class NormalizedEvent:
    status: str
    raw_status: str
    event_time: datetime
    is_handover: bool
    activity: Optional[str] = None
    location: Optional[str] = None
    # Current-status snapshot; ordered after activities that share its time
    snapshot: bool = False
    # True when event_time is the fetch time, not a carrier-reported date
    synthetic_time: bool = False
    is_return: bool = False


@dataclass(frozen=True)
class ReturnWarehouse:
    location: str
    activity_date: Optional[datetime]


def parse_carrier_date(value: Any) -> Optional[datetime]:
    """
    Parse a carrier date ("2026-01-14 15:11:34", "2026-01-10", ISO 8601).
    Returns None for missing, blank, unparseable or placeholder (epoch) dates.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None)
    if parsed.year < MIN_VALID_YEAR:
        return None
    return parsed


def select_latest_valid_activity(activities: Optional[list]) -> Optional[dict]:
    """
    The most recent activity with a valid date.
    Invalid dates are dropped first; the rest are stable-sorted newest first,
    so among activities with the same date the earliest in carrier order wins.
    """
    dated = []
    for activity in activities or []:
        if not isinstance(activity, dict):
            continue
        when = parse_carrier_date(activity.get("date"))
        if when is not None:
            dated.append((when, activity))
    if not dated:
        return None
    dated.sort(key=lambda pair: pair[0], reverse=True)
    return dated[0][1]


def resolve_return_warehouse(tracking_details: dict) -> Optional[ReturnWarehouse]:
    """
    Location of the latest valid activity; else shipment_details[0].delivered_to;
    else None (the stored record is left unchanged).
    """
    latest = select_latest_valid_activity(tracking_details.get("shipment_track_activities"))
    if latest and (latest.get("location") or "").strip():
        return ReturnWarehouse(
            location=latest["location"].strip(),
            activity_date=parse_carrier_date(latest.get("date")),
        )
    details = tracking_details.get("shipment_details") or []
    if details and isinstance(details[0], dict):
        delivered_to = (details[0].get("delivered_to") or "").strip()
        if delivered_to:
            return ReturnWarehouse(location=delivered_to, activity_date=None)
    return None


def build_tracking_events(
    tracking_details: Optional[dict],
    normalizer: StatusNormalizer,
    fetched_at: datetime,
) -> list[NormalizedEvent]:
    """
    Events in chronological order: one per dated activity, then a snapshot of the
    current shipment_status at the latest activity date (or `fetched_at` when
    there is none). The snapshot sorts last among events with the same time.
    """
    if not tracking_details:
        return []
    events: list[NormalizedEvent] = []
    for activity in tracking_details.get("shipment_track_activities") or []:
        if not isinstance(activity, dict):
            continue
        when = parse_carrier_date(activity.get("date"))
        text = (activity.get("activity") or "").strip()
        if when is None or not text:
            continue
        # Unrecognized activity text is stored as-is but never classified
        recognized = normalizer.recognizes(text)
        events.append(
            NormalizedEvent(
                status=normalizer.normalize(text),
                raw_status=text,
                event_time=when,
                is_handover=recognized and normalizer.is_handover(text),
                activity=text,
                location=(activity.get("location") or None),
                is_return=recognized and normalizer.is_return(text),
            )
        )
    events.sort(key=lambda e: e.event_time)

    current = tracking_details.get("shipment_status")
    if current:
        current = str(current)
        snapshot_time = events[-1].event_time if events else fetched_at
        events.append(
            NormalizedEvent(
                status=normalizer.normalize(current),
                raw_status=current,
                event_time=snapshot_time,
                is_handover=normalizer.is_handover(current),
                activity=current,
                location=events[-1].location if events else None,
                snapshot=True,
                synthetic_time=not events,
                is_return=normalizer.is_return(current),
            )
        )
    return events
