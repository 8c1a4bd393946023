"""
Shipway status normalization.

Raw carrier statuses are looked up in the shipment_status_mappings table
first. Unmapped statuses go through a fixed, ordered list of rules; the first
rule that matches wins. The fallback is pure and total: anything no rule
matches is returned unchanged.

Pass-through text is free-form carrier prose ("Received 2 cartons at hub"),
so callers check `recognizes` before asking the handover and RTO
predicates about an activity.
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from shiptrack.models import StatusMapping

logger = logging.getLogger(__name__)

UNKNOWN_STATUS = "Unknown"
DELIVERED = "Delivered"
IN_TRANSIT = "In Transit"
PICKUP_FAILED = "Pickup Failed"

# Exact phrases (after clean-up) → canonical form
FALLBACK_STATUSES = {
    "out for delivery": "Out for Delivery",
    "rto": "RTO",
    "rto initiated": "RTO Initiated",
    "rto in transit": "RTO In Transit",
    "rto delivered": "RTO Delivered",
    "rto out for delivery": "RTO Out for Delivery",
    "rto failed": "RTO Failed",
    "rtd": "RTO Delivered",
    "cancelled": "Cancelled",
    "returned": "Returned",
    "failed delivery": "Failed Delivery",
    "attempted delivery": "Attempted Delivery",
    "shipment booked": "Shipment Booked",
    "dispatched": "Dispatched",
    "in warehouse": "In Warehouse",
}

# Not yet in carrier custody; checked before HANDOVER_PATTERNS
NON_HANDOVER_PATTERNS = (
    "awb assigned",
    "shipment booked",
    "pickup failed",
    "out for pickup",
    "shpfr3",
)

HANDOVER_PATTERNS = (
    "in transit",
    "picked",
    "dispatched",
    "warehouse",
    "out for delivery",
    "delivered",
    "undelivered",
    "failed delivery",
    "attempted",
    "cancelled",
    "returned",
)

RTO_TOKEN = re.compile(r"\brto\b")


def clean_status(raw_status: str) -> str:
    """Lower-case, trim, underscores to spaces."""
    return raw_status.strip().lower().replace("_", " ")


@dataclass(frozen=True)
class NormalizationRule:
    name: str
    matches: Callable[[str], bool]
    result: Callable[[str], str]


NORMALIZATION_RULES: tuple[NormalizationRule, ...] = (
    NormalizationRule(
        "pickup_failed",
        lambda s: "pickup failed" in s or "failed pickup" in s,
        lambda s: PICKUP_FAILED,
    ),
    NormalizationRule(
        "picked_up",
        lambda s: "picked" in s or ("pickup" in s and "failed" not in s) or s == "in transit",
        lambda s: IN_TRANSIT,
    ),
    NormalizationRule(
        "delivered",
        lambda s: s == "delivered",
        lambda s: DELIVERED,
    ),
    NormalizationRule(
        "known_phrase",
        lambda s: s in FALLBACK_STATUSES,
        lambda s: FALLBACK_STATUSES[s],
    ),
)


def fallback_normalize(raw_status: str) -> Optional[str]:
    """Apply NORMALIZATION_RULES in order. Returns None when no rule matches."""
    cleaned = clean_status(raw_status)
    for rule in NORMALIZATION_RULES:
        if rule.matches(cleaned):
            return rule.result(cleaned)
    return None


def fallback_is_handover(raw_status: str) -> bool:
    cleaned = clean_status(raw_status)
    if any(pattern in cleaned for pattern in NON_HANDOVER_PATTERNS):
        return False
    return any(pattern in cleaned for pattern in HANDOVER_PATTERNS) or bool(RTO_TOKEN.search(cleaned))


def fallback_is_rto(status: str) -> bool:
    cleaned = clean_status(status)
    return bool(RTO_TOKEN.search(cleaned)) or cleaned == "rtd"


@dataclass(frozen=True)
class MappingEntry:
    renamed: str
    is_handover: bool
    is_return: Optional[bool] = None


class StatusNormalizer:
    """
    Canonical status lookup over a snapshot of the mapping table.

    Build one per sync run with `from_db`; after construction it does no I/O,
    so it is safe to share across the concurrent shipment tasks of a run.
    """

    def __init__(self, mappings: Optional[Mapping[str, MappingEntry]] = None):
        self._mappings = dict(mappings or {})
        self._reported_unmapped: set[str] = set()

    @classmethod
    def from_db(cls, db: Session) -> "StatusNormalizer":
        rows = db.query(StatusMapping).all()
        return cls(
            {
                row.raw_status: MappingEntry(
                    renamed=row.renamed,
                    is_handover=bool(row.is_handover),
                    is_return=row.is_return,
                )
                for row in rows
                if row.raw_status
            }
        )

    def lookup(self, raw_status: Optional[str]) -> Optional[MappingEntry]:
        if not raw_status or not isinstance(raw_status, str):
            return None
        return self._mappings.get(raw_status) or self._mappings.get(raw_status.strip())

    def normalize(self, raw_status: Optional[str]) -> str:
        if not raw_status or not isinstance(raw_status, str):
            return raw_status or UNKNOWN_STATUS
        entry = self.lookup(raw_status)
        if entry:
            return entry.renamed
        canonical = fallback_normalize(raw_status)
        if canonical is None:
            self._report_unmapped(raw_status)
            return raw_status
        return canonical

    def is_handover(self, raw_status: Optional[str]) -> bool:
        if not raw_status or not isinstance(raw_status, str):
            return False
        entry = self.lookup(raw_status)
        if entry:
            return entry.is_handover
        return fallback_is_handover(raw_status)

    def is_rto(self, status: Optional[str]) -> bool:
        if not status or not isinstance(status, str):
            return False
        entry = self.lookup(status)
        if entry and entry.is_return is not None:
            return entry.is_return
        return fallback_is_rto(status)

    def recognizes(self, raw_status: Optional[str]) -> bool:
        """True when a mapping row or a fallback rule covers the status."""
        if not raw_status or not isinstance(raw_status, str):
            return False
        return self.lookup(raw_status) is not None or fallback_normalize(raw_status) is not None

    def is_return(self, raw_status: Optional[str]) -> bool:
        """RTO check for a raw carrier status: the mapping's is_return, else its canonical form."""
        entry = self.lookup(raw_status)
        if entry and entry.is_return is not None:
            return entry.is_return
        return self.is_rto(self.normalize(raw_status))

    def _report_unmapped(self, raw_status: str) -> None:
        if raw_status in self._reported_unmapped:
            return
        self._reported_unmapped.add(raw_status)
        logger.info("[UNMAPPED_STATUS] No mapping or rule for carrier status %r; passing through", raw_status)
