"""
Key-value configuration store (utility_settings table). Values are edited by
operators at runtime, so they are read on every use rather than cached.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from shiptrack.models import UtilitySetting

logger = logging.getLogger(__name__)


def get_utility_value(db: Session, key: str) -> Optional[str]:
    """Return the stripped value for `key`, or None when missing or blank."""
    row = db.query(UtilitySetting).filter(UtilitySetting.key == key).first()
    if not row or row.value is None:
        return None
    value = row.value.strip()
    return value or None


def get_utility_int(db: Session, key: str, default: int) -> int:
    raw = get_utility_value(db, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Utility setting %s=%r is not an integer, using %s", key, raw, default)
        return default


def set_utility_value(db: Session, key: str, value: Optional[str]) -> UtilitySetting:
    row = db.query(UtilitySetting).filter(UtilitySetting.key == key).first()
    if row:
        row.value = value
    else:
        row = UtilitySetting(key=key, value=value)
        db.add(row)
    db.commit()
    return row
