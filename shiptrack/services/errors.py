"""
Exceptions raised inside the tracking engine. None of them escape a sync run:
they are caught at the chunk, store or shipment boundary and counted.
"""


class TrackingError(Exception):
    """Base class for tracking engine errors."""


class CredentialError(TrackingError):
    """Store is missing, inactive, or has no usable carrier token."""

    def __init__(self, account_code: str, reason: str):
        self.account_code = account_code
        self.reason = reason
        super().__init__(f"{reason}: {account_code}")


class CarrierFetchError(TrackingError):
    """A carrier call failed (timeout, non-2xx, malformed body)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
