"""
Store token encryption and the per-store Shipway credential resolver.
"""
import base64
import logging
from typing import Callable, MutableMapping, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from shiptrack.config import settings
from shiptrack.models import Store, StoreStatus
from shiptrack.services.errors import CredentialError

logger = logging.getLogger(__name__)


def get_encryption_key() -> bytes:
    """Derive the Fernet key from ENCRYPTION_KEY (padded/truncated to 32 bytes)."""
    key_bytes = settings.ENCRYPTION_KEY.encode()[:32].ljust(32, b"0")
    return base64.urlsafe_b64encode(key_bytes)


def encrypt_token(token: str) -> str:
    f = Fernet(get_encryption_key())
    return f.encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    f = Fernet(get_encryption_key())
    return f.decrypt(encrypted.encode()).decode()


class CredentialResolver:
    """
    Maps a store account_code to the Authorization header value for Shipway.

    Resolved tokens are kept in `cache` for the life of the resolver (one per
    process in production). The cache is read-mostly: two tasks resolving the
    same store concurrently both write the same value.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cache: Optional[MutableMapping[str, str]] = None,
    ):
        self._session_factory = session_factory
        self._cache: MutableMapping[str, str] = cache if cache is not None else {}

    def resolve(self, account_code: str) -> str:
        if not account_code:
            raise CredentialError(account_code, "account_code is required")
        cached = self._cache.get(account_code)
        if cached is not None:
            return cached

        db = self._session_factory()
        try:
            store = db.query(Store).filter(Store.account_code == account_code).first()
        finally:
            db.close()

        if not store:
            raise CredentialError(account_code, "Store not found")
        if (store.status or "").lower() != StoreStatus.ACTIVE.value:
            raise CredentialError(account_code, "Store is not active")
        if not store.auth_token_encrypted:
            raise CredentialError(account_code, "Store auth token not found")
        try:
            token = decrypt_token(store.auth_token_encrypted)
        except InvalidToken as e:
            raise CredentialError(account_code, "Store auth token could not be decrypted") from e

        self._cache[account_code] = token
        return token

    def invalidate(self, account_code: str) -> None:
        self._cache.pop(account_code, None)

    def __contains__(self, account_code: str) -> bool:
        return account_code in self._cache
