import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings
from app.core.exceptions import StoreConnectionError


def _fernet() -> Fernet:
    key = settings.CONNECTION_ENCRYPTION_KEY
    if not key:
        # Derive a stable 32 byte key from the JWT secret
        digest = hashlib.sha256(settings.SECRET_KEY.encode("utf-8")).digest()
        key = base64.urlsafe_b64encode(digest).decode("ascii")
    return Fernet(key)


def encode_connection_target(uri: str) -> str:
    """Encrypt a connection URI for storage."""
    return _fernet().encrypt(uri.encode("utf-8")).decode("ascii")


def decode_connection_target(token: str) -> str:
    """Decrypt a stored connection URI, raising StoreConnectionError when the key changed."""
    try:
        return _fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken:
        raise StoreConnectionError(
            "Stored connection target cannot be decoded",
            kind=StoreConnectionError.INVALID_TARGET,
        )
