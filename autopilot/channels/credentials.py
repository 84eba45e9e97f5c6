"""
Encrypted storage for channel credentials.

OAuth tokens for each connected mailbox are kept in
channel_connections.credentials as a Fernet-encrypted JSON blob. The key is
derived from settings.credential_encryption_key, so rotating that secret
invalidates every stored credential (users reconnect their mailboxes).

Usage:
    from autopilot.channels.credentials import ChannelCredentials, encrypt_credentials

    creds = ChannelCredentials(access_token="...", refresh_token="...", expires_at=...)
    connection.credentials = encrypt_credentials(creds, secret)
"""

import base64
import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


@dataclass
class ChannelCredentials:
    """OAuth tokens for one mailbox."""
    access_token: str
    refresh_token: str = ""
    expires_at: float = 0.0  # UTC timestamp

    @property
    def is_expired(self) -> bool:
        """Check if the access token has expired (with 5-min buffer)."""
        return time.time() >= (self.expires_at - 300)


def _get_fernet(secret: str) -> Fernet:
    """Create a Fernet instance from an arbitrary-length secret."""
    key_bytes = hashlib.sha256(secret.encode()).digest()
    key_b64 = base64.urlsafe_b64encode(key_bytes)
    return Fernet(key_b64)


def encrypt_credentials(creds: ChannelCredentials, secret: str) -> str:
    """Serialize and encrypt credentials for storage."""
    payload = json.dumps(asdict(creds)).encode()
    return _get_fernet(secret).encrypt(payload).decode()


def decrypt_credentials(blob: Optional[str], secret: str) -> Optional[ChannelCredentials]:
    """
    Decrypt stored credentials.

    Returns None if the blob is empty, was encrypted with a different key,
    or does not contain an access token.
    """
    if not blob:
        return None
    try:
        payload = _get_fernet(secret).decrypt(blob.encode())
        data = json.loads(payload)
    except (InvalidToken, ValueError) as e:
        logger.warning(
            "credentials.decode_failed",
            extra={"action": "credentials.decode_failed", "error_type": type(e).__name__},
        )
        return None

    if not data.get("access_token"):
        return None
    return ChannelCredentials(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token", ""),
        expires_at=float(data.get("expires_at", 0.0)),
    )
