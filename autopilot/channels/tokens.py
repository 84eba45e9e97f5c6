"""
Access-token provider for channel connections.

Reads the encrypted credentials stored on a connection and returns a
usable access token, refreshing it first when it is about to expire:

- Outlook: MSAL ConfidentialClientApplication.acquire_token_by_refresh_token
- Gmail:   POST to Google's OAuth token endpoint with grant_type=refresh_token

The refreshed token is written back to the connection. Two workers
refreshing the same connection at once is harmless: both tokens are valid
and the last write wins.

Usage:
    tokens = TokenProvider(sessions, settings.credential_encryption_key)
    token = tokens.get_access_token(connection_id)
"""

import logging
import time
from typing import Optional

import httpx
from msal import ConfidentialClientApplication
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from autopilot.channels.credentials import (
    ChannelCredentials,
    decrypt_credentials,
    encrypt_credentials,
)
from autopilot.config import settings
from autopilot.db.models import ChannelConnection, utcnow
from autopilot.errors import ChannelError, NotFound
from autopilot.logging.audit import audit

logger = logging.getLogger(__name__)


class TokenProvider:
    """Hands out fresh access tokens for stored channel connections."""

    def __init__(
        self,
        sessions: sessionmaker,
        encryption_secret: str,
        msal_app: Optional[ConfidentialClientApplication] = None,
        http: Optional[httpx.Client] = None,
    ):
        self._sessions = sessions
        self._secret = encryption_secret
        self._msal_app = msal_app
        self._http = http or httpx.Client(timeout=30.0)

    def close(self):
        self._http.close()

    def get_access_token(self, connection_id: str) -> str:
        """
        Return a valid access token for the connection.

        Raises:
            NotFound: Connection does not exist.
            ChannelError: No usable credentials, or the refresh was rejected.
        """
        with self._sessions() as db:
            connection = db.get(ChannelConnection, connection_id)
            if connection is None:
                raise NotFound("connection", connection_id)
            provider = connection.provider
            blob = connection.credentials

        creds = decrypt_credentials(blob, self._secret)
        if creds is None:
            raise ChannelError(f"No usable credentials for connection {connection_id}")

        if not creds.is_expired:
            return creds.access_token

        if not creds.refresh_token:
            logger.warning(
                "tokens.expired_no_refresh_token",
                extra={
                    "action": "tokens.expired_no_refresh_token",
                    "connection_id": connection_id,
                },
            )
            return creds.access_token

        if provider == "outlook":
            result = self._refresh_outlook(creds.refresh_token)
        elif provider == "gmail":
            result = self._refresh_gmail(creds.refresh_token)
        else:
            raise ChannelError(f"Unsupported provider: {provider}")

        refreshed = ChannelCredentials(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token") or creds.refresh_token,
            expires_at=time.time() + int(result.get("expires_in", 3600)),
        )
        self._store(connection_id, refreshed)

        audit.info(
            "tokens.refreshed",
            connection_id=connection_id,
            provider=provider,
            has_new_refresh_token="refresh_token" in result,
        )
        return refreshed.access_token

    # =========================================================================
    # PROVIDER REFRESH
    # =========================================================================

    def _get_msal_app(self) -> ConfidentialClientApplication:
        if self._msal_app is None:
            self._msal_app = ConfidentialClientApplication(
                client_id=settings.azure_client_id,
                client_credential=settings.azure_client_secret,
                authority=f"https://login.microsoftonline.com/{settings.azure_tenant_id}",
            )
        return self._msal_app

    def _refresh_outlook(self, refresh_token: str) -> dict:
        result = self._get_msal_app().acquire_token_by_refresh_token(
            refresh_token=refresh_token,
            scopes=settings.graph_scopes,
        )
        if "access_token" not in result:
            error = result.get("error_description", result.get("error", "Unknown error"))
            logger.warning(
                "tokens.refresh_failed",
                extra={"action": "tokens.refresh_failed", "provider": "outlook", "error": error},
            )
            raise ChannelError(f"Outlook token refresh failed: {error}")
        return result

    def _refresh_gmail(self, refresh_token: str) -> dict:
        try:
            resp = self._http.post(
                settings.google_token_url,
                data={
                    "client_id": settings.google_client_id,
                    "client_secret": settings.google_client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
            resp.raise_for_status()
            result = resp.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "tokens.refresh_failed",
                extra={
                    "action": "tokens.refresh_failed",
                    "provider": "gmail",
                    "status_code": e.response.status_code,
                },
            )
            raise ChannelError("Gmail token refresh failed", status_code=e.response.status_code)
        except httpx.HTTPError as e:
            logger.warning(
                "tokens.refresh_failed",
                extra={"action": "tokens.refresh_failed", "provider": "gmail", "error": str(e)},
            )
            raise ChannelError(f"Gmail token refresh failed: {e}")

        if "access_token" not in result:
            raise ChannelError("Gmail token refresh returned no access token")
        return result

    def _store(self, connection_id: str, creds: ChannelCredentials) -> None:
        with self._sessions.begin() as db:
            db.execute(
                update(ChannelConnection)
                .where(ChannelConnection.id == connection_id)
                .values(
                    credentials=encrypt_credentials(creds, self._secret),
                    status="active",
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
