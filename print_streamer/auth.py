"""Token store and authorized credentials for the YouTube Data API."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import google.oauth2.credentials
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request

from .config import OAuthConfig
from .errors import AuthorizationError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/youtube"]
TOKEN_URI = "https://oauth2.googleapis.com/token"
TOKEN_FILE = "youtube_token.json"


class TokenStore:
    """Persists authorized-user credentials as JSON under ``directory``."""

    def __init__(self, directory: str | os.PathLike):
        self.directory = Path(directory)

    @property
    def path(self) -> Path:
        return self.directory / TOKEN_FILE

    def load(self) -> Optional[google.oauth2.credentials.Credentials]:
        if not self.path.is_file():
            return None
        try:
            return google.oauth2.credentials.Credentials.from_authorized_user_file(str(self.path), SCOPES)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable token file %s: %s", self.path, exc)
            return None

    def save(self, credentials: google.oauth2.credentials.Credentials) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = credentials.to_json()
        fd, tmp_name = tempfile.mkstemp(prefix=".youtube_token.", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.info("Saved credentials to %s", self.path)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


def _seed_credentials(oauth: OAuthConfig) -> google.oauth2.credentials.Credentials:
    return google.oauth2.credentials.Credentials(
        None,
        refresh_token=oauth.refresh_token,
        client_id=oauth.client_id,
        client_secret=oauth.client_secret,
        token_uri=TOKEN_URI,
        scopes=SCOPES,
    )


def _refresh(credentials: google.oauth2.credentials.Credentials, request: Request, retries: int = 1) -> None:
    for attempt in range(retries + 1):
        try:
            credentials.refresh(request)
            return
        except (RefreshError, TransportError) as exc:
            if attempt >= retries:
                raise AuthorizationError(f"Token refresh failed: {exc}") from exc
            logger.warning("Token refresh failed (%s); retrying once", exc)


def authorize(
    oauth: OAuthConfig, store: TokenStore, request: Optional[Request] = None
) -> google.oauth2.credentials.Credentials:
    """Return valid credentials, refreshing and persisting them as needed.

    Stored tokens win over configuration. When nothing is stored, a configured
    refresh token seeds the store so the process can bootstrap headless.
    """
    credentials = store.load()
    if credentials is None:
        if not (oauth.configured and oauth.refresh_token):
            raise AuthorizationError(
                f"No stored tokens in {store.path} and no YouTube:OAuth refresh token to bootstrap from"
            )
        logger.info("Bootstrapping credentials from configured refresh token")
        credentials = _seed_credentials(oauth)
    else:
        logger.info("Loaded stored credentials from %s", store.path)

    if not credentials.valid:
        if not credentials.refresh_token:
            raise AuthorizationError("Stored credentials are expired and carry no refresh token")
        _refresh(credentials, request or Request())
        store.save(credentials)
    return credentials


def describe(credentials: google.oauth2.credentials.Credentials) -> str:
    """Short summary safe for logs."""
    info = json.loads(credentials.to_json())
    return f"client={info.get('client_id', '?')} scopes={','.join(info.get('scopes') or [])}"
