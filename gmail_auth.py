"""
Google OAuth2 helpers: the shared login-flow client and the per-user token refresh adapter.

These utilities rely on google-auth, google-auth-oauthlib and google-api-python-client:
    pip install google-api-python-client google-auth google-auth-oauthlib
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build

from credential_store import BaseCredentialStore, UserRecord

# Google reports granted scopes in its own order and adds ``openid``; do not treat that as an error.
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# batchDelete refuses gmail.modify; it needs the full mail scope.
LOGIN_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.labels",
    "https://mail.google.com/",
]

logger = logging.getLogger(__name__)


class GmailAuthError(RuntimeError):
    """Base class for failures that require the user to sign in again."""


class MissingRefreshToken(GmailAuthError):
    """The stored user record has no refresh token."""


class TokenRefreshFailed(GmailAuthError):
    """Google rejected the refresh token or could not be reached."""


def build_gmail_service(credentials: Credentials):
    """Create a Gmail API service client for the given user credentials."""
    return build("gmail", "v1", credentials=credentials, cache_discovery=False)


def build_userinfo_service(credentials: Credentials):
    return build("oauth2", "v2", credentials=credentials, cache_discovery=False)


class LoginFlowClient:
    """
    App-level OAuth client for the consent redirect and code exchange.

    Holds no user credentials, so a single instance is shared by every request;
    each call builds its own short-lived ``Flow``.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        scopes: Iterable[str] = LOGIN_SCOPES,
        userinfo_builder: Callable[[Credentials], Any] = build_userinfo_service,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes)
        self._userinfo_builder = userinfo_builder

    def _client_config(self) -> Dict[str, Any]:
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }

    def _flow(self, *, state: Optional[str] = None, code_verifier: Optional[str] = None) -> Flow:
        return Flow.from_client_config(
            self._client_config(),
            scopes=self.scopes,
            redirect_uri=self.redirect_uri,
            state=state,
            code_verifier=code_verifier,
        )

    def authorization_url(self) -> Tuple[str, str, Optional[str]]:
        """
        Return ``(url, state, code_verifier)`` for the consent redirect.

        ``prompt=consent`` forces Google to issue a refresh token on every login.
        """
        flow = self._flow()
        url, state = flow.authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            prompt="consent",
        )
        return url, state, flow.code_verifier

    def exchange_code(
        self,
        code: str,
        *,
        state: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> Credentials:
        flow = self._flow(state=state, code_verifier=code_verifier)
        flow.fetch_token(code=code)
        return flow.credentials

    def fetch_user_info(self, credentials: Credentials) -> Dict[str, Any]:
        return self._userinfo_builder(credentials).userinfo().get().execute()


@dataclass
class GmailHandle:
    """An authenticated Gmail service plus the credentials backing it."""

    service: Any
    credentials: Credentials
    record: UserRecord
    persisted_token: Optional[str] = field(default=None, repr=False)


class TokenRefreshAdapter:
    """
    Builds a fresh per-user Gmail client from stored tokens.

    A refreshed access token (and a rotated refresh token, when Google issues
    one) is written back to the credential store before the client is returned.
    """

    def __init__(
        self,
        store: BaseCredentialStore,
        client_id: str,
        client_secret: str,
        *,
        scopes: Iterable[str] = LOGIN_SCOPES,
        service_builder: Callable[[Credentials], Any] = build_gmail_service,
        request_factory: Callable[[], Any] = Request,
    ) -> None:
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = list(scopes)
        self._service_builder = service_builder
        self._request_factory = request_factory

    def _credentials_for(self, record: UserRecord) -> Credentials:
        # Without a known expiry google-auth would treat any cached token as valid forever.
        cached_token = record.access_token if record.token_expiry else None
        return Credentials(
            token=cached_token,
            refresh_token=record.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.scopes,
            expiry=record.token_expiry if cached_token else None,
        )

    def open_mailbox(self, record: UserRecord) -> GmailHandle:
        if not record.refresh_token:
            logger.warning("User %s has no refresh token; re-authentication required", record.id)
            raise MissingRefreshToken("User does not have a refresh token. Please re-authenticate.")

        credentials = self._credentials_for(record)
        if credentials.valid:
            logger.debug("Reusing cached access token for user %s", record.id)
        else:
            logger.info("No usable access token for user %s; refreshing", record.id)
            try:
                credentials.refresh(self._request_factory())
            except (RefreshError, TransportError) as exc:
                logger.warning("Token refresh failed for user %s: %s", record.id, exc)
                raise TokenRefreshFailed(str(exc)) from exc
            self._persist(record, credentials)

        service = self._service_builder(credentials)
        return GmailHandle(service=service, credentials=credentials, record=record, persisted_token=credentials.token)

    def persist_rotated_tokens(self, handle: GmailHandle) -> bool:
        """
        Save tokens the client library refreshed on its own during a run.

        Returns True when something was written.
        """
        if not handle.credentials.token or handle.credentials.token == handle.persisted_token:
            return False
        self._persist(handle.record, handle.credentials)
        handle.persisted_token = handle.credentials.token
        return True

    def _persist(self, record: UserRecord, credentials: Credentials) -> None:
        new_refresh = credentials.refresh_token
        rotated = new_refresh if new_refresh and new_refresh != record.refresh_token else None
        expiry: Optional[datetime] = credentials.expiry
        self.store.update_tokens(
            record.id,
            access_token=credentials.token,
            token_expiry=expiry,
            refresh_token=rotated,
        )
        record.access_token = credentials.token
        record.token_expiry = expiry
        if rotated:
            record.refresh_token = rotated
            logger.info("Stored rotated refresh token for user %s", record.id)
        logger.info("Stored refreshed access token for user %s", record.id)
