from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httplib2
import pytest
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

from credential_store import InMemoryCredentialStore, UserRecord
from gmail_auth import TokenRefreshAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def http_error(status: int, message: str = "upstream failure") -> HttpError:
    resp = httplib2.Response({"status": status})
    content = json.dumps({"error": {"code": status, "message": message}}).encode("utf-8")
    return HttpError(resp, content, uri="https://gmail.googleapis.com/gmail/v1/users/me/messages")


class _FakeRequest:
    def __init__(self, fn: Callable[[], Any]) -> None:
        self._fn = fn

    def execute(self) -> Any:
        return self._fn()


class FakeMessages:
    """Mimics ``service.users().messages()`` over an in-memory mailbox."""

    def __init__(self, mailbox: "FakeGmailService") -> None:
        self.mailbox = mailbox

    def list(self, userId: str, maxResults: int, pageToken: Optional[str] = None) -> _FakeRequest:
        return _FakeRequest(lambda: self.mailbox._list(userId, maxResults, pageToken))

    def batchDelete(self, userId: str, body: Dict[str, Any]) -> _FakeRequest:
        return _FakeRequest(lambda: self.mailbox._batch_delete(userId, list(body["ids"])))


class FakeGmailService:
    def __init__(self, message_ids: Optional[List[str]] = None) -> None:
        self.message_ids: List[str] = list(message_ids or [])
        self.trashed: List[str] = []
        self.list_calls: List[Dict[str, Any]] = []
        self.batch_calls: List[List[str]] = []
        self.list_errors: Dict[int, BaseException] = {}
        self.batch_errors: Dict[int, BaseException] = {}
        self.on_list: Optional[Callable[[], None]] = None

    def users(self) -> "FakeGmailService":
        return self

    def messages(self) -> FakeMessages:
        return FakeMessages(self)

    def _list(self, user_id: str, max_results: int, page_token: Optional[str]) -> Dict[str, Any]:
        call_index = len(self.list_calls)
        self.list_calls.append({"userId": user_id, "maxResults": max_results, "pageToken": page_token})
        if self.on_list:
            self.on_list()
        if call_index in self.list_errors:
            raise self.list_errors[call_index]
        start = int(page_token) if page_token else 0
        page = self.message_ids[start : start + max_results]
        response: Dict[str, Any] = {"resultSizeEstimate": len(self.message_ids)}
        if page:
            response["messages"] = [{"id": mid, "threadId": f"t-{mid}"} for mid in page]
        if start + max_results < len(self.message_ids):
            response["nextPageToken"] = str(start + max_results)
        return response

    def _batch_delete(self, user_id: str, ids: List[str]) -> None:
        call_index = len(self.batch_calls)
        self.batch_calls.append(ids)
        if call_index in self.batch_errors:
            raise self.batch_errors[call_index]
        self.trashed.extend(ids)
        remaining = set(ids)
        self.message_ids = [mid for mid in self.message_ids if mid not in remaining]
        return None


def make_ids(count: int) -> List[str]:
    return [f"m{i}" for i in range(1, count + 1)]


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def user(store: InMemoryCredentialStore) -> UserRecord:
    return store.upsert_from_oauth(
        google_id="g-123",
        email="someone@example.com",
        display_name="Some One",
        access_token=None,
        token_expiry=None,
        refresh_token="rt1",
    )


@pytest.fixture
def refresh_calls(monkeypatch) -> List[str]:
    """Replace the network refresh with one that issues ``at-<n>`` tokens."""
    calls: List[str] = []

    def fake_refresh(self, request) -> None:
        calls.append(self.refresh_token)
        self.token = f"at-{len(calls)}"
        self.expiry = utcnow() + timedelta(hours=1)

    monkeypatch.setattr(Credentials, "refresh", fake_refresh)
    return calls


@pytest.fixture
def gmail() -> FakeGmailService:
    return FakeGmailService()


@pytest.fixture
def built_services() -> List[Credentials]:
    return []


@pytest.fixture
def adapter(store, gmail, built_services, refresh_calls) -> TokenRefreshAdapter:
    def builder(credentials: Credentials) -> FakeGmailService:
        built_services.append(credentials)
        return gmail

    return TokenRefreshAdapter(
        store,
        "client-id",
        "client-secret",
        service_builder=builder,
        request_factory=lambda: object(),
    )
