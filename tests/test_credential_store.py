from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from conftest import utcnow
from credential_store import CredentialStoreError, InMemoryCredentialStore, MongoCredentialStore


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

def test_first_login_creates_record(store):
    record = store.upsert_from_oauth(
        google_id="g-1",
        email="a@example.com",
        display_name="A",
        access_token="at",
        token_expiry=None,
        refresh_token="rt",
    )

    assert record.id
    assert record.refresh_token == "rt"
    assert record.created_at is not None
    assert store.get_by_google_id("g-1").id == record.id


def test_repeat_login_keeps_refresh_token_when_none_issued(store):
    first = store.upsert_from_oauth(
        google_id="g-1", email="a@example.com", display_name="A", access_token="at1", token_expiry=None, refresh_token="rt1"
    )
    second = store.upsert_from_oauth(
        google_id="g-1", email="a@example.com", display_name="A", access_token="at2", token_expiry=None, refresh_token=None
    )

    assert second.id == first.id
    assert second.access_token == "at2"
    assert second.refresh_token == "rt1"


def test_update_tokens_only_replaces_refresh_token_when_given(store, user):
    expiry = utcnow() + timedelta(hours=1)
    store.update_tokens(user.id, access_token="at-x", token_expiry=expiry)
    assert store.get_by_id(user.id).refresh_token == "rt1"

    store.update_tokens(user.id, access_token="at-y", token_expiry=expiry, refresh_token="rt2")
    stored = store.get_by_id(user.id)
    assert stored.access_token == "at-y"
    assert stored.refresh_token == "rt2"


def test_update_tokens_for_unknown_user_fails(store):
    with pytest.raises(CredentialStoreError):
        store.update_tokens("nobody", access_token="at", token_expiry=None)


def test_records_returned_are_copies(store, user):
    copy = store.get_by_id(user.id)
    copy.refresh_token = None

    assert store.get_by_id(user.id).refresh_token == "rt1"


def test_public_view_has_no_secrets(user):
    view = user.public_view()

    assert view["email"] == "someone@example.com"
    assert "refresh_token" not in view and "refreshToken" not in view
    assert "access_token" not in view and "accessToken" not in view


# ---------------------------------------------------------------------------
# Mongo store
# ---------------------------------------------------------------------------

class _FakeCollection:
    def __init__(self) -> None:
        self.documents: List[Dict[str, Any]] = []
        self.indexes: List[tuple] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise PyMongoError("connection refused")

    def create_index(self, key, unique=False):
        self._check()
        self.indexes.append((key, unique))

    def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._check()
        for document in self.documents:
            if all(document.get(k) == v for k, v in query.items()):
                return dict(document)
        return None

    def find_one_and_update(self, query, update, upsert=False, return_document=None):
        self._check()
        document = next((d for d in self.documents if all(d.get(k) == v for k, v in query.items())), None)
        if document is None:
            document = {"_id": ObjectId(), **query, **update.get("$setOnInsert", {})}
            self.documents.append(document)
        document.update(update["$set"])
        return dict(document)

    def update_one(self, query, update):
        self._check()
        for document in self.documents:
            if all(document.get(k) == v for k, v in query.items()):
                document.update(update["$set"])


class _FakeDatabase(dict):
    pass


class _FakeAdmin:
    def __init__(self, client: "_FakeClient") -> None:
        self.client = client

    def command(self, name):
        if self.client.down:
            raise PyMongoError("no servers")
        return {"ok": 1}


class _FakeClient:
    def __init__(self) -> None:
        self.collection = _FakeCollection()
        self.down = False
        self.requested_db: Optional[str] = None
        self.admin = _FakeAdmin(self)

    def get_default_database(self, default=None):
        self.requested_db = default
        return _FakeDatabase(users=self.collection)

    def close(self):
        pass


@pytest.fixture
def mongo_client() -> _FakeClient:
    return _FakeClient()


@pytest.fixture
def mongo_store(mongo_client) -> MongoCredentialStore:
    return MongoCredentialStore(db_name="mailbox_cleaner", client=mongo_client)


def test_mongo_store_requires_uri_or_client():
    with pytest.raises(CredentialStoreError):
        MongoCredentialStore()


def test_mongo_indexes_are_unique(mongo_store, mongo_client):
    mongo_store.ensure_indexes()

    assert ("google_id", True) in mongo_client.collection.indexes
    assert ("email", True) in mongo_client.collection.indexes
    assert mongo_client.requested_db == "mailbox_cleaner"


def test_mongo_upsert_and_lookup(mongo_store):
    created = mongo_store.upsert_from_oauth(
        google_id="g-9", email="z@example.com", display_name="Z", access_token="at", token_expiry=None, refresh_token="rt"
    )
    again = mongo_store.upsert_from_oauth(
        google_id="g-9", email="z@example.com", display_name="Z", access_token="at2", token_expiry=None, refresh_token=None
    )

    assert again.id == created.id
    assert again.refresh_token == "rt"
    assert again.access_token == "at2"
    assert mongo_store.get_by_id(created.id).email == "z@example.com"
    assert mongo_store.get_by_google_id("g-9").id == created.id


def test_mongo_get_by_invalid_id_returns_none(mongo_store):
    assert mongo_store.get_by_id("not-an-object-id") is None


def test_mongo_update_tokens(mongo_store):
    created = mongo_store.upsert_from_oauth(
        google_id="g-9", email="z@example.com", display_name=None, access_token=None, token_expiry=None, refresh_token="rt"
    )

    mongo_store.update_tokens(created.id, access_token="fresh", token_expiry=None)

    stored = mongo_store.get_by_id(created.id)
    assert stored.access_token == "fresh"
    assert stored.refresh_token == "rt"


def test_mongo_errors_are_wrapped(mongo_store, mongo_client):
    mongo_client.collection.fail = True

    with pytest.raises(CredentialStoreError):
        mongo_store.get_by_google_id("g-9")
    with pytest.raises(CredentialStoreError):
        mongo_store.get_by_id(str(ObjectId()))


def test_mongo_ping(mongo_store, mongo_client):
    assert mongo_store.ping() is True
    mongo_client.down = True
    assert mongo_store.ping() is False
