from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import TYPE_CHECKING, Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

if TYPE_CHECKING:
    from settings import Settings  # pragma: no cover


USERS_COLLECTION = "users"


class CredentialStoreError(RuntimeError):
    """Raised when the backing document store fails."""


def _utcnow() -> datetime:
    # Naive UTC, matching what google-auth expects for Credentials.expiry.
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class UserRecord:
    id: str
    google_id: str
    email: str
    display_name: Optional[str] = None
    access_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    refresh_token: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def public_view(self) -> Dict[str, Any]:
        """Projection safe to hand to the browser: no tokens."""
        return {
            "id": self.id,
            "googleId": self.google_id,
            "email": self.email,
            "displayName": self.display_name,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class BaseCredentialStore:
    def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        raise NotImplementedError

    def get_by_google_id(self, google_id: str) -> Optional[UserRecord]:
        raise NotImplementedError

    def upsert_from_oauth(
        self,
        *,
        google_id: str,
        email: str,
        display_name: Optional[str],
        access_token: Optional[str],
        token_expiry: Optional[datetime],
        refresh_token: Optional[str],
    ) -> UserRecord:
        """
        Create the record on first login, otherwise refresh its tokens.

        The stored refresh token is only replaced when Google issues a new one.
        """
        raise NotImplementedError

    def update_tokens(
        self,
        user_id: str,
        *,
        access_token: Optional[str],
        token_expiry: Optional[datetime],
        refresh_token: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None


class MongoCredentialStore(BaseCredentialStore):
    """
    User + OAuth token storage backed by a MongoDB ``users`` collection.
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        db_name: Optional[str] = None,
        *,
        client: Optional[MongoClient] = None,
    ) -> None:
        if client is None and not uri:
            raise CredentialStoreError("MongoDB URI must be configured.")
        self.client = client or MongoClient(uri)
        database = self.client.get_default_database(default=db_name)
        self.collection = database[USERS_COLLECTION]

    def ensure_indexes(self) -> None:
        try:
            self.collection.create_index("google_id", unique=True)
            self.collection.create_index("email", unique=True)
        except PyMongoError as exc:
            raise CredentialStoreError(f"Failed to create user indexes: {exc}") from exc

    @staticmethod
    def _to_record(document: Dict[str, Any]) -> UserRecord:
        return UserRecord(
            id=str(document["_id"]),
            google_id=document["google_id"],
            email=document["email"],
            display_name=document.get("display_name"),
            access_token=document.get("access_token"),
            token_expiry=document.get("token_expiry"),
            refresh_token=document.get("refresh_token"),
            created_at=document.get("created_at"),
            updated_at=document.get("updated_at"),
        )

    def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        try:
            object_id = ObjectId(user_id)
        except (InvalidId, TypeError):
            return None
        try:
            document = self.collection.find_one({"_id": object_id})
        except PyMongoError as exc:
            raise CredentialStoreError(f"Failed to load user {user_id}: {exc}") from exc
        return self._to_record(document) if document else None

    def get_by_google_id(self, google_id: str) -> Optional[UserRecord]:
        try:
            document = self.collection.find_one({"google_id": google_id})
        except PyMongoError as exc:
            raise CredentialStoreError(f"Failed to look up Google account {google_id}: {exc}") from exc
        return self._to_record(document) if document else None

    def upsert_from_oauth(
        self,
        *,
        google_id: str,
        email: str,
        display_name: Optional[str],
        access_token: Optional[str],
        token_expiry: Optional[datetime],
        refresh_token: Optional[str],
    ) -> UserRecord:
        now = _utcnow()
        fields: Dict[str, Any] = {
            "email": email,
            "display_name": display_name,
            "access_token": access_token,
            "token_expiry": token_expiry,
            "updated_at": now,
        }
        if refresh_token:
            fields["refresh_token"] = refresh_token
        try:
            document = self.collection.find_one_and_update(
                {"google_id": google_id},
                {"$set": fields, "$setOnInsert": {"created_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise CredentialStoreError(f"Failed to save Google account {google_id}: {exc}") from exc
        return self._to_record(document)

    def update_tokens(
        self,
        user_id: str,
        *,
        access_token: Optional[str],
        token_expiry: Optional[datetime],
        refresh_token: Optional[str] = None,
    ) -> None:
        fields: Dict[str, Any] = {
            "access_token": access_token,
            "token_expiry": token_expiry,
            "updated_at": _utcnow(),
        }
        if refresh_token:
            fields["refresh_token"] = refresh_token
        try:
            self.collection.update_one({"_id": ObjectId(user_id)}, {"$set": fields})
        except (InvalidId, TypeError) as exc:
            raise CredentialStoreError(f"Invalid user id {user_id!r}.") from exc
        except PyMongoError as exc:
            raise CredentialStoreError(f"Failed to update tokens for user {user_id}: {exc}") from exc

    def ping(self) -> bool:
        try:
            self.client.admin.command("ping")
        except PyMongoError:
            return False
        return True

    def close(self) -> None:
        self.client.close()


class InMemoryCredentialStore(BaseCredentialStore):
    """
    Process-local store for tests and local runs without MongoDB.
    """

    def __init__(self) -> None:
        self.users: Dict[str, UserRecord] = {}
        self._lock = Lock()

    def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        record = self.users.get(user_id)
        return replace(record) if record else None

    def get_by_google_id(self, google_id: str) -> Optional[UserRecord]:
        for record in self.users.values():
            if record.google_id == google_id:
                return replace(record)
        return None

    def upsert_from_oauth(
        self,
        *,
        google_id: str,
        email: str,
        display_name: Optional[str],
        access_token: Optional[str],
        token_expiry: Optional[datetime],
        refresh_token: Optional[str],
    ) -> UserRecord:
        now = _utcnow()
        with self._lock:
            existing = next((r for r in self.users.values() if r.google_id == google_id), None)
            if existing is None:
                existing = UserRecord(id=uuid.uuid4().hex, google_id=google_id, email=email, created_at=now)
                self.users[existing.id] = existing
            existing.email = email
            existing.display_name = display_name
            existing.access_token = access_token
            existing.token_expiry = token_expiry
            if refresh_token:
                existing.refresh_token = refresh_token
            existing.updated_at = now
            return replace(existing)

    def update_tokens(
        self,
        user_id: str,
        *,
        access_token: Optional[str],
        token_expiry: Optional[datetime],
        refresh_token: Optional[str] = None,
    ) -> None:
        with self._lock:
            record = self.users.get(user_id)
            if record is None:
                raise CredentialStoreError(f"Unknown user {user_id}.")
            record.access_token = access_token
            record.token_expiry = token_expiry
            if refresh_token:
                record.refresh_token = refresh_token
            record.updated_at = _utcnow()


def get_credential_store(settings: "Settings") -> MongoCredentialStore:
    store = MongoCredentialStore(uri=settings.mongo_uri, db_name=settings.mongo_db_name)
    try:
        store.ensure_indexes()
    except CredentialStoreError:
        store.close()
        raise
    return store
