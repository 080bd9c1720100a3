from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Sequence

from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from credential_store import BaseCredentialStore, CredentialStoreError, UserRecord
from gmail_auth import GmailAuthError, GmailHandle, TokenRefreshAdapter

# Gmail caps messages.list at 500 ids per page and batchDelete at 1000 ids per call.
LIST_PAGE_SIZE = 500
ERASE_CHUNK_SIZE = 1000
PREVIEW_PAGE_SIZE = 10

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    AUTH_REQUIRED = "auth_required"
    PERMISSION_DENIED = "permission_denied"
    INTERNAL_FAILURE = "internal_failure"


_STATUS_FOR_KIND: Dict[FailureKind, int] = {
    FailureKind.AUTH_REQUIRED: 401,
    FailureKind.PERMISSION_DENIED: 403,
    FailureKind.INTERNAL_FAILURE: 500,
}

_DETAIL_FOR_KIND: Dict[FailureKind, str] = {
    FailureKind.AUTH_REQUIRED: "Authentication required: Please re-authenticate with Google.",
    FailureKind.PERMISSION_DENIED: (
        "Permission denied: sign in again and grant full Gmail access, "
        "or check that the Gmail API is enabled."
    ),
    FailureKind.INTERNAL_FAILURE: "Failed to process Gmail messages. Please try again later.",
}


class WorkflowState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CREDENTIAL_RESOLVED = "credential_resolved"
    TOKEN_READY = "token_ready"
    ENUMERATED = "enumerated"
    COMPLETED = "completed"


class MailboxCleanupError(Exception):
    """
    Classified workflow failure. ``detail`` is safe to show to the user;
    upstream diagnostics stay in the server log.
    """

    def __init__(
        self,
        kind: FailureKind,
        detail: Optional[str] = None,
        *,
        erased_before_failure: int = 0,
        chunks_completed: int = 0,
    ) -> None:
        self.kind = kind
        self.detail = detail or _DETAIL_FOR_KIND[kind]
        self.erased_before_failure = erased_before_failure
        self.chunks_completed = chunks_completed
        super().__init__(self.detail)

    @property
    def status_code(self) -> int:
        return _STATUS_FOR_KIND[self.kind]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": self.detail,
            "kind": self.kind.value,
            "erasedBeforeFailure": self.erased_before_failure,
            "chunksCompleted": self.chunks_completed,
        }


class BatchEraseError(Exception):
    """A batchDelete call failed after ``chunks_completed`` chunks went through."""

    def __init__(self, cause: BaseException, *, erased_count: int, chunks_completed: int, total_chunks: int) -> None:
        self.cause = cause
        self.erased_count = erased_count
        self.chunks_completed = chunks_completed
        self.total_chunks = total_chunks
        super().__init__(
            f"Chunk {chunks_completed + 1} of {total_chunks} failed after {erased_count} messages were trashed: {cause}"
        )


@dataclass
class _UserLock:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


@dataclass
class CleanupResult:
    user_id: str
    deleted_count: int
    chunks: int = 0

    @property
    def message(self) -> str:
        if not self.deleted_count:
            return "No messages found to delete."
        return f"Successfully moved {self.deleted_count} Gmail messages to trash."

    def to_payload(self) -> Dict[str, Any]:
        return {"message": self.message, "deletedCount": self.deleted_count, "userId": self.user_id}


def _http_status(exc: BaseException) -> Optional[int]:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an upstream exception onto the client-facing failure taxonomy."""
    if isinstance(exc, BatchEraseError):
        return classify_failure(exc.cause)
    if isinstance(exc, (GmailAuthError, RefreshError)):
        return FailureKind.AUTH_REQUIRED
    if isinstance(exc, HttpError):
        status = _http_status(exc)
        if status == 401:
            return FailureKind.AUTH_REQUIRED
        if status == 403:
            return FailureKind.PERMISSION_DENIED
    return FailureKind.INTERNAL_FAILURE


# ---------------------------------------------------------------------------
# Enumeration
# ---------------------------------------------------------------------------

def list_message_page(
    service,
    *,
    user_id: str = "me",
    max_results: int = PREVIEW_PAGE_SIZE,
    page_token: Optional[str] = None,
) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"userId": user_id, "maxResults": max_results}
    if page_token:
        kwargs["pageToken"] = page_token
    return service.users().messages().list(**kwargs).execute()


def enumerate_message_ids(service, *, user_id: str = "me", page_size: int = LIST_PAGE_SIZE) -> List[str]:
    """
    Drain every page of ``messages.list`` and return all message ids in order.

    A failing page propagates immediately; ids gathered so far are dropped.
    """
    message_ids: List[str] = []
    page_token: Optional[str] = None
    pages = 0
    while True:
        response = list_message_page(service, user_id=user_id, max_results=page_size, page_token=page_token)
        pages += 1
        page_ids = [item["id"] for item in response.get("messages", []) or [] if item.get("id")]
        message_ids.extend(page_ids)
        page_token = response.get("nextPageToken")
        logger.debug(
            "Fetched page %d with %d messages (total %d, more=%s)",
            pages,
            len(page_ids),
            len(message_ids),
            bool(page_token),
        )
        if not page_token:
            break
    return message_ids


# ---------------------------------------------------------------------------
# Erasing
# ---------------------------------------------------------------------------

def chunked(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    if size <= 0:
        raise ValueError("chunk size must be a positive integer.")
    for start in range(0, len(items), size):
        yield items[start : start + size]


def erase_messages(
    service,
    message_ids: Sequence[str],
    *,
    user_id: str = "me",
    chunk_size: int = ERASE_CHUNK_SIZE,
) -> int:
    """
    Move every id to trash with one ``batchDelete`` call per chunk.

    Chunks go out one at a time. Completed chunks stay trashed when a later one
    fails; the raised BatchEraseError says how far the run got.
    """
    total_chunks = math.ceil(len(message_ids) / chunk_size) if message_ids else 0
    erased = 0
    for index, batch in enumerate(chunked(message_ids, chunk_size)):
        try:
            service.users().messages().batchDelete(userId=user_id, body={"ids": list(batch)}).execute()
        except Exception as exc:
            raise BatchEraseError(
                exc,
                erased_count=erased,
                chunks_completed=index,
                total_chunks=total_chunks,
            ) from exc
        erased += len(batch)
        logger.info("Trashed chunk %d/%d (%d messages, %d total)", index + 1, total_chunks, len(batch), erased)
    return erased


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class MailboxCleanupWorkflow:
    """
    Resolves the user, opens their mailbox, enumerates every message and trashes them in chunks.

    Runs for the same user are serialised; runs for different users never wait on each other.
    """

    def __init__(
        self,
        *,
        store: BaseCredentialStore,
        token_adapter: TokenRefreshAdapter,
        page_size: int = LIST_PAGE_SIZE,
        chunk_size: int = ERASE_CHUNK_SIZE,
    ) -> None:
        self.store = store
        self.token_adapter = token_adapter
        self.page_size = page_size
        self.chunk_size = chunk_size
        self._user_locks: Dict[str, _UserLock] = {}
        self._user_locks_guard = Lock()

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        # Entries live only while a run holds or waits on them.
        with self._user_locks_guard:
            entry = self._user_locks.get(user_id)
            if entry is None:
                entry = self._user_locks[user_id] = _UserLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._user_locks_guard:
                entry.holders -= 1
                if not entry.holders:
                    del self._user_locks[user_id]

    def _resolve_user(self, user_id: Optional[str]) -> UserRecord:
        if not user_id:
            raise MailboxCleanupError(FailureKind.AUTH_REQUIRED, "User not authenticated")
        try:
            record = self.store.get_by_id(user_id)
        except CredentialStoreError:
            logger.exception("Credential store lookup failed for user %s", user_id)
            raise MailboxCleanupError(FailureKind.INTERNAL_FAILURE) from None
        if record is None:
            logger.warning("Session references unknown user %s", user_id)
            raise MailboxCleanupError(FailureKind.AUTH_REQUIRED, "User not found. Please sign in again.")
        return record

    def _open(self, record: UserRecord) -> GmailHandle:
        try:
            return self.token_adapter.open_mailbox(record)
        except GmailAuthError as exc:
            raise MailboxCleanupError(FailureKind.AUTH_REQUIRED) from exc
        except CredentialStoreError:
            logger.exception("Failed to persist refreshed tokens for user %s", record.id)
            raise MailboxCleanupError(FailureKind.INTERNAL_FAILURE) from None
        except Exception:
            logger.exception("Failed to open Gmail for user %s", record.id)
            raise MailboxCleanupError(FailureKind.INTERNAL_FAILURE) from None

    def _sync_tokens(self, handle: GmailHandle) -> None:
        try:
            self.token_adapter.persist_rotated_tokens(handle)
        except CredentialStoreError:
            # The run itself already finished; a later request will refresh again.
            logger.exception("Failed to persist tokens refreshed mid-run for user %s", handle.record.id)

    def _fail(self, user_id: str, stage: str, exc: BaseException) -> MailboxCleanupError:
        kind = classify_failure(exc)
        erased = getattr(exc, "erased_count", 0)
        chunks = getattr(exc, "chunks_completed", 0)
        logger.error(
            "Mailbox cleanup for user %s failed during %s (%s, %d trashed before failure): %r",
            user_id,
            stage,
            kind.value,
            erased,
            getattr(exc, "cause", exc),
        )
        return MailboxCleanupError(kind, erased_before_failure=erased, chunks_completed=chunks)

    def run(self, user_id: Optional[str]) -> CleanupResult:
        state = WorkflowState.UNAUTHENTICATED
        logger.debug("Mailbox cleanup requested for session user %s: %s", user_id, state.value)
        record = self._resolve_user(user_id)
        state = WorkflowState.CREDENTIAL_RESOLVED
        logger.info("Mailbox cleanup for user %s: %s", record.id, state.value)

        handle = self._open(record)
        state = WorkflowState.TOKEN_READY
        logger.info("Mailbox cleanup for user %s: %s", record.id, state.value)

        try:
            with self._user_lock(record.id):
                try:
                    message_ids = enumerate_message_ids(handle.service, page_size=self.page_size)
                except Exception as exc:
                    raise self._fail(record.id, "enumeration", exc) from exc
                state = WorkflowState.ENUMERATED
                logger.info("Mailbox cleanup for user %s: %s %d messages", record.id, state.value, len(message_ids))

                if not message_ids:
                    return CleanupResult(user_id=record.id, deleted_count=0)

                try:
                    deleted = erase_messages(handle.service, message_ids, chunk_size=self.chunk_size)
                except Exception as exc:
                    raise self._fail(record.id, "erase", exc) from exc
        finally:
            self._sync_tokens(handle)

        result = CleanupResult(
            user_id=record.id,
            deleted_count=deleted,
            chunks=math.ceil(deleted / self.chunk_size),
        )
        state = WorkflowState.COMPLETED
        logger.info(
            "Mailbox cleanup for user %s: %s, %d messages trashed in %d chunks",
            record.id,
            state.value,
            result.deleted_count,
            result.chunks,
        )
        return result

    def preview(self, user_id: Optional[str], *, max_results: int = PREVIEW_PAGE_SIZE) -> List[Dict[str, Any]]:
        """Return the first page of messages (id + threadId) without touching anything."""
        record = self._resolve_user(user_id)
        handle = self._open(record)
        try:
            response = list_message_page(handle.service, max_results=max_results)
        except Exception as exc:
            raise self._fail(record.id, "preview", exc) from exc
        finally:
            self._sync_tokens(handle)
        return list(response.get("messages", []) or [])
