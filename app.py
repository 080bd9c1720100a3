from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware

from credential_store import BaseCredentialStore, CredentialStoreError, UserRecord, get_credential_store
from gmail_auth import LoginFlowClient, MissingRefreshToken, TokenRefreshAdapter
from mailbox_cleanup import PREVIEW_PAGE_SIZE, MailboxCleanupError, MailboxCleanupWorkflow
from settings import Settings, load_settings

SESSION_USER_KEY = "userId"
SESSION_STATE_KEY = "oauth_state"
SESSION_VERIFIER_KEY = "oauth_code_verifier"

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Response models (Pydantic)
# ---------------------------------------------------------------------------

class MessageRef(BaseModel):
    id: str
    threadId: Optional[str] = None


class CleanupResponse(BaseModel):
    message: str
    deletedCount: int
    userId: str


class ListMessagesResponse(BaseModel):
    message: str
    messages: List[MessageRef] = Field(default_factory=list)
    userId: Optional[str] = None


class LogoutResponse(BaseModel):
    success: bool
    message: str


def _complete_login(
    login_client: LoginFlowClient,
    store: BaseCredentialStore,
    *,
    code: str,
    state: Optional[str],
    code_verifier: Optional[str],
) -> UserRecord:
    credentials = login_client.exchange_code(code, state=state, code_verifier=code_verifier)
    info = login_client.fetch_user_info(credentials)
    google_id = str(info.get("id") or "")
    email = str(info.get("email") or "").lower()
    if not google_id or not email:
        raise RuntimeError("Google user info response is missing id or email.")

    existing = store.get_by_google_id(google_id)
    has_refresh = bool(credentials.refresh_token or (existing and existing.refresh_token))
    if not has_refresh:
        raise MissingRefreshToken("Google did not issue a refresh token.")

    record = store.upsert_from_oauth(
        google_id=google_id,
        email=email,
        display_name=info.get("name"),
        access_token=credentials.token,
        token_expiry=credentials.expiry,
        refresh_token=credentials.refresh_token,
    )
    logger.info("%s user %s signed in", "Existing" if existing else "New", record.id)
    return record


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[BaseCredentialStore] = None,
    login_client: Optional[LoginFlowClient] = None,
    token_adapter: Optional[TokenRefreshAdapter] = None,
) -> FastAPI:
    settings = settings or load_settings()
    store = store or get_credential_store(settings)
    login_client = login_client or LoginFlowClient(
        settings.google_client_id,
        settings.google_client_secret,
        settings.google_redirect_uri,
    )
    token_adapter = token_adapter or TokenRefreshAdapter(
        store,
        settings.google_client_id,
        settings.google_client_secret,
    )
    workflow = MailboxCleanupWorkflow(store=store, token_adapter=token_adapter)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reachable = await asyncio.to_thread(store.ping)
        if reachable:
            logger.info("Credential store %s is reachable", store.__class__.__name__)
        else:
            logger.error("Credential store %s is not reachable", store.__class__.__name__)
        yield
        store.close()

    app = FastAPI(title="Mailbox Cleaner", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.workflow = workflow

    # Starlette runs the last-added middleware first: request log, then CORS, then sessions.
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.cookie_key,
        session_cookie=settings.session_cookie_name,
        max_age=settings.session_max_age_seconds,
        same_site="lax",
        https_only=False,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("%s %s raised", request.method, request.url.path)
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    @app.exception_handler(MailboxCleanupError)
    async def cleanup_error_handler(request: Request, exc: MailboxCleanupError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(CredentialStoreError)
    async def store_error_handler(request: Request, exc: CredentialStoreError):
        logger.error("Credential store failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error."})

    # -----------------------------
    # Authentication
    # -----------------------------

    @app.get("/auth/google")
    async def auth_google(request: Request):
        url, state, code_verifier = login_client.authorization_url()
        request.session[SESSION_STATE_KEY] = state
        if code_verifier:
            request.session[SESSION_VERIFIER_KEY] = code_verifier
        else:
            request.session.pop(SESSION_VERIFIER_KEY, None)
        return RedirectResponse(url, status_code=302)

    @app.get("/auth/google/callback")
    async def auth_google_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ):
        expected_state = request.session.pop(SESSION_STATE_KEY, None)
        code_verifier = request.session.pop(SESSION_VERIFIER_KEY, None)
        if error:
            logger.warning("Google consent returned error: %s", error)
            raise HTTPException(status_code=400, detail="Google sign-in was cancelled or denied.")
        if not code:
            raise HTTPException(status_code=400, detail="Missing authorization code.")
        if not expected_state or state != expected_state:
            raise HTTPException(status_code=400, detail="OAuth state mismatch. Please start sign-in again.")

        try:
            record = await asyncio.to_thread(
                _complete_login,
                login_client,
                store,
                code=code,
                state=state,
                code_verifier=code_verifier,
            )
        except MissingRefreshToken:
            logger.warning("Sign-in completed without a refresh token; re-consent required")
            raise HTTPException(
                status_code=401,
                detail="Google did not grant offline access. Remove the app from your Google account and sign in again.",
            )
        except Exception:  # noqa: BLE001 - details stay in the server log
            logger.exception("Error in Google OAuth callback")
            raise HTTPException(status_code=500, detail="Authentication failed.")

        request.session.clear()
        request.session[SESSION_USER_KEY] = record.id
        return RedirectResponse(settings.dashboard_url, status_code=302)

    # -----------------------------
    # Session + health
    # -----------------------------

    @app.get("/api/ping")
    async def ping():
        return PlainTextResponse("pong from backend")

    @app.get("/healthz")
    @app.get("/health")
    def healthz():
        reachable = store.ping()
        return {
            "status": "ok" if reachable else "degraded",
            "store_mode": store.__class__.__name__,
            "store_reachable": reachable,
        }

    @app.get("/api/current_user")
    def current_user(request: Request) -> Dict[str, Any]:
        user_id = request.session.get(SESSION_USER_KEY)
        if not user_id:
            return {"isAuthenticated": False}
        record = store.get_by_id(user_id)
        if record is None:
            logger.info("Session references user %s that no longer exists", user_id)
            return {"isAuthenticated": False}
        return {"isAuthenticated": True, "user": record.public_view()}

    @app.get("/api/logout", response_model=LogoutResponse)
    async def logout(request: Request):
        request.session.clear()
        return {"success": True, "message": "Logged out successfully"}

    # -----------------------------
    # Gmail
    # -----------------------------

    @app.post("/api/v2/gmail/delete-all-messages", response_model=CleanupResponse)
    async def delete_all_messages(request: Request):
        result = await asyncio.to_thread(workflow.run, request.session.get(SESSION_USER_KEY))
        return result.to_payload()

    @app.get("/api/v2/gmail/list-messages", response_model=ListMessagesResponse)
    async def list_messages(request: Request, max_results: int = Query(PREVIEW_PAGE_SIZE)):
        if max_results <= 0 or max_results > 500:
            raise HTTPException(status_code=400, detail="max_results must be between 1 and 500.")
        user_id = request.session.get(SESSION_USER_KEY)
        messages = await asyncio.to_thread(workflow.preview, user_id, max_results=max_results)
        return {
            "message": "Successfully listed Gmail messages." if messages else "No messages found.",
            "messages": messages,
            "userId": user_id,
        }

    return app
