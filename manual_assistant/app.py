from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from queue import Queue
from typing import Iterator, List, Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .access import Allowlist
from .ai_gateway import AIGateway
from .allowlist_client import AllowlistClient
from .config import Settings, load_settings
from .database import build_engine, build_session_factory, init_db
from .exceptions import AccessDeniedError, AllowlistError, ProtectedUserError
from .gemini_client import GeminiClient
from .models import (
    AddUserRequest,
    LoginRequest,
    Message,
    MessageOption,
    ModeRequest,
    PromptRequest,
    SessionResponse,
    TurnOutcome,
    TurnResponse,
    User,
)
from .session_store import ChatSession, SessionStore
from .user_store import UserStore

BASE_DIR = Path(__file__).resolve().parent
ENV_PATH = BASE_DIR / ".env"

logger = logging.getLogger("manual_assistant.api")

REJECTED_OUTCOMES = {
    TurnOutcome.BUSY: "A reply is still in progress. Please wait for it to finish.",
    TurnOutcome.AWAITING_CHOICE: "Please pick one of the offered options first.",
    TurnOutcome.INVALID_OPTION: "That option is not available right now.",
}


def configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    logging.getLogger("manual_assistant").setLevel(log_level)


def build_allowlist(settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> Allowlist:
    """Purpose: Pick the allowlist collaborator from settings.
    Inputs/Outputs: Input is Settings and an optional httpx transport; returns
        an AllowlistClient when ALLOWLIST_URL is set, else a UserStore.
    Side Effects / State: The local path creates the users table and seeds
        the admin user.
    Dependencies: AllowlistClient (httpx) or UserStore (SQLAlchemy).
    Failure Modes: Database errors at startup propagate. A remote allowlist
        is not contacted until the first login.
    If Removed: create_app has no way to check who may log in.
    Testing Notes: Pass a MockTransport to exercise the remote path.
    """
    # A remote allowlist service replaces the local users table entirely.
    if settings.allowlist_url:
        logger.info("using remote allowlist url=%s", settings.allowlist_url)
        return AllowlistClient(
            settings.allowlist_url,
            timeout=settings.allowlist_timeout,
            transport=transport,
            admin_user_id=settings.admin_user_id,
        )
    engine = build_engine(settings.database_url)
    init_db(engine)
    user_store = UserStore(build_session_factory(engine), admin_user_id=settings.admin_user_id)
    user_store.ensure_admin()
    return user_store


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[AIGateway] = None,
    allowlist: Optional[Allowlist] = None,
) -> FastAPI:
    """Purpose: Build the FastAPI application with its collaborators.
    Inputs/Outputs: Optional settings, gateway and allowlist (tests inject
        fakes); returns the FastAPI app.
    Side Effects / State: Loads .env and configures logging. Without an
        injected allowlist, builds one from settings via build_allowlist.
    Dependencies: GeminiClient, AIGateway, UserStore, SessionStore.
    Failure Modes: Database errors at startup propagate. A missing Gemini key
        does not fail here; it surfaces on the first AI turn.
    If Removed: The service has no HTTP surface at all.
    Testing Notes: Run with `uvicorn manual_assistant.app:create_app --factory`.
    """
    # Environment first, so load_settings sees .env values.
    if ENV_PATH.exists():
        load_dotenv(ENV_PATH, override=True)
    configure_logging()

    settings = settings or load_settings()
    if gateway is None:
        gateway = AIGateway(GeminiClient(settings), settings.prompts_dir)
    if allowlist is None:
        allowlist = build_allowlist(settings)

    sessions = SessionStore(
        gateway,
        allowlist,
        max_sessions=settings.max_sessions,
        admin_user_id=settings.admin_user_id,
    )

    app = FastAPI(title="Manual Assistant")
    app.state.settings = settings
    app.state.sessions = sessions
    app.state.allowlist = allowlist

    @app.exception_handler(StarletteHTTPException)
    def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # Error bodies use {"message": ...} like the allowlist service.
        return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})

    @app.exception_handler(AllowlistError)
    def allowlist_error_handler(request: Request, exc: AllowlistError) -> JSONResponse:
        if isinstance(exc, (AccessDeniedError, ProtectedUserError)):
            status_code = 403
        else:
            status_code = 500
        return JSONResponse(status_code=status_code, content={"message": exc.message})

    # Allowlist service

    @app.get("/api/users", response_model=List[User])
    def list_users() -> List[User]:
        return allowlist.list_users()

    @app.post("/api/login", response_model=User)
    def login(request: LoginRequest) -> User:
        if not request.id:
            raise HTTPException(status_code=400, detail="User ID is required")
        return allowlist.login(request.id, request.name)

    @app.post("/api/users", response_model=User, status_code=201)
    def add_user(request: AddUserRequest) -> User:
        return allowlist.add_user(request.id, request.role, request.name)

    @app.delete("/api/users/{user_id}", status_code=204)
    def remove_user(user_id: str) -> Response:
        allowlist.remove_user(user_id)
        return Response(status_code=204)

    # Chat sessions

    def get_session(session_id: str) -> ChatSession:
        session = sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    def session_payload(session: ChatSession) -> SessionResponse:
        manual = session.manual.content
        return SessionResponse(
            session_id=session.session_id,
            user=session.user,
            mode=session.engine.mode,
            state=session.engine.state,
            pending_turn=session.engine.pending_turn,
            manual_file_name=manual.file_name if manual else None,
            manual_image_count=session.manual.image_count,
            messages=serialize_messages(session.engine.snapshot()),
        )

    def turn_payload(session: ChatSession, outcome: TurnOutcome) -> TurnResponse:
        if outcome in REJECTED_OUTCOMES:
            raise HTTPException(status_code=409, detail=REJECTED_OUTCOMES[outcome])
        return TurnResponse(
            outcome=outcome,
            state=session.engine.state,
            messages=serialize_messages(session.engine.snapshot()),
        )

    @app.post("/api/sessions", response_model=SessionResponse)
    def open_session(request: LoginRequest) -> SessionResponse:
        if not request.id:
            raise HTTPException(status_code=400, detail="User ID is required")
        session = sessions.create_session(request.id, request.name)
        return session_payload(session)

    @app.get("/api/sessions/{session_id}", response_model=SessionResponse)
    def read_session(session_id: str) -> SessionResponse:
        return session_payload(get_session(session_id))

    @app.delete("/api/sessions/{session_id}", status_code=204)
    def close_session(session_id: str) -> Response:
        if not sessions.remove(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return Response(status_code=204)

    @app.put("/api/sessions/{session_id}/mode", response_model=SessionResponse)
    def set_mode(session_id: str, request: ModeRequest) -> SessionResponse:
        session = get_session(session_id)
        session.engine.set_mode(request.mode)
        return session_payload(session)

    @app.post("/api/sessions/{session_id}/manual", response_model=SessionResponse)
    def upload_manual(session_id: str, file: UploadFile = File(...)) -> SessionResponse:
        session = get_session(session_id)
        data = file.file.read()
        if not session.upload_manual(data, file.filename or ""):
            raise HTTPException(status_code=409, detail=REJECTED_OUTCOMES[TurnOutcome.BUSY])
        return session_payload(session)

    @app.post("/api/sessions/{session_id}/messages", response_model=TurnResponse)
    def submit_prompt(session_id: str, request: PromptRequest) -> TurnResponse:
        session = get_session(session_id)
        if not request.text.strip():
            raise HTTPException(status_code=400, detail="Message text is required")
        outcome = session.engine.submit_prompt(request.text, request.mode)
        return turn_payload(session, outcome)

    @app.post("/api/sessions/{session_id}/messages/stream")
    def stream_prompt(session_id: str, request: PromptRequest) -> StreamingResponse:
        """Purpose: Run a turn and stream message snapshots as NDJSON.
        Inputs/Outputs: Input is the prompt; output is one JSON line per
            message update, then a final {"outcome", "state"} line.
        Side Effects / State: Runs the turn in a worker thread feeding a Queue.
        Failure Modes: Rejected turns still end with their outcome line.
        If Removed: Clients only see a reply once it is complete.
        Testing Notes: Fragments must arrive in order in the message text.
        """
        # The worker thread owns the turn; this generator only drains the queue.
        session = get_session(session_id)
        if not request.text.strip():
            raise HTTPException(status_code=400, detail="Message text is required")
        queue: Queue = Queue()

        def worker() -> None:
            try:
                outcome = session.engine.submit_prompt(request.text, request.mode, on_update=queue.put)
                queue.put({"outcome": outcome.value, "state": session.engine.state.value})
            except Exception as exc:
                logger.exception("session=%s stream worker failed", session_id)
                queue.put({"outcome": "error", "message": str(exc)})
            finally:
                queue.put(None)

        threading.Thread(target=worker, daemon=True).start()

        def events() -> Iterator[str]:
            while True:
                item = queue.get()
                if item is None:
                    return
                if isinstance(item, Message):
                    item = {"message": item.model_dump(mode="json", exclude_none=True)}
                yield json.dumps(item, ensure_ascii=False) + "\n"

        return StreamingResponse(events(), media_type="application/x-ndjson")

    @app.post("/api/sessions/{session_id}/options", response_model=TurnResponse)
    def submit_option(session_id: str, option: MessageOption) -> TurnResponse:
        session = get_session(session_id)
        outcome = session.engine.submit_option(option)
        return turn_payload(session, outcome)

    # Admin-gated user management for the session's user

    @app.get("/api/sessions/{session_id}/users", response_model=List[User])
    def session_list_users(session_id: str) -> List[User]:
        return get_session(session_id).access.list_users()

    @app.post("/api/sessions/{session_id}/users", response_model=User, status_code=201)
    def session_add_user(session_id: str, request: AddUserRequest) -> User:
        session = get_session(session_id)
        if not request.id.strip():
            raise HTTPException(status_code=400, detail="User ID cannot be empty.")
        return session.access.add_user(request.id, request.role, request.name)

    @app.delete("/api/sessions/{session_id}/users/{user_id}", status_code=204)
    def session_remove_user(session_id: str, user_id: str) -> Response:
        get_session(session_id).access.remove_user(user_id)
        return Response(status_code=204)

    return app


def serialize_messages(messages: List[Message]) -> List[dict]:
    # exclude_none keeps "no images" distinct from "images: []".
    return [message.model_dump(mode="json", exclude_none=True) for message in messages]
