from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Dict, List, Optional

from .access import AccessController, Allowlist
from .ai_gateway import AIGateway
from .conversation import ConversationEngine
from .doc_parser import parse_document
from .exceptions import DocumentError
from .manual_store import ManualStore
from .models import User

logger = logging.getLogger("manual_assistant.sessions")


class ChatSession:
    """One logged-in user with their manual and conversation."""

    def __init__(self, session_id: str, access: AccessController, gateway: AIGateway) -> None:
        self.session_id = session_id
        self.access = access
        self.manual = ManualStore()
        self.engine = ConversationEngine(gateway, self.manual, session_id=session_id)
        self.updated_at = time.time()

    @property
    def user(self) -> Optional[User]:
        return self.access.current_user

    def touch(self) -> None:
        self.updated_at = time.time()

    def upload_manual(self, data: bytes, file_name: str) -> bool:
        """Purpose: Replace the session manual and start a fresh transcript.
        Inputs/Outputs: Input is the uploaded bytes and file name; returns False
            when a turn is in flight and nothing was changed.
        Side Effects / State: Clears the log and manual, then appends one SYSTEM
            message reporting success or the parse failure.
        Dependencies: Uses parse_document, ManualStore and ConversationEngine.
        Failure Modes: DocumentError is reported in the log, never raised.
        If Removed: Sessions can never load a manual, so every prompt gets
            the NO_MANUAL hint.
        Testing Notes: A failed upload leaves no manual loaded; turns submitted
            while it runs return BUSY.
        """
        # Reset, parse and load under one turn guard so no turn interleaves.
        with self.engine.turn_guard() as acquired:
            if not acquired:
                return False
            self.engine.clear_transcript()
            self.manual.clear()
            self.touch()
            try:
                content = parse_document(data, file_name)
            except DocumentError as exc:
                logger.warning("session=%s upload failed file=%s: %s", self.session_id, file_name, exc.message)
                self.engine.append_system(f"Error: {exc.message}. Please try another file.")
                return True
            self.manual.load(content)
            self.engine.append_system(
                f'Manual "{content.file_name}" loaded successfully. Found {len(content.images)} image(s).'
            )
            return True

    def logout(self) -> None:
        self.engine.reset()
        self.manual.clear()
        self.access.logout()


class SessionStore:
    """In-memory registry of chat sessions, capped by max_sessions."""

    def __init__(
        self,
        gateway: AIGateway,
        allowlist: Allowlist,
        max_sessions: Optional[int] = None,
        admin_user_id: str = "admin",
    ) -> None:
        """Purpose: Initialize the session registry.
        Inputs/Outputs: Inputs are the shared gateway, the allowlist and an
            optional cap; no return.
        Side Effects / State: Holds sessions in memory only; transcripts are
            not persisted.
        Dependencies: ChatSession, AccessController.
        If Removed: The API has nowhere to keep logged-in sessions.
        Testing Notes: Verify pruning keeps the most recently used sessions.
        """
        # Sessions live in memory only.
        self._gateway = gateway
        self._allowlist = allowlist
        self._max_sessions = max_sessions
        self._admin_user_id = admin_user_id
        self._sessions: Dict[str, ChatSession] = {}
        self._lock = threading.Lock()

    def create_session(self, user_id: str, name: Optional[str] = None) -> ChatSession:
        """Log a user in and open a new session; AccessDeniedError propagates."""
        access = AccessController(self._allowlist, admin_user_id=self._admin_user_id)
        access.login(user_id, name)
        session = ChatSession(uuid.uuid4().hex, access, self._gateway)
        with self._lock:
            self._sessions[session.session_id] = session
            self._prune_sessions()
        logger.info("session=%s created user=%s", session.session_id, user_id)
        return session

    def get(self, session_id: str) -> Optional[ChatSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def list_sessions(self) -> List[ChatSession]:
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.logout()
        logger.info("session=%s closed", session_id)
        return True

    def _prune_sessions(self) -> bool:
        # Drop least-recent sessions when above the configured cap.
        if not self._max_sessions or self._max_sessions <= 0:
            return False
        if len(self._sessions) <= self._max_sessions:
            return False
        ordered = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        removed = [session for session in ordered[self._max_sessions:] if not session.engine.pending_turn]
        for session in removed:
            self._sessions.pop(session.session_id, None)
            session.logout()
        return bool(removed)
