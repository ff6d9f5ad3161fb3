"""Conversation engine: message log, chat mode, and troubleshooting state.

Role:
    Owns the ordered message log of one session and runs one turn at a time
    against the AI gateway. QA turns stream text into an AI placeholder;
    troubleshooting turns fill the placeholder with a structured step.

Turn contract:
    - At most one turn is in flight; a second submission returns BUSY and
      leaves the log untouched.
    - Without a manual, a SYSTEM hint is appended and the gateway is not called.
    - Every accepted turn appends USER + AI messages; the AI message ends with
      either the answer or a visible error text, never empty on failure.
    - The troubleshooting state is recomputed from the last AI message when
      the turn completes.

States:
    IDLE -> AWAITING_CHOICE | RESOLVED   (submit_prompt)
    AWAITING_CHOICE -> AWAITING_CHOICE | RESOLVED   (submit_option)
    RESOLVED -> AWAITING_CHOICE | RESOLVED   (submit_prompt starts a new thread
    on the same transcript; history is kept)
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from .ai_gateway import AIGateway
from .exceptions import AssistantError
from .image_resolver import resolve_images
from .manual_store import ManualStore
from .models import (
    ChatMode,
    ManualContent,
    Message,
    MessageOption,
    MessageSender,
    TroubleshootingState,
    TurnOutcome,
)

logger = logging.getLogger("manual_assistant.engine")

NO_MANUAL_TEXT = "Please load a manual from the menu to get started."
ERROR_TEXT = "Sorry, an error occurred: {reason}"

UpdateListener = Callable[[Message], None]


def new_message_id() -> str:
    return uuid.uuid4().hex


class ConversationEngine:
    """Single-session conversation state machine."""

    def __init__(
        self,
        gateway: AIGateway,
        manual_store: ManualStore,
        mode: ChatMode = ChatMode.QA,
        session_id: str = "",
    ) -> None:
        self._gateway = gateway
        self._manual_store = manual_store
        self._mode = mode
        self._session_id = session_id
        self._messages: List[Message] = []
        self._state = TroubleshootingState.IDLE
        self._turn_lock = threading.Lock()
        self._log_lock = threading.RLock()

    @property
    def mode(self) -> ChatMode:
        return self._mode

    @property
    def state(self) -> TroubleshootingState:
        return self._state

    @property
    def pending_turn(self) -> bool:
        return self._turn_lock.locked()

    @property
    def messages(self) -> List[Message]:
        return self.snapshot()

    def snapshot(self) -> List[Message]:
        with self._log_lock:
            return list(self._messages)

    def set_mode(self, mode: ChatMode) -> None:
        """Switch mode for the next turn; history is kept."""
        logger.info("session=%s mode=%s->%s", self._session_id, self._mode.value, mode.value)
        self._mode = mode

    def append_system(self, text: str, on_update: Optional[UpdateListener] = None) -> Message:
        message = Message(id=new_message_id(), sender=MessageSender.SYSTEM, text=text)
        self._append(message, on_update)
        return message

    @contextmanager
    def turn_guard(self) -> Iterator[bool]:
        """Purpose: Hold the one-turn-in-flight lock around a block of work.
        Inputs/Outputs: Yields True when the lock was taken, False when a turn
            is already running.
        Side Effects / State: While held, submit_prompt and submit_option
            return BUSY.
        If Removed: Manual uploads could race a turn into a freshly reset log.
        Testing Notes: Submit from inside the block and expect BUSY.
        """
        # Non-blocking, like the turn entry points.
        acquired = self._turn_lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._turn_lock.release()

    def clear_transcript(self) -> None:
        """Drop all messages and return to IDLE; callers hold turn_guard."""
        with self._log_lock:
            self._messages = []
        self._state = TroubleshootingState.IDLE

    def reset(self) -> bool:
        """Purpose: Drop the whole transcript (logout).
        Inputs/Outputs: No inputs; returns False if a turn is in flight.
        Side Effects / State: Clears messages and returns the state to IDLE.
        Failure Modes: Refuses while a turn runs so the turn cannot write
            into a cleared log.
        If Removed: Logged-out sessions would keep the previous transcript.
        """
        # Clear only when no turn is running.
        with self.turn_guard() as acquired:
            if acquired:
                self.clear_transcript()
            return acquired

    def submit_prompt(
        self,
        text: str,
        mode: Optional[ChatMode] = None,
        on_update: Optional[UpdateListener] = None,
    ) -> TurnOutcome:
        """Purpose: Run one user turn in QA or troubleshooting mode.
        Inputs/Outputs: Input is the prompt, an optional per-turn mode override
            and an optional update listener; returns the TurnOutcome.
        Side Effects / State: Appends USER + AI messages, updates the AI message
            as content arrives, recomputes the troubleshooting state.
        Dependencies: Uses AIGateway, ManualStore and resolve_images.
        Failure Modes: Gateway failures become the AI message text. A blank
            prompt returns EMPTY_PROMPT and leaves the log unchanged.
        If Removed: No user turn can reach the AI gateway.
        Testing Notes: Verify BUSY leaves the log unchanged and NO_MANUAL
            appends exactly one SYSTEM message.
        """
        # Reject before taking the lock; nothing is appended for blank input.
        text = text.strip()
        if not text:
            logger.info("session=%s outcome=empty_prompt", self._session_id)
            return TurnOutcome.EMPTY_PROMPT
        if not self._turn_lock.acquire(blocking=False):
            logger.info("session=%s outcome=busy", self._session_id)
            return TurnOutcome.BUSY
        try:
            turn_mode = mode or self._mode
            manual = self._manual_store.content
            if manual is None:
                self.append_system(NO_MANUAL_TEXT, on_update)
                logger.info("session=%s outcome=no_manual", self._session_id)
                return TurnOutcome.NO_MANUAL
            if turn_mode == ChatMode.TROUBLESHOOTING and self._state == TroubleshootingState.AWAITING_CHOICE:
                logger.info("session=%s outcome=awaiting_choice", self._session_id)
                return TurnOutcome.AWAITING_CHOICE

            history = self._history()
            self._append(Message(id=new_message_id(), sender=MessageSender.USER, text=text), on_update)
            self._run_turn(text, turn_mode, manual, history, on_update)
            return TurnOutcome.COMPLETED
        finally:
            self._turn_lock.release()

    def submit_option(self, option: MessageOption, on_update: Optional[UpdateListener] = None) -> TurnOutcome:
        """Purpose: Answer the pending troubleshooting question with one of its options.
        Inputs/Outputs: Input is the chosen option; returns the TurnOutcome.
        Side Effects / State: USER message shows option.text while the gateway
            receives option.payload; history includes that USER message.
        Failure Modes: INVALID_OPTION outside AWAITING_CHOICE or for an option
            the last AI message did not offer. The session mode is not
            checked, so a question raised by a per-turn override stays
            answerable.
        If Removed: Troubleshooting questions could never be answered.
        """
        # Session mode is not checked; the offered options decide.
        if not self._turn_lock.acquire(blocking=False):
            logger.info("session=%s outcome=busy", self._session_id)
            return TurnOutcome.BUSY
        try:
            if self._state != TroubleshootingState.AWAITING_CHOICE or not self._is_offered(option):
                logger.info("session=%s outcome=invalid_option", self._session_id)
                return TurnOutcome.INVALID_OPTION
            manual = self._manual_store.content
            if manual is None:
                return TurnOutcome.NO_MANUAL

            self._append(Message(id=new_message_id(), sender=MessageSender.USER, text=option.text), on_update)
            history = self._history()
            self._run_turn(option.payload, ChatMode.TROUBLESHOOTING, manual, history, on_update)
            return TurnOutcome.COMPLETED
        finally:
            self._turn_lock.release()

    def _run_turn(
        self,
        prompt: str,
        mode: ChatMode,
        manual: ManualContent,
        history: List[Message],
        on_update: Optional[UpdateListener],
    ) -> None:
        placeholder = Message(id=new_message_id(), sender=MessageSender.AI, text="")
        self._append(placeholder, on_update)
        logger.info("session=%s turn mode=%s history=%s", self._session_id, mode.value, len(history))
        try:
            if mode == ChatMode.QA:
                self._answer(placeholder.id, prompt, manual, on_update)
            else:
                self._troubleshoot(placeholder.id, prompt, manual, history, on_update)
        except AssistantError as exc:
            logger.warning("session=%s turn failed: %s", self._session_id, exc.message)
            self._update(placeholder.id, on_update, text=ERROR_TEXT.format(reason=exc.message))
        finally:
            self._state = self._derive_state()
            logger.info("session=%s outcome=completed state=%s", self._session_id, self._state.value)

    def _answer(
        self,
        message_id: str,
        prompt: str,
        manual: ManualContent,
        on_update: Optional[UpdateListener],
    ) -> None:
        accumulated = ""

        def on_fragment(fragment: str) -> None:
            nonlocal accumulated
            accumulated += fragment
            self._update(message_id, on_update, text=accumulated)

        self._gateway.stream_answer(prompt, manual.text, len(manual.images), on_fragment)
        images = resolve_images(accumulated, manual)
        if images:
            self._update(message_id, on_update, images=images)

    def _troubleshoot(
        self,
        message_id: str,
        prompt: str,
        manual: ManualContent,
        history: List[Message],
        on_update: Optional[UpdateListener],
    ) -> None:
        response = self._gateway.structured_step(prompt, manual.text, history)
        if response.is_final:
            text = response.solution or ""
            options = None
        else:
            text = response.question
            options = [MessageOption(text=option, payload=option) for option in response.options] or None
        changes = {"text": text, "options": options, "is_final_step": response.is_final}
        images = resolve_images(text, manual)
        if images:
            changes["images"] = images
        self._update(message_id, on_update, **changes)

    def _history(self) -> List[Message]:
        with self._log_lock:
            return [message for message in self._messages if message.sender != MessageSender.SYSTEM]

    def _last_ai_message(self) -> Optional[Message]:
        with self._log_lock:
            for message in reversed(self._messages):
                if message.sender == MessageSender.AI:
                    return message
        return None

    def _is_offered(self, option: MessageOption) -> bool:
        last = self._last_ai_message()
        return bool(last and last.options and option in last.options)

    def _derive_state(self) -> TroubleshootingState:
        last = self._last_ai_message()
        if last is None:
            return TroubleshootingState.IDLE
        if last.is_final_step:
            return TroubleshootingState.RESOLVED
        if last.options:
            return TroubleshootingState.AWAITING_CHOICE
        return TroubleshootingState.IDLE

    def _append(self, message: Message, on_update: Optional[UpdateListener]) -> None:
        with self._log_lock:
            self._messages.append(message)
        if on_update:
            on_update(message)

    def _update(self, message_id: str, on_update: Optional[UpdateListener], **changes: object) -> Message:
        # Revalidate so option/final-step invariants hold after every update.
        with self._log_lock:
            for index, message in enumerate(self._messages):
                if message.id == message_id:
                    updated = Message.model_validate({**message.model_dump(), **changes})
                    self._messages[index] = updated
                    break
            else:
                raise KeyError(message_id)
        if on_update:
            on_update(updated)
        return updated
