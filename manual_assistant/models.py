from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class MessageSender(str, Enum):
    USER = "user"
    AI = "ai"
    SYSTEM = "system"


class ChatMode(str, Enum):
    QA = "qa"
    TROUBLESHOOTING = "troubleshooting"


class TroubleshootingState(str, Enum):
    """Where the guided diagnostic dialogue stands after the last completed turn."""
    IDLE = "idle"
    AWAITING_CHOICE = "awaiting_choice"
    RESOLVED = "resolved"


class TurnOutcome(str, Enum):
    """Why a submitted turn was run or turned away."""
    COMPLETED = "completed"
    BUSY = "busy"
    NO_MANUAL = "no_manual"
    AWAITING_CHOICE = "awaiting_choice"
    INVALID_OPTION = "invalid_option"
    EMPTY_PROMPT = "empty_prompt"


class UserRole(str, Enum):
    ADMIN = "admin"
    SUPER_USER = "super_user"
    USER = "user"


class ImageContent(BaseModel):
    """Image extracted from the manual; src is a data URI."""
    model_config = ConfigDict(frozen=True)

    src: str
    description: str


class ManualContent(BaseModel):
    """Extracted text and ordered image list of the loaded manual."""
    model_config = ConfigDict(frozen=True)

    text: str
    images: List[ImageContent] = Field(default_factory=list)
    file_name: str


class MessageOption(BaseModel):
    """Choice offered to the user; payload is what goes back to the model."""
    text: str
    payload: str


class Message(BaseModel):
    """Single entry of the conversation log."""
    id: str
    sender: MessageSender
    text: str
    images: Optional[List[ImageContent]] = None
    options: Optional[List[MessageOption]] = None
    is_final_step: Optional[bool] = None

    @model_validator(mode="after")
    def _check_options(self) -> "Message":
        if self.options:
            if self.sender != MessageSender.AI:
                raise ValueError("only AI messages may carry options")
            if self.is_final_step:
                raise ValueError("a final step cannot carry options")
        return self


class TroubleshootingResponse(BaseModel):
    """Structured step returned by the troubleshooting prompt."""
    model_config = ConfigDict(extra="ignore")

    question: str = ""
    options: List[str] = Field(default_factory=list)
    solution: Optional[str] = None

    @field_validator("question", mode="before")
    @classmethod
    def _none_question(cls, value):
        return "" if value is None else value

    @field_validator("options", mode="before")
    @classmethod
    def _none_options(cls, value):
        return [] if value is None else value

    @field_validator("solution", mode="before")
    @classmethod
    def _blank_solution(cls, value):
        # An empty solution string does not end the dialogue.
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def is_final(self) -> bool:
        return self.solution is not None


class User(BaseModel):
    """Allowlisted user."""
    id: str
    name: Optional[str] = None
    role: UserRole


# API payloads


class LoginRequest(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None


class AddUserRequest(BaseModel):
    id: str
    role: UserRole = UserRole.USER
    name: Optional[str] = None


class PromptRequest(BaseModel):
    text: str
    mode: Optional[ChatMode] = None


class ModeRequest(BaseModel):
    mode: ChatMode


class SessionResponse(BaseModel):
    """Session snapshot returned to the UI."""
    session_id: str
    user: User
    mode: ChatMode
    state: TroubleshootingState
    pending_turn: bool
    manual_file_name: Optional[str] = None
    manual_image_count: int = 0
    messages: List[dict]


class TurnResponse(BaseModel):
    """Result of a submitted prompt or option."""
    outcome: TurnOutcome
    state: TroubleshootingState
    messages: List[dict]
