from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional

import pytest

from manual_assistant.config import BASE_DIR, Settings
from manual_assistant.conversation import ConversationEngine
from manual_assistant.database import build_engine, build_session_factory, init_db
from manual_assistant.manual_store import ManualStore
from manual_assistant.models import ImageContent, ManualContent, TroubleshootingResponse
from manual_assistant.user_store import UserStore

PROMPTS_DIR = BASE_DIR / "prompts"


class FakeGateway:
    """Scripted stand-in for AIGateway."""

    def __init__(
        self,
        fragments: Optional[List[str]] = None,
        steps: Optional[list] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.fragments = list(fragments or [])
        self.steps = list(steps or [])
        self.error = error
        self.stream_calls: List[dict] = []
        self.step_calls: List[dict] = []
        self.on_fragment_hook: Optional[Callable[[str], None]] = None

    def stream_answer(self, prompt, manual_text, manual_image_count, on_fragment) -> None:
        self.stream_calls.append(
            {"prompt": prompt, "manual_text": manual_text, "image_count": manual_image_count}
        )
        if self.error:
            raise self.error
        for fragment in self.fragments:
            on_fragment(fragment)
            if self.on_fragment_hook:
                self.on_fragment_hook(fragment)

    def structured_step(self, prompt, manual_text, history) -> TroubleshootingResponse:
        history = list(history)
        self.step_calls.append({"prompt": prompt, "manual_text": manual_text, "history": history})
        if self.error:
            raise self.error
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def make_settings(tmp_path: Path) -> Settings:
    return Settings(
        gemini_api_key="",
        gemini_model="gemini-2.5-flash",
        gemini_temperature=0.2,
        gemini_max_output_tokens=1024,
        data_dir=tmp_path,
        database_url=f"sqlite:///{tmp_path / 'users.db'}",
        prompts_dir=PROMPTS_DIR,
        max_sessions=10,
        admin_user_id="admin",
    )


@pytest.fixture
def manual() -> ManualContent:
    return ManualContent(
        text="Press the power button for 3 seconds. If the LED blinks red, replace the coil.",
        images=[
            ImageContent(src="data:image/png;base64,AAA", description="Power button"),
            ImageContent(src="data:image/png;base64,BBB", description="Coil"),
        ],
        file_name="device.docx",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def manual_store(manual) -> ManualStore:
    store = ManualStore()
    store.load(manual)
    return store


@pytest.fixture
def engine(gateway, manual_store) -> ConversationEngine:
    return ConversationEngine(gateway, manual_store, session_id="test")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def user_store(settings) -> UserStore:
    db_engine = build_engine(settings.database_url)
    init_db(db_engine)
    store = UserStore(build_session_factory(db_engine), admin_user_id=settings.admin_user_id)
    store.ensure_admin()
    yield store
    db_engine.dispose()
