import dataclasses

import pytest

from manual_assistant import gemini_client
from manual_assistant.exceptions import ConfigurationError
from manual_assistant.gemini_client import GeminiClient, _normalize_model_name


class FakeChunk:
    def __init__(self, text=None, blocked=False):
        self._text = text
        self._blocked = blocked

    @property
    def text(self):
        if self._blocked:
            raise ValueError("no text parts")
        return self._text


class FakeModel:
    instances = []

    def __init__(self, model_name, system_instruction=None):
        self.model_name = model_name
        self.system_instruction = system_instruction
        self.calls = []
        FakeModel.instances.append(self)

    def generate_content(self, contents, generation_config=None, stream=False):
        self.calls.append({"contents": contents, "generation_config": generation_config, "stream": stream})
        if stream:
            return iter([FakeChunk("Hello"), FakeChunk(blocked=True), FakeChunk(" world")])
        return FakeChunk('{"question": "Q?", "options": [], "solution": null}')


@pytest.fixture
def fake_sdk(monkeypatch):
    configured = []
    FakeModel.instances = []
    monkeypatch.setattr(gemini_client.genai, "configure", lambda **kwargs: configured.append(kwargs))
    monkeypatch.setattr(gemini_client.genai, "GenerativeModel", FakeModel)
    return configured


def test_missing_key_fails_at_first_use_not_construction(settings, fake_sdk):
    client = GeminiClient(settings)
    with pytest.raises(ConfigurationError):
        client.generate_json([], "instruction")
    with pytest.raises(ConfigurationError):
        next(client.stream_text([], "instruction"))
    assert fake_sdk == []


def test_sdk_is_configured_once(settings, fake_sdk):
    client = GeminiClient(dataclasses.replace(settings, gemini_api_key="secret"))
    client.generate_json([{"role": "user", "parts": [{"text": "hi"}]}], "be brief")
    list(client.stream_text([], "be brief"))

    assert fake_sdk == [{"api_key": "secret"}]
    assert FakeModel.instances[0].system_instruction == "be brief"


def test_generate_json_requests_json_mime_type(settings, fake_sdk):
    client = GeminiClient(dataclasses.replace(settings, gemini_api_key="secret"))
    raw = client.generate_json([], "instruction")

    config = FakeModel.instances[0].calls[0]["generation_config"]
    assert config["response_mime_type"] == "application/json"
    assert config["max_output_tokens"] == settings.gemini_max_output_tokens
    assert raw.startswith("{")


def test_stream_text_tolerates_chunks_without_text(settings, fake_sdk):
    client = GeminiClient(dataclasses.replace(settings, gemini_api_key="secret"))
    assert list(client.stream_text([], None)) == ["Hello", "", " world"]
    assert FakeModel.instances[0].calls[0]["stream"] is True


def test_normalize_model_name():
    assert _normalize_model_name(" models/gemini-2.5-flash ") == "gemini-2.5-flash"
    assert _normalize_model_name(None) == ""
