from __future__ import annotations

import logging
import threading
from typing import Dict, Iterator, List, Optional

import google.generativeai as genai

from .config import Settings
from .exceptions import ConfigurationError

logger = logging.getLogger("manual_assistant.gemini")


class GeminiClient:
    """Thin wrapper around the Gemini SDK with lazy, one-time configuration."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Keep settings and defer SDK configuration to first use.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: None until the first request.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: None at construction; a missing API key raises
            ConfigurationError on the first request instead.
        If Removed: No AI turn can reach Gemini.
        Testing Notes: Construct without a key and verify the first call fails.
        """
        # Keep settings; the SDK is configured on first use.
        self._settings = settings
        self._model_name = _normalize_model_name(settings.gemini_model)
        self._configured = False
        self._lock = threading.Lock()

    def _ensure_configured(self) -> None:
        # genai.configure is process-global; run it once.
        if self._configured:
            return
        with self._lock:
            if self._configured:
                return
            if not self._settings.gemini_api_key:
                raise ConfigurationError("GEMINI_API_KEY is not set; the assistant cannot reach Gemini")
            genai.configure(api_key=self._settings.gemini_api_key)
            self._configured = True
            logger.info("gemini configured model=%s", self._model_name)

    def _model(self, system_instruction: Optional[str]) -> genai.GenerativeModel:
        self._ensure_configured()
        if not self._model_name:
            raise ConfigurationError("Gemini model name is required")
        return genai.GenerativeModel(self._model_name, system_instruction=system_instruction or None)

    def _generation_config(self, **extra: object) -> Dict[str, object]:
        config: Dict[str, object] = {
            "temperature": self._settings.gemini_temperature,
            "max_output_tokens": self._settings.gemini_max_output_tokens,
        }
        config.update(extra)
        return config

    def stream_text(self, contents: List[dict], system_instruction: Optional[str] = None) -> Iterator[str]:
        """Purpose: Stream a free-text answer chunk by chunk.
        Inputs/Outputs: Input is role-tagged contents and a system prompt; yields text chunks.
        Side Effects / State: Configures the SDK on first use.
        Dependencies: Uses genai.GenerativeModel.generate_content(stream=True).
        Failure Modes: SDK and transport errors propagate to the caller.
        If Removed: QA answers cannot be streamed.
        Testing Notes: Chunks without text parts must yield empty strings, not raise.
        """
        # Blocked or empty chunks come through as empty strings.
        model = self._model(system_instruction)
        response = model.generate_content(
            contents,
            generation_config=self._generation_config(),
            stream=True,
        )
        for chunk in response:
            yield _chunk_text(chunk)

    def generate_json(self, contents: List[dict], system_instruction: Optional[str] = None) -> str:
        """Purpose: Request a single JSON response from structured chat contents.
        Inputs/Outputs: Input is role-tagged contents and a system prompt; returns raw text.
        Side Effects / State: Configures the SDK on first use.
        Dependencies: Uses genai.GenerativeModel.generate_content with a JSON mime type.
        Failure Modes: SDK and transport errors propagate; empty output returns "".
        If Removed: Troubleshooting steps cannot be requested.
        Testing Notes: Verify response_mime_type is forwarded.
        """
        # Ask for JSON so the reply can be validated.
        model = self._model(system_instruction)
        response = model.generate_content(
            contents,
            generation_config=self._generation_config(response_mime_type="application/json"),
        )
        return _chunk_text(response)


def _chunk_text(chunk: object) -> str:
    # .text raises ValueError when the candidate has no text parts (e.g. blocked).
    try:
        text: Optional[str] = getattr(chunk, "text", None)
    except ValueError:
        return ""
    return text or ""


def _normalize_model_name(name: Optional[str]) -> str:
    """Purpose: Normalize model names by stripping prefix and whitespace.
    Inputs/Outputs: Input is a model name string; output is normalized name.
    Failure Modes: Returns empty string for falsy input.
    If Removed: Model names with a models/ prefix are sent twice-prefixed.
    Testing Notes: Ensure "models/foo" becomes "foo" and whitespace is trimmed.
    """
    # Normalize to the SDK's models/ form.
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
