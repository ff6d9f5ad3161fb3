"""Gemini-facing gateway for the two assistant call shapes.

Role:
    Builds the grounding instructions, maps conversation history to Gemini
    turns, and turns raw model output into fragments or a structured
    troubleshooting step. Every transport failure leaves this module as a
    GatewayError; nothing is retried.

Call shapes:
    QA:
        Free-text answer streamed fragment by fragment to the caller.
    Troubleshooting:
        One JSON object {"question", "options", "solution"} per turn.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Protocol

from pydantic import ValidationError

from .exceptions import AssistantError, EmptyResponseError, GatewayError, MalformedResponseError
from .models import Message, MessageSender, TroubleshootingResponse
from .prompt_loader import load_prompt, render_prompt

logger = logging.getLogger("manual_assistant.gateway")

FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)


class CompletionClient(Protocol):
    def stream_text(self, contents: List[dict], system_instruction: str) -> Iterable[str]: ...

    def generate_json(self, contents: List[dict], system_instruction: str) -> str: ...


class AIGateway:
    """Uniform interface over streaming QA and structured troubleshooting calls."""

    def __init__(self, client: CompletionClient, prompts_dir: Path) -> None:
        self._client = client
        self._prompts_dir = prompts_dir

    def build_qa_instruction(self, manual_text: str, manual_image_count: int) -> str:
        """Purpose: Compose the QA system instruction with the manual as grounding.
        Inputs/Outputs: Input is manual text and image count; returns the instruction.
        Side Effects / State: Reads prompt files from prompts_dir.
        Dependencies: Uses load_prompt and render_prompt.
        Failure Modes: Missing prompt files raise FileNotFoundError.
        If Removed: QA answers lose the manual context and image marker guidance.
        Testing Notes: Zero images must switch to the no-images wording.
        """
        # Pick the image wording first, then fill the system template.
        if manual_image_count > 0:
            image_instructions = render_prompt(
                load_prompt(self._prompts_dir / "qa_images.txt").strip(),
                image_count=str(manual_image_count),
            )
        else:
            image_instructions = load_prompt(self._prompts_dir / "qa_no_images.txt").strip()
        template = load_prompt(self._prompts_dir / "qa_system.txt")
        return render_prompt(template, image_instructions=image_instructions, manual_text=manual_text)

    def build_troubleshooting_instruction(self, manual_text: str) -> str:
        template = load_prompt(self._prompts_dir / "troubleshooting_system.txt")
        return render_prompt(template, manual_text=manual_text)

    def iter_answer(self, prompt: str, manual_text: str, manual_image_count: int) -> Iterator[str]:
        """Yield non-empty answer fragments in arrival order."""
        system_instruction = self.build_qa_instruction(manual_text, manual_image_count)
        contents = [_turn("user", prompt)]
        logger.info("qa request prompt_chars=%s images=%s", len(prompt), manual_image_count)
        try:
            for fragment in self._client.stream_text(contents, system_instruction):
                if fragment:
                    yield fragment
        except AssistantError:
            raise
        except Exception as exc:
            logger.warning("qa stream failed: %s", exc)
            raise GatewayError(f"Could not get an answer from the AI service: {exc}") from exc

    def stream_answer(
        self,
        prompt: str,
        manual_text: str,
        manual_image_count: int,
        on_fragment: Callable[[str], None],
    ) -> None:
        """Purpose: Stream a grounded free-text answer to a callback.
        Inputs/Outputs: Input is the question, manual text, image count and a
            fragment callback; no return value.
        Side Effects / State: Invokes on_fragment synchronously per fragment.
        Dependencies: Uses iter_answer and the injected completion client.
        Failure Modes: Transport errors raise GatewayError; ConfigurationError
            propagates unchanged.
        If Removed: QA mode cannot answer questions.
        Testing Notes: Fragments must arrive in order with empty chunks dropped.
        """
        # Forward fragments in arrival order.
        for fragment in self.iter_answer(prompt, manual_text, manual_image_count):
            on_fragment(fragment)

    def structured_step(
        self,
        prompt: str,
        manual_text: str,
        history: Iterable[Message],
    ) -> TroubleshootingResponse:
        """Purpose: Run one troubleshooting turn and parse the structured reply.
        Inputs/Outputs: Input is the prompt, manual text and prior messages;
            returns a TroubleshootingResponse.
        Side Effects / State: None beyond the remote call.
        Dependencies: Uses build_history_contents and parse_troubleshooting_response.
        Failure Modes: GatewayError on transport failure, EmptyResponseError on
            blank output, MalformedResponseError on unparseable output.
        If Removed: Troubleshooting mode has no next step to show.
        Testing Notes: Fenced and unfenced JSON must parse identically.
        """
        # Map history to roles and call the JSON endpoint.
        system_instruction = self.build_troubleshooting_instruction(manual_text)
        contents = build_history_contents(history)
        contents.append(_turn("user", prompt))
        logger.info("troubleshooting request prompt_chars=%s turns=%s", len(prompt), len(contents))
        try:
            raw = self._client.generate_json(contents, system_instruction)
        except AssistantError:
            raise
        except Exception as exc:
            logger.warning("troubleshooting request failed: %s", exc)
            raise GatewayError(f"Could not get a troubleshooting step from the AI service: {exc}") from exc
        return parse_troubleshooting_response(raw)


def build_history_contents(history: Iterable[Message]) -> List[dict]:
    """Map user/AI messages to Gemini turns; system messages are dropped."""
    contents: List[dict] = []
    for message in history:
        if message.sender == MessageSender.SYSTEM:
            continue
        role = "user" if message.sender == MessageSender.USER else "model"
        contents.append(_turn(role, message.text))
    return contents


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    match = FENCE_RE.match(cleaned)
    if match and match.group(1):
        return match.group(1).strip()
    return cleaned


def parse_troubleshooting_response(raw: Optional[str]) -> TroubleshootingResponse:
    """Purpose: Convert raw model output into a TroubleshootingResponse.
    Inputs/Outputs: Input is the raw response text; output is the parsed step.
    Side Effects / State: None; pure function.
    Dependencies: Uses strip_code_fence, json.loads and pydantic validation.
    Failure Modes: EmptyResponseError for blank input; MalformedResponseError
        for non-JSON, non-object, or wrongly typed payloads.
    If Removed: Model replies reach the engine unvalidated.
    Testing Notes: Feed ```json fenced output and "not json".
    """
    # Empty replies fail first; a markdown fence is stripped before decoding.
    if not raw or not raw.strip():
        raise EmptyResponseError("The assistant returned an empty response.")
    payload = strip_code_fence(raw)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        logger.warning("unparseable troubleshooting response: %s", payload[:200])
        raise MalformedResponseError("The assistant replied in an unexpected format.") from exc
    if not isinstance(data, dict):
        raise MalformedResponseError("The assistant replied in an unexpected format.")
    try:
        return TroubleshootingResponse.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponseError("The assistant replied in an unexpected format.") from exc


def _turn(role: str, text: str) -> dict:
    return {"role": role, "parts": [{"text": text}]}
