from manual_assistant.conversation import NO_MANUAL_TEXT, ConversationEngine
from manual_assistant.exceptions import EmptyResponseError, GatewayError, MalformedResponseError
from manual_assistant.manual_store import ManualStore
from manual_assistant.models import (
    ChatMode,
    MessageOption,
    MessageSender,
    TroubleshootingResponse,
    TroubleshootingState,
    TurnOutcome,
)

QUESTION = TroubleshootingResponse(question="Does the LED blink?", options=["Red", "Green", "Off"], solution=None)
SOLUTION = TroubleshootingResponse(question="", options=[], solution="Replace the coil as shown in [image 2].")


def test_prompt_without_manual_appends_one_system_message(gateway):
    engine = ConversationEngine(gateway, ManualStore())
    outcome = engine.submit_prompt("How do I start?")

    assert outcome == TurnOutcome.NO_MANUAL
    assert len(engine.messages) == 1
    assert engine.messages[0].sender == MessageSender.SYSTEM
    assert engine.messages[0].text == NO_MANUAL_TEXT
    assert gateway.stream_calls == [] and gateway.step_calls == []


def test_prompt_while_turn_in_flight_is_a_no_op(engine, gateway):
    gateway.fragments = ["first", " answer"]
    nested = []

    def submit_again(fragment):
        before = len(engine.messages)
        nested.append((engine.pending_turn, engine.submit_prompt("second question")))
        assert len(engine.messages) == before

    gateway.on_fragment_hook = submit_again
    assert engine.submit_prompt("first question") == TurnOutcome.COMPLETED

    assert nested == [(True, TurnOutcome.BUSY), (True, TurnOutcome.BUSY)]
    assert len(engine.messages) == 2
    assert not engine.pending_turn


def test_qa_stream_builds_text_and_attaches_images(engine, gateway, manual):
    gateway.fragments = ["See ", "[image 1]", " for detail."]
    updates = []
    outcome = engine.submit_prompt("Where is the power button?", on_update=updates.append)

    assert outcome == TurnOutcome.COMPLETED
    user, answer = engine.messages
    assert user.sender == MessageSender.USER and user.text == "Where is the power button?"
    assert answer.sender == MessageSender.AI
    assert answer.text == "See [image 1] for detail."
    assert answer.images == [manual.images[0]]
    assert answer.options is None and answer.is_final_step is None

    ai_texts = [message.text for message in updates if message.sender == MessageSender.AI]
    assert ai_texts == ["", "See ", "See [image 1]", "See [image 1] for detail.", "See [image 1] for detail."]
    assert gateway.stream_calls[0] == {
        "prompt": "Where is the power button?",
        "manual_text": manual.text,
        "image_count": 2,
    }


def test_qa_answer_without_markers_has_no_images_field(engine, gateway):
    gateway.fragments = ["Hold it for 3 seconds."]
    engine.submit_prompt("How long?")

    answer = engine.messages[-1]
    assert answer.images is None
    assert "images" not in answer.model_dump(exclude_none=True)


def test_troubleshooting_question_offers_options(engine, gateway):
    gateway.steps = [QUESTION]
    engine.append_system("Manual loaded")
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    outcome = engine.submit_prompt("The device does not start")

    assert outcome == TurnOutcome.COMPLETED
    answer = engine.messages[-1]
    assert answer.text == "Does the LED blink?"
    assert answer.options == [MessageOption(text=o, payload=o) for o in ["Red", "Green", "Off"]]
    assert answer.is_final_step is False
    assert engine.state == TroubleshootingState.AWAITING_CHOICE
    # System messages and the new prompt are not part of the history.
    assert gateway.step_calls[0]["history"] == []
    assert gateway.step_calls[0]["prompt"] == "The device does not start"


def test_solution_is_final_without_options(engine, gateway, manual):
    gateway.steps = [SOLUTION]
    engine.submit_prompt("Coil burnt smell", mode=ChatMode.TROUBLESHOOTING)

    answer = engine.messages[-1]
    assert answer.text == SOLUTION.solution
    assert answer.is_final_step is True
    assert answer.options is None
    assert answer.images == [manual.images[1]]
    assert engine.state == TroubleshootingState.RESOLVED


def test_option_shows_text_and_sends_payload(engine, gateway):
    gateway.steps = [QUESTION, SOLUTION]
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    engine.submit_prompt("The device does not start")

    outcome = engine.submit_option(MessageOption(text="Red", payload="Red"))

    assert outcome == TurnOutcome.COMPLETED
    assert engine.messages[-2].sender == MessageSender.USER
    assert engine.messages[-2].text == "Red"
    call = gateway.step_calls[1]
    assert call["prompt"] == "Red"
    assert [m.text for m in call["history"]] == ["The device does not start", "Does the LED blink?", "Red"]
    assert engine.state == TroubleshootingState.RESOLVED


def test_option_payload_differs_from_label(engine, gateway):
    gateway.steps = [
        TroubleshootingResponse(question="Which model?", options=["A"], solution=None),
        SOLUTION,
    ]
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    engine.submit_prompt("Help")
    # Offer a custom payload by rewriting the offered option.
    offered = engine.messages[-1]
    engine._messages[-1] = offered.model_copy(
        update={"options": [MessageOption(text="Model A", payload="model-a")]}
    )

    engine.submit_option(MessageOption(text="Model A", payload="model-a"))
    assert engine.messages[-2].text == "Model A"
    assert gateway.step_calls[1]["prompt"] == "model-a"


def test_option_rejected_outside_awaiting_choice(engine, gateway):
    option = MessageOption(text="Red", payload="Red")
    assert engine.submit_option(option) == TurnOutcome.INVALID_OPTION

    gateway.steps = [QUESTION]
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    engine.submit_prompt("Help")
    assert engine.submit_option(MessageOption(text="Blue", payload="Blue")) == TurnOutcome.INVALID_OPTION
    assert len(gateway.step_calls) == 1


def test_option_answers_question_from_per_turn_override(engine, gateway):
    gateway.steps = [QUESTION, SOLUTION]
    assert engine.mode == ChatMode.QA
    engine.submit_prompt("Help", mode=ChatMode.TROUBLESHOOTING)
    assert engine.state == TroubleshootingState.AWAITING_CHOICE

    outcome = engine.submit_option(MessageOption(text="Red", payload="Red"))

    assert outcome == TurnOutcome.COMPLETED
    assert gateway.step_calls[1]["prompt"] == "Red"
    assert engine.state == TroubleshootingState.RESOLVED
    assert engine.mode == ChatMode.QA


def test_option_still_accepted_after_switching_session_to_qa(engine, gateway):
    gateway.steps = [QUESTION, SOLUTION]
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    engine.submit_prompt("Help")
    engine.set_mode(ChatMode.QA)

    assert engine.submit_option(MessageOption(text="Green", payload="Green")) == TurnOutcome.COMPLETED
    assert engine.state == TroubleshootingState.RESOLVED


def test_blank_prompt_is_rejected_without_touching_log(engine, gateway):
    assert engine.submit_prompt("   ") == TurnOutcome.EMPTY_PROMPT
    assert engine.messages == []
    assert gateway.stream_calls == []
    assert not engine.pending_turn


def test_turn_guard_makes_submissions_busy(engine, gateway):
    with engine.turn_guard() as acquired:
        assert acquired is True
        assert engine.submit_prompt("hi") == TurnOutcome.BUSY
        with engine.turn_guard() as nested:
            assert nested is False
    assert not engine.pending_turn
    assert engine.messages == []


def test_free_text_rejected_while_awaiting_choice(engine, gateway):
    gateway.steps = [QUESTION]
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    engine.submit_prompt("Help")
    before = len(engine.messages)

    assert engine.submit_prompt("Actually something else") == TurnOutcome.AWAITING_CHOICE
    assert len(engine.messages) == before
    assert len(gateway.step_calls) == 1


def test_qa_prompt_allowed_while_awaiting_choice(engine, gateway):
    gateway.steps = [QUESTION]
    gateway.fragments = ["The LED is on the front."]
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    engine.submit_prompt("Help")

    assert engine.submit_prompt("Where is the LED?", mode=ChatMode.QA) == TurnOutcome.COMPLETED
    assert engine.state == TroubleshootingState.IDLE


def test_resolved_accepts_new_prompt_with_full_history(engine, gateway):
    gateway.steps = [SOLUTION, QUESTION]
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    engine.submit_prompt("Burnt smell")
    assert engine.state == TroubleshootingState.RESOLVED

    assert engine.submit_prompt("Now it does not charge") == TurnOutcome.COMPLETED
    assert [m.text for m in gateway.step_calls[1]["history"]] == ["Burnt smell", SOLUTION.solution]
    assert engine.state == TroubleshootingState.AWAITING_CHOICE


def test_gateway_failure_becomes_visible_message(engine, gateway):
    gateway.error = GatewayError("Could not get an answer from the AI service: timeout")
    outcome = engine.submit_prompt("Hello")

    assert outcome == TurnOutcome.COMPLETED
    answer = engine.messages[-1]
    assert answer.sender == MessageSender.AI
    assert answer.text == "Sorry, an error occurred: Could not get an answer from the AI service: timeout"
    assert answer.options is None and answer.is_final_step is None
    assert not engine.pending_turn
    assert engine.state == TroubleshootingState.IDLE


def test_distinct_messages_for_empty_and_malformed_steps(engine, gateway):
    gateway.steps = [
        EmptyResponseError("The assistant returned an empty response."),
        MalformedResponseError("The assistant replied in an unexpected format."),
    ]
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    engine.submit_prompt("one")
    engine.submit_prompt("two")

    texts = [m.text for m in engine.messages if m.sender == MessageSender.AI]
    assert texts[0].endswith("empty response.")
    assert texts[1].endswith("unexpected format.")


def test_mode_switch_keeps_history(engine, gateway):
    gateway.fragments = ["ok"]
    engine.submit_prompt("hi")
    engine.set_mode(ChatMode.TROUBLESHOOTING)
    assert len(engine.messages) == 2
    assert engine.mode == ChatMode.TROUBLESHOOTING


def test_reset_clears_log_and_state(engine, gateway):
    gateway.steps = [QUESTION]
    engine.submit_prompt("Help", mode=ChatMode.TROUBLESHOOTING)

    assert engine.reset() is True
    assert engine.messages == []
    assert engine.state == TroubleshootingState.IDLE


def test_reset_refused_during_turn(engine, gateway):
    gateway.fragments = ["x"]
    results = []
    gateway.on_fragment_hook = lambda fragment: results.append(engine.reset())
    engine.submit_prompt("hi")
    assert results == [False]
    assert len(engine.messages) == 2
