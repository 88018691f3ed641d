"""
Tests for payload building and history truncation.
"""

import base64

from gemchat.adapters.payload_builder import (
    LONG_TEXT_TAIL_CHARS,
    build_generation_config,
    build_message_parts,
    format_history,
    message_size,
    prepare_chat_payload,
    truncate_history,
)
from gemchat.core.types import (
    Attachment,
    ChatMessage,
    GenerationSettings,
    MessageRole,
    ToolConfig,
    TurnOutcome,
    TurnRequest,
)
from gemchat.prompts import OPTIMIZE_FORMATTING_PROMPT, THINK_DEEPER_PROMPT


PNG = base64.b64encode(b"\x89PNG fake image bytes").decode()


def _user(text, attachments=()):
    return ChatMessage(role=MessageRole.USER, content=text, attachments=list(attachments))


def _model(text, outcome=None):
    return ChatMessage(role=MessageRole.MODEL, content=text, outcome=outcome)


# =============================================================================
# TRUNCATION TESTS
# =============================================================================

class TestTruncateHistory:

    def test_everything_fits(self):
        history = [_user("a"), _model("b"), _user("c")]
        assert truncate_history(history, 10_000) == history

    def test_oldest_messages_dropped_first(self):
        history = [_user("x" * 500), _model("recent")]
        kept = truncate_history(history, message_size(history[1]) + 10)
        assert [m.content for m in kept] == ["recent"]

    def test_large_attachment_degraded_to_text(self):
        big = Attachment(name="photo.png", mime_type="image/png", data="A" * 50_000)
        message = _user("look at this", [big])
        budget = message_size(message.text_only()) + 10

        kept = truncate_history([message], budget)

        assert len(kept) == 1
        assert kept[0].content == "look at this"
        assert kept[0].attachments == []
        # the original record is left untouched
        assert message.attachments == [big]

    def test_very_long_text_trimmed_to_tail(self):
        text = "y" * (600 * 1024) + "THE END"
        kept = truncate_history([_user(text)], 10_000)

        assert len(kept) == 1
        assert len(kept[0].content) == LONG_TEXT_TAIL_CHARS
        assert kept[0].content.endswith("THE END")

    def test_stops_at_message_that_cannot_fit(self):
        history = [_user("old"), _user("z" * 5000), _model("new")]
        kept = truncate_history(history, message_size(history[2]) + 100)
        assert [m.content for m in kept] == ["new"]


# =============================================================================
# CONVERSION TESTS
# =============================================================================

class TestConversion:

    def test_errored_model_messages_not_replayed(self):
        history = [
            _user("hi"),
            _model("Google cut it for safety", outcome=TurnOutcome.SAFETY.value),
            _user("again"),
            _model("fine", outcome=TurnOutcome.SUCCESS.value),
        ]
        contents = format_history(history)
        assert [c.parts[0].text for c in contents] == ["hi", "again", "fine"]

    def test_cancelled_partial_reply_is_replayed(self):
        contents = format_history([_model("partial", outcome=TurnOutcome.CANCELLED.value)])
        assert contents[0].parts[0].text == "partial"

    def test_attachments_first_then_text(self):
        parts = build_message_parts("describe", [Attachment(name="a.png", mime_type="image/png", data=PNG)])
        assert parts[0].inline_data.mime_type == "image/png"
        assert parts[0].inline_data.data == base64.b64decode(PNG)
        assert parts[1].text == "describe"

    def test_invalid_attachments_dropped(self):
        parts = build_message_parts("text", [
            Attachment(name="never-loaded.pdf", mime_type="application/pdf"),
            Attachment(name="broken.png", mime_type="image/png", data="not base64!!"),
        ])
        assert len(parts) == 1
        assert parts[0].text == "text"


# =============================================================================
# CONFIG TESTS
# =============================================================================

class TestGenerationConfig:

    def test_tools_and_prompts_from_tool_config(self):
        config = build_generation_config(
            GenerationSettings(system_prompt="You are terse."),
            ToolConfig(google_search=True, url_context=True, optimize_formatting=True, think_deeper=True),
            reveal_reasoning=False,
        )

        assert config.tools[0].google_search is not None
        assert config.tools[1].url_context is not None
        assert config.system_instruction.startswith("You are terse.")
        assert OPTIMIZE_FORMATTING_PROMPT in config.system_instruction
        assert THINK_DEEPER_PROMPT in config.system_instruction
        assert config.thinking_config is None

    def test_minimal_config(self):
        config = build_generation_config(GenerationSettings(), ToolConfig(), reveal_reasoning=True)
        assert config.tools is None
        assert config.system_instruction is None
        assert config.thinking_config.include_thoughts is True


def test_prepare_chat_payload_appends_new_message():
    request = TurnRequest(
        history=(_user("one"), _model("two")),
        new_content="three",
        model="gemini-test",
        generation=GenerationSettings(temperature=0.2),
    )

    payload = prepare_chat_payload(request, ToolConfig())

    assert [c.role for c in payload.contents] == ["user", "model", "user"]
    assert payload.contents[-1].parts[-1].text == "three"
    assert payload.config.temperature == 0.2
    assert payload.kept_messages == 2
    assert payload.dropped_messages == 0
