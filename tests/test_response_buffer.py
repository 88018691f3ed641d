"""
Tests for ResponseBuffer fragment routing.
"""

from gemchat.core.response_buffer import ResponseBuffer
from gemchat.core.types import FinishReason, Fragment, TurnState


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _buffer(reveal=False):
    clock = FakeClock()
    return ResponseBuffer(TurnState(message_id="m1"), reveal_reasoning=reveal, clock=clock), clock


class TestResponseBuffer:

    def test_visible_text_accumulates_in_order(self):
        buffer, _ = _buffer()
        for text in ("a", "b", "c"):
            assert buffer.add(Fragment.visible(text))
        assert buffer.state.visible_text == "abc"

    def test_time_to_first_token_recorded_once(self):
        buffer, clock = _buffer()
        clock.now = 101.5
        buffer.add(Fragment.visible("first"))
        clock.now = 105.0
        buffer.add(Fragment.visible("second"))
        assert buffer.state.time_to_first_token == 1.5

    def test_reasoning_discarded_when_hidden(self):
        buffer, _ = _buffer(reveal=False)
        assert buffer.add(Fragment.reasoning("secret")) is False
        assert buffer.state.reasoning_text == ""
        assert buffer.discarded_reasoning == 1

    def test_reasoning_kept_when_revealed(self):
        buffer, _ = _buffer(reveal=True)
        buffer.add(Fragment.reasoning("step "))
        buffer.add(Fragment.reasoning("two"))
        assert buffer.state.reasoning_text == "step two"
        assert buffer.state.time_to_first_token is None

    def test_grounding_last_write_wins(self):
        buffer, _ = _buffer()
        buffer.add(Fragment.citations({"a": 1}))
        buffer.add(Fragment.citations({"b": 2}))
        assert buffer.state.grounding == {"b": 2}

    def test_finish_is_remembered_not_published(self):
        buffer, _ = _buffer()
        assert buffer.add(Fragment.finish(FinishReason.MAX_TOKENS)) is False
        assert buffer.finish_reason == FinishReason.MAX_TOKENS

    def test_whitespace_is_not_visible_content(self):
        buffer, _ = _buffer()
        buffer.add(Fragment.visible("  \n"))
        assert not buffer.has_visible_content
        assert buffer.fragment_count == 1
