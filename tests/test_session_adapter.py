"""
Tests for the session record, its stores and debounced persistence.
"""

import asyncio

import pytest

from gemchat.adapters.session_adapter import (
    ChatSession,
    DebouncedSessionPersister,
    InMemoryStore,
    JsonFileStore,
    SessionAdapter,
    create_chat_session,
    create_session_persister,
    session_key,
)
from gemchat.config import Settings
from gemchat.core.orchestrator import create_turn_orchestrator
from gemchat.core.types import (
    Attachment,
    ChatMessage,
    MessageRole,
    ToolConfig,
    TurnOutcome,
    TurnState,
    TurnStatus,
)


@pytest.fixture
def adapter():
    return SessionAdapter(ChatSession(model="gemini-test"))


# =============================================================================
# SESSION ADAPTER TESTS
# =============================================================================

class TestSessionAdapter:

    def test_apply_turn_state_updates_message(self, adapter):
        adapter.append_message(ChatMessage(role=MessageRole.MODEL, content="...", id="m1"))
        state = TurnState(
            message_id="m1",
            status=TurnStatus.STREAMING,
            visible_text="Hello",
            reasoning_text="thinking",
            time_to_first_token=0.4,
            grounding={"chunks": []},
        )

        adapter.apply_turn_state(state)

        message = adapter.find_message("m1")
        assert message.content == "Hello"
        assert message.thoughts == "thinking"
        assert message.thinking_time == 0.4
        assert message.grounding_metadata == {"chunks": []}

    def test_errored_state_shows_error_message(self, adapter):
        adapter.append_message(ChatMessage(role=MessageRole.MODEL, content="...", id="m1"))
        adapter.apply_turn_state(TurnState(
            message_id="m1",
            status=TurnStatus.ERRORED,
            visible_text="partial",
            outcome=TurnOutcome.SAFETY,
            error_message="Google cut it for safety",
        ))

        message = adapter.find_message("m1")
        assert message.content == "Google cut it for safety"
        assert message.outcome == "safety"

    def test_unknown_message_is_ignored(self, adapter):
        adapter.apply_turn_state(TurnState(message_id="missing", visible_text="x"))
        assert adapter.session.messages == []

    def test_listeners_notified_and_removable(self, adapter):
        calls = []
        remove = adapter.add_listener(lambda session: calls.append(len(session.messages)))

        adapter.append_message(ChatMessage(role=MessageRole.USER, content="hi"))
        remove()
        adapter.append_message(ChatMessage(role=MessageRole.USER, content="again"))

        assert calls == [1]

    def test_truncate_from_clears_suggestions(self, adapter):
        for text in ("a", "b", "c"):
            adapter.append_message(ChatMessage(role=MessageRole.USER, content=text))
        adapter.set_suggestions(["s"])

        remaining = adapter.truncate_from(1)

        assert [m.content for m in remaining] == ["a"]
        assert adapter.session.suggestions == []

    def test_user_message_count(self, adapter):
        adapter.append_message(ChatMessage(role=MessageRole.USER, content="a"))
        adapter.append_message(ChatMessage(role=MessageRole.MODEL, content="b"))
        assert adapter.user_message_count == 1


# =============================================================================
# SERIALIZATION TESTS
# =============================================================================

class TestChatSessionSerialization:

    def test_round_trip_keeps_attachment_references_only(self):
        session = ChatSession(
            model="gemini-test",
            title="📝 Notes",
            system_prompt="Be brief.",
            tool_config=ToolConfig(google_search=True),
            messages=[ChatMessage(
                role=MessageRole.USER,
                content="see file",
                attachments=[Attachment(name="a.pdf", mime_type="application/pdf", data="QUJD", id="att-1")],
            )],
        )

        restored = ChatSession.from_dict(session.to_dict())

        assert restored.id == session.id
        assert restored.title == "📝 Notes"
        assert restored.tool_config == ToolConfig(google_search=True)
        attachment = restored.messages[0].attachments[0]
        assert attachment.id == "att-1"
        assert attachment.data is None


# =============================================================================
# STORE / PERSISTENCE TESTS
# =============================================================================

class TestStores:

    def test_json_file_store(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.save("gemchat.session.abc", {"x": 1})
        assert store.load("gemchat.session.abc") == {"x": 1}
        assert store.load("missing") is None

    def test_json_file_store_corrupt_file(self, tmp_path):
        store = JsonFileStore(tmp_path)
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        assert store.load("broken") is None


class TestDebouncedSessionPersister:

    def test_writes_through_without_loop(self, adapter):
        store = InMemoryStore()
        persister = DebouncedSessionPersister(store, delay=10)
        persister.attach(adapter)

        adapter.set_title("Title")

        assert store.load(session_key(adapter.session.id))["title"] == "Title"

    @pytest.mark.asyncio
    async def test_burst_of_changes_saved_once(self, adapter):
        store = InMemoryStore()
        persister = DebouncedSessionPersister(store, delay=0.05)
        persister.attach(adapter)

        for i in range(20):
            adapter.append_message(ChatMessage(role=MessageRole.USER, content=str(i)))
        assert persister.saves == 0

        await asyncio.sleep(0.15)

        assert persister.saves == 1
        restored = persister.load(adapter.session.id)
        assert len(restored.messages) == 20

    @pytest.mark.asyncio
    async def test_flush_saves_immediately(self, adapter):
        store = InMemoryStore()
        persister = DebouncedSessionPersister(store, delay=10)
        persister.attach(adapter)

        adapter.set_title("Now")
        persister.flush()

        assert persister.load(adapter.session.id).title == "Now"

    @pytest.mark.asyncio
    async def test_failing_store_is_logged_not_raised(self, adapter):
        class BrokenStore(InMemoryStore):
            def save(self, key, value):
                raise OSError("disk full")

        persister = DebouncedSessionPersister(BrokenStore(), delay=10)
        persister.attach(adapter)
        adapter.set_title("x")

        persister.flush()
        assert persister.saves == 0


# =============================================================================
# FACTORY TESTS
# =============================================================================

class TestFactories:

    def test_new_session_uses_default_model(self):
        settings = Settings(_env_file=None, default_model="gemini-2.5-pro")

        adapter = create_chat_session(settings, system_prompt="Be brief")

        assert adapter.session.model == "gemini-2.5-pro"
        assert adapter.session.system_prompt == "Be brief"
        assert adapter.session.messages == []

    def test_explicit_model_wins(self):
        settings = Settings(_env_file=None, default_model="gemini-2.5-pro")
        assert create_chat_session(settings, model="gemini-test").session.model == "gemini-test"

    def test_persister_uses_configured_debounce(self):
        settings = Settings(_env_file=None, persist_debounce=0.25)
        store = InMemoryStore()

        persister = create_session_persister(store, settings)

        assert persister.delay == 0.25
        assert persister.store is store

    def test_orchestrator_without_session_starts_one(self):
        settings = Settings(_env_file=None, default_model="gemini-2.5-pro", api_keys=["k1"])

        orchestrator = create_turn_orchestrator(settings=settings, adapter=object())

        assert orchestrator.session.session.model == "gemini-2.5-pro"
        assert orchestrator.rotator.total_credentials() == 1

    @pytest.mark.asyncio
    async def test_persister_from_settings_debounces(self, adapter):
        store = InMemoryStore()
        persister = create_session_persister(store, Settings(_env_file=None, persist_debounce=0.05))
        persister.attach(adapter)

        adapter.set_title("one")
        adapter.set_title("two")
        assert persister.saves == 0

        await asyncio.sleep(0.15)
        assert persister.saves == 1
        assert store.load(session_key(adapter.session.id))["title"] == "two"
