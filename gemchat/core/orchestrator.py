"""
Gemchat Turn Orchestrator
=========================

Owns one conversational turn from submission to its terminal state.

State machine:
    IDLE -> DISPATCHING -> STREAMING -> COMPLETED | CANCELLED | ERRORED

DISPATCHING publishes a placeholder model message right away, checks that
at least one API key exists and merges turn-level tool flags over the
session's. STREAMING pulls fragments from the stream executor one at a
time. Each pull races the cancellation token, so a user cancel or a
watchdog timeout aborts a hung pull immediately and closes the stream.

Terminal classification:
- SAFETY / MAX_TOKENS finish         -> ERRORED (even with partial content)
- normal end, empty visible text     -> ERRORED (silent refusal)
- watchdog expiry                    -> ERRORED (timeout)
- executor failure                   -> ERRORED (transport error)
- user cancel                        -> CANCELLED, partial content kept
- normal end with content            -> COMPLETED, suggested replies requested

Errored turns publish a short user-facing string as the message content;
the technical error is only logged.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Set, Tuple, Union

from gemchat.adapters.session_adapter import SessionAdapter
from gemchat.core.credential_rotator import CredentialRotator
from gemchat.core.endpoint_override import EndpointOverride
from gemchat.core.errors import classify_exception, outcome_message
from gemchat.core.executor import execute_stream_with_rotation, execute_with_rotation
from gemchat.core.followups import generate_chat_title, generate_suggestions
from gemchat.core.publisher import DEFAULT_PUBLISH_INTERVAL, CoalescingPublisher
from gemchat.core.response_buffer import ResponseBuffer
from gemchat.core.types import (
    PLACEHOLDER_CONTENT,
    Attachment,
    ChatMessage,
    FinishReason,
    FragmentKind,
    GenerationSettings,
    MessageRole,
    ToolConfig,
    TurnOutcome,
    TurnRequest,
    TurnState,
    TurnStatus,
)
from gemchat.core.watchdog import CancellationToken, CancelReason, StreamWatchdog

logger = logging.getLogger(__name__)

_END = object()


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class TurnSettings:
    """Per-orchestrator turn behaviour."""
    watchdog_timeout: float = 60.0
    publish_interval: float = DEFAULT_PUBLISH_INTERVAL
    reveal_reasoning: bool = False
    generate_suggestions: bool = True
    max_suggestions: int = 3
    suggestion_timeout: float = 20.0
    suggestion_model: Optional[str] = None
    auto_title_generation: bool = False
    title_model: Optional[str] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    language: str = "en"

    def __post_init__(self):
        if self.watchdog_timeout <= 0:
            raise ValueError(f"watchdog_timeout must be positive, got {self.watchdog_timeout}")
        if self.publish_interval < 0:
            raise ValueError(f"publish_interval must not be negative, got {self.publish_interval}")
        if self.max_suggestions < 1:
            raise ValueError(f"max_suggestions must be at least 1, got {self.max_suggestions}")
        if self.suggestion_timeout <= 0:
            raise ValueError(f"suggestion_timeout must be positive, got {self.suggestion_timeout}")

    @classmethod
    def from_settings(cls, settings: Any) -> "TurnSettings":
        """Build from gemchat.config.Settings."""
        return cls(
            watchdog_timeout=settings.stream_inactivity_timeout,
            publish_interval=settings.publish_interval,
            reveal_reasoning=settings.show_thoughts,
            generate_suggestions=settings.generate_suggestions,
            max_suggestions=settings.max_suggestions,
            suggestion_timeout=settings.suggestion_timeout,
            suggestion_model=settings.suggestion_model,
            auto_title_generation=settings.auto_title_generation,
            title_model=settings.title_model,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            language=settings.language,
        )


async def _pull(iterator: Any) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


# =============================================================================
# TURN ORCHESTRATOR
# =============================================================================

class TurnOrchestrator:
    """
    Drives turns for one chat session.

    Only one turn may be active at a time; callers are expected to block
    input while is_loading is True.

    USAGE:
        orchestrator = TurnOrchestrator(
            adapter=GeminiAdapter(),
            rotator=CredentialRotator(settings.api_keys),
            session=SessionAdapter(ChatSession(model="gemini-2.5-flash")),
            endpoint=settings.api_base_url,
            settings=TurnSettings.from_settings(settings),
        )

        task = orchestrator.send_message("Hello")
        ...
        orchestrator.cancel_turn()
    """

    def __init__(
        self,
        adapter: Any,
        rotator: CredentialRotator,
        session: SessionAdapter,
        endpoint: Union[EndpointOverride, str, None] = None,
        settings: Optional[TurnSettings] = None,
    ):
        self.adapter = adapter
        self.rotator = rotator
        self.session = session
        self.endpoint = endpoint if isinstance(endpoint, EndpointOverride) else EndpointOverride(endpoint)
        self.settings = settings or TurnSettings()

        self.status = TurnStatus.IDLE
        self.current_state: Optional[TurnState] = None
        self.publisher: CoalescingPublisher[TurnState] = CoalescingPublisher(self.settings.publish_interval)
        self.publisher.subscribe(self.session.apply_turn_state)

        self._token = CancellationToken()
        self._task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def is_loading(self) -> bool:
        return self.status in (TurnStatus.DISPATCHING, TurnStatus.STREAMING)

    # =========================================================================
    # INBOUND OPERATIONS
    # =========================================================================

    def submit_turn(
        self,
        history: Sequence[ChatMessage],
        new_content: str,
        attachments: Sequence[Attachment] = (),
        model: Optional[str] = None,
        tool_config: ToolConfig = ToolConfig(),
        reveal_reasoning: Optional[bool] = None,
        generation: Optional[GenerationSettings] = None,
    ) -> asyncio.Task:
        """
        Append the user message to the session and start a turn in the background.

        Progress is observed through the session record. The returned task
        resolves to the final TurnState.
        """
        is_first_message = self.session.user_message_count == 0
        self.session.append_message(ChatMessage(
            role=MessageRole.USER,
            content=new_content,
            attachments=list(attachments),
        ))

        request = TurnRequest(
            history=tuple(history),
            new_content=new_content,
            attachments=tuple(attachments),
            model=model or self.session.session.model,
            tool_config=tool_config,
            reveal_reasoning=self.settings.reveal_reasoning if reveal_reasoning is None else reveal_reasoning,
            generation=generation or self._default_generation(),
        )

        if (
            is_first_message
            and self.settings.auto_title_generation
            and new_content
            and self.rotator.total_credentials() > 0
        ):
            self._spawn(self._title(new_content, request.model))

        return self._start(request)

    def send_message(
        self,
        content: str,
        attachments: Sequence[Attachment] = (),
        tool_config: ToolConfig = ToolConfig(),
        reveal_reasoning: Optional[bool] = None,
    ) -> asyncio.Task:
        """Submit a turn using the session's own history and model."""
        return self.submit_turn(
            history=list(self.session.session.messages),
            new_content=content,
            attachments=attachments,
            tool_config=tool_config,
            reveal_reasoning=reveal_reasoning,
        )

    def regenerate(self, tool_config: ToolConfig = ToolConfig()) -> Optional[asyncio.Task]:
        """
        Drop the last model reply and run its user message again.

        Returns None when there is nothing to regenerate or a turn is active.
        """
        if self.is_loading:
            return None

        messages = self.session.session.messages
        last_model = next(
            (i for i in range(len(messages) - 1, -1, -1) if messages[i].role == MessageRole.MODEL),
            -1,
        )
        if last_model < 1 or messages[last_model - 1].role != MessageRole.USER:
            return None

        user_message = messages[last_model - 1]
        history = messages[:last_model - 1]
        self.session.truncate_from(last_model)
        logger.info(f"🔁 Regenerating reply to message {user_message.id[:8]}")
        return self._start(self._resubmit_request(history, user_message, tool_config))

    def edit_and_resubmit(
        self,
        message_id: str,
        new_content: str,
        tool_config: ToolConfig = ToolConfig(),
    ) -> Optional[asyncio.Task]:
        """
        Replace a user message, drop everything after it and run it again.

        Returns None when the message is unknown, not a user message, or a
        turn is active.
        """
        if self.is_loading:
            return None

        messages = self.session.session.messages
        index = next((i for i, m in enumerate(messages) if m.id == message_id), -1)
        if index == -1 or messages[index].role != MessageRole.USER:
            return None

        original = messages[index]
        history = messages[:index]
        edited = ChatMessage(
            role=MessageRole.USER,
            content=new_content,
            id=original.id,
            attachments=list(original.attachments),
        )
        self.session.truncate_from(index)
        self.session.append_message(edited)
        logger.info(f"✏️ Resubmitting edited message {message_id[:8]}")
        return self._start(self._resubmit_request(history, edited, tool_config))

    def cancel_turn(self) -> None:
        """Cancel the active turn. Partial content is kept; no error is shown."""
        if not self.is_loading:
            return
        logger.info("🛑 Turn cancellation requested")
        self._token.cancel(CancelReason.USER)

    async def list_models(self) -> List[str]:
        """List usable models, failing over across API keys."""
        return await execute_with_rotation(self.rotator, self.adapter.list_models, self.endpoint)

    async def drain(self) -> None:
        """Wait for the active turn and all follow-up calls to finish."""
        pending = list(self._background)
        if self._task is not None:
            pending.append(self._task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # TURN LIFECYCLE
    # =========================================================================

    def _start(self, request: TurnRequest) -> asyncio.Task:
        if self.is_loading:
            logger.warning("A turn is already active; starting another one regardless")
        state, started = self._begin(request)
        self._task = asyncio.create_task(self._drive(request, state, started))
        return self._task

    async def run_turn(self, request: TurnRequest) -> TurnState:
        """
        Run one turn to its terminal state and return the final state.

        Never raises for turn-level failures; they become the ERRORED state.
        """
        state, started = self._begin(request)
        return await self._drive(request, state, started)

    def _begin(self, request: TurnRequest) -> Tuple[TurnState, float]:
        """
        Make the turn active before any await.

        Resets the token, enters DISPATCHING and publishes the placeholder,
        so is_loading and cancel_turn() apply as soon as a turn is submitted.
        """
        started = asyncio.get_running_loop().time()
        self._token.reset()

        state = TurnState(message_id=str(uuid.uuid4()))
        self.current_state = state
        self._transition(state, TurnStatus.DISPATCHING)
        logger.info(
            f"💬 Turn {state.message_id[:8]} started: model={request.model}, "
            f"history={len(request.history)}, attachments={len(request.attachments)}, "
            f"keys={self.rotator.total_credentials()}"
        )

        self.session.clear_suggestions()
        self.session.append_message(ChatMessage(
            role=MessageRole.MODEL,
            content=PLACEHOLDER_CONTENT,
            id=state.message_id,
            thoughts="" if request.reveal_reasoning else None,
        ))
        self._publish(state, immediate=True)
        return state, started

    async def _drive(self, request: TurnRequest, state: TurnState, started: float) -> TurnState:
        # a cancel between submission and the first scheduling wins
        if self._token.is_cancelled:
            return self._finish(state, self._cancel_outcome(), started, buffer=None)

        if self.rotator.total_credentials() == 0:
            return self._finish(state, TurnOutcome.NO_CREDENTIALS, started, buffer=None)

        tool_config = request.tool_config.merged_over(self.session.session.tool_config)
        buffer = ResponseBuffer(state, reveal_reasoning=request.reveal_reasoning)
        watchdog = StreamWatchdog(self.settings.watchdog_timeout, self._token)
        error: Optional[BaseException] = None

        watchdog.start()
        try:
            payload = self.adapter.prepare(request, tool_config)
            stream = execute_stream_with_rotation(
                self.rotator,
                lambda key, transport: self.adapter.stream_payload(key, transport, request.model, payload),
                self.endpoint,
            )
            self._transition(state, TurnStatus.STREAMING)
            outcome = await self._consume(stream, state, buffer, watchdog)
        except Exception as e:
            error = e
            outcome = TurnOutcome.TIMEOUT if watchdog.fired else TurnOutcome.TRANSPORT_ERROR
        finally:
            watchdog.stop()

        return self._finish(state, outcome, started, buffer=buffer, error=error, request=request)

    async def _consume(
        self,
        stream: Any,
        state: TurnState,
        buffer: ResponseBuffer,
        watchdog: StreamWatchdog,
    ) -> TurnOutcome:
        """Pull fragments until the stream ends, a cut arrives, or the token fires."""
        iterator = stream.__aiter__()
        cancelled = asyncio.ensure_future(self._token.wait())
        try:
            while True:
                if self._token.is_cancelled:
                    return self._cancel_outcome()

                pull = asyncio.ensure_future(_pull(iterator))
                done, _ = await asyncio.wait({pull, cancelled}, return_when=asyncio.FIRST_COMPLETED)
                if pull not in done:
                    # abort the hung pull; this also closes the underlying stream
                    pull.cancel()
                    await asyncio.gather(pull, return_exceptions=True)
                    return self._cancel_outcome()

                fragment = pull.result()
                if fragment is _END:
                    break
                if self._token.is_cancelled:
                    return self._cancel_outcome()

                watchdog.reset()
                changed = buffer.add(fragment)

                if fragment.kind == FragmentKind.FINISH:
                    if fragment.finish_reason == FinishReason.SAFETY:
                        return TurnOutcome.SAFETY
                    if fragment.finish_reason == FinishReason.MAX_TOKENS:
                        return TurnOutcome.MAX_TOKENS

                if changed:
                    self._publish(state)
        finally:
            cancelled.cancel()
            await asyncio.gather(cancelled, return_exceptions=True)
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        if not buffer.has_visible_content:
            return TurnOutcome.SILENT_EMPTY
        return TurnOutcome.SUCCESS

    def _cancel_outcome(self) -> TurnOutcome:
        if self._token.reason == CancelReason.TIMEOUT:
            return TurnOutcome.TIMEOUT
        return TurnOutcome.CANCELLED

    def _finish(
        self,
        state: TurnState,
        outcome: TurnOutcome,
        started: float,
        buffer: Optional[ResponseBuffer],
        error: Optional[BaseException] = None,
        request: Optional[TurnRequest] = None,
    ) -> TurnState:
        elapsed = asyncio.get_running_loop().time() - started
        content_produced = bool(state.visible_text)
        state.outcome = outcome

        if outcome == TurnOutcome.SUCCESS:
            self._transition(state, TurnStatus.COMPLETED)
            logger.info(
                f"✅ Turn {state.message_id[:8]} completed in {elapsed:.2f}s: "
                f"{len(state.visible_text)} chars, {buffer.fragment_count} fragments"
            )
        elif outcome == TurnOutcome.CANCELLED:
            self._transition(state, TurnStatus.CANCELLED)
            logger.info(
                f"🛑 Turn {state.message_id[:8]} cancelled after {elapsed:.2f}s, "
                f"keeping {len(state.visible_text)} chars"
            )
        else:
            self._transition(state, TurnStatus.ERRORED)
            state.error_message = outcome_message(outcome, self.settings.language)
            kind = classify_exception(error).value if error is not None else outcome.value
            logger.error(
                f"❌ Turn {state.message_id[:8]} errored: outcome={outcome.value}, kind={kind}, "
                f"elapsed={elapsed:.2f}s, content_produced={content_produced}",
                exc_info=error,
            )

        self._publish(state, immediate=True)

        if (
            outcome == TurnOutcome.SUCCESS
            and self.settings.generate_suggestions
            and buffer is not None
            and buffer.has_visible_content
            and request is not None
        ):
            self._spawn(self._suggest(state.snapshot(), request))

        return state.snapshot()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _transition(self, state: TurnState, status: TurnStatus) -> None:
        logger.debug(f"Turn {state.message_id[:8]}: {state.status.value} -> {status.value}")
        state.status = status
        self.status = status

    def _publish(self, state: TurnState, immediate: bool = False) -> None:
        self.publisher.publish(state.snapshot())
        if immediate:
            self.publisher.flush()

    def _default_generation(self) -> GenerationSettings:
        return GenerationSettings(
            temperature=self.settings.temperature,
            max_output_tokens=self.settings.max_output_tokens,
            system_prompt=self.session.session.system_prompt,
        )

    def _resubmit_request(
        self,
        history: Sequence[ChatMessage],
        user_message: ChatMessage,
        tool_config: ToolConfig,
    ) -> TurnRequest:
        return TurnRequest(
            history=tuple(history),
            new_content=user_message.content,
            attachments=tuple(user_message.attachments),
            model=self.session.session.model,
            tool_config=tool_config,
            reveal_reasoning=self.settings.reveal_reasoning,
            generation=self._default_generation(),
        )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _suggest(self, state: TurnState, request: TurnRequest) -> None:
        suggestions = await generate_suggestions(
            self.adapter,
            self.rotator,
            self.settings.suggestion_model or request.model,
            user_text=request.new_content,
            model_text=state.visible_text,
            endpoint=self.endpoint,
            max_suggestions=self.settings.max_suggestions,
            timeout=self.settings.suggestion_timeout,
        )
        if not suggestions:
            return
        if self.current_state is None or self.current_state.message_id != state.message_id:
            logger.debug("Discarding suggestions for a superseded turn")
            return
        self.session.set_suggestions(suggestions)

    async def _title(self, content: str, model: str) -> None:
        title = await generate_chat_title(
            self.adapter,
            self.rotator,
            self.settings.title_model or model,
            content,
            endpoint=self.endpoint,
        )
        self.session.set_title(title)


# =============================================================================
# FACTORY
# =============================================================================

def create_turn_orchestrator(
    session: Optional[SessionAdapter] = None,
    settings: Any = None,
    adapter: Any = None,
    store: Any = None,
) -> TurnOrchestrator:
    """
    Build a TurnOrchestrator from application settings.

    Args:
        session: Session the turns will write to; a new session on
            settings.default_model when None
        settings: gemchat.config.Settings (module default when None)
        adapter: Gemini adapter; a GeminiAdapter configured from settings when None
        store: Optional key-value store persisting the rotation position

    Returns:
        Configured TurnOrchestrator
    """
    if settings is None:
        from gemchat.config import settings as default_settings
        settings = default_settings

    if session is None:
        from gemchat.adapters.session_adapter import create_chat_session
        session = create_chat_session(settings)

    if adapter is None:
        from gemchat.adapters.gemini_adapter import GeminiAdapter, GeminiConfig
        adapter = GeminiAdapter(GeminiConfig(
            max_payload_bytes=settings.max_payload_bytes,
            preferred_models=tuple(settings.preferred_models),
        ))

    return TurnOrchestrator(
        adapter=adapter,
        rotator=CredentialRotator(settings.api_keys, store=store),
        session=session,
        endpoint=settings.api_base_url,
        settings=TurnSettings.from_settings(settings),
    )
