"""
Gemchat Gemini Adapter
======================

Wraps google-genai SDK calls behind the (credential, transport) operation
shape the rotation executors expect.

Key Responsibilities:
1. Create one SDK client per attempt, routed through the attempt's transport
2. Convert streamed GenerateContentResponse chunks into Fragments
3. Plain text generation for follow-up calls (suggestions, titles)
4. Model listing

Design Principle: the orchestrator never touches SDK types. Tests replace
this adapter with a fake exposing the same coroutine methods.
"""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from google import genai
from google.genai import types

from gemchat.adapters.payload_builder import (
    DEFAULT_MAX_PAYLOAD_BYTES,
    ChatPayload,
    prepare_chat_payload,
)
from gemchat.core.endpoint_override import Transport
from gemchat.core.types import FinishReason, Fragment, ToolConfig, TurnRequest

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class GeminiConfig:
    """Configuration for GeminiAdapter."""
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES
    preferred_models: Sequence[str] = ()


_FINISH_REASONS: Dict[str, FinishReason] = {
    "STOP": FinishReason.STOP,
    "SAFETY": FinishReason.SAFETY,
    "MAX_TOKENS": FinishReason.MAX_TOKENS,
}


def map_finish_reason(raw: Any) -> Optional[FinishReason]:
    """Normalize an SDK finish reason; unknown non-empty reasons become OTHER."""
    if raw is None:
        return None
    name = getattr(raw, "value", raw)
    name = str(name).upper()
    if name in ("", "FINISH_REASON_UNSPECIFIED"):
        return None
    return _FINISH_REASONS.get(name, FinishReason.OTHER)


def _plain(payload: Any) -> Any:
    dump = getattr(payload, "model_dump", None)
    if dump is not None:
        return dump(exclude_none=True, mode="json")
    return payload


def chunk_to_fragments(chunk: Any) -> List[Fragment]:
    """
    Translate one streamed response chunk into ordered fragments.

    Order within a chunk: reasoning/text parts, grounding, finish signal.
    A prompt-level block is reported as a SAFETY finish.
    """
    fragments: List[Fragment] = []

    feedback = getattr(chunk, "prompt_feedback", None)
    if feedback is not None and getattr(feedback, "block_reason", None):
        logger.warning(f"🚫 Prompt blocked by provider: {feedback.block_reason}")
        fragments.append(Fragment.finish(FinishReason.SAFETY))
        return fragments

    candidates = getattr(chunk, "candidates", None) or []
    if not candidates:
        return fragments
    candidate = candidates[0]

    content = getattr(candidate, "content", None)
    for part in (getattr(content, "parts", None) or []):
        text = getattr(part, "text", None)
        if not text:
            continue
        if getattr(part, "thought", False):
            fragments.append(Fragment.reasoning(text))
        else:
            fragments.append(Fragment.visible(text))

    grounding = getattr(candidate, "grounding_metadata", None)
    if grounding is not None:
        fragments.append(Fragment.citations(_plain(grounding)))

    reason = map_finish_reason(getattr(candidate, "finish_reason", None))
    if reason is not None:
        fragments.append(Fragment.finish(reason))

    return fragments


# =============================================================================
# GEMINI ADAPTER
# =============================================================================

class GeminiAdapter:
    """
    Adapter for the Gemini API.

    USAGE:
        adapter = GeminiAdapter()
        payload = adapter.prepare(request, tool_config)

        stream = execute_stream_with_rotation(
            rotator,
            lambda key, transport: adapter.stream_payload(key, transport, request.model, payload),
            endpoint,
        )
    """

    def __init__(self, config: Optional[GeminiConfig] = None):
        self.config = config or GeminiConfig()

    def create_client(self, credential: str, transport: Transport) -> genai.Client:
        return genai.Client(api_key=credential, http_options=transport.http_options())

    def prepare(self, request: TurnRequest, tool_config: ToolConfig) -> ChatPayload:
        payload = prepare_chat_payload(request, tool_config, self.config.max_payload_bytes)
        if payload.dropped_messages:
            logger.info(f"📉 {payload.dropped_messages} history messages dropped to fit payload budget")
        return payload

    # =========================================================================
    # STREAMING
    # =========================================================================

    async def stream_payload(
        self,
        credential: str,
        transport: Transport,
        model: str,
        payload: ChatPayload,
    ) -> AsyncIterator[Fragment]:
        """Open a streaming generation and yield its fragments."""
        client = self.create_client(credential, transport)
        stream = await client.aio.models.generate_content_stream(
            model=model,
            contents=payload.contents,
            config=payload.config,
        )
        async for chunk in stream:
            for fragment in chunk_to_fragments(chunk):
                yield fragment

    # =========================================================================
    # NON-STREAMING
    # =========================================================================

    async def generate_text(
        self,
        credential: str,
        transport: Transport,
        model: str,
        prompt: str,
        config: Optional[types.GenerateContentConfig] = None,
    ) -> str:
        client = self.create_client(credential, transport)
        response = await client.aio.models.generate_content(
            model=model,
            contents=prompt,
            config=config,
        )
        return response.text or ""

    async def list_models(self, credential: str, transport: Transport) -> List[str]:
        """
        List Gemini models usable for generateContent.

        When preferred_models is configured, returns their intersection with
        the available models in the preferred order.
        """
        client = self.create_client(credential, transport)
        available: List[str] = []
        async for model in await client.aio.models.list():
            name = (getattr(model, "name", "") or "").replace("models/", "")
            actions = getattr(model, "supported_actions", None) or []
            if name.startswith("gemini") and "generateContent" in actions:
                available.append(name)

        if self.config.preferred_models:
            wanted = set(available)
            return [m for m in self.config.preferred_models if m in wanted]
        return available
