"""
Gemchat Payload Builder
=======================

Shapes a TurnRequest into google-genai contents and config.

History is truncated newest-first against a byte budget:
1. A message that fits is kept as is
2. A message that only fits without its attachments is degraded to text
3. A very long text message is trimmed to its tail
4. Otherwise history stops at that message

Invalid attachments (never loaded, or not base64 strings) are dropped.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from google.genai import types

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

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_BYTES = 200 * 1024 * 1024
LONG_TEXT_BYTES = 500 * 1024
LONG_TEXT_TAIL_CHARS = 2000


@dataclass
class ChatPayload:
    """Everything the remote call needs, already in SDK types."""
    contents: List[types.Content]
    config: types.GenerateContentConfig
    kept_messages: int
    dropped_messages: int


# =============================================================================
# SIZE ACCOUNTING
# =============================================================================

def message_size(message: ChatMessage) -> int:
    """Approximate encoded size of a message as it goes on the wire."""
    parts = []
    if message.content:
        parts.append({"text": message.content})
    for attachment in message.attachments:
        if attachment.is_valid:
            parts.append({"inlineData": {"mimeType": attachment.mime_type, "data": attachment.data}})
    return len(json.dumps({"role": message.role.value, "parts": parts}, ensure_ascii=False).encode("utf-8"))


def truncate_history(history: Sequence[ChatMessage], budget: int) -> List[ChatMessage]:
    """
    Keep the newest messages that fit in `budget` bytes.

    Args:
        history: Messages oldest first
        budget: Bytes available for history

    Returns:
        Kept messages, oldest first (possibly degraded copies)
    """
    kept: List[ChatMessage] = []
    used = 0

    for index in range(len(history) - 1, -1, -1):
        message = history[index]
        size = message_size(message)
        if used + size <= budget:
            kept.insert(0, message)
            used += size
            continue

        text_only = message.text_only()
        text_size = message_size(text_only)
        if used + text_size <= budget:
            logger.warning(
                f"History truncation: message too large ({size / 1024:.1f}KB), "
                f"degraded to text ({text_size / 1024:.1f}KB)"
            )
            kept.insert(0, text_only)
            used += text_size
            continue

        if text_size > LONG_TEXT_BYTES:
            trimmed = ChatMessage(
                role=text_only.role,
                content=text_only.content[-LONG_TEXT_TAIL_CHARS:],
                id=text_only.id,
                timestamp=text_only.timestamp,
            )
            trimmed_size = message_size(trimmed)
            if used + trimmed_size <= budget:
                logger.warning(
                    f"History truncation: long text trimmed from {text_size / 1024:.1f}KB "
                    f"to {trimmed_size / 1024:.1f}KB"
                )
                kept.insert(0, trimmed)
                used += trimmed_size
                continue

        logger.warning(
            f"History truncated at index {index}: {used / 1024:.1f}KB used, "
            f"{len(kept)} messages kept"
        )
        break

    return kept


# =============================================================================
# SDK CONVERSION
# =============================================================================

def _attachment_part(attachment: Attachment) -> Optional[types.Part]:
    if not attachment.is_valid:
        logger.warning(
            f"Dropping attachment {attachment.name or '<unnamed>'} "
            f"({attachment.mime_type or 'unknown type'}): no data"
        )
        return None
    try:
        data = base64.b64decode(attachment.data, validate=True)
    except (binascii.Error, ValueError):
        logger.warning(f"Dropping attachment {attachment.name}: data is not valid base64")
        return None
    return types.Part(inline_data=types.Blob(mime_type=attachment.mime_type, data=data))


def _is_replayable(message: ChatMessage) -> bool:
    # error placeholders are display strings, not model output
    if message.role == MessageRole.MODEL and message.outcome:
        try:
            return not TurnOutcome(message.outcome).is_error
        except ValueError:
            return True
    return True


def format_history(history: Sequence[ChatMessage]) -> List[types.Content]:
    contents: List[types.Content] = []
    for message in history:
        if not _is_replayable(message):
            continue
        parts: List[types.Part] = []
        if message.content:
            parts.append(types.Part(text=message.content))
        for attachment in message.attachments:
            part = _attachment_part(attachment)
            if part is not None:
                parts.append(part)
        if parts:
            contents.append(types.Content(role=message.role.value, parts=parts))
    return contents


def build_message_parts(content: str, attachments: Sequence[Attachment]) -> List[types.Part]:
    """Parts of the new user message: attachments first, then text."""
    parts = [p for p in (_attachment_part(a) for a in attachments) if p is not None]
    if content:
        parts.append(types.Part(text=content))
    return parts


def build_system_instruction(generation: GenerationSettings, tool_config: ToolConfig) -> Optional[str]:
    sections = []
    if generation.system_prompt:
        sections.append(generation.system_prompt.strip())
    if tool_config.enabled("optimize_formatting"):
        sections.append(OPTIMIZE_FORMATTING_PROMPT)
    if tool_config.enabled("think_deeper"):
        sections.append(THINK_DEEPER_PROMPT)
    instruction = "\n\n---\n\n".join(s for s in sections if s).strip()
    return instruction or None


def build_generation_config(
    generation: GenerationSettings,
    tool_config: ToolConfig,
    reveal_reasoning: bool,
) -> types.GenerateContentConfig:
    tools: List[types.Tool] = []
    if tool_config.enabled("google_search"):
        tools.append(types.Tool(google_search=types.GoogleSearch()))
    if tool_config.enabled("url_context"):
        tools.append(types.Tool(url_context=types.UrlContext()))

    return types.GenerateContentConfig(
        system_instruction=build_system_instruction(generation, tool_config),
        temperature=generation.temperature,
        max_output_tokens=generation.max_output_tokens,
        thinking_config=types.ThinkingConfig(include_thoughts=True) if reveal_reasoning else None,
        tools=tools or None,
    )


def prepare_chat_payload(
    request: TurnRequest,
    tool_config: ToolConfig,
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
) -> ChatPayload:
    """
    Build contents and config for one turn.

    Args:
        request: The turn being sent
        tool_config: Effective (merged) tool config
        max_payload_bytes: Total byte budget for the request

    Returns:
        ChatPayload with history + new message contents and the config
    """
    config = build_generation_config(request.generation, tool_config, request.reveal_reasoning)

    new_message = ChatMessage(
        role=MessageRole.USER,
        content=request.new_content,
        attachments=list(request.attachments),
    )
    overhead = len(json.dumps(config.model_dump(exclude_none=True, mode="json")).encode("utf-8"))
    budget = max(0, max_payload_bytes - overhead - message_size(new_message))

    kept = truncate_history(request.history, budget)
    contents = format_history(kept)
    contents.append(types.Content(role=MessageRole.USER.value, parts=build_message_parts(
        request.new_content, request.attachments,
    )))

    logger.debug(
        f"Payload: {len(kept)}/{len(request.history)} history messages, "
        f"{len(request.attachments)} attachments, budget {budget / 1024:.1f}KB"
    )
    return ChatPayload(
        contents=contents,
        config=config,
        kept_messages=len(kept),
        dropped_messages=len(request.history) - len(kept),
    )
