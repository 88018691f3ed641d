"""
Gemchat Follow-up Calls
=======================

Best-effort secondary generations that run beside a turn:

- generate_suggestions: short replies the user might send next, requested
  only after a cleanly completed turn
- generate_chat_title: title for a new chat, requested on its first message

Both use the non-streaming rotation executor and never raise: failures are
logged and turned into an empty list / a fallback title.
"""

import asyncio
import json
import logging
import re
from typing import Any, List

from google.genai import types

from gemchat.core.executor import Credentials, Endpoint, execute_with_rotation
from gemchat.prompts import SUGGESTION_PROMPT, TITLE_GENERATION_PROMPT

logger = logging.getLogger(__name__)

MAX_SUGGESTION_CHARS = 120
MAX_PROMPT_EXCERPT_CHARS = 4000
FALLBACK_TITLE = "New Chat"

SUGGESTION_CONFIG = types.GenerateContentConfig(
    response_mime_type="application/json",
    response_schema=types.Schema(
        type=types.Type.ARRAY,
        items=types.Schema(type=types.Type.STRING),
    ),
    temperature=0.7,
)

_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


# =============================================================================
# SUGGESTED REPLIES
# =============================================================================

def parse_suggestions(raw: str, limit: int) -> List[str]:
    """
    Parse model output into at most `limit` distinct short strings.

    Accepts a JSON array; falls back to one suggestion per line.
    """
    items: List[Any]
    try:
        parsed = json.loads(raw)
        items = parsed if isinstance(parsed, list) else []
    except (json.JSONDecodeError, TypeError):
        items = [_BULLET_RE.sub("", line) for line in (raw or "").splitlines()]

    suggestions: List[str] = []
    for item in items:
        if not isinstance(item, str):
            continue
        text = item.strip().strip('"').strip()
        if not text or len(text) > MAX_SUGGESTION_CHARS or text in suggestions:
            continue
        suggestions.append(text)
        if len(suggestions) >= limit:
            break
    return suggestions


async def generate_suggestions(
    adapter: Any,
    credentials: Credentials,
    model: str,
    user_text: str,
    model_text: str,
    endpoint: Endpoint = None,
    max_suggestions: int = 3,
    timeout: float = 20.0,
) -> List[str]:
    """
    Ask the model for suggested replies to a completed exchange.

    Args:
        adapter: GeminiAdapter (or compatible) providing generate_text
        credentials: Rotator or key list
        model: Model used for the sub-call
        user_text: The user message of the exchange
        model_text: The completed model reply
        endpoint: Optional endpoint override
        max_suggestions: Upper bound on returned suggestions
        timeout: Seconds before the sub-call is abandoned

    Returns:
        Up to max_suggestions strings; empty on any failure
    """
    prompt = SUGGESTION_PROMPT.format(
        count=max_suggestions,
        user=user_text[-MAX_PROMPT_EXCERPT_CHARS:],
        model=model_text[-MAX_PROMPT_EXCERPT_CHARS:],
    )

    async def operation(credential, transport):
        return await adapter.generate_text(credential, transport, model, prompt, SUGGESTION_CONFIG)

    try:
        raw = await asyncio.wait_for(
            execute_with_rotation(credentials, operation, endpoint),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(f"💡 Suggestion generation timed out after {timeout:.0f}s")
        return []
    except Exception as e:
        logger.warning(f"💡 Suggestion generation failed: {e}")
        return []

    suggestions = parse_suggestions(raw, max_suggestions)
    logger.info(f"💡 {len(suggestions)} suggested replies generated")
    return suggestions


# =============================================================================
# CHAT TITLE
# =============================================================================

def fallback_title(content: str) -> str:
    last_line = content[content.rfind("\n") + 1:] if content else ""
    return last_line[:40].strip() or FALLBACK_TITLE


def clean_title(raw: str) -> str:
    return re.sub(r"[\"'“”‘’]", "", raw or "").strip()


async def generate_chat_title(
    adapter: Any,
    credentials: Credentials,
    model: str,
    content: str,
    endpoint: Endpoint = None,
) -> str:
    """
    Generate a title for a chat from its first user message.

    Returns:
        The generated title, or a title derived from the content on failure
    """
    prompt = f"{TITLE_GENERATION_PROMPT}\n\n**CONVERSATION:**\n{content[:MAX_PROMPT_EXCERPT_CHARS]}"

    async def operation(credential, transport):
        return await adapter.generate_text(credential, transport, model, prompt)

    try:
        title = clean_title(await execute_with_rotation(credentials, operation, endpoint))
    except Exception as e:
        logger.error(f"❌ Title generation failed: {e}")
        return fallback_title(content)

    if not title:
        logger.warning("⚠️ Model returned an empty title, using fallback")
        return fallback_title(content)

    logger.info(f"✅ Title generated: {title}")
    return title
