"""
Gemchat Response Buffer
=======================

Folds stream fragments into a TurnState.

Routing rules:
- reasoning fragments are kept only when reasoning is revealed
- visible text is appended; the first piece records time-to-first-token
- grounding payloads overwrite each other (last write wins)
- a finish fragment is remembered, the caller decides what it means
"""

import logging
import time
from typing import Callable, Optional

from gemchat.core.types import FinishReason, Fragment, FragmentKind, TurnState

logger = logging.getLogger(__name__)


class ResponseBuffer:
    """Accumulates fragments of one turn into its TurnState."""

    def __init__(
        self,
        state: TurnState,
        reveal_reasoning: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.reveal_reasoning = reveal_reasoning
        self._clock = clock
        self._started_at = clock()
        self.finish_reason: Optional[FinishReason] = None
        self.fragment_count = 0
        self.discarded_reasoning = 0

    def add(self, fragment: Fragment) -> bool:
        """
        Fold one fragment into the state.

        Returns:
            True if the fragment changed something observers should see
        """
        self.fragment_count += 1

        if fragment.kind == FragmentKind.REASONING:
            if not self.reveal_reasoning:
                self.discarded_reasoning += 1
                return False
            if not fragment.text:
                return False
            self.state.reasoning_text += fragment.text
            return True

        if fragment.kind == FragmentKind.TEXT:
            if not fragment.text:
                return False
            if self.state.time_to_first_token is None:
                self.state.time_to_first_token = self._clock() - self._started_at
                logger.debug(f"First visible token after {self.state.time_to_first_token:.2f}s")
            self.state.visible_text += fragment.text
            return True

        if fragment.kind == FragmentKind.GROUNDING:
            self.state.grounding = fragment.grounding
            return True

        if fragment.kind == FragmentKind.FINISH:
            self.finish_reason = fragment.finish_reason
            return False

        return False

    @property
    def has_visible_content(self) -> bool:
        return bool(self.state.visible_text.strip())

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started_at
