"""
Gemchat Credential Rotator
==========================

Enumerates API keys for the rotation executors.

The rotator only hands out candidates; it owns no retries or backoff.
Affinity is sticky: after a successful call, the next call starts from the
key that succeeded instead of from index 0.

USAGE:
    rotator = CredentialRotator(["key-a", "key-b", "key-c"])

    key = rotator.next()        # "key-a", position advances
    ...                         # call fails, try again
    key = rotator.next()        # "key-b"
    rotator.record_success()    # next call starts at "key-b"
"""

import logging
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_STATE_KEY = "gemchat.rotator.success_index"


def mask_credential(credential: str) -> str:
    """Loggable form of a secret: only its last four characters."""
    return f"...{credential[-4:]}" if credential else "<empty>"


class CredentialRotator:
    """
    Ordered credential set with a remembered starting position.

    Invariant: the position is always a valid index of the current set,
    or 0 when the set is empty.
    """

    def __init__(
        self,
        credentials: Sequence[str],
        store: Optional[Any] = None,
        state_key: str = DEFAULT_STATE_KEY,
    ):
        """
        Initialize the rotator.

        Args:
            credentials: Ordered API keys (blank entries are dropped)
            store: Optional key-value store used to persist the success index
            state_key: Key under which the success index is stored
        """
        self._credentials: List[str] = _clean(credentials)
        self._store = store
        self._state_key = state_key
        self._position = 0
        self._last_index: Optional[int] = None

        if store is not None:
            saved = store.load(state_key)
            if isinstance(saved, int) and 0 <= saved < len(self._credentials):
                self._position = saved
                logger.debug(f"Restored rotation position {saved}")

    # =========================================================================
    # ROTATION
    # =========================================================================

    def next(self) -> str:
        """
        Return the credential at the current position and advance (wrapping).

        Raises:
            IndexError: If the credential set is empty
        """
        if not self._credentials:
            raise IndexError("credential set is empty")

        index = self._position
        self._last_index = index
        self._position = (index + 1) % len(self._credentials)
        return self._credentials[index]

    def record_success(self) -> None:
        """Pin the most recently handed out credential as the next start."""
        if self._last_index is None:
            return
        self._position = self._last_index
        if self._store is not None:
            self._store.save(self._state_key, self._position)
        logger.debug(f"Rotation position pinned at {self._position}")

    # =========================================================================
    # STATE ACCESS
    # =========================================================================

    def total_credentials(self) -> int:
        return len(self._credentials)

    @property
    def position(self) -> int:
        """Index the next call to next() will hand out."""
        return self._position

    @property
    def credentials(self) -> List[str]:
        return list(self._credentials)

    def update_credentials(self, credentials: Sequence[str]) -> None:
        """Replace the credential set, resetting the position if it no longer fits."""
        self._credentials = _clean(credentials)
        self._last_index = None
        if self._position >= len(self._credentials):
            self._position = 0


def _clean(credentials: Sequence[str]) -> List[str]:
    return [c.strip() for c in credentials if c and c.strip()]
