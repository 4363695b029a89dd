"""
Accumulated utterance for the current user turn.

Critical Rule: interim fragments are display-only. Only final fragments
make it into the text sent to the response generator.
"""

import logging
from typing import List

from voicechat.models import TranscriptFragment

logger = logging.getLogger(__name__)


class UtteranceBuffer:
    """
    Collects the final fragments of one user turn plus the live interim text.

    Key Features:
    - Separate tracking of interim (UI only) and final (turn text) fragments
    - Locking while a response is outstanding so stale fragments cannot leak in
    - Display text = accumulated finals + current interim
    """

    def __init__(self):
        self._final_fragments: List[TranscriptFragment] = []
        self._current_partial_text = ""
        self._is_locked = False

    def add(self, fragment: TranscriptFragment) -> bool:
        """
        Route a fragment to the interim or final slot.

        Returns:
            False if the buffer is locked and the fragment was dropped
        """
        if fragment.is_final:
            return self.add_final(fragment)
        return self.set_partial(fragment.text)

    def set_partial(self, text: str) -> bool:
        """Replace the live interim text (UI display only)."""
        if self._is_locked:
            logger.warning("Buffer is locked - ignoring interim fragment")
            return False

        self._current_partial_text = text.strip()
        logger.debug(f"Interim fragment: {text[:50]}")
        return True

    def add_final(self, fragment: TranscriptFragment) -> bool:
        """Append a final fragment to the turn text."""
        if self._is_locked:
            logger.warning("Buffer is locked - ignoring final fragment")
            return False

        if not fragment.text.strip():
            return True

        self._final_fragments.append(fragment)
        self._current_partial_text = ""
        logger.info(f"Added final fragment: {fragment.text}")
        return True

    def get_text(self) -> str:
        """Concatenated final fragments: the text of the turn."""
        return " ".join(f.text.strip() for f in self._final_fragments).strip()

    def get_current_partial(self) -> str:
        """Most recent interim text (empty string if none)."""
        return self._current_partial_text

    def get_display_text(self) -> str:
        """What the user has said so far, including unconfirmed speech."""
        return " ".join(
            part for part in (self.get_text(), self._current_partial_text) if part
        )

    def has_text(self) -> bool:
        return bool(self.get_text())

    def lock(self):
        """Stop accepting fragments while a response is outstanding."""
        self._is_locked = True
        logger.debug("Buffer locked")

    def unlock(self):
        """Accept fragments again."""
        self._is_locked = False
        logger.debug("Buffer unlocked")

    def is_locked(self) -> bool:
        return self._is_locked

    def clear(self):
        """Drop all text and unlock."""
        self._final_fragments.clear()
        self._current_partial_text = ""
        self._is_locked = False
        logger.debug("Buffer cleared")

    def __repr__(self) -> str:
        locked_status = "locked" if self._is_locked else "unlocked"
        return f"UtteranceBuffer(final={len(self._final_fragments)}, {locked_status})"
