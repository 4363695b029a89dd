"""
Lexical wake/termination phrase detection.

No acoustic model: phrases are matched by substring on already-transcribed
text. Each intent lists several surface forms (Settings.wake_phrases and
Settings.termination_phrases), including ASCII-folded and clipped
spellings, because the recognizer does not spell Turkish consistently.
Run on interim fragments too so the triggered behavior fires early.
"""

import re
from typing import Iterable, Optional, Sequence

from voicechat.config import settings

_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, trim and collapse runs of whitespace."""
    return _WHITESPACE.sub(" ", text.lower().strip())


def matches(text: str, phrases: Iterable[str]) -> bool:
    """Check if any phrase occurs in the normalized text."""
    normalized = normalize(text)
    if not normalized:
        return False
    return any(normalize(phrase) in normalized for phrase in phrases)


class PhraseDetector:
    """Holds the two phrase sets of a session (configured sets by default)."""

    def __init__(
        self,
        wake_phrases: Optional[Sequence[str]] = None,
        termination_phrases: Optional[Sequence[str]] = None,
    ):
        self.wake_phrases = tuple(
            normalize(p) for p in (wake_phrases if wake_phrases is not None else settings.wake_phrases)
        )
        self.termination_phrases = tuple(
            normalize(p)
            for p in (termination_phrases if termination_phrases is not None else settings.termination_phrases)
        )

    def is_wake(self, text: str) -> bool:
        return matches(text, self.wake_phrases)

    def is_termination(self, text: str) -> bool:
        return matches(text, self.termination_phrases)

    def __repr__(self) -> str:
        return (
            f"PhraseDetector(wake={len(self.wake_phrases)}, "
            f"termination={len(self.termination_phrases)})"
        )
