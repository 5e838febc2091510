"""
Transcript Buffer - per-direction caption state and acceptance rules.

The transcription stream is cumulative per utterance: every accepted update
replaces ``current_text`` wholesale. Nothing here diffs tokens.

Remote acceptance rules (evaluated in order):
    1. final fragments are always accepted (authoritative checkpoints)
    2. text identical to the previous text is a duplicate
    3. a shorter text contained in the previous text is a stale partial
       delivered after a longer one
    4. anything else is accepted
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from caption_call.config.constants import DISPLAY_WINDOW_WORDS


class Direction(str, Enum):
    MINE = "mine"
    REMOTE = "remote"


class FragmentVerdict(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REGRESSION = "regression"


@dataclass(frozen=True)
class CaptionFragment:
    """A caption fragment as carried across the signal channel."""
    text: str
    language: str
    is_final: bool = False


def last_n_words(text: str, n: int = DISPLAY_WINDOW_WORDS) -> str:
    """Return the last ``n`` whitespace-separated words joined by single spaces."""
    words = text.split()
    if n <= 0:
        return ""
    return " ".join(words[-n:])


@dataclass
class TranscriptBuffer:
    """Caption state for one direction of the call."""
    direction: Direction
    current_text: str = ""
    previous_text: str = ""
    last_final_text: str = ""
    pending_partial_text: str = ""
    last_update_at: float = 0.0
    display_text: str = ""

    @property
    def expiry_key(self) -> str:
        """Timer key of this buffer's expiry."""
        return f"expiry:{self.direction.value}"

    def is_duplicate(self, text: str) -> bool:
        return text == self.previous_text

    def evaluate_remote(self, fragment: CaptionFragment) -> FragmentVerdict:
        """Apply the remote acceptance rules to an inbound fragment."""
        if fragment.is_final:
            return FragmentVerdict.ACCEPTED
        if fragment.text == self.previous_text:
            return FragmentVerdict.DUPLICATE
        if (
            len(fragment.text) < len(self.previous_text)
            and fragment.text in self.previous_text
        ):
            return FragmentVerdict.REGRESSION
        return FragmentVerdict.ACCEPTED

    def replace(self, text: str, now: float):
        """Accept ``text`` as the new cumulative transcript."""
        self.current_text = text
        self.previous_text = text
        self.last_update_at = now

    def display_window(self, source: Optional[str] = None, n: int = DISPLAY_WINDOW_WORDS) -> str:
        """Trailing words of ``source`` (defaults to the current text)."""
        return last_n_words(self.current_text if source is None else source, n)

    def clear(self):
        self.current_text = ""
        self.previous_text = ""
        self.last_final_text = ""
        self.pending_partial_text = ""
        self.last_update_at = 0.0
        self.display_text = ""
