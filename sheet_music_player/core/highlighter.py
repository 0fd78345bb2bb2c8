"""
Highlighters - Visual feedback for the notes currently sounding.
"""

import logging
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)


class Highlighter:
    """
    Receives note start/end notifications from the scheduler.

    The base class tracks which notes are lit. Subclasses render them.
    """

    def __init__(self):
        self._lit: Set[str] = set()

    @property
    def highlighted(self) -> Set[str]:
        return set(self._lit)

    def on_note_start(self, note_id: str) -> None:
        self._lit.add(note_id)

    def on_note_end(self, note_id: str) -> None:
        self._lit.discard(note_id)

    def clear_all_highlights(self) -> None:
        self._lit.clear()


class LoggingHighlighter(Highlighter):
    """Reports each note as it starts, for terminal playback."""

    def __init__(self, labels: Optional[Dict[str, str]] = None):
        """
        Args:
            labels: Display text per note ID, such as pitch names
        """
        super().__init__()
        self.labels = labels or {}

    def on_note_start(self, note_id: str) -> None:
        super().on_note_start(note_id)
        logger.info(f"{note_id} {self.labels.get(note_id, '')}".rstrip())

    def clear_all_highlights(self) -> None:
        if self._lit:
            logger.debug(f"Cleared {len(self._lit)} highlights")
        super().clear_all_highlights()
