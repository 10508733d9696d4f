"""
Playback mark tracking and barge-in detection.

Every audio chunk relayed to Twilio is followed by a mark. Twilio echoes the
mark once the chunk has played, so the set of outstanding marks is exactly the
audio that is queued on the caller's side and not yet heard.
"""

from dataclasses import dataclass
from typing import List, Optional

# Interim transcripts at or below this length are treated as noise, not barge-in.
MIN_BARGE_IN_CHARS = 5


@dataclass(frozen=True)
class Mark:
    """Playback acknowledgment token for one relayed chunk."""
    label: str
    segment_index: Optional[int] = None


@dataclass
class MarkStats:
    sent: int = 0
    acknowledged: int = 0
    cleared: int = 0

    @property
    def in_flight(self) -> int:
        return self.sent - self.acknowledged - self.cleared


class PlaybackTracker:
    """Ordered collection of outstanding marks for one call."""

    def __init__(self, min_barge_in_chars: int = MIN_BARGE_IN_CHARS):
        self.min_barge_in_chars = min_barge_in_chars
        self._outstanding: List[Mark] = []
        self._sequence = 0
        self._stats = MarkStats()

    @property
    def outstanding(self) -> List[Mark]:
        return list(self._outstanding)

    @property
    def has_outstanding(self) -> bool:
        return bool(self._outstanding)

    @property
    def stats(self) -> MarkStats:
        return self._stats

    def register(self, segment_index: Optional[int] = None) -> Mark:
        """Create the mark for a chunk that is about to be relayed."""
        self._sequence += 1
        mark = Mark(label=f"m{self._sequence}", segment_index=segment_index)
        self._outstanding.append(mark)
        self._stats.sent += 1
        return mark

    def acknowledge(self, label: str) -> Optional[Mark]:
        """
        Remove the first outstanding mark with this label.

        Returns the removed mark, or None if nothing matched (late acks after a
        clear land here).
        """
        for i, mark in enumerate(self._outstanding):
            if mark.label == label:
                del self._outstanding[i]
                self._stats.acknowledged += 1
                return mark
        return None

    def clear(self) -> int:
        """Drop every outstanding mark. Returns how many were dropped."""
        dropped = len(self._outstanding)
        self._outstanding.clear()
        self._stats.cleared += dropped
        return dropped

    def is_barge_in(self, interim_text: Optional[str]) -> bool:
        """
        Barge-in heuristic: the caller is audibly talking over queued agent audio.
        """
        if not self._outstanding:
            return False
        return len((interim_text or "").strip()) > self.min_barge_in_chars
