from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class AudioChunk:
    """
    A chunk of synthesized audio.

    `audio_bytes` is Twilio-ready mu-law (8kHz) with leading padding removed.
    `segment_index` and `interaction_count` are the tags of the segment most
    recently sent to the synthesizer when the chunk arrived; the index is None
    for filler phrases and the greeting.
    """

    audio_bytes: bytes
    segment_index: Optional[int] = None
    interaction_count: int = 0
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CompletionSegment:
    """
    A span of model output destined for one synthesis-and-playback unit.

    `index` increases strictly within a session; None marks an out-of-order
    segment (tool filler phrase, greeting) that is spoken immediately.
    """

    text: str
    index: Optional[int] = None
    interaction_count: int = 0
