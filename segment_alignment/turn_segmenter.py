"""
Conversational turn segmentation.

A turn is a maximal run of segments from one speaker without a long
silence. A new turn starts when:
- the speaker changes, or
- the gap since the previous member's end exceeds gap_ms

Read-only analytic view; it never touches the store.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from session.data_models import Segment
from session.enums import Speaker

from .coalescer import sort_by_start

logger = logging.getLogger(__name__)

DEFAULT_TURN_GAP_MS = 1500


@dataclass
class Turn:
    """
    One conversational turn.

    Attributes:
        turn_id: Sequential id (0, 1, 2, ...) in scan order
        segments: Member segments, ascending by t_start
        t_start: First member's t_start
        t_end: Last member's t_end
        speaker: Shared speaker, or None if members disagree
    """
    turn_id: int
    segments: List[Segment] = field(default_factory=list)
    t_start: int = 0
    t_end: int = 0
    speaker: Optional[Speaker] = None

    def to_dict(self) -> dict:
        return {
            'turn_id': self.turn_id,
            't_start': self.t_start,
            't_end': self.t_end,
            'speaker': self.speaker.value if self.speaker is not None else None,
            'segment_ids': [s.id for s in self.segments],
        }


def label_turns(
    segments: Iterable[Segment],
    gap_ms: int = DEFAULT_TURN_GAP_MS
) -> List[Turn]:
    """
    Group segments into turns by speaker continuity and silence gaps.

    Args:
        segments: Segments in any order (sorted internally, not mutated)
        gap_ms: Silence longer than this starts a new turn

    Returns:
        List of Turn objects in scan order

    Example:
        t_start 0, 100 (clinician) and 2000 (patient), gap_ms=1500
        -> turn 0: clinician [0, ...], turn 1: patient [2000, ...]
    """
    ordered = sort_by_start(segments)
    turns: List[Turn] = []
    current: List[Segment] = []

    for seg in ordered:
        prev = current[-1] if current else None
        if prev is None or (seg.speaker == prev.speaker and seg.t_start - prev.t_end <= gap_ms):
            current.append(seg)
        else:
            turns.append(_build_turn(len(turns), current))
            current = [seg]

    if current:
        turns.append(_build_turn(len(turns), current))

    logger.debug(f"Labelled {len(turns)} turns from {len(ordered)} segments (gap {gap_ms}ms)")

    return turns


def _build_turn(turn_id: int, members: List[Segment]) -> Turn:
    first_speaker = members[0].speaker
    shared = all(s.speaker == first_speaker for s in members)
    return Turn(
        turn_id=turn_id,
        segments=list(members),
        t_start=members[0].t_start,
        t_end=members[-1].t_end,
        speaker=first_speaker if shared else None,
    )
