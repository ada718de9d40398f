"""
Display-only coalescing of adjacent segments.

Rationale:
- Recognizers deliver fragments (one gesture, one utterance chunk)
- Captions read better when rapid same-speaker fragments form one line
- Raw segments stay in the store; entity attribution uses raw ids only

Merge rule:
- Same speaker AND same modality AND gap (next.t_start - run.t_end) <= window
- Merged confidence is the minimum of the members (pessimistic)
- The run keeps the first member's id so display keys stay stable
"""

import logging
from dataclasses import replace
from typing import Iterable, List, Optional, Tuple

from session.data_models import Segment

logger = logging.getLogger(__name__)

DEFAULT_COALESCE_WINDOW_MS = 300


def sort_by_start(segments: Iterable[Segment]) -> List[Segment]:
    """Non-mutating stable sort by t_start."""
    return sorted(segments, key=lambda s: s.t_start)


def coalesce_segments(
    segments: Iterable[Segment],
    window_ms: int = DEFAULT_COALESCE_WINDOW_MS
) -> List[Segment]:
    """
    Merge temporally adjacent same-speaker/same-modality segments.

    Algorithm (mirrors a gap-threshold interval merge):
    1. Sort by t_start
    2. Keep a current run; merge the next segment into it when speaker and
       modality match and the gap is within window_ms
    3. Otherwise close the run and start a new one

    Args:
        segments: Raw segments (any order; input is not mutated)
        window_ms: Maximum gap in ms that still merges (inclusive)

    Returns:
        New list, same length or shorter

    Example:
        Input:
            [0-100ms clinician/spoken "my chest", conf 0.9]
            [250-400ms clinician/spoken "hurts", conf 0.4]
        Output (window 300ms):
            [0-400ms clinician/spoken "my chest hurts", conf 0.4]
    """
    ordered = sort_by_start(segments)
    if len(ordered) <= 1:
        return ordered

    merged: List[Segment] = []
    current = ordered[0]

    for next_seg in ordered[1:]:
        if _can_merge(current, next_seg, window_ms):
            current = _merge_two_segments(current, next_seg)
        else:
            merged.append(current)
            current = next_seg

    merged.append(current)

    logger.debug(f"Coalesced {len(ordered)} -> {len(merged)} segments (window {window_ms}ms)")

    return merged


def _can_merge(run: Segment, seg: Segment, window_ms: int) -> bool:
    return (
        seg.speaker == run.speaker
        and seg.modality == run.modality
        and seg.t_start - run.t_end <= window_ms
    )


def _merge_two_segments(run: Segment, seg: Segment) -> Segment:
    """
    Merge seg into run (internal helper).

    Keeps run id, start and provenance; latest end; lowest confidence.
    """
    glosses = _concat_glosses(run.glosses, seg.glosses)
    return replace(
        run,
        t_end=max(run.t_end, seg.t_end),
        text=_concat_text(run.text, seg.text),
        glosses=glosses if glosses else None,
        confidence=min(run.confidence, seg.confidence),
    )


def _concat_text(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a and b:
        joiner = '' if (a[-1].isspace() or b[0].isspace()) else ' '
        return f"{a}{joiner}{b}".strip()
    return a if a is not None else b


def _concat_glosses(
    a: Optional[Tuple[str, ...]],
    b: Optional[Tuple[str, ...]]
) -> Tuple[str, ...]:
    return tuple(a or ()) + tuple(b or ())
