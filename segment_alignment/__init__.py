"""
Segment alignment: display coalescing and turn segmentation.

This module builds read-only views over the raw segment record:
1. Coalescing adjacent same-speaker/same-modality fragments into captions
2. Grouping segments into conversational turns

Engineering approach:
- Pure functions over immutable segments (input never mutated)
- Order-independent: inputs are sorted by t_start internally
- Never used to decide what is persisted; raw segments stay authoritative
"""

from .coalescer import (
    DEFAULT_COALESCE_WINDOW_MS,
    coalesce_segments,
    sort_by_start
)
from .turn_segmenter import (
    DEFAULT_TURN_GAP_MS,
    Turn,
    label_turns
)

__all__ = [
    'DEFAULT_COALESCE_WINDOW_MS',
    'DEFAULT_TURN_GAP_MS',
    'Turn',
    'coalesce_segments',
    'label_turns',
    'sort_by_start',
]
