"""
Visit session state: segments, entities and the visit lifecycle.

The store is the single source of truth for raw observations:
- Idempotent inserts (duplicate ids are no-ops)
- Segment view always sorted by t_start, regardless of arrival order
- Collections are cleared only when a visit starts or resets
"""

from .enums import EntityType, Modality, Speaker, VisitStatus
from .data_models import (
    Entity,
    EntityValidationError,
    Segment,
    SegmentValidationError,
    VisitState,
    coerce_ms,
    new_id,
    now_ms,
    validate_entity,
    validate_segment,
)
from .store import SegmentStore, VisitTransitionError

__all__ = [
    'Entity',
    'EntityType',
    'EntityValidationError',
    'Modality',
    'Segment',
    'SegmentStore',
    'SegmentValidationError',
    'Speaker',
    'VisitState',
    'VisitStatus',
    'VisitTransitionError',
    'coerce_ms',
    'new_id',
    'now_ms',
    'validate_entity',
    'validate_segment',
]
