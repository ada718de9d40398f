"""
Core data models for the visit capture core.

Segments and entities are immutable once created. Derived views
(coalesced captions, turns, HPI lines) build new objects and never
modify the stored ones.

Time model:
- Segment times are integer milliseconds relative to the visit start
- Absolute wall-clock time stays inside VisitState.started_at
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .enums import EntityType, Modality, Speaker, VisitStatus


class SegmentValidationError(ValueError):
    """Raised when a producer hands over a segment that breaks an invariant."""


class EntityValidationError(ValueError):
    """Raised when an entity is missing its id, type or source segment."""


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def coerce_ms(value: Any) -> Optional[int]:
    """
    Convert a producer-supplied timestamp to integer ms (None passes through).

    Raises:
        ValueError: If the value is not a finite number
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    try:
        return int(value)
    except (TypeError, OverflowError) as e:
        raise ValueError(f"Invalid timestamp: {value!r}") from e


def new_id(prefix: str = "id") -> str:
    """Generate an opaque unique id, e.g. ``sign_1718000000000_3f2a...``."""
    return f"{prefix}_{now_ms()}_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Segment:
    """
    One observed communicative event.

    Attributes:
        id: Opaque unique identifier (immutable)
        speaker: Speaker.PATIENT or Speaker.CLINICIAN
        modality: Modality.SIGNED or Modality.SPOKEN
        t_start: Start in ms relative to visit start
        t_end: End in ms relative to visit start (>= t_start)
        text: Transcribed or mapped utterance text
        glosses: Ordered gloss tokens (sign decomposition)
        confidence: Confidence in [0, 1]
        provenance: Diagnostic payload, carried through untouched
    """
    id: str
    speaker: Speaker
    modality: Modality
    t_start: int
    t_end: int
    text: Optional[str] = None
    glosses: Optional[Tuple[str, ...]] = None
    confidence: float = 1.0
    provenance: Optional[Dict[str, Any]] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation."""
        return {
            'id': self.id,
            'speaker': self.speaker.value,
            'modality': self.modality.value,
            't_start': self.t_start,
            't_end': self.t_end,
            'text': self.text,
            'glosses': list(self.glosses) if self.glosses is not None else None,
            'confidence': self.confidence,
            'provenance': self.provenance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Segment':
        """
        Build a segment from a plain dict (API bodies, replay logs).

        Raises:
            SegmentValidationError: If required keys are missing or enum
                values are unknown
        """
        try:
            glosses = data.get('glosses')
            return cls(
                id=data.get('id') or new_id('seg'),
                speaker=Speaker(data['speaker']),
                modality=Modality(data['modality']),
                t_start=int(data['t_start']),
                t_end=int(data['t_end']),
                text=data.get('text'),
                glosses=tuple(glosses) if glosses is not None else None,
                confidence=float(data.get('confidence', 1.0)),
                provenance=data.get('provenance'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SegmentValidationError(f"Malformed segment payload: {e}") from e


@dataclass(frozen=True)
class Entity:
    """
    Structured clinical fact extracted from exactly one segment.

    Attributes:
        id: Opaque unique identifier
        type: EntityType member
        text: Normalized fact text
        code: Optional external coding-system reference
        source_segment_id: Id of the originating segment
    """
    id: str
    type: EntityType
    text: str
    source_segment_id: str
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'text': self.text,
            'code': self.code,
            'source_segment_id': self.source_segment_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Entity':
        try:
            return cls(
                id=data.get('id') or new_id('ent'),
                type=EntityType(data['type']),
                text=str(data['text']),
                source_segment_id=data['source_segment_id'],
                code=data.get('code'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise EntityValidationError(f"Malformed entity payload: {e}") from e


@dataclass
class VisitState:
    """
    Recording session scope.

    Attributes:
        status: Current VisitStatus
        started_at: Absolute epoch ms, set when entering RECORDING
    """
    status: VisitStatus = VisitStatus.IDLE
    started_at: Optional[int] = None

    @property
    def is_recording(self) -> bool:
        return self.status == VisitStatus.RECORDING

    def relative_ms(self, absolute_ms: int) -> int:
        """Convert absolute epoch ms to ms since visit start (clamped at 0)."""
        started = self.started_at if self.started_at is not None else absolute_ms
        return max(0, int(absolute_ms - started))


def validate_segment(seg: Segment) -> None:
    """
    Check segment invariants.

    Raises:
        SegmentValidationError: On empty id, negative or inverted time
            range, out-of-range confidence, or unknown speaker/modality
    """
    if not seg.id:
        raise SegmentValidationError("Segment id is empty")
    if not isinstance(seg.speaker, Speaker):
        raise SegmentValidationError(f"Unknown speaker: {seg.speaker!r}")
    if not isinstance(seg.modality, Modality):
        raise SegmentValidationError(f"Unknown modality: {seg.modality!r}")
    if seg.t_start < 0:
        raise SegmentValidationError(f"Segment {seg.id} starts before visit start ({seg.t_start}ms)")
    if seg.t_end < seg.t_start:
        raise SegmentValidationError(
            f"Segment {seg.id} ends before it starts ({seg.t_start}ms > {seg.t_end}ms)"
        )
    if not 0.0 <= seg.confidence <= 1.0:
        raise SegmentValidationError(f"Segment {seg.id} confidence out of range: {seg.confidence}")


def validate_entity(entity: Entity) -> None:
    """
    Raises:
        EntityValidationError: On empty id, missing source segment or a
            type outside the closed set
    """
    if not entity.id:
        raise EntityValidationError("Entity id is empty")
    if not entity.source_segment_id:
        raise EntityValidationError(f"Entity {entity.id} has no source segment")
    if not isinstance(entity.type, EntityType):
        raise EntityValidationError(f"Entity {entity.id} has unknown type: {entity.type!r}")
