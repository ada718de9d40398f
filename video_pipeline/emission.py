"""
Shared emission path for confirmed gesture events.

Both detectors (named gestures, face pointing) turn a confirmed event into
one Segment plus exactly one correlated Entity, and both honour the same
global cooldown: a confirmation from either detector restarts the clock
for every gesture.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from session.data_models import Entity, Segment, new_id
from session.enums import EntityType, Modality, Speaker
from session.store import SegmentStore

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MS = 1500


@dataclass(frozen=True)
class PhraseMapping:
    """
    Gesture -> phrase table entry.

    Attributes:
        text: Phrase text written to the segment and entity
        glosses: Gloss tokens for the segment
        entity_type: Type of the correlated entity
        code: Optional coding-system reference for the entity
    """
    text: str
    glosses: Tuple[str, ...]
    entity_type: EntityType
    code: Optional[str] = None

    @classmethod
    def from_config(cls, data: Dict[str, Any]) -> 'PhraseMapping':
        text = str(data['text'])
        glosses = data.get('glosses') or text.split()
        return cls(
            text=text,
            glosses=tuple(str(g) for g in glosses),
            entity_type=EntityType(data.get('entity_type', EntityType.SYMPTOM.value)),
            code=data.get('code'),
        )


@dataclass(frozen=True)
class Emission:
    """A confirmed event: the segment and its single correlated entity."""
    segment: Segment
    entity: Entity


class EmissionCooldown:
    """
    Global minimum interval between confirmed emissions.

    Usage:
        cooldown = EmissionCooldown(cooldown_ms=1500)
        if cooldown.ready(now):
            ...
            cooldown.mark(now)
    """

    def __init__(self, cooldown_ms: int = DEFAULT_COOLDOWN_MS):
        self.cooldown_ms = cooldown_ms
        self.last_emit_at: Optional[int] = None

    @classmethod
    def from_config(cls, config: Optional[Dict] = None) -> 'EmissionCooldown':
        gesture_config = (config or {}).get('gesture_detection', {})
        return cls(cooldown_ms=gesture_config.get('cooldown_ms', DEFAULT_COOLDOWN_MS))

    def ready(self, now_ms: int) -> bool:
        """True if no emission happened yet or the cooldown has elapsed."""
        return self.last_emit_at is None or now_ms - self.last_emit_at >= self.cooldown_ms

    def mark(self, now_ms: int) -> None:
        self.last_emit_at = now_ms

    def reset(self) -> None:
        self.last_emit_at = None


def emit_phrase(
    store: SegmentStore,
    phrase: PhraseMapping,
    now_ms: int,
    confidence: float,
    provenance: Dict[str, Any],
    id_prefix: str = "sign"
) -> Optional[Emission]:
    """
    Create and store one instantaneous patient/signed segment plus its entity.

    The segment is instantaneous (t_start == t_end == now relative to the
    visit start). The entity is only stored if the segment was accepted.

    Args:
        store: Target store
        phrase: Phrase mapped from the confirmed gesture
        now_ms: Absolute wall-clock time of the confirming frame
        confidence: Segment confidence
        provenance: Diagnostic payload attached to the segment
        id_prefix: Segment id prefix

    Returns:
        Emission, or None if the store rejected the segment
    """
    t_rel = store.relative_ms(now_ms)
    segment = Segment(
        id=new_id(id_prefix),
        speaker=Speaker.PATIENT,
        modality=Modality.SIGNED,
        t_start=t_rel,
        t_end=t_rel,
        text=phrase.text,
        glosses=phrase.glosses,
        confidence=confidence,
        provenance=provenance,
    )
    entity = Entity(
        id=new_id('ent'),
        type=phrase.entity_type,
        text=phrase.text,
        code=phrase.code,
        source_segment_id=segment.id,
    )

    if not store.add_segment(segment):
        return None
    store.add_entities([entity])

    logger.info(
        f"Emitted '{phrase.text}' ({phrase.entity_type.value}) at {t_rel}ms "
        f"[{provenance.get('detector', 'unknown')}, conf={confidence:.2f}]"
    )
    return Emission(segment=segment, entity=entity)
