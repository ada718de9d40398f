"""
Append-only segment/entity store keyed by the visit lifecycle.

Contract:
- add_segment is idempotent on id and keeps the view sorted by t_start
  (ties in insertion order); producers may deliver out of temporal order
- add_entities drops ids that already exist
- Only start_visit / reset clear collections

Concurrency:
- Two producers (gesture frames, transcript chunks) share one append path;
  duplicate ids are rejected rather than corrupting state
- Status listeners run after the lock is released so they can read the store
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .data_models import (
    Entity,
    EntityValidationError,
    Segment,
    SegmentValidationError,
    VisitState,
    now_ms,
    validate_entity,
    validate_segment,
)
from .enums import VisitStatus

logger = logging.getLogger(__name__)


class VisitTransitionError(RuntimeError):
    """Raised on a visit transition the state machine does not allow."""


StatusListener = Callable[[VisitStatus], None]


class SegmentStore:
    """
    Session-scoped store of raw segments, entities and the health record.

    Usage:
        store = SegmentStore()
        store.start_visit()
        store.add_segment(segment)
        store.add_entities([entity])
        store.segments  # sorted by t_start
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._visit = VisitState()
        self._segments: List[Segment] = []
        self._segment_ids: Dict[str, Segment] = {}
        self._entities: List[Entity] = []
        self._entity_ids = set()
        self._health_record = ""
        self._listeners: List[StatusListener] = []

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    @property
    def visit(self) -> VisitState:
        return VisitState(status=self._visit.status, started_at=self._visit.started_at)

    @property
    def is_recording(self) -> bool:
        return self._visit.is_recording

    @property
    def segments(self) -> Tuple[Segment, ...]:
        return tuple(self._segments)

    @property
    def entities(self) -> Tuple[Entity, ...]:
        return tuple(self._entities)

    @property
    def health_record(self) -> str:
        return self._health_record

    def get_segment(self, segment_id: str) -> Optional[Segment]:
        return self._segment_ids.get(segment_id)

    def relative_ms(self, absolute_ms: int) -> int:
        """Milliseconds since visit start for an absolute timestamp."""
        return self._visit.relative_ms(absolute_ms)

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    def add_segment(self, seg: Segment) -> bool:
        """
        Insert a segment unless its id is already present.

        Args:
            seg: Segment to insert

        Returns:
            True if inserted, False for a duplicate id or a rejected segment
        """
        try:
            validate_segment(seg)
        except SegmentValidationError as e:
            logger.warning(f"Rejected segment: {e}")
            return False

        with self._lock:
            if seg.id in self._segment_ids:
                logger.debug(f"Duplicate segment ignored: {seg.id}")
                return False
            self._segment_ids[seg.id] = seg
            # Stable sort: equal t_start keeps insertion order
            self._segments = sorted(self._segments + [seg], key=lambda s: s.t_start)

        logger.debug(
            f"Segment added: {seg.id} ({seg.speaker.value}/{seg.modality.value}, "
            f"{seg.t_start}-{seg.t_end}ms)"
        )
        return True

    def add_entities(self, entities: Iterable[Entity]) -> int:
        """
        Bulk insert entities, dropping ids that already exist.

        Returns:
            Number of entities actually inserted
        """
        added = 0
        with self._lock:
            for entity in entities:
                try:
                    validate_entity(entity)
                except EntityValidationError as e:
                    logger.warning(f"Rejected entity: {e}")
                    continue
                if entity.id in self._entity_ids:
                    continue
                self._entity_ids.add(entity.id)
                self._entities.append(entity)
                added += 1
        return added

    def set_health_record(self, text: str) -> None:
        with self._lock:
            self._health_record = text

    def append_health_record(self, text: str) -> None:
        """Append text to the health record on a new line."""
        if not text or not text.strip():
            return
        with self._lock:
            existing = self._health_record.rstrip()
            self._health_record = f"{existing}\n{text}" if existing else text

    # ------------------------------------------------------------------
    # Visit state machine
    # ------------------------------------------------------------------

    def add_status_listener(self, listener: StatusListener) -> None:
        """Register a callback invoked with the new status after each transition."""
        self._listeners.append(listener)

    def start_visit(self, started_at_ms: Optional[int] = None) -> VisitState:
        """
        idle -> recording. Clears all collections and anchors started_at.

        Raises:
            VisitTransitionError: If the visit is not idle
        """
        with self._lock:
            if self._visit.status != VisitStatus.IDLE:
                raise VisitTransitionError(
                    f"Cannot start visit from '{self._visit.status.value}' (reset first)"
                )
            self._clear()
            self._visit = VisitState(
                status=VisitStatus.RECORDING,
                started_at=started_at_ms if started_at_ms is not None else now_ms(),
            )
        logger.info(f"Visit started (started_at={self._visit.started_at})")
        self._notify(VisitStatus.RECORDING)
        return self.visit

    def stop_visit(self) -> VisitState:
        """
        recording -> review. History is preserved.

        Raises:
            VisitTransitionError: If the visit is not recording
        """
        with self._lock:
            if self._visit.status != VisitStatus.RECORDING:
                raise VisitTransitionError(
                    f"Cannot stop visit from '{self._visit.status.value}'"
                )
            self._visit = VisitState(status=VisitStatus.REVIEW, started_at=self._visit.started_at)
        logger.info(
            f"Visit stopped: {len(self._segments)} segments, {len(self._entities)} entities"
        )
        self._notify(VisitStatus.REVIEW)
        return self.visit

    def reset(self) -> VisitState:
        """Any state -> idle. Clears segments, entities and health record."""
        with self._lock:
            self._clear()
            self._visit = VisitState()
        logger.info("Visit reset")
        self._notify(VisitStatus.IDLE)
        return self.visit

    def _clear(self) -> None:
        self._segments = []
        self._segment_ids = {}
        self._entities = []
        self._entity_ids = set()
        self._health_record = ""

    def _notify(self, status: VisitStatus) -> None:
        for listener in list(self._listeners):
            listener(status)
