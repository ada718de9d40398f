"""
Visit-level fusion of the signed and spoken streams.

The engine is the single owner of:
- the segment store and visit state machine
- both gesture detectors and the emission cooldown they share
- the transcript chunker
- the recognizer handles (acquired lazily while recording, released
  whenever the visit leaves RECORDING)
- follow-up scheduling for confirmed symptoms

Message-passing model:
- Each recognizer callback (video frame, transcript chunk) is delivered to
  one method here, which forwards it to the matching detector's
  single-threaded transition function
- Producers only append through the store's idempotent path
- Read views (display captions, turns, HPI) are computed on demand
"""

import logging
from typing import Any, Dict, List, Optional

import numpy as np

from audio_pipeline.transcript_chunker import TranscriptChunker, ingest_chunk
from clinical_analysis.followup import (
    Followup,
    FollowupClient,
    FollowupScheduler,
    FollowupServiceError,
    load_patient_history
)
from clinical_analysis.hpi_builder import build_hpi_lines
from segment_alignment.coalescer import DEFAULT_COALESCE_WINDOW_MS, coalesce_segments
from segment_alignment.turn_segmenter import DEFAULT_TURN_GAP_MS, Turn, label_turns
from session.data_models import Segment, VisitState
from session.data_models import now_ms as wall_clock_ms
from session.enums import EntityType, VisitStatus
from session.store import SegmentStore
from video_pipeline.emission import Emission, EmissionCooldown
from video_pipeline.gesture_detector import GestureEventDetector, GestureFrame
from video_pipeline.pointing_detector import FaceFrame, PointingDetector, hands_from_frame
from video_pipeline.recognizers import FaceDetectorHandle, GestureRecognizerHandle

logger = logging.getLogger(__name__)


class VisitFusionEngine:
    """
    Owns the visit capture core and routes recognizer events into it.

    Usage:
        engine = VisitFusionEngine(config)
        engine.start_visit()
        engine.process_gesture_frame(frame, now_ms)
        engine.ingest_transcript_chunk(events, t0, t1)
        captions = engine.display_segments()
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        store: Optional[SegmentStore] = None,
        gesture_recognizer=None,
        face_recognizer=None,
        followup_scheduler: Optional[FollowupScheduler] = None
    ):
        """
        Initialize engine.

        Args:
            config: Configuration dict (all sections optional)
            store: Segment store (a fresh one if None)
            gesture_recognizer: GestureRecognizerHandle-like object for raw frames;
                built from the 'recognizers' section when enabled and none is given
            face_recognizer: FaceDetectorHandle-like object for raw frames
            followup_scheduler: Scheduler for follow-up requests; built from
                the 'followup' section when enabled and none is given
        """
        self.config = config or {}
        self.store = store or SegmentStore()

        alignment_config = self.config.get('segment_alignment', {})
        self.coalesce_window_ms = alignment_config.get('coalesce_window_ms', DEFAULT_COALESCE_WINDOW_MS)
        self.turn_gap_ms = alignment_config.get('turn_gap_ms', DEFAULT_TURN_GAP_MS)

        self.cooldown = EmissionCooldown.from_config(self.config)
        self.gesture_detector = GestureEventDetector(self.store, self.cooldown, self.config)
        self.pointing_detector = PointingDetector(self.store, self.cooldown, self.config)
        self.transcript = TranscriptChunker(self.store, self.config)

        recognizer_config = self.config.get('recognizers', {})
        if recognizer_config.get('enabled', False):
            # Handles are cheap until first acquire()
            gesture_recognizer = gesture_recognizer or GestureRecognizerHandle.from_config(self.config)
            face_recognizer = face_recognizer or FaceDetectorHandle.from_config(self.config)
        self.gesture_recognizer = gesture_recognizer
        self.face_recognizer = face_recognizer

        followup_config = self.config.get('followup', {})
        self.followup_enabled = followup_config.get('enabled', False) or followup_scheduler is not None
        if followup_scheduler is None and followup_config.get('enabled', False):
            followup_scheduler = FollowupScheduler(FollowupClient.from_config(self.config))
        self.followup_scheduler = followup_scheduler
        self.history_path = followup_config.get('history_path')

        self.followups: List[Followup] = []
        self.followup_errors: List[str] = []

        self.store.add_status_listener(self._on_visit_status)

        logger.info(
            f"Fusion engine initialized: coalesce={self.coalesce_window_ms}ms, "
            f"turn_gap={self.turn_gap_ms}ms, followups={'on' if self.followup_enabled else 'off'}"
        )

    # ------------------------------------------------------------------
    # Visit lifecycle
    # ------------------------------------------------------------------

    @property
    def visit(self) -> VisitState:
        return self.store.visit

    def start_visit(self, started_at_ms: Optional[int] = None) -> VisitState:
        return self.store.start_visit(started_at_ms)

    def stop_visit(self) -> VisitState:
        return self.store.stop_visit()

    def reset_visit(self) -> VisitState:
        return self.store.reset()

    def _on_visit_status(self, status: VisitStatus) -> None:
        if status == VisitStatus.RECORDING:
            self.cooldown.reset()
            self.followups = []
            self.followup_errors = []
            return

        self._release_recognizers()
        if status == VisitStatus.IDLE:
            self.followups = []
            self.followup_errors = []
            if self.followup_scheduler is not None:
                self.followup_scheduler.cancel_all()

    def _release_recognizers(self) -> None:
        for handle in (self.gesture_recognizer, self.face_recognizer):
            if handle is not None:
                handle.release()

    def close(self) -> None:
        """Release recognizers and stop the follow-up worker."""
        self._release_recognizers()
        if self.followup_scheduler is not None:
            self.followup_scheduler.shutdown()

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def process_gesture_frame(
        self,
        frame: Optional[GestureFrame],
        now_ms: Optional[int] = None
    ) -> Optional[Emission]:
        """Deliver one gesture recognizer frame to the named-gesture detector."""
        emission = self.gesture_detector.process_frame(frame, now_ms)
        self._after_emission(emission)
        return emission

    def process_pointing_frame(
        self,
        hands: Optional[List[np.ndarray]],
        face: Optional[FaceFrame],
        now_ms: Optional[int] = None
    ) -> Optional[Emission]:
        """Deliver one hand+face frame pair to the pointing detector."""
        hand = self.pointing_detector.select_hand(hands_from_frame(hands), face)
        emission = self.pointing_detector.process_frame(hand, face, now_ms)
        self._after_emission(emission)
        return emission

    def process_video_frame(
        self,
        rgb_frame: np.ndarray,
        now_ms: Optional[int] = None
    ) -> List[Emission]:
        """
        Run both recognizers on a raw RGB frame and feed both detectors.

        Recognizers are only touched while recording, so a frame arriving
        after suspension does not re-acquire them.

        Returns:
            Emissions produced by this frame (0, 1 or 2)
        """
        if not self.store.is_recording:
            return []

        now = now_ms if now_ms is not None else wall_clock_ms()
        timestamp = self.store.relative_ms(now)
        emissions = []

        gesture_frame = None
        if self.gesture_recognizer is not None:
            gesture_frame = self.gesture_recognizer.recognize(rgb_frame, timestamp)
            emission = self.process_gesture_frame(gesture_frame, now)
            if emission is not None:
                emissions.append(emission)

        if self.face_recognizer is not None:
            face = self.face_recognizer.detect(rgb_frame, timestamp)
            hands = gesture_frame.hand_landmarks if gesture_frame is not None else []
            emission = self.process_pointing_frame(hands, face, now)
            if emission is not None:
                emissions.append(emission)

        return emissions

    def ingest_transcript_chunk(
        self,
        events: List[Dict[str, Any]],
        started_at_ms: int,
        ended_at_ms: int
    ) -> Optional[Segment]:
        """Deliver one completed utterance chunk from the speech recognizer."""
        return ingest_chunk(self.transcript, events, started_at_ms, ended_at_ms)

    # ------------------------------------------------------------------
    # Follow-ups
    # ------------------------------------------------------------------

    def _after_emission(self, emission: Optional[Emission]) -> None:
        if emission is None or not self.followup_enabled or self.followup_scheduler is None:
            return
        if emission.entity.type != EntityType.SYMPTOM:
            return
        self.request_followup(emission.entity.text)

    def request_followup(self, symptom: str):
        """Schedule a detached follow-up request for a symptom."""
        if self.followup_scheduler is None:
            return None
        history = load_patient_history(self.history_path) if self.history_path else {}
        return self.followup_scheduler.submit(
            symptom,
            history,
            on_result=self._on_followup,
            on_error=self._on_followup_error,
        )

    def _on_followup(self, followup: Optional[Followup]) -> None:
        if followup is not None:
            self.followups.append(followup)
            logger.info(f"Follow-up suggested: {followup.question}")

    def _on_followup_error(self, error: FollowupServiceError) -> None:
        self.followup_errors.append(str(error))

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    def display_segments(self, window_ms: Optional[int] = None) -> List[Segment]:
        """Coalesced captions; recomputed on every read."""
        return coalesce_segments(
            self.store.segments,
            self.coalesce_window_ms if window_ms is None else window_ms
        )

    def turns(self, gap_ms: Optional[int] = None) -> List[Turn]:
        return label_turns(self.store.segments, self.turn_gap_ms if gap_ms is None else gap_ms)

    def hpi_lines(self) -> List[str]:
        return build_hpi_lines(self.store.entities, self.store.segments)

    def append_hpi_to_health_record(self) -> List[str]:
        """Append HPI lines for the current entities to the health record."""
        lines = self.hpi_lines()
        if lines:
            self.store.append_health_record("\n".join(lines))
        return lines

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready view of the whole visit (relative times only)."""
        visit = self.store.visit
        return {
            'visit': {'status': visit.status.value},
            'segments': [s.to_dict() for s in self.store.segments],
            'entities': [e.to_dict() for e in self.store.entities],
            'display_segments': [s.to_dict() for s in self.display_segments()],
            'turns': [t.to_dict() for t in self.turns()],
            'hpi': self.hpi_lines(),
            'health_record': self.store.health_record,
            'followups': [f.to_dict() for f in self.followups],
            'followup_errors': list(self.followup_errors),
        }
