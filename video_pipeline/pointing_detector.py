"""
Spatial co-occurrence detection: fingertip pointing at a face keypoint.

No single-stream classifier reports "pointing at my ear" as a category,
so this detector fuses two landmark streams (hand skeleton, face
keypoints) frame by frame.

A frame qualifies when all hold:
1. The hand landmark nearest the target face keypoint is an allowed one
   (index fingertip by default)
2. Proximity: nearest distance / face width < max_proximity
3. Direction: cosine between the finger's pointing vector (DIP -> TIP)
   and the TIP -> target vector > min_alignment

Hold logic:
- Consecutive qualifying frames accumulate elapsed wall-clock time
- Any disqualifying frame (incl. missing hand/face) resets to zero
- Emit once hold > hold_ms and the shared cooldown has elapsed

Engineering decisions:
- Hand and face coordinates must share one space (pixels from adapters)
- Normalizing by face width makes the threshold distance-invariant
- allowed_landmarks is a tunable policy; other fingers are dropped by default
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from session.data_models import now_ms as wall_clock_ms
from session.enums import EntityType, VisitStatus
from session.store import SegmentStore

from .emission import Emission, EmissionCooldown, PhraseMapping, emit_phrase

logger = logging.getLogger(__name__)

# MediaPipe hand landmark indices
INDEX_FINGER_DIP = 7
INDEX_FINGER_TIP = 8
NUM_HAND_LANDMARKS = 21

# MediaPipe face detector keypoint order
FACE_KEYPOINTS = (
    'right_eye',
    'left_eye',
    'nose',
    'mouth',
    'right_ear_tragion',
    'left_ear_tragion',
)

DEFAULT_TARGET_KEYPOINT = 'right_ear_tragion'
DEFAULT_MAX_PROXIMITY = 0.12
DEFAULT_MIN_ALIGNMENT = 0.6
DEFAULT_HOLD_MS = 300

# Face pointing has no native recognizer score
POINTING_CONFIDENCE = 0.99

DEFAULT_POINTING_PHRASE = PhraseMapping('ear pain', ('ear', 'pain'), EntityType.SYMPTOM)


@dataclass
class FaceFrame:
    """
    Face detector output for one frame.

    Attributes:
        bbox_width: Face bounding-box width (same units as keypoints)
        keypoints: (6, 2) array in FACE_KEYPOINTS order
    """
    bbox_width: float
    keypoints: np.ndarray

    def keypoint(self, name: str) -> np.ndarray:
        return np.asarray(self.keypoints, dtype=float)[FACE_KEYPOINTS.index(name), :2]


def face_frame_from_dict(data: Optional[Dict]) -> Optional[FaceFrame]:
    """Build a face frame from {"bbox_width", "keypoints"}; empty payload -> None."""
    if not data:
        return None
    return FaceFrame(
        bbox_width=float(data['bbox_width']),
        keypoints=np.asarray(data['keypoints'], dtype=float),
    )


@dataclass
class PointingMeasurement:
    """
    Per-frame pointing geometry.

    Attributes:
        nearest_index: Hand landmark index closest to the target
        proximity: Nearest distance normalized by face width
        alignment: Cosine between pointing direction and tip->target
    """
    nearest_index: int
    proximity: float
    alignment: float


class PointingDetector:
    """
    Hold-based detector for a fingertip pointing at a facial keypoint.

    Usage:
        detector = PointingDetector(store, cooldown, config)
        emission = detector.process_frame(hand_landmarks, face_frame, now_ms)
    """

    def __init__(
        self,
        store: SegmentStore,
        cooldown: EmissionCooldown,
        config: Optional[Dict] = None
    ):
        self.store = store
        self.cooldown = cooldown

        pointing_config = (config or {}).get('pointing_detection', {})
        self.target_keypoint = pointing_config.get('target_keypoint', DEFAULT_TARGET_KEYPOINT)
        if self.target_keypoint not in FACE_KEYPOINTS:
            raise ValueError(
                f"Unknown target keypoint '{self.target_keypoint}', expected one of {FACE_KEYPOINTS}"
            )
        self.allowed_landmarks = tuple(
            pointing_config.get('allowed_landmarks', [INDEX_FINGER_TIP])
        )
        self.max_proximity = pointing_config.get('max_proximity', DEFAULT_MAX_PROXIMITY)
        self.min_alignment = pointing_config.get('min_alignment', DEFAULT_MIN_ALIGNMENT)
        self.hold_threshold_ms = pointing_config.get('hold_ms', DEFAULT_HOLD_MS)
        self.confidence = pointing_config.get('confidence', POINTING_CONFIDENCE)

        phrase_config = pointing_config.get('phrase')
        self.phrase = PhraseMapping.from_config(phrase_config) if phrase_config else DEFAULT_POINTING_PHRASE

        self.hold_ms = 0
        self._last_qualified_at: Optional[int] = None

        store.add_status_listener(self._on_visit_status)

        logger.info(
            f"Pointing detector initialized: target={self.target_keypoint}, "
            f"proximity<{self.max_proximity}, alignment>{self.min_alignment}, "
            f"hold>{self.hold_threshold_ms}ms"
        )

    def measure(
        self,
        hand: Optional[np.ndarray],
        face: Optional[FaceFrame]
    ) -> Optional[PointingMeasurement]:
        """
        Compute pointing geometry for one frame.

        Args:
            hand: (21, 2+) hand landmarks
            face: Face frame in the same coordinate space

        Returns:
            PointingMeasurement, or None if either stream is missing or malformed
        """
        if hand is None or face is None or face.bbox_width <= 0:
            return None

        landmarks = np.asarray(hand, dtype=float)
        if landmarks.ndim != 2 or landmarks.shape[0] < NUM_HAND_LANDMARKS or landmarks.shape[1] < 2:
            return None
        landmarks = landmarks[:, :2]

        keypoints = np.asarray(face.keypoints, dtype=float)
        if keypoints.ndim != 2 or keypoints.shape[0] < len(FACE_KEYPOINTS):
            return None
        target = face.keypoint(self.target_keypoint)

        distances = np.linalg.norm(landmarks - target, axis=1)
        nearest = int(np.argmin(distances))
        proximity = float(distances[nearest] / face.bbox_width)

        tip = landmarks[INDEX_FINGER_TIP]
        pointing = tip - landmarks[INDEX_FINGER_DIP]
        to_target = target - tip
        alignment = float(
            np.dot(pointing, to_target) / (np.linalg.norm(pointing) * np.linalg.norm(to_target) + 1e-6)
        )

        return PointingMeasurement(nearest_index=nearest, proximity=proximity, alignment=alignment)

    def qualifies(self, measurement: Optional[PointingMeasurement]) -> bool:
        return (
            measurement is not None
            and measurement.nearest_index in self.allowed_landmarks
            and measurement.proximity < self.max_proximity
            and measurement.alignment > self.min_alignment
        )

    def select_hand(
        self,
        hands: Sequence[np.ndarray],
        face: Optional[FaceFrame]
    ) -> Optional[np.ndarray]:
        """Pick the hand whose nearest landmark is closest to the target."""
        best_hand = None
        best_proximity = float('inf')
        for hand in hands or []:
            measurement = self.measure(hand, face)
            if measurement is not None and measurement.proximity < best_proximity:
                best_hand, best_proximity = hand, measurement.proximity
        return best_hand

    def process_frame(
        self,
        hand: Optional[np.ndarray],
        face: Optional[FaceFrame],
        now_ms: Optional[int] = None
    ) -> Optional[Emission]:
        """
        Advance the hold accumulator by one frame.

        Returns:
            Emission if the hold completed on this frame, else None
        """
        if not self.store.is_recording:
            return None

        now = now_ms if now_ms is not None else wall_clock_ms()
        measurement = self.measure(hand, face)

        if not self.qualifies(measurement):
            if self.hold_ms > 0:
                logger.debug(f"Pointing hold reset after {self.hold_ms}ms")
            self._reset_hold()
            return None

        if self._last_qualified_at is not None:
            self.hold_ms += max(0, now - self._last_qualified_at)
        self._last_qualified_at = now

        if self.hold_ms <= self.hold_threshold_ms or not self.cooldown.ready(now):
            return None

        emission = emit_phrase(
            self.store,
            self.phrase,
            now_ms=now,
            confidence=self.confidence,
            provenance={
                'detector': 'pointing',
                'target': self.target_keypoint,
                'hold_ms': self.hold_ms,
                'proximity': measurement.proximity,
                'alignment': measurement.alignment,
            },
            id_prefix='point',
        )

        self._reset_hold()
        if emission is not None:
            self.cooldown.mark(now)
        return emission

    def _reset_hold(self) -> None:
        self.hold_ms = 0
        self._last_qualified_at = None

    def suspend(self) -> None:
        """Abandon any in-flight hold."""
        self._reset_hold()

    def _on_visit_status(self, status: VisitStatus) -> None:
        if status != VisitStatus.RECORDING:
            self.suspend()


def hands_from_frame(hand_landmarks: Optional[List[np.ndarray]]) -> List[np.ndarray]:
    """Drop malformed hand arrays from a recognizer frame."""
    hands = []
    for hand in hand_landmarks or []:
        arr = np.asarray(hand, dtype=float)
        if arr.ndim == 2 and arr.shape[0] >= NUM_HAND_LANDMARKS:
            hands.append(arr)
    return hands
