"""
MediaPipe recognizer handles and result adapters.

Recognizers are expensive to create, so each one is an explicitly owned,
lazily initialized resource:
- acquire() creates the underlying MediaPipe task on first use
- release() closes it; the fusion engine releases handles whenever the
  visit leaves RECORDING

Adapters turn MediaPipe results into plain frames (GestureFrame,
FaceFrame) in pixel coordinates so the detectors never import MediaPipe.
Empty results become empty frames / None rather than errors.
"""

import logging
import warnings
from typing import Dict, Optional

import numpy as np

from .gesture_detector import GestureFrame
from .pointing_detector import FACE_KEYPOINTS, FaceFrame

logger = logging.getLogger(__name__)

# Suppress MediaPipe warnings
warnings.filterwarnings('ignore', category=UserWarning, module='google.protobuf')

try:
    import mediapipe as mp
    from mediapipe.tasks import python as mp_tasks
    from mediapipe.tasks.python import vision as mp_vision
    MEDIAPIPE_AVAILABLE = True
except ImportError:
    MEDIAPIPE_AVAILABLE = False
    logger.warning("MediaPipe not installed. Live recognition unavailable.")


DEFAULT_GESTURE_MODEL = "models/gesture_recognizer.task"
DEFAULT_FACE_MODEL = "models/blaze_face_short_range.tflite"


def hand_landmarks_to_pixels(landmarks, image_width: int, image_height: int) -> np.ndarray:
    """Convert normalized MediaPipe landmarks to a (N, 2) pixel array."""
    return np.array(
        [[lm.x * image_width, lm.y * image_height] for lm in landmarks],
        dtype=float
    ).reshape(-1, 2)


def gesture_frame_from_result(result, image_width: int, image_height: int) -> GestureFrame:
    """
    Convert a GestureRecognizerResult into a GestureFrame.

    Args:
        result: MediaPipe GestureRecognizerResult (or None)
        image_width: Frame width in pixels
        image_height: Frame height in pixels
    """
    if result is None:
        return GestureFrame()

    gestures = []
    for hand_candidates in getattr(result, 'gestures', None) or []:
        gestures.append([
            (c.category_name, float(c.score))
            for c in hand_candidates
            if c.category_name is not None
        ])

    hands = [
        hand_landmarks_to_pixels(lms, image_width, image_height)
        for lms in getattr(result, 'hand_landmarks', None) or []
    ]

    return GestureFrame(gestures=gestures, hand_landmarks=hands)


def face_frame_from_result(result, image_width: int, image_height: int) -> Optional[FaceFrame]:
    """
    Convert a FaceDetectorResult into a FaceFrame for the most confident face.

    Returns:
        FaceFrame in pixel coordinates, or None if no usable face
    """
    detections = getattr(result, 'detections', None) if result is not None else None
    if not detections:
        return None

    def _score(detection) -> float:
        categories = getattr(detection, 'categories', None) or []
        return float(categories[0].score) if categories and categories[0].score is not None else 0.0

    best = max(detections, key=_score)
    keypoints = getattr(best, 'keypoints', None) or []
    if len(keypoints) < len(FACE_KEYPOINTS) or best.bounding_box is None:
        return None

    points = np.array(
        [[kp.x * image_width, kp.y * image_height] for kp in keypoints[:len(FACE_KEYPOINTS)]],
        dtype=float
    )
    return FaceFrame(bbox_width=float(best.bounding_box.width), keypoints=points)


class _TaskHandle:
    """Shared acquire/release lifecycle for a MediaPipe vision task."""

    def __init__(self, model_path: str):
        self.model_path = model_path
        self._task = None
        self._last_timestamp_ms = -1

    @property
    def is_acquired(self) -> bool:
        return self._task is not None

    def acquire(self):
        """Create the underlying task if needed and return it."""
        if self._task is None:
            if not MEDIAPIPE_AVAILABLE:
                raise ImportError("MediaPipe not installed. Install with: pip install mediapipe")
            self._task = self._create()
            self._last_timestamp_ms = -1
            logger.info(f"{type(self).__name__} acquired ({self.model_path})")
        return self._task

    def release(self) -> None:
        """Close the underlying task; safe to call when not acquired."""
        if self._task is not None:
            self._task.close()
            self._task = None
            logger.info(f"{type(self).__name__} released")

    def _create(self):
        raise NotImplementedError

    def _to_image(self, rgb_frame: np.ndarray):
        return mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(rgb_frame))

    def _monotonic(self, timestamp_ms: int) -> int:
        # VIDEO mode rejects non-increasing timestamps
        timestamp_ms = max(int(timestamp_ms), self._last_timestamp_ms + 1)
        self._last_timestamp_ms = timestamp_ms
        return timestamp_ms


class GestureRecognizerHandle(_TaskHandle):
    """
    Lazily created MediaPipe GestureRecognizer (VIDEO mode).

    Usage:
        handle = GestureRecognizerHandle.from_config(config)
        frame = handle.recognize(rgb_frame, timestamp_ms)
        handle.release()
    """

    def __init__(
        self,
        model_path: str = DEFAULT_GESTURE_MODEL,
        num_hands: int = 2,
        min_detection_confidence: float = 0.5
    ):
        super().__init__(model_path)
        self.num_hands = num_hands
        self.min_detection_confidence = min_detection_confidence

    @classmethod
    def from_config(cls, config: Optional[Dict] = None) -> 'GestureRecognizerHandle':
        rec_config = (config or {}).get('recognizers', {})
        return cls(
            model_path=rec_config.get('gesture_model_path', DEFAULT_GESTURE_MODEL),
            num_hands=rec_config.get('num_hands', 2),
            min_detection_confidence=rec_config.get('min_detection_confidence', 0.5),
        )

    def _create(self):
        options = mp_vision.GestureRecognizerOptions(
            base_options=mp_tasks.BaseOptions(model_asset_path=self.model_path),
            running_mode=mp_vision.RunningMode.VIDEO,
            num_hands=self.num_hands,
            min_hand_detection_confidence=self.min_detection_confidence,
        )
        return mp_vision.GestureRecognizer.create_from_options(options)

    def recognize(self, rgb_frame: np.ndarray, timestamp_ms: int) -> GestureFrame:
        """
        Run gesture recognition on one RGB frame.

        Args:
            rgb_frame: RGB frame (H, W, 3)
            timestamp_ms: Frame timestamp in ms

        Returns:
            GestureFrame in pixel coordinates
        """
        recognizer = self.acquire()
        h, w = rgb_frame.shape[:2]
        result = recognizer.recognize_for_video(self._to_image(rgb_frame), self._monotonic(timestamp_ms))
        return gesture_frame_from_result(result, w, h)


class FaceDetectorHandle(_TaskHandle):
    """Lazily created MediaPipe FaceDetector (VIDEO mode)."""

    def __init__(
        self,
        model_path: str = DEFAULT_FACE_MODEL,
        min_detection_confidence: float = 0.5
    ):
        super().__init__(model_path)
        self.min_detection_confidence = min_detection_confidence

    @classmethod
    def from_config(cls, config: Optional[Dict] = None) -> 'FaceDetectorHandle':
        rec_config = (config or {}).get('recognizers', {})
        return cls(
            model_path=rec_config.get('face_model_path', DEFAULT_FACE_MODEL),
            min_detection_confidence=rec_config.get('min_detection_confidence', 0.5),
        )

    def _create(self):
        options = mp_vision.FaceDetectorOptions(
            base_options=mp_tasks.BaseOptions(model_asset_path=self.model_path),
            running_mode=mp_vision.RunningMode.VIDEO,
            min_detection_confidence=self.min_detection_confidence,
        )
        return mp_vision.FaceDetector.create_from_options(options)

    def detect(self, rgb_frame: np.ndarray, timestamp_ms: int) -> Optional[FaceFrame]:
        """Run face detection on one RGB frame; None if no face."""
        detector = self.acquire()
        h, w = rgb_frame.shape[:2]
        result = detector.detect_for_video(self._to_image(rgb_frame), self._monotonic(timestamp_ms))
        return face_frame_from_result(result, w, h)
