"""
Video pipeline: per-frame gesture event detection.

This package turns MediaPipe recognizer streams into discrete events:
1. Named-gesture confirmation (confidence floor, streak, dwell, cooldown)
2. Face pointing detection (hand + face landmark fusion, hold duration)
3. Recognizer handles with explicit acquire/release lifecycle

Rationale:
- Per-frame classifier output is noisy; a single frame is never an event
- One clean emission per held gesture, then silence until re-asserted
- Both detectors share one global emission cooldown
"""

from .emission import (
    Emission,
    EmissionCooldown,
    PhraseMapping,
    emit_phrase
)
from .gesture_detector import (
    GestureEventDetector,
    GestureFrame,
    gesture_frame_from_dict,
    top_gesture
)
from .pointing_detector import (
    FACE_KEYPOINTS,
    FaceFrame,
    PointingDetector,
    PointingMeasurement,
    face_frame_from_dict
)
from .recognizers import (
    FaceDetectorHandle,
    GestureRecognizerHandle,
    face_frame_from_result,
    gesture_frame_from_result
)

__all__ = [
    'Emission',
    'EmissionCooldown',
    'FACE_KEYPOINTS',
    'FaceDetectorHandle',
    'FaceFrame',
    'GestureEventDetector',
    'GestureFrame',
    'GestureRecognizerHandle',
    'PhraseMapping',
    'PointingDetector',
    'PointingMeasurement',
    'emit_phrase',
    'face_frame_from_dict',
    'face_frame_from_result',
    'gesture_frame_from_dict',
    'gesture_frame_from_result',
    'top_gesture',
]
