"""
Named-gesture event detection (debounced).

Converts a per-frame stream of (gesture name, score) samples into discrete
confirmed events. A gesture is confirmed on a frame only when all gates pass:
1. Confidence floor: top score >= score_min (any dip aborts the streak)
2. Streak: >= required_streak consecutive frames with the same name
3. Dwell: >= stable_ms since the streak began
4. Cooldown: >= cooldown_ms since the last emission of ANY gesture

Rationale:
- A single noisy high-confidence frame must not emit an event
- A held pose must not fire every frame; after an emission the streak is
  cleared so the gesture has to be re-asserted (or held past cooldown)

Engineering decisions:
- Frame rate agnostic: dwell uses wall-clock ms, streak uses frame count
- Caller supplies now_ms so replay and tests are deterministic
- Visit not recording = suspended: frames are no-ops, state is cleared
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from session.data_models import now_ms as wall_clock_ms
from session.enums import EntityType, VisitStatus
from session.store import SegmentStore

from .emission import Emission, EmissionCooldown, PhraseMapping, emit_phrase

logger = logging.getLogger(__name__)

# MediaPipe reports "None" when a hand is visible but matches no gesture
NONE_CATEGORY = "None"

DEFAULT_SCORE_MIN = 0.80
DEFAULT_REQUIRED_STREAK = 6
DEFAULT_STABLE_MS = 600

DEFAULT_PHRASES: Dict[str, PhraseMapping] = {
    'Thumb_Down': PhraseMapping('chest pain', ('chest', 'pain'), EntityType.SYMPTOM),
    'Open_Palm': PhraseMapping('left side', ('left', 'side'), EntityType.BODY_SITE),
    'Pointing_Up': PhraseMapping('two days', ('two', 'days'), EntityType.DURATION),
    'Closed_Fist': PhraseMapping('severe', ('severe',), EntityType.SEVERITY),
}


@dataclass
class GestureFrame:
    """
    Gesture recognizer output for one video frame.

    Attributes:
        gestures: Per detected hand, candidate (name, score) pairs
        hand_landmarks: Per detected hand, (21, 2) landmark array in pixels
    """
    gestures: List[List[Tuple[str, float]]] = field(default_factory=list)
    hand_landmarks: List[np.ndarray] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(self.gestures)


def gesture_frame_from_dict(data: Dict) -> GestureFrame:
    """
    Build a frame from a plain payload (API bodies, replay logs).

    Candidates may be {"name": ..., "score": ...} objects or [name, score]
    pairs; hand_landmarks are per-hand [[x, y], ...] lists.

    Raises:
        KeyError, TypeError, ValueError: On malformed candidates or landmarks
    """
    gestures = []
    for hand in data.get('gestures') or []:
        candidates = []
        for candidate in hand or []:
            if isinstance(candidate, dict):
                candidates.append((candidate['name'], float(candidate.get('score', 0.0))))
            else:
                name, score = candidate
                candidates.append((name, float(score)))
        gestures.append(candidates)
    hands = [np.asarray(h, dtype=float) for h in data.get('hand_landmarks') or []]
    return GestureFrame(gestures=gestures, hand_landmarks=hands)


def top_gesture(frame: Optional[GestureFrame]) -> Tuple[Optional[str], float]:
    """
    Select the single highest-scoring named gesture across all hands.

    Returns:
        (name, score), or (None, 0.0) when nothing named was detected
    """
    best_name: Optional[str] = None
    best_score = 0.0

    if frame is None:
        return best_name, best_score

    for candidates in frame.gestures or []:
        for name, score in candidates or []:
            if not name or name == NONE_CATEGORY:
                continue
            if best_name is None or score > best_score:
                best_name, best_score = name, float(score)

    return best_name, best_score


class GestureEventDetector:
    """
    Per-frame state machine for named-gesture confirmation.

    State:
        streak_name: Gesture currently accumulating (None if none)
        streak_count: Consecutive qualifying frames with streak_name
        stable_since: Wall-clock ms when the current streak began

    The last-emission time lives in the shared EmissionCooldown.

    Usage:
        detector = GestureEventDetector(store, cooldown, config)
        emission = detector.process_frame(frame, now_ms)
    """

    def __init__(
        self,
        store: SegmentStore,
        cooldown: EmissionCooldown,
        config: Optional[Dict] = None
    ):
        """
        Initialize detector.

        Args:
            store: Segment store receiving emissions
            cooldown: Emission cooldown shared with the other detectors
            config: Configuration dict (reads the 'gesture_detection' section)
        """
        self.store = store
        self.cooldown = cooldown

        gesture_config = (config or {}).get('gesture_detection', {})
        self.score_min = gesture_config.get('score_min', DEFAULT_SCORE_MIN)
        self.required_streak = gesture_config.get('required_streak', DEFAULT_REQUIRED_STREAK)
        self.stable_ms = gesture_config.get('stable_ms', DEFAULT_STABLE_MS)

        phrases_config = gesture_config.get('phrases')
        if phrases_config:
            self.phrases = {
                name: PhraseMapping.from_config(entry)
                for name, entry in phrases_config.items()
            }
        else:
            self.phrases = dict(DEFAULT_PHRASES)

        self.streak_name: Optional[str] = None
        self.streak_count = 0
        self.stable_since = 0

        store.add_status_listener(self._on_visit_status)

        logger.info(
            f"Gesture detector initialized: score_min={self.score_min}, "
            f"streak={self.required_streak}, stable={self.stable_ms}ms, "
            f"cooldown={cooldown.cooldown_ms}ms, {len(self.phrases)} phrases"
        )

    def process_frame(
        self,
        frame: Optional[GestureFrame],
        now_ms: Optional[int] = None
    ) -> Optional[Emission]:
        """
        Advance the state machine by one frame.

        Args:
            frame: Recognizer output (None or empty = nothing detected)
            now_ms: Absolute wall-clock time of the frame in ms

        Returns:
            Emission if this frame confirmed a gesture, else None
        """
        if not self.store.is_recording:
            return None

        now = now_ms if now_ms is not None else wall_clock_ms()
        name, score = top_gesture(frame)

        if name is None or score < self.score_min:
            if self.streak_name is not None:
                logger.debug(
                    f"Streak '{self.streak_name}' aborted after {self.streak_count} frames "
                    f"(score {score:.2f} < {self.score_min})"
                )
            self._clear_streak()
            return None

        if name == self.streak_name:
            self.streak_count += 1
        else:
            self.streak_name = name
            self.streak_count = 1
            self.stable_since = now

        if not self._is_confirmed(now):
            return None

        phrase = self.phrases.get(name)
        if phrase is None:
            return None

        emission = emit_phrase(
            self.store,
            phrase,
            now_ms=now,
            confidence=score,
            provenance={
                'detector': 'gesture',
                'gesture': name,
                'score': score,
                'streak': self.streak_count,
                'stable_ms': now - self.stable_since,
            },
            id_prefix='sign',
        )

        self._clear_streak()
        if emission is not None:
            self.cooldown.mark(now)
        return emission

    def _is_confirmed(self, now: int) -> bool:
        return (
            self.streak_count >= self.required_streak
            and now - self.stable_since >= self.stable_ms
            and self.cooldown.ready(now)
        )

    def _clear_streak(self) -> None:
        self.streak_name = None
        self.streak_count = 0

    def suspend(self) -> None:
        """Abandon any in-flight streak."""
        self._clear_streak()
        self.stable_since = 0

    def _on_visit_status(self, status: VisitStatus) -> None:
        if status != VisitStatus.RECORDING:
            self.suspend()
