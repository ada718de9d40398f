"""
Utterance chunk aggregation for the clinician transcript stream.

The speech recognizer delivers (text, is_final, confidence) results on
its own schedule. One chunk (one recognizer session, start to end)
becomes exactly one spoken Segment:
- Text: final results joined with single spaces
- Span: chunk start to chunk end, relative to the visit start
- Confidence: mean of the final results' confidences, or
  DEFAULT_TRANSCRIPT_CONFIDENCE when the recognizer reported none

Interim results only update the live `interim` preview.
"""

import logging
from typing import Dict, List, Optional

import numpy as np

from session.data_models import Segment, new_id
from session.data_models import now_ms as wall_clock_ms
from session.enums import Modality, Speaker, VisitStatus
from session.store import SegmentStore

logger = logging.getLogger(__name__)

# Fallback when the recognizer gives no native score; a placeholder,
# not a calibrated value
DEFAULT_TRANSCRIPT_CONFIDENCE = 0.85


class TranscriptChunker:
    """
    Accumulates recognizer results for one utterance chunk.

    Usage:
        chunker = TranscriptChunker(store, config)
        chunker.begin_chunk(now)
        chunker.on_result("my chest", is_final=True, confidence=0.9)
        segment = chunker.end_chunk(now)
    """

    def __init__(self, store: SegmentStore, config: Optional[Dict] = None):
        self.store = store

        transcript_config = (config or {}).get('transcript', {})
        self.default_confidence = transcript_config.get(
            'default_confidence', DEFAULT_TRANSCRIPT_CONFIDENCE
        )
        self.speaker = Speaker(transcript_config.get('speaker', Speaker.CLINICIAN.value))

        self._chunk_started_at: Optional[int] = None
        self._text = ""
        self._confidences: List[float] = []
        self._interim = ""

        store.add_status_listener(self._on_visit_status)

    @property
    def interim(self) -> str:
        """Latest non-final text (display only)."""
        return self._interim

    @property
    def text(self) -> str:
        """Final text accumulated so far in the open chunk."""
        return self._text

    @property
    def is_open(self) -> bool:
        return self._chunk_started_at is not None

    def begin_chunk(self, now_ms: Optional[int] = None) -> None:
        """Start a new chunk, discarding anything accumulated before."""
        self._chunk_started_at = now_ms if now_ms is not None else wall_clock_ms()
        self._text = ""
        self._confidences = []
        self._interim = ""

    def on_result(
        self,
        text: Optional[str],
        is_final: bool,
        confidence: Optional[float] = None
    ) -> None:
        """
        Feed one recognizer result.

        Args:
            text: Recognized text (empty/None is ignored)
            is_final: Whether the recognizer committed this result
            confidence: Native confidence, if the recognizer reports one
        """
        if not self.store.is_recording:
            return
        if not self.is_open:
            self.begin_chunk()

        piece = (text or "").strip()
        if not is_final:
            self._interim = piece
            return

        if piece:
            self._text = f"{self._text} {piece}" if self._text else piece
        if isinstance(confidence, (int, float)):
            self._confidences.append(float(confidence))
        self._interim = ""

    def end_chunk(self, now_ms: Optional[int] = None) -> Optional[Segment]:
        """
        Close the chunk and store one spoken segment.

        Returns:
            The stored Segment, or None for an empty chunk, a closed chunk,
            a visit that is not recording, or a rejected segment
        """
        if not self.is_open:
            return None

        started_at = self._chunk_started_at
        text = self._text.strip()
        confidences = list(self._confidences)
        self.suspend()

        if not self.store.is_recording or not text:
            return None

        now = now_ms if now_ms is not None else wall_clock_ms()
        confidence = float(np.mean(confidences)) if confidences else self.default_confidence

        segment = Segment(
            id=new_id('asr'),
            speaker=self.speaker,
            modality=Modality.SPOKEN,
            t_start=self.store.relative_ms(started_at),
            t_end=self.store.relative_ms(now),
            text=text,
            confidence=confidence,
        )
        if not self.store.add_segment(segment):
            return None

        logger.info(
            f"Transcript chunk stored: {segment.t_start}-{segment.t_end}ms, "
            f"{len(text.split())} words, conf={confidence:.2f}"
        )
        return segment

    def suspend(self) -> None:
        """Discard the open chunk."""
        self._chunk_started_at = None
        self._text = ""
        self._confidences = []
        self._interim = ""

    def _on_visit_status(self, status: VisitStatus) -> None:
        if status != VisitStatus.RECORDING:
            self.suspend()


def ingest_chunk(
    chunker: TranscriptChunker,
    events: List[Dict],
    started_at_ms: int,
    ended_at_ms: int
) -> Optional[Segment]:
    """
    Feed a complete recorded chunk through the chunker.

    Args:
        chunker: Target chunker
        events: Dicts with 'text', 'is_final' and optional 'confidence'
        started_at_ms: Absolute chunk start
        ended_at_ms: Absolute chunk end

    Returns:
        Stored Segment or None
    """
    chunker.begin_chunk(started_at_ms)
    for event in events or []:
        if not isinstance(event, dict):
            continue
        chunker.on_result(
            event.get('text'),
            bool(event.get('is_final', False)),
            event.get('confidence'),
        )
    return chunker.end_chunk(ended_at_ms)
