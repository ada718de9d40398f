"""
Audio pipeline: clinician transcript ingestion.

The speech recognizer is an external producer; this package only turns
its per-utterance results into one spoken Segment per chunk.
"""

from .transcript_chunker import (
    DEFAULT_TRANSCRIPT_CONFIDENCE,
    TranscriptChunker,
    ingest_chunk
)

__all__ = [
    'DEFAULT_TRANSCRIPT_CONFIDENCE',
    'TranscriptChunker',
    'ingest_chunk',
]
