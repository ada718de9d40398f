"""
Multimodal fusion module.

This package combines the signed (gesture) and spoken (transcript)
streams of one visit into a single record:
- Routes each recognizer event to its detector
- Appends confirmed events through the store's idempotent path
- Ties detector suspension and recognizer release to the visit lifecycle

Rationale:
- Two independent producers may deliver out of temporal order
- The store, not arrival order, defines the timeline
"""

from .visit_fusion import VisitFusionEngine

__all__ = [
    'VisitFusionEngine',
]
