"""
History-of-present-illness (HPI) line construction from entities.

Entities are grouped by source segment and composed into short lines:
    • [00:12] chest pain - left side, two days, severe

Ordering within a line: symptoms, then body sites, then durations and
severities. A group with none of those falls back to all entity texts.
Read-only over stored entities/segments; always builds new strings.
"""

from collections import OrderedDict
from typing import Dict, Iterable, List

from session.data_models import Entity, Segment
from session.enums import EntityType

BULLET = "• "


def format_timestamp(ms: int) -> str:
    """Format ms since visit start as MM:SS."""
    minutes = int(ms) // 60000
    seconds = (int(ms) % 60000) // 1000
    return f"{minutes:02d}:{seconds:02d}"


def group_by_source(entities: Iterable[Entity]) -> "OrderedDict[str, List[Entity]]":
    """Group entities by source segment id, in first-appearance order."""
    groups: "OrderedDict[str, List[Entity]]" = OrderedDict()
    for entity in entities:
        if not entity.source_segment_id:
            continue
        groups.setdefault(entity.source_segment_id, []).append(entity)
    return groups


def _texts(group: List[Entity], entity_type: EntityType) -> str:
    return ", ".join(e.text.strip() for e in group if e.type == entity_type)


def build_hpi_line(group: List[Entity]) -> str:
    """Compose one line (without bullet/time prefix) for a segment's entities."""
    symptoms = _texts(group, EntityType.SYMPTOM)
    sites = _texts(group, EntityType.BODY_SITE)
    tail = ", ".join(
        t for t in (_texts(group, EntityType.DURATION), _texts(group, EntityType.SEVERITY)) if t
    )

    line = symptoms
    if sites:
        line += (" - " if line else "") + sites
    if tail:
        line += (", " if line else "") + tail

    if not line:
        line = ", ".join(e.text.strip() for e in group)
    return line.strip()


def build_hpi_lines(entities: Iterable[Entity], segments: Iterable[Segment]) -> List[str]:
    """
    Build bulleted HPI lines, one per source segment.

    Args:
        entities: Stored entities
        segments: Stored segments (for timestamps)

    Returns:
        List of lines like "• [01:05] chest pain - left side"
    """
    by_id: Dict[str, Segment] = {s.id: s for s in segments}
    lines = []

    for segment_id, group in group_by_source(entities).items():
        line = build_hpi_line(group)
        segment = by_id.get(segment_id)
        if segment is not None:
            line = f"[{format_timestamp(segment.t_start)}] {line}"
        if line.strip():
            lines.append(BULLET + line.strip())

    return lines
