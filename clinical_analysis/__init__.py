"""
Clinical note support built on the segment/entity record.

This package provides downstream helpers that never write segments:
- HPI line construction (entities grouped by source segment)
- Follow-up question suggestions from a remote service (background, no retries)
"""

from .hpi_builder import (
    build_hpi_line,
    build_hpi_lines,
    format_timestamp,
    group_by_source
)

from .followup import (
    Followup,
    FollowupClient,
    FollowupScheduler,
    FollowupServiceError,
    FollowupTask,
    load_patient_history
)

__all__ = [
    # HPI
    'build_hpi_line',
    'build_hpi_lines',
    'format_timestamp',
    'group_by_source',

    # Follow-up
    'Followup',
    'FollowupClient',
    'FollowupScheduler',
    'FollowupServiceError',
    'FollowupTask',
    'load_patient_history',
]
