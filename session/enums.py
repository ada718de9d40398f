"""
Enumerations for the visit capture core.
"""

from enum import Enum


class Speaker(Enum):
    """Who produced a communicative act."""
    PATIENT = "patient"
    CLINICIAN = "clinician"


class Modality(Enum):
    """Source channel of a segment."""
    SIGNED = "signed"  # Hand/face gesture recognition
    SPOKEN = "spoken"  # Speech transcript


class EntityType(Enum):
    """Closed set of clinical fact types."""
    SYMPTOM = "symptom"
    DURATION = "duration"
    SEVERITY = "severity"
    BODY_SITE = "body_site"
    MEDICATION = "medication"
    ALLERGY = "allergy"


class VisitStatus(Enum):
    """Visit lifecycle states."""
    IDLE = "idle"
    RECORDING = "recording"
    REVIEW = "review"
