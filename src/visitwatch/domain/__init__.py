"""Domain types."""

from visitwatch.domain.detection_types import (
    DetectionSettings,
    DwellCandidate,
    DwellPeriod,
    LocationPoint,
    NearbyPlace,
    Place,
    ReconcileResult,
    UnknownVisitSuggestion,
    Visit,
    VisitNeighbourhood,
    VisitStatus,
)

__all__ = [
    "DetectionSettings",
    "DwellCandidate",
    "DwellPeriod",
    "LocationPoint",
    "NearbyPlace",
    "Place",
    "ReconcileResult",
    "UnknownVisitSuggestion",
    "Visit",
    "VisitNeighbourhood",
    "VisitStatus",
]
