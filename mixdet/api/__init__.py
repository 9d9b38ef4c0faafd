"""
Handle-based API of the MixDet toolkit.

Provides:
- SessionRegistry owning detector and learner sessions behind 1-based handles
- DetectionLibrary, the status-code entry points over a registry
- Fixed-capacity result structures handed to callers
"""

from .registry import SessionRegistry, DetectorSession
from .library import DetectionLibrary, api_call
from .flat import (
    FlatDetection,
    FlatBoundingBox,
    RawTestResult,
    SynsetSearchResult,
    FeatureExtractorInfo,
    FeatureExtractorParameter
)

__all__ = [
    "SessionRegistry",
    "DetectorSession",
    "DetectionLibrary",
    "api_call",
    "FlatDetection",
    "FlatBoundingBox",
    "RawTestResult",
    "SynsetSearchResult",
    "FeatureExtractorInfo",
    "FeatureExtractorParameter"
]
