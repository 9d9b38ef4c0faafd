"""
Detection and evaluation for the MixDet toolkit.

Implements:
- Multi-class sliding-window detection over feature pyramids
- Ranked precision/recall statistics, F-measure and average precision
- Model evaluation on annotated positive and negative images
"""

from .detector import Detector, DetectorEntry, FeaturePyramid, non_maximum_suppression
from .statistics import TestResult, fmeasure, ranked_curve, average_precision
from .evaluator import ModelEvaluator

__all__ = [
    "Detector",
    "DetectorEntry",
    "FeaturePyramid",
    "non_maximum_suppression",
    "TestResult",
    "fmeasure",
    "ranked_curve",
    "average_precision",
    "ModelEvaluator"
]
