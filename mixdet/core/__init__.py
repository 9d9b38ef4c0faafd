"""
Core primitives for the MixDet toolkit.

Provides:
- Rectangle, Detection and Sample data types
- Result codes and the exception hierarchy
- Two-level progress reporting with cooperative cancellation
"""

from .geometry import Rectangle, Detection, Sample
from .status import ResultCode, ThresholdOptimization, MixDetError, OperationAborted
from .progress import ProgressReporter, ConsoleProgress, as_reporter

__all__ = [
    "Rectangle",
    "Detection",
    "Sample",
    "ResultCode",
    "ThresholdOptimization",
    "MixDetError",
    "OperationAborted",
    "ProgressReporter",
    "ConsoleProgress",
    "as_reporter"
]
