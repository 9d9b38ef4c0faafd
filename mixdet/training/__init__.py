"""
Training pipeline for the MixDet toolkit.

Implements:
- Mixture learning by aspect-ratio and appearance clustering of WHO descriptors
- Per-component threshold calibration (overlapping and leave-one-out)
- Background statistics learning from an image repository
"""

from .learner import ModelLearner, RepositoryModelLearner, LearnerState, run_learning
from .threshold import ThresholdCalibrator
from .background_learning import learn_background

__all__ = [
    "ModelLearner",
    "RepositoryModelLearner",
    "LearnerState",
    "run_learning",
    "ThresholdCalibrator",
    "learn_background"
]
