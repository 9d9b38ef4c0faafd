"""
MixDet Toolkit

Learning, calibration and evaluation of mixture-of-templates sliding-window
object detectors, driven through a handle-based API of independent detector
and learner sessions.

Authors: MixDet Toolkit Team
References:
- Hariharan, B., Malik, J., & Ramanan, D. (2012). Discriminative
  Decorrelation for Clustering and Classification. ECCV.
- Felzenszwalb, P. F., Girshick, R. B., McAllester, D., & Ramanan, D. (2010).
  Object Detection with Discriminatively Trained Part-Based Models. TPAMI.
"""

__version__ = "1.0.0"
__author__ = "MixDet Toolkit Team"
__email__ = "contact@example.com"

# Core modules
from . import config
from . import core
from . import data_preparation
from . import models
from . import training
from . import evaluation
from . import api

__all__ = [
    "config",
    "core",
    "data_preparation",
    "models",
    "training",
    "evaluation",
    "api"
]
