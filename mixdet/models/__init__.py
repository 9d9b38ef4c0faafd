"""
Model definitions for the MixDet toolkit.

Implements the pieces a mixture-of-templates detector is built from:
- Feature extractor registry (HOG, RGB) with typed parameters
- Stationary background statistics used for WHO whitening
- Linear template models, mixtures and their JSON model files
"""

from .features import (
    FeatureExtractor,
    ParameterInfo,
    ParameterType,
    Readiness,
    register_feature_extractor,
    create,
    list_feature_extractors,
    default_feature_extractor,
    set_default_feature_extractor
)
from .background import StationaryBackground
from .mixture import Model, Mixture, ModelListEntry, read_model_list

__all__ = [
    "FeatureExtractor",
    "ParameterInfo",
    "ParameterType",
    "Readiness",
    "register_feature_extractor",
    "create",
    "list_feature_extractors",
    "default_feature_extractor",
    "set_default_feature_extractor",
    "StationaryBackground",
    "Model",
    "Mixture",
    "ModelListEntry",
    "read_model_list"
]
