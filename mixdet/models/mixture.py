"""
Mixture models and model files.

A mixture is the detector of one class: a feature extractor configuration
plus a set of linear templates ("components"), one per appearance cluster.
Each template scores a window of cells by correlation plus a bias; a window
is a hit when the score is at least the decision threshold (calibrated
thresholds are stored as ``bias = -threshold`` so the decision point is 0).

Model files are JSON::

    {
      "feature_extractor": {"type": "HOG", "params": {"cellSize": 8, ...}},
      "models": [{"rows": 5, "cols": 3, "num_features": 9,
                  "bias": -0.42, "weights": [...]}, ...]
    }

Model list files hold one entry per line: ``classname modelfile
[threshold [synset_id]]``, separated by tabs or spaces; relative model paths
are resolved against the list file's directory.

Author: MixDet Toolkit Team
Date: October 2026
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from ..core.status import InvalidModelFileError, InvalidModelListFileError, MixDetError
from ..data_preparation.utils import AtomicFileWriter
from .features import FeatureExtractor

logger = logging.getLogger(__name__)


class Model:
    """
    One linear template.

    Args:
        weights: Template of shape ``(rows, cols, num_features)``
        bias: Added to every correlation score
    """

    def __init__(self, weights: np.ndarray, bias: float = 0.0):
        self.weights = np.asarray(weights, dtype=np.float64)
        self.bias = float(bias)

    @property
    def rows(self) -> int:
        return self.weights.shape[0]

    @property
    def cols(self) -> int:
        return self.weights.shape[1]

    @property
    def num_features(self) -> int:
        return self.weights.shape[2]

    def correlate(self, features: np.ndarray) -> np.ndarray:
        """
        Score every template position on a feature grid.

        Returns:
            Array of shape ``(R - rows + 1, C - cols + 1)`` holding correlation
            plus bias; empty if the grid is smaller than the template
        """
        if features.shape[0] < self.rows or features.shape[1] < self.cols:
            return np.zeros((0, 0))
        windows = sliding_window_view(features, (self.rows, self.cols), axis=(0, 1))
        return np.einsum('ijfhw,hwf->ij', windows, self.weights) + self.bias

    def to_dict(self) -> dict:
        return {
            'rows': self.rows,
            'cols': self.cols,
            'num_features': self.num_features,
            'bias': self.bias,
            'weights': self.weights.reshape(-1).tolist()
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Model':
        shape = (int(data['rows']), int(data['cols']), int(data['num_features']))
        weights = np.asarray(data['weights'], dtype=np.float64)
        if min(shape) <= 0 or weights.size != shape[0] * shape[1] * shape[2]:
            raise ValueError(f"weights do not match shape {shape}")
        return cls(weights.reshape(shape), float(data.get('bias', 0.0)))

    def __repr__(self) -> str:
        return f"Model({self.rows}x{self.cols}x{self.num_features}, bias={self.bias:.4f})"


class Mixture:
    """
    Detector of one class: feature extractor plus component templates.

    Args:
        feature_extractor: Extractor the templates were learned with
        models: Component templates
    """

    def __init__(self, feature_extractor: FeatureExtractor, models: Optional[List[Model]] = None):
        self.feature_extractor = feature_extractor
        self.models: List[Model] = list(models or [])

    def __len__(self) -> int:
        return len(self.models)

    def empty(self) -> bool:
        return len(self.models) == 0

    def to_dict(self) -> dict:
        return {
            'feature_extractor': self.feature_extractor.to_dict(),
            'models': [m.to_dict() for m in self.models]
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Mixture':
        extractor = FeatureExtractor.from_dict(data['feature_extractor'])
        models = [Model.from_dict(m) for m in data['models']]
        for model in models:
            if model.num_features != extractor.num_features:
                raise ValueError(f"Template has {model.num_features} features, "
                                 f"{extractor.type} produces {extractor.num_features}")
        return cls(extractor, models)

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'Mixture':
        """
        Read a model file.

        Raises:
            InvalidModelFileError: If the file is missing, unreadable or malformed
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                mixture = cls.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError, MixDetError) as e:
            raise InvalidModelFileError(f"Invalid model file {path}: {e}")
        if mixture.empty():
            raise InvalidModelFileError(f"Model file {path} contains no models")
        logger.debug(f"Loaded {len(mixture)} models from {path}")
        return mixture

    def save(self, path: Union[str, Path], append: bool = False) -> bool:
        """
        Write the mixture to a model file.

        Args:
            path: Target file
            append: Add the models to those already in ``path`` (if it exists)
                instead of overwriting it

        Returns:
            ``True`` on success, ``False`` if the file could not be written or
            the existing file cannot be merged
        """
        mixture = self
        if append and Path(path).exists():
            try:
                existing = Mixture.load(path)
            except InvalidModelFileError as e:
                logger.error(f"Cannot append to {path}: {e}")
                return False
            if not existing.feature_extractor.same_configuration(self.feature_extractor):
                logger.error(f"Cannot append to {path}: models use a different feature extractor")
                return False
            mixture = Mixture(self.feature_extractor, existing.models + self.models)
        try:
            with AtomicFileWriter.atomic_write(path) as f:
                json.dump(mixture.to_dict(), f)
        except OSError as e:
            logger.error(f"Could not write model file {path}: {e}")
            return False
        logger.info(f"Saved {len(mixture)} models to {path}")
        return True

    def __repr__(self) -> str:
        return f"Mixture({self.feature_extractor.type}, {self.models})"


@dataclass
class ModelListEntry:
    classname: str
    model_file: Path
    threshold: float = 0.0
    synset_id: str = ''


def read_model_list(path: Union[str, Path]) -> List[ModelListEntry]:
    """
    Parse a model list file.

    Raises:
        InvalidModelListFileError: If the file cannot be read or a line is malformed
    """
    path = Path(path)
    entries = []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            lines = f.readlines()
    except OSError as e:
        raise InvalidModelListFileError(f"Could not read model list {path}: {e}")
    for lineno, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        fields = line.split()
        if len(fields) < 2 or len(fields) > 4:
            raise InvalidModelListFileError(f"{path}:{lineno}: expected 2 to 4 fields, got {len(fields)}")
        try:
            threshold = float(fields[2]) if len(fields) > 2 else 0.0
        except ValueError:
            raise InvalidModelListFileError(f"{path}:{lineno}: invalid threshold {fields[2]!r}")
        model_file = Path(fields[1])
        if not model_file.is_absolute():
            model_file = path.parent / model_file
        entries.append(ModelListEntry(fields[0], model_file, threshold, fields[3] if len(fields) > 3 else ''))
    return entries
