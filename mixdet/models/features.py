"""
Feature extractors for the MixDet toolkit.

A feature extractor turns an image into a dense grid of cells, each described
by ``num_features`` values, so an image of ``H x W`` pixels becomes an array of
shape ``(H // cell_size, W // cell_size, num_features)``. Templates, background
statistics and feature pyramids all live on this cell grid.

Key Features:
- Plugin registry keyed by type name (``@register_feature_extractor``)
- Typed parameter schema (integer, scalar and string options) settable by name
- Process-wide default extractor selectable by type name
- Explicit ``Readiness`` result instead of exceptions for missing setup
- HOG: gradient orientation histograms with block energy normalisation
- RGB: mean colour per cell

References:
- Dalal, N., & Triggs, B. (2005). Histograms of Oriented Gradients for Human
  Detection. CVPR.
- Hariharan, B., Malik, J., & Ramanan, D. (2012). Discriminative
  Decorrelation for Clustering and Classification. ECCV.

Author: MixDet Toolkit Team
Date: October 2026
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

import cv2
import numpy as np

from ..core.status import (
    InvalidParameterValueError,
    UnknownFeatureExtractorError,
    UnknownParameterError
)
from ..data_preparation.images import ImageData

logger = logging.getLogger(__name__)

ParamValue = Union[int, float, str]


class ParameterType(Enum):
    INT = 'int'
    SCALAR = 'scalar'
    STRING = 'string'


@dataclass
class ParameterInfo:
    """Name, type and current value of one extractor parameter."""

    name: str
    type: ParameterType
    value: ParamValue


@dataclass(frozen=True)
class Readiness:
    """
    Outcome of a readiness check.

    ``Readiness.ok()`` means the extractor can be used; otherwise ``reason``
    tells which setup dependency is missing.
    """

    ready: bool
    reason: str = ''

    @classmethod
    def ok(cls) -> 'Readiness':
        return cls(True)

    @classmethod
    def not_ready(cls, reason: str) -> 'Readiness':
        return cls(False, reason)

    def __bool__(self) -> bool:
        return self.ready


class FeatureExtractor(ABC):
    """
    Base class of all feature extractors.

    Subclasses set ``TYPE`` and ``NAME``, declare their parameters in
    ``__init__`` through ``_declare`` and implement ``num_features`` and
    ``extract``. Parameter values are validated by ``_check_param``.
    """

    TYPE = ''
    NAME = ''

    def __init__(self):
        self._params: Dict[str, ParameterInfo] = {}

    def _declare(self, name: str, param_type: ParameterType, value: ParamValue) -> None:
        self._params[name] = ParameterInfo(name, param_type, value)

    @property
    def type(self) -> str:
        return self.TYPE

    @property
    def name(self) -> str:
        return self.NAME

    @property
    def cell_size(self) -> int:
        return int(self._params['cellSize'].value)

    @property
    @abstractmethod
    def num_features(self) -> int:
        """Number of values describing one cell."""

    @abstractmethod
    def extract(self, image: ImageData) -> np.ndarray:
        """
        Compute the cell grid of an image.

        Args:
            image: Decoded image

        Returns:
            float64 array of shape ``(rows, cols, num_features)``; ``rows`` or
            ``cols`` is 0 when the image is smaller than one cell
        """

    def list_parameters(self) -> List[ParameterInfo]:
        return [copy.copy(p) for p in self._params.values()]

    def params(self) -> Dict[str, ParamValue]:
        return {name: p.value for name, p in self._params.items()}

    def get_param(self, name: str) -> ParamValue:
        if name not in self._params:
            raise UnknownParameterError(f"{self.TYPE} has no parameter '{name}'")
        return self._params[name].value

    def set_param(self, name: str, value: ParamValue) -> None:
        """
        Change a parameter.

        Raises:
            UnknownParameterError: If the extractor has no such parameter
            InvalidParameterValueError: If the value has the wrong type or is
                out of range
        """
        if name not in self._params:
            raise UnknownParameterError(f"{self.TYPE} has no parameter '{name}'")
        info = self._params[name]
        if info.type is ParameterType.INT:
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise InvalidParameterValueError(f"{name} expects an integer, got {value!r}")
            value = int(value)
        elif info.type is ParameterType.SCALAR:
            if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
                raise InvalidParameterValueError(f"{name} expects a number, got {value!r}")
            value = float(value)
        else:
            if not isinstance(value, str):
                raise InvalidParameterValueError(f"{name} expects a string, got {value!r}")
        self._check_param(name, value)
        info.value = value
        logger.debug(f"{self.TYPE}.{name} = {value!r}")

    def _check_param(self, name: str, value: ParamValue) -> None:
        if name == 'cellSize' and value < 1:
            raise InvalidParameterValueError(f"cellSize must be positive, got {value}")

    def readiness(self) -> Readiness:
        return Readiness.ok()

    def whitening_readiness(self, background) -> Readiness:
        """
        Check whether this extractor can whiten features with a background model.

        Args:
            background: ``StationaryBackground`` or ``None``
        """
        own = self.readiness()
        if not own:
            return own
        if background is None or background.empty():
            return Readiness.not_ready('No background statistics attached to the feature extractor.')
        if background.feature_type and background.feature_type != self.type:
            return Readiness.not_ready(
                f'Background statistics were learned with {background.feature_type}, '
                f'not {self.type}.')
        if background.num_features != self.num_features:
            return Readiness.not_ready(
                f'Background statistics have {background.num_features} features per cell, '
                f'extractor produces {self.num_features}.')
        if background.cell_size and background.cell_size != self.cell_size:
            return Readiness.not_ready(
                f'Background statistics were learned with cell size {background.cell_size}, '
                f'extractor uses {self.cell_size}.')
        return Readiness.ok()

    def cells_for(self, width: int, height: int):
        """Number of (rows, cols) cells covering an image of the given size."""
        return height // self.cell_size, width // self.cell_size

    def same_configuration(self, other: 'FeatureExtractor') -> bool:
        return other is not None and self.type == other.type and self.params() == other.params()

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'params': self.params()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeatureExtractor':
        extractor = create(data['type'])
        for name, value in data.get('params', {}).items():
            extractor.set_param(name, value)
        return extractor

    def _gray_or_color(self, image: ImageData, gray: bool) -> np.ndarray:
        pixels = image.pixels
        if gray and pixels.shape[2] == 3:
            return cv2.cvtColor(pixels, cv2.COLOR_RGB2GRAY).astype(np.float32)
        if gray:
            return pixels[:, :, 0].astype(np.float32)
        if pixels.shape[2] == 1:
            return np.repeat(pixels, 3, axis=2).astype(np.float32)
        return pixels.astype(np.float32)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.params()})"


_REGISTRY: Dict[str, Type[FeatureExtractor]] = {}
_default_lock = threading.Lock()
_default: Optional[FeatureExtractor] = None
DEFAULT_TYPE = 'HOG'


def register_feature_extractor(cls: Type[FeatureExtractor]) -> Type[FeatureExtractor]:
    """Class decorator adding an extractor variant to the registry."""
    if not cls.TYPE:
        raise ValueError(f"{cls.__name__} does not define TYPE")
    _REGISTRY[cls.TYPE] = cls
    return cls


def create(type_name: str) -> FeatureExtractor:
    """
    Instantiate a registered extractor with default parameters.

    Raises:
        UnknownFeatureExtractorError: If no extractor has this type name
    """
    if type_name not in _REGISTRY:
        raise UnknownFeatureExtractorError(f"Unknown feature extractor '{type_name}'")
    return _REGISTRY[type_name]()


def list_feature_extractors() -> List[FeatureExtractor]:
    """One default-configured instance of every registered variant."""
    return [cls() for cls in _REGISTRY.values()]


def default_feature_extractor() -> FeatureExtractor:
    """The process-wide default extractor (shared, mutable)."""
    global _default
    with _default_lock:
        if _default is None:
            _default = create(DEFAULT_TYPE)
        return _default


def set_default_feature_extractor(type_name: str) -> FeatureExtractor:
    """Replace the process-wide default with a fresh extractor of another type."""
    global _default
    extractor = create(type_name)
    with _default_lock:
        _default = extractor
    logger.info(f"Default feature extractor changed to {type_name}")
    return extractor


def reset_default_feature_extractor() -> None:
    global _default
    with _default_lock:
        _default = None


@register_feature_extractor
class HOGFeatureExtractor(FeatureExtractor):
    """
    Histograms of oriented gradients.

    Unsigned gradient orientations are binned into ``numBins`` bins per cell,
    weighted by gradient magnitude. With ``l2`` normalisation each cell is
    divided by the root energy of its 3x3 cell neighbourhood and clipped at
    ``truncation``.
    """

    TYPE = 'HOG'
    NAME = 'Histogram of Oriented Gradients'

    def __init__(self):
        super().__init__()
        self._declare('cellSize', ParameterType.INT, 8)
        self._declare('numBins', ParameterType.INT, 9)
        self._declare('truncation', ParameterType.SCALAR, 0.2)
        self._declare('normalization', ParameterType.STRING, 'l2')

    @property
    def num_features(self) -> int:
        return int(self._params['numBins'].value)

    def _check_param(self, name: str, value: ParamValue) -> None:
        super()._check_param(name, value)
        if name == 'numBins' and not 2 <= value <= 36:
            raise InvalidParameterValueError(f"numBins must be in [2, 36], got {value}")
        if name == 'truncation' and value <= 0:
            raise InvalidParameterValueError(f"truncation must be positive, got {value}")
        if name == 'normalization' and value not in ('l2', 'none'):
            raise InvalidParameterValueError(f"normalization must be 'l2' or 'none', got {value!r}")

    def extract(self, image: ImageData) -> np.ndarray:
        cs = self.cell_size
        nb = self.num_features
        rows, cols = self.cells_for(image.width, image.height)
        if image.empty() or rows == 0 or cols == 0:
            return np.zeros((max(rows, 0), max(cols, 0), nb))

        gray = self._gray_or_color(image, gray=True)
        gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=1)
        gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=1)
        gx = gx[:rows * cs, :cols * cs]
        gy = gy[:rows * cs, :cols * cs]

        magnitude = np.hypot(gx, gy).astype(np.float64)
        orientation = np.mod(np.arctan2(gy, gx), np.pi)
        bins = np.minimum((orientation / np.pi * nb).astype(np.int64), nb - 1)

        cell_y, cell_x = np.meshgrid(np.arange(rows * cs) // cs, np.arange(cols * cs) // cs, indexing='ij')
        hist = np.zeros((rows, cols, nb))
        np.add.at(hist, (cell_y, cell_x, bins), magnitude)

        if self._params['normalization'].value == 'l2':
            energy = (hist ** 2).sum(axis=2).astype(np.float32)
            block = cv2.boxFilter(energy, -1, (3, 3), normalize=False, borderType=cv2.BORDER_REPLICATE)
            hist = hist / np.sqrt(block.astype(np.float64) + 1e-6)[:, :, np.newaxis]
            hist = np.minimum(hist, float(self._params['truncation'].value))
        return hist


@register_feature_extractor
class RGBFeatureExtractor(FeatureExtractor):
    """Mean colour of each cell, in [0, 1] times ``scale``."""

    TYPE = 'RGB'
    NAME = 'Mean Cell Colour'

    def __init__(self):
        super().__init__()
        self._declare('cellSize', ParameterType.INT, 4)
        self._declare('colorspace', ParameterType.STRING, 'rgb')
        self._declare('scale', ParameterType.SCALAR, 1.0)

    @property
    def num_features(self) -> int:
        return 1 if self._params['colorspace'].value == 'gray' else 3

    def _check_param(self, name: str, value: ParamValue) -> None:
        super()._check_param(name, value)
        if name == 'colorspace' and value not in ('rgb', 'gray'):
            raise InvalidParameterValueError(f"colorspace must be 'rgb' or 'gray', got {value!r}")
        if name == 'scale' and value <= 0:
            raise InvalidParameterValueError(f"scale must be positive, got {value}")

    def extract(self, image: ImageData) -> np.ndarray:
        cs = self.cell_size
        rows, cols = self.cells_for(image.width, image.height)
        if image.empty() or rows == 0 or cols == 0:
            return np.zeros((max(rows, 0), max(cols, 0), self.num_features))

        pixels = self._gray_or_color(image, gray=self.num_features == 1)
        pixels = pixels[:rows * cs, :cols * cs]
        cells = cv2.resize(pixels, (cols, rows), interpolation=cv2.INTER_AREA).astype(np.float64)
        if cells.ndim == 2:
            cells = cells[:, :, np.newaxis]
        return cells / 255.0 * float(self._params['scale'].value)
