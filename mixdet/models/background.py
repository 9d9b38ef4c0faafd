"""
Stationary background statistics for feature whitening.

Under a stationarity assumption the covariance between two cells of a
feature grid depends only on their offset. The background model therefore
stores a mean feature vector ``mu`` of length ``F`` and an autocorrelation
table ``cov[dy + m, dx + m]`` of ``F x F`` blocks for all cell offsets
``(dy, dx)`` in ``[-m, m]^2``. From this table the covariance of any
template of ``h x w`` cells can be assembled, which is what WHO (whitened
histograms of orientations) templates are built from.

Two estimators are provided:
- ``learn_covariance``: fast; every offset is normalised by the total number
  of cells seen, which slightly shrinks large-offset correlations
- ``learn_covariance_accurate``: every offset is normalised by the exact
  number of cell pairs it was accumulated over

References:
- Hariharan, B., Malik, J., & Ramanan, D. (2012). Discriminative
  Decorrelation for Clustering and Classification. ECCV.

Author: MixDet Toolkit Team
Date: October 2026
"""

import json
import logging
import zipfile
from pathlib import Path
from typing import Iterable, Optional, Union

import numpy as np

from ..core.progress import as_reporter
from ..core.status import BackgroundNotReadyError, FeatureExtractorNotReadyError, LearningFailedError
from ..data_preparation.images import ImageData
from ..data_preparation.utils import AtomicFileWriter
from .features import FeatureExtractor, default_feature_extractor

logger = logging.getLogger(__name__)


class StationaryBackground:
    """
    Mean and offset autocorrelation of background features.

    A model without a mean is "empty": it was never estimated or failed to
    load. Every consumer checks ``empty()`` before whitening.

    Args:
        path: Optional background file to load
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.clear()
        if path:
            self.read_from_file(path)

    def clear(self) -> None:
        self.mean: Optional[np.ndarray] = None
        self.cov: Optional[np.ndarray] = None
        self.feature_type = ''
        self.feature_params = {}
        self.cell_size = 0

    def empty(self) -> bool:
        return self.mean is None or self.mean.size == 0

    @property
    def num_features(self) -> int:
        return 0 if self.empty() else int(self.mean.shape[0])

    @property
    def max_offset(self) -> int:
        return 0 if self.cov is None else (self.cov.shape[0] - 1) // 2

    def _remember_extractor(self, extractor: FeatureExtractor) -> None:
        self.feature_type = extractor.type
        self.feature_params = extractor.params()
        self.cell_size = extractor.cell_size

    def learn_mean(self, images: Iterable[ImageData], num_images: int,
                   feature_extractor: Optional[FeatureExtractor] = None, progress=None) -> None:
        """
        Estimate the mean feature vector.

        Args:
            images: Image source (consumed up to ``num_images`` images)
            num_images: Number of images to use
            feature_extractor: Extractor (default: the process-wide default)
            progress: Progress reporter or ``(current, total)`` callback

        Raises:
            FeatureExtractorNotReadyError: If the extractor reports not ready
            LearningFailedError: If no image yielded a single cell
            OperationAborted: If the progress callback cancelled the run
        """
        extractor = feature_extractor or default_feature_extractor()
        readiness = extractor.readiness()
        if not readiness:
            raise FeatureExtractorNotReadyError(readiness.reason)
        reporter = as_reporter(progress)

        total = np.zeros(extractor.num_features)
        num_cells = 0
        for i, img in enumerate(images):
            if i >= num_images:
                break
            reporter.checkpoint(i, num_images)
            feats = extractor.extract(img)
            if feats.shape[0] == 0 or feats.shape[1] == 0:
                continue
            total += feats.sum(axis=(0, 1))
            num_cells += feats.shape[0] * feats.shape[1]
        if num_cells == 0:
            raise LearningFailedError('No image was large enough to compute background features.')
        reporter.checkpoint(num_images, num_images)

        self.mean = total / num_cells
        self.cov = None
        self._remember_extractor(extractor)
        logger.info(f"Learned background mean from {num_cells} cells ({extractor.type})")

    def learn_covariance(self, images: Iterable[ImageData], num_images: int, max_offset: int,
                         feature_extractor: Optional[FeatureExtractor] = None, progress=None) -> None:
        """Fast autocorrelation estimate, normalised by the number of cells."""
        self._learn_autocorrelation(images, num_images, max_offset, feature_extractor, progress, accurate=False)

    def learn_covariance_accurate(self, images: Iterable[ImageData], num_images: int, max_offset: int,
                                  feature_extractor: Optional[FeatureExtractor] = None, progress=None) -> None:
        """Exact autocorrelation estimate, normalised by the pair count of every offset."""
        self._learn_autocorrelation(images, num_images, max_offset, feature_extractor, progress, accurate=True)

    def _learn_autocorrelation(self, images, num_images, max_offset, feature_extractor, progress, accurate):
        if self.empty():
            raise BackgroundNotReadyError('The background mean has to be learned before the covariance.')
        extractor = feature_extractor or default_feature_extractor()
        if extractor.num_features != self.num_features:
            raise BackgroundNotReadyError(
                f'Mean has {self.num_features} features, extractor produces {extractor.num_features}.')
        readiness = extractor.readiness()
        if not readiness:
            raise FeatureExtractorNotReadyError(readiness.reason)
        reporter = as_reporter(progress)

        m = max(0, int(max_offset))
        nf = self.num_features
        sums = np.zeros((m + 1, 2 * m + 1, nf, nf))
        pairs = np.zeros((m + 1, 2 * m + 1))
        num_cells = 0

        for i, img in enumerate(images):
            if i >= num_images:
                break
            reporter.checkpoint(i, num_images)
            feats = extractor.extract(img)
            rows, cols = feats.shape[:2]
            if rows == 0 or cols == 0:
                continue
            centered = feats - self.mean
            num_cells += rows * cols
            for dy in range(0, min(m, rows - 1) + 1):
                for dx in range(-min(m, cols - 1), min(m, cols - 1) + 1):
                    if dx >= 0:
                        a = centered[:rows - dy, :cols - dx]
                        b = centered[dy:, dx:]
                    else:
                        a = centered[:rows - dy, -dx:]
                        b = centered[dy:, :cols + dx]
                    sums[dy, dx + m] += np.einsum('ijf,ijg->fg', a, b)
                    pairs[dy, dx + m] += a.shape[0] * a.shape[1]
        if num_cells == 0:
            raise LearningFailedError('No image was large enough to compute background features.')
        reporter.checkpoint(num_images, num_images)

        if accurate:
            half = sums / np.maximum(pairs, 1)[:, :, np.newaxis, np.newaxis]
        else:
            half = sums / num_cells

        cov = np.zeros((2 * m + 1, 2 * m + 1, nf, nf))
        cov[m:] = half
        for dy in range(1, m + 1):
            for dx in range(-m, m + 1):
                cov[m - dy, m - dx] = half[dy, dx + m].T
        self.cov = cov
        logger.info(f"Learned background autocorrelation up to offset {m} from {num_cells} cells "
                    f"({'accurate' if accurate else 'fast'})")

    def compute_covariance(self, rows: int, cols: int, regularization: float = 0.01) -> np.ndarray:
        """
        Assemble the covariance of a ``rows x cols`` cell template.

        The template is flattened in ``(row, col, feature)`` order, the same
        order as ``weights.reshape(-1)``. Offsets beyond the learned maximum
        are treated as uncorrelated.

        Args:
            rows: Template height in cells
            cols: Template width in cells
            regularization: Ridge ``lambda`` added to the diagonal

        Returns:
            Symmetric matrix of size ``rows * cols * F``
        """
        if self.empty() or self.cov is None:
            raise BackgroundNotReadyError('Background covariance has not been learned.')
        m = self.max_offset
        nf = self.num_features
        n = rows * cols
        r = np.repeat(np.arange(rows), cols)
        c = np.tile(np.arange(cols), rows)
        dy = r[np.newaxis, :] - r[:, np.newaxis]
        dx = c[np.newaxis, :] - c[:, np.newaxis]
        valid = (np.abs(dy) <= m) & (np.abs(dx) <= m)
        blocks = np.zeros((n, n, nf, nf))
        blocks[valid] = self.cov[dy[valid] + m, dx[valid] + m]
        sigma = blocks.transpose(0, 2, 1, 3).reshape(n * nf, n * nf)
        sigma = 0.5 * (sigma + sigma.T)
        return sigma + regularization * np.eye(n * nf)

    def mean_vector(self, rows: int, cols: int) -> np.ndarray:
        return np.tile(self.mean, rows * cols)

    def write_to_file(self, path: Union[str, Path]) -> bool:
        """Store the model as ``.npz``; an empty model is never written."""
        if self.empty():
            logger.error("Refusing to write an empty background model")
            return False
        cov = self.cov if self.cov is not None else np.zeros((0, 0, self.num_features, self.num_features))
        try:
            with AtomicFileWriter.atomic_write(path, mode='wb') as f:
                np.savez(f, mean=self.mean, cov=cov,
                         feature_type=np.array(self.feature_type),
                         feature_params=np.array(json.dumps(self.feature_params)),
                         cell_size=np.array(self.cell_size))
        except OSError as e:
            logger.error(f"Could not write background statistics to {path}: {e}")
            return False
        logger.info(f"Background statistics written to {path}")
        return True

    def read_from_file(self, path: Union[str, Path]) -> bool:
        """Load a model written by ``write_to_file``; leaves the model empty on failure."""
        self.clear()
        try:
            with np.load(str(path), allow_pickle=False) as data:
                mean = np.asarray(data['mean'], dtype=np.float64)
                cov = np.asarray(data['cov'], dtype=np.float64)
                feature_type = str(data['feature_type'])
                feature_params = json.loads(str(data['feature_params']))
                cell_size = int(data['cell_size'])
        except (OSError, ValueError, KeyError, EOFError, TypeError, AttributeError, zipfile.BadZipFile) as e:
            logger.warning(f"Could not read background statistics from {path}: {e}")
            return False

        nf = mean.shape[0] if mean.ndim == 1 else 0
        valid_cov = (cov.size == 0 or (cov.ndim == 4 and cov.shape[0] == cov.shape[1]
                                       and cov.shape[0] % 2 == 1 and cov.shape[2:] == (nf, nf)))
        if nf == 0 or not valid_cov:
            logger.warning(f"Background file {path} has inconsistent shapes")
            return False

        self.mean = mean
        self.cov = cov if cov.size > 0 else None
        self.feature_type = feature_type
        self.feature_params = feature_params
        self.cell_size = cell_size
        return True

    def __repr__(self) -> str:
        if self.empty():
            return "StationaryBackground(empty)"
        return (f"StationaryBackground(type={self.feature_type}, features={self.num_features}, "
                f"max_offset={self.max_offset})")
