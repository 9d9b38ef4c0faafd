"""
Centralized configuration management for the MixDet toolkit.

Library components take explicit arguments; this module supplies the values
for the command-line tools and for hosts that want one place to keep
feature extractor, learning, detection, evaluation and background settings.

Key Features:
- YAML file deep-merged over built-in defaults
- Dot-notation access (``config.get('learning.max_aspect_clusters')``)
- Consistency validation with errors and warnings
- Logging set up from the ``logging`` section
- Process-wide default feature extractor configured from ``features``

Author: MixDet Toolkit Team
Date: October 2026
"""

import copy
import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    'project': {
        'name': 'mixdet',
        'version': '1.0.0',
        'description': 'Mixture-of-templates object detector learning and evaluation'
    },

    # Feature extraction
    'features': {
        'default': 'HOG',
        'params': {
            'HOG': {'cellSize': 8, 'numBins': 9, 'truncation': 0.2, 'normalization': 'l2'},
            'RGB': {'cellSize': 4, 'colorspace': 'rgb', 'scale': 1.0}
        }
    },

    # Model learning (WHO templates)
    'learning': {
        'max_aspect_clusters': 3,
        'max_who_clusters': 3,
        'max_template_cells': 100,
        'regularization': 0.01,
        'kmeans_n_init': 10,
        'random_seed': 42,
        'max_samples': 0,                   # 0 = all annotated images of a synset

        # Threshold calibration
        'threshold_mode': 'overlapping',    # 'overlapping' or 'loocv'
        'threshold_max_positive': 0,        # 0 = all positive samples
        'threshold_num_negative': 20,
        'threshold_fmeasure_b': 1.0,
        'calibration_interval': 5
    },

    # Sliding-window detection
    'detection': {
        'overlap': 0.5,
        'interval': 10,
        'max_models': 0                     # 0 = unlimited
    },

    # Model evaluation
    'evaluation': {
        'eq_overlap': 0.5,
        'granularity': 0,                   # 0 = detector interval
        'num_negative': 0
    },

    # Background statistics
    'background': {
        'num_images': 1000,
        'max_offset': 19,
        'accurate_autocorrelation': False
    },

    'repository': {
        'directory': ''
    },

    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        'date_format': '%Y-%m-%d %H:%M:%S'
    }
}

_UNIT_INTERVAL_KEYS = ('detection.overlap', 'evaluation.eq_overlap')
_POSITIVE_KEYS = ('learning.max_aspect_clusters', 'learning.max_who_clusters',
                  'learning.max_template_cells', 'detection.interval')


class Config:
    """
    Centralized configuration management for the MixDet toolkit.

    Sections:
    - ``features``: default feature extractor and per-type parameters
    - ``learning``: clustering, template size, whitening and calibration
    - ``detection``: suppression overlap, pyramid interval, class cap
    - ``evaluation``: matching overlap and scan granularity
    - ``background``: number of images and autocorrelation range
    - ``repository``: default repository directory
    - ``logging``: level and format

    Args:
        config_path: YAML file to read; defaults to ``config.yaml`` in the
            project root. A missing file is created with the defaults.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.project_root = Path(__file__).resolve().parents[2]
        self.config_path = Path(config_path) if config_path else self.project_root / "config.yaml"
        self.config = self._load_config()
        self._setup_logging()

    def _load_config(self) -> Dict[str, Any]:
        defaults = copy.deepcopy(DEFAULT_CONFIG)
        if not self.config_path.exists():
            self._save_config(defaults)
            logger.info(f"Wrote default configuration to {self.config_path}")
            return defaults

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                overrides = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable configuration {self.config_path}: {e}")
            return defaults

        if not isinstance(overrides, dict):
            logger.warning(f"Ignoring configuration {self.config_path}: top level is not a mapping")
            return defaults
        logger.info(f"Loaded configuration from {self.config_path}")
        return self._deep_merge(defaults, overrides)

    def _deep_merge(self, base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``overrides`` into a copy of ``base``; nested mappings merge key by key."""
        merged = dict(base)
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = self._deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _save_config(self, config: Dict[str, Any]) -> None:
        try:
            os.makedirs(self.config_path.parent, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(config, f, default_flow_style=False, indent=2, sort_keys=False,
                               allow_unicode=True)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Could not write configuration {self.config_path}: {e}")

    def _setup_logging(self) -> None:
        level_name = str(self.get('logging.level', 'INFO')).upper()
        logging.basicConfig(
            level=getattr(logging, level_name, logging.INFO),
            format=self.get('logging.format', DEFAULT_CONFIG['logging']['format']),
            datefmt=self.get('logging.date_format', DEFAULT_CONFIG['logging']['date_format'])
        )

    def get(self, key: str, default: Any = None) -> Any:
        """
        Look up a value by dotted key.

        Args:
            key: Dotted path, e.g. ``'detection.interval'``
            default: Returned when any part of the path is missing

        Examples:
            >>> config = Config()
            >>> config.get('detection.interval')
            10
            >>> config.get('evaluation.missing', 0.5)
            0.5
        """
        node = self.config
        for part in key.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a value by dotted key, creating intermediate sections."""
        *sections, leaf = key.split('.')
        node = self.config
        for part in sections:
            node = node.setdefault(part, {})
        node[leaf] = value

    def update(self, updates: Dict[str, Any]) -> None:
        """Apply several ``dotted key -> value`` assignments."""
        for key, value in updates.items():
            self.set(key, value)

    def save(self) -> None:
        self._save_config(self.config)
        logger.info(f"Saved configuration to {self.config_path}")

    def configure_feature_extractor(self):
        """
        Make ``features.default`` the process-wide feature extractor and apply
        its ``features.params`` entry.

        Returns:
            The configured default extractor

        Raises:
            UnknownFeatureExtractorError: If the type is not registered
            UnknownParameterError: If a configured parameter does not exist
            InvalidParameterValueError: If a configured value is rejected
        """
        from ..models.features import set_default_feature_extractor

        extractor = set_default_feature_extractor(self.get('features.default', 'HOG'))
        params = self.get(f'features.params.{extractor.type}', {}) or {}
        for name, value in params.items():
            extractor.set_param(name, value)
        logger.info(f"Default feature extractor: {extractor.type} {extractor.params()}")
        return extractor

    def validate(self) -> Dict[str, Any]:
        """
        Check the settings for values the pipelines would reject.

        Returns:
            ``{'valid': bool, 'errors': [...], 'warnings': [...]}``; only
            errors make the configuration invalid
        """
        errors, warnings = [], []

        for key in _UNIT_INTERVAL_KEYS:
            if not 0.0 <= self.get(key, 0.5) <= 1.0:
                errors.append(f"{key} must be between 0.0 and 1.0")
        for key in _POSITIVE_KEYS:
            if self.get(key, 1) < 1:
                errors.append(f"{key} must be >= 1")
        if self.get('learning.threshold_mode', 'overlapping') not in ('overlapping', 'loocv'):
            errors.append("learning.threshold_mode must be 'overlapping' or 'loocv'")

        if self.get('learning.regularization', 0.01) <= 0:
            warnings.append("learning.regularization <= 0 may make whitening unstable")
        if self.get('features.default') not in (self.get('features.params') or {}):
            warnings.append(f"No parameters configured for feature extractor {self.get('features.default')}")
        repo = self.get('repository.directory', '')
        if repo and not Path(repo).is_dir():
            warnings.append(f"Repository directory does not exist: {repo}")

        return {'valid': not errors, 'errors': errors, 'warnings': warnings}

    def __str__(self) -> str:
        return f"Config({self.config_path}: detection.interval={self.get('detection.interval')})"

    def __repr__(self) -> str:
        return f"Config(config_path='{self.config_path}')"
