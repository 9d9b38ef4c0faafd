"""
Configuration management for the MixDet toolkit.

Provides centralized configuration handling with support for:
- Feature extractor defaults and parameters
- Learning, calibration, detection and evaluation settings
- Background statistics settings
"""

from .config import Config

__all__ = ["Config"]
