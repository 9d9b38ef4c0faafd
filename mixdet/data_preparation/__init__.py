"""
Data preparation utilities for the MixDet toolkit.

Provides the collaborators the learning and evaluation pipelines read from:
- Image decoding and raw pixel buffers
- Pascal VOC annotation parsing
- ImageNet-style image repository traversal and synset search
- Reproducibility and atomic file operations
"""

from .utils import ReproducibilityManager, AtomicFileWriter
from .images import ImageData
from .annotations import Scene, AnnotatedObject
from .repository import (
    ImageRepository,
    Synset,
    SynsetImage,
    SynsetImageIterator,
    MixedImageIterator
)

__all__ = [
    "ReproducibilityManager",
    "AtomicFileWriter",
    "ImageData",
    "Scene",
    "AnnotatedObject",
    "ImageRepository",
    "Synset",
    "SynsetImage",
    "SynsetImageIterator",
    "MixedImageIterator"
]
