"""
Image source for the MixDet toolkit.

Decodes image files with Pillow or wraps raw pixel buffers. Decoding failures
never raise: they produce an empty ``ImageData`` which callers detect through
``empty()``.

Author: MixDet Toolkit Team
Date: October 2026
"""

import logging
import numpy as np
import cv2
from pathlib import Path
from typing import Optional, Union
from PIL import Image

from ..core.geometry import Rectangle

logger = logging.getLogger(__name__)


class ImageData:
    """
    Decoded 8-bit image with one (grayscale) or three (RGB) channels.

    Pixels are stored as a ``(height, width, channels)`` uint8 array. An
    instance without pixels is the "empty" sentinel returned by failed loads.
    """

    def __init__(self, pixels: Optional[np.ndarray] = None):
        if pixels is not None and pixels.size > 0:
            if pixels.ndim == 2:
                pixels = pixels[:, :, np.newaxis]
            self.pixels = np.ascontiguousarray(pixels, dtype=np.uint8)
        else:
            self.pixels = np.zeros((0, 0, 3), dtype=np.uint8)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'ImageData':
        """
        Load an image file.

        Args:
            path: Path to a JPEG/PNG/BMP file

        Returns:
            Decoded image, or an empty image if the file cannot be read
        """
        try:
            with Image.open(path) as img:
                if img.mode not in ('L', 'RGB'):
                    img = img.convert('RGB')
                return cls(np.asarray(img))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not decode image {path}: {e}")
            return cls()

    @classmethod
    def from_raw(cls, data, width: int, height: int, grayscale: bool) -> 'ImageData':
        """
        Wrap a raw pixel buffer in row-major order.

        Args:
            data: Bytes-like object or array with ``width * height * channels`` values
            width: Image width in pixels
            height: Image height in pixels
            grayscale: ``True`` for one channel, ``False`` for interleaved RGB
        """
        channels = 1 if grayscale else 3
        try:
            buffer = np.frombuffer(bytes(data), dtype=np.uint8) if not isinstance(data, np.ndarray) \
                else data.astype(np.uint8).ravel()
            expected = int(width) * int(height) * channels
            if width <= 0 or height <= 0 or buffer.size < expected:
                logger.warning(f"Raw image buffer too small: {buffer.size} < {expected}")
                return cls()
            return cls(buffer[:expected].reshape(int(height), int(width), channels))
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid raw image buffer: {e}")
            return cls()

    def empty(self) -> bool:
        return self.pixels.size == 0

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def channels(self) -> int:
        return self.pixels.shape[2]

    def bounds(self) -> Rectangle:
        return Rectangle(0, 0, self.width, self.height)

    def crop(self, rect: Rectangle) -> 'ImageData':
        """Crop to a rectangle (clipped to the image); empty if nothing remains."""
        r = rect.clip(self.width, self.height)
        if r.empty():
            return ImageData()
        return ImageData(self.pixels[r.top:r.bottom + 1, r.left:r.right + 1].copy())

    def resize(self, width: int, height: int) -> 'ImageData':
        if self.empty() or width <= 0 or height <= 0:
            return ImageData()
        shrinking = width < self.width or height < self.height
        interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
        resized = cv2.resize(self.pixels, (int(width), int(height)), interpolation=interpolation)
        return ImageData(resized)

    def scale(self, factor: float) -> 'ImageData':
        return self.resize(int(round(self.width * factor)), int(round(self.height * factor)))

    def save(self, path: Union[str, Path], quality: int = 95) -> bool:
        if self.empty():
            return False
        try:
            pixels = self.pixels[:, :, 0] if self.channels == 1 else self.pixels
            Image.fromarray(pixels).save(str(path), quality=quality)
            return True
        except (OSError, ValueError) as e:
            logger.error(f"Failed to save image to {path}: {e}")
            return False

    def __repr__(self) -> str:
        return f"ImageData({self.width}x{self.height}x{self.channels})"
