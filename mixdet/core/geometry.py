"""
Geometry and sample primitives for the MixDet toolkit.

Rectangles use inclusive pixel coordinates internally: a box at ``x`` with
``width`` pixels covers columns ``x .. x + width - 1``, so ``right`` is
``x + width - 1``. The exclusive wire representation is produced only in
``mixdet.api.flat``.

Author: MixDet Toolkit Team
Date: October 2026
"""

from dataclasses import dataclass
from functools import total_ordering
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class Rectangle:
    """Axis-aligned integer bounding box."""

    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    @property
    def left(self) -> int:
        return self.x

    @property
    def top(self) -> int:
        return self.y

    @property
    def right(self) -> int:
        return self.x + self.width - 1

    @property
    def bottom(self) -> int:
        return self.y + self.height - 1

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    def empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def intersection(self, other: 'Rectangle') -> 'Rectangle':
        left = max(self.left, other.left)
        top = max(self.top, other.top)
        right = min(self.right, other.right)
        bottom = min(self.bottom, other.bottom)
        if right < left or bottom < top:
            return Rectangle()
        return Rectangle(left, top, right - left + 1, bottom - top + 1)

    def iou(self, other: 'Rectangle') -> float:
        """
        Intersection over union of two boxes.

        This is the overlap measure used for non-maximum suppression, for
        matching detections against ground truth and for threshold calibration.

        Returns:
            Overlap in [0, 1]; 0 if either box is empty
        """
        if self.empty() or other.empty():
            return 0.0
        inter = self.intersection(other).area
        union = self.area + other.area - inter
        return inter / union if union > 0 else 0.0

    def clip(self, width: int, height: int) -> 'Rectangle':
        """Clip the box to an image of the given size."""
        left = min(max(self.left, 0), width)
        top = min(max(self.top, 0), height)
        right = min(self.right, width - 1)
        bottom = min(self.bottom, height - 1)
        return Rectangle(left, top, max(0, right - left + 1), max(0, bottom - top + 1))

    def scaled(self, factor: float) -> 'Rectangle':
        return Rectangle(
            int(round(self.x * factor)),
            int(round(self.y * factor)),
            int(round(self.width * factor)),
            int(round(self.height * factor))
        )

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height > 0 else 0.0

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)


@total_ordering
@dataclass
class Detection:
    """
    One scored detection hypothesis.

    Detections order by descending score, so ``sorted(detections)`` puts the
    best hypothesis first.
    """

    classname: str
    score: float
    bbox: Rectangle
    synset_id: str = ''

    def __lt__(self, other: 'Detection') -> bool:
        return self.score > other.score

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Detection):
            return NotImplemented
        return (self.score == other.score and self.classname == other.classname
                and self.bbox == other.bbox and self.synset_id == other.synset_id)


class Sample:
    """
    A positive training or evaluation sample.

    Holds either a decoded image or a reference to a repository image (loaded
    lazily), the annotated boxes and, parallel to the boxes, the index of the
    mixture component each box was assigned to during clustering.
    """

    NO_ASSOC = -1

    def __init__(self, image=None, bboxes: Optional[List[Rectangle]] = None, source=None):
        self._image = image
        self.source = source
        self.bboxes: List[Rectangle] = list(bboxes or [])
        self.model_assoc: List[int] = [Sample.NO_ASSOC] * len(self.bboxes)

    @property
    def image(self):
        """The decoded image, loading it from the repository reference on first use."""
        if self._image is None and self.source is not None:
            self._image = self.source.get_image()
        return self._image

    def reset_assoc(self) -> None:
        self.model_assoc = [Sample.NO_ASSOC] * len(self.bboxes)

    def release(self) -> None:
        """Drop the image data held by this sample."""
        self._image = None
        self.source = None
        self.bboxes = []
        self.model_assoc = []

    def __repr__(self) -> str:
        return f"Sample(bboxes={self.bboxes}, model_assoc={self.model_assoc})"
