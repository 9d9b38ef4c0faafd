"""
Annotation source: Pascal VOC style XML scenes.

A scene carries the coordinate-space size the boxes were annotated in and the
list of annotated objects. Parse failures produce an empty scene.

Author: MixDet Toolkit Team
Date: October 2026
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Union

from ..core.geometry import Rectangle

logger = logging.getLogger(__name__)


@dataclass
class AnnotatedObject:
    name: str
    bndbox: Rectangle


@dataclass
class Scene:
    """Annotated scene: coordinate-space size plus object boxes."""

    width: int = 0
    height: int = 0
    filename: str = ''
    objects: List[AnnotatedObject] = field(default_factory=list)

    def empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'Scene':
        try:
            root = ET.parse(str(path)).getroot()
        except (OSError, ET.ParseError) as e:
            logger.warning(f"Could not parse annotation file {path}: {e}")
            return cls()
        return cls.from_element(root)

    @classmethod
    def from_string(cls, text: str) -> 'Scene':
        try:
            return cls.from_element(ET.fromstring(text))
        except ET.ParseError as e:
            logger.warning(f"Could not parse annotation: {e}")
            return cls()

    @classmethod
    def from_element(cls, root: ET.Element) -> 'Scene':
        try:
            size = root.find('size')
            width = int(float(size.find('width').text))
            height = int(float(size.find('height').text))
            objects = []
            for obj in root.findall('object'):
                bndbox = obj.find('bndbox')
                xmin = int(float(bndbox.find('xmin').text))
                ymin = int(float(bndbox.find('ymin').text))
                xmax = int(float(bndbox.find('xmax').text))
                ymax = int(float(bndbox.find('ymax').text))
                name_node = obj.find('name')
                objects.append(AnnotatedObject(
                    name=name_node.text.strip() if name_node is not None and name_node.text else '',
                    bndbox=Rectangle(xmin, ymin, xmax - xmin + 1, ymax - ymin + 1)
                ))
            filename_node = root.find('filename')
            filename = filename_node.text.strip() if filename_node is not None and filename_node.text else ''
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Malformed annotation: {e}")
            return cls()
        return cls(width=width, height=height, filename=filename, objects=objects)

    def to_xml(self) -> str:
        """Serialise the scene back to Pascal VOC XML."""
        root = ET.Element('annotation')
        ET.SubElement(root, 'filename').text = self.filename
        size = ET.SubElement(root, 'size')
        ET.SubElement(size, 'width').text = str(self.width)
        ET.SubElement(size, 'height').text = str(self.height)
        ET.SubElement(size, 'depth').text = '3'
        for obj in self.objects:
            node = ET.SubElement(root, 'object')
            ET.SubElement(node, 'name').text = obj.name
            box = ET.SubElement(node, 'bndbox')
            ET.SubElement(box, 'xmin').text = str(obj.bndbox.left)
            ET.SubElement(box, 'ymin').text = str(obj.bndbox.top)
            ET.SubElement(box, 'xmax').text = str(obj.bndbox.right)
            ET.SubElement(box, 'ymax').text = str(obj.bndbox.bottom)
        return ET.tostring(root, encoding='unicode')
