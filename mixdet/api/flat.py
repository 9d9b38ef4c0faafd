"""
Fixed-capacity result structures exchanged with API callers.

Text fields have a fixed capacity including a terminator, so at most
``capacity - 1`` characters are kept. Boxes handed out use exclusive
right/bottom bounds; ``FlatDetection.from_detection`` is the only place the
inclusive internal boxes are converted.

Author: MixDet Toolkit Team
Date: October 2026
"""

from dataclasses import dataclass

from ..core.geometry import Detection, Rectangle
from ..evaluation.statistics import TestResult
from ..models.features import FeatureExtractor, ParameterInfo, ParameterType

CLASSNAME_CAPACITY = 44
SYNSET_ID_CAPACITY = 16
DESCRIPTION_CAPACITY = 256
EXTRACTOR_TYPE_CAPACITY = 20
EXTRACTOR_NAME_CAPACITY = 100
PARAM_NAME_CAPACITY = 52


def truncate(text: str, capacity: int) -> str:
    return (text or '')[:max(0, capacity - 1)]


@dataclass
class FlatDetection:
    classname: str
    synset_id: str
    score: float
    left: int
    top: int
    right: int
    bottom: int

    @classmethod
    def from_detection(cls, detection: Detection) -> 'FlatDetection':
        box = detection.bbox
        return cls(
            truncate(detection.classname, CLASSNAME_CAPACITY),
            truncate(detection.synset_id, SYNSET_ID_CAPACITY),
            float(detection.score),
            box.left,
            box.top,
            box.right + 1,
            box.bottom + 1
        )


@dataclass
class FlatBoundingBox:
    left: int
    top: int
    width: int
    height: int

    def to_rectangle(self) -> Rectangle:
        return Rectangle(int(self.left), int(self.top), int(self.width), int(self.height))


@dataclass
class RawTestResult:
    threshold: float
    tp: int
    fp: int
    np: int

    @classmethod
    def from_result(cls, result: TestResult) -> 'RawTestResult':
        return cls(result.threshold, result.tp, result.fp, result.np)


@dataclass
class SynsetSearchResult:
    synset_id: str
    description: str
    score: float

    @classmethod
    def create(cls, synset_id: str, description: str, score: float = 0.0) -> 'SynsetSearchResult':
        return cls(truncate(synset_id, SYNSET_ID_CAPACITY), truncate(description, DESCRIPTION_CAPACITY), score)


@dataclass
class FeatureExtractorInfo:
    type: str
    name: str

    @classmethod
    def from_extractor(cls, extractor: FeatureExtractor) -> 'FeatureExtractorInfo':
        return cls(truncate(extractor.type, EXTRACTOR_TYPE_CAPACITY), truncate(extractor.name, EXTRACTOR_NAME_CAPACITY))


@dataclass
class FeatureExtractorParameter:
    """A parameter value; only the field matching ``type`` is meaningful."""

    name: str
    type: ParameterType
    int_value: int = 0
    scalar_value: float = 0.0
    string_value: str = ''

    @classmethod
    def from_info(cls, info: ParameterInfo) -> 'FeatureExtractorParameter':
        param = cls(truncate(info.name, PARAM_NAME_CAPACITY), info.type)
        if info.type is ParameterType.INT:
            param.int_value = int(info.value)
        elif info.type is ParameterType.SCALAR:
            param.scalar_value = float(info.value)
        else:
            param.string_value = str(info.value)
        return param

    @property
    def value(self):
        if self.type is ParameterType.INT:
            return self.int_value
        if self.type is ParameterType.SCALAR:
            return self.scalar_value
        return self.string_value
