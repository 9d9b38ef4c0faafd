"""
Result codes and the exception hierarchy of the MixDet toolkit.

The flat API returns small negative integers grouped by subsystem (generic,
detection, learning, repository, settings), ``0`` always meaning success.
Inside the pipelines failures are raised as ``MixDetError`` subclasses that
carry the matching code; the API layer translates them back at the boundary.

Author: MixDet Toolkit Team
Date: October 2026
"""

from enum import IntEnum


class ResultCode(IntEnum):
    """Status codes returned by every entry point of the flat API."""

    # Generic
    OK = 0
    INVALID_HANDLE = -1
    DIRECTORY_NOT_FOUND = -2
    FILE_NOT_FOUND = -3
    FILE_ACCESS_DENIED = -4
    ABORTED = -5
    INDEX_OUT_OF_BOUNDS = -6
    INVALID_IMG_DATA = -7
    BUFFER_TOO_SMALL = -8
    INTERNAL_ERROR = -999

    # Detection
    DETECT_INVALID_IMG_DATA = -101
    DETECT_INVALID_MODEL_FILE = -102
    DETECT_INVALID_MODEL_LIST_FILE = -103
    DETECT_NO_MODELS = -104
    DETECT_INVALID_IMAGE = -105
    DETECT_NO_IMAGES = -106
    DETECT_NO_RESULTS = -107
    DETECT_INVALID_ANNOTATIONS = -108
    DETECT_TOO_MANY_MODELS = -109
    DETECT_INVALID_FEATURES = -110
    DETECT_MIXED_FEATURES = -111

    # Learning
    LEARN_FAILED = -201
    LEARN_INVALID_BG_FILE = -202
    LEARN_INVALID_IMG_DATA = -203
    LEARN_NO_SAMPLES = -204
    LEARN_MODEL_NOT_LEARNED = -205
    LEARN_FEATURE_EXTRACTOR_NOT_READY = -206

    # Image repository
    IMGREPO_INVALID_REPOSITORY = -301
    IMGREPO_SYNSET_NOT_FOUND = -302
    IMGREPO_EXTRACTION_FAILED = -303

    # Settings
    SETTINGS_UNKNOWN_FEATURE_EXTRACTOR = -401
    SETTINGS_UNKNOWN_PARAMETER = -402
    SETTINGS_INVALID_PARAMETER_VALUE = -403


class ThresholdOptimization(IntEnum):
    """Threshold calibration modes of the one-shot learning entry points."""

    NONE = 0
    OVERLAPPING = 1
    LOOCV = 2


class MixDetError(Exception):
    """Base class of all errors raised inside the toolkit."""

    code = ResultCode.INTERNAL_ERROR


class InvalidHandleError(MixDetError):
    code = ResultCode.INVALID_HANDLE


class OperationAborted(MixDetError):
    """Raised when a progress callback asked to stop the running operation."""

    code = ResultCode.ABORTED


class IndexOutOfBoundsError(MixDetError):
    code = ResultCode.INDEX_OUT_OF_BOUNDS


class FileAccessDeniedError(MixDetError):
    code = ResultCode.FILE_ACCESS_DENIED


class DirectoryNotFoundError(MixDetError):
    code = ResultCode.DIRECTORY_NOT_FOUND


class InvalidImageDataError(MixDetError):
    code = ResultCode.DETECT_INVALID_IMG_DATA


class InvalidModelFileError(MixDetError):
    code = ResultCode.DETECT_INVALID_MODEL_FILE


class InvalidModelListFileError(MixDetError):
    code = ResultCode.DETECT_INVALID_MODEL_LIST_FILE


class NoModelsError(MixDetError):
    code = ResultCode.DETECT_NO_MODELS


class NoImagesError(MixDetError):
    code = ResultCode.DETECT_NO_IMAGES


class NoResultsError(MixDetError):
    code = ResultCode.DETECT_NO_RESULTS


class InvalidAnnotationsError(MixDetError):
    code = ResultCode.DETECT_INVALID_ANNOTATIONS


class TooManyModelsError(MixDetError):
    code = ResultCode.DETECT_TOO_MANY_MODELS


class InvalidFeaturesError(MixDetError):
    code = ResultCode.DETECT_INVALID_FEATURES


class LearningFailedError(MixDetError):
    code = ResultCode.LEARN_FAILED


class InvalidBackgroundError(MixDetError):
    code = ResultCode.LEARN_INVALID_BG_FILE


class InvalidSampleImageError(MixDetError):
    code = ResultCode.LEARN_INVALID_IMG_DATA


class NoSamplesError(MixDetError):
    code = ResultCode.LEARN_NO_SAMPLES


class ModelNotLearnedError(MixDetError):
    code = ResultCode.LEARN_MODEL_NOT_LEARNED


class FeatureExtractorNotReadyError(MixDetError):
    code = ResultCode.LEARN_FEATURE_EXTRACTOR_NOT_READY


class BackgroundNotReadyError(MixDetError):
    """Covariance estimation was requested before the mean was learned."""

    code = ResultCode.LEARN_FAILED


class InvalidRepositoryError(MixDetError):
    code = ResultCode.IMGREPO_INVALID_REPOSITORY


class SynsetNotFoundError(MixDetError):
    code = ResultCode.IMGREPO_SYNSET_NOT_FOUND


class ExtractionFailedError(MixDetError):
    code = ResultCode.IMGREPO_EXTRACTION_FAILED


class UnknownFeatureExtractorError(MixDetError):
    code = ResultCode.SETTINGS_UNKNOWN_FEATURE_EXTRACTOR


class UnknownParameterError(MixDetError):
    code = ResultCode.SETTINGS_UNKNOWN_PARAMETER


class InvalidParameterValueError(MixDetError, ValueError):
    code = ResultCode.SETTINGS_INVALID_PARAMETER_VALUE
