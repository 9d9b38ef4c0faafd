"""
Session registry: handle tables for detector and learner sessions.

Handles are 1-based positions in two append-only tables. Destroying a session
leaves a ``None`` tombstone in its slot, so a stale handle is reported as
invalid instead of silently addressing a newer session. Creation,
destruction and validation are serialised by one lock; work inside a session
is not.

Author: MixDet Toolkit Team
Date: October 2026
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from ..core.geometry import Sample
from ..core.status import InvalidHandleError
from ..data_preparation.images import ImageData
from ..data_preparation.repository import ImageRepository
from ..evaluation.evaluator import ModelEvaluator
from ..models.background import StationaryBackground
from ..training.learner import RepositoryModelLearner

logger = logging.getLogger(__name__)


@dataclass
class DetectorSession:
    """A detector together with the evaluation samples it owns."""

    evaluator: ModelEvaluator
    positives: List[Sample] = field(default_factory=list)
    negatives: List[ImageData] = field(default_factory=list)

    def clear_samples(self) -> None:
        for sample in self.positives:
            sample.release()
        self.positives = []
        self.negatives = []


class SessionRegistry:
    """
    Owner of all detector and learner sessions of a process.

    Example:
        >>> registry = SessionRegistry()
        >>> handle = registry.create_detector_session(0.5, 10, False)
        >>> registry.get_detector(handle).evaluator.num_models
        0
        >>> registry.destroy_detector(handle)
        >>> registry.is_valid_detector(handle)
        False
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._detectors: List[Optional[DetectorSession]] = []
        self._learners: List[Optional[RepositoryModelLearner]] = []

    # ------------------------------------------------------------------ detectors

    def create_detector_session(self, overlap: float = 0.5, interval: int = 10, debug: bool = False,
                                max_models: int = 0) -> int:
        """
        Create a detector session.

        Returns:
            The new handle, or 0 if the session could not be created
        """
        try:
            session = DetectorSession(ModelEvaluator(overlap, overlap, interval, debug, max_models))
        except (ValueError, TypeError, MemoryError) as e:
            logger.error(f"Could not create detector session: {e}")
            return 0
        with self._lock:
            self._detectors.append(session)
            handle = len(self._detectors)
        logger.debug(f"Created detector session {handle}")
        return handle

    def is_valid_detector(self, handle: int) -> bool:
        with self._lock:
            return self._valid(self._detectors, handle)

    def get_detector(self, handle: int) -> DetectorSession:
        """
        Raises:
            InvalidHandleError: If the handle does not refer to a live session
        """
        with self._lock:
            if not self._valid(self._detectors, handle):
                raise InvalidHandleError(f"Invalid detector handle {handle}")
            return self._detectors[handle - 1]

    def destroy_detector(self, handle: int) -> None:
        """Release the session's samples, then clear its slot; never raises."""
        with self._lock:
            if not self._valid(self._detectors, handle):
                return
            try:
                self._detectors[handle - 1].clear_samples()
            except Exception as e:
                logger.warning(f"Error while releasing detector session {handle}: {e}")
            self._detectors[handle - 1] = None
        logger.debug(f"Destroyed detector session {handle}")

    # ------------------------------------------------------------------- learners

    def create_learner_session(self, background: Union[StationaryBackground, str, Path],
                               repository_path: Union[str, Path, None] = None, loocv: bool = False,
                               debug: bool = False, **learner_kwargs) -> int:
        """
        Create a learner session.

        An invalid repository path is ignored (the learner then has no
        repository); an empty or unreadable background is not.

        Args:
            background: Background model or background file
            repository_path: Image repository directory (optional)
            loocv: Calibrate thresholds by leave-one-out cross-validation
            debug: Log per-step details at INFO level
            **learner_kwargs: Passed on to ``RepositoryModelLearner``

        Returns:
            The new handle, or 0 if the background is empty
        """
        if not isinstance(background, StationaryBackground):
            background = StationaryBackground(background)
        if background.empty():
            logger.error("Cannot create learner session without background statistics")
            return 0
        valid, message = ImageRepository.has_repository_structure(repository_path)
        if repository_path and not valid:
            logger.warning(f"Ignoring repository {repository_path}: {message}")
        learner = RepositoryModelLearner(background, repository_path if valid else None,
                                         loocv=loocv, debug=debug, **learner_kwargs)
        with self._lock:
            self._learners.append(learner)
            handle = len(self._learners)
        logger.debug(f"Created learner session {handle}")
        return handle

    def is_valid_learner(self, handle: int) -> bool:
        with self._lock:
            return self._valid(self._learners, handle)

    def get_learner(self, handle: int) -> RepositoryModelLearner:
        """
        Raises:
            InvalidHandleError: If the handle does not refer to a live session
        """
        with self._lock:
            if not self._valid(self._learners, handle):
                raise InvalidHandleError(f"Invalid learner handle {handle}")
            return self._learners[handle - 1]

    def destroy_learner(self, handle: int) -> None:
        """Release the learner's samples, then clear its slot; never raises."""
        with self._lock:
            if not self._valid(self._learners, handle):
                return
            try:
                self._learners[handle - 1].reset()
            except Exception as e:
                logger.warning(f"Error while releasing learner session {handle}: {e}")
            self._learners[handle - 1] = None
        logger.debug(f"Destroyed learner session {handle}")

    # -------------------------------------------------------------------- general

    @property
    def num_live_sessions(self) -> int:
        with self._lock:
            return sum(s is not None for s in self._detectors) + sum(s is not None for s in self._learners)

    def teardown(self) -> None:
        """Destroy every live session."""
        for handle in range(1, len(self._detectors) + 1):
            self.destroy_detector(handle)
        for handle in range(1, len(self._learners) + 1):
            self.destroy_learner(handle)
        logger.debug("Session registry torn down")

    @staticmethod
    def _valid(table: list, handle) -> bool:
        return isinstance(handle, int) and 0 < handle <= len(table) and table[handle - 1] is not None
