"""
Two-level progress reporting with cooperative cancellation.

Long-running operations (learning, calibration, evaluation, background
estimation) report ``(current, total)`` sub-steps. Multi-stage entry points
nest these under an overall step counter fixed before the run starts, so a
two-level callback sees ``(overall_step, overall_total, current, total)``.
A callback returning ``False`` aborts the operation; the abort is latched and
the callback is not invoked again by the same reporter.

Author: MixDet Toolkit Team
Date: October 2026
"""

import logging
from typing import Callable, Optional

from tqdm import tqdm

from .status import OperationAborted

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], bool]
OverallProgressCallback = Callable[[int, int, int, int], bool]


class ProgressReporter:
    """
    Progress reporter threaded through every long operation.

    Wraps either a single-level callback ``(current, total) -> continue?`` or a
    two-level callback ``(overall_step, overall_total, current, total) ->
    continue?``. Without a callback the reporter never aborts.

    Example:
        >>> reporter = ProgressReporter.overall(callback)
        >>> reporter.begin_phase(3)
        >>> reporter.checkpoint(0, 10)   # raises OperationAborted on cancel
        >>> reporter.next_phase()
    """

    def __init__(self, callback: Optional[Callable[..., bool]] = None, two_level: bool = False):
        self._callback = callback
        self._two_level = two_level
        self.overall_step = 0
        self.overall_total = 1
        self.aborted = False

    @classmethod
    def simple(cls, callback: Optional[ProgressCallback]) -> 'ProgressReporter':
        return cls(callback, two_level=False)

    @classmethod
    def overall(cls, callback: Optional[OverallProgressCallback]) -> 'ProgressReporter':
        return cls(callback, two_level=True)

    @property
    def has_callback(self) -> bool:
        return self._callback is not None

    def begin_phase(self, total_phases: int) -> None:
        """Fix the number of overall steps before the run starts."""
        self.overall_step = 0
        self.overall_total = max(1, int(total_phases))

    def next_phase(self) -> None:
        self.overall_step = min(self.overall_step + 1, self.overall_total)

    def report_overall(self) -> bool:
        """Report the overall step alone, with no sub-step information."""
        return self.advance(0, 0)

    def finish(self) -> bool:
        self.overall_step = self.overall_total
        return self.advance(0, 0)

    def advance(self, current: int, total: int) -> bool:
        """
        Report sub-step progress.

        Returns:
            ``True`` if the operation should continue, ``False`` once aborted
        """
        if self._callback is None or self.aborted:
            return not self.aborted
        try:
            if self._two_level:
                keep_going = self._callback(self.overall_step, self.overall_total, current, total)
            else:
                keep_going = self._callback(current, total)
        except Exception as e:
            logger.warning(f"Progress callback raised {e!r}; aborting operation")
            keep_going = False
        if not keep_going:
            self.aborted = True
            logger.info("Operation aborted by progress callback")
        return not self.aborted

    def checkpoint(self, current: int, total: int) -> None:
        """Report progress and raise ``OperationAborted`` if the run was cancelled."""
        if not self.advance(current, total):
            raise OperationAborted()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise OperationAborted()


def as_reporter(progress) -> ProgressReporter:
    """Accept a reporter, a single-level callback or ``None``."""
    if isinstance(progress, ProgressReporter):
        return progress
    if progress is None:
        return ProgressReporter()
    return ProgressReporter.simple(progress)


class ConsoleProgress:
    """
    Two-level progress callback drawing one tqdm bar per overall step.

    Example:
        >>> progress = ConsoleProgress('Learning')
        >>> reporter = ProgressReporter.overall(progress)
    """

    def __init__(self, description: str = ''):
        self.description = description
        self._bar = None
        self._step = None

    def __call__(self, overall_step: int, overall_total: int, current: int, total: int) -> bool:
        if self._bar is None or overall_step != self._step:
            self.close()
            self._step = overall_step
            self._bar = tqdm(total=total or None,
                             desc=f"{self.description} [{min(overall_step + 1, overall_total)}/{overall_total}]",
                             leave=False)
        if total and self._bar.total != total:
            self._bar.total = total
        self._bar.n = current
        self._bar.refresh()
        return True

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None
