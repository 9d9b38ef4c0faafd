"""
File and reproducibility utilities for the MixDet toolkit.

Key Features:
- Seeding of ``random`` and numpy for repeatable clustering and patch sampling
- Atomic writes of model files, background statistics and result dumps:
  a crash or an exception inside the ``with`` block never leaves a
  half-written artifact, and an existing file is only replaced on success

Author: MixDet Toolkit Team
Date: October 2026
"""

import os
import random
import logging
try:
    import fcntl
except ImportError:
    # No advisory locks on Windows; the lock file alone marks the writer
    fcntl = None
import numpy as np
from pathlib import Path
from typing import Union
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class ReproducibilityManager:
    """
    Process-wide seeding for the stochastic steps of learning.

    k-means initialisation in the learner draws from its own seed; this covers
    everything else that uses the global ``random`` and numpy generators.
    """

    @staticmethod
    def set_seed(seed: int = 42) -> None:
        """
        Seed ``random`` and numpy and pin ``PYTHONHASHSEED``.

        Args:
            seed: Seed value, usually ``learning.random_seed`` from the config
        """
        random.seed(seed)
        np.random.seed(seed)
        os.environ['PYTHONHASHSEED'] = str(seed)
        logger.info(f"Random seed set to {seed}")


class AtomicFileWriter:
    """
    Crash-safe writing of toolkit artifacts.

    Output goes to ``<file>.tmp`` and replaces ``<file>`` only when the block
    exits normally. ``<file>.lock`` serialises concurrent writers of the same
    target, e.g. two learner sessions appending to one model file.
    """

    @staticmethod
    @contextmanager
    def _lock(filepath: Path):
        lock_path = filepath.with_suffix(filepath.suffix + '.lock')
        lock_file = open(lock_path, 'a', encoding='utf-8')
        if fcntl is not None:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as e:
                lock_file.close()
                raise IOError(f"{filepath} is being written by another session: {e}")
        try:
            yield
        finally:
            if fcntl is not None:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                except OSError as e:
                    logger.warning(f"Could not release lock on {filepath}: {e}")
            lock_file.close()
            try:
                lock_path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove lock file {lock_path}: {e}")

    @staticmethod
    @contextmanager
    def atomic_write(filepath: Union[str, Path], mode: str = 'w', encoding: str = 'utf-8'):
        """
        Open ``filepath`` for an all-or-nothing write.

        Args:
            filepath: Target file
            mode: ``'w'`` for text, ``'wb'`` for binary content such as ``.npz``
            encoding: Text encoding, ignored in binary mode

        Yields:
            Handle of the temporary file

        Raises:
            IOError: If another writer holds the lock
            Exception: Whatever the ``with`` block raised; the target is left untouched

        Example:
            >>> with AtomicFileWriter.atomic_write('flower.json') as f:
            ...     json.dump(model_dict, f)
        """
        filepath = Path(filepath)
        temp_path = filepath.with_suffix(filepath.suffix + '.tmp')

        with AtomicFileWriter._lock(filepath):
            try:
                with open(temp_path, mode, encoding=None if 'b' in mode else encoding) as temp_file:
                    yield temp_file
                    temp_file.flush()
                    os.fsync(temp_file.fileno())
                os.replace(temp_path, filepath)
            except BaseException as e:
                if temp_path.exists():
                    temp_path.unlink()
                logger.error(f"Writing {filepath} failed: {e!r}")
                raise
        logger.debug(f"Wrote {filepath}")


def is_dir(path: Union[str, Path, None]) -> bool:
    return bool(path) and Path(path).is_dir()
