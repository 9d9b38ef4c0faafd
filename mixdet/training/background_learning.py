"""
Background statistics learning from an image repository.

Estimates the mean and the offset autocorrelation of the features of images
drawn across all synsets of a repository and writes them to a background
file, which model learning needs for whitening.

Author: MixDet Toolkit Team
Date: October 2026
"""

import logging
from pathlib import Path
from typing import Optional, Union

from ..core.progress import ProgressReporter
from ..core.status import FileAccessDeniedError, InvalidRepositoryError
from ..data_preparation.repository import ImageRepository
from ..models.background import StationaryBackground
from ..models.features import FeatureExtractor, default_feature_extractor

logger = logging.getLogger(__name__)


def learn_background(repo_directory: Union[str, Path], bg_file: Union[str, Path], num_images: int = 1000,
                     max_offset: int = 19, progress: Optional[ProgressReporter] = None,
                     accurate: bool = False,
                     feature_extractor: Optional[FeatureExtractor] = None) -> StationaryBackground:
    """
    Learn background statistics and write them to a file.

    Runs two overall steps: mean estimation and autocorrelation estimation.

    Args:
        repo_directory: Image repository directory
        bg_file: Background file to write
        num_images: Number of images per step
        max_offset: Largest cell offset of the autocorrelation
        progress: Two-level progress reporter
        accurate: Use the exact per-offset normalisation
        feature_extractor: Extractor (default: the process-wide default)

    Returns:
        The learned background model

    Raises:
        InvalidRepositoryError: If the directory is not an image repository
        FileAccessDeniedError: If the background file cannot be written
        OperationAborted: If the progress callback cancelled the run
    """
    valid, message = ImageRepository.has_repository_structure(repo_directory)
    if not valid:
        raise InvalidRepositoryError(message)
    reporter = progress or ProgressReporter()
    reporter.begin_phase(2)
    extractor = feature_extractor or default_feature_extractor()
    repo = ImageRepository(repo_directory)

    background = StationaryBackground()
    logger.info(f"Step 1/2: Learning background mean from up to {num_images} images")
    background.learn_mean(repo.get_mixed_iterator(1).images(num_images), num_images, extractor, reporter)
    reporter.next_phase()

    logger.info(f"Step 2/2: Learning background autocorrelation (max offset {max_offset})")
    images = repo.get_mixed_iterator(1).images(num_images)
    if accurate:
        background.learn_covariance_accurate(images, num_images, max_offset, extractor, reporter)
    else:
        background.learn_covariance(images, num_images, max_offset, extractor, reporter)
    reporter.finish()
    reporter.raise_if_aborted()

    if not background.write_to_file(bg_file):
        raise FileAccessDeniedError(f"Could not write background file {bg_file}")
    return background


def main():
    """
    Main entry point for background statistics learning.
    """
    import sys
    import argparse

    from ..config import Config
    from ..core.progress import ConsoleProgress
    from ..data_preparation.utils import ReproducibilityManager

    parser = argparse.ArgumentParser(description='Learn MixDet background statistics')
    parser.add_argument('--config', type=str, help='Path to configuration file')
    parser.add_argument('--repository', type=str, help='Image repository directory')
    parser.add_argument('--output', type=str, required=True, help='Background file to write')
    parser.add_argument('--num-images', type=int, help='Number of images to use')
    parser.add_argument('--max-offset', type=int, help='Largest cell offset')
    parser.add_argument('--accurate', action='store_true', help='Exact autocorrelation normalisation')
    parser.add_argument('--verbose', action='store_true', help='Verbose logging')

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        config = Config(args.config)
        ReproducibilityManager.set_seed(config.get('learning.random_seed', 42))

        if args.num_images:
            config.set('background.num_images', args.num_images)
        if args.max_offset:
            config.set('background.max_offset', args.max_offset)
        if args.accurate:
            config.set('background.accurate_autocorrelation', True)

        extractor = config.configure_feature_extractor()

        console = ConsoleProgress('Background')
        background = learn_background(
            args.repository or config.get('repository.directory'),
            args.output,
            num_images=config.get('background.num_images', 1000),
            max_offset=config.get('background.max_offset', 19),
            progress=ProgressReporter.overall(console),
            accurate=config.get('background.accurate_autocorrelation', False),
            feature_extractor=extractor
        )
        console.close()
        logger.info(f"Background statistics written to {args.output}: {background!r}")

    except Exception as e:
        logger.error(f"Background learning failed: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
