"""
Pytest configuration and fixtures for MixDet tests.

Provides synthetic images with a bright square object on a textured
background, a small feature extractor configuration that keeps learning fast,
learned background statistics and a tiny ImageNet-style repository on disk.

Author: MixDet Toolkit Team
Date: October 2026
"""

import pytest
import tempfile
import shutil
import numpy as np
from pathlib import Path
from PIL import Image
import logging

from mixdet.core.geometry import Rectangle
from mixdet.data_preparation.annotations import AnnotatedObject, Scene
from mixdet.data_preparation.images import ImageData
from mixdet.models import features
from mixdet.models.background import StationaryBackground
from mixdet.models.mixture import Mixture, Model

# Disable logging during tests unless explicitly needed
logging.getLogger().setLevel(logging.WARNING)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line("markers", "integration: tests spanning several components")
    config.addinivalue_line("markers", "slow: tests that learn models or background statistics")


def make_object_image(width: int = 48, height: int = 48, box: Rectangle = None, seed: int = 0,
                      intensity: int = 230) -> ImageData:
    """
    Textured dark background with a bright square object.

    Args:
        width: Image width
        height: Image height
        box: Object box (default: centred square covering half the image)
        seed: Seed of the background texture
        intensity: Grey value of the object
    """
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 60, size=(height, width, 3), dtype=np.uint8)
    if box is None:
        side = min(width, height) // 2
        box = Rectangle((width - side) // 2, (height - side) // 2, side, side)
    pixels[box.top:box.bottom + 1, box.left:box.right + 1] = intensity
    return ImageData(pixels)


def make_noise_image(width: int = 48, height: int = 48, seed: int = 0) -> ImageData:
    rng = np.random.default_rng(seed)
    return ImageData(rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8))


def configure_gray_extractor(extractor):
    extractor.set_param('colorspace', 'gray')
    extractor.set_param('cellSize', 4)
    return extractor


@pytest.fixture
def temp_directory():
    """
    Create temporary directory for tests with automatic cleanup.

    Yields:
        Path: Temporary directory path that will be cleaned up after test
    """
    temp_dir = tempfile.mkdtemp(prefix='mixdet_test_')
    yield Path(temp_dir)

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_default_extractor():
    """Every test starts and ends with a fresh process-wide default extractor."""
    features.reset_default_feature_extractor()
    yield
    features.reset_default_feature_extractor()


@pytest.fixture
def gray_extractor():
    """Single-feature extractor (mean grey value per 4x4 cell)."""
    return configure_gray_extractor(features.create('RGB'))


@pytest.fixture
def gray_default_extractor():
    """Make the single-feature extractor the process-wide default."""
    return configure_gray_extractor(features.set_default_feature_extractor('RGB'))


@pytest.fixture
def object_images():
    """Three positive images with the object box of each."""
    boxes = [Rectangle(12, 12, 24, 24), Rectangle(8, 10, 28, 28), Rectangle(14, 12, 20, 20)]
    return [(make_object_image(48, 48, box, seed=i), box) for i, box in enumerate(boxes)]


@pytest.fixture
def background_images():
    return [make_noise_image(48, 48, seed=100 + i) for i in range(6)]


@pytest.fixture
def learned_background(gray_extractor, background_images):
    """Background statistics of the grey extractor with offsets up to 3 cells."""
    background = StationaryBackground()
    background.learn_mean(background_images, len(background_images), gray_extractor)
    background.learn_covariance(background_images, len(background_images), 3, gray_extractor)
    return background


@pytest.fixture
def background_file(temp_directory, learned_background):
    path = temp_directory / "background.npz"
    assert learned_background.write_to_file(path)
    return path


def _write_synset(root: Path, synset_id: str, num_images: int, annotated: bool, seed: int) -> None:
    image_dir = root / "Images" / synset_id
    annotation_dir = root / "Annotation" / synset_id
    image_dir.mkdir(parents=True)
    annotation_dir.mkdir(parents=True)
    for i in range(num_images):
        name = f"{synset_id}_{i}"
        box = Rectangle(10 + i, 10, 24, 24)
        if annotated:
            image = make_object_image(48, 48, box, seed=seed + i)
        else:
            image = make_noise_image(48, 48, seed=seed + i)
        Image.fromarray(image.pixels).save(image_dir / f"{name}.jpg", quality=95)
        if annotated:
            # Annotated at twice the image resolution
            scene = Scene(width=96, height=96, filename=name,
                          objects=[AnnotatedObject('object', box.scaled(2.0))])
            (annotation_dir / f"{name}.xml").write_text(scene.to_xml(), encoding='utf-8')


@pytest.fixture
def tiny_repository(temp_directory):
    """
    ImageNet-style repository with one annotated and two plain synsets.

    Returns:
        Path of the repository root
    """
    root = temp_directory / "repository"
    root.mkdir()
    (root / "synset_wordnet.txt").write_text(
        "n0001 sunflower, helianthus\n"
        "n0002 garden rose, rose\n"
        "n0003 gravel, crushed rock\n",
        encoding='utf-8'
    )
    _write_synset(root, "n0001", 3, annotated=True, seed=10)
    _write_synset(root, "n0002", 3, annotated=False, seed=20)
    _write_synset(root, "n0003", 2, annotated=False, seed=30)
    return root


OBJECT_BOX = Rectangle(12, 12, 24, 24)


def box_filter_mixture(bias: float = -31.0, extractor=None) -> Mixture:
    """
    A 6x6 cell box filter on grey cell means.

    On ``make_object_image(48, 48, OBJECT_BOX)`` it peaks exactly on the
    object with score ``36 * 230 / 255 + bias``.
    """
    extractor = extractor or configure_gray_extractor(features.create('RGB'))
    return Mixture(extractor, [Model(np.ones((6, 6, 1)), bias)])
