"""
Tests for data preparation utilities.

Author: MixDet Toolkit Team
Date: October 2026
"""

import pytest
import json
import os
import random
import numpy as np

from mixdet.data_preparation import utils
from mixdet.data_preparation.utils import ReproducibilityManager, AtomicFileWriter, is_dir


class TestReproducibilityManager:
    """Test seeding of the global generators."""

    @pytest.mark.unit
    def test_draws_repeat_after_reseeding(self):
        ReproducibilityManager.set_seed(42)
        first = (random.random(), np.random.random())
        ReproducibilityManager.set_seed(42)
        assert (random.random(), np.random.random()) == first

    @pytest.mark.unit
    def test_hash_seed_is_pinned(self):
        ReproducibilityManager.set_seed(123)
        assert os.environ.get('PYTHONHASHSEED') == '123'


class TestAtomicFileWriter:
    """Test all-or-nothing writes of model, background and result files."""

    @pytest.mark.unit
    def test_text_write(self, temp_directory):
        """A model dictionary written as JSON is readable afterwards."""
        model_file = temp_directory / "flower.json"
        model = {"feature_extractor": {"type": "HOG"}, "models": [{"bias": -1.5}]}

        with AtomicFileWriter.atomic_write(model_file) as f:
            json.dump(model, f)

        assert json.loads(model_file.read_text()) == model
        assert sorted(p.name for p in temp_directory.iterdir()) == ["flower.json"]

    @pytest.mark.unit
    def test_binary_write(self, temp_directory):
        """Background statistics go through the writer in binary mode."""
        bg_file = temp_directory / "background.npz"
        with AtomicFileWriter.atomic_write(bg_file, 'wb') as f:
            np.savez(f, mean=np.arange(3.0))
        with np.load(bg_file) as data:
            assert data['mean'].tolist() == [0.0, 1.0, 2.0]

    @pytest.mark.unit
    def test_failed_write_leaves_nothing(self, temp_directory):
        target = temp_directory / "results.tsv"

        with pytest.raises(ValueError):
            with AtomicFileWriter.atomic_write(target) as f:
                f.write("threshold\ttp\n")
                raise ValueError("interrupted")

        assert not target.exists()
        assert list(temp_directory.glob("*.tmp")) == []
        assert list(temp_directory.glob("*.lock")) == []

    @pytest.mark.unit
    def test_existing_file_survives_failed_write(self, temp_directory):
        target = temp_directory / "flower.json"
        target.write_text("original")

        with pytest.raises(RuntimeError):
            with AtomicFileWriter.atomic_write(target) as f:
                f.write("replacement")
                raise RuntimeError("crash")

        assert target.read_text() == "original"

    @pytest.mark.unit
    @pytest.mark.skipif(utils.fcntl is None, reason="advisory locks need fcntl")
    def test_concurrent_writer_is_refused(self, temp_directory):
        target = temp_directory / "flower.json"
        with AtomicFileWriter.atomic_write(target) as f:
            with pytest.raises(IOError):
                with AtomicFileWriter.atomic_write(target):
                    pass
            assert (temp_directory / "flower.json.lock").exists()
            f.write("first")
        assert target.read_text() == "first"
        assert list(temp_directory.glob("*.lock")) == []


@pytest.mark.unit
def test_is_dir(temp_directory):
    assert is_dir(temp_directory)
    assert not is_dir(temp_directory / "missing")
    assert not is_dir(None)
    assert not is_dir('')
