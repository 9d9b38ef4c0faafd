"""
Tests for templates, mixtures, model files and model lists.

Author: MixDet Toolkit Team
Date: October 2026
"""

import pytest
import json
import numpy as np

from mixdet.core.status import InvalidModelFileError, InvalidModelListFileError
from mixdet.models import features
from mixdet.models.mixture import Mixture, Model, read_model_list


def gray_mixture(num_models=1, bias=0.0):
    extractor = features.create('RGB')
    extractor.set_param('colorspace', 'gray')
    return Mixture(extractor, [Model(np.ones((2, 2, 1)) * (i + 1), bias) for i in range(num_models)])


class TestModel:
    """Test template correlation."""

    @pytest.mark.unit
    def test_correlate(self):
        grid = np.arange(12, dtype=np.float64).reshape(3, 4, 1)
        model = Model(np.ones((2, 2, 1)), bias=-1.0)
        scores = model.correlate(grid)
        assert scores.shape == (2, 3)
        assert scores[0, 0] == pytest.approx(0 + 1 + 4 + 5 - 1)
        assert scores[1, 2] == pytest.approx(6 + 7 + 10 + 11 - 1)

    @pytest.mark.unit
    def test_grid_smaller_than_template(self):
        assert Model(np.ones((3, 3, 1))).correlate(np.ones((2, 5, 1))).size == 0

    @pytest.mark.unit
    def test_dict_round_trip(self):
        model = Model(np.random.default_rng(1).normal(size=(3, 2, 4)), 0.25)
        restored = Model.from_dict(model.to_dict())
        assert np.allclose(restored.weights, model.weights)
        assert restored.bias == pytest.approx(0.25)

    @pytest.mark.unit
    def test_from_dict_shape_mismatch(self):
        with pytest.raises(ValueError):
            Model.from_dict({'rows': 2, 'cols': 2, 'num_features': 1, 'weights': [1, 2, 3]})


class TestMixtureFiles:
    """Test model file reading and writing."""

    @pytest.mark.unit
    def test_save_and_load(self, temp_directory):
        path = temp_directory / "model.json"
        assert gray_mixture(2, bias=-0.5).save(path)
        loaded = Mixture.load(path)
        assert len(loaded) == 2
        assert loaded.feature_extractor.get_param('colorspace') == 'gray'
        assert loaded.models[1].bias == pytest.approx(-0.5)

    @pytest.mark.unit
    def test_append(self, temp_directory):
        path = temp_directory / "model.json"
        assert gray_mixture(1).save(path, append=True)
        assert gray_mixture(2).save(path, append=True)
        assert len(Mixture.load(path)) == 3

    @pytest.mark.unit
    def test_append_with_other_extractor_refused(self, temp_directory):
        path = temp_directory / "model.json"
        assert gray_mixture(1).save(path)
        other = Mixture(features.create('RGB'), [Model(np.ones((2, 2, 3)))])
        assert not other.save(path, append=True)
        assert len(Mixture.load(path)) == 1

    @pytest.mark.unit
    def test_load_invalid(self, temp_directory):
        with pytest.raises(InvalidModelFileError):
            Mixture.load(temp_directory / "missing.json")

        broken = temp_directory / "broken.json"
        broken.write_text("{not json")
        with pytest.raises(InvalidModelFileError):
            Mixture.load(broken)

        empty = temp_directory / "empty.json"
        empty.write_text(json.dumps({'feature_extractor': {'type': 'HOG', 'params': {}}, 'models': []}))
        with pytest.raises(InvalidModelFileError):
            Mixture.load(empty)

    @pytest.mark.unit
    def test_load_feature_count_mismatch(self, temp_directory):
        path = temp_directory / "mismatch.json"
        data = gray_mixture(1).to_dict()
        data['feature_extractor']['params']['colorspace'] = 'rgb'
        path.write_text(json.dumps(data))
        with pytest.raises(InvalidModelFileError):
            Mixture.load(path)

    @pytest.mark.unit
    def test_load_unknown_extractor(self, temp_directory):
        path = temp_directory / "unknown.json"
        data = gray_mixture(1).to_dict()
        data['feature_extractor']['type'] = 'SIFT'
        path.write_text(json.dumps(data))
        with pytest.raises(InvalidModelFileError):
            Mixture.load(path)


class TestModelList:
    """Test model list parsing."""

    @pytest.mark.unit
    def test_parse(self, temp_directory):
        list_file = temp_directory / "models.txt"
        list_file.write_text(
            "# classname file threshold synset\n"
            "flower\tflower.json\t0.5\tn0001\n"
            "\n"
            "rose rose.json\n"
            f"bee {temp_directory / 'abs.json'} -1.25\n"
        )
        entries = read_model_list(list_file)
        assert [e.classname for e in entries] == ['flower', 'rose', 'bee']
        assert entries[0].model_file == temp_directory / "flower.json"
        assert entries[0].threshold == pytest.approx(0.5)
        assert entries[0].synset_id == 'n0001'
        assert entries[1].threshold == 0.0
        assert entries[2].model_file == temp_directory / "abs.json"

    @pytest.mark.unit
    @pytest.mark.parametrize("content", ["onlyone\n", "a b c d e\n", "a b notanumber\n"])
    def test_malformed(self, temp_directory, content):
        list_file = temp_directory / "models.txt"
        list_file.write_text(content)
        with pytest.raises(InvalidModelListFileError):
            read_model_list(list_file)

    @pytest.mark.unit
    def test_missing(self, temp_directory):
        with pytest.raises(InvalidModelListFileError):
            read_model_list(temp_directory / "missing.txt")
