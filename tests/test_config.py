"""Tests for propagation configuration."""

import pytest

from label_propagation.config import PropagationConfig, SimilarityMode


class TestPropagationConfig:
    """Tests for defaults, validation and overrides."""

    def test_mode_parsed_from_string(self):
        config = PropagationConfig(similarity_mode="Histogram")
        assert config.similarity_mode == SimilarityMode.HISTOGRAM

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            PropagationConfig(similarity_mode="orb")

    @pytest.mark.parametrize("iou", [-0.1, 1.5])
    def test_merge_iou_range(self, iou):
        with pytest.raises(ValueError):
            PropagationConfig(merge_iou=iou)

    def test_stride_must_be_positive(self):
        with pytest.raises(ValueError):
            PropagationConfig(search_stride=0)

    def test_overrides_ignore_none(self):
        config = PropagationConfig(image_threshold=0.9)
        updated = config.with_overrides(image_threshold=None, auto_accept=True)
        assert updated.image_threshold == 0.9
        assert updated.auto_accept is True

    def test_no_overrides_returns_same(self):
        config = PropagationConfig()
        assert config.with_overrides(image_threshold=None) is config

    def test_frozen(self):
        config = PropagationConfig()
        with pytest.raises(AttributeError):
            config.merge_iou = 0.9

    def test_from_env_applies_overrides(self):
        config = PropagationConfig.from_env(candidate_limit=3)
        assert config.candidate_limit == 3
