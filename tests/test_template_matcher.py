"""Tests for NCC template matching."""

import numpy as np
import pytest

from label_propagation.geometry import EMPTY_RECT
from label_propagation.template_matcher import match_template, compute_match_scale


class TestComputeMatchScale:
    """Tests for the common downscale factor."""

    def test_small_candidate_not_scaled(self):
        assert compute_match_scale((200, 160), (50, 40)) == 1.0

    def test_large_candidate_scaled_to_max_dim(self):
        assert compute_match_scale((1280, 720), (200, 200)) == pytest.approx(0.5)

    def test_template_floor_overrides_candidate_scale(self):
        # 0.5 would shrink the 40px side to 20px, below the 32px floor
        assert compute_match_scale((1280, 720), (40, 100)) == pytest.approx(0.8)

    def test_never_upscales_tiny_template(self):
        assert compute_match_scale((1280, 720), (20, 20)) == 1.0


class TestMatchTemplate:
    """Tests for the template search itself."""

    def test_finds_exact_location(self, textured_image):
        template = textured_image[40:80, 60:110]
        result = match_template(textured_image, template)
        assert result.score > 0.99
        assert result.rect == pytest.approx((60, 40, 50, 40))

    def test_brightness_invariance(self, textured_image):
        template = textured_image[40:80, 60:110]
        brighter = (textured_image.astype(np.int32) + 30).astype(np.uint8)
        result = match_template(brighter, template)
        assert result.score == pytest.approx(1.0, abs=1e-3)
        assert result.rect == pytest.approx((60, 40, 50, 40))

    def test_contrast_invariance(self, textured_image):
        template = textured_image[40:80, 60:110]
        dimmer = (textured_image.astype(np.float32) * 0.5 + 20).astype(np.uint8)
        result = match_template(dimmer, template)
        assert result.score > 0.98

    def test_template_larger_than_search_rect(self, textured_image):
        template = textured_image[40:80, 60:110]
        result = match_template(textured_image, template, search_rect=(60, 40, 30, 30))
        assert result.score == 0.0
        assert result.rect == EMPTY_RECT

    def test_template_larger_than_candidate(self, textured_image, texture_factory):
        template = texture_factory(300, 300)
        result = match_template(textured_image, template)
        assert result.score == 0.0
        assert result.rect == EMPTY_RECT

    def test_search_rect_containing_object(self, textured_image):
        template = textured_image[40:80, 60:110]
        result = match_template(textured_image, template, search_rect=(40, 20, 100, 90))
        assert result.rect == pytest.approx((60, 40, 50, 40))

    def test_search_rect_excluding_object(self, textured_image):
        template = textured_image[40:80, 60:110]
        window = (120, 80, 80, 80)
        result = match_template(textured_image, template, search_rect=window)
        x, y, w, h = result.rect
        assert x >= 120 and y >= 80
        assert x + w <= 200 and y + h <= 160
        assert result.score < 0.99

    def test_flat_template_is_no_match(self, textured_image):
        flat = np.full((40, 40, 3), 128, dtype=np.uint8)
        result = match_template(textured_image, flat)
        assert result.score == 0.0
        assert result.rect == EMPTY_RECT

    def test_empty_template_is_no_match(self, textured_image):
        result = match_template(textured_image, np.zeros((0, 0, 3), dtype=np.uint8))
        assert result.score == 0.0

    def test_stride_on_aligned_offset(self, textured_image):
        template = textured_image[40:80, 60:110]
        result = match_template(textured_image, template, stride=4)
        assert result.rect == pytest.approx((60, 40, 50, 40))

    def test_anti_correlated_scores_low(self, gradient_image):
        template = gradient_image[40:80, 60:110]
        reversed_ramp = np.ascontiguousarray(gradient_image[:, ::-1])
        result = match_template(reversed_ramp, template)
        assert result.score < 0.3

    def test_score_within_range(self, textured_image, other_textured_image):
        template = other_textured_image[10:60, 10:60]
        result = match_template(textured_image, template)
        assert 0.0 <= result.score <= 1.0

    def test_downscaled_result_in_original_coordinates(self, texture_factory):
        big = texture_factory(1280, 960, seed=3, block=32)
        template = big[320:512, 640:896]
        result = match_template(big, template)
        assert result.score > 0.99
        assert result.rect == pytest.approx((640, 320, 256, 192), abs=2)

    def test_parallel_bands_match_single_worker(self, texture_factory):
        big = texture_factory(1280, 960, seed=3, block=32)
        template = big[320:512, 640:896]
        single = match_template(big, template, max_workers=1)
        parallel = match_template(big, template, max_workers=4)
        assert single.rect == parallel.rect
        assert single.score == pytest.approx(parallel.score)
