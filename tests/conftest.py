"""Shared test fixtures for label propagation tests."""

import numpy as np
import cv2
import pytest

from label_propagation.catalog import ImageCatalog
from label_propagation.config import PropagationConfig
from label_propagation.engine import PropagationOrchestrator
from label_propagation.labels import LabelStore


def make_textured_image(width=200, height=160, seed=0, block=8, low=30, high=200):
    """Blocky random RGB texture; values stay inside [low, high) so brightening doesn't clip."""
    rng = np.random.RandomState(seed)
    small = rng.randint(low, high, (height // block + 1, width // block + 1, 3)).astype(np.uint8)
    img = cv2.resize(small, (small.shape[1] * block, small.shape[0] * block),
                     interpolation=cv2.INTER_NEAREST)
    return np.ascontiguousarray(img[:height, :width])


@pytest.fixture
def texture_factory():
    """make_textured_image, for tests that need custom sizes or seeds."""
    return make_textured_image


@pytest.fixture
def textured_image():
    """200x160 blocky random texture (good for template matching)."""
    return make_textured_image()


@pytest.fixture
def other_textured_image():
    """Unrelated 200x160 texture."""
    return make_textured_image(seed=7)


@pytest.fixture
def gradient_image():
    """200x160 horizontal gradient."""
    ramp = np.linspace(0, 255, 200, dtype=np.float32)
    img = np.tile(ramp, (160, 1)).astype(np.uint8)
    return np.dstack([img, img, img])


@pytest.fixture
def write_image(tmp_path):
    """Write an RGB array to a PNG under tmp_path and return its path."""

    def _write(name, image):
        path = str(tmp_path / name)
        cv2.imwrite(path, cv2.cvtColor(image, cv2.COLOR_RGB2BGR))
        return path

    return _write


class MemoryLoader:
    """In-memory image loader that records which paths were decoded."""

    def __init__(self, images=None):
        self.images = dict(images or {})
        self.loaded = []

    def __call__(self, path):
        from label_propagation.preprocessing import ImageReadError

        self.loaded.append(path)
        if path not in self.images:
            raise ImageReadError(f"Image not found: {path}")
        return self.images[path]


@pytest.fixture
def memory_loader():
    return MemoryLoader()


@pytest.fixture
def make_orchestrator():
    """Build an orchestrator over in-memory images."""

    def _make(images, config=None, class_ids=()):
        loader = images if isinstance(images, MemoryLoader) else MemoryLoader(images)
        catalog = ImageCatalog(loader=loader)
        for path, pixels in loader.images.items():
            h, w = pixels.shape[:2]
            catalog.register(path, w, h)
        config = config or PropagationConfig(
            skip_labeled=True, auto_accept=False, max_suggestions_per_image=0,
            search_stride=1, min_box_size=8, max_workers=4,
        )
        store = LabelStore(class_ids=class_ids)
        return PropagationOrchestrator(config, catalog, store)

    return _make
