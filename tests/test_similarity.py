"""Tests for the similarity index and its persisted hash cache."""

import json
import os

import pytest

from label_propagation.cache import (
    DebouncedCacheWriter, cache_path_for, load_hash_cache, write_hash_cache,
)
from label_propagation.config import SimilarityMode
from label_propagation.preprocessing import ImageReadError
from label_propagation.similarity import SimilarityIndex


@pytest.fixture
def index(memory_loader, textured_image, other_textured_image):
    memory_loader.images.update({
        "a.png": textured_image,
        "b.png": textured_image.copy(),
        "c.png": other_textured_image,
    })
    return SimilarityIndex(loader=memory_loader, save_interval=0.0)


class TestSimilarityIndex:
    """Tests for fingerprint caching and scoring."""

    @pytest.mark.parametrize("mode", [SimilarityMode.HASH, SimilarityMode.HISTOGRAM])
    def test_identical_images_score_one(self, index, mode):
        assert index.similarity("a.png", "b.png", mode) == pytest.approx(1.0)

    def test_mode_accepts_strings(self, index):
        assert index.similarity("a.png", "b.png", "histogram") == pytest.approx(1.0)

    def test_unknown_mode(self, index):
        with pytest.raises(ValueError):
            index.similarity("a.png", "b.png", "sift")

    def test_hash_computed_once(self, index, memory_loader):
        first = index.hash("a.png")
        second = index.hash("a.png")
        assert first == second
        assert memory_loader.loaded.count("a.png") == 1

    def test_cache_key_ignores_case(self, index, memory_loader):
        value = index.hash("a.png")
        # "A.PNG" is unknown to the loader; a cache miss would raise
        assert index.hash("A.PNG") == value
        assert "A.PNG" not in memory_loader.loaded

    def test_unreadable_image_raises(self, index):
        with pytest.raises(ImageReadError):
            index.hash("missing.png")

    def test_fingerprint_by_mode(self, index):
        assert isinstance(index.fingerprint("a.png", SimilarityMode.HASH), int)
        assert index.fingerprint("a.png", SimilarityMode.HISTOGRAM).shape == (16,)

    def test_rank_best_first(self, index):
        ranked = index.rank("a.png", ["c.png", "b.png"])
        assert ranked[0] == ("b.png", 1.0)
        assert [p for p, _ in ranked] == ["b.png", "c.png"]

    def test_rank_histogram_mode(self, index):
        ranked = index.rank("a.png", ["c.png", "b.png"], SimilarityMode.HISTOGRAM, k=1)
        assert len(ranked) == 1
        assert ranked[0][0] == "b.png"
        assert ranked[0][1] == pytest.approx(1.0, abs=1e-5)

    def test_rank_skips_unreadable_candidates(self, index):
        ranked = index.rank("a.png", ["missing.png", "b.png"])
        assert [p for p, _ in ranked] == ["b.png"]


class TestHashPersistence:
    """Tests for the per-project hash cache."""

    def test_flush_and_reload(self, index, memory_loader, tmp_path):
        index.set_project_folder(str(tmp_path))
        value = index.hash("a.png")
        assert index.flush()

        path = cache_path_for(str(tmp_path))
        with open(path, "r", encoding="utf-8") as f:
            assert "image_hashes" in json.load(f)

        memory_loader.images.clear()
        reloaded = SimilarityIndex(loader=memory_loader)
        reloaded.set_project_folder(str(tmp_path))
        assert reloaded.hash("a.png") == value

    def test_cache_file_keeps_original_paths(self, memory_loader, textured_image, tmp_path):
        memory_loader.images["Data/Frame_01.PNG"] = textured_image
        index = SimilarityIndex(loader=memory_loader)
        index.set_project_folder(str(tmp_path))
        value = index.hash("Data/Frame_01.PNG")
        assert index.flush()

        with open(cache_path_for(str(tmp_path)), "r", encoding="utf-8") as f:
            assert json.load(f)["image_hashes"] == {"Data/Frame_01.PNG": value}

        memory_loader.images.clear()
        reloaded = SimilarityIndex(loader=memory_loader)
        reloaded.set_project_folder(str(tmp_path))
        assert reloaded.hash("data/frame_01.png") == value
        assert reloaded.flush()
        with open(cache_path_for(str(tmp_path)), "r", encoding="utf-8") as f:
            assert list(json.load(f)["image_hashes"]) == ["Data/Frame_01.PNG"]

    def test_clearing_project_drops_cache(self, index, memory_loader, tmp_path):
        index.set_project_folder(str(tmp_path))
        index.hash("a.png")
        index.set_project_folder(None)
        index.hash("a.png")
        assert memory_loader.loaded.count("a.png") == 2
        assert index.flush() is False

    def test_corrupt_cache_starts_empty(self, memory_loader, tmp_path):
        path = cache_path_for(str(tmp_path))
        os.makedirs(os.path.dirname(path))
        with open(path, "w", encoding="utf-8") as f:
            f.write("{not json")

        index = SimilarityIndex(loader=memory_loader)
        index.set_project_folder(str(tmp_path))
        with pytest.raises(ImageReadError):
            index.hash("a.png")

    def test_no_project_means_no_writes(self, index, tmp_path):
        index.hash("a.png")
        assert not os.path.exists(cache_path_for(str(tmp_path)))


class TestCacheFile:
    """Tests for cache file reading and debounced writing."""

    def test_missing_file(self, tmp_path):
        assert load_hash_cache(str(tmp_path / "nope.json")) == {}
        assert load_hash_cache(None) == {}

    @pytest.mark.parametrize("content", [
        "{not json",
        "[1, 2, 3]",
        '{"image_hashes": {"a.png": "abc"}}',
    ])
    def test_malformed_file(self, tmp_path, content):
        path = tmp_path / "cache.json"
        path.write_text(content, encoding="utf-8")
        assert load_hash_cache(str(path)) == {}

    def test_write_then_load(self, tmp_path):
        path = cache_path_for(str(tmp_path))
        write_hash_cache(path, {"a.png": 2 ** 63 + 5})
        assert load_hash_cache(path) == {"a.png": 2 ** 63 + 5}
        assert not os.path.exists(path + ".tmp")

    def test_debounce(self, tmp_path):
        now = [0.0]
        writes = []

        def snapshot():
            writes.append(now[0])
            return {"a.png": 1}

        writer = DebouncedCacheWriter(str(tmp_path / "c" / "cache.json"),
                                      min_interval=5.0, clock=lambda: now[0])
        assert writer.save(snapshot)
        now[0] = 1.0
        assert not writer.save(snapshot)
        now[0] = 6.0
        assert writer.save(snapshot)
        now[0] = 7.0
        assert writer.flush(snapshot)
        assert writes == [0.0, 6.0, 7.0]

    def test_write_failure_is_swallowed(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        writer = DebouncedCacheWriter(str(blocker / "sub" / "cache.json"), min_interval=0.0)
        assert writer.flush(lambda: {"a.png": 1}) is False
