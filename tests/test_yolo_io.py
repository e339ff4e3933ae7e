"""Tests for YOLO label import and export."""

import os

import pytest

from label_propagation.models import ImageRecord, Label
from label_propagation.yolo_io import (
    parse_yolo_line, load_yolo_labels, export_yolo_labels, label_file_for,
)

RECORD = ImageRecord("img/frame.jpg", 200, 100)


class TestParseLine:
    """Tests for single-line parsing."""

    def test_pixel_rect(self):
        rect, class_id = parse_yolo_line("2 0.5 0.5 0.2 0.4", 200, 100)
        assert class_id == 2
        assert rect == pytest.approx((80, 30, 40, 40))

    def test_comma_decimal(self):
        rect, _ = parse_yolo_line("0 0,5 0,5 0,2 0,4", 200, 100)
        assert rect == pytest.approx((80, 30, 40, 40))

    @pytest.mark.parametrize("line", ["", "   ", "0 0.5 0.5", "x 0.5 0.5 0.2 0.4", "0 a b c d"])
    def test_malformed(self, line):
        assert parse_yolo_line(line, 200, 100) is None


class TestLabelFiles:
    """Tests for reading and writing label files."""

    def test_export_then_load(self, tmp_path):
        path = str(tmp_path / "labels" / "frame.txt")
        labels = [Label("Label 1", (80, 30, 40, 40), 2), Label("Label 2", (0, 0, 20, 10), 0)]

        assert export_yolo_labels(path, labels, RECORD) == 2

        loaded = load_yolo_labels(path, RECORD)
        assert [l.name for l in loaded] == ["Imported Label 1", "Imported Label 2"]
        assert loaded[0].class_id == 2
        assert loaded[0].rect == pytest.approx((80, 30, 40, 40))
        assert loaded[1].rect == pytest.approx((0, 0, 20, 10))

    def test_export_format(self, tmp_path):
        path = str(tmp_path / "frame.txt")
        export_yolo_labels(path, [Label("Label 1", (80, 30, 40, 40), 1)], RECORD)
        with open(path, "r", encoding="utf-8") as f:
            assert f.read() == "1 0.500000 0.500000 0.200000 0.400000\n"

    def test_export_invalid_size(self, tmp_path):
        with pytest.raises(ValueError):
            export_yolo_labels(str(tmp_path / "x.txt"), [], ImageRecord("x.jpg", 0, 10))

    def test_load_skips_bad_lines(self, tmp_path):
        path = tmp_path / "frame.txt"
        path.write_text("0 0.5 0.5 0.2 0.4\ngarbage\n\n1 0.25 0.25 0.1 0.1\n", encoding="utf-8")
        loaded = load_yolo_labels(str(path), RECORD, name_prefix="AI Label")
        assert [l.name for l in loaded] == ["AI Label 1", "AI Label 2"]
        assert loaded[1].class_id == 1

    def test_load_missing_file(self, tmp_path):
        assert load_yolo_labels(str(tmp_path / "none.txt"), RECORD) == []

    def test_label_file_for(self):
        assert label_file_for(os.path.join("img", "frame.jpg")) == os.path.join("img", "frame.txt")
        assert label_file_for("img/frame.jpg", "out") == os.path.join("out", "frame.txt")
