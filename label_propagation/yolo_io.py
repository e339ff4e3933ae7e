"""
YOLO text label import and export.

One line per box, normalized to the image size:

    <class_id> <x_center> <y_center> <width> <height>

Files written by other tools sometimes use a comma as decimal separator;
both are accepted on import. Export always writes a period.
"""

import os
import logging
from typing import Iterable, List, Optional

from .models import ImageRecord, Label

logger = logging.getLogger(__name__)


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return float(value.replace(",", "."))


def parse_yolo_line(line: str, width: int, height: int):
    """
    Parse one YOLO label line into a pixel-space (rect, class_id).

    Returns:
        ((x, y, w, h), class_id), or None for blank or malformed lines.
    """
    parts = line.split()
    if len(parts) != 5:
        return None

    try:
        class_id = int(_parse_float(parts[0]))
        cx, cy, w, h = (_parse_float(p) for p in parts[1:])
    except ValueError:
        return None

    w_px = w * width
    h_px = h * height
    rect = (cx * width - w_px / 2.0, cy * height - h_px / 2.0, w_px, h_px)
    return rect, class_id


def load_yolo_labels(label_file: str, record: ImageRecord,
                     name_prefix: str = "Imported Label") -> List[Label]:
    """
    Read a YOLO label file for an image.

    Args:
        label_file: Path to the .txt file.
        record: Image the labels belong to (dimensions are taken from it).
        name_prefix: Display name prefix, numbered from 1.

    Returns:
        Parsed labels. Missing files and malformed lines yield nothing.
    """
    if not os.path.exists(label_file):
        return []

    labels = []
    try:
        with open(label_file, "r", encoding="utf-8") as f:
            for line in f:
                parsed = parse_yolo_line(line, record.width, record.height)
                if parsed is None:
                    if line.strip():
                        logger.debug(f"Skipping malformed line in {label_file}: {line.strip()}")
                    continue
                rect, class_id = parsed
                labels.append(Label(f"{name_prefix} {len(labels) + 1}", rect, class_id))
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Error loading YOLO labels from {label_file}: {e}")

    return labels


def export_yolo_labels(label_file: str, labels: Iterable[Label],
                       record: ImageRecord) -> int:
    """
    Write labels to a YOLO label file, one normalized line per label.

    Returns:
        Number of lines written.

    Raises:
        ValueError: If the image record has no usable dimensions.
    """
    if record.width <= 0 or record.height <= 0:
        raise ValueError(f"Image {record.path} has invalid size {record.width}x{record.height}")

    directory = os.path.dirname(label_file)
    if directory:
        os.makedirs(directory, exist_ok=True)

    written = 0
    with open(label_file, "w", encoding="utf-8") as f:
        for label in labels:
            x, y, w, h = label.rect
            f.write(
                f"{label.class_id} {(x + w / 2.0) / record.width:.6f} "
                f"{(y + h / 2.0) / record.height:.6f} "
                f"{w / record.width:.6f} {h / record.height:.6f}\n"
            )
            written += 1
    return written


def label_file_for(image_path: str, labels_dir: Optional[str] = None) -> str:
    """YOLO label path for an image: same stem, .txt, optionally in labels_dir."""
    stem = os.path.splitext(os.path.basename(image_path))[0] + ".txt"
    return os.path.join(labels_dir or os.path.dirname(image_path), stem)
