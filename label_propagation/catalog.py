"""
Image catalog: path -> ImageRecord with cached dimensions.

Propagation scales boxes between images by their dimensions many times per
run; keeping the dimensions here avoids decoding files just to read them.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from .models import ImageRecord
from .preprocessing import load_image

logger = logging.getLogger(__name__)


class ImageCatalog:
    """
    Registry of known images.

    Args:
        loader: Callable decoding a path into an RGB uint8 array.
            Defaults to the OpenCV-backed load_image.
    """

    def __init__(self, loader: Callable[[str], np.ndarray] = None):
        self.loader = loader or load_image
        self._records: Dict[str, ImageRecord] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._records)

    def __contains__(self, path):
        return path in self._records

    def register(self, path: str, width: int, height: int) -> ImageRecord:
        """Register an image whose dimensions are already known."""
        record = ImageRecord(path, int(width), int(height))
        with self._lock:
            self._records[path] = record
        return record

    def add(self, path: str) -> Optional[ImageRecord]:
        """
        Register an image, decoding it once to read its dimensions.

        Returns:
            The record, or None if the image can't be read.
        """
        existing = self._records.get(path)
        if existing is not None:
            return existing
        try:
            pixels = self.loader(path)
        except OSError as e:
            logger.warning(f"Skipping unreadable image: {e}")
            return None
        h, w = pixels.shape[:2]
        return self.register(path, w, h)

    def add_many(self, paths: Iterable[str]) -> List[ImageRecord]:
        records = []
        for path in paths:
            record = self.add(path)
            if record is not None:
                records.append(record)
        logger.info(f"Catalog holds {len(self._records)} images")
        return records

    def get(self, path: str) -> Optional[ImageRecord]:
        return self._records.get(path)

    def load_pixels(self, path: str) -> np.ndarray:
        """Decode a registered image. Raises OSError (ImageReadError from load_image)."""
        record = self._records.get(path)
        return self.loader(record.path if record else path)
