"""Reference grid overlay for grounding prompts.

Draws a uniform N×N measuring grid (default 10×10) with cell-index labels
onto a document image so the vision model can read positions off it:
1. Decode image bytes
2. Draw translucent grid lines and blend them onto the raster
3. Label grid lines 0..N along the top and left edges
4. Encode as PNG

The overlay is advisory only. On any failure the original bytes are returned
unchanged and the caller continues with the un-gridded image.
"""

import logging

import cv2
import numpy as np

from config import settings

logger = logging.getLogger(__name__)

GRID_COLOR = (0, 0, 255)  # BGR red
LINE_OPACITY = 0.5
LABEL_SCALE = 0.4


def overlay(image_bytes: bytes, cells: int | None = None) -> bytes:
    """Composite the reference grid onto an image.

    Returns new PNG bytes, or the original bytes if any step fails.
    """
    cells = cells or settings.GRID_CELLS

    img = _decode(image_bytes)
    if img is None:
        logger.warning("grid overlay: could not decode image, using original")
        return image_bytes

    try:
        gridded = _draw_grid(img, cells)
    except Exception as e:
        logger.warning("grid overlay: drawing failed, using original: %s", e)
        return image_bytes

    return _encode(gridded, fallback=image_bytes)


def image_size(image_bytes: bytes) -> tuple[int, int] | None:
    """Return (width, height) of an encoded image, or None if it cannot be decoded."""
    img = _decode(image_bytes)
    if img is None:
        return None
    h, w = img.shape[:2]
    return w, h


def _decode(image_bytes: bytes) -> np.ndarray | None:
    """Decode raw bytes into an OpenCV BGR array."""
    if not image_bytes:
        return None
    try:
        arr = np.frombuffer(image_bytes, dtype=np.uint8)
        return cv2.imdecode(arr, cv2.IMREAD_COLOR)
    except Exception as e:
        logger.warning("grid overlay: decode failed: %s", e)
        return None


def _draw_grid(img: np.ndarray, cells: int) -> np.ndarray:
    """Return a copy of img with grid lines blended in and index labels drawn."""
    h, w = img.shape[:2]
    cell_w = w / cells
    cell_h = h / cells

    lines = img.copy()
    for i in range(cells + 1):
        x = min(int(round(i * cell_w)), w - 1)
        y = min(int(round(i * cell_h)), h - 1)
        cv2.line(lines, (x, 0), (x, h - 1), GRID_COLOR, 1)
        cv2.line(lines, (0, y), (w - 1, y), GRID_COLOR, 1)

    out = cv2.addWeighted(lines, LINE_OPACITY, img, 1 - LINE_OPACITY, 0)

    # Labels stay fully opaque so they remain legible on dense documents
    for i in range(cells + 1):
        cv2.putText(
            out, str(i), (int(i * cell_w) + 5, 15),
            cv2.FONT_HERSHEY_SIMPLEX, LABEL_SCALE, GRID_COLOR, 1,
        )
        cv2.putText(
            out, str(i), (5, int(i * cell_h) + 15),
            cv2.FONT_HERSHEY_SIMPLEX, LABEL_SCALE, GRID_COLOR, 1,
        )

    return out


def _encode(img: np.ndarray, fallback: bytes) -> bytes:
    """Encode image as PNG bytes."""
    try:
        success, buf = cv2.imencode(".png", img)
        if success:
            return buf.tobytes()
    except Exception as e:
        logger.warning("grid overlay: PNG encode failed: %s", e)

    return fallback
