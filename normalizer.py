"""Coordinate normalizer and result validation.

Turns loosely-typed model output into well-formed ExtractionResults. Every
bounding box, whatever shape or scale the model chose, leaves here as a Rect
in the unit square with:

    0.001 <= x, y
    x + width <= 0.98, y + height <= 0.98
    width, height >= 0.01

The 0.02 margin keeps highlight borders from clipping at the image edge.
Nothing in this module raises on bad input; malformed values fall back to
defaults or to a synthesized layout position.
"""

import logging
import math
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from config import settings
from models import ExtractedField, ExtractionResult, FieldType, Rect

logger = logging.getLogger(__name__)

MIN_OFFSET = 0.001
MAX_EXTENT = 0.98
MIN_SIZE = 0.01

DEFAULT_CONFIDENCE = 0.7
DEFAULT_WIDTH = 0.1
DEFAULT_HEIGHT = 0.05

# Synthesized layout for fields that arrive without any box
FALLBACK_COLUMNS = 2
FALLBACK_START_X = 0.05
FALLBACK_COLUMN_PITCH = 0.5
FALLBACK_START_Y = 0.1
FALLBACK_ROW_PITCH = 0.06
FALLBACK_WIDTH = 0.45
FALLBACK_HEIGHT = 0.04

ERROR_LABEL = "EXTRACTION ERROR"
ERROR_BOX = Rect(x=0.1, y=0.1, width=0.8, height=0.15)

Box = tuple[float, float, float, float]


def _floor_total(x: float, y: float, w: float, h: float) -> Box:
    # Totals render as wider, more prominent highlights
    return x, y, max(w, 0.15), max(h, 0.04)


def _floor_invoice(x: float, y: float, w: float, h: float) -> Box:
    # Invoice numbers sit in the header band
    return x, max(y, 0.05), max(w, 0.2), h


# Applied in order, after clamping, to labels containing the keyword
LABEL_RULES: list[tuple[str, Callable[[float, float, float, float], Box]]] = [
    ("total", _floor_total),
    ("invoice", _floor_invoice),
]


def normalize_field(raw: Any, index: int, total_fields: int = 0) -> ExtractedField:
    """Validate one raw field dict from the model and normalize its bounding box."""
    if not isinstance(raw, Mapping):
        raw = {}

    label = _text(raw.get("label")) or f"Field {index + 1}"

    confidence = _number(raw.get("confidence"))
    confidence = DEFAULT_CONFIDENCE if confidence is None else min(1.0, max(0.0, confidence))

    box = normalize_box(raw.get("boundingBox"), label, index, total_fields)
    logger.debug("normalized box for %r: %s", label, box)

    return ExtractedField(
        label=label,
        value=_text(raw.get("value")),
        confidence=confidence,
        type=_field_type(raw.get("type")),
        position=_text(raw.get("position")) or "unknown",
        bounding_box=box,
    )


def normalize_box(raw_box: Any, label: str = "", index: int = 0, total_fields: int = 0) -> Rect:
    """Map any box description to a canonical Rect; total and deterministic."""
    coords = coerce_box(raw_box)
    if coords is None:
        return fallback_box(index, total_fields)

    x, y, w, h = to_unit_scale(*coords)
    x, y, w, h = clamp(x, y, w, h)

    lowered = label.lower()
    for keyword, adjust in LABEL_RULES:
        if keyword in lowered:
            x, y, w, h = adjust(x, y, w, h)

    # Rules may push a box past the margin; clamp again so the invariant holds
    x, y, w, h = clamp(x, y, w, h)
    return Rect(x=x, y=y, width=w, height=h)


def coerce_box(raw_box: Any) -> Box | None:
    """Read x/y/width/height out of a list, an x/y/width/height dict or a left/top/right/bottom dict.

    Returns None when the shape is not recognized. Invalid numbers fall back
    to 0 for the offsets and to a small default size for the extents.
    """
    if isinstance(raw_box, Mapping):
        if any(k in raw_box for k in ("x", "y", "width", "height", "w", "h")):
            x = raw_box.get("x")
            y = raw_box.get("y")
            w = raw_box.get("width", raw_box.get("w"))
            h = raw_box.get("height", raw_box.get("h"))
        elif any(k in raw_box for k in ("left", "top", "right", "bottom")):
            left = _number(raw_box.get("left")) or 0.0
            top = _number(raw_box.get("top")) or 0.0
            right = _number(raw_box.get("right"))
            bottom = _number(raw_box.get("bottom"))
            x, y = left, top
            w = right - left if right is not None else None
            h = bottom - top if bottom is not None else None
        else:
            return None
    elif isinstance(raw_box, Sequence) and not isinstance(raw_box, (str, bytes)) and len(raw_box) == 4:
        x, y, w, h = raw_box
    else:
        return None

    return (
        _number(x) or 0.0,
        _number(y) or 0.0,
        _number(w) or DEFAULT_WIDTH,
        _number(h) or DEFAULT_HEIGHT,
    )


def to_unit_scale(x: float, y: float, w: float, h: float) -> Box:
    """Convert pixel coordinates to unit coordinates when any value exceeds 1.

    The true image size is not known here, so pixels are divided by an
    assumed canvas (at least ASSUMED_CANVAS_WIDTH × ASSUMED_CANVAS_HEIGHT,
    grown to contain the box). This is an approximation.
    """
    if x <= 1 and y <= 1 and w <= 1 and h <= 1:
        return x, y, w, h

    canvas_w = max(x + w, settings.ASSUMED_CANVAS_WIDTH)
    canvas_h = max(y + h, settings.ASSUMED_CANVAS_HEIGHT)
    return x / canvas_w, y / canvas_h, w / canvas_w, h / canvas_h


def clamp(x: float, y: float, w: float, h: float) -> Box:
    """Force a box into the unit square with the edge margin and minimum size."""
    x = min(MAX_EXTENT - MIN_SIZE, max(MIN_OFFSET, x))
    y = min(MAX_EXTENT - MIN_SIZE, max(MIN_OFFSET, y))
    w = max(MIN_SIZE, min(MAX_EXTENT - x, w))
    h = max(MIN_SIZE, min(MAX_EXTENT - y, h))
    return x, y, w, h


def fallback_box(index: int, total_fields: int = 0) -> Rect:
    """Place a box-less field in a two-column layout by its position in the list."""
    index = max(0, index)
    row, col = divmod(index, FALLBACK_COLUMNS)

    # Compress rows when there are too many fields to fit at the normal pitch
    rows = max(math.ceil(total_fields / FALLBACK_COLUMNS), row + 1)
    usable = MAX_EXTENT - FALLBACK_START_Y - FALLBACK_HEIGHT
    pitch = FALLBACK_ROW_PITCH
    if rows > 1 and (rows - 1) * pitch > usable:
        pitch = usable / (rows - 1)

    x, y, w, h = clamp(
        FALLBACK_START_X + col * FALLBACK_COLUMN_PITCH,
        FALLBACK_START_Y + row * pitch,
        FALLBACK_WIDTH,
        FALLBACK_HEIGHT,
    )
    return Rect(x=x, y=y, width=w, height=h)


def build_result(data: Any) -> ExtractionResult:
    """Validate a parsed model reply into an ExtractionResult, normalizing every field."""
    if not isinstance(data, Mapping):
        data = {}

    raw_fields = data.get("extractedFields")
    if not isinstance(raw_fields, list):
        raw_fields = []

    total = len(raw_fields)
    fields = [normalize_field(raw, i, total) for i, raw in enumerate(raw_fields)]

    return ExtractionResult(
        document_type=_text(data.get("documentType")) or "unknown",
        extracted_fields=fields,
        tables=_list(data.get("tables")),
        logos=_list(data.get("logos")),
        signatures=_list(data.get("signatures")),
        content=_text(data.get("fullText")) or _text(data.get("content")),
    )


def error_result(file_name: str) -> ExtractionResult:
    """Terminal result: a single visible error field in place of real data."""
    return ExtractionResult(
        document_type="error",
        extracted_fields=[
            ExtractedField(
                label=ERROR_LABEL,
                value=f"Failed to process {file_name}. Please try a higher quality image.",
                confidence=0.0,
                type=FieldType.ERROR,
                bounding_box=ERROR_BOX.model_copy(),
            )
        ],
        error="Processing failed",
    )


def _number(value: Any) -> float | None:
    """Coerce a JSON scalar to a finite float, or None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _field_type(value: Any) -> FieldType:
    if isinstance(value, FieldType):
        return value
    try:
        return FieldType(str(value).lower())
    except ValueError:
        return FieldType.TEXT
