"""Shared test fixtures for document field locator tests."""

import json
import sys
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path so we can import the modules
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def sample_image_bytes() -> bytes:
    """Generate a minimal valid JPEG document image for testing."""
    import cv2

    img = np.zeros((300, 200, 3), dtype=np.uint8)
    img[:] = (240, 240, 240)  # Light gray background

    # Dark rectangles standing in for text lines
    cv2.rectangle(img, (20, 30), (180, 50), (30, 30, 30), -1)
    cv2.rectangle(img, (20, 70), (160, 90), (30, 30, 30), -1)
    cv2.rectangle(img, (20, 110), (140, 130), (30, 30, 30), -1)

    _, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, 90])
    return buf.tobytes()


@pytest.fixture
def invalid_bytes() -> bytes:
    """Non-image bytes for testing graceful degradation."""
    return b"this is not an image file at all"


@pytest.fixture
def grounding_response() -> str:
    """Mock grounding reply for a small invoice."""
    return json.dumps({
        "documentType": "invoice",
        "extractedFields": [
            {
                "label": "Invoice Number",
                "value": "INV-001",
                "confidence": 0.95,
                "boundingBox": {"x": 0.6, "y": 0.02, "width": 0.1, "height": 0.03},
            },
            {
                "label": "Total",
                "value": "$42.00",
                "confidence": 0.9,
                "boundingBox": {"x": 0.5, "y": 0.8, "width": 0.3, "height": 0.05},
            },
        ],
        "fullText": "Invoice INV-001 Total $42.00",
    })


@pytest.fixture
def refined_response() -> str:
    """Mock refinement reply that tightens the grounding boxes."""
    return json.dumps({
        "documentType": "invoice",
        "extractedFields": [
            {
                "label": "Invoice Number",
                "value": "INV-001",
                "confidence": 0.97,
                "boundingBox": {"x": 0.62, "y": 0.06, "width": 0.25, "height": 0.03},
            },
            {
                "label": "Total",
                "value": "$42.00",
                "confidence": 0.93,
                "boundingBox": {"x": 0.52, "y": 0.81, "width": 0.2, "height": 0.04},
            },
        ],
        "fullText": "Invoice INV-001 Total $42.00",
    })


@pytest.fixture
def fallback_response() -> str:
    """Mock reply to the simplified fallback prompt."""
    return json.dumps({
        "extractedFields": [
            {"label": "Name", "value": "ACME Corp", "confidence": 0.8},
        ],
    })


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Build a one-page PDF with a real text layer."""
    import fitz

    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Invoice Number: INV-001")
    page.insert_text((72, 100), "Total: $42.00")
    data = doc.tobytes()
    doc.close()
    return data
