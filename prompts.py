"""Stage prompts for grid-grounded field extraction.

Grounding teaches the model to use the overlaid N×N grid as a ruler;
refinement re-checks those coordinates against the clean image; the
fallback prompt is a single short instruction used when grounding fails.
PDF text gets its own label/value prompt with no coordinates at all.
"""

import json

_JSON_SUFFIX = """

CRITICAL OUTPUT RULES:
- Return ONLY a single valid JSON object. No other text before or after.
- Do NOT include any thinking, preamble, explanation, or markdown formatting.
- Do NOT wrap in code fences. Just raw JSON."""

_GROUNDING_TEMPLATE = """You are a precision document analyst. The attached image has a red GRID OVERLAY drawn on it for reference.

COORDINATE SYSTEM:
- The image is divided into a {cells}x{cells} grid ({cell_count} cells).
- Grid lines are numbered 0-{cells} along the top edge (X) and the left edge (Y).
- Each grid cell spans exactly {unit} units in each direction.
- Use the grid lines as a ruler to measure where each piece of text starts and ends.

TASK:
1. Identify every labeled field on the document (label and its value).
2. Measure the bounding box of each value using the grid.
3. Express every box in NORMALIZED coordinates between 0.0 and 1.0:
   - x: left edge (0.0 = left side of the image, 1.0 = right side)
   - y: top edge (0.0 = top of the image, 1.0 = bottom)
   - width, height: horizontal and vertical span

Example: text spanning grid cell (2,3) to cell (4,3) is
{example}

Return JSON with EXACTLY this structure:

{{
  "documentType": "invoice|receipt|form|contract|other",
  "extractedFields": [
    {{
      "label": "exact field label",
      "value": "exact field value",
      "confidence": 0.95,
      "type": "text|logo|signature|stamp",
      "position": "short location hint, e.g. top-right",
      "boundingBox": {example}
    }}
  ],
  "fullText": "complete text content of the document"
}}

Use at least 3 decimal places. Do not describe the grid itself as a field.""" + _JSON_SUFFIX

REFINEMENT_PROMPT = """You are a coordinate quality inspector. Below is a field extraction for the attached document image, including a bounding box for every field.

Review each box against the image and tighten it:
- Adjust x and y so the box starts exactly at the text edges.
- Adjust width and height so the box covers the whole value with minimal padding.
- Keep every coordinate normalized between 0.0 and 1.0.
- Do not drop, merge or rename fields, and do not change values.

Return the SAME JSON structure with refined boundingBox values.""" + _JSON_SUFFIX

FALLBACK_PROMPT = """Extract all labeled fields visible in this document image.
Return JSON with this structure:

{
  "extractedFields": [
    {
      "label": "field name",
      "value": "field value",
      "confidence": 0.8,
      "boundingBox": {"x": 0.1, "y": 0.1, "width": 0.8, "height": 0.1}
    }
  ]
}

Bounding boxes use normalized coordinates between 0.0 and 1.0.""" + _JSON_SUFFIX

TEXT_EXTRACTION_PROMPT = """Extract all label-value pairs from this document text.
Identify actual field labels and their corresponding values.
Return JSON with this structure:

{
  "documentType": "invoice|receipt|form|contract|other",
  "extractedFields": [
    {"label": "field name", "value": "field value", "confidence": 0.95}
  ]
}""" + _JSON_SUFFIX

CHAT_SYSTEM_PROMPT = """You answer questions about a document that has already been extracted.
Use only the extraction data below. If the answer is not in the data, say so.

EXTRACTION DATA:
{document}"""


def refinement_prompt(stage_one: dict) -> str:
    """Refinement instruction with the grounding result appended."""
    return (
        f"{REFINEMENT_PROMPT}\n\n"
        f"ORIGINAL EXTRACTION TO REFINE:\n{json.dumps(stage_one, indent=2, ensure_ascii=False)}"
    )


def chat_system_prompt(document: dict) -> str:
    return CHAT_SYSTEM_PROMPT.format(document=json.dumps(document, ensure_ascii=False))


def grounding_prompt(cells: int) -> str:
    """Grounding instruction describing a cells×cells overlay."""
    unit = 1 / cells
    example = json.dumps({
        "x": round(2 * unit, 3),
        "y": round(3 * unit, 3),
        "width": round(2 * unit, 3),
        "height": round(unit, 3),
    })
    return _GROUNDING_TEMPLATE.format(
        cells=cells,
        cell_count=cells * cells,
        unit=f"{unit:g}",
        example=example,
    )
