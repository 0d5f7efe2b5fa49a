"""CSV and XLSX export of extracted fields."""

import csv
import io

from openpyxl import Workbook

from models import ExtractionResult

EXPORT_COLUMNS = ["Label", "Value", "Type", "Confidence", "Position"]

FORMATS: dict[str, tuple[str, str]] = {
    "csv": ("text/csv", "extracted.csv"),
    "xlsx": ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "extracted.xlsx"),
}


def fields_to_rows(result: ExtractionResult) -> list[list]:
    return [
        [f.label, f.value, f.type.value, f.confidence, f.position]
        for f in result.extracted_fields
    ]


def to_csv(result: ExtractionResult) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    writer.writerows(fields_to_rows(result))
    return buf.getvalue()


def to_xlsx(result: ExtractionResult) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Extracted Data"
    ws.append(EXPORT_COLUMNS)
    for row in fields_to_rows(result):
        ws.append(row)

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def render(result: ExtractionResult, fmt: str) -> tuple[bytes, str, str]:
    """Return (body, media_type, filename) for a supported format.

    Raises ValueError for an unknown format.
    """
    if fmt not in FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")

    media_type, filename = FORMATS[fmt]
    body = to_csv(result).encode("utf-8") if fmt == "csv" else to_xlsx(result)
    return body, media_type, filename
