"""Pydantic models for extraction results (camelCase on the wire)."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FieldType(str, Enum):
    TEXT = "text"
    LOGO = "logo"
    SIGNATURE = "signature"
    STAMP = "stamp"
    ERROR = "error"


class Rect(BaseModel):
    """Bounding box normalized to the unit square of the source image."""

    x: float
    y: float
    width: float
    height: float


class ExtractedField(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    label: str
    value: str
    confidence: float
    type: FieldType = FieldType.TEXT
    position: str = "unknown"
    bounding_box: Rect = Field(alias="boundingBox")


class ExtractionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_type: str = Field(default="unknown", alias="documentType")
    extracted_fields: list[ExtractedField] = Field(default_factory=list, alias="extractedFields")
    tables: list[Any] = Field(default_factory=list)
    logos: list[Any] = Field(default_factory=list)
    signatures: list[Any] = Field(default_factory=list)
    content: str = ""
    error: str | None = None


class ExtractResponse(BaseModel):
    id: str
    data: ExtractionResult


class BatchItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    id: str
    data: ExtractionResult


class ChatRequest(BaseModel):
    id: str
    message: str
