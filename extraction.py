"""Extraction orchestrator: grid overlay, staged inference calls, validation.

Each document runs through a small state machine:

    GROUND ──► REFINE ──► VALIDATE ──► DONE
      │  └─(no fields)──────►┘
      │         └─(transport error)─┐
      └─(transport error)─► FALLBACK ──► VALIDATE
                               └─(fails)─► ERROR_RESULT ──► DONE

Any unexpected error in GROUND, REFINE or VALIDATE also routes to FALLBACK.
An unparseable refinement keeps the grounding result.

PDF uploads skip the grid entirely: their extracted text goes through a
single text-only label/value call (run_text).

The pipeline always returns a well-formed ExtractionResult and never raises.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from config import settings
from grid_overlay import overlay
from inference_client import InferenceClient, TransportError
from models import ExtractionResult
from normalizer import build_result, error_result
from prompts import FALLBACK_PROMPT, TEXT_EXTRACTION_PROMPT, grounding_prompt, refinement_prompt

logger = logging.getLogger(__name__)


class ParseError(ValueError):
    """Model output did not contain a JSON object."""


class TerminalExtractionFailure(Exception):
    """The fallback call failed too; only the synthetic error result is left."""


class Stage(str, Enum):
    GROUND = "ground"
    REFINE = "refine"
    VALIDATE = "validate"
    FALLBACK = "fallback"
    ERROR_RESULT = "error_result"
    DONE = "done"


@dataclass
class RunContext:
    """Mutable state for one document's pass through the pipeline."""

    image_bytes: bytes
    mime_type: str
    file_name: str
    data: dict = field(default_factory=dict)
    result: ExtractionResult | None = None
    visited: list[Stage] = field(default_factory=list)
    fell_back: bool = False


class ExtractionPipeline:
    """Drives one document through grounding, refinement and validation."""

    def __init__(self, client: InferenceClient):
        self._client = client
        self._handlers: dict[Stage, Callable[[RunContext], Stage]] = {
            Stage.GROUND: self._ground,
            Stage.REFINE: self._refine,
            Stage.VALIDATE: self._validate,
            Stage.FALLBACK: self._fallback,
            Stage.ERROR_RESULT: self._error_result,
        }

    def run(self, image_bytes: bytes, mime_type: str, file_name: str) -> ExtractionResult:
        """Extract fields from one document image. Never raises."""
        start = time.monotonic()
        ctx = RunContext(image_bytes=image_bytes, mime_type=mime_type, file_name=file_name)

        state = Stage.GROUND
        while state is not Stage.DONE:
            ctx.visited.append(state)
            state = self._step(state, ctx)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = ctx.result if ctx.result is not None else error_result(file_name)
        logger.info(
            "Extraction complete: file=%s fields=%d stages=%s time=%dms",
            file_name,
            len(result.extracted_fields),
            "->".join(s.value for s in ctx.visited),
            elapsed_ms,
        )
        return result

    def _step(self, state: Stage, ctx: RunContext) -> Stage:
        """Run one state handler, turning unexpected errors into a transition."""
        try:
            return self._handlers[state](ctx)
        except TerminalExtractionFailure as e:
            logger.error("Fallback extraction failed for %s: %s", ctx.file_name, e)
            return Stage.ERROR_RESULT
        except Exception:
            if state is Stage.ERROR_RESULT:
                raise
            if state is Stage.FALLBACK or ctx.fell_back:
                logger.exception("Unexpected error in %s stage for %s", state.value, ctx.file_name)
                return Stage.ERROR_RESULT
            logger.exception("Unexpected error in %s stage for %s, falling back", state.value, ctx.file_name)
            return Stage.FALLBACK

    def run_text(self, text: str, file_name: str) -> ExtractionResult:
        """Extract label/value pairs from plain document text (PDF uploads). Never raises.

        Boxes are never measured on this path, so every field lands on the
        index-based fallback layout. The source text is kept as the content.
        """
        start = time.monotonic()

        if not text.strip():
            logger.warning("No extractable text in %s", file_name)
            return build_result({"content": text})

        try:
            raw = self._client.complete(
                text,
                system=TEXT_EXTRACTION_PROMPT,
                max_tokens=settings.TEXT_MAX_TOKENS,
                temperature=settings.FALLBACK_TEMPERATURE,
            )
        except TransportError as e:
            logger.error("Text extraction call failed for %s: %s", file_name, e)
            return error_result(file_name)
        except Exception:
            logger.exception("Unexpected error in text extraction for %s", file_name)
            return error_result(file_name)

        try:
            data = parse_stage_output(raw)
        except ParseError as e:
            logger.warning("Text extraction output not parseable for %s: %s", file_name, e)
            data = {}

        data["content"] = text
        data.pop("fullText", None)
        result = build_result(data)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Text extraction complete: file=%s chars=%d fields=%d time=%dms",
            file_name, len(text), len(result.extracted_fields), elapsed_ms,
        )
        return result

    def _ground(self, ctx: RunContext) -> Stage:
        cells = settings.GRID_CELLS
        gridded = overlay(ctx.image_bytes, cells)
        gridded_mime = "image/png" if gridded is not ctx.image_bytes else ctx.mime_type

        try:
            raw = self._client.complete(
                grounding_prompt(cells),
                gridded,
                mime_type=gridded_mime,
                max_tokens=settings.GROUND_MAX_TOKENS,
                temperature=settings.STAGE_TEMPERATURE,
            )
        except TransportError as e:
            logger.error("Grounding call failed for %s: %s", ctx.file_name, e)
            return Stage.FALLBACK

        try:
            ctx.data = parse_stage_output(raw)
        except ParseError as e:
            logger.warning("Grounding output not parseable for %s: %s", ctx.file_name, e)
            ctx.data = {}
            return Stage.VALIDATE

        if not _has_fields(ctx.data):
            logger.warning("Grounding returned no fields for %s", ctx.file_name)
            return Stage.VALIDATE

        return Stage.REFINE

    def _refine(self, ctx: RunContext) -> Stage:
        try:
            raw = self._client.complete(
                refinement_prompt(ctx.data),
                ctx.image_bytes,
                mime_type=ctx.mime_type,
                max_tokens=settings.REFINE_MAX_TOKENS,
                temperature=settings.STAGE_TEMPERATURE,
            )
        except TransportError as e:
            logger.error("Refinement call failed for %s: %s", ctx.file_name, e)
            return Stage.FALLBACK

        try:
            refined = parse_stage_output(raw)
        except ParseError as e:
            logger.warning("Refinement output not parseable for %s, keeping grounding result: %s", ctx.file_name, e)
            return Stage.VALIDATE

        if _has_fields(refined):
            ctx.data = refined
            logger.info("Coordinates refined for %s", ctx.file_name)
        else:
            logger.warning("Refinement returned no fields for %s, keeping grounding result", ctx.file_name)

        return Stage.VALIDATE

    def _validate(self, ctx: RunContext) -> Stage:
        ctx.result = build_result(ctx.data)
        return Stage.DONE

    def _fallback(self, ctx: RunContext) -> Stage:
        ctx.fell_back = True
        try:
            raw = self._client.complete(
                FALLBACK_PROMPT,
                ctx.image_bytes,
                mime_type=ctx.mime_type,
                max_tokens=settings.FALLBACK_MAX_TOKENS,
                temperature=settings.FALLBACK_TEMPERATURE,
            )
        except TransportError as e:
            raise TerminalExtractionFailure(str(e)) from e

        try:
            ctx.data = parse_stage_output(raw)
        except ParseError as e:
            logger.warning("Fallback output not parseable for %s: %s", ctx.file_name, e)
            ctx.data = {}

        return Stage.VALIDATE

    def _error_result(self, ctx: RunContext) -> Stage:
        ctx.result = error_result(ctx.file_name)
        return Stage.DONE


def parse_stage_output(raw: str) -> dict:
    """Parse a stage reply into a dict, raising ParseError if it holds no JSON object."""
    parsed = try_parse_json(raw)
    if parsed is None:
        raise ParseError(f"no JSON object in model output: {(raw or '')[:200]!r}")
    return parsed


def try_parse_json(raw: str) -> dict | None:
    """Try to extract a JSON object from the model output.

    Handles: direct JSON, markdown fences, preamble/trailing text, and
    <think>...</think> blocks. With surrounding prose, the first top-level
    object is taken.
    """
    if not raw:
        return None

    cleaned = re.sub(r"<think>.*?</think>", "", raw, flags=re.DOTALL).strip()

    # Try direct parse first
    try:
        result = json.loads(cleaned)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass

    # Try to find JSON block in markdown code fences
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", cleaned, re.DOTALL)
    if match:
        try:
            result = json.loads(match.group(1).strip())
            if isinstance(result, dict):
                return result
        except json.JSONDecodeError:
            pass

    # Decode the first top-level { ... } and ignore whatever follows it
    start = cleaned.find("{")
    if start != -1:
        try:
            result, _ = json.JSONDecoder().raw_decode(cleaned, start)
            if isinstance(result, dict):
                return result
        except json.JSONDecodeError:
            pass

    logger.warning("Could not parse JSON from model response: %s", cleaned[:200])
    return None


def _has_fields(data: dict) -> bool:
    fields = data.get("extractedFields")
    return isinstance(fields, list) and len(fields) > 0
