"""
Schema Validator: the one correctness gate between the model and the app.

Takes a candidate model response (a dict, or raw text that may wrap JSON in
markdown fences or chatter) and checks it against a ResponseShape. Strict:
nothing is defaulted or clamped. Exhaustive: every violated field is
reported. Never raises; callers always get ``Ok`` or ``Fail``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from renalscan.models.errors import FieldViolation, SchemaViolation
from renalscan.models.result import Fail, Ok, Result
from renalscan.models.shapes import ResponseShape

logger = logging.getLogger(__name__)

RawOutput = Union[str, bytes, Mapping[str, Any], None]

ROOT = "(root)"
EXCERPT_CHARS = 300


def validate(raw_output: RawOutput, shape: ResponseShape) -> Result[BaseModel, SchemaViolation]:
    """
    Validate a candidate response against ``shape``.

    Args:
        raw_output: Parsed JSON object, or the raw text content of the response
        shape: The expected response shape for this call type

    Returns:
        Ok(parsed model instance) or Fail(SchemaViolation listing every problem)
    """
    try:
        data = _parse(raw_output)
    except ValueError as e:
        return _reject(shape, [FieldViolation(field=ROOT, message=str(e))], raw_output)

    if not isinstance(data, dict):
        message = f"expected a JSON object, got {type(data).__name__}"
        return _reject(shape, [FieldViolation(field=ROOT, message=message)], raw_output)

    try:
        return Ok(shape.model.model_validate(data))
    except ValidationError as e:
        return _reject(shape, _violations(e), raw_output)
    except Exception as e:
        logger.exception("Unexpected error validating %s", shape.qualified_name)
        return _reject(shape, [FieldViolation(field=ROOT, message=f"{type(e).__name__}: {e}")], raw_output)


def _violations(error: ValidationError) -> List[FieldViolation]:
    violations = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or ROOT
        violations.append(FieldViolation(field=loc, message=err.get("msg", "invalid")))
    return violations


def _reject(shape: ResponseShape, violations: List[FieldViolation], raw_output: RawOutput) -> Fail[SchemaViolation]:
    violation = SchemaViolation(
        shape=shape.qualified_name,
        violations=violations,
        raw_excerpt=_excerpt(raw_output),
    )
    logger.warning("Rejected model output -- %s", violation.summary())
    return Fail(violation)


def _excerpt(raw_output: RawOutput) -> Optional[str]:
    if raw_output is None:
        return None
    if isinstance(raw_output, Mapping):
        text = json.dumps(raw_output, default=str)
    elif isinstance(raw_output, (bytes, bytearray)):
        text = raw_output.decode("utf-8", errors="replace")
    else:
        text = str(raw_output)
    return text[:EXCERPT_CHARS]


def _parse(raw_output: RawOutput) -> Any:
    if raw_output is None:
        raise ValueError("empty response")
    if isinstance(raw_output, Mapping):
        return dict(raw_output)
    if isinstance(raw_output, (bytes, bytearray)):
        raw_output = raw_output.decode("utf-8", errors="replace")
    if not isinstance(raw_output, str):
        raise ValueError(f"unsupported response type {type(raw_output).__name__}")
    if not raw_output.strip():
        raise ValueError("empty response")

    json_str = extract_json(raw_output)
    try:
        return json.loads(json_str)
    except json.JSONDecodeError as e:
        # Truncated or otherwise broken output is rejected, never patched up
        raise ValueError(f"response is not valid JSON: {e}") from None


def extract_json(text: str) -> str:
    """
    Extract JSON from a response that might include markdown code blocks or
    prose around it.

    Without a code block, every balanced ``{...}`` / ``[...]`` span is tried
    in order and the first one that parses as an object wins; a parseable
    array is only returned when no object parses. Spans nested inside an
    already-parsed value are not considered separately.
    """
    # Try to find JSON in ```json ... ``` blocks
    if "```json" in text:
        start = text.index("```json") + 7
        end = text.find("```", start)
        if end == -1:
            # Unclosed code block, take everything after the opening tag
            return text[start:].strip()
        return text[start:end].strip()
    if "```" in text:
        start = text.index("```") + 3
        end = text.find("```", start)
        if end == -1:
            return text[start:].strip()
        return text[start:end].strip()

    first_array: Optional[str] = None
    first_span: Optional[str] = None
    covered_until = -1
    for i, char in enumerate(text):
        if char not in "{[" or i < covered_until:
            continue
        end = _balanced_end(text, i)
        if end is None:
            # Unbalanced: nothing after this point can close either
            if first_span is None:
                first_span = text[i:].strip()
            break
        candidate = text[i : end + 1]
        if first_span is None:
            first_span = candidate
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return candidate
        if first_array is None:
            first_array = candidate
        covered_until = end + 1
    if first_array is not None:
        return first_array
    if first_span is not None:
        return first_span
    return text.strip()


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index of the bracket closing the one at ``start``, or None if it never closes."""
    depth = 0
    in_string = False
    j = start
    while j < len(text):
        c = text[j]
        if c == "\\" and in_string:
            j += 2
            continue
        if c == '"':
            in_string = not in_string
        elif not in_string:
            if c in "{[":
                depth += 1
            elif c in "}]":
                depth -= 1
                if depth == 0:
                    return j
        j += 1
    return None
