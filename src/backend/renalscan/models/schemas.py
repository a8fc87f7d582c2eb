"""
Domain models for RenalScan.

These Pydantic models define the structured data flowing through the analysis
pipeline: the image reference handed in by the caller, the response shape of
every model call, and the unified AnalysisResult handed back. Model output is
untrusted until it has been validated into one of the *Output models below.
"""
from __future__ import annotations

import base64
import binascii
import re
from enum import Enum
from typing import Annotated, Any, Optional, Tuple

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class Diagnosis(str, Enum):
    NORMAL = "normal"
    CYST = "cyst"
    TUMOR = "tumor"
    STONE = "stone"
    NOT_APPLICABLE = "not_applicable"  # image is not a kidney CT scan


class DecisionPolicy(str, Enum):
    FIRST_MATCH = "first_match"  # stone -> tumor -> cyst -> normal, first hit wins
    HOLISTIC = "holistic"        # weigh all evidence, a deforming mass overrides


class CallType(str, Enum):
    DIAGNOSIS = "diagnosis"
    EXPLANATION = "explanation"
    REFINEMENT = "refinement"
    ANALYTICS = "analytics"


class AnalysisStepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Spellings the model has been seen to use for the "not a scan" sentinel
DIAGNOSIS_ALIASES = {
    "not_a_ct_scan": Diagnosis.NOT_APPLICABLE.value,
    "not_ct_scan": Diagnosis.NOT_APPLICABLE.value,
    "not_a_scan": Diagnosis.NOT_APPLICABLE.value,
    "n/a": Diagnosis.NOT_APPLICABLE.value,
}


# ──────────────────────────────────────────────
# Image reference
# ──────────────────────────────────────────────

_DATA_URI_RE = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.*)$", re.DOTALL
)


class ImageReference(BaseModel):
    """
    Opaque handle to image bytes: either an inline ``data:`` URI or an
    ``http(s)://`` address that still has to be fetched.
    """
    model_config = ConfigDict(frozen=True)

    uri: str = Field(..., min_length=1, description="data: URI or http(s) URL")

    @field_validator("uri")
    @classmethod
    def _check_scheme(cls, v: str) -> str:
        v = v.strip()
        if v.startswith("data:"):
            match = _DATA_URI_RE.match(v)
            if not match:
                raise ValueError("data URI must look like data:<mime>;base64,<payload>")
            if not match.group("mime").lower().startswith("image/"):
                raise ValueError(f"unsupported MIME type {match.group('mime')!r}")
            return v
        if v.startswith(("http://", "https://")):
            return v
        raise ValueError("image reference must be a data: URI or an http(s) URL")

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "ImageReference":
        if not data:
            raise ValueError("image is empty")
        mime_type = (mime_type or "").strip().lower()
        if not mime_type.startswith("image/"):
            raise ValueError(f"unsupported MIME type {mime_type!r}")
        encoded = base64.b64encode(data).decode("ascii")
        return cls(uri=f"data:{mime_type};base64,{encoded}")

    @property
    def is_inline(self) -> bool:
        return self.uri.startswith("data:")

    @property
    def mime_type(self) -> Optional[str]:
        match = _DATA_URI_RE.match(self.uri)
        return match.group("mime").lower() if match else None

    def decode(self) -> Tuple[bytes, str]:
        """Return (raw bytes, MIME type). Only inline references can be decoded."""
        match = _DATA_URI_RE.match(self.uri)
        if not match:
            raise ValueError("image reference is not inline; resolve it first")
        try:
            data = base64.b64decode(match.group("payload"), validate=True)
        except binascii.Error as e:
            raise ValueError(f"image payload is not valid base64: {e}") from e
        if not data:
            raise ValueError("image is empty")
        return data, match.group("mime").lower()

    def describe(self) -> str:
        """Short form for logs; never includes the payload."""
        if self.is_inline:
            return f"inline {self.mime_type} ({len(self.uri)} chars)"
        return self.uri[:120]


# ──────────────────────────────────────────────
# Model response shapes
# ──────────────────────────────────────────────

def _normalise_diagnosis(v: Any) -> Any:
    if isinstance(v, str):
        key = v.strip().lower().replace("-", "_").replace(" ", "_")
        return DIAGNOSIS_ALIASES.get(key, key)
    return v


def _coerce_confidence(v: Any) -> Any:
    """Accept numbers and numeric-looking strings; reject everything else."""
    if v is None:
        return v
    if isinstance(v, bool):
        raise ValueError("confidence must be a number, not a boolean")
    if isinstance(v, str):
        try:
            return float(v.strip())
        except ValueError:
            raise ValueError(f"confidence {v!r} is not a number") from None
    return v


def _strip_text(v: Any) -> Any:
    return v.strip() if isinstance(v, str) else v


def _required_unless_not_applicable(v: Any, info: ValidationInfo) -> Any:
    # diagnosis is declared first, so it is in info.data whenever it was valid
    diagnosis = info.data.get("diagnosis")
    if diagnosis is None or diagnosis == Diagnosis.NOT_APPLICABLE:
        return v
    if v is None or v == "":
        raise ValueError(f"{info.field_name} is required when diagnosis is '{diagnosis.value}'")
    return v


UnitInterval = Annotated[float, Field(ge=0.0, le=1.0, allow_inf_nan=False)]
Label = Annotated[Diagnosis, BeforeValidator(_normalise_diagnosis)]
Text = Annotated[str, BeforeValidator(_strip_text)]
Score = Annotated[UnitInterval, BeforeValidator(_coerce_confidence)]
# confidence/explanation may only be omitted for a not_applicable diagnosis
ConditionalScore = Annotated[
    Optional[UnitInterval],
    BeforeValidator(_coerce_confidence),
    AfterValidator(_required_unless_not_applicable),
]
ConditionalText = Annotated[
    Optional[str],
    BeforeValidator(_strip_text),
    AfterValidator(_required_unless_not_applicable),
]


class DiagnosisOutput(BaseModel):
    """Response of the diagnosis-only call."""
    diagnosis: Label = Field(..., description="One of: normal, cyst, tumor, stone, not_applicable")
    confidence: ConditionalScore = Field(
        None, validate_default=True, description="Confidence in the diagnosis, from 0 to 1"
    )


class ExplanationOutput(BaseModel):
    """Response of the patient-facing explanation call."""
    explanation: Text = Field(..., min_length=1, description="Plain-language explanation for the patient")
    highlighted_areas: Optional[Text] = Field(None, description="Where on the image the areas of concern are")


class RefinementOutput(BaseModel):
    """Response of the low-confidence re-evaluation call."""
    diagnosis: Label = Field(..., description="One of: normal, cyst, tumor, stone, not_applicable")
    confidence: ConditionalScore = Field(
        None, validate_default=True, description="Confidence in the refined diagnosis, from 0 to 1"
    )
    explanation: ConditionalText = Field(
        None, validate_default=True, description="Refined plain-language explanation"
    )
    analytics: Optional[Text] = Field(None, description="Concise description of key observations")


class AnalyticsOutput(BaseModel):
    """Response of the optional supplementary analytics call."""
    analytics: Text = Field(..., min_length=1, description="Observations from the scan")
    confidence: Score = Field(..., description="Confidence in the analytics, from 0 to 1")


# ──────────────────────────────────────────────
# Unified result
# ──────────────────────────────────────────────

class AnalysisResult(BaseModel):
    """
    The unified output for one analysed image. Built once per request by the
    orchestrator and never persisted.
    """
    model_config = ConfigDict(frozen=True)

    diagnosis: Diagnosis
    confidence: Optional[UnitInterval] = None
    explanation: str = Field(..., min_length=1)
    highlighted_areas: Optional[str] = None
    analytics: Optional[str] = None
    refined: bool = Field(False, description="True when a low-confidence re-evaluation replaced the first answer")

    @model_validator(mode="after")
    def _confidence_present(self) -> "AnalysisResult":
        if self.diagnosis != Diagnosis.NOT_APPLICABLE and self.confidence is None:
            raise ValueError("confidence is required for a scan diagnosis")
        return self


# ──────────────────────────────────────────────
# Pipeline step tracking
# ──────────────────────────────────────────────

class AnalysisStep(BaseModel):
    """A single state of the analysis pipeline, reported to the step callback."""
    step_id: str
    step_name: str
    status: AnalysisStepStatus = AnalysisStepStatus.PENDING
    output_summary: Optional[str] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None


# ──────────────────────────────────────────────
# API Request / Response Models
# ──────────────────────────────────────────────

class ImageUriSubmission(BaseModel):
    """API request to analyse an image given as a data URI or URL."""
    image_uri: str = Field(..., min_length=1, description="data:<mime>;base64,... or http(s) URL")


class ScanResponse(BaseModel):
    """API response for one analysed scan."""
    success: bool
    result: Optional[AnalysisResult] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
