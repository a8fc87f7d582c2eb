"""
Error taxonomy for the analysis pipeline.

Expected failures (upstream down, timeouts, malformed model output) travel as
values inside ``Fail``. Only broken invariants are raised.
"""
from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from renalscan.models.schemas import CallType

# The only failure texts an end user ever sees
USER_FACING_ERROR = "Analysis failed. Please try again."
INVALID_IMAGE_ERROR = "The image could not be read. Please upload a kidney CT scan image."


class InferenceErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"            # unreachable, auth, rate limit, 5xx
    TIMEOUT = "timeout"
    MALFORMED_OUTPUT = "malformed_output"  # response failed schema validation
    UNKNOWN = "unknown"


class AnalysisErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    MALFORMED_OUTPUT = "malformed_output"
    UNKNOWN = "unknown"
    INVALID_INPUT = "invalid_input"  # image could not be resolved to bytes

    @classmethod
    def from_inference(cls, kind: InferenceErrorKind) -> "AnalysisErrorKind":
        return cls(kind.value)


class FieldViolation(BaseModel):
    """One violated field of a candidate model response."""
    field: str = Field(..., description="Dotted path of the field, '(root)' for the whole object")
    message: str


class SchemaViolation(BaseModel):
    """Every reason a candidate response was rejected, not just the first."""
    shape: str
    violations: List[FieldViolation] = Field(default_factory=list)
    raw_excerpt: Optional[str] = None

    def summary(self) -> str:
        if not self.violations:
            return f"{self.shape}: rejected"
        parts = "; ".join(f"{v.field}: {v.message}" for v in self.violations)
        return f"{self.shape}: {parts}"


class InferenceError(BaseModel):
    """A failed model call, as returned by the inference adapter."""
    kind: InferenceErrorKind
    message: str
    call_type: Optional[CallType] = None
    violations: List[FieldViolation] = Field(default_factory=list)


class AnalysisError(BaseModel):
    """A fatal analysis failure. Carries no partial result."""
    kind: AnalysisErrorKind
    message: str
    stage: str = Field(..., description="Pipeline state in which the failure happened")

    @property
    def user_message(self) -> str:
        if self.kind == AnalysisErrorKind.INVALID_INPUT:
            return INVALID_IMAGE_ERROR
        return USER_FACING_ERROR


class ImageResolutionError(ValueError):
    """The image reference could not be turned into bytes + an image MIME type."""


class InternalInvariantViolation(RuntimeError):
    """A value that passed validation broke an invariant downstream."""
