"""
Versioned response shapes, one per model call type.

A shape pairs a Pydantic output model with a name and version. The same
definition renders the JSON schema that goes into the prompt and the
``response_format`` request parameter, and is what the schema validator
checks the model's answer against. Bump ``version`` whenever the output
model changes.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Type

from pydantic import BaseModel

from renalscan.models.schemas import (
    AnalyticsOutput,
    CallType,
    DiagnosisOutput,
    ExplanationOutput,
    RefinementOutput,
)


@dataclass(frozen=True)
class ResponseShape:
    name: str
    version: int
    model: Type[BaseModel]

    @property
    def qualified_name(self) -> str:
        return f"{self.name}_v{self.version}"

    def json_schema(self) -> Dict[str, Any]:
        return self.model.model_json_schema()

    def response_format(self) -> Dict[str, Any]:
        """OpenAI-style ``response_format`` for structured output."""
        return {
            "type": "json_schema",
            "json_schema": {
                "name": self.qualified_name,
                "strict": False,
                "schema": self.json_schema(),
            },
        }

    def format_instruction(self) -> str:
        return (
            "Respond ONLY with valid JSON matching this schema:\n"
            f"```json\n{json.dumps(self.json_schema(), indent=2, sort_keys=True)}\n```\n"
            "Do not include any text outside the JSON."
        )


DIAGNOSIS_SHAPE = ResponseShape("kidney_diagnosis", 2, DiagnosisOutput)
EXPLANATION_SHAPE = ResponseShape("prediction_explanation", 1, ExplanationOutput)
REFINEMENT_SHAPE = ResponseShape("refined_diagnosis", 2, RefinementOutput)
ANALYTICS_SHAPE = ResponseShape("scan_analytics", 1, AnalyticsOutput)

SHAPES: Dict[CallType, ResponseShape] = {
    CallType.DIAGNOSIS: DIAGNOSIS_SHAPE,
    CallType.EXPLANATION: EXPLANATION_SHAPE,
    CallType.REFINEMENT: REFINEMENT_SHAPE,
    CallType.ANALYTICS: ANALYTICS_SHAPE,
}
