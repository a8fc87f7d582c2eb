"""
Tool: Prediction Explanation

Second call of an analysis. Given the diagnosis that was already decided, asks
the model for a patient-facing explanation tailored to that label.
"""
from __future__ import annotations

import logging
from typing import Optional

from renalscan.models.errors import InferenceError
from renalscan.models.result import Ok, Result
from renalscan.models.schemas import Diagnosis, ExplanationOutput, ImageReference
from renalscan.prompts.builder import PromptBuilder
from renalscan.services.inference import InferenceAdapter

logger = logging.getLogger(__name__)


class ExplanationTool:
    """Explains an existing diagnosis in plain language."""

    def __init__(self, adapter: InferenceAdapter, builder: PromptBuilder):
        self.adapter = adapter
        self.builder = builder

    async def run(
        self, image: ImageReference, diagnosis: Diagnosis, confidence: Optional[float]
    ) -> Result[ExplanationOutput, InferenceError]:
        payload = self.builder.build_explanation(image, diagnosis, confidence)
        verdict = await self.adapter.infer(payload)
        if isinstance(verdict, Ok):
            logger.info(f"Explanation generated for {diagnosis.value} ({len(verdict.value.explanation)} chars)")
        return verdict
