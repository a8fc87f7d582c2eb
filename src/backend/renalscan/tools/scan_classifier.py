"""
Tool: Scan Classifier

First call of every analysis. Asks the model for the diagnosis label and a
confidence score only, using the configured decision policy.
"""
from __future__ import annotations

import logging

from renalscan.models.errors import InferenceError
from renalscan.models.result import Ok, Result
from renalscan.models.schemas import DecisionPolicy, DiagnosisOutput, ImageReference
from renalscan.prompts.builder import PromptBuilder
from renalscan.services.inference import InferenceAdapter

logger = logging.getLogger(__name__)


class ScanClassifierTool:
    """Classifies a kidney CT image into one diagnosis label."""

    def __init__(
        self,
        adapter: InferenceAdapter,
        builder: PromptBuilder,
        policy: DecisionPolicy = DecisionPolicy.FIRST_MATCH,
    ):
        self.adapter = adapter
        self.builder = builder
        self.policy = policy

    async def run(self, image: ImageReference) -> Result[DiagnosisOutput, InferenceError]:
        """
        Classify the scan.

        Args:
            image: Inline image reference

        Returns:
            Ok(DiagnosisOutput) or Fail(InferenceError)
        """
        payload = self.builder.build(image, self.policy)
        verdict = await self.adapter.infer(payload)

        if isinstance(verdict, Ok):
            confidence = verdict.value.confidence
            logger.info(
                f"Classification complete: {verdict.value.diagnosis.value} "
                f"(confidence {'n/a' if confidence is None else f'{confidence:.2f}'}, policy {self.policy.value})"
            )
        return verdict
