"""
Tool: Supplementary Analytics

Optional collaborator consulted after the explanation. It adds free-text
observations to the result; when it is not configured, or it fails, the
analysis carries on without them.
"""
from __future__ import annotations

import logging
from typing import Protocol

from renalscan.models.errors import InferenceError
from renalscan.models.result import Ok, Result
from renalscan.models.schemas import AnalyticsOutput, Diagnosis, ImageReference
from renalscan.prompts.builder import PromptBuilder
from renalscan.services.inference import InferenceAdapter

logger = logging.getLogger(__name__)


class AnalyticsProvider(Protocol):
    async def run(self, image: ImageReference, diagnosis: Diagnosis) -> Result[AnalyticsOutput, InferenceError]:
        ...


class ModelAnalyticsTool:
    """Asks the model for analytics on the scan given a free-text focus."""

    def __init__(self, adapter: InferenceAdapter, builder: PromptBuilder, focus: str):
        self.adapter = adapter
        self.builder = builder
        self.focus = focus

    async def run(self, image: ImageReference, diagnosis: Diagnosis) -> Result[AnalyticsOutput, InferenceError]:
        payload = self.builder.build_analytics(image, diagnosis, self.focus)
        verdict = await self.adapter.infer(payload)
        if isinstance(verdict, Ok):
            logger.info(
                f"Analytics generated for {diagnosis.value} "
                f"({len(verdict.value.analytics)} chars, confidence {verdict.value.confidence:.2f})"
            )
        return verdict
