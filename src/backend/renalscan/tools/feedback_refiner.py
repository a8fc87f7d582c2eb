"""
Tool: Feedback Refiner

Re-evaluates a low-confidence result. The prior diagnosis and explanation are
handed back to the model as context and it is explicitly allowed to change
the label. Same adapter, same validation as every other call; only the
prompt and the response shape differ.
"""
from __future__ import annotations

import logging
from typing import Optional

from renalscan.models.errors import InferenceError
from renalscan.models.result import Ok, Result
from renalscan.models.schemas import DecisionPolicy, Diagnosis, ImageReference, RefinementOutput
from renalscan.prompts.builder import PromptBuilder
from renalscan.services.inference import InferenceAdapter

logger = logging.getLogger(__name__)


class FeedbackRefiner:
    """
    Runs the low-confidence re-evaluation for one image.

    Usage:
        refiner = FeedbackRefiner(adapter, builder)
        verdict = await refiner.refine(image, Diagnosis.CYST, "A small dark area...")
    """

    def __init__(
        self,
        adapter: InferenceAdapter,
        builder: PromptBuilder,
        policy: DecisionPolicy = DecisionPolicy.FIRST_MATCH,
    ):
        self.adapter = adapter
        self.builder = builder
        self.policy = policy

    async def refine(
        self,
        image: ImageReference,
        prior_diagnosis: Diagnosis,
        prior_explanation: str,
        prior_confidence: Optional[float] = None,
    ) -> Result[RefinementOutput, InferenceError]:
        """
        Ask the model to re-evaluate its earlier answer.

        Args:
            image: Inline image reference (same image as the first call)
            prior_diagnosis: Label from the diagnosis call
            prior_explanation: Explanation shown so far
            prior_confidence: Confidence from the diagnosis call, if known

        Returns:
            Ok(RefinementOutput) or Fail(InferenceError)
        """
        payload = self.builder.build_refinement(
            image, prior_diagnosis, prior_explanation, prior_confidence, self.policy
        )
        verdict = await self.adapter.infer(payload)

        if isinstance(verdict, Ok):
            refined = verdict.value
            changed = "changed" if refined.diagnosis != prior_diagnosis else "kept"
            logger.info(
                f"Refinement {changed} diagnosis: {prior_diagnosis.value} -> {refined.diagnosis.value}"
            )
        return verdict
