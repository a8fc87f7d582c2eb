"""
Diagnosis Orchestrator: runs one image through the analysis pipeline.

Controls the multi-step state machine:
  1. Validate: diagnosis-only call (fatal on failure)
  2. Explain: patient-facing explanation (falls back on failure)
  3. Supplement: optional analytics collaborator (best effort)
  4. CheckConfidence: low confidence sends the result to Refine
  5. Refine: re-evaluation with the prior answer as context
     (replaces the result on success, ignored on failure)

Every state handler returns a Transition naming the next state, so each
fallback path is a plain branch. The orchestrator itself only holds
read-only collaborators; all per-request data lives in an AnalysisState
created inside ``analyze`` and discarded when it returns.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from renalscan.config import Settings
from renalscan.models.errors import (
    AnalysisError,
    AnalysisErrorKind,
    ImageResolutionError,
    InferenceError,
    InternalInvariantViolation,
)
from renalscan.models.result import Fail, Ok, Result
from renalscan.models.schemas import (
    AnalysisResult,
    AnalysisStep,
    AnalysisStepStatus,
    DecisionPolicy,
    Diagnosis,
    ImageReference,
)
from renalscan.prompts.builder import PromptBuilder
from renalscan.services.images import resolve_image
from renalscan.services.inference import InferenceAdapter
from renalscan.tools.analytics import AnalyticsProvider, ModelAnalyticsTool
from renalscan.tools.explanation import ExplanationTool
from renalscan.tools.feedback_refiner import FeedbackRefiner
from renalscan.tools.scan_classifier import ScanClassifierTool

logger = logging.getLogger(__name__)

# Type for the callback that receives step updates
StepCallback = Callable[[AnalysisStep], None]

NOT_APPLICABLE_EXPLANATION = (
    "The uploaded image does not appear to be a CT scan of a kidney, so it could "
    "not be analysed. Please upload a kidney CT scan image and try again."
)

# Used when the explanation call fails; the diagnosis still stands
FALLBACK_EXPLANATIONS = {
    Diagnosis.NORMAL: (
        "The scan was classified as normal: no stone, cyst or mass was identified. "
        "Please discuss the result with your doctor."
    ),
    Diagnosis.CYST: (
        "The scan was classified as showing a kidney cyst, a fluid-filled sac that is "
        "often harmless. Please discuss the result with your doctor."
    ),
    Diagnosis.TUMOR: (
        "The scan was classified as showing a solid mass in the kidney. Not every mass "
        "is cancer, but please follow up with your doctor promptly."
    ),
    Diagnosis.STONE: (
        "The scan was classified as showing a kidney stone. Treatment depends on its "
        "size and location; please discuss the result with your doctor."
    ),
}


class Stage(str, Enum):
    VALIDATE = "validate"
    EXPLAIN = "explain"
    SUPPLEMENT = "supplement"
    CHECK_CONFIDENCE = "check_confidence"
    REFINE = "refine"
    DONE = "done"
    FAILED = "failed"


STEP_NAMES = {
    Stage.VALIDATE: "Classifying Scan",
    Stage.EXPLAIN: "Explaining Result",
    Stage.SUPPLEMENT: "Supplementary Analytics",
    Stage.CHECK_CONFIDENCE: "Checking Confidence",
    Stage.REFINE: "Refining Low-Confidence Result",
}

TERMINAL = (Stage.DONE, Stage.FAILED)


@dataclass(frozen=True)
class Transition:
    """Outcome of one state: where to go next and what to report."""
    next_stage: Stage
    summary: str = ""
    error: Optional[str] = None


@dataclass
class AnalysisState:
    """Working state for a single analyze() call."""
    image: ImageReference
    diagnosis: Optional[Diagnosis] = None
    confidence: Optional[float] = None
    explanation: Optional[str] = None
    highlighted_areas: Optional[str] = None
    analytics: Optional[str] = None
    refined: bool = False
    error: Optional[AnalysisError] = None
    steps: List[AnalysisStep] = field(default_factory=list)


class Orchestrator:
    """
    Orchestrates the scan analysis pipeline.

    Usage:
        orchestrator = Orchestrator(adapter)
        outcome = await orchestrator.analyze(ImageReference.from_bytes(data, "image/png"))
        if outcome.ok:
            result = outcome.value
    """

    def __init__(
        self,
        adapter: InferenceAdapter,
        builder: Optional[PromptBuilder] = None,
        policy: DecisionPolicy = DecisionPolicy.FIRST_MATCH,
        low_confidence_threshold: float = 0.5,
        analytics: Optional[AnalyticsProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_image_bytes: Optional[int] = None,
        allow_private_image_hosts: bool = False,
    ):
        if not 0.0 <= low_confidence_threshold <= 1.0:
            raise ValueError("low_confidence_threshold must be between 0 and 1")
        builder = builder or PromptBuilder()

        # Tools
        self.classifier = ScanClassifierTool(adapter, builder, policy)
        self.explainer = ExplanationTool(adapter, builder)
        self.refiner = FeedbackRefiner(adapter, builder, policy)
        self.analytics = analytics

        self.low_confidence_threshold = low_confidence_threshold
        self.http_client = http_client
        self.max_image_bytes = max_image_bytes
        self.allow_private_image_hosts = allow_private_image_hosts

        self._handlers: Dict[Stage, Callable[[AnalysisState], Awaitable[Transition]]] = {
            Stage.VALIDATE: self._step_validate,
            Stage.EXPLAIN: self._step_explain,
            Stage.SUPPLEMENT: self._step_supplement,
            Stage.CHECK_CONFIDENCE: self._step_check_confidence,
            Stage.REFINE: self._step_refine,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[Any] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "Orchestrator":
        adapter = InferenceAdapter.from_settings(settings, client)
        builder = PromptBuilder()
        analytics = None
        if settings.include_analytics:
            analytics = ModelAnalyticsTool(adapter, builder, settings.analytics_focus)
        return cls(
            adapter,
            builder=builder,
            policy=settings.decision_policy,
            low_confidence_threshold=settings.low_confidence_threshold,
            analytics=analytics,
            http_client=http_client,
            max_image_bytes=settings.max_upload_bytes,
            allow_private_image_hosts=settings.allow_private_image_hosts,
        )

    async def check_readiness(self) -> bool:
        return await self.classifier.adapter.check_readiness()

    async def analyze_image(
        self, image_bytes: bytes, mime_type: str, on_step: Optional[StepCallback] = None
    ) -> Result[AnalysisResult, AnalysisError]:
        """Inbound entry point for raw uploads."""
        try:
            image = ImageReference.from_bytes(image_bytes, mime_type)
        except ValueError as e:
            return Fail(AnalysisError(kind=AnalysisErrorKind.INVALID_INPUT, message=str(e), stage="resolve"))
        return await self.analyze(image, on_step)

    async def analyze(
        self, image: ImageReference, on_step: Optional[StepCallback] = None
    ) -> Result[AnalysisResult, AnalysisError]:
        """
        Run the full pipeline for one image.

        Returns Ok(AnalysisResult) or Fail(AnalysisError). Never returns a
        partial result. Raises InternalInvariantViolation if a validated value
        turns out to be out of range.
        """
        try:
            image = await resolve_image(
                image,
                self.http_client,
                max_bytes=self.max_image_bytes,
                allow_private_hosts=self.allow_private_image_hosts,
            )
        except ImageResolutionError as e:
            logger.warning(f"Image could not be resolved: {e}")
            return Fail(AnalysisError(kind=AnalysisErrorKind.INVALID_INPUT, message=str(e), stage="resolve"))

        state = AnalysisState(image=image)
        stage = Stage.VALIDATE
        while stage not in TERMINAL:
            stage = await self._run_stage(stage, state, on_step)

        if stage == Stage.FAILED:
            return Fail(state.error)
        return Ok(self._build_result(state))

    async def _run_stage(
        self, stage: Stage, state: AnalysisState, on_step: Optional[StepCallback]
    ) -> Stage:
        """Execute a single state, tracking status and timing."""
        step = AnalysisStep(step_id=stage.value, step_name=STEP_NAMES[stage], status=AnalysisStepStatus.RUNNING)
        state.steps.append(step)
        self._notify(on_step, step)
        start = time.monotonic()

        transition = await self._handlers[stage](state)

        step.duration_ms = int((time.monotonic() - start) * 1000)
        step.output_summary = transition.summary or None
        step.error = transition.error
        step.status = AnalysisStepStatus.FAILED if transition.error else AnalysisStepStatus.COMPLETED
        self._notify(on_step, step)
        logger.info(
            f"[{stage.value}] -> {transition.next_stage.value}"
            + (f" ({transition.summary})" if transition.summary else "")
        )
        return transition.next_stage

    @staticmethod
    def _notify(on_step: Optional[StepCallback], step: AnalysisStep) -> None:
        if on_step is not None:
            on_step(step.model_copy())

    # ──────────────────────────────────────────────
    # State implementations
    # ──────────────────────────────────────────────

    async def _step_validate(self, state: AnalysisState) -> Transition:
        """Diagnosis-only call. Without a diagnosis there is nothing to show."""
        verdict = await self.classifier.run(state.image)
        if isinstance(verdict, Fail):
            state.error = self._analysis_error(verdict.error, Stage.VALIDATE)
            return Transition(Stage.FAILED, error=verdict.error.message)

        parsed = verdict.value
        state.diagnosis = parsed.diagnosis
        state.confidence = parsed.confidence

        if parsed.diagnosis == Diagnosis.NOT_APPLICABLE:
            state.explanation = NOT_APPLICABLE_EXPLANATION
            return Transition(Stage.DONE, summary="not a kidney CT scan")
        return Transition(Stage.EXPLAIN, summary=f"{parsed.diagnosis.value} ({parsed.confidence:.2f})")

    async def _step_explain(self, state: AnalysisState) -> Transition:
        """Explanation failure is a quality loss, not a correctness loss."""
        verdict = await self.explainer.run(state.image, state.diagnosis, state.confidence)
        if isinstance(verdict, Fail):
            logger.warning(f"Explanation failed ({verdict.error.kind.value}), using fallback text")
            state.explanation = FALLBACK_EXPLANATIONS[state.diagnosis]
            return Transition(Stage.DONE, summary="fallback explanation", error=verdict.error.message)

        state.explanation = verdict.value.explanation
        state.highlighted_areas = verdict.value.highlighted_areas or None
        next_stage = Stage.SUPPLEMENT if self.analytics is not None else Stage.CHECK_CONFIDENCE
        return Transition(next_stage, summary="explanation generated")

    async def _step_supplement(self, state: AnalysisState) -> Transition:
        """Best effort: the analytics collaborator can never block the diagnosis."""
        try:
            verdict = await self.analytics.run(state.image, state.diagnosis)
        except Exception as e:
            logger.warning(f"Analytics provider raised {type(e).__name__}: {e}")
            return Transition(Stage.CHECK_CONFIDENCE, error=f"{type(e).__name__}: {e}")

        if isinstance(verdict, Fail):
            logger.warning(f"Analytics failed ({verdict.error.kind.value}), continuing without")
            return Transition(Stage.CHECK_CONFIDENCE, error=verdict.error.message)

        state.analytics = verdict.value.analytics
        return Transition(Stage.CHECK_CONFIDENCE, summary="analytics added")

    async def _step_check_confidence(self, state: AnalysisState) -> Transition:
        if state.confidence < self.low_confidence_threshold:
            return Transition(
                Stage.REFINE,
                summary=f"confidence {state.confidence:.2f} < {self.low_confidence_threshold:.2f}",
            )
        return Transition(Stage.DONE, summary=f"confidence {state.confidence:.2f} accepted")

    async def _step_refine(self, state: AnalysisState) -> Transition:
        """Success replaces the result wholesale; failure keeps it unchanged."""
        verdict = await self.refiner.refine(
            state.image, state.diagnosis, state.explanation, state.confidence
        )
        if isinstance(verdict, Fail):
            logger.warning(f"Refinement failed ({verdict.error.kind.value}), keeping prior result")
            return Transition(Stage.DONE, summary="kept prior result", error=verdict.error.message)

        refined = verdict.value
        state.diagnosis = refined.diagnosis
        state.confidence = refined.confidence
        state.explanation = refined.explanation or NOT_APPLICABLE_EXPLANATION
        state.analytics = refined.analytics or None
        state.highlighted_areas = None
        state.refined = True
        return Transition(Stage.DONE, summary=f"refined to {refined.diagnosis.value}")

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    @staticmethod
    def _analysis_error(error: InferenceError, stage: Stage) -> AnalysisError:
        return AnalysisError(
            kind=AnalysisErrorKind.from_inference(error.kind),
            message=error.message,
            stage=stage.value,
        )

    @staticmethod
    def _build_result(state: AnalysisState) -> AnalysisResult:
        try:
            return AnalysisResult(
                diagnosis=state.diagnosis,
                confidence=state.confidence,
                explanation=state.explanation,
                highlighted_areas=state.highlighted_areas,
                analytics=state.analytics,
                refined=state.refined,
            )
        except ValidationError as e:
            raise InternalInvariantViolation(f"analysis result breaks an invariant: {e}") from e
