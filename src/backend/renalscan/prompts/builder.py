"""
Prompt Builder: renders the instruction payload for every model call.

All builders are pure: the same image and arguments always produce the same
PromptPayload, which is what makes the pipeline testable with a fake model.
The image itself travels as an attachment on the payload; the text refers to
it as "the attached image".
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from renalscan.models.schemas import CallType, DecisionPolicy, Diagnosis, ImageReference
from renalscan.models.shapes import (
    ANALYTICS_SHAPE,
    DIAGNOSIS_SHAPE,
    EXPLANATION_SHAPE,
    REFINEMENT_SHAPE,
    ResponseShape,
)

LABELS = ", ".join(f"'{d.value}'" for d in Diagnosis)


@dataclass(frozen=True)
class PromptPayload:
    """Everything one model call needs: instructions, image and expected shape."""
    call_type: CallType
    system_prompt: str
    instructions: str
    image: ImageReference
    shape: ResponseShape


# ──────────────────────────────────────────────
# Shared preamble
# ──────────────────────────────────────────────

SYSTEM_PROMPT = """You are a world-class radiologist AI specialised in kidney CT scans.
You analyse one image at a time and answer only in the JSON format you are asked for.

IMPORTANT GUIDELINES:
- Base every statement on what is visible in the attached image
- Never invent findings that are not visible
- Use exactly the labels you are given, in lowercase
- Report confidence as a number between 0 and 1
- This is a decision SUPPORT tool, not a medical diagnosis"""

MODALITY_CHECK = """IMAGE VALIDATION: First, verify the attached image is a CT scan of a human kidney.
If it is not (a photograph, a document, another body part, another imaging modality),
the diagnosis MUST be 'not_applicable'. STOP HERE."""

# Evidence criteria shared by both decision policies
EVIDENCE = {
    Diagnosis.STONE: (
        "a hyperdense (very bright white), distinct, well-circumscribed OBJECT. "
        "A stone is an object, not a tissue mass, and does not significantly "
        "disrupt the kidney's overall shape."
    ),
    Diagnosis.TUMOR: (
        "a distinct, focal, solid mass with a different tissue density (enhancement) "
        "than the surrounding kidney. A tumor is a space-occupying lesion that clearly "
        "disrupts and deforms the smooth, bean-like outline of the kidney. Normal "
        "variants such as a dromedary hump or fetal lobulations are NOT tumors."
    ),
    Diagnosis.CYST: (
        "a well-defined, round, homogeneous, low-density (dark, fluid-filled) area "
        "with a very thin wall and NO solid tissue."
    ),
    Diagnosis.NORMAL: (
        "a smooth, regular, bean-shaped contour with uniform tissue density throughout "
        "the cortex. Gentle bulges and slight lobulations are normal."
    ),
}


def _rule(letter: str, label: Diagnosis, condition: str) -> str:
    return (
        f"    - Rule {letter}: {label.value.upper()}\n"
        f"        Evidence: {EVIDENCE[label]}\n"
        f"        Decision: {condition}"
    )


# Check stone, then tumor, then cyst; the first rule whose evidence is met decides.
FIRST_MATCH_RULES = "\n".join([
    "Evaluate the rules below in this exact order. The FIRST rule whose evidence is present",
    "decides the diagnosis; do not evaluate later rules once one matches.",
    _rule("A", Diagnosis.STONE, "If a stone is present, the diagnosis MUST be 'stone'. STOP HERE."),
    _rule("B", Diagnosis.TUMOR, "Only if no stone was found: if a tumor is present, the diagnosis MUST be 'tumor'. STOP HERE."),
    _rule("C", Diagnosis.CYST, "Only if no stone or tumor was found: if a cyst is present, the diagnosis MUST be 'cyst'. STOP HERE."),
    _rule("D", Diagnosis.NORMAL, "If none of the rules above matched, the diagnosis MUST be 'normal'."),
])

# Look at everything first; the most severe finding overrides the others.
HOLISTIC_RULES = "\n".join([
    "Review the whole kidney and note every finding before deciding. When more than one",
    "finding has supporting evidence, the more severe finding overrides in this order:",
    "tumor over stone, stone over cyst, cyst over normal. Your primary goal is to avoid",
    "misclassifying a normal kidney as a tumor.",
    _rule("A", Diagnosis.TUMOR, "If you are highly confident a solid mass deforms the kidney contour, the diagnosis MUST be 'tumor', regardless of any other finding."),
    _rule("B", Diagnosis.STONE, "If there is no tumor and a stone is present, the diagnosis MUST be 'stone'."),
    _rule("C", Diagnosis.CYST, "If there is no tumor or stone and a cyst is present, the diagnosis MUST be 'cyst'."),
    _rule("D", Diagnosis.NORMAL, "If the criteria for tumor, stone and cyst are NOT met, the diagnosis MUST be 'normal'."),
])

DECISION_RULES: Dict[DecisionPolicy, str] = {
    DecisionPolicy.FIRST_MATCH: FIRST_MATCH_RULES,
    DecisionPolicy.HOLISTIC: HOLISTIC_RULES,
}

# ──────────────────────────────────────────────
# Call-specific templates
# ──────────────────────────────────────────────

DIAGNOSIS_PROMPT = """Analyze the attached kidney CT scan and determine the single most accurate diagnosis.

Follow these rules STRICTLY:

1. {modality_check}

2. DIAGNOSTIC PROCEDURE ({policy}):
{decision_rules}

3. CONFIDENCE: Report how certain you are of the final diagnosis as a number from 0 to 1.

OUTPUT:
- "diagnosis": exactly one of {labels}
- "confidence": a number between 0 and 1 (inclusive)

{format_instruction}"""

EXPLANATION_PROMPT = """The attached kidney CT scan has already been analysed.

Diagnosis: {diagnosis}
Confidence: {confidence}

Do NOT change or question the diagnosis. Write a clear, calm, human-readable explanation
of this result for the patient, avoiding medical jargon. {guidance}
If possible, describe where on the image the areas of concern are in "highlighted_areas".

OUTPUT:
- "explanation": the patient-facing explanation (required, not empty)
- "highlighted_areas": where the areas of concern are, or omit it

{format_instruction}"""

REFINEMENT_PROMPT = """You are refining a kidney CT scan diagnosis that was made with low confidence.

Initial Diagnosis: {diagnosis}
Initial Confidence: {confidence}
Initial Explanation: {explanation}

Instructions:
1. Review the initial diagnosis and explanation.
2. Re-evaluate the attached CT scan image from scratch.
3. If the evidence points to a different diagnosis, CHANGE it. You are allowed to disagree.
4. Use the same criteria as before:
{decision_rules}
5. Provide a refined diagnosis, confidence, analytics and a patient-facing explanation.

OUTPUT:
- "diagnosis": exactly one of {labels}
- "confidence": a number between 0 and 1 (inclusive)
- "explanation": the refined patient-facing explanation
- "analytics": a concise description of the key observations

{format_instruction}"""

ANALYTICS_PROMPT = """Analyze the attached kidney CT scan, which has been classified as '{diagnosis}'.

Based on the image and the following request, generate the analytics:
{focus}

OUTPUT:
- "analytics": your observations
- "confidence": your confidence in the analytics, a number between 0 and 1

{format_instruction}"""

# What the explanation should emphasise for each label
LABEL_GUIDANCE = {
    Diagnosis.NORMAL: "Reassure the patient that no stone, cyst or mass was seen, and mention routine follow-up.",
    Diagnosis.CYST: "Explain what a kidney cyst is, that simple cysts are usually harmless, and that a doctor may want to monitor it.",
    Diagnosis.TUMOR: "Explain that a solid mass was seen, that not every mass is cancer, and that prompt follow-up with a specialist is important.",
    Diagnosis.STONE: "Explain what a kidney stone is, common symptoms, and that treatment depends on its size and location.",
}


def _confidence_text(confidence: Optional[float]) -> str:
    return "not reported" if confidence is None else f"{confidence:.2f}"


def _require_inline(image: ImageReference) -> ImageReference:
    if not image.is_inline:
        raise ValueError("image reference must be resolved to inline bytes before building a prompt")
    return image


class PromptBuilder:
    """
    Builds prompts for each call type.

    Usage:
        builder = PromptBuilder()
        payload = builder.build(image, DecisionPolicy.FIRST_MATCH)
    """

    def __init__(self, system_prompt: str = SYSTEM_PROMPT):
        self.system_prompt = system_prompt

    def build(self, image: ImageReference, policy: DecisionPolicy = DecisionPolicy.FIRST_MATCH) -> PromptPayload:
        """Diagnosis-only prompt: modality check, ordered decision rules, output format."""
        instructions = DIAGNOSIS_PROMPT.format(
            modality_check=MODALITY_CHECK,
            policy=policy.value,
            decision_rules=DECISION_RULES[policy],
            labels=LABELS,
            format_instruction=DIAGNOSIS_SHAPE.format_instruction(),
        )
        return self._payload(CallType.DIAGNOSIS, instructions, image, DIAGNOSIS_SHAPE)

    def build_explanation(
        self, image: ImageReference, diagnosis: Diagnosis, confidence: Optional[float]
    ) -> PromptPayload:
        if diagnosis == Diagnosis.NOT_APPLICABLE:
            raise ValueError("no explanation prompt for a not_applicable image")
        instructions = EXPLANATION_PROMPT.format(
            diagnosis=diagnosis.value,
            confidence=_confidence_text(confidence),
            guidance=LABEL_GUIDANCE[diagnosis],
            format_instruction=EXPLANATION_SHAPE.format_instruction(),
        )
        return self._payload(CallType.EXPLANATION, instructions, image, EXPLANATION_SHAPE)

    def build_refinement(
        self,
        image: ImageReference,
        prior_diagnosis: Diagnosis,
        prior_explanation: str,
        prior_confidence: Optional[float] = None,
        policy: DecisionPolicy = DecisionPolicy.FIRST_MATCH,
    ) -> PromptPayload:
        instructions = REFINEMENT_PROMPT.format(
            diagnosis=prior_diagnosis.value,
            confidence=_confidence_text(prior_confidence),
            explanation=prior_explanation.strip() or "(none)",
            decision_rules=DECISION_RULES[policy],
            labels=LABELS,
            format_instruction=REFINEMENT_SHAPE.format_instruction(),
        )
        return self._payload(CallType.REFINEMENT, instructions, image, REFINEMENT_SHAPE)

    def build_analytics(self, image: ImageReference, diagnosis: Diagnosis, focus: str) -> PromptPayload:
        instructions = ANALYTICS_PROMPT.format(
            diagnosis=diagnosis.value,
            focus=focus.strip(),
            format_instruction=ANALYTICS_SHAPE.format_instruction(),
        )
        return self._payload(CallType.ANALYTICS, instructions, image, ANALYTICS_SHAPE)

    def _payload(
        self, call_type: CallType, instructions: str, image: ImageReference, shape: ResponseShape
    ) -> PromptPayload:
        return PromptPayload(
            call_type=call_type,
            system_prompt=self.system_prompt,
            instructions=instructions,
            image=_require_inline(image),
            shape=shape,
        )
