import pytest

from renalscan.models.schemas import CallType, DecisionPolicy, Diagnosis, ImageReference
from renalscan.models.shapes import DIAGNOSIS_SHAPE, EXPLANATION_SHAPE, REFINEMENT_SHAPE
from renalscan.prompts.builder import SYSTEM_PROMPT, PromptBuilder


@pytest.fixture
def builder():
    return PromptBuilder()


def test_build_is_deterministic(builder, image):
    assert builder.build(image) == builder.build(image)
    assert builder.build_refinement(image, Diagnosis.CYST, "x", 0.4) == builder.build_refinement(
        image, Diagnosis.CYST, "x", 0.4
    )


def test_diagnosis_payload_carries_image_and_shape(builder, image):
    payload = builder.build(image)
    assert payload.call_type == CallType.DIAGNOSIS
    assert payload.shape == DIAGNOSIS_SHAPE
    assert payload.image == image
    assert payload.system_prompt == SYSTEM_PROMPT


def test_diagnosis_prompt_lists_every_label_and_sentinel(builder, image):
    text = builder.build(image).instructions
    for label in Diagnosis:
        assert f"'{label.value}'" in text
    assert "not_applicable" in text
    assert "CT scan of a human kidney" in text


def test_diagnosis_prompt_embeds_the_schema(builder, image):
    text = builder.build(image).instructions
    assert "Respond ONLY with valid JSON" in text
    assert '"confidence"' in text


def _labels(text):
    """Labels of Rule A..D in the order they appear."""
    labels = []
    for letter in "ABCD":
        marker = f"Rule {letter}: "
        start = text.index(marker) + len(marker)
        labels.append(text[start:text.index("\n", start)])
    return labels


def test_first_match_checks_stone_then_tumor_then_cyst(builder, image):
    text = builder.build(image, DecisionPolicy.FIRST_MATCH).instructions
    assert _labels(text) == ["STONE", "TUMOR", "CYST", "NORMAL"]
    assert "FIRST rule" in text


def test_holistic_lets_tumor_override(builder, image):
    text = builder.build(image, DecisionPolicy.HOLISTIC).instructions
    assert _labels(text) == ["TUMOR", "STONE", "CYST", "NORMAL"]
    assert "tumor over stone" in text


def test_policies_produce_different_prompts(builder, image):
    assert builder.build(image, DecisionPolicy.FIRST_MATCH) != builder.build(image, DecisionPolicy.HOLISTIC)


def test_remote_image_must_be_resolved_first(builder):
    remote = ImageReference(uri="https://example.org/scan.png")
    with pytest.raises(ValueError):
        builder.build(remote)


def test_explanation_prompt_holds_diagnosis_and_confidence(builder, image):
    payload = builder.build_explanation(image, Diagnosis.STONE, 0.97)
    assert payload.call_type == CallType.EXPLANATION
    assert payload.shape == EXPLANATION_SHAPE
    assert "Diagnosis: stone" in payload.instructions
    assert "0.97" in payload.instructions
    assert "Do NOT change" in payload.instructions


def test_explanation_guidance_depends_on_label(builder, image):
    tumor = builder.build_explanation(image, Diagnosis.TUMOR, 0.9).instructions
    cyst = builder.build_explanation(image, Diagnosis.CYST, 0.9).instructions
    assert "not every mass is cancer" in tumor
    assert "cyst" in cyst and "not every mass" not in cyst


def test_no_explanation_prompt_for_non_scan(builder, image):
    with pytest.raises(ValueError):
        builder.build_explanation(image, Diagnosis.NOT_APPLICABLE, None)


def test_refinement_prompt_carries_prior_answer(builder, image):
    payload = builder.build_refinement(image, Diagnosis.CYST, "A small dark area was seen.", 0.42)
    text = payload.instructions
    assert payload.call_type == CallType.REFINEMENT
    assert payload.shape == REFINEMENT_SHAPE
    assert "Initial Diagnosis: cyst" in text
    assert "Initial Confidence: 0.42" in text
    assert "A small dark area was seen." in text
    assert "CHANGE it" in text


def test_refinement_without_confidence_or_explanation(builder, image):
    text = builder.build_refinement(image, Diagnosis.NORMAL, "  ").instructions
    assert "Initial Confidence: not reported" in text
    assert "Initial Explanation: (none)" in text


def test_refinement_uses_the_same_policy_rules(builder, image):
    text = builder.build_refinement(image, Diagnosis.STONE, "x", 0.3, DecisionPolicy.HOLISTIC).instructions
    assert _labels(text) == ["TUMOR", "STONE", "CYST", "NORMAL"]


def test_analytics_prompt_includes_focus(builder, image):
    payload = builder.build_analytics(image, Diagnosis.STONE, "  Estimate the stone size.  ")
    assert payload.call_type == CallType.ANALYTICS
    assert "classified as 'stone'" in payload.instructions
    assert "Estimate the stone size." in payload.instructions
