import pytest

from renalscan.models.result import Fail, Ok
from renalscan.models.schemas import Diagnosis
from renalscan.models.shapes import DIAGNOSIS_SHAPE, EXPLANATION_SHAPE, REFINEMENT_SHAPE
from renalscan.services.schema_validator import extract_json, validate


def _fields(verdict):
    assert isinstance(verdict, Fail)
    return [v.field for v in verdict.error.violations]


def test_accepts_well_formed_refinement():
    verdict = validate(
        {"diagnosis": "stone", "confidence": 0.8, "explanation": "A small bright object.", "analytics": "5mm"},
        REFINEMENT_SHAPE,
    )
    assert isinstance(verdict, Ok)
    assert verdict.value.diagnosis == Diagnosis.STONE
    assert verdict.value.confidence == 0.8


def test_label_outside_closed_set_is_rejected():
    verdict = validate({"diagnosis": "mass", "confidence": 0.8, "explanation": "x"}, REFINEMENT_SHAPE)
    assert _fields(verdict) == ["diagnosis"]


def test_non_numeric_confidence_is_rejected():
    verdict = validate({"diagnosis": "stone", "confidence": "very sure", "explanation": "x"}, REFINEMENT_SHAPE)
    assert _fields(verdict) == ["confidence"]
    assert "very sure" in verdict.error.violations[0].message


@pytest.mark.parametrize("value", [1.5, -0.1, "1.01"])
def test_out_of_range_confidence_is_rejected_not_clamped(value):
    verdict = validate({"diagnosis": "stone", "confidence": value, "explanation": "x"}, REFINEMENT_SHAPE)
    assert _fields(verdict) == ["confidence"]


@pytest.mark.parametrize("value", ["nan", "inf", True])
def test_non_finite_and_boolean_confidence_is_rejected(value):
    verdict = validate({"diagnosis": "cyst", "confidence": value}, DIAGNOSIS_SHAPE)
    assert _fields(verdict) == ["confidence"]


def test_numeric_string_confidence_is_coerced():
    verdict = validate({"diagnosis": "cyst", "confidence": " 0.65 "}, DIAGNOSIS_SHAPE)
    assert isinstance(verdict, Ok)
    assert verdict.value.confidence == 0.65


@pytest.mark.parametrize("value", [0, 1, 0.0, 1.0])
def test_confidence_bounds_are_inclusive(value):
    verdict = validate({"diagnosis": "normal", "confidence": value}, DIAGNOSIS_SHAPE)
    assert isinstance(verdict, Ok)
    assert 0.0 <= verdict.value.confidence <= 1.0


def test_every_violation_is_reported():
    verdict = validate({"diagnosis": "stone", "confidence": 1.5, "explanation": "   "}, REFINEMENT_SHAPE)
    assert sorted(_fields(verdict)) == ["confidence", "explanation"]


def test_missing_required_fields_are_reported():
    verdict = validate({}, REFINEMENT_SHAPE)
    assert "diagnosis" in _fields(verdict)


def test_confidence_required_for_scan_diagnosis():
    verdict = validate({"diagnosis": "tumor"}, DIAGNOSIS_SHAPE)
    assert _fields(verdict) == ["confidence"]


def test_not_applicable_needs_no_confidence_or_explanation():
    verdict = validate({"diagnosis": "not_applicable"}, REFINEMENT_SHAPE)
    assert isinstance(verdict, Ok)
    assert verdict.value.confidence is None


@pytest.mark.parametrize("label", ["not_a_ct_scan", "Not a CT scan", "NOT-APPLICABLE"])
def test_not_a_scan_spellings_normalise(label):
    verdict = validate({"diagnosis": label, "confidence": 0.9}, DIAGNOSIS_SHAPE)
    assert isinstance(verdict, Ok)
    assert verdict.value.diagnosis == Diagnosis.NOT_APPLICABLE


def test_label_case_and_whitespace_normalise():
    verdict = validate({"diagnosis": "  Stone ", "confidence": 0.9}, DIAGNOSIS_SHAPE)
    assert isinstance(verdict, Ok)
    assert verdict.value.diagnosis == Diagnosis.STONE


def test_empty_explanation_is_rejected():
    verdict = validate({"explanation": ""}, EXPLANATION_SHAPE)
    assert _fields(verdict) == ["explanation"]


def test_parses_fenced_json_with_chatter():
    raw = 'Here is my answer:\n```json\n{"diagnosis": "cyst", "confidence": 0.7}\n```\nThanks.'
    verdict = validate(raw, DIAGNOSIS_SHAPE)
    assert isinstance(verdict, Ok)
    assert verdict.value.diagnosis == Diagnosis.CYST


def test_parses_bare_json_embedded_in_text():
    raw = 'Result: {"explanation": "Looks {mostly} fine."} end'
    verdict = validate(raw, EXPLANATION_SHAPE)
    assert isinstance(verdict, Ok)
    assert verdict.value.explanation == "Looks {mostly} fine."


TRUNCATED = [
    '{"diagnosis": "stone", "confidence": 0.4',
    '{"diagnosis": "tumor", "confidence": 1',
    '{"diagnosis": "stone", "confidence": 0.9, "explanation": "A bright obj',
    '```json\n{"diagnosis": "cyst", "confidence": 0.7',
]


@pytest.mark.parametrize("raw", TRUNCATED)
def test_truncated_output_is_rejected(raw):
    verdict = validate(raw, REFINEMENT_SHAPE)
    assert _fields(verdict) == ["(root)"]
    assert "not valid JSON" in verdict.error.violations[0].message


@pytest.mark.parametrize("raw", [None, "", "   ", "I cannot analyse this image."])
def test_unparseable_output_is_a_root_violation(raw):
    verdict = validate(raw, DIAGNOSIS_SHAPE)
    assert _fields(verdict) == ["(root)"]


def test_json_array_is_rejected():
    verdict = validate('[{"diagnosis": "stone", "confidence": 0.9}]', DIAGNOSIS_SHAPE)
    assert _fields(verdict) == ["(root)"]
    assert "list" in verdict.error.violations[0].message


def test_violation_summary_names_shape_and_fields():
    verdict = validate({"diagnosis": "mass", "confidence": 2}, DIAGNOSIS_SHAPE)
    summary = verdict.error.summary()
    assert summary.startswith(DIAGNOSIS_SHAPE.qualified_name)
    assert "diagnosis" in summary and "confidence" in summary


def test_extract_json_prefers_code_block():
    assert extract_json('x ```json\n{"a": 1}\n``` y') == '{"a": 1}'


PROSE_BEFORE_JSON = 'Looking at the axial slice [left kidney], my answer is {"diagnosis": "cyst", "confidence": 0.7}'


def test_brackets_in_prose_before_the_object():
    verdict = validate(PROSE_BEFORE_JSON, DIAGNOSIS_SHAPE)
    assert isinstance(verdict, Ok)
    assert verdict.value.diagnosis == Diagnosis.CYST
    assert verdict.value.confidence == 0.7


def test_object_preferred_over_earlier_array():
    raw = 'Candidates were [1, 2]. Final: {"diagnosis": "stone", "confidence": 0.8}'
    assert extract_json(raw) == '{"diagnosis": "stone", "confidence": 0.8}'


def test_objects_inside_a_parsed_array_are_not_unwrapped():
    raw = '[{"diagnosis": "stone", "confidence": 0.9}]'
    assert extract_json(raw) == raw
