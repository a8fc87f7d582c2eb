import pytest
from pydantic import ValidationError

from renalscan.config import Settings
from renalscan.models.schemas import DecisionPolicy


def test_defaults(monkeypatch):
    monkeypatch.delenv("RENALSCAN_DECISION_POLICY", raising=False)
    settings = Settings(_env_file=None)
    assert settings.decision_policy == DecisionPolicy.FIRST_MATCH
    assert settings.low_confidence_threshold == 0.5
    assert settings.include_analytics is False
    assert settings.allow_remote_images is True
    assert settings.allow_private_image_hosts is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("RENALSCAN_MODEL_ID", "my-vision-model")
    monkeypatch.setenv("RENALSCAN_DECISION_POLICY", "holistic")
    monkeypatch.setenv("RENALSCAN_LOW_CONFIDENCE_THRESHOLD", "0.65")
    settings = Settings(_env_file=None)

    assert settings.model_id == "my-vision-model"
    assert settings.decision_policy == DecisionPolicy.HOLISTIC
    assert settings.low_confidence_threshold == 0.65


@pytest.mark.parametrize("name, value", [
    ("RENALSCAN_LOW_CONFIDENCE_THRESHOLD", "1.5"),
    ("RENALSCAN_REQUEST_TIMEOUT_SECONDS", "0"),
    ("RENALSCAN_DECISION_POLICY", "majority_vote"),
])
def test_invalid_values_fail_at_startup(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
