import json

import pytest

from fakes import DIAGNOSIS, EXPLANATION, FakeModelClient, make_orchestrator
from renalscan import cli
from renalscan.models.schemas import DecisionPolicy


@pytest.fixture
def scan_file(tmp_path, png_bytes):
    path = tmp_path / "scan.png"
    path.write_bytes(png_bytes)
    return path


@pytest.fixture
def fake_orchestrator(monkeypatch):
    """Route Orchestrator.from_settings to a fake-backed orchestrator; records the settings used."""
    used = {}

    def install(responses):
        model = FakeModelClient(responses)

        def from_settings(settings, client=None, http_client=None):
            used["settings"] = settings
            return make_orchestrator(
                model,
                policy=settings.decision_policy,
                low_confidence_threshold=settings.low_confidence_threshold,
            )

        monkeypatch.setattr(cli.Orchestrator, "from_settings", from_settings)
        return model, used

    return install


def test_analyze_prints_json(scan_file, fake_orchestrator, capsys):
    fake_orchestrator({
        DIAGNOSIS: {"diagnosis": "cyst", "confidence": 0.81},
        EXPLANATION: {"explanation": "A simple cyst."},
    })
    assert cli.main(["analyze", str(scan_file), "--json", "--quiet"]) == 0

    result = json.loads(capsys.readouterr().out)
    assert result["diagnosis"] == "cyst"
    assert result["confidence"] == 0.81
    assert result["explanation"] == "A simple cyst."


def test_analyze_prints_summary_and_steps(scan_file, fake_orchestrator, capsys):
    fake_orchestrator({
        DIAGNOSIS: {"diagnosis": "stone", "confidence": 0.9},
        EXPLANATION: {"explanation": "A small stone."},
    })
    assert cli.main(["analyze", str(scan_file)]) == 0

    captured = capsys.readouterr()
    assert "Diagnosis : stone" in captured.out
    assert "90%" in captured.out
    assert "validate" in captured.err


def test_policy_and_threshold_flags_reach_settings(scan_file, fake_orchestrator, capsys):
    _, used = fake_orchestrator({
        DIAGNOSIS: {"diagnosis": "tumor", "confidence": 0.9},
        EXPLANATION: {"explanation": "A solid mass."},
    })
    cli.main(["analyze", str(scan_file), "--policy", "holistic", "--threshold", "0.3", "--quiet"])

    assert used["settings"].decision_policy == DecisionPolicy.HOLISTIC
    assert used["settings"].low_confidence_threshold == 0.3


def test_failed_analysis_exits_1(scan_file, fake_orchestrator, capsys):
    fake_orchestrator({DIAGNOSIS: RuntimeError("model exploded")})
    assert cli.main(["analyze", str(scan_file), "--quiet"]) == 1
    assert "Analysis failed" in capsys.readouterr().err


def test_missing_file_exits_2(tmp_path, fake_orchestrator, capsys):
    model, _ = fake_orchestrator({})
    assert cli.main(["analyze", str(tmp_path / "missing.png")]) == 2
    assert model.calls == []


def test_unknown_extension_exits_2(tmp_path, fake_orchestrator):
    path = tmp_path / "scan.bin"
    path.write_bytes(b"abc")
    fake_orchestrator({})
    assert cli.main(["analyze", str(path)]) == 2


def test_threshold_out_of_range_is_a_usage_error(scan_file):
    with pytest.raises(SystemExit):
        cli.main(["analyze", str(scan_file), "--threshold", "2"])
