#!/usr/bin/env python3
"""
test_holodeck.py - Simulated end-to-end scenarios

Run with: pytest tests/test_holodeck.py -v
"""

import pytest

from respira.holodeck import Holodeck, ScenarioReport, SyntheticSensor, main
from respira.persistence import JsonlEventStore


class TestSyntheticSensor:

    def test_session_time_and_constants(self):
        sensor = SyntheticSensor(heart_rate=lambda t: 60.0 + t, respiration_rate=lambda t: 6.0)
        first = sensor(1000.0, 0.1)
        later = sensor(3000.0, 0.1)
        assert first.heart_rate == 60.0
        assert later.heart_rate == 62.0
        assert later.respiration_rate == 6.0
        assert later.stress_index is None

    def test_no_confidence_without_heart_rate(self):
        sensor = SyntheticSensor(hr_confidence=0.9)
        assert sensor(0.0, 0.1).hr_confidence is None

    def test_noise_is_seeded(self):
        a = SyntheticSensor(heart_rate=lambda t: 60.0, noise=2.0, seed=7)
        b = SyntheticSensor(heart_rate=lambda t: 60.0, noise=2.0, seed=7)
        assert a(0.0, 0.1).heart_rate == b(0.0, 0.1).heart_rate


class TestScenarioReport:

    def test_passed(self):
        report = ScenarioReport("x")
        report.log(0.0, "start")
        assert not report.passed
        report.check(0.1, True, "ok")
        assert report.passed
        report.check(0.2, False, "bad")
        assert not report.passed


class TestScenarios:

    @pytest.mark.parametrize("name", ["nominal", "panic", "ai_tune", "sensor_failure"])
    def test_scenario_passes(self, name):
        report = Holodeck().run(name)
        failures = [msg for _, level, msg in report.entries if level == "fail"]
        assert report.passed, failures

    def test_unknown_scenario(self):
        assert not Holodeck().run("meteor").passed

    def test_jsonl_store(self, tmp_path):
        holodeck = Holodeck(store_factory=lambda: JsonlEventStore(tmp_path))
        assert holodeck.run("panic").passed
        assert (tmp_path / "events.jsonl").exists()
        assert (tmp_path / "meta.json").exists()

    def test_cli(self, capsys):
        assert main(["--scenario", "panic", "--no-progress"]) == 0
        assert "PASS  panic" in capsys.readouterr().out
