"""
Unit tests for the recommendation engine and CLI command generation.
"""

import re

import pytest

from bf_config import AXES, DEFAULT_PIDS, SAFE_PID_LIMITS, get_settings, metadata_number
from bf_recommender import (assemble_recommendation, axis_confidence, current_filters,
                            current_pids, d_correction, default_recommendation,
                            expected_changes, generate_cli_commands, parse_pid_string,
                            recommend_filters)


def within_limits(pid):
    return all(SAFE_PID_LIMITS[a][t][0] <= pid[a][t] <= SAFE_PID_LIMITS[a][t][1]
               for a in AXES for t in ("p", "i", "d", "f"))


@pytest.fixture
def settings():
    return get_settings()


class TestCurrentConfiguration:

    def test_parse_pid_string(self):
        assert parse_pid_string("45,80,30") == {"p": 45, "i": 80, "d": 30}
        assert parse_pid_string("45, 80, 30, 120") == {"p": 45, "i": 80, "d": 30, "f": 120}
        assert parse_pid_string("45.7,80,30") == {"p": 45, "i": 80, "d": 30}

    @pytest.mark.parametrize("text", [None, "", "45,80", "a,b,c", "nan,80,30", "inf,80,30"])
    def test_parse_pid_string_rejects(self, text):
        with pytest.raises(ValueError):
            parse_pid_string(text)

    def test_current_pids_merge_over_defaults(self):
        pids = current_pids({"rollPID": "42,85,35", "pitchPID": "garbage"})
        assert pids["roll"] == {"p": 42, "i": 85, "d": 35, "f": DEFAULT_PIDS["roll"]["f"]}
        assert pids["pitch"] == DEFAULT_PIDS["pitch"]
        assert pids["yaw"] == DEFAULT_PIDS["yaw"]

    def test_current_pids_does_not_mutate_defaults(self):
        current_pids({"rollPID": "99,99,99,99"})
        assert DEFAULT_PIDS["roll"]["p"] == 40

    def test_current_filters(self):
        filters = current_filters({"gyro_lowpass_hz": "150", "dyn_notch_q": "bad"})
        assert filters["gyro_lowpass_hz"] == 150
        assert filters["dyn_notch_q"] == 0
        assert filters["dterm_lowpass_hz"] == 0

    @pytest.mark.parametrize("value", ["nan", "inf", "-inf", "1e999"])
    def test_non_finite_header_falls_back(self, value):
        assert metadata_number({"x": value}, "x", 5.0) == 5.0
        filters = current_filters({"gyro_lowpass_hz": value, "dterm_lowpass_hz": "110"})
        assert filters["gyro_lowpass_hz"] == 0
        assert filters["dterm_lowpass_hz"] == 110

    def test_metadata_number(self):
        assert metadata_number({"looptime": " 125 "}, "looptime") == 125.0
        assert metadata_number({"looptime": ""}, "looptime", 7.0) == 7.0
        assert metadata_number(None, "looptime", 7.0) == 7.0


class TestAdjustments:

    def test_high_rms_error_raises_p(self, settings):
        """rms 25 on roll P=40 → 44."""
        analysis = {"error_metrics": {"roll": {"rms_error": 25.0, "mean_error": 2.0}}}
        rec = assemble_recommendation(analysis, {"rollPID": "40,50,25"}, settings)
        assert rec["recommended_pid"]["roll"]["p"] == 44
        assert rec["explanations"]["roll"]["p"]

    def test_low_rms_error_lowers_p_high_mean_raises_i(self, settings):
        analysis = {"error_metrics": {"pitch": {"rms_error": 3.0, "mean_error": 12.0}}}
        rec = assemble_recommendation(analysis, {"pitchPID": "60,100,30"}, settings)
        assert rec["recommended_pid"]["pitch"]["p"] == 57
        assert rec["recommended_pid"]["pitch"]["i"] == 115

    def test_strong_roll_pitch_coupling_balances_d(self, settings):
        analysis = {"cross_axis": {"pairs": {"roll_pitch": {"coupling_strength": 0.75,
                                                            "strong": True}},
                                   "primary_source": None, "dominant": {}}}
        metadata = {"rollPID": "40,50,30", "pitchPID": "42,50,40"}
        rec = assemble_recommendation(analysis, metadata, settings)
        assert rec["recommended_pid"]["roll"]["d"] == 35
        assert rec["recommended_pid"]["pitch"]["d"] == 35

    def test_weak_coupling_leaves_d(self, settings):
        analysis = {"cross_axis": {"pairs": {"roll_pitch": {"coupling_strength": 0.3,
                                                            "strong": False}},
                                   "primary_source": None, "dominant": {}}}
        rec = assemble_recommendation(analysis, {"rollPID": "40,50,30",
                                                 "pitchPID": "42,50,40"}, settings)
        assert rec["recommended_pid"]["roll"]["d"] == 30
        assert rec["recommended_pid"]["pitch"]["d"] == 40

    def test_primary_source_softened(self, settings):
        analysis = {"cross_axis": {"pairs": {}, "primary_source": "pitch", "dominant": {}}}
        rec = assemble_recommendation(analysis, {"pitchPID": "60,50,40"}, settings)
        assert rec["recommended_pid"]["pitch"]["p"] == 57
        assert rec["recommended_pid"]["pitch"]["d"] == 39

    def test_oscillation_reduces_p_and_d(self, settings):
        analysis = {"harmonics": {"roll": {"thd": 50.0, "oscillation_detected": True}}}
        rec = assemble_recommendation(analysis, {"rollPID": "50,50,40"}, settings)
        # ×0.92 then P ×0.95 for THD > 40
        assert rec["recommended_pid"]["roll"]["p"] == 44
        assert rec["recommended_pid"]["roll"]["d"] == 37

    def test_unsafe_gains_are_clamped(self, settings):
        metadata = {f"{a}PID": "500,500,500,500" for a in AXES}
        analysis = {"error_metrics": {a: {"rms_error": 30.0, "mean_error": 20.0} for a in AXES}}
        rec = assemble_recommendation(analysis, metadata, settings)
        assert within_limits(rec["recommended_pid"])
        assert rec["recommended_pid"]["roll"]["p"] == 120
        assert any("Clamped" in e for e in rec["explanations"]["roll"]["p"])

    def test_cinematic_mode(self):
        settings = get_settings({"mode": "cinematic"})
        rec = assemble_recommendation({}, {"rollPID": "50,100,30,100", "yawPID": "50,100,20,100"},
                                      settings)
        assert rec["recommended_pid"]["roll"] == {"p": 45, "i": 105, "d": 30, "f": 90}
        assert rec["recommended_pid"]["yaw"]["d"] == 18
        assert any("Cinematic" in g for g in rec["explanations"]["general"])


class TestDCorrection:

    def test_underdamped_raises_d(self):
        factor, reasons = d_correction({"damping_ratio": 0.3, "decay_rate": 20.0,
                                        "overshoot": 30.0, "oscillation_freq": 10.0})
        assert factor > 1.0
        assert len(reasons) == 3

    def test_factor_is_bounded(self):
        high, _ = d_correction({"damping_ratio": 0.05, "decay_rate": 5.0, "overshoot": 80.0})
        low, _ = d_correction({"damping_ratio": 0.99, "decay_rate": 95.0, "overshoot": 0.0,
                               "oscillation_freq": 60.0})
        assert high == pytest.approx(1.3)
        assert low == pytest.approx(0.8)

    def test_unmeasured_damping_adds_nothing(self):
        factor, reasons = d_correction({"damping_ratio": 0.0, "decay_rate": 0.0,
                                        "overshoot": 10.0, "oscillation_freq": 0.0})
        assert factor == 1.0
        assert reasons == []

    def test_invalid_step_leaves_d(self, settings):
        step = {"valid": False, "damping_ratio": 0.2, "decay_rate": 10.0, "overshoot": 50.0}
        rec = assemble_recommendation({"step_response": {"roll": step}},
                                      {"rollPID": "40,50,30"}, settings)
        assert rec["recommended_pid"]["roll"]["d"] == 30


class TestFilters:

    def test_filters_from_analysis(self):
        analysis = {
            "gyro_filters": {"recommended_frequency": 180},
            "dterm_filters": {"recommended_frequency": 126},
            "notch_filters": {
                "recommended": {"dyn_notch_min_hz": 140, "dyn_notch_max_hz": 310,
                                "dyn_notch_count": 3, "dyn_notch_q": 400},
                "classified_noises": [
                    {"frequency": 150.0, "recommended_q": 500, "noise_class": "narrowband_stable"},
                    {"frequency": 310.0, "recommended_q": 300, "noise_class": "mediumband_stable"},
                ],
            },
        }
        current = current_filters({"gyro_lowpass_hz": "150", "dterm_lowpass_hz": "110"})
        explanations = {"filters": {}}
        filters = recommend_filters(analysis, current, explanations)
        assert filters["gyro_lowpass_hz"] == 180
        assert filters["dterm_lowpass_hz"] == 126
        assert filters["dyn_notch_q"] == 400
        assert [q["q_factor"] for q in filters["dynamic_notch_q_factors"]] == [500, 300]
        assert "notch" in explanations["filters"]

    def test_silent_analysis_keeps_current(self):
        current = current_filters({"gyro_lowpass_hz": "150", "dterm_lowpass_hz": "110"})
        filters = recommend_filters({"gyro_filters": {"recommended_frequency": None}},
                                    current, {"filters": {}})
        assert filters["gyro_lowpass_hz"] == 150
        assert filters["dterm_lowpass_hz"] == 110
        assert filters["dynamic_notch_q_factors"] == []


class TestConfidenceAndChanges:

    def test_axis_confidence(self):
        assert axis_confidence(20000, 0.6, True) == pytest.approx(0.9)
        assert axis_confidence(500, 0.1, False) == pytest.approx(0.3)
        assert axis_confidence(5000, 0.3, True) == pytest.approx(0.7)

    def test_expected_changes(self):
        original = {a: {"p": 40, "i": 50, "d": 30, "f": 80} for a in AXES}
        recommended = {a: dict(original[a]) for a in AXES}
        recommended["roll"]["p"] = 44
        changes = expected_changes(original, recommended)
        assert changes["responsiveness"]["roll"] == pytest.approx(0.05)
        assert changes["responsiveness"]["pitch"] == 0.0

    def test_zero_original_gain(self):
        original = {a: {"p": 40, "i": 50, "d": 0, "f": 0} for a in AXES}
        recommended = {a: {"p": 40, "i": 50, "d": 10, "f": 0} for a in AXES}
        changes = expected_changes(original, recommended)
        assert changes["overshoot"]["yaw"] == 0.0
        assert changes["noise_rejection"]["yaw"] == 0.0

    def test_default_recommendation(self):
        rec = default_recommendation({"rollPID": "42,85,35"}, "log has no data rows")
        assert rec["recommended_pid"]["roll"]["p"] == 42
        assert rec["confidence"] == {a: 0.0 for a in AXES}
        assert rec["diagnostics"] == ["log has no data rows"]
        assert rec["model_based_pid"] == {a: None for a in AXES}

    def test_default_recommendation_with_non_finite_headers(self):
        rec = default_recommendation({"gyro_lowpass_hz": "nan", "dyn_notch_q": "inf",
                                      "rollPID": "inf,85,35"}, "no data")
        assert rec["filters"]["gyro_lowpass_hz"] == 0
        assert rec["filters"]["dyn_notch_q"] == 0
        assert rec["original_pid"]["roll"] == DEFAULT_PIDS["roll"]


class TestCliCommands:

    @pytest.fixture
    def recommendation(self, settings):
        analysis = {"error_metrics": {"roll": {"rms_error": 25.0, "mean_error": 2.0}}}
        metadata = {"rollPID": "41,50,25,0", "pitchPID": "45,55,28,90", "yawPID": "40,80,0,0",
                    "gyro_lowpass_hz": "150", "dterm_lowpass_hz": "110"}
        return assemble_recommendation(analysis, metadata, settings)

    def test_pid_lines_round_trip(self, recommendation):
        lines = generate_cli_commands(recommendation)
        assert lines[0] == "# PID settings"
        assert "set p_roll = 45" in lines
        assert "set d_pitch = 28" in lines
        assert "set f_pitch = 90" in lines
        # Zero feedforward is not written
        assert not any(line.startswith("set f_roll") for line in lines)
        assert lines[-1] == "save"

        parsed = {}
        for line in lines:
            m = re.match(r"set ([pid])_(\w+) = (\d+)$", line)
            if m:
                parsed.setdefault(m.group(2), {})[m.group(1)] = int(m.group(3))
        for axis in AXES:
            for term in ("p", "i", "d"):
                assert parsed[axis][term] == recommendation["recommended_pid"][axis][term]

    def test_filter_lines(self, recommendation):
        lines = generate_cli_commands(recommendation)
        assert "# Filter settings" in lines
        assert "set gyro_lowpass_hz = 150" in lines
        assert "set dterm_lowpass_hz = 110" in lines
        assert not any("dyn_notch_count" in line for line in lines)

    def test_notch_q_lines(self, recommendation):
        recommendation["filters"]["dynamic_notch_q_factors"] = [
            {"frequency": 150.0, "q_factor": 500, "noise_class": "narrowband_stable"}]
        lines = generate_cli_commands(recommendation)
        assert "set dyn_notch_q_1 = 500  # ~150.0 Hz" in lines
        bare = generate_cli_commands(recommendation, include_comments=False)
        assert "set dyn_notch_q_1 = 500" in bare
        assert not any(line.startswith("#") for line in bare)

    def test_float_values_print_as_integers(self, recommendation):
        recommendation["recommended_pid"]["roll"]["p"] = 45.0
        assert "set p_roll = 45" in generate_cli_commands(recommendation)
