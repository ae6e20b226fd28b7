"""
Unit tests for gyro/D-term lowpass, dynamic notch and RPM filter analysis.
"""

import math

import numpy as np
import pytest

from bf_columns import column_values, resolve_axis_signals
from bf_config import AXES, get_settings
from bf_filter_analysis import (analyze_filters, dterm_effectiveness, dterm_filter_analysis,
                                filter_phase_lag, gyro_filter_analysis, noise_start_frequency,
                                notch_analysis, phase_delay_ms, recommend_dterm_cutoff,
                                recommend_gyro_cutoff, rpm_analysis)


def gyro_pair(rows, headers):
    signals = resolve_axis_signals(headers)
    gyro = {a: column_values(rows, signals[a]["gyro"]) for a in AXES}
    unfilt = {a: column_values(rows, signals[a]["gyro_unfilt"]) for a in AXES}
    return signals, gyro, unfilt


class TestPhaseLag:

    def test_phase_delay(self):
        assert phase_delay_ms(100) == pytest.approx(1.5915, abs=1e-4)
        assert phase_delay_ms(0) == 0.0

    def test_pt1_at_cutoff_is_45_degrees(self):
        lag = filter_phase_lag(100, 100, "PT1")
        assert lag["degrees"] == pytest.approx(-45.0)
        assert lag["ms"] == pytest.approx(1.25)

    def test_more_stages_more_lag(self):
        pt1 = filter_phase_lag(100, 50, "PT1")["degrees"]
        pt3 = filter_phase_lag(100, 50, "PT3")["degrees"]
        assert pt3 == pytest.approx(3 * pt1)

    def test_biquad_at_cutoff_is_90_degrees(self):
        assert filter_phase_lag(100, 100, "BIQUAD", q=0.707)["degrees"] == pytest.approx(-90.0)

    def test_disabled_filter_has_no_lag(self):
        assert filter_phase_lag(0, 100) == {"degrees": 0.0, "ms": 0.0}


class TestCutoffs:

    def test_dterm_effectiveness_curve(self):
        assert dterm_effectiveness(35) == pytest.approx(0.65)
        assert dterm_effectiveness(100) == pytest.approx(0.8)
        assert dterm_effectiveness(200) == pytest.approx(0.65)
        assert dterm_effectiveness(0) == 0.0

    def test_dterm_cutoff_follows_gyro(self):
        assert recommend_dterm_cutoff(100) == 70
        assert recommend_dterm_cutoff(50) == 50

    def test_no_gyro_uses_default_noise_start(self):
        assert noise_start_frequency({}, 1000.0) == 100.0
        assert noise_start_frequency({"roll": np.ones(10)}, 1000.0) == 100.0
        assert recommend_gyro_cutoff({}, 1000.0) == 80

    def test_noise_start_below_tone(self):
        """|300 Hz sine| puts its energy at 600 Hz; the rise is found just below it."""
        sr = 3200.0
        t = np.arange(1024) / sr
        start = noise_start_frequency({"roll": 100 * np.sin(2 * np.pi * 300 * t)}, sr)
        assert 560 <= start <= 600
        assert recommend_gyro_cutoff({"roll": 100 * np.sin(2 * np.pi * 300 * t)}, sr) \
            == max(50, int(round(start * 0.8)))

    def test_dterm_analysis(self):
        result = dterm_filter_analysis(110, 120)
        assert result["recommended_frequency"] == 84
        assert result["effectiveness"] == pytest.approx(0.8)
        assert dterm_filter_analysis(110, None)["recommended_frequency"] is None


class TestGyroFilter:

    def test_measured_with_unfiltered_gyro(self, flight_log):
        rows, headers, _ = flight_log
        _, gyro, unfilt = gyro_pair(rows, headers)
        result = gyro_filter_analysis(gyro, unfilt, 1000.0, 150)
        assert result["measured"]
        assert result["effectiveness"] > 0.5
        assert result["noise_reduction"] > 0
        assert result["recommended_frequency"] >= 50

    def test_missing_unfiltered_gyro(self, flight_log_no_unfilt):
        rows, headers, _ = flight_log_no_unfilt
        _, gyro, unfilt = gyro_pair(rows, headers)
        result = gyro_filter_analysis(gyro, unfilt, 1000.0, 150)
        assert not result["measured"]
        assert result["effectiveness"] == 0.0
        # Noise start still comes from the filtered gyro
        assert result["noise_start_hz"] is not None

    def test_no_gyro_at_all(self):
        empty = {a: None for a in AXES}
        result = gyro_filter_analysis(empty, empty, 1000.0, 150)
        assert result["recommended_frequency"] is None
        assert result["phase_delay"] == pytest.approx(phase_delay_ms(150))


class TestNotch:

    @pytest.fixture
    def tone_150(self):
        sr = 3200.0
        t = np.arange(8192) / sr
        unfilt = {"roll": 10 * np.sin(2 * np.pi * 150 * t), "pitch": None, "yaw": None}
        gyro = {a: None for a in AXES}
        return gyro, unfilt, sr

    def test_stable_narrow_peak(self, tone_150):
        gyro, unfilt, sr = tone_150
        result = notch_analysis(gyro, unfilt, sr, 100, 400)
        assert result["enabled"]
        peak = result["classified_noises"][0]
        assert peak["frequency"] == pytest.approx(150.0, abs=1.0)
        assert peak["stability"] == pytest.approx(1.0)
        assert peak["noise_class"] == "narrowband_stable"
        assert peak["recommended_q"] == 500
        rec = result["recommended"]
        assert rec["dyn_notch_count"] == 3
        assert rec["dyn_notch_q"] == 500
        assert rec["dyn_notch_min_hz"] <= 150 <= rec["dyn_notch_max_hz"]

    def test_no_filtered_signal_means_unmeasured(self, tone_150):
        gyro, unfilt, sr = tone_150
        assert notch_analysis(gyro, unfilt, sr, 100, 400)["effectiveness"] == 0.0

    def test_peak_outside_range_ignored(self, tone_150):
        gyro, unfilt, sr = tone_150
        result = notch_analysis(gyro, unfilt, sr, 200, 400)
        assert result["classified_noises"] == []
        assert result["recommended"] is None

    @pytest.mark.parametrize("lo,hi", [(0, 400), (100, 0), (300, 200)])
    def test_disabled_range(self, tone_150, lo, hi):
        gyro, unfilt, sr = tone_150
        assert not notch_analysis(gyro, unfilt, sr, lo, hi)["enabled"]


class TestRpm:

    def test_harmonics_from_erpm(self, log_builder):
        rows, headers, metadata = log_builder(n=2000, with_erpm=True)
        signals, gyro, unfilt = gyro_pair(rows, headers)
        result = rpm_analysis(rows, signals, metadata, gyro, unfilt, 1000.0)
        assert result["enabled"]
        assert result["motor_poles"] == 14
        assert len(result["motors"]) == 4
        motor = result["motors"][0]
        assert motor["base_frequency"] == pytest.approx(10000 * 14 / 120)
        assert len(motor["harmonics"]) == 3
        assert motor["harmonics"][2] == pytest.approx(3 * motor["base_frequency"])
        assert len(result["motor_spectra"]) == 4

    def test_harmonic_count_from_header(self, log_builder):
        rows, headers, metadata = log_builder(n=1000, with_erpm=True)
        metadata["gyro_rpm_notch_harmonics"] = "2"
        signals, gyro, unfilt = gyro_pair(rows, headers)
        result = rpm_analysis(rows, signals, metadata, gyro, unfilt, 1000.0)
        assert result["harmonics_count"] == 2
        assert all(len(m["harmonics"]) == 2 for m in result["motors"])

    def test_no_erpm(self, flight_log):
        rows, headers, metadata = flight_log
        signals, gyro, unfilt = gyro_pair(rows, headers)
        result = rpm_analysis(rows, signals, metadata, gyro, unfilt, 1000.0)
        assert not result["enabled"]
        assert result["effectiveness"] == 0.0


class TestAnalyzeFilters:

    def test_sections(self, flight_log):
        rows, headers, metadata = flight_log
        signals = resolve_axis_signals(headers)
        result = analyze_filters(rows, signals, metadata, 1000.0, get_settings())
        assert set(result) == {"gyro_filters", "dterm_filters", "notch_filters", "rpm_filters"}
        assert result["gyro_filters"]["current_cutoff"] == 150
        assert result["dterm_filters"]["current_cutoff"] == 110
        assert result["notch_filters"]["enabled"]
        assert math.isfinite(result["gyro_filters"]["effectiveness"])
