"""
Unit tests for step detection and response characterization.
"""

import numpy as np
import pytest

from bf_step_response import (analyze_step_response, characterize_response, detect_steps,
                              log_decrement)


class TestDetection:

    def test_jumps_over_threshold(self):
        sp = np.array([0, 0, 100, 100, 110, 110, 0])
        assert detect_steps(sp, 30) == [2, 6]

    def test_short_input(self):
        assert detect_steps([5.0], 30) == []


class TestLogDecrement:

    def test_halving_peaks(self):
        zeta, decay = log_decrement([0.2, 0.1])
        assert zeta == pytest.approx(0.1096, abs=0.001)
        assert decay == pytest.approx(np.log(2) * 100)

    def test_growing_or_missing(self):
        assert log_decrement([0.1, 0.2]) == (0.0, 0.0)
        assert log_decrement([0.1]) == (0.0, 0.0)

    def test_undershoots_are_not_counted(self):
        assert log_decrement([-0.1, -0.05]) == (0.0, 0.0)
        # a pair is only formed by consecutive overshoots
        assert log_decrement([0.2, -0.1, 0.05]) == (0.0, 0.0)


class TestCharacterize:

    @pytest.fixture
    def ringing(self):
        """0→500 step with peaks of +100 and +50 above target."""
        t = np.arange(100, dtype=float)
        values = np.interp(t, [0, 10, 20, 30, 40, 45, 99],
                           [0, 600, 450, 550, 480, 500, 500])
        return t, values

    def test_damping_from_peaks(self, ringing):
        t, values = ringing
        m = characterize_response(t, values, 0.0, 500.0)
        assert m["n_peaks"] == 2
        assert m["damping_ratio"] == pytest.approx(0.1096, abs=0.01)
        assert m["overshoot"] == pytest.approx(20.0)
        assert m["oscillation_freq"] == pytest.approx(50.0)

    def test_ringing_below_target_has_no_damping(self):
        t = np.arange(100, dtype=float)
        values = np.interp(t, [0, 10, 20, 30, 40, 50, 99],
                           [0, 450, 400, 480, 460, 500, 500])
        m = characterize_response(t, values, 0.0, 500.0)
        assert m["damping_ratio"] == 0.0
        assert m["overshoot"] == pytest.approx(0.0, abs=1e-9)

    def test_first_order_settling(self):
        """First order, tau = 50 ms: 5% band is reached at ~3 tau."""
        k = np.arange(200, dtype=float)
        values = 500.0 * (1 - np.exp(-k / 50.0))
        m = characterize_response(k, values, 0.0, 500.0)
        assert m["settling_time"] == pytest.approx(150.0, rel=0.2)
        assert m["settled"] is True
        assert m["overshoot"] == pytest.approx(0.0, abs=1e-9)
        assert m["damping_ratio"] == 0.0

    def test_negative_step_is_normalized(self, ringing):
        t, values = ringing
        up = characterize_response(t, values, 0.0, 500.0)
        down = characterize_response(t, -values, 0.0, -500.0)
        assert down["damping_ratio"] == pytest.approx(up["damping_ratio"])
        assert down["overshoot"] == pytest.approx(up["overshoot"])

    def test_zero_step(self):
        m = characterize_response(np.arange(10.0), np.zeros(10), 5.0, 5.0)
        assert m["settling_time"] == 0.0 and m["damping_ratio"] == 0.0


class TestAxisAnalysis:

    def test_first_order_step_in_log(self):
        sp = np.concatenate([np.zeros(100), np.full(300, 500.0)])
        k = np.arange(300, dtype=float)
        gyro = np.concatenate([np.zeros(100), 500.0 * (1 - np.exp(-k / 50.0))])
        result = analyze_step_response(sp, gyro, 1000.0)
        assert result["valid"] is True
        assert result["n_steps"] == 1
        assert result["settling_time"] == pytest.approx(150.0, rel=0.2)
        assert result["overshoot"] == pytest.approx(0.0, abs=1e-9)

    def test_no_steps_is_invalid(self):
        result = analyze_step_response(np.zeros(500), np.zeros(500), 1000.0)
        assert result["valid"] is False
        assert result["damping_ratio"] == 0.0
        assert result["steps"] == []
