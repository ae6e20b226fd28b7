"""Shared synthetic flight logs for the test suite."""

import numpy as np
import pytest

SAMPLE_RATE = 1000.0


def _square_setpoint(n, period=500, amplitude=200.0):
    sp = np.zeros(n)
    for start in range(250, n, period):
        level = amplitude if (start // period) % 2 == 0 else -amplitude
        sp[start:start + period] = level
    return sp


def _first_order(sp, tau_samples=20.0):
    y = np.zeros(len(sp))
    alpha = 1.0 / tau_samples
    for k in range(1, len(sp)):
        y[k] = y[k - 1] + alpha * (sp[k - 1] - y[k - 1])
    return y


def build_log(n=4000, with_unfilt=True, with_erpm=False, seed=3):
    """Rows/headers/metadata of a quad doing square-wave stick inputs."""
    rng = np.random.default_rng(seed)
    t = np.arange(n) / SAMPLE_RATE
    headers = ["loopIteration", "time"]
    columns = {"loopIteration": np.arange(n, dtype=float), "time": t * 1e6}
    for idx, phase in enumerate((0.0, 0.7, 1.9)):
        sp = np.roll(_square_setpoint(n), idx * 60)
        gyro = _first_order(sp) + 3.0 * np.sin(2 * np.pi * 120 * t + phase)
        gyro += rng.normal(0, 0.5, n)
        columns[f"setpoint[{idx}]"] = sp
        columns[f"gyroADC[{idx}]"] = gyro
        if with_unfilt:
            columns[f"gyroUnfilt[{idx}]"] = gyro + 20.0 * np.sin(2 * np.pi * 200 * t + phase)
        columns[f"axisP[{idx}]"] = 0.4 * (sp - gyro)
        columns[f"axisI[{idx}]"] = np.cumsum(sp - gyro) * 0.001
        columns[f"axisD[{idx}]"] = -np.gradient(gyro) * 0.25
        columns[f"axisF[{idx}]"] = np.gradient(sp) * 0.8
    for m in range(4):
        columns[f"motor[{m}]"] = 1400 + 50 * np.sin(2 * np.pi * 5 * t + m)
        if with_erpm:
            columns[f"eRPM[{m}]"] = np.full(n, 10000.0)
    headers = list(columns)
    rows = [{h: float(columns[h][i]) for h in headers} for i in range(n)]
    metadata = {
        "looptime": "1000",
        "rollPID": "42,85,35,90",
        "pitchPID": "46,90,38,95",
        "yawPID": "45,90,0,90",
        "gyro_lowpass_hz": "150",
        "dterm_lowpass_hz": "110",
        "dyn_notch_min_hz": "100",
        "dyn_notch_max_hz": "400",
        "dyn_notch_count": "3",
        "dyn_notch_q": "300",
    }
    return rows, headers, metadata


@pytest.fixture
def flight_log():
    return build_log()


@pytest.fixture
def flight_log_no_unfilt():
    return build_log(with_unfilt=False)


@pytest.fixture
def fast_settings():
    from bf_config import get_settings
    return get_settings({"population_size": 8, "generations": 3, "sim_steps": 120})


@pytest.fixture
def log_builder():
    return build_log
