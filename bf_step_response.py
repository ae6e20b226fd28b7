"""
Blackbox Tuner - Step Response Characterization
───────────────────────────────────────────────
Finds stick steps in the setpoint trace and measures how the gyro followed
each one: damping (logarithmic decrement), ringing frequency, settling,
overshoot, rise time and delay.

Each detected step is collected from the materialized arrays (no chunk
boundaries to worry about) for up to `response_window` samples or until the
next step, whichever comes first.
"""

import logging
import math

import numpy as np

from bf_config import DEFAULT_SETTINGS
from bf_errors import safe_div

log = logging.getLogger("bftune.step")

ZERO_METRICS = {
    "overshoot": 0.0, "settling_time": 0.0, "rise_time": 0.0, "delay": 0.0,
    "responsiveness": 0.0, "damping_ratio": 0.0, "decay_rate": 0.0,
    "oscillation_freq": 0.0, "n_peaks": 0, "n_valleys": 0, "settled": False,
    "magnitude": 0.0,
}


# ─── Detection ───────────────────────────────────────────────────────────────

def detect_steps(setpoint, threshold=30.0):
    """Indices where the command jumps by more than `threshold` in one sample."""
    sp = np.asarray(setpoint, dtype=np.float64)
    if len(sp) < 2:
        return []
    jumps = np.abs(np.diff(sp)) > threshold
    return [int(i) + 1 for i in np.nonzero(jumps)[0]]


def collect_step_events(setpoint, gyro, times_ms, settings=None):
    """Cut one response window per detected step."""
    if settings is None:
        settings = DEFAULT_SETTINGS
    sp = np.asarray(setpoint, dtype=np.float64)
    gy = np.asarray(gyro, dtype=np.float64)
    steps = detect_steps(sp, settings["step_threshold"])
    window = int(settings["response_window"])
    min_len = int(settings["min_response_samples"])

    events = []
    for n, idx in enumerate(steps):
        end = idx + window
        if n + 1 < len(steps):
            end = min(end, steps[n + 1])
        end = min(end, len(gy))
        if end - idx < min_len:
            continue
        events.append({
            "start_index": idx,
            "start_value": float(gy[idx]),
            "target_value": float(sp[idx]),
            "response": gy[idx:end].copy(),
            "times_ms": times_ms[idx:end] - times_ms[idx],
        })
    return events


# ─── Characterization ────────────────────────────────────────────────────────

def find_extrema(values, times_ms, skip_ms=5.0):
    """Strict local maxima and minima, ignoring the first `skip_ms`."""
    v = np.asarray(values, dtype=np.float64)
    if len(v) < 3:
        return [], []
    centre = v[1:-1]
    late = np.asarray(times_ms)[1:-1] >= skip_ms
    peaks = np.nonzero((centre > v[:-2]) & (centre > v[2:]) & late)[0] + 1
    valleys = np.nonzero((centre < v[:-2]) & (centre < v[2:]) & late)[0] + 1
    return [int(i) for i in peaks], [int(i) for i in valleys]


def log_decrement(amplitudes):
    """Damping ratio and decay rate from successive peak amplitudes.

    `amplitudes` are overshoots past the target, in time order. Only
    consecutive positive pairs form a ratio, so a response that rings
    entirely below the target (or only through its valleys) measures no
    damping. Returns (damping_ratio, decay_rate). Both are 0 when fewer
    than two usable amplitudes exist.
    """
    ratios = [a / b for a, b in zip(amplitudes, amplitudes[1:]) if a > 0 and b > 0]
    if not ratios:
        return 0.0, 0.0
    avg_ratio = sum(ratios) / len(ratios)
    if avg_ratio <= 1.0:
        # Not decaying: no measurable damping.
        return 0.0, 0.0
    delta = math.log(avg_ratio)
    zeta = delta / (2 * math.pi * math.sqrt(1 + (delta / (2 * math.pi)) ** 2))
    return zeta, delta * 100.0


def _first_crossing(norm, times_ms, level):
    hits = np.nonzero(norm >= level)[0]
    return float(times_ms[hits[0]]) if len(hits) else None


def characterize_response(times_ms, values, start_value, target_value, settings=None):
    """Metrics for one step response.

    The response is normalized so start=0 and target=1 regardless of step
    direction; every comparison below happens in that space.
    """
    if settings is None:
        settings = DEFAULT_SETTINGS
    v = np.asarray(values, dtype=np.float64)
    t = np.asarray(times_ms, dtype=np.float64)
    delta = target_value - start_value
    if len(v) == 0 or delta == 0:
        return dict(ZERO_METRICS)
    norm = (v - start_value) / delta

    # 1. extrema, in normalized space so "peak" means "towards/past target"
    peaks, valleys = find_extrema(norm, t, settings["startup_skip_ms"])

    # 2. damping from overshoot peaks only; undershoot valleys are not counted
    amplitudes = [norm[p] - 1.0 for p in peaks]
    damping, decay = log_decrement(amplitudes)

    # 3. ringing frequency
    osc_freq = 0.0
    if len(peaks) >= 2:
        periods = np.diff(t[peaks])
        osc_freq = safe_div(1000.0, float(np.mean(periods)))

    # 4. settling: inside the band for the next `hold` samples
    band = settings["settle_band"]
    hold = int(settings["settle_hold_samples"])
    inside = np.abs(norm - 1.0) <= band
    settling, settled = float(t[-1]), False
    for i in range(len(norm)):
        if inside[i:i + hold].all():
            settling, settled = float(t[i]), True
            break

    # 5. overshoot past target, along the step direction
    overshoot = max(0.0, (float(np.max(norm)) - 1.0) * 100.0)

    # 6/7. rise time and delay
    t10 = _first_crossing(norm, t, 0.1)
    t90 = _first_crossing(norm, t, 0.9)
    t50 = _first_crossing(norm, t, 0.5)
    if t10 is not None and t90 is not None:
        rise = t90 - t10
    else:
        rise = settling * 0.6

    return {
        "overshoot": overshoot,
        "settling_time": settling,
        "rise_time": rise,
        "delay": t10 if t10 is not None else 0.0,
        "responsiveness": t50 if t50 is not None else 0.0,
        "damping_ratio": damping,
        "decay_rate": decay,
        "oscillation_freq": osc_freq,
        "n_peaks": len(peaks),
        "n_valleys": len(valleys),
        "settled": settled,
        "magnitude": abs(delta),
    }


# ─── Axis Analysis ───────────────────────────────────────────────────────────

def analyze_step_response(setpoint, gyro, sample_rate, times_ms=None, settings=None):
    """Headline step metrics for one axis.

    Picks the largest step for the headline numbers and keeps every valid
    step in "steps". When nothing qualifies, returns zero metrics with
    "valid": False.
    """
    if settings is None:
        settings = DEFAULT_SETTINGS
    sp = np.asarray(setpoint, dtype=np.float64)
    gy = np.asarray(gyro, dtype=np.float64)
    if times_ms is None:
        times_ms = np.arange(len(sp)) * 1000.0 / sample_rate
    times_ms = np.asarray(times_ms, dtype=np.float64)
    mask = np.isfinite(sp) & np.isfinite(gy) & np.isfinite(times_ms)
    sp, gy, times_ms = sp[mask], gy[mask], times_ms[mask]

    events = collect_step_events(sp, gy, times_ms, settings)
    min_mag = settings["min_step_magnitude"]
    steps = []
    for ev in events:
        if abs(ev["target_value"] - ev["start_value"]) <= min_mag:
            continue
        metrics = characterize_response(ev["times_ms"], ev["response"],
                                        ev["start_value"], ev["target_value"], settings)
        metrics.update(start_index=ev["start_index"], start_value=ev["start_value"],
                       target_value=ev["target_value"])
        steps.append(metrics)

    if not steps:
        log.debug(f"No usable steps ({len(events)} candidate(s))")
        out = dict(ZERO_METRICS)
        out.update(valid=False, n_steps=0, steps=[])
        return out

    best = max(steps, key=lambda s: s["magnitude"])
    out = dict(best)
    out.update(valid=True, n_steps=len(steps), steps=steps)
    return out
