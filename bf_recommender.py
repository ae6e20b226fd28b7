"""
Blackbox Tuner - Recommendation Engine
──────────────────────────────────────
Turns the analysis into concrete "set X = N" changes.

Gains start from what the log header says is flashed and are nudged by
each piece of evidence in a fixed order:

    error metrics → step response (D) → harmonics → cross-axis → filters → mode

Every nudge is rounded when it's applied and leaves an explanation behind.
Whatever comes out is clamped into SAFE_PID_LIMITS before it's returned.
"""

import copy
import logging
import math

from bf_config import (AXES, DEFAULT_PIDS, DEFAULT_SETTINGS, FILTER_KEYS, PID_TERMS,
                       metadata_number)
from bf_errors import safe_div
from bf_pid_synthesis import clamp_gains

log = logging.getLogger("bftune.recommend")

OPTIMAL_DAMPING = 0.65
OPTIMAL_DECAY = 50.0
D_FACTOR_RANGE = (0.8, 1.3)


def _round(value):
    """Half-up rounding to an int (round() would go to even on .5)."""
    return int(math.floor(value + 0.5))


# ─── Current Configuration ───────────────────────────────────────────────────

def parse_pid_string(text):
    """"45,80,30[,120]" → {"p": 45, "i": 80, "d": 30[, "f": 120]}."""
    if text is None:
        raise ValueError("PID string is empty")
    parts = [p.strip() for p in str(text).split(",") if p.strip()]
    if len(parts) < 3:
        raise ValueError(f"PID string needs at least P,I,D: {text!r}")
    try:
        values = [int(float(p)) for p in parts]
    except (ValueError, OverflowError):
        raise ValueError(f"PID string has a non-numeric field: {text!r}") from None
    gains = {"p": values[0], "i": values[1], "d": values[2]}
    if len(values) >= 4:
        gains["f"] = values[3]
    return gains


def current_pids(metadata):
    """PIDs from the rollPID/pitchPID/yawPID headers over the defaults."""
    pids = copy.deepcopy(DEFAULT_PIDS)
    for axis in AXES:
        raw = (metadata or {}).get(f"{axis}PID")
        if raw in (None, ""):
            continue
        try:
            pids[axis].update(parse_pid_string(raw))
        except ValueError as e:
            log.warning(f"Ignoring {axis}PID header: {e}")
    return pids


def current_filters(metadata):
    return {key: int(metadata_number(metadata, key)) for key in FILTER_KEYS}


# ─── Adjustment Stages ───────────────────────────────────────────────────────

def _new_explanations():
    out = {axis: {term: [] for term in PID_TERMS} for axis in AXES}
    out["filters"] = {}
    out["general"] = []
    return out


def _apply_error_metrics(pid, original, metrics, explanations):
    for axis in AXES:
        m = metrics.get(axis)
        if not m:
            continue
        rms, mean = m["rms_error"], m["mean_error"]
        if rms > 20:
            pid[axis]["p"] = _round(pid[axis]["p"] * 1.1)
        elif rms < 5:
            pid[axis]["p"] = _round(pid[axis]["p"] * 0.95)
        if pid[axis]["p"] != original[axis]["p"]:
            verb = "increased" if pid[axis]["p"] > original[axis]["p"] else "decreased"
            explanations[axis]["p"].append(f"P {verb} based on RMS error ({rms:.2f}).")
        if mean > 10:
            pid[axis]["i"] = _round(pid[axis]["i"] * 1.15)
            explanations[axis]["i"].append(f"I increased due to high mean error ({mean:.2f}).")


def d_correction(step):
    """Multiplicative D factor from one axis' step metrics, with reasons."""
    factor, reasons = 1.0, []
    zeta = step.get("damping_ratio", 0.0)
    if zeta > 0:
        if zeta < OPTIMAL_DAMPING - 0.15:
            factor *= 1.15 + 0.05 * ((OPTIMAL_DAMPING - zeta) / 0.15)
            reasons.append(f"insufficient damping ({zeta:.2f})")
        elif zeta > OPTIMAL_DAMPING + 0.15:
            factor *= 0.9 - 0.05 * ((zeta - OPTIMAL_DAMPING) / 0.15)
            reasons.append(f"excessive damping ({zeta:.2f})")

    decay = step.get("decay_rate", 0.0)
    if decay > 0:
        if decay < OPTIMAL_DECAY * 0.7:
            factor *= 1.1
            reasons.append(f"slow oscillation decay ({decay:.1f}%/period)")
        elif decay > OPTIMAL_DECAY * 1.5:
            factor *= 0.95
            reasons.append(f"very fast decay ({decay:.1f}%/period)")

    overshoot = step.get("overshoot", 0.0)
    if overshoot > 25:
        factor *= 1.05
        reasons.append(f"high overshoot ({overshoot:.1f}%)")
    elif overshoot < 5:
        factor *= 0.95
        reasons.append(f"low overshoot ({overshoot:.1f}%)")

    freq = step.get("oscillation_freq", 0.0)
    if freq > 30:
        factor *= 0.95
        reasons.append(f"high frequency ringing ({freq:.1f} Hz)")

    lo, hi = D_FACTOR_RANGE
    return max(lo, min(hi, factor)), reasons


def _apply_step_response(pid, step_metrics, explanations):
    for axis in AXES:
        step = step_metrics.get(axis)
        if not step or not step.get("valid"):
            continue
        factor, reasons = d_correction(step)
        before = pid[axis]["d"]
        pid[axis]["d"] = _round(before * factor)
        if reasons:
            verb = "raised" if pid[axis]["d"] > before else "lowered" if pid[axis]["d"] < before else "kept"
            explanations[axis]["d"].append(
                f"D {verb} to {pid[axis]['d']} (was {before}): {', '.join(reasons)}.")


def _apply_harmonics(pid, harmonics, explanations):
    for axis in AXES:
        h = harmonics.get(axis)
        if not h:
            continue
        if h["oscillation_detected"]:
            pid[axis]["p"] = _round(pid[axis]["p"] * 0.92)
            pid[axis]["d"] = _round(pid[axis]["d"] * 0.92)
            msg = f"Reduced: unwanted oscillation detected (THD={h['thd']:.1f}%)."
            explanations[axis]["p"].append(msg)
            explanations[axis]["d"].append(msg)
        if h["thd"] > 40:
            pid[axis]["p"] = _round(pid[axis]["p"] * 0.95)
            explanations[axis]["p"].append(
                f"P reduced due to high harmonic distortion (THD={h['thd']:.1f}%).")


def _apply_cross_axis(pid, cross, settings, explanations):
    if not cross:
        return
    primary = cross.get("primary_source")
    if primary in pid:
        pid[primary]["p"] = _round(pid[primary]["p"] * 0.95)
        pid[primary]["d"] = _round(pid[primary]["d"] * 0.97)
        explanations[primary]["p"].append(
            f"P reduced: {primary} is where shared oscillations start.")
        explanations[primary]["d"].append(
            f"D reduced: {primary} is where shared oscillations start.")
        explanations["general"].append(
            f"Primary oscillation source: {primary}. Tune this axis first.")

    pairs = cross.get("pairs", {})
    strong = [(name, p["coupling_strength"]) for name, p in pairs.items()
              if p["coupling_strength"] > settings["strong_coupling"]]
    if strong:
        explanations["general"].append("Strong axis coupling: " + ", ".join(
            f"{name.replace('_', '-')} ({strength * 100:.0f}%)" for name, strength in strong))
    roll_pitch = pairs.get("roll_pitch")
    if roll_pitch and roll_pitch["coupling_strength"] > settings["strong_coupling"]:
        avg_d = _round((pid["roll"]["d"] + pid["pitch"]["d"]) / 2)
        pid["roll"]["d"] = pid["pitch"]["d"] = avg_d
        for axis in ("roll", "pitch"):
            explanations[axis]["d"].append(
                f"D balanced to {avg_d} across roll/pitch to reduce shared oscillation.")


def recommend_filters(filter_analysis, current, explanations):
    """Filter settings from the noise analysis, current values where it's silent."""
    filters = dict(current)
    filters["dynamic_notch_q_factors"] = []
    if not filter_analysis:
        return filters

    gyro_rec = (filter_analysis.get("gyro_filters") or {}).get("recommended_frequency")
    if gyro_rec:
        filters["gyro_lowpass_hz"] = gyro_rec
        explanations["filters"]["gyro_lowpass"] = (
            f"Gyro lowpass {gyro_rec} Hz (was {current['gyro_lowpass_hz']} Hz).")
    dterm_rec = (filter_analysis.get("dterm_filters") or {}).get("recommended_frequency")
    if dterm_rec:
        filters["dterm_lowpass_hz"] = dterm_rec
        explanations["filters"]["dterm_lowpass"] = (
            f"D-term lowpass {dterm_rec} Hz (was {current['dterm_lowpass_hz']} Hz).")

    notch = filter_analysis.get("notch_filters") or {}
    if notch.get("recommended"):
        filters.update(notch["recommended"])
        top = notch["classified_noises"][:filters["dyn_notch_count"]]
        filters["dynamic_notch_q_factors"] = [
            {"frequency": n["frequency"], "q_factor": n["recommended_q"],
             "noise_class": n["noise_class"]} for n in top]
        explanations["filters"]["notch"] = (
            f"Dynamic notch: count={filters['dyn_notch_count']}, "
            f"range={filters['dyn_notch_min_hz']}-{filters['dyn_notch_max_hz']} Hz, "
            f"Q={filters['dyn_notch_q']}.")
        explanations["filters"]["notch_q_factors"] = ", ".join(
            f"{n['frequency']:.1f} Hz: Q={n['recommended_q']} ({n['noise_class']})" for n in top)
    return filters


def _apply_mode(pid, mode, explanations):
    if mode != "cinematic":
        return
    explanations["general"].append(
        "Cinematic mode: smoother stick response and steadier hold for video.")
    for axis in AXES:
        pid[axis]["p"] = _round(pid[axis]["p"] * 0.9)
        pid[axis]["i"] = _round(pid[axis]["i"] * 1.05)
        pid[axis]["f"] = _round(pid[axis]["f"] * 0.9)
        explanations[axis]["p"].append("[Cinematic] P reduced for smoother motion.")
        explanations[axis]["i"].append("[Cinematic] I raised for steadier hold.")
        explanations[axis]["f"].append("[Cinematic] Feedforward reduced for softer transitions.")
    pid["yaw"]["d"] = _round(pid["yaw"]["d"] * 0.9)
    explanations["yaw"]["d"].append("[Cinematic] Yaw D reduced for smooth rotations.")


# ─── Confidence & Expected Changes ───────────────────────────────────────────

def axis_confidence(n_rows, stick_activity, step_valid=True):
    confidence = 0.7
    if n_rows > 10000:
        confidence += 0.1
    elif n_rows < 1000:
        confidence -= 0.2
    if stick_activity > 0.5:
        confidence += 0.1
    elif stick_activity < 0.2:
        confidence -= 0.1
    if not step_valid:
        confidence -= 0.1
    return float(min(1.0, max(0.0, round(confidence, 3))))


def _ratio(new, old):
    return safe_div(new, old, default=1.0)


def expected_changes(original, recommended):
    """Rough performance deltas per axis from the gain ratios.

    Positive is better for every metric except overshoot and settling_time,
    where it means more.
    """
    out = {k: {} for k in ("responsiveness", "stability", "settling_time",
                           "overshoot", "noise_rejection")}
    for axis in AXES:
        p = _ratio(recommended[axis]["p"], original[axis]["p"])
        i = _ratio(recommended[axis]["i"], original[axis]["i"])
        d = _ratio(recommended[axis]["d"], original[axis]["d"])
        out["responsiveness"][axis] = (p - 1) * 0.5
        out["stability"][axis] = (1 - p) * 0.3 if p > 1 else (1 - p) * 0.2
        out["settling_time"][axis] = (i - 1) * 0.4 if i > 1 else (1 - i) * -0.3
        out["overshoot"][axis] = (1 - d) * -0.5 if d > 1 else (1 - d) * 0.4
        out["noise_rejection"][axis] = (1 - d) * 0.6 if d < 1 else (d - 1) * -0.5
    return out


# ─── Assembly ────────────────────────────────────────────────────────────────

def _summary(analysis):
    cross = analysis.get("cross_axis") or {}
    filters = analysis.get("filter_analysis") or {}
    return {
        "n_rows": analysis.get("n_rows", 0),
        "sample_rate": analysis.get("sample_rate"),
        "steps": {a: s.get("n_steps", 0) for a, s in analysis.get("step_response", {}).items()},
        "dominant_frequencies": {a: [round(d["frequency"], 1) for d in doms[:3]]
                                 for a, doms in cross.get("dominant", {}).items()},
        "primary_oscillation_source": cross.get("primary_source"),
        "strong_couplings": [k for k, v in cross.get("pairs", {}).items() if v["strong"]],
        "noise_start_hz": (filters.get("gyro_filters") or {}).get("noise_start_hz"),
        "gyro_filter_effectiveness": (filters.get("gyro_filters") or {}).get("effectiveness", 0.0),
    }


def assemble_recommendation(analysis, metadata, settings=None):
    """Merge every analysis result into one recommendation dict."""
    if settings is None:
        settings = DEFAULT_SETTINGS
    original = current_pids(metadata)
    pid = copy.deepcopy(original)
    explanations = _new_explanations()

    _apply_error_metrics(pid, original, analysis.get("error_metrics", {}), explanations)
    _apply_step_response(pid, analysis.get("step_response", {}), explanations)
    _apply_harmonics(pid, analysis.get("harmonics", {}), explanations)
    _apply_cross_axis(pid, analysis.get("cross_axis"), settings, explanations)
    filters = recommend_filters(analysis.get("filter_analysis"), current_filters(metadata),
                                explanations)
    _apply_mode(pid, settings["mode"], explanations)

    recommended = {}
    for axis in AXES:
        clamped = clamp_gains(pid[axis], axis)
        for term in PID_TERMS:
            if clamped[term] != pid[axis][term]:
                explanations[axis][term].append(
                    f"Clamped from {pid[axis][term]} to the safe limit {clamped[term]}.")
        recommended[axis] = clamped

    n_rows = analysis.get("n_rows", 0)
    character = analysis.get("flight_character", {})
    steps = analysis.get("step_response", {})
    confidence = {axis: axis_confidence(n_rows,
                                        character.get(axis, {}).get("stick_activity", 0.0),
                                        steps.get(axis, {}).get("valid", False))
                  for axis in AXES}

    model_based = {}
    for axis in AXES:
        result = (analysis.get("model_based") or {}).get(axis)
        model_based[axis] = dict(result["gains"]) if result else None

    return {
        "original_pid": original,
        "recommended_pid": recommended,
        "model_based_pid": model_based,
        "filters": filters,
        "explanations": explanations,
        "confidence": confidence,
        "expected_changes": expected_changes(original, recommended),
        "analysis_summary": _summary(analysis),
        "diagnostics": list(analysis.get("diagnostics", [])),
    }


def default_recommendation(metadata, reason=None):
    """Everything left as flashed. Used when the log can't be analyzed."""
    original = current_pids(metadata)
    explanations = _new_explanations()
    if reason:
        explanations["general"].append(f"No changes recommended: {reason}")
    filters = current_filters(metadata)
    filters["dynamic_notch_q_factors"] = []
    return {
        "original_pid": original,
        "recommended_pid": {axis: clamp_gains(original[axis], axis) for axis in AXES},
        "model_based_pid": {axis: None for axis in AXES},
        "filters": filters,
        "explanations": explanations,
        "confidence": {axis: 0.0 for axis in AXES},
        "expected_changes": expected_changes(original, original),
        "analysis_summary": {},
        "diagnostics": [reason] if reason else [],
    }


# ─── CLI Commands ────────────────────────────────────────────────────────────

def _fmt(value):
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def generate_cli_commands(recommendation, include_comments=True):
    """Firmware CLI lines that apply a recommendation, ending in save."""
    cmds = []
    pid = recommendation["recommended_pid"]
    if include_comments:
        cmds.append("# PID settings")
    for axis in AXES:
        for term in ("p", "i", "d"):
            cmds.append(f"set {term}_{axis} = {_fmt(pid[axis][term])}")
    for axis in AXES:
        if pid[axis].get("f"):
            cmds.append(f"set f_{axis} = {_fmt(pid[axis]['f'])}")

    filters = recommendation.get("filters", {})
    filter_cmds = [f"set {key} = {_fmt(filters[key])}" for key in FILTER_KEYS
                   if filters.get(key) and filters[key] > 0]
    q_factors = filters.get("dynamic_notch_q_factors") or []
    if filter_cmds or q_factors:
        if include_comments:
            cmds.append("# Filter settings")
        cmds.extend(filter_cmds)
        for n, q in enumerate(q_factors[:filters.get("dyn_notch_count") or len(q_factors)], 1):
            line = f"set dyn_notch_q_{n} = {_fmt(q['q_factor'])}"
            if include_comments:
                line += f"  # ~{q['frequency']:.1f} Hz"
            cmds.append(line)
    cmds.append("save")
    return cmds
