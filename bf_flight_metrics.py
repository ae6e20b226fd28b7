"""
Blackbox Tuner - Flight Metrics
───────────────────────────────
Tracking error, PID term contributions and how the pilot flew, computed in
streaming fashion over the raw rows.
"""

import logging

import numpy as np

from bf_config import AXES, DEFAULT_SETTINGS
from bf_errors import safe_div
from bf_stream import RunningStats, fold_chunks

log = logging.getLogger("bftune.metrics")


def _chunk_values(chunk, column):
    out = []
    for row in chunk:
        try:
            out.append(float(row.get(column)))
        except (TypeError, ValueError):
            out.append(np.nan)
    return np.asarray(out, dtype=np.float64)


def error_metrics(rows, signals, settings=None):
    """RMS / mean / max / std of tracking error per axis.

    Uses the logged error column when there is one, otherwise setpoint minus
    gyro. Axes with neither are left out.
    """
    if settings is None:
        settings = DEFAULT_SETTINGS
    sources = {}
    for axis in AXES:
        cols = signals.get(axis, {})
        if cols.get("error"):
            sources[axis] = (cols["error"], None)
        elif cols.get("setpoint") and cols.get("gyro"):
            sources[axis] = (cols["setpoint"], cols["gyro"])
    if not sources or not rows:
        return {}

    def extract(chunk):
        stats = {}
        for axis, (a, b) in sources.items():
            err = _chunk_values(chunk, a)
            if b is not None:
                err = err - _chunk_values(chunk, b)
            stats[axis] = RunningStats.from_values(err)
        return stats

    merged = fold_chunks(rows, settings["chunk_size"], extract, settings["yield_every"])
    results = {}
    for axis, stats in merged.items():
        if stats.count == 0:
            continue
        results[axis] = {
            "rms_error": stats.rms,
            "mean_error": stats.mean_abs,
            "max_error": stats.max_abs,
            "std_deviation": stats.std,
            "samples": stats.count,
        }
    return results


def pid_contributions(rows, signals, settings=None):
    """Mean |P|, |I|, |D|, |F| per axis and each term's share of the total."""
    if settings is None:
        settings = DEFAULT_SETTINGS
    wanted = {(axis, term): signals[axis][term]
              for axis in AXES for term in ("p", "i", "d", "f")
              if signals.get(axis, {}).get(term)}
    if not wanted or not rows:
        return {}

    def extract(chunk):
        return {key: RunningStats.from_values(_chunk_values(chunk, col))
                for key, col in wanted.items()}

    merged = fold_chunks(rows, settings["chunk_size"], extract, settings["yield_every"])
    results = {}
    for axis in AXES:
        means = {term: merged[(axis, term)].mean_abs
                 for term in ("p", "i", "d", "f") if (axis, term) in merged}
        if not means:
            continue
        total = sum(means.values())
        results[axis] = {
            "mean_abs": means,
            "share": {term: safe_div(v, total) for term, v in means.items()},
        }
    return results


def stick_activity(setpoint, norm=10.0):
    """0..1 score of how busy the sticks were (mean per-sample change)."""
    sp = np.asarray(setpoint, dtype=np.float64)
    sp = sp[np.isfinite(sp)]
    if len(sp) < 2:
        return 0.0
    return float(min(1.0, np.mean(np.abs(np.diff(sp))) / norm))


def noise_level(gyro, norm=500.0, window=5):
    """0..1 score from the average variance of short gyro windows."""
    g = np.asarray(gyro, dtype=np.float64)
    g = g[np.isfinite(g)]
    if len(g) <= window:
        return 0.0
    windows = np.lib.stride_tricks.sliding_window_view(g, window)[:len(g) - window]
    return float(min(1.0, np.mean(np.var(windows, axis=1)) / norm))


def flight_character(setpoint, gyro, settings=None):
    if settings is None:
        settings = DEFAULT_SETTINGS
    return {
        "stick_activity": stick_activity(setpoint, settings["stick_activity_norm"]),
        "noise_level": noise_level(gyro, settings["variance_norm"]),
    }
