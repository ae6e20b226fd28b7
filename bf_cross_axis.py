"""
Blackbox Tuner - Cross-Axis Coupling
────────────────────────────────────
Roll, pitch and yaw share a frame and four motors, so a resonance on one
axis usually shows up on the others. This module scores how strongly each
axis pair is coupled, finds the frequencies they share, and works out
which axis the oscillation starts on so the correction goes there.
"""

import logging
import math
from collections import Counter

import numpy as np

from bf_config import AXES, DEFAULT_SETTINGS
from bf_errors import safe_div
from bf_spectral import analyze_spectrum

log = logging.getLogger("bftune.cross_axis")

AXIS_PAIRS = [("roll", "pitch"), ("roll", "yaw"), ("pitch", "yaw")]


def wrap_phase(phase):
    """Wrap an angle into [-π, π]."""
    return float((phase + math.pi) % (2 * math.pi) - math.pi)


def normalized_cross_correlation(a, b):
    """Zero-lag correlation of the standardized signals, in [-1, 1]."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    n = min(len(a), len(b))
    if n < 2:
        return 0.0
    a, b = a[:n], b[:n]
    mask = np.isfinite(a) & np.isfinite(b)
    a, b = a[mask], b[mask]
    if len(a) < 2:
        return 0.0
    sa, sb = np.std(a), np.std(b)
    if sa < 1e-12 or sb < 1e-12:
        return 0.0
    return float(np.mean((a - a.mean()) / sa * ((b - b.mean()) / sb)))


def phase_relation(peaks_a, peaks_b, match_pct=0.05):
    """Magnitude-weighted mean phase difference of matching peaks."""
    weighted, total = 0.0, 0.0
    for pa in peaks_a:
        if pa["frequency"] <= 0:
            continue
        for pb in peaks_b:
            if abs(pa["frequency"] - pb["frequency"]) / pa["frequency"] < match_pct:
                weight = pa["magnitude"] * pb["magnitude"]
                weighted += wrap_phase(pa["phase"] - pb["phase"]) * weight
                total += weight
    return safe_div(weighted, total)


def _count_common(freqs_a, freqs_b, tolerance_hz):
    return sum(1 for fa in freqs_a
               if any(abs(fa["frequency"] - fb["frequency"]) < tolerance_hz for fb in freqs_b))


def coupling_strength(freqs_a, freqs_b, correlation, phase, tolerance_hz=5.0):
    """0.4·|corr| + 0.3·frequency overlap + 0.3·phase coherence, in [0, 1]."""
    if not freqs_a or not freqs_b:
        freq_similarity = 0.0
    else:
        freq_similarity = safe_div(_count_common(freqs_a, freqs_b, tolerance_hz),
                                   min(len(freqs_a), len(freqs_b)))
    coherence = math.cos(phase) ** 2
    score = 0.4 * abs(correlation) + 0.3 * freq_similarity + 0.3 * coherence
    return float(min(1.0, max(0.0, score)))


def common_harmonics(freqs_by_axis, tolerance_hz=5.0):
    """Frequencies that appear on two or more axes.

    Args:
        freqs_by_axis: {"roll": [peak, ...], "pitch": [...], "yaw": [...]}

    Returns:
        [{frequency, magnitude, axes}], strongest first.
    """
    found = []
    for i, axis in enumerate(AXES):
        for f1 in freqs_by_axis.get(axis) or []:
            if any(abs(c["frequency"] - f1["frequency"]) < tolerance_hz for c in found):
                continue
            axes, matches = [axis], [f1]
            for other in AXES[i + 1:]:
                for f2 in freqs_by_axis.get(other) or []:
                    if abs(f1["frequency"] - f2["frequency"]) < tolerance_hz:
                        axes.append(other)
                        matches.append(f2)
                        break
            if len(axes) >= 2:
                found.append({
                    "frequency": float(np.mean([m["frequency"] for m in matches])),
                    "magnitude": float(np.mean([m["magnitude"] for m in matches])),
                    "axes": axes,
                })
    found.sort(key=lambda c: c["magnitude"], reverse=True)
    return found


def oscillation_propagation(segment_spectra_by_axis, harmonics):
    """Which axis leads each shared oscillation.

    For every harmonic and every analysis segment, the axis with the largest
    magnitude at that bin is the source; the others are described by their
    phase lag and magnitude ratio relative to it.

    Returns:
        {"events": [...], "source_counts": {axis: n}, "primary_source": axis|None}
    """
    events = []
    counts = Counter()
    for harmonic in harmonics:
        f = harmonic["frequency"]
        axes = [a for a in harmonic["axes"] if segment_spectra_by_axis.get(a)]
        if len(axes) < 2 or f <= 0:
            continue
        n_segments = min(len(segment_spectra_by_axis[a]) for a in axes)
        for seg in range(n_segments):
            readings = {}
            for axis in axes:
                spec = segment_spectra_by_axis[axis][seg]
                b = int(math.floor(f * spec["size"] / spec["sample_rate"]))
                if b < len(spec["magnitude"]):
                    readings[axis] = (float(spec["magnitude"][b]), float(spec["phase"][b]))
            if len(readings) < 2:
                continue
            source = max(readings, key=lambda a: readings[a][0])
            src_mag, src_phase = readings[source]
            if src_mag <= 0:
                continue
            counts[source] += 1
            relationships = {}
            for axis, (mag, phase) in readings.items():
                if axis == source:
                    continue
                diff = wrap_phase(phase - src_phase)
                relationships[axis] = {
                    "phase_difference": diff,
                    "time_delay_ms": diff / (2 * math.pi) * 1000.0 / f,
                    "magnitude_ratio": safe_div(mag, src_mag),
                }
            events.append({"frequency": f, "segment": seg, "source_axis": source,
                           "relationships": relationships})

    primary = None
    if counts:
        # Ties go to the axis order, not dict order.
        best = max(counts.values())
        primary = next(a for a in AXES if counts.get(a) == best)
    return {"events": events, "source_counts": dict(counts), "primary_source": primary}


def analyze_axis_interactions(signals_by_axis, sample_rate, settings=None):
    """Full coupling pass over the gyro traces of all available axes."""
    if settings is None:
        settings = DEFAULT_SETTINGS
    spectra = {}
    for axis in AXES:
        sig = signals_by_axis.get(axis)
        if sig is None or len(sig) == 0:
            continue
        spectra[axis] = analyze_spectrum(
            sig, sample_rate, settings["fft_size"], settings["max_segments"],
            settings["peak_threshold"], settings["max_peaks"], settings["cluster_tolerance_hz"])

    tol = settings["harmonic_tolerance_hz"]
    pairs = {}
    for a, b in AXIS_PAIRS:
        if a not in spectra or b not in spectra:
            continue
        corr = normalized_cross_correlation(signals_by_axis[a], signals_by_axis[b])
        phases = [phase_relation(pa, pb, settings["phase_match_pct"])
                  for pa, pb in zip(spectra[a]["segment_peaks"], spectra[b]["segment_peaks"])]
        phase = wrap_phase(float(np.angle(np.mean(np.exp(1j * np.array(phases)))))) if phases else 0.0
        strength = coupling_strength(spectra[a]["dominant"], spectra[b]["dominant"],
                                     corr, phase, tol)
        pairs[f"{a}_{b}"] = {
            "correlation": corr,
            "phase_relation": phase,
            "coupling_strength": strength,
            "strong": strength > settings["strong_coupling"],
        }

    harmonics = common_harmonics({a: s["dominant"] for a, s in spectra.items()}, tol)
    propagation = oscillation_propagation({a: s["segments"] for a, s in spectra.items()},
                                          harmonics)
    strong = [k for k, v in pairs.items() if v["strong"]]
    if strong:
        log.info(f"Strong axis coupling: {', '.join(strong)}")
    return {
        "pairs": pairs,
        "common_harmonics": harmonics,
        "propagation": propagation,
        "primary_source": propagation["primary_source"],
        "dominant": {a: s["dominant"] for a, s in spectra.items()},
    }
