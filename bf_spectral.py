"""
Blackbox Tuner - Spectral Engine
────────────────────────────────
Hann window, fixed-size FFT, peak picking and cross-segment clustering.

A long log is split into non-overlapping FFT-size windows spread evenly
across the flight; peaks from every window are clustered so a resonance
that shows up in most of the flight outranks a one-off transient. A log
shorter than one window is simply zero-padded into a single segment.
"""

import logging

import numpy as np
from scipy.fft import rfft, rfftfreq

from bf_errors import safe_div

log = logging.getLogger("bftune.spectral")

# Noise classes used to pick a notch Q. Checked in order.
NOISE_CLASSES = [
    ("narrowband_stable", 500),
    ("mediumband_stable", 300),
    ("wideband_or_unstable", 120),
    ("standard", 250),
]


# ─── Window / FFT ────────────────────────────────────────────────────────────

def hann_window(samples):
    x = np.asarray(samples, dtype=np.float64)
    n = len(x)
    if n <= 1:
        return x.copy()
    i = np.arange(n)
    return x * (0.5 * (1.0 - np.cos(2.0 * np.pi * i / (n - 1))))


def is_power_of_two(n):
    return n >= 2 and (n & (n - 1)) == 0


def fft(samples, size, sample_rate=1.0):
    """Amplitude spectrum of `samples` over bins [0, size/2).

    Input shorter than `size` is zero-padded, longer input is truncated.
    Magnitude is normalized as |X| / (size/2) so a full-scale sine of
    amplitude A reads as A (before windowing losses).

    Returns:
        {"freqs", "magnitude", "phase", "sample_rate", "size"}
    """
    if not is_power_of_two(int(size)):
        raise ValueError(f"FFT size must be a power of two, got {size}")
    size = int(size)
    buf = np.zeros(size, dtype=np.float64)
    x = np.asarray(samples, dtype=np.float64)[:size]
    buf[:len(x)] = np.nan_to_num(x)
    spec = rfft(buf)[:size // 2]
    return {
        "freqs": rfftfreq(size, d=1.0 / sample_rate)[:size // 2],
        "magnitude": np.abs(spec) / (size / 2.0),
        "phase": np.angle(spec),
        "sample_rate": float(sample_rate),
        "size": size,
    }


def magnitude_at(spectrum, frequency):
    """Magnitude at the bin nearest `frequency` (0 outside the spectrum)."""
    freqs = spectrum["freqs"]
    if len(freqs) < 2 or frequency < 0:
        return 0.0
    idx = int(round(frequency / (freqs[1] - freqs[0])))
    if idx >= len(freqs):
        return 0.0
    return float(spectrum["magnitude"][idx])


def band_energy(spectrum, lo_hz, hi_hz=None):
    freqs = spectrum["freqs"]
    mask = freqs >= lo_hz
    if hi_hz is not None:
        mask &= freqs <= hi_hz
    mag = spectrum["magnitude"][mask]
    return float(np.dot(mag, mag))


# ─── Peaks ───────────────────────────────────────────────────────────────────

def find_dominant_peaks(spectrum, magnitude_threshold=0.01, max_peaks=10,
                        min_freq=None, max_freq=None):
    """Strict local maxima above the threshold, strongest first."""
    mag = spectrum["magnitude"]
    if len(mag) < 3:
        return []
    centre = mag[1:-1]
    is_peak = (centre > mag[:-2]) & (centre > mag[2:]) & (centre > magnitude_threshold)
    bins = np.nonzero(is_peak)[0] + 1
    freqs = spectrum["freqs"]
    if min_freq is not None:
        bins = bins[freqs[bins] >= min_freq]
    if max_freq is not None:
        bins = bins[freqs[bins] <= max_freq]
    order = np.argsort(-mag[bins], kind="stable")[:max_peaks]
    return [{"frequency": float(freqs[b]), "magnitude": float(mag[b]),
             "phase": float(spectrum["phase"][b]), "bin": int(b)}
            for b in bins[order]]


def cluster_frequencies(peaks_per_segment, tolerance_hz=2.0, segment_count=None):
    """Group peaks from several segments into dominant frequencies.

    Each peak joins the nearest existing cluster within tolerance (the
    cluster frequency becomes the magnitude-weighted running mean) or starts
    a new one. A cluster's weight is the number of segments it appeared in.

    Returns:
        List of {frequency, magnitude, weight, occurrence_rate}, ranked by
        weight then magnitude.
    """
    if segment_count is None:
        segment_count = len(peaks_per_segment)
    clusters = []
    for seg_idx, peaks in enumerate(peaks_per_segment):
        for peak in peaks:
            f, m = peak["frequency"], peak["magnitude"]
            best, best_dist = None, None
            for c in clusters:
                dist = abs(c["frequency"] - f)
                if dist <= tolerance_hz and (best_dist is None or dist < best_dist):
                    best, best_dist = c, dist
            if best is None:
                clusters.append({"frequency": f, "mag_sum": m, "hits": 1,
                                 "segments": {seg_idx}})
                continue
            total = best["mag_sum"] + m
            if total > 0:
                best["frequency"] = (best["frequency"] * best["mag_sum"] + f * m) / total
            best["mag_sum"] = total
            best["hits"] += 1
            best["segments"].add(seg_idx)

    out = []
    for c in clusters:
        weight = len(c["segments"])
        out.append({
            "frequency": float(c["frequency"]),
            "magnitude": float(c["mag_sum"] / c["hits"]),
            "weight": weight,
            "occurrence_rate": float(min(1.0, safe_div(weight, segment_count))),
        })
    out.sort(key=lambda c: (c["weight"], c["magnitude"]), reverse=True)
    return out


def noise_width(spectrum, peak_bin):
    """Width in Hz between the -3 dB (70.7%) points around a peak."""
    mag = spectrum["magnitude"]
    freqs = spectrum["freqs"]
    if not 0 <= peak_bin < len(mag) or len(freqs) < 2:
        return 0.0
    threshold = mag[peak_bin] * 0.707
    left = peak_bin
    while left > 0 and mag[left - 1] >= threshold:
        left -= 1
    right = peak_bin
    while right < len(mag) - 1 and mag[right + 1] >= threshold:
        right += 1
    # One bin of width even when both neighbours drop below threshold.
    return float((right - left + 1) * (freqs[1] - freqs[0]))


def classify_noise(width_hz, stability):
    """Noise category and the notch Q that suits it."""
    if width_hz < 5 and stability > 0.8:
        return NOISE_CLASSES[0]
    if width_hz < 10 and stability > 0.6:
        return NOISE_CLASSES[1]
    if width_hz > 20 or stability < 0.4:
        return NOISE_CLASSES[2]
    return NOISE_CLASSES[3]


# ─── Multi-Segment Analysis ──────────────────────────────────────────────────

def segment_bounds(n_samples, fft_size, max_segments):
    """Start offsets of non-overlapping windows spread across the signal."""
    if n_samples <= 0:
        return []
    available = n_samples // fft_size
    if available <= 1:
        return [0]
    count = min(available, max(1, int(max_segments)))
    spacing = (n_samples - fft_size) / max(1, count - 1) if count > 1 else 0
    return [int(round(k * spacing)) for k in range(count)]


def analyze_spectrum(samples, sample_rate, fft_size=1024, max_segments=8,
                     peak_threshold=0.01, max_peaks=10, tolerance_hz=2.0,
                     min_freq=None, max_freq=None):
    """Windowed multi-segment spectrum with clustered dominant frequencies.

    Returns dict with the averaged spectrum, per-segment spectra and peaks,
    and `dominant` (clustered, with occurrence rates).
    """
    x = np.asarray(samples, dtype=np.float64)
    x = x[np.isfinite(x)]
    starts = segment_bounds(len(x), fft_size, max_segments)
    if not starts:
        return {"segment_count": 0, "spectrum": None, "segments": [],
                "segment_peaks": [], "dominant": [], "peaks": []}

    segments, segment_peaks = [], []
    for start in starts:
        seg = x[start:start + fft_size]
        seg = seg - np.mean(seg)
        spec = fft(hann_window(seg), fft_size, sample_rate)
        segments.append(spec)
        segment_peaks.append(find_dominant_peaks(spec, peak_threshold, max_peaks,
                                                 min_freq=min_freq, max_freq=max_freq))

    averaged = dict(segments[0])
    averaged["magnitude"] = np.mean([s["magnitude"] for s in segments], axis=0)
    # Circular mean keeps phase meaningful when segments disagree.
    averaged["phase"] = np.angle(np.mean([np.exp(1j * s["phase"]) for s in segments], axis=0))

    dominant = cluster_frequencies(segment_peaks, tolerance_hz, len(segments))
    log.debug(f"{len(segments)} segment(s), {len(dominant)} dominant frequencies")
    return {
        "segment_count": len(segments),
        "spectrum": averaged,
        "segments": segments,
        "segment_peaks": segment_peaks,
        "dominant": dominant[:max_peaks],
        "peaks": find_dominant_peaks(averaged, peak_threshold, max_peaks,
                                     min_freq=min_freq, max_freq=max_freq),
    }


# ─── Harmonic Distortion ─────────────────────────────────────────────────────

def _is_harmonic(freq, fundamental, tolerance):
    if fundamental <= 0:
        return False, 0
    n = int(round(freq / fundamental))
    return abs(freq - n * fundamental) / fundamental < tolerance, n


def harmonic_distortion(dominant, tolerance=0.1):
    """THD of a peak list sorted strongest-first.

    The strongest entry is the fundamental. Anything near n*f0 with n > 1
    counts as a harmonic; a strong non-harmonic among the top five means
    the axis is oscillating on its own rather than ringing.
    """
    if not dominant:
        return {"thd": 0.0, "stability_score": 0.0, "oscillation_detected": False,
                "fundamental": 0.0}
    ranked = sorted(dominant, key=lambda d: d["magnitude"], reverse=True)
    fund = ranked[0]
    f0, m0 = fund["frequency"], fund["magnitude"]

    harmonic_power = 0.0
    for d in ranked[1:]:
        harmonic, n = _is_harmonic(d["frequency"], f0, tolerance)
        if harmonic and n > 1:
            harmonic_power += d["magnitude"] ** 2
    thd = 100.0 * safe_div(np.sqrt(harmonic_power), m0) if harmonic_power > 0 else 0.0

    oscillation = False
    for d in ranked[1:5]:
        harmonic, _ = _is_harmonic(d["frequency"], f0, tolerance)
        if not harmonic and safe_div(d["magnitude"], m0) > 0.15:
            oscillation = True
            break

    return {"thd": float(thd), "stability_score": float(100.0 - min(100.0, thd)),
            "oscillation_detected": oscillation, "fundamental": float(f0)}
