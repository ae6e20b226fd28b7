"""
Blackbox Tuner - Filter Analysis
────────────────────────────────
Looks at what the gyro/D-term lowpasses, the dynamic notch and the RPM
filter are doing in this log, and where the noise actually starts.

Effectiveness numbers are measured wherever the log allows it: energy of
the unfiltered gyro vs the filtered gyro in the relevant band. Logs without
gyroUnfilt can't be measured and report 0.
"""

import logging
import math

import numpy as np

from bf_columns import column_values, finite_only
from bf_config import AXES, DEFAULT_SETTINGS, metadata_number
from bf_spectral import (analyze_spectrum, band_energy, classify_noise, fft,
                         find_dominant_peaks, hann_window, noise_width)

log = logging.getLogger("bftune.filters")

DEFAULT_NOISE_START_HZ = 100.0
MIN_CUTOFF_HZ = 50
DEFAULT_MOTOR_POLES = 14
DEFAULT_RPM_HARMONICS = 3
MOTOR_FFT_SIZE = 512
NOTCH_DEDUP_HZ = 5.0
MAX_NOTCH_REPORTED = 5


# ─── Phase Lag ───────────────────────────────────────────────────────────────

def phase_delay_ms(cutoff_hz):
    """Group delay of a PT1 at DC, 1000/(2π·fc) ms."""
    if not cutoff_hz or cutoff_hz <= 0:
        return 0.0
    return 1000.0 / (2 * math.pi * cutoff_hz)


def _phase_shift(filter_type, freq_hz, cutoff_hz, q=None):
    """Phase (degrees, negative = lag) of a lowpass at freq_hz."""
    if cutoff_hz <= 0 or freq_hz <= 0:
        return 0.0
    filter_type = str(filter_type).upper()
    if "BIQUAD" in filter_type:
        # H(s) = wc² / (s² + (wc/q)s + wc²)
        q = q or 0.5
        w, wc = 2 * math.pi * freq_hz, 2 * math.pi * cutoff_hz
        return -math.degrees(math.atan2((w / q) * wc, wc * wc - w * w))
    stages = {"PT1": 1, "PT2": 2, "PT3": 3}.get(filter_type, 1)
    return -stages * math.degrees(math.atan2(freq_hz, cutoff_hz))


def filter_phase_lag(cutoff_hz, signal_freq, filter_type="PT1", q=None):
    """Phase lag of one lowpass at a signal frequency.

    Returns:
        {"degrees": phase (negative), "ms": equivalent time delay}
    """
    if not cutoff_hz or cutoff_hz <= 0 or signal_freq <= 0:
        return {"degrees": 0.0, "ms": 0.0}
    deg = _phase_shift(filter_type, signal_freq, cutoff_hz, q)
    return {"degrees": deg, "ms": abs(deg) / 360.0 / signal_freq * 1000.0}


# ─── Cutoff Recommendations ──────────────────────────────────────────────────

def noise_start_frequency(gyro_by_axis, sample_rate, fft_size=1024):
    """First frequency where the combined gyro spectrum climbs out of the floor.

    Magnitude of the three axes combined (sqrt(x²+y²+z²)), raw FFT magnitude
    smoothed over ±5 bins. Walking up from bin 10, the noise starts where the
    next 3 bins average more than twice the current 3 and more than 10.
    """
    traces = [np.asarray(g, dtype=np.float64)[:fft_size]
              for g in gyro_by_axis.values() if g is not None and len(g)]
    if not traces:
        return DEFAULT_NOISE_START_HZ
    n = min(len(t) for t in traces)
    combined = np.sqrt(np.sum([np.nan_to_num(t[:n]) ** 2 for t in traces], axis=0))
    if n < 32:
        return DEFAULT_NOISE_START_HZ
    combined = combined - np.mean(combined)
    spec = fft(combined, fft_size, sample_rate)
    raw = spec["magnitude"] * (fft_size / 2.0)

    kernel = np.ones(11)
    counts = np.convolve(np.ones(len(raw)), kernel, mode="same")
    smoothed = np.convolve(raw, kernel, mode="same") / counts

    for i in range(10, len(smoothed) - 6):
        current = np.mean(smoothed[i:i + 3])
        upcoming = np.mean(smoothed[i + 3:i + 6])
        if upcoming > 2 * current and upcoming > 10:
            return float(spec["freqs"][i + 3])
    return DEFAULT_NOISE_START_HZ


def _cutoff_below(noise_start_hz):
    return max(MIN_CUTOFF_HZ, int(round(noise_start_hz * 0.8)))


def recommend_gyro_cutoff(gyro_by_axis, sample_rate, fft_size=1024):
    """Gyro lowpass at 80% of the noise start, never below 50 Hz."""
    return _cutoff_below(noise_start_frequency(gyro_by_axis, sample_rate, fft_size))


def recommend_dterm_cutoff(gyro_cutoff):
    return max(MIN_CUTOFF_HZ, int(round(gyro_cutoff * 0.7)))


def dterm_effectiveness(cutoff_hz):
    """Approximate D-term lowpass effectiveness from the cutoff alone.

    Low cutoffs filter well but cost phase, high ones let noise into D; the
    sweet spot is 70-150 Hz.
    """
    if not cutoff_hz or cutoff_hz <= 0:
        return 0.0
    if cutoff_hz < 70:
        value = 0.5 + cutoff_hz / 70.0 * 0.3
    elif cutoff_hz > 150:
        value = 0.8 - (cutoff_hz - 150) / 100.0 * 0.3
    else:
        value = 0.8
    return float(min(1.0, max(0.0, value)))


# ─── Measured Effectiveness ──────────────────────────────────────────────────

def _paired(unfilt, filt):
    """Aligned finite samples of an unfiltered/filtered pair."""
    if unfilt is None or filt is None:
        return None, None
    n = min(len(unfilt), len(filt))
    if n == 0:
        return None, None
    return finite_only(np.asarray(unfilt[:n], dtype=np.float64),
                       np.asarray(filt[:n], dtype=np.float64))


def _spectra_pair(unfilt, filt, sample_rate, settings):
    u, f = _paired(unfilt, filt)
    if u is None or len(u) == 0:
        return None, None
    kw = dict(fft_size=settings["fft_size"], max_segments=settings["max_segments"],
              peak_threshold=settings["peak_threshold"], max_peaks=settings["max_peaks"],
              tolerance_hz=settings["cluster_tolerance_hz"])
    return (analyze_spectrum(u, sample_rate, **kw)["spectrum"],
            analyze_spectrum(f, sample_rate, **kw)["spectrum"])


def energy_reduction(spec_unfilt, spec_filt, lo_hz, hi_hz=None):
    """1 − E_filtered/E_unfiltered in a band, clipped to [0, 1]."""
    before = band_energy(spec_unfilt, lo_hz, hi_hz)
    if before <= 0:
        return 0.0
    after = band_energy(spec_filt, lo_hz, hi_hz)
    return float(min(1.0, max(0.0, 1.0 - after / before)))


def _mean_or_zero(values):
    return float(np.mean(values)) if values else 0.0


# ─── Per-Filter Analysis ─────────────────────────────────────────────────────

def gyro_filter_analysis(gyro, gyro_unfilt, sample_rate, current_cutoff, settings=None):
    """Gyro lowpass: measured effectiveness, phase cost, recommended cutoff.

    Args:
        gyro / gyro_unfilt: {axis: ndarray or None}.
    """
    if settings is None:
        settings = DEFAULT_SETTINGS
    band = settings["signal_band_hz"]
    reductions, abs_diffs = [], []
    for axis in AXES:
        spec_u, spec_f = _spectra_pair(gyro_unfilt.get(axis), gyro.get(axis),
                                       sample_rate, settings)
        if spec_u is None:
            continue
        reductions.append(energy_reduction(spec_u, spec_f, band))
        u, f = _paired(gyro_unfilt[axis], gyro[axis])
        abs_diffs.append(float(np.mean(np.abs(u - f))))
    if not reductions:
        log.debug("No gyroUnfilt/gyro pairs; gyro filter effectiveness not measurable")

    source = {a: (gyro_unfilt.get(a) if gyro_unfilt.get(a) is not None else gyro.get(a))
              for a in AXES}
    source = {a: v for a, v in source.items() if v is not None and len(v)}
    noise_start = None
    recommended = None
    if source:
        noise_start = noise_start_frequency(source, sample_rate, settings["fft_size"])
        recommended = _cutoff_below(noise_start)

    return {
        "current_cutoff": current_cutoff,
        "effectiveness": _mean_or_zero(reductions),
        "noise_reduction": _mean_or_zero(abs_diffs),
        "measured": bool(reductions),
        "phase_delay": phase_delay_ms(current_cutoff),
        "phase_lag": filter_phase_lag(current_cutoff, band),
        "noise_start_hz": noise_start,
        "recommended_frequency": recommended,
    }


def dterm_filter_analysis(current_cutoff, gyro_recommendation, settings=None):
    if settings is None:
        settings = DEFAULT_SETTINGS
    return {
        "current_cutoff": current_cutoff,
        "effectiveness": dterm_effectiveness(current_cutoff),
        "phase_delay": phase_delay_ms(current_cutoff),
        "phase_lag": filter_phase_lag(current_cutoff, settings["signal_band_hz"]),
        "recommended_frequency": (recommend_dterm_cutoff(gyro_recommendation)
                                  if gyro_recommendation else None),
    }


def notch_analysis(gyro, gyro_unfilt, sample_rate, min_hz, max_hz, settings=None):
    """Noise peaks inside the dynamic notch range, classified for Q.

    Uses the unfiltered gyro where the log has it. Peak stability is the
    share of analysis segments the peak showed up in.
    """
    if settings is None:
        settings = DEFAULT_SETTINGS
    empty = {"enabled": False, "effectiveness": 0.0, "identified_noise_frequencies": [],
             "classified_noises": [], "recommended": None}
    if min_hz <= 0 or max_hz <= 0 or max_hz <= min_hz:
        return empty

    found = []
    spectra = {}
    for axis in AXES:
        sig = gyro_unfilt.get(axis)
        if sig is None:
            sig = gyro.get(axis)
        if sig is None or len(sig) == 0:
            continue
        result = analyze_spectrum(sig, sample_rate, settings["fft_size"],
                                  settings["max_segments"], settings["peak_threshold"],
                                  settings["max_peaks"], settings["cluster_tolerance_hz"],
                                  min_freq=min_hz, max_freq=max_hz)
        if result["spectrum"] is None:
            continue
        spectra[axis] = result["spectrum"]
        for dom in result["dominant"]:
            if any(abs(p["frequency"] - dom["frequency"]) < NOTCH_DEDUP_HZ for p in found):
                continue
            found.append({"frequency": dom["frequency"], "magnitude": dom["magnitude"],
                          "stability": dom["occurrence_rate"], "axis": axis})
    found.sort(key=lambda p: p["magnitude"], reverse=True)

    classified = []
    for peak in found:
        spec = spectra[peak["axis"]]
        step = spec["freqs"][1] - spec["freqs"][0]
        width = noise_width(spec, int(round(peak["frequency"] / step)))
        noise_class, q = classify_noise(width, peak["stability"])
        classified.append(dict(peak, noise_width=width, noise_class=noise_class,
                               recommended_q=q))

    # Measured notch effect: energy around each peak, before vs after filtering
    reductions = []
    for axis in AXES:
        spec_u, spec_f = _spectra_pair(gyro_unfilt.get(axis), gyro.get(axis),
                                       sample_rate, settings)
        if spec_u is None:
            continue
        for peak in classified:
            half = max(peak["noise_width"] / 2.0, NOTCH_DEDUP_HZ)
            reductions.append(energy_reduction(spec_u, spec_f, peak["frequency"] - half,
                                               peak["frequency"] + half))

    recommended = None
    if classified:
        freqs = [p["frequency"] for p in classified]
        recommended = {
            "dyn_notch_min_hz": int(math.floor(max(10.0, min(freqs)))),
            "dyn_notch_max_hz": int(math.ceil(min(500.0, max(freqs)))),
            "dyn_notch_count": min(5, max(3, len(classified))),
            "dyn_notch_q": int(round(np.mean([p["recommended_q"] for p in classified]))),
        }
        log.info(f"Notch range peaks: {', '.join(f'{f:.0f}Hz' for f in freqs[:5])}")

    return {
        "enabled": True,
        "effectiveness": _mean_or_zero(reductions),
        "identified_noise_frequencies": found[:MAX_NOTCH_REPORTED],
        "classified_noises": classified,
        "recommended": recommended,
    }


def rpm_analysis(rows, signals, metadata, gyro, gyro_unfilt, sample_rate, settings=None):
    """RPM filter harmonics from logged eRPM, motor spectra, measured effect."""
    if settings is None:
        settings = DEFAULT_SETTINGS
    poles = metadata_number(metadata, "motor_poles", DEFAULT_MOTOR_POLES) or DEFAULT_MOTOR_POLES
    n_harmonics = int(metadata_number(metadata, "gyro_rpm_notch_harmonics", 0))
    if n_harmonics <= 0:
        n_harmonics = DEFAULT_RPM_HARMONICS

    motors = []
    for idx, col in enumerate(signals.get("erpm", [])):
        erpm = column_values(rows, col)
        erpm = erpm[np.isfinite(erpm) & (erpm > 0)]
        if len(erpm) == 0:
            continue
        avg = float(np.mean(erpm))
        base = avg * poles / (60 * 2)
        motors.append({"motor": idx, "avg_erpm": avg, "base_frequency": base,
                       "harmonics": [base * (n + 1) for n in range(n_harmonics)]})

    motor_spectra = []
    for idx, col in enumerate(signals.get("motors", [])):
        values = column_values(rows, col)
        values = values[np.isfinite(values)][:MOTOR_FFT_SIZE]
        if len(values) < 8:
            continue
        values = values - np.mean(values)
        spec = fft(hann_window(values), MOTOR_FFT_SIZE, sample_rate)
        motor_spectra.append({"motor": idx, "peaks": find_dominant_peaks(
            spec, settings["peak_threshold"], 3)})

    reductions = []
    if motors:
        for axis in AXES:
            spec_u, spec_f = _spectra_pair(gyro_unfilt.get(axis), gyro.get(axis),
                                           sample_rate, settings)
            if spec_u is None:
                continue
            step = spec_u["freqs"][1] - spec_u["freqs"][0]
            for m in motors:
                for h in m["harmonics"]:
                    if h >= sample_rate / 2:
                        continue
                    reductions.append(energy_reduction(spec_u, spec_f, h - step, h + step))

    enabled = bool(motors) or bool(metadata_number(metadata, "dshot_bidir", 0))
    return {
        "enabled": enabled,
        "motor_poles": int(poles),
        "harmonics_count": n_harmonics,
        "motors": motors,
        "motor_spectra": motor_spectra,
        "effectiveness": _mean_or_zero(reductions),
    }


# ─── Entry Point ─────────────────────────────────────────────────────────────

def analyze_filters(rows, signals, metadata, sample_rate, settings=None):
    """Gyro/D-term lowpass, dynamic notch and RPM filter analysis."""
    if settings is None:
        settings = DEFAULT_SETTINGS
    gyro = {a: column_values(rows, signals[a]["gyro"]) for a in AXES}
    gyro_unfilt = {a: column_values(rows, signals[a]["gyro_unfilt"]) for a in AXES}

    gyro_filters = gyro_filter_analysis(gyro, gyro_unfilt, sample_rate,
                                        metadata_number(metadata, "gyro_lowpass_hz"), settings)
    dterm_filters = dterm_filter_analysis(metadata_number(metadata, "dterm_lowpass_hz"),
                                          gyro_filters["recommended_frequency"], settings)
    notch_filters = notch_analysis(gyro, gyro_unfilt, sample_rate,
                                   metadata_number(metadata, "dyn_notch_min_hz"),
                                   metadata_number(metadata, "dyn_notch_max_hz"), settings)
    rpm_filters = rpm_analysis(rows, signals, metadata, gyro, gyro_unfilt, sample_rate,
                               settings)
    log.debug(f"Gyro filter effectiveness {gyro_filters['effectiveness']:.2f}, "
              f"noise starts at {gyro_filters['noise_start_hz']}Hz")
    return {
        "gyro_filters": gyro_filters,
        "dterm_filters": dterm_filters,
        "notch_filters": notch_filters,
        "rpm_filters": rpm_filters,
    }
