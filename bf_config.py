"""
Blackbox Tuner - Settings
─────────────────────────
Every threshold the analysis uses lives here so it can be tuned per
firmware or per airframe without touching the algorithms.

The defaults were tuned against Betaflight-style logs (gyro in deg/s,
setpoint in deg/s, PID terms in raw firmware units). A JSON file with a
subset of keys can override them:

    bf_blackbox_analyzer.py flight.csv --settings my_quad.json
"""

import json
import logging
import math

log = logging.getLogger("bftune.config")

AXES = ["roll", "pitch", "yaw"]
PID_TERMS = ["p", "i", "d", "f"]

# ─── Analysis Settings ───────────────────────────────────────────────────────

DEFAULT_SETTINGS = {
    # Step detection / time domain
    "step_threshold": 30.0,          # setpoint jump between samples (raw units)
    "min_step_magnitude": 5.0,       # |target - start| at or below this is noise
    "response_window": 200,          # max samples collected per step
    "min_response_samples": 10,
    "startup_skip_ms": 5.0,          # ignore extrema in the first few ms
    "settle_band": 0.05,             # fraction of the step delta
    "settle_hold_samples": 10,

    # Spectral
    "fft_size": 1024,
    "max_segments": 8,
    "peak_threshold": 0.01,
    "max_peaks": 10,
    "cluster_tolerance_hz": 2.0,
    "harmonic_tolerance": 0.1,       # fraction of n*f0 for THD harmonics
    "signal_band_hz": 50.0,          # below this is flight, above is noise

    # Cross-axis
    "harmonic_tolerance_hz": 5.0,
    "phase_match_pct": 0.05,
    "strong_coupling": 0.6,

    # Flight character normalizers
    "variance_norm": 500.0,
    "stick_activity_norm": 10.0,

    # Streaming
    "chunk_size": 1000,
    "yield_every": 5,

    # Log timing when metadata has no looptime
    "default_looptime_us": 312,

    # Model-based synthesis
    "model_order": 1,                # 1, 2 or "arx"
    "arx_na": 2,
    "arx_nb": 2,
    "synthesis_method": "imc",       # imc, zn, cohen_coon, robust, genetic
    "imc_lambda": 0.2,
    "damping_ratio": 0.7,
    "robustness": 0.5,
    "population_size": 30,
    "generations": 20,
    "mutation_rate": 0.1,
    "sim_steps": 200,
    "seed": 0,

    # Execution
    "parallel_axes": False,
    "mode": "standard",              # standard or cinematic
}

# ─── Safety Limits ───────────────────────────────────────────────────────────
# Hard limits for every gain this tool writes. Nothing leaves the tool
# outside these ranges, whatever the analysis or the optimizer says.

SAFE_PID_LIMITS = {
    "roll":  {"p": (20, 120), "i": (40, 200), "d": (15, 80), "f": (0, 250)},
    "pitch": {"p": (20, 120), "i": (40, 200), "d": (15, 80), "f": (0, 250)},
    "yaw":   {"p": (10, 100), "i": (40, 200), "d": (0, 50),  "f": (0, 200)},
}

# Used when the log header carries no PID strings.
DEFAULT_PIDS = {
    "roll":  {"p": 40, "i": 50, "d": 25, "f": 80},
    "pitch": {"p": 40, "i": 50, "d": 25, "f": 80},
    "yaw":   {"p": 35, "i": 80, "d": 0,  "f": 60},
}

FILTER_KEYS = ["gyro_lowpass_hz", "dterm_lowpass_hz", "dyn_notch_count", "dyn_notch_q",
               "dyn_notch_min_hz", "dyn_notch_max_hz"]

SYNTHESIS_METHODS = ("imc", "zn", "cohen_coon", "robust", "genetic")


def get_settings(overrides=None):
    """Merge overrides on top of DEFAULT_SETTINGS.

    Args:
        overrides: dict of setting name to value. Unknown names are rejected
                   so a typo in a settings file doesn't silently do nothing.

    Returns:
        New settings dict.
    """
    settings = dict(DEFAULT_SETTINGS)
    if not overrides:
        return settings
    unknown = sorted(set(overrides) - set(DEFAULT_SETTINGS))
    if unknown:
        raise ValueError(f"Unknown setting(s): {', '.join(unknown)}")
    settings.update(overrides)
    if settings["synthesis_method"] not in SYNTHESIS_METHODS:
        raise ValueError(f"Unknown synthesis method: {settings['synthesis_method']}")
    if settings["mode"] not in ("standard", "cinematic"):
        raise ValueError(f"Unknown mode: {settings['mode']}")
    fft_size = int(settings["fft_size"])
    if fft_size < 2 or fft_size & (fft_size - 1):
        raise ValueError(f"fft_size must be a power of two, got {fft_size}")
    return settings


def load_settings(path):
    """Read a JSON override file and merge it with the defaults."""
    with open(path, "r") as f:
        overrides = json.load(f)
    if not isinstance(overrides, dict):
        raise ValueError(f"{path}: settings file must hold a JSON object")
    log.debug(f"Loaded {len(overrides)} setting override(s) from {path}")
    return get_settings(overrides)


def sample_rate_from_metadata(metadata, settings=None):
    """Sample rate in Hz from the header looptime (µs per sample)."""
    if settings is None:
        settings = DEFAULT_SETTINGS
    looptime = metadata_number(metadata, "looptime")
    if looptime <= 0:
        looptime = float(settings["default_looptime_us"])
    return 1e6 / looptime


def metadata_number(metadata, key, default=0.0):
    """Numeric header value, or `default` when absent or unparseable."""
    if not metadata:
        return default
    value = metadata.get(key)
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        log.debug(f"Header {key}={value!r} is not a number; using {default}")
        return default
    if not math.isfinite(number):
        log.debug(f"Header {key}={value!r} is not finite; using {default}")
        return default
    return number
