"""
Blackbox Tuner - Column Resolution
──────────────────────────────────
Blackbox CSV exports name the same signal differently depending on the
firmware version and the tool that decoded the log:

    gyroADC[0]  /  gyro[0]  /  gyroData[0]  /  roll_gyro  /  Gyro [roll]

Resolution is done once per header set into an axis table, so the analysis
never string-matches per row.
"""

import functools
import logging
import re

import numpy as np

from bf_config import AXES

log = logging.getLogger("bftune.columns")

EXPLORER_AXIS = ["roll", "pitch", "yaw"]

# ─── Alias Table ─────────────────────────────────────────────────────────────

def _axis_aliases():
    aliases = {}
    for idx, axis in enumerate(EXPLORER_AXIS):
        aliases[f"gyroADC[{idx}]"] = [f"gyro[{idx}]", f"gyroData[{idx}]", f"{axis}_gyro",
                                      f"gyro_{axis}", f"Gyro [{axis}]"]
        aliases[f"gyroUnfilt[{idx}]"] = [f"gyroRaw[{idx}]", f"{axis}_gyro_unfilt",
                                         f"Unfiltered Gyro [{axis}]"]
        aliases[f"setpoint[{idx}]"] = [f"setpoint_{axis}", f"{axis}_target", f"Setpoint [{axis}]"]
        aliases[f"rcCommand[{idx}]"] = [f"rc_command_{axis}", f"RC Command [{axis}]"]
        aliases[f"axisError[{idx}]"] = [f"error[{idx}]", f"{axis}_error", f"PID Error [{axis}]"]
        aliases[f"axisP[{idx}]"] = [f"pidP[{idx}]", f"{axis}_p", f"PID P [{axis}]"]
        aliases[f"axisI[{idx}]"] = [f"pidI[{idx}]", f"{axis}_i", f"PID I [{axis}]"]
        aliases[f"axisD[{idx}]"] = [f"pidD[{idx}]", f"{axis}_d", f"PID D [{axis}]"]
        aliases[f"axisF[{idx}]"] = [f"pidF[{idx}]", f"{axis}_f", f"PID Feedforward [{axis}]"]
    for idx in range(4):
        aliases[f"motor[{idx}]"] = [f"motor_{idx}", f"Motor [{idx + 1}]"]
        aliases[f"eRPM[{idx}]"] = [f"erpm[{idx}]", f"rpm[{idx}]", f"RPM [{idx + 1}]"]
    aliases["rcCommand[3]"] = ["throttle", "RC Command [throttle]"]
    aliases["time"] = ["time (us)", "time(us)", "time_us", "timestamp"]
    aliases["loopIteration"] = ["loop_iteration", "loopiteration"]
    return aliases


COLUMN_ALIASES = _axis_aliases()

# Reverse direction: an explorer-style name asked for by a caller also finds
# the firmware-style column.
for _canonical, _names in list(COLUMN_ALIASES.items()):
    for _name in _names:
        COLUMN_ALIASES.setdefault(_name, [])
        if _canonical not in COLUMN_ALIASES[_name]:
            COLUMN_ALIASES[_name].append(_canonical)


def _normalize(name):
    name = re.sub(r"\((us|ms|s)\)", "", str(name).lower())
    return re.sub(r"[^a-z0-9]", "", name)


# ─── Resolution ──────────────────────────────────────────────────────────────

def resolve(logical_name, headers):
    """Find the header that carries `logical_name`, or None.

    Order: exact, case-insensitive, alias table, then a punctuation-blind
    comparison of normalized names.
    """
    if not logical_name or not headers:
        return None
    headers = [str(h) for h in headers]
    if logical_name in headers:
        return logical_name

    lower = {h.strip().lower(): h for h in reversed(headers)}
    hit = lower.get(logical_name.strip().lower())
    if hit is not None:
        return hit

    candidates = [logical_name] + COLUMN_ALIASES.get(logical_name, [])
    for alias in candidates[1:]:
        hit = lower.get(alias.strip().lower())
        if hit is not None:
            return hit

    normalized = {_normalize(h): h for h in reversed(headers)}
    for alias in candidates:
        hit = normalized.get(_normalize(alias))
        if hit is not None:
            return hit
    return None


@functools.lru_cache(maxsize=32)
def _axis_signals_cached(headers):
    table = {}
    for idx, axis in enumerate(AXES):
        rc = resolve(f"rcCommand[{idx}]", headers)
        # Older logs only carry rcCommand; it stands in for setpoint.
        sp = resolve(f"setpoint[{idx}]", headers) or rc
        table[axis] = {
            "index": idx,
            "setpoint": sp,
            "rc_command": rc,
            "gyro": resolve(f"gyroADC[{idx}]", headers),
            "gyro_unfilt": resolve(f"gyroUnfilt[{idx}]", headers),
            "error": resolve(f"axisError[{idx}]", headers),
            "p": resolve(f"axisP[{idx}]", headers),
            "i": resolve(f"axisI[{idx}]", headers),
            "d": resolve(f"axisD[{idx}]", headers),
            "f": resolve(f"axisF[{idx}]", headers),
        }
    table["time"] = resolve("time", headers)
    table["throttle"] = resolve("rcCommand[3]", headers)
    table["motors"] = [c for c in (resolve(f"motor[{i}]", headers) for i in range(4)) if c]
    table["erpm"] = [c for c in (resolve(f"eRPM[{i}]", headers) for i in range(4)) if c]
    missing = [f"{a}.{k}" for a in AXES for k in ("setpoint", "gyro")
               if table[a][k] is None]
    if missing:
        log.debug(f"Unresolved core signals: {', '.join(missing)}")
    return table


def resolve_axis_signals(headers):
    """Build the per-axis column table for a header list.

    Cached on the header tuple; callers get a fresh shallow copy so the cache
    can't be mutated through them.
    """
    table = _axis_signals_cached(tuple(str(h) for h in headers or ()))
    out = {k: (dict(v) if isinstance(v, dict) else v) for k, v in table.items()}
    out["motors"] = list(table["motors"])
    out["erpm"] = list(table["erpm"])
    return out


# ─── Value Extraction ────────────────────────────────────────────────────────

def column_values(rows, column):
    """Pull one column out of the row mappings as float64.

    Cells that aren't numbers come back as NaN. Returns None for an
    unresolved column.
    """
    if column is None:
        return None
    arr = np.full(len(rows), np.nan, dtype=np.float64)
    for i, row in enumerate(rows):
        value = row.get(column)
        if value is None or value == "":
            continue
        try:
            arr[i] = float(value)
        except (TypeError, ValueError):
            pass
    return arr


def finite_only(*arrays):
    """Drop samples where any of the aligned arrays is NaN/inf."""
    mask = np.ones(len(arrays[0]), dtype=bool)
    for a in arrays:
        mask &= np.isfinite(a)
    return tuple(a[mask] for a in arrays)


def times_ms_for(rows, signals, sample_rate):
    """Per-sample time axis in ms, from the time column when it's usable."""
    n = len(rows)
    t = column_values(rows, signals.get("time"))
    if t is not None and n > 1 and np.all(np.isfinite(t)):
        steps = np.diff(t)
        if np.all(steps > 0):
            return (t - t[0]) / 1000.0
    return np.arange(n) * 1000.0 / sample_rate
