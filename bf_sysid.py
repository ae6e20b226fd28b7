"""
Blackbox Tuner - System Identification
──────────────────────────────────────
Fits a plant model to setpoint → gyro data so the controller synthesis has
something to design against.

    order 1   K, T                 classic first-order step fit
    order 2   K, T1, T2, wn, zeta  peak decrement + damped period
    "arx"     A, B                 least squares on lagged input/output

Models are plain dicts tagged by "order".
"""

import logging
import math

import numpy as np
from scipy import signal

from bf_columns import column_values, finite_only, resolve_axis_signals
from bf_errors import InsufficientData, MissingColumn, SingularModel

log = logging.getLogger("bftune.sysid")

DEFAULT_ZETA = 0.7
DEFAULT_WN = 1.0


def _gain(u, y):
    du = float(np.max(u) - np.min(u))
    if du == 0:
        raise InsufficientData("input has no excitation (constant setpoint)")
    return float(np.max(y) - np.min(y)) / du


def _steady_state(y):
    tail = max(1, len(y) // 10)
    return float(np.mean(y[-tail:]))


def identify_first_order(u, y, sample_rate):
    """Gain from the input/output ranges, T from the 63.2% crossing."""
    u = np.asarray(u, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if len(u) < 10:
        raise InsufficientData(f"{len(u)} samples is too short to identify")
    K = _gain(u, y)
    y0, yss = float(y[0]), _steady_state(y)
    span = yss - y0
    if span == 0:
        raise InsufficientData("output never moves away from its initial value")
    reached = np.nonzero((y - y0) / span >= 0.632)[0]
    if len(reached) == 0:
        raise InsufficientData("output never reaches 63.2% of steady state")
    T = max(float(reached[0]), 1.0) / sample_rate
    return {"order": 1, "K": K, "T": T, "sample_rate": float(sample_rate)}


def identify_second_order(u, y, sample_rate):
    """Second-order fit from the first two overshoot peaks.

    Falls back to zeta=0.7 / wn=1.0 when the response doesn't ring enough
    to measure.
    """
    u = np.asarray(u, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if len(u) < 10:
        raise InsufficientData(f"{len(u)} samples is too short to identify")
    K = _gain(u, y)
    yss = _steady_state(y)
    zeta, wn = DEFAULT_ZETA, DEFAULT_WN

    centre = y[1:-1]
    peaks = np.nonzero((centre > y[:-2]) & (centre > y[2:]))[0] + 1
    if len(peaks) >= 2:
        a1, a2 = y[peaks[0]] - yss, y[peaks[1]] - yss
        if a1 > 0 and a2 > 0 and a1 > a2:
            delta = math.log(a1 / a2)
            zeta = delta / math.sqrt(4 * math.pi ** 2 + delta ** 2)
            zeta = min(0.99, max(0.05, zeta))
            period = (peaks[1] - peaks[0]) / sample_rate
            if period > 0:
                wn = (2 * math.pi / period) / math.sqrt(1 - zeta ** 2)
        else:
            log.debug("Peak amplitudes don't decay; keeping default damping")
    else:
        log.debug("Fewer than two peaks; keeping default damping")

    return {"order": 2, "K": K, "T1": 1.0 / wn ** 2, "T2": 2 * zeta / wn,
            "wn": wn, "zeta": zeta, "sample_rate": float(sample_rate)}


def identify_arx(u, y, na=2, nb=2, nk=1, sample_rate=None):
    """ARX(na, nb, nk) by ordinary least squares.

    y(t) + a1·y(t-1) + ... + a_na·y(t-na) = b0·u(t-nk) + ... + b_{nb-1}·u(t-nk-nb+1)

    Raises SingularModel when the normal equations are rank deficient.
    """
    u = np.asarray(u, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    start = max(na, nk + nb - 1)
    n_rows = len(y) - start
    n_params = na + nb
    if n_rows < n_params:
        raise InsufficientData(f"need at least {n_params + start} samples for ARX({na},{nb})")

    phi = np.empty((n_rows, n_params))
    for j in range(na):
        phi[:, j] = -y[start - 1 - j:len(y) - 1 - j]
    for j in range(nb):
        lag = nk + j
        phi[:, na + j] = u[start - lag:len(u) - lag]
    target = y[start:]

    normal = phi.T @ phi
    if np.linalg.matrix_rank(normal) < n_params:
        raise SingularModel(f"ARX({na},{nb}) regression is singular; log lacks excitation")
    try:
        theta = np.linalg.solve(normal, phi.T @ target)
    except np.linalg.LinAlgError as e:
        raise SingularModel(str(e)) from e

    return {"order": "arx", "A": [1.0] + [float(a) for a in theta[:na]],
            "B": [float(b) for b in theta[na:]], "na": na, "nb": nb, "nk": nk,
            "sample_rate": float(sample_rate) if sample_rate else None}


def identify(setpoint, gyro, order, sample_rate, na=2, nb=2):
    """Fit a model of the requested order to one axis' data."""
    u, y = finite_only(np.asarray(setpoint, dtype=np.float64),
                       np.asarray(gyro, dtype=np.float64))
    if order in (1, "1"):
        model = identify_first_order(u, y, sample_rate)
    elif order in (2, "2"):
        model = identify_second_order(u, y, sample_rate)
    elif order == "arx":
        model = identify_arx(u, y, na, nb, sample_rate=sample_rate)
    else:
        raise ValueError(f"Unknown model order: {order!r}")
    log.debug(f"Identified {describe_model(model)}")
    return model


def identify_axis(rows, headers, axis, order, sample_rate, na=2, nb=2):
    """identify() straight from log rows, resolving the axis columns."""
    signals = resolve_axis_signals(headers)
    cols = signals.get(axis)
    if cols is None:
        raise ValueError(f"Unknown axis: {axis}")
    for key in ("setpoint", "gyro"):
        if cols[key] is None:
            raise MissingColumn(key, axis)
    return identify(column_values(rows, cols["setpoint"]), column_values(rows, cols["gyro"]),
                    order, sample_rate, na, nb)


def simulate_model_step(model, n, dt):
    """Open-loop unit step response of a model, n samples at dt seconds."""
    u = np.ones(n)
    if model["order"] == "arx":
        b = np.concatenate([np.zeros(model["nk"]), model["B"]])
        return signal.lfilter(b, model["A"], u)
    y = np.zeros(n)
    if model["order"] == 1:
        for k in range(1, n):
            y[k] = y[k - 1] + dt * (model["K"] * u[k - 1] - y[k - 1]) / model["T"]
        return y
    # T1·y'' + T2·y' + y = K·u
    vel = 0.0
    for k in range(1, n):
        acc = (model["K"] * u[k - 1] - y[k - 1] - model["T2"] * vel) / model["T1"]
        vel += acc * dt
        y[k] = y[k - 1] + vel * dt
    return y


def describe_model(model):
    if model["order"] == 1:
        return f"1st order K={model['K']:.3f} T={model['T'] * 1000:.1f}ms"
    if model["order"] == 2:
        return (f"2nd order K={model['K']:.3f} wn={model['wn']:.2f} "
                f"zeta={model['zeta']:.2f}")
    return f"ARX({model['na']},{model['nb']}) A={np.round(model['A'], 3).tolist()}"
