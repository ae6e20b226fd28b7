"""
Blackbox Tuner - Model-Based PID Synthesis
──────────────────────────────────────────
Turns an identified plant model into PID gains.

Closed-form methods (IMC, Ziegler-Nichols, Cohen-Coon, robust/AMIGO) work
in controller units and are converted to firmware units at the end:
P as-is, I ×100, D ×100. The genetic optimizer searches firmware units
directly and simulates the closed loop against the model.

Every method's output goes through clamp_gains(). Nothing this module
returns is outside SAFE_PID_LIMITS.
"""

import logging
import math

import numpy as np

from bf_config import DEFAULT_PIDS, DEFAULT_SETTINGS, PID_TERMS, SAFE_PID_LIMITS
from bf_errors import NumericDegenerate
from bf_sysid import describe_model, identify

log = logging.getLogger("bftune.synthesis")

I_SCALE = 100.0
D_SCALE = 100.0
ANTI_WINDUP = 100.0
DIVERGED = 1e6


# ─── Scaling & Safety ────────────────────────────────────────────────────────

def scale_and_round(value):
    """0.1 resolution below 10, whole numbers above."""
    if value < 10:
        return round(value * 10) / 10.0
    return float(round(value))


def to_firmware_units(kp, ki, kd, f=0.0):
    return {"p": scale_and_round(kp), "i": scale_and_round(ki * I_SCALE),
            "d": scale_and_round(kd * D_SCALE), "f": scale_and_round(f)}


def clamp_gains(gains, axis):
    """Clamp every term into the axis safe range. Missing terms get the minimum."""
    limits = SAFE_PID_LIMITS[axis]
    out = {}
    for term in PID_TERMS:
        lo, hi = limits[term]
        value = gains.get(term, lo)
        if value is None or not math.isfinite(value):
            value = lo
        out[term] = max(lo, min(hi, value))
    return out


def _check_positive(model, *keys):
    for key in keys:
        if not model.get(key) or model[key] <= 0 or not math.isfinite(model[key]):
            raise NumericDegenerate(f"model parameter {key}={model.get(key)} unusable for design")


# ─── Closed-Form Methods ─────────────────────────────────────────────────────

def design_imc(model, lam=0.2, robustness=0.5):
    lam_adj = lam * (1 + 2 * robustness)
    if model["order"] == 1:
        _check_positive(model, "K", "T")
        kp = model["T"] / (model["K"] * lam_adj)
        return kp, kp / model["T"], 0.0
    _check_positive(model, "K", "T1", "T2")
    t1, t2 = model["T1"], model["T2"]
    kp = t1 / (model["K"] * lam_adj)
    return kp, kp / (t1 + t2), kp * t2 / (t1 + t2)


def design_ziegler_nichols(model):
    if model["order"] == 1:
        _check_positive(model, "K", "T")
        ku = 4 * model["T"] / (model["K"] * math.pi)
        tu = 4 * model["T"]
    else:
        _check_positive(model, "K", "wn")
        ku = 1.0 / model["K"]
        tu = 2 * math.pi / model["wn"]
    kp = 0.6 * ku
    return kp, kp / (0.5 * tu), kp * 0.125 * tu


def design_cohen_coon(model):
    if model["order"] != 1:
        raise ValueError("Cohen-Coon needs a first-order model")
    _check_positive(model, "K", "T")
    K, T = model["K"], model["T"]
    r = 0.1  # assumed dead time tau = 0.1*T
    kp = (1 / K) * (1.33 + 0.33 * r) / (1 + r)
    ti = T * (1.35 + 0.27 * r) / (1 + 0.6 * r)
    td = T * (0.37 + 0.22 * r) / (1 + 0.6 * r)
    return kp, kp / ti, kp * td


def design_robust(model, zeta_desired=0.7, robustness=0.5):
    """AMIGO-style design on a model slowed down by (1+robustness)."""
    if model["order"] == 1:
        _check_positive(model, "K", "T")
        K, T = model["K"], model["T"]
        tm = T * (1 + robustness)
        kp = (0.2 + 0.45 * T / tm) / K
        ti = T * (0.4 * tm + 0.8 * T) / (tm + 0.1 * T)
        td = T * 0.5 * tm / (0.3 * tm + T)
        return kp, kp / ti, kp * td
    _check_positive(model, "K", "wn")
    K, wn, zeta = model["K"], model["wn"], model["zeta"]
    kp = (1 / K) * (1 + robustness)
    ki = kp * wn ** 2 / (2 + robustness)
    kd = kp * 2 * (zeta_desired + (zeta_desired - zeta) * (1 + robustness)) / wn
    return kp, ki, max(0.0, kd)


# ─── Closed-Loop Simulation ──────────────────────────────────────────────────

def _plant_stepper(model, dt):
    """Return step(u, commit=True) advancing the plant one controller period.

    With commit=False the state is left untouched, so the caller can try
    the one-step response, which is affine in u.
    """
    order = model["order"]
    if order == 1:
        K, T = model["K"], model["T"]
        n_sub = max(1, int(math.ceil(dt / (0.1 * T))))
        h = dt / n_sub
        state = [0.0]

        def step(u, commit=True):
            y = state[0]
            for _ in range(n_sub):
                y += h * (K * u - y) / T
            if commit:
                state[0] = y
            return y
        return step

    if order == 2:
        K, T1, T2 = model["K"], model["T1"], model["T2"]
        fastest = min(T1 / max(T2, 1e-9), math.sqrt(T1))
        n_sub = max(1, int(math.ceil(dt / (0.1 * fastest))))
        h = dt / n_sub
        state = [0.0, 0.0]

        def step(u, commit=True):
            y, v = state
            for _ in range(n_sub):
                v += h * (K * u - y - T2 * v) / T1
                y += h * v
            if commit:
                state[0], state[1] = y, v
            return y
        return step

    A, B, nk = model["A"], model["B"], model["nk"]
    y_hist = [0.0] * (len(A) - 1)
    u_hist = [0.0] * (nk + len(B))

    def step(u, commit=True):
        u_seq = [u] + u_hist[:-1]
        y = -sum(a * yp for a, yp in zip(A[1:], y_hist))
        y += sum(b * u_seq[nk - 1 + j] for j, b in enumerate(B))
        if commit:
            u_hist[:] = u_seq
            y_hist[:] = [y] + y_hist[:-1]
        return y
    return step


def simulate_closed_loop(gains, model, steps=200, dt=None, setpoint=1.0):
    """Unit-step closed-loop response of a firmware-unit PID on the model.

    D acts on the measurement, as in the flight controller, and is solved
    implicitly against the plant's one-step response so large D on a fast
    model does not blow up the Euler loop. Integral is clamped to ±100.
    A run that blows up is cut short and padded with inf.
    """
    if dt is None:
        dt = 1.0 / model["sample_rate"] if model.get("sample_rate") else 0.01
    kp = gains["p"]
    ki = gains["i"] / I_SCALE
    kd = gains["d"] / D_SCALE
    kf = gains.get("f", 0.0) / I_SCALE
    plant = _plant_stepper(model, dt)

    out = np.zeros(steps)
    y, integral, prev_sp = 0.0, 0.0, 0.0
    for k in range(1, steps):
        error = setpoint - y
        integral = max(-ANTI_WINDUP, min(ANTI_WINDUP, integral + error * dt))
        u0 = kp * error + ki * integral + kf * (setpoint - prev_sp) / dt
        free = plant(0.0, commit=False)
        gain = plant(1.0, commit=False) - free
        # u = u0 - kd*(y_next - y)/dt with y_next = free + gain*u
        denom = 1.0 + gain * kd / dt
        if abs(denom) < 1e-12:
            out[k:] = np.inf
            return out
        y_next = (free + gain * (u0 + kd * y / dt)) / denom
        u = u0 - kd * (y_next - y) / dt
        y = plant(u)
        if not math.isfinite(y) or abs(y) > DIVERGED:
            out[k:] = np.inf
            return out
        out[k] = y
        prev_sp = setpoint
    return out


def response_quality(response, setpoint=1.0, band=0.02, hold=10):
    """Overshoot %, settling sample, final error and combined score."""
    if not np.all(np.isfinite(response)):
        return {"overshoot": math.inf, "settling_time": math.inf,
                "steady_state_error": math.inf, "score": math.inf}
    overshoot = max(0.0, (float(np.max(response)) - setpoint) / abs(setpoint) * 100)
    tol = abs(setpoint) * band
    inside = np.abs(response - setpoint) <= tol
    settling = float(len(response))
    for i in range(len(response)):
        if inside[i:i + hold].all():
            settling = float(i)
            break
    sse = abs(float(response[-1]) - setpoint)
    return {"overshoot": overshoot, "settling_time": settling, "steady_state_error": sse,
            "score": overshoot + settling / 10.0 + sse * 100.0}


def evaluate_pid_quality(gains, model, steps=200, dt=None):
    return response_quality(simulate_closed_loop(gains, model, steps, dt))


# ─── Genetic Optimizer ───────────────────────────────────────────────────────

def optimize_genetic(model, axis, initial=None, population_size=30, generations=20,
                     mutation_rate=0.1, seed=0, steps=200):
    """Seeded GA over firmware-unit gains.

    Tournament of 3, arithmetic-mean crossover, ±10% mutation of one term,
    best individual always carried over. Same seed, same answer.
    """
    rng = np.random.default_rng(seed)
    limits = SAFE_PID_LIMITS[axis]
    if initial is None:
        initial = DEFAULT_PIDS[axis]

    def fitness(ind):
        return evaluate_pid_quality(ind, model, steps)["score"]

    population = [clamp_gains(initial, axis)]
    while len(population) < population_size:
        population.append({t: float(rng.uniform(*limits[t])) for t in PID_TERMS})
    scores = [fitness(ind) for ind in population]

    def tournament():
        picks = rng.integers(0, len(population), size=3)
        best = picks[0]
        for idx in picks[1:]:
            if scores[idx] < scores[best]:
                best = idx
        return population[best]

    for gen in range(generations):
        elite = int(np.argmin(scores))
        new_pop, new_scores = [population[elite]], [scores[elite]]
        while len(new_pop) < population_size:
            a, b = tournament(), tournament()
            child = {t: (a[t] + b[t]) / 2.0 for t in PID_TERMS}
            if rng.random() < mutation_rate:
                term = PID_TERMS[int(rng.integers(0, len(PID_TERMS)))]
                child[term] += child[term] * rng.uniform(-0.1, 0.1)
                child = clamp_gains(child, axis)
            new_pop.append(child)
            new_scores.append(fitness(child))
        population, scores = new_pop, new_scores
        log.debug(f"GA generation {gen + 1}/{generations}: best score {min(scores):.3f}")

    best = population[int(np.argmin(scores))]
    return {t: scale_and_round(best[t]) for t in PID_TERMS}


# ─── Entry Points ────────────────────────────────────────────────────────────

def design(model, method, axis, params=None, settings=None):
    """Firmware-unit, safety-clamped PID gains for a model.

    Args:
        model: dict from bf_sysid.
        method: imc, zn, cohen_coon, robust or genetic.
        axis: roll, pitch or yaw (selects the safe range).
        params: optional overrides: lambda, damping_ratio, robustness,
                current (gains dict, GA seed individual and F source).
    """
    if settings is None:
        settings = DEFAULT_SETTINGS
    params = params or {}
    lam = params.get("lambda", settings["imc_lambda"])
    zeta_des = params.get("damping_ratio", settings["damping_ratio"])
    robustness = params.get("robustness", settings["robustness"])
    current = params.get("current") or DEFAULT_PIDS[axis]

    if method == "genetic":
        gains = optimize_genetic(model, axis, current, settings["population_size"],
                                 settings["generations"], settings["mutation_rate"],
                                 params.get("seed", settings["seed"]), settings["sim_steps"])
        return clamp_gains(gains, axis)

    if model["order"] == "arx":
        raise ValueError(f"{method} needs a first- or second-order model, not ARX")
    if method == "imc":
        kp, ki, kd = design_imc(model, lam, robustness)
    elif method == "zn":
        kp, ki, kd = design_ziegler_nichols(model)
    elif method == "cohen_coon":
        kp, ki, kd = design_cohen_coon(model)
    elif method == "robust":
        kp, ki, kd = design_robust(model, zeta_des, robustness)
    else:
        raise ValueError(f"Unknown synthesis method: {method}")
    return clamp_gains(to_firmware_units(kp, ki, kd, current.get("f", 0.0)), axis)


def optimize_axis(setpoint, gyro, sample_rate, axis, method=None, order=None,
                  current_gains=None, settings=None):
    """Identify the axis plant, then design gains for it."""
    if settings is None:
        settings = DEFAULT_SETTINGS
    method = method or settings["synthesis_method"]
    order = order if order is not None else settings["model_order"]
    model = identify(setpoint, gyro, order, sample_rate,
                     settings["arx_na"], settings["arx_nb"])
    gains = design(model, method, axis, {"current": current_gains}, settings)
    quality = evaluate_pid_quality(gains, model, settings["sim_steps"])
    log.info(f"{axis}: {describe_model(model)} → {method} "
             f"P={gains['p']:g} I={gains['i']:g} D={gains['d']:g}")
    return {"model": model, "gains": gains, "method": method, "quality": quality}
