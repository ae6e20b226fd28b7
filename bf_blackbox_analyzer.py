#!/usr/bin/env python3
"""
Betaflight Blackbox Tuner - Log Analyzer
========================================
Reads a decoded blackbox CSV and recommends PID gains and filter settings.

The pipeline runs error metrics, step response, spectral/harmonic and
cross-axis analysis, filter analysis and model-based synthesis, then
merges everything into one recommendation with CLI commands to paste.

Usage:
    python bf_blackbox_analyzer.py flight.csv
    python bf_blackbox_analyzer.py flight.csv --method genetic --order 2 --seed 7
    python bf_blackbox_analyzer.py flight.csv --settings my_quad.json --json out.json
"""

import argparse
import csv
import json
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from bf_columns import column_values, resolve_axis_signals, times_ms_for
from bf_config import (AXES, SYNTHESIS_METHODS, get_settings, load_settings,
                       sample_rate_from_metadata)
from bf_cross_axis import analyze_axis_interactions
from bf_errors import InsufficientData, MissingColumn, TuningError
from bf_filter_analysis import analyze_filters
from bf_flight_metrics import error_metrics, flight_character, pid_contributions
from bf_pid_synthesis import optimize_axis
from bf_recommender import (assemble_recommendation, current_pids, default_recommendation,
                            generate_cli_commands)
from bf_spectral import harmonic_distortion
from bf_step_response import ZERO_METRICS, analyze_step_response

log = logging.getLogger("bftune")

REPORT_VERSION = "1.0.0"


# ─── CSV Loading ─────────────────────────────────────────────────────────────

def _parse_header_line(line, metadata):
    body = line[2:].strip()
    if ":" not in body:
        return
    key, value = body.split(":", 1)
    metadata[key.strip()] = value.strip()


def load_csv_log(path):
    """Read a decoded blackbox CSV.

    `H key:value` lines become metadata, `#` lines are skipped, the first
    remaining line is the column header and the rest are data rows.

    Returns:
        (rows, headers, metadata): rows are {column: string} mappings.
    """
    metadata = {}
    lines = []
    with open(path, "r", errors="ignore") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("H "):
                _parse_header_line(line, metadata)
                continue
            lines.append(line)
    if not lines:
        raise InsufficientData(f"{path}: no column header found")

    reader = csv.reader(lines)
    headers = [h.strip() for h in next(reader)]
    rows = []
    for record in reader:
        rows.append({h: v.strip() for h, v in zip(headers, record)})
    log.debug(f"Loaded {len(rows):,} rows, {len(headers)} columns, "
              f"{len(metadata)} header fields from {path}")
    return rows, headers, metadata


# ─── Per-Axis Work ───────────────────────────────────────────────────────────

def _analyze_axis(axis, setpoint, gyro, times_ms, sample_rate, current_gains, settings):
    """Step response, flight character and model-based gains for one axis.

    Touches nothing but its own return value, so axes can run concurrently.
    """
    out = {"step_response": None, "flight_character": None, "model_based": None,
           "diagnostics": []}
    if setpoint is None or gyro is None:
        err = MissingColumn("setpoint" if setpoint is None else "gyro", axis)
        log.warning(f"{axis}: {err}; step response and synthesis skipped")
        out["diagnostics"].append(f"{axis}: {err}")
        step = dict(ZERO_METRICS)
        step.update(valid=False, n_steps=0, steps=[])
        out["step_response"] = step
        out["flight_character"] = {"stick_activity": 0.0, "noise_level": 0.0}
        return out

    out["step_response"] = analyze_step_response(setpoint, gyro, sample_rate, times_ms, settings)
    if not out["step_response"]["valid"]:
        out["diagnostics"].append(f"{axis}: no usable step inputs")
    out["flight_character"] = flight_character(setpoint, gyro, settings)

    try:
        out["model_based"] = optimize_axis(setpoint, gyro, sample_rate, axis,
                                           settings["synthesis_method"], settings["model_order"],
                                           current_gains, settings)
    except (TuningError, ValueError) as e:
        log.warning(f"{axis}: model-based synthesis skipped ({e})")
        out["diagnostics"].append(f"{axis}: synthesis skipped: {e}")
    return out


# ─── Pipeline ────────────────────────────────────────────────────────────────

def analyze_flight_log(rows, headers, metadata, settings=None):
    """Run every analysis stage over one log.

    Raises InsufficientData for a log without rows; every other data problem
    is degraded per axis and listed under "diagnostics".
    """
    settings = get_settings(settings)
    if not rows:
        raise InsufficientData("log has no data rows")
    metadata = metadata or {}
    signals = resolve_axis_signals(headers)
    sample_rate = sample_rate_from_metadata(metadata, settings)
    times_ms = times_ms_for(rows, signals, sample_rate)
    diagnostics = []
    log.info(f"Analyzing {len(rows):,} rows at {sample_rate:.0f}Hz")

    setpoints = {a: column_values(rows, signals[a]["setpoint"]) for a in AXES}
    gyros = {a: column_values(rows, signals[a]["gyro"]) for a in AXES}

    errors = error_metrics(rows, signals, settings)
    for axis in AXES:
        if axis not in errors:
            diagnostics.append(f"{axis}: no error signal; error metrics skipped")
    contributions = pid_contributions(rows, signals, settings)

    current = current_pids(metadata)
    jobs = {axis: (axis, setpoints[axis], gyros[axis], times_ms, sample_rate,
                   current[axis], settings) for axis in AXES}
    if settings["parallel_axes"]:
        with ThreadPoolExecutor(max_workers=len(AXES)) as pool:
            futures = {axis: pool.submit(_analyze_axis, *args) for axis, args in jobs.items()}
            per_axis = {axis: futures[axis].result() for axis in AXES}
    else:
        per_axis = {axis: _analyze_axis(*jobs[axis]) for axis in AXES}
    for axis in AXES:
        diagnostics.extend(per_axis[axis]["diagnostics"])

    cross = analyze_axis_interactions({a: g for a, g in gyros.items() if g is not None},
                                      sample_rate, settings)
    harmonics = {axis: harmonic_distortion(doms, settings["harmonic_tolerance"])
                 for axis, doms in cross["dominant"].items()}

    filters = analyze_filters(rows, signals, metadata, sample_rate, settings)
    if not filters["gyro_filters"]["measured"]:
        diagnostics.append("gyroUnfilt not logged; filter effectiveness not measured")

    return {
        "n_rows": len(rows),
        "sample_rate": sample_rate,
        "signals": signals,
        "error_metrics": errors,
        "pid_contributions": contributions,
        "step_response": {a: per_axis[a]["step_response"] for a in AXES},
        "flight_character": {a: per_axis[a]["flight_character"] for a in AXES},
        "model_based": {a: per_axis[a]["model_based"] for a in AXES},
        "harmonics": harmonics,
        "cross_axis": cross,
        "filter_analysis": filters,
        "diagnostics": diagnostics,
    }


def generate_recommendations(rows, headers, metadata, settings=None):
    """Analyze a log and return a recommendation. Never raises for bad data."""
    try:
        settings = get_settings(settings)
        analysis = analyze_flight_log(rows, headers, metadata, settings)
        return assemble_recommendation(analysis, metadata, settings)
    except TuningError as e:
        log.warning(f"Analysis degraded to defaults: {e}")
        return default_recommendation(metadata, str(e))
    except Exception as e:
        log.exception("Unexpected failure while analyzing the log")
        return default_recommendation(metadata, f"analysis failed: {e}")


# ─── Output ──────────────────────────────────────────────────────────────────

def save_json(path, recommendation):
    state = {"version": REPORT_VERSION, "timestamp": datetime.now().isoformat(),
             "recommendation": recommendation}
    with open(path, "w") as f:
        json.dump(state, f, indent=2, default=str)
    return path


def print_terminal_report(rec, cli_lines=None):
    R, B, C, G, Y, RED, DIM = "\033[0m", "\033[1m", "\033[96m", "\033[92m", "\033[93m", "\033[91m", "\033[2m"
    summary = rec["analysis_summary"]

    print(f"\n{B}{C}{'═' * 70}{R}")
    if summary:
        print(f"  {DIM}{summary['n_rows']:,} rows | {summary['sample_rate']:.0f}Hz{R}")
        if summary.get("primary_oscillation_source"):
            print(f"  {Y}Oscillation starts on {summary['primary_oscillation_source']}{R}")

    print(f"\n  {B}PID CHANGES:{R}")
    for axis in AXES:
        old, new = rec["original_pid"][axis], rec["recommended_pid"][axis]
        conf = rec["confidence"][axis]
        cc = G if conf >= 0.7 else Y if conf >= 0.5 else RED
        cells = []
        for term in ("p", "i", "d", "f"):
            mark = f"{B}" if new[term] != old.get(term) else ""
            cells.append(f"{term.upper()}={old.get(term, 0):>3}→{mark}{new[term]:>3}{R}")
        print(f"    {axis.capitalize():6s} {'  '.join(cells)}  {cc}({conf:.0%}){R}")
        model = rec["model_based_pid"].get(axis)
        if model:
            print(f"    {DIM}       model: P={model['p']:g} I={model['i']:g} D={model['d']:g}{R}")

    filters = rec["filters"]
    print(f"\n  {B}FILTERS:{R}")
    print(f"    Gyro LPF: {filters['gyro_lowpass_hz']}Hz  D-term LPF: {filters['dterm_lowpass_hz']}Hz")
    if filters.get("dyn_notch_count"):
        print(f"    Dyn notch: {filters['dyn_notch_count']}x Q={filters['dyn_notch_q']} "
              f"{filters['dyn_notch_min_hz']}-{filters['dyn_notch_max_hz']}Hz")

    notes = list(rec["explanations"]["general"])
    for axis in AXES:
        for term, items in rec["explanations"][axis].items():
            notes.extend(f"{axis} {term.upper()}: {text}" for text in items)
    notes.extend(rec["explanations"]["filters"].values())
    if notes:
        print(f"\n{B}{C}{'─' * 70}{R}")
        print(f"  {B}WHY:{R}")
        for note in notes:
            print(f"  {DIM}• {note}{R}")

    if rec["diagnostics"]:
        print(f"\n  {B}NOTE:{R}")
        for d in rec["diagnostics"]:
            print(f"  {DIM}ℹ {d}{R}")

    if cli_lines:
        print(f"\n{B}{C}{'─' * 70}{R}")
        print(f"  {B}CLI:{R}")
        for line in cli_lines:
            print(f"    {line}")
    print(f"{B}{C}{'═' * 70}{R}\n")


# ─── Main ────────────────────────────────────────────────────────────────────

def _parse_order(text):
    if text == "arx":
        return "arx"
    return int(text)


def main():
    parser = argparse.ArgumentParser(
        description="Betaflight Blackbox Tuner - PID and filter recommendations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Standard analysis of a decoded log
  python bf_blackbox_analyzer.py flight.csv

  # Smoother tune for video, model-based gains from a 2nd-order fit
  python bf_blackbox_analyzer.py flight.csv --mode cinematic --order 2

  # Reproducible genetic optimization, saved as JSON
  python bf_blackbox_analyzer.py flight.csv --method genetic --seed 7 --json tune.json
        """)
    parser.add_argument("logfile", help="Decoded blackbox CSV (H key:value header lines allowed)")
    parser.add_argument("--settings", help="JSON file overriding analysis settings")
    parser.add_argument("--mode", choices=["standard", "cinematic"],
                        help="Tuning style (default: standard)")
    parser.add_argument("--method", choices=SYNTHESIS_METHODS,
                        help="Model-based synthesis method (default: imc)")
    parser.add_argument("--order", choices=["1", "2", "arx"],
                        help="Plant model for synthesis (default: 1)")
    parser.add_argument("--seed", type=int, help="Genetic optimizer seed")
    parser.add_argument("--json", metavar="PATH", help="Write the recommendation as JSON")
    parser.add_argument("--no-cli", action="store_true", help="Don't print CLI commands")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="  %(message)s")
    print(f"\n  ▲ Blackbox Tuner v{REPORT_VERSION}")

    if not os.path.isfile(args.logfile):
        print(f"  ERROR: File not found: {args.logfile}")
        sys.exit(1)

    try:
        settings = load_settings(args.settings) if args.settings else get_settings()
        overrides = {}
        if args.mode:
            overrides["mode"] = args.mode
        if args.method:
            overrides["synthesis_method"] = args.method
        if args.order:
            overrides["model_order"] = _parse_order(args.order)
        if args.seed is not None:
            overrides["seed"] = args.seed
        settings = get_settings({**settings, **overrides})
    except (OSError, ValueError) as e:
        print(f"  ERROR: Bad settings: {e}")
        sys.exit(1)

    try:
        rows, headers, metadata = load_csv_log(args.logfile)
    except InsufficientData as e:
        print(f"  ERROR: {e}")
        sys.exit(1)
    if not rows:
        print("  ERROR: CSV has no data rows.")
        sys.exit(1)

    rec = generate_recommendations(rows, headers, metadata, settings)
    cli_lines = None if args.no_cli else generate_cli_commands(rec)
    print_terminal_report(rec, cli_lines)

    if args.json:
        save_json(args.json, rec)
        print(f"  Saved: {args.json}")


if __name__ == "__main__":
    main()
