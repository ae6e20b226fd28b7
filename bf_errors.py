"""
Blackbox Tuner - Error Taxonomy
───────────────────────────────
Every failure the analysis pipeline knows how to degrade from is a
TuningError. The pipeline catches these per axis, logs them, and keeps
going with defaults for the affected metric.
"""


class TuningError(Exception):
    """Base class for recoverable analysis failures."""


class MissingColumn(TuningError):
    """A required signal is absent from this log."""

    def __init__(self, logical_name, axis=None):
        self.logical_name = logical_name
        self.axis = axis
        where = f" for {axis}" if axis else ""
        super().__init__(f"column '{logical_name}' not found{where}")


class InsufficientData(TuningError):
    """Too few samples, steps or peaks to estimate a parameter."""


class SingularModel(TuningError):
    """Least-squares regression is not invertible (usually poor excitation)."""


class NumericDegenerate(TuningError):
    """A computation had nothing to work on (empty set, zero span)."""


def safe_div(num, den, default=0.0):
    """Division that returns `default` instead of inf/NaN."""
    try:
        if den == 0:
            return default
        out = num / den
    except (ZeroDivisionError, TypeError):
        return default
    if out != out or out in (float("inf"), float("-inf")):
        return default
    return out
