"""
Blackbox Tuner - Chunked Streaming
──────────────────────────────────
Long logs (100k+ rows) are scanned in bounded batches. Per-chunk partial
statistics are folded together with an explicit merge instead of counters
shared across loops.

Chunks are always processed in order. Anything that needs look-back across
a boundary (step responses) works on the materialized column instead.
"""

import logging
import math

import numpy as np

log = logging.getLogger("bftune.stream")


def iter_chunks(rows, chunk_size):
    """Yield (chunk_index, start_offset, chunk) in order."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    for idx, start in enumerate(range(0, len(rows), chunk_size)):
        yield idx, start, rows[start:start + chunk_size]


def for_each_chunk(rows, chunk_size, fn, yield_every=5, on_yield=None):
    """Run fn(chunk, chunk_index, start_offset) over every chunk.

    After every `yield_every` chunks the optional `on_yield(chunks_done)`
    hook runs, so a host can service other work or report progress.

    Returns the list of per-chunk results, in chunk order.
    """
    results = []
    n_chunks = int(math.ceil(len(rows) / chunk_size)) if chunk_size > 0 else 0
    for idx, start, chunk in iter_chunks(rows, chunk_size):
        results.append(fn(chunk, idx, start))
        done = idx + 1
        if yield_every and done % yield_every == 0 and done < n_chunks:
            log.debug(f"Processed {done}/{n_chunks} chunks")
            if on_yield is not None:
                on_yield(done)
    return results


# ─── Mergeable Statistics ────────────────────────────────────────────────────

class RunningStats:
    """Partial statistics over a batch of samples that merge associatively.

    Two RunningStats built from disjoint halves of a signal merge into the
    same numbers as one built from the whole signal.
    """

    __slots__ = ("count", "total", "total_abs", "sum_squares", "max_abs", "min", "max")

    def __init__(self, count=0, total=0.0, total_abs=0.0, sum_squares=0.0,
                 max_abs=0.0, min=math.inf, max=-math.inf):
        self.count = count
        self.total = total
        self.total_abs = total_abs
        self.sum_squares = sum_squares
        self.max_abs = max_abs
        self.min = min
        self.max = max

    @classmethod
    def from_values(cls, values):
        arr = np.asarray(values, dtype=np.float64)
        arr = arr[np.isfinite(arr)]
        if arr.size == 0:
            return cls()
        return cls(count=int(arr.size), total=float(arr.sum()),
                   total_abs=float(np.abs(arr).sum()),
                   sum_squares=float(np.dot(arr, arr)),
                   max_abs=float(np.max(np.abs(arr))),
                   min=float(arr.min()), max=float(arr.max()))

    def merge(self, other):
        return RunningStats(
            count=self.count + other.count,
            total=self.total + other.total,
            total_abs=self.total_abs + other.total_abs,
            sum_squares=self.sum_squares + other.sum_squares,
            max_abs=max(self.max_abs, other.max_abs),
            min=min(self.min, other.min),
            max=max(self.max, other.max),
        )

    __add__ = merge

    @property
    def mean(self):
        return self.total / self.count if self.count else 0.0

    @property
    def mean_abs(self):
        return self.total_abs / self.count if self.count else 0.0

    @property
    def rms(self):
        return math.sqrt(self.sum_squares / self.count) if self.count else 0.0

    @property
    def std(self):
        if not self.count:
            return 0.0
        var = self.sum_squares / self.count - self.mean ** 2
        return math.sqrt(var) if var > 0 else 0.0

    def as_dict(self):
        return {"count": self.count, "mean": self.mean, "mean_abs": self.mean_abs,
                "rms": self.rms, "std": self.std, "max_abs": self.max_abs}

    def __eq__(self, other):
        if not isinstance(other, RunningStats):
            return NotImplemented
        return all(getattr(self, s) == getattr(other, s) for s in self.__slots__)

    def __repr__(self):
        return (f"RunningStats(count={self.count}, mean={self.mean:.3f}, "
                f"rms={self.rms:.3f}, max_abs={self.max_abs:.3f})")


def merge_all(stats):
    out = RunningStats()
    for s in stats:
        out = out.merge(s)
    return out


def fold_chunks(rows, chunk_size, extract_fn, yield_every=5, on_yield=None):
    """Fold extract_fn(chunk) → RunningStats across all chunks.

    extract_fn may return a single RunningStats or a dict of them; dicts are
    merged key by key.
    """
    partials = for_each_chunk(rows, chunk_size, lambda chunk, idx, start: extract_fn(chunk),
                              yield_every=yield_every, on_yield=on_yield)
    if partials and isinstance(partials[0], dict):
        merged = {}
        for part in partials:
            for key, stats in part.items():
                merged[key] = merged[key].merge(stats) if key in merged else stats
        return merged
    return merge_all(partials)
