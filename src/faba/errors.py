"""Exception types and failure bookkeeping shared by the sifting passes.

Errors raised while constructing a :class:`~faba.sifter.Sifter` are fatal and
propagate. Errors raised inside a single block (first pass) or a single
position (second pass) are caught at that boundary and recorded in a
:class:`FailureReport` so that one unreadable region does not abort a
multi-hour run, yet the caller can still tell whether the output is complete.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class FabaError(Exception):
    """Base class for all errors raised by faba."""


class AlignmentIOError(FabaError, OSError):
    """Alignment file or index is missing, unreadable, or cannot be seeked."""


class RegionError(FabaError, ValueError):
    """Invalid or empty genomic interval (``start >= end`` or negative bounds)."""


class EmptyResultError(FabaError):
    """A fetched region yielded zero usable alignment records.

    This is not necessarily a fault: most of a genome is uncovered in targeted
    or low-depth libraries.
    """


class SifterStateError(FabaError, RuntimeError):
    """A sifter operation was called before its prerequisite stage."""


@dataclass(frozen=True)
class RegionFailure:
    chrom: str
    start: int
    end: int
    error: str
    message: str

    @property
    def region(self) -> str:
        return f"{self.chrom}:{self.start}-{self.end}"


@dataclass
class FailureReport:
    """Aggregate of per-region outcomes for one pass.

    Thread-safe; workers call :meth:`record_ok`, :meth:`record_empty` and
    :meth:`record_failure` concurrently.

    Attributes
    ----------
    label:
        Name of the pass (``sweep`` or ``statistics``).
    max_examples:
        Number of individual failures kept verbatim; the rest are only counted.
    """

    label: str
    max_examples: int = 20
    attempted: int = 0
    succeeded: int = 0
    empty: int = 0
    failed: int = 0
    cancelled: bool = False
    by_error: Dict[str, int] = field(default_factory=dict)
    examples: List[RegionFailure] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_ok(self) -> None:
        with self._lock:
            self.attempted += 1
            self.succeeded += 1

    def record_empty(self) -> None:
        with self._lock:
            self.attempted += 1
            self.empty += 1

    def record_failure(self, chrom: str, start: int, end: int, err: BaseException) -> None:
        name = err.__class__.__name__
        with self._lock:
            self.attempted += 1
            self.failed += 1
            self.by_error[name] = self.by_error.get(name, 0) + 1
            if len(self.examples) < self.max_examples:
                self.examples.append(
                    RegionFailure(chrom=chrom, start=start, end=end, error=name, message=str(err))
                )

    def merge(self, other: "FailureReport") -> None:
        """Fold another report (e.g. from a resumed pass) into this one."""
        with self._lock:
            self.attempted += other.attempted
            self.succeeded += other.succeeded
            self.empty += other.empty
            self.failed += other.failed
            self.cancelled = other.cancelled
            for name, n in other.by_error.items():
                self.by_error[name] = self.by_error.get(name, 0) + n
            room = self.max_examples - len(self.examples)
            if room > 0:
                self.examples.extend(other.examples[:room])

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.cancelled

    def summary_line(self) -> str:
        line = (
            f"{self.label}: {self.attempted} regions, {self.succeeded} ok, "
            f"{self.empty} empty, {self.failed} failed"
        )
        if self.cancelled:
            line += " (cancelled)"
        return line

    def to_dict(self, *, first_example: Optional[int] = None) -> Dict[str, object]:
        examples = self.examples if first_example is None else self.examples[:first_example]
        return {
            "label": self.label,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "empty": self.empty,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "by_error": dict(sorted(self.by_error.items())),
            "examples": [
                {"region": f.region, "error": f.error, "message": f.message} for f in examples
            ],
        }
