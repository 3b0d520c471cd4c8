from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import RegionError

BASES: Tuple[str, ...] = ("A", "T", "G", "C")

_BASE_INDEX: Dict[str, int] = {}
for _i, _b in enumerate(BASES):
    _BASE_INDEX[_b] = _i
    _BASE_INDEX[_b.lower()] = _i


class Strand(str, Enum):
    """Orientation of an aligned read relative to the reference."""

    FORWARD = "+"
    REVERSE = "-"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ReferenceSequence:
    """A named contig and its length as declared in the BAM header."""

    name: str
    length: int

    def __post_init__(self) -> None:
        if self.length < 0:
            raise ValueError(f"Reference {self.name!r} has negative length {self.length}")


@dataclass(frozen=True, order=True)
class GenomicInterval:
    """Half-open ``[start, end)`` range on one reference sequence (0-based)."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.start >= self.end:
            raise RegionError(f"Invalid interval [{self.start}, {self.end})")

    def __len__(self) -> int:
        return self.end - self.start

    def __contains__(self, pos: object) -> bool:
        return isinstance(pos, int) and self.start <= pos < self.end

    def positions(self) -> range:
        return range(self.start, self.end)


@dataclass(frozen=True)
class Sample:
    """Demultiplexed sample identity.

    ``Sample()`` (no barcode) is the ``Combined`` sample, which counts reads
    without a barcode tag (all reads when ``combined_includes_barcoded`` is
    set); ``Sample("ACGT-1")`` is one barcode bucket.
    """

    barcode: Optional[str] = None

    @property
    def is_combined(self) -> bool:
        return self.barcode is None

    def __str__(self) -> str:
        return "." if self.barcode is None else self.barcode

    def sort_key(self) -> Tuple[int, str]:
        return (0, "") if self.barcode is None else (1, self.barcode)


COMBINED = Sample()


class BaseCallStat:
    """Nucleotide tally at one genomic position.

    Counts are kept in :data:`BASES` order (A, T, G, C). The position is fixed
    at construction; counts only ever increase.
    """

    __slots__ = ("_position", "_counts")

    def __init__(self, position: int, counts: Optional[Iterable[int]] = None) -> None:
        self._position = int(position)
        if counts is None:
            self._counts = [0, 0, 0, 0]
        else:
            vals = [int(c) for c in counts]
            if len(vals) != 4 or any(c < 0 for c in vals):
                raise ValueError(f"Expected four non-negative counts, got {vals}")
            self._counts = vals

    @property
    def position(self) -> int:
        return self._position

    @property
    def counts(self) -> Tuple[int, int, int, int]:
        return tuple(self._counts)  # type: ignore[return-value]

    @property
    def total(self) -> int:
        return sum(self._counts)

    def count(self, base: str) -> int:
        return self._counts[_BASE_INDEX[base]]

    def add(self, base: str, n: int = 1) -> bool:
        """Count ``base`` ``n`` times. Returns False (and counts nothing) for non-ACGT symbols."""
        idx = _BASE_INDEX.get(base)
        if idx is None:
            return False
        if n < 0:
            raise ValueError("Counts can only increase")
        self._counts[idx] += n
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BaseCallStat):
            return NotImplemented
        return self._position == other._position and self._counts == other._counts

    def __hash__(self) -> int:
        return hash((self._position, tuple(self._counts)))

    def __repr__(self) -> str:
        a, t, g, c = self._counts
        return f"BaseCallStat(position={self._position}, A={a}, T={t}, G={g}, C={c})"


@dataclass(frozen=True)
class BiAllele:
    """Top two alleles at a position, ranked by count."""

    a1: str
    n1: int
    a2: str
    n2: int


@dataclass
class VariablePositionSet:
    """Positions flagged as variable on one reference sequence, per strand.

    Only ever grows: positions are added by union, never removed.
    """

    forward: Set[int] = field(default_factory=set)
    reverse: Set[int] = field(default_factory=set)

    def for_strand(self, strand: Strand) -> Set[int]:
        return self.forward if strand is Strand.FORWARD else self.reverse

    def add(self, strand: Strand, positions: Iterable[int]) -> None:
        self.for_strand(strand).update(positions)

    def update(self, other: "VariablePositionSet") -> None:
        self.forward |= other.forward
        self.reverse |= other.reverse

    def copy(self) -> "VariablePositionSet":
        return VariablePositionSet(forward=set(self.forward), reverse=set(self.reverse))

    def union_positions(self) -> List[int]:
        return sorted(self.forward | self.reverse)

    def __len__(self) -> int:
        return len(self.forward) + len(self.reverse)


StatKey = Tuple[Sample, str]


@dataclass(frozen=True)
class Candidate:
    """A position scored by the case/control comparator.

    Attributes
    ----------
    sample:
        Sample the two stats were drawn from (same sample in both datasets).
    chrom:
        Reference sequence name.
    position:
        0-based genomic position.
    strand:
        Strand the counts were collected on.
    score:
        Output of the comparator's scoring function; larger means more different.
    fg, bg:
        Foreground and background tallies at this position.
    """

    sample: Sample
    chrom: str
    position: int
    strand: Strand
    score: float
    fg: BaseCallStat
    bg: BaseCallStat
