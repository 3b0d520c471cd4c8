from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .models import BASES, BaseCallStat, BiAllele

DEFAULT_MAJOR_CUTOFF = 1.0 - 1e-4
DEFAULT_MINOR_CUTOFF = 1e-4


@dataclass(frozen=True)
class VariabilityFilter:
    """Stateless rules classifying a position's base counts.

    Ties in count are broken by base order A, T, G, C, so identical input
    always ranks identically.

    Attributes
    ----------
    major_cutoff:
        A position whose major-allele share exceeds this is near-invariant.
    minor_cutoff:
        Minimum minor-allele share for :meth:`passes_minor_cutoff`.
    """

    major_cutoff: float = DEFAULT_MAJOR_CUTOFF
    minor_cutoff: float = DEFAULT_MINOR_CUTOFF

    def __post_init__(self) -> None:
        for name in ("major_cutoff", "minor_cutoff"):
            v = getattr(self, name)
            if not 0.0 <= v <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {v}")

    def bi_allelic_summary(self, stat: BaseCallStat) -> BiAllele:
        ranked = sorted(zip(BASES, stat.counts), key=lambda bc: -bc[1])
        (a1, n1), (a2, n2) = ranked[0], ranked[1]
        return BiAllele(a1=a1, n1=n1, a2=a2, n2=n2)

    def is_variable(self, stat: BaseCallStat) -> bool:
        """True iff at least two distinct bases were observed."""
        ba = self.bi_allelic_summary(stat)
        return ba.n1 > 0 and ba.n2 > 0

    def is_near_invariant(self, stat: BaseCallStat) -> bool:
        total = stat.total
        if total == 0:
            return False
        return self.bi_allelic_summary(stat).n1 / total > self.major_cutoff

    def passes_minor_cutoff(self, stat: BaseCallStat) -> bool:
        total = stat.total
        if total == 0:
            return False
        return self.bi_allelic_summary(stat).n2 / total >= self.minor_cutoff

    def major_allele_frequency(self, stat: BaseCallStat) -> Optional[Tuple[str, float]]:
        """``(major allele, share of total)``, or None for an uncovered position."""
        total = stat.total
        if total == 0:
            return None
        ba = self.bi_allelic_summary(stat)
        return ba.a1, ba.n1 / max(total, 1)

    def b_allele_frequency(self, stat: BaseCallStat) -> float:
        # share of the top allele among the top two
        ba = self.bi_allelic_summary(stat)
        return ba.n1 / max(ba.n1 + ba.n2, 1)
