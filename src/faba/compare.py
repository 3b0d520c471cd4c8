"""Case/control comparison of reconciled per-position statistics.

The comparator pairs foreground and background :class:`BaseCallStat` entries
that share sample, sequence, strand and position, and scores each pair with a
pluggable scoring function. Two scorers are provided:

``major_allele_shift`` (default)
    1.0 when the two datasets disagree on the major allele, otherwise the
    absolute difference in major-allele frequency. Simple and easy to reason
    about.

``dirichlet_multinomial_log_bf``
    Log Bayes factor of "independent base distributions" against "one shared
    distribution" under a symmetric Dirichlet prior. Positive values favour a
    difference. Neither the prior concentration nor a calling threshold has
    been calibrated on real data; treat it as experimental.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

import numpy as np
from scipy.special import gammaln

from .filters import VariabilityFilter
from .models import BaseCallStat, Candidate, StatKey, Strand

if TYPE_CHECKING:
    from .sifter import Sifter

logger = logging.getLogger(__name__)

Scorer = Callable[[BaseCallStat, BaseCallStat], Optional[float]]

DEFAULT_PRIOR = 0.25
DEFAULT_MIN_SCORE = 0.1
DEFAULT_MIN_DEPTH = 2

_FILTER = VariabilityFilter()


def major_allele_shift(fg: BaseCallStat, bg: BaseCallStat) -> Optional[float]:
    """Score in [0, 1]; None if either side has no coverage."""
    mf = _FILTER.major_allele_frequency(fg)
    mb = _FILTER.major_allele_frequency(bg)
    if mf is None or mb is None:
        return None
    if mf[0] != mb[0]:
        return 1.0
    return abs(mf[1] - mb[1])


def _log_multivariate_beta(v: np.ndarray) -> float:
    return float(gammaln(v).sum() - gammaln(v.sum()))


def dirichlet_multinomial_log_bf(
    fg: BaseCallStat,
    bg: BaseCallStat,
    *,
    prior: float = DEFAULT_PRIOR,
) -> Optional[float]:
    """log P(fg, bg | independent) - log P(fg, bg | shared), Dirichlet(prior) on each.

    Multinomial coefficients cancel between the two hypotheses.
    """
    if prior <= 0:
        raise ValueError(f"prior must be > 0, got {prior}")
    x = np.asarray(fg.counts, dtype=float)
    y = np.asarray(bg.counts, dtype=float)
    if x.sum() + y.sum() == 0:
        return None
    a = np.full(4, prior)
    return (
        _log_multivariate_beta(x + a)
        + _log_multivariate_beta(y + a)
        - _log_multivariate_beta(a)
        - _log_multivariate_beta(x + y + a)
    )


def make_scorer(name: str, *, prior: float = DEFAULT_PRIOR) -> Scorer:
    """Look up a scorer by its CLI name."""
    if name == "major-shift":
        return major_allele_shift
    if name == "dm-bayes-factor":
        return lambda fg, bg: dirichlet_multinomial_log_bf(fg, bg, prior=prior)
    raise ValueError(f"Unknown scorer {name!r}; choose from {', '.join(SCORERS)}")


SCORERS = ("major-shift", "dm-bayes-factor")


class CaseControlComparator:
    """Score positions present in both datasets and keep those above a threshold.

    Parameters
    ----------
    scorer:
        ``f(fg_stat, bg_stat) -> Optional[float]``; None means "not scorable".
    min_score:
        Candidates need ``score >= min_score``.
    min_depth:
        Pairs whose combined read depth is below this are not scored.
    variability:
        Pairs where both sides are near-invariant for the same major allele
        under this filter are not scored.

    Counters and :attr:`scores` describe the latest :meth:`compare_sifters`
    call; plain :meth:`compare` calls accumulate until :meth:`reset`.
    """

    def __init__(
        self,
        scorer: Scorer = major_allele_shift,
        *,
        min_score: float = DEFAULT_MIN_SCORE,
        min_depth: int = DEFAULT_MIN_DEPTH,
        variability: Optional[VariabilityFilter] = None,
    ) -> None:
        self.scorer = scorer
        self.min_score = float(min_score)
        self.min_depth = int(min_depth)
        self.variability = variability or VariabilityFilter()
        self.reset()

    def reset(self) -> None:
        self.pairs_seen = 0
        self.pairs_invariant = 0
        self.pairs_scored = 0
        self.scores: List[float] = []

    def iter_scored(
        self,
        fg_stats: Mapping[StatKey, Sequence[BaseCallStat]],
        bg_stats: Mapping[StatKey, Sequence[BaseCallStat]],
        strand: Strand = Strand.FORWARD,
    ) -> Iterator[Candidate]:
        """Every scorable pair, regardless of ``min_score``."""
        for key in fg_stats:
            if key not in bg_stats:
                continue
            sample, chrom = key
            bg_by_pos: Dict[int, BaseCallStat] = {s.position: s for s in bg_stats[key]}
            for fg in fg_stats[key]:
                bg = bg_by_pos.get(fg.position)
                if bg is None:
                    continue
                self.pairs_seen += 1
                if fg.total + bg.total < self.min_depth:
                    continue
                if self._both_fixed(fg, bg):
                    self.pairs_invariant += 1
                    continue
                score = self.scorer(fg, bg)
                if score is None or math.isnan(score):
                    continue
                self.pairs_scored += 1
                self.scores.append(float(score))
                yield Candidate(
                    sample=sample,
                    chrom=chrom,
                    position=fg.position,
                    strand=strand,
                    score=float(score),
                    fg=fg,
                    bg=bg,
                )

    def _both_fixed(self, fg: BaseCallStat, bg: BaseCallStat) -> bool:
        var = self.variability
        if not (var.is_near_invariant(fg) and var.is_near_invariant(bg)):
            return False
        return var.bi_allelic_summary(fg).a1 == var.bi_allelic_summary(bg).a1

    def compare(
        self,
        fg_stats: Mapping[StatKey, Sequence[BaseCallStat]],
        bg_stats: Mapping[StatKey, Sequence[BaseCallStat]],
        strand: Strand = Strand.FORWARD,
    ) -> List[Candidate]:
        out = [c for c in self.iter_scored(fg_stats, bg_stats, strand) if c.score >= self.min_score]
        out.sort(key=_candidate_order)
        return out

    def compare_sifters(self, fg: "Sifter", bg: "Sifter") -> List[Candidate]:
        """Compare both strands of two sifters whose statistics are populated."""
        self.reset()
        out: List[Candidate] = []
        for strand in Strand:
            out.extend(self.compare(fg.statistics(strand), bg.statistics(strand), strand))
        out.sort(key=_candidate_order)
        logger.info(
            "Compared %d position pairs (%d scored, %d near-invariant on both sides); "
            "%d candidates with score >= %g",
            self.pairs_seen,
            self.pairs_scored,
            self.pairs_invariant,
            len(out),
            self.min_score,
        )
        return out


def _candidate_order(c: Candidate):
    return (c.chrom, c.position, c.strand.value, c.sample.sort_key())
