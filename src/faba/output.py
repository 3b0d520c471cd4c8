from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

from .filters import VariabilityFilter
from .models import BASES, BaseCallStat, Candidate, StatKey, Strand, VariablePositionSet
from .sifter import Sifter
from .utils import fmt_freq, open_textmaybe_gzip

logger = logging.getLogger(__name__)

_FILTER = VariabilityFilter()

CANDIDATE_COLUMNS = (
    ["sample", "chrom", "pos0", "strand"]
    + [f"fg_{b}" for b in BASES]
    + [f"bg_{b}" for b in BASES]
    + ["fg_major", "fg_maf", "bg_major", "bg_maf", "score"]
)

STATISTICS_COLUMNS = ["dataset", "sample", "chrom", "pos0", "strand"] + list(BASES) + [
    "total",
    "major",
    "maf",
    "near_invariant",
    "minor_ok",
]


def _major(stat: BaseCallStat) -> List[str]:
    maf = _FILTER.major_allele_frequency(stat)
    if maf is None:
        return [".", "NA"]
    return [maf[0], fmt_freq(maf[1])]


def _flag(value: bool) -> str:
    return "1" if value else "0"


def write_candidates_tsv(path: str | Path, candidates: Iterable[Candidate]) -> int:
    n = 0
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(CANDIDATE_COLUMNS) + "\n")
        for c in candidates:
            row = [str(c.sample), c.chrom, str(c.position), str(c.strand)]
            row += [str(x) for x in c.fg.counts]
            row += [str(x) for x in c.bg.counts]
            row += _major(c.fg) + _major(c.bg) + [f"{c.score:.6g}"]
            fh.write("\t".join(row) + "\n")
            n += 1
    logger.info("Wrote %d candidates to %s", n, path)
    return n


def _iter_stat_rows(dataset: str, sifter: Sifter) -> Iterable[List[str]]:
    var = sifter.variability
    chrom_order = {name: i for i, name in enumerate(sifter.jobs)}
    for strand in Strand:
        table: Dict[StatKey, List[BaseCallStat]] = sifter.statistics(strand)
        keys = sorted(table, key=lambda k: (chrom_order.get(k[1], len(chrom_order)), k[0].sort_key()))
        for sample, chrom in keys:
            for stat in table[(sample, chrom)]:
                yield (
                    [dataset, str(sample), chrom, str(stat.position), str(strand)]
                    + [str(x) for x in stat.counts]
                    + [str(stat.total)]
                    + _major(stat)
                    + [_flag(var.is_near_invariant(stat)), _flag(var.passes_minor_cutoff(stat))]
                )


def write_statistics_tsv(path: str | Path, sifters: Sequence[Tuple[str, Sifter]]) -> int:
    """Write ``(dataset_label, sifter)`` statistics tables into one TSV."""
    n = 0
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(STATISTICS_COLUMNS) + "\n")
        for dataset, sifter in sifters:
            for row in _iter_stat_rows(dataset, sifter):
                fh.write("\t".join(row) + "\n")
                n += 1
    logger.info("Wrote %d statistics rows to %s", n, path)
    return n


def write_positions_bed(
    path: str | Path,
    positions: Dict[str, VariablePositionSet],
    chrom_order: Sequence[str],
) -> int:
    """One BED line per (position, strand), 0-based half-open, in header order."""
    n = 0
    with open_textmaybe_gzip(path, "wt") as fh:
        for chrom in chrom_order:
            vps = positions.get(chrom)
            if vps is None:
                continue
            for pos in vps.union_positions():
                for strand in Strand:
                    if pos in vps.for_strand(strand):
                        fh.write(f"{chrom}\t{pos}\t{pos + 1}\t.\t0\t{strand}\n")
                        n += 1
    logger.info("Wrote %d variable positions to %s", n, path)
    return n
