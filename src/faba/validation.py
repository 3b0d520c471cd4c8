from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import pysam

from .errors import AlignmentIOError
from .models import ReferenceSequence

logger = logging.getLogger(__name__)


_UCSC_PREFIX = "chr"


def default_index_path(bam_path: str | Path) -> Path:
    bam = Path(bam_path)
    return bam.with_suffix(bam.suffix + ".bai")


def resolve_bam_index(
    bam_path: str | Path,
    index_path: Optional[str | Path] = None,
    *,
    build: bool = True,
    threads: Optional[int] = None,
) -> str:
    """Return a usable BAM index path, building ``<bam>.bai`` if needed.

    An explicitly given ``index_path`` must exist unless ``build`` is True, in
    which case it is created at that location. Raises AlignmentIOError when the
    BAM is missing or the index cannot be produced.
    """
    bam = Path(bam_path)
    if not bam.exists():
        raise AlignmentIOError(f"BAM file does not exist: {bam}")

    if index_path is not None:
        candidates = [Path(index_path)]
    else:
        candidates = [default_index_path(bam), bam.with_suffix(".bai")]

    for c in candidates:
        if c.exists():
            return str(c)

    target = candidates[0]
    if not build:
        raise AlignmentIOError("BAM is not indexed. Run: samtools index " + str(bam))

    nthreads = threads if threads is not None else (os.cpu_count() or 1)
    logger.info("Creating index %s using %d threads", target, nthreads)
    try:
        pysam.index("-@", str(nthreads), str(bam), str(target))
    except pysam.SamtoolsError as e:
        raise AlignmentIOError(f"Failed to build index for {bam}: {e}") from e
    return str(target)


def read_reference_layout(bam_path: str | Path) -> List[ReferenceSequence]:
    """Read ``(name, length)`` for every reference sequence in the BAM header."""
    try:
        with pysam.AlignmentFile(str(bam_path), "rb") as bam:
            return [
                ReferenceSequence(name=str(name), length=int(length))
                for name, length in zip(bam.references, bam.lengths)
            ]
    except (OSError, ValueError) as e:
        raise AlignmentIOError(f"Cannot read BAM header of {bam_path}: {e}") from e


def detect_contig_style(contigs: Iterable[str]) -> str:
    """Infer contig style: 'ucsc' if most contigs start with 'chr', else 'ensembl'."""
    names = [c for c in contigs if c]
    if not names:
        return "unknown"
    chr_like = [c for c in names if c.startswith(_UCSC_PREFIX)]
    if len(chr_like) >= max(1, int(0.5 * len(names))):
        return "ucsc"
    return "ensembl"


def check_layouts_compatible(
    fg: Sequence[ReferenceSequence],
    bg: Sequence[ReferenceSequence],
) -> List[str]:
    """Compare two header layouts and return human-readable problems.

    Raises ValueError when the two files share no reference name at all, since
    then no position could ever be compared.
    """
    fg_len = {r.name: r.length for r in fg}
    bg_len = {r.name: r.length for r in bg}
    shared = set(fg_len).intersection(bg_len)

    if fg_len and bg_len and not shared:
        fg_style = detect_contig_style(fg_len)
        bg_style = detect_contig_style(bg_len)
        raise ValueError(
            "Contig mismatch between foreground and background BAM headers "
            f"(foreground={fg_style}, background={bg_style}, e.g. chr1 vs 1). "
            "Both files must be aligned to the same reference."
        )

    problems: List[str] = []
    for name in sorted(shared):
        if fg_len[name] != bg_len[name]:
            problems.append(
                f"Length of {name} differs: foreground={fg_len[name]}, background={bg_len[name]}"
            )
    only_fg = sorted(set(fg_len) - shared)
    only_bg = sorted(set(bg_len) - shared)
    if only_fg:
        problems.append(f"{len(only_fg)} contig(s) only in foreground, e.g. {only_fg[0]}")
    if only_bg:
        problems.append(f"{len(only_bg)} contig(s) only in background, e.g. {only_bg[0]}")
    for p in problems:
        logger.warning(p)
    return problems
