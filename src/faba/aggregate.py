from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import pysam

from .errors import EmptyResultError, RegionError
from .models import COMBINED, BaseCallStat, Sample, Strand
from .source import SharedAlignmentSource

logger = logging.getLogger(__name__)

DEFAULT_BARCODE_TAG = "CB"

_MATCH_OPS = (0, 7, 8)  # M, =, X: consume query and reference
_QUERY_ONLY_OPS = (1, 4)  # I, S
_REF_ONLY_OPS = (2, 3)  # D, N


@dataclass(frozen=True)
class ReadSnapshot:
    """The fields of one alignment record needed for counting.

    Copied out of pysam while the shared reader is locked so that the
    per-base loop runs outside the critical section.
    """

    reference_start: int
    cigartuples: Tuple[Tuple[int, int], ...]
    query_sequence: str
    is_reverse: bool
    barcode: Optional[str]


def snapshot_read(read: pysam.AlignedSegment, barcode_tag: Optional[str]) -> Optional[ReadSnapshot]:
    seq = read.query_sequence
    cig = read.cigartuples
    if seq is None or cig is None or read.reference_start is None:
        return None

    barcode: Optional[str] = None
    if barcode_tag and read.has_tag(barcode_tag):
        value = read.get_tag(barcode_tag)
        # Only string-valued tags identify a sample.
        if isinstance(value, str):
            barcode = value

    return ReadSnapshot(
        reference_start=int(read.reference_start),
        cigartuples=tuple((int(op), int(n)) for op, n in cig),
        query_sequence=seq,
        is_reverse=bool(read.is_reverse),
        barcode=barcode,
    )


def iter_aligned_bases(
    reference_start: int,
    cigartuples: Sequence[Tuple[int, int]],
    seq: str,
    start: int,
    end: int,
) -> Iterator[Tuple[int, str]]:
    """Yield ``(genomic_pos, base)`` for aligned (M/=/X) bases inside ``[start, end)``.

    Insertions, deletions, skips and clips produce nothing. This walks the
    CIGAR once and only touches bases in the window.
    """
    ref_pos = reference_start
    query_pos = 0
    for op, length in cigartuples:
        if ref_pos >= end:
            break
        if op in _MATCH_OPS:
            lo = max(ref_pos, start)
            hi = min(ref_pos + length, end)
            for g in range(lo, hi):
                q = query_pos + (g - ref_pos)
                if q < len(seq):
                    yield g, seq[q]
            ref_pos += length
            query_pos += length
        elif op in _QUERY_ONLY_OPS:
            query_pos += length
        elif op in _REF_ONLY_OPS:
            ref_pos += length
        # H, P and unknown ops consume neither


class StrandedFrequencyTable:
    """Forward and reverse :class:`BaseCallStat` vectors for one sample over one interval.

    Element ``i`` of either vector always describes position ``start + i``;
    the vectors are filled once at construction and never resized.
    """

    __slots__ = ("start", "end", "forward", "reverse")

    def __init__(self, start: int, end: int) -> None:
        if start < 0 or start >= end:
            raise RegionError(f"Invalid interval [{start}, {end})")
        self.start = start
        self.end = end
        self.forward: List[BaseCallStat] = [BaseCallStat(g) for g in range(start, end)]
        self.reverse: List[BaseCallStat] = [BaseCallStat(g) for g in range(start, end)]

    def __len__(self) -> int:
        return self.end - self.start

    def for_strand(self, strand: Strand) -> List[BaseCallStat]:
        return self.forward if strand is Strand.FORWARD else self.reverse

    def stat_at(self, strand: Strand, pos: int) -> BaseCallStat:
        if not self.start <= pos < self.end:
            raise RegionError(f"Position {pos} outside [{self.start}, {self.end})")
        return self.for_strand(strand)[pos - self.start]


class FrequencyMap:
    """Per-sample stranded tables for one region, in order of first appearance.

    ``Combined`` is always present and always first.
    """

    def __init__(self, chrom: str, start: int, end: int) -> None:
        self.chrom = chrom
        self.start = start
        self.end = end
        self.records = 0
        self.bases_counted = 0
        self._tables: Dict[Sample, StrandedFrequencyTable] = {}
        self.new_sample(COMBINED)

    def has_sample(self, sample: Sample) -> bool:
        return sample in self._tables

    def new_sample(self, sample: Sample) -> StrandedFrequencyTable:
        table = self._tables.get(sample)
        if table is None:
            table = StrandedFrequencyTable(self.start, self.end)
            self._tables[sample] = table
        return table

    def samples(self) -> List[Sample]:
        return list(self._tables)

    def table(self, sample: Sample) -> StrandedFrequencyTable:
        return self._tables[sample]

    def get(self, sample: Sample, strand: Strand) -> Optional[List[BaseCallStat]]:
        table = self._tables.get(sample)
        return None if table is None else table.for_strand(strand)

    def items(self):
        return self._tables.items()


class BaseCallAggregator:
    """Build per-sample, per-strand base counts for a region.

    Parameters
    ----------
    barcode_tag:
        Auxiliary tag holding the demultiplexing barcode (``CB`` for 10x data).
        ``None`` disables demultiplexing; every read then goes to ``Combined``.
    combined_includes_barcoded:
        If True, barcoded reads are counted in ``Combined`` as well as in
        their own bucket. The default routes each read to exactly one sample.
    """

    def __init__(
        self,
        barcode_tag: Optional[str] = DEFAULT_BARCODE_TAG,
        *,
        combined_includes_barcoded: bool = False,
    ) -> None:
        self.barcode_tag = barcode_tag
        self.combined_includes_barcoded = combined_includes_barcoded

    def aggregate(
        self,
        source: SharedAlignmentSource,
        chrom: str,
        start: int,
        end: int,
        *,
        allow_empty: bool = False,
    ) -> FrequencyMap:
        """Scan ``[start, end)`` and return the filled :class:`FrequencyMap`.

        Raises EmptyResultError when no usable record overlaps the region,
        unless ``allow_empty`` is set, in which case the all-zero map is returned.
        """
        if start < 0 or start >= end:
            raise RegionError(f"Invalid region {chrom}:{start}-{end}")

        snapshots: List[ReadSnapshot] = []
        tag = self.barcode_tag

        def _visit(read: pysam.AlignedSegment) -> None:
            snap = snapshot_read(read, tag)
            if snap is not None:
                snapshots.append(snap)

        source.fetch_and_scan(chrom, start, end, _visit)

        freq = FrequencyMap(chrom, start, end)
        if not snapshots and not allow_empty:
            raise EmptyResultError(f"No usable reads in {chrom}:{start}-{end}")

        for snap in snapshots:
            self._count(freq, snap)
        freq.records = len(snapshots)
        return freq

    def _count(self, freq: FrequencyMap, snap: ReadSnapshot) -> None:
        strand = Strand.REVERSE if snap.is_reverse else Strand.FORWARD
        targets: List[List[BaseCallStat]] = []
        if snap.barcode is None:
            targets.append(freq.table(COMBINED).for_strand(strand))
        else:
            targets.append(freq.new_sample(Sample(snap.barcode)).for_strand(strand))
            if self.combined_includes_barcoded:
                targets.append(freq.table(COMBINED).for_strand(strand))

        start, end = freq.start, freq.end
        for g, base in iter_aligned_bases(
            snap.reference_start, snap.cigartuples, snap.query_sequence, start, end
        ):
            if g < start or g >= end:
                continue
            for vec in targets:
                if vec[g - start].add(base):
                    freq.bases_counted += 1


def aggregate_region(
    source: SharedAlignmentSource,
    chrom: str,
    start: int,
    end: int,
    *,
    barcode_tag: Optional[str] = DEFAULT_BARCODE_TAG,
    allow_empty: bool = False,
) -> FrequencyMap:
    """Convenience wrapper around :meth:`BaseCallAggregator.aggregate`."""
    return BaseCallAggregator(barcode_tag).aggregate(
        source, chrom, start, end, allow_empty=allow_empty
    )
