from __future__ import annotations

import logging
import random
import threading
import time
from enum import IntEnum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .aggregate import DEFAULT_BARCODE_TAG, BaseCallAggregator
from .errors import EmptyResultError, FailureReport, SifterStateError
from .filters import VariabilityFilter
from .intervals import DEFAULT_BLOCK_SIZE, build_block_jobs
from .models import (
    BaseCallStat,
    GenomicInterval,
    ReferenceSequence,
    Sample,
    StatKey,
    Strand,
    VariablePositionSet,
)
from .source import SharedAlignmentSource
from .workers import CancellationToken, WorkerPool

logger = logging.getLogger(__name__)

BlockJob = Tuple[str, GenomicInterval]
PositionJob = Tuple[str, int, Tuple[Strand, ...]]
PositionResult = List[Tuple[Sample, Strand, BaseCallStat]]


class SifterState(IntEnum):
    INITIALIZED = 0
    SWEPT = 1
    RECONCILED = 2
    STATISTICS_POPULATED = 3


class Sifter:
    """Two-pass variable-site finder for one indexed BAM.

    Lifecycle: :meth:`sweep` flags variable positions block by block,
    :meth:`reconcile` unions them with a paired sifter, and
    :meth:`populate_statistics` recounts every flagged position exactly.
    Stages run in order; calling one early raises SifterStateError.

    Parameters
    ----------
    bam_path, index_path:
        Coordinate-sorted BAM and optional explicit index (default ``<bam>.bai``,
        built if missing).
    block_size:
        Width of the first-pass work blocks.
    pool:
        Worker pool to run on. If omitted a private pool is created and closed
        with the sifter.
    variability:
        Rules deciding which positions are variable.
    barcode_tag:
        Per-read demultiplexing tag, or None to count only ``Combined``.
    label:
        Name used in logs and reports (defaults to the BAM file name).
    """

    def __init__(
        self,
        bam_path: str | Path,
        index_path: Optional[str | Path] = None,
        *,
        block_size: int = DEFAULT_BLOCK_SIZE,
        pool: Optional[WorkerPool] = None,
        variability: Optional[VariabilityFilter] = None,
        barcode_tag: Optional[str] = DEFAULT_BARCODE_TAG,
        combined_includes_barcoded: bool = False,
        label: Optional[str] = None,
        build_index: bool = True,
    ) -> None:
        if block_size <= 0:
            raise ValueError(f"block_size must be > 0, got {block_size}")

        self.label = label or Path(bam_path).name
        self.block_size = int(block_size)
        self.source = SharedAlignmentSource(bam_path, index_path, build_index=build_index)
        self.references: List[ReferenceSequence] = list(self.source.references)
        self.jobs: Dict[str, List[GenomicInterval]] = build_block_jobs(self.references, self.block_size)

        self.variability = variability or VariabilityFilter()
        self.aggregator = BaseCallAggregator(
            barcode_tag, combined_includes_barcoded=combined_includes_barcoded
        )

        self._owns_pool = pool is None
        self.pool = pool if pool is not None else WorkerPool()

        self.variable_positions: Dict[str, VariablePositionSet] = {}
        self.forward_statistics: Dict[StatKey, List[BaseCallStat]] = {}
        self.reverse_statistics: Dict[StatKey, List[BaseCallStat]] = {}
        self.sweep_report = FailureReport("sweep")
        self.statistics_report = FailureReport("statistics")
        self.unmatched_sequences: Set[str] = set()
        self.sweep_counts: Dict[str, Dict[str, int]] = {}

        self._swept: Set[str] = set()
        self._state = SifterState.INITIALIZED
        self._lock = threading.Lock()

        logger.info(
            "%s: %d reference sequences, %d blocks of %d bp",
            self.label,
            len(self.references),
            sum(len(b) for b in self.jobs.values()),
            self.block_size,
        )

    # -----------------
    # state
    # -----------------

    @property
    def state(self) -> SifterState:
        return self._state

    def _require(self, minimum: SifterState, operation: str) -> None:
        if self._state < minimum:
            raise SifterStateError(
                f"{operation}() on {self.label} requires state {minimum.name}, "
                f"current state is {self._state.name}"
            )

    def _forbid(self, maximum: SifterState, operation: str) -> None:
        if self._state > maximum:
            raise SifterStateError(
                f"{operation}() on {self.label} is not allowed in state {self._state.name}"
            )

    # -----------------
    # first pass
    # -----------------

    def variable_bases(self, chrom: str, block: GenomicInterval) -> VariablePositionSet:
        """Positions in one block flagged variable in any sample, per strand."""
        freq = self.aggregator.aggregate(self.source, chrom, block.start, block.end)
        out = VariablePositionSet()
        is_variable = self.variability.is_variable
        for _sample, table in freq.items():
            for strand in Strand:
                out.add(strand, (s.position for s in table.for_strand(strand) if is_variable(s)))
        return out

    def _pending_blocks(self, shuffle_seed: Optional[int]) -> List[BlockJob]:
        items = [
            (chrom, block)
            for chrom, blocks in self.jobs.items()
            if chrom not in self._swept
            for block in blocks
        ]
        if shuffle_seed is not None:
            random.Random(shuffle_seed).shuffle(items)
        return items

    def sweep(
        self,
        *,
        cancel: Optional[CancellationToken] = None,
        shuffle_seed: Optional[int] = None,
    ) -> FailureReport:
        """First pass: flag variable positions over every block of every sequence.

        A failing block is recorded in the returned report and contributes no
        positions. A sequence's positions are merged only once all of its
        blocks have run, so a cancelled sweep leaves every sequence either
        fully swept or untouched; calling :meth:`sweep` again resumes with the
        untouched ones. ``shuffle_seed`` randomises block submission order.
        """
        self._forbid(SifterState.INITIALIZED, "sweep")
        t0 = time.time()
        report = FailureReport("sweep")

        for chrom, blocks in self.jobs.items():
            if not blocks and chrom not in self._swept:
                self.variable_positions[chrom] = VariablePositionSet()
                self._swept.add(chrom)

        items = self._pending_blocks(shuffle_seed)
        remaining: Dict[str, int] = {}
        for chrom, _ in items:
            remaining[chrom] = remaining.get(chrom, 0) + 1
        partial: Dict[str, VariablePositionSet] = {c: VariablePositionSet() for c in remaining}
        incomplete: Set[str] = set()

        def _work(job: BlockJob) -> VariablePositionSet:
            return self.variable_bases(job[0], job[1])

        outcomes = self.pool.run(
            _work,
            items,
            cancel=cancel,
            desc=f"Sweeping {self.label}",
            total=len(items),
            unit="block",
        )
        for outcome in outcomes:
            chrom, block = outcome.item
            if outcome.skipped:
                incomplete.add(chrom)
            elif outcome.error is not None:
                if isinstance(outcome.error, EmptyResultError):
                    report.record_empty()
                else:
                    logger.warning(
                        "%s: block %s:%d-%d failed: %s",
                        self.label,
                        chrom,
                        block.start,
                        block.end,
                        outcome.error,
                    )
                    report.record_failure(chrom, block.start, block.end, outcome.error)
            else:
                report.record_ok()
                with self._lock:
                    partial[chrom].update(outcome.result)

            remaining[chrom] -= 1
            if remaining[chrom] == 0 and chrom not in incomplete:
                with self._lock:
                    self.variable_positions[chrom] = partial.pop(chrom)
                    self._swept.add(chrom)

        report.cancelled = bool(incomplete)
        self.sweep_report.merge(report)

        if len(self._swept) == len(self.jobs):
            self._state = SifterState.SWEPT
            self.sweep_counts = self.position_counts()

        n_fwd = sum(len(v.forward) for v in self.variable_positions.values())
        n_rev = sum(len(v.reverse) for v in self.variable_positions.values())
        logger.info(
            "%s: %s; %d forward and %d reverse variable positions in %.1fs",
            self.label,
            report.summary_line(),
            n_fwd,
            n_rev,
            time.time() - t0,
        )
        if report.failed:
            logger.warning("%s: %d blocks failed during sweep", self.label, report.failed)
        if incomplete:
            logger.warning(
                "%s: sweep cancelled; %d sequence(s) left unswept", self.label, len(incomplete)
            )
        return report

    # -----------------
    # reconciliation
    # -----------------

    def reconcile(self, other: "Sifter") -> None:
        """Add every position flagged by ``other`` to this sifter (set union).

        Must be called on both sifters so the two datasets end up scored at
        the same positions. Sequences missing from this BAM's header are
        skipped and listed in :attr:`unmatched_sequences`.
        """
        if other is self:
            raise ValueError("A sifter cannot be reconciled with itself")
        self._require(SifterState.SWEPT, "reconcile")
        self._forbid(SifterState.RECONCILED, "reconcile")
        other._require(SifterState.SWEPT, "reconcile")

        known = set(self.jobs)
        with other._lock:
            theirs = {chrom: vps.copy() for chrom, vps in other.variable_positions.items()}

        added = 0
        with self._lock:
            for chrom, vps in theirs.items():
                if chrom not in known:
                    if vps:
                        self.unmatched_sequences.add(chrom)
                    continue
                mine = self.variable_positions.setdefault(chrom, VariablePositionSet())
                before = len(mine)
                mine.update(vps)
                added += len(mine) - before
            self._state = SifterState.RECONCILED

        if self.unmatched_sequences:
            logger.warning(
                "%s: %d sequence(s) flagged in %s are absent from this header: %s",
                self.label,
                len(self.unmatched_sequences),
                other.label,
                ", ".join(sorted(self.unmatched_sequences)[:5]),
            )
        logger.info("%s: reconciled with %s, %d positions added", self.label, other.label, added)

    # -----------------
    # second pass
    # -----------------

    def _position_jobs(self) -> Iterator[PositionJob]:
        for chrom in self.jobs:
            vps = self.variable_positions.get(chrom)
            if vps is None:
                continue
            for pos in vps.union_positions():
                strands = tuple(s for s in Strand if pos in vps.for_strand(s))
                yield chrom, pos, strands

    def position_statistics(self, chrom: str, pos: int, strands: Tuple[Strand, ...]) -> PositionResult:
        """Exact per-sample counts at one position on the requested strands."""
        freq = self.aggregator.aggregate(self.source, chrom, pos, pos + 1, allow_empty=True)
        out: PositionResult = []
        for sample, table in freq.items():
            for strand in strands:
                out.append((sample, strand, table.stat_at(strand, pos)))
        return out

    def populate_statistics(
        self,
        *,
        cancel: Optional[CancellationToken] = None,
        shuffle_seed: Optional[int] = None,
    ) -> FailureReport:
        """Second pass: fetch ``[pos, pos + 1)`` for every reconciled position.

        Positions without coverage still get an all-zero ``Combined`` entry so
        both datasets can be compared at the same coordinates. On cancellation
        the partial tables are discarded and the sifter stays RECONCILED.
        ``shuffle_seed`` randomises position submission order.
        """
        self._require(SifterState.RECONCILED, "populate_statistics")
        self._forbid(SifterState.RECONCILED, "populate_statistics")
        t0 = time.time()
        report = FailureReport("statistics")

        forward: Dict[StatKey, List[BaseCallStat]] = {}
        reverse: Dict[StatKey, List[BaseCallStat]] = {}
        items: Iterable[PositionJob] = self._position_jobs()
        if shuffle_seed is not None:
            items = list(items)
            random.Random(shuffle_seed).shuffle(items)
        total = sum(len(v.forward | v.reverse) for v in self.variable_positions.values())

        def _work(job: PositionJob) -> PositionResult:
            return self.position_statistics(*job)

        skipped = False
        outcomes = self.pool.run(
            _work,
            items,
            cancel=cancel,
            desc=f"Counting {self.label}",
            total=total,
            unit="pos",
        )
        for outcome in outcomes:
            chrom, pos, _strands = outcome.item
            if outcome.skipped:
                skipped = True
                continue
            if outcome.error is not None:
                logger.warning("%s: position %s:%d failed: %s", self.label, chrom, pos, outcome.error)
                report.record_failure(chrom, pos, pos + 1, outcome.error)
                continue

            covered = False
            with self._lock:
                for sample, strand, stat in outcome.result:
                    table = forward if strand is Strand.FORWARD else reverse
                    table.setdefault((sample, chrom), []).append(stat)
                    covered = covered or stat.total > 0
            if covered:
                report.record_ok()
            else:
                report.record_empty()

        report.cancelled = skipped
        self.statistics_report.merge(report)

        if skipped:
            logger.warning("%s: statistics pass cancelled; partial tables discarded", self.label)
            return report

        for table in (forward, reverse):
            for stats in table.values():
                stats.sort(key=lambda s: s.position)
        with self._lock:
            self.forward_statistics = forward
            self.reverse_statistics = reverse
            self._state = SifterState.STATISTICS_POPULATED

        logger.info("%s: %s in %.1fs", self.label, report.summary_line(), time.time() - t0)
        if report.failed:
            logger.warning("%s: %d positions failed during statistics pass", self.label, report.failed)
        return report

    # -----------------
    # accessors
    # -----------------

    def statistics(self, strand: Strand) -> Dict[StatKey, List[BaseCallStat]]:
        self._require(SifterState.STATISTICS_POPULATED, "statistics")
        return self.forward_statistics if strand is Strand.FORWARD else self.reverse_statistics

    def samples(self) -> List[Sample]:
        seen = {k[0] for k in self.forward_statistics} | {k[0] for k in self.reverse_statistics}
        return sorted(seen, key=Sample.sort_key)

    def position_counts(self) -> Dict[str, Dict[str, int]]:
        return {
            chrom: {"forward": len(v.forward), "reverse": len(v.reverse)}
            for chrom, v in self.variable_positions.items()
        }

    def close(self) -> None:
        self.source.close()
        if self._owns_pool:
            self.pool.close()

    def __enter__(self) -> "Sifter":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
