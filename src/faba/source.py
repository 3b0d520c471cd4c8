from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional

import pysam

from .errors import AlignmentIOError, RegionError
from .models import ReferenceSequence
from .validation import read_reference_layout, resolve_bam_index

logger = logging.getLogger(__name__)

RecordVisitor = Callable[[pysam.AlignedSegment], None]


class SharedAlignmentSource:
    """One indexed BAM reader shared by all worker threads.

    ``fetch`` followed by iteration mutates the reader's file cursor, so every
    scan runs under a single lock. The underlying ``pysam.AlignmentFile`` is
    never handed out; callers only see records through :meth:`fetch_and_scan`.
    """

    def __init__(
        self,
        bam_path: str | Path,
        index_path: Optional[str | Path] = None,
        *,
        build_index: bool = True,
    ) -> None:
        self.bam_path = str(bam_path)
        self.index_path = resolve_bam_index(bam_path, index_path, build=build_index)
        self.references: List[ReferenceSequence] = read_reference_layout(bam_path)

        try:
            self._bam = pysam.AlignmentFile(self.bam_path, "rb", index_filename=self.index_path)
        except (OSError, ValueError) as e:
            raise AlignmentIOError(f"Failed to open indexed BAM {self.bam_path}: {e}") from e
        self._lock = threading.Lock()
        self._closed = False
        self.scans = 0

        logger.debug(
            "Opened %s (index %s) with %d reference sequences",
            self.bam_path,
            self.index_path,
            len(self.references),
        )

    def fetch_and_scan(self, chrom: str, start: int, end: int, visit: RecordVisitor) -> int:
        """Call ``visit`` for every non-duplicate mapped read overlapping ``[start, end)``.

        Returns the number of records visited. The lock is held for the whole
        scan, so ``visit`` must be quick and must not call back into the source.
        """
        if start < 0 or start >= end:
            raise RegionError(f"Invalid region {chrom}:{start}-{end}")

        n = 0
        with self._lock:
            if self._closed:
                raise AlignmentIOError(f"Source for {self.bam_path} is closed")
            try:
                for read in self._bam.fetch(chrom, start, end):
                    if read.is_unmapped or read.is_duplicate:
                        continue
                    visit(read)
                    n += 1
            except (OSError, ValueError, KeyError) as e:
                raise AlignmentIOError(
                    f"Failed to scan {chrom}:{start}-{end} in {self.bam_path}: {e}"
                ) from e
            self.scans += 1
        return n

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._bam.close()
                self._closed = True

    def __enter__(self) -> "SharedAlignmentSource":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
