from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .aggregate import DEFAULT_BARCODE_TAG
from .compare import CaseControlComparator
from .errors import FailureReport
from .filters import VariabilityFilter
from .intervals import DEFAULT_BLOCK_SIZE
from .models import Candidate
from .sifter import Sifter, SifterState
from .validation import check_layouts_compatible
from .workers import CancellationToken, WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class CaseControlResult:
    """Everything a reporting step needs from one case/control run."""

    fg: Sifter
    bg: Sifter
    candidates: List[Candidate]
    layout_problems: List[str] = field(default_factory=list)
    runtime_seconds: float = 0.0

    @property
    def reports(self) -> Dict[str, FailureReport]:
        return {
            "fg_sweep": self.fg.sweep_report,
            "bg_sweep": self.bg.sweep_report,
            "fg_statistics": self.fg.statistics_report,
            "bg_statistics": self.bg.statistics_report,
        }

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.reports.values())

    @property
    def complete(self) -> bool:
        return self.fg.state == SifterState.STATISTICS_POPULATED and (
            self.bg.state == SifterState.STATISTICS_POPULATED
        )

    def close(self) -> None:
        self.fg.close()
        self.bg.close()


def sift_case_control(
    fg_bam: str | Path,
    bg_bam: str | Path,
    *,
    fg_index: Optional[str | Path] = None,
    bg_index: Optional[str | Path] = None,
    pool: WorkerPool,
    block_size: int = DEFAULT_BLOCK_SIZE,
    variability: Optional[VariabilityFilter] = None,
    barcode_tag: Optional[str] = DEFAULT_BARCODE_TAG,
    comparator: Optional[CaseControlComparator] = None,
    cancel: Optional[CancellationToken] = None,
) -> CaseControlResult:
    """Sweep both BAMs, reconcile symmetrically, recount, and compare.

    The returned sifters stay open for the caller to inspect; close them with
    :meth:`CaseControlResult.close`. If ``cancel`` fires, the result is
    returned early with ``complete == False`` and no candidates.
    """
    t0 = time.time()
    variability = variability or VariabilityFilter()
    comparator = comparator or CaseControlComparator(variability=variability)

    fg = Sifter(
        fg_bam,
        fg_index,
        block_size=block_size,
        pool=pool,
        variability=variability,
        barcode_tag=barcode_tag,
        label="foreground",
    )
    try:
        bg = Sifter(
            bg_bam,
            bg_index,
            block_size=block_size,
            pool=pool,
            variability=variability,
            barcode_tag=barcode_tag,
            label="background",
        )
    except Exception:
        fg.close()
        raise

    result = CaseControlResult(fg=fg, bg=bg, candidates=[])
    try:
        result.layout_problems = check_layouts_compatible(fg.references, bg.references)
    except ValueError:
        result.close()
        raise

    logger.info("Searching for variable positions")
    fg.sweep(cancel=cancel)
    bg.sweep(cancel=cancel)
    if fg.state < SifterState.SWEPT or bg.state < SifterState.SWEPT:
        result.runtime_seconds = time.time() - t0
        return result

    fg.reconcile(bg)
    bg.reconcile(fg)

    logger.info("Collecting statistics at reconciled positions")
    fg.populate_statistics(cancel=cancel)
    bg.populate_statistics(cancel=cancel)
    if not result.complete:
        result.runtime_seconds = time.time() - t0
        return result

    result.candidates = comparator.compare_sifters(fg, bg)
    result.runtime_seconds = time.time() - t0
    if result.failed:
        logger.warning(
            "%d regions/positions failed; candidate list may be incomplete", result.failed
        )
    return result
