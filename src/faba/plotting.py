from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Sequence

import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)


def plot_score_hist(
    *,
    scores: Sequence[float],
    out_png: str | Path,
    threshold: float | None = None,
    title: str = "Case/control score distribution",
    bins: int = 50,
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    plt.figure()
    if len(scores) > 0:
        plt.hist(np.asarray(scores, dtype=float), bins=bins)
    if threshold is not None:
        plt.axvline(threshold, color="red", linestyle="--", label=f"threshold = {threshold:g}")
        plt.legend()
    plt.xlabel("Score")
    plt.ylabel("Position count")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_positions_per_contig(
    *,
    fg_counts: Dict[str, Dict[str, int]],
    bg_counts: Dict[str, Dict[str, int]],
    contigs: Sequence[str],
    out_png: str | Path,
    title: str = "Variable positions per contig (first pass)",
    max_contigs: int = 40,
) -> None:
    """Grouped bars of forward+reverse variable positions per contig and dataset.

    Contigs with no positions in either dataset are dropped; only the first
    ``max_contigs`` remaining are drawn.
    """
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    def _total(counts: Dict[str, Dict[str, int]], chrom: str) -> int:
        c = counts.get(chrom, {})
        return int(c.get("forward", 0)) + int(c.get("reverse", 0))

    names: List[str] = [
        c for c in contigs if _total(fg_counts, c) > 0 or _total(bg_counts, c) > 0
    ][:max_contigs]
    x = np.arange(len(names))
    width = 0.4

    plt.figure(figsize=(max(6.0, 0.35 * len(names) + 2.0), 4.0))
    plt.bar(x - width / 2, [_total(fg_counts, c) for c in names], width=width, label="foreground")
    plt.bar(x + width / 2, [_total(bg_counts, c) for c in names], width=width, label="background")
    plt.xticks(x, names, rotation=60, ha="right")
    plt.ylabel("Variable positions")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
