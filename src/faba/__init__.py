"""faba: sift paired BAM files for candidate differential editing sites.

Public API is intentionally small; most users should use the CLI:

    faba compare --fg-bam treated.bam --bg-bam control.bam --outdir ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
