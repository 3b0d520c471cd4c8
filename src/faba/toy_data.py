from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"
TOY_REFERENCE = "ACGTTGCAACGTACGTTGCAACGTACGTAC"
TOY_EDITED_POSITIONS = (12, 25)


@dataclass(frozen=True)
class ReadSpec:
    """A synthetic aligned read. ``cigar`` defaults to a full-length match."""

    name: str
    chrom: str
    start0: int
    seq: str
    is_reverse: bool = False
    barcode: Optional[str] = None
    duplicate: bool = False
    cigar: Optional[Tuple[Tuple[int, int], ...]] = None
    mapq: int = 60


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _make_read(spec: ReadSpec, ref_ids: Dict[str, int], barcode_tag: str) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = spec.name
    a.query_sequence = spec.seq
    flag = 0
    if spec.is_reverse:
        flag |= 0x10
    if spec.duplicate:
        flag |= 0x400
    a.flag = flag
    a.reference_id = ref_ids[spec.chrom]
    a.reference_start = spec.start0
    a.mapping_quality = spec.mapq
    a.cigartuples = list(spec.cigar) if spec.cigar is not None else [(0, len(spec.seq))]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(spec.seq))
    if spec.barcode is not None:
        a.set_tag(barcode_tag, spec.barcode, value_type="Z")
    return a


def write_bam(
    path: str | Path,
    contigs: Sequence[Tuple[str, int]],
    reads: Sequence[ReadSpec],
    *,
    barcode_tag: str = "CB",
    index: bool = True,
) -> str:
    """Write a coordinate-sorted BAM (and ``.bai``) from read specs."""
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": name, "LN": int(length)} for name, length in contigs],
    }
    ref_ids = {name: i for i, (name, _) in enumerate(contigs)}
    segments = [_make_read(r, ref_ids, barcode_tag) for r in reads]
    segments.sort(key=lambda s: (s.reference_id, s.reference_start))

    with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
        for s in segments:
            bam.write(s)

    if index:
        pysam.index(str(path))
    return str(path)


def toy_reads(
    *,
    prefix: str,
    edited_positions: Sequence[int] = (),
    n_reads: int = 6,
    n_edited: int = 3,
    n_reverse: int = 2,
    barcodes: Sequence[Optional[str]] = (None,),
) -> List[ReadSpec]:
    """Full-length reads over the toy contig.

    The first ``n_edited`` forward reads carry a substitution at each of
    ``edited_positions``; reverse reads always match the reference.
    """
    reads: List[ReadSpec] = []
    for bc in barcodes:
        tag = "" if bc is None else f"_{bc}"
        for i in range(n_reads):
            seq = list(TOY_REFERENCE)
            if i < n_edited:
                for pos0 in edited_positions:
                    seq[pos0] = _mutate_base(TOY_REFERENCE[pos0])
            reads.append(ReadSpec(f"{prefix}{tag}_f{i}", TOY_CONTIG, 0, "".join(seq), barcode=bc))
        for i in range(n_reverse):
            reads.append(
                ReadSpec(f"{prefix}{tag}_r{i}", TOY_CONTIG, 0, TOY_REFERENCE, is_reverse=True, barcode=bc)
            )
    return reads


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny foreground/background BAM pair for quick demos/tests.

    The outputs include:
    - fg.bam (+ .bai): mixed bases on the forward strand at positions 12 and 25
    - bg.bam (+ .bai): every read matches the reference

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    contigs = [(TOY_CONTIG, len(TOY_REFERENCE))]

    fg_bam = write_bam(
        outdir_p / "fg.bam",
        contigs,
        toy_reads(prefix="fg", edited_positions=TOY_EDITED_POSITIONS),
    )
    bg_bam = write_bam(outdir_p / "bg.bam", contigs, toy_reads(prefix="bg"))

    summary = {
        "fg_bam": fg_bam,
        "bg_bam": bg_bam,
        "contig": TOY_CONTIG,
        "edited_positions": ",".join(str(p) for p in TOY_EDITED_POSITIONS),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
