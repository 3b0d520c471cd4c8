import pytest

from conftest import edited_read, ref_read
from faba.aggregate import BaseCallAggregator, ReadSnapshot, aggregate_region, iter_aligned_bases
from faba.errors import EmptyResultError, RegionError
from faba.models import COMBINED, Sample, Strand
from faba.source import SharedAlignmentSource
from faba.toy_data import TOY_CONTIG, TOY_REFERENCE, ReadSpec


def _assert_aligned(freq) -> None:
    for _sample, table in freq.items():
        for strand in Strand:
            vec = table.for_strand(strand)
            assert len(vec) == freq.end - freq.start
            assert [s.position for s in vec] == list(range(freq.start, freq.end))


def test_vectors_are_position_aligned(bam_factory) -> None:
    bam = bam_factory([ref_read("r1"), ref_read("r2", is_reverse=True, barcode="BC1")])
    with SharedAlignmentSource(bam) as src:
        freq = BaseCallAggregator().aggregate(src, TOY_CONTIG, 5, 15)
    _assert_aligned(freq)
    assert freq.samples()[0] == COMBINED
    assert freq.records == 2


def test_each_read_goes_to_one_sample(bam_factory) -> None:
    bam = bam_factory(
        [
            ref_read("plain"),
            ref_read("bc1a", barcode="BC1"),
            ref_read("bc1b", barcode="BC1"),
            ref_read("bc2", barcode="BC2", is_reverse=True),
        ]
    )
    with SharedAlignmentSource(bam) as src:
        freq = BaseCallAggregator("CB").aggregate(src, TOY_CONTIG, 0, 4)
    assert freq.samples() == [COMBINED, Sample("BC1"), Sample("BC2")]
    assert freq.get(COMBINED, Strand.FORWARD)[0].counts == (1, 0, 0, 0)
    assert freq.get(Sample("BC1"), Strand.FORWARD)[0].counts == (2, 0, 0, 0)
    assert freq.get(Sample("BC2"), Strand.FORWARD)[0].total == 0
    assert freq.get(Sample("BC2"), Strand.REVERSE)[1].counts == (0, 0, 0, 1)


def test_combined_can_include_barcoded_reads(bam_factory) -> None:
    bam = bam_factory([ref_read("plain"), ref_read("bc", barcode="BC1")])
    with SharedAlignmentSource(bam) as src:
        freq = BaseCallAggregator(combined_includes_barcoded=True).aggregate(src, TOY_CONTIG, 0, 1)
        ignored = BaseCallAggregator(None).aggregate(src, TOY_CONTIG, 0, 1)
    assert freq.get(COMBINED, Strand.FORWARD)[0].counts == (2, 0, 0, 0)
    assert freq.get(Sample("BC1"), Strand.FORWARD)[0].counts == (1, 0, 0, 0)
    assert ignored.samples() == [COMBINED]
    assert ignored.get(COMBINED, Strand.FORWARD)[0].counts == (2, 0, 0, 0)


def test_duplicates_and_ambiguous_bases_skipped(bam_factory) -> None:
    bam = bam_factory(
        [
            ref_read("dup", duplicate=True),
            edited_read("n", {3: "N"}),
        ]
    )
    with SharedAlignmentSource(bam) as src:
        freq = aggregate_region(src, TOY_CONTIG, 2, 5)
    fwd = freq.get(COMBINED, Strand.FORWARD)
    assert freq.records == 1
    assert [s.total for s in fwd] == [1, 0, 1]
    assert freq.bases_counted == 2


def test_deletion_and_soft_clip(bam_factory) -> None:
    deleted = ReadSpec(
        "del",
        TOY_CONTIG,
        0,
        TOY_REFERENCE[0:5] + TOY_REFERENCE[7:12],
        cigar=((0, 5), (2, 2), (0, 5)),
    )
    clipped = ReadSpec(
        "clip",
        TOY_CONTIG,
        10,
        "GGG" + TOY_REFERENCE[10:17],
        cigar=((4, 3), (0, 7)),
        is_reverse=True,
    )
    bam = bam_factory([deleted, clipped])
    with SharedAlignmentSource(bam) as src:
        freq = aggregate_region(src, TOY_CONTIG, 0, 20)
    fwd = freq.get(COMBINED, Strand.FORWARD)
    rev = freq.get(COMBINED, Strand.REVERSE)
    assert [s.total for s in fwd[:12]] == [1] * 5 + [0, 0] + [1] * 5
    assert fwd[7].count(TOY_REFERENCE[7]) == 1
    assert [s.total for s in rev] == [0] * 10 + [1] * 7 + [0] * 3
    assert rev[10].count(TOY_REFERENCE[10]) == 1
    assert sum(s.count("G") for s in rev) == TOY_REFERENCE[10:17].count("G")


def test_iter_aligned_bases_window() -> None:
    snap = ReadSnapshot(100, ((0, 4), (1, 2), (0, 4)), "ACGTxxTTGG", False, None)
    got = list(
        iter_aligned_bases(snap.reference_start, snap.cigartuples, snap.query_sequence, 102, 106)
    )
    assert got == [(102, "G"), (103, "T"), (104, "T"), (105, "T")]


def test_empty_region(bam_factory) -> None:
    bam = bam_factory([ref_read("short", length=10)])
    with SharedAlignmentSource(bam) as src:
        with pytest.raises(EmptyResultError):
            aggregate_region(src, TOY_CONTIG, 20, 30)
        freq = aggregate_region(src, TOY_CONTIG, 20, 30, allow_empty=True)
    assert freq.samples() == [COMBINED]
    assert all(s.total == 0 for s in freq.get(COMBINED, Strand.FORWARD))
    _assert_aligned(freq)


def test_invalid_region(bam_factory) -> None:
    bam = bam_factory([ref_read("r")])
    with SharedAlignmentSource(bam) as src:
        with pytest.raises(RegionError):
            aggregate_region(src, TOY_CONTIG, 10, 10)
        with pytest.raises(RegionError):
            src.fetch_and_scan(TOY_CONTIG, -1, 5, lambda r: None)
