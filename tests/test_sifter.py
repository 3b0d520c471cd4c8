import pytest

from conftest import edited_read, ref_read
from faba.errors import AlignmentIOError, SifterStateError
from faba.models import COMBINED, Sample, Strand, VariablePositionSet
from faba.sifter import Sifter, SifterState
from faba.toy_data import TOY_CONTIG, TOY_EDITED_POSITIONS
from faba.workers import CancellationToken, WorkerPool


@pytest.fixture()
def pool():
    with WorkerPool(2) as p:
        yield p


def _pair(bam_a, bam_b, pool, block_size=7):
    return (
        Sifter(bam_a, block_size=block_size, pool=pool, label="a"),
        Sifter(bam_b, block_size=block_size, pool=pool, label="b"),
    )


def test_toy_end_to_end(toy, pool) -> None:
    with Sifter(toy["fg_bam"], block_size=8, pool=pool) as fg:
        report = fg.sweep()
        assert fg.state is SifterState.SWEPT
        assert report.ok
        assert fg.variable_positions[TOY_CONTIG].forward == set(TOY_EDITED_POSITIONS)
        assert fg.variable_positions[TOY_CONTIG].reverse == set()

        with Sifter(toy["bg_bam"], block_size=8, pool=pool) as bg:
            bg.sweep()
            assert bg.variable_positions[TOY_CONTIG].forward == set()
            fg.reconcile(bg)
            bg.reconcile(fg)
            fg.populate_statistics()
            bg.populate_statistics()

            fwd = fg.statistics(Strand.FORWARD)[(COMBINED, TOY_CONTIG)]
            assert [s.position for s in fwd] == list(TOY_EDITED_POSITIONS)
            assert all(s.total == 6 for s in fwd)
            assert fg.statistics(Strand.REVERSE) == {}

            bg_fwd = bg.statistics(Strand.FORWARD)[(COMBINED, TOY_CONTIG)]
            assert [s.position for s in bg_fwd] == list(TOY_EDITED_POSITIONS)
            assert all(s.total == 6 for s in bg_fwd)


def test_reconcile_unions_both_ways(bam_factory, pool) -> None:
    a_bam = bam_factory([ref_read("a1"), edited_read("a2", {12: "C"})])
    b_bam = bam_factory([ref_read("b1"), edited_read("b2", {25: "A"})])
    a, b = _pair(a_bam, b_bam, pool)
    with a, b:
        a.sweep()
        b.sweep()
        assert a.variable_positions[TOY_CONTIG].forward == {12}
        assert b.variable_positions[TOY_CONTIG].forward == {25}
        a.reconcile(b)
        b.reconcile(a)
        assert a.variable_positions[TOY_CONTIG].forward == {12, 25}
        assert b.variable_positions[TOY_CONTIG].forward == {12, 25}
        assert a.position_counts() == b.position_counts()


def test_reconcile_requires_swept_partner_and_is_idempotent(bam_factory, pool) -> None:
    a_bam = bam_factory([ref_read("a1"), edited_read("a2", {3: "G"})])
    b_bam = bam_factory([ref_read("b1")])
    a, b = _pair(a_bam, b_bam, pool)
    with a, b:
        a.sweep()
        with pytest.raises(SifterStateError):
            a.reconcile(b)
        b.sweep()
        b.reconcile(a)
        a.reconcile(b)
        before = a.variable_positions[TOY_CONTIG].copy()
        a.reconcile(b)
        assert a.variable_positions[TOY_CONTIG] == before
        with pytest.raises(ValueError):
            b.reconcile(b)


def test_block_order_does_not_matter(bam_factory, pool) -> None:
    reads = [ref_read(f"r{i}") for i in range(3)] + [
        edited_read("e1", {1: "T", 9: "G", 22: "T"}),
        ref_read("rr", is_reverse=True),
        edited_read("e2", {17: "A"}, is_reverse=True),
    ]
    bam = bam_factory(reads)
    results = []
    for seed in (None, 1, 2, 3):
        with Sifter(bam, block_size=3, pool=pool) as s:
            s.sweep(shuffle_seed=seed)
            results.append(s.variable_positions[TOY_CONTIG])
    assert results[0].forward == {1, 9, 22}
    assert results[0].reverse == {17}
    assert all(r == results[0] for r in results)


def test_statistics_independent_of_order_and_threads(bam_factory) -> None:
    reads = []
    for bc in ("AAAC-1", "TTTG-1", None):
        tag = bc or "none"
        reads += [ref_read(f"{tag}_r{i}", barcode=bc) for i in range(2)]
        reads += [ref_read(f"{tag}_rr{i}", barcode=bc, is_reverse=True) for i in range(2)]
        reads.append(edited_read(f"{tag}_e1", {2: "A", 11: "A", 19: "G"}, barcode=bc))
        reads.append(edited_read(f"{tag}_e2", {6: "T", 27: "C"}, barcode=bc, is_reverse=True))
    bam = bam_factory(reads)

    tables = []
    for threads, seed in [(1, None), (4, None), (1, 7), (4, 7), (4, 11), (2, 23)]:
        with WorkerPool(threads) as pool:
            a, b = _pair(bam, bam, pool, block_size=4)
            with a, b:
                a.sweep(shuffle_seed=seed)
                b.sweep(shuffle_seed=seed)
                a.reconcile(b)
                a.populate_statistics(shuffle_seed=seed)
                tables.append((a.forward_statistics, a.reverse_statistics))

    forward, reverse = tables[0]
    assert [s.position for s in forward[(Sample("AAAC-1"), TOY_CONTIG)]] == [2, 11, 19]
    assert [s.position for s in reverse[(COMBINED, TOY_CONTIG)]] == [6, 27]
    assert all(s.total == 3 for s in forward[(Sample("TTTG-1"), TOY_CONTIG)])
    for fwd, rev in tables[1:]:
        assert fwd == forward
        assert rev == reverse


def test_barcoded_samples_populated(bam_factory, pool) -> None:
    bam = bam_factory(
        [
            ref_read("x1", barcode="AAAC-1"),
            edited_read("x2", {5: "A"}, barcode="AAAC-1"),
            ref_read("y1", barcode="TTTG-1"),
        ]
    )
    with Sifter(bam, block_size=10, pool=pool) as s, Sifter(bam, block_size=10, pool=pool) as t:
        s.sweep()
        t.sweep()
        s.reconcile(t)
        s.populate_statistics()
        fwd = s.statistics(Strand.FORWARD)
        assert fwd[(Sample("AAAC-1"), TOY_CONTIG)][0].counts == (1, 0, 1, 0)
        assert fwd[(Sample("TTTG-1"), TOY_CONTIG)][0].counts == (0, 0, 1, 0)
        assert fwd[(COMBINED, TOY_CONTIG)][0].total == 0
        assert s.samples() == [COMBINED, Sample("AAAC-1"), Sample("TTTG-1")]


def test_stage_order_enforced(bam_factory, pool) -> None:
    bam = bam_factory([ref_read("r")])
    with Sifter(bam, pool=pool) as s:
        with pytest.raises(SifterStateError):
            s.populate_statistics()
        with pytest.raises(SifterStateError):
            s.statistics(Strand.FORWARD)
        s.sweep()
        with pytest.raises(SifterStateError):
            s.sweep()
        with pytest.raises(SifterStateError):
            s.populate_statistics()


def test_cancelled_sweep_can_resume(bam_factory, pool) -> None:
    bam = bam_factory([ref_read("r"), edited_read("e", {4: "A"})])
    token = CancellationToken()
    token.cancel()
    with Sifter(bam, block_size=5, pool=pool) as s:
        report = s.sweep(cancel=token)
        assert report.cancelled
        assert s.state is SifterState.INITIALIZED
        assert s.variable_positions == {}

        report = s.sweep()
        assert s.state is SifterState.SWEPT
        assert s.variable_positions[TOY_CONTIG].forward == {4}
        assert s.sweep_report.attempted == len(s.jobs[TOY_CONTIG])


def test_cancelled_statistics_are_discarded(bam_factory, pool) -> None:
    bam = bam_factory([ref_read("r"), edited_read("e", {4: "A"})])
    a, b = _pair(bam, bam, pool)
    with a, b:
        a.sweep()
        b.sweep()
        a.reconcile(b)
        token = CancellationToken()
        token.cancel()
        report = a.populate_statistics(cancel=token)
        assert report.cancelled
        assert a.state is SifterState.RECONCILED
        assert a.forward_statistics == {}
        a.populate_statistics()
        assert a.state is SifterState.STATISTICS_POPULATED
        with pytest.raises(SifterStateError):
            a.reconcile(b)


def test_failing_blocks_are_reported(bam_factory, pool, monkeypatch) -> None:
    bam = bam_factory([ref_read("r"), edited_read("e", {4: "A", 21: "A"})])
    with Sifter(bam, block_size=10, pool=pool) as s:
        real = s.source.fetch_and_scan

        def flaky(chrom, start, end, visit):
            if start == 10:
                raise AlignmentIOError("simulated read failure")
            return real(chrom, start, end, visit)

        monkeypatch.setattr(s.source, "fetch_and_scan", flaky)
        report = s.sweep()
        assert report.failed == 1
        assert report.succeeded == 2
        assert report.by_error == {"AlignmentIOError": 1}
        assert report.examples[0].region == f"{TOY_CONTIG}:10-20"
        assert s.state is SifterState.SWEPT
        assert s.variable_positions[TOY_CONTIG].forward == {4, 21}


def test_positions_on_unknown_sequences_are_skipped(bam_factory, pool) -> None:
    bam = bam_factory([ref_read("r"), edited_read("e", {4: "A"})])
    other = bam_factory(
        [ref_read("r")],
        contigs=[(TOY_CONTIG, 30), ("chrX", 30)],
    )
    a, b = _pair(bam, other, pool)
    with a, b:
        a.sweep()
        b.sweep()
        b.variable_positions["chrX"] = VariablePositionSet(forward={7})
        a.reconcile(b)
        assert a.unmatched_sequences == {"chrX"}
        a.populate_statistics()
        assert a.statistics_report.failed == 0
        assert (COMBINED, "chrX") not in a.statistics(Strand.FORWARD)
