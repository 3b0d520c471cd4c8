import threading

import pytest

from faba.errors import FailureReport
from faba.workers import CancellationToken, WorkerPool, resolve_threads


def test_resolve_threads() -> None:
    assert resolve_threads() >= 1
    assert resolve_threads(1) == 1
    with pytest.raises(ValueError):
        resolve_threads(0)


def test_run_collects_results_and_errors() -> None:
    def work(i: int) -> int:
        if i == 3:
            raise RuntimeError("boom")
        return i * i

    with WorkerPool(3, max_in_flight=2) as pool:
        outcomes = list(pool.run(work, range(8)))

    assert sorted(o.item for o in outcomes) == list(range(8))
    errors = [o for o in outcomes if o.error is not None]
    assert [o.item for o in errors] == [3]
    assert {o.item: o.result for o in outcomes if o.error is None} == {
        i: i * i for i in range(8) if i != 3
    }


def test_cancellation_skips_unstarted_items() -> None:
    token = CancellationToken()
    started = threading.Event()

    def work(i: int) -> int:
        if i == 0:
            started.set()
            token.cancel()
        return i

    with WorkerPool(1, max_in_flight=1) as pool:
        outcomes = list(pool.run(work, range(5), cancel=token))

    assert started.is_set()
    assert len(outcomes) == 5
    assert [o.item for o in outcomes if not o.skipped] == [0]
    assert all(o.skipped for o in outcomes if o.item != 0)


def test_failure_report_counts() -> None:
    r = FailureReport("sweep", max_examples=1)
    r.record_ok()
    r.record_empty()
    r.record_failure("chr1", 0, 10, OSError("truncated"))
    r.record_failure("chr1", 10, 20, OSError("truncated"))
    assert (r.attempted, r.succeeded, r.empty, r.failed) == (4, 1, 1, 2)
    assert not r.ok
    d = r.to_dict()
    assert d["by_error"] == {"OSError": 2}
    assert d["examples"] == [{"region": "chr1:0-10", "error": "OSError", "message": "truncated"}]
    assert "2 failed" in r.summary_line()

    total = FailureReport("sweep")
    total.merge(r)
    total.merge(r)
    assert total.failed == 4 and total.attempted == 8
