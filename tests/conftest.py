from pathlib import Path

import pytest

from faba.toy_data import TOY_CONTIG, TOY_REFERENCE, ReadSpec, make_toy_data, write_bam


@pytest.fixture()
def toy(tmp_path: Path) -> dict:
    return make_toy_data(outdir=tmp_path / "toy")


@pytest.fixture()
def bam_factory(tmp_path: Path):
    """Write a small indexed BAM over the toy contig from ``ReadSpec`` objects."""
    counter = {"n": 0}

    def _make(reads, *, contigs=None, name=None, index=True) -> str:
        counter["n"] += 1
        path = tmp_path / (name or f"sample{counter['n']}.bam")
        return write_bam(path, contigs or [(TOY_CONTIG, len(TOY_REFERENCE))], reads, index=index)

    return _make


def ref_read(name: str, *, start0: int = 0, length: int = len(TOY_REFERENCE), **kw) -> ReadSpec:
    return ReadSpec(name, TOY_CONTIG, start0, TOY_REFERENCE[start0 : start0 + length], **kw)


def edited_read(name: str, edits: dict, **kw) -> ReadSpec:
    seq = list(TOY_REFERENCE)
    for pos, base in edits.items():
        seq[pos] = base
    return ReadSpec(name, TOY_CONTIG, 0, "".join(seq), **kw)
