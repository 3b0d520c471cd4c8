import gzip
import json
import subprocess
import sys
from pathlib import Path

from faba.toy_data import TOY_CONTIG, TOY_EDITED_POSITIONS, make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "faba"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_help() -> None:
    cp = _run_cli(["--help"])
    assert cp.returncode == 0
    assert "faba" in cp.stdout.lower()
    for cmd in ("compare", "sweep", "make-toy-data", "quickstart"):
        assert cmd in cp.stdout


def test_quickstart() -> None:
    cp = _run_cli(["quickstart"])
    assert cp.returncode == 0
    assert "faba compare" in cp.stdout


def test_make_toy_data(tmp_path: Path) -> None:
    cp = _run_cli(["make-toy-data", "--outdir", str(tmp_path / "toy")])
    assert cp.returncode == 0, cp.stderr
    summary = json.loads(cp.stdout)
    assert Path(summary["fg_bam"]).exists()
    assert Path(summary["bg_bam"] + ".bai").exists()


def test_compare_on_toy_data(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "out"
    cp = _run_cli(
        [
            "compare",
            "--fg-bam", toy["fg_bam"],
            "--bg-bam", toy["bg_bam"],
            "--outdir", str(outdir),
            "--threads", "2",
            "--block-size", "8",
            "--no-progress",
            "--strict",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    assert (outdir / "report.html").exists()
    assert (outdir / "logs" / "compare.log").exists()
    assert (outdir / "plots" / "score_hist.png").exists()

    summary = json.loads((outdir / "summary.json").read_text())
    assert summary["complete"] is True
    assert summary["failed"] == 0
    assert summary["candidates"] == len(TOY_EDITED_POSITIONS)
    assert summary["parameters"]["block_size"] == 8

    with gzip.open(outdir / "candidates.tsv.gz", "rt") as fh:
        rows = [line.rstrip("\n").split("\t") for line in fh]
    header, body = rows[0], rows[1:]
    assert header[:4] == ["sample", "chrom", "pos0", "strand"]
    assert [(r[1], int(r[2]), r[3]) for r in body] == [
        (TOY_CONTIG, p, "+") for p in TOY_EDITED_POSITIONS
    ]

    bed = (outdir / "variable_positions.bed").read_text().splitlines()
    assert [line.split("\t")[1] for line in bed] == [str(p) for p in TOY_EDITED_POSITIONS]

    # a second run with --resume leaves the outputs alone
    cp = _run_cli(
        ["compare", "--fg-bam", toy["fg_bam"], "--bg-bam", toy["bg_bam"],
         "--outdir", str(outdir), "--resume"]
    )
    assert cp.returncode == 0, cp.stderr
    assert cp.stdout.strip().endswith("report.html")


def test_compare_dry_run(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "dry"
    cp = _run_cli(
        ["compare", "--fg-bam", toy["fg_bam"], "--bg-bam", toy["bg_bam"],
         "--outdir", str(outdir), "--dry-run"]
    )
    assert cp.returncode == 0, cp.stderr
    assert "Dry-run" in cp.stdout
    assert not outdir.exists()


def test_compare_missing_input(tmp_path: Path) -> None:
    cp = _run_cli(
        ["compare", "--fg-bam", str(tmp_path / "nope.bam"), "--bg-bam", str(tmp_path / "nope.bam"),
         "--outdir", str(tmp_path / "out")]
    )
    assert cp.returncode == 2
    assert "Path does not exist" in cp.stderr


def test_sweep_writes_bed(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    out = tmp_path / "fg.bed.gz"
    cp = _run_cli(["sweep", "--bam", toy["fg_bam"], "--out", str(out), "--no-progress"])
    assert cp.returncode == 0, cp.stderr
    with gzip.open(out, "rt") as fh:
        lines = [line.split("\t") for line in fh]
    assert [(f[0], int(f[1]), int(f[2]), f[5].strip()) for f in lines] == [
        (TOY_CONTIG, p, p + 1, "+") for p in TOY_EDITED_POSITIONS
    ]
