from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from . import __version__
from .aggregate import DEFAULT_BARCODE_TAG
from .compare import (
    DEFAULT_MIN_DEPTH,
    DEFAULT_MIN_SCORE,
    DEFAULT_PRIOR,
    SCORERS,
    CaseControlComparator,
    make_scorer,
)
from .filters import DEFAULT_MAJOR_CUTOFF, DEFAULT_MINOR_CUTOFF, VariabilityFilter
from .intervals import DEFAULT_BLOCK_SIZE
from .output import write_candidates_tsv, write_positions_bed, write_statistics_tsv
from .pipeline import CaseControlResult, sift_case_control
from .plotting import plot_positions_per_contig, plot_score_hist
from .report import render_report
from .sifter import Sifter, SifterState
from .toy_data import make_toy_data
from .utils import ensure_outdir, write_json
from .validation import check_layouts_compatible, read_reference_layout
from .workers import CancellationToken, WorkerPool

EXIT_FAILURES = 3
EXIT_INTERRUPTED = 130


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _positive_int(v: str) -> int:
    n = int(v)
    if n <= 0:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got {v}")
    return n


def _fraction(v: str) -> float:
    x = float(v)
    if not 0.0 <= x <= 1.0:
        raise argparse.ArgumentTypeError(f"Expected a value within [0, 1], got {v}")
    return x


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    sys.stderr.write(f"{err.__class__.__name__}: {err}\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _install_interrupt_handler(token: CancellationToken):
    """First Ctrl-C asks the passes to stop between blocks; a second one aborts."""

    def _handler(signum, frame):
        if token.cancelled:
            raise KeyboardInterrupt
        sys.stderr.write("Interrupt received; finishing in-flight blocks (Ctrl-C again to abort)\n")
        token.cancel()

    try:
        return signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # not in the main thread
        return None


def _add_sifting_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--threads",
        type=_positive_int,
        default=None,
        help="Maximum worker threads (default: all available cores).",
    )
    p.add_argument(
        "--block-size",
        type=_positive_int,
        default=DEFAULT_BLOCK_SIZE,
        help="Width in bases of the first-pass work blocks.",
    )
    p.add_argument(
        "--barcode-tag",
        default=DEFAULT_BARCODE_TAG,
        help="Read tag holding the cell/sample barcode (10x: CB).",
    )
    p.add_argument(
        "--no-barcodes",
        action="store_true",
        help="Ignore barcode tags; count every read in the combined sample.",
    )
    p.add_argument(
        "--major-cutoff",
        type=_fraction,
        default=DEFAULT_MAJOR_CUTOFF,
        help=(
            "Major-allele share above which a position is near-invariant; pairs fixed for "
            "the same allele on both sides are not scored."
        ),
    )
    p.add_argument(
        "--minor-cutoff",
        type=_fraction,
        default=DEFAULT_MINOR_CUTOFF,
        help="Minimum minor-allele share (minor_ok column of statistics.tsv.gz).",
    )
    p.add_argument("--no-progress", action="store_true", help="Disable progress bars.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="faba",
        description=(
            "faba: sift a foreground (edited) and background (control) BAM for positions "
            "whose nucleotide mix differs, with per-strand and per-barcode counts."
        ),
    )
    p.add_argument("--version", action="version", version=f"faba {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser("quickstart", help="Print ready-to-run recipes.")

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny foreground/background BAM pair for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # compare
    # -----------------
    c = sub.add_parser(
        "compare",
        help="Find and score candidate editing sites between a foreground and background BAM.",
    )
    c.add_argument("-f", "--fg-bam", required=True, type=_path_exists, help="Foreground BAM (sorted).")
    c.add_argument("-b", "--bg-bam", required=True, type=_path_exists, help="Background BAM (sorted).")
    c.add_argument("--fg-bai", default=None, help="Foreground index (default: <FG_BAM>.bai).")
    c.add_argument("--bg-bai", default=None, help="Background index (default: <BG_BAM>.bai).")
    c.add_argument("-o", "--outdir", required=True, help="Output directory.")
    _add_sifting_args(c)
    c.add_argument(
        "--scorer",
        choices=list(SCORERS),
        default="major-shift",
        help="Case/control scoring function.",
    )
    c.add_argument(
        "--min-score",
        type=float,
        default=DEFAULT_MIN_SCORE,
        help="Report positions with score >= this value.",
    )
    c.add_argument(
        "--min-depth",
        type=int,
        default=DEFAULT_MIN_DEPTH,
        help="Skip positions whose combined foreground+background depth is below this.",
    )
    c.add_argument(
        "--prior",
        type=float,
        default=DEFAULT_PRIOR,
        help="Symmetric Dirichlet concentration for --scorer dm-bayes-factor.",
    )
    c.add_argument(
        "--strict",
        action="store_true",
        help=f"Exit with code {EXIT_FAILURES} if any region could not be read.",
    )
    c.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    c.add_argument("--resume", action="store_true", help="Skip if outputs already exist.")

    # -----------------
    # sweep
    # -----------------
    s = sub.add_parser(
        "sweep",
        help="First pass only: write the variable positions of one BAM as BED.",
    )
    s.add_argument("--bam", required=True, type=_path_exists, help="Input BAM (sorted).")
    s.add_argument("--bai", default=None, help="Index (default: <BAM>.bai).")
    s.add_argument("--out", required=True, help="Output BED path (.gz allowed).")
    _add_sifting_args(s)

    return p


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "faba quickstart (copy/paste):",
        "",
        "1) Foreground vs background (candidate editing sites):",
        "   faba compare \\",
        "     --fg-bam treated.bam \\",
        "     --bg-bam control.bam \\",
        "     --outdir results/",
        "   Outputs: results/report.html, results/candidates.tsv.gz, results/summary.json",
        "",
        "2) Variable positions of a single BAM:",
        "   faba sweep --bam sample.bam --out variable.bed.gz",
        "",
        "3) Try it on synthetic data:",
        "   faba make-toy-data --outdir toy/",
        "   faba compare --fg-bam toy/fg.bam --bg-bam toy/bg.bam --outdir toy_out/",
        "",
        "Tip: use --dry-run to validate inputs and print the planned outputs.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def _variability(args: argparse.Namespace) -> VariabilityFilter:
    return VariabilityFilter(major_cutoff=float(args.major_cutoff), minor_cutoff=float(args.minor_cutoff))


def _barcode_tag(args: argparse.Namespace) -> Optional[str]:
    return None if args.no_barcodes else args.barcode_tag


def _build_summary(
    args: argparse.Namespace,
    result: CaseControlResult,
    threads: int,
    outputs: Dict[str, str],
) -> Dict[str, Any]:
    passes = {name: r.to_dict() for name, r in result.reports.items()}
    return {
        "version": __version__,
        "fg_bam": args.fg_bam,
        "bg_bam": args.bg_bam,
        "parameters": {
            "threads": threads,
            "block_size": int(args.block_size),
            "barcode_tag": _barcode_tag(args),
            "major_cutoff": float(args.major_cutoff),
            "minor_cutoff": float(args.minor_cutoff),
            "scorer": args.scorer,
            "min_score": float(args.min_score),
            "min_depth": int(args.min_depth),
            "prior": float(args.prior),
        },
        "complete": result.complete,
        "failed": result.failed,
        "passes": passes,
        "layout_problems": result.layout_problems,
        "variable_positions": {
            "foreground_sweep": result.fg.sweep_counts,
            "background_sweep": result.bg.sweep_counts,
            "reconciled": result.fg.position_counts(),
        },
        "unmatched_sequences": {
            "foreground": sorted(result.fg.unmatched_sequences),
            "background": sorted(result.bg.unmatched_sequences),
        },
        "candidates": len(result.candidates),
        "outputs": outputs,
        "runtime_seconds": float(result.runtime_seconds),
    }


def cmd_compare(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "compare.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("faba")
    logger.info("faba %s", __version__)

    try:
        if args.dry_run:
            fg_refs = read_reference_layout(args.fg_bam)
            bg_refs = read_reference_layout(args.bg_bam)
            problems = check_layouts_compatible(fg_refs, bg_refs)
            print("Dry-run: inputs look OK.")
            print(f"Foreground contigs: {len(fg_refs)}; background contigs: {len(bg_refs)}")
            for prob in problems:
                print(f"  note: {prob}")
            print("Planned outputs:")
            for name in ["report.html", "candidates.tsv.gz", "statistics.tsv.gz",
                         "variable_positions.bed", "summary.json"]:
                print(f"  {name} -> {outdir / name}")
            return 0

        outdir = ensure_outdir(outdir)

        if args.resume and (outdir / "summary.json").exists():
            logger.info("Resume enabled: summary.json already exists in %s", outdir)
            print(str(outdir / "report.html"))
            return 0

        variability = _variability(args)
        comparator = CaseControlComparator(
            make_scorer(args.scorer, prior=float(args.prior)),
            min_score=float(args.min_score),
            min_depth=int(args.min_depth),
            variability=variability,
        )

        token = CancellationToken()
        previous = _install_interrupt_handler(token)
        try:
            with WorkerPool(args.threads, progress=not args.no_progress) as pool:
                result = sift_case_control(
                    args.fg_bam,
                    args.bg_bam,
                    fg_index=args.fg_bai,
                    bg_index=args.bg_bai,
                    pool=pool,
                    block_size=int(args.block_size),
                    variability=variability,
                    barcode_tag=_barcode_tag(args),
                    comparator=comparator,
                    cancel=token,
                )
                threads = pool.size
        finally:
            if previous is not None:
                signal.signal(signal.SIGINT, previous)

        try:
            outputs: Dict[str, str] = {}
            if result.complete:
                outputs["candidates"] = str(outdir / "candidates.tsv.gz")
                write_candidates_tsv(outputs["candidates"], result.candidates)
                outputs["statistics"] = str(outdir / "statistics.tsv.gz")
                write_statistics_tsv(
                    outputs["statistics"],
                    [("foreground", result.fg), ("background", result.bg)],
                )
                outputs["variable_positions"] = str(outdir / "variable_positions.bed")
                write_positions_bed(
                    outputs["variable_positions"],
                    result.fg.variable_positions,
                    list(result.fg.jobs),
                )

            plots_dir = outdir / "plots"
            plots_dir.mkdir(parents=True, exist_ok=True)
            positions_png = plots_dir / "positions_per_contig.png"
            score_png = plots_dir / "score_hist.png"
            plot_positions_per_contig(
                fg_counts=result.fg.sweep_counts,
                bg_counts=result.bg.sweep_counts,
                contigs=list(result.fg.jobs),
                out_png=positions_png,
            )
            plot_score_hist(scores=comparator.scores, threshold=comparator.min_score, out_png=score_png)

            summary = _build_summary(args, result, threads, outputs)
            write_json(outdir / "summary.json", summary)

            report_path = render_report(
                outdir=outdir,
                version=__version__,
                summary=summary,
                plots={
                    "positions_per_contig": str(Path("plots") / positions_png.name),
                    "score_hist": str(Path("plots") / score_png.name),
                },
            )
        finally:
            result.close()

        logger.info("Report written: %s", report_path)
        if result.failed:
            sys.stderr.write(
                f"WARNING: {result.failed} region(s)/position(s) could not be read; "
                f"results are incomplete. See {outdir / 'summary.json'}\n"
            )
        print(str(report_path))

        if not result.complete:
            sys.stderr.write("Run interrupted before statistics were collected.\n")
            return EXIT_INTERRUPTED
        if args.strict and result.failed:
            return EXIT_FAILURES
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_sweep(args: argparse.Namespace) -> int:
    out = Path(args.out).expanduser().resolve()
    _setup_logging(args.verbose, logfile=None)
    logger = logging.getLogger("faba")

    try:
        token = CancellationToken()
        previous = _install_interrupt_handler(token)
        try:
            with WorkerPool(args.threads, progress=not args.no_progress) as pool:
                with Sifter(
                    args.bam,
                    args.bai,
                    block_size=int(args.block_size),
                    pool=pool,
                    variability=_variability(args),
                    barcode_tag=_barcode_tag(args),
                ) as sifter:
                    report = sifter.sweep(cancel=token)
                    if sifter.state < SifterState.SWEPT:
                        sys.stderr.write("Sweep interrupted; no output written.\n")
                        return EXIT_INTERRUPTED
                    out.parent.mkdir(parents=True, exist_ok=True)
                    n = write_positions_bed(out, sifter.variable_positions, list(sifter.jobs))
        finally:
            if previous is not None:
                signal.signal(signal.SIGINT, previous)

        logger.info("%s", report.summary_line())
        if report.failed:
            sys.stderr.write(f"WARNING: {report.failed} block(s) could not be read; BED is incomplete.\n")
        sys.stderr.write(f"{n} variable positions\n")
        print(str(out))
        return 0
    except Exception as e:
        return _handle_error(e)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "compare":
        return cmd_compare(args)
    if args.cmd == "sweep":
        return cmd_sweep(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
