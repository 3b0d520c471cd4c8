from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, List

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>faba compare report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    .alert { border: 2px solid #c62828; background: #fdecea; color: #8e0000;
             border-radius: 8px; padding: 12px; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>faba compare report</h1>
<p class="small">Generated: {{ generated_at }}</p>

{% if failed > 0 or not complete %}
<div class="alert">
  <strong>Incomplete run.</strong>
  {% if failed > 0 %}{{ failed }} region(s)/position(s) could not be read; their positions are missing from the results.{% endif %}
  {% if not complete %}The run was stopped before statistics were collected for both datasets.{% endif %}
  See <code>summary.json</code> for details.
</div>
{% endif %}

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>Foreground BAM</th><td><code>{{ fg_bam }}</code></td></tr>
      <tr><th>Background BAM</th><td><code>{{ bg_bam }}</code></td></tr>
      <tr><th>Block size</th><td>{{ block_size }}</td></tr>
      <tr><th>Threads</th><td>{{ threads }}</td></tr>
      <tr><th>Barcode tag</th><td>{{ barcode_tag or "none" }}</td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Scoring</h3>
    <table>
      <tr><th>Scorer</th><td>{{ scorer }}</td></tr>
      <tr><th>Minimum score</th><td>{{ min_score }}</td></tr>
      <tr><th>Minimum depth</th><td>{{ min_depth }}</td></tr>
      <tr><th>Candidates</th><td>{{ n_candidates }}</td></tr>
    </table>
  </div>
</div>

<h2>Passes</h2>
<table>
  <tr><th>Pass</th><th>Regions</th><th>OK</th><th>Empty</th><th>Failed</th><th>Cancelled</th></tr>
  {% for name, r in passes.items() %}
  <tr>
    <td>{{ name }}</td><td>{{ r.attempted }}</td><td>{{ r.succeeded }}</td>
    <td>{{ r.empty }}</td><td>{{ r.failed }}</td><td>{{ "yes" if r.cancelled else "no" }}</td>
  </tr>
  {% endfor %}
</table>

{% if failures %}
<h3>Example failures</h3>
<table>
  <tr><th>Pass</th><th>Region</th><th>Error</th><th>Message</th></tr>
  {% for f in failures %}
  <tr><td>{{ f.pass }}</td><td><code>{{ f.region }}</code></td><td>{{ f.error }}</td><td>{{ f.message }}</td></tr>
  {% endfor %}
</table>
{% endif %}

{% if layout_problems %}
<h3>Header differences</h3>
<ul>
  {% for p in layout_problems %}<li>{{ p }}</li>{% endfor %}
</ul>
{% endif %}

<h2>Plots</h2>
<div class="grid">
  <div class="card">
    <h3>Variable positions per contig</h3>
    <img src="{{ plots.positions_per_contig }}" alt="variable positions per contig">
  </div>
  <div class="card">
    <h3>Score distribution</h3>
    <img src="{{ plots.score_hist }}" alt="score histogram">
  </div>
</div>

<h2>Outputs</h2>
<ul>
  <li><code>candidates.tsv.gz</code> (scored positions above threshold)</li>
  <li><code>statistics.tsv.gz</code> (per-sample counts at every reconciled position)</li>
  <li><code>variable_positions.bed</code> (reconciled positions)</li>
  <li><code>summary.json</code> (machine-readable summary)</li>
</ul>

<h2>Interpretation notes</h2>
<ul>
  <li>Positions are 0-based; strand refers to the read orientation, not the transcript.</li>
  <li>The sample <code>.</code> aggregates reads without a barcode tag.</li>
  <li>The Dirichlet-multinomial Bayes factor scorer is uncalibrated; use it for ranking, not calling.</li>
</ul>

<hr>
<p class="small">faba {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    summary: Dict[str, Any],
    plots: Dict[str, str],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    passes: Dict[str, Dict[str, Any]] = summary.get("passes", {})
    failures: List[Dict[str, Any]] = []
    for name, r in passes.items():
        for ex in r.get("examples", []):
            failures.append({"pass": name, **ex})

    params = summary.get("parameters", {})
    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        fg_bam=summary.get("fg_bam"),
        bg_bam=summary.get("bg_bam"),
        block_size=params.get("block_size"),
        threads=params.get("threads"),
        barcode_tag=params.get("barcode_tag"),
        scorer=params.get("scorer"),
        min_score=params.get("min_score"),
        min_depth=params.get("min_depth"),
        n_candidates=summary.get("candidates", 0),
        failed=int(summary.get("failed", 0)),
        complete=bool(summary.get("complete", False)),
        passes=passes,
        failures=failures,
        layout_problems=summary.get("layout_problems", []),
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
