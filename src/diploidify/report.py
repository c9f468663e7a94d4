from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Diploidify Report</title>
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
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>Diploidify Report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<table>
  <tr><th>Input BAMs</th><td>{% for b in config.bams %}<code>{{ b }}</code> {% endfor %}</td></tr>
  <tr><th>Phasing input</th><td><code>{{ phasing_input }}</code></td></tr>
  <tr><th>Stages</th><td>{{ config.from_stage }} &rarr; {{ config.to_stage }}</td></tr>
  <tr><th>Homologs</th><td>{{ "merged (interleaved)" if config.merge_homologs else "separate" }}</td></tr>
  <tr><th>MAPQ threshold</th><td>{{ config.mapq }}</td></tr>
  <tr><th>Runtime (s)</th><td>{{ "%.1f"|format(runtime_seconds) }}</td></tr>
</table>

{% if prep %}
<h2>Prep</h2>
<table>
  <tr><th>Alignments read</th><td>{{ prep.alignments_in }}</td></tr>
  <tr><th>Alignments kept</th><td>{{ prep.alignments_kept }}</td></tr>
</table>
{% endif %}

{% if hic %}
<h2>Homolog assignment and contacts</h2>
<table>
  <tr><th>Chromosome</th><th>Assigned -r</th><th>Assigned -a</th><th>Conflicts</th><th>Contacts</th></tr>
  {% for c in hic.chromosomes %}
  <tr>
    <td>{{ c.chrom }}</td>
    <td>{{ c.counts.assigned_r }}</td>
    <td>{{ c.counts.assigned_a }}</td>
    <td>{{ c.counts.conflicts|default(0) }}</td>
    <td>{{ c.counts.contacts }}</td>
  </tr>
  {% endfor %}
</table>
{% endif %}

{% if dhs %}
<h2>Accessibility</h2>
<table>
  <tr><th>Chromosome</th><th>Raw events</th><th>Corrected events</th><th>Raw loci</th><th>Corrected loci</th></tr>
  {% for c in dhs.chromosomes %}
  <tr>
    <td>{{ c.chrom }}</td>
    <td>{{ c.counts.alignments_counted }}</td>
    <td>{{ c.counts.alignments_corrected }}</td>
    <td>{{ c.counts.raw_loci }}</td>
    <td>{{ c.counts.corrected_loci }}</td>
  </tr>
  {% endfor %}
</table>
{% endif %}

{% if plots %}
<h2>Plots</h2>
<div class="grid">
  {% for name, src in plots.items() %}
  <div class="card">
    <h3>{{ name|replace("_", " ") }}</h3>
    <img src="{{ src }}" alt="{{ name }}">
  </div>
  {% endfor %}
</div>
{% endif %}

<h2>Interpretation notes</h2>
<ul>
  <li>Reads with contradicting allele evidence are dropped, not voted on; they appear in no output.</li>
  <li>The corrected track only counts partner junction types admitted for the platform, so it never exceeds the raw track.</li>
</ul>

<hr>
<p class="small">Diploidify {{ version }}</p>
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

    config = summary.get("config", {})
    stages = summary.get("stages", {})
    phasing_input = (
        config.get("reads_to_homologs") or config.get("psf") or config.get("vcf") or "n/a"
    )

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        config=config,
        phasing_input=phasing_input,
        runtime_seconds=float(summary.get("runtime_seconds", 0.0)),
        prep=stages.get("prep"),
        hic=stages.get("hic"),
        dhs=stages.get("dhs"),
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
