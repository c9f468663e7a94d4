from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)


def plot_homolog_assignments(
    *,
    chromosomes: List[Dict[str, object]],
    out_png: str | Path,
    title: str = "Reads assigned per homolog",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    names = [str(c["chrom"]) for c in chromosomes]
    counts = [c.get("counts", {}) for c in chromosomes]
    r = [int(c.get("assigned_r", 0)) for c in counts]  # type: ignore[union-attr]
    a = [int(c.get("assigned_a", 0)) for c in counts]  # type: ignore[union-attr]
    x = np.arange(len(names))
    width = 0.4

    plt.figure(figsize=(max(6.0, 0.5 * len(names)), 4.0))
    plt.bar(x - width / 2, r, width=width, label="reference-phase (-r)")
    plt.bar(x + width / 2, a, width=width, label="alternate-phase (-a)")
    plt.xticks(x, names, rotation=45, ha="right")
    plt.ylabel("Read count")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_accessibility_totals(
    *,
    totals: Dict[str, int],
    out_png: str | Path,
    title: str = "Accessibility events",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = ["Raw", "Corrected"]
    values = [
        int(totals.get("alignments_counted", 0)),
        int(totals.get("alignments_corrected", 0)),
    ]

    plt.figure()
    plt.bar(labels, values)
    plt.ylabel("Alignment count")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
