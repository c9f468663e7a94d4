"""Per-homolog accessibility signal with allele-bias correction.

Reference-phase and alternate-phase homologs are not sampled with equal
efficiency at every junction type. The raw track counts every alignment of a
labelled read; the corrected track only counts alignments whose own junction
type is admitted for the sequencing platform and is the ligation partner of a
junction type seen when the read was classified.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

import numpy as np
import pysam

from .classifier import AssignmentTable
from .errors import ConfigurationError
from .tags import insertion_point, junction_type

logger = logging.getLogger(__name__)

PLATFORM_ILLUMINA = "ILLUMINA"
PLATFORM_454 = "454"

ADMITTED_JUNCTION_TYPES: Dict[str, FrozenSet[int]] = {
    PLATFORM_ILLUMINA: frozenset({2, 3, 4, 5}),
    PLATFORM_454: frozenset({0, 1}),
}

_PLATFORM_ALIASES = {
    "ILM": PLATFORM_ILLUMINA,
    "Illumina": PLATFORM_ILLUMINA,
    "LS454": PLATFORM_454,
}

LocusKey = Tuple[str, int]


def normalize_platform(pl: str) -> str:
    pl = pl.strip()
    return _PLATFORM_ALIASES.get(pl, pl)


def detect_platform(bam_path: str | Path) -> str:
    """Read the platform from the @RG PL fields; it must be a single known value."""
    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        header = bam.header.to_dict()
    platforms = {
        normalize_platform(str(rg["PL"])) for rg in header.get("RG", []) if "PL" in rg
    }
    if len(platforms) != 1:
        raise ConfigurationError(
            "Platform name is not recognized or data from different platforms seems to be mixed "
            f"(@RG PL values: {sorted(platforms) or 'none'}). Use --platform to override."
        )
    platform = platforms.pop()
    admitted_junction_types(platform)
    return platform


def admitted_junction_types(platform: str) -> FrozenSet[int]:
    try:
        return ADMITTED_JUNCTION_TYPES[normalize_platform(platform)]
    except KeyError:
        raise ConfigurationError(
            f"Unrecognized platform {platform!r}; expected one of {sorted(ADMITTED_JUNCTION_TYPES)}."
        ) from None


def aggregate_accessibility(
    reads: Iterable[pysam.AlignedSegment],
    table: AssignmentTable,
    admitted: FrozenSet[int],
    counts: Optional[Dict[str, int]] = None,
) -> Tuple[Counter, Counter]:
    """Return (raw, corrected) counters keyed by (tagged chrom, insertion point)."""
    raw: Counter = Counter()
    corrected: Counter = Counter()
    if counts is None:
        counts = {}
    for key in ("alignments_scanned", "alignments_counted", "alignments_corrected"):
        counts.setdefault(key, 0)

    partners: Dict[str, FrozenSet[int]] = {}
    for read in reads:
        counts["alignments_scanned"] += 1
        if read.is_unmapped:
            continue
        name = str(read.query_name)
        tagged = table.tagged_chrom(name)
        if tagged is None:
            continue

        key = (tagged, insertion_point(read))
        raw[key] += 1
        counts["alignments_counted"] += 1

        rt = junction_type(read)
        if rt not in admitted:
            continue
        if name not in partners:
            partners[name] = table.partner_junction_types(name)
        if rt in partners[name]:
            corrected[key] += 1
            counts["alignments_corrected"] += 1

    return raw, corrected


def write_bedgraph(counter: Counter, out_path: str | Path) -> int:
    """Write one-base intervals (``ip - 1``, ``ip``) sorted by chromosome then start."""
    by_chrom: Dict[str, list] = {}
    for (chrom, ip), n in counter.items():
        by_chrom.setdefault(chrom, []).append((ip, n))

    rows = 0
    with open(out_path, "wt", encoding="utf-8") as fh:
        for chrom in sorted(by_chrom):
            arr = np.asarray(by_chrom[chrom], dtype=np.int64)
            arr = arr[np.argsort(arr[:, 0], kind="stable")]
            for ip, n in arr:
                fh.write(f"{chrom}\t{ip - 1}\t{ip}\t{n}\n")
                rows += 1
    return rows


def aggregate_chromosome(
    bam_path: str | Path,
    chrom: str,
    table: AssignmentTable,
    admitted: FrozenSet[int],
    raw_out: str | Path,
    corrected_out: str | Path,
) -> Dict[str, int]:
    """Re-scan one chromosome and write its raw and corrected bedGraph partials."""
    counts: Dict[str, int] = {}
    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        raw, corrected = aggregate_accessibility(bam.fetch(chrom), table, admitted, counts)
    counts["raw_loci"] = write_bedgraph(raw, raw_out)
    counts["corrected_loci"] = write_bedgraph(corrected, corrected_out)
    logger.info(
        "%s: %d raw / %d corrected accessibility events",
        chrom,
        counts["alignments_counted"],
        counts["alignments_corrected"],
    )
    return counts
