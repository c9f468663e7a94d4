from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Tuple

import pysam

from .classifier import AssignmentTable
from .models import AlignedRead, ContactRecord
from .tags import to_aligned_read

logger = logging.getLogger(__name__)


def iter_retained_alignments(
    reads: Iterable[pysam.AlignedSegment],
    table: AssignmentTable,
    counts: Dict[str, int],
) -> Iterator[AlignedRead]:
    """Alignments of labelled reads whose mate is on the same chromosome (or unplaced)."""
    for read in reads:
        counts["alignments_scanned"] += 1
        if read.is_unmapped:
            continue
        if read.query_name not in table:
            continue
        if read.next_reference_id not in (-1, read.reference_id):
            counts["alignments_interchromosomal"] += 1
            continue
        counts["alignments_retained"] += 1
        yield to_aligned_read(read)


def group_by_read_name(alignments: Iterable[AlignedRead]) -> Dict[str, List[AlignedRead]]:
    groups: Dict[str, List[AlignedRead]] = {}
    for aln in alignments:
        groups.setdefault(aln.name, []).append(aln)
    return groups


def _mate_order(aln: AlignedRead) -> Tuple[int, int]:
    return (0 if aln.is_read1 else 1, aln.pos0)


def contacts_from_groups(
    groups: Dict[str, List[AlignedRead]],
    table: AssignmentTable,
    counts: Dict[str, int],
) -> List[ContactRecord]:
    """One record per read name with exactly two retained alignments, sorted."""
    records: List[ContactRecord] = []
    for name, alns in groups.items():
        if len(alns) != 2:
            counts["names_wrong_cardinality"] += 1
            continue
        tagged = table.tagged_chrom(name)
        if tagged is None:
            continue
        m0, m1 = sorted(alns, key=_mate_order)
        records.append(
            ContactRecord(
                chrom1=tagged,
                pos1=m0.insertion_point,
                chrom2=tagged,
                pos2=m1.insertion_point,
            )
        )
    records.sort(key=ContactRecord.sort_key)
    return records


def build_contacts(
    reads: Iterable[pysam.AlignedSegment],
    table: AssignmentTable,
    counts: Dict[str, int] | None = None,
) -> List[ContactRecord]:
    if counts is None:
        counts = {}
    for key in (
        "alignments_scanned",
        "alignments_interchromosomal",
        "alignments_retained",
        "names_wrong_cardinality",
    ):
        counts.setdefault(key, 0)
    groups = group_by_read_name(iter_retained_alignments(reads, table, counts))
    records = contacts_from_groups(groups, table, counts)
    counts["contacts"] = len(records)
    return records


def write_contacts(records: Iterable[ContactRecord], out_path: str | Path) -> int:
    n = 0
    with open(out_path, "wt", encoding="utf-8") as fh:
        for rec in records:
            fh.write(rec.to_short_line())
            n += 1
    return n


def build_chromosome_contacts(
    bam_path: str | Path,
    chrom: str,
    table: AssignmentTable,
    out_path: str | Path,
) -> Dict[str, int]:
    """Re-scan one chromosome and write its sorted contact records."""
    counts: Dict[str, int] = {}
    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        records = build_contacts(bam.fetch(chrom), table, counts)
    write_contacts(records, out_path)
    logger.info(
        "%s: %d contact records from %d retained alignments",
        chrom,
        counts["contacts"],
        counts["alignments_retained"],
    )
    return counts


def parse_short_line(line: str) -> ContactRecord:
    fields = line.rstrip("\n").split("\t")
    if len(fields) < 8:
        raise ValueError(f"Not a short-format contact line: {line!r}")
    return ContactRecord(
        chrom1=fields[1], pos1=int(fields[2]), chrom2=fields[5], pos2=int(fields[6])
    )
