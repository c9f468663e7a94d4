from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, TextIO, Tuple

import pysam
from tqdm import tqdm

from .homologs import split_tagged, tag_chrom
from .models import HOMOLOG_ALT, HOMOLOG_REF, HOMOLOG_UNRESOLVED
from .phase_index import PhaseIndex
from .tags import junction_type, partner_junction_type

logger = logging.getLogger(__name__)

_NO_JUNCTION = "."


class AssignmentTable:
    """Read name -> homolog label for one chromosome.

    Observations follow a deletion rule: the first observation of a read name
    records its label, an agreeing observation changes nothing, a disagreeing
    one removes the entry. A removed read stays unresolved for the rest of the
    pass, so the outcome does not depend on the order observations arrive in.

    The junction types of the observing alignments are kept per read; their
    partners select the alignments counted in the corrected accessibility track.
    """

    def __init__(self, chrom: str) -> None:
        self.chrom = chrom
        self._labels: Dict[str, str] = {}
        self._junctions: Dict[str, Set[int]] = {}
        self._conflicted: Set[str] = set()
        self.observations = 0

    def observe(self, name: str, label: str, rt: Optional[int] = None) -> None:
        self.observations += 1
        if name in self._conflicted:
            return
        prev = self._labels.get(name)
        if prev is None:
            self._labels[name] = label
            self._junctions[name] = set() if rt is None else {rt}
        elif prev != label:
            del self._labels[name]
            del self._junctions[name]
            self._conflicted.add(name)
        elif rt is not None:
            self._junctions[name].add(rt)

    def label(self, name: str) -> str:
        return self._labels.get(name, HOMOLOG_UNRESOLVED)

    def tagged_chrom(self, name: str) -> Optional[str]:
        label = self._labels.get(name)
        return None if label is None else tag_chrom(self.chrom, label)

    def junction_types(self, name: str) -> FrozenSet[int]:
        return frozenset(self._junctions.get(name, ()))

    def partner_junction_types(self, name: str) -> FrozenSet[int]:
        return frozenset(partner_junction_type(rt) for rt in self._junctions.get(name, ()))

    @property
    def conflicts(self) -> int:
        return len(self._conflicted)

    def is_conflicted(self, name: str) -> bool:
        return name in self._conflicted

    def __contains__(self, name: object) -> bool:
        return name in self._labels

    def __len__(self) -> int:
        return len(self._labels)

    def items(self) -> Iterator[Tuple[str, str]]:
        return iter(self._labels.items())

    def homolog_counts(self) -> Dict[str, int]:
        counts = {HOMOLOG_REF: 0, HOMOLOG_ALT: 0}
        for label in self._labels.values():
            counts[label] += 1
        return counts

    def write(self, fh: TextIO) -> int:
        """Write ``name  tagged-chrom  rt`` lines (one per recorded junction type)."""
        n = 0
        for name in sorted(self._labels):
            tagged = tag_chrom(self.chrom, self._labels[name])
            rts = sorted(self._junctions[name])
            if not rts:
                fh.write(f"{name}\t{tagged}\t{_NO_JUNCTION}\n")
                n += 1
            for rt in rts:
                fh.write(f"{name}\t{tagged}\t{rt}\n")
                n += 1
        return n


def load_assignment_table(path: str | Path, chrom: str) -> AssignmentTable:
    """Rebuild a chromosome's table from a reads-to-homologs file.

    Lines for other chromosomes are skipped; lines are replayed through
    :meth:`AssignmentTable.observe`, so per-observation files produced by an
    external phaser resolve exactly like in-process classification.
    """
    table = AssignmentTable(chrom)
    wanted = {tag_chrom(chrom, HOMOLOG_REF), tag_chrom(chrom, HOMOLOG_ALT)}
    with open(path, "rt", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            fields = line.rstrip("\n").split("\t")
            if len(fields) < 2 or fields[1] not in wanted:
                continue
            _, label = split_tagged(fields[1])
            rt: Optional[int] = None
            if len(fields) >= 3 and fields[2] not in ("", _NO_JUNCTION):
                try:
                    rt = int(fields[2])
                except ValueError as e:
                    raise ValueError(f"{path}:{lineno}: invalid junction type {fields[2]!r}") from e
            table.observe(fields[0], label, rt)
    return table


def extract_bases_at_positions(
    read: pysam.AlignedSegment, positions0: List[int]
) -> Dict[int, Tuple[str, int]]:
    """Extract (base, baseq) at a sorted list of reference positions (0-based) for one read.

    This function walks the CIGAR once and extracts bases for candidate positions without iterating
    over all aligned pairs.

    Returns a mapping {pos0: (base, base_quality)} only for positions that are aligned as a base
    in the read (i.e. not deletions / ref skips at that locus).
    """
    if read.is_unmapped or read.cigartuples is None or len(positions0) == 0:
        return {}

    seq = read.query_sequence
    if seq is None:
        return {}
    quals = read.query_qualities  # can be None

    out: Dict[int, Tuple[str, int]] = {}

    pos_idx = 0
    ref_pos = read.reference_start
    query_pos = 0

    while pos_idx < len(positions0) and positions0[pos_idx] < ref_pos:
        pos_idx += 1

    for op, length in read.cigartuples:
        if pos_idx >= len(positions0):
            break

        if op in (0, 7, 8):  # M, =, X
            ref_end = ref_pos + length
            while pos_idx < len(positions0) and positions0[pos_idx] < ref_end:
                p0 = positions0[pos_idx]
                qpos = query_pos + (p0 - ref_pos)
                if 0 <= qpos < len(seq):
                    bq = int(quals[qpos]) if quals is not None else 0
                    out[p0] = (seq[qpos], bq)
                pos_idx += 1
            ref_pos = ref_end
            query_pos += length
        elif op in (1, 4):  # I, S
            query_pos += length
        elif op in (2, 3):  # D, N
            ref_end = ref_pos + length
            while pos_idx < len(positions0) and positions0[pos_idx] < ref_end:
                pos_idx += 1
            ref_pos = ref_end
        # H, P and unknown ops consume neither

    return out


def observe_read(
    read: pysam.AlignedSegment,
    index: PhaseIndex,
    *,
    min_baseq: int = 0,
) -> List[Tuple[int, str]]:
    """Return (pos0, homolog label) for each phased locus this alignment informs."""
    if read.is_unmapped or read.reference_end is None:
        return []
    pos_list, loci = index.loci_in_span(read.reference_start, read.reference_end)
    if not pos_list:
        return []

    bases = extract_bases_at_positions(read, pos_list)
    out: List[Tuple[int, str]] = []
    for pos0, locus in zip(pos_list, loci):
        hit = bases.get(pos0)
        if hit is None:
            continue
        base, bq = hit
        if bq < min_baseq:
            continue
        label = locus.homolog_for_base(base)
        if label is not None:
            out.append((pos0, label))
    return out


def classify_reads(
    reads: Iterable[pysam.AlignedSegment],
    chrom: str,
    index: PhaseIndex,
    *,
    min_baseq: int = 0,
    counts: Optional[Dict[str, int]] = None,
) -> AssignmentTable:
    """Feed every observation of the primary alignments in ``reads`` into a fresh table."""
    table = AssignmentTable(chrom)
    if counts is None:
        counts = {}
    for key in ("reads_scanned", "reads_unmapped", "reads_not_primary", "reads_with_evidence"):
        counts.setdefault(key, 0)

    for read in reads:
        counts["reads_scanned"] += 1
        if read.is_unmapped:
            counts["reads_unmapped"] += 1
            continue
        if read.is_secondary or read.is_supplementary:
            counts["reads_not_primary"] += 1
            continue
        observations = observe_read(read, index, min_baseq=min_baseq)
        if not observations:
            continue
        counts["reads_with_evidence"] += 1
        rt = junction_type(read)
        name = str(read.query_name)
        for _pos0, label in observations:
            table.observe(name, label, rt)

    return table


def classify_chromosome(
    bam_path: str | Path,
    chrom: str,
    index: Optional[PhaseIndex],
    *,
    min_baseq: int = 0,
    progress: bool = False,
) -> Tuple[AssignmentTable, Dict[str, int]]:
    """Classify all alignments of one chromosome against its phase index."""
    t0 = time.time()
    counts: Dict[str, int] = {}
    if index is None or len(index) == 0:
        logger.info("%s: no phased loci; every read stays unresolved", chrom)
        return AssignmentTable(chrom), {"reads_scanned": 0, "reads_with_evidence": 0}

    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        it: Iterable[pysam.AlignedSegment] = bam.fetch(chrom)
        if progress:
            it = tqdm(it, unit="read", desc=f"Classifying {chrom}")
        table = classify_reads(it, chrom, index, min_baseq=min_baseq, counts=counts)

    by_label = table.homolog_counts()
    counts.update(
        {
            "observations": table.observations,
            "conflicts": table.conflicts,
            "assigned_r": by_label[HOMOLOG_REF],
            "assigned_a": by_label[HOMOLOG_ALT],
        }
    )
    logger.info(
        "%s: %d reads assigned (r=%d, a=%d), %d dropped as conflicting (%.1fs)",
        chrom,
        len(table),
        by_label[HOMOLOG_REF],
        by_label[HOMOLOG_ALT],
        table.conflicts,
        time.time() - t0,
    )
    return table, counts
