from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Collection, Dict, Iterable, List, Optional, Tuple

import pysam

from .errors import ConfigurationError
from .models import PhaseLocus
from .utils import open_textmaybe_gzip

logger = logging.getLogger(__name__)

_BASES = {"A", "C", "G", "T"}
_PSF_HEADER = "#chrom\tpos\tr_allele\ta_allele"


@dataclass(frozen=True)
class PhaseIndex:
    """Per-contig phased locus lookup structure."""

    positions: List[int]  # sorted 0-based positions
    loci: List[PhaseLocus]  # aligned with positions

    def __len__(self) -> int:
        return len(self.positions)

    def loci_in_span(self, start0: int, end0: int) -> Tuple[List[int], List[PhaseLocus]]:
        """Return the phased positions and loci within [start0, end0)."""
        left = bisect.bisect_left(self.positions, start0)
        right = bisect.bisect_left(self.positions, end0)
        return self.positions[left:right], self.loci[left:right]

    def get(self, pos0: int) -> Optional[PhaseLocus]:
        i = bisect.bisect_left(self.positions, pos0)
        if i < len(self.positions) and self.positions[i] == pos0:
            return self.loci[i]
        return None


def load_phased_vcf(
    vcf_path: str | Path,
    *,
    sample: Optional[str] = None,
    chroms: Optional[Collection[str]] = None,
    require_pass: bool = True,
) -> Tuple[List[PhaseLocus], Dict[str, int]]:
    """Load phased heterozygous SNVs from a VCF.

    Parameters
    ----------
    vcf_path:
        Phased VCF (optionally bgzip+tabix indexed).
    sample:
        Sample name within VCF. If None, uses first sample.
    chroms:
        Restrict loading to these contigs (None keeps all).
    require_pass:
        If True, require FILTER to be PASS or empty.

    Returns
    -------
    loci:
        PhaseLocus objects in file order.
    stats:
        Simple counters about records kept/skipped.
    """
    try:
        vcf = pysam.VariantFile(str(vcf_path))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Could not open phased VCF {vcf_path}: {e}") from e

    with vcf:
        samples = list(vcf.header.samples)
        if sample is None:
            if not samples:
                raise ConfigurationError(
                    "VCF has no samples. Provide a VCF with phased genotypes (GT with '|')."
                )
            sample = samples[0]
            logger.info("No --sample provided; using first VCF sample: %s", sample)
        if sample not in samples:
            raise ConfigurationError(f"Sample '{sample}' not found in VCF samples: {samples}")

        stats: Dict[str, int] = {
            "records_total": 0,
            "records_pass": 0,
            "loci_kept": 0,
            "skipped_filter": 0,
            "skipped_chrom": 0,
            "skipped_non_snv": 0,
            "skipped_unphased": 0,
            "skipped_homozygous": 0,
        }
        wanted = set(chroms) if chroms is not None else None
        loci: List[PhaseLocus] = []

        for rec in vcf:
            stats["records_total"] += 1
            chrom = str(rec.contig)
            if wanted is not None and chrom not in wanted:
                stats["skipped_chrom"] += 1
                continue

            if require_pass:
                filt = list(rec.filter.keys())
                if len(filt) > 0 and not (len(filt) == 1 and filt[0] == "PASS"):
                    stats["skipped_filter"] += 1
                    continue
            stats["records_pass"] += 1

            call = rec.samples[sample]
            gt = call["GT"] if "GT" in call else None
            if not gt or len(gt) != 2 or any(g is None for g in gt) or not call.phased:
                stats["skipped_unphased"] += 1
                continue
            if gt[0] == gt[1]:
                stats["skipped_homozygous"] += 1
                continue

            alleles = rec.alleles or ()
            try:
                r_allele = alleles[gt[0]].upper()
                a_allele = alleles[gt[1]].upper()
            except IndexError:
                stats["skipped_non_snv"] += 1
                continue
            if r_allele not in _BASES or a_allele not in _BASES:
                stats["skipped_non_snv"] += 1
                continue

            rid = rec.id if rec.id is not None else f"{chrom}:{rec.pos}"
            loci.append(
                PhaseLocus(
                    chrom=chrom,
                    pos0=int(rec.pos) - 1,  # VCF is 1-based
                    ref_allele=r_allele,
                    alt_allele=a_allele,
                    record_id=rid,
                )
            )

    stats["loci_kept"] = len(loci)
    if not loci:
        raise ConfigurationError(
            f"No phased heterozygous SNVs were found in {vcf_path} after filtering."
        )
    return loci, stats


def load_phase_set(
    psf_path: str | Path,
    *,
    chroms: Optional[Collection[str]] = None,
) -> List[PhaseLocus]:
    """Load a phase-set file (``chrom  pos(1-based)  r_allele  a_allele``)."""
    wanted = set(chroms) if chroms is not None else None
    loci: List[PhaseLocus] = []
    with open_textmaybe_gzip(psf_path, "rt") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.rstrip("\n")
            if not line or line.startswith("#"):
                continue
            fields = line.split("\t")
            if len(fields) < 4:
                raise ConfigurationError(
                    f"{psf_path}:{lineno}: expected 4 tab-separated columns, got {len(fields)}"
                )
            chrom, pos_s, r_allele, a_allele = fields[:4]
            try:
                pos = int(pos_s)
            except ValueError as e:
                raise ConfigurationError(f"{psf_path}:{lineno}: invalid position {pos_s!r}") from e
            r_allele = r_allele.upper()
            a_allele = a_allele.upper()
            if pos < 1 or r_allele not in _BASES or a_allele not in _BASES or r_allele == a_allele:
                raise ConfigurationError(f"{psf_path}:{lineno}: malformed phased locus: {line!r}")
            if wanted is not None and chrom not in wanted:
                continue
            loci.append(
                PhaseLocus(
                    chrom=chrom,
                    pos0=pos - 1,
                    ref_allele=r_allele,
                    alt_allele=a_allele,
                    record_id=f"{chrom}:{pos}",
                )
            )

    if not loci:
        raise ConfigurationError(f"Phase-set file {psf_path} contains no usable phased loci.")
    return loci


def write_phase_set(loci: Iterable[PhaseLocus], path: str | Path) -> int:
    n = 0
    with open(path, "wt", encoding="utf-8") as fh:
        fh.write(_PSF_HEADER + "\n")
        for locus in loci:
            fh.write(f"{locus.chrom}\t{locus.pos0 + 1}\t{locus.ref_allele}\t{locus.alt_allele}\n")
            n += 1
    return n


def build_phase_index(loci: Iterable[PhaseLocus]) -> Dict[str, PhaseIndex]:
    """Build a per-contig index for fast read overlap lookup.

    Duplicate records at one position collapse when they agree; when they carry
    different allele pairs the position is dropped.
    """
    by_pos: Dict[Tuple[str, int], Optional[PhaseLocus]] = {}
    conflicting = 0
    for locus in loci:
        key = (locus.chrom, locus.pos0)
        if key not in by_pos:
            by_pos[key] = locus
            continue
        prev = by_pos[key]
        if prev is None:
            continue
        if (prev.ref_allele, prev.alt_allele) != (locus.ref_allele, locus.alt_allele):
            by_pos[key] = None
            conflicting += 1

    if conflicting:
        logger.warning(
            "Dropped %d phased positions with conflicting duplicate records.", conflicting
        )

    by_contig: Dict[str, List[PhaseLocus]] = {}
    for locus in by_pos.values():
        if locus is not None:
            by_contig.setdefault(locus.chrom, []).append(locus)

    index: Dict[str, PhaseIndex] = {}
    for chrom, lst in by_contig.items():
        lst_sorted = sorted(lst, key=lambda x: x.pos0)
        index[chrom] = PhaseIndex(positions=[x.pos0 for x in lst_sorted], loci=lst_sorted)
    return index


def load_phase_index(
    *,
    vcf_path: Optional[str | Path] = None,
    psf_path: Optional[str | Path] = None,
    chroms: Optional[Collection[str]] = None,
    sample: Optional[str] = None,
    require_pass: bool = True,
) -> Dict[str, PhaseIndex]:
    """Load the phase index from a phase-set file if given, else from the VCF."""
    if psf_path is not None:
        logger.info("Loading phase set from %s", psf_path)
        loci = load_phase_set(psf_path, chroms=chroms)
    elif vcf_path is not None:
        logger.info("Loading phased variants from %s", vcf_path)
        loci, stats = load_phased_vcf(
            vcf_path, sample=sample, chroms=chroms, require_pass=require_pass
        )
        logger.info("Phased VCF: %s", stats)
    else:
        raise ConfigurationError("No phasing input: provide a phased VCF or a phase-set file.")

    index = build_phase_index(loci)
    logger.info(
        "Phase index: %d loci on %d chromosomes",
        sum(len(v) for v in index.values()),
        len(index),
    )
    return index
