from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List

import pysam

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


_UCSC_PREFIX = "chr"


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM has an index; raise ConfigurationError with fix instructions."""
    bam = Path(bam_path)
    bai1 = bam.with_suffix(bam.suffix + ".bai")
    bai2 = bam.with_suffix(".bai")
    if bai1.exists() or bai2.exists():
        return
    raise ConfigurationError("BAM is not indexed. Run: samtools index " + str(bam))


def check_vcf_index(vcf_path: str | Path) -> None:
    """Log how a phased VCF will be read; bgzipped VCFs should carry a tabix index."""
    vcf = Path(vcf_path)
    if vcf.suffixes[-2:] == [".vcf", ".gz"]:
        tbi = vcf.with_suffix(vcf.suffix + ".tbi")
        if not tbi.exists():
            logger.info(
                "VCF is not tabix indexed; it will be read sequentially. "
                "Run: tabix -p vcf %s",
                vcf,
            )
    elif vcf.suffix == ".vcf":
        logger.info(
            "VCF is uncompressed (.vcf). This is supported but slower; "
            "consider bgzip+tabix for large files."
        )


def vcf_contigs(vcf_path: str | Path) -> List[str]:
    with pysam.VariantFile(str(vcf_path)) as vcf:
        return list(vcf.header.contigs)


def detect_contig_style(contigs: Iterable[str]) -> str:
    """Infer contig style: 'ucsc' if most contigs start with 'chr', else 'ensembl'."""
    names = [c for c in contigs if c]
    if not names:
        return "unknown"
    chr_like = [c for c in names if c.startswith(_UCSC_PREFIX)]
    if len(chr_like) >= max(1, int(0.5 * len(names))):
        return "ucsc"
    return "ensembl"


def check_contig_overlap(phase_contigs: Iterable[str], chroms: Iterable[str]) -> None:
    """Raise when none of the processed chromosomes carries phasing information."""
    phase_contigs = list(phase_contigs)
    chroms = list(chroms)
    if not phase_contigs:
        # Header without ##contig lines; overlap is checked after loading instead.
        return
    if set(phase_contigs).intersection(chroms):
        return
    raise ConfigurationError(
        "Contig mismatch between BAM and phasing input "
        f"(phasing={detect_contig_style(phase_contigs)}, BAM={detect_contig_style(chroms)}). "
        "Rename contigs so both use the same convention (e.g., chr1 vs 1)."
    )
