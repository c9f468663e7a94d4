from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

HOMOLOG_REF = "r"
HOMOLOG_ALT = "a"
HOMOLOG_UNRESOLVED = "u"

HOMOLOGS = (HOMOLOG_REF, HOMOLOG_ALT)


@dataclass(frozen=True)
class PhaseLocus:
    """A phased heterozygous SNV usable for homolog classification.

    Coordinates are 0-based in internal representation.

    Attributes
    ----------
    chrom:
        Contig name as present in BAM/VCF.
    pos0:
        0-based genomic position of the SNV (reference coordinate).
    ref_allele:
        Base carried by the reference-phase homolog (first haplotype of the phased GT).
    alt_allele:
        Base carried by the alternate-phase homolog (second haplotype).
    record_id:
        Optional identifier (VCF ID or CHROM:POS).
    """

    chrom: str
    pos0: int
    ref_allele: str
    alt_allele: str
    record_id: str = ""

    def homolog_for_base(self, base: str) -> Optional[str]:
        b = base.upper()
        if b == self.ref_allele:
            return HOMOLOG_REF
        if b == self.alt_allele:
            return HOMOLOG_ALT
        return None


@dataclass(frozen=True)
class AlignedRead:
    """The fields of one alignment record needed after classification."""

    name: str
    chrom: str
    pos0: int
    is_reverse: bool
    is_read1: bool
    mate_chrom: Optional[str]
    mate_pos0: int
    insertion_point: int
    junction_type: Optional[int]
    mapq: int


@dataclass(frozen=True)
class ContactRecord:
    """One homolog-tagged contact (mate 0 then mate 1)."""

    chrom1: str
    pos1: int
    chrom2: str
    pos2: int

    def sort_key(self) -> tuple:
        return (self.chrom1, self.pos1, self.chrom2, self.pos2)

    def to_short_line(self) -> str:
        # Juicer short format: str1 chr1 pos1 frag1 str2 chr2 pos2 frag2
        return f"0\t{self.chrom1}\t{self.pos1}\t0\t1\t{self.chrom2}\t{self.pos2}\t1\n"


@dataclass
class ChromosomeResult:
    """Per-chromosome statistics returned by a driver task."""

    chrom: str
    stage: str
    counts: Dict[str, int] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    runtime_seconds: float = 0.0
