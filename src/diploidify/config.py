from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .accessibility import admitted_junction_types
from .errors import ConfigurationError

STAGES: Tuple[str, ...] = ("prep", "hic", "dhs", "cleanup")

DEFAULT_RESOLUTIONS = (
    "2500000,1000000,500000,250000,100000,50000,25000,10000,5000,2000,1000,500,200,100"
)


@dataclass(frozen=True)
class RunConfig:
    """Validated settings for one ``diploidify run`` invocation."""

    bams: List[str]
    outdir: str
    vcf: Optional[str] = None
    psf: Optional[str] = None
    reads_to_homologs: Optional[str] = None
    chrom_sizes: Optional[str] = None
    sample: Optional[str] = None
    require_pass: bool = True
    mapq: int = 1
    min_baseq: int = 0
    platform: Optional[str] = None
    merge_homologs: bool = False
    threads: int = 1
    from_stage: str = "prep"
    to_stage: str = "cleanup"
    juicer_dir: Optional[str] = None
    resolutions: str = DEFAULT_RESOLUTIONS
    progress: bool = False

    def stage_enabled(self, stage: str) -> bool:
        i = STAGES.index(stage)
        return STAGES.index(self.from_stage) <= i <= STAGES.index(self.to_stage)

    def validate(self) -> "RunConfig":
        """Raise :class:`ConfigurationError` on any inconsistency; return self."""
        for name in (self.from_stage, self.to_stage):
            if name not in STAGES:
                raise ConfigurationError(
                    f"Unknown pipeline stage {name!r}; use one of {'/'.join(STAGES)}."
                )
        if STAGES.index(self.from_stage) > STAGES.index(self.to_stage):
            raise ConfigurationError(
                "Please make sure that the first stage requested is an earlier stage of the "
                "pipeline than the one requested as last."
            )

        if self.vcf is None and self.psf is None and self.reads_to_homologs is None:
            raise ConfigurationError(
                "No phased input is given to run diploidification. "
                "Please pass a vcf, psf or reads-to-homologs file."
            )
        _check_input(self.vcf, (".vcf", ".vcf.gz"), "--vcf")
        _check_input(self.psf, (".psf",), "--psf")
        _check_input(self.reads_to_homologs, (".txt",), "--reads-to-homologs")

        if self.from_stage == "prep" and not self.bams:
            raise ConfigurationError("At least one input BAM is required for the prep stage.")
        for bam in self.bams:
            if not Path(bam).is_file():
                raise ConfigurationError(f"Input BAM not found: {bam}")

        if self.mapq < 0:
            raise ConfigurationError("--mapq must be a non-negative integer.")
        if self.min_baseq < 0:
            raise ConfigurationError("--min-baseq must be a non-negative integer.")
        if self.threads < 1:
            raise ConfigurationError("--threads must be at least 1.")
        if self.platform is not None:
            admitted_junction_types(self.platform)
        if self.juicer_dir is not None and not Path(self.juicer_dir).is_dir():
            raise ConfigurationError(f"Juicer folder not found at expected location: {self.juicer_dir}")
        try:
            [int(r) for r in self.resolutions.split(",")]
        except ValueError:
            raise ConfigurationError(f"Invalid resolutions string: {self.resolutions!r}") from None
        return self


def _check_input(path: Optional[str], suffixes: Tuple[str, ...], flag: str) -> None:
    if path is None:
        return
    p = Path(path)
    if not p.is_file() or p.stat().st_size == 0:
        raise ConfigurationError(f"{flag}: file is not found at expected location or is empty: {path}")
    if not p.name.endswith(suffixes):
        raise ConfigurationError(
            f"{flag}: file does not have the expected extension ({', '.join(suffixes)}): {path}"
        )
