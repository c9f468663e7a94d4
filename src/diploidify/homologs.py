"""Homolog naming convention and chromosome-sizes listings.

A homolog-tagged chromosome is the original name plus ``-r`` (reference-phase)
or ``-a`` (alternate-phase). Separated outputs strip the suffix again; merged
(interleaved) outputs keep it and list every chromosome twice.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pysam

from .errors import ConfigurationError
from .models import HOMOLOG_ALT, HOMOLOG_REF, HOMOLOGS

logger = logging.getLogger(__name__)

SUFFIX_LEN = 2
CHROM_SIZES_SUFFIX = ".chrom.sizes"


def tag_chrom(chrom: str, label: str) -> str:
    if label not in HOMOLOGS:
        raise ValueError(f"Not a resolved homolog label: {label!r}")
    return f"{chrom}-{label}"


def split_tagged(tagged: str) -> Tuple[str, str]:
    """Return (chrom, label) for a tagged chromosome name."""
    if len(tagged) <= SUFFIX_LEN or tagged[-2] != "-" or tagged[-1] not in HOMOLOGS:
        raise ValueError(f"Not a homolog-tagged chromosome name: {tagged!r}")
    return tagged[:-SUFFIX_LEN], tagged[-1]


def homolog_of(tagged: str) -> Optional[str]:
    if tagged.endswith("-" + HOMOLOG_REF):
        return HOMOLOG_REF
    if tagged.endswith("-" + HOMOLOG_ALT):
        return HOMOLOG_ALT
    return None


def output_chrom(tagged: str, *, merge_homologs: bool) -> str:
    if merge_homologs:
        return tagged
    return tagged[:-SUFFIX_LEN]


def chrom_sizes_from_bams(bam_paths: Sequence[str | Path]) -> Dict[str, int]:
    """Union of @SQ entries over the BAM headers, first-seen order."""
    sizes: Dict[str, int] = {}
    for bam_path in bam_paths:
        with pysam.AlignmentFile(str(bam_path), "rb") as bam:
            for name, length in zip(bam.references, bam.lengths):
                prev = sizes.get(name)
                if prev is not None and prev != int(length):
                    raise ConfigurationError(
                        f"Chromosome {name} has different lengths across BAM headers ({prev} vs {length})."
                    )
                sizes[name] = int(length)
    return sizes


def read_chrom_sizes(path: str | Path) -> Dict[str, int]:
    sizes: Dict[str, int] = {}
    with open(path, "rt", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            fields = line.split()
            if len(fields) < 2:
                raise ConfigurationError(f"{path}:{lineno}: expected '<chrom> <length>'")
            try:
                length = int(fields[1])
            except ValueError as e:
                raise ConfigurationError(f"{path}:{lineno}: invalid length {fields[1]!r}") from e
            if length <= 0:
                raise ConfigurationError(f"{path}:{lineno}: length must be positive")
            sizes[fields[0]] = length
    if not sizes:
        raise ConfigurationError(f"Chromosome sizes file {path} is empty.")
    return sizes


def resolve_chrom_sizes(
    selection: Optional[str],
    bam_paths: Sequence[str | Path],
) -> Dict[str, int]:
    """Resolve the chromosomes to process.

    ``selection`` is either a ``.chrom.sizes`` file, a ``|``-separated list of names
    looked up in the BAM headers, or None for every chromosome in the headers.
    """
    if selection is not None and selection.endswith(CHROM_SIZES_SUFFIX):
        if not Path(selection).is_file() or Path(selection).stat().st_size == 0:
            raise ConfigurationError(f"Chromosome sizes file is missing or empty: {selection}")
        return read_chrom_sizes(selection)

    header_sizes = chrom_sizes_from_bams(bam_paths)
    if selection is None:
        if not header_sizes:
            raise ConfigurationError("No @SQ entries found in the BAM headers.")
        logger.info("No chromosome list given; using all %d chromosomes in the BAM header", len(header_sizes))
        return header_sizes

    names = [c for c in selection.split("|") if c]
    if not names:
        raise ConfigurationError(f"Empty chromosome list: {selection!r}")
    missing = [c for c in names if c not in header_sizes]
    if missing:
        raise ConfigurationError(f"Chromosomes not present in BAM headers: {', '.join(missing)}")
    return {c: header_sizes[c] for c in names}


def diploid_chrom_sizes(sizes: Dict[str, int]) -> List[Tuple[str, int]]:
    out: List[Tuple[str, int]] = []
    for chrom, length in sizes.items():
        out.append((tag_chrom(chrom, HOMOLOG_REF), length))
        out.append((tag_chrom(chrom, HOMOLOG_ALT), length))
    return out


def write_chrom_sizes(
    sizes: Dict[str, int],
    path: str | Path,
    *,
    merge_homologs: bool = False,
) -> Path:
    """Write the listing handed to the matrix builder / track serializer."""
    entries: Iterable[Tuple[str, int]] = (
        diploid_chrom_sizes(sizes) if merge_homologs else sizes.items()
    )
    path = Path(path)
    with open(path, "wt", encoding="utf-8") as fh:
        for chrom, length in entries:
            fh.write(f"{chrom}\t{length}\n")
    return path
