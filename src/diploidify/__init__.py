"""Diploidify: haplotype-resolved Hi-C contacts and accessibility tracks.

Public API is intentionally small; most users should use the CLI:

    diploidify run --vcf phased.vcf.gz --outdir results/ merged_dedup.bam

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
