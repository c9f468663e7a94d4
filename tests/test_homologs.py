from pathlib import Path

import pysam
import pytest

from diploidify.errors import ConfigurationError
from diploidify.homologs import (
    chrom_sizes_from_bams,
    homolog_of,
    output_chrom,
    read_chrom_sizes,
    resolve_chrom_sizes,
    split_tagged,
    tag_chrom,
    write_chrom_sizes,
)


def _empty_bam(path: Path, sq: list) -> str:
    header = {"HD": {"VN": "1.6"}, "SQ": [{"SN": n, "LN": l} for n, l in sq]}
    with pysam.AlignmentFile(str(path), "wb", header=header):
        pass
    return str(path)


def test_tagging_and_stripping():
    assert tag_chrom("chr1", "r") == "chr1-r"
    assert tag_chrom("chrX", "a") == "chrX-a"
    assert split_tagged("chr1-a") == ("chr1", "a")
    assert homolog_of("chr1-r") == "r"
    assert homolog_of("chr1") is None
    assert output_chrom("chr10-a", merge_homologs=False) == "chr10"
    assert output_chrom("chr10-a", merge_homologs=True) == "chr10-a"

    with pytest.raises(ValueError):
        tag_chrom("chr1", "u")
    with pytest.raises(ValueError):
        split_tagged("chr1")


def test_resolve_chrom_sizes_from_header_list_and_file(tmp_path: Path):
    bam = _empty_bam(tmp_path / "x.bam", [("chr1", 1000), ("chr2", 500), ("chrM", 16)])

    assert resolve_chrom_sizes(None, [bam]) == {"chr1": 1000, "chr2": 500, "chrM": 16}
    assert resolve_chrom_sizes("chr2|chr1", [bam]) == {"chr2": 500, "chr1": 1000}
    with pytest.raises(ConfigurationError, match="chr9"):
        resolve_chrom_sizes("chr1|chr9", [bam])

    sizes = tmp_path / "hg.chrom.sizes"
    sizes.write_text("chr1\t1000\n\nchr2 500\n", encoding="utf-8")
    assert resolve_chrom_sizes(str(sizes), [bam]) == {"chr1": 1000, "chr2": 500}

    with pytest.raises(ConfigurationError):
        resolve_chrom_sizes(str(tmp_path / "missing.chrom.sizes"), [bam])


def test_malformed_chrom_sizes_file(tmp_path: Path):
    bad = tmp_path / "bad.chrom.sizes"
    bad.write_text("chr1\tlots\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        read_chrom_sizes(bad)


def test_conflicting_header_lengths(tmp_path: Path):
    a = _empty_bam(tmp_path / "a.bam", [("chr1", 1000)])
    b = _empty_bam(tmp_path / "b.bam", [("chr1", 999)])
    with pytest.raises(ConfigurationError):
        chrom_sizes_from_bams([a, b])


def test_chrom_sizes_listing_per_mode(tmp_path: Path):
    sizes = {"chr1": 1000, "chr2": 500}
    plain = write_chrom_sizes(sizes, tmp_path / "chrom.sizes")
    merged = write_chrom_sizes(sizes, tmp_path / "diploid.chrom.sizes", merge_homologs=True)

    assert plain.read_text(encoding="utf-8").splitlines() == ["chr1\t1000", "chr2\t500"]
    assert merged.read_text(encoding="utf-8").splitlines() == [
        "chr1-r\t1000",
        "chr1-a\t1000",
        "chr2-r\t500",
        "chr2-a\t500",
    ]
