from pathlib import Path

import pysam
import pytest

from diploidify.errors import ConfigurationError
from diploidify.models import PhaseLocus
from diploidify.phase_index import (
    build_phase_index,
    load_phase_index,
    load_phase_set,
    load_phased_vcf,
    write_phase_set,
)


def _write_vcf(path: Path, records: list, contigs=("chr1", "chr2")) -> Path:
    """records: (chrom, pos1, alleles, gt, phased, filter)"""
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.add_sample("S1")
    for c in contigs:
        header.contigs.add(c, length=10_000)
    header.filters.add("LowQual", None, None, "Low quality")
    header.formats.add("GT", number=1, type="String", description="Genotype")

    vcf_path = path / "phased.vcf"
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        for chrom, pos1, alleles, gt, phased, filt in records:
            rec = vcf.new_record(
                contig=chrom,
                start=pos1 - 1,
                stop=pos1 - 1 + len(alleles[0]),
                alleles=alleles,
                qual=60,
                filter=filt,
            )
            rec.samples[0]["GT"] = gt
            rec.samples[0].phased = phased
            vcf.write(rec)
    return vcf_path


def test_load_phased_vcf_keeps_phased_het_snvs(tmp_path: Path) -> None:
    vcf = _write_vcf(
        tmp_path,
        [
            ("chr1", 1000, ("A", "G"), (0, 1), True, "PASS"),
            ("chr1", 1100, ("C", "T"), (1, 0), True, "PASS"),
            ("chr1", 1200, ("C", "T"), (0, 1), False, "PASS"),
            ("chr1", 1300, ("C", "T"), (1, 1), True, "PASS"),
            ("chr1", 1400, ("CA", "C"), (0, 1), True, "PASS"),
            ("chr1", 1500, ("G", "A"), (0, 1), True, "LowQual"),
        ],
    )
    loci, stats = load_phased_vcf(vcf)

    assert [(x.pos0, x.ref_allele, x.alt_allele) for x in loci] == [
        (999, "A", "G"),
        (1099, "T", "C"),  # 1|0: first haplotype carries ALT
    ]
    assert stats["skipped_unphased"] == 1
    assert stats["skipped_homozygous"] == 1
    assert stats["skipped_non_snv"] == 1
    assert stats["skipped_filter"] == 1


def test_load_phased_vcf_filter_can_be_relaxed(tmp_path: Path) -> None:
    vcf = _write_vcf(tmp_path, [("chr1", 1500, ("G", "A"), (0, 1), True, "LowQual")])
    with pytest.raises(ConfigurationError):
        load_phased_vcf(vcf)
    loci, _ = load_phased_vcf(vcf, require_pass=False)
    assert len(loci) == 1


def test_load_phased_vcf_restricts_chroms_and_checks_sample(tmp_path: Path) -> None:
    vcf = _write_vcf(
        tmp_path,
        [
            ("chr1", 1000, ("A", "G"), (0, 1), True, "PASS"),
            ("chr2", 1000, ("A", "G"), (0, 1), True, "PASS"),
        ],
    )
    loci, stats = load_phased_vcf(vcf, chroms=["chr2"])
    assert [x.chrom for x in loci] == ["chr2"]
    assert stats["skipped_chrom"] == 1

    with pytest.raises(ConfigurationError, match="not found"):
        load_phased_vcf(vcf, sample="NOPE")


def test_phase_set_file_round_trip(tmp_path: Path) -> None:
    loci = [
        PhaseLocus(chrom="chr1", pos0=999, ref_allele="A", alt_allele="G"),
        PhaseLocus(chrom="chr2", pos0=9, ref_allele="T", alt_allele="C"),
    ]
    psf = tmp_path / "out.psf"
    assert write_phase_set(loci, psf) == 2

    back = load_phase_set(psf)
    assert [(x.chrom, x.pos0, x.ref_allele, x.alt_allele) for x in back] == [
        ("chr1", 999, "A", "G"),
        ("chr2", 9, "T", "C"),
    ]
    assert [x.chrom for x in load_phase_set(psf, chroms={"chr2"})] == ["chr2"]


@pytest.mark.parametrize(
    "content",
    [
        "chr1\t1000\tA\n",
        "chr1\tabc\tA\tG\n",
        "chr1\t1000\tA\tA\n",
        "chr1\t1000\tAT\tG\n",
        "# header only\n",
    ],
)
def test_malformed_or_empty_phase_set_is_rejected(tmp_path: Path, content: str) -> None:
    psf = tmp_path / "bad.psf"
    psf.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_phase_set(psf)


def test_build_phase_index_handles_duplicates(caplog) -> None:
    loci = [
        PhaseLocus(chrom="chr1", pos0=300, ref_allele="A", alt_allele="G"),
        PhaseLocus(chrom="chr1", pos0=100, ref_allele="C", alt_allele="T"),
        PhaseLocus(chrom="chr1", pos0=100, ref_allele="C", alt_allele="T"),
        PhaseLocus(chrom="chr1", pos0=200, ref_allele="A", alt_allele="G"),
        PhaseLocus(chrom="chr1", pos0=200, ref_allele="G", alt_allele="A"),
    ]
    index = build_phase_index(loci)["chr1"]

    assert index.positions == [100, 300]
    assert index.get(200) is None
    assert index.get(100).ref_allele == "C"
    assert "conflicting duplicate" in caplog.text


def test_loci_in_span_is_half_open() -> None:
    loci = [PhaseLocus(chrom="chr1", pos0=p, ref_allele="A", alt_allele="G") for p in (10, 20, 30)]
    index = build_phase_index(loci)["chr1"]

    positions, found = index.loci_in_span(10, 30)
    assert positions == [10, 20]
    assert [x.pos0 for x in found] == [10, 20]
    assert index.loci_in_span(31, 100) == ([], [])


def test_load_phase_index_requires_an_input() -> None:
    with pytest.raises(ConfigurationError):
        load_phase_index()


def test_phase_locus_homolog_for_base() -> None:
    locus = PhaseLocus(chrom="chr1", pos0=999, ref_allele="A", alt_allele="G")
    assert locus.homolog_for_base("a") == "r"
    assert locus.homolog_for_base("G") == "a"
    assert locus.homolog_for_base("T") is None
