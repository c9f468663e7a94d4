from collections import Counter
from pathlib import Path
from typing import List

import pysam
import pytest

from diploidify.accessibility import (
    PLATFORM_454,
    PLATFORM_ILLUMINA,
    admitted_junction_types,
    aggregate_accessibility,
    detect_platform,
    normalize_platform,
    write_bedgraph,
)
from diploidify.classifier import AssignmentTable
from diploidify.errors import ConfigurationError

HEADER = pysam.AlignmentHeader.from_dict({"HD": {"VN": "1.6"}, "SQ": [{"SN": "chr1", "LN": 5000}]})

ILLUMINA = admitted_junction_types(PLATFORM_ILLUMINA)


def make_aln(name: str, ip: int, rt: int) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment(HEADER)
    a.query_name = name
    a.query_sequence = "A" * 20
    a.flag = 0
    a.reference_id = 0
    a.reference_start = ip - 1
    a.mapping_quality = 60
    a.cigartuples = [(0, 20)]
    a.set_tag("ip", ip)
    a.set_tag("rt", rt)
    return a


def test_junction_type_outside_platform_counts_raw_only():
    table = AssignmentTable("chr1")
    table.observe("q", "r", 1)  # partner 0
    raw, corrected = aggregate_accessibility([make_aln("q", 500, 0)], table, ILLUMINA)
    assert raw == Counter({("chr1-r", 500): 1})
    assert corrected == Counter()


def test_partner_junction_type_counts_corrected():
    table = AssignmentTable("chr1")
    table.observe("q", "a", 2)  # partner 3
    reads = [make_aln("q", 500, 3), make_aln("q", 900, 2)]
    counts = {}
    raw, corrected = aggregate_accessibility(reads, table, ILLUMINA, counts)
    assert raw == Counter({("chr1-a", 500): 1, ("chr1-a", 900): 1})
    assert corrected == Counter({("chr1-a", 500): 1})
    assert counts["alignments_counted"] == 2
    assert counts["alignments_corrected"] == 1


def test_unlabelled_reads_contribute_nothing():
    table = AssignmentTable("chr1")
    table.observe("x", "r", 2)
    table.observe("x", "a", 2)
    raw, corrected = aggregate_accessibility([make_aln("x", 10, 3), make_aln("y", 10, 3)], table, ILLUMINA)
    assert not raw and not corrected


def test_raw_is_never_below_corrected():
    table = AssignmentTable("chr1")
    reads: List[pysam.AlignedSegment] = []
    for i in range(30):
        name = f"q{i}"
        table.observe(name, "r" if i % 3 else "a", i % 6)
        for j in range(3):
            reads.append(make_aln(name, 100 + (i * j) % 7, (i + j) % 6))
    for platform in (PLATFORM_ILLUMINA, PLATFORM_454):
        raw, corrected = aggregate_accessibility(reads, table, admitted_junction_types(platform))
        assert corrected
        for key, n in corrected.items():
            assert raw[key] >= n


def test_platform_aliases_and_admitted_sets():
    assert normalize_platform("ILM") == PLATFORM_ILLUMINA
    assert normalize_platform("Illumina") == PLATFORM_ILLUMINA
    assert normalize_platform("LS454") == PLATFORM_454
    assert admitted_junction_types("ILLUMINA") == frozenset({2, 3, 4, 5})
    assert admitted_junction_types("LS454") == frozenset({0, 1})
    with pytest.raises(ConfigurationError):
        admitted_junction_types("PACBIO")


def _bam_with_read_groups(path: Path, platforms: List[str]) -> Path:
    header = {
        "HD": {"VN": "1.6"},
        "SQ": [{"SN": "chr1", "LN": 5000}],
        "RG": [{"ID": f"rg{i}", "SM": "s", "PL": pl} for i, pl in enumerate(platforms)],
    }
    with pysam.AlignmentFile(str(path), "wb", header=header):
        pass
    return path


def test_detect_platform_from_read_groups(tmp_path: Path):
    bam = _bam_with_read_groups(tmp_path / "ilm.bam", ["ILM", "ILLUMINA"])
    assert detect_platform(bam) == PLATFORM_ILLUMINA

    mixed = _bam_with_read_groups(tmp_path / "mixed.bam", ["ILLUMINA", "LS454"])
    with pytest.raises(ConfigurationError, match="mixed"):
        detect_platform(mixed)

    unknown = _bam_with_read_groups(tmp_path / "unknown.bam", ["ONT"])
    with pytest.raises(ConfigurationError):
        detect_platform(unknown)


def test_bedgraph_intervals_and_order(tmp_path: Path):
    counter = Counter({("chr1-r", 100): 2, ("chr1-r", 20): 1, ("chr1-a", 5): 4})
    out = tmp_path / "track.bedgraph"
    assert write_bedgraph(counter, out) == 3
    assert out.read_text(encoding="utf-8").splitlines() == [
        "chr1-a\t4\t5\t4",
        "chr1-r\t19\t20\t1",
        "chr1-r\t99\t100\t2",
    ]
