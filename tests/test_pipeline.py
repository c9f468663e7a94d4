import json
from collections import Counter
from pathlib import Path

import pysam
import pytest

from diploidify.config import RunConfig
from diploidify.driver import joblog_failures
from diploidify.errors import ChromosomeTaskError, ConfigurationError, UpstreamArtifactError
from diploidify.pipeline import run_pipeline
from diploidify.toy_data import make_toy_data


def _config(toy: dict, outdir: Path, **kw) -> RunConfig:
    base = dict(bams=[toy["bam"]], outdir=str(outdir), vcf=toy["phased_vcf"], threads=1)
    base.update(kw)
    return RunConfig(**base)


def _bedgraph(path: Path) -> Counter:
    out: Counter = Counter()
    for line in path.read_text(encoding="utf-8").splitlines():
        chrom, _start, end, n = line.split("\t")
        out[(chrom, int(end))] = int(n)
    return out


def _assignments(path: Path) -> dict:
    out = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        name, tagged, _rt = line.split("\t")
        out[name] = tagged
    return out


@pytest.fixture(scope="module")
def separated_run(tmp_path_factory):
    root = tmp_path_factory.mktemp("pipeline")
    toy = make_toy_data(outdir=root / "toy")
    outdir = root / "out"
    summary = run_pipeline(_config(toy, outdir))
    return outdir, summary


def test_prep_filters_and_sorts(separated_run):
    outdir, summary = separated_run
    prep = summary["stages"]["prep"]
    # dup, lowq and badrt pairs are removed
    assert prep["alignments_in"] - prep["alignments_kept"] == 6
    with pysam.AlignmentFile(str(outdir / "reads.sorted.bam"), "rb") as bam:
        names = {r.query_name for r in bam.fetch(until_eof=True)}
    assert not any(n.startswith(("dup_", "lowq_", "badrt_")) for n in names)


def test_read_assignments(separated_run):
    outdir, summary = separated_run
    labels = _assignments(outdir / "reads_to_homologs.txt")

    assert labels["ref_chr1_1"] == "chr1-r"
    assert labels["both_chr1"] == "chr1-r"
    assert labels["alt_chr1_2"] == "chr1-a"
    assert labels["alt_chr2_0"] == "chr2-a"
    assert "conflict_chr1" not in labels
    assert "none_chr1" not in labels
    assert len(labels) == 11
    assert summary["stages"]["hic"]["totals"]["conflicts"] == 1
    assert (outdir / "out.psf").exists()


def test_contact_outputs(separated_run):
    outdir, summary = separated_run
    lines = (outdir / "diploid.mnd.txt").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 11 == summary["stages"]["hic"]["totals"]["contacts"]

    fields = [line.split("\t") for line in lines]
    assert all(f[1].endswith(("-r", "-a")) and f[1] == f[5] for f in fields)
    keys = [(f[1], int(f[2]), f[5], int(f[6])) for f in fields]
    assert keys == sorted(keys)

    r_lines = (outdir / "diploid_r.mnd.txt").read_text(encoding="utf-8").splitlines()
    a_lines = (outdir / "diploid_a.mnd.txt").read_text(encoding="utf-8").splitlines()
    assert len(r_lines) == 6 and len(a_lines) == 5
    assert {line.split("\t")[1] for line in r_lines + a_lines} == {"chr1", "chr2"}
    assert (outdir / "chrom.sizes").read_text(encoding="utf-8").splitlines() == [
        "chr1\t2000",
        "chr2\t1500",
    ]


def test_accessibility_outputs(separated_run):
    outdir, summary = separated_run
    raw = _bedgraph(outdir / "diploid_raw.bedgraph")
    corrected = _bedgraph(outdir / "diploid_corrected.bedgraph")

    assert sum(raw.values()) == 22
    assert all(raw[key] >= n for key, n in corrected.items())
    # ref_chr1_0 carries junction types 0/1: raw signal only
    assert raw[("chr1-r", 981)] == 1
    assert ("chr1-r", 981) not in corrected
    assert summary["stages"]["dhs"]["totals"]["alignments_corrected"] == sum(corrected.values())

    for kind in ("raw", "corrected"):
        for label in ("r", "a"):
            assert (outdir / f"diploid_{kind}_{label}.bedgraph").exists()


def test_run_artifacts(separated_run):
    outdir, _ = separated_run
    assert not (outdir / "work").exists()
    assert (outdir / "report.html").exists()
    assert (outdir / "plots" / "homolog_assignments.png").exists()
    assert joblog_failures(outdir / "logs" / "hic.joblog") == []
    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert [c["chrom"] for c in summary["stages"]["hic"]["chromosomes"]] == ["chr1", "chr2"]


def test_merged_homologs_from_precomputed_table(tmp_path: Path, separated_run):
    prev_outdir, _ = separated_run
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "merged"

    run_pipeline(_config(toy, outdir, to_stage="prep"))
    assert (outdir / "reads.sorted.bam").exists()
    assert not (outdir / "diploid.mnd.txt").exists()

    run_pipeline(
        _config(
            toy,
            outdir,
            bams=[],
            vcf=None,
            reads_to_homologs=str(prev_outdir / "reads_to_homologs.txt"),
            from_stage="hic",
            merge_homologs=True,
            chrom_sizes="chr1",
        )
    )
    lines = (outdir / "diploid.mnd.txt").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 7
    assert not (outdir / "diploid_r.mnd.txt").exists()
    assert (outdir / "diploid.chrom.sizes").read_text(encoding="utf-8").splitlines() == [
        "chr1-r\t2000",
        "chr1-a\t2000",
    ]


def test_dhs_requires_reads_to_homologs(tmp_path: Path):
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "out"
    run_pipeline(_config(toy, outdir, to_stage="prep"))
    with pytest.raises(UpstreamArtifactError):
        run_pipeline(_config(toy, outdir, bams=[], from_stage="dhs"))


def test_missing_insertion_point_fails_the_chromosome(tmp_path: Path):
    toy = make_toy_data(outdir=tmp_path / "toy")
    broken = tmp_path / "broken.bam"
    with pysam.AlignmentFile(toy["bam"], "rb") as src:
        with pysam.AlignmentFile(str(broken), "wb", template=src) as dst:
            for read in src.fetch(until_eof=True):
                if read.query_name == "ref_chr1_1":
                    read.set_tag("ip", None)
                dst.write(read)

    with pytest.raises(ChromosomeTaskError) as excinfo:
        run_pipeline(_config(toy, tmp_path / "out", bams=[str(broken)]))
    assert (excinfo.value.stage, excinfo.value.chrom) == ("hic", "chr1")


@pytest.mark.parametrize(
    "overrides",
    [
        dict(vcf=None),
        dict(from_stage="dhs", to_stage="hic"),
        dict(platform="PACBIO"),
        dict(threads=0),
        dict(resolutions="1000,abc"),
    ],
)
def test_invalid_configuration(tmp_path: Path, overrides: dict):
    toy = make_toy_data(outdir=tmp_path / "toy")
    with pytest.raises(ConfigurationError):
        run_pipeline(_config(toy, tmp_path / "out", **overrides))
