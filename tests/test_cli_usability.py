import subprocess
import sys
from pathlib import Path

import pysam

from diploidify.toy_data import make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "diploidify"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def _make_small_vcf(path: Path, contig: str) -> Path:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.add_sample("S1")
    header.contigs.add(contig, length=2000)
    header.formats.add("GT", number=1, type="String", description="Genotype")

    vcf_path = path / "phased.vcf"
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        rec = vcf.new_record(
            contig=contig,
            start=999,
            stop=1000,
            alleles=("T", "G"),
            qual=60,
            filter="PASS",
        )
        rec.samples[0]["GT"] = (0, 1)
        rec.samples[0].phased = True
        vcf.write(rec)

    vcf_gz = path / "phased.vcf.gz"
    pysam.tabix_compress(str(vcf_path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)
    return vcf_gz


def test_quickstart_output() -> None:
    cp = _run_cli(["quickstart"])
    assert cp.returncode == 0
    assert "diploidify run" in cp.stdout
    assert "diploidify classify" in cp.stdout


def test_run_dry_run_does_not_write_outputs(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "run"
    cp = _run_cli([
        "run", toy["bam"], "--vcf", toy["phased_vcf"], "--outdir", str(outdir), "--dry-run"
    ])
    assert cp.returncode == 0
    assert "Dry-run" in cp.stdout
    assert "prep -> hic -> dhs -> cleanup" in cp.stdout
    assert not (outdir / "summary.json").exists()


def test_make_toy_data_and_run(tmp_path: Path) -> None:
    toy_dir = tmp_path / "toy"
    cp = _run_cli(["make-toy-data", "--outdir", str(toy_dir)])
    assert cp.returncode == 0

    outdir = tmp_path / "out"
    cp = _run_cli(
        [
            "run",
            str(toy_dir / "toy.bam"),
            "--vcf",
            str(toy_dir / "phased.vcf.gz"),
            "--outdir",
            str(outdir),
            "-t",
            "1",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    assert (outdir / "report.html").exists()
    assert (outdir / "diploid_r.mnd.txt").exists()
    assert (outdir / "logs" / "run.log").exists()


def test_classify_writes_assignments(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "classify"
    cp = _run_cli(["classify", "--bam", toy["bam"], "--vcf", toy["phased_vcf"], "--outdir", str(outdir)])
    assert cp.returncode == 0, cp.stderr

    names = {
        line.split("\t")[0]
        for line in (outdir / "reads_to_homologs.txt").read_text(encoding="utf-8").splitlines()
    }
    assert "ref_chr1_1" in names
    assert "conflict_chr1" not in names
    # classify reads the BAM as given, without the prep filters
    assert "dup_chr1" in names


def test_missing_phasing_input_message(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    cp = _run_cli(["run", toy["bam"], "--outdir", str(tmp_path / "out")])
    assert cp.returncode == 2
    assert "ConfigurationError" in cp.stderr
    assert "No phased input" in cp.stderr


def test_contig_mismatch_message(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    vcf_dir = tmp_path / "vcf"
    vcf_dir.mkdir()
    vcf_gz = _make_small_vcf(vcf_dir, contig="1")

    cp = _run_cli(
        [
            "run",
            toy["bam"],
            "--vcf",
            str(vcf_gz),
            "--outdir",
            str(tmp_path / "out"),
            "-t",
            "1",
        ]
    )
    assert cp.returncode == 2
    assert "Contig mismatch" in cp.stderr
    assert "See log:" in cp.stderr


def test_doctor_dry_run() -> None:
    cp = _run_cli(["doctor", "--dry-run"])
    assert cp.returncode == 0
    assert "python" in cp.stdout
    assert "bedGraphToBigWig" in cp.stdout
