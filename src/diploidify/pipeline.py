"""Stage sequencing for ``diploidify run``: prep -> hic -> dhs -> cleanup."""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pysam
from tqdm import tqdm

from . import __version__
from .accessibility import admitted_junction_types, detect_platform
from .config import RunConfig
from .driver import (
    STAGE_DHS,
    STAGE_HIC,
    DhsTask,
    HicTask,
    bedgraph_line_key,
    concatenate_files,
    contact_line_key,
    merge_sorted_files,
    run_chromosome_tasks,
    run_dhs_task,
    run_hic_task,
)
from .errors import ConfigurationError, UpstreamArtifactError
from .external import build_hic, bedgraph_to_bigwig
from .homologs import homolog_of, output_chrom, resolve_chrom_sizes, write_chrom_sizes
from .models import HOMOLOGS, ChromosomeResult
from .phase_index import load_phase_index, load_phased_vcf, write_phase_set
from .plotting import plot_accessibility_totals, plot_homolog_assignments
from .report import render_report
from .tags import JUNCTION_TYPE_TAG, VALID_JUNCTION_TYPES
from .utils import ensure_outdir, is_nonempty_file, which, write_json
from .validation import check_contig_overlap, check_vcf_index, vcf_contigs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunPaths:
    outdir: Path

    @property
    def sorted_bam(self) -> Path:
        return self.outdir / "reads.sorted.bam"

    @property
    def sorted_bai(self) -> Path:
        return self.outdir / "reads.sorted.bam.bai"

    @property
    def workdir(self) -> Path:
        return self.outdir / "work"

    @property
    def psf(self) -> Path:
        return self.outdir / "out.psf"

    @property
    def reads_to_homologs(self) -> Path:
        return self.outdir / "reads_to_homologs.txt"

    @property
    def mnd(self) -> Path:
        return self.outdir / "diploid.mnd.txt"

    @property
    def raw_bedgraph(self) -> Path:
        return self.outdir / "diploid_raw.bedgraph"

    @property
    def corrected_bedgraph(self) -> Path:
        return self.outdir / "diploid_corrected.bedgraph"

    @property
    def chrom_sizes(self) -> Path:
        return self.outdir / "chrom.sizes"

    @property
    def diploid_chrom_sizes(self) -> Path:
        return self.outdir / "diploid.chrom.sizes"

    def joblog(self, stage: str) -> Path:
        return self.outdir / "logs" / f"{stage}.joblog"


# -----------------
# prep
# -----------------

def _merged_header(bam_paths: Sequence[str]) -> Dict[str, Any]:
    """Header of the first BAM with read groups of all; @SQ lists must agree."""
    header: Optional[Dict[str, Any]] = None
    refs: Optional[List[tuple]] = None
    rg_ids = set()
    for path in bam_paths:
        with pysam.AlignmentFile(path, "rb") as bam:
            h = bam.header.to_dict()
            these = list(zip(bam.references, bam.lengths))
        if header is None:
            header = {k: v for k, v in h.items() if k != "PG"}
            header.setdefault("RG", [])
            refs = these
            rg_ids = {rg.get("ID") for rg in header["RG"]}
            continue
        if these != refs:
            raise ConfigurationError(f"@SQ entries of {path} differ from {bam_paths[0]}; cannot merge.")
        for rg in h.get("RG", []):
            if rg.get("ID") not in rg_ids:
                header["RG"].append(rg)
                rg_ids.add(rg.get("ID"))
    assert header is not None
    if not header["RG"]:
        del header["RG"]
    return header


def keep_for_prep(read: pysam.AlignedSegment, mapq: int) -> bool:
    """Unique, non-duplicate alignments with a valid junction type."""
    if read.is_duplicate or read.mapping_quality < mapq:
        return False
    if not read.has_tag(JUNCTION_TYPE_TAG):
        return False
    try:
        return int(read.get_tag(JUNCTION_TYPE_TAG)) in VALID_JUNCTION_TYPES
    except (TypeError, ValueError):
        return False


def stage_prep(cfg: RunConfig, paths: RunPaths) -> Dict[str, int]:
    logger.info("...Extracting unique paired alignments from bams and sorting...")
    header = _merged_header(cfg.bams)
    unsorted = paths.outdir / "reads.unsorted.bam"
    counts = {"alignments_in": 0, "alignments_kept": 0}

    with pysam.AlignmentFile(str(unsorted), "wb", header=header) as out:
        for bam_path in cfg.bams:
            with pysam.AlignmentFile(bam_path, "rb") as bam:
                it = bam.fetch(until_eof=True)
                if cfg.progress:
                    it = tqdm(it, unit="read", desc=f"Filtering {Path(bam_path).name}")
                for read in it:
                    counts["alignments_in"] += 1
                    if keep_for_prep(read, cfg.mapq):
                        out.write(read)
                        counts["alignments_kept"] += 1

    pysam.sort("-@", str(cfg.threads), "-o", str(paths.sorted_bam), str(unsorted))
    unsorted.unlink()
    pysam.index(str(paths.sorted_bam))
    logger.info(
        ":) Done extracting unique paired alignments (%d of %d kept).",
        counts["alignments_kept"],
        counts["alignments_in"],
    )
    return counts


# -----------------
# hic
# -----------------

def _require_artifacts(*artifacts: Path) -> None:
    missing = [str(p) for p in artifacts if not is_nonempty_file(p)]
    if missing:
        raise UpstreamArtifactError(
            "Files from previous stages of the pipeline appear to be missing or empty: "
            + ", ".join(missing)
        )


def _check_chroms_in_bam(bam_path: Path, chroms: Sequence[str]) -> None:
    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        present = set(bam.references)
    missing = [c for c in chroms if c not in present]
    if missing:
        raise ConfigurationError(f"Chromosomes not present in {bam_path}: {', '.join(missing)}")


def split_homologs(
    in_path: Path,
    out_paths: Dict[str, Path],
    chrom_fields: Sequence[int],
) -> Dict[str, int]:
    """Route lines to one file per homolog, trimming the suffix from chrom fields."""
    counts = {label: 0 for label in out_paths}
    handles = {label: open(p, "wt", encoding="utf-8") for label, p in out_paths.items()}
    try:
        with open(in_path, "rt", encoding="utf-8") as fh:
            for line in fh:
                fields = line.rstrip("\n").split("\t")
                label = homolog_of(fields[chrom_fields[0]])
                if label not in handles:
                    continue
                for i in chrom_fields:
                    fields[i] = output_chrom(fields[i], merge_homologs=False)
                handles[label].write("\t".join(fields) + "\n")
                counts[label] += 1
    finally:
        for h in handles.values():
            h.close()
    return counts


def stage_hic(
    cfg: RunConfig,
    paths: RunPaths,
    chrom_sizes: Dict[str, int],
) -> List[ChromosomeResult]:
    logger.info("...Building diploid contact maps from reads overlapping phased SNPs...")
    _require_artifacts(paths.sorted_bam, paths.sorted_bai)
    chroms = list(chrom_sizes)
    _check_chroms_in_bam(paths.sorted_bam, chroms)

    reads_to_homologs = cfg.reads_to_homologs
    index_by_chrom = {}
    if reads_to_homologs is None:
        psf = cfg.psf
        if psf is None:
            logger.info("  ... Parsing vcf...")
            check_vcf_index(cfg.vcf)
            check_contig_overlap(vcf_contigs(cfg.vcf), chroms)
            loci, stats = load_phased_vcf(
                cfg.vcf, sample=cfg.sample, chroms=chroms, require_pass=cfg.require_pass
            )
            write_phase_set(loci, paths.psf)
            logger.info("  ... :) Done parsing vcf (%d phased loci)!", stats["loci_kept"])
            psf = str(paths.psf)
        index_by_chrom = load_phase_index(psf_path=psf, chroms=chroms)

    tasks = [
        HicTask(
            chrom=chrom,
            bam_path=str(paths.sorted_bam),
            workdir=str(paths.workdir),
            phase_index=index_by_chrom.get(chrom),
            reads_to_homologs=reads_to_homologs,
            min_baseq=cfg.min_baseq,
        )
        for chrom in chroms
    ]
    results = run_chromosome_tasks(
        STAGE_HIC,
        run_hic_task,
        tasks,
        workers=cfg.threads,
        joblog_path=paths.joblog(STAGE_HIC),
        progress=cfg.progress,
    )

    if reads_to_homologs is None:
        concatenate_files([r.outputs["reads_to_homologs"] for r in results], paths.reads_to_homologs)

    n = merge_sorted_files([r.outputs["mnd"] for r in results], paths.mnd, key=contact_line_key)
    logger.info("Wrote %d diploid contact records to %s", n, paths.mnd)

    if cfg.merge_homologs:
        targets = {"": (paths.mnd, paths.diploid_chrom_sizes)}
    else:
        split = {label: paths.outdir / f"diploid_{label}.mnd.txt" for label in HOMOLOGS}
        split_homologs(paths.mnd, split, chrom_fields=(1, 5))
        targets = {f"_{label}": (split[label], paths.chrom_sizes) for label in HOMOLOGS}

    if cfg.juicer_dir is not None:
        for suffix, (mnd, sizes) in targets.items():
            build_hic(
                juicer_dir=cfg.juicer_dir,
                mnd_path=mnd,
                chrom_sizes=sizes,
                out_hic=paths.outdir / f"diploid_inter{suffix}.hic",
                resolutions=cfg.resolutions,
            )
    else:
        logger.info("No --juicer-dir given; skipping .hic construction.")

    logger.info(":) Done building diploid contact maps from reads overlapping phased SNPs.")
    return results


# -----------------
# dhs
# -----------------

def stage_dhs(
    cfg: RunConfig,
    paths: RunPaths,
    chrom_sizes: Dict[str, int],
) -> List[ChromosomeResult]:
    logger.info("...Building diploid accessibility tracks from reads overlapping phased SNPs...")
    reads_to_homologs = Path(cfg.reads_to_homologs or paths.reads_to_homologs)
    _require_artifacts(paths.sorted_bam, paths.sorted_bai, reads_to_homologs)
    chroms = list(chrom_sizes)
    _check_chroms_in_bam(paths.sorted_bam, chroms)

    platform = cfg.platform or detect_platform(paths.sorted_bam)
    admitted = admitted_junction_types(platform)
    logger.info("Platform %s: corrected track uses junction types %s", platform, sorted(admitted))

    tasks = [
        DhsTask(
            chrom=chrom,
            bam_path=str(paths.sorted_bam),
            workdir=str(paths.workdir),
            reads_to_homologs=str(reads_to_homologs),
            admitted=admitted,
        )
        for chrom in chroms
    ]
    results = run_chromosome_tasks(
        STAGE_DHS,
        run_dhs_task,
        tasks,
        workers=cfg.threads,
        joblog_path=paths.joblog(STAGE_DHS),
        progress=cfg.progress,
    )

    tracks = {"raw": paths.raw_bedgraph, "corrected": paths.corrected_bedgraph}
    for kind, out in tracks.items():
        merge_sorted_files([r.outputs[kind] for r in results], out, key=bedgraph_line_key)

    bigwig = which("bedGraphToBigWig") is not None
    if not bigwig:
        logger.info("bedGraphToBigWig not found in PATH; skipping bigWig construction.")

    for kind, bedgraph in tracks.items():
        if cfg.merge_homologs:
            if bigwig:
                bedgraph_to_bigwig(
                    bedgraph, paths.diploid_chrom_sizes, paths.outdir / f"diploid_inter_{kind}.bw"
                )
            continue
        split = {label: paths.outdir / f"diploid_{kind}_{label}.bedgraph" for label in HOMOLOGS}
        split_homologs(bedgraph, split, chrom_fields=(0,))
        if bigwig:
            for label, path in split.items():
                bedgraph_to_bigwig(
                    path, paths.chrom_sizes, paths.outdir / f"diploid_inter_{kind}_{label}.bw"
                )

    logger.info(":) Done building diploid accessibility tracks from reads overlapping phased SNPs.")
    return results


def stage_cleanup(paths: RunPaths) -> None:
    logger.info("...Starting cleanup...")
    shutil.rmtree(paths.workdir, ignore_errors=True)
    logger.info(":) Done with cleanup.")


# -----------------
# driver
# -----------------

def _totals(results: List[ChromosomeResult]) -> Dict[str, int]:
    totals: Dict[str, int] = {}
    for r in results:
        for k, v in r.counts.items():
            totals[k] = totals.get(k, 0) + int(v)
    return totals


def write_run_report(paths: RunPaths, summary: Dict[str, Any]) -> Path:
    plots_dir = paths.outdir / "plots"
    plots: Dict[str, str] = {}
    hic = summary["stages"].get(STAGE_HIC)
    if hic:
        png = plots_dir / "homolog_assignments.png"
        plot_homolog_assignments(chromosomes=hic["chromosomes"], out_png=png)
        plots["homolog_assignments"] = str(Path("plots") / png.name)
    dhs = summary["stages"].get(STAGE_DHS)
    if dhs:
        png = plots_dir / "accessibility_totals.png"
        plot_accessibility_totals(totals=dhs["totals"], out_png=png)
        plots["accessibility_totals"] = str(Path("plots") / png.name)
    return render_report(outdir=paths.outdir, version=__version__, summary=summary, plots=plots)


def run_pipeline(cfg: RunConfig) -> Dict[str, Any]:
    """Run the requested stage range and return the run summary.

    Stops at the first failing stage; nothing after it runs.
    """
    t0 = time.time()
    cfg.validate()
    paths = RunPaths(ensure_outdir(Path(cfg.outdir).expanduser().resolve()))
    ensure_outdir(paths.workdir)
    ensure_outdir(paths.outdir / "logs")

    summary: Dict[str, Any] = {
        "version": __version__,
        "config": asdict(cfg),
        "stages": {},
    }

    if cfg.stage_enabled("prep"):
        summary["stages"]["prep"] = stage_prep(cfg, paths)
        if cfg.to_stage == "prep":
            logger.info("Done with the requested workflow. Exiting after prepping bam!")

    if cfg.stage_enabled(STAGE_HIC) or cfg.stage_enabled(STAGE_DHS):
        _require_artifacts(paths.sorted_bam, paths.sorted_bai)
        chrom_sizes = resolve_chrom_sizes(cfg.chrom_sizes, [str(paths.sorted_bam)])
        write_chrom_sizes(chrom_sizes, paths.chrom_sizes)
        if cfg.merge_homologs:
            write_chrom_sizes(chrom_sizes, paths.diploid_chrom_sizes, merge_homologs=True)

        for stage, fn in ((STAGE_HIC, stage_hic), (STAGE_DHS, stage_dhs)):
            if not cfg.stage_enabled(stage):
                continue
            results = fn(cfg, paths, chrom_sizes)
            summary["stages"][stage] = {
                "totals": _totals(results),
                "chromosomes": [asdict(r) for r in results],
            }
            if cfg.to_stage == stage:
                logger.info("Done with the requested workflow. Exiting after stage %s!", stage)

    if cfg.stage_enabled("cleanup"):
        stage_cleanup(paths)

    summary["runtime_seconds"] = float(time.time() - t0)
    write_json(paths.outdir / "summary.json", summary)
    report = write_run_report(paths, summary)
    logger.info("Report written: %s", report)
    return summary
