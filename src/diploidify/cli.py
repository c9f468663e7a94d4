from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .classifier import classify_chromosome
from .config import DEFAULT_RESOLUTIONS, STAGES, RunConfig
from .doctor import collect_checks
from .driver import default_worker_count
from .errors import ConfigurationError
from .external import ExternalCommandError
from .homologs import resolve_chrom_sizes
from .phase_index import load_phase_index
from .pipeline import RunPaths, run_pipeline
from .toy_data import make_toy_data
from .utils import ensure_outdir, write_json
from .validation import check_bam_index, check_contig_overlap, check_vcf_index, vcf_contigs


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    if isinstance(err, ExternalCommandError):
        msg = str(err)
    else:
        msg = f"{err.__class__.__name__}: {err}"

    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _add_phasing_args(p: argparse.ArgumentParser, *, with_table: bool) -> None:
    p.add_argument("--vcf", default=None, help="Phased VCF (.vcf/.vcf.gz) with '|' genotypes.")
    p.add_argument("--psf", default=None, help="Phase-set file (.psf) written by a previous run.")
    if with_table:
        p.add_argument(
            "--reads-to-homologs",
            default=None,
            help="Precomputed reads_to_homologs.txt; skips classification.",
        )
    p.add_argument(
        "--sample",
        default=None,
        help="VCF sample name to use (default: first sample in VCF).",
    )
    p.add_argument(
        "--no-require-pass",
        action="store_true",
        help="Do not require FILTER=PASS for phased SNVs.",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="diploidify",
        description=(
            "Diploidify: split Hi-C / DNase Hi-C alignments into the two parental homologs "
            "using phased SNVs, and build diploid contact maps and accessibility tracks."
        ),
    )
    p.add_argument("--version", action="version", version=f"diploidify {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print 3 ready-to-run recipes for common scenarios.",
    )

    # -----------------
    # run
    # -----------------
    r = sub.add_parser(
        "run",
        help="Run the diploid pipeline (prep -> hic -> dhs -> cleanup) on tagged Hi-C BAMs.",
    )
    r.add_argument(
        "bams",
        nargs="*",
        type=_path_exists,
        help="Hi-C alignment BAM(s) carrying ip/rt tags. Not needed when starting after prep.",
    )
    r.add_argument("--outdir", required=True, help="Output directory.")
    _add_phasing_args(r, with_table=True)
    r.add_argument(
        "-c",
        "--chrom-sizes",
        default=None,
        help=(
            "Chromosomes to process: a .chrom.sizes file or a '|'-separated list "
            "(e.g. 'chr1|chr2'). Default: every chromosome in the BAM header."
        ),
    )
    r.add_argument("-q", "--mapq", type=int, default=1, help="Minimum MAPQ kept by prep.")
    r.add_argument("--min-baseq", type=int, default=0, help="Minimum baseQ for allele evidence.")
    r.add_argument(
        "--platform",
        default=None,
        help="Override the sequencing platform (ILLUMINA or 454) read from @RG PL.",
    )
    r.add_argument(
        "--merge-homologs",
        action="store_true",
        help="Write one interleaved map/track with -r/-a chromosomes instead of one per homolog.",
    )
    r.add_argument(
        "-t",
        "--threads",
        type=int,
        default=default_worker_count(),
        help="Chromosomes processed in parallel (default: half the cores, capped by RAM).",
    )
    r.add_argument("--from-stage", choices=STAGES, default=STAGES[0], help="First stage to run.")
    r.add_argument("--to-stage", choices=STAGES, default=STAGES[-1], help="Last stage to run.")
    r.add_argument(
        "-j",
        "--juicer-dir",
        default=None,
        help="Juicer folder (with scripts/juicer_tools); enables .hic construction.",
    )
    r.add_argument(
        "-r",
        "--resolutions",
        default=DEFAULT_RESOLUTIONS,
        help="Comma-separated bin sizes for juicer_tools pre.",
    )
    r.add_argument("--progress", action="store_true", help="Show progress bars.")
    r.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    r.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # classify
    # -----------------
    c = sub.add_parser(
        "classify",
        help="Only assign reads to homologs and write reads_to_homologs.txt.",
    )
    c.add_argument("--bam", required=True, type=_path_exists, help="Input BAM (sorted, indexed).")
    c.add_argument("--outdir", required=True, help="Output directory.")
    _add_phasing_args(c, with_table=False)
    c.add_argument(
        "-c",
        "--chrom-sizes",
        default=None,
        help="A .chrom.sizes file or a '|'-separated chromosome list.",
    )
    c.add_argument("--min-baseq", type=int, default=0, help="Minimum baseQ for allele evidence.")
    c.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    c.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny tagged Hi-C BAM and phased VCF for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # doctor
    # -----------------
    d = sub.add_parser(
        "doctor",
        help="Check your environment for the optional tools (java/juicer_tools/bedGraphToBigWig).",
    )
    d.add_argument("-j", "--juicer-dir", default=None, help="Juicer folder to check.")
    d.add_argument("--dry-run", action="store_true", help="Print checks without exiting nonzero.")
    d.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "Diploidify quickstart (copy/paste):",
        "",
        "1) Tagged Hi-C BAM + phased VCF (contact maps + accessibility):",
        "   diploidify run sample.bam \\",
        "     --vcf phased.vcf.gz \\",
        "     --juicer-dir /opt/juicer \\",
        "     --outdir results/",
        "   Outputs: results/diploid_inter_r.hic, results/diploid_inter_a.hic,",
        "            results/diploid_raw_r.bedgraph, results/report.html",
        "",
        "2) Reuse a previous assignment (skip classification):",
        "   diploidify run --from-stage hic \\",
        "     --reads-to-homologs results/reads_to_homologs.txt \\",
        "     --merge-homologs \\",
        "     --outdir results/",
        "   Outputs: results/diploid.mnd.txt, results/diploid_raw.bedgraph",
        "",
        "3) Only assign reads to homologs:",
        "   diploidify classify \\",
        "     --bam reads.sorted.bam \\",
        "     --psf results/out.psf \\",
        "     --outdir classify/",
        "   Outputs: classify/reads_to_homologs.txt, classify/summary.json",
        "",
        "Tip: use --dry-run to validate inputs and print the planned outputs.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0
    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def _run_config(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        bams=list(args.bams),
        outdir=str(Path(args.outdir).expanduser().resolve()),
        vcf=args.vcf,
        psf=args.psf,
        reads_to_homologs=args.reads_to_homologs,
        chrom_sizes=args.chrom_sizes,
        sample=args.sample,
        require_pass=not bool(args.no_require_pass),
        mapq=int(args.mapq),
        min_baseq=int(args.min_baseq),
        platform=args.platform,
        merge_homologs=bool(args.merge_homologs),
        threads=int(args.threads),
        from_stage=args.from_stage,
        to_stage=args.to_stage,
        juicer_dir=args.juicer_dir,
        resolutions=str(args.resolutions),
        progress=bool(args.progress),
    )


def cmd_run(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "run.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)
    logger = logging.getLogger("diploidify")
    logger.info("diploidify %s", __version__)

    try:
        cfg = _run_config(args).validate()
        if args.dry_run:
            paths = RunPaths(outdir)
            stages = [s for s in STAGES if cfg.stage_enabled(s)]
            print("Dry-run: inputs look OK.")
            print(f"Stages: {' -> '.join(stages)}")
            print(f"Parallel chromosome tasks: {cfg.threads}")
            print("Planned outputs:")
            if cfg.stage_enabled("prep"):
                print(f"  sorted BAM -> {paths.sorted_bam}")
            if cfg.stage_enabled("hic"):
                print(f"  contacts -> {paths.mnd}")
                if cfg.reads_to_homologs is None:
                    print(f"  read assignments -> {paths.reads_to_homologs}")
            if cfg.stage_enabled("dhs"):
                print(f"  raw track -> {paths.raw_bedgraph}")
                print(f"  corrected track -> {paths.corrected_bedgraph}")
            print(f"  report.html -> {outdir / 'report.html'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        run_pipeline(cfg)
        report_path = outdir / "report.html"
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=None if args.dry_run else log_path)


def cmd_classify(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "classify.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)
    logger = logging.getLogger("diploidify")
    logger.info("diploidify %s", __version__)

    try:
        if (args.vcf is None) == (args.psf is None):
            raise ConfigurationError("Pass exactly one of --vcf or --psf.")
        if args.min_baseq < 0:
            raise ConfigurationError("--min-baseq must be a non-negative integer.")
        check_bam_index(args.bam)
        chrom_sizes = resolve_chrom_sizes(args.chrom_sizes, [args.bam])
        chroms = list(chrom_sizes)
        if args.vcf is not None:
            check_vcf_index(args.vcf)
            check_contig_overlap(vcf_contigs(args.vcf), chroms)

        if args.dry_run:
            print("Dry-run: inputs look OK.")
            print(f"Chromosomes: {', '.join(chroms)}")
            print("Planned outputs:")
            print(f"  reads_to_homologs.txt -> {outdir / 'reads_to_homologs.txt'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        outdir = ensure_outdir(outdir)
        index = load_phase_index(
            vcf_path=args.vcf,
            psf_path=args.psf,
            chroms=chroms,
            sample=args.sample,
            require_pass=not bool(args.no_require_pass),
        )

        per_chrom = {}
        out_path = outdir / "reads_to_homologs.txt"
        with open(out_path, "wt", encoding="utf-8") as fh:
            for chrom in chroms:
                table, counts = classify_chromosome(
                    args.bam, chrom, index.get(chrom), min_baseq=int(args.min_baseq), progress=True
                )
                table.write(fh)
                per_chrom[chrom] = counts

        write_json(outdir / "summary.json", {"version": __version__, "chromosomes": per_chrom})
        logger.info("Read assignments written: %s", out_path)
        print(str(out_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=None if args.dry_run else log_path)


def cmd_doctor(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)
    checks = collect_checks(juicer_dir=args.juicer_dir)

    # Human-readable output
    lines = []
    ok_required = True
    for name, r in checks.items():
        status = "OK" if r.ok else ("MISSING" if r.required else "SKIPPED")
        lines.append(f"{name:16s} : {status:7s}  {r.detail}")
        if r.required and not r.ok:
            ok_required = False
    print("\n".join(lines))

    # Guidance
    for name, r in checks.items():
        if not r.ok and r.howto:
            print("\n---")
            print(f"How to install/fix '{name}':")
            print(r.howto)

    if args.dry_run:
        return 0
    return 0 if ok_required else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "run":
        return cmd_run(args)
    if args.cmd == "classify":
        return cmd_classify(args)
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "doctor":
        return cmd_doctor(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
