"""Environment self-checks.

This module powers the ``diploidify doctor`` CLI command.

Classification, contact records and accessibility tracks are pure Python
(pysam). Turning them into ``.hic`` maps and bigWig tracks needs java with a
Juicer checkout and ``bedGraphToBigWig``; both are optional and the pipeline
skips those steps when they are absent.
"""

from __future__ import annotations

import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import pysam

from .external import BEDGRAPH_TO_BIGWIG, ExternalCommandError, juicer_tools_path, run_command
from .utils import which

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    detail: str
    howto: Optional[str] = None
    required: bool = False


def check_python() -> CheckResult:
    v = platform.python_version()
    return CheckResult(name="python", ok=True, detail=f"Python {v}", required=True)


def check_pysam() -> CheckResult:
    return CheckResult(name="pysam", ok=True, detail=f"pysam {pysam.__version__}", required=True)


def check_executable(name: str, *, howto: Optional[str] = None) -> CheckResult:
    p = which(name)
    if p is None:
        return CheckResult(name=name, ok=False, detail="not found in PATH", howto=howto)
    return CheckResult(name=name, ok=True, detail=p)


def check_java() -> CheckResult:
    howto = (
        "juicer_tools needs a Java runtime.\n"
        "Ubuntu: sudo apt-get install -y default-jre\n"
        "Conda/mamba: mamba install -c conda-forge openjdk"
    )
    if which("java") is None:
        return CheckResult(name="java", ok=False, detail="not found in PATH", howto=howto)
    try:
        cp = run_command(["java", "-version"], check=True, capture=True, text=True)
    except ExternalCommandError as e:
        return CheckResult(name="java", ok=False, detail=f"java present but not usable: {e}", howto=howto)
    # java -version prints to stderr
    lines = (cp.stderr or cp.stdout or "").strip().splitlines()
    return CheckResult(name="java", ok=True, detail=lines[0] if lines else "java OK")


def check_juicer(juicer_dir: Optional[str]) -> CheckResult:
    howto = (
        "Clone Juicer and pass its folder with --juicer-dir:\n"
        "  git clone https://github.com/aidenlab/juicer.git\n"
        "The folder must contain scripts/juicer_tools."
    )
    if juicer_dir is None:
        return CheckResult(name="juicer", ok=False, detail="no --juicer-dir given", howto=howto)
    jt = juicer_tools_path(juicer_dir)
    if not Path(jt).exists():
        return CheckResult(name="juicer", ok=False, detail=f"{jt} not found", howto=howto)
    return CheckResult(name="juicer", ok=True, detail=str(jt))


def collect_checks(*, juicer_dir: Optional[str] = None) -> Dict[str, CheckResult]:
    """Run all checks and return a mapping name->result."""
    checks: Dict[str, CheckResult] = {}

    checks["python"] = check_python()
    checks["pysam"] = check_pysam()
    checks["java"] = check_java()
    checks["juicer"] = check_juicer(juicer_dir)
    checks[BEDGRAPH_TO_BIGWIG] = check_executable(
        BEDGRAPH_TO_BIGWIG,
        howto=(
            "Conda/mamba: mamba install -c bioconda ucsc-bedgraphtobigwig\n"
            "Or download the binary from http://hgdownload.soe.ucsc.edu/admin/exe/"
        ),
    )

    return checks
