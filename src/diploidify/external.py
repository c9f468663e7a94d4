"""Helpers for running the external collaborators (juicer_tools, bedGraphToBigWig).

Design goals
------------
- Fail fast with actionable error messages.
- Capture stderr/stdout for debugging.
- Keep the public surface small; treat this as an internal utility module.

Contact-matrix building and bigWig serialization stay in the established
external tools; this module only wraps their invocation.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import textwrap
from pathlib import Path
from typing import Optional, Sequence

from .utils import which

logger = logging.getLogger(__name__)

BEDGRAPH_TO_BIGWIG = "bedGraphToBigWig"


class ExternalCommandError(RuntimeError):
    """Raised when an external command fails."""

    def __init__(
        self,
        message: str,
        *,
        cmd: Sequence[str],
        returncode: int,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = int(returncode)
        self.stdout = stdout
        self.stderr = stderr


def cmd_to_str(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(x)) for x in cmd)


def ensure_executable_in_path(exe: str, *, hint: Optional[str] = None) -> None:
    """Ensure an executable exists in PATH (or is an executable file path)."""
    if which(exe) is None:
        msg = f"Required executable '{exe}' was not found in your PATH."
        if hint:
            msg += "\n\n" + hint
        raise FileNotFoundError(msg)


def run_command(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command and return the CompletedProcess.

    If ``check`` is True, raise ``ExternalCommandError`` on non-zero exit.
    """
    logger.debug("Running command: %s", cmd_to_str(cmd))

    cp = subprocess.run(
        list(map(str, cmd)),
        check=False,
        stdout=subprocess.PIPE if capture else None,
        stderr=subprocess.PIPE if capture else None,
        text=text,
    )

    if check and cp.returncode != 0:
        raise ExternalCommandError(
            message=textwrap.dedent(
                f"""
                External command failed (exit code {cp.returncode}).

                Command:
                  {cmd_to_str(cmd)}

                STDERR (tail):
                  {(_tail(cp.stderr) if isinstance(cp.stderr, str) else str(cp.stderr))}
                """
            ).strip(),
            cmd=cmd,
            returncode=cp.returncode,
            stdout=cp.stdout if isinstance(cp.stdout, str) else None,
            stderr=cp.stderr if isinstance(cp.stderr, str) else None,
        )

    return cp


def _tail(s: Optional[str], n: int = 3000) -> str:
    if not s:
        return "(empty)"
    s = str(s)
    if len(s) <= n:
        return s
    return "..." + s[-n:]


def juicer_tools_path(juicer_dir: str | Path) -> Path:
    return Path(juicer_dir) / "scripts" / "juicer_tools"


def build_hic(
    *,
    juicer_dir: str | Path,
    mnd_path: str | Path,
    chrom_sizes: str | Path,
    out_hic: str | Path,
    resolutions: str,
    norms: str = "VC,VC_SQRT",
) -> Path:
    """``juicer_tools pre`` followed by ``juicer_tools addNorm``."""
    jt = juicer_tools_path(juicer_dir)
    if not jt.exists():
        raise FileNotFoundError(f"juicer_tools not found at {jt}")
    run_command(
        [str(jt), "pre", "-n", "-r", resolutions, str(mnd_path), str(out_hic), str(chrom_sizes)]
    )
    run_command([str(jt), "addNorm", str(out_hic), "-k", norms])
    return Path(out_hic)


def bedgraph_to_bigwig(
    bedgraph: str | Path,
    chrom_sizes: str | Path,
    out_bw: str | Path,
) -> Path:
    ensure_executable_in_path(
        BEDGRAPH_TO_BIGWIG,
        hint="Install kentUtils, e.g.: mamba install -c bioconda ucsc-bedgraphtobigwig",
    )
    run_command([BEDGRAPH_TO_BIGWIG, str(bedgraph), str(chrom_sizes), str(out_bw)])
    return Path(out_bw)
