"""Chromosome-parallel execution of the classification and aggregation steps.

Each chromosome is one task on a bounded process pool. Tasks share nothing:
every task builds (or loads) its own assignment table, writes sorted partial
outputs into the work directory and returns its statistics. The first failing
task aborts the run. Partials are only merged once every task has succeeded.
"""

from __future__ import annotations

import heapq
import logging
import os
import shutil
import time
from concurrent.futures import Future, ProcessPoolExecutor, as_completed
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, TextIO, Tuple

import psutil
from tqdm import tqdm

from .accessibility import aggregate_chromosome
from .classifier import AssignmentTable, classify_chromosome, load_assignment_table
from .contacts import build_chromosome_contacts
from .errors import ChromosomeTaskError
from .models import HOMOLOG_ALT, HOMOLOG_REF, ChromosomeResult
from .phase_index import PhaseIndex

logger = logging.getLogger(__name__)

STAGE_HIC = "hic"
STAGE_DHS = "dhs"

# Memory budget per worker, in GiB: workers <= RAM / 2 / 6 - 1.
_GIB_PER_WORKER = 6

JOBLOG_HEADER = "Seq\tHost\tStarttime\tJobRuntime\tSend\tReceive\tExitval\tSignal\tCommand"


def total_memory_bytes() -> int:
    return int(psutil.virtual_memory().total)


def default_worker_count() -> int:
    """Half of the cores, further capped by total memory."""
    threads = max(1, (os.cpu_count() or 2) // 2)
    cap = int(total_memory_bytes() / 1024**3 / 2 / _GIB_PER_WORKER - 1)
    if 0 < cap < threads:
        threads = cap
    return threads


@dataclass(frozen=True)
class HicTask:
    chrom: str
    bam_path: str
    workdir: str
    phase_index: Optional[PhaseIndex] = None
    reads_to_homologs: Optional[str] = None
    min_baseq: int = 0


@dataclass(frozen=True)
class DhsTask:
    chrom: str
    bam_path: str
    workdir: str
    reads_to_homologs: str
    admitted: FrozenSet[int]


def partial_path(workdir: str | Path, chrom: str, kind: str) -> Path:
    return Path(workdir) / f"{chrom}.{kind}"


def run_hic_task(task: HicTask) -> ChromosomeResult:
    """Classification (unless a table is supplied) followed by contact records."""
    t0 = time.time()
    result = ChromosomeResult(chrom=task.chrom, stage=STAGE_HIC)

    table: AssignmentTable
    if task.reads_to_homologs is not None:
        table = load_assignment_table(task.reads_to_homologs, task.chrom)
        result.counts["assigned"] = len(table)
        result.counts["conflicts"] = table.conflicts
    else:
        table, counts = classify_chromosome(
            task.bam_path, task.chrom, task.phase_index, min_baseq=task.min_baseq
        )
        result.counts.update(counts)
        r2h_path = partial_path(task.workdir, task.chrom, "reads_to_homologs.txt")
        with open(r2h_path, "wt", encoding="utf-8") as fh:
            table.write(fh)
        result.outputs["reads_to_homologs"] = str(r2h_path)

    by_label = table.homolog_counts()
    result.counts["assigned_r"] = by_label[HOMOLOG_REF]
    result.counts["assigned_a"] = by_label[HOMOLOG_ALT]

    mnd_path = partial_path(task.workdir, task.chrom, "mnd.txt")
    counts = build_chromosome_contacts(task.bam_path, task.chrom, table, mnd_path)
    result.counts.update(counts)
    result.outputs["mnd"] = str(mnd_path)
    result.runtime_seconds = time.time() - t0
    return result


def run_dhs_task(task: DhsTask) -> ChromosomeResult:
    """Raw and corrected accessibility for one chromosome."""
    t0 = time.time()
    result = ChromosomeResult(chrom=task.chrom, stage=STAGE_DHS)
    table = load_assignment_table(task.reads_to_homologs, task.chrom)
    raw_path = partial_path(task.workdir, task.chrom, "raw.bedgraph")
    corrected_path = partial_path(task.workdir, task.chrom, "corrected.bedgraph")
    counts = aggregate_chromosome(
        task.bam_path, task.chrom, table, task.admitted, raw_path, corrected_path
    )
    result.counts.update(counts)
    result.outputs["raw"] = str(raw_path)
    result.outputs["corrected"] = str(corrected_path)
    result.runtime_seconds = time.time() - t0
    return result


class JobLog:
    """GNU-parallel style job log: one line per task, 7th column is the exit value."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fh: TextIO = open(self.path, "wt", encoding="utf-8")
        self._fh.write(JOBLOG_HEADER + "\n")

    def record(self, seq: int, start: float, runtime: float, exitval: int, command: str) -> None:
        self._fh.write(f"{seq}\t:\t{start:.3f}\t{runtime:.3f}\t0\t0\t{exitval}\t0\t{command}\n")
        self._fh.flush()

    def close(self) -> None:
        self._fh.close()


def joblog_failures(path: str | Path) -> List[str]:
    """Commands whose exit value (7th field) is non-zero."""
    failures: List[str] = []
    with open(path, "rt", encoding="utf-8") as fh:
        next(fh, None)
        for line in fh:
            fields = line.rstrip("\n").split("\t")
            if len(fields) < 7:
                continue
            if fields[6] != "0":
                failures.append(fields[8] if len(fields) > 8 else line.strip())
    return failures


def run_chromosome_tasks(
    stage: str,
    fn: Callable,
    tasks: Sequence,
    *,
    workers: int,
    joblog_path: str | Path,
    progress: bool = False,
) -> List[ChromosomeResult]:
    """Run one task per chromosome; any failure raises :class:`ChromosomeTaskError`.

    With ``workers <= 1`` tasks run sequentially in this process.
    """
    results: Dict[str, ChromosomeResult] = {}
    joblog = JobLog(joblog_path)
    bar = tqdm(total=len(tasks), unit="chrom", desc=f"Stage {stage}", disable=not progress)

    def _fail(seq: int, task, start: float, err: BaseException) -> ChromosomeTaskError:
        joblog.record(seq, start, time.time() - start, 1, f"{stage} {task.chrom}")
        logger.error("Stage %s failed on %s: %s", stage, task.chrom, err)
        return ChromosomeTaskError(
            f"Pipeline failed at stage '{stage}' on chromosome {task.chrom}: "
            f"{err.__class__.__name__}: {err}",
            stage=stage,
            chrom=task.chrom,
        )

    try:
        if workers <= 1:
            for seq, task in enumerate(tasks, start=1):
                start = time.time()
                try:
                    res = fn(task)
                except Exception as e:
                    raise _fail(seq, task, start, e) from e
                joblog.record(seq, start, res.runtime_seconds, 0, f"{stage} {task.chrom}")
                results[task.chrom] = res
                bar.update(1)
        else:
            with ProcessPoolExecutor(max_workers=workers) as pool:
                futures: Dict[Future, Tuple[int, object, float]] = {}
                for seq, task in enumerate(tasks, start=1):
                    futures[pool.submit(fn, task)] = (seq, task, time.time())
                for fut in as_completed(futures):
                    seq, task, start = futures[fut]
                    try:
                        res = fut.result()
                    except Exception as e:
                        for other in futures:
                            other.cancel()
                        raise _fail(seq, task, start, e) from e
                    joblog.record(seq, start, res.runtime_seconds, 0, f"{stage} {res.chrom}")
                    results[res.chrom] = res
                    bar.update(1)
    finally:
        bar.close()
        joblog.close()

    failed = joblog_failures(joblog_path)
    if failed:
        raise ChromosomeTaskError(
            f"Pipeline failed at stage '{stage}': non-zero exit for {', '.join(failed)}",
            stage=stage,
            chrom=failed[0],
        )
    return [results[t.chrom] for t in tasks]


def contact_line_key(line: str) -> Tuple[str, int, str, int]:
    f = line.split("\t", 8)
    return (f[1], int(f[2]), f[5], int(f[6]))


def bedgraph_line_key(line: str) -> Tuple[str, int]:
    f = line.split("\t", 2)
    return (f[0], int(f[1]))


def merge_sorted_files(
    paths: Sequence[str | Path],
    out_path: str | Path,
    key: Callable[[str], tuple],
) -> int:
    """Streaming k-way merge of individually sorted partial files."""
    n = 0
    with ExitStack() as stack:
        handles = [stack.enter_context(open(p, "rt", encoding="utf-8")) for p in paths]
        with open(out_path, "wt", encoding="utf-8") as out:
            for line in heapq.merge(*handles, key=key):
                out.write(line)
                n += 1
    return n


def concatenate_files(paths: Sequence[str | Path], out_path: str | Path) -> None:
    with open(out_path, "wb") as out:
        for p in paths:
            with open(p, "rb") as fh:
                shutil.copyfileobj(fh, out)
