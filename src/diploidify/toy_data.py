from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pysam

from .tags import INSERTION_POINT_TAG, JUNCTION_TYPE_TAG
from .utils import ensure_outdir, write_json

READ_LEN = 50
READ_GROUP = "toy"

_TOY_CONTIGS = [("chr1", 2000), ("chr2", 1500)]


def _ref_seq(length: int) -> str:
    return ("ACGT" * (length // 4 + 1))[:length]


def _other_base(base: str) -> str:
    for alt in ["G", "A", "C", "T"]:
        if alt != base:
            return alt
    return "A"


def _make_mate(
    name: str,
    tid: int,
    start0: int,
    seq: str,
    *,
    read1: bool,
    mate_start0: int,
    rt: int,
    mapq: int = 60,
    duplicate: bool = False,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    # paired, proper pair, read1 forward / read2 reverse
    flag = 0x1 | 0x2
    flag |= (0x40 | 0x20) if read1 else (0x80 | 0x10)
    if duplicate:
        flag |= 0x400
    a.flag = flag
    a.reference_id = tid
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = [(0, len(seq))]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    a.next_reference_id = tid
    a.next_reference_start = mate_start0
    a.template_length = (mate_start0 + len(seq) - start0) if read1 else -(start0 + len(seq) - mate_start0)
    # 5' end of the fragment: leftmost base for forward, rightmost for reverse reads
    ip = start0 + 1 if read1 else start0 + len(seq)
    a.set_tag(INSERTION_POINT_TAG, ip, value_type="i")
    a.set_tag(JUNCTION_TYPE_TAG, rt, value_type="i")
    a.set_tag("RG", READ_GROUP, value_type="Z")
    return a


def _read_seq(ref_seq: str, start0: int, alleles: Optional[Dict[int, str]] = None) -> str:
    seq = list(ref_seq[start0 : start0 + READ_LEN])
    for pos0, base in (alleles or {}).items():
        rel = pos0 - start0
        if 0 <= rel < len(seq):
            seq[rel] = base
    return "".join(seq)


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny tagged Hi-C BAM and a phased VCF for quick demos/tests.

    chr1 carries phased SNVs at 1000 (r = reference base) and 1500 (r =
    alternate base), chr2 one at 500. Read pairs named ``ref_*`` / ``alt_*``
    carry the r / a allele, ``both_*`` agrees at two loci, ``conflict_*``
    disagrees between mates, ``none_*`` overlaps nothing. ``dup_*``,
    ``lowq_*`` and ``badrt_*`` carry the r allele but are removed by prep.

    The outputs include:
    - toy.bam (+ .bai), @RG PL:ILLUMINA, ``ip`` / ``rt`` tags on every record
    - phased.vcf.gz (+ .tbi)

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    refs = {chrom: _ref_seq(length) for chrom, length in _TOY_CONTIGS}
    tids = {chrom: i for i, (chrom, _) in enumerate(_TOY_CONTIGS)}

    loci: List[Tuple[str, int, str, str]] = []
    for chrom, pos0, r_is_ref in [("chr1", 999, True), ("chr1", 1499, False), ("chr2", 499, True)]:
        ref_base = refs[chrom][pos0]
        other = _other_base(ref_base)
        loci.append((chrom, pos0, ref_base, other) if r_is_ref else (chrom, pos0, other, ref_base))
    r_base = {(c, p): r for c, p, r, _ in loci}
    a_base = {(c, p): a for c, p, _, a in loci}

    reads: List[pysam.AlignedSegment] = []

    def pair(
        name: str,
        chrom: str,
        s1: int,
        s2: int,
        alleles1: Optional[Dict[int, str]] = None,
        alleles2: Optional[Dict[int, str]] = None,
        rt: Tuple[int, int] = (2, 3),
        **kw,
    ) -> None:
        ref = refs[chrom]
        tid = tids[chrom]
        reads.append(
            _make_mate(name, tid, s1, _read_seq(ref, s1, alleles1), read1=True, mate_start0=s2, rt=rt[0], **kw)
        )
        reads.append(
            _make_mate(name, tid, s2, _read_seq(ref, s2, alleles2), read1=False, mate_start0=s1, rt=rt[1], **kw)
        )

    r1000 = {999: r_base[("chr1", 999)]}
    a1000 = {999: a_base[("chr1", 999)]}
    r1500 = {1499: r_base[("chr1", 1499)]}
    a1500 = {1499: a_base[("chr1", 1499)]}

    # ref_chr1_0 uses junction types outside the ILLUMINA set: raw signal only
    pair("ref_chr1_0", "chr1", 980, 1200, r1000, rt=(0, 1))
    pair("ref_chr1_1", "chr1", 982, 1210, r1000)
    pair("ref_chr1_2", "chr1", 984, 1220, r1000)
    for i, (s1, s2) in enumerate([(975, 1300), (978, 1310), (981, 1320)]):
        pair(f"alt_chr1_{i}", "chr1", s1, s2, a1000)
    pair("both_chr1", "chr1", 990, 1470, r1000, r1500)
    pair("conflict_chr1", "chr1", 985, 1480, r1000, a1500)
    pair("none_chr1", "chr1", 200, 400)
    pair("dup_chr1", "chr1", 986, 1230, r1000, duplicate=True)
    pair("lowq_chr1", "chr1", 987, 1240, r1000, mapq=0)
    pair("badrt_chr1", "chr1", 988, 1250, r1000, rt=(7, 7))

    r500 = {499: r_base[("chr2", 499)]}
    a500 = {499: a_base[("chr2", 499)]}
    pair("ref_chr2_0", "chr2", 480, 700, r500)
    pair("ref_chr2_1", "chr2", 483, 710, r500)
    pair("alt_chr2_0", "chr2", 470, 720, a500)
    pair("alt_chr2_1", "chr2", 490, 730, a500)

    reads.sort(key=lambda r: (r.reference_id, r.reference_start))

    bam_path = outdir_p / "toy.bam"
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": chrom, "LN": length} for chrom, length in _TOY_CONTIGS],
        "RG": [{"ID": READ_GROUP, "SM": "toy", "PL": "ILLUMINA"}],
    }
    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)
    pysam.index(str(bam_path))

    # Build VCF
    vcf_path = outdir_p / "phased.vcf"
    vheader = pysam.VariantHeader()
    vheader.add_meta("fileformat", "VCFv4.2")
    vheader.add_sample("TOY")
    for chrom, length in _TOY_CONTIGS:
        vheader.contigs.add(chrom, length=length)
    vheader.formats.add("GT", number=1, type="String", description="Genotype")

    records = []
    for chrom, pos0, r, a in loci:
        ref_base = refs[chrom][pos0]
        alt_base = a if r == ref_base else r
        gt = (0, 1) if r == ref_base else (1, 0)
        records.append((chrom, pos0, ref_base, alt_base, gt, True))
    # skipped when loading: unphased het and homozygous alt
    records.append(("chr1", 599, refs["chr1"][599], _other_base(refs["chr1"][599]), (0, 1), False))
    records.append(("chr1", 699, refs["chr1"][699], _other_base(refs["chr1"][699]), (1, 1), True))
    records.sort(key=lambda x: (tids[x[0]], x[1]))

    with pysam.VariantFile(str(vcf_path), "w", header=vheader) as vcf:
        for chrom, pos0, ref_base, alt_base, gt, phased in records:
            rec = vcf.new_record(
                contig=chrom,
                start=pos0,
                stop=pos0 + 1,
                alleles=(ref_base, alt_base),
                id=f"{chrom}:{pos0+1}:{ref_base}:{alt_base}",
                qual=60,
                filter="PASS",
            )
            rec.samples[0]["GT"] = gt
            rec.samples[0].phased = phased
            vcf.write(rec)

    vcf_gz = outdir_p / "phased.vcf.gz"
    pysam.tabix_compress(str(vcf_path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)

    summary = {
        "bam": str(bam_path),
        "phased_vcf": str(vcf_gz),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
