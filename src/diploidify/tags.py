"""Typed accessors for the auxiliary tags written by the upstream Hi-C aligner.

``ip`` carries the insertion point (the 5' fragment-end coordinate, already
corrected for clipping and indels) and ``rt`` the junction type of the
ligation/restriction context. Both are integers.

When a record carries the same tag twice, the first occurrence is used, which
is what ``pysam.AlignedSegment.get_tag`` returns.
"""

from __future__ import annotations

from typing import Optional

import pysam

from .errors import MissingTagError
from .models import AlignedRead

INSERTION_POINT_TAG = "ip"
JUNCTION_TYPE_TAG = "rt"

# Junction types kept by the prep stage (``samtools view -d rt:0 ... -d rt:5``).
VALID_JUNCTION_TYPES = frozenset(range(6))


def _optional_int_tag(read: pysam.AlignedSegment, tag: str) -> Optional[int]:
    if not read.has_tag(tag):
        return None
    value = read.get_tag(tag)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(
            f"Tag '{tag}' on read {read.query_name!r} is not an integer: {value!r}"
        ) from e


def _required_int_tag(read: pysam.AlignedSegment, tag: str) -> int:
    value = _optional_int_tag(read, tag)
    if value is None:
        raise MissingTagError(tag, read.query_name)
    return value


def insertion_point(read: pysam.AlignedSegment) -> int:
    return _required_int_tag(read, INSERTION_POINT_TAG)


def junction_type(read: pysam.AlignedSegment) -> int:
    return _required_int_tag(read, JUNCTION_TYPE_TAG)


def optional_junction_type(read: pysam.AlignedSegment) -> Optional[int]:
    return _optional_int_tag(read, JUNCTION_TYPE_TAG)


def partner_junction_type(rt: int) -> int:
    """Junction type of the mate ligation end: even types pair with +1, odd with -1."""
    return rt + 1 if rt % 2 == 0 else rt - 1


def to_aligned_read(read: pysam.AlignedSegment) -> AlignedRead:
    """Build an :class:`AlignedRead` from a mapped pysam record.

    ``ip`` is required; a missing ``rt`` is kept as None.
    """
    mate_chrom: Optional[str] = None
    if not read.mate_is_unmapped and read.next_reference_id >= 0:
        mate_chrom = read.next_reference_name
    return AlignedRead(
        name=str(read.query_name),
        chrom=str(read.reference_name),
        pos0=int(read.reference_start),
        is_reverse=bool(read.is_reverse),
        is_read1=bool(read.is_read1),
        mate_chrom=mate_chrom,
        mate_pos0=int(read.next_reference_start),
        insertion_point=insertion_point(read),
        junction_type=optional_junction_type(read),
        mapq=int(read.mapping_quality),
    )
