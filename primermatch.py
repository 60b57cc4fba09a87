"""
Approximate primer matching and strand orientation for amplicon extraction.

Primers are compared to targets by sliding them across every full-length
offset and counting character mismatches. Ambiguity codes are compared
literally, never expanded.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from Bio.Seq import Seq

logger = logging.getLogger(__name__)

SOURCE_ARCHIVE = "archive"
SOURCE_GENBANK = "genbank"
SOURCE_MANUAL = "manual"


@dataclass(frozen=True)
class SequenceRecord:
    id: str
    seq: str
    description: str = ""
    source: str = SOURCE_ARCHIVE


@dataclass(frozen=True)
class Occurrence:
    start: int
    end: int
    mismatches: int


class Orientation(str, Enum):
    FORWARD = "forward"
    REVERSE = "reverse"
    UNKNOWN = "unknown"


class OrientationError(ValueError):
    def __init__(self, record_ids: List[str]):
        self.record_ids = list(record_ids)
        preview = ", ".join(self.record_ids[:10])
        more = f" (+{len(self.record_ids) - 10} more)" if len(self.record_ids) > 10 else ""
        super().__init__(
            f"{len(self.record_ids)} record(s) carry neither primer at their start: {preview}{more}"
        )


def mismatch_budget(primer: str) -> int:
    # floor(0.2 * len(primer)), 20% error tolerance per primer
    return len(primer) // 5


def reverse_complement(seq: str) -> str:
    return str(Seq(seq).reverse_complement())


def count_mismatches(primer: str, window: str) -> int:
    return sum(1 for a, b in zip(primer, window) if a != b)


def find_occurrences(primer: str, target: str, max_mismatches: int) -> List[Occurrence]:
    plen = len(primer)
    if plen == 0 or len(target) < plen:
        return []
    found: List[Occurrence] = []
    for start in range(len(target) - plen + 1):
        mismatches = 0
        for a, b in zip(primer, target[start:start + plen]):
            if a != b:
                mismatches += 1
                if mismatches > max_mismatches:
                    break
        if mismatches <= max_mismatches:
            found.append(Occurrence(start, start + plen, mismatches))
    return found


def locate_primer_pair(
    target: str,
    forward: str,
    reverse: str,
    max_mismatch_fwd: int,
    max_mismatch_rev: int,
) -> Optional[Tuple[Occurrence, Occurrence]]:
    """
    Return the (forward, reverse) occurrence pair bounding the amplicon.

    The reverse probe must start at or after the end of the forward probe.
    When several pairs qualify, the earliest-starting forward occurrence with
    a partner wins, paired with the earliest-starting reverse occurrence after
    it.
    """
    fwd_hits = find_occurrences(forward, target, max_mismatch_fwd)
    if not fwd_hits:
        return None
    rev_hits = find_occurrences(reverse, target, max_mismatch_rev)
    for fwd in fwd_hits:
        for rev in rev_hits:
            if rev.start >= fwd.end:
                return fwd, rev
    return None


def find_primer_pair(
    target: str,
    forward: str,
    reverse: str,
    max_mismatch_fwd: int,
    max_mismatch_rev: int,
) -> Optional[str]:
    pair = locate_primer_pair(target, forward, reverse, max_mismatch_fwd, max_mismatch_rev)
    if pair is None:
        return None
    fwd, rev = pair
    return target[fwd.start:rev.end]


def trim_to_primer_pair(
    records: Iterable[SequenceRecord],
    forward: str,
    reverse: str,
) -> List[SequenceRecord]:
    max_fwd = mismatch_budget(forward)
    max_rev = mismatch_budget(reverse)
    trimmed: List[SequenceRecord] = []
    for record in records:
        amplicon = find_primer_pair(record.seq, forward, reverse, max_fwd, max_rev)
        if amplicon is None:
            continue
        trimmed.append(replace(record, seq=amplicon))
    return trimmed


def find_amplicon(seq: str, forward: str, reverse: str) -> Optional[str]:
    """
    Trim ``seq`` to the region bounded by a primer pair.

    Both probes are first matched as configured against the untransformed
    read (forward ... reverse). Reads that miss are retried strand-aware with
    ``forward`` and ``reverse`` taken 5'->3' as synthesized: the forward
    strand (forward ... revcomp(reverse)), then the reverse strand
    (reverse ... revcomp(forward)). A reverse-strand hit is returned as
    found, starting with the reverse primer.
    """
    max_fwd = mismatch_budget(forward)
    max_rev = mismatch_budget(reverse)
    attempts = (
        (forward, reverse, max_fwd, max_rev),
        (forward, reverse_complement(reverse), max_fwd, max_rev),
        (reverse, reverse_complement(forward), max_rev, max_fwd),
    )
    for head, tail, max_head, max_tail in attempts:
        amplicon = find_primer_pair(seq, head, tail, max_head, max_tail)
        if amplicon is not None:
            return amplicon
    return None


def extract_amplicons(
    records: Iterable[SequenceRecord],
    forward: str,
    reverse: str,
) -> List[SequenceRecord]:
    extracted: List[SequenceRecord] = []
    for record in records:
        amplicon = find_amplicon(record.seq, forward, reverse)
        if amplicon is None:
            continue
        extracted.append(replace(record, seq=amplicon))
    return extracted


def detect_orientation(
    target: str,
    forward: str,
    reverse: str,
    max_mismatch_fwd: int,
    max_mismatch_rev: int,
) -> Orientation:
    if find_occurrences(forward, target[:len(forward)], max_mismatch_fwd):
        return Orientation.FORWARD
    if find_occurrences(reverse, target[:len(reverse)], max_mismatch_rev):
        return Orientation.REVERSE
    return Orientation.UNKNOWN


def normalize_orientation(target: str, orientation: Orientation) -> str:
    if orientation == Orientation.FORWARD:
        return target
    if orientation == Orientation.REVERSE:
        return reverse_complement(target)
    raise ValueError("Cannot normalize a sequence of unknown orientation.")


def orient_records(
    records: Iterable[SequenceRecord],
    forward: str,
    reverse: str,
) -> Tuple[List[SequenceRecord], Dict[str, int]]:
    max_fwd = mismatch_budget(forward)
    max_rev = mismatch_budget(reverse)
    records = list(records)
    orientations = [
        detect_orientation(record.seq, forward, reverse, max_fwd, max_rev) for record in records
    ]
    unknown = [r.id for r, o in zip(records, orientations) if o == Orientation.UNKNOWN]
    if unknown:
        raise OrientationError(unknown)

    counts = {Orientation.FORWARD.value: 0, Orientation.REVERSE.value: 0}
    oriented: List[SequenceRecord] = []
    for record, orientation in zip(records, orientations):
        counts[orientation.value] += 1
        if orientation == Orientation.REVERSE:
            oriented.append(replace(record, seq=normalize_orientation(record.seq, orientation)))
        else:
            oriented.append(record)
    logger.debug(
        "oriented %d records: forward=%d reverse=%d",
        len(oriented),
        counts[Orientation.FORWARD.value],
        counts[Orientation.REVERSE.value],
    )
    return oriented, counts
