import pytest

from primermatch import (
    SOURCE_GENBANK,
    Occurrence,
    Orientation,
    OrientationError,
    SequenceRecord,
    detect_orientation,
    extract_amplicons,
    find_amplicon,
    find_occurrences,
    find_primer_pair,
    locate_primer_pair,
    mismatch_budget,
    normalize_orientation,
    orient_records,
    reverse_complement,
    trim_to_primer_pair,
)

from conftest import FWD_12S, INSERT_A, INSERT_B, REV_12S, REV_12S_RC, amplicon, reverse_amplicon

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "primer,expected",
    [
        ("TAGAACAGGCTCCTCTAG", 3),
        ("GGGCAATCCTGAGCCAA", 3),
        ("CCATTGAGTCTCTGCACCTATC", 4),
        ("ACGT", 0),
        ("ACGTA", 1),
        ("", 0),
    ],
)
def test_mismatch_budget_is_floor_of_twenty_percent(primer, expected):
    assert mismatch_budget(primer) == expected


def test_find_occurrences_exact_and_approximate():
    target = "AAAA" + "ACGTACGTAC" + "TTTT" + "ACGAACGTAC" + "AAAA"
    hits = find_occurrences("ACGTACGTAC", target, 1)
    assert hits == [Occurrence(4, 14, 0), Occurrence(18, 28, 1)]


def test_find_occurrences_never_exceeds_budget():
    primer = FWD_12S
    target = "CCCC" + amplicon(INSERT_A) + reverse_amplicon(INSERT_B) + "ACGT" * 10
    budget = mismatch_budget(primer)
    hits = find_occurrences(primer, target, budget)
    assert hits
    for hit in hits:
        window = target[hit.start:hit.end]
        assert len(window) == len(primer)
        assert hit.mismatches == sum(1 for a, b in zip(primer, window) if a != b)
        assert hit.mismatches <= budget


def test_find_occurrences_matches_ambiguity_codes_literally():
    assert find_occurrences("ACGN", "ACGT", 0) == []
    assert find_occurrences("ACGN", "ACGN", 0) == [Occurrence(0, 4, 0)]
    assert find_occurrences("ACGR", "ACGA", 0) == []


def test_find_occurrences_short_target_or_empty_primer():
    assert find_occurrences("ACGTACGT", "ACG", 2) == []
    assert find_occurrences("", "ACGT", 0) == []


def test_find_primer_pair_spans_forward_start_to_reverse_end():
    target = FWD_12S + INSERT_A + REV_12S_RC + "CCCC"
    result = find_primer_pair(target, FWD_12S, REV_12S_RC, 3, 3)
    assert result == FWD_12S + INSERT_A + REV_12S_RC


def test_find_primer_pair_trims_flanks():
    target = "CCCC" + amplicon(INSERT_A) + "CCCC"
    assert find_primer_pair(target, FWD_12S, REV_12S_RC, 3, 3) == amplicon(INSERT_A)


def test_find_primer_pair_tolerates_mismatches_within_budget():
    mutated = "AAGAACAGCCTCCTCTAC"  # 3 substitutions
    target = mutated + INSERT_A + REV_12S_RC
    assert find_primer_pair(target, FWD_12S, REV_12S_RC, 3, 3) == target
    assert find_primer_pair(target, FWD_12S, REV_12S_RC, 2, 3) is None


def test_find_primer_pair_without_forward_returns_none():
    target = "C" * 30 + REV_12S_RC
    assert find_primer_pair(target, FWD_12S, REV_12S_RC, 3, 3) is None


def test_find_primer_pair_requires_reverse_after_forward():
    target = REV_12S_RC + INSERT_A + FWD_12S
    assert find_primer_pair(target, FWD_12S, REV_12S_RC, 3, 3) is None


def test_locate_primer_pair_picks_earliest_forward_and_earliest_reverse():
    target = FWD_12S + INSERT_A + REV_12S_RC + INSERT_A + FWD_12S + INSERT_A + REV_12S_RC
    fwd, rev = locate_primer_pair(target, FWD_12S, REV_12S_RC, 3, 3)
    assert fwd.start == 0
    assert rev.start == len(FWD_12S) + len(INSERT_A)
    assert rev.end == len(amplicon(INSERT_A))


def test_trim_to_primer_pair_keeps_order_and_ids():
    records = [
        SequenceRecord("a", "CC" + amplicon(INSERT_A)),
        SequenceRecord("b", "CCCCCCCC"),
        SequenceRecord("c", amplicon(INSERT_B) + "GG", source=SOURCE_GENBANK),
    ]
    trimmed = trim_to_primer_pair(records, FWD_12S, REV_12S_RC)
    assert [r.id for r in trimmed] == ["a", "c"]
    assert trimmed[0].seq == amplicon(INSERT_A)
    assert trimmed[1].source == SOURCE_GENBANK
    assert records[0].seq.startswith("CC")


def test_find_amplicon_on_reverse_strand():
    seq = "CCCC" + reverse_amplicon(INSERT_B) + "CCCC"
    assert find_amplicon(seq, FWD_12S, REV_12S) == reverse_amplicon(INSERT_B)


def test_find_amplicon_prefers_forward_strand():
    seq = "CCCC" + amplicon(INSERT_A) + "CCCC"
    assert find_amplicon(seq, FWD_12S, REV_12S) == amplicon(INSERT_A)


def test_extract_amplicons_filters_misses():
    records = [
        SequenceRecord("fwd", amplicon(INSERT_A)),
        SequenceRecord("none", "ACGT" * 20),
        SequenceRecord("rev", reverse_amplicon(INSERT_B)),
    ]
    extracted = extract_amplicons(records, FWD_12S, REV_12S)
    assert [r.id for r in extracted] == ["fwd", "rev"]


@pytest.mark.parametrize("seq", ["", "A", "ACGTN", "NNNNACGTTGCA", "GATTACAGATTACA"])
def test_reverse_complement_is_an_involution(seq):
    assert reverse_complement(reverse_complement(seq)) == seq


def test_reverse_complement_values():
    assert reverse_complement("AACGTN") == "NACGTT"
    assert reverse_complement(REV_12S) == REV_12S_RC


def test_detect_orientation_forward_example():
    target = "TAGAACAGGCTCCTCTAG" + INSERT_A + REV_12S_RC
    assert detect_orientation(target, FWD_12S, REV_12S, 3, 3) == Orientation.FORWARD


def test_detect_orientation_requires_primer_at_start():
    target = "C" + amplicon(INSERT_A)
    assert detect_orientation(target, FWD_12S, REV_12S, 0, 0) == Orientation.UNKNOWN


def test_reverse_then_normalize_is_forward():
    target = reverse_amplicon(INSERT_B)
    orientation = detect_orientation(target, FWD_12S, REV_12S, 3, 3)
    assert orientation == Orientation.REVERSE
    normalized = normalize_orientation(target, orientation)
    assert normalized == amplicon(INSERT_B)
    assert detect_orientation(normalized, FWD_12S, REV_12S, 3, 3) == Orientation.FORWARD


def test_normalize_orientation_forward_is_identity():
    assert normalize_orientation("ACGT", Orientation.FORWARD) == "ACGT"
    with pytest.raises(ValueError):
        normalize_orientation("ACGT", Orientation.UNKNOWN)


def test_orient_records_counts_and_reorients():
    records = [
        SequenceRecord("f", amplicon(INSERT_A)),
        SequenceRecord("r", reverse_amplicon(INSERT_B)),
    ]
    oriented, counts = orient_records(records, FWD_12S, REV_12S)
    assert counts == {"forward": 1, "reverse": 1}
    assert [r.seq for r in oriented] == [amplicon(INSERT_A), amplicon(INSERT_B)]
    assert [r.id for r in oriented] == ["f", "r"]


def test_orient_records_raises_on_unknown():
    records = [
        SequenceRecord("ok", amplicon(INSERT_A)),
        SequenceRecord("bad", "C" * 40),
    ]
    with pytest.raises(OrientationError) as excinfo:
        orient_records(records, FWD_12S, REV_12S)
    assert excinfo.value.record_ids == ["bad"]


def test_find_amplicon_matches_reverse_primer_as_written():
    seq = "CCCC" + FWD_12S + INSERT_A + REV_12S + "CCCC"
    assert find_amplicon(seq, FWD_12S, REV_12S) == FWD_12S + INSERT_A + REV_12S


def test_extract_amplicons_keeps_literal_primer_pair():
    records = [SequenceRecord("MN1 Salmo salar", "CCCC" + FWD_12S + INSERT_A + REV_12S + "CCCC")]
    extracted = extract_amplicons(records, FWD_12S, REV_12S)
    assert [r.seq for r in extracted] == [FWD_12S + INSERT_A + REV_12S]
    assert extracted == trim_to_primer_pair(records, FWD_12S, REV_12S)
