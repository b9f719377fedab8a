import pytest
from typing import List, Sequence, Tuple, Text

from cnv_caller import segment_merger
from cnv_caller.errors import SegmentAlignmentError
from cnv_caller.pedigree_tools import PedigreeRoster
from cnv_caller.segments import Segment

import common_test_utils


class Default:
    minimum_call_size = 1000
    coverage = 30.0
    allele_counts = (15, 15)


def _called_segment(
        begin: int,
        length: int,
        copy_number: int,
        qscore: float,
        chromosome: Text = common_test_utils.Default.chromosome
) -> Segment:
    segment = common_test_utils.make_segment(begin, Default.coverage, Default.allele_counts, chromosome=chromosome,
                                             length=length)
    segment.copy_number = copy_number
    segment.qscore = qscore
    return segment


def _contiguous_segments(calls: Sequence[Tuple[int, int, float]]) -> List[Segment]:
    """ Contiguous segments from (length, copy number, qscore) """
    segments = []
    begin = 0
    for length, copy_number, qscore in calls:
        segments.append(_called_segment(begin, length, copy_number, qscore))
        begin += length
    return segments


def _intervals(segments: Sequence[Segment]) -> List[Tuple[int, int]]:
    return [(segment.begin, segment.end) for segment in segments]


def test_merge_equal_neighbours(minimum_call_size: int = Default.minimum_call_size):
    segments = _contiguous_segments([(10000, 2, 10.0), (10000, 2, 30.0), (10000, 3, 40.0), (10000, 3, 40.0),
                                     (10000, 2, 50.0)])
    merged = segment_merger.merge_segments(segments, minimum_call_size)
    assert _intervals(merged) == [(0, 20000), (20000, 40000), (40000, 50000)]
    assert [segment.copy_number for segment in merged] == [2, 3, 2]
    # length-weighted mean q-score
    assert merged[0].qscore == pytest.approx(20.0)
    assert merged[0].bin_count == 2 * common_test_utils.Default.num_bins
    assert len(merged[0].balleles) == 2 * common_test_utils.Default.num_sites
    # a segment that is not merged is returned as is
    assert merged[2] is segments[4]


def test_merge_is_idempotent(minimum_call_size: int = Default.minimum_call_size):
    segments = _contiguous_segments([(10000, 2, 10.0), (500, 1, 3.0), (10000, 2, 30.0), (10000, 4, 40.0)])
    merged = segment_merger.merge_segments(segments, minimum_call_size)
    merged_again = segment_merger.merge_segments(merged, minimum_call_size)
    assert len(merged_again) == len(merged)
    assert all(first is second for first, second in zip(merged, merged_again))


def test_short_segment_joins_higher_scoring_neighbour(minimum_call_size: int = Default.minimum_call_size):
    segments = _contiguous_segments([(10000, 2, 30.0), (500, 3, 5.0), (10000, 2, 20.0)])
    merged = segment_merger.merge_segments(segments, minimum_call_size)
    assert len(merged) == 1
    assert merged[0].copy_number == 2
    assert _intervals(merged) == [(0, 20500)]
    assert merged[0].qscore == pytest.approx((10000 * 30.0 + 500 * 5.0 + 10000 * 20.0) / 20500)

    segments = _contiguous_segments([(10000, 2, 10.0), (500, 3, 5.0), (10000, 4, 40.0)])
    merged = segment_merger.merge_segments(segments, minimum_call_size)
    assert _intervals(merged) == [(0, 10000), (10000, 20500)]
    assert [segment.copy_number for segment in merged] == [2, 4]
    # the merged segment takes its calls from the long segment
    assert merged[1].major_chromosome_count == segments[2].major_chromosome_count


def test_short_segment_ties_go_left(minimum_call_size: int = Default.minimum_call_size):
    segments = _contiguous_segments([(10000, 2, 20.0), (500, 3, 5.0), (10000, 4, 20.0)])
    merged = segment_merger.merge_segments(segments, minimum_call_size)
    assert _intervals(merged) == [(0, 10500), (10500, 20500)]
    assert [segment.copy_number for segment in merged] == [2, 4]


def test_merge_respects_chromosomes_and_gaps(minimum_call_size: int = Default.minimum_call_size):
    segments = [
        _called_segment(0, 10000, 2, 30.0),
        _called_segment(25000, 10000, 2, 30.0),
        _called_segment(35000, 10000, 2, 30.0, chromosome="chr2"),
    ]
    merged = segment_merger.merge_segments(segments, minimum_call_size)
    assert len(merged) == 3
    merged = segment_merger.merge_segments(segments, minimum_call_size, max_gap=20000)
    assert [(segment.chromosome, segment.begin, segment.end) for segment in merged] == [
        ("chr1", 0, 35000), ("chr2", 35000, 45000)
    ]


@pytest.mark.parametrize("excluded_intervals,expected_num_segments", [
    (None, 1),
    ({"chr1": [(9000, 11000)]}, 2),
    ({"chr1": [(20000, 30000)]}, 1),
    ({"chr2": [(9000, 11000)]}, 1),
])
def test_merge_using_excluded_intervals(excluded_intervals, expected_num_segments: int,
                                        minimum_call_size: int = Default.minimum_call_size):
    segments = _contiguous_segments([(10000, 2, 30.0), (10000, 2, 30.0)])
    merged = segment_merger.merge_segments_using_excluded_intervals(
        segments, minimum_call_size, excluded_intervals=excluded_intervals
    )
    assert len(merged) == expected_num_segments


def test_merge_with_explicit_calls(minimum_call_size: int = Default.minimum_call_size):
    segments = _contiguous_segments([(10000, 2, 30.0), (10000, 2, 30.0), (10000, 2, 30.0)])
    merged = segment_merger.merge_segments(segments, minimum_call_size, copy_numbers=[(2, 2), (2, 3), (2, 3)],
                                           qscores=[30.0, 30.0, 30.0])
    assert _intervals(merged) == [(0, 10000), (10000, 30000)]
    with pytest.raises(ValueError):
        segment_merger.merge_segments(segments, minimum_call_size, copy_numbers=[(2,), (2,), (2,)])
    with pytest.raises(SegmentAlignmentError):
        segment_merger.get_merge_runs(segments, minimum_call_size, [2, 2], [30.0, 30.0, 30.0],
                                      lambda left, right: True)
    assert segment_merger.merge_segments([], minimum_call_size) == []


def test_merge_pedigree_segments(minimum_call_size: int = Default.minimum_call_size):
    first = _contiguous_segments([(10000, 2, 30.0), (10000, 2, 30.0), (10000, 3, 30.0), (10000, 3, 30.0)])
    second = _contiguous_segments([(10000, 2, 30.0), (10000, 1, 30.0), (10000, 3, 30.0), (10000, 3, 30.0)])
    roster = PedigreeRoster.from_kinships({"s1": first, "s2": second})
    segment_merger.merge_pedigree_segments(roster, minimum_call_size)
    # merged only where every sample agrees
    assert roster.num_segments == 3
    for member in roster:
        assert _intervals(member.segments) == [(0, 10000), (10000, 20000), (20000, 40000)]
    assert [segment.copy_number for segment in roster[roster.names.index("s2")].segments] == [2, 1, 3]
