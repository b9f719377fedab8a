"""
Post-calling merge of adjacent segments.

Merging happens in two steps that are repeated until nothing changes:
    1) every segment shorter than the minimum call size is assigned to the nearest long segment reachable through a
       chain of joinable neighbours, picking the side with the higher q-score (the left side on ties);
    2) runs of joinable neighbours whose effective calls are equal are collapsed into one segment.
Two neighbours are joinable when they are on the same chromosome, separated by at most max_gap bases and (optionally)
not separated by an excluded interval.
"""
import logging
import numpy
from typing import List, Optional, Sequence, Tuple, Dict, Text, Callable, Hashable

from cnv_caller.segments import Segment, Balleles
from cnv_caller.errors import SegmentAlignmentError
from cnv_caller.pedigree_tools import PedigreeRoster


logger = logging.getLogger(__name__)
Interval = Tuple[int, int]
JoinTest = Callable[[Segment, Segment], bool]
Run = List[int]


class Default:
    max_gap = 10000
    enrichment_max_gap = 1


def _gap_join_test(max_gap: int) -> JoinTest:
    def _can_join(left: Segment, right: Segment) -> bool:
        return left.chromosome == right.chromosome and right.begin - left.end <= max_gap
    return _can_join


def _excluded_interval_join_test(max_gap: int, excluded_intervals: Dict[Text, Sequence[Interval]]) -> JoinTest:
    gap_test = _gap_join_test(max_gap)

    def _can_join(left: Segment, right: Segment) -> bool:
        if not gap_test(left, right):
            return False
        return not any(
            begin < right.begin and end > left.end for begin, end in excluded_intervals.get(left.chromosome, ())
        )
    return _can_join


def _absorbing_neighbors(
        segments: Sequence[Segment],
        minimum_call_size: int,
        scores: Sequence[float],
        can_join: JoinTest
) -> List[int]:
    """
    For each segment, the index of the segment whose call it takes: itself for long segments, and for short segments
    the better-scoring of the nearest long segments reachable to the left and right (itself if neither exists)
    """
    is_long = [segment.length >= minimum_call_size for segment in segments]
    owners = list(range(len(segments)))
    for index, segment in enumerate(segments):
        if is_long[index]:
            continue
        left = index - 1
        while left >= 0 and can_join(segments[left], segments[left + 1]) and not is_long[left]:
            left -= 1
        if left < 0 or not can_join(segments[left], segments[left + 1]):
            left = None
        right = index + 1
        while right < len(segments) and can_join(segments[right - 1], segments[right]) and not is_long[right]:
            right += 1
        if right >= len(segments) or not can_join(segments[right - 1], segments[right]):
            right = None
        if left is not None and (right is None or scores[left] >= scores[right]):
            owners[index] = left
        elif right is not None:
            owners[index] = right
    return owners


def get_merge_runs(
        segments: Sequence[Segment],
        minimum_call_size: int,
        calls: Sequence[Hashable],
        scores: Sequence[float],
        can_join: JoinTest
) -> List[Run]:
    """
    Partition segment indices into runs of consecutive segments that should be merged
    Args:
        segments: Sequence[Segment]
            Segments in genomic order
        minimum_call_size: int
            Segments shorter than this take the call of a neighbouring long segment
        calls: Sequence[Hashable]
            Call of each segment; runs share one effective call
        scores: Sequence[float]
            Score of each segment, used to pick the neighbour that absorbs a short segment
        can_join: JoinTest
            Whether two consecutive segments may be merged at all
    Returns:
        runs: List[Run]
            Consecutive, non-empty lists of segment indices covering every index once, in order. The segment whose
            call a run takes is always a member of the run.
    """
    if len(calls) != len(segments) or len(scores) != len(segments):
        raise SegmentAlignmentError(
            f"Need one call and one score per segment ({len(segments)}), got {len(calls)} and {len(scores)}"
        )
    if not segments:
        return []
    owners = _absorbing_neighbors(segments, minimum_call_size, scores, can_join)
    runs = [[0]]
    for index in range(1, len(segments)):
        if can_join(segments[index - 1], segments[index]) and calls[owners[index]] == calls[owners[index - 1]]:
            runs[-1].append(index)
        else:
            runs.append([index])
    return runs


def _run_representative(run: Run, owners_call: Sequence[Hashable], calls: Sequence[Hashable]) -> int:
    """ First index in the run whose own call is the run's effective call """
    for index in run:
        if calls[index] == owners_call:
            return index
    return run[0]


def merge_run(segments: Sequence[Segment], run: Run, representative: int) -> Segment:
    """
    Merge the segments of one run. A single-segment run returns that segment unchanged; otherwise a new segment spans
    the run, concatenating bin counts and B-alleles, taking its calls from the representative segment and a q-score
    equal to the length-weighted mean over the run.
    """
    if len(run) == 1:
        return segments[run[0]]
    first, last, template = segments[run[0]], segments[run[-1]], segments[representative]
    balleles = Balleles()
    for index in run:
        balleles.extend(segments[index].balleles)
    if template.balleles.median_counts is not None:
        balleles.set_median_counts()
    merged = Segment(
        first.chromosome, first.begin, last.end,
        counts=numpy.concatenate([segments[index].counts for index in run]),
        balleles=balleles,
        copy_number=template.copy_number
    )
    for attribute in ("second_best_copy_number", "major_chromosome_count", "major_chromosome_count_score",
                      "de_novo_qscore", "filter", "model_distance", "runner_up_model_distance", "is_heterogeneous",
                      "copy_number_swapped"):
        setattr(merged, attribute, getattr(template, attribute))
    lengths = numpy.array([segments[index].length for index in run], dtype=float)
    qscores = numpy.array([segments[index].qscore for index in run], dtype=float)
    merged.qscore = float((lengths * qscores).sum() / lengths.sum()) if lengths.sum() > 0 else float(qscores.mean())
    return merged


def _merge_to_fixed_point(
        segments_by_sample: List[List[Segment]],
        minimum_call_size: int,
        calls: List[Hashable],
        scores: List[float],
        can_join: JoinTest
) -> List[List[Segment]]:
    """ Repeat the merge on every sample's aligned segments, using shared calls and scores, until nothing changes """
    while True:
        reference = segments_by_sample[0]
        runs = get_merge_runs(reference, minimum_call_size, calls, scores, can_join)
        if len(runs) == len(reference):
            return segments_by_sample
        owners = _absorbing_neighbors(reference, minimum_call_size, scores, can_join)
        effective_calls = [calls[owners[run[0]]] for run in runs]
        # every sample is merged with the same runs to stay aligned
        representatives = [_run_representative(run, effective_call, calls)
                           for run, effective_call in zip(runs, effective_calls)]
        segments_by_sample = [
            [merge_run(segments, run, representative) for run, representative in zip(runs, representatives)]
            for segments in segments_by_sample
        ]
        lengths = [numpy.array([reference[index].length for index in run], dtype=float) for run in runs]
        scores = [
            float((length * numpy.array([scores[index] for index in run])).sum() / max(length.sum(), 1.0))
            if len(run) > 1 else scores[run[0]]
            for run, length in zip(runs, lengths)
        ]
        calls = effective_calls


def merge_segments(
        segments: Sequence[Segment],
        minimum_call_size: int,
        max_gap: int = Default.max_gap,
        copy_numbers: Optional[Sequence[Sequence[int]]] = None,
        qscores: Optional[Sequence[float]] = None,
        can_join: Optional[JoinTest] = None
) -> List[Segment]:
    """
    Merge adjacent segments that share a copy-number call
    Args:
        segments: Sequence[Segment]
            Called segments, in genomic order
        minimum_call_size: int
            Segments shorter than this are absorbed into a neighbouring long segment
        max_gap: int (Default=10000)
            Largest gap (in bases) between neighbours that may be merged
        copy_numbers: Optional[Sequence[Sequence[int]]] (Default=None)
            Calls to compare for each segment, e.g. the copy numbers of every sample of a pedigree. If None, use each
            segment's own copy number. Must be given together with qscores.
        qscores: Optional[Sequence[float]] (Default=None)
            Score of each segment used to pick the absorbing neighbour. If None, use each segment's own q-score.
        can_join: Optional[JoinTest] (Default=None)
            Replace the default same-chromosome / max_gap joinability test
    Returns:
        merged_segments: List[Segment]
            Merged segments. Segments that were not merged with anything are returned as the same objects, so merging
            an already-merged list returns an equal list.
    """
    if (copy_numbers is None) != (qscores is None):
        raise ValueError("copy_numbers and qscores must be specified together")
    segments = list(segments)
    if not segments:
        return []
    calls = [tuple(cns) for cns in copy_numbers] if copy_numbers is not None \
        else [segment.copy_number for segment in segments]
    scores = list(qscores) if qscores is not None else [segment.qscore for segment in segments]
    can_join = _gap_join_test(max_gap) if can_join is None else can_join
    merged, = _merge_to_fixed_point([segments], minimum_call_size, calls, scores, can_join)
    logger.debug(f"Merged {len(segments)} segments into {len(merged)}")
    return merged


def merge_segments_using_excluded_intervals(
        segments: Sequence[Segment],
        minimum_call_size: int,
        excluded_intervals: Optional[Dict[Text, Sequence[Interval]]] = None,
        max_gap: int = Default.max_gap
) -> List[Segment]:
    """
    Merge adjacent segments that share a copy-number call, never merging across an excluded interval
    Args:
        segments: Sequence[Segment]
            Called segments, in genomic order
        minimum_call_size: int
            Segments shorter than this are absorbed into a neighbouring long segment
        excluded_intervals: Optional[Dict[Text, Sequence[Interval]]] (Default=None)
            Map from chromosome to half-open (begin, end) intervals that merged segments may not span
        max_gap: int (Default=10000)
            Largest gap (in bases) between neighbours that may be merged
    Returns:
        merged_segments: List[Segment]
    """
    can_join = _excluded_interval_join_test(max_gap, excluded_intervals or {})
    return merge_segments(segments, minimum_call_size, max_gap=max_gap, can_join=can_join)


def merge_pedigree_segments(
        roster: PedigreeRoster,
        minimum_call_size: int,
        max_gap: int = Default.max_gap
) -> PedigreeRoster:
    """
    Merge every member's segments in the same way: neighbours are merged only when the copy numbers of all members
    agree, and short segments follow the neighbour with the higher mean q-score across members. Members' segment lists
    are replaced, and remain index-aligned.
    """
    roster.check_alignment()
    num_segments = roster.num_segments
    if num_segments == 0:
        return roster
    calls = [
        tuple(member.segments[segment_index].copy_number for member in roster)
        for segment_index in range(num_segments)
    ]
    scores = [
        float(numpy.mean([member.segments[segment_index].qscore for member in roster]))
        for segment_index in range(num_segments)
    ]
    merged_by_sample = _merge_to_fixed_point(
        [list(member.segments) for member in roster], minimum_call_size, calls, scores, _gap_join_test(max_gap)
    )
    for member, merged in zip(roster, merged_by_sample):
        member.segments = merged
    logger.info(f"Merged {num_segments} segments into {roster.num_segments} per sample")
    roster.check_alignment()
    return roster
