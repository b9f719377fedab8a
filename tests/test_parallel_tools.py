#!/usr/bin/env python

import threading
import pytest
from typing import List

from cnv_caller import parallel_tools


class Default:
    num_segments = 103
    failing_segment = 57


@pytest.mark.parametrize("num_segments,num_workers", [
    (1, 1), (1, 4), (2, 1), (5, 10), (10, 3), (10, 10), (100, 7), (103, 30), (1000, 30)
])
def test_get_parallel_intervals(num_segments: int, num_workers: int):
    intervals = parallel_tools.get_parallel_intervals(num_segments, num_workers)
    assert intervals, "intervals must not be empty for a positive number of segments"
    assert intervals[0][0] == 0
    assert intervals[-1][1] == num_segments - 1
    covered = []
    for first, last in intervals:
        assert first <= last, f"empty interval ({first}, {last})"
        covered.extend(range(first, last + 1))
    assert covered == list(range(num_segments)), "intervals must cover every segment once, in order"
    assert len(intervals) <= num_workers + 1


@pytest.mark.parametrize("num_segments", [0, -1])
def test_get_parallel_intervals_without_segments(num_segments: int):
    assert parallel_tools.get_parallel_intervals(num_segments, 4) == []


def test_max_workers():
    assert parallel_tools.max_workers(1) == 1
    assert 1 <= parallel_tools.max_workers() <= parallel_tools.Default.max_core_number
    assert parallel_tools.max_workers(1000) <= parallel_tools.Default.max_core_number


@pytest.mark.parametrize("num_workers", [1, 4, None])
def test_map_segment_intervals_visits_every_segment(num_workers: int, num_segments: int = Default.num_segments):
    visits: List[int] = [0] * num_segments
    lock = threading.Lock()

    def _visit(segment_index: int):
        with lock:
            visits[segment_index] += 1

    parallel_tools.map_segment_intervals(_visit, num_segments, num_workers=num_workers, show_progress=False)
    assert visits == [1] * num_segments


def test_map_segment_intervals_without_segments():
    def _fail(segment_index: int):
        raise AssertionError(f"should not be called, got {segment_index}")

    parallel_tools.map_segment_intervals(_fail, 0, num_workers=2, show_progress=False)


def test_map_segment_intervals_reraises_worker_exception(
        num_segments: int = Default.num_segments,
        failing_segment: int = Default.failing_segment
):
    def _fail_on_one(segment_index: int):
        if segment_index == failing_segment:
            raise RuntimeError(f"bad segment {segment_index}")

    with pytest.raises(RuntimeError) as exception_info:
        parallel_tools.map_segment_intervals(_fail_on_one, num_segments, num_workers=4, show_progress=False)
    messages = [str(arg) for arg in exception_info.value.args]
    assert any(f"bad segment {failing_segment}" in message for message in messages)
    assert any(message.startswith("While processing segments") for message in messages)
