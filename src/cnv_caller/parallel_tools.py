#!/usr/bin/env python

import logging
import warnings
import concurrent.futures
from tqdm.auto import tqdm as tqdm
from tqdm import TqdmWarning
from typing import Callable, List, Tuple, Optional, Any

from cnv_caller import common


tqdm.monitor_interval = 0
logger = logging.getLogger(__name__)
SegmentInterval = Tuple[int, int]  # inclusive (first, last) segment indices
SegmentFunc = Callable[[int], Any]


class Default:
    update_time = 0.5  # seconds
    max_core_number = common.Default.max_core_number


def max_workers(num_jobs: Optional[int] = None) -> int:
    """ Number of workers for the per-segment fan-out: the available cpu count, but never more than 30 """
    return common.num_jobs_to_use(num_jobs, max_jobs=Default.max_core_number)


def get_parallel_intervals(num_segments: int, num_workers: int) -> List[SegmentInterval]:
    """
    Partition segment indices [0, num_segments) into contiguous inclusive intervals, one per worker. Each interval
    but the last spans num_segments // num_workers + 1 segments; the last absorbs the remainder.
    Args:
        num_segments: int
            Number of segments to partition
        num_workers: int
            Number of workers to partition over
    Returns:
        intervals: List[SegmentInterval]
            Non-empty, disjoint (first, last) intervals that together cover every segment index in order
    """
    if num_segments <= 0:
        return []
    num_workers = max(1, num_workers)
    step = num_segments // num_workers
    intervals = [(0, step)]
    cumulative = step + 1
    while cumulative + step + 1 < num_segments - 1:
        intervals.append((cumulative, cumulative + step))
        cumulative += step + 1
    intervals.append((cumulative, num_segments - 1))
    # clip to the last segment and drop empty tail intervals
    return [
        (first, min(last, num_segments - 1)) for first, last in intervals if first <= min(last, num_segments - 1)
    ]


def _process_interval(func: SegmentFunc, interval: SegmentInterval) -> int:
    first, last = interval
    logger.debug(f"Launching task for segments {first} - {last}")
    for segment_index in range(first, last + 1):
        func(segment_index)
    logger.debug(f"Finished task for segments {first} - {last}")
    return last - first + 1


def map_segment_intervals(
        func: SegmentFunc,
        num_segments: int,
        num_workers: Optional[int] = None,
        description: str = "segments",
        show_progress: bool = True,
        update_time: float = Default.update_time
):
    """
    Call func(segment_index) for every segment index, fanning out contiguous intervals of indices over a pool of
    threads. Segments within an interval are processed sequentially, in order. func must only write results for the
    segment index it is given, so no further synchronization is needed.
    Blocks until every interval has finished; if any call raised, re-raises the first exception (in interval order)
    after all workers have stopped.
    Args:
        func: SegmentFunc
            Function to call on each segment index
        num_segments: int
            Number of segments
        num_workers: Optional[int] (Default=None)
            Number of threads. If None, use max_workers()
        description: str (Default="segments")
            Descriptive text for progress bar
        show_progress: bool (Default=True)
            If True, display progress with tqdm (only when logging at INFO or more verbose)
        update_time: float (Default=0.5)
            Minimum time in seconds between progress bar updates
    """
    num_workers = max_workers() if num_workers is None else max(1, num_workers)
    intervals = get_parallel_intervals(num_segments, num_workers)
    if not intervals:
        return
    disable = not show_progress or not logger.isEnabledFor(logging.INFO)
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=TqdmWarning)
        with tqdm(total=num_segments, disable=disable, mininterval=update_time, smoothing=0,
                  desc=description) as progress, \
                concurrent.futures.ThreadPoolExecutor(max_workers=min(num_workers, len(intervals))) as executor:
            futures = [executor.submit(_process_interval, func, interval) for interval in intervals]
            for future in concurrent.futures.as_completed(futures):
                if future.exception() is None:
                    progress.update(future.result())
    # join barrier is the executor shutdown above; report failures in interval order
    for interval, future in zip(intervals, futures):
        err = future.exception()
        if err is not None:
            common.add_exception_context(err, f"While processing segments {interval[0]} - {interval[1]}")
            raise err
