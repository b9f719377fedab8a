import numpy
from typing import List, Optional, Sequence, Text, Tuple, Dict

from cnv_caller.segments import Segment


class Default:
    reference_copy_number = 2
    max_coverage_padding = 10


class PloidyInfo:
    """
    Reference (expected) copy number by genomic region for one sample, e.g. copy number 1 on chrX for a male sample.
    Regions not listed have the default reference copy number of 2.
    """
    __slots__ = ("intervals_by_chromosome", "header_line")

    def __init__(
            self,
            intervals: Sequence[Tuple[Text, int, int, int]] = (),
            header_line: Optional[Text] = None
    ):
        self.intervals_by_chromosome: Dict[Text, List[Tuple[int, int, int]]] = {}
        for chromosome, begin, end, copy_number in intervals:
            self.intervals_by_chromosome.setdefault(chromosome, []).append((int(begin), int(end), int(copy_number)))
        for chromosome_intervals in self.intervals_by_chromosome.values():
            chromosome_intervals.sort()
        self.header_line = header_line

    def get_reference_copy_number(self, segment: Segment) -> int:
        """
        Return the reference copy number of the listed region with the largest overlap with segment, or the default
        when no listed region overlaps it.
        """
        best_overlap = 0
        best_copy_number = Default.reference_copy_number
        for begin, end, copy_number in self.intervals_by_chromosome.get(segment.chromosome, ()):
            overlap = min(end, segment.end) - max(begin, segment.begin)
            if overlap > best_overlap:
                best_overlap = overlap
                best_copy_number = copy_number
        return best_copy_number


class SampleMetrics:
    """
    Per-sample summary statistics of coverage and B-allele coverage used to parameterize copy-number models
    """
    __slots__ = ("mean_coverage", "mean_maf_coverage", "variance", "maf_variance", "max_coverage", "ploidy")

    def __init__(
            self,
            mean_coverage: float,
            mean_maf_coverage: float,
            variance: float,
            maf_variance: float,
            max_coverage: int,
            ploidy: Optional[PloidyInfo] = None
    ):
        self.mean_coverage = mean_coverage
        self.mean_maf_coverage = mean_maf_coverage
        self.variance = variance
        self.maf_variance = maf_variance
        self.max_coverage = max_coverage
        self.ploidy = ploidy

    def __repr__(self):
        return (f"SampleMetrics(mean_coverage={self.mean_coverage:.2f}, mean_maf_coverage={self.mean_maf_coverage:.2f}, "
                f"variance={self.variance:.2f}, maf_variance={self.maf_variance:.2f}, "
                f"max_coverage={self.max_coverage})")

    @staticmethod
    def from_segments(segments: Sequence[Segment], ploidy: Optional[PloidyInfo] = None) -> "SampleMetrics":
        """
        Compute summary statistics from a sample's segments
        Args:
            segments: Sequence[Segment]
                All segments of the sample, with bin counts and B-allele observations loaded
            ploidy: Optional[PloidyInfo] (Default=None)
                Reference ploidy of the sample. If None, every region has reference copy number 2.
        Returns:
            sample_metrics: SampleMetrics
        """
        median_counts = numpy.array([segment.median_count for segment in segments], dtype=float)
        mean_allele_coverages = numpy.array(
            [numpy.mean(segment.balleles.total_coverage) for segment in segments if len(segment.balleles) > 0],
            dtype=float
        )
        all_allele_coverages = numpy.array(
            [coverage for segment in segments for coverage in segment.balleles.total_coverage], dtype=float
        )
        return SampleMetrics(
            mean_coverage=float(median_counts.mean()) if median_counts.size > 0 else 0.0,
            mean_maf_coverage=float(all_allele_coverages.mean()) if all_allele_coverages.size > 0 else 0.0,
            variance=float(numpy.std(median_counts) ** 2) if median_counts.size > 0 else 0.0,
            maf_variance=float(numpy.std(mean_allele_coverages) ** 2) if mean_allele_coverages.size > 0 else 0.0,
            max_coverage=int(median_counts.max()) + Default.max_coverage_padding if median_counts.size > 0 else 0,
            ploidy=ploidy
        )

    def get_reference_copy_number(self, segment: Segment) -> int:
        return Default.reference_copy_number if self.ploidy is None else self.ploidy.get_reference_copy_number(segment)
