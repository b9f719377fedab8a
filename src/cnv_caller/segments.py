import numpy
from typing import List, Tuple, Optional, Sequence, Iterable, Text

from cnv_caller import common
from cnv_caller.errors import SegmentAlignmentError


AlleleCount = Tuple[int, int]  # (reference count, variant count) at one heterozygous site


class Balleles:
    """
    B-allele observations for one segment: (reference count, variant count) at each informative site, in genomic order
    """
    __slots__ = ("counts", "median_counts")

    def __init__(self, counts: Optional[Iterable[AlleleCount]] = None):
        self.counts: List[AlleleCount] = [(int(ref), int(alt)) for ref, alt in counts] if counts is not None else []
        # (median major allele count, median minor allele count) once set_median_counts has been called
        self.median_counts: Optional[Tuple[float, float]] = None

    def __len__(self) -> int:
        return len(self.counts)

    @property
    def total_coverage(self) -> List[int]:
        return [ref + alt for ref, alt in self.counts]

    @property
    def frequencies(self) -> List[float]:
        """ variant allele frequency at each site with nonzero coverage """
        return [alt / (ref + alt) for ref, alt in self.counts if ref + alt > 0]

    @property
    def minor_allele_frequencies(self) -> List[float]:
        return [min(frequency, 1.0 - frequency) for frequency in self.frequencies]

    def compute_median_counts(self) -> Optional[Tuple[float, float]]:
        """ Medians across sites of the larger and of the smaller of the two allele counts, None without sites """
        if not self.counts:
            return None
        counts = numpy.array(self.counts)
        return float(numpy.median(counts.max(axis=1))), float(numpy.median(counts.min(axis=1)))

    def set_median_counts(self):
        self.median_counts = self.compute_median_counts()

    def extend(self, other: "Balleles"):
        self.counts.extend(other.counts)
        self.median_counts = None


class Segment:
    """
    A genomic interval with its per-bin read depths, B-allele observations and the mutable results of copy-number
    calling. Coordinates are 0-based half-open: length = end - begin.
    """
    __slots__ = ("chromosome", "begin", "end", "counts", "balleles", "copy_number", "second_best_copy_number",
                 "major_chromosome_count", "major_chromosome_count_score", "qscore", "de_novo_qscore", "filter",
                 "model_distance", "runner_up_model_distance", "is_heterogeneous", "copy_number_swapped")
    pass_filter: Text = "PASS"

    def __init__(
            self,
            chromosome: Text,
            begin: int,
            end: int,
            counts: Optional[Iterable[float]] = None,
            balleles: Optional[Balleles] = None,
            copy_number: int = -1
    ):
        if end < begin:
            raise ValueError(f"Segment {chromosome}:{begin}-{end} ends before it begins")
        self.chromosome = chromosome
        self.begin = int(begin)
        self.end = int(end)
        self.counts = numpy.asarray(list(counts) if counts is not None else [], dtype=float)
        self.balleles = balleles if balleles is not None else Balleles()
        self.copy_number = copy_number
        self.second_best_copy_number: Optional[int] = None
        self.major_chromosome_count: Optional[int] = None
        self.major_chromosome_count_score: Optional[float] = None
        self.qscore = 0.0
        self.de_novo_qscore: Optional[float] = None
        self.filter = Segment.pass_filter
        self.model_distance = 0.0
        self.runner_up_model_distance = 0.0
        self.is_heterogeneous = False
        self.copy_number_swapped = False

    def __repr__(self):
        return f"Segment({self.chromosome}:{self.begin}-{self.end}, CN={self.copy_number})"

    @property
    def length(self) -> int:
        return self.end - self.begin

    @property
    def bin_count(self) -> int:
        return len(self.counts)

    @property
    def median_count(self) -> float:
        return float(numpy.median(self.counts)) if self.counts.size > 0 else 0.0

    @property
    def mean_count(self) -> float:
        return float(numpy.mean(self.counts)) if self.counts.size > 0 else 0.0

    @property
    def is_pass(self) -> bool:
        return self.filter == Segment.pass_filter

    def same_interval(self, other: "Segment") -> bool:
        return self.chromosome == other.chromosome and self.begin == other.begin and self.end == other.end

    def reset_calls(self):
        """ Clear all inferred fields, leaving the observations """
        self.copy_number = -1
        self.second_best_copy_number = None
        self.major_chromosome_count = None
        self.major_chromosome_count_score = None
        self.qscore = 0.0
        self.de_novo_qscore = None
        self.filter = Segment.pass_filter
        self.model_distance = 0.0
        self.runner_up_model_distance = 0.0
        self.is_heterogeneous = False
        self.copy_number_swapped = False


def median_minor_allele_frequency(segment: Segment) -> Optional[float]:
    """ Element at index n // 2 of the sorted minor allele frequencies, None without allele data """
    mafs = segment.balleles.minor_allele_frequencies
    return common.sorted_middle_element(mafs) if mafs else None


def check_segments_aligned(segments_by_sample: Sequence[Sequence[Segment]], sample_names: Sequence[Text]):
    """
    Assert that every sample's segment list refers to the same genomic intervals, in the same order
    Args:
        segments_by_sample: Sequence[Sequence[Segment]]
            One segment list per sample
        sample_names: Sequence[Text]
            Sample names, used in error messages
    Raises:
        SegmentAlignmentError if lengths or intervals differ
    """
    if not segments_by_sample:
        return
    reference_name, reference = sample_names[0], segments_by_sample[0]
    for name, segments in zip(sample_names[1:], segments_by_sample[1:]):
        if len(segments) != len(reference):
            raise SegmentAlignmentError(
                f"Sample {name} has {len(segments)} segments but {reference_name} has {len(reference)}"
            )
        for index, (segment, reference_segment) in enumerate(zip(segments, reference)):
            if not segment.same_interval(reference_segment):
                raise SegmentAlignmentError(
                    f"Segment {index} of sample {name} ({segment.chromosome}:{segment.begin}-{segment.end}) does not "
                    f"match {reference_name} ({reference_segment.chromosome}:{reference_segment.begin}-"
                    f"{reference_segment.end})"
                )
