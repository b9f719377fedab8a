"""
Building blocks of the somatic purity / ploidy model: the ploidy hypotheses, the (coverage, MAF) model points they
imply at a given diploid coverage and purity, per-segment working records and the distance used to compare them.

Coverage and minor allele frequency (MAF) live on very different scales, so distances are computed in a space where
coverage is multiplied by a coverage weighting factor. A MAF below 0 means "not enough allele data".
"""
import numpy
import scipy.stats
from typing import List, Optional, Sequence, Dict

from cnv_caller.segments import Segment


class Default:
    missing_maf = -1.0
    outlier_cluster_flag = -1
    undersegmented_cluster_flag = -2
    diploid_ploidy_index = 3  # (copy number 2, major chromosome count 1)


def model_distance(coverage, coverage2, maf, maf2, coverage_weighting_factor: float):
    """
    Squared distance between (coverage, maf) and (coverage2, maf2) in weighted coverage / MAF space. When maf is
    missing (< 0), the coverage term is doubled instead of adding a MAF term. Works elementwise on numpy arrays.
    """
    coverage_term = ((numpy.asarray(coverage) - coverage2) * coverage_weighting_factor) ** 2
    maf = numpy.asarray(maf, dtype=float)
    return numpy.where(maf < 0, 2 * coverage_term, coverage_term + (maf - maf2) ** 2)


def estimate_diploid_maf(copy_number: int, mean_coverage: float) -> float:
    """
    Expected observed MAF of a balanced heterozygous site: E[min(X, n - X)] / n with X ~ Binomial(n, 0.5), where the
    depth n scales the mean B-allele coverage by copy_number / 2
    """
    depth = max(1, int(round(mean_coverage * copy_number / 2.0)))
    alt_counts = numpy.arange(depth + 1)
    probabilities = scipy.stats.binom.pmf(alt_counts, depth, 0.5)
    return float((probabilities * numpy.minimum(alt_counts, depth - alt_counts)).sum() / depth)


class SegmentPloidy:
    """ Hypothesis of a tumor copy number and major chromosome count, with its pure-tumor MAF """
    __slots__ = ("copy_number", "major_chromosome_count", "index", "minor_allele_frequency")

    def __init__(self, copy_number: int, major_chromosome_count: int, index: int, minor_allele_frequency: float):
        self.copy_number = copy_number
        self.major_chromosome_count = major_chromosome_count
        self.index = index
        self.minor_allele_frequency = minor_allele_frequency

    def __repr__(self):
        return f"SegmentPloidy(CN={self.copy_number}, MCC={self.major_chromosome_count})"

    @property
    def is_balanced(self) -> bool:
        return 2 * self.major_chromosome_count == self.copy_number


def initialize_ploidies(maximum_copy_number: int, mean_coverage: float) -> List[SegmentPloidy]:
    """
    Enumerate ploidy hypotheses for copy numbers 0..maximum_copy_number, major chromosome count descending from the copy
    number down to half of it
    """
    ploidies = []
    for copy_number in range(maximum_copy_number + 1):
        major_count = copy_number
        while 2 * major_count >= copy_number:
            if copy_number == 0:
                maf = estimate_diploid_maf(1, mean_coverage)
            elif 2 * major_count == copy_number:
                maf = estimate_diploid_maf(copy_number, mean_coverage)
            else:
                variant_frequency = major_count / copy_number
                maf = min(variant_frequency, 1.0 - variant_frequency)
            ploidies.append(SegmentPloidy(copy_number, major_count, len(ploidies), maf))
            major_count -= 1
    return ploidies


class ModelPoint:
    """
    Expected (coverage, MAF) of one ploidy hypothesis, or a cluster center. Accumulates the empirical coverage and MAF of
    the segments assigned to it.
    """
    __slots__ = ("coverage", "maf", "ploidy", "cluster_id", "weight", "empirical_coverage", "empirical_maf",
                 "maf_weight", "mixture_weight", "mean", "covariance")

    def __init__(self, coverage: float, maf: float, ploidy: SegmentPloidy, cluster_id: Optional[int] = None):
        self.coverage = coverage
        self.maf = maf
        self.ploidy = ploidy
        self.cluster_id = cluster_id
        self.weight = 0.0
        self.empirical_coverage = 0.0
        self.empirical_maf = 0.0
        self.maf_weight = 0.0
        # gaussian mixture component parameters, in weighted coverage / MAF space
        self.mixture_weight: Optional[float] = None
        self.mean: Optional[numpy.ndarray] = None
        self.covariance: Optional[numpy.ndarray] = None

    def __repr__(self):
        return f"ModelPoint(coverage={self.coverage:.2f}, maf={self.maf:.3f}, {self.ploidy})"

    @property
    def copy_number(self) -> int:
        return self.ploidy.copy_number


class ClusterInfo:
    """ Distances of the segments of one cluster to their nearest model points, and summaries of them """
    __slots__ = ("cluster_id", "distances", "major_chromosome_count_ratios", "median_distance", "mean_distance",
                 "variance", "entropy")

    def __init__(self, cluster_id: int):
        self.cluster_id = cluster_id
        self.distances: List[float] = []
        self.major_chromosome_count_ratios: List[float] = []
        self.median_distance = 0.0
        self.mean_distance = 0.0
        self.variance = 0.0
        self.entropy = 0.0

    def compute_metrics(self):
        distances = numpy.array(self.distances, dtype=float)
        self.median_distance = float(numpy.median(distances))
        self.mean_distance = float(distances.mean())
        self.variance = float(distances.std())
        # low entropy: every segment of the cluster is nearest to the same genotype
        _, counts = numpy.unique(self.major_chromosome_count_ratios, return_counts=True)
        self.entropy = float(scipy.stats.entropy(counts))


class SegmentInfo:
    """ Working record of one segment used for purity / ploidy modelling """
    __slots__ = ("segment", "coverage", "maf", "weight", "cluster_id", "final_cluster_id", "distance",
                 "k_nearest_neighbour", "cluster", "ploidy")

    def __init__(self, segment: Segment, coverage: float, maf: float, weight: float):
        self.segment = segment
        self.coverage = coverage
        self.maf = maf
        self.weight = weight
        self.cluster_id: Optional[int] = None
        self.final_cluster_id: Optional[int] = None
        self.distance = 0.0
        self.k_nearest_neighbour = 0.0
        self.cluster: Optional[ClusterInfo] = None
        self.ploidy: Optional[SegmentPloidy] = None

    def __repr__(self):
        return f"SegmentInfo({self.segment}, coverage={self.coverage:.2f}, maf={self.maf:.3f})"

    @property
    def has_maf(self) -> bool:
        return self.maf >= 0


class CoveragePurityModel:
    """ One (diploid coverage, purity) hypothesis and how well it explains the usable segments """
    __slots__ = ("diploid_coverage", "purity", "percent_cn", "copy_numbers", "ploidy", "precision_deviation",
                 "accuracy_deviation", "cluster_deviation", "deviation", "percent_normal", "diploid_distance",
                 "inter_model_distance", "heterogeneity_index")

    def __init__(self, diploid_coverage: float, purity: float, maximum_copy_number: int):
        self.diploid_coverage = diploid_coverage
        self.purity = purity
        self.percent_cn = numpy.zeros(maximum_copy_number + 1, dtype=float)
        # copy number assigned to each usable segment, with copy-neutral LOH counted as 1
        self.copy_numbers: List[int] = []
        self.ploidy = 0.0
        self.precision_deviation = 0.0
        self.accuracy_deviation = 0.0
        self.cluster_deviation = 0.0
        self.deviation = numpy.inf
        self.percent_normal = 0.0
        self.diploid_distance = 0.0
        self.inter_model_distance: Optional[float] = None
        self.heterogeneity_index: Optional[float] = None

    def __repr__(self):
        return (f"CoveragePurityModel(diploid_coverage={self.diploid_coverage}, purity={self.purity:.2f}, "
                f"deviation={self.deviation:.5f}, ploidy={self.ploidy:.2f})")

    def to_dict(self) -> Dict[str, float]:
        return {
            "purity": self.purity,
            "diploid_coverage": self.diploid_coverage,
            "deviation": self.deviation,
            "accuracy_deviation": self.accuracy_deviation,
            "precision_deviation": self.precision_deviation,
            "cluster_deviation": self.cluster_deviation,
            "ploidy": self.ploidy,
            "percent_normal": self.percent_normal,
            "percent_cn2": float(self.percent_cn[2]) if self.percent_cn.size > 2 else 0.0,
            "diploid_distance": self.diploid_distance,
            "heterogeneity_index": numpy.nan if self.heterogeneity_index is None else self.heterogeneity_index
        }


def build_model_points(
        diploid_coverage: float,
        purity: float,
        ploidies: Sequence[SegmentPloidy]
) -> List[ModelPoint]:
    """
    Expected (coverage, MAF) of every ploidy hypothesis in a sample that is a mixture of tumor (with the given purity)
    and diploid normal cells
    """
    diploid_maf = ploidies[Default.diploid_ploidy_index].minor_allele_frequency
    model_points = []
    for ploidy in ploidies:
        pure_coverage = diploid_coverage * ploidy.copy_number / 2.0
        coverage = purity * pure_coverage + (1 - purity) * diploid_coverage
        denominator = purity * ploidy.copy_number + (1 - purity) * 2
        if ploidy.is_balanced:
            numerator = purity * ploidy.copy_number * ploidy.minor_allele_frequency + (1 - purity) * 2 * diploid_maf
            maf = numerator / denominator if denominator > 0 else 0.0
        else:
            numerator = purity * ploidy.copy_number * ploidy.minor_allele_frequency + (1 - purity)
            maf = numerator / denominator
        model_points.append(ModelPoint(coverage, maf, ploidy))
    return model_points
