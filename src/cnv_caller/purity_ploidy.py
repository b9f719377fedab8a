"""
Joint estimate of tumor purity and diploid coverage for one somatic sample.

Usable segments are summarized by (median coverage, median MAF). Every (diploid coverage, purity) hypothesis implies
a set of model points, one per ploidy; a hypothesis is scored by how far segments lie from their nearest model point
(precision), how far model points lie from the segments assigned to them (accuracy) and, with enough segments, how
coherent the clusters of segments are with respect to the model points. A coarse grid search with a composite
score picks a neighbourhood, and a fine grid search in that neighbourhood minimizes the deviation.
"""
import logging
import collections
import numpy
from typing import List, Optional, Sequence, Dict, Tuple

from cnv_caller import common
from cnv_caller.config import SomaticCallerParameters, ClusteringMode
from cnv_caller.errors import NotEnoughUsableSegmentsError, UncallableDataError
from cnv_caller.segments import Segment
from cnv_caller.somatic_models import (
    SegmentPloidy, ModelPoint, SegmentInfo, ClusterInfo, CoveragePurityModel, model_distance, build_model_points,
    Default as ModelDefault
)
from cnv_caller.gaussian_mixture import GaussianMixtureModel
from cnv_caller.density_clustering import run_density_clustering
from cnv_caller.reporting import Reporter


logger = logging.getLogger(__name__)


class Default:
    min_segment_length = 5000
    min_weighting_variant_frequencies = 10
    large_cohort_segments = 100
    variant_frequency_retry_step = 15
    min_variant_frequency_retry = 5
    max_required_valid_maf = 20
    min_usable_segments = 3
    min_clustering_segments = 100
    max_cluster_centroids = 10
    k_nearest_neighbours = 10
    k_nearest_neighbour_quantile = 0.99
    min_percent_purity = 20
    max_percent_purity = 100
    coarse_purity_step = 5
    fine_coverage_window = 5
    fine_purity_window = 10
    min_coverage_level = 10
    dummy_maf_weight = 1e7
    min_refinement_maf = 0.4
    genome_doubling_fraction = 0.8
    min_cn_events = 0.001
    small_sample_segments = 500
    small_sample_deviation_factor = 2.0
    # gaussian mixture initialization
    initial_percent_purity = 90
    initial_num_components = 6
    initial_distance_quantile = 0.15
    min_num_clusters = 4
    max_num_clusters = 8
    num_restarts = 10
    distance_threshold_quantile = 0.8
    max_attempt_fraction = 0.3
    min_weighting_factor_numerator = 0.1
    weighting_factor_levels = 10
    min_weighting_factor_step = 1e-5
    # density clustering
    max_cluster_variance_spread = 0.015
    max_large_cluster_share = 0.9
    max_large_cluster_count = 4
    remaining_rho_cutoff = 1.0
    # low-purity penalty on the CN2 score term: 1.5 at purity 0.2 falling to 0.75 at purity 1
    low_purity_penalty_max = 1.5
    low_purity_penalty_range = 1.0
    purity_score_range = 0.8
    min_score_purity = 0.2
    min_score_normalizer = 0.01


def get_usable_segments(
        segments: Sequence[Segment],
        is_enrichment: bool,
        min_variant_frequencies: int
) -> List[SegmentInfo]:
    """
    Summarize the segments that are informative for purity / ploidy modelling
    Args:
        segments: Sequence[Segment]
            All segments of the sample
        is_enrichment: bool
            If True, the overall median coverage is the median of per-segment medians rather than of all bins
        min_variant_frequencies: int
            Segments with fewer variant frequencies than this get the missing-MAF sentinel
    Returns:
        usable_segments: List[SegmentInfo]
            Segments at least 5 kb long whose median coverage is at most twice the overall median
    """
    if is_enrichment:
        all_counts = [segment.median_count for segment in segments]
    else:
        all_counts = numpy.concatenate([segment.counts for segment in segments]) if segments else []
    if len(all_counts) == 0:
        return []
    _, overall_median, _ = common.quartiles(all_counts)

    usable_segments = []
    for segment in segments:
        if segment.length < Default.min_segment_length:
            continue
        minor_allele_frequencies = segment.balleles.minor_allele_frequencies
        num_frequencies = len(minor_allele_frequencies)
        maf = ModelDefault.missing_maf if num_frequencies < min_variant_frequencies \
            else common.sorted_middle_element(minor_allele_frequencies)
        coverage = segment.median_count
        if coverage > overall_median * 2:
            continue
        weight = float(segment.length if len(segments) > Default.large_cohort_segments else segment.bin_count)
        if num_frequencies < Default.min_weighting_variant_frequencies:
            weight *= num_frequencies / Default.min_weighting_variant_frequencies
        usable_segments.append(SegmentInfo(segment, coverage, maf, weight))
    return usable_segments


def get_diploid_coverage(median_coverage_level: int, ploidy: float) -> float:
    return median_coverage_level / ploidy * 2.0


def calculate_model_distance(
        model1: CoveragePurityModel,
        model2: CoveragePurityModel,
        usable_segments: Sequence[SegmentInfo],
        genome_length: int
) -> float:
    """ Length-weighted absolute difference between the copy-number profiles of two models """
    if len(model1.copy_numbers) != len(model2.copy_numbers):
        logger.warning("Models do not have the same number of usable copy-number segments")
        return 1.0
    return sum(
        abs(cn1 - cn2) * info.segment.length / genome_length
        for cn1, cn2, info in zip(model1.copy_numbers, model2.copy_numbers, usable_segments)
    )


class PurityPloidyModeler:
    def __init__(
            self,
            ploidies: Sequence[SegmentPloidy],
            mean_coverage: float,
            parameters: Optional[SomaticCallerParameters] = None,
            random_state: Optional[numpy.random.Generator] = None,
            reporter: Optional[Reporter] = None
    ):
        self.ploidies = list(ploidies)
        self.mean_coverage = mean_coverage
        self.parameters = SomaticCallerParameters() if parameters is None else parameters
        self.random_state = numpy.random.default_rng(self.parameters.random_seed) if random_state is None \
            else random_state
        self.reporter = reporter
        self.coverage_weighting_factor = 1.0
        self.usable_segments: List[SegmentInfo] = []
        self.num_clusters = 0
        self.centroids_maf: List[float] = []
        self.centroids_coverage: List[float] = []
        self.heterogeneous_segment_scores: Dict[Segment, float] = {}

    def get_model_distance(self, coverage, coverage2, maf, maf2):
        return model_distance(coverage, coverage2, maf, maf2, self.coverage_weighting_factor)

    def _distance_matrix(self, rows: Sequence, columns: Sequence) -> numpy.ndarray:
        """ rows x columns squared model distances between objects with coverage and maf attributes """
        return self.get_model_distance(
            numpy.array([row.coverage for row in rows], dtype=float)[:, None],
            numpy.array([column.coverage for column in columns], dtype=float)[None, :],
            numpy.array([row.maf for row in rows], dtype=float)[:, None],
            numpy.array([column.maf for column in columns], dtype=float)[None, :]
        ).reshape(len(rows), len(columns))

    def select_usable_segments(self, segments: Sequence[Segment]) -> List[SegmentInfo]:
        """
        Select usable segments, lowering the required number of variant frequencies until enough segments have a
        usable MAF
        """
        min_variant_frequencies = self.parameters.minimum_variant_frequencies_for_informative_segment
        while True:
            usable_segments = get_usable_segments(segments, self.parameters.is_enrichment, min_variant_frequencies)
            valid_maf_count = sum(info.has_maf for info in usable_segments)
            if valid_maf_count > min(Default.max_required_valid_maf, len(segments)):
                break
            if min_variant_frequencies <= Default.min_variant_frequency_retry:
                break
            min_variant_frequencies = max(Default.min_variant_frequency_retry,
                                          min_variant_frequencies - Default.variant_frequency_retry_step)
        logger.info(f"Modeling overall coverage/purity across {len(usable_segments)} segments")
        if len(usable_segments) < Default.min_usable_segments:
            raise NotEnoughUsableSegmentsError(
                f"Cannot model coverage/purity with less than {Default.min_usable_segments} segments."
            )
        return usable_segments

    def set_coverage_weighting_factor(self, median_coverage_level: float, evenness_score: Optional[float]):
        parameters = self.parameters
        if evenness_score is not None and evenness_score < parameters.evenness_score_threshold:
            if parameters.coverage_weighting <= parameters.coverage_weighting_with_maf_segmentation:
                raise ValueError(
                    f"coverage_weighting ({parameters.coverage_weighting}) should be larger than "
                    f"coverage_weighting_with_maf_segmentation ({parameters.coverage_weighting_with_maf_segmentation})"
                )
            scaler = max(evenness_score - parameters.min_evenness_score, 0.0) / \
                (parameters.evenness_score_threshold - parameters.min_evenness_score)
            weighting = parameters.coverage_weighting_with_maf_segmentation + \
                (parameters.coverage_weighting - parameters.coverage_weighting_with_maf_segmentation) * scaler
        else:
            weighting = parameters.coverage_weighting
        self.coverage_weighting_factor = weighting / max(median_coverage_level, 1)

    # clustering

    def k_nearest_neighbour_cutoff(self, usable_segments: Sequence[SegmentInfo]) -> float:
        """
        Record, for each segment, the sum of distances to its nearest neighbours, and return the 99th percentile of
        those sums: segments above it are outliers that belong to no cluster
        """
        distances = self._distance_matrix(usable_segments, usable_segments)
        numpy.fill_diagonal(distances, numpy.inf)
        num_neighbours = min(Default.k_nearest_neighbours, len(usable_segments) - 1)
        nearest = numpy.sort(distances, axis=1)[:, :num_neighbours].sum(axis=1)
        for info, neighbour_distance in zip(usable_segments, nearest):
            info.k_nearest_neighbour = float(neighbour_distance)
        nearest = numpy.sort(nearest)
        return float(nearest[min(int(round(len(nearest) * Default.k_nearest_neighbour_quantile)), len(nearest) - 1)])

    def initialize_random_model_points(
            self,
            segments: Sequence[SegmentInfo],
            num_clusters: int,
            distance_threshold: float
    ) -> List[ModelPoint]:
        """
        Seed cluster centers by subsampling segments, accepting a new segment only if it is farther than
        distance_threshold from the previously accepted one (or too many attempts have failed), so that small clusters
        also get seeded
        """
        candidates = [info for info in segments
                      if info.cluster_id != ModelDefault.outlier_cluster_flag and info.has_maf]
        if not candidates:
            return []
        last_index = int(self.random_state.integers(len(candidates)))
        used = [candidates[last_index]]
        attempts = 0
        while len(used) < num_clusters:
            new_index = int(self.random_state.integers(len(candidates)))
            attempts += 1
            distance = float(self.get_model_distance(candidates[last_index].coverage, candidates[new_index].coverage,
                                                     candidates[last_index].maf, candidates[new_index].maf))
            if distance > distance_threshold or attempts / len(candidates) > Default.max_attempt_fraction:
                used.append(candidates[new_index])
                last_index = new_index
                attempts = 0
        diploid_ploidy = self.ploidies[ModelDefault.diploid_ploidy_index]
        return [ModelPoint(info.coverage, info.maf, diploid_ploidy, cluster_id=cluster_id)
                for cluster_id, info in enumerate(used, start=1)]

    def initialize_model_points_from_model(
            self,
            segments: Sequence[SegmentInfo],
            diploid_coverage: float,
            percent_purity: int,
            num_clusters: int
    ) -> List[ModelPoint]:
        """ The num_clusters model points of a purity model whose 15th-percentile distance to segments is smallest """
        model_points = build_model_points(diploid_coverage, percent_purity / 100.0, self.ploidies)
        maf_segments = [info for info in segments if info.has_maf]
        if not maf_segments:
            return []
        distances = numpy.sort(self._distance_matrix(model_points, maf_segments), axis=1)
        quantile_index = min(int(round(len(maf_segments) * Default.initial_distance_quantile)), len(maf_segments) - 1)
        scores = distances[:, quantile_index]
        selected = []
        for cluster_id, point_index in enumerate(numpy.argsort(scores, kind="stable")[:num_clusters], start=1):
            model_points[point_index].cluster_id = cluster_id
            selected.append(model_points[point_index])
        return selected

    def compute_silhouette(self, usable_segments: Sequence[SegmentInfo], num_clusters: int) -> float:
        """
        Mean over clusters of (median between-cluster distance - median within-cluster distance) / max of the two
        Raises:
            UncallableDataError if the distance tables would not fit in the configured memory threshold
        """
        clustered = [info for info in usable_segments
                     if info.has_maf and info.cluster_id is not None and info.cluster_id > 0]
        labels = numpy.array([info.cluster_id for info in clustered], dtype=int)
        sizes = numpy.array([(labels == cluster_id).sum() for cluster_id in range(1, num_clusters + 1)], dtype=float)
        total = float(len(clustered))
        required_memory = float((sizes * sizes + sizes * (total - sizes) * numpy.dtype(numpy.float32).itemsize).sum())
        if required_memory > self.parameters.clustering_ram_threshold:
            raise UncallableDataError(
                f"Number of segments {int(total)} exceeds allowed maximal number of segments for "
                f"{self.parameters.clustering_ram_threshold:g} RAM threshold."
            )
        distances = self._distance_matrix(clustered, clustered)
        not_self = ~numpy.eye(len(clustered), dtype=bool)
        silhouette = 0.0
        for cluster_id in range(1, num_clusters + 1):
            in_cluster = labels == cluster_id
            within = distances[numpy.ix_(in_cluster, in_cluster)][not_self[numpy.ix_(in_cluster, in_cluster)]]
            between = distances[numpy.ix_(in_cluster, ~in_cluster)].ravel()
            if within.size > 2 and between.size > 2:
                a, b = numpy.median(within), numpy.median(between)
                if max(a, b) > 0:
                    silhouette += (b - a) / max(a, b)
        return silhouette / num_clusters

    def best_coverage_weighting_factor(
            self,
            usable_segments: Sequence[SegmentInfo],
            max_coverage_level: int,
            median_coverage_level: int,
            k_nearest_neighbour_cutoff: float
    ) -> float:
        """ Coverage weighting factor maximizing the likelihood of a gaussian mixture seeded from a purity model """
        max_factor = self.parameters.coverage_weighting / max(median_coverage_level, 1)
        min_factor = Default.min_weighting_factor_numerator / max(max_coverage_level, 1)
        step = max(Default.min_weighting_factor_step, (max_factor - min_factor) / Default.weighting_factor_levels)
        best_likelihood = -numpy.inf
        best_factor = self.coverage_weighting_factor
        for coverage_weighting in numpy.arange(min_factor, max_factor, step):
            model_points = self.initialize_model_points_from_model(
                usable_segments, median_coverage_level / 2.0, Default.initial_percent_purity,
                Default.initial_num_components
            )
            likelihood = GaussianMixtureModel(
                model_points, usable_segments, coverage_weighting, k_nearest_neighbour_cutoff
            ).run_expectation_maximization()
            if likelihood > best_likelihood:
                best_likelihood = likelihood
                best_factor = float(coverage_weighting)
        return best_factor

    def best_num_clusters(
            self,
            usable_segments: Sequence[SegmentInfo],
            coverage_weighting: float,
            k_nearest_neighbour_cutoff: float
    ) -> List[ModelPoint]:
        """ Model points of the gaussian mixture (4 to 7 components, random restarts) with the best silhouette """
        candidates = [info for info in usable_segments
                      if info.cluster_id != ModelDefault.outlier_cluster_flag and info.has_maf]
        distances = self._distance_matrix(candidates, candidates)
        distances = numpy.sort(distances[~numpy.eye(len(candidates), dtype=bool)])
        if distances.size == 0:
            return []
        distance_threshold = distances[min(int(round(distances.size * Default.distance_threshold_quantile)),
                                           distances.size - 1)]
        best_silhouette = -numpy.inf
        best_model_points = []
        for num_clusters in range(Default.min_num_clusters, Default.max_num_clusters):
            for _ in range(Default.num_restarts):
                model_points = self.initialize_random_model_points(usable_segments, num_clusters, distance_threshold)
                GaussianMixtureModel(
                    model_points, usable_segments, coverage_weighting, k_nearest_neighbour_cutoff
                ).run_expectation_maximization()
                silhouette = self.compute_silhouette(usable_segments, num_clusters)
                if silhouette > best_silhouette:
                    best_silhouette = silhouette
                    best_model_points = model_points
        return best_model_points

    def _gaussian_mixture_clustering(
            self,
            usable_segments: Sequence[SegmentInfo],
            max_coverage_level: int,
            median_coverage_level: int,
            k_nearest_neighbour_cutoff: float
    ):
        coverage_weighting = self.best_coverage_weighting_factor(
            usable_segments, max_coverage_level, median_coverage_level, k_nearest_neighbour_cutoff
        )
        model_points = self.best_num_clusters(usable_segments, coverage_weighting, k_nearest_neighbour_cutoff)
        self.num_clusters = len(model_points)
        GaussianMixtureModel(
            model_points, usable_segments, coverage_weighting, k_nearest_neighbour_cutoff
        ).run_expectation_maximization()
        for info in usable_segments:
            info.final_cluster_id = info.cluster_id

    def _select_centroid_cutoff(self, usable_segments: Sequence[SegmentInfo], k_nearest_neighbour_cutoff: float) -> float:
        """
        Cluster over a descending sweep of centroid cutoffs and pick the cutoff that gives the modal number of clusters
        """
        parameters = self.parameters
        step = (parameters.upper_centroid_cutoff - parameters.lower_centroid_cutoff) / parameters.centroid_cutoff_step
        centroid_cutoffs = [
            parameters.lower_centroid_cutoff + index * step for index in range(parameters.centroid_cutoff_step)
            if parameters.lower_centroid_cutoff + index * step < parameters.upper_centroid_cutoff
        ][::-1]
        num_clusters = []
        for centroid_cutoff in centroid_cutoffs:
            _, cluster_count = run_density_clustering(
                usable_segments, self.coverage_weighting_factor, k_nearest_neighbour_cutoff, centroid_cutoff
            )
            num_clusters.append(cluster_count)
            logger.debug(f"Density clustering for cutoff {centroid_cutoff:.5f}: {cluster_count} clusters")

        # counts are kept in order of first occurrence
        counts = collections.Counter(num_clusters)
        max_count = max(counts.values())
        cluster_modes = [value for value, count in counts.items() if count == max_count]
        if len(cluster_modes) == 1:
            cluster_count = cluster_modes[0]
        elif len(cluster_modes) < 4:
            cluster_count = cluster_modes[1] if cluster_modes[1] < parameters.max_cluster_number else cluster_modes[0]
        else:
            # every cutoff gives a different answer: fall back to a conservative cutoff
            return parameters.default_centroid_cutoff
        return centroid_cutoffs[num_clusters.index(cluster_count)]

    def _density_clustering(self, usable_segments: Sequence[SegmentInfo], k_nearest_neighbour_cutoff: float):
        centroid_cutoff = self._select_centroid_cutoff(usable_segments, k_nearest_neighbour_cutoff)
        logger.info(f"Running density clustering with selected cutoff {centroid_cutoff:.5f}")
        clustering, best_num_clusters = run_density_clustering(
            usable_segments, self.coverage_weighting_factor, k_nearest_neighbour_cutoff, centroid_cutoff
        )
        self.centroids_maf = clustering.get_centroids_maf()
        self.centroids_coverage = clustering.get_centroids_coverage()
        variances = numpy.array(
            clustering.get_centroids_variance(self.centroids_maf, self.centroids_coverage, best_num_clusters)
        )
        sizes = numpy.array(clustering.get_clusters_size(best_num_clusters), dtype=float)

        # clusters that look like several clusters lumped together
        is_large = (variances >= variances.mean()) & (variances.std() > Default.max_cluster_variance_spread) & \
            (sizes / max(sizes.sum(), 1.0) < Default.max_large_cluster_share) & \
            (best_num_clusters < Default.max_large_cluster_count) if best_num_clusters > 0 \
            else numpy.zeros(0, dtype=bool)
        if not is_large.any():
            for info in usable_segments:
                info.final_cluster_id = info.cluster_id
            self.num_clusters = best_num_clusters
            return

        large_clusters = {cluster_id for cluster_id, large in enumerate(is_large, start=1) if large}
        small_clusters = [cluster_id for cluster_id in range(1, best_num_clusters + 1)
                          if cluster_id not in large_clusters]
        remaining_segments = []
        for info in usable_segments:
            if info.cluster_id in large_clusters:
                info.final_cluster_id = ModelDefault.undersegmented_cluster_flag
                remaining_segments.append(info)
            elif info.cluster_id is not None and info.cluster_id > 0:
                info.final_cluster_id = small_clusters.index(info.cluster_id) + 1
            else:
                info.final_cluster_id = info.cluster_id
        self.centroids_maf = [maf for cluster_id, maf in enumerate(self.centroids_maf, start=1)
                              if cluster_id not in large_clusters]
        self.centroids_coverage = [coverage for cluster_id, coverage in enumerate(self.centroids_coverage, start=1)
                                   if cluster_id not in large_clusters]

        # re-cluster the segments of the large clusters on their own and append the new clusters
        remaining_clustering, remaining_num_clusters = run_density_clustering(
            remaining_segments, self.coverage_weighting_factor, k_nearest_neighbour_cutoff, centroid_cutoff,
            rho_cutoff=Default.remaining_rho_cutoff
        )
        self.centroids_maf.extend(remaining_clustering.get_centroids_maf())
        self.centroids_coverage.extend(remaining_clustering.get_centroids_coverage())
        offset = len(small_clusters)
        for info in remaining_segments:
            info.final_cluster_id = info.cluster_id + offset if info.cluster_id is not None and info.cluster_id > 0 \
                else info.cluster_id
        self.num_clusters = offset + remaining_num_clusters

    def cluster_segments(
            self,
            usable_segments: Sequence[SegmentInfo],
            max_coverage_level: int,
            median_coverage_level: int
    ):
        k_nearest_neighbour_cutoff = self.k_nearest_neighbour_cutoff(usable_segments)
        if self.parameters.clustering_mode == ClusteringMode.GaussianMixture:
            self._gaussian_mixture_clustering(
                usable_segments, max_coverage_level, median_coverage_level, k_nearest_neighbour_cutoff
            )
        elif self.parameters.clustering_mode == ClusteringMode.Density:
            self._density_clustering(usable_segments, k_nearest_neighbour_cutoff)
        else:
            raise ValueError(f"Unsupported clustering mode: {self.parameters.clustering_mode}")
        logger.info(f"Found {self.num_clusters} segment clusters")

    # model deviation

    def refine_diploid_maf(self, segments: Sequence[SegmentInfo], model_points: Sequence[ModelPoint]):
        """
        Replace the MAF of every balanced even copy-number model point by a weighted mean of its expected MAF (with a
        large pseudo-weight) and the MAF of the segments nearest to it
        """
        num_levels = 1 + self.parameters.maximum_copy_number // 2
        weighted_maf = numpy.zeros(num_levels, dtype=float)
        maf_weight = numpy.zeros(num_levels, dtype=float)
        balanced = [point.copy_number % 2 == 0 and point.ploidy.is_balanced for point in model_points]
        for point, is_balanced in zip(model_points, balanced):
            if is_balanced:
                weighted_maf[point.copy_number // 2] += Default.dummy_maf_weight * point.maf
                maf_weight[point.copy_number // 2] += Default.dummy_maf_weight

        maf_segments = [info for info in segments if info.has_maf]
        if maf_segments:
            nearest = numpy.argmin(self._distance_matrix(maf_segments, model_points), axis=1)
            for info, point_index in zip(maf_segments, nearest):
                point = model_points[point_index]
                if balanced[point_index] and info.maf >= Default.min_refinement_maf:
                    weighted_maf[point.copy_number // 2] += info.weight * info.maf
                    maf_weight[point.copy_number // 2] += info.weight

        for point, is_balanced in zip(model_points, balanced):
            if is_balanced:
                point.maf = weighted_maf[point.copy_number // 2] / maf_weight[point.copy_number // 2]

    def calculate_cluster_metrics(
            self,
            model_points: Sequence[ModelPoint],
            segments: Sequence[SegmentInfo],
            cluster_infos: Sequence[ClusterInfo]
    ) -> List[float]:
        """
        Add, for every clustered segment, its distance to the nearest model point (and that point's major chromosome
        count ratio) to its cluster, then summarize each cluster with more than two segments
        Returns:
            distances: List[float]
                All recorded distances
        """
        candidate_points = [point for point in model_points if point.coverage < self.mean_coverage * 2.0]
        clustered = [info for info in segments if info.final_cluster_id is not None and info.final_cluster_id > 0]
        all_distances = []
        if candidate_points and clustered:
            distances = self._distance_matrix(clustered, candidate_points)
            nearest = numpy.argmin(distances, axis=1)
            for row, (info, point_index) in enumerate(zip(clustered, nearest)):
                if info.final_cluster_id > len(cluster_infos):
                    continue
                ploidy = candidate_points[point_index].ploidy
                ratio = 0.0 if ploidy.copy_number == 0 else ploidy.major_chromosome_count / ploidy.copy_number
                cluster_info = cluster_infos[info.final_cluster_id - 1]
                cluster_info.distances.append(float(distances[row, point_index]))
                cluster_info.major_chromosome_count_ratios.append(ratio)
                all_distances.append(float(distances[row, point_index]))
        for cluster_info in cluster_infos:
            if len(cluster_info.distances) > 2:
                cluster_info.compute_metrics()
        return all_distances

    def compute_clonality_scores(
            self,
            segments: Sequence[SegmentInfo],
            model_points: Sequence[ModelPoint],
            num_clusters: int,
            model: CoveragePurityModel
    ):
        """ Logistic clonality score of each segment in a heterogeneous cluster: below 0.5 predicts subclonal """
        parameters = self.parameters
        scored = [info for info in segments if info.cluster is not None]
        if not scored:
            return
        best_distances = numpy.sqrt(self._distance_matrix(scored, model_points).min(axis=1))
        for info, best_distance in zip(scored, best_distances):
            score = parameters.clonality_intercept \
                + best_distance * parameters.clonality_best_model_distance \
                + info.cluster.entropy * parameters.clonality_cluster_entropy \
                + info.cluster.median_distance * parameters.clonality_cluster_median_distance \
                + info.cluster.mean_distance * parameters.clonality_cluster_mean_distance \
                + info.cluster.variance * parameters.clonality_cluster_variance \
                + num_clusters * parameters.clonality_num_clusters \
                + model.deviation * parameters.clonality_model_deviation
            self.heterogeneous_segment_scores.setdefault(info.segment, float(1.0 / (1.0 + numpy.exp(-score))))

    def cluster_deviation(
            self,
            model: CoveragePurityModel,
            model_points: Sequence[ModelPoint],
            segments: Sequence[SegmentInfo],
            num_clusters: int,
            best_model: bool = False
    ) -> Tuple[float, Optional[int], float]:
        """
        Mean within-cluster distance to the model, and the clusters that look heterogeneous: those whose median
        distance and entropy are both above the median over clusters
        Returns:
            cluster_deviation: float
                inf if no clustered segment is near a model point
            heterogeneous_clusters: Optional[int]
                Number of heterogeneous clusters, None if cluster_deviation is inf
            heterogeneity_index: float
                Fraction of clusters that are heterogeneous
        """
        cluster_infos = [ClusterInfo(cluster_id) for cluster_id in range(1, num_clusters + 1)]
        all_distances = self.calculate_cluster_metrics(model_points, segments, cluster_infos)
        if not all_distances:
            return numpy.inf, None, numpy.inf

        deviation = sum(cluster_info.mean_distance for cluster_info in cluster_infos) / num_clusters
        median_distance = numpy.median(all_distances)
        median_entropy = numpy.median([cluster_info.entropy for cluster_info in cluster_infos])
        heterogeneous_ids = {
            cluster_info.cluster_id for cluster_info in cluster_infos
            if cluster_info.median_distance > median_distance and cluster_info.entropy > median_entropy
        }
        if heterogeneous_ids and best_model:
            for info in segments:
                if info.final_cluster_id is not None and 0 < info.final_cluster_id <= num_clusters:
                    info.cluster = cluster_infos[info.final_cluster_id - 1]
        if best_model:
            if self.reporter is not None:
                self.reporter.report_cluster_info(cluster_infos)
            self.compute_clonality_scores(segments, model_points, num_clusters, model)
        return deviation, len(heterogeneous_ids), len(heterogeneous_ids) / num_clusters

    def model_deviation(
            self,
            model: CoveragePurityModel,
            segments: Sequence[SegmentInfo],
            num_clusters: int,
            best_model: bool = False
    ) -> float:
        """
        Measure the mismatch between the model's expected (coverage, MAF) points and the segments, filling in the
        model's deviation components, copy-number profile, ploidy and percent normal
        """
        parameters = self.parameters
        model_points = build_model_points(model.diploid_coverage, model.purity, self.ploidies)
        self.refine_diploid_maf(segments, model_points)

        weights = numpy.array([info.weight for info in segments], dtype=float)
        mafs = numpy.array([info.maf for info in segments], dtype=float)
        distances = self._distance_matrix(segments, model_points)
        nearest = numpy.argmin(distances, axis=1)
        best_distances = numpy.sqrt(distances[numpy.arange(len(segments)), nearest])
        total_weight = weights.sum()

        model.percent_cn[:] = 0.0
        model.copy_numbers = []
        total_normal_weight = 0.0
        for info, point_index, distance in zip(segments, nearest, best_distances):
            point = model_points[point_index]
            info.ploidy = point.ploidy
            info.distance = float(distance)
            model.percent_cn[point.copy_number] += info.weight
            point.weight += info.weight
            point.empirical_coverage += info.weight * info.coverage
            if info.has_maf:
                point.empirical_maf += info.weight * info.maf
                point.maf_weight += info.weight
            is_diploid = point.copy_number == 2
            if is_diploid and point.ploidy.major_chromosome_count == 1:
                total_normal_weight += info.weight
            # copy-neutral LOH counts as one event, like a heterozygous deletion
            model.copy_numbers.append(
                1 if is_diploid and point.ploidy.major_chromosome_count == 2 else point.copy_number
            )
        precision_deviation = float((best_distances * weights).sum() / total_weight)

        accuracy_deviation = 0.0
        for point in model_points:
            if point.weight == 0:
                continue
            point.empirical_coverage /= point.weight
            if point.maf_weight > 0:
                point.empirical_maf /= point.maf_weight
            distance = numpy.sqrt(float(self.get_model_distance(
                point.coverage, point.empirical_coverage, point.maf, point.empirical_maf
            )))
            accuracy_deviation += distance * point.weight
        accuracy_deviation /= total_weight

        model.percent_cn /= total_weight
        model.ploidy = float((numpy.arange(model.percent_cn.size) * model.percent_cn).sum())
        deviation = 0.5 * precision_deviation + 0.5 * accuracy_deviation

        heterogeneous_clusters = 0
        heterogeneity_index = 0.0
        cluster_deviation = 0.0
        valid_maf_count = int((mafs >= 0).sum())
        if valid_maf_count > Default.min_clustering_segments and len(segments) > Default.min_clustering_segments \
                and len(self.centroids_maf) < Default.max_cluster_centroids and num_clusters > 0 \
                and not parameters.is_enrichment:
            cluster_deviation, heterogeneous_clusters, heterogeneity_index = self.cluster_deviation(
                model, model_points, segments, num_clusters, best_model=best_model
            )
        if heterogeneous_clusters is None:
            deviation = numpy.inf
        elif heterogeneous_clusters > parameters.heterogeneous_clusters_cutoff:
            deviation = parameters.precision_weighting_factor * (
                precision_deviation + accuracy_deviation + cluster_deviation
            )

        model.percent_normal = total_normal_weight / total_weight
        model.precision_deviation = precision_deviation
        model.accuracy_deviation = accuracy_deviation
        model.deviation = float(deviation)
        model.heterogeneity_index = heterogeneity_index
        model.cluster_deviation = cluster_deviation
        if best_model and self.reporter is not None:
            self.reporter.report_model_points(model_points)
            self.reporter.report_segment_assignments(segments)
        return model.deviation

    def diploid_model_distance(
            self,
            model: CoveragePurityModel,
            usable_segments: Sequence[SegmentInfo],
            genome_length: int
    ) -> float:
        """
        Length-weighted number of copy-number events separating the model's profile from a diploid genome (or a
        tetraploid one, plus one doubling event, when most of the genome is amplified)
        """
        total_events = 0.0
        baseline = 2
        if model.percent_cn[3:self.parameters.maximum_copy_number].sum() > Default.genome_doubling_fraction:
            baseline = 4
            total_events += 1
        total_events += sum(
            abs(copy_number - baseline) * info.segment.length / genome_length
            for copy_number, info in zip(model.copy_numbers, usable_segments)
        )
        model.diploid_distance = 1.0 / max(Default.min_cn_events, total_events)
        return total_events

    # grid search

    def _coarse_search(
            self,
            usable_segments: Sequence[SegmentInfo],
            median_coverage_level: int,
            genome_length: int
    ) -> (List[CoveragePurityModel], float):
        parameters = self.parameters
        min_coverage = int(max(Default.min_coverage_level,
                               median_coverage_level / parameters.lower_coverage_level_weighting_factor))
        max_coverage = int(max(Default.min_coverage_level,
                               median_coverage_level * parameters.upper_coverage_level_weighting_factor))
        min_percent_purity, max_percent_purity = Default.min_percent_purity, Default.max_percent_purity
        if parameters.user_ploidy is not None:
            min_coverage = max_coverage = int(get_diploid_coverage(median_coverage_level, parameters.user_ploidy))
        if parameters.user_purity is not None:
            min_percent_purity = max_percent_purity = int(parameters.user_purity * 100)
        coverage_step = max(1, (max_coverage - min_coverage) // parameters.coverage_level_weighting_factor_levels)
        logger.info(f"Diploid coverage: consider {min_coverage}...{max_coverage} step {coverage_step}")

        best_deviation = numpy.inf
        all_models = []
        for coverage in range(min_coverage, max_coverage + 1, coverage_step):
            for percent_purity in range(min_percent_purity, max_percent_purity + 1, Default.coarse_purity_step):
                model = CoveragePurityModel(coverage, percent_purity / 100.0, parameters.maximum_copy_number)
                self.model_deviation(model, usable_segments, self.num_clusters)
                self.diploid_model_distance(model, usable_segments, genome_length)
                # exclude models with unrealistic genome ploidies
                if parameters.min_allowed_ploidy < model.ploidy < parameters.max_allowed_ploidy:
                    best_deviation = min(best_deviation, model.deviation)
                    all_models.append(model)
        if not all_models:
            raise UncallableDataError(
                "Unable to find any viable purity/ploidy model. Check that the sample has reasonable coverage (>=10x)"
            )
        return all_models, best_deviation

    def select_model(
            self,
            all_models: Sequence[CoveragePurityModel],
            best_deviation: float,
            deviation_factor: float
    ) -> (CoveragePurityModel, List[CoveragePurityModel], List[float]):
        """
        Among models with acceptable deviation, choose the one maximizing a weighted sum of normalized percent normal,
        percent copy number 2 (penalized at low purity), deviation rank, diploid distance and heterogeneity
        Returns:
            best_model: CoveragePurityModel
            scored_models: List[CoveragePurityModel]
                Models with acceptable deviation
            scores: List[float]
                Score of each of scored_models
        """
        parameters = self.parameters
        worst_allowed_deviation = best_deviation * deviation_factor
        deviations = sorted(model.deviation for model in all_models)
        if sum(model.deviation < worst_allowed_deviation for model in all_models) < parameters.deviation_index_cutoff:
            worst_allowed_deviation = deviations[min(parameters.deviation_index_cutoff, len(deviations) - 1)]

        acceptable = [model for model in all_models if model.deviation <= worst_allowed_deviation]
        best_cn2 = max((model.percent_cn[2] for model in acceptable), default=0.0)
        best_normal = max((model.percent_normal for model in acceptable), default=0.0)
        best_diploid_distance = max((model.diploid_distance for model in acceptable), default=0.0)

        best_model = None
        best_score = 0.0
        scores = []
        heterogeneity_index = 0.0
        for model in acceptable:
            low_purity_weighting_factor = Default.low_purity_penalty_max / (
                Default.low_purity_penalty_range / Default.purity_score_range * (model.purity - Default.min_score_purity)
                + 1.0
            )
            if model.heterogeneity_index is not None and parameters.is_enrichment:
                heterogeneity_index = model.heterogeneity_index
            score = parameters.percent_normal_2_weighting_factor * model.percent_normal / \
                max(Default.min_score_normalizer, best_normal)
            score += low_purity_weighting_factor * parameters.cn2_weighting_factor * model.percent_cn[2] / \
                max(Default.min_score_normalizer, best_cn2)
            if worst_allowed_deviation > best_deviation:
                score += parameters.deviation_score_weighting_factor * \
                    (worst_allowed_deviation - model.deviation) / (worst_allowed_deviation - best_deviation)
            score += parameters.diploid_distance_score_weighting_factor * model.diploid_distance / \
                max(Default.min_score_normalizer, best_diploid_distance)
            score += parameters.heterogeneity_score_weighting_factor * heterogeneity_index
            scores.append(float(score))
            if best_model is None or score > best_score:
                best_model = model
                best_score = score
        if self.reporter is not None:
            self.reporter.report_purity_models(acceptable, scores, worst_allowed_deviation)
        return best_model, acceptable, scores

    def inter_model_distance(
            self,
            scored_models: Sequence[CoveragePurityModel],
            scores: Sequence[float],
            usable_segments: Sequence[SegmentInfo],
            genome_length: int
    ) -> float:
        """
        Mean genome distance between the highest scoring model and the next highest scoring ones: large values mean
        that similarly good models disagree about the copy-number profile
        """
        order = numpy.argsort(-numpy.asarray(scores, dtype=float), kind="stable")
        max_related = self.parameters.maximum_related_models
        distance = sum(
            calculate_model_distance(scored_models[order[0]], scored_models[order[rank]], usable_segments,
                                     genome_length)
            for rank in range(1, min(len(order), max_related))
        )
        return distance / max_related

    def _fine_search(
            self,
            coarse_model: CoveragePurityModel,
            usable_segments: Sequence[SegmentInfo],
            median_coverage_level: int
    ) -> CoveragePurityModel:
        parameters = self.parameters
        if parameters.user_ploidy is not None:
            min_coverage = max_coverage = int(get_diploid_coverage(median_coverage_level, parameters.user_ploidy))
        else:
            min_coverage = int(round(coarse_model.diploid_coverage)) - Default.fine_coverage_window
            max_coverage = int(round(coarse_model.diploid_coverage)) + Default.fine_coverage_window
        if parameters.user_purity is not None:
            min_percent_purity = max_percent_purity = int(parameters.user_purity * 100)
        else:
            coarse_percent_purity = int(round(coarse_model.purity * 100))
            min_percent_purity = max(Default.min_percent_purity, coarse_percent_purity - Default.fine_purity_window)
            max_percent_purity = min(Default.max_percent_purity, coarse_percent_purity + Default.fine_purity_window)
        best_model = None
        for coverage in range(max(1, min_coverage), max_coverage + 1):
            for percent_purity in range(min_percent_purity, max_percent_purity + 1):
                model = CoveragePurityModel(coverage, percent_purity / 100.0, parameters.maximum_copy_number)
                self.model_deviation(model, usable_segments, self.num_clusters)
                if best_model is None or model.deviation < best_model.deviation:
                    best_model = model
        return best_model

    def fit(
            self,
            segments: Sequence[Segment],
            genome_length: int,
            evenness_score: Optional[float] = None
    ) -> CoveragePurityModel:
        """
        Find the (diploid coverage, purity) model that best explains the segments
        Args:
            segments: Sequence[Segment]
                All segments of the sample
            genome_length: int
                Length of the genome, used to normalize copy-number profile distances
            evenness_score: Optional[float] (Default=None)
                Coverage evenness score of the sample; low scores shift weight from coverage to MAF
        Returns:
            model: CoveragePurityModel
        Raises:
            NotEnoughUsableSegmentsError if fewer than 3 segments are usable
            UncallableDataError if no model has a ploidy within the allowed bounds, or clustering needs too much memory
        """
        parameters = self.parameters
        deviation_factor = Default.small_sample_deviation_factor if len(segments) < Default.small_sample_segments \
            else parameters.deviation_factor
        self.heterogeneous_segment_scores = {}
        self.usable_segments = usable_segments = self.select_usable_segments(segments)
        valid_maf_count = sum(info.has_maf for info in usable_segments)

        _, median_level, max_level = common.quartiles([info.coverage for info in usable_segments])
        max_coverage_level, median_coverage_level = int(round(max_level)), int(round(median_level))
        self.set_coverage_weighting_factor(median_coverage_level, evenness_score)

        self.num_clusters = 0
        self.centroids_maf, self.centroids_coverage = [], []
        if len(usable_segments) > Default.min_clustering_segments and \
                valid_maf_count > Default.min_clustering_segments and not parameters.is_enrichment:
            self.cluster_segments(usable_segments, max_coverage_level, median_coverage_level)

        all_models, best_deviation = self._coarse_search(usable_segments, median_coverage_level, genome_length)
        coarse_model, scored_models, scores = self.select_model(all_models, best_deviation, deviation_factor)
        inter_model_distance = self.inter_model_distance(scored_models, scores, usable_segments, genome_length)
        logger.info(f"Initial model: deviation {coarse_model.deviation:.5f}, coverage {coarse_model.diploid_coverage}, "
                    f"purity {100 * coarse_model.purity:.1f}%, CN2 {coarse_model.percent_cn[2]:.2f}")

        best_model = self._fine_search(coarse_model, usable_segments, median_coverage_level)
        self.model_deviation(best_model, usable_segments, self.num_clusters, best_model=True)
        if best_model.inter_model_distance is None:
            best_model.inter_model_distance = inter_model_distance
        logger.info(f"Refined model: deviation {best_model.deviation:.5f}, coverage {best_model.diploid_coverage}, "
                    f"purity {100 * best_model.purity:.1f}%")
        return best_model
