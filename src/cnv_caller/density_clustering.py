"""
Density-peak clustering (Rodriguez & Laio, Science 2014) of segments in weighted (coverage, MAF) space.

    1) pairwise distances between segments
    2) cutoff distance dc: a low quantile of all pairwise distances
    3) local density rho: Gaussian kernel sum of distances scaled by dc
    4) delta: distance to the nearest point of higher density
    5) centroids: points with delta above the centroid cutoff and rho above the density cutoff
    6) every other point joins the cluster of its nearest higher-density neighbour
Only segments with allele data that are not k-nearest-neighbour outliers are clustered.
"""
import logging
import numpy
import scipy.spatial.distance
from typing import List, Optional, Sequence

from cnv_caller.somatic_models import SegmentInfo, model_distance, Default as ModelDefault


logger = logging.getLogger(__name__)


class Default:
    neighbor_rate = 0.02  # fraction of pairwise distances below dc
    rho_cutoff = 2.0
    max_cluster_number = 7


class DensityClusteringModel:
    def __init__(
            self,
            segments: Sequence[SegmentInfo],
            coverage_weighting_factor: float,
            k_nearest_neighbour_cutoff: float,
            centroid_cutoff: float
    ):
        self.segments = segments
        self.coverage_weighting_factor = coverage_weighting_factor
        self.k_nearest_neighbour_cutoff = k_nearest_neighbour_cutoff
        self.centroid_cutoff = centroid_cutoff
        self.cluster_segments: List[SegmentInfo] = [
            info for info in segments if info.has_maf and info.k_nearest_neighbour <= k_nearest_neighbour_cutoff
        ]
        self.distances: Optional[numpy.ndarray] = None  # square matrix over cluster_segments
        self.rho: Optional[numpy.ndarray] = None
        self.delta: Optional[numpy.ndarray] = None
        self.nearest_higher_density: Optional[numpy.ndarray] = None
        self.centroid_indices: List[int] = []

    @property
    def num_points(self) -> int:
        return len(self.cluster_segments)

    def _coordinates(self) -> numpy.ndarray:
        return numpy.array(
            [[info.coverage * self.coverage_weighting_factor, info.maf] for info in self.cluster_segments], dtype=float
        ).reshape(self.num_points, 2)

    def estimate_distance(self):
        coordinates = self._coordinates()
        self.distances = scipy.spatial.distance.squareform(scipy.spatial.distance.pdist(coordinates)) \
            if self.num_points > 1 else numpy.zeros((self.num_points, self.num_points))

    def estimate_dc(self, neighbor_rate: float = Default.neighbor_rate) -> float:
        """ Cutoff distance: the neighbor_rate quantile of the (positive) pairwise distances """
        pairwise = self.distances[numpy.triu_indices(self.num_points, k=1)]
        pairwise = numpy.sort(pairwise[pairwise > 0])
        if pairwise.size == 0:
            return 1.0
        return float(pairwise[min(int(pairwise.size * neighbor_rate), pairwise.size - 1)])

    def gaussian_local_density(self, distance_threshold: float):
        kernel = numpy.exp(-(self.distances / distance_threshold) ** 2)
        self.rho = kernel.sum(axis=1) - 1.0  # exclude self

    def find_centroids(self):
        """
        Compute delta (distance to the nearest denser point; the densest point gets the largest distance) and the
        candidate centroids, in order of decreasing density
        """
        num_points = self.num_points
        self.delta = numpy.zeros(num_points, dtype=float)
        self.nearest_higher_density = numpy.full(num_points, -1, dtype=int)
        if num_points == 0:
            self.centroid_indices = []
            return
        order = numpy.argsort(-self.rho, kind="stable")
        self.delta[order[0]] = self.distances[order[0]].max()
        for rank in range(1, num_points):
            point = order[rank]
            denser = order[:rank]
            nearest = denser[int(numpy.argmin(self.distances[point, denser]))]
            self.nearest_higher_density[point] = nearest
            self.delta[point] = self.distances[point, nearest]
        self.centroid_indices = [int(point) for point in order if self.delta[point] > self.centroid_cutoff]

    def find_clusters(self, rho_cutoff: float = Default.rho_cutoff) -> int:
        """
        Assign every clustered segment a cluster id (1-based, in order of decreasing centroid density); k-nearest-
        neighbour outliers get the outlier flag
        Returns:
            num_clusters: int
        """
        for info in self.segments:
            if info.has_maf and info.k_nearest_neighbour > self.k_nearest_neighbour_cutoff:
                info.cluster_id = ModelDefault.outlier_cluster_flag
        if self.num_points == 0:
            self.centroid_indices = []
            return 0
        order = numpy.argsort(-self.rho, kind="stable")
        centroids = [point for point in self.centroid_indices if self.rho[point] > rho_cutoff]
        if not centroids or centroids[0] != order[0]:
            # the densest point always starts a cluster, since it has no denser neighbour to follow
            centroids = [int(order[0])] + [point for point in centroids if point != order[0]]
        self.centroid_indices = centroids
        labels = numpy.zeros(self.num_points, dtype=int)
        for cluster_id, point in enumerate(centroids, start=1):
            labels[point] = cluster_id
        for point in order:
            if labels[point] == 0:
                labels[point] = labels[self.nearest_higher_density[point]]
        for info, label in zip(self.cluster_segments, labels):
            info.cluster_id = int(label)
        logger.debug(f"Density clustering with centroid cutoff {self.centroid_cutoff:.3f}: {len(centroids)} clusters")
        return len(centroids)

    def get_centroids_maf(self) -> List[float]:
        return [self.cluster_segments[point].maf for point in self.centroid_indices]

    def get_centroids_coverage(self) -> List[float]:
        return [self.cluster_segments[point].coverage for point in self.centroid_indices]

    def get_centroids_variance(
            self,
            centroids_maf: Sequence[float],
            centroids_coverage: Sequence[float],
            num_clusters: int
    ) -> List[float]:
        """ Mean squared distance of each cluster's segments to its centroid """
        variances = []
        for cluster_id in range(1, num_clusters + 1):
            members = [info for info in self.cluster_segments if info.cluster_id == cluster_id]
            if not members:
                variances.append(0.0)
                continue
            distances = model_distance(
                numpy.array([info.coverage for info in members]), centroids_coverage[cluster_id - 1],
                numpy.array([info.maf for info in members]), centroids_maf[cluster_id - 1],
                self.coverage_weighting_factor
            )
            variances.append(float(distances.mean()))
        return variances

    def get_clusters_size(self, num_clusters: int) -> List[int]:
        sizes = [0] * num_clusters
        for info in self.cluster_segments:
            if info.cluster_id is not None and 0 < info.cluster_id <= num_clusters:
                sizes[info.cluster_id - 1] += 1
        return sizes


def run_density_clustering(
        segments: Sequence[SegmentInfo],
        coverage_weighting_factor: float,
        k_nearest_neighbour_cutoff: float,
        centroid_cutoff: float,
        rho_cutoff: float = Default.rho_cutoff
) -> (DensityClusteringModel, int):
    density_clustering = DensityClusteringModel(
        segments, coverage_weighting_factor, k_nearest_neighbour_cutoff, centroid_cutoff
    )
    density_clustering.estimate_distance()
    distance_threshold = density_clustering.estimate_dc()
    density_clustering.gaussian_local_density(distance_threshold)
    density_clustering.find_centroids()
    cluster_count = density_clustering.find_clusters(rho_cutoff)
    return density_clustering, cluster_count
