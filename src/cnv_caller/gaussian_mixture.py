"""
Gaussian mixture clustering of segments in weighted (coverage, MAF) space, fit by expectation maximization.

Each model point is one mixture component; its (coverage, MAF) seeds the component mean. Only segments with allele
data that are not k-nearest-neighbour outliers take part in the fit.
"""
import logging
import numpy
import scipy.stats
import scipy.special
from typing import List, Sequence

from cnv_caller.somatic_models import ModelPoint, SegmentInfo, Default as ModelDefault


logger = logging.getLogger(__name__)


class Default:
    max_iterations = 100
    tolerance = 1e-6  # relative change in log likelihood
    covariance_regularization = 1e-6
    min_component_weight = 1e-10


class GaussianMixtureModel:
    def __init__(
            self,
            model_points: Sequence[ModelPoint],
            segments: Sequence[SegmentInfo],
            coverage_weighting_factor: float,
            k_nearest_neighbour_cutoff: float = numpy.inf,
            max_iterations: int = Default.max_iterations,
            tolerance: float = Default.tolerance
    ):
        self.model_points: List[ModelPoint] = list(model_points)
        self.segments = segments
        self.coverage_weighting_factor = coverage_weighting_factor
        self.k_nearest_neighbour_cutoff = k_nearest_neighbour_cutoff
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.fit_segments: List[SegmentInfo] = [
            info for info in segments if info.has_maf and info.k_nearest_neighbour <= k_nearest_neighbour_cutoff
        ]

    def _data(self) -> numpy.ndarray:
        return numpy.array([[info.coverage * self.coverage_weighting_factor, info.maf] for info in self.fit_segments],
                           dtype=float).reshape(len(self.fit_segments), 2)

    def _log_responsibilities(
            self,
            data: numpy.ndarray,
            weights: numpy.ndarray,
            means: numpy.ndarray,
            covariances: numpy.ndarray
    ) -> (numpy.ndarray, float):
        log_densities = numpy.stack(
            [
                numpy.log(max(weight, Default.min_component_weight)) + numpy.atleast_1d(
                    scipy.stats.multivariate_normal.logpdf(data, mean=mean, cov=covariance, allow_singular=True)
                )
                for weight, mean, covariance in zip(weights, means, covariances)
            ],
            axis=1
        ).reshape(data.shape[0], len(weights))
        log_norm = scipy.special.logsumexp(log_densities, axis=1)
        return log_densities - log_norm[:, None], float(log_norm.sum())

    def run_expectation_maximization(self) -> float:
        """
        Fit the mixture, then update every model point with its fitted component and label every segment with the
        cluster id of its most probable component (outliers get the outlier flag)
        Returns:
            log_likelihood: float
                Log likelihood of the fit segments under the final mixture; -inf if nothing could be fit
        """
        for info in self.segments:
            if info.has_maf and info.k_nearest_neighbour > self.k_nearest_neighbour_cutoff:
                info.cluster_id = ModelDefault.outlier_cluster_flag
        data = self._data()
        num_components = len(self.model_points)
        if num_components == 0 or data.shape[0] == 0:
            return -numpy.inf

        regularization = Default.covariance_regularization * numpy.eye(2)
        data_covariance = numpy.cov(data, rowvar=False) if data.shape[0] > 1 else numpy.zeros((2, 2))
        weights = numpy.full(num_components, 1.0 / num_components)
        means = numpy.array([[point.coverage * self.coverage_weighting_factor, point.maf]
                             for point in self.model_points], dtype=float)
        covariances = numpy.array([data_covariance / num_components + regularization] * num_components)

        log_likelihood = -numpy.inf
        log_responsibilities = None
        for iteration in range(self.max_iterations):
            log_responsibilities, new_log_likelihood = self._log_responsibilities(data, weights, means, covariances)
            responsibilities = numpy.exp(log_responsibilities)
            component_totals = responsibilities.sum(axis=0) + Default.min_component_weight
            weights = component_totals / data.shape[0]
            means = responsibilities.T @ data / component_totals[:, None]
            for component in range(num_components):
                centered = data - means[component]
                covariances[component] = (responsibilities[:, component, None] * centered).T @ centered \
                    / component_totals[component] + regularization
            converged = numpy.isfinite(log_likelihood) and \
                abs(new_log_likelihood - log_likelihood) <= self.tolerance * abs(new_log_likelihood)
            log_likelihood = new_log_likelihood
            if converged:
                logger.debug(f"EM converged after {iteration + 1} iterations")
                break

        log_responsibilities, log_likelihood = self._log_responsibilities(data, weights, means, covariances)
        for point, weight, mean, covariance in zip(self.model_points, weights, means, covariances):
            point.mixture_weight = float(weight)
            point.mean = mean
            point.covariance = covariance
            point.coverage = float(mean[0] / self.coverage_weighting_factor) if self.coverage_weighting_factor > 0 \
                else point.coverage
            point.maf = float(mean[1])
        best_components = numpy.argmax(log_responsibilities, axis=1)
        for info, component in zip(self.fit_segments, best_components):
            info.cluster_id = self.model_points[component].cluster_id
        return log_likelihood
