"""
Per-sample likelihood model of read depth and B-allele counts as a function of copy number and allelic genotype.

Read depth at copy number cn is modelled as a negative binomial with mean cn * haploid_mean and variance
variance * cn / 2, falling back to a Poisson when that variance does not exceed the mean. Each allele of a genotype
(a, b) is modelled the same way, with the B-allele haploid mean and variance. All likelihoods are tabulated once for
every count in [0, max_coverage), so per-segment evaluation is a table lookup.
"""
import numpy
import scipy.stats
import scipy.special
from typing import Optional, Sequence, Tuple

from cnv_caller import common
from cnv_caller.segments import Balleles
from cnv_caller.sample_metrics import SampleMetrics


Genotype = Tuple[int, int]


class Default:
    min_copy_number = 1e-3  # stands in for copy number 0 so the depth distribution stays proper
    min_rate = 1e-6
    pedigree_variance_scale = 2.5


def _count_likelihood_table(
        num_states: int,
        haploid_mean: float,
        variance: float,
        max_coverage: int
) -> numpy.ndarray:
    """
    Tabulate the probability of observing each count in [0, max_coverage) for each number of copies in
    [0, num_states)
    Returns:
        table: numpy.ndarray
            num_states x max_coverage array of probabilities, with nan / inf replaced by 0
    """
    counts = numpy.arange(max_coverage)
    table = numpy.zeros((num_states, max_coverage), dtype=float)
    for copies in range(num_states):
        scaled_copies = max(copies, Default.min_copy_number)
        mean = max(scaled_copies * haploid_mean, Default.min_rate)
        scaled_variance = variance * scaled_copies / 2.0
        if scaled_variance <= mean:
            table[copies] = scipy.stats.poisson.pmf(counts, mean)
        else:
            # scipy parameterization: n successes with success probability p has mean n(1-p)/p and variance n(1-p)/p^2
            p = mean / scaled_variance
            n = mean * p / (1.0 - p)
            table[copies] = scipy.stats.nbinom.pmf(counts, n, p)
    return numpy.nan_to_num(table, nan=0.0, posinf=0.0, neginf=0.0)


class CopyNumberModel:
    __slots__ = ("num_cn_states", "haploid_mean", "haploid_maf_mean", "variance", "maf_variance", "max_coverage",
                 "max_qscore", "_cn_likelihoods", "_allele_log_likelihoods")

    def __init__(
            self,
            num_cn_states: int,
            haploid_mean: float,
            haploid_maf_mean: float,
            variance: float,
            maf_variance: float,
            max_coverage: int,
            max_qscore: float = 60.0
    ):
        self.num_cn_states = num_cn_states
        self.haploid_mean = haploid_mean
        self.haploid_maf_mean = haploid_maf_mean
        self.variance = variance
        self.maf_variance = maf_variance
        self.max_coverage = max(int(max_coverage), 1)
        self.max_qscore = max_qscore
        # coverage x copy-number, so one row is the likelihood vector for an observed depth
        self._cn_likelihoods = _count_likelihood_table(
            num_cn_states, haploid_mean, variance, self.max_coverage
        ).T.copy()
        # allele copies x allele count
        with numpy.errstate(divide="ignore"):
            self._allele_log_likelihoods = numpy.log(
                numpy.maximum(
                    _count_likelihood_table(num_cn_states, haploid_maf_mean, maf_variance, self.max_coverage),
                    numpy.finfo(float).tiny
                )
            )

    @staticmethod
    def from_sample_metrics(
            metrics: SampleMetrics,
            num_cn_states: int,
            max_qscore: float,
            use_pedigree_variance: bool = False
    ) -> "CopyNumberModel":
        """
        Build the model for one sample
        Args:
            metrics: SampleMetrics
                Summary statistics of the sample
            num_cn_states: int
                Number of copy-number states
            max_qscore: float
                Cap on genotype quality scores
            use_pedigree_variance: bool (Default=False)
                If True, use the inflated variances (2.5 x mean) of joint pedigree calling instead of the empirical
                variances.
        Returns:
            cn_model: CopyNumberModel
        """
        if use_pedigree_variance:
            variance = metrics.mean_coverage * Default.pedigree_variance_scale
            maf_variance = metrics.mean_maf_coverage * Default.pedigree_variance_scale
        else:
            variance = metrics.variance
            maf_variance = metrics.maf_variance
        return CopyNumberModel(
            num_cn_states=num_cn_states, haploid_mean=metrics.mean_coverage / 2.0,
            haploid_maf_mean=metrics.mean_maf_coverage / 2.0, variance=variance, maf_variance=maf_variance,
            max_coverage=metrics.max_coverage, max_qscore=max_qscore
        )

    def _clip_counts(self, counts: numpy.ndarray, max_coverage: Optional[int] = None) -> numpy.ndarray:
        upper = self.max_coverage if max_coverage is None else min(max(int(max_coverage), 1), self.max_coverage)
        return numpy.clip(numpy.round(counts), 0, upper - 1).astype(int)

    def get_cn_likelihood(self, coverage: float) -> numpy.ndarray:
        """
        Likelihood of an observed read depth under each copy number
        Args:
            coverage: float
                Observed depth, clipped to [0, max_coverage - 1]. A nan depth has zero likelihood everywhere.
        Returns:
            likelihoods: numpy.ndarray
                Vector of length num_cn_states
        """
        if numpy.isnan(coverage):
            return numpy.zeros(self.num_cn_states, dtype=float)
        return self._cn_likelihoods[int(self._clip_counts(numpy.array(coverage)))].copy()

    def get_current_gt_likelihood(self, max_coverage: int, balleles: Balleles, genotype: Genotype) -> float:
        """
        Log likelihood of the B-allele observations under genotype (a, b). Each site contributes the better of its two
        phasings; a segment without sites has log likelihood 0.
        Args:
            max_coverage: int
                Sample's maximum coverage; allele counts are clipped below it
            balleles: Balleles
                Allele observations of the segment
            genotype: Genotype
                Number of copies of each allele
        Returns:
            log_likelihood: float
        """
        if len(balleles) == 0:
            return 0.0
        counts = self._clip_counts(numpy.array(balleles.counts, dtype=float), max_coverage)
        first, second = (min(copies, self.num_cn_states - 1) for copies in genotype)
        ref_counts, alt_counts = counts[:, 0], counts[:, 1]
        phased = self._allele_log_likelihoods[first, ref_counts] + self._allele_log_likelihoods[second, alt_counts]
        swapped = self._allele_log_likelihoods[second, ref_counts] + self._allele_log_likelihoods[first, alt_counts]
        return float(numpy.maximum(phased, swapped).sum())

    def get_gt_likelihood_score(
            self,
            balleles: Balleles,
            genotypes: Sequence[Genotype],
            max_coverage: int,
            selected_index: Optional[int] = None
    ) -> Tuple[float, int]:
        """
        Select the best genotype for the allele observations and score the selection
        Args:
            balleles: Balleles
                Allele observations of the segment
            genotypes: Sequence[Genotype]
                Candidate genotypes, all for the same copy number
            max_coverage: int
                Sample's maximum coverage
            selected_index: Optional[int] (Default=None)
                If not None, score this genotype instead of the most likely one
        Returns:
            score: float
                Phred-scaled posterior probability that the selection is wrong (uniform prior), capped at max_qscore
            selected_index: int
                Index of the selected genotype in genotypes
        """
        log_likelihoods = numpy.array(
            [self.get_current_gt_likelihood(max_coverage, balleles, genotype) for genotype in genotypes]
        )
        if selected_index is None:
            selected_index = int(numpy.argmax(log_likelihoods))
        others = numpy.delete(log_likelihoods, selected_index)
        if others.size == 0:
            return float(self.max_qscore), selected_index
        log_error = scipy.special.logsumexp(others) - scipy.special.logsumexp(log_likelihoods)
        return common.phred_score(numpy.exp(log_error), self.max_qscore), selected_index
