"""
Copy-number and allelic-genotype calling for unrelated samples called jointly: at each segment the samples are
assumed to segregate at most max_allele_number distinct copy numbers.
"""
import logging
import numpy
from typing import Optional, List, Tuple, Dict

from cnv_caller import common, parallel_tools
from cnv_caller.config import CallerParameters
from cnv_caller.copy_number_model import Genotype
from cnv_caller.pedigree_tools import PedigreeRoster
from cnv_caller.pedigree_caller import use_cn_likelihood
from cnv_caller.genotype_space import generate_genotype_combinations, generate_copy_number_combinations


logger = logging.getLogger(__name__)


class Default:
    default_copy_number = 2
    diploid_copy_number = 2
    coverage_cap = 3.0  # depth is capped at this multiple of the sample's mean coverage


class NoPedigreeLikelihoodEngine:
    def __init__(self, roster: PedigreeRoster, parameters: Optional[CallerParameters] = None):
        self.roster = roster
        self.parameters = CallerParameters() if parameters is None else parameters
        self.num_cn_states = self.parameters.maximum_copy_number
        roster.assign_copy_number_models(self.num_cn_states, self.parameters.max_qscore, use_pedigree_variance=False)
        self.genotypes: Dict[int, List[Genotype]] = generate_genotype_combinations(self.num_cn_states)
        self.copy_number_combinations: List[Tuple[int, ...]] = generate_copy_number_combinations(
            self.num_cn_states, self.parameters.max_allele_number
        )
        logger.info(f"Multi-sample caller: {len(roster)} samples, "
                    f"{len(self.copy_number_combinations)} copy number combinations")

    def use_cn_likelihood(self, segment_index: int) -> bool:
        return use_cn_likelihood(self.roster.members, segment_index, self.parameters)

    def _cn_likelihoods(self, segment_index: int) -> numpy.ndarray:
        """ samples x copy-number likelihoods, with capped depth and nan / inf replaced by 0 """
        return numpy.nan_to_num(
            numpy.array([
                member.cn_model.get_cn_likelihood(
                    min(member.get_coverage(segment_index), member.mean_coverage * Default.coverage_cap)
                )
                for member in self.roster
            ]),
            nan=0.0, posinf=0.0, neginf=0.0
        ).reshape(len(self.roster), self.num_cn_states)

    def maximal_cn_likelihood(self, segment_index: int) -> numpy.ndarray:
        """
        Choose the copy-number combination with the largest sum over samples of each sample's best likelihood within
        the combination (first combination wins ties), then call each sample's best copy number within it
        Args:
            segment_index: int
                Index of segment to call
        Returns:
            density: numpy.ndarray
                samples x copy-number array holding, for each sample, the likelihoods of the copy numbers in the
                winning combination that improved on the ones before it (other entries are 0)
        """
        for member in self.roster:
            member.segments[segment_index].copy_number = Default.default_copy_number
        likelihoods = self._cn_likelihoods(segment_index)
        total_likelihoods = [
            likelihoods[:, list(combination)].max(axis=1).clip(min=0).sum()
            for combination in self.copy_number_combinations
        ]
        best_combination = self.copy_number_combinations[int(numpy.argmax(total_likelihoods))]

        density = numpy.zeros((len(self.roster), self.num_cn_states), dtype=float)
        for sample_index, member in enumerate(self.roster):
            maximal_likelihood = 0.0
            for copy_number in best_combination:
                current_likelihood = likelihoods[sample_index, copy_number]
                if current_likelihood > maximal_likelihood:
                    maximal_likelihood = current_likelihood
                    member.segments[segment_index].copy_number = copy_number
                    density[sample_index, copy_number] = current_likelihood
        return density

    def estimate_qscores(self, segment_index: int, density: numpy.ndarray):
        threshold = self.parameters.quality_filter_threshold
        for sample_index, member in enumerate(self.roster):
            segment = member.segments[segment_index]
            cn_state = min(segment.copy_number, self.num_cn_states - 1)
            normalization = density[sample_index].sum()
            with numpy.errstate(divide="ignore", invalid="ignore"):
                error_probability = (normalization - density[sample_index, cn_state]) / normalization
            segment.qscore = common.phred_score(error_probability, self.parameters.max_qscore)
            if segment.qscore < threshold:
                segment.filter = f"q{threshold:g}"

    def maximal_gt_likelihood(self, segment_index: int):
        """
        Genotype each sample independently: above copy number 2 the major chromosome count comes from the best
        genotype, otherwise it equals the copy number
        """
        for member in self.roster:
            segment = member.segments[segment_index]
            copy_number = segment.copy_number
            if copy_number > Default.diploid_copy_number:
                genotypes = self.genotypes[copy_number]
                score, selected_index = member.cn_model.get_gt_likelihood_score(
                    member.get_allele_counts(segment_index), genotypes, member.max_coverage
                )
                segment.major_chromosome_count = max(genotypes[selected_index])
                segment.major_chromosome_count_score = score
            else:
                segment.major_chromosome_count = copy_number
                segment.major_chromosome_count_score = None

    def call_segment(self, segment_index: int):
        for member in self.roster:
            member.segments[segment_index].reset_calls()
        use_cn_likelihood = self.use_cn_likelihood(segment_index)
        density = self.maximal_cn_likelihood(segment_index)
        self.estimate_qscores(segment_index, density)
        if not use_cn_likelihood:
            self.maximal_gt_likelihood(segment_index)

    def call(self, num_workers: Optional[int] = None, show_progress: bool = True) -> PedigreeRoster:
        self.roster.check_alignment()
        parallel_tools.map_segment_intervals(
            self.call_segment, self.roster.num_segments, num_workers=num_workers, description="segments",
            show_progress=show_progress
        )
        return self.roster
