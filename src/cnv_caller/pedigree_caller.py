"""
Joint copy-number and allelic-genotype calling for a pedigree of two parents and any number of children, with
de-novo quality scores for probands.

Each segment is called independently:
    1. decide whether B-allele evidence is usable for the segment (use_cn_likelihood)
    2. search the copy-number lattice of parents and offspring genotypes for the most likely assignment
    3. derive single-sample and de-novo quality scores from the joint copy-number distribution
    4. if B-allele evidence is usable, refine major chromosome counts under pedigree constraints
"""
import logging
import numpy
import scipy.stats
from typing import Optional, List, Dict, Tuple, Sequence

from cnv_caller import common, parallel_tools
from cnv_caller.config import CallerParameters
from cnv_caller.errors import PedigreeInconsistencyError
from cnv_caller.copy_number_model import Genotype
from cnv_caller.copy_number_distribution import CopyNumberDistribution
from cnv_caller.pedigree_tools import PedigreeRoster, PedigreeMember
from cnv_caller.genotype_space import (
    generate_genotype_combinations, generate_parental_genotypes, generate_offspring_genotypes
)


logger = logging.getLogger(__name__)


class Default:
    default_copy_number = 2
    diploid_copy_number = 2
    min_transmission_rate = 0.1
    parent_coverage_cap = 3.0  # parent depth is capped at this multiple of its mean coverage
    high_coverage_fraction = 0.75  # fraction of mean coverage above which allele dropout is suspicious
    min_de_novo_probability = 1e-6


def get_transition_matrix(num_cn_states: int) -> numpy.ndarray:
    """
    Probability that a parent with copy number cn (row) transmits gt copies (column) to a child: copy number 0
    transmits nothing, otherwise the count is Poisson with mean max(cn / 2, 0.1)
    """
    transition_matrix = numpy.zeros((num_cn_states, num_cn_states), dtype=float)
    transition_matrix[0, 0] = 1.0
    transmitted = numpy.arange(num_cn_states)
    for cn in range(1, num_cn_states):
        transition_matrix[cn] = scipy.stats.poisson.pmf(transmitted, max(cn / 2.0, Default.min_transmission_rate))
    return transition_matrix


def is_gt_pedigree_consistent(parent_genotype: Genotype, child_genotype: Genotype) -> bool:
    """ True if the child genotype shares at least one allele copy number with the parent genotype """
    return any(child_allele in parent_genotype for child_allele in child_genotype)


def skewed_het_hom_ratio(member: PedigreeMember, segment_index: int) -> bool:
    """
    Allele-dropout signature: the mean minor allele count exceeds the median minor allele count, the median is zero,
    and the segment is not depleted in coverage
    """
    balleles = member.get_allele_counts(segment_index)
    if len(balleles) == 0:
        return False
    median_counts = balleles.median_counts if balleles.median_counts is not None else balleles.compute_median_counts()
    median_minor_count = median_counts[1]
    mean_minor_count = numpy.mean([min(ref, alt) for ref, alt in balleles.counts])
    is_high_coverage = member.get_coverage(segment_index) > member.mean_coverage * Default.high_coverage_fraction
    return mean_minor_count > median_minor_count and median_minor_count == 0 and is_high_coverage


def use_cn_likelihood(members: Sequence[PedigreeMember], segment_index: int, parameters: CallerParameters) -> bool:
    """
    Decide whether to call copy number only (True), skipping genotype refinement because B-allele evidence is not
    trustworthy at this segment. Every gate is evaluated, but unless parameters.use_all_cn_likelihood_gates is set
    only the low-allele-count gate decides.
    """
    allele_counts = [len(member.get_allele_counts(segment_index)) for member in members]
    low_allele_counts = any(count < parameters.default_allele_count_threshold for count in allele_counts)
    coverage_counts = [member.get_coverage(segment_index) for member in members]
    is_skewed_het_hom_ratio = False
    if not low_allele_counts:
        is_skewed_het_hom_ratio = any(skewed_het_hom_ratio(member, segment_index) for member in members)
    allele_density = members[0].segments[segment_index].length / max(numpy.mean(allele_counts), 1.0)
    any_gate = (
        low_allele_counts
        or allele_density < parameters.default_allele_density_threshold
        or any(count > parameters.default_per_segment_allele_max_counts for count in allele_counts)
        or any(coverage < parameters.median_coverage_threshold for coverage in coverage_counts)
        or is_skewed_het_hom_ratio
    )
    return any_gate if parameters.use_all_cn_likelihood_gates else low_allele_counts


class PedigreeLikelihoodEngine:
    """
    Per-segment joint caller for a roster with exactly two parents. All role lookups and the offspring genotype
    space are precomputed at construction, so call_segment only reads shared state and writes to the segments at its
    own index, and different segments can be called concurrently.
    """
    def __init__(
            self,
            roster: PedigreeRoster,
            parameters: Optional[CallerParameters] = None,
            random_state: Optional[numpy.random.Generator] = None
    ):
        self.roster = roster
        self.parameters = CallerParameters() if parameters is None else parameters
        if len(roster.parent_indices) != 2:
            raise PedigreeInconsistencyError(
                f"Joint pedigree calling requires exactly two parents, found {len(roster.parent_indices)}: "
                f"{[member.name for member in roster.parents]}"
            )
        if random_state is None:
            random_state = numpy.random.default_rng(self.parameters.random_seed)
        num_cn_states = self.parameters.maximum_copy_number
        self.num_cn_states = num_cn_states
        roster.assign_copy_number_models(num_cn_states, self.parameters.max_qscore, use_pedigree_variance=True)

        # axis order of every joint distribution: parent 1, parent 2, then children in roster order
        self.member_order: Tuple[int, ...] = roster.parent_indices + roster.child_indices
        self.member_names: List[str] = [roster[index].name for index in self.member_order]
        self.genotypes: Dict[int, List[Genotype]] = generate_genotype_combinations(num_cn_states)
        self.transition_matrix = get_transition_matrix(num_cn_states)
        num_children = len(roster.child_indices)
        self.offspring_genotypes = generate_offspring_genotypes(
            generate_parental_genotypes(num_cn_states), num_children,
            max_num=self.parameters.max_num_offspring_genotypes, random_state=random_state
        )
        offspring = numpy.array(self.offspring_genotypes, dtype=int).reshape(
            len(self.offspring_genotypes), num_children, 2
        )
        # the child's model index and call are clipped to the largest copy-number state
        self._child_copy_numbers = numpy.minimum(offspring.sum(axis=2), num_cn_states - 1)
        # probability (per parental copy number) of transmitting each offspring tuple's alleles: num_cn_states x tuples
        self._parent1_transmission = self.transition_matrix[:, offspring[:, :, 0]].prod(axis=2)
        self._parent2_transmission = self.transition_matrix[:, offspring[:, :, 1]].prod(axis=2)
        logger.info(f"Pedigree caller: {len(roster)} samples ({num_children} children), "
                    f"{len(self.offspring_genotypes)} offspring genotype combinations")

    @property
    def parent1(self) -> PedigreeMember:
        return self.roster[self.roster.parent_indices[0]]

    @property
    def parent2(self) -> PedigreeMember:
        return self.roster[self.roster.parent_indices[1]]

    def use_cn_likelihood(self, segment_index: int) -> bool:
        return use_cn_likelihood(self.roster.members, segment_index, self.parameters)

    def maximal_cn_likelihood(self, segment_index: int) -> CopyNumberDistribution:
        """
        Search every (parent 1 CN, parent 2 CN, offspring genotype tuple) assignment for the most likely one and
        write the winning copy numbers onto the members' segments. Ties go to the first assignment in
        (parent 1 CN, parent 2 CN, offspring tuple) order; if no assignment has positive likelihood every member
        keeps the default copy number 2.
        Args:
            segment_index: int
                Index of segment to call
        Returns:
            density: CopyNumberDistribution
                Joint distribution over member copy numbers, in member_order, holding at each index the largest
                likelihood of any assignment that maps to it
        """
        num_cn_states = self.num_cn_states
        for index in self.member_order:
            self.roster[index].segments[segment_index].copy_number = Default.default_copy_number

        parent1, parent2 = self.parent1, self.parent2
        parent1_likelihood = parent1.cn_model.get_cn_likelihood(
            min(parent1.get_coverage(segment_index), parent1.mean_coverage * Default.parent_coverage_cap)
        )
        parent2_likelihood = parent2.cn_model.get_cn_likelihood(
            min(parent2.get_coverage(segment_index), parent2.mean_coverage * Default.parent_coverage_cap)
        )
        children_likelihood = numpy.ones(len(self.offspring_genotypes), dtype=float)
        for child_number, child_index in enumerate(self.roster.child_indices):
            child = self.roster[child_index]
            child_likelihood = child.cn_model.get_cn_likelihood(child.get_coverage(segment_index))
            children_likelihood *= child_likelihood[self._child_copy_numbers[:, child_number]]

        with numpy.errstate(over="ignore", invalid="ignore", under="ignore"):
            joint = (
                parent1_likelihood[:, None, None] * parent2_likelihood[None, :, None]
                * self._parent1_transmission[:, None, :] * self._parent2_transmission[None, :, :]
                * children_likelihood[None, None, :]
            )
        joint = numpy.nan_to_num(joint, nan=0.0, posinf=0.0, neginf=0.0)

        density = CopyNumberDistribution(num_cn_states, self.member_names)
        cn_range = numpy.arange(num_cn_states)
        indices = [cn_range[:, None, None], cn_range[None, :, None]] + [
            self._child_copy_numbers[:, child_number][None, None, :]
            for child_number in range(len(self.roster.child_indices))
        ]
        density.update_maximum(joint, numpy.broadcast_arrays(*indices, joint)[:-1])

        best = int(numpy.argmax(joint))
        if joint.flat[best] > 0:
            cn1, cn2, offspring_index = numpy.unravel_index(best, joint.shape)
            parent1.segments[segment_index].copy_number = int(cn1)
            parent2.segments[segment_index].copy_number = int(cn2)
            for child_number, child_index in enumerate(self.roster.child_indices):
                self.roster[child_index].segments[segment_index].copy_number = \
                    int(self._child_copy_numbers[offspring_index, child_number])
        return density

    def _copy_number_states(self, segment_index: int) -> List[int]:
        return [
            min(self.roster[index].segments[segment_index].copy_number, self.num_cn_states - 1)
            for index in self.member_order
        ]

    def get_single_sample_quality_scores(
            self,
            density: CopyNumberDistribution,
            cn_states: Sequence[int]
    ) -> List[float]:
        """ Phred-scaled marginal probability that each member's copy-number call is wrong, in member_order """
        if len(density) != len(cn_states):
            raise ValueError("Size of CopyNumberDistribution should be equal to number of CN states")
        qscores = []
        for name, cn_state in zip(density.names, cn_states):
            marginal = density.get_marginal_probability(name)
            normalization = marginal.sum()
            with numpy.errstate(divide="ignore", invalid="ignore"):
                error_probability = (normalization - marginal[cn_state]) / normalization
            qscores.append(common.phred_score(error_probability, self.parameters.max_qscore))
        return qscores

    def get_conditional_de_novo_quality_score(
            self,
            density: CopyNumberDistribution,
            proband_axis: int,
            proband_copy_number: int,
            parent_axes: Tuple[int, int],
            remaining_proband_axes: Sequence[int]
    ) -> float:
        """
        Quality of a de-novo call: phred of (1 - P(parents and other probands diploid | proband CN)) x
        (1 - P(proband CN | proband CN or diploid)), with the probability floored at 1e-6
        """
        diploid = Default.diploid_copy_number
        marginal = density.get_marginal_probability(density.names[proband_axis])
        proband_marginal_alt = marginal[proband_copy_number] / (marginal[proband_copy_number] + marginal[diploid])

        probabilities = density.probabilities
        axis_values = numpy.indices(probabilities.shape)
        matches_proband = axis_values[proband_axis] == proband_copy_number
        all_diploid = matches_proband & (axis_values[parent_axes[0]] == diploid) & \
            (axis_values[parent_axes[1]] == diploid)
        for axis in remaining_proband_axes:
            all_diploid &= axis_values[axis] == diploid
        denominator = probabilities[matches_proband].sum()
        numerator = probabilities[all_diploid].sum()
        if denominator <= 0:
            return 0.0
        de_novo_probability = (1.0 - numerator / denominator) * (1.0 - proband_marginal_alt)
        return float(-10.0 * numpy.log10(max(de_novo_probability, Default.min_de_novo_probability)))

    def estimate_qscores(self, segment_index: int, density: CopyNumberDistribution):
        """
        Write single-sample quality scores (and a q{threshold} filter below the quality threshold) for every member,
        and a de-novo quality score for each proband with a confident non-diploid call whose parents and other
        probands are confidently diploid
        """
        parameters = self.parameters
        threshold = parameters.quality_filter_threshold
        cn_states = self._copy_number_states(segment_index)
        qscores = self.get_single_sample_quality_scores(density, cn_states)
        axis_of = {roster_index: axis for axis, roster_index in enumerate(self.member_order)}
        parent_axes = (axis_of[self.roster.parent_indices[0]], axis_of[self.roster.parent_indices[1]])
        proband_axes = [axis_of[index] for index in self.roster.proband_indices]
        for proband_axis in proband_axes:
            remaining_proband_axes = [axis for axis in proband_axes if axis != proband_axis]
            if (
                cn_states[proband_axis] != Default.diploid_copy_number
                and all(cn_states[axis] == Default.diploid_copy_number for axis in parent_axes)
                and all(cn_states[axis] == Default.diploid_copy_number for axis in remaining_proband_axes)
                and all(qscores[axis] > threshold for axis in (proband_axis,) + parent_axes)
            ):
                de_novo_qscore = self.get_conditional_de_novo_quality_score(
                    density, proband_axis, cn_states[proband_axis], parent_axes, remaining_proband_axes
                )
                segment = self.roster[self.member_order[proband_axis]].segments[segment_index]
                segment.de_novo_qscore = min(de_novo_qscore, parameters.max_qscore)

        for axis, roster_index in enumerate(self.member_order):
            segment = self.roster[roster_index].segments[segment_index]
            segment.qscore = qscores[axis]
            if segment.qscore < threshold:
                segment.filter = f"q{threshold:g}"

    def _genotype_log_likelihood(self, member: PedigreeMember, segment_index: int, genotype: Genotype) -> float:
        return member.cn_model.get_current_gt_likelihood(
            member.max_coverage, member.get_allele_counts(segment_index), genotype
        )

    def _set_major_chromosome_count(self, member: PedigreeMember, segment_index: int, genotype: Genotype):
        segment = member.segments[segment_index]
        copy_number = segment.copy_number
        if copy_number > Default.diploid_copy_number:
            segment.major_chromosome_count = max(genotype)
            segment.major_chromosome_count_score, _ = member.cn_model.get_gt_likelihood_score(
                member.get_allele_counts(segment_index), self.genotypes[copy_number], member.max_coverage,
                selected_index=self.genotypes[copy_number].index(genotype)
            )
        else:
            segment.major_chromosome_count = copy_number
            segment.major_chromosome_count_score = None

    def maximal_gt_likelihood(self, segment_index: int):
        """
        Given fixed copy numbers, choose the parental genotype pair (and each child's best consistent genotype) that
        maximizes the joint log likelihood of the B-allele observations, and write major chromosome counts.
        A child genotype is consistent if it shares an allele copy number with either parent's genotype. Children
        already flagged de novo are excluded and keep their major chromosome count unset.
        """
        parent1, parent2 = self.parent1, self.parent2
        children = self.roster.children
        parent1_genotypes = self.genotypes[parent1.segments[segment_index].copy_number]
        parent2_genotypes = self.genotypes[parent2.segments[segment_index].copy_number]
        child_log_likelihoods = [
            {
                genotype: self._genotype_log_likelihood(child, segment_index, genotype)
                for genotype in self.genotypes[child.segments[segment_index].copy_number]
            }
            for child in children
        ]

        maximal_likelihood = -numpy.inf
        best_assignment = None
        for parent1_genotype in parent1_genotypes:
            parent1_log_likelihood = self._genotype_log_likelihood(parent1, segment_index, parent1_genotype)
            for parent2_genotype in parent2_genotypes:
                current_likelihood = parent1_log_likelihood + \
                    self._genotype_log_likelihood(parent2, segment_index, parent2_genotype)
                best_child_genotypes: List[Optional[Genotype]] = []
                for child, log_likelihoods in zip(children, child_log_likelihoods):
                    if child.segments[segment_index].de_novo_qscore is not None:
                        best_child_genotypes.append(None)
                        continue
                    best_likelihood = -numpy.inf
                    best_genotype = None
                    for child_genotype, child_likelihood in log_likelihoods.items():
                        if not (is_gt_pedigree_consistent(parent1_genotype, child_genotype)
                                or is_gt_pedigree_consistent(parent2_genotype, child_genotype)):
                            continue
                        if best_genotype is None or child_likelihood > best_likelihood:
                            best_likelihood = child_likelihood
                            best_genotype = child_genotype
                    best_child_genotypes.append(best_genotype)
                    current_likelihood += best_likelihood
                if numpy.isnan(current_likelihood):
                    current_likelihood = -numpy.inf
                if best_assignment is None or current_likelihood > maximal_likelihood:
                    maximal_likelihood = current_likelihood
                    best_assignment = (parent1_genotype, parent2_genotype, best_child_genotypes)

        parent1_genotype, parent2_genotype, best_child_genotypes = best_assignment
        self._set_major_chromosome_count(parent1, segment_index, parent1_genotype)
        self._set_major_chromosome_count(parent2, segment_index, parent2_genotype)
        for child, child_genotype in zip(children, best_child_genotypes):
            if child_genotype is not None:
                self._set_major_chromosome_count(child, segment_index, child_genotype)

    def call_segment(self, segment_index: int):
        for member in self.roster:
            member.segments[segment_index].reset_calls()
        use_cn_likelihood = self.use_cn_likelihood(segment_index)
        density = self.maximal_cn_likelihood(segment_index)
        self.estimate_qscores(segment_index, density)
        if not use_cn_likelihood:
            self.maximal_gt_likelihood(segment_index)

    def call(self, num_workers: Optional[int] = None, show_progress: bool = True) -> PedigreeRoster:
        """
        Call every segment of every member, writing results into the members' segments
        Args:
            num_workers: Optional[int] (Default=None)
                Number of threads to use. If None, use all available cpus (up to 30).
            show_progress: bool (Default=True)
                If True, display progress
        Returns:
            roster: PedigreeRoster
                The called roster
        """
        self.roster.check_alignment()
        parallel_tools.map_segment_intervals(
            self.call_segment, self.roster.num_segments, num_workers=num_workers, description="pedigree segments",
            show_progress=show_progress
        )
        return self.roster

