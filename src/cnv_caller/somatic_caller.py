"""
Copy-number calling for a single tumor sample without a matched pedigree.

A purity / ploidy model is fit to the sample's segments, each segment is assigned the nearest ploidy of that model,
calls on heterogeneous (subclonal) segments may be adjusted, q-scores are assigned and adjacent segments with the same
call are merged. Modelling failures are reported through the status of the returned SomaticCallResult rather than by
raising.
"""
import logging
import dataclasses
from enum import Enum
import numpy
from typing import List, Optional, Sequence, Dict, Text, Tuple

from cnv_caller import common
from cnv_caller.config import SomaticCallerParameters
from cnv_caller.errors import ModelingError, NotEnoughUsableSegmentsError, UncallableDataError
from cnv_caller.segments import Segment
from cnv_caller.sample_metrics import PloidyInfo
from cnv_caller.somatic_models import CoveragePurityModel, SegmentPloidy, initialize_ploidies, build_model_points, \
    model_distance, Default as ModelDefault
from cnv_caller.purity_ploidy import PurityPloidyModeler
from cnv_caller.segment_merger import merge_segments, merge_segments_using_excluded_intervals, \
    Default as MergerDefault
from cnv_caller.reporting import Reporter


logger = logging.getLogger(__name__)
Interval = Tuple[int, int]


class Default:
    mean_coverage = 30.0  # used when the sample has no B-allele data
    min_ploidy_call_variant_frequencies = 10
    reference_copy_number = 2
    min_somatic_snvs = 100
    max_snv_frequency = 0.5
    max_abnormal_fraction = 0.07
    max_override_purity = 0.5
    min_adjustment_purity = 0.2
    heterogeneous_score_cutoff = 0.5


class SomaticCallStatus(Enum):
    CALLED = "called"
    NOT_ENOUGH_USABLE_SEGMENTS = "not_enough_usable_segments"
    UNCALLABLE_DATA = "uncallable_data"
    TRAINING_MODE_FAILURE = "training_mode_failure"

    def __str__(self):
        return self.value


@dataclasses.dataclass
class SomaticCallResult:
    status: SomaticCallStatus
    segments: List[Segment]
    model: Optional[CoveragePurityModel] = None
    headers: List[Text] = dataclasses.field(default_factory=list)
    message: Optional[Text] = None

    @property
    def is_called(self) -> bool:
        return self.status == SomaticCallStatus.CALLED

    @property
    def diploid_coverage(self) -> Optional[float]:
        return None if self.model is None else self.model.diploid_coverage

    @property
    def purity(self) -> Optional[float]:
        return None if self.model is None else self.model.purity


def get_mean_allele_coverage(segments: Sequence[Segment]) -> float:
    coverages = [coverage for segment in segments for coverage in segment.balleles.total_coverage]
    return float(numpy.mean(coverages)) if coverages else Default.mean_coverage


def get_genome_length(segments: Sequence[Segment]) -> int:
    """ Sum over chromosomes of the largest segment end """
    chromosome_ends: Dict[Text, int] = {}
    for segment in segments:
        chromosome_ends[segment.chromosome] = max(chromosome_ends.get(segment.chromosome, 0), segment.end)
    return sum(chromosome_ends.values())


def estimate_chromosome_count(segments: Sequence[Segment], maximum_copy_number: int) -> float:
    """
    Sum over chromosomes of the length-weighted mean copy number of passing, called segments (copy numbers above
    maximum_copy_number count as maximum_copy_number)
    """
    bases_by_chromosome: Dict[Text, numpy.ndarray] = {}
    for segment in segments:
        bases = bases_by_chromosome.setdefault(segment.chromosome, numpy.zeros(maximum_copy_number + 1))
        if not segment.is_pass or segment.copy_number == -1:
            continue
        bases[min(segment.copy_number, maximum_copy_number)] += segment.length
    chromosome_count = 0.0
    for bases in bases_by_chromosome.values():
        if bases.sum() > 0:
            chromosome_count += float((numpy.arange(bases.size) * bases).sum() / bases.sum())
    return chromosome_count


def estimate_purity_from_somatic_snvs(variant_frequencies: Sequence[float]) -> float:
    """
    Purity estimate from the variant allele frequencies of passing somatic SNVs: twice the mean frequency of
    heterozygous-looking SNVs (frequency below 0.5), capped at 1. nan if there are fewer than 100 such SNVs.
    """
    frequencies = numpy.asarray(variant_frequencies, dtype=float)
    frequencies = frequencies[frequencies < Default.max_snv_frequency]
    if frequencies.size < Default.min_somatic_snvs:
        logger.info(f"Only {frequencies.size} somatic SNVs available: not estimating purity from SNVs")
        return numpy.nan
    return float(min(1.0, 2.0 * frequencies.mean()))


def select_purity_estimate(model: CoveragePurityModel, segments: Sequence[Segment], snv_purity: float) -> float:
    """
    Override the model's purity with the SNV-derived estimate when few CNVs were called and the model purity is low
    Returns:
        purity: float
            Purity retained in model
    """
    total_length = sum(segment.length for segment in segments)
    abnormal_length = sum(
        segment.length for segment in segments
        if segment.copy_number != 2 or segment.major_chromosome_count != 1
    )
    abnormal_fraction = abnormal_length / total_length if total_length > 0 else 0.0
    logger.info(f"Purity estimates: {model.purity:.4f} from CNVs, {snv_purity:.4f} from SNVs, "
                f"fraction abnormal {abnormal_fraction:.4f}")
    if abnormal_fraction < Default.max_abnormal_fraction and not numpy.isnan(snv_purity) \
            and model.purity < Default.max_override_purity:
        logger.info(f"Override purity estimate to {snv_purity:.4f}")
        model.purity = snv_purity
    return model.purity


def get_ploidy_call_maf(segment: Segment) -> float:
    minor_allele_frequencies = segment.balleles.minor_allele_frequencies
    if len(minor_allele_frequencies) < Default.min_ploidy_call_variant_frequencies:
        return ModelDefault.missing_maf
    return common.sorted_middle_element(minor_allele_frequencies)


def assign_ploidy_calls(
        segments: Sequence[Segment],
        model: CoveragePurityModel,
        ploidies: Sequence[SegmentPloidy],
        coverage_weighting_factor: float,
        maximum_copy_number: int,
        ploidy_info: Optional[PloidyInfo] = None
):
    """
    Call each segment with the nearest model point of the fitted model (and record the runner-up). The MAF term is
    left out of the distance, and no major chromosome count is called, for segments with fewer than 10 allele sites.
    Calls at the maximum copy number are extrapolated from the coverage ratio when that gives a higher copy number.
    """
    model_points = build_model_points(model.diploid_coverage, model.purity, ploidies)
    point_coverages = numpy.array([point.coverage for point in model_points])
    point_mafs = numpy.array([point.maf for point in model_points])
    for segment in segments:
        maf = get_ploidy_call_maf(segment)
        distances = model_distance(point_coverages, segment.median_count, maf, point_mafs, coverage_weighting_factor)
        best, second_best = numpy.argsort(distances, kind="stable")[:2]
        segment.copy_number = model_points[best].copy_number
        segment.second_best_copy_number = model_points[second_best].copy_number
        segment.major_chromosome_count = model_points[best].ploidy.major_chromosome_count if maf >= 0 else None
        segment.model_distance = float(distances[best])
        segment.runner_up_model_distance = float(distances[second_best])

        if segment.copy_number == maximum_copy_number:
            reference_copy_number = Default.reference_copy_number if ploidy_info is None \
                else ploidy_info.get_reference_copy_number(segment)
            coverage_ratio = segment.mean_count / model.diploid_coverage
            estimated_copy_number = int(round(
                (2 * coverage_ratio - reference_copy_number * (1 - model.purity)) / model.purity
            ))
            if estimated_copy_number > maximum_copy_number:
                segment.copy_number = estimated_copy_number
                segment.major_chromosome_count = None
                expected_coverage = model.diploid_coverage * (
                    (1 - model.purity) + model.purity * estimated_copy_number / 2.0
                )
                segment.model_distance = abs(segment.mean_count - expected_coverage) * coverage_weighting_factor


def assign_heterogeneity(segments: Sequence[Segment], heterogeneous_segment_scores: Dict[Segment, float]) -> float:
    """
    Flag segments whose clonality score is below 0.5 as heterogeneous
    Returns:
        heterogeneity_proportion: float
            Flagged length over total length
    """
    total_length = 1
    heterogeneous_length = 0
    for segment in segments:
        total_length += segment.length
        score = heterogeneous_segment_scores.get(segment)
        if score is not None and score < Default.heterogeneous_score_cutoff:
            segment.is_heterogeneous = True
            heterogeneous_length += segment.length
    return heterogeneous_length / total_length


def adjust_ploidy_calls(segments: Sequence[Segment], model: CoveragePurityModel, distance_ratio: float) -> int:
    """
    Swap a heterogeneous segment's CN 2 call for its runner-up CN 1 or 3 when the two fit almost equally well and
    purity is not low: such a segment is more likely a subclonal loss or gain than normal. The swapped call's major
    chromosome count follows its new copy number (1 for CN 1, 2 for CN 3), not the runner-up model point's ploidy.
    Returns:
        num_swapped: int
    """
    num_swapped = 0
    for segment in segments:
        if not segment.is_heterogeneous or model.purity <= Default.min_adjustment_purity:
            continue
        if segment.runner_up_model_distance <= 0 or \
                segment.model_distance / segment.runner_up_model_distance <= distance_ratio:
            continue
        if segment.copy_number == 2 and segment.second_best_copy_number in (1, 3):
            segment.copy_number, segment.second_best_copy_number = segment.second_best_copy_number, 2
            segment.copy_number_swapped = True
            segment.major_chromosome_count = 1 if segment.copy_number == 1 else 2
            num_swapped += 1
    logger.info(f"Adjusted {num_swapped} heterogeneous segment calls")
    return num_swapped


def get_segment_qscore(segment: Segment, parameters: SomaticCallerParameters) -> float:
    """
    Logistic q-score: the probability that the call is right grows with the number of bins and shrinks as the
    best model distance approaches the runner-up distance
    """
    distance_ratio = 1.0 if segment.runner_up_model_distance <= 0 \
        else segment.model_distance / segment.runner_up_model_distance
    log_odds = parameters.qscore_intercept \
        + parameters.qscore_log_bin_count * numpy.log(max(segment.bin_count, 1)) \
        + parameters.qscore_distance_ratio * distance_ratio
    error_probability = 1.0 / (1.0 + numpy.exp(log_odds))
    return common.phred_score(error_probability, parameters.max_qscore)


def assign_quality_scores(segments: Sequence[Segment], parameters: SomaticCallerParameters):
    for segment in segments:
        segment.qscore = get_segment_qscore(segment, parameters) if segment.copy_number >= 0 else 0.0


def filter_segments(segments: Sequence[Segment], quality_filter_threshold: float):
    for segment in segments:
        segment.filter = Segment.pass_filter if segment.qscore >= quality_filter_threshold \
            else f"q{quality_filter_threshold:g}"


class SomaticCaller:
    def __init__(
            self,
            parameters: Optional[SomaticCallerParameters] = None,
            reporter: Optional[Reporter] = None,
            random_state: Optional[numpy.random.Generator] = None
    ):
        self.parameters = SomaticCallerParameters() if parameters is None else parameters
        self.reporter = reporter
        self.random_state = numpy.random.default_rng(self.parameters.random_seed) if random_state is None \
            else random_state

    def call(
            self,
            segments: Sequence[Segment],
            evenness_score: Optional[float] = None,
            ploidy_info: Optional[PloidyInfo] = None,
            excluded_intervals: Optional[Dict[Text, Sequence[Interval]]] = None,
            somatic_snv_frequencies: Optional[Sequence[float]] = None,
            genome_length: Optional[int] = None,
            local_sd_metric: Optional[float] = None
    ) -> SomaticCallResult:
        """
        Call copy number of every segment of one tumor sample
        Args:
            segments: Sequence[Segment]
                Segments of the sample in genomic order, with bin counts and B-allele observations
            evenness_score: Optional[float] (Default=None)
                Coverage evenness score. Heterogeneity adjustment only runs when it is given and high enough.
            ploidy_info: Optional[PloidyInfo] (Default=None)
                Reference ploidy by region, used to extrapolate high copy numbers
            excluded_intervals: Optional[Dict[Text, Sequence[Interval]]] (Default=None)
                Intervals that merged segments may not span
            somatic_snv_frequencies: Optional[Sequence[float]] (Default=None)
                Variant frequencies of passing somatic SNVs, for an alternative purity estimate
            genome_length: Optional[int] (Default=None)
                Genome length. If None, the sum of the largest segment end of each chromosome.
            local_sd_metric: Optional[float] (Default=None)
                Reported in the header lines only
        Returns:
            result: SomaticCallResult
        """
        segments = list(segments)
        for segment in segments:
            segment.reset_calls()
        if self.parameters.is_training_mode:
            try:
                return self._call(segments, evenness_score, ploidy_info, excluded_intervals, somatic_snv_frequencies,
                                  genome_length, local_sd_metric)
            except (ModelingError, ValueError, ArithmeticError) as err:
                logger.warning(f"Training mode: not calling any CNVs. Reason: {err}")
                return SomaticCallResult(SomaticCallStatus.TRAINING_MODE_FAILURE, [], message=str(err))
        try:
            return self._call(segments, evenness_score, ploidy_info, excluded_intervals, somatic_snv_frequencies,
                              genome_length, local_sd_metric)
        except NotEnoughUsableSegmentsError as err:
            logger.warning(f"Not calling any CNVs. Reason: {err}")
            for segment in segments:
                segment.reset_calls()
            return SomaticCallResult(SomaticCallStatus.NOT_ENOUGH_USABLE_SEGMENTS, segments, message=str(err))
        except UncallableDataError as err:
            logger.error(f"Cannot call CNVs. Reason: {err}")
            return SomaticCallResult(SomaticCallStatus.UNCALLABLE_DATA, [], message=str(err))

    def _call(
            self,
            segments: List[Segment],
            evenness_score: Optional[float],
            ploidy_info: Optional[PloidyInfo],
            excluded_intervals: Optional[Dict[Text, Sequence[Interval]]],
            somatic_snv_frequencies: Optional[Sequence[float]],
            genome_length: Optional[int],
            local_sd_metric: Optional[float]
    ) -> SomaticCallResult:
        parameters = self.parameters
        genome_length = get_genome_length(segments) if genome_length is None else genome_length
        mean_coverage = get_mean_allele_coverage(segments)
        ploidies = initialize_ploidies(parameters.maximum_copy_number, mean_coverage)
        modeler = PurityPloidyModeler(ploidies, mean_coverage, parameters, random_state=self.random_state,
                                      reporter=self.reporter)
        model = modeler.fit(segments, genome_length, evenness_score=evenness_score)

        assign_ploidy_calls(segments, model, ploidies, modeler.coverage_weighting_factor,
                            parameters.maximum_copy_number, ploidy_info=ploidy_info)
        heterogeneity_proportion = 0.0
        if not parameters.is_enrichment and evenness_score is not None \
                and evenness_score >= parameters.evenness_score_threshold:
            heterogeneity_proportion = assign_heterogeneity(segments, modeler.heterogeneous_segment_scores)
            adjust_ploidy_calls(segments, model, parameters.distance_ratio)

        if somatic_snv_frequencies is not None:
            select_purity_estimate(model, segments, estimate_purity_from_somatic_snvs(somatic_snv_frequencies))

        headers = [
            f"##EstimatedTumorPurity={model.purity:.2f}",
            f"##PurityModelFit={model.deviation:.4f}",
            f"##InterModelDistance={model.inter_model_distance:.4f}",
            f"##LocalSDmetric={'' if local_sd_metric is None else format(local_sd_metric, '.2f')}",
            f"##EvennessScore={'' if evenness_score is None else format(evenness_score, '.2f')}"
        ]
        if not parameters.is_enrichment:
            headers.append(f"##HeterogeneityProportion={heterogeneity_proportion:.2f}")
        if ploidy_info is not None and ploidy_info.header_line:
            headers.append(ploidy_info.header_line)

        assign_quality_scores(segments, parameters)
        if parameters.is_enrichment:
            merged_segments = merge_segments(segments, parameters.minimum_call_size,
                                             max_gap=MergerDefault.enrichment_max_gap)
        else:
            merged_segments = merge_segments_using_excluded_intervals(
                segments, parameters.minimum_call_size, excluded_intervals=excluded_intervals,
                max_gap=parameters.max_merge_gap
            )
        assign_quality_scores(merged_segments, parameters)
        filter_segments(merged_segments, parameters.quality_filter_threshold)
        headers.append(
            f"##EstimatedChromosomeCount={estimate_chromosome_count(segments, parameters.maximum_copy_number):.2f}"
        )
        logger.info(f"Called {len(merged_segments)} segments; purity {model.purity:.2f}, diploid coverage "
                    f"{model.diploid_coverage}")
        return SomaticCallResult(SomaticCallStatus.CALLED, merged_segments, model=model, headers=headers)
