import numpy
import pytest
from typing import Dict, List, Text

from cnv_caller.config import CallerParameters
from cnv_caller.pedigree_tools import PedigreeRoster
from cnv_caller.no_pedigree_caller import NoPedigreeLikelihoodEngine
from cnv_caller.call_pedigree_cnvs import call_pedigree_cnvs
from cnv_caller.segments import Segment

import common_test_utils


class Default:
    num_segments = 20
    coverage = 100.0
    allele_counts = (50, 50)
    duplicated_segment = 5
    duplication_coverage = 150.0
    duplication_allele_counts = (100, 50)
    sample_names = ("s1", "s2", "s3")
    duplicated_sample = "s2"
    # one hemizygous, one diploid and one duplicated sample at the same segment
    three_state_segment = 2
    three_state_coverages = (50.0, 100.0, 150.0)
    three_state_allele_counts = (None, (50, 50), (100, 50))


def _make_cohort_segments() -> Dict[Text, List[Segment]]:
    """ Unrelated samples, one of which carries a single-copy duplication at one segment """
    segments_by_sample = {}
    for name in Default.sample_names:
        coverages = [Default.coverage] * Default.num_segments
        allele_counts = [Default.allele_counts] * Default.num_segments
        if name == Default.duplicated_sample:
            coverages[Default.duplicated_segment] = Default.duplication_coverage
            allele_counts[Default.duplicated_segment] = Default.duplication_allele_counts
        segments_by_sample[name] = common_test_utils.make_sample_segments(coverages, allele_counts)
    return segments_by_sample


@pytest.fixture
def engine() -> NoPedigreeLikelihoodEngine:
    return NoPedigreeLikelihoodEngine(PedigreeRoster.from_kinships(_make_cohort_segments()), CallerParameters())


def test_copy_number_combinations(engine: NoPedigreeLikelihoodEngine):
    assert len(engine.copy_number_combinations) == 25
    assert engine.num_cn_states == CallerParameters().maximum_copy_number


def test_maximal_cn_likelihood(engine: NoPedigreeLikelihoodEngine, duplicated_segment: int = Default.duplicated_segment):
    density = engine.maximal_cn_likelihood(duplicated_segment)
    assert density.shape == (len(Default.sample_names), engine.num_cn_states)
    calls = {member.name: member.segments[duplicated_segment].copy_number for member in engine.roster}
    assert calls == {"s1": 2, "s2": 3, "s3": 2}
    # only copy numbers of the winning combination (2, 3) can hold likelihood
    assert numpy.all(density[:, [0, 1, 4]] == 0)
    assert density[engine.roster.names.index("s2"), 3] > 0


def test_call_duplication(engine: NoPedigreeLikelihoodEngine, duplicated_segment: int = Default.duplicated_segment):
    roster = engine.call(num_workers=2, show_progress=False)
    parameters = CallerParameters()
    for member in roster:
        for segment_index, segment in enumerate(member.segments):
            is_duplicated = member.name == Default.duplicated_sample and segment_index == duplicated_segment
            assert segment.copy_number == (3 if is_duplicated else 2), f"{member.name} segment {segment_index}"
            assert 0 <= segment.qscore <= parameters.max_qscore
    duplicated = roster[roster.names.index(Default.duplicated_sample)].segments[duplicated_segment]
    assert duplicated.major_chromosome_count == 2
    assert duplicated.major_chromosome_count_score is not None
    assert duplicated.qscore > parameters.quality_filter_threshold
    assert duplicated.is_pass
    # a single-state combination leaves nothing to confuse the call with
    normal = roster[roster.names.index("s1")].segments[0]
    assert normal.qscore == parameters.max_qscore
    assert normal.major_chromosome_count == 2
    assert normal.major_chromosome_count_score is None


def test_three_copy_number_combination(changed_segment: int = Default.three_state_segment):
    segments_by_sample = {}
    for name, coverage, allele_counts in zip(Default.sample_names, Default.three_state_coverages,
                                             Default.three_state_allele_counts):
        coverages = [Default.coverage] * Default.num_segments
        sample_allele_counts = [Default.allele_counts] * Default.num_segments
        coverages[changed_segment] = coverage
        sample_allele_counts[changed_segment] = allele_counts
        segments_by_sample[name] = common_test_utils.make_sample_segments(coverages, sample_allele_counts)
    engine = NoPedigreeLikelihoodEngine(PedigreeRoster.from_kinships(segments_by_sample))
    density = engine.maximal_cn_likelihood(changed_segment)
    # one sample per copy number only fits the combination holding all three
    assert [member.segments[changed_segment].copy_number for member in engine.roster] == [1, 2, 3]
    assert numpy.all(density[:, [0, 4]] == 0)
    engine.call(num_workers=1, show_progress=False)
    assert [member.segments[changed_segment].copy_number for member in engine.roster] == [1, 2, 3]
    for member in engine.roster:
        assert 0 <= member.segments[changed_segment].qscore <= CallerParameters().max_qscore


def test_low_allele_count_skips_genotyping(duplicated_segment: int = Default.duplicated_segment):
    segments_by_sample = _make_cohort_segments()
    for segments in segments_by_sample.values():
        segments[duplicated_segment].balleles.counts = segments[duplicated_segment].balleles.counts[:2]
    engine = NoPedigreeLikelihoodEngine(PedigreeRoster.from_kinships(segments_by_sample))
    engine.call(num_workers=1, show_progress=False)
    duplicated = engine.roster[engine.roster.names.index(Default.duplicated_sample)].segments[duplicated_segment]
    assert duplicated.copy_number == 3
    assert duplicated.major_chromosome_count is None


def test_call_pedigree_cnvs_without_pedigree(duplicated_segment: int = Default.duplicated_segment):
    roster = call_pedigree_cnvs(_make_cohort_segments(), show_progress=False, num_workers=2)
    # runs of equal calls across all samples are merged: before, at and after the duplication
    assert roster.num_segments == 3
    for member in roster:
        assert [segment.begin for segment in member.segments] == [
            0, duplicated_segment * common_test_utils.Default.segment_length,
            (duplicated_segment + 1) * common_test_utils.Default.segment_length
        ]
        expected = [2, 3, 2] if member.name == Default.duplicated_sample else [2, 2, 2]
        assert [segment.copy_number for segment in member.segments] == expected
        assert member.segments[-1].end == Default.num_segments * common_test_utils.Default.segment_length
        assert member.segments[0].bin_count == duplicated_segment * common_test_utils.Default.num_bins
