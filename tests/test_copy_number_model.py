import numpy
import pytest

from cnv_caller.copy_number_model import CopyNumberModel
from cnv_caller.sample_metrics import SampleMetrics
from cnv_caller.segments import Balleles


class Default:
    num_cn_states = 5
    mean_coverage = 60.0
    mean_maf_coverage = 60.0
    variance = 40.0
    max_coverage = 200
    max_qscore = 60.0


@pytest.fixture
def cn_model() -> CopyNumberModel:
    metrics = SampleMetrics(
        mean_coverage=Default.mean_coverage, mean_maf_coverage=Default.mean_maf_coverage,
        variance=Default.variance, maf_variance=Default.variance, max_coverage=Default.max_coverage
    )
    return CopyNumberModel.from_sample_metrics(metrics, Default.num_cn_states, Default.max_qscore)


@pytest.mark.parametrize("coverage,expected_copy_number", [(0, 0), (30, 1), (60, 2), (90, 3), (120, 4)])
def test_get_cn_likelihood(cn_model: CopyNumberModel, coverage: float, expected_copy_number: int):
    likelihoods = cn_model.get_cn_likelihood(coverage)
    assert likelihoods.shape == (Default.num_cn_states,)
    assert numpy.all(likelihoods >= 0)
    assert int(numpy.argmax(likelihoods)) == expected_copy_number


def test_get_cn_likelihood_clips_and_handles_nan(cn_model: CopyNumberModel):
    numpy.testing.assert_array_equal(cn_model.get_cn_likelihood(numpy.nan), numpy.zeros(Default.num_cn_states))
    numpy.testing.assert_array_equal(
        cn_model.get_cn_likelihood(10 * Default.max_coverage), cn_model.get_cn_likelihood(Default.max_coverage - 1)
    )
    numpy.testing.assert_array_equal(cn_model.get_cn_likelihood(-5), cn_model.get_cn_likelihood(0))


def test_likelihood_tables_are_distributions(cn_model: CopyNumberModel):
    # for copy numbers whose depth distribution fits well inside the table, each column sums to ~1
    column_sums = cn_model._cn_likelihoods.sum(axis=0)
    numpy.testing.assert_allclose(column_sums[1:], 1.0, atol=1e-3)


def test_pedigree_variance_inflates_spread():
    metrics = SampleMetrics(
        mean_coverage=Default.mean_coverage, mean_maf_coverage=Default.mean_maf_coverage, variance=1.0,
        maf_variance=1.0, max_coverage=Default.max_coverage
    )
    empirical = CopyNumberModel.from_sample_metrics(metrics, Default.num_cn_states, Default.max_qscore)
    pedigree = CopyNumberModel.from_sample_metrics(metrics, Default.num_cn_states, Default.max_qscore,
                                                   use_pedigree_variance=True)
    assert pedigree.variance == pytest.approx(Default.mean_coverage * 2.5)
    # a depth far from the diploid mean is more plausible under the wider pedigree model
    assert pedigree.get_cn_likelihood(40)[2] > empirical.get_cn_likelihood(40)[2]


def test_get_current_gt_likelihood(cn_model: CopyNumberModel):
    assert cn_model.get_current_gt_likelihood(Default.max_coverage, Balleles(), (1, 2)) == 0.0
    # three copies with one allele at twice the depth of the other
    balleles = Balleles([(60, 30)] * 10 + [(30, 60)] * 10)
    balanced = cn_model.get_current_gt_likelihood(Default.max_coverage, balleles, (0, 3))
    unbalanced = cn_model.get_current_gt_likelihood(Default.max_coverage, balleles, (1, 2))
    assert unbalanced > balanced
    # both phasings are considered for every site
    assert cn_model.get_current_gt_likelihood(Default.max_coverage, balleles, (2, 1)) == pytest.approx(unbalanced)


def test_get_gt_likelihood_score(cn_model: CopyNumberModel):
    genotypes = [(0, 3), (1, 2)]
    balleles = Balleles([(60, 30)] * 20)
    score, selected_index = cn_model.get_gt_likelihood_score(balleles, genotypes, Default.max_coverage)
    assert selected_index == 1
    assert 0 < score <= Default.max_qscore
    forced_score, forced_index = cn_model.get_gt_likelihood_score(
        balleles, genotypes, Default.max_coverage, selected_index=0
    )
    assert forced_index == 0
    assert forced_score < score
    single_score, _ = cn_model.get_gt_likelihood_score(balleles, [(1, 2)], Default.max_coverage)
    assert single_score == Default.max_qscore
