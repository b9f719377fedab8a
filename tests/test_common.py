import numpy
import pytest

from cnv_caller import common


@pytest.mark.parametrize("error_probability,expected", [
    (0.1, 10.0),
    (0.001, 30.0),
    (0.0, 60.0),
    (1e-9, 60.0),
    (1.0, 0.0),
    (numpy.nan, 0.0),
])
def test_phred_score(error_probability: float, expected: float, max_qscore: float = 60.0):
    assert common.phred_score(error_probability, max_qscore) == pytest.approx(expected)


def test_sorted_middle_element():
    assert common.sorted_middle_element([3, 1, 2]) == 2
    # upper median for an even number of values
    assert common.sorted_middle_element([0.4, 0.1, 0.3, 0.2]) == pytest.approx(0.3)


def test_quartiles():
    assert common.quartiles([1, 2, 3, 4, 5]) == (2.0, 3.0, 4.0)
    assert common.quartiles(numpy.full(10, 7.0)) == (7.0, 7.0, 7.0)
    with pytest.raises(ValueError):
        common.quartiles([])


def test_add_exception_context():
    exception = ValueError("bad value")
    common.add_exception_context(exception, "While reading line 3")
    assert exception.args == ("While reading line 3", "bad value")
    exception = KeyError("a", "b")
    common.add_exception_context(exception, "context")
    assert exception.args == ("context", "a", "b")


def test_dynamic_import():
    assert common.dynamic_import("cnv_caller.common.quartiles") is common.quartiles
    assert common.dynamic_import("quartiles", base="cnv_caller.common") is common.quartiles


@pytest.mark.parametrize("num_jobs", [None, -1, 0, 1, 4])
def test_num_jobs_to_use(num_jobs):
    jobs = common.num_jobs_to_use(num_jobs)
    assert 1 <= jobs <= common.Default.max_core_number
    if num_jobs is not None and num_jobs > 0:
        assert jobs <= num_jobs


def test_set_log_level():
    common.set_log_level("debug")
    common.set_log_level("WARNING")
    with pytest.raises(ValueError):
        common.set_log_level("chatty")
