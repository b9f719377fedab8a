import os
import logging
import importlib
import numpy
import psutil
from typing import Text, Any, Union, Optional, Iterable, Tuple, Sequence
from types import ModuleType


Numeric = Union[int, float, numpy.integer, numpy.floating]


class Default:
    max_core_number = 30  # never fan out over more partitions than this


def add_exception_context(exception: Exception, context: Text):
    """
    Prepend context to the args of a caught exception, in place, so that re-raising it reports where it happened.
    Args:
        exception: Exception
            Exception that was caught
        context: str
            Description of what was being done when the exception was raised
    """
    exception.args = (context,) + tuple(exception.args)


def _descend(base: Union[ModuleType, Any, None], name: Text) -> Any:
    if base is None:
        return importlib.import_module(name)
    if hasattr(base, name):
        return getattr(base, name)
    return importlib.import_module(f"{base.__name__}.{name}")


def dynamic_import(obj_name: Text, base: Union[Text, ModuleType, None] = None) -> Any:
    """
    Import an object from its dotted name, importing sub-modules or taking attributes as needed at each level.
    Args:
        obj_name: str
            Dotted name, e.g. "cnv_caller.call_somatic_cnvs.main"
        base: str, ModuleType, or None (Default=None)
            Package or object that obj_name is relative to. None means obj_name is absolute.
    Returns:
        obj: Any
            The named object
    """
    obj = importlib.import_module(base) if isinstance(base, str) else base
    for name in obj_name.split('.'):
        obj = _descend(obj, name)
    return obj


def count_cpus() -> Tuple[int, int]:
    """
    Count the cpus psutil can see on this host.
    Returns:
        num_cores: int
            Physical cores. Virtual machines may hide these, so falls back to num_threads
        num_threads: int
            Logical cores (hyperthreads)
    """
    num_threads = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    num_cores = psutil.cpu_count(logical=False) or num_threads
    return num_cores, num_threads


def _job_slots() -> int:
    """ Grid engines advertise the granted slots in NSLOTS; otherwise every logical cpu is a slot """
    if 'NSLOTS' in os.environ:
        return max(1, int(os.environ['NSLOTS']))
    return max(count_cpus())


def num_jobs_to_use(num_jobs: Optional[int] = None, max_jobs: Optional[int] = Default.max_core_number) -> int:
    """
    Decide how many parallel jobs to run.
    Args:
        num_jobs: int or None
            Requested number of jobs. None or negative means "as many as there are slots"; 0 is bumped up to 1
        max_jobs: int or None (Default=30)
            Ceiling applied after the slot count
    Returns:
        num_jobs: int
            At least 1, at most min(slots, max_jobs)
    """
    ceiling = _job_slots()
    if max_jobs is not None:
        ceiling = min(ceiling, max_jobs)
    if num_jobs is None or num_jobs < 0:
        return max(1, ceiling)
    return max(1, min(num_jobs, ceiling))


def quartiles(values: Iterable[Numeric]) -> Tuple[float, float, float]:
    """
    Return first quartile, median and third quartile of values
    Args:
        values: Iterable[Numeric]
            Values to summarize. Must not be empty.
    Returns:
        quartiles: Tuple[float, float, float]
            (Q1, Q2, Q3)
    """
    values = numpy.asarray(list(values), dtype=float)
    if values.size == 0:
        raise ValueError("Cannot compute quartiles of an empty collection")
    q1, q2, q3 = numpy.percentile(values, [25, 50, 75])
    return float(q1), float(q2), float(q3)


def sorted_middle_element(values: Sequence[Numeric]) -> float:
    """ Element at index n // 2 after sorting (upper median for even n) """
    return float(sorted(values)[len(values) // 2])


def phred_score(error_probability: float, max_qscore: float) -> float:
    """
    Convert an error probability into a phred-scaled quality score, capped at max_qscore.
    Infinite scores (error probability of zero) are treated as max_qscore, undefined scores (nan probability) as 0.
    """
    with numpy.errstate(divide="ignore", invalid="ignore"):
        qscore = -10.0 * numpy.log10(error_probability)
    if numpy.isnan(qscore):
        return 0.0
    if numpy.isinf(qscore) or qscore > max_qscore:
        return float(max_qscore)
    return float(qscore)


def set_log_level(log_level: Text):
    """
    Configure root logging from a case-insensitive level name (e.g. "info", "DEBUG")
    Raises:
        ValueError if log_level is not a valid logging level name
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=numeric_level, format='%(asctime)s - %(levelname)s - %(message)s')
