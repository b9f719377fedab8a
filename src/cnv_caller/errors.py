"""
Exception hierarchy for cnv_caller.

PreconditionError and its subclasses signal programming / input-integrity problems and are never recovered from.
ModelingError subclasses signal that the somatic purity/ploidy model cannot be fit to the data; they are raised inside
the model and converted into a tagged SomaticCallResult at the entry point of the somatic caller.
"""


class CnvCallerError(Exception):
    pass


class PreconditionError(CnvCallerError):
    pass


class SegmentAlignmentError(PreconditionError):
    """ Per-sample segment lists (or per-segment arrays) are not index-aligned """
    pass


class PedigreeInconsistencyError(PreconditionError):
    """ The pedigree roster cannot be used for joint calling (e.g. not exactly two parents) """
    pass


class ModelingError(CnvCallerError):
    pass


class NotEnoughUsableSegmentsError(ModelingError):
    pass


class UncallableDataError(ModelingError):
    pass
