import numpy
from typing import Sequence, Text, Tuple, Iterator, List

from cnv_caller.errors import SegmentAlignmentError


CopyNumberIndex = Tuple[int, ...]


class CopyNumberDistribution:
    """
    Joint (unnormalized) probability table over the copy numbers of several samples, one axis per sample in the order
    of names. Values are always finite and non-negative: nan and inf are stored as 0.
    """
    __slots__ = ("num_cn_states", "names", "_probabilities")

    def __init__(self, num_cn_states: int, names: Sequence[Text]):
        self.num_cn_states = num_cn_states
        self.names: List[Text] = list(names)
        self._probabilities = numpy.zeros((num_cn_states,) * len(self.names), dtype=float)

    def __len__(self) -> int:
        """ number of samples """
        return len(self.names)

    @property
    def probabilities(self) -> numpy.ndarray:
        """ read-only view of the joint table """
        view = self._probabilities.view()
        view.flags.writeable = False
        return view

    @property
    def total(self) -> float:
        return float(self._probabilities.sum())

    def _check_index(self, index: Sequence[int]) -> CopyNumberIndex:
        index = tuple(int(i) for i in index)
        if len(index) != len(self.names):
            raise SegmentAlignmentError(f"Index {index} does not have one copy number per sample ({len(self.names)})")
        return index

    def set_joint_probability(self, value: float, index: Sequence[int]):
        if not numpy.isfinite(value):
            value = 0.0
        elif value < 0:
            raise ValueError(f"Joint probability must be non-negative, got {value} at {tuple(index)}")
        self._probabilities[self._check_index(index)] = value

    def get_joint_probability(self, index: Sequence[int]) -> float:
        return float(self._probabilities[self._check_index(index)])

    def update_maximum(self, values: numpy.ndarray, indices: Sequence[numpy.ndarray]):
        """
        For each element of values, raise the joint probability at the matching index to that value if it is larger
        Args:
            values: numpy.ndarray
                Probabilities to insert; nan / inf are treated as 0, negative values raise ValueError
            indices: Sequence[numpy.ndarray]
                One integer array per sample, each broadcastable to the shape of values
        """
        if len(indices) != len(self.names):
            raise SegmentAlignmentError(f"Need one index array per sample ({len(self.names)}), got {len(indices)}")
        values = numpy.nan_to_num(numpy.asarray(values, dtype=float), nan=0.0, posinf=0.0, neginf=0.0)
        if (values < 0).any():
            raise ValueError("Joint probabilities must be non-negative")
        numpy.maximum.at(self._probabilities, tuple(indices), values)

    def get_marginal_probability(self, name: Text) -> numpy.ndarray:
        """ Marginal probability vector over copy number of one sample: sum over all other samples' axes """
        axis = self.names.index(name)
        other_axes = tuple(i for i in range(len(self.names)) if i != axis)
        return self._probabilities.sum(axis=other_axes)

    def indices(self) -> Iterator[CopyNumberIndex]:
        return numpy.ndindex(*self._probabilities.shape)
