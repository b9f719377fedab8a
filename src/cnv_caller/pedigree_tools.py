import logging
from enum import Enum
from typing import Dict, Text, List, Optional, Sequence, Tuple, Iterator

from cnv_caller import common
from cnv_caller.segments import Segment, Balleles, check_segments_aligned
from cnv_caller.sample_metrics import SampleMetrics
from cnv_caller.copy_number_model import CopyNumberModel
from cnv_caller.errors import PedigreeInconsistencyError


logger = logging.getLogger(__name__)


class Kinship(Enum):
    Parent = "parent"
    Proband = "proband"
    Offspring = "offspring"

    def __str__(self):
        return self.value


class Default:
    unknown_parent_id = "0"
    affected_status = "affected"
    num_required_fields = 6


def kinship_from_ped_fields(fields: Sequence[Text]) -> Tuple[Text, Kinship]:
    """
    Determine the sample name and kinship from the fields of one pedigree line:
        both parent IDs unknown => Parent
        otherwise affected => Proband
        otherwise => Offspring
    """
    if len(fields) < Default.num_required_fields:
        raise ValueError(f"Expected at least {Default.num_required_fields} tab-delimited fields, found {len(fields)}")
    sample_id, maternal_id, paternal_id, affected_status = fields[1], fields[2], fields[3], fields[5]
    if maternal_id == Default.unknown_parent_id and paternal_id == Default.unknown_parent_id:
        return sample_id, Kinship.Parent
    elif affected_status.strip() == Default.affected_status:
        return sample_id, Kinship.Proband
    else:
        return sample_id, Kinship.Offspring


def read_pedigree_file(pedigree_file: Text) -> Dict[Text, Kinship]:
    """
    Read a tab-delimited pedigree file into a map from sample name to kinship. Lines starting with '#' and blank lines
    are skipped. Malformed or duplicated lines raise an exception annotated with the file name and line number.
    """
    kinships = {}
    with open(pedigree_file, 'r') as f_in:
        for line_number, pedigree_file_line in enumerate(f_in):
            if pedigree_file_line.startswith('#') or not pedigree_file_line.strip():
                continue
            try:
                sample_id, kinship = kinship_from_ped_fields(pedigree_file_line.rstrip('\n').split('\t'))
                if sample_id in kinships:
                    raise ValueError(f"Sample {sample_id} is listed more than once")
            except Exception as err:
                message = "Error reading line %d of pedigree file: %s" % (line_number + 1, pedigree_file)
                common.add_exception_context(err, message)
                raise
            kinships[sample_id] = kinship
    return kinships


class PedigreeMember:
    """
    One sample of a joint call: its segments, summary statistics and copy-number model
    """
    __slots__ = ("name", "kinship", "segments", "metrics", "cn_model")

    def __init__(
            self,
            name: Text,
            kinship: Kinship,
            segments: List[Segment],
            metrics: Optional[SampleMetrics] = None,
            cn_model: Optional[CopyNumberModel] = None
    ):
        self.name = name
        self.kinship = kinship
        self.segments = segments
        self.metrics = SampleMetrics.from_segments(segments) if metrics is None else metrics
        self.cn_model = cn_model

    def __repr__(self):
        return f"PedigreeMember({self.name}, {self.kinship}, {len(self.segments)} segments)"

    @property
    def mean_coverage(self) -> float:
        return self.metrics.mean_coverage

    @property
    def max_coverage(self) -> int:
        return self.metrics.max_coverage

    def get_coverage(self, segment_index: int) -> float:
        return self.segments[segment_index].median_count

    def get_allele_counts(self, segment_index: int) -> Balleles:
        return self.segments[segment_index].balleles


class PedigreeRoster:
    """
    Immutable set of samples called jointly. Probands are placed first; member indices by role are computed once, so
    per-segment work never looks members up by name.
    Notes:
        After construction the member list is fixed, but each member's segments remain mutable (calls are written
        into them, and merging replaces them).
    """
    __slots__ = ("_members", "parent_indices", "child_indices", "proband_indices")

    def __init__(self, members: Sequence[PedigreeMember]):
        # stable sort: probands first, otherwise input order
        self._members: Tuple[PedigreeMember, ...] = tuple(
            sorted(members, key=lambda member: member.kinship != Kinship.Proband)
        )
        names = self.names
        if len(set(names)) != len(names):
            raise PedigreeInconsistencyError(f"Duplicate sample names in pedigree: {names}")
        self.parent_indices: Tuple[int, ...] = tuple(
            index for index, member in enumerate(self._members) if member.kinship == Kinship.Parent
        )
        self.child_indices: Tuple[int, ...] = tuple(
            index for index, member in enumerate(self._members) if member.kinship != Kinship.Parent
        )
        self.proband_indices: Tuple[int, ...] = tuple(
            index for index, member in enumerate(self._members) if member.kinship == Kinship.Proband
        )
        self.check_alignment()

    @staticmethod
    def from_kinships(
            segments_by_sample: Dict[Text, List[Segment]],
            kinships: Optional[Dict[Text, Kinship]] = None,
            metrics_by_sample: Optional[Dict[Text, SampleMetrics]] = None
    ) -> "PedigreeRoster":
        """
        Build a roster from per-sample segments
        Args:
            segments_by_sample: Dict[Text, List[Segment]]
                Map from sample name to its index-aligned segments
            kinships: Optional[Dict[Text, Kinship]] (Default=None)
                Map from sample name to kinship. If None, every sample is treated as an unrelated Offspring.
            metrics_by_sample: Optional[Dict[Text, SampleMetrics]] (Default=None)
                Precomputed summary statistics. Samples not listed get metrics computed from their segments.
        Returns:
            roster: PedigreeRoster
        """
        members = []
        for name, segments in segments_by_sample.items():
            if kinships is None:
                kinship = Kinship.Offspring
            elif name in kinships:
                kinship = kinships[name]
            else:
                raise PedigreeInconsistencyError(f"Sample {name} is not listed in the pedigree")
            metrics = None if metrics_by_sample is None else metrics_by_sample.get(name)
            members.append(PedigreeMember(name, kinship, segments, metrics=metrics))
        return PedigreeRoster(members)

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[PedigreeMember]:
        return iter(self._members)

    def __getitem__(self, index: int) -> PedigreeMember:
        return self._members[index]

    @property
    def members(self) -> Tuple[PedigreeMember, ...]:
        return self._members

    @property
    def names(self) -> List[Text]:
        return [member.name for member in self._members]

    @property
    def parents(self) -> List[PedigreeMember]:
        return [self._members[index] for index in self.parent_indices]

    @property
    def children(self) -> List[PedigreeMember]:
        return [self._members[index] for index in self.child_indices]

    @property
    def probands(self) -> List[PedigreeMember]:
        return [self._members[index] for index in self.proband_indices]

    @property
    def num_segments(self) -> int:
        return len(self._members[0].segments) if self._members else 0

    def check_alignment(self):
        check_segments_aligned([member.segments for member in self._members], self.names)

    def assign_copy_number_models(self, num_cn_states: int, max_qscore: float, use_pedigree_variance: bool):
        """ Give every member without one a copy-number model built from its summary statistics """
        for member in self._members:
            if member.cn_model is None:
                member.cn_model = CopyNumberModel.from_sample_metrics(
                    member.metrics, num_cn_states=num_cn_states, max_qscore=max_qscore,
                    use_pedigree_variance=use_pedigree_variance
                )
                logger.debug(f"{member.name}: {member.metrics}")
