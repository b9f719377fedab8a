"""
Optional diagnostic output of the somatic purity / ploidy search. The base Reporter ignores everything; TsvReporter
writes one tab-separated table per diagnostic next to the call output.
"""
import os
import logging
import pandas
from typing import Sequence, Text, Optional

from cnv_caller.somatic_models import CoveragePurityModel, ClusterInfo, ModelPoint, SegmentInfo


logger = logging.getLogger(__name__)


class Reporter:
    def report_purity_models(
            self,
            models: Sequence[CoveragePurityModel],
            scores: Sequence[float],
            worst_allowed_deviation: float
    ):
        pass

    def report_cluster_info(self, cluster_infos: Sequence[ClusterInfo]):
        pass

    def report_model_points(self, model_points: Sequence[ModelPoint]):
        pass

    def report_segment_assignments(self, segments: Sequence[SegmentInfo]):
        pass


class TsvReporter(Reporter):
    def __init__(self, output_prefix: Text):
        self.output_prefix = output_prefix
        output_dir = os.path.dirname(output_prefix)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

    def _write(self, table: pandas.DataFrame, suffix: Text):
        path = f"{self.output_prefix}.{suffix}.tsv"
        table.to_csv(path, sep='\t', index=False, float_format="%.6g")
        logger.debug(f"Wrote {len(table)} rows to {path}")

    def report_purity_models(
            self,
            models: Sequence[CoveragePurityModel],
            scores: Sequence[float],
            worst_allowed_deviation: float
    ):
        table = pandas.DataFrame([model.to_dict() for model in models])
        table["score"] = list(scores)
        table["worst_allowed_deviation"] = worst_allowed_deviation
        self._write(table.sort_values("score", ascending=False), "purity_models")

    def report_cluster_info(self, cluster_infos: Sequence[ClusterInfo]):
        self._write(
            pandas.DataFrame(
                {
                    "cluster_id": [info.cluster_id for info in cluster_infos],
                    "num_segments": [len(info.distances) for info in cluster_infos],
                    "median_distance": [info.median_distance for info in cluster_infos],
                    "mean_distance": [info.mean_distance for info in cluster_infos],
                    "variance": [info.variance for info in cluster_infos],
                    "entropy": [info.entropy for info in cluster_infos]
                }
            ),
            "clusters"
        )

    def report_model_points(self, model_points: Sequence[ModelPoint]):
        self._write(
            pandas.DataFrame(
                {
                    "copy_number": [point.copy_number for point in model_points],
                    "major_chromosome_count": [point.ploidy.major_chromosome_count for point in model_points],
                    "coverage": [point.coverage for point in model_points],
                    "maf": [point.maf for point in model_points],
                    "weight": [point.weight for point in model_points],
                    "empirical_coverage": [point.empirical_coverage for point in model_points],
                    "empirical_maf": [point.empirical_maf for point in model_points]
                }
            ),
            "model_points"
        )

    def report_segment_assignments(self, segments: Sequence[SegmentInfo]):
        self._write(
            pandas.DataFrame(
                {
                    "chromosome": [info.segment.chromosome for info in segments],
                    "begin": [info.segment.begin for info in segments],
                    "end": [info.segment.end for info in segments],
                    "coverage": [info.coverage for info in segments],
                    "maf": [info.maf for info in segments],
                    "weight": [info.weight for info in segments],
                    "cluster_id": [info.final_cluster_id for info in segments],
                    "copy_number": [None if info.ploidy is None else info.ploidy.copy_number for info in segments],
                    "major_chromosome_count": [
                        None if info.ploidy is None else info.ploidy.major_chromosome_count for info in segments
                    ],
                    "distance": [info.distance for info in segments]
                }
            ),
            "segments"
        )
