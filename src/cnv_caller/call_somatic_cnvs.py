#!/usr/bin/env python

import sys
import argparse
import logging
from typing import List, Text, Optional

from cnv_caller import common, genomics_io
from cnv_caller.config import SomaticCallerParameters, ClusteringMode, load_parameters
from cnv_caller.reporting import TsvReporter
from cnv_caller.somatic_caller import SomaticCaller, SomaticCallResult, SomaticCallStatus


logger = logging.getLogger(__name__)


class Default:
    log_level = "INFO"


def write_somatic_calls(result: SomaticCallResult, output_file: Text, sample_name: Optional[Text] = None):
    """ Write the call table. Uncallable and training-mode failures still produce a (possibly empty) table. """
    genomics_io.write_calls(
        output_file, result.segments, sample_name=sample_name, headers=result.headers,
        diploid_coverage=result.diploid_coverage, extra_metadata={"CallStatus": result.status}
    )


def __parse_arguments(argv: List[Text]) -> argparse.Namespace:
    # noinspection PyTypeChecker
    parser = argparse.ArgumentParser(
        description="Call somatic copy-number variants in one tumor sample by jointly estimating tumor purity and "
                    "ploidy",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        prog=argv[0]
    )
    parser.add_argument("--segments", type=str, required=True, help="Table of segment intervals")
    parser.add_argument("--bin-counts", type=str, required=True, help="Table of per-bin read counts")
    parser.add_argument("--balleles", type=str, required=True,
                        help="Table of per-site reference / alternate allele counts")
    parser.add_argument("--output", "-O", type=str, required=True, help="Call table to write")
    parser.add_argument("--sample-name", type=str,
                        help="Sample name for the output. If omitted, derived from the segments file name.")
    parser.add_argument("--parameters", type=str,
                        help="JSON file with somatic caller parameters. Unspecified values take their defaults.")
    parser.add_argument("--ploidy-bed", type=str,
                        help="Reference ploidy by region. Regions not listed have copy number 2.")
    parser.add_argument("--excluded-intervals", type=str,
                        help="BED file of intervals that merged segments may not span")
    parser.add_argument("--somatic-vcf", type=str,
                        help="Somatic SNV calls with tier-wise allele counts, for an SNV-based purity estimate")
    parser.add_argument("--evenness-score", type=float, help="Coverage evenness score of the sample")
    parser.add_argument("--local-sd-metric", type=float, help="Local coverage SD metric, reported in the header")
    parser.add_argument("--genome-length", type=int,
                        help="Genome length. If omitted, the sum over chromosomes of the largest segment end.")
    parser.add_argument("--clustering-mode", type=str, choices=[str(mode) for mode in ClusteringMode],
                        help="Segment clustering strategy")
    parser.add_argument("--ploidy", type=float, help="Use this overall tumor ploidy instead of estimating it")
    parser.add_argument("--purity", type=float, help="Use this tumor purity instead of estimating it")
    parser.add_argument("--enrichment", action="store_true", default=None,
                        help="Data are from targeted (enrichment) sequencing")
    parser.add_argument("--training-mode", action="store_true", default=None,
                        help="Produce an empty call table instead of failing when modelling fails")
    parser.add_argument("--report-prefix", type=str,
                        help="If given, write diagnostic tables of the purity / ploidy search with this path prefix")
    parser.add_argument("--random-seed", type=int, help="Seed for clustering initialization")
    parser.add_argument("--log-level", type=str, default=Default.log_level,
                        help="Specify level of logging information")
    return parser.parse_args(argv[1:] if len(argv) > 1 else ["--help"])


def main(argv: Optional[List[Text]] = None) -> SomaticCallResult:
    arguments = __parse_arguments(sys.argv if argv is None else argv)
    common.set_log_level(arguments.log_level)
    parameters = load_parameters(
        SomaticCallerParameters, arguments.parameters,
        overrides={
            "clustering_mode": arguments.clustering_mode,
            "user_ploidy": arguments.ploidy,
            "user_purity": arguments.purity,
            "is_enrichment": arguments.enrichment,
            "is_training_mode": arguments.training_mode,
            "random_seed": arguments.random_seed
        }
    )
    segments = genomics_io.read_segments(arguments.segments, arguments.bin_counts, arguments.balleles)
    caller = SomaticCaller(
        parameters, reporter=None if arguments.report_prefix is None else TsvReporter(arguments.report_prefix)
    )
    result = caller.call(
        segments,
        evenness_score=arguments.evenness_score,
        ploidy_info=None if arguments.ploidy_bed is None else genomics_io.read_ploidy_bed(arguments.ploidy_bed),
        excluded_intervals=None if arguments.excluded_intervals is None
        else genomics_io.read_excluded_intervals(arguments.excluded_intervals),
        somatic_snv_frequencies=None if arguments.somatic_vcf is None
        else genomics_io.read_somatic_snv_frequencies(arguments.somatic_vcf),
        genome_length=arguments.genome_length,
        local_sd_metric=arguments.local_sd_metric
    )
    sample_name = genomics_io.get_sample_name(arguments.segments) if arguments.sample_name is None \
        else arguments.sample_name
    write_somatic_calls(result, arguments.output, sample_name=sample_name)
    if result.status == SomaticCallStatus.UNCALLABLE_DATA:
        logger.error(f"{sample_name} is uncallable: {result.message}")
        sys.exit(1)
    return result


if __name__ == "__main__":
    main()
