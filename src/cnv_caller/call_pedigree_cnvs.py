#!/usr/bin/env python

import os
import sys
import argparse
import logging
import numpy
from typing import List, Text, Optional, Dict, Sequence

from cnv_caller import common, genomics_io
from cnv_caller.config import CallerParameters, load_parameters
from cnv_caller.segments import Segment, check_segments_aligned
from cnv_caller.sample_metrics import SampleMetrics, PloidyInfo
from cnv_caller.pedigree_tools import PedigreeRoster, read_pedigree_file
from cnv_caller.pedigree_caller import PedigreeLikelihoodEngine
from cnv_caller.no_pedigree_caller import NoPedigreeLikelihoodEngine
from cnv_caller.segment_merger import merge_pedigree_segments


logger = logging.getLogger(__name__)


class Default:
    log_level = "INFO"
    num_workers = None
    output_suffix = ".cnv_calls.tsv"


def call_pedigree_cnvs(
        segments_by_sample: Dict[Text, List[Segment]],
        pedigree_file: Optional[Text] = None,
        ploidy_by_sample: Optional[Dict[Text, PloidyInfo]] = None,
        parameters: Optional[CallerParameters] = None,
        num_workers: Optional[int] = Default.num_workers,
        show_progress: bool = True
) -> PedigreeRoster:
    """
    Jointly call copy number for related (with a pedigree) or unrelated (without one) samples, then merge segments
    Args:
        segments_by_sample: Dict[Text, List[Segment]]
            Map from sample name to its index-aligned segments
        pedigree_file: Optional[Text] (Default=None)
            Tab-delimited pedigree. If None, samples are called as unrelated.
        ploidy_by_sample: Optional[Dict[Text, PloidyInfo]] (Default=None)
            Reference ploidy by region for each sample
        parameters: Optional[CallerParameters] (Default=None)
            Calling parameters. If None, use defaults.
        num_workers: Optional[int] (Default=None)
            Number of threads. If None, use all available cpus (up to 30).
        show_progress: bool (Default=True)
            Show progress bars
    Returns:
        roster: PedigreeRoster
            Roster whose members hold merged, called segments
    """
    parameters = CallerParameters() if parameters is None else parameters
    check_segments_aligned(list(segments_by_sample.values()), list(segments_by_sample.keys()))
    ploidy_by_sample = {} if ploidy_by_sample is None else ploidy_by_sample
    metrics_by_sample = {
        name: SampleMetrics.from_segments(segments, ploidy=ploidy_by_sample.get(name))
        for name, segments in segments_by_sample.items()
    }
    logger.info(f"Calling {len(segments_by_sample)} samples " + ("without a pedigree" if pedigree_file is None
                else f"with pedigree {pedigree_file}"))
    if pedigree_file is None:
        roster = PedigreeRoster.from_kinships(segments_by_sample, metrics_by_sample=metrics_by_sample)
        engine = NoPedigreeLikelihoodEngine(roster, parameters)
    else:
        roster = PedigreeRoster.from_kinships(
            segments_by_sample, kinships=read_pedigree_file(pedigree_file), metrics_by_sample=metrics_by_sample
        )
        engine = PedigreeLikelihoodEngine(
            roster, parameters, random_state=numpy.random.default_rng(parameters.random_seed)
        )
    roster = engine.call(num_workers=num_workers, show_progress=show_progress)
    return merge_pedigree_segments(roster, parameters.minimum_call_size, max_gap=parameters.max_merge_gap)


def write_pedigree_calls(roster: PedigreeRoster, output_dir: Text) -> List[Text]:
    os.makedirs(output_dir, exist_ok=True)
    output_files = []
    for member in roster:
        output_file = os.path.join(output_dir, f"{member.name}{Default.output_suffix}")
        genomics_io.write_calls(
            output_file, member.segments, sample_name=member.name,
            headers=[] if member.metrics.ploidy is None or not member.metrics.ploidy.header_line
            else [member.metrics.ploidy.header_line],
            extra_metadata={"Kinship": member.kinship, "MeanCoverage": f"{member.mean_coverage:.2f}"}
        )
        output_files.append(output_file)
    return output_files


def _load_samples(
        sample_files: Sequence[Sequence[Text]]
) -> Dict[Text, List[Segment]]:
    segments_by_sample = {}
    for name, segments_file, bin_counts_file, balleles_file in sample_files:
        if name in segments_by_sample:
            raise ValueError(f"Sample {name} specified more than once")
        segments_by_sample[name] = genomics_io.read_segments(segments_file, bin_counts_file, balleles_file)
    return segments_by_sample


def __parse_arguments(argv: List[Text]) -> argparse.Namespace:
    # noinspection PyTypeChecker
    parser = argparse.ArgumentParser(
        description="Call copy-number variants jointly in a pedigree, or in unrelated samples when no pedigree is "
                    "given",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        prog=argv[0]
    )
    parser.add_argument("--sample", "-s", type=str, nargs=4, action="append", required=True,
                        metavar=("NAME", "SEGMENTS", "BIN_COUNTS", "BALLELES"),
                        help="Sample name and its segment, bin-count and B-allele tables. Repeat for each sample. "
                             "Segments must be the same intervals for every sample.")
    parser.add_argument("--pedigree", "-p", type=str,
                        help="Tab-delimited pedigree file. If omitted, samples are called as unrelated.")
    parser.add_argument("--ploidy-bed", type=str, nargs=2, action="append", metavar=("NAME", "BED"),
                        help="Reference ploidy by region for a sample. Regions not listed have copy number 2.")
    parser.add_argument("--parameters", type=str,
                        help="JSON file with caller parameters. Unspecified values take their defaults.")
    parser.add_argument("--output-dir", "-O", type=str, required=True,
                        help="Directory to write one call table per sample")
    parser.add_argument("--num-workers", "-@", type=int, default=Default.num_workers,
                        help="Number of threads. If omitted, use all available cpus (up to 30).")
    parser.add_argument("--random-seed", type=int, help="Seed for sampling offspring genotypes")
    parser.add_argument("--no-progress", action="store_true", help="Do not display progress bars")
    parser.add_argument("--log-level", type=str, default=Default.log_level,
                        help="Specify level of logging information")
    return parser.parse_args(argv[1:] if len(argv) > 1 else ["--help"])


def main(argv: Optional[List[Text]] = None) -> PedigreeRoster:
    arguments = __parse_arguments(sys.argv if argv is None else argv)
    common.set_log_level(arguments.log_level)
    parameters = load_parameters(CallerParameters, arguments.parameters,
                                 overrides={"random_seed": arguments.random_seed})
    ploidy_by_sample = {
        name: genomics_io.read_ploidy_bed(bed_file) for name, bed_file in (arguments.ploidy_bed or [])
    }
    roster = call_pedigree_cnvs(
        _load_samples(arguments.sample),
        pedigree_file=arguments.pedigree,
        ploidy_by_sample=ploidy_by_sample,
        parameters=parameters,
        num_workers=arguments.num_workers,
        show_progress=not arguments.no_progress
    )
    write_pedigree_calls(roster, arguments.output_dir)
    return roster


if __name__ == "__main__":
    main()
