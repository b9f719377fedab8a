"""
Readers for the tables consumed by the callers and a writer for the per-segment call table.

Input tables are tab-delimited, optionally bgzipped, with a header line; lines starting with "##" before the header
are kept as metadata. Coordinates are 0-based half-open (BED convention).
    segments:       chromosome  begin  end
    bin counts:     chromosome  begin  end  count
    B-alleles:      chromosome  position  ref_count  alt_count
    ploidy:         chromosome  begin  end  copy_number
    excluded:       chromosome  begin  end
"""
import io
import os
import logging
import numpy
import pandas
import pysam
from typing import Text, List, Dict, Sequence, Tuple, Optional, Mapping

from cnv_caller.segments import Segment, Balleles
from cnv_caller.sample_metrics import PloidyInfo


logger = logging.getLogger(__name__)
Interval = Tuple[int, int]


class Keys:
    chromosome = "chromosome"
    begin = "begin"
    end = "end"
    count = "count"
    position = "position"
    ref_count = "ref_count"
    alt_count = "alt_count"
    copy_number = "copy_number"


class Default:
    encoding = "utf-8"
    metadata_start = "##"
    header_start = "#"
    pass_filter = "PASS"
    segment_columns = (Keys.chromosome, Keys.begin, Keys.end)
    bin_columns = (Keys.chromosome, Keys.begin, Keys.end, Keys.count)
    ballele_columns = (Keys.chromosome, Keys.position, Keys.ref_count, Keys.alt_count)
    ploidy_columns = (Keys.chromosome, Keys.begin, Keys.end, Keys.copy_number)
    call_columns = ("chromosome", "begin", "end", "copy_number", "major_chromosome_count",
                    "major_chromosome_count_score", "qscore", "de_novo_qscore", "filter", "model_distance",
                    "runner_up_model_distance", "is_heterogeneous", "copy_number_swapped", "bin_count",
                    "median_count", "num_balleles")


def tsv_to_pandas(
        data_file: Text,
        columns: Sequence[Text],
        encoding: Text = Default.encoding
) -> (pandas.DataFrame, List[Text]):
    """
    Load a (possibly bgzipped) tab-delimited table
    Args:
        data_file: Text
            Full path to file
        columns: Sequence[Text]
            Columns that must be present. The header line may start with "#". If the file has no header, the first
            len(columns) fields are named with columns.
        encoding: Text (Default={Default.encoding})
            Encoding of the file
    Returns:
        df: pandas.DataFrame
            Table with (at least) the requested columns
        metadata: List[Text]
            Leading lines starting with "##"
    """
    if not os.path.isfile(data_file):
        raise ValueError(f"{data_file} does not exist")
    metadata = []
    buffer = io.StringIO()
    with pysam.BGZFile(data_file, "rb") as f_in:
        text = f_in.read().decode(encoding)
    lines = text.splitlines(keepends=True)
    line_index = 0
    while line_index < len(lines) and lines[line_index].startswith(Default.metadata_start):
        metadata.append(lines[line_index].rstrip('\n'))
        line_index += 1
    has_header = line_index < len(lines) and (
        lines[line_index].startswith(Default.header_start) or
        lines[line_index].split('\t')[0].strip() == columns[0]
    )
    if has_header:
        buffer.write(lines[line_index].lstrip(Default.header_start))
        line_index += 1
    else:
        num_fields = len(lines[line_index].split('\t')) if line_index < len(lines) else len(columns)
        buffer.write('\t'.join(list(columns) + [f"column_{index}" for index in range(len(columns), num_fields)]) + '\n')
    buffer.writelines(line for line in lines[line_index:] if line.strip())
    buffer.seek(0)
    df = pandas.read_csv(buffer, sep='\t', dtype={Keys.chromosome: str})
    missing_columns = [column for column in columns if column not in df.columns]
    if missing_columns:
        raise ValueError(f"{data_file} is missing required columns: {', '.join(missing_columns)}")
    return df, metadata


def _intervals_by_chromosome(df: pandas.DataFrame) -> Dict[Text, List[Interval]]:
    intervals = {}
    for chromosome, begin, end in zip(df[Keys.chromosome], df[Keys.begin], df[Keys.end]):
        intervals.setdefault(chromosome, []).append((int(begin), int(end)))
    return intervals


def _assign_to_segments(
        segments: Sequence[Segment],
        chromosomes: pandas.Series,
        positions: pandas.Series
) -> numpy.ndarray:
    """ Index of the segment containing each position, -1 for positions outside every segment """
    assignment = numpy.full(len(positions), -1, dtype=int)
    segment_indices: Dict[Text, List[int]] = {}
    for index, segment in enumerate(segments):
        segment_indices.setdefault(segment.chromosome, []).append(index)
    chromosomes = chromosomes.to_numpy()
    positions = positions.to_numpy()
    for chromosome, indices in segment_indices.items():
        on_chromosome = numpy.flatnonzero(chromosomes == chromosome)
        if on_chromosome.size == 0:
            continue
        begins = numpy.array([segments[index].begin for index in indices])
        ends = numpy.array([segments[index].end for index in indices])
        candidate = numpy.searchsorted(begins, positions[on_chromosome], side="right") - 1
        valid = candidate >= 0
        valid[valid] = positions[on_chromosome][valid] < ends[candidate[valid]]
        assignment[on_chromosome[valid]] = numpy.array(indices)[candidate[valid]]
    return assignment


def read_segments(
        segments_file: Text,
        bin_counts_file: Text,
        balleles_file: Optional[Text] = None
) -> List[Segment]:
    """
    Load a sample's segments, attaching the counts of bins that start inside each segment and the allele counts of
    sites inside each segment
    Args:
        segments_file: Text
            Table of segment intervals, in genomic order
        bin_counts_file: Text
            Table of per-bin read counts
        balleles_file: Optional[Text] (Default=None)
            Table of per-site reference / alternate allele counts
    Returns:
        segments: List[Segment]
    """
    segments_df, _ = tsv_to_pandas(segments_file, Default.segment_columns)
    bins_df, _ = tsv_to_pandas(bin_counts_file, Default.bin_columns)
    segments = [
        Segment(chromosome, begin, end)
        for chromosome, begin, end in zip(segments_df[Keys.chromosome], segments_df[Keys.begin],
                                          segments_df[Keys.end])
    ]
    bin_assignment = _assign_to_segments(segments, bins_df[Keys.chromosome], bins_df[Keys.begin])
    counts = bins_df[Keys.count].to_numpy(dtype=float)
    for index, segment in enumerate(segments):
        segment.counts = counts[bin_assignment == index]
    if balleles_file is not None:
        balleles_df, _ = tsv_to_pandas(balleles_file, Default.ballele_columns)
        site_assignment = _assign_to_segments(segments, balleles_df[Keys.chromosome], balleles_df[Keys.position])
        ref_counts = balleles_df[Keys.ref_count].to_numpy(dtype=int)
        alt_counts = balleles_df[Keys.alt_count].to_numpy(dtype=int)
        for index, segment in enumerate(segments):
            in_segment = site_assignment == index
            segment.balleles = Balleles(zip(ref_counts[in_segment], alt_counts[in_segment]))
        logger.debug(f"Assigned {(site_assignment >= 0).sum()} of {len(balleles_df)} allele sites to segments")
    logger.info(f"Loaded {len(segments)} segments from {segments_file}")
    return segments


def read_ploidy_bed(ploidy_file: Text) -> PloidyInfo:
    """ Reference copy number by region; the first "##" metadata line is kept as the header line for the output """
    df, metadata = tsv_to_pandas(ploidy_file, Default.ploidy_columns)
    return PloidyInfo(
        list(zip(df[Keys.chromosome], df[Keys.begin], df[Keys.end], df[Keys.copy_number])),
        header_line=metadata[0] if metadata else None
    )


def read_excluded_intervals(bed_file: Text) -> Dict[Text, List[Interval]]:
    df, _ = tsv_to_pandas(bed_file, Default.segment_columns)
    return _intervals_by_chromosome(df)


def read_somatic_snv_frequencies(vcf_file: Text) -> List[float]:
    """
    Variant allele frequencies of passing somatic SNVs, from the tier-summed "{base}U" allele counts (Strelka
    convention) of the last sample in the VCF
    """
    frequencies = []
    record_count = 0
    with pysam.VariantFile(vcf_file, "r") as f_in:
        for record in f_in:
            record_count += 1
            if list(record.filter.keys()) != [Default.pass_filter]:
                continue
            if len(record.ref) != 1 or record.alts is None or len(record.alts) != 1 or len(record.alts[0]) != 1 \
                    or record.alts[0] == '.':
                continue
            sample = record.samples[len(record.samples) - 1]
            ref_key, alt_key = f"{record.ref}U", f"{record.alts[0]}U"
            if ref_key not in sample or alt_key not in sample:
                logger.warning(f"Unexpected format for somatic call at {record.chrom}:{record.pos}: expected "
                               f"AU/CU/GU/TU counts")
                continue
            ref_count, alt_count = sum(sample[ref_key]), sum(sample[alt_key])
            if ref_count + alt_count > 0:
                frequencies.append(alt_count / (ref_count + alt_count))
    logger.info(f"Loaded {record_count} somatic variants; kept {len(frequencies)} SNV frequencies")
    return frequencies


def calls_to_pandas(segments: Sequence[Segment], sample_name: Optional[Text] = None) -> pandas.DataFrame:
    calls = pandas.DataFrame(
        {
            "chromosome": [segment.chromosome for segment in segments],
            "begin": [segment.begin for segment in segments],
            "end": [segment.end for segment in segments],
            "copy_number": [segment.copy_number for segment in segments],
            "major_chromosome_count": pandas.array(
                [segment.major_chromosome_count for segment in segments], dtype="Int64"
            ),
            "major_chromosome_count_score": [segment.major_chromosome_count_score for segment in segments],
            "qscore": [segment.qscore for segment in segments],
            "de_novo_qscore": [segment.de_novo_qscore for segment in segments],
            "filter": [segment.filter for segment in segments],
            "model_distance": [segment.model_distance for segment in segments],
            "runner_up_model_distance": [segment.runner_up_model_distance for segment in segments],
            "is_heterogeneous": [segment.is_heterogeneous for segment in segments],
            "copy_number_swapped": [segment.copy_number_swapped for segment in segments],
            "bin_count": [segment.bin_count for segment in segments],
            "median_count": [segment.median_count for segment in segments],
            "num_balleles": [len(segment.balleles) for segment in segments]
        },
        columns=list(Default.call_columns)
    )
    if sample_name is not None:
        calls.insert(0, "sample", sample_name)
    return calls


def write_calls(
        output_file: Text,
        segments: Sequence[Segment],
        sample_name: Optional[Text] = None,
        headers: Sequence[Text] = (),
        diploid_coverage: Optional[float] = None,
        extra_metadata: Optional[Mapping[Text, object]] = None
):
    """
    Write per-segment calls as a tab-delimited table preceded by "##" metadata lines. A file is always written, even
    with no segments, so uncallable samples still produce a valid (empty) table.
    """
    calls = calls_to_pandas(segments, sample_name=sample_name)
    with open(output_file, 'w') as f_out:
        if diploid_coverage is not None:
            f_out.write(f"##DiploidCoverage={diploid_coverage}\n")
        for key, value in (extra_metadata or {}).items():
            f_out.write(f"##{key}={value}\n")
        for header in headers:
            f_out.write(f"{header}\n")
        f_out.write(Default.header_start)
        calls.to_csv(f_out, sep='\t', index=False, na_rep='.')
    logger.info(f"Wrote {len(calls)} calls to {output_file}")


def read_calls(calls_file: Text) -> (pandas.DataFrame, List[Text]):
    return tsv_to_pandas(calls_file, Default.segment_columns)


def get_sample_name(path: Text) -> Text:
    """ File name without directories or (possibly compressed) extensions """
    name = os.path.basename(path)
    for suffix in (".gz", ".bgz", ".tsv", ".txt", ".bed"):
        if name.endswith(suffix):
            name = name[:-len(suffix)]
    return name

