import os
from typing import Optional, Sequence, List, Text, Dict
import numpy
import pandas
import pysam

from cnv_caller.segments import Segment, Balleles, AlleleCount


class Default:
    chromosome = "chr1"
    segment_length = 10000
    num_bins = 10
    num_sites = 20
    # somatic test sample: 42 normal segments on one chromosome and 18 single-copy losses (purity 0.6) on another
    tumor_segment_length = 100000
    tumor_num_bins = 100
    tumor_num_sites = 60
    tumor_num_normal = 42
    tumor_num_loss = 18
    tumor_normal_coverage = 50.0
    tumor_loss_coverage = 35.0
    tumor_normal_allele_counts = (55, 45)
    tumor_loss_allele_counts = (50, 20)


def make_segment(
        begin: int,
        coverage: float,
        allele_counts: Optional[AlleleCount] = None,
        chromosome: Text = Default.chromosome,
        length: int = Default.segment_length,
        num_bins: int = Default.num_bins,
        num_sites: int = Default.num_sites
) -> Segment:
    """ Segment with constant bin coverage and num_sites identical allele observations (none if allele_counts is None) """
    balleles = Balleles([allele_counts] * num_sites) if allele_counts is not None else Balleles()
    return Segment(chromosome, begin, begin + length, counts=[coverage] * num_bins, balleles=balleles)


def make_sample_segments(
        coverages: Sequence[float],
        allele_counts: Sequence[Optional[AlleleCount]],
        chromosome: Text = Default.chromosome,
        length: int = Default.segment_length,
        num_bins: int = Default.num_bins,
        num_sites: int = Default.num_sites
) -> List[Segment]:
    """ Contiguous segments, one per coverage """
    assert len(coverages) == len(allele_counts)
    return [
        make_segment(index * length, coverage, counts, chromosome=chromosome, length=length, num_bins=num_bins,
                     num_sites=num_sites)
        for index, (coverage, counts) in enumerate(zip(coverages, allele_counts))
    ]


def make_tumor_segments(
        num_normal: int = Default.tumor_num_normal,
        num_loss: int = Default.tumor_num_loss
) -> List[Segment]:
    """
    Tumor sample with diploid coverage 50 and purity 0.6: chr1 is normal, chr2 carries a clonal single-copy loss,
    so its coverage is 0.6 * 25 + 0.4 * 50 = 35 and its MAF is 0.4 / 1.4
    """
    normal = make_sample_segments(
        [Default.tumor_normal_coverage] * num_normal,
        [Default.tumor_normal_allele_counts] * num_normal,
        chromosome="chr1", length=Default.tumor_segment_length, num_bins=Default.tumor_num_bins,
        num_sites=Default.tumor_num_sites
    )
    loss = make_sample_segments(
        [Default.tumor_loss_coverage] * num_loss,
        [Default.tumor_loss_allele_counts] * num_loss,
        chromosome="chr2", length=Default.tumor_segment_length, num_bins=Default.tumor_num_bins,
        num_sites=Default.tumor_num_sites
    )
    return normal + loss


def copy_segments(segments: Sequence[Segment]) -> List[Segment]:
    """ Fresh, uncalled copies of segments (observations are shared) """
    return [
        Segment(segment.chromosome, segment.begin, segment.end, counts=segment.counts,
                balleles=Balleles(segment.balleles.counts))
        for segment in segments
    ]


def write_table(df: pandas.DataFrame, path: Text, compress: bool = False, metadata: Sequence[Text] = ()) -> Text:
    """ Write a tab-delimited table with a "#"-prefixed header, bgzipped if compress is True """
    text = "".join(f"{line}\n" for line in metadata) + "#" + df.to_csv(sep='\t', index=False)
    if compress:
        with pysam.BGZFile(path, "wb") as f_out:
            f_out.write(text.encode("utf-8"))
    else:
        with open(path, 'w') as f_out:
            f_out.write(text)
    return path


def write_sample_tables(
        segments: Sequence[Segment],
        output_dir: Text,
        name: Text,
        compress: bool = True
) -> Dict[Text, Text]:
    """
    Write segment, bin-count and B-allele tables that load back into segments. Bins evenly tile each segment and
    allele sites are placed at distinct positions inside their segment.
    """
    segment_rows, bin_rows, allele_rows = [], [], []
    for segment in segments:
        segment_rows.append((segment.chromosome, segment.begin, segment.end))
        bin_width = segment.length // max(segment.bin_count, 1)
        for bin_index, count in enumerate(segment.counts):
            bin_begin = segment.begin + bin_index * bin_width
            bin_rows.append((segment.chromosome, bin_begin, bin_begin + bin_width, count))
        for site_index, (ref_count, alt_count) in enumerate(segment.balleles.counts):
            allele_rows.append((segment.chromosome, segment.begin + site_index + 1, ref_count, alt_count))
    suffix = ".tsv.gz" if compress else ".tsv"
    paths = {
        "segments": os.path.join(output_dir, f"{name}.segments{suffix}"),
        "bin_counts": os.path.join(output_dir, f"{name}.bin_counts{suffix}"),
        "balleles": os.path.join(output_dir, f"{name}.balleles{suffix}")
    }
    write_table(pandas.DataFrame(segment_rows, columns=["chromosome", "begin", "end"]), paths["segments"],
                compress=compress)
    write_table(pandas.DataFrame(bin_rows, columns=["chromosome", "begin", "end", "count"]), paths["bin_counts"],
                compress=compress)
    write_table(pandas.DataFrame(allele_rows, columns=["chromosome", "position", "ref_count", "alt_count"]),
                paths["balleles"], compress=compress)
    return paths


def assert_segments_match(segments1: Sequence[Segment], segments2: Sequence[Segment], context: str):
    assert len(segments1) == len(segments2), f"{context}: number of segments differs"
    for index, (segment1, segment2) in enumerate(zip(segments1, segments2)):
        assert segment1.same_interval(segment2), f"{context}: interval {index} differs: {segment1} != {segment2}"
        assert numpy.allclose(segment1.counts, segment2.counts), f"{context}: bin counts of segment {index} differ"
        assert sorted(segment1.balleles.counts) == sorted(segment2.balleles.counts), \
            f"{context}: allele counts of segment {index} differ"
