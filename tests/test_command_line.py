import io
import os
import json
import pytest
from typing import Dict, List, Text

from cnv_caller import command_line, genomics_io, call_somatic_cnvs, call_pedigree_cnvs
from cnv_caller.somatic_caller import SomaticCallStatus

import common_test_utils


class Default:
    package = "cnv_caller"
    command_modules = ("call_pedigree_cnvs", "call_somatic_cnvs")
    num_segments = 5
    coverage = 100.0
    allele_counts = (50, 50)
    random_seed = 0
    log_level = "WARNING"


def test_find_command_modules():
    # only modules with a command-line interface are commands
    assert sorted(command_line._find_command_modules(Default.package)) == list(Default.command_modules)


def test_get_help_summary():
    commands = command_line._find_command_modules(Default.package)
    summary = command_line._get_help_summary("call_somatic_cnvs", commands["call_somatic_cnvs"])
    assert "somatic" in summary
    assert "\n" not in summary


def test_print_commands():
    string_buffer = io.StringIO()
    command_line.print_commands(command_line._find_command_modules(Default.package), file_descriptor=string_buffer)
    output = string_buffer.getvalue()
    for command in Default.command_modules:
        assert f"{command.replace('_', '-')}:" in output
    # modules without a command-line interface are not listed
    assert "segment-merger:" not in output


@pytest.mark.parametrize("argv", [[Default.package], [Default.package, "not-a-command"],
                                  [Default.package, "segment-merger"]])
def test_bad_command(argv: List[Text]):
    with pytest.raises(SystemExit) as exit_info:
        command_line.main(argv)
    assert exit_info.value.code == 1


def _write_tumor_tables(output_dir: Text) -> Dict[Text, Text]:
    return common_test_utils.write_sample_tables(common_test_utils.make_tumor_segments(), output_dir, "tumor")


def _somatic_args(paths: Dict[Text, Text], output_file: Text) -> List[Text]:
    return [
        "call-somatic-cnvs", "--segments", paths["segments"], "--bin-counts", paths["bin_counts"],
        "--balleles", paths["balleles"], "--output", output_file, "--sample-name", "tumor",
        "--random-seed", str(Default.random_seed), "--log-level", Default.log_level
    ]


def test_call_somatic_cnvs(tmp_path):
    paths = _write_tumor_tables(str(tmp_path))
    output_file = os.path.join(tmp_path, "tumor.cnv_calls.tsv")
    result = command_line.main([Default.package] + _somatic_args(paths, output_file))
    assert result.status == SomaticCallStatus.CALLED
    calls, metadata = genomics_io.read_calls(output_file)
    assert "##CallStatus=called" in metadata
    assert any(line.startswith("##DiploidCoverage=") for line in metadata)
    assert any(line.startswith("##EstimatedTumorPurity=") for line in metadata)
    assert list(calls["chromosome"]) == ["chr1", "chr2"]
    assert list(calls["copy_number"]) == [2, 1]
    assert set(calls["sample"]) == {"tumor"}


def test_call_somatic_cnvs_uncallable(tmp_path):
    paths = _write_tumor_tables(str(tmp_path))
    parameters_file = os.path.join(tmp_path, "parameters.json")
    with open(parameters_file, 'w') as f_out:
        json.dump({"MinAllowedPloidy": 3.0}, f_out)
    output_file = os.path.join(tmp_path, "tumor.cnv_calls.tsv")
    args = _somatic_args(paths, output_file) + ["--parameters", parameters_file, "--purity", "1.0",
                                                "--ploidy", "2.0"]
    with pytest.raises(SystemExit) as exit_info:
        call_somatic_cnvs.main(args)
    assert exit_info.value.code == 1
    # an empty call table is still written
    calls, metadata = genomics_io.read_calls(output_file)
    assert len(calls) == 0
    assert "##CallStatus=uncallable_data" in metadata

    training_output_file = os.path.join(tmp_path, "tumor.training.cnv_calls.tsv")
    args = _somatic_args(paths, training_output_file) + ["--parameters", parameters_file, "--purity", "1.0",
                                                         "--ploidy", "2.0", "--training-mode"]
    result = call_somatic_cnvs.main(args)
    assert result.status == SomaticCallStatus.TRAINING_MODE_FAILURE
    _, metadata = genomics_io.read_calls(training_output_file)
    assert "##CallStatus=training_mode_failure" in metadata


def _write_cohort(output_dir: Text, names) -> List[Text]:
    sample_args = []
    for name in names:
        segments = common_test_utils.make_sample_segments([Default.coverage] * Default.num_segments,
                                                          [Default.allele_counts] * Default.num_segments)
        paths = common_test_utils.write_sample_tables(segments, output_dir, name)
        sample_args += ["--sample", name, paths["segments"], paths["bin_counts"], paths["balleles"]]
    return sample_args


def test_call_pedigree_cnvs_without_pedigree(tmp_path):
    output_dir = os.path.join(tmp_path, "calls")
    args = ["call-pedigree-cnvs"] + _write_cohort(str(tmp_path), ["s1", "s2"]) + [
        "--output-dir", output_dir, "--num-workers", "1", "--no-progress", "--log-level", Default.log_level
    ]
    roster = call_pedigree_cnvs.main(args)
    assert roster.names == ["s1", "s2"]
    for name in roster.names:
        calls, metadata = genomics_io.read_calls(os.path.join(output_dir, f"{name}.cnv_calls.tsv"))
        # every segment is diploid, so all are merged into one
        assert len(calls) == 1
        assert calls["copy_number"].iloc[0] == 2
        assert calls["end"].iloc[0] == Default.num_segments * common_test_utils.Default.segment_length
        assert "##Kinship=offspring" in metadata


def test_call_pedigree_cnvs_with_pedigree(tmp_path):
    pedigree_file = os.path.join(tmp_path, "trio.ped")
    with open(pedigree_file, 'w') as f_out:
        f_out.write("FAM\tdad\t0\t0\t1\tunaffected\nFAM\tmom\t0\t0\t2\tunaffected\nFAM\tkid\tdad\tmom\t1\taffected\n")
    output_dir = os.path.join(tmp_path, "calls")
    args = ["call-pedigree-cnvs"] + _write_cohort(str(tmp_path), ["dad", "mom", "kid"]) + [
        "--pedigree", pedigree_file, "--output-dir", output_dir, "--num-workers", "1", "--no-progress",
        "--random-seed", str(Default.random_seed), "--log-level", Default.log_level
    ]
    roster = call_pedigree_cnvs.main(args)
    assert roster.names == ["kid", "dad", "mom"]
    for name in roster.names:
        calls, metadata = genomics_io.read_calls(os.path.join(output_dir, f"{name}.cnv_calls.tsv"))
        assert list(calls["copy_number"]) == [2]
    _, metadata = genomics_io.read_calls(os.path.join(output_dir, "kid.cnv_calls.tsv"))
    assert "##Kinship=proband" in metadata
