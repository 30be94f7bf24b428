# ###################################################
#
# MIT License
#
# Copyright (c) 2022 irene unterman and ben berman
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:

# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.

# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# ###################################################

import json
import pandas as pd
import pysam
import pytest
from click.testing import CliRunner
from modpileup_tools.naming_conventions import *
from modpileup_tools.modpileup import ModPileup, pileup_calls, validate_config, sampling_partitions, main
from modpileup_tools.errors import ConfigurationError
from conftest import mod_call, CONTIG


def read_bedmethyl(fp):
    return pd.read_csv(fp, sep=r"\s+", header=None, names=bedmethyl_columns)


def test_pileup_calls():
    calls = [mod_call(100, {CANONICAL: 0.1, "m": 0.9}),
             mod_call(100, {CANONICAL: 0.95, "m": 0.05}),
             mod_call(100, {CANONICAL: 0.35, "m": 0.25, "h": 0.4}),
             mod_call(7, {CANONICAL: 0.6, "m": 0.4})]
    records, summary = pileup_calls(calls, {"filter_threshold": "0.5"})
    assert [(r.start, r.mod_code) for r in records] == [(7, "m"), (100, "h"), (100, "m")]
    assert records[2].percent_modified == pytest.approx(50.0)
    assert summary["calls_processed"] == 4
    assert summary["threshold"]["default"] == 0.5


def test_pileup_calls_estimates_threshold():
    calls = [mod_call(i % 10, {CANONICAL: 1 - p, "m": p}) for i, p in enumerate([0.6] * 30 + [0.95] * 170)]
    records, summary = pileup_calls(calls, {"min_samples": 50})
    assert summary["threshold"]["estimated"]
    assert summary["threshold"]["per_base"]["C"] == pytest.approx(0.6)
    assert sum(r.n_mod for r in records) == 200
    records, summary = pileup_calls(calls, {"filter_percentile": 0.5, "min_samples": 50})
    assert summary["threshold"]["per_base"]["C"] == pytest.approx(0.95)
    assert sum(r.n_filtered for r in records) == 30


def test_pileup_calls_per_mod_threshold():
    calls = [mod_call(1, {CANONICAL: 0.3, "h": 0.7}), mod_call(1, {CANONICAL: 0.3, "m": 0.7})]
    records, _ = pileup_calls(calls, {"filter_threshold": ["0.5"], "mod_threshold": ["h:0.8"]})
    m = [r for r in records if r.mod_code == "m"][0]
    assert (m.n_mod, m.n_filtered) == (1, 1)


def test_pileup_calls_cpg(tmp_path):
    fasta = tmp_path / "ref.fa"
    fasta.write_text(f">{CONTIG}\n" + "A" * 100 + "CG" + "A" * 10 + "\n")
    pysam.faidx(str(fasta))
    calls = [mod_call(100, {CANONICAL: 0.1, "m": 0.9}),
             mod_call(101, {CANONICAL: 0.05, "m": 0.95}, strand=NEGATIVE_STRAND),
             mod_call(3, {CANONICAL: 0.1, "m": 0.9})]
    records, summary = pileup_calls(calls, {"reference": str(fasta), "cpg": True, "combine_strands": True,
                                            "no_filtering": True})
    assert len(records) == 1
    assert (records[0].start, records[0].strand, records[0].n_mod) == (100, COMBINED_STRAND, 2)
    assert summary["calls_outside_motif"] == 1


def test_stranded_pileup(config_dict):
    summary = ModPileup(config_dict).run()
    df = read_bedmethyl(config_dict["out"])
    assert summary["rows_written"] == len(df) == 12
    assert summary["calls_processed"] == 240
    positive = df[df.strand == POSITIVE_STRAND]
    negative = df[df.strand == NEGATIVE_STRAND]
    assert list(positive.start) == [15, 20, 27, 32, 39, 44]
    assert list(negative.start) == [16, 21, 28, 33, 40, 45]
    assert (positive.n_mod == 3).all() and (positive.percent_modified == 100).all()
    assert (negative.n_canonical == 3).all() and (negative.percent_modified == 0).all()
    assert list(df.start) == sorted(df.start)


def test_combined_cpg_pileup(config_dict, toy_modbam):
    config_dict.update({"reference": toy_modbam["reference"], "cpg": True, "combine_strands": True})
    ModPileup(config_dict).run()
    df = read_bedmethyl(config_dict["out"])
    assert list(df.start) == [15, 20, 27, 32, 39, 44]
    assert (df.strand == COMBINED_STRAND).all()
    assert (df.filtered_coverage == 6).all()
    assert (df.percent_modified == 50).all()


def test_partition_size_does_not_change_output(config_dict, toy_modbam):
    config_dict.update({"reference": toy_modbam["reference"], "cpg": True, "combine_strands": True})
    ModPileup(config_dict).run()
    expected = read_bedmethyl(config_dict["out"])
    for interval_size, threads in [(1, 1), (7, 2), (1000, 1)]:
        config_dict.update({"interval_size": interval_size, "threads": threads})
        ModPileup(config_dict).run()
        pd.testing.assert_frame_equal(read_bedmethyl(config_dict["out"]), expected)


def test_estimated_threshold_from_bam(config_dict):
    config_dict.pop("filter_threshold")
    config_dict["min_samples"] = 10
    summary = ModPileup(config_dict).run()
    assert summary["threshold"]["per_base"]["C"] == pytest.approx(230.5 / 256)
    assert summary["low_sample_partitions"] == 3
    assert summary["rows_written"] == 12


def test_region_include_bed_and_summary(config_dict, toy_modbam):
    bed = toy_modbam["outdir"] / "include.bed"
    bed.write_text(f"{CONTIG}\t10\t21\tsite\t0\t.\n")
    config_dict.update({"include_bed": str(bed), "summary": str(toy_modbam["outdir"] / "summary.json")})
    ModPileup(config_dict).run()
    assert list(read_bedmethyl(config_dict["out"]).start) == [15, 16, 20]
    with open(config_dict["summary"]) as summary:
        assert json.load(summary)["rows_written"] == 3
    config_dict.pop("include_bed")
    config_dict["region"] = "chr1:16-32"
    ModPileup(config_dict).run()
    assert list(read_bedmethyl(config_dict["out"]).start) == [16, 20, 21, 27, 28]


def test_bedgraph_output(config_dict, toy_modbam):
    out_dir = toy_modbam["outdir"] / "graphs"
    config_dict.update({"out": str(out_dir), "bedgraph": True, "prefix": "toy"})
    ModPileup(config_dict).run()
    positive = pd.read_csv(out_dir / "toy_m_positive.bedgraph", sep=TAB, header=None)
    negative = pd.read_csv(out_dir / "toy_m_negative.bedgraph", sep=TAB, header=None)
    assert list(positive[3]) == [1.0] * 6
    assert list(negative[3]) == [0.0] * 6
    assert list(negative[4]) == [3] * 6


@pytest.mark.parametrize("update", [
    {"combine_strands": True},
    {"cpg": True},
    {"no_filtering": True},
    {"filter_threshold": ["1.2"]},
    {"filter_percentile": 1.0},
    {"threads": 0},
    {"bam": "missing.bam"},
    {"convert": ["h:a"]},
    {"quantile_method": "median"},
])
def test_invalid_config(config_dict, update):
    config_dict.update(update)
    with pytest.raises(ConfigurationError):
        ModPileup(config_dict).run()


def test_bad_region(config_dict):
    config_dict["region"] = "chr9:0-10"
    with pytest.raises(ConfigurationError):
        ModPileup(config_dict).run()


def test_validate_config_normalizes(toy_modbam):
    config = validate_config({"filter_threshold": "C:0.8", "ignore": "h", "motif": "CG 0",
                              "reference": toy_modbam["reference"]}, needs_bam=False)
    assert config["per_base_thresholds"] == {"C": 0.8}
    assert config["global_threshold"] is None
    assert "h" in config["collapse_map"]
    assert config["motif"] == ["CG 0"]


def test_sampling_partitions():
    partitions = list(range(1000))
    sampled = sampling_partitions(partitions, 100)
    assert len(sampled) == 100
    assert sampled[:3] == [0, 10, 20]
    assert sampling_partitions(partitions[:5], 100) == partitions[:5]


def test_cli(config_dict):
    runner = CliRunner()
    result = runner.invoke(main, ["--bam", config_dict["bam"], "--out", config_dict["out"],
                                  "--filter_threshold", "0.7", "-i", "16", "-t", "1", "--suppress_progress"])
    assert result.exit_code == 0, result.output
    assert len(read_bedmethyl(config_dict["out"])) == 12


def test_cli_json_config(config_dict, toy_modbam):
    config_fp = toy_modbam["outdir"] / "config.json"
    config_fp.write_text(json.dumps(config_dict))
    out = str(toy_modbam["outdir"] / "from_json.bed")
    result = CliRunner().invoke(main, ["-j", str(config_fp), "--out", out, "--only_tabs"])
    assert result.exit_code == 0, result.output
    with open(out) as bed:
        assert all(len(line.split(TAB)) == 18 for line in bed)


def test_cli_reports_config_errors(config_dict):
    result = CliRunner().invoke(main, ["--bam", config_dict["bam"], "--out", config_dict["out"],
                                       "--combine_strands"])
    assert result.exit_code == 1
    assert "palindromic" in result.output


def test_motif_without_reference():
    with pytest.raises(ConfigurationError, match="reference"):
        validate_config({"motif": "CG 0", "reference": None}, needs_bam=False)
