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

import pandas as pd
import pytest
from modpileup_tools.naming_conventions import *
from modpileup_tools.aggregator import PositionKey, PositionCounters
from modpileup_tools.records import PileupRecord, emit_records, group_records, records_to_dataframe, to_record
from modpileup_tools.writers import BedMethylWriter, BedGraphWriter


@pytest.fixture
def counters():
    return {
        PositionKey("chr1", 30, POSITIVE_STRAND, "m"): PositionCounters(n_mod=1, n_canonical=3, n_delete=1),
        PositionKey("chr1", 10, NEGATIVE_STRAND, "m"): PositionCounters(n_mod=2, n_canonical=2, n_diff=1),
        PositionKey("chr1", 10, POSITIVE_STRAND, "h"): PositionCounters(n_other_mod=2, n_filtered=3),
        PositionKey("chr1", 10, POSITIVE_STRAND, "m"): PositionCounters(n_mod=2, n_filtered=3),
        PositionKey("chrM", 1, POSITIVE_STRAND, "m"): PositionCounters(n_canonical=1),
        PositionKey("chr1", 50, POSITIVE_STRAND, "m"): PositionCounters(n_filtered=4, n_nocall=2),
    }


def test_record_values():
    record = to_record(PositionKey("chr1", 30, POSITIVE_STRAND, "m"), PositionCounters(n_mod=1, n_canonical=3))
    assert (record.start, record.end, record.score) == (30, 31, 4)
    assert record.percent_modified == pytest.approx(25.0)
    assert record.fraction_modified == pytest.approx(0.25)


def test_no_record_without_coverage():
    assert to_record(PositionKey("chr1", 50, POSITIVE_STRAND, "m"), PositionCounters(n_filtered=4)) is None


def test_emit_records_sorted(counters):
    records = list(emit_records(counters, ["chrM", "chr1"]))
    assert [(r.contig, r.start, r.strand, r.mod_code) for r in records] == [
        ("chrM", 1, POSITIVE_STRAND, "m"),
        ("chr1", 10, POSITIVE_STRAND, "h"),
        ("chr1", 10, POSITIVE_STRAND, "m"),
        ("chr1", 10, NEGATIVE_STRAND, "m"),
        ("chr1", 30, POSITIVE_STRAND, "m"),
    ]
    h = records[1]
    assert (h.n_mod, h.n_other_mod, h.percent_modified) == (0, 2, 0.0)


def test_group_records(counters):
    groups = group_records(emit_records(counters, ["chr1", "chrM"]))
    assert list(groups) == [("h", POSITIVE_STRAND), ("m", POSITIVE_STRAND), ("m", NEGATIVE_STRAND)]
    assert [r.start for r in groups[("m", POSITIVE_STRAND)]] == [10, 30, 1]


def test_dataframe(counters):
    df = records_to_dataframe(emit_records(counters, ["chr1", "chrM"]))
    assert list(df.columns) == bedmethyl_columns
    assert df.shape == (5, 18)
    assert (df["color"] == BED_COLOR).all()


def test_bedmethyl_row(tmp_path):
    record = PileupRecord("chr1", 10, 11, "m", POSITIVE_STRAND, 2, 2, 1, 0, 3, 1, 0)
    writer = BedMethylWriter(str(tmp_path / "out.bed"))
    assert writer.format_record(record) == "chr1\t10\t11\tm\t5\t+\t10\t11\t255,0,0\t5 40.00 2 2 1 0 3 1 0"
    tabs = BedMethylWriter(str(tmp_path / "out.bed"), only_tabs=True)
    assert tabs.format_record(record).split(TAB)[9:] == ["5", "40.00", "2", "2", "1", "0", "3", "1", "0"]


def test_bedmethyl_writer(tmp_path, counters):
    out = tmp_path / "out.bed"
    assert BedMethylWriter(str(out)).write(emit_records(counters, ["chr1", "chrM"])) == 5
    lines = out.read_text().splitlines()
    assert len(lines) == 5
    assert lines[0].startswith("chr1\t10\t11\th\t2\t+")
    assert all(len(line.split(TAB)) == 10 for line in lines)


def test_bedgraph_writer(tmp_path, counters):
    writer = BedGraphWriter(str(tmp_path / "graphs"), prefix="sample")
    assert writer.write(emit_records(counters, ["chr1", "chrM"])) == 5
    positive = pd.read_csv(writer.file_name("m", POSITIVE_STRAND), sep=TAB, header=None)
    assert positive.shape == (3, 5)
    assert list(positive[1]) == [10, 30, 1]
    assert list(positive[3]) == pytest.approx([1.0, 0.25, 0.0])
    assert writer.file_name("m", COMBINED_STRAND).endswith("sample_m_combined.bedgraph")
    assert (tmp_path / "graphs" / "sample_m_negative.bedgraph").exists()
    assert (tmp_path / "graphs" / "sample_h_positive.bedgraph").exists()


def test_bedgraph_writer_needs_directory(tmp_path):
    path = tmp_path / "file.txt"
    path.write_text("")
    with pytest.raises(NotADirectoryError):
        BedGraphWriter(str(path))
