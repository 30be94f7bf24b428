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

import array
import pysam
import pytest
from modpileup_tools.naming_conventions import *
from modpileup_tools.calls import Call

#C at 3 and 8, both in CpGs
REF_UNIT = "TTTCGAAACGTT"
CONTIG = "chr1"


def mod_call(position, probabilities, strand=POSITIVE_STRAND, contig=CONTIG, base="C"):
    return Call(contig, position, strand, base, probabilities)


def make_modbam_read(name, start, seq, n_mods, qual, reverse=False, header=None, cigar=None, mm=None):
    '''
    read with one m call per C (in read orientation)
    '''
    a = pysam.AlignedSegment(header)
    a.query_name = name
    a.query_sequence = seq
    a.flag = 16 if reverse else 0
    a.reference_id = 0
    a.reference_start = start
    a.mapping_quality = 60
    a.cigartuples = cigar or [(0, len(seq))]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    a.set_tag("MM", mm or "C+m?" + ",0" * n_mods + ";", value_type="Z")
    a.set_tag("ML", array.array("B", [qual] * n_mods))
    return a


@pytest.fixture
def reference():
    return REF_UNIT * 5


@pytest.fixture
def toy_modbam(tmp_path, reference):
    '''
    3 forward reads, all CpG Cs called 5mC, and 3 reverse
    reads with all CpG Cs called canonical, covering 10-50
    '''
    ref_fa = tmp_path / "ref.fa"
    ref_fa.write_text(f">{CONTIG}\n{reference}\n")
    pysam.faidx(str(ref_fa))

    seq = reference[10:50]
    n_c = seq.count("C")
    n_g = seq.count("G")
    reads = []
    for i in range(3):
        reads.append(make_modbam_read(f"fwd{i}", 10, seq, n_c, 230))
        reads.append(make_modbam_read(f"rev{i}", 10, seq, n_g, 20, reverse=True))
    header = {"HD": {"VN": "1.6", "SO": "coordinate"}, "SQ": [{"SN": CONTIG, "LN": len(reference)}]}
    bam_path = tmp_path / "toy.bam"
    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for read in reads:
            bam.write(read)
    pysam.index(str(bam_path))
    return {"bam": str(bam_path), "reference": str(ref_fa), "outdir": tmp_path}


@pytest.fixture
def config_dict(toy_modbam):
    pileup_config = {
        "bam": toy_modbam["bam"],
        "out": str(toy_modbam["outdir"] / "out.bed"),
        "threads": 1,
        "interval_size": 16,
        "filter_threshold": ["0.7"],
        "suppress_progress": True,
    }
    return pileup_config
