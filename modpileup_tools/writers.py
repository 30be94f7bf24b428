###################################################
#
# Script: writers.py
# Description: write pileup records as bedMethyl or bedGraph
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


import logging
import os
import numpy as np
from modpileup_tools.naming_conventions import *
from modpileup_tools.records import group_records

logger = logging.getLogger(__name__)


class BedMethylWriter:
    '''
    18 column bedMethyl. the last nine columns are space
    separated unless only_tabs is set
    '''

    def __init__(self, outfile, only_tabs=False):
        self.outfile = outfile
        self.only_tabs = only_tabs

    def format_record(self, record):
        space = TAB if self.only_tabs else SPACE
        head = [record.contig, record.start, record.end, record.mod_code, record.score, record.strand,
                record.start, record.end, BED_COLOR]
        tail = [record.filtered_coverage, "%.2f" % record.percent_modified, record.n_mod, record.n_canonical,
                record.n_other_mod, record.n_delete, record.n_filtered, record.n_diff, record.n_nocall]
        return TAB.join(str(x) for x in head) + TAB + space.join(str(x) for x in tail)

    def write(self, records):
        '''
        :param records: sorted PileupRecords
        :return: rows written
        '''
        rows = 0
        with open(self.outfile, "w") as outfile:
            for record in records:
                outfile.write(self.format_record(record) + "\n")
                rows += 1
        logger.info("wrote %d bedMethyl rows to %s", rows, self.outfile)
        return rows


class BedGraphWriter:
    '''
    one bedGraph per modification code and strand:
    chrom, start, end, fraction modified, coverage
    '''

    def __init__(self, out_dir, prefix=None):
        if os.path.isfile(out_dir):
            raise NotADirectoryError(f"{out_dir} is a file, bedgraph output needs a directory")
        os.makedirs(out_dir, exist_ok=True)
        self.out_dir = out_dir
        self.prefix = prefix

    def file_name(self, mod_code, strand):
        name = f"{mod_code}_{strand_label[strand]}.bedgraph"
        if self.prefix:
            name = f"{self.prefix}_{name}"
        return os.path.join(self.out_dir, name)

    def write(self, records):
        '''
        :param records: sorted PileupRecords
        :return: rows written
        '''
        rows = 0
        for (mod_code, strand), group in group_records(records).items():
            arr = np.zeros(shape=(len(group), 5), dtype=object)
            arr[:, 0] = [r.contig for r in group]
            arr[:, 1] = [r.start for r in group]
            arr[:, 2] = [r.end for r in group]
            arr[:, 3] = [r.fraction_modified for r in group]
            arr[:, 4] = [r.filtered_coverage for r in group]
            with open(self.file_name(mod_code, strand), "w") as outfile:
                np.savetxt(outfile, arr, delimiter=TAB, fmt='%s')
            rows += len(group)
        logger.info("wrote %d bedGraph rows to %s", rows, self.out_dir)
        return rows
