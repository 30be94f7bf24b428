###################################################
#
# Script: records.py
# Description: turn finalized counters into sorted pileup records
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


from collections import namedtuple, OrderedDict
import pandas as pd
from modpileup_tools.naming_conventions import *
from modpileup_tools.aggregator import key_sorter

_record_fields = ["contig", "start", "end", "mod_code", "strand"] + counter_fields


class PileupRecord(namedtuple("PileupRecord", _record_fields)):
    '''
    one bedMethyl row worth of counts, single base resolution
    '''
    __slots__ = ()

    @property
    def filtered_coverage(self):
        return self.n_mod + self.n_canonical + self.n_other_mod

    @property
    def score(self):
        return self.filtered_coverage

    @property
    def fraction_modified(self):
        return self.n_mod / self.filtered_coverage

    @property
    def percent_modified(self):
        return 100.0 * self.fraction_modified


def to_record(key, counters):
    '''
    :return: PileupRecord, None when no call passed filtering
    '''
    if counters.filtered_coverage == 0:
        return None
    return PileupRecord(key.contig, key.position, key.position + 1, key.mod_code, key.strand,
                        **counters.to_dict())


def emit_records(counters, contig_order=None):
    '''
    sorted records for every key with coverage
    :param counters: dict PositionKey -> PositionCounters
    :param contig_order: contigs in header order
    :return: generator of PileupRecord
    '''
    for key in sorted(counters, key=key_sorter(contig_order)):
        record = to_record(key, counters[key])
        if record is not None:
            yield record


def group_records(records):
    '''
    one record stream per (mod code, strand), in
    order of first appearance
    :return: OrderedDict (code, strand) -> list of PileupRecord
    '''
    groups = OrderedDict()
    for record in records:
        groups.setdefault((record.mod_code, record.strand), []).append(record)
    return groups


def records_to_dataframe(records):
    '''
    bedMethyl columns as a DataFrame
    '''
    rows = [[r.contig, r.start, r.end, r.mod_code, r.score, r.strand, r.start, r.end, BED_COLOR,
             r.filtered_coverage, r.percent_modified, r.n_mod, r.n_canonical, r.n_other_mod,
             r.n_delete, r.n_filtered, r.n_diff, r.n_nocall] for r in records]
    return pd.DataFrame(rows, columns=bedmethyl_columns)
