###################################################
#
# Script: interval_utils.py
# Description: genomic intervals, BED loading and genome partitioning
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


from modpileup_tools.naming_conventions import *
from modpileup_tools.errors import ConfigurationError
import numpy as np
import pandas as pd


class GenomicInterval:
    '''
    half open reference interval, a pileup partition
    or a requested region. parsed from chrN:start-end,
    contig names may contain ":"
    '''

    def __init__(self, interval="chrN:0-0"):
        chrom, _, coords = interval.rpartition(COORD_SEP)
        start, _, end = coords.partition(INTERVAL_SEP)
        self.set_from_positions(chrom, start, end)

    def set_from_positions(self, chrom, start, end):
        '''
        :return: the GenomicInterval object
        '''
        self.chrom, self.start, self.end = chrom, int(start), int(end)
        return self

    def __eq__(self, other):
        if not isinstance(other, GenomicInterval):
            return NotImplemented
        return (self.chrom, self.start, self.end) == (other.chrom, other.start, other.end)

    def contains(self, position):
        return self.start <= position < self.end

    def slop(self, n):
        '''
        widen by n bases on both sides, clipped at 0
        :return: new GenomicInterval
        '''
        return GenomicInterval().set_from_positions(self.chrom, max(self.start - n, 0), self.end + n)

    def __repr__(self):
        return f"{self.chrom}{COORD_SEP}{self.start}{INTERVAL_SEP}{self.end}"


def parse_region(region, contig_lengths):
    '''
    parse chrN or chrN:start-end
    :param region: region string
    :param contig_lengths: dict contig -> length
    :return: GenomicInterval
    '''
    if region in contig_lengths:
        return GenomicInterval().set_from_positions(region, 0, contig_lengths[region])
    try:
        interval = GenomicInterval(region)
    except ValueError:
        raise ConfigurationError(f"cannot parse region {region}, expected chrN or chrN:start-end")
    if interval.chrom not in contig_lengths:
        raise ConfigurationError(f"region contig {interval.chrom} is not in the alignment header")
    if interval.start >= interval.end:
        raise ConfigurationError(f"region {region} is empty")
    interval.end = min(interval.end, contig_lengths[interval.chrom])
    return interval


def partition_genome(contig_lengths, interval_size=DEFAULT_INTERVAL_SIZE, region=None):
    '''
    split the genome (or one region) into non overlapping
    half open intervals, in header order
    :param contig_lengths: ordered dict contig -> length
    :param interval_size: max partition length
    :param region: optional GenomicInterval to restrict to
    :return: list of GenomicInterval
    '''
    if interval_size <= 0:
        raise ConfigurationError("interval size must be positive")
    if region is not None:
        spans = [(region.chrom, region.start, region.end)]
    else:
        spans = [(chrom, 0, length) for chrom, length in contig_lengths.items()]
    partitions = []
    for chrom, span_start, span_end in spans:
        for start in range(span_start, span_end, interval_size):
            partitions.append(GenomicInterval().set_from_positions(chrom, start, min(start+interval_size, span_end)))
    return partitions


def merge_win_list(win_list, min_overlap=0):
    '''
    merge windows if they overlap
    :param win_list: sorted list of windows
    :param min_overlap: minimal overlap for merging
    :return: merged windows
    '''
    if not win_list:
        return []
    new_windows = []
    current_start, current_end = win_list[0] #open first window
    for win_start, win_end in win_list[1:]:
        if win_start + min_overlap < current_end:
            current_end = max(current_end, win_end)
        else:
            new_windows.append((current_start, current_end))
            current_start, current_end = win_start, win_end
    new_windows.append((current_start, current_end))
    return new_windows


def bed_to_intervals(fp, header=False):
    '''
    read bed file and convert to GenomicInterval
    :param fp: file path to bed, first cols are chrom, start, end, optional strand col 6
    :param header: does bed file have header
    :return: list of (GenomicInterval, strand)
    '''
    df = pd.read_csv(fp, sep=TAB, header=None, skiprows=1 if header else 0, comment="#", dtype={0: str})
    if df.shape[1] < 3:
        raise ConfigurationError(f"{fp} is not a BED file, fewer than 3 columns")
    strands = df.iloc[:, 5].astype(str).values if df.shape[1] >= 6 else np.full(df.shape[0], COMBINED_STRAND)
    intervals = []
    for chrom, start, end, strand in zip(df.iloc[:, 0].values, df.iloc[:, 1].values, df.iloc[:, 2].values, strands):
        intervals.append((GenomicInterval().set_from_positions(chrom, start, end), strand))
    return intervals


def find_intersection(intervals, range_start, range_end):
    '''
    find intersection between intervals and range
    included book-ended eg: (3,3)
    :param intervals: np array of interval start, interval end
    :param range_start: range start
    :param range_end: range end
    :return: list of intersections
    '''
    intersection = []
    start_ind = np.searchsorted(intervals, range_start)
    end_ind = np.searchsorted(intervals, range_end, "right")
    if start_ind %2: #even:
       start_ind -=1
    if end_ind%2: #odd
        end_ind += 1
    for interval_start, interval_end in zip(intervals[start_ind:end_ind:2], intervals[start_ind+1:end_ind:2]):
        intersection.append((max(range_start, interval_start), min(range_end, interval_end)))
    return intersection


def in_intervals(position, flat_intervals):
    '''
    check if position is in merged half open intervals
    :param position: 0-based position
    :param flat_intervals: sorted np array start0, end0, start1, end1...
    :return: bool
    '''
    ind = np.searchsorted(flat_intervals, position, "right")
    return bool(ind % 2)
