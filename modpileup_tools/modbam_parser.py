###################################################
#
# Script: modbam_parser.py
# Description: read modBAM records into per position calls
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
from collections import OrderedDict
import pysam
from modpileup_tools.naming_conventions import *
from modpileup_tools.errors import ConfigurationError
from modpileup_tools.calls import Call

logger = logging.getLogger(__name__)

# pysam.AlignedSegment.modified_bases
# Modified bases annotations from Ml/Mm tags. The output is
# Dict[(canonical base, strand, modification)] -> [ (pos,qual), …]
# with qual being (256*probability), or -1 if unknown.
# Strand==0 for forward and 1 for reverse strand modification
IMPLICIT, EXPLICIT = ".", "?"
MATCH_OPS = (0, 7, 8) #M = X
QUERY_OPS = (1, 4) #I S
DELETE_OP = 2
REFSKIP_OP = 3


def tag_modes(read):
    '''
    skip mode per (canonical base, code) from the MM tag,
    "." means unlisted bases are canonical, "?" means unknown
    :param read: pysam.AlignedSegment
    :return: dict (base, code) -> mode
    '''
    for tag in ("MM", "Mm"):
        if read.has_tag(tag):
            raw = read.get_tag(tag)
            break
    else:
        return {}
    modes = {}
    for entry in raw.split(";"):
        head = entry.split(",", 1)[0]
        if len(head) < 3 or head[0] not in DNA_BASES:
            continue
        mode = head[-1] if head[-1] in (IMPLICIT, EXPLICIT) else IMPLICIT
        codes = head[2:].rstrip(IMPLICIT + EXPLICIT)
        for code in ([codes] if codes.isdigit() else list(codes)):
            modes[(head[0], code)] = mode
    return modes


def read_probabilities(read):
    '''
    :return: dict query position -> canonical base -> code -> probability
    '''
    probs = {}
    read_strand = int(read.is_reverse) #htslib flips the strand of reverse reads
    for (base, strand, code), calls in (read.modified_bases or {}).items():
        if strand != read_strand:
            continue #duplex calls on the opposite strand are not counted
        code = str(code)
        for qpos, qual in calls:
            if qual < 0:
                continue
            probs.setdefault(qpos, {}).setdefault(base, {})[code] = (qual + 0.5) / 256
    return probs


def read_families(read, modes=None):
    '''
    codes per canonical base carried by the read
    :return: dict base -> (codes, explicit)
    '''
    modes = tag_modes(read) if modes is None else modes
    families = {}
    for (base, code), mode in modes.items():
        codes, explicit = families.get(base, ([], False))
        families[base] = (codes + [code], explicit or mode == EXPLICIT)
    if not families:
        for (base, _, code) in (read.modified_bases or {}):
            codes, explicit = families.get(base, ([], False))
            if str(code) not in codes:
                families[base] = (codes + [str(code)], explicit)
    return families


def _vector(codes, mod_probs):
    probabilities = {code: mod_probs.get(code, 0.0) for code in codes}
    mod_mass = sum(probabilities.values())
    if mod_mass > 1.0:
        probabilities = {code: p / mod_mass for code, p in probabilities.items()}
        mod_mass = 1.0
    probabilities[CANONICAL] = 1.0 - mod_mass
    return probabilities


def iter_read_calls(read, start=None, end=None, edge_filter=None, families=None, probs=None):
    '''
    walk the CIGAR once and yield one Call per covered
    reference position in [start, end)
    :param read: pysam.AlignedSegment
    :param edge_filter: ignore bases this close to either read end
    '''
    if read.is_unmapped or read.is_secondary or read.cigartuples is None:
        return
    seq = read.query_sequence
    if not seq:
        return
    contig = read.reference_name
    strand = NEGATIVE_STRAND if read.is_reverse else POSITIVE_STRAND
    families = read_families(read) if families is None else families
    probs = read_probabilities(read) if probs is None else probs
    start = read.reference_start if start is None else start
    end = read.reference_end if end is None else end
    edge = edge_filter or 0
    q_len = len(seq)

    ref_pos = read.reference_start
    query_pos = 0
    for op, length in read.cigartuples:
        if ref_pos >= end:
            break
        if op in MATCH_OPS:
            first = max(start - ref_pos, 0)
            last = min(end - ref_pos, length)
            for i in range(first, last):
                qpos = query_pos + i
                if qpos < edge or qpos >= q_len - edge:
                    continue
                base = seq[qpos].upper()
                if read.is_reverse:
                    base = complement.get(base, "N")
                yield _match_call(contig, ref_pos + i, strand, base, families, probs.get(qpos))
            ref_pos += length
            query_pos += length
        elif op in QUERY_OPS:
            query_pos += length
        elif op == DELETE_OP:
            if edge <= query_pos < q_len - edge:
                for r in range(max(ref_pos, start), min(ref_pos + length, end)):
                    yield Call.deletion(contig, r, strand)
            ref_pos += length
        elif op == REFSKIP_OP:
            ref_pos += length


def _match_call(contig, position, strand, base, families, position_probs):
    if base not in families:
        return Call.nocall(contig, position, strand, base)
    codes, explicit = families[base]
    mod_probs = (position_probs or {}).get(base)
    if mod_probs:
        return Call(contig, position, strand, base, _vector(codes, mod_probs))
    if explicit:
        return Call.nocall(contig, position, strand, base)
    return Call(contig, position, strand, base, _vector(codes, {}))


class BamCallExtractor:
    '''
    picklable call source for pileup workers,
    opens the BAM inside the worker
    '''

    def __init__(self, bam_fp, edge_filter=None, reads_per_partition=None):
        self.bam_fp = bam_fp
        self.edge_filter = edge_filter
        self.reads_per_partition = reads_per_partition

    def __call__(self, interval, sampling=False):
        '''
        :param interval: GenomicInterval to fetch
        :param sampling: whole reads starting in the interval, capped
        :return: generator of Call
        '''
        with pysam.AlignmentFile(self.bam_fp, "rb") as bam:
            n_reads = 0
            for read in bam.fetch(interval.chrom, interval.start, interval.end):
                if sampling:
                    if read.reference_start < interval.start:
                        continue #sampled with the previous partition
                    if self.reads_per_partition is not None and n_reads >= self.reads_per_partition:
                        break
                    yield from iter_read_calls(read, edge_filter=self.edge_filter)
                else:
                    yield from iter_read_calls(read, interval.start, interval.end, self.edge_filter)
                n_reads += 1


def bam_contigs(bam_fp):
    '''
    :return: OrderedDict contig -> length, header order
    '''
    with pysam.AlignmentFile(bam_fp, "rb") as bam:
        return OrderedDict(zip(bam.references, bam.lengths))


def check_bam_index(bam_fp):
    '''
    region fetching needs an index
    '''
    with pysam.AlignmentFile(bam_fp, "rb") as bam:
        if not bam.has_index():
            raise ConfigurationError("BAM is not indexed. Run: samtools index " + str(bam_fp))
