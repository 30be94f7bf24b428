###################################################
#
# Script: motifs.py
# Description: motif and strand index, BED position filter
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
import re
import numpy as np
import pysam
from modpileup_tools.naming_conventions import *
from modpileup_tools.errors import ConfigurationError
from modpileup_tools.interval_utils import bed_to_intervals, merge_win_list, in_intervals, find_intersection

logger = logging.getLogger(__name__)

iupac = {"A": "A", "C": "C", "G": "G", "T": "T", "R": "[AG]", "Y": "[CT]", "S": "[CG]", "W": "[AT]",
         "K": "[GT]", "M": "[AC]", "B": "[CGT]", "D": "[AGT]", "H": "[ACT]", "V": "[ACG]", "N": "[ACGT]"}
iupac_complement = {"A": "T", "C": "G", "G": "C", "T": "A", "R": "Y", "Y": "R", "S": "S", "W": "W",
                    "K": "M", "M": "K", "B": "V", "V": "B", "D": "H", "H": "D", "N": "N"}


class Motif:
    '''
    sequence motif with the offset of the
    modified base, e.g. CG 0
    '''

    def __init__(self, sequence, offset):
        self.sequence = sequence.upper()
        self.offset = int(offset)
        if not self.sequence or any(b not in iupac for b in self.sequence):
            raise ConfigurationError(f"invalid motif {sequence}")
        if not (0 <= self.offset < len(self.sequence)):
            raise ConfigurationError(f"motif offset {offset} is outside motif {sequence}")

    @classmethod
    def cpg(cls):
        return cls("CG", 0)

    @classmethod
    def parse(cls, raw):
        '''
        :param raw: "CG 0" or ("CG", 0)
        '''
        parts = raw.split() if isinstance(raw, str) else list(raw)
        if len(parts) != 2:
            raise ConfigurationError(f"motif should be given as sequence and offset, got {raw}")
        try:
            return cls(parts[0], int(parts[1]))
        except ValueError:
            raise ConfigurationError(f"motif offset should be an integer, got {parts[1]}")

    def reverse_complement(self):
        return "".join(iupac_complement[b] for b in reversed(self.sequence))

    def is_palindrome(self):
        return self.sequence == self.reverse_complement()

    def pattern(self, sequence):
        return re.compile("(?=(" + "".join(iupac[b] for b in sequence) + "))")

    def find_positive(self, reference):
        '''
        :return: positions of the modified base on the + strand
        '''
        return [m.start() + self.offset for m in self.pattern(self.sequence).finditer(reference)]

    def find_negative(self, reference):
        '''
        :return: positions of the modified base on the - strand
        '''
        last = len(self.sequence) - 1 - self.offset
        return [m.start() + last for m in self.pattern(self.reverse_complement()).finditer(reference)]

    def partner_shift(self):
        '''
        distance from a - strand anchor to its + strand partner
        '''
        return len(self.sequence) - 1 - 2 * self.offset

    def __len__(self):
        return len(self.sequence)

    def __repr__(self):
        return f"{self.sequence} {self.offset}"


def _sorted_unique(positions, partners=None):
    positions = np.asarray(positions, dtype=np.int64)
    order = np.argsort(positions, kind="stable")
    positions = positions[order]
    keep = np.ones(len(positions), dtype=bool)
    keep[1:] = positions[1:] != positions[:-1]
    if partners is None:
        return positions[keep], None
    return positions[keep], np.asarray(partners, dtype=np.int64)[order][keep]


def _lookup(sorted_positions, position):
    ind = np.searchsorted(sorted_positions, position)
    if ind < len(sorted_positions) and sorted_positions[ind] == position:
        return ind
    return None


class MotifIndex:
    '''
    per contig sorted arrays of motif anchor positions
    for each strand. built once, shared read only
    '''

    def __init__(self, motifs, combine_strands=False):
        self.motifs = list(motifs)
        self.combine_strands = combine_strands
        if not self.motifs:
            raise ConfigurationError("motif index needs at least one motif")
        if combine_strands:
            for motif in self.motifs:
                if not motif.is_palindrome():
                    raise ConfigurationError(f"cannot combine strands for non palindromic motif {motif}")
        self.positive = {}
        self.negative = {}
        self.partners = {}

    @classmethod
    def from_sequences(cls, sequences, motifs, combine_strands=False):
        '''
        :param sequences: dict contig -> reference sequence
        :param motifs: list of Motif
        :param combine_strands: map - strand anchors onto their + strand partner
        :return: MotifIndex
        '''
        index = cls(motifs, combine_strands)
        for contig, sequence in sequences.items():
            index.add_contig(contig, sequence)
        return index

    def add_contig(self, contig, sequence):
        sequence = sequence.upper()
        positive, negative, partners = [], [], []
        for motif in self.motifs:
            positive.extend(motif.find_positive(sequence))
            neg = motif.find_negative(sequence)
            negative.extend(neg)
            partners.extend(p - motif.partner_shift() for p in neg)
        self.positive[contig], _ = _sorted_unique(positive)
        self.negative[contig], self.partners[contig] = _sorted_unique(negative, partners)
        logger.debug("%s: %d + strand and %d - strand motif sites", contig,
                     len(self.positive[contig]), len(self.negative[contig]))

    def max_motif_length(self):
        return max(len(m) for m in self.motifs)

    def n_sites(self, contig=None):
        contigs = [contig] if contig is not None else list(self.positive)
        return sum(len(self.positive.get(c, [])) + len(self.negative.get(c, [])) for c in contigs)

    def resolve(self, contig, position, strand):
        '''
        :return: None when not a motif site, otherwise
        (position, strand) to aggregate into
        '''
        if contig not in self.positive:
            return None
        if strand in (POSITIVE_STRAND, COMBINED_STRAND):
            if _lookup(self.positive[contig], position) is not None:
                return position, COMBINED_STRAND if self.combine_strands else POSITIVE_STRAND
        if strand in (NEGATIVE_STRAND, COMBINED_STRAND):
            ind = _lookup(self.negative[contig], position)
            if ind is not None:
                if self.combine_strands:
                    return int(self.partners[contig][ind]), COMBINED_STRAND
                return position, NEGATIVE_STRAND
        return None


class PositionFilter:
    '''
    keep calls inside BED intervals, stranded by the
    BED strand column (. means both strands)
    '''

    def __init__(self, positive=None, negative=None):
        self.positive = positive or {}
        self.negative = negative or {}

    @classmethod
    def from_bed(cls, bed_fp, contigs=None, header=False):
        '''
        :param bed_fp: path to BED file
        :param contigs: contigs in the alignment header, others are skipped
        '''
        logger.info("parsing BED at %s", bed_fp)
        windows = {POSITIVE_STRAND: {}, NEGATIVE_STRAND: {}}
        skipped = set()
        for interval, strand in bed_to_intervals(bed_fp, header):
            if contigs is not None and interval.chrom not in contigs:
                if interval.chrom not in skipped:
                    logger.info("skipping chrom %s, not present in alignment header", interval.chrom)
                    skipped.add(interval.chrom)
                continue
            if strand == POSITIVE_STRAND:
                targets = [POSITIVE_STRAND]
            elif strand == NEGATIVE_STRAND:
                targets = [NEGATIVE_STRAND]
            elif strand == COMBINED_STRAND:
                targets = [POSITIVE_STRAND, NEGATIVE_STRAND]
            else:
                logger.info("improperly formatted strand field %s", strand)
                continue
            for target in targets:
                windows[target].setdefault(interval.chrom, []).append((interval.start, interval.end))
        flat = {}
        for strand, by_chrom in windows.items():
            flat[strand] = {chrom: np.array(merge_win_list(sorted(wins))).flatten()
                            for chrom, wins in by_chrom.items()}
        return cls(flat[POSITIVE_STRAND], flat[NEGATIVE_STRAND])

    def contains(self, contig, position, strand):
        if strand in (POSITIVE_STRAND, COMBINED_STRAND) and contig in self.positive:
            if in_intervals(position, self.positive[contig]):
                return True
        if strand in (NEGATIVE_STRAND, COMBINED_STRAND) and contig in self.negative:
            if in_intervals(position, self.negative[contig]):
                return True
        return False

    def overlaps(self, interval):
        '''
        does a partition touch any BED interval
        :param interval: GenomicInterval
        '''
        for by_chrom in (self.positive, self.negative):
            flat = by_chrom.get(interval.chrom)
            if flat is None:
                continue
            for start, end in find_intersection(flat, interval.start, interval.end):
                if end > start:
                    return True
        return False


def load_reference(fasta_fp, contigs=None):
    '''
    read reference sequences
    :param fasta_fp: indexed fasta
    :param contigs: only load these contigs
    :return: dict contig -> sequence
    '''
    sequences = {}
    with pysam.FastaFile(fasta_fp) as fasta:
        available = set(fasta.references)
        for contig in (contigs if contigs is not None else fasta.references):
            if contig not in available:
                logger.warning("contig %s is not in reference %s, no motif sites there", contig, fasta_fp)
                continue
            sequences[contig] = fasta.fetch(contig).upper()
    logger.info("loaded %d reference sequences from %s", len(sequences), fasta_fp)
    return sequences


def build_motif_index(config, contigs):
    '''
    motif index from config, None when no motif
    restriction was asked for
    :param config: validated config dict
    :param contigs: contigs to index
    '''
    motifs = []
    if config.get("cpg"):
        motifs.append(Motif.cpg())
    for raw in config.get("motif") or []:
        motifs.append(Motif.parse(raw))
    if not motifs:
        if config.get("combine_strands"):
            raise ConfigurationError("combining strands needs a palindromic motif, e.g. --cpg")
        return None
    if not config.get("reference"):
        raise ConfigurationError("motif restriction needs a reference sequence (--ref)")
    sequences = load_reference(config["reference"], contigs)
    return MotifIndex.from_sequences(sequences, motifs, config.get("combine_strands", False))
