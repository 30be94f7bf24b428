###################################################
#
# Script: aggregator.py
# Description: per position, per strand, per code counters over genomic partitions
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
from numbers import Integral
from collections import Counter, namedtuple
from concurrent.futures import ProcessPoolExecutor, as_completed
import numpy as np
from tqdm import tqdm
from modpileup_tools.naming_conventions import *
from modpileup_tools.errors import MalformedCallError
from modpileup_tools.calls import validate_call, category_rank
from modpileup_tools.collapse import collapse_call
from modpileup_tools.interval_utils import GenomicInterval

logger = logging.getLogger(__name__)

#call features tallied per site
DELETE, DIFF, NOCALL, FILTERED, PASS = "delete", "diff", "nocall", "filtered", "pass"


class PositionKey(namedtuple("PositionKey", ["contig", "position", "strand", "mod_code"])):
    '''
    identity of one counter bucket
    '''
    __slots__ = ()

    def sort_key(self, contig_rank):
        return (contig_rank.get(self.contig, len(contig_rank)), self.contig, self.position,
                strand_order[self.strand], category_rank(self.mod_code))


def key_sorter(contig_order):
    '''
    :param contig_order: contigs in header order
    :return: function for sorted(keys, key=...)
    '''
    contig_rank = {contig: i for i, contig in enumerate(contig_order or [])}

    def sort_key(key):
        return key.sort_key(contig_rank)
    return sort_key


class PositionCounters:
    '''
    counters of one PositionKey, every call routed
    to the key increments exactly one of them
    '''
    __slots__ = tuple(counter_fields)

    def __init__(self, **counts):
        for field in counter_fields:
            setattr(self, field, counts.pop(field, 0))
        if counts:
            raise TypeError(f"unknown counters {sorted(counts)}")

    def increment(self, field, n=1):
        setattr(self, field, getattr(self, field) + n)

    @property
    def filtered_coverage(self):
        return self.n_mod + self.n_canonical + self.n_other_mod

    def total(self):
        return sum(getattr(self, field) for field in counter_fields)

    def __iadd__(self, other):
        for field in counter_fields:
            setattr(self, field, getattr(self, field) + getattr(other, field))
        return self

    def __add__(self, other):
        result = PositionCounters(**self.to_dict())
        result += other
        return result

    def __eq__(self, other):
        if not isinstance(other, PositionCounters):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __getstate__(self):
        return self.to_dict()

    def __setstate__(self, state):
        for field in counter_fields:
            setattr(self, field, state[field])

    def to_dict(self):
        return {field: getattr(self, field) for field in counter_fields}

    def __repr__(self):
        return "PositionCounters(%s)" % ", ".join("%s=%d" % kv for kv in self.to_dict().items())


def merge_counters(left, right):
    '''
    pointwise sum of two counter maps, associative
    and commutative. inputs are not changed
    :return: dict PositionKey -> PositionCounters
    '''
    merged = {key: PositionCounters(**counters.to_dict()) for key, counters in left.items()}
    for key, counters in right.items():
        if key in merged:
            merged[key] += counters
        else:
            merged[key] = PositionCounters(**counters.to_dict())
    return merged


class SiteTally:
    '''
    features of all calls at one (contig, position, strand)
    and the codes observed there
    '''
    __slots__ = ("features", "observed")

    def __init__(self):
        self.features = Counter()
        self.observed = {}

    def add(self, kind, base=None, category=None):
        self.features[(kind, base, category)] += 1

    def observe(self, call):
        for code in call.mod_codes():
            self.observed.setdefault(code, call.canonical_base)

    def decode(self, contig, position, strand):
        '''
        one PositionCounters per observed code
        :return: dict PositionKey -> PositionCounters
        '''
        out = {}
        for code, base in self.observed.items():
            counters = PositionCounters()
            for (kind, f_base, category), n in self.features.items():
                counters.increment(classify_feature(kind, f_base, category, code, base), n)
            out[PositionKey(contig, position, strand, code)] = counters
        return out


def classify_feature(kind, f_base, category, code, base):
    '''
    counter a call feature goes to for the bucket
    of modification code with canonical base
    '''
    if kind == DELETE:
        return "n_delete"
    if kind == DIFF:
        return "n_diff"
    if kind == FILTERED:
        return "n_filtered"
    if kind == NOCALL:
        return "n_nocall" if f_base == base else "n_diff"
    if f_base != base:
        return "n_diff"
    if category == code:
        return "n_mod"
    if category == CANONICAL:
        return "n_canonical"
    return "n_other_mod"


class PileupDiagnostics:
    '''
    per run counts of everything that didn't
    make it into a counter, mergeable
    '''

    def __init__(self):
        self.skipped = Counter()
        self.calls_processed = 0
        self.calls_outside_motif = 0
        self.calls_outside_partitions = 0
        self.partitions_processed = 0
        self.low_sample_partitions = 0

    def merge(self, other):
        self.skipped.update(other.skipped)
        self.calls_processed += other.calls_processed
        self.calls_outside_motif += other.calls_outside_motif
        self.calls_outside_partitions += other.calls_outside_partitions
        self.partitions_processed += other.partitions_processed
        self.low_sample_partitions += other.low_sample_partitions
        return self

    def n_skipped(self):
        return sum(self.skipped.values())

    def to_dict(self):
        return {"calls_processed": self.calls_processed,
                "calls_skipped": self.n_skipped(),
                "skipped_by_reason": dict(sorted(self.skipped.items())),
                "calls_outside_motif": self.calls_outside_motif,
                "calls_outside_partitions": self.calls_outside_partitions,
                "partitions_processed": self.partitions_processed,
                "low_sample_partitions": self.low_sample_partitions}

    def report(self):
        for reason, n in sorted(self.skipped.items()):
            logger.warning("skipped %d malformed calls: %s", n, reason)
        logger.info("processed %d calls in %d partitions, %d outside motif/include regions",
                    self.calls_processed, self.partitions_processed, self.calls_outside_motif)
        if self.calls_outside_partitions:
            logger.warning("%d calls fell outside all partitions and were not counted", self.calls_outside_partitions)


class CallPipeline:
    '''
    per call transformation before counting:
    validate, collapse, restrict to motif / BED sites.
    immutable and shared by all workers
    '''

    def __init__(self, collapse_map=None, combine_mods=False, motif_index=None, position_filter=None):
        self.collapse_map = collapse_map
        self.combine_mods = combine_mods
        self.motif_index = motif_index
        self.position_filter = position_filter

    def prepare(self, call):
        '''
        validated and collapsed call, raises MalformedCallError
        '''
        return collapse_call(validate_call(call), self.collapse_map, self.combine_mods)

    def resolve_position(self, contig, position, strand):
        '''
        :return: (position, strand) to count at, None to drop
        '''
        if self.motif_index is not None:
            resolved = self.motif_index.resolve(contig, position, strand)
            if resolved is None:
                return None
        else:
            resolved = (position, strand)
        if self.position_filter is not None and not self.position_filter.contains(contig, position, strand):
            return None
        return resolved

    def resolve(self, call):
        resolved = self.resolve_position(call.contig, call.position, call.strand)
        if resolved is None:
            return None
        position, strand = resolved
        if position == call.position and strand == call.strand:
            return call
        return call.replace(position=position, strand=strand)

    def slop(self):
        '''
        bases a call can move when resolved onto its partner
        '''
        if self.motif_index is None:
            return 0
        return self.motif_index.max_motif_length()


class PartitionAggregator:
    '''
    counters for one genomic partition. owned by
    one worker, calls that resolve outside the
    partition interval belong to a neighbour and are ignored
    '''

    def __init__(self, pipeline, threshold, interval=None):
        self.pipeline = pipeline
        self.threshold = threshold
        self.interval = interval
        self.sites = {}
        self.diagnostics = PileupDiagnostics()
        self._warned = 0

    def _warn(self, error):
        self._warned += 1
        if self._warned <= MAX_CALL_WARNINGS:
            logger.warning("skipping call (%s): %r", error.reason, error.call)
        if self._warned == MAX_CALL_WARNINGS:
            logger.warning("further malformed call warnings are suppressed")

    def add(self, call):
        '''
        route one call into its site tally
        :return: True if the call was counted
        '''
        try:
            call = self.pipeline.prepare(call)
        except MalformedCallError as error:
            self.diagnostics.skipped[error.reason] += 1
            self._warn(error)
            return False
        call = self.pipeline.resolve(call)
        if call is None:
            self.diagnostics.calls_outside_motif += 1
            return False
        if self.interval is not None and not (call.contig == self.interval.chrom and self.interval.contains(call.position)):
            return False
        self.diagnostics.calls_processed += 1
        site = (call.contig, call.position, call.strand)
        tally = self.sites.get(site)
        if tally is None:
            tally = self.sites[site] = SiteTally()
        if call.is_delete:
            tally.add(DELETE)
        elif call.is_diff:
            tally.add(DIFF)
        elif call.is_nocall:
            tally.add(NOCALL, call.canonical_base)
        else:
            tally.observe(call)
            category = self.threshold.passes(call)
            if category is None:
                tally.add(FILTERED, call.canonical_base)
            else:
                tally.add(PASS, call.canonical_base, category)
        return True

    def add_all(self, calls):
        for call in calls:
            self.add(call)
        return self

    def finalize(self):
        '''
        :return: dict PositionKey -> PositionCounters
        '''
        counters = {}
        for (contig, position, strand), tally in self.sites.items():
            counters.update(tally.decode(contig, position, strand))
        self.diagnostics.partitions_processed += 1
        return counters


def route_calls(calls, partitions, pipeline, diagnostics=None):
    '''
    assign calls to the partition holding their
    resolved position. calls outside every partition
    are accounted for in diagnostics
    :param calls: iterable of Call
    :param partitions: non overlapping GenomicIntervals
    :param diagnostics: PileupDiagnostics to count unrouted calls in
    :return: list of call lists, one per partition
    '''
    diagnostics = PileupDiagnostics() if diagnostics is None else diagnostics
    by_chrom = {}
    for i, interval in enumerate(partitions):
        by_chrom.setdefault(interval.chrom, []).append((interval.start, i))
    starts, order = {}, {}
    for chrom, entries in by_chrom.items():
        entries.sort()
        starts[chrom] = np.array([start for start, _ in entries], dtype=np.int64)
        order[chrom] = [i for _, i in entries]
    routed = [[] for _ in partitions]
    n_unrouted = 0
    for call in calls:
        position = call.position
        if call.strand in STRANDS and isinstance(position, Integral) and position >= 0:
            resolved = pipeline.resolve_position(call.contig, position, call.strand)
            if resolved is not None:
                position = resolved[0]
        part = None
        if call.contig in starts and isinstance(position, Integral):
            ind = np.searchsorted(starts[call.contig], position, "right") - 1
            if ind >= 0 and partitions[order[call.contig][ind]].contains(position):
                part = order[call.contig][ind]
        if part is None:
            n_unrouted += 1
            _account_unrouted(call, pipeline, diagnostics)
        else:
            routed[part].append(call)
    if n_unrouted:
        logger.info("%d calls fall outside all partitions", n_unrouted)
    return routed


def _account_unrouted(call, pipeline, diagnostics):
    try:
        call = pipeline.prepare(call)
    except MalformedCallError as error:
        diagnostics.skipped[error.reason] += 1
        return
    if pipeline.resolve(call) is None:
        diagnostics.calls_outside_motif += 1
    else:
        diagnostics.calls_outside_partitions += 1


#worker state, set once per process
_worker = {}


def _init_worker(pipeline, threshold, extract_calls):
    _worker["pipeline"] = pipeline
    _worker["threshold"] = threshold
    _worker["extract_calls"] = extract_calls


def _count_partition(task):
    interval, calls = task
    aggregator = PartitionAggregator(_worker["pipeline"], _worker["threshold"], interval)
    if calls is None:
        calls = _worker["extract_calls"](interval.slop(_worker["pipeline"].slop()))
    aggregator.add_all(calls)
    return aggregator.finalize(), aggregator.diagnostics


def _sample_partition(task):
    interval, calls, builder = task
    if calls is None:
        calls = _worker["extract_calls"](interval, sampling=True)
    pipeline = _worker["pipeline"]
    for call in calls:
        try:
            builder.add(pipeline.prepare(call))
        except MalformedCallError:
            continue
    return builder


def _run_tasks(func, tasks, threads, initargs, desc, suppress_progress=False):
    '''
    run tasks on a process pool (serially with one thread),
    yields (task index, result) as they complete
    '''
    progress = tqdm(total=len(tasks), desc=desc, unit="partition", disable=suppress_progress)
    try:
        if threads <= 1 or len(tasks) <= 1:
            _init_worker(*initargs)
            for i, task in enumerate(tasks):
                yield i, func(task)
                progress.update(1)
            return
        executor = ProcessPoolExecutor(max_workers=threads, initializer=_init_worker, initargs=initargs)
        try:
            futures = {executor.submit(func, task): i for i, task in enumerate(tasks)}
            for future in as_completed(futures):
                yield futures[future], future.result()
                progress.update(1)
        except BaseException:
            #partial results are meaningless, drop everything
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)
    finally:
        progress.close()


def estimate_threshold(builder_factory, partitions, pipeline, calls_per_partition=None, extract_calls=None,
                       threads=1, suppress_progress=False, diagnostics=None):
    '''
    sampling pass, must complete before counting starts
    :param builder_factory: returns an empty ThresholdBuilder
    :param partitions: GenomicIntervals to sample from
    :param calls_per_partition: in memory calls per partition, or None to extract
    :return: finalized Threshold
    '''
    tasks = [(interval, None if calls_per_partition is None else calls_per_partition[i], builder_factory())
             for i, interval in enumerate(partitions)]
    builders = [None] * len(tasks)
    for i, builder in _run_tasks(_sample_partition, tasks, threads, (pipeline, None, extract_calls),
                                 "sampling", suppress_progress):
        builders[i] = builder
    merged = builder_factory()
    for builder in builders:
        if builder.n_samples() < merged.min_samples and diagnostics is not None:
            diagnostics.low_sample_partitions += 1
        merged.merge(builder)
    return merged.finalize()


def aggregate_partitions(partitions, pipeline, threshold, calls_per_partition=None, extract_calls=None,
                         threads=1, suppress_progress=False):
    '''
    count every partition and merge the results
    :param partitions: non overlapping GenomicIntervals
    :param calls_per_partition: in memory calls per partition, or None to extract
    :param extract_calls: function GenomicInterval -> calls, used in the workers
    :return: dict PositionKey -> PositionCounters, PileupDiagnostics
    '''
    tasks = [(interval, None if calls_per_partition is None else calls_per_partition[i])
             for i, interval in enumerate(partitions)]
    counters, diagnostics = {}, PileupDiagnostics()
    for _, (partition_counters, partition_diagnostics) in _run_tasks(
            _count_partition, tasks, threads, (pipeline, threshold, extract_calls), "pileup", suppress_progress):
        for key, value in partition_counters.items():
            if key in counters:
                counters[key] += value
            else:
                counters[key] = value
        diagnostics.merge(partition_diagnostics)
    return counters, diagnostics


def aggregate_calls(calls, threshold, pipeline=None, partitions=None, threads=1, suppress_progress=True):
    '''
    pileup of an in memory call stream
    :param calls: iterable of Call
    :param threshold: finalized Threshold
    :param partitions: optional list of GenomicIntervals, one partition per contig otherwise
    :return: dict PositionKey -> PositionCounters, PileupDiagnostics
    '''
    pipeline = pipeline or CallPipeline()
    calls = list(calls)
    if partitions is None:
        partitions = whole_contig_partitions(calls, pipeline)
    diagnostics = PileupDiagnostics()
    routed = route_calls(calls, partitions, pipeline, diagnostics)
    counters, partition_diagnostics = aggregate_partitions(partitions, pipeline, threshold, routed, threads=threads,
                                                           suppress_progress=suppress_progress)
    return counters, diagnostics.merge(partition_diagnostics)


def whole_contig_partitions(calls, pipeline):
    '''
    one partition per contig covering all calls
    '''
    ends = {}
    for call in calls:
        end = call.position + 1 + pipeline.slop() if isinstance(call.position, Integral) else 1
        ends[call.contig] = max(ends.get(call.contig, 0), end)
    return [GenomicInterval().set_from_positions(contig, 0, end) for contig, end in ends.items()]
