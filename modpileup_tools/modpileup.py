###################################################
#
# Script: modpileup.py
# Description: pileup of modBAM calls into bedMethyl or bedGraph
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

###################################################
import json
import logging
import math
import os
import sys

import click

from modpileup_tools.naming_conventions import *
from modpileup_tools.errors import ConfigurationError
from modpileup_tools.interval_utils import partition_genome, parse_region
from modpileup_tools.thresholds import Threshold, ThresholdBuilder, parse_thresholds, parse_per_mod_thresholds
from modpileup_tools.collapse import CollapseMap
from modpileup_tools.motifs import PositionFilter, build_motif_index
from modpileup_tools.aggregator import (CallPipeline, aggregate_partitions, estimate_threshold, route_calls,
                                        whole_contig_partitions, PileupDiagnostics)
from modpileup_tools.records import emit_records
from modpileup_tools.writers import BedMethylWriter, BedGraphWriter
from modpileup_tools.modbam_parser import BamCallExtractor, bam_contigs, check_bam_index

logger = logging.getLogger(__name__)

default_config = {
    "bam": None, "out": None, "bedgraph": False, "prefix": None,
    "threads": DEFAULT_THREADS, "interval_size": DEFAULT_INTERVAL_SIZE, "region": None,
    "reference": None, "cpg": False, "motif": (), "combine_strands": False, "combine_mods": False,
    "ignore": (), "convert": (), "collapse_policy": REDISTRIBUTE,
    "filter_threshold": (), "mod_threshold": (), "filter_percentile": DEFAULT_FILTER_PERCENTILE,
    "no_filtering": False, "num_reads": DEFAULT_SAMPLE_CAP, "sample_cap": DEFAULT_SAMPLE_CAP,
    "min_samples": DEFAULT_MIN_SAMPLES, "quantile_method": "linear", "seed": DEFAULT_SEED,
    "include_bed": None, "edge_filter": None, "only_tabs": False, "summary": None,
    "suppress_progress": False,
}


def validate_config(config, needs_bam=True):
    '''
    fill defaults and check everything that can be
    checked before touching the data
    :param config: dict, unset values may be None
    :return: new config dict
    '''
    validated = dict(default_config)
    validated.update({k: v for k, v in config.items() if v is not None})
    for key in ("filter_threshold", "mod_threshold", "ignore", "convert"):
        if isinstance(validated[key], str):
            validated[key] = [validated[key]]
    if isinstance(validated["motif"], str):
        validated["motif"] = [validated["motif"]]
    if needs_bam:
        if not validated["bam"] or not os.path.isfile(validated["bam"]):
            raise ConfigurationError(f"BAM file {validated['bam']} does not exist")
        if not validated["out"]:
            raise ConfigurationError("an output path is required")
    if not (0.0 < validated["filter_percentile"] < 1.0):
        raise ConfigurationError(f"filter percentile must be in (0, 1), got {validated['filter_percentile']}")
    if validated["threads"] < 1:
        raise ConfigurationError("threads must be at least 1")
    if validated["interval_size"] <= 0:
        raise ConfigurationError("interval size must be positive")
    if validated["quantile_method"] not in QUANTILE_METHODS:
        raise ConfigurationError(f"quantile method must be one of {sorted(QUANTILE_METHODS)}")
    if validated["no_filtering"] and validated["filter_threshold"]:
        raise ConfigurationError("--no-filtering and --filter-threshold can't be used together")
    if validated["edge_filter"] is not None and validated["edge_filter"] < 0:
        raise ConfigurationError("edge filter must be non negative")
    has_motif = validated["cpg"] or validated["motif"]
    if has_motif and not validated["reference"]:
        raise ConfigurationError("motif restriction needs a reference sequence (--ref)")
    if validated["combine_strands"] and not has_motif:
        raise ConfigurationError("combining strands needs a palindromic motif, e.g. --cpg")
    if validated["reference"] and not os.path.isfile(validated["reference"]):
        raise ConfigurationError(f"reference {validated['reference']} does not exist")
    if validated["include_bed"] and not os.path.isfile(validated["include_bed"]):
        raise ConfigurationError(f"BED file {validated['include_bed']} does not exist")
    validated["global_threshold"], validated["per_base_thresholds"] = parse_thresholds(validated["filter_threshold"])
    validated["per_mod_thresholds"] = parse_per_mod_thresholds(validated["mod_threshold"])
    validated["collapse_map"] = CollapseMap.from_options(validated["ignore"], validated["convert"],
                                                         validated["collapse_policy"])
    return validated


def sampling_partitions(partitions, max_partitions=MAX_SAMPLE_PARTITIONS):
    '''
    evenly spaced subset of partitions to sample from
    '''
    if len(partitions) <= max_partitions:
        return list(partitions)
    step = len(partitions) / max_partitions
    return [partitions[int(i * step)] for i in range(max_partitions)]


class ModPileup:

    def __init__(self, config, calls=None):
        '''
        Initializes a pileup run

        Args:
            config (dict): Configuration settings, see default_config.
            calls: optional in memory Call stream to use instead of a BAM
        '''
        self.calls = None if calls is None else list(calls)
        self.config = validate_config(config, needs_bam=self.calls is None)
        self.diagnostics = PileupDiagnostics()
        self.threshold = None
        self.counters = None

    def load_layout(self):
        '''
        contigs, partitions and the shared read only indices
        '''
        if self.calls is None:
            check_bam_index(self.config["bam"])
            self.contig_lengths = bam_contigs(self.config["bam"])
            region = parse_region(self.config["region"], self.contig_lengths) if self.config["region"] else None
            self.partitions = partition_genome(self.contig_lengths, self.config["interval_size"], region)
        else:
            self.contig_lengths = None
        self.contig_order = self.config.get("contigs") or \
            (list(self.contig_lengths) if self.contig_lengths else list(dict.fromkeys(c.contig for c in self.calls)))
        motif_index = build_motif_index(self.config, self.contig_order)
        position_filter = None
        if self.config["include_bed"]:
            position_filter = PositionFilter.from_bed(self.config["include_bed"], set(self.contig_order))
        self.pipeline = CallPipeline(self.config["collapse_map"], self.config["combine_mods"],
                                     motif_index, position_filter)
        if self.calls is not None:
            self.partitions = whole_contig_partitions(self.calls, self.pipeline)
            self.routed = route_calls(self.calls, self.partitions, self.pipeline, self.diagnostics)
        else:
            self.routed = None
            if position_filter is not None:
                self.partitions = [p for p in self.partitions if position_filter.overlaps(p)]
        logger.info("%d partitions to process", len(self.partitions))

    def _extractor(self, reads_per_partition=None):
        if self.calls is not None:
            return None
        return BamCallExtractor(self.config["bam"], self.config["edge_filter"], reads_per_partition)

    def build_threshold(self):
        '''
        fixed threshold from config, or sampling pass
        '''
        config = self.config
        if config["no_filtering"]:
            logger.info("not filtering calls")
            threshold = Threshold.no_filtering()
        elif config["global_threshold"] is not None or config["per_base_thresholds"]:
            threshold = Threshold.fixed(config["global_threshold"], config["per_base_thresholds"])
        else:
            def builder_factory():
                return ThresholdBuilder(config["filter_percentile"], config["sample_cap"], config["min_samples"],
                                        config["quantile_method"], config["seed"])
            if self.routed is None:
                partitions = sampling_partitions(self.partitions)
                reads_per_partition = math.ceil(config["num_reads"] / max(len(partitions), 1))
                calls = None
            else:
                partitions, reads_per_partition, calls = self.partitions, None, self.routed
            threshold = estimate_threshold(builder_factory, partitions, self.pipeline, calls,
                                           self._extractor(reads_per_partition), config["threads"],
                                           config["suppress_progress"], self.diagnostics)
        self.threshold = threshold.with_mod_thresholds(config["per_mod_thresholds"])
        logger.info("pass thresholds: %s", self.threshold)
        return self.threshold

    def aggregate(self):
        self.counters, diagnostics = aggregate_partitions(self.partitions, self.pipeline, self.threshold,
                                                          self.routed, self._extractor(), self.config["threads"],
                                                          self.config["suppress_progress"])
        self.diagnostics.merge(diagnostics)
        return self.counters

    def records(self):
        return emit_records(self.counters, self.contig_order)

    def write(self):
        if self.config["bedgraph"]:
            writer = BedGraphWriter(self.config["out"], self.config["prefix"])
        else:
            writer = BedMethylWriter(self.config["out"], self.config["only_tabs"])
        self.rows_written = writer.write(self.records())
        return self.rows_written

    def summary(self):
        summary = {"threshold": self.threshold.to_dict() if self.threshold else None,
                   "rows_written": getattr(self, "rows_written", 0)}
        summary.update(self.diagnostics.to_dict())
        return summary

    def run(self):
        self.load_layout()
        self.build_threshold()
        self.aggregate()
        if self.config["out"]:
            self.write()
        self.diagnostics.report()
        summary = self.summary()
        if self.config["summary"]:
            with open(self.config["summary"], "w") as outfile:
                json.dump(summary, outfile, indent=2, sort_keys=True)
        return summary


def pileup_calls(calls, config=None):
    '''
    pileup of an in memory call stream
    :return: list of PileupRecord, summary dict
    '''
    run_config = {"threads": 1, "suppress_progress": True}
    run_config.update(config or {})
    runner = ModPileup(run_config, calls=calls)
    runner.load_layout()
    runner.build_threshold()
    runner.aggregate()
    return list(runner.records()), runner.summary()


def setup_logging(verbosity, logfile=None):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    log_fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)
    if logfile:
        fh = logging.FileHandler(logfile)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)

#%%


@click.command()
@click.option('--bam', help='indexed modBAM')
@click.option('--out', help='output bedMethyl path, or directory with --bedgraph')
@click.option('--bedgraph', is_flag=True, default=None, help='write one bedGraph per code and strand')
@click.option('--prefix', help='bedGraph file name prefix')
@click.option('-t', '--threads', type=int, help='worker processes')
@click.option('-i', '--interval_size', type=int, help='partition length in bases')
@click.option('--region', help='process only chrN or chrN:start-end')
@click.option('-r', '--ref', 'reference', help='indexed reference fasta, needed for motifs')
@click.option('--cpg', is_flag=True, default=None, help='only count CpG sites')
@click.option('--motif', nargs=2, multiple=True, help='motif and offset of the modified base, e.g. CG 0')
@click.option('--combine_strands', is_flag=True, default=None, help='count both strands of a palindromic motif together')
@click.option('--combine_mods', is_flag=True, default=None, help='combine all codes of a base into one')
@click.option('--ignore', multiple=True, help='remove a code and redistribute its probability')
@click.option('--convert', multiple=True, help='fold one code into another, from:to')
@click.option('--collapse_policy', type=click.Choice([REDISTRIBUTE, TO_CANONICAL]))
@click.option('--filter_threshold', multiple=True, help='global (0.8) or per base (C:0.8) pass threshold')
@click.option('--mod_threshold', multiple=True, help='per code pass threshold, e.g. h:0.8')
@click.option('-p', '--filter_percentile', type=float, help='fraction of lowest confidence calls to filter')
@click.option('--no_filtering', is_flag=True, default=None, help='count every call')
@click.option('-n', '--num_reads', type=int, help='reads to sample for the threshold')
@click.option('--sample_cap', type=int, help='max sampled calls per base')
@click.option('--min_samples', type=int, help='fewer samples fall back to the default threshold')
@click.option('--quantile_method', type=click.Choice(sorted(QUANTILE_METHODS)))
@click.option('--seed', type=int, help='sampling seed')
@click.option('--include_bed', help='only count positions in this BED file')
@click.option('--edge_filter', type=int, help='ignore calls this close to read ends')
@click.option('--only_tabs', is_flag=True, default=None, help='tab separate every bedMethyl column')
@click.option('--summary', help='write run summary json here')
@click.option('--suppress_progress', is_flag=True, default=None)
@click.option('--log_filepath', help='also log to this file')
@click.option('-v', '--verbose', count=True)
@click.option('-j', '--json', help='run from json config file')
@click.version_option(package_name="modpileup_tools")
def main(**kwargs):
    """ modBAM to bedMethyl pileup. any command line options will override config"""
    setup_logging(kwargs.pop("verbose"), kwargs.pop("log_filepath"))
    config = {}
    if kwargs["json"] is not None:
        with open(kwargs["json"], "r") as jconfig:
            config.update(json.load(jconfig))
    config.update({k: v for k, v in kwargs.items() if v is not None and v != ()})
    config.pop("json", None)
    try:
        runner = ModPileup(config)
        summary = runner.run()
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    logger.info("done: %s", summary)


if __name__ == '__main__':
    main()
