#############################################################
# FILE: naming_conventions.py
# DESCRIPTION: Contains all conventions for using names
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

#%%
POSITIVE_STRAND = "+"
NEGATIVE_STRAND = "-"
COMBINED_STRAND = "."
STRANDS = (POSITIVE_STRAND, NEGATIVE_STRAND, COMBINED_STRAND)
strand_order = {POSITIVE_STRAND: 0, NEGATIVE_STRAND: 1, COMBINED_STRAND: 2}
strand_label = {POSITIVE_STRAND: "positive", NEGATIVE_STRAND: "negative", COMBINED_STRAND: "combined"}

CANONICAL = "-" #key of the unmodified category in a probability vector
DNA_BASES = "ACGT"
complement = {"A": "T", "C": "G", "G": "C", "T": "A", "N": "N"}

#single letter codes defined for the MM tag, by primary base
mod_code_to_base = {"m": "C", "h": "C", "f": "C", "c": "C", "C": "C",
                    "a": "A", "A": "A",
                    "o": "G", "G": "G",
                    "g": "T", "e": "T", "b": "T", "T": "T"}
#upper case codes are the "any modification" codes
code_order = ["a", "h", "m", "f", "c", "o", "g", "e", "b", "A", "C", "G", "T"]

TAB = "\t"
SPACE = " "
COORD_SEP = ":"
INTERVAL_SEP = "-"
BED_COLOR = "255,0,0"
bedmethyl_columns = ["chrom", "start", "end", "mod_code", "score", "strand", "thick_start", "thick_end",
                     "color", "filtered_coverage", "percent_modified", "n_mod", "n_canonical",
                     "n_other_mod", "n_delete", "n_filtered", "n_diff", "n_nocall"]
counter_fields = ["n_mod", "n_canonical", "n_other_mod", "n_delete", "n_filtered", "n_diff", "n_nocall"]

#thresholds
DEFAULT_FILTER_PERCENTILE = 0.1
DEFAULT_FILTER_THRESHOLD = 0.0 #used when too few calls were sampled
DEFAULT_SAMPLE_CAP = 10042
DEFAULT_MIN_SAMPLES = 100
DEFAULT_SEED = 42
QUANTILE_METHODS = {"linear": "linear", "nearest": "inverted_cdf"}
PROB_TOLERANCE = 1e-3

#collapse
REDISTRIBUTE = "redistribute"
TO_CANONICAL = "canonical"

#run
DEFAULT_INTERVAL_SIZE = 100000
DEFAULT_THREADS = 4
MAX_CALL_WARNINGS = 10
MAX_SAMPLE_PARTITIONS = 100
