###################################################
#
# Script: thresholds.py
# Description: sample call confidences and derive pass thresholds
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
import numpy as np
from modpileup_tools.naming_conventions import *
from modpileup_tools.errors import ConfigurationError
from modpileup_tools.calls import is_known_code

logger = logging.getLogger(__name__)


class Reservoir:
    '''
    fixed size uniform sample of a stream
    (algorithm R), seeded for reproducibility
    '''

    def __init__(self, capacity=DEFAULT_SAMPLE_CAP, seed=DEFAULT_SEED):
        if capacity <= 0:
            raise ConfigurationError("sample cap must be positive")
        self.capacity = capacity
        self.rng = np.random.default_rng(seed)
        self.values = []
        self.n_seen = 0

    def add(self, value):
        self.n_seen += 1
        if len(self.values) < self.capacity:
            self.values.append(value)
            return
        j = self.rng.integers(0, self.n_seen)
        if j < self.capacity:
            self.values[j] = value

    def merge(self, other):
        '''
        combine two reservoirs, each item is kept with
        weight proportional to the stream it stands for
        :param other: Reservoir
        :return: self
        '''
        n_seen = self.n_seen + other.n_seen
        pooled = self.values + other.values
        if len(pooled) <= self.capacity:
            self.values, self.n_seen = pooled, n_seen
            return self
        weights = np.concatenate([
            np.full(len(self.values), self.n_seen / max(len(self.values), 1)),
            np.full(len(other.values), other.n_seen / max(len(other.values), 1)),
        ])
        keep = self.rng.choice(len(pooled), size=self.capacity, replace=False, p=weights / weights.sum())
        self.values = [pooled[i] for i in sorted(keep)]
        self.n_seen = n_seen
        return self

    def __len__(self):
        return len(self.values)


def confidence_quantile(values, fraction, method="linear"):
    '''
    empirical quantile of sampled confidences
    :param values: sampled probabilities
    :param fraction: fraction of calls to fall below the cutoff
    :param method: linear (interpolate between order statistics) or nearest (nearest rank)
    :return: cutoff
    '''
    if method not in QUANTILE_METHODS:
        raise ConfigurationError(f"unknown quantile method {method}, choose from {sorted(QUANTILE_METHODS)}")
    return float(np.quantile(np.asarray(values, dtype=float), fraction, method=QUANTILE_METHODS[method]))


class Threshold:
    '''
    finalized pass thresholds, shared read only by
    all workers. lookup order: per modification code
    (for calls whose dominant category is that code),
    per canonical base, default
    '''

    def __init__(self, per_base=None, per_mod=None, default=DEFAULT_FILTER_THRESHOLD, estimated=False):
        object.__setattr__(self, "per_base", dict(per_base or {}))
        object.__setattr__(self, "per_mod", dict(per_mod or {}))
        object.__setattr__(self, "default", default)
        object.__setattr__(self, "estimated", estimated)
        for value in list(self.per_base.values()) + list(self.per_mod.values()) + [default]:
            if not (0.0 <= value <= 1.0):
                raise ConfigurationError(f"threshold {value} is outside [0, 1]")

    def __setattr__(self, key, value):
        raise AttributeError("Threshold is immutable")

    def __reduce__(self):
        return (Threshold, (self.per_base, self.per_mod, self.default, self.estimated))

    @classmethod
    def fixed(cls, value=None, per_base=None, per_mod=None):
        '''
        threshold supplied by configuration, no sampling
        :param value: global threshold
        :param per_base: dict base -> threshold
        :param per_mod: dict code -> threshold
        '''
        default = DEFAULT_FILTER_THRESHOLD if value is None else value
        return cls(per_base, per_mod, default)

    @classmethod
    def no_filtering(cls):
        return cls(default=0.0)

    def for_category(self, canonical_base, category):
        if category in self.per_mod:
            return self.per_mod[category]
        return self.per_base.get(canonical_base, self.default)

    def passes(self, call):
        '''
        :param call: unflagged Call
        :return: dominant category if the call passes, None if filtered
        '''
        category, prob = call.dominant()
        if prob >= self.for_category(call.canonical_base, category):
            return category
        return None

    def with_mod_thresholds(self, per_mod):
        '''
        per code thresholds override estimated ones
        '''
        merged = dict(self.per_mod)
        merged.update(per_mod or {})
        return Threshold(self.per_base, merged, self.default, self.estimated)

    def to_dict(self):
        return {"per_base": self.per_base, "per_mod": self.per_mod, "default": self.default,
                "estimated": self.estimated}

    def __eq__(self, other):
        if not isinstance(other, Threshold):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return "Threshold(%s)" % self.to_dict()


class ThresholdBuilder:
    '''
    collects confidences during the sampling pass.
    only finalize() hands out a Threshold, so
    aggregation can't start on a half built one
    '''

    def __init__(self, filter_fraction=DEFAULT_FILTER_PERCENTILE, sample_cap=DEFAULT_SAMPLE_CAP,
                 min_samples=DEFAULT_MIN_SAMPLES, quantile_method="linear", seed=DEFAULT_SEED):
        if not (0.0 < filter_fraction < 1.0):
            raise ConfigurationError(f"filter percentile must be in (0, 1), got {filter_fraction}")
        if quantile_method not in QUANTILE_METHODS:
            raise ConfigurationError(f"unknown quantile method {quantile_method}")
        self.filter_fraction = filter_fraction
        self.sample_cap = sample_cap
        self.min_samples = min_samples
        self.quantile_method = quantile_method
        self.seed = seed
        self.reservoirs = {}
        self.finalized = None

    def _reservoir(self, base):
        if base not in self.reservoirs:
            seed = None if self.seed is None else [self.seed, ord(base)]
            self.reservoirs[base] = Reservoir(self.sample_cap, seed=seed)
        return self.reservoirs[base]

    def add(self, call):
        '''
        sample the confidence of one collapsed call
        '''
        if self.finalized is not None:
            raise RuntimeError("ThresholdBuilder is already finalized")
        if call.is_flagged() or not call.probabilities:
            return
        self._reservoir(call.canonical_base).add(call.dominant()[1])

    def add_all(self, calls):
        for call in calls:
            self.add(call)
        return self

    def n_samples(self, base=None):
        if base is not None:
            return len(self.reservoirs.get(base, []))
        return sum(len(r) for r in self.reservoirs.values())

    def merge(self, other):
        for base, reservoir in other.reservoirs.items():
            if base in self.reservoirs:
                self.reservoirs[base].merge(reservoir)
            else:
                self.reservoirs[base] = reservoir
        return self

    def finalize(self):
        '''
        compute one threshold per canonical base
        :return: Threshold
        '''
        if self.finalized is not None:
            return self.finalized
        per_base = {}
        for base in sorted(self.reservoirs):
            values = self.reservoirs[base].values
            if len(values) < self.min_samples:
                logger.warning("only %d calls sampled for base %s, using default threshold %s",
                               len(values), base, DEFAULT_FILTER_THRESHOLD)
                continue
            per_base[base] = confidence_quantile(values, self.filter_fraction, self.quantile_method)
            logger.info("estimated pass threshold for %s: %.4f from %d calls", base, per_base[base], len(values))
        if not self.reservoirs:
            logger.warning("no calls sampled, using default threshold %s", DEFAULT_FILTER_THRESHOLD)
        self.finalized = Threshold(per_base, default=DEFAULT_FILTER_THRESHOLD, estimated=True)
        return self.finalized


def _parse_fraction(raw):
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"cannot parse threshold {raw}")
    if not (0.0 <= value <= 1.0):
        raise ConfigurationError(f"threshold {raw} is outside [0, 1]")
    return value


def parse_thresholds(raw_thresholds):
    '''
    global and per base thresholds, e.g. ["0.8", "A:0.7"]
    :return: global value (or None), dict base -> value
    '''
    global_value, per_base = None, {}
    for raw in raw_thresholds or []:
        if COORD_SEP in raw:
            base, value = raw.split(COORD_SEP, 1)
            base = base.strip().upper()
            if base not in DNA_BASES:
                raise ConfigurationError(f"invalid base {base} in threshold {raw}")
            per_base[base] = _parse_fraction(value)
        else:
            if global_value is not None:
                raise ConfigurationError("more than one global filter threshold given")
            global_value = _parse_fraction(raw)
    return global_value, per_base


def parse_per_mod_thresholds(raw_thresholds):
    '''
    per modification code thresholds, e.g. ["h:0.8"]
    :return: dict code -> value
    '''
    per_mod = {}
    for raw in raw_thresholds or []:
        if COORD_SEP not in raw:
            raise ConfigurationError(f"mod threshold {raw} should be formatted code:value")
        code, value = raw.split(COORD_SEP, 1)
        code = code.strip()
        if not is_known_code(code):
            raise ConfigurationError(f"unknown modification code {code}")
        per_mod[code] = _parse_fraction(value)
    return per_mod
