###################################################
#
# Script: collapse.py
# Description: fold modification codes together and redistribute probability mass
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
from modpileup_tools.calls import code_base, is_known_code


class CollapseMap:
    '''
    code -> code it is folded into (probabilities are summed)
    or code -> None (code is removed, its mass handled by policy):
    redistribute - renormalize the remaining categories
    canonical - add the mass to the canonical category
    chains such as h->m, m->C are resolved up front
    '''

    def __init__(self, entries=None, policy=REDISTRIBUTE):
        if policy not in (REDISTRIBUTE, TO_CANONICAL):
            raise ConfigurationError(f"unknown collapse policy {policy}")
        self.policy = policy
        self.entries = dict(entries or {})
        self.resolved = self._resolve()

    @classmethod
    def from_options(cls, ignore=(), convert=(), policy=REDISTRIBUTE):
        '''
        :param ignore: codes to remove, e.g. ["h"]
        :param convert: "from:to" strings, e.g. ["h:m"]
        '''
        entries = {}
        for code in ignore or ():
            entries[code] = None
        for raw in convert or ():
            if COORD_SEP not in raw:
                raise ConfigurationError(f"conversion {raw} should be formatted from:to")
            source, target = (x.strip() for x in raw.split(COORD_SEP, 1))
            if source in entries:
                raise ConfigurationError(f"code {source} is collapsed more than once")
            entries[source] = target
        return cls(entries, policy)

    def _resolve(self):
        resolved = {}
        for code, target in self.entries.items():
            if not is_known_code(code):
                raise ConfigurationError(f"unknown modification code {code} in collapse map")
            if target is not None:
                if not is_known_code(target):
                    raise ConfigurationError(f"unknown modification code {target} in collapse map")
                if code_base(code) != code_base(target):
                    raise ConfigurationError(f"cannot fold {code} into {target}, different canonical bases")
            seen = [code]
            while target is not None and target in self.entries:
                if target in seen:
                    raise ConfigurationError("cycle in collapse map: " + "->".join(seen + [target]))
                seen.append(target)
                target = self.entries[target]
            resolved[code] = target
        return resolved

    def __bool__(self):
        return bool(self.entries)

    def __contains__(self, code):
        return code in self.resolved

    def target(self, code):
        return self.resolved[code]

    def __repr__(self):
        return "CollapseMap(%s, policy=%s)" % (self.resolved, self.policy)


def redistribute(probabilities, removed):
    '''
    condition a probability vector on "not any of removed":
    p'_x = p_x / (1 - p_removed)
    :param probabilities: dict category -> prob
    :param removed: categories to drop
    :return: new dict over the remaining categories
    '''
    kept = {k: v for k, v in probabilities.items() if k not in removed}
    if not kept:
        return {CANONICAL: 1.0}
    mass = sum(kept.values())
    if mass <= 0:
        #nothing known about the remaining categories
        return {k: 1.0 / len(kept) for k in kept}
    return {k: v / mass for k, v in kept.items()}


def collapse_probabilities(probabilities, collapse_map):
    '''
    apply a CollapseMap to one probability vector
    :param probabilities: dict category -> prob
    :param collapse_map: CollapseMap
    :return: new dict, sums to 1
    '''
    if not collapse_map or not any(k in collapse_map for k in probabilities):
        return probabilities
    folded, removed = {}, {}
    for category, prob in probabilities.items():
        if category != CANONICAL and category in collapse_map:
            target = collapse_map.target(category)
            if target is None:
                removed[category] = prob
                continue
            folded[target] = folded.get(target, 0.0) + prob
        else:
            folded[category] = folded.get(category, 0.0) + prob
    if not removed:
        return folded
    if collapse_map.policy == TO_CANONICAL:
        folded[CANONICAL] = folded.get(CANONICAL, 0.0) + sum(removed.values())
        return folded
    folded.update(removed)
    return redistribute(folded, removed)


def combine_probabilities(probabilities, canonical_base):
    '''
    fold every modification code into one code
    named after the canonical base, e.g. C for any C modification
    '''
    combined = {CANONICAL: probabilities.get(CANONICAL, 0.0)}
    mod_mass = sum(v for k, v in probabilities.items() if k != CANONICAL)
    if len(probabilities) > 1 or CANONICAL not in probabilities:
        combined[canonical_base] = mod_mass
    return combined


def collapse_call(call, collapse_map=None, combine_mods=False):
    '''
    transform one call before aggregation, flagged
    calls pass through unchanged
    :param call: Call
    :param collapse_map: CollapseMap
    :param combine_mods: combine all codes into one
    :return: Call
    '''
    if call.is_flagged() or not call.probabilities:
        return call
    probabilities = call.probabilities
    if collapse_map:
        probabilities = collapse_probabilities(probabilities, collapse_map)
    if combine_mods:
        probabilities = combine_probabilities(probabilities, call.canonical_base)
    if probabilities is call.probabilities:
        return call
    return call.replace(probabilities=probabilities)
