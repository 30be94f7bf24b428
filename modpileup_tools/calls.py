###################################################
#
# Script: calls.py
# Description: per read modification evidence at one reference position
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


from numbers import Integral, Real

from modpileup_tools.naming_conventions import *
from modpileup_tools.errors import MalformedCallError


class Call:
    '''
    one read's modification evidence at one aligned
    reference base. probabilities map category to probability,
    the unmodified category is CANONICAL. status flags:
    is_delete - the read has a deletion here
    is_diff - the read base is not the expected canonical base
    is_nocall - correct base but no modification tag
    flagged calls carry no probabilities
    '''
    __slots__ = ("contig", "position", "strand", "canonical_base", "probabilities",
                 "is_delete", "is_diff", "is_nocall")

    def __init__(self, contig, position, strand, canonical_base, probabilities=None,
                 is_delete=False, is_diff=False, is_nocall=False):
        self.contig = contig
        self.position = position
        self.strand = strand
        self.canonical_base = canonical_base
        self.probabilities = dict(probabilities) if probabilities else {}
        self.is_delete = is_delete
        self.is_diff = is_diff
        self.is_nocall = is_nocall

    @classmethod
    def deletion(cls, contig, position, strand, canonical_base=None):
        return cls(contig, position, strand, canonical_base, is_delete=True)

    @classmethod
    def nocall(cls, contig, position, strand, base):
        return cls(contig, position, strand, base, is_nocall=True)

    @classmethod
    def diff(cls, contig, position, strand, canonical_base):
        return cls(contig, position, strand, canonical_base, is_diff=True)

    def is_flagged(self):
        return self.is_delete or self.is_diff or self.is_nocall

    def mod_codes(self):
        '''
        :return: modification codes in the probability vector
        '''
        return [code for code in self.probabilities if code != CANONICAL]

    def dominant(self):
        '''
        highest probability category, ties go to
        canonical and then declared code order
        :return: category, probability
        '''
        best, best_prob = None, -1.0
        for category in sorted(self.probabilities, key=category_rank):
            prob = self.probabilities[category]
            if prob > best_prob:
                best, best_prob = category, prob
        return best, best_prob

    def replace(self, **kwargs):
        '''
        copy of the call with some fields changed
        :return: new Call
        '''
        fields = {name: getattr(self, name) for name in self.__slots__}
        fields.update(kwargs)
        return Call(**fields)

    def __eq__(self, other):
        if not isinstance(other, Call):
            return NotImplemented
        return all(getattr(self, name) == getattr(other, name) for name in self.__slots__)

    def __repr__(self):
        probs = COORD_SEP.join("%s=%s" % (k, "%.3f" % v if isinstance(v, Real) else v)
                               for k, v in sorted(self.probabilities.items(), key=lambda kv: str(kv[0])))
        flags = "".join(f for f, on in (("D", self.is_delete), ("X", self.is_diff), ("N", self.is_nocall)) if on)
        return TAB.join(str(x) for x in (self.contig, self.position, self.strand, self.canonical_base,
                                         probs or NO_PROBS, flags))


NO_PROBS = "."


def category_rank(category):
    '''
    declared order of a probability category,
    canonical first, unknown codes last
    '''
    if category == CANONICAL:
        return (0, 0, "")
    if category in code_order:
        return (1, code_order.index(category), "")
    return (2, 0, str(category))


def code_base(code, default=None):
    '''
    primary base a modification code belongs to
    :param code: e.g. m
    :param default: returned for codes that are not in the table (ChEBI)
    '''
    return mod_code_to_base.get(code, default)


def is_known_code(code):
    return code in mod_code_to_base or str(code).isdigit()


def validate_call(call):
    '''
    check a call is well formed, raises MalformedCallError
    with a short reason otherwise
    :param call: Call
    :return: the call
    '''
    if call.strand not in STRANDS:
        raise MalformedCallError("invalid_strand", call)
    if not isinstance(call.position, Integral) or isinstance(call.position, bool) or call.position < 0:
        raise MalformedCallError("invalid_position", call)
    n_flags = sum((bool(call.is_delete), bool(call.is_diff), bool(call.is_nocall)))
    if n_flags > 1:
        raise MalformedCallError("inconsistent_flags", call)
    if n_flags:
        if call.probabilities:
            raise MalformedCallError("inconsistent_flags", call)
        return call
    if not call.probabilities:
        raise MalformedCallError("empty_probabilities", call)
    if not isinstance(call.canonical_base, str) or len(call.canonical_base) != 1 \
            or call.canonical_base not in DNA_BASES:
        raise MalformedCallError("invalid_base", call)
    total = 0.0
    for category, prob in call.probabilities.items():
        if not isinstance(prob, Real) or isinstance(prob, bool):
            raise MalformedCallError("probability_not_a_number", call)
        if not (0.0 <= prob <= 1.0):  # also catches nan
            raise MalformedCallError("probability_out_of_range", call)
        if category != CANONICAL and code_base(category, call.canonical_base) != call.canonical_base:
            raise MalformedCallError("code_base_mismatch", call)
        total += prob
    if abs(total - 1.0) > PROB_TOLERANCE:
        raise MalformedCallError("probabilities_do_not_sum_to_one", call)
    return call
