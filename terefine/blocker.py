"""
Block evaluation: decide whether a column range carries a dominant indel.

Given a column range of a multiple alignment, the instances spanning it are
grouped by ungapped length.  If a length other than the current consensus
length is supported by enough copies, a replacement subsequence of that
length is voted from the same-length instances.
"""

import logging
from collections import Counter
from typing import NamedTuple, Optional

import numpy as np

from .matrix import ScoringMatrix, default_consensus_matrix
from .msa import MultipleAlignment, VOTE_BASES

# Empirical penalties applied when the proposed sequence is longer than the
# current consensus.
LONGER_RATIO_PENALTY = 0.5
LONGER_N_CUTOFF_DIVISOR = 4
N_RATIO_CUTOFF = 10


class BlockResult(NamedTuple):
    """Outcome of evaluating one block.  A rejected block is all zeros and falsy."""
    best_count: int = 0
    cons_count: int = 0
    sequence: str = ""
    length: int = 0
    n_count: int = 0
    second_count: int = 0
    second_length: int = 0
    cons_length: int = 0

    def __bool__(self):
        return self.best_count > 0

    @classmethod
    def rejected(cls) -> 'BlockResult':
        return cls()

    @property
    def ratio(self) -> float:
        """Ratio of majority-length copies to consensus-length copies (0.1 if none)."""
        return self.best_count / (self.cons_count if self.cons_count else 0.1)


def vote_block_sequence(rows, length: int, matrix: ScoringMatrix) -> str:
    """Column vote over equal-length ungapped rows, first best candidate wins."""
    calls = []
    for i in range(length):
        counts = Counter(row[i] for row in rows)
        scores = matrix.column_scores(VOTE_BASES, counts)
        calls.append(VOTE_BASES[int(np.argmax(scores))])
    return ''.join(calls)


def passes_acceptance(best_count: int, cons_count: int, new_length: int, n_count: int,
                      cons_length: int, copymin: int, ratio: float) -> bool:
    """Acceptance test for a length-change proposal."""
    adjusted_ratio = ratio
    n_ratio_cutoff = N_RATIO_CUTOFF
    if new_length > cons_length:
        adjusted_ratio -= LONGER_RATIO_PENALTY
        n_ratio_cutoff -= (new_length - cons_length) / LONGER_N_CUTOFF_DIVISOR
    return (best_count >= copymin
            and (cons_count == 0 or best_count / cons_count >= adjusted_ratio)
            and (n_count < 2 or new_length / n_count > n_ratio_cutoff))


def evaluate_block(msa: MultipleAlignment, start: int, end: int, copymin: int, ratio: float,
                   matrix: Optional[ScoringMatrix] = None, consensus: Optional[str] = None,
                   include_reference: bool = False) -> BlockResult:
    """Evaluate columns [start, end] for a dominant alternative length.

    Args:
        msa: Alignment snapshot
        start: First column (0-based, inclusive)
        end: Last column (inclusive)
        copymin: Minimum number of copies supporting the majority length
        ratio: Minimum majority-to-consensus-length copy ratio
        matrix: Scoring matrix for the vote (default: linup)
        consensus: Gapped consensus in the alignment's column space; the
            gapped reference is used when omitted
        include_reference: Count the reference row as one more copy

    Returns:
        BlockResult, or BlockResult.rejected() if the block fails the test
    """
    matrix = matrix or default_consensus_matrix()
    if consensus is None:
        consensus = msa.gapped_reference
    cons_length = len(consensus[start:end + 1].replace('-', ''))

    reference_slice, slices = msa.get_alignment_block(start, end)
    if include_reference:
        slices = [reference_slice] + slices
    rows = [s.replace('-', '') for s in slices]

    # Mode: the first length to reach the highest count
    histogram: Counter = Counter()
    best_length = best_count = 0
    second_length = second_count = 0
    cons_count = 0
    for row in rows:
        length = len(row)
        if length == cons_length:
            cons_count += 1
        histogram[length] += 1
        if histogram[length] > best_count:
            best_length = length
            best_count = histogram[length]
        elif histogram[length] > second_count:
            second_length = length
            second_count = histogram[length]

    same_length = [row for row in rows if len(row) == best_length]
    sequence = vote_block_sequence(same_length, best_length, matrix)
    n_count = sequence.count('N')

    if passes_acceptance(best_count, cons_count, len(sequence), n_count, cons_length, copymin, ratio):
        return BlockResult(best_count, cons_count, sequence, len(sequence), n_count,
                           second_count, second_length, cons_length)

    logging.debug(f"REJECT: {start}-{end} best_count={best_count} ({copymin}) cons_count={cons_count} "
                  f"ratio={ratio} n_count={n_count} new_length={len(sequence)} "
                  f"cons_length={cons_length} {sequence}")
    return BlockResult.rejected()
