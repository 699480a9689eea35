"""
Nucleotide substitution matrices used for column voting and alignment scoring.

Matrices are stored as a fixed two-dimensional integer array indexed by an
enumerated alphabet.  Rows correspond to the first (consensus/candidate) base
and columns to the second (observed) base.  Characters outside the alphabet
are scored as if they were 'N'.
"""

import logging
import os
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from .errors import MatrixFormatError


UNKNOWN_BASE = 'N'

# AT-biased "linup" matrix used to call consensus bases.
LINUP_ALPHABET = ('A', 'R', 'G', 'C', 'Y', 'T', 'K', 'M', 'S', 'W',
                  'N', 'X', 'Z', 'V', 'H', 'D', 'B')
LINUP_SCORES = [
    [9, 0, -8, -15, -16, -17, -13, -3, -11, -4, -2, -7, -3, -3, -3, -3, -3],
    [2, 1, 1, -15, -15, -16, -7, -6, -6, -7, -2, -7, -3, -3, -3, -3, -3],
    [-4, 3, 10, -14, -14, -15, -2, -9, -2, -9, -2, -7, -3, -3, -3, -3, -3],
    [-15, -14, -14, 10, 3, -4, -9, -2, -2, -9, -2, -7, -3, -3, -3, -3, -3],
    [-16, -15, -15, 1, 1, 2, -6, -7, -6, -7, -2, -7, -3, -3, -3, -3, -3],
    [-17, -16, -15, -8, 0, 9, -3, -13, -11, -4, -2, -7, -3, -3, -3, -3, -3],
    [-11, -6, -2, -11, -7, -3, -2, -11, -6, -7, -2, -7, -3, -3, -3, -3, -3],
    [-3, -7, -11, -2, -6, -11, -11, -2, -6, -7, -2, -7, -3, -3, -3, -3, -3],
    [-9, -5, -2, -2, -5, -9, -5, -5, -2, -9, -2, -7, -3, -3, -3, -3, -3],
    [-4, -8, -11, -11, -8, -4, -8, -8, -11, -4, -2, -7, -3, -3, -3, -3, -3],
    [-2, -2, -2, -2, -2, -2, -2, -2, -2, -2, -1, -7, -3, -3, -3, -3, -3],
    [-7, -7, -7, -7, -7, -7, -7, -7, -7, -7, -7, -7, -3, -3, -3, -3, -3],
    [-3] * 17,
    [-3] * 17,
    [-3] * 17,
    [-3] * 17,
    [-3] * 17,
]

# Comparison matrix (average +10 diagonal) used for column quality profiles.
# Rows are the consensus base; a few ambiguity entries differ from their transpose.
COMPARISON_ALPHABET = ('A', 'R', 'G', 'C', 'Y', 'T', 'K', 'M', 'S', 'W',
                       'N', 'V', 'H', 'D', 'B')
COMPARISON_SCORES = [
    [9, 1, -6, -15, -16, -17, -12, -2, -10, -4, -1, -2, -2, -2, -2],
    [1, 1, 1, -15, -15, -16, -6, -6, -6, -7, -1, -2, -2, -2, -2],
    [-6, 1, 10, -15, -15, -15, -2, -10, -2, -10, -1, -2, -2, -2, -2],
    [-15, -15, -15, 10, 2, -6, -9, -2, -2, -9, -1, -2, -2, -2, -2],
    [-16, -15, -15, 1, 1, 1, -6, -7, -7, -7, -1, -2, -2, -2, -2],
    [-17, -16, -15, -6, 1, 9, -2, -12, -11, -4, -1, -2, -2, -2, -2],
    [-12, -6, -2, -11, -6, -2, -2, -11, -7, -7, -1, -2, -2, -2, -2],
    [-2, -6, -10, -2, -7, -12, -11, -2, -7, -7, -1, -2, -2, -2, -2],
    [-10, -6, -2, -2, -7, -11, -7, -7, -2, -10, -1, -2, -2, -2, -2],
    [-4, -7, -10, -11, -7, -4, -7, -7, -10, -4, -1, -2, -2, -2, -2],
    [-1, -1, -1, -1, -1, -1, -1, -1, -1, -1, -1, -2, -2, -2, -2],
    [-2] * 15,
    [-2] * 15,
    [-2] * 15,
    [-2] * 15,
]


class ScoringMatrix:
    """Integer substitution scores over an enumerated nucleotide alphabet."""

    def __init__(self, alphabet: Sequence[str], scores, name: str = "custom"):
        self.alphabet = tuple(base.upper() for base in alphabet)
        self.scores = np.asarray(scores, dtype=np.int64)
        self.name = name

        if self.scores.shape != (len(self.alphabet), len(self.alphabet)):
            raise MatrixFormatError(
                f"Matrix {name} has shape {self.scores.shape} but alphabet has {len(self.alphabet)} symbols")
        if len(set(self.alphabet)) != len(self.alphabet):
            raise MatrixFormatError(f"Matrix {name} has duplicate alphabet symbols")

        self._index = {base: i for i, base in enumerate(self.alphabet)}
        self._unknown = self._index.get(UNKNOWN_BASE)

    def __repr__(self):
        return f"ScoringMatrix(name={self.name!r}, alphabet={''.join(self.alphabet)!r})"

    def __contains__(self, base: str) -> bool:
        return base.upper() in self._index

    def index(self, base: str) -> int:
        """Return the row/column index for a base, falling back to 'N'."""
        idx = self._index.get(base.upper())
        if idx is None:
            if self._unknown is None:
                raise KeyError(f"Base '{base}' not in matrix {self.name} and no 'N' fallback")
            return self._unknown
        return idx

    def score(self, a: str, b: str) -> int:
        """Score base a (row) against base b (column)."""
        return int(self.scores[self.index(a), self.index(b)])

    def transpose(self) -> 'ScoringMatrix':
        """Swap row and column roles."""
        return ScoringMatrix(self.alphabet, self.scores.T.copy(), name=f"{self.name}^T")

    def is_symmetric(self) -> bool:
        return bool(np.array_equal(self.scores, self.scores.T))

    def with_gap_scores(self, gap: int = -6, gap_gap: int = 3) -> 'ScoringMatrix':
        """Return a copy with an extra '-' row and column.

        Args:
            gap: Score of a gap against any base (either direction)
            gap_gap: Score of a gap against a gap

        Returns:
            New ScoringMatrix whose alphabet ends with '-'
        """
        if '-' in self._index:
            return self
        size = len(self.alphabet)
        extended = np.full((size + 1, size + 1), gap, dtype=np.int64)
        extended[:size, :size] = self.scores
        extended[size, size] = gap_gap
        return ScoringMatrix(self.alphabet + ('-',), extended, name=self.name)

    def column_scores(self, candidates: Iterable[str], observed_counts: Dict[str, int]) -> List[int]:
        """Sum candidate-vs-observed scores weighted by observation counts."""
        obs_idx = [self.index(base) for base in observed_counts]
        weights = np.array(list(observed_counts.values()), dtype=np.int64)
        totals = []
        for cand in candidates:
            row = self.scores[self.index(cand)]
            totals.append(int(np.dot(row[obs_idx], weights)) if obs_idx else 0)
        return totals

    @classmethod
    def parse(cls, text: str, name: str = "custom") -> 'ScoringMatrix':
        """Parse a whitespace-delimited matrix table.

        The first non-comment row lists the column bases.  Subsequent rows are
        either "base score..." or bare score rows, in which case the row labels
        are taken from the header in order.  Lines starting with '#' and
        'FREQS' lines are ignored.
        """
        header: Optional[List[str]] = None
        rows: Dict[str, List[int]] = {}
        row_order: List[str] = []

        for line_num, raw in enumerate(text.splitlines(), 1):
            line = raw.strip()
            if not line or line.startswith('#') or line.upper().startswith('FREQS'):
                continue
            fields = line.split()
            if header is None:
                if any(_is_number(f) for f in fields):
                    raise MatrixFormatError(f"{name}: line {line_num}: expected header row of bases")
                header = [f.upper() for f in fields]
                continue

            if _is_number(fields[0]):
                if len(row_order) >= len(header):
                    raise MatrixFormatError(f"{name}: line {line_num}: more rows than header columns")
                label = header[len(row_order)]
                values = fields
            else:
                label = fields[0].upper()
                values = fields[1:]

            if len(values) != len(header):
                raise MatrixFormatError(
                    f"{name}: line {line_num}: expected {len(header)} scores, found {len(values)}")
            try:
                rows[label] = [int(float(v)) for v in values]
            except ValueError as e:
                raise MatrixFormatError(f"{name}: line {line_num}: {e}") from e
            row_order.append(label)

        if header is None or not rows:
            raise MatrixFormatError(f"{name}: no matrix rows found")

        missing = [base for base in header if base not in rows]
        if missing:
            raise MatrixFormatError(f"{name}: missing rows for {', '.join(missing)}")

        scores = [rows[base] for base in header]
        return cls(header, scores, name=name)

    @classmethod
    def from_file(cls, path: str) -> 'ScoringMatrix':
        """Load a matrix table from disk."""
        try:
            with open(path, 'r') as f:
                text = f.read()
        except OSError as e:
            raise MatrixFormatError(f"Cannot read matrix file {path}: {e}") from e
        matrix = cls.parse(text, name=os.path.basename(path))
        logging.debug(f"Loaded {len(matrix.alphabet)}x{len(matrix.alphabet)} matrix from {path}")
        return matrix

    @classmethod
    def linup(cls) -> 'ScoringMatrix':
        return cls(LINUP_ALPHABET, LINUP_SCORES, name="linup")

    @classmethod
    def comparison(cls) -> 'ScoringMatrix':
        return cls(COMPARISON_ALPHABET, COMPARISON_SCORES, name="comparison")


def _is_number(token: str) -> bool:
    try:
        float(token)
    except ValueError:
        return False
    return True


def default_consensus_matrix() -> ScoringMatrix:
    """Linup matrix extended with gap scores, as used for column voting."""
    return ScoringMatrix.linup().with_gap_scores()


def load_matrix(path: Optional[str], transpose: bool = False) -> ScoringMatrix:
    """Load a matrix file or fall back to the gap-scored linup matrix."""
    matrix = ScoringMatrix.from_file(path) if path else default_consensus_matrix()
    if transpose:
        matrix = matrix.transpose()
    return matrix
