"""
Transitive multiple alignment built from pairwise alignments to one reference.

Every instance is aligned independently to the same reference sequence.  The
induced multiple alignment keeps one column per reference base plus, before
each reference base, as many insertion columns as the longest insertion any
instance has at that point.  Insertions are left-aligned within their slot
and padded with '-'.
"""

import logging
from collections import Counter
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from Bio import SeqIO
from Bio.SeqRecord import SeqRecord

from .alignment import AlignmentInstance, alignment_stats, read_crossmatch
from .errors import AlignmentFormatError, RangeNotFoundError
from .matrix import ScoringMatrix, default_consensus_matrix


# Candidate order doubles as the tie-break order: first best score wins.
VOTE_BASES = ('A', 'C', 'G', 'T', 'N')
VOTE_SET = VOTE_BASES + ('-',)

DEFAULT_GAP_OPEN = -40
DEFAULT_GAP_EXT = -15

# CpG site adjustment parameters
CG_PARAM = 12
TA_PARAM = -5
CG_TRANS_PARAM = 2


class AlignedRow(NamedTuple):
    """One instance laid out in multiple alignment column coordinates."""
    name: str
    start: int  # first column (0-based, inclusive)
    end: int  # last column (0-based, inclusive)
    sequence: str

    def char_at(self, column: int) -> Optional[str]:
        if self.start <= column <= self.end:
            return self.sequence[column - self.start]
        return None


class _Placement(NamedTuple):
    name: str
    first: int
    last: int
    bases: List[str]
    insertions: Dict[int, str]


class _Layout(NamedTuple):
    gapped_reference: str
    reference_columns: List[int]
    column_to_reference: List[int]
    rows: List[AlignedRow]


def _place_instance(instance: AlignmentInstance, reference_length: int) -> _Placement:
    """Walk an instance's reference-forward alignment, collecting bases and insertions."""
    aligned_instance, aligned_reference = instance.reference_oriented()
    pos = instance.subject_start - 1
    bases: List[str] = []
    insertions: Dict[int, List[str]] = {}
    for inst_char, ref_char in zip(aligned_instance.upper(), aligned_reference):
        if ref_char == '-':
            if inst_char != '-':
                insertions.setdefault(pos, []).append(inst_char)
        else:
            bases.append(inst_char)
            pos += 1

    if pos != instance.subject_end:
        raise AlignmentFormatError(
            f"{instance.query_name}: alignment covers reference up to {pos}, "
            f"expected {instance.subject_end}")
    if instance.subject_end > reference_length:
        raise AlignmentFormatError(
            f"{instance.query_name}: subject end {instance.subject_end} exceeds "
            f"reference length {reference_length}")

    return _Placement(
        name=instance.query_name,
        first=instance.subject_start - 1,
        last=instance.subject_end - 1,
        bases=bases,
        insertions={slot: ''.join(chars) for slot, chars in insertions.items()},
    )


def ruzzo_tompa(scores: Sequence[float]) -> Tuple[List[Tuple[int, int, float]], List[float]]:
    """Find all maximal scoring subsequences (Ruzzo & Tompa, 1999).

    Args:
        scores: Per-position scores

    Returns:
        Tuple of (intervals, mask) where intervals are (start, end, score)
        with inclusive ends in left-to-right order, and mask holds each
        position's interval score (0 outside every interval).
    """
    intervals: List[List[int]] = []
    lefts: List[float] = []
    rights: List[float] = []
    k = 0
    total = 0.0
    for i, value in enumerate(scores):
        total += value
        if value <= 0:
            continue
        candidate = [i, i + 1]
        if k < len(intervals):
            intervals[k] = candidate
            lefts[k] = total - value
            rights[k] = total
        else:
            intervals.append(candidate)
            lefts.append(total - value)
            rights.append(total)
        while True:
            merge = -1
            for j in range(k - 1, -1, -1):
                if lefts[j] < lefts[k]:
                    merge = j
                    break
            if merge != -1 and rights[merge] < rights[k]:
                intervals[merge] = [intervals[merge][0], i + 1]
                rights[merge] = total
                k = merge
            else:
                k += 1
                break

    mask = [0.0] * len(scores)
    found = []
    for idx in range(k):
        start, stop = intervals[idx]
        interval_score = rights[idx] - lefts[idx]
        for j in range(start, stop):
            mask[j] = interval_score
        found.append((start, stop - 1, interval_score))
    return found, mask


class MultipleAlignment:
    """Instances aligned to a common reference, viewed as one column space."""

    def __init__(self, reference_name: str, reference_sequence: str,
                 instances: Optional[Iterable[AlignmentInstance]] = None):
        self.reference_name = reference_name
        self.reference_sequence = reference_sequence.upper()
        self._instances: List[AlignmentInstance] = []
        self._layout_cache: Optional[_Layout] = None
        for instance in instances or []:
            self.add_instance(instance)

    def __len__(self):
        return len(self._instances)

    @property
    def instances(self) -> List[AlignmentInstance]:
        return list(self._instances)

    @property
    def reference_length(self) -> int:
        return len(self.reference_sequence)

    def add_instance(self, instance: AlignmentInstance):
        """Append an instance; duplicates are the caller's concern."""
        if not instance.has_alignment:
            raise AlignmentFormatError(f"{instance.query_name}: alignment strings are required")
        self._instances.append(instance)
        self._layout_cache = None

    def set_reference(self, name: str, sequence: str):
        self.reference_name = name
        self.reference_sequence = sequence.upper()
        self._layout_cache = None

    def _layout(self) -> _Layout:
        if self._layout_cache is not None:
            return self._layout_cache

        ref_len = self.reference_length
        placements = [_place_instance(inst, ref_len) for inst in self._instances]

        slot_width = [0] * (ref_len + 1)
        for placement in placements:
            for slot, chars in placement.insertions.items():
                slot_width[slot] = max(slot_width[slot], len(chars))

        slot_start = [0] * (ref_len + 1)
        reference_columns = [0] * ref_len
        gapped = []
        column_to_reference = []
        col = 0
        for k in range(ref_len + 1):
            slot_start[k] = col
            gapped.append('-' * slot_width[k])
            column_to_reference.extend([k - 1] * slot_width[k])
            col += slot_width[k]
            if k < ref_len:
                reference_columns[k] = col
                gapped.append(self.reference_sequence[k])
                column_to_reference.append(k)
                col += 1

        rows = []
        for placement in placements:
            pieces = []
            first, last = placement.first, placement.last
            if first in placement.insertions:
                start_col = slot_start[first]
            else:
                start_col = reference_columns[first]
            for k in range(first, last + 1):
                if k > first or k in placement.insertions:
                    pieces.append(placement.insertions.get(k, '').ljust(slot_width[k], '-'))
                pieces.append(placement.bases[k - first])
            trailing = last + 1
            if trailing in placement.insertions:
                pieces.append(placement.insertions[trailing].ljust(slot_width[trailing], '-'))
            sequence = ''.join(pieces)
            rows.append(AlignedRow(placement.name, start_col, start_col + len(sequence) - 1, sequence))

        self._layout_cache = _Layout(''.join(gapped), reference_columns, column_to_reference, rows)
        logging.debug(f"Laid out {len(rows)} instances over {col} columns "
                      f"(reference {self.reference_name}, {ref_len} bp)")
        return self._layout_cache

    @property
    def gapped_reference(self) -> str:
        return self._layout().gapped_reference

    @property
    def width(self) -> int:
        return len(self._layout().gapped_reference)

    def rows(self) -> List[AlignedRow]:
        return list(self._layout().rows)

    def reference_to_column(self, position: int) -> int:
        """Column of an ungapped reference position (0-based)."""
        return self._layout().reference_columns[position]

    def column_to_reference(self, column: int) -> int:
        """Reference position of the last reference base at or before a column (-1 before the first)."""
        return self._layout().column_to_reference[column]

    def reference_columns(self) -> List[int]:
        return list(self._layout().reference_columns)

    def _column_counts(self, include_reference: bool) -> List[Counter]:
        layout = self._layout()
        counts = [Counter() for _ in range(len(layout.gapped_reference))]
        for row in layout.rows:
            for offset, char in enumerate(row.sequence):
                counts[row.start + offset][char] += 1
        if include_reference:
            for col, char in enumerate(layout.gapped_reference):
                counts[col][char] += 1
        return counts

    def consensus(self, matrix: Optional[ScoringMatrix] = None, include_reference: bool = False,
                  gapped: bool = False, cpg_adjust: bool = False) -> str:
        """Matrix-weighted column vote over every instance covering each column.

        Args:
            matrix: Scoring matrix (candidate rows vs observed columns); gap
                scores are added if the matrix has none
            include_reference: Count the reference as one more vote
            gapped: Return the column-space string including '-' columns
            cpg_adjust: Apply the CpG dinucleotide correction

        Returns:
            Consensus string.  Columns no instance covers keep the reference
            character.
        """
        matrix = matrix or default_consensus_matrix()
        if '-' not in matrix:
            matrix = matrix.with_gap_scores()

        layout = self._layout()
        calls = []
        for col, counts in enumerate(self._column_counts(include_reference)):
            if not counts:
                calls.append(layout.gapped_reference[col])
                continue
            scores = matrix.column_scores(VOTE_SET, counts)
            calls.append(VOTE_SET[int(np.argmax(scores))])

        if cpg_adjust:
            rows = list(layout.rows)
            if include_reference:
                rows.append(AlignedRow(self.reference_name, 0, len(layout.gapped_reference) - 1,
                                       layout.gapped_reference))
            _adjust_cpg_sites(calls, rows, matrix)

        result = ''.join(calls)
        return result if gapped else result.replace('-', '')

    def get_alignment_block(self, start: int, end: int) -> Tuple[str, List[str]]:
        """Reference slice and slices of every instance fully spanning columns [start, end].

        Gap characters are preserved in all slices.
        """
        layout = self._layout()
        if start < 0 or end >= len(layout.gapped_reference) or start > end:
            raise RangeNotFoundError(
                f"Block {start}-{end} outside alignment of {len(layout.gapped_reference)} columns")
        slices = [row.sequence[start - row.start:end - row.start + 1]
                  for row in layout.rows if row.start <= start and row.end >= end]
        return layout.gapped_reference[start:end + 1], slices

    def coverage(self) -> np.ndarray:
        """Number of instances spanning each column."""
        depth = np.zeros(self.width, dtype=np.int64)
        for row in self._layout().rows:
            depth[row.start:row.end + 1] += 1
        return depth

    def score_profile(self, matrix: Optional[ScoringMatrix] = None,
                      gap_open: int = DEFAULT_GAP_OPEN, gap_ext: int = DEFAULT_GAP_EXT) -> np.ndarray:
        """Average reference-vs-instance score for each column."""
        matrix = matrix or ScoringMatrix.comparison()
        layout = self._layout()
        totals = np.zeros(len(layout.gapped_reference), dtype=np.float64)
        counts = np.zeros(len(layout.gapped_reference), dtype=np.int64)
        for row in layout.rows:
            in_gap = False
            reference = layout.gapped_reference[row.start:row.end + 1]
            for offset, (inst_char, ref_char) in enumerate(zip(row.sequence, reference)):
                col = row.start + offset
                counts[col] += 1
                if (ref_char == '-') != (inst_char == '-'):
                    totals[col] += gap_ext if in_gap else gap_open
                    in_gap = True
                elif ref_char == '-':
                    continue
                else:
                    totals[col] += matrix.score(ref_char, inst_char)
                    in_gap = False
        return np.divide(totals, counts, out=np.zeros_like(totals), where=counts > 0)

    def low_scoring_columns(self, threshold: float, matrix: Optional[ScoringMatrix] = None,
                            gap_open: int = DEFAULT_GAP_OPEN,
                            gap_ext: int = DEFAULT_GAP_EXT) -> Tuple[List[Tuple[int, int]], List[float]]:
        """Find column ranges whose inverted Ruzzo-Tompa score meets the threshold.

        Returns:
            Tuple of (ranges, mask): inclusive (start, end) column ranges and
            the per-column maximal subsequence scores.
        """
        profile = self.score_profile(matrix, gap_open, gap_ext)
        _, mask = ruzzo_tompa([-value for value in profile])

        ranges = []
        range_start = -1
        for col, value in enumerate(mask):
            if value >= threshold:
                if range_start == -1:
                    range_start = col
            elif range_start != -1:
                ranges.append((range_start, col - 1))
                range_start = -1
        if range_start != -1:
            ranges.append((range_start, len(mask) - 1))
        return ranges, mask

    @classmethod
    def from_aligned_fasta(cls, source: Union[str, Iterable[SeqRecord]],
                           reference_id: Optional[str] = None) -> 'MultipleAlignment':
        """Build from a gapped FASTA alignment whose first (or named) record is the reference.

        Each row is converted back to a pairwise alignment against the
        reference, so insertion content is re-left-aligned in its slot.
        """
        records = list(SeqIO.parse(source, 'fasta')) if isinstance(source, str) else list(source)
        if not records:
            raise AlignmentFormatError("Alignment contains no sequences")

        ref_index = 0
        if reference_id is not None:
            ids = [rec.id for rec in records]
            if reference_id not in ids:
                raise AlignmentFormatError(f"Reference {reference_id} not found in alignment")
            ref_index = ids.index(reference_id)

        gapped_ref = str(records[ref_index].seq).upper().replace('.', '-')
        msa = cls(records[ref_index].id, gapped_ref.replace('-', ''))

        for i, record in enumerate(records):
            if i == ref_index:
                continue
            row = str(record.seq).upper().replace('.', '-')
            if len(row) != len(gapped_ref):
                raise AlignmentFormatError(
                    f"{record.id}: row length {len(row)} differs from reference {len(gapped_ref)}")
            instance = _row_to_instance(record.id, row, gapped_ref, msa.reference_name)
            if instance is None:
                logging.debug(f"Skipping {record.id}: no aligned reference bases")
                continue
            msa.add_instance(instance)
        return msa

    @classmethod
    def from_crossmatch(cls, path: str, reference_name: str, reference_sequence: str,
                        subject_filter: bool = True) -> 'MultipleAlignment':
        """Build from a cross_match alignment file against a single reference."""
        msa = cls(reference_name, reference_sequence)
        for instance in read_crossmatch(path):
            if subject_filter and instance.subject_name != reference_name:
                continue
            msa.add_instance(instance)
        return msa


def _row_to_instance(name: str, row: str, gapped_ref: str, reference_name: str) -> Optional[AlignmentInstance]:
    occupied = [i for i, char in enumerate(row) if char != '-']
    if not occupied:
        return None
    span_start, span_end = occupied[0], occupied[-1]

    aligned_row = []
    aligned_ref = []
    for inst_char, ref_char in zip(row[span_start:span_end + 1], gapped_ref[span_start:span_end + 1]):
        if inst_char == '-' and ref_char == '-':
            continue
        aligned_row.append(inst_char)
        aligned_ref.append(ref_char)
    aligned_row = ''.join(aligned_row)
    aligned_ref = ''.join(aligned_ref)

    ref_bases = len(aligned_ref) - aligned_ref.count('-')
    if ref_bases == 0:
        return None
    ref_before = span_start - gapped_ref[:span_start].count('-')
    ref_total = len(gapped_ref) - gapped_ref.count('-')
    query_len = len(aligned_row) - aligned_row.count('-')
    pct_sub, pct_del, pct_ins = alignment_stats(aligned_row, aligned_ref)
    return AlignmentInstance(
        score=0,
        pct_div=pct_sub,
        pct_del=pct_del,
        pct_ins=pct_ins,
        query_name=name,
        query_start=1,
        query_end=query_len,
        query_remaining=0,
        orientation='+',
        subject_name=reference_name,
        subject_start=ref_before + 1,
        subject_end=ref_before + ref_bases,
        subject_remaining=ref_total - ref_before - ref_bases,
        aligned_query=aligned_row,
        aligned_subject=aligned_ref,
    )


def _adjust_cpg_sites(calls: List[str], rows: List[AlignedRow], matrix: ScoringMatrix):
    """Call 'CG' where instance dinucleotides look like decayed CpG sites.

    TG and CA are the direct and opposite-strand products of CpG
    deamination; the dinucleotide is rewritten when its CpG-aware score
    beats the score of the current call.
    """
    length = len(calls)
    for i in range(length - 1):
        if calls[i] == '-':
            continue
        k = i + 1
        while k < length and calls[k] == '-':
            k += 1
        if k >= length:
            break
        left, right = calls[i], calls[k]
        cg_score = 0
        dn_score = 0
        for row in rows:
            hit_left = row.char_at(i)
            hit_right = row.char_at(k)
            if hit_left is None or hit_right is None:
                continue
            dn_score += matrix.score(left, hit_left) + matrix.score(right, hit_right)
            hit = hit_left + hit_right
            if hit in ('CA', 'TG'):
                cg_score += CG_PARAM
            elif hit == 'TA':
                cg_score += TA_PARAM
            elif hit in ('TC', 'TT'):
                cg_score += CG_TRANS_PARAM + matrix.score('G', hit_right)
            elif hit in ('AA', 'GA'):
                cg_score += CG_TRANS_PARAM + matrix.score('C', hit_left)
            else:
                cg_score += matrix.score('C', hit_left) + matrix.score('G', hit_right)
        if cg_score > dn_score:
            calls[i] = 'C'
            calls[k] = 'G'
