#!/usr/bin/env python3
"""
Indel resolution for transitively aligned repeat families.

Candidate column ranges are generated either by sliding windows anchored at
every consensus position or by low scoring column detection (Ruzzo-Tompa).
Each range is evaluated by the block evaluator; accepted ranges are then
aggregated into a disjoint set of edits by tiling or clustering and applied
to the consensus from the highest start column down.
"""

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from typing import Callable, List, NamedTuple, Optional, Sequence, Tuple

from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord
from tqdm import tqdm

from . import __version__
from .blocker import evaluate_block
from .config import IndelConfig, AGGREGATION_METHODS
from .diffs import format_sequence_diff
from .errors import AlignmentFormatError, ConfigurationError
from .matrix import ScoringMatrix, load_matrix
from .msa import MultipleAlignment


ACCEPT = 'accept'
SKIP = 'skip'
DONE = 'done'


@dataclass
class CandidateRange:
    """A proposed replacement of gapped columns [start, end] by sequence.

    Attributes:
        ratio: Majority-to-consensus length copy ratio (range score for Ruzzo-Tompa)
        start: First column (0-based, inclusive)
        end: Last column (inclusive)
        sequence: Replacement sequence
        best_count: Copies supporting the majority length
        cons_count: Copies matching the current consensus length
        selected: Accepted into the tiling path (or passed evaluation)
        group: Tiling path index of the range itself or of the range it conflicted with
    """
    ratio: float
    start: int
    end: int
    sequence: str
    best_count: int = 0
    cons_count: int = 0
    selected: bool = False
    group: int = 0


class ConsensusEdit(NamedTuple):
    start: int
    end: int
    replacement: str


class IndelResolution(NamedTuple):
    """Result of resolve_indels."""
    consensus: str
    gapped_consensus: str
    columns: List[str]
    candidates: List[CandidateRange]
    audit: List[CandidateRange]
    selected: List[CandidateRange]
    applied: List[ConsensusEdit]

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def progress_disabled() -> bool:
    return logging.getLogger().getEffectiveLevel() > logging.INFO


def find_window_ranges(msa: MultipleAlignment, window_sizes: Sequence[int], copymin: int, ratio: float,
                       matrix: Optional[ScoringMatrix] = None, consensus: Optional[str] = None,
                       include_reference: bool = False) -> List[CandidateRange]:
    """Evaluate sliding windows anchored at every ungapped consensus position.

    A window of w bases starting at position i covers the columns from
    position i through i+w-1.  Windows reaching the final consensus base are
    not evaluated.  A range is emitted when the accepted majority length
    differs from the current length.
    """
    if consensus is None:
        consensus = msa.gapped_reference
    positions = [col for col, char in enumerate(consensus) if char != '-']
    last_index = len(positions) - 1

    ranges = []
    for i in tqdm(range(len(positions)), desc="Scanning windows", unit="pos", disable=progress_disabled()):
        for size in window_sizes:
            if i + size >= last_index:
                continue
            start, end = positions[i], positions[i + size - 1]
            result = evaluate_block(msa, start, end, copymin, ratio, matrix, consensus, include_reference)
            if result and result.length != result.cons_length:
                ranges.append(CandidateRange(result.ratio, start, end, result.sequence,
                                             result.best_count, result.cons_count))
    logging.debug(f"Window scan found {len(ranges)} candidate ranges")
    return ranges


def find_low_scoring_ranges(msa: MultipleAlignment, threshold: float, copymin: int, ratio: float,
                            matrix: Optional[ScoringMatrix] = None, consensus: Optional[str] = None,
                            include_reference: bool = False,
                            comparison_matrix: Optional[ScoringMatrix] = None
                            ) -> Tuple[List[CandidateRange], List[CandidateRange]]:
    """Evaluate every low scoring column range.

    Returns:
        Tuple of (candidates, audit).  The audit list holds every range
        found, with selected=True on those that passed evaluation; only those
        are returned as candidates.
    """
    column_ranges, mask = msa.low_scoring_columns(threshold, comparison_matrix)
    candidates = []
    audit = []
    for start, end in column_ranges:
        result = evaluate_block(msa, start, end, copymin, ratio, matrix, consensus, include_reference)
        entry = CandidateRange(mask[start], start, end, result.sequence,
                               result.best_count, result.cons_count, selected=bool(result))
        audit.append(entry)
        if result:
            candidates.append(entry)
    return candidates, audit


def _overlaps_with_gap(candidate: CandidateRange, accepted: CandidateRange, min_gap: int) -> bool:
    low = accepted.start - min_gap
    high = accepted.end + min_gap
    return (low <= candidate.start <= high
            or low <= candidate.end <= high
            or (candidate.start < low and candidate.end > high))


def tile_ranges(ranges: List[CandidateRange], min_gap: int = 0) -> List[CandidateRange]:
    """Greedy highest-ratio-first tiling path.

    A range is accepted unless it comes within min_gap columns of an already
    accepted range.  Every range is marked: accepted ranges get selected=True
    and their own path index in group; rejected ranges record the 1-based
    index of the accepted range they conflicted with.
    """
    path: List[CandidateRange] = []
    for candidate in sorted(ranges, key=lambda r: r.ratio, reverse=True):
        conflict = 0
        for idx, accepted in enumerate(path, 1):
            if _overlaps_with_gap(candidate, accepted, min_gap):
                conflict = idx
                break
        if conflict:
            candidate.selected = False
            candidate.group = conflict
        else:
            path.append(candidate)
            candidate.selected = True
            candidate.group = len(path)
    return path


def trim_overlaps(msa: MultipleAlignment, path: List[CandidateRange], copymin: int, ratio: float,
                  matrix: Optional[ScoringMatrix] = None, consensus: Optional[str] = None,
                  include_reference: bool = False) -> List[CandidateRange]:
    """Make a tiling path with negative min_gap disjoint.

    Ranges are visited in path order.  A range overlapping one already kept
    is cut back to its longer uncovered side and re-evaluated on the shorter
    span; it is dropped when nothing is left or the shorter span no longer
    shows a length change.
    """
    kept: List[CandidateRange] = []
    for r in path:
        start, end = r.start, r.end
        for other in kept:
            if start > other.end or end < other.start:
                continue
            left = other.start - start
            right = end - other.end
            if left >= right:
                end = other.start - 1
            else:
                start = other.end + 1
            if start > end:
                break
        if (start, end) == (r.start, r.end):
            kept.append(r)
            continue
        if start > end:
            logging.info(f"Dropping range {r.start} - {r.end}: covered by higher ratio ranges")
            continue
        result = evaluate_block(msa, start, end, copymin, ratio, matrix, consensus, include_reference)
        if not result or result.length == result.cons_length:
            logging.info(f"Dropping range {r.start} - {r.end}: no indel left in {start} - {end}")
            continue
        logging.info(f"Trimmed range {r.start} - {r.end} to {start} - {end}")
        kept.append(CandidateRange(result.ratio, start, end, result.sequence, result.best_count,
                                   result.cons_count, selected=True, group=r.group))
    return kept


def cluster_ranges(msa: MultipleAlignment, ranges: List[CandidateRange], gap_allowed_dist: int,
                   copymin: int, ratio: float, matrix: Optional[ScoringMatrix] = None,
                   consensus: Optional[str] = None, include_reference: bool = False) -> List[CandidateRange]:
    """Merge overlapping ranges while the merged span still passes evaluation.

    Ranges are walked by start column (longest first).  A range within
    gap_allowed_dist of the running cluster is merged if the union span is
    still accepted.  Otherwise the cluster is closed; ranges overlapping it
    are dropped and the next range seeds a new cluster.  Each closed cluster
    is re-evaluated once to produce its replacement sequence.
    """
    ordered = sorted(ranges, key=lambda r: (r.start, -r.end))
    clusters: List[CandidateRange] = []

    def close(start: int, end: int):
        result = evaluate_block(msa, start, end, copymin, ratio, matrix, consensus, include_reference)
        if result:
            clusters.append(CandidateRange(result.ratio, start, end, result.sequence,
                                           result.best_count, result.cons_count, selected=True))
        else:
            logging.info(f"Dropping cluster {start}-{end}: merged span no longer passes evaluation")

    idx = 0
    cluster_start: Optional[int] = None
    cluster_end = 0
    while idx < len(ordered):
        block = ordered[idx]
        if cluster_start is None:
            cluster_start, cluster_end = block.start, block.end
            idx += 1
            continue

        if block.start - gap_allowed_dist - 1 <= cluster_end:
            merged_end = max(cluster_end, block.end)
            if evaluate_block(msa, cluster_start, merged_end, copymin, ratio, matrix, consensus,
                              include_reference):
                cluster_end = merged_end
                idx += 1
                continue
            close(cluster_start, cluster_end)
            while idx < len(ordered) and ordered[idx].start <= cluster_end + gap_allowed_dist:
                idx += 1
        else:
            close(cluster_start, cluster_end)
        cluster_start = None

    if cluster_start is not None:
        close(cluster_start, cluster_end)
    return clusters


def _check_disjoint(edits: List[ConsensusEdit]):
    for prev, curr in zip(edits, edits[1:]):
        if curr.start <= prev.end:
            raise ValueError(f"Edits {prev.start}-{prev.end} and {curr.start}-{curr.end} overlap")


def apply_edits_to_columns(columns: Sequence[str], edits: Sequence[ConsensusEdit]) -> List[str]:
    """Replace column spans, keeping one cell per original column.

    The replacement goes into the first cell of its span and the remaining
    cells become empty, so column indices stay valid for the caller.
    """
    ordered = sorted(edits, key=lambda e: e.start)
    _check_disjoint(ordered)
    cells = list(columns)
    for edit in reversed(ordered):
        if edit.start < 0 or edit.end >= len(cells) or edit.start > edit.end:
            raise ValueError(f"Edit {edit.start}-{edit.end} outside {len(cells)} columns")
        cells[edit.start:edit.end + 1] = [edit.replacement] + [''] * (edit.end - edit.start)
    return cells


def apply_edits(gapped_consensus: str, edits: Sequence[ConsensusEdit]) -> str:
    """Apply disjoint edits from the highest start down and strip gaps."""
    return ''.join(apply_edits_to_columns(gapped_consensus, edits)).replace('-', '')


def column_to_position_map(gapped_consensus: str) -> List[int]:
    """1-based consensus position for each column (gap columns repeat the previous position)."""
    positions = []
    position = 0
    for char in gapped_consensus:
        if char != '-':
            position += 1
        positions.append(position)
    return positions


def log_ranges(title: str, ranges: Sequence[CandidateRange]):
    logging.info(title)
    logging.info("  Ratio   Range      Consensus")
    logging.info("  -------------------------------")
    for r in ranges:
        logging.info(f"{r.ratio:7.2f} : {r.start} - {r.end}, {r.sequence}")


def log_tiling(ranges: Sequence[CandidateRange], gapped_consensus: str, min_gap: int):
    if min_gap > 0:
        logging.info(f"Tiling Path: min separation {min_gap} bp")
    elif min_gap == 0:
        logging.info("Tiling Path: non-overlapping")
    else:
        logging.info(f"Tiling Path: max overlap {abs(min_gap)}")
    positions = column_to_position_map(gapped_consensus)
    logging.info("  Sel? Ratio  MSA_Range  Cons_Range Delta       Consensus")
    logging.info("  ---------------------------------------------------------------------")
    for r in sorted(ranges, key=lambda r: (r.group, r.start, -r.end)):
        cons_start, cons_end = positions[r.start], positions[r.end]
        delta = len(r.sequence) - (cons_end - cons_start + 1)
        mark = '*' if r.selected else ' '
        logging.info(f"  {mark} {r.ratio:7.2f} : {r.start} - {r.end}, {cons_start} - {cons_end}, "
                     f"{delta:+4d}, {r.sequence}")


def resolve_indels(msa: MultipleAlignment, config: IndelConfig, matrix: Optional[ScoringMatrix] = None,
                   consensus: Optional[str] = None,
                   decide: Optional[Callable[[CandidateRange, str], str]] = None) -> IndelResolution:
    """Find, aggregate and apply indel corrections to a gapped consensus.

    Args:
        msa: Alignment snapshot
        config: Window and aggregation settings
        matrix: Voting matrix (default: gap-scored linup)
        consensus: Gapped consensus in column space (default: msa column vote)
        decide: Optional callback(range, old_segment) returning 'accept',
            'skip' or 'done'; edits are offered from the highest start down

    Returns:
        IndelResolution with the new ungapped consensus and the audit trail
    """
    config.validate()
    if consensus is None:
        consensus = msa.consensus(matrix, include_reference=config.include_reference, gapped=True)
    if len(consensus) != msa.width:
        raise AlignmentFormatError(
            f"Consensus has {len(consensus)} columns but alignment has {msa.width}")

    audit: List[CandidateRange] = []
    if config.method == 'ruzzo_tompa':
        candidates, audit = find_low_scoring_ranges(
            msa, config.ruzzo_tompa_threshold, config.min_copy, config.min_ratio,
            matrix, consensus, config.include_reference)
        logging.info("Ruzzo-Tompa Ranges")
        for r in audit:
            mark = "\t*" if r.selected else ""
            logging.info(f"  {r.start}\t{r.end}\t{r.ratio:g}{mark}")
    else:
        candidates = find_window_ranges(msa, config.window_sizes, config.min_copy, config.min_ratio,
                                        matrix, consensus, config.include_reference)

    candidates = sorted(candidates, key=lambda r: r.ratio, reverse=True)
    log_ranges("Initial Ranges:", candidates)

    if config.aggregation == 'tile':
        selected = tile_ranges(candidates, config.min_gap)
        log_tiling(candidates, consensus, config.min_gap)
        if config.min_gap < 0:
            selected = trim_overlaps(msa, selected, config.min_copy, config.min_ratio, matrix,
                                     consensus, config.include_reference)
    else:
        selected = cluster_ranges(msa, candidates, config.gap_allowed_dist, config.min_copy,
                                  config.min_ratio, matrix, consensus, config.include_reference)
        log_ranges("Clustered Ranges:", selected)

    applied: List[ConsensusEdit] = []
    for r in sorted(selected, key=lambda r: r.start, reverse=True):
        old_segment = consensus[r.start:r.end + 1].replace('-', '')
        logging.info("Consensus Change:\n" + format_sequence_diff(old_segment, r.sequence, "   "))
        verdict = decide(r, old_segment) if decide else ACCEPT
        if verdict == DONE:
            break
        if verdict == SKIP:
            continue
        applied.append(ConsensusEdit(r.start, r.end, r.sequence))

    columns = apply_edits_to_columns(consensus, applied)
    new_consensus = ''.join(columns).replace('-', '')
    return IndelResolution(new_consensus, consensus, columns, candidates, audit, selected, applied)


def prompt_edit_decision(candidate: CandidateRange, old_segment: str,
                         input_func: Callable[[str], str] = input) -> str:
    """Ask the operator whether to keep an edit: enter keeps, s skips, d stops."""
    answer = input_func("s(kip), d(one) or press enter to keep: ").strip().lower()
    while answer not in ('', 's', 'd'):
        answer = input_func(f"Could not process {answer}. Type 's', 'd' or press enter: ").strip().lower()
    return {'': ACCEPT, 's': SKIP, 'd': DONE}[answer]


def load_alignment(path: str, reference: Optional[str] = None) -> MultipleAlignment:
    """Load an MSA from gapped FASTA, or from cross_match output plus a reference FASTA."""
    if not os.path.isfile(path) or os.path.getsize(path) == 0:
        raise ConfigurationError(f"Cannot locate file: {path}")
    with open(path, 'r') as f:
        first = next((line for line in f if line.strip()), '')
    if first.startswith('>'):
        return MultipleAlignment.from_aligned_fasta(path)

    if not reference:
        raise ConfigurationError("A --reference FASTA is required for cross_match alignment input")
    if not os.path.isfile(reference):
        raise ConfigurationError(f"Cannot locate reference file: {reference}")
    ref_record = next(SeqIO.parse(reference, 'fasta'), None)
    if ref_record is None:
        raise ConfigurationError(f"No sequences in reference file: {reference}")
    return MultipleAlignment.from_crossmatch(path, ref_record.id, str(ref_record.seq))


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="""
        Detect and correct spurious indels in a transitively aligned repeat family.

        Candidate ranges come from sliding windows (--discrete-windows or
        --window-min/--window-max) or from low scoring alignment columns
        (--ruzzo-tompa-threshold).  Accepted ranges are tiled or clustered
        into disjoint edits and applied to the alignment consensus.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('--msa', required=True,
                        help="Gapped FASTA alignment (first record is the reference) or cross_match output")
    parser.add_argument('--reference', help="Reference FASTA, required when --msa is cross_match output")
    parser.add_argument('--discrete-windows', help="Comma separated list of window sizes, e.g. 7,15,24")
    parser.add_argument('--window-min', type=int, help="Smallest window size (use with --window-max)")
    parser.add_argument('--window-max', type=int, help="Largest window size (use with --window-min)")
    parser.add_argument('--ruzzo-tompa-threshold', type=float,
                        help="Score threshold for low scoring column ranges")
    parser.add_argument('--aggregation-method', choices=AGGREGATION_METHODS, default='tile',
                        help="How to combine overlapping ranges (default: tile)")
    parser.add_argument('--min-gap', type=int, default=0,
                        help="Minimum separation between tiled ranges; negative allows overlap (default: 0)")
    parser.add_argument('--gap-allowed-dist', type=int, default=0,
                        help="Distance within which clustered ranges are merged (default: 0)")
    parser.add_argument('--min-copy', type=int, default=4,
                        help="Minimum copies with the alternative length (default: 4)")
    parser.add_argument('--min-ratio', type=float, default=2.0,
                        help="Minimum alternative to current length copy ratio (default: 2)")
    parser.add_argument('--matrix-file', help="Scoring matrix file (default: built-in linup matrix)")
    parser.add_argument('--transpose-matrix', action='store_true',
                        help="Transpose the scoring matrix before use")
    parser.add_argument('--cons', help="Write the resolved consensus to this FASTA file")
    parser.add_argument('--interactive', action='store_true', help="Confirm each edit before applying it")
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help="Logging level (default: INFO)")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point for terefine-indels."""
    args = parse_arguments(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    try:
        config = IndelConfig.from_args(args)
        config.validate()
        matrix = load_matrix(args.matrix_file, args.transpose_matrix)
        msa = load_alignment(args.msa, args.reference)
    except (ConfigurationError, AlignmentFormatError) as e:
        logging.error(str(e))
        sys.exit(1)

    consensus = msa.consensus(matrix, include_reference=config.include_reference, gapped=True)
    logging.info(f"MSA File = {args.msa}")
    logging.info(f"  - MSA Columns = {len(consensus)}")
    logging.info(f"  - MSA Consensus Length = {len(consensus.replace('-', ''))}")
    logging.info(f"Min Sequences with Alternative Length (min_copy) = {config.min_copy}")
    logging.info(f"Min Ratio of Alternative Length to Current Length Blocks (min_ratio) = {config.min_ratio}")
    logging.info(f"Aggregation Method = {config.aggregation}")
    logging.info(f"Min Gap Between Ranges = {config.min_gap}")
    logging.info(f"Method = {config.method_label}")

    decide = prompt_edit_decision if args.interactive else None
    resolution = resolve_indels(msa, config, matrix, consensus, decide)

    print(f">cons\n{resolution.consensus}\n")
    if args.cons:
        record = SeqRecord(Seq(resolution.consensus), id="cons", description="")
        SeqIO.write([record], args.cons, 'fasta')
        logging.info(f"Wrote consensus to {args.cons}")
    logging.info(f"Applied {len(resolution.applied)} of {len(resolution.selected)} selected edits")
    return 0


if __name__ == "__main__":
    sys.exit(main())
