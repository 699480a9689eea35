#!/usr/bin/env python3
"""
Iterative refinement of repeat family consensus sequences.

Each iteration searches the instance pool against the current consensus
file, screens and filters the alignments, builds one induced multiple
alignment per family from that single snapshot, and replaces each family's
consensus with the column vote.  Flanking H pads attract neighbouring
sequence so consensus ends can be extended until that side is marked
finished.  Every rewrite of the consensus file first saves the previous
version under the next free numbered suffix.
"""

import argparse
import json
import logging
import os
import re
import sys
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import edlib
import numpy as np
from tqdm import tqdm

from . import __version__
from .alignment import AlignmentInstance, ranges_overlap, write_crossmatch
from .config import (AGGREGATION_METHODS, ENGINES, RefineConfig, resolve_matrix_spec,
                     write_metadata)
from .diffs import format_sequence_diff
from .errors import AlignmentFormatError, ConfigurationError, RangeNotFoundError, SearchEngineError
from .families import (PAD_CHAR, ConsensusRecord, PaddedSequence, add_pads, archive_and_write,
                       read_consensus_file)
from .indels import progress_disabled, resolve_indels
from .matrix import ScoringMatrix, default_consensus_matrix
from .msa import MultipleAlignment
from .search import SearchEngine, configure_engine
from .timing import Stopwatch


DISCARD_REASONS = ('unknown_subject', 'inconsistent_length', 'masked_run', 'high_divergence',
                   'duplicate', 'not_best', 'overlap', 'competitive', 'no_alignments')


class Decision(NamedTuple):
    """What to keep from a proposed consensus change."""
    kind: str
    start: int = 0
    end: int = 0

    @classmethod
    def accept(cls) -> 'Decision':
        return cls('accept')

    @classmethod
    def skip(cls) -> 'Decision':
        return cls('skip')

    @classmethod
    def core_only(cls) -> 'Decision':
        return cls('core')

    @classmethod
    def left_only(cls) -> 'Decision':
        return cls('left')

    @classmethod
    def right_only(cls) -> 'Decision':
        return cls('right')

    @classmethod
    def range(cls, start: int, end: int) -> 'Decision':
        """Accept the core changes attributed to old core positions start..end (1-based)."""
        return cls('range', start, end)

    @classmethod
    def done(cls) -> 'Decision':
        return cls('done')


@dataclass
class ProposedChange:
    """A new consensus split into extensions and per-position core segments.

    segments[i] is the new sequence attributed to old core base i: the base
    itself (or nothing if deleted) followed by any bases inserted after it.
    """
    old_core: str
    segments: List[str]
    left_extension: str = ""
    right_extension: str = ""

    @property
    def middle(self) -> str:
        return ''.join(self.segments)

    @property
    def new_core(self) -> str:
        return self.left_extension + self.middle + self.right_extension

    @property
    def changed(self) -> bool:
        return self.new_core != self.old_core

    def apply(self, decision: Decision) -> str:
        """Return the core sequence that results from a decision.

        Raises:
            RangeNotFoundError: If a range decision lies outside the old core
        """
        if decision.kind == 'accept':
            return self.new_core
        if decision.kind == 'core':
            return self.middle
        if decision.kind == 'left':
            return self.left_extension + self.old_core
        if decision.kind == 'right':
            return self.old_core + self.right_extension
        if decision.kind == 'range':
            start, end = decision.start, decision.end
            if start < 1 or end > len(self.old_core) or start > end:
                raise RangeNotFoundError(
                    f"Range {start}-{end} is not within the consensus (1-{len(self.old_core)})")
            return self.old_core[:start - 1] + ''.join(self.segments[start - 1:end]) + self.old_core[end:]
        return self.old_core


class BatchDecider:
    """Accepts every proposed change."""

    def decide(self, record: ConsensusRecord, change: ProposedChange) -> Decision:
        return Decision.accept()


class PromptDecider:
    """Shows each change on the terminal and asks what to keep."""

    CHOICES = "a(ccept), s(kip), c(ore only), 5 (left extension only), 3 (right extension only), r(ange), d(one)"
    RANGE_RE = re.compile(r'^\s*(\d+)\s*[-,\s]\s*(\d+)\s*$')

    def __init__(self, input_func=input, output=None):
        self.input_func = input_func
        self.output = output

    def show(self, record: ConsensusRecord, change: ProposedChange):
        out = self.output or sys.stderr
        out.write(f"\n{record.full_id}\n")
        if change.left_extension:
            out.write(f"  Left extension ({len(change.left_extension)} bp): {change.left_extension}\n")
        out.write(format_sequence_diff(change.old_core, change.middle, "  ", label="Core:"))
        if change.right_extension:
            out.write(f"  Right extension ({len(change.right_extension)} bp): {change.right_extension}\n")
        out.flush()

    def decide(self, record: ConsensusRecord, change: ProposedChange) -> Decision:
        self.show(record, change)
        while True:
            answer = self.input_func(f"{self.CHOICES} [a]: ").strip().lower()
            if answer in ('', 'a'):
                return Decision.accept()
            if answer == 's':
                return Decision.skip()
            if answer == 'c':
                return Decision.core_only()
            if answer == '5':
                return Decision.left_only()
            if answer == '3':
                return Decision.right_only()
            if answer == 'd':
                return Decision.done()
            if answer == 'r':
                m = self.RANGE_RE.match(self.input_func("Range of the current consensus (start-end, 1-based): "))
                if m:
                    return Decision.range(int(m.group(1)), int(m.group(2)))
                (self.output or sys.stderr).write("Could not read range; expected e.g. 10-25\n")
                continue
            (self.output or sys.stderr).write(f"Could not process '{answer}'\n")


@dataclass
class RefineResult:
    """Outcome of a refinement run."""
    iterations: int = 0
    converged: bool = False
    stopped_early: bool = False
    statuses: Dict[str, str] = field(default_factory=dict)
    discards: Counter = field(default_factory=Counter)
    backups: List[str] = field(default_factory=list)
    edit_distances: Dict[str, int] = field(default_factory=dict)
    elapsed: float = 0.0

    def to_dict(self) -> dict:
        return {
            "iterations": self.iterations,
            "converged": self.converged,
            "stopped_early": self.stopped_early,
            "families": self.statuses,
            "discards": {reason: self.discards.get(reason, 0) for reason in DISCARD_REASONS},
            "backups": self.backups,
            "edit_distances": self.edit_distances,
            "elapsed_seconds": round(self.elapsed, 3),
        }


def union_coverage(alignments: Sequence[AlignmentInstance], length: int) -> np.ndarray:
    """Per-position depth over a subject, counting each query once per covered position.

    Several sub-alignments from the same query contribute the union of their
    subject ranges rather than one increment each.
    """
    depth = np.zeros(length, dtype=np.int64)
    spans: Dict[str, List[Tuple[int, int]]] = defaultdict(list)
    for aln in alignments:
        spans[aln.query_name].append((aln.subject_start, aln.subject_end))
    for ranges in spans.values():
        ranges.sort()
        cur_start, cur_end = ranges[0]
        for start, end in ranges[1:]:
            if start <= cur_end + 1:
                cur_end = max(cur_end, end)
            else:
                depth[cur_start - 1:cur_end] += 1
                cur_start, cur_end = start, end
        depth[cur_start - 1:cur_end] += 1
    return depth


def prune_edges(coverage: Sequence[int], cutoff: int, min_length: int = 25) -> Tuple[int, int]:
    """Number of low coverage positions to trim from each end.

    Each round trims one position from each edge whose coverage is at or
    below cutoff, left first, as long as at least min_length positions would
    remain.

    Returns:
        Tuple of (left trim, right trim)
    """
    left = 0
    right = len(coverage) - 1
    while right - left >= min_length:
        trimmed = False
        if coverage[left] <= cutoff:
            left += 1
            trimmed = True
        if right - left >= min_length and coverage[right] <= cutoff:
            right -= 1
            trimmed = True
        if not trimmed:
            break
    return left, len(coverage) - 1 - right


def filter_divergence(alignments: List[AlignmentInstance],
                      max_divergence: float) -> Tuple[List[AlignmentInstance], List[AlignmentInstance]]:
    kept = [a for a in alignments if a.pct_div <= max_divergence]
    removed = [a for a in alignments if a.pct_div > max_divergence]
    return kept, removed


def remove_duplicates(alignments: List[AlignmentInstance]) -> Tuple[List[AlignmentInstance], List[AlignmentInstance]]:
    """Drop repeats of the same query range aligned to the same subject (first one wins)."""
    seen = set()
    kept, removed = [], []
    for aln in alignments:
        key = (aln.query_name, aln.query_start, aln.query_end, aln.subject_name)
        if key in seen:
            removed.append(aln)
        else:
            seen.add(key)
            kept.append(aln)
    return kept, removed


def best_per_query(alignments: List[AlignmentInstance]) -> Tuple[List[AlignmentInstance], List[AlignmentInstance]]:
    """Keep only the highest scoring alignment of each query (earliest on ties)."""
    best: Dict[str, AlignmentInstance] = {}
    for aln in alignments:
        current = best.get(aln.query_name)
        if current is None or aln.score > current.score:
            best[aln.query_name] = aln
    keep_ids = {id(a) for a in best.values()}
    kept = [a for a in alignments if id(a) in keep_ids]
    removed = [a for a in alignments if id(a) not in keep_ids]
    return kept, removed


def _greedy_by_score(alignments: List[AlignmentInstance], conflicts) -> Tuple[List[AlignmentInstance], List[AlignmentInstance]]:
    ordered = sorted(enumerate(alignments), key=lambda pair: (-pair[1].score, pair[0]))
    accepted: Dict[str, List[AlignmentInstance]] = defaultdict(list)
    dropped = set()
    for idx, aln in ordered:
        if any(conflicts(aln, other) for other in accepted[aln.query_name]):
            dropped.add(idx)
        else:
            accepted[aln.query_name].append(aln)
    kept = [a for i, a in enumerate(alignments) if i not in dropped]
    removed = [a for i, a in enumerate(alignments) if i in dropped]
    return kept, removed


def filter_overlaps(alignments: List[AlignmentInstance]) -> Tuple[List[AlignmentInstance], List[AlignmentInstance]]:
    """Within a family, drop alignments overlapping a higher scoring one of the same query.

    Overlap is tested on both the query range and the consensus range.
    """
    def conflicts(aln, other):
        return aln.subject_name == other.subject_name and (aln.overlaps_query(other) or aln.overlaps_subject(other))
    return _greedy_by_score(alignments, conflicts)


def competitive_assignment(alignments: List[AlignmentInstance]) -> Tuple[List[AlignmentInstance], List[AlignmentInstance]]:
    """Give each query region to the family with the highest scoring alignment."""
    def conflicts(aln, other):
        return (aln.subject_name != other.subject_name
                and ranges_overlap(aln.query_start, aln.query_end, other.query_start, other.query_end))
    return _greedy_by_score(alignments, conflicts)


def split_change(padded: PaddedSequence, cells: Sequence[str], core_columns: Sequence[int]) -> ProposedChange:
    """Split consensus column calls into extensions and per-position core segments.

    Columns before the first core base form the left extension and columns
    after the last core base the right extension, with pad markers and gaps
    removed.  A finalized side yields no extension.
    """
    first, last = core_columns[0], core_columns[-1]
    left = ''.join(cells[:first]).replace('-', '').replace(PAD_CHAR, '')
    right = ''.join(cells[last + 1:]).replace('-', '').replace(PAD_CHAR, '')
    bounds = list(core_columns[1:]) + [last + 1]
    segments = [''.join(cells[col:nxt]).replace('-', '') for col, nxt in zip(core_columns, bounds)]
    return ProposedChange(
        old_core=padded.core,
        segments=segments,
        left_extension='' if padded.left_finalized else left,
        right_extension='' if padded.right_finalized else right,
    )


def edit_distance(a: str, b: str) -> int:
    if not a or not b:
        return max(len(a), len(b))
    return edlib.align(a, b, task="distance")["editDistance"]


class ConsensusRefiner:
    """Runs the search / filter / re-call loop over a consensus file.

    Args:
        config: Run settings
        engine: Configured search engine; its query and subject are set here
        decider: Object with decide(record, change) -> Decision (default:
            prompt in interactive mode, otherwise accept everything)
        stopwatch: Caller-owned timer
        matrix: Column vote matrix (default: gap-scored linup)
    """

    def __init__(self, config: RefineConfig, engine: SearchEngine, decider=None,
                 stopwatch: Optional[Stopwatch] = None, matrix: Optional[ScoringMatrix] = None):
        self.config = config
        self.engine = engine
        if decider is None:
            decider = PromptDecider() if config.mode == 'interactive' else BatchDecider()
        self.decider = decider
        self.stopwatch = stopwatch or Stopwatch()
        self.matrix = matrix or default_consensus_matrix()
        self.records: List[ConsensusRecord] = []
        self.discards: Counter = Counter()
        self.statuses: Dict[str, str] = {}
        self.backups: List[str] = []
        self.original_cores: Dict[str, str] = {}
        self.last_alignments: List[AlignmentInstance] = []
        self._lookup: Dict[str, ConsensusRecord] = {}

    def load(self):
        cfg = self.config
        self.records = read_consensus_file(cfg.consensus_file, cfg.left_finalized, cfg.right_finalized)
        self._lookup = {}
        for record in self.records:
            self._lookup[record.full_id] = record
            self._lookup.setdefault(record.name, record)
            self.statuses[record.full_id] = 'buffer' if record.buffer else 'changing'
        self.original_cores = {r.full_id: r.core for r in self.records}
        if cfg.hpad and add_pads(self.records, cfg.hpad):
            logging.info(f"Padded families with {cfg.hpad} H on each side")
            self.persist()
        buffers = sum(1 for r in self.records if r.buffer)
        logging.info(f"Loaded {len(self.records)} families ({buffers} buffer) from {cfg.consensus_file}")

    def editable(self) -> List[ConsensusRecord]:
        return [r for r in self.records if not r.buffer and not r.stable]

    def persist(self):
        backup = archive_and_write(self.records, self.config.consensus_file)
        if backup:
            self.backups.append(backup)

    def _discard(self, reason: str, count: int = 1):
        if count:
            self.discards[reason] += count

    def search(self) -> List[AlignmentInstance]:
        """Run the engine against the current consensus file and screen the results.

        Raises:
            SearchEngineError: If the engine exits with a nonzero status
        """
        self.engine.set_query(self.config.elements_file)
        self.engine.set_subject(self.config.consensus_file)
        status, alignments = self.engine.search()
        self.stopwatch.lap('search')
        if status != 0:
            raise SearchEngineError(self.engine.last_command, status, self.engine.last_stderr)
        logging.info(f"Search returned {len(alignments)} alignments")
        return self.screen(alignments)

    def screen(self, alignments: List[AlignmentInstance]) -> List[AlignmentInstance]:
        """Exclude alignments to unknown families, with a wrong family length, or with long masked runs."""
        masked_run = re.compile(f"[NX]{{{self.config.max_masked_run + 1},}}")
        kept = []
        for aln in alignments:
            record = self._lookup.get(aln.subject_name)
            if record is None:
                self._discard('unknown_subject')
            elif aln.subject_length != record.padded.flat_length:
                logging.debug(f"{aln.query_name}: {aln.subject_name} length {aln.subject_length} "
                              f"differs from {record.padded.flat_length}")
                self._discard('inconsistent_length')
            elif masked_run.search(aln.aligned_query.upper().replace('-', '')):
                self._discard('masked_run')
            else:
                kept.append(aln)
        return kept

    def group_by_family(self, alignments: List[AlignmentInstance]) -> Dict[str, List[AlignmentInstance]]:
        groups: Dict[str, List[AlignmentInstance]] = defaultdict(list)
        for aln in alignments:
            groups[self._lookup[aln.subject_name].full_id].append(aln)
        return groups

    def prune(self, alignments: List[AlignmentInstance]) -> bool:
        """Trim low coverage consensus edges; returns True if any family was trimmed."""
        cfg = self.config
        by_family = self.group_by_family(alignments)
        trimmed = False
        for record in self.editable():
            family_alignments = by_family.get(record.full_id)
            if not family_alignments:
                continue
            padded = record.padded
            coverage = union_coverage(family_alignments, padded.flat_length)[padded.core_start:padded.core_end]
            left, right = prune_edges(coverage, cfg.prune_cutoff, cfg.min_pruned_length)
            if left or right:
                record.padded = padded.with_core(padded.core[left:len(padded.core) - right])
                logging.info(f"Pruned {record.full_id}: {left} bp from the left, {right} bp from the right "
                             f"({len(record.core)} bp remain)")
                trimmed = True
        return trimmed

    def filter(self, alignments: List[AlignmentInstance]) -> List[AlignmentInstance]:
        cfg = self.config
        alignments, removed = filter_divergence(alignments, cfg.max_divergence)
        if removed:
            divergences = [a.pct_div for a in removed]
            logging.info(f"Removed {len(removed)} alignments with divergence above {cfg.max_divergence} "
                         f"({min(divergences):.2f} - {max(divergences):.2f})")
            self._discard('high_divergence', len(removed))

        alignments, removed = remove_duplicates(alignments)
        self._discard('duplicate', len(removed))

        if cfg.only_best_alignment:
            alignments, removed = best_per_query(alignments)
            self._discard('not_best', len(removed))

        if cfg.overlap_filter:
            alignments, removed = filter_overlaps(alignments)
            self._discard('overlap', len(removed))

        if cfg.competitive and len(self.records) > 1:
            alignments, removed = competitive_assignment(alignments)
            if removed:
                logging.info(f"Competitive assignment removed {len(removed)} alignments")
            self._discard('competitive', len(removed))
        return alignments

    def propose(self, record: ConsensusRecord, alignments: List[AlignmentInstance]) -> Optional[ProposedChange]:
        """Build the family alignment and split its consensus into a proposed change."""
        if not alignments or not record.core:
            return None
        cfg = self.config
        padded = record.padded
        msa = MultipleAlignment(record.full_id, padded.to_flat(), alignments)
        gapped = msa.consensus(self.matrix, include_reference=cfg.include_reference, gapped=True,
                               cpg_adjust=cfg.cpg_adjust)
        cells: List[str] = list(gapped)
        if cfg.indels is not None:
            resolution = resolve_indels(msa, cfg.indels, self.matrix, gapped)
            if resolution.changed:
                logging.info(f"{record.full_id}: applied {len(resolution.applied)} indel corrections")
            cells = resolution.columns
        core_columns = [msa.reference_to_column(padded.core_start + i) for i in range(len(padded.core))]
        return split_change(padded, cells, core_columns)

    def run_iteration(self, iteration: int) -> Tuple[bool, bool]:
        """One search and re-call pass.

        Returns:
            Tuple of (any family changed, operator asked to stop)
        """
        cfg = self.config
        counted = Counter(self.discards)
        alignments = self.search()
        pruned = False
        if cfg.prune_cutoff is not None and self.prune(alignments):
            self.persist()
            pruned = True
            # Only the search that feeds filter() is counted
            self.discards = counted
            alignments = self.search()
        alignments = self.filter(alignments)
        self.last_alignments = alignments
        by_family = self.group_by_family(alignments)

        updated = False
        done = False
        families = self.editable()
        for record in tqdm(families, desc=f"Iteration {iteration}", unit="family", disable=progress_disabled()):
            change = self.propose(record, by_family.get(record.full_id, []))
            if change is None:
                logging.info(f"{record.full_id}: no alignments")
                self._discard('no_alignments')
                record.stable = True
                self.statuses[record.full_id] = 'no_alignments'
                continue
            if not change.changed:
                record.stable = True
                self.statuses[record.full_id] = 'stable'
                continue

            decision = self.decider.decide(record, change)
            if decision.kind == 'done':
                done = True
                break
            try:
                new_core = change.apply(decision)
            except RangeNotFoundError as e:
                logging.warning(f"{record.full_id}: {e}")
                continue
            if new_core == record.core:
                continue
            logging.info(f"{record.full_id}: {len(record.core)} bp -> {len(new_core)} bp "
                         f"(edit distance {edit_distance(record.core, new_core)})")
            logging.debug("\n" + format_sequence_diff(record.core, new_core, "  "))
            record.padded = record.padded.with_core(new_core)
            record.iterations += 1
            self.statuses[record.full_id] = 'changing'
            updated = True

        if updated:
            self.persist()
        self.stopwatch.lap('consensus')
        return pruned or updated, done

    def run(self) -> RefineResult:
        """Refine until stable, the iteration cap, the time budget or the operator stops."""
        cfg = self.config
        if not self.records:
            self.load()

        iteration = 0
        changed = False
        done = False
        while True:
            iteration += 1
            logging.info(f"Iteration {iteration}: {len(self.editable())} families to refine")
            changed, done = self.run_iteration(iteration)
            if cfg.mode == 'single' or not changed or done or not self.editable():
                break
            if cfg.mode == 'refine' and iteration >= cfg.max_iterations:
                logging.warning(f"Consensus still changing after {iteration} iterations...giving up.")
                break
            if self.stopwatch.exceeded(cfg.max_seconds):
                logging.warning(f"Time budget of {cfg.max_seconds} s used after {iteration} iterations")
                break

        result = RefineResult(
            iterations=iteration,
            converged=not changed,
            stopped_early=done,
            statuses=dict(self.statuses),
            discards=Counter(self.discards),
            backups=list(self.backups),
            edit_distances={r.full_id: edit_distance(self.original_cores[r.full_id], r.core)
                            for r in self.records if not r.buffer},
            elapsed=self.stopwatch.elapsed(),
        )
        return result

    def write_outputs(self, result: RefineResult) -> str:
        """Write the final alignment snapshot and refine_summary.json to the output directory."""
        os.makedirs(self.config.output_dir, exist_ok=True)
        with open(os.path.join(self.config.output_dir, 'refine_alignments.out'), 'w') as f:
            write_crossmatch(self.last_alignments, f)
        path = os.path.join(self.config.output_dir, 'refine_summary.json')
        with open(path, 'w') as f:
            json.dump(result.to_dict(), f, indent=2)
        return path


def log_summary(result: RefineResult):
    logging.info(f"Refinement finished after {result.iterations} iterations "
                 f"({'converged' if result.converged else 'not converged'})")
    for name, status in result.statuses.items():
        distance = result.edit_distances.get(name)
        suffix = f", {distance} edits from input" if distance else ""
        logging.info(f"  {name}: {status}{suffix}")
    total = sum(result.discards.values())
    if total:
        logging.info(f"Excluded {total} alignments or families:")
        for reason in DISCARD_REASONS:
            if result.discards.get(reason):
                logging.info(f"  {reason}: {result.discards[reason]}")


def setup_logging(log_level: str, log_file: Optional[str] = None) -> Optional[str]:
    """Setup logging configuration with optional file output."""
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        return log_file
    return None


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="""
        Refine repeat family consensus sequences against their instances.

        Instances are searched against the consensus file, filtered, and each
        family's consensus is re-called from the induced multiple alignment.
        The consensus file is rewritten in place; every previous version is
        kept as a numbered backup (consensus.fa.1, consensus.fa.2, ...).
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('-c', '--consensus', required=True,
                        help="Consensus FASTA (>name#class description), rewritten in place")
    parser.add_argument('-e', '--elements', required=True, help="FASTA of repeat instances")
    parser.add_argument('--output-dir', '-o', default='.',
                        help="Directory for metadata, summary and final alignments (default: .)")

    search = parser.add_argument_group("Search")
    search.add_argument('--engine', choices=ENGINES, default='crossmatch',
                        help="Search engine (default: crossmatch)")
    search.add_argument('--engine-path', dest='engine_dir', default=None,
                        help="Directory containing the search engine programs (default: PATH)")
    search.add_argument('--matrix', default='25p41g',
                        help="Matrix as divergence or divergence/GC, e.g. 25 or 25p41g (default: 25p41g)")
    search.add_argument('--matrix-dir', default=None,
                        help="Matrix directory holding crossmatch/ and ncbi/nt/ H-pad matrices")
    search.add_argument('-d', '--divergence-max', type=float, default=60.0,
                        help="Discard alignments above this percent divergence (default: 60)")
    search.add_argument('--min-score', type=int, default=200, help="Minimum alignment score (default: 200)")
    search.add_argument('--min-match', type=int, default=7, help="Minimum word match length (default: 7)")
    search.add_argument('-b', '--bandwidth', type=int, default=40, help="Alignment bandwidth (default: 40)")
    search.add_argument('--threads', type=int, default=1, help="Search engine threads (default: 1)")

    refine = parser.add_argument_group("Refinement")
    refine.add_argument('--refine', action='store_true', help="Iterate until the consensus stops changing")
    refine.add_argument('--max-iterations', type=int, default=5,
                        help="Iteration cap in --refine mode (default: 5)")
    refine.add_argument('--max-seconds', type=float, default=None,
                        help="Stop starting new iterations after this many seconds")
    refine.add_argument('--interactive', action='store_true', help="Review each change before applying it")
    refine.add_argument('--finished-ext', choices=['5', '3', 'b'], default=None,
                        help="Extension is finished on the 5' end, 3' end or both")
    refine.add_argument('--hpad', type=int, default=0,
                        help="Ensure this many H pads on both ends of every family on load (default: 0)")
    refine.add_argument('--prune-cutoff', type=int, default=None,
                        help="Trim consensus ends with instance coverage at or below this depth")
    refine.add_argument('--overlap-filter', action='store_true',
                        help="Drop alignments overlapping a better alignment of the same instance")
    refine.add_argument('--only-best-alignment', action='store_true',
                        help="Keep only the best alignment of each instance")
    refine.add_argument('--no-competitive', action='store_true',
                        help="Let an instance region support several families")
    refine.add_argument('--include-reference', action='store_true',
                        help="Count the current consensus as one vote")
    refine.add_argument('--cpg-adjust', action='store_true', help="Apply the CpG site correction to the vote")

    indels = parser.add_argument_group("Indel resolution")
    indels.add_argument('--resolve-indels', action='store_true',
                        help="Correct spurious indels before updating each family")
    indels.add_argument('--discrete-windows', help="Comma separated list of window sizes, e.g. 7,15,24")
    indels.add_argument('--window-min', type=int, help="Smallest window size (use with --window-max)")
    indels.add_argument('--window-max', type=int, help="Largest window size (use with --window-min)")
    indels.add_argument('--ruzzo-tompa-threshold', type=float,
                        help="Score threshold for low scoring column ranges")
    indels.add_argument('--aggregation-method', choices=AGGREGATION_METHODS, default='tile',
                        help="How to combine overlapping ranges (default: tile)")
    indels.add_argument('--min-gap', type=int, default=0, help="Minimum separation between tiled ranges")
    indels.add_argument('--gap-allowed-dist', type=int, default=0,
                        help="Distance within which clustered ranges are merged (default: 0)")
    indels.add_argument('--min-copy', type=int, default=4,
                        help="Minimum copies with the alternative length (default: 4)")
    indels.add_argument('--min-ratio', type=float, default=2.0,
                        help="Minimum alternative to current length copy ratio (default: 2)")

    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help="Logging level (default: INFO)")
    parser.add_argument('--log-file', default=None, help="Also write the log to this file")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point for terefine."""
    args = parse_arguments(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        config = RefineConfig.from_args(args)
        config.validate()
        matrix_spec = None
        if config.matrix_dir:
            matrix_spec = resolve_matrix_spec(config.matrix, config.matrix_dir, config.engine)
        else:
            logging.warning("No --matrix-dir given; using the search engine's default matrix")
        engine = configure_engine(config, matrix_spec)
    except ConfigurationError as e:
        logging.error(str(e))
        sys.exit(1)

    logging.info("=" * 80)
    logging.info("terefine consensus refinement")
    logging.info("=" * 80)
    logging.info(f"Consensus file: {config.consensus_file}")
    logging.info(f"Elements file: {config.elements_file}")
    logging.info(f"Engine: {config.engine}")
    if matrix_spec is not None:
        logging.info(f"Matrix: {matrix_spec.path} (gap init {matrix_spec.gap_init}, "
                     f"ins ext {matrix_spec.ins_gap_ext}, del ext {matrix_spec.del_gap_ext})")
    logging.info(f"Mode: {config.mode}")
    if config.indels is not None:
        logging.info(f"Indel resolution: {config.indels.method_label}")
    logging.info("=" * 80)

    write_metadata(config, __version__)
    stopwatch = Stopwatch()
    refiner = ConsensusRefiner(config, engine, stopwatch=stopwatch)
    try:
        result = refiner.run()
    except (SearchEngineError, ConfigurationError, AlignmentFormatError) as e:
        logging.error(str(e))
        sys.exit(1)

    summary_path = refiner.write_outputs(result)
    log_summary(result)
    logging.info(f"Summary written to {summary_path}")
    logging.info(f"Run time: {stopwatch.format_elapsed()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
