#!/usr/bin/env python3
"""
Tests for the consensus refinement loop.

A small in-process search engine built on edlib stands in for cross_match,
so the loop is exercised end to end against real files.
"""

import io
import json
import os
import shutil
import tempfile

import edlib
import pytest
from Bio import SeqIO

from terefine.alignment import AlignmentInstance, alignment_stats
from terefine.config import IndelConfig, RefineConfig
from terefine.errors import RangeNotFoundError, SearchEngineError
from terefine.families import PaddedSequence, read_consensus_file
from terefine.refine import (
    BatchDecider,
    ConsensusRefiner,
    Decision,
    PromptDecider,
    ProposedChange,
    best_per_query,
    competitive_assignment,
    edit_distance,
    filter_divergence,
    filter_overlaps,
    main,
    prune_edges,
    remove_duplicates,
    split_change,
    union_coverage,
)
from terefine.search import SearchEngine


CORE = "ATGGCGTACGTTAGCCTAGGATCCGATCGATTGCAAGCTTGACTGAC"
LEFT = "TTCAG"


class EdlibSearchEngine(SearchEngine):
    """Forward-strand infix search of every query against every subject."""

    program = 'edlib'

    def __init__(self, status=0, max_error=0.2):
        super().__init__()
        self.status = status
        self.max_error = max_error
        self.calls = 0

    def search(self):
        self.calls += 1
        self.last_command = [self.program, self.query, self.subject]
        if self.status:
            self.last_stderr = "simulated failure"
            return self.status, []
        subjects = [(rec.id, str(rec.seq).upper()) for rec in SeqIO.parse(self.subject, 'fasta')]
        alignments = []
        for query in SeqIO.parse(self.query, 'fasta'):
            seq = str(query.seq).upper()
            for name, target in subjects:
                aln = self._align(query.id, seq, name, target)
                if aln is not None:
                    alignments.append(aln)
        return 0, alignments

    def _align(self, query_name, query, subject_name, target):
        result = edlib.align(query, target, mode="HW", task="path",
                             additionalEqualities=[('H', base) for base in "ACGT"])
        if result["editDistance"] < 0 or result["editDistance"] > self.max_error * len(query):
            return None
        nice = edlib.getNiceAlignment(result, query, target)
        aligned_query, aligned_subject = nice["query_aligned"], nice["target_aligned"]
        query_start = 1
        while aligned_subject and aligned_subject[0] == '-':
            aligned_query, aligned_subject = aligned_query[1:], aligned_subject[1:]
            query_start += 1
        while aligned_subject and aligned_subject[-1] == '-':
            aligned_query, aligned_subject = aligned_query[:-1], aligned_subject[:-1]
        query_end = query_start + len(aligned_query) - aligned_query.count('-') - 1
        subject_start = result["locations"][0][0] + 1
        subject_end = subject_start + len(aligned_subject) - aligned_subject.count('-') - 1
        sub, dele, ins = alignment_stats(aligned_query, aligned_subject)
        return AlignmentInstance(
            score=len(query) - 2 * result["editDistance"], pct_div=sub, pct_del=dele, pct_ins=ins,
            query_name=query_name, query_start=query_start, query_end=query_end,
            query_remaining=len(query) - query_end, orientation='+',
            subject_name=subject_name, subject_start=subject_start, subject_end=subject_end,
            subject_remaining=len(target) - subject_end,
            aligned_query=aligned_query, aligned_subject=aligned_subject,
        )


class StrayHitEngine(EdlibSearchEngine):
    """Adds one alignment to a family missing from the consensus file."""

    def search(self):
        status, alignments = super().search()
        return status, alignments + [make_alignment("stray", "other", 300, 1, 10)]


class ScriptedDecider:
    """Returns a fixed sequence of decisions and records what it was shown."""

    def __init__(self, *decisions):
        self.decisions = list(decisions)
        self.seen = []

    def decide(self, record, change):
        self.seen.append((record.full_id, change))
        return self.decisions.pop(0)


def make_alignment(query_name, subject_name, score, query_start, query_end,
                   subject_start=1, subject_end=10, subject_length=10, pct_div=5.0):
    return AlignmentInstance(
        score=score, pct_div=pct_div, pct_del=0.0, pct_ins=0.0,
        query_name=query_name, query_start=query_start, query_end=query_end, query_remaining=0,
        orientation='+', subject_name=subject_name, subject_start=subject_start,
        subject_end=subject_end, subject_remaining=subject_length - subject_end,
    )


def substituted(seq, position, base):
    return seq[:position] + base + seq[position + 1:]


class TestRefinementLoop:
    """End-to-end tests of ConsensusRefiner against files on disk."""

    @pytest.fixture
    def temp_dir(self):
        """Create temporary directory for testing."""
        test_dir = tempfile.mkdtemp(prefix='terefine_refine_test_')
        yield test_dir
        shutil.rmtree(test_dir)

    def write_fasta(self, temp_dir, name, entries):
        path = os.path.join(temp_dir, name)
        with open(path, 'w') as f:
            for seq_id, seq in entries:
                f.write(f">{seq_id}\n{seq}\n")
        return path

    def make_refiner(self, temp_dir, consensi, elements, engine=None, decider=None, **settings):
        config = RefineConfig(
            consensus_file=self.write_fasta(temp_dir, "consensi.fa", consensi),
            elements_file=self.write_fasta(temp_dir, "elements.fa",
                                           [(f"copy{i}", seq) for i, seq in enumerate(elements)]),
            output_dir=os.path.join(temp_dir, "out"),
            **settings,
        )
        refiner = ConsensusRefiner(config, engine or EdlibSearchEngine(), decider=decider or BatchDecider())
        return refiner

    def read_consensi(self, path):
        return {rec.id: str(rec.seq) for rec in SeqIO.parse(path, 'fasta')}

    def test_stable_consensus_unchanged(self, temp_dir):
        """A consensus that already matches its copies is left alone."""
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [CORE] * 4, mode='refine')
        with open(refiner.config.consensus_file) as f:
            before = f.read()

        result = refiner.run()

        assert result.iterations == 1
        assert result.converged
        assert result.statuses == {"fam1#DNA": "stable"}
        assert result.backups == []
        assert not os.path.exists(refiner.config.consensus_file + ".1")
        with open(refiner.config.consensus_file) as f:
            assert f.read() == before

    def test_substitution_called_and_backed_up(self, temp_dir):
        variant = substituted(CORE, 10, 'C')
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [variant] * 4 + [CORE])

        result = refiner.run()

        path = refiner.config.consensus_file
        assert self.read_consensi(path) == {"fam1#DNA": variant}
        assert self.read_consensi(path + ".1") == {"fam1#DNA": CORE}
        assert result.backups == [path + ".1"]
        assert result.edit_distances == {"fam1#DNA": 1}
        assert not result.converged

    def test_refine_mode_runs_until_stable(self, temp_dir):
        variant = substituted(CORE, 10, 'C')
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [variant] * 4, mode='refine')

        result = refiner.run()

        assert result.iterations == 2
        assert result.converged
        assert result.statuses["fam1#DNA"] == "stable"

    def test_buffer_family_written_unchanged(self, temp_dir):
        decoy = "gggcccaaattt" * 4
        variant = substituted(CORE, 10, 'C')
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE), ("decoy#Buffer", decoy)], [variant] * 4)

        result = refiner.run()

        consensi = self.read_consensi(refiner.config.consensus_file)
        assert consensi["decoy#Buffer"] == decoy
        assert consensi["fam1#DNA"] == variant
        assert result.statuses["decoy#Buffer"] == "buffer"
        assert "decoy#Buffer" not in result.edit_distances

    def test_family_without_alignments(self, temp_dir):
        other = "CCCCGGGGAAAATTTTCCCCGGGGAAAATTTTCCCCGGGG"
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE), ("fam2#DNA", other)], [CORE] * 3)

        result = refiner.run()

        assert result.statuses == {"fam1#DNA": "stable", "fam2#DNA": "no_alignments"}
        assert result.discards["no_alignments"] == 1

    def test_edges_pruned(self, temp_dir):
        """Low coverage consensus ends are trimmed before the re-call."""
        elements = [CORE[3:]] * 6 + [CORE]
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], elements, prune_cutoff=5)

        refiner.run()

        assert refiner.records[0].core == CORE[3:]
        assert self.read_consensi(refiner.config.consensus_file) == {"fam1#DNA": CORE[3:]}
        assert refiner.engine.calls == 2

    def test_pruning_counts_screen_discards_once(self, temp_dir):
        elements = [CORE[3:]] * 6 + [CORE]
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], elements,
                                    engine=StrayHitEngine(), prune_cutoff=5)

        result = refiner.run()

        assert refiner.engine.calls == 2
        assert result.discards['unknown_subject'] == 1

    def test_pad_extension(self, temp_dir):
        """Copies reaching past the consensus end extend it into the H pads."""
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [LEFT + CORE] * 4,
                                    mode='refine', hpad=10)

        result = refiner.run()

        record = refiner.records[0]
        assert record.core == LEFT + CORE
        assert (record.padded.left_pad, record.padded.right_pad) == (10, 10)
        assert self.read_consensi(refiner.config.consensus_file) == {"fam1#DNA": "H" * 10 + LEFT + CORE + "H" * 10}
        assert result.iterations == 2
        assert len(result.backups) == 2

    def test_finished_end_not_extended(self, temp_dir):
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [LEFT + CORE] * 4,
                                    mode='refine', hpad=10, finished_ext='5')

        result = refiner.run()

        assert refiner.records[0].core == CORE
        assert result.iterations == 1
        assert result.statuses["fam1#DNA"] == "stable"

    def test_indel_resolution(self, temp_dir):
        """A dominant insertion is restored by the indel pass."""
        variant = CORE[:20] + "AA" + CORE[20:]
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [variant] * 4 + [CORE],
                                    indels=IndelConfig(discrete_windows=[5], min_copy=3))

        refiner.run()

        assert refiner.records[0].core == variant

    def test_skip_leaves_family_unchanged(self, temp_dir):
        variant = substituted(CORE, 10, 'C')
        decider = ScriptedDecider(Decision.skip())
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [variant] * 4,
                                    decider=decider, mode='interactive')

        result = refiner.run()

        assert refiner.records[0].core == CORE
        assert result.statuses["fam1#DNA"] == "changing"
        assert result.backups == []
        assert len(decider.seen) == 1

    def test_done_stops_without_applying(self, temp_dir):
        variant = substituted(CORE, 10, 'C')
        decider = ScriptedDecider(Decision.done())
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE), ("fam2#DNA", variant[::-1])],
                                    [variant] * 4 + [variant[::-1]] * 4, decider=decider, mode='interactive')

        result = refiner.run()

        assert result.stopped_early
        assert len(decider.seen) == 1
        assert result.backups == []
        assert self.read_consensi(refiner.config.consensus_file)["fam1#DNA"] == CORE

    def test_invalid_range_skips_family(self, temp_dir):
        variant = substituted(CORE, 10, 'C')
        decider = ScriptedDecider(Decision.range(5, 500))
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [variant] * 4,
                                    decider=decider, mode='interactive')

        refiner.run()

        assert refiner.records[0].core == CORE

    def test_range_decision_applied(self, temp_dir):
        variant = substituted(substituted(CORE, 10, 'C'), 30, 'A')
        decider = ScriptedDecider(Decision.range(1, 20), Decision.skip())
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [variant] * 4,
                                    decider=decider, mode='interactive')

        refiner.run()

        assert refiner.records[0].core == substituted(CORE, 10, 'C')
        assert len(decider.seen) == 2

    def test_engine_failure_raises(self, temp_dir):
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [CORE] * 4,
                                    engine=EdlibSearchEngine(status=2))
        with pytest.raises(SearchEngineError) as excinfo:
            refiner.run()
        assert excinfo.value.returncode == 2

    def test_screening(self, temp_dir):
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", "ACGTACGTAC")], [CORE], max_masked_run=3)
        refiner.load()
        good = make_alignment("q1", "fam1#DNA", 300, 1, 10)
        good.aligned_query, good.aligned_subject = "ACGTACGTAC", "ACGTACGTAC"
        masked = make_alignment("q2", "fam1", 300, 1, 10)
        masked.aligned_query, masked.aligned_subject = "ACNNNNGTAC", "ACGTACGTAC"
        unknown = make_alignment("q3", "other", 300, 1, 10)
        wrong_length = make_alignment("q4", "fam1#DNA", 300, 1, 10, subject_length=12)

        kept = refiner.screen([good, masked, unknown, wrong_length])

        assert kept == [good]
        assert refiner.discards == {'masked_run': 1, 'unknown_subject': 1, 'inconsistent_length': 1}

    def test_write_outputs(self, temp_dir):
        variant = substituted(CORE, 10, 'C')
        refiner = self.make_refiner(temp_dir, [("fam1#DNA", CORE)], [variant] * 4)

        summary_path = refiner.write_outputs(refiner.run())

        with open(summary_path) as f:
            summary = json.load(f)
        assert summary["iterations"] == 1
        assert summary["families"] == {"fam1#DNA": "changing"}
        assert summary["discards"]["duplicate"] == 0
        assert summary["backups"] == [refiner.config.consensus_file + ".1"]
        alignments_path = os.path.join(refiner.config.output_dir, "refine_alignments.out")
        with open(alignments_path) as f:
            assert f.read().count("fam1#DNA") >= 4


class TestChangeSelection:
    """Tests for splitting and partially applying consensus changes."""

    def make_change(self):
        return ProposedChange("ACGT", ["A", "", "GTT", "T"], left_extension="CC", right_extension="GG")

    def test_accept_and_parts(self):
        change = self.make_change()
        assert change.apply(Decision.accept()) == "CCAGTTTGG"
        assert change.apply(Decision.core_only()) == "AGTTT"
        assert change.apply(Decision.left_only()) == "CCACGT"
        assert change.apply(Decision.right_only()) == "ACGTGG"
        assert change.apply(Decision.skip()) == "ACGT"
        assert change.apply(Decision.done()) == "ACGT"

    def test_ranges(self):
        change = self.make_change()
        assert change.apply(Decision.range(2, 3)) == "AGTTT"
        assert change.apply(Decision.range(2, 2)) == "AGT"
        assert change.apply(Decision.range(1, 1)) == "ACGT"

    @pytest.mark.parametrize("start,end", [(0, 2), (3, 5), (3, 2)])
    def test_range_outside_core(self, start, end):
        with pytest.raises(RangeNotFoundError):
            self.make_change().apply(Decision.range(start, end))

    def test_split_change(self):
        padded = PaddedSequence("ACGT", 2, 2)
        cells = ['H', 'C', 'A', 'C', 'G', 'T', 'A', 'A', 'H']
        change = split_change(padded, cells, [2, 3, 4, 6])
        assert change.left_extension == "C"
        assert change.right_extension == "A"
        assert change.segments == ["A", "C", "GT", "A"]
        assert change.new_core == "CACGTAA"
        assert change.changed

    def test_split_change_finalized_sides(self):
        padded = PaddedSequence("ACGT", 2, 2, left_finalized=True, right_finalized=True)
        cells = ['H', 'C', 'A', '-', 'G', 'T', 'A', 'H']
        change = split_change(padded, cells, [2, 3, 4, 5])
        assert change.left_extension == "" and change.right_extension == ""
        assert change.middle == "AGT"


class TestPromptDecider:
    """Tests for the interactive review prompt."""

    def make_record(self, tmp_path):
        path = tmp_path / "consensi.fa"
        path.write_text(">fam1#DNA\nACGT\n")
        return read_consensus_file(str(path))[0]

    def run_prompt(self, tmp_path, answers):
        replies = iter(answers)
        output = io.StringIO()
        decider = PromptDecider(input_func=lambda prompt: next(replies), output=output)
        change = ProposedChange("ACGT", ["A", "", "GTT", "T"], left_extension="CC")
        return decider.decide(self.make_record(tmp_path), change), output.getvalue()

    @pytest.mark.parametrize("answer,kind", [
        ("", "accept"), ("a", "accept"), ("s", "skip"), ("c", "core"),
        ("5", "left"), ("3", "right"), ("D", "done"),
    ])
    def test_single_key_answers(self, tmp_path, answer, kind):
        decision, _ = self.run_prompt(tmp_path, [answer])
        assert decision.kind == kind

    def test_range_answer_after_bad_input(self, tmp_path):
        decision, output = self.run_prompt(tmp_path, ["x", "r", "abc", "r", "2-3"])
        assert decision == Decision.range(2, 3)
        assert "Could not process 'x'" in output
        assert "Could not read range" in output

    def test_change_shown(self, tmp_path):
        _, output = self.run_prompt(tmp_path, ["s"])
        assert "fam1#DNA" in output
        assert "Left extension (2 bp): CC" in output
        assert "Orig: ACGT" in output


class TestAlignmentFilters:
    """Tests for the per-iteration alignment filters."""

    def test_divergence(self):
        low = make_alignment("q1", "f", 300, 1, 10, pct_div=10.0)
        high = make_alignment("q2", "f", 300, 1, 10, pct_div=40.0)
        assert filter_divergence([low, high], 30) == ([low], [high])

    def test_duplicates(self):
        a = make_alignment("q1", "f", 300, 1, 10)
        b = make_alignment("q1", "f", 250, 1, 10, subject_start=2, subject_end=10)
        c = make_alignment("q1", "g", 300, 1, 10)
        kept, removed = remove_duplicates([a, b, c])
        assert kept == [a, c] and removed == [b]

    def test_best_per_query(self):
        a = make_alignment("q1", "f", 300, 1, 10)
        b = make_alignment("q1", "g", 400, 20, 30)
        c = make_alignment("q2", "f", 100, 1, 10)
        kept, removed = best_per_query([a, b, c])
        assert kept == [b, c] and removed == [a]

    def test_overlap_filter(self):
        best = make_alignment("q1", "f", 500, 1, 100, subject_start=1, subject_end=10)
        query_overlap = make_alignment("q1", "f", 300, 50, 150, subject_start=1, subject_end=10)
        subject_overlap = make_alignment("q1", "f", 200, 300, 400, subject_start=5, subject_end=10)
        other_family = make_alignment("q1", "g", 200, 1, 100)
        kept, removed = filter_overlaps([query_overlap, best, subject_overlap, other_family])
        assert kept == [best, other_family]
        assert removed == [query_overlap, subject_overlap]

    def test_competitive_assignment(self):
        winner = make_alignment("q1", "f", 500, 1, 100)
        loser = make_alignment("q1", "g", 300, 50, 150)
        elsewhere = make_alignment("q1", "g", 300, 200, 300)
        same_family = make_alignment("q1", "f", 200, 80, 120, subject_start=1, subject_end=5)
        kept, removed = competitive_assignment([loser, winner, elsewhere, same_family])
        assert kept == [winner, elsewhere, same_family]
        assert removed == [loser]


class TestCoverageAndPruning:
    """Tests for edge coverage and pruning."""

    def test_union_coverage_counts_query_once(self):
        alignments = [
            make_alignment("q1", "f", 300, 1, 5, subject_start=1, subject_end=5),
            make_alignment("q1", "f", 300, 6, 10, subject_start=3, subject_end=8),
            make_alignment("q2", "f", 300, 1, 2, subject_start=9, subject_end=10),
        ]
        assert list(union_coverage(alignments, 10)) == [1, 1, 1, 1, 1, 1, 1, 1, 1, 1]

    def test_prune_edges(self):
        assert prune_edges([2, 3, 4, 6] + [6] * 36, 5) == (3, 0)
        assert prune_edges([6] * 36 + [1, 1], 5) == (0, 2)

    def test_prune_respects_minimum_length(self):
        assert prune_edges([1] * 10, 5) == (0, 0)
        assert prune_edges([1] * 30, 5) == (3, 2)

    def test_edit_distance(self):
        assert edit_distance("ACGT", "ACGT") == 0
        assert edit_distance("ACGT", "AGT") == 1
        assert edit_distance("", "ACG") == 3


class TestCommandLine:
    """Tests for the terefine entry point."""

    def test_missing_inputs_exit(self, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main(['-c', str(tmp_path / "none.fa"), '-e', str(tmp_path / "none2.fa"),
                  '-o', str(tmp_path), '--log-level', 'CRITICAL'])
        assert excinfo.value.code == 1

    def test_bad_matrix_exit(self, tmp_path):
        consensi = tmp_path / "consensi.fa"
        consensi.write_text(">a\nACGT\n")
        with pytest.raises(SystemExit) as excinfo:
            main(['-c', str(consensi), '-e', str(consensi), '--matrix', '26p41g',
                  '--matrix-dir', str(tmp_path), '-o', str(tmp_path), '--log-level', 'CRITICAL'])
        assert excinfo.value.code == 1
