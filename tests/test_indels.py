#!/usr/bin/env python3
"""
Tests for indel detection, range aggregation and edit application.
"""

import os
import shutil
import tempfile

import pytest

from terefine.alignment import AlignmentInstance, alignment_stats
from terefine.config import IndelConfig, parse_window_sizes
from terefine.errors import ConfigurationError
from terefine.indels import (
    ACCEPT,
    DONE,
    SKIP,
    CandidateRange,
    ConsensusEdit,
    apply_edits,
    apply_edits_to_columns,
    cluster_ranges,
    column_to_position_map,
    find_low_scoring_ranges,
    find_window_ranges,
    main,
    prompt_edit_decision,
    resolve_indels,
    tile_ranges,
    trim_overlaps,
)
from terefine.msa import MultipleAlignment


REFERENCE = "ACGTACGT"


def make_instance(name, aligned_query, aligned_subject, subject_start=1):
    q_bases = len(aligned_query) - aligned_query.count('-')
    s_bases = len(aligned_subject) - aligned_subject.count('-')
    subject_end = subject_start + s_bases - 1
    sub, dele, ins = alignment_stats(aligned_query, aligned_subject)
    return AlignmentInstance(
        score=100, pct_div=sub, pct_del=dele, pct_ins=ins,
        query_name=name, query_start=1, query_end=q_bases, query_remaining=0,
        orientation='+', subject_name="ref", subject_start=subject_start,
        subject_end=subject_end, subject_remaining=max(0, len(REFERENCE) - subject_end),
        aligned_query=aligned_query, aligned_subject=aligned_subject,
    )


def insertion_msa():
    msa = MultipleAlignment("ref", REFERENCE)
    for i in range(4):
        msa.add_instance(make_instance(f"ins{i}", "ACGTAAACGT", "ACGT--ACGT"))
    msa.add_instance(make_instance("plain", "ACGTACGT", "ACGTACGT"))
    return msa


def two_site_msa():
    """Insertions of AA after base 4 and TT after base 8 in four of five copies."""
    msa = MultipleAlignment("ref", REFERENCE * 2)
    for i in range(4):
        msa.add_instance(make_instance(f"ins{i}", "ACGTAAACGTTTACGTACGT", "ACGT--ACGT--ACGTACGT"))
    msa.add_instance(make_instance("plain", REFERENCE * 2, REFERENCE * 2))
    return msa


def candidate(ratio, start, end, sequence="A"):
    return CandidateRange(ratio, start, end, sequence)


class TestWindowRanges:
    """Tests for sliding window candidate generation."""

    def test_insertion_window_reported(self):
        """The window over reference bases 3-5 spans the AA insertion with ratio 4."""
        ranges = find_window_ranges(insertion_msa(), [3], copymin=3, ratio=2)
        spans = {(r.start, r.end): r for r in ranges}
        assert (2, 6) in spans
        hit = spans[(2, 6)]
        assert hit.ratio == 4.0
        assert hit.sequence == "GTAAA"
        assert hit.best_count == 4 and hit.cons_count == 1

    def test_windows_without_length_change_not_reported(self):
        ranges = find_window_ranges(insertion_msa(), [3], copymin=3, ratio=2)
        assert all(len(r.sequence) != 3 for r in ranges)
        assert (1, 3) not in {(r.start, r.end) for r in ranges}

    def test_windows_reaching_last_base_skipped(self):
        ranges = find_window_ranges(insertion_msa(), [3], copymin=3, ratio=2)
        assert max(r.start for r in ranges) <= 3

    def test_no_candidates_against_updated_consensus(self):
        msa = insertion_msa()
        consensus = msa.consensus(gapped=True)
        assert find_window_ranges(msa, [3, 4], copymin=3, ratio=2, consensus=consensus) == []


class TestLowScoringRanges:
    """Tests for Ruzzo-Tompa candidate generation."""

    def test_insertion_columns(self):
        candidates, audit = find_low_scoring_ranges(insertion_msa(), 10, copymin=3, ratio=2)
        assert [(c.start, c.end, c.sequence) for c in candidates] == [(4, 5, "AA")]
        assert candidates[0].ratio == pytest.approx(44.0)
        assert len(audit) == 1 and audit[0].selected

    def test_rejected_ranges_kept_in_audit(self):
        candidates, audit = find_low_scoring_ranges(insertion_msa(), 10, copymin=5, ratio=2)
        assert candidates == []
        assert len(audit) == 1 and not audit[0].selected


class TestTiling:
    """Tests for greedy tiling."""

    def test_conflicts_recorded(self):
        ranges = [candidate(3, 22, 30), candidate(5, 10, 20), candidate(4, 15, 25)]
        path = tile_ranges(ranges, min_gap=0)
        assert [(r.start, r.end) for r in path] == [(10, 20), (22, 30)]
        rejected = [r for r in ranges if not r.selected]
        assert [(r.start, r.group) for r in rejected] == [(15, 1)]

    def test_min_gap_enforced(self):
        ranges = [candidate(5, 10, 20), candidate(3, 22, 30)]
        path = tile_ranges(ranges, min_gap=2)
        assert len(path) == 1
        assert ranges[1].group == 1

    def test_containing_range_conflicts(self):
        ranges = [candidate(5, 10, 12), candidate(4, 5, 20)]
        assert len(tile_ranges(ranges)) == 1

    def test_negative_gap_allows_overlap(self):
        ranges = [candidate(5, 10, 20), candidate(4, 19, 30)]
        assert len(tile_ranges(ranges, min_gap=-2)) == 2

    def test_trim_drops_covered_range(self):
        msa = two_site_msa()
        path = [candidate(5, 0, 12), candidate(4, 2, 6)]
        kept = trim_overlaps(msa, path, copymin=3, ratio=2, consensus=msa.gapped_reference)
        assert kept == [path[0]]

    def test_trim_keeps_disjoint_ranges(self):
        msa = two_site_msa()
        path = [candidate(5, 0, 6), candidate(4, 7, 12)]
        assert trim_overlaps(msa, path, copymin=3, ratio=2, consensus=msa.gapped_reference) == path

    @pytest.mark.parametrize("min_gap", [0, 1, 3])
    def test_non_overlap_invariant(self, min_gap):
        ranges = [candidate(r, s, s + w) for r, s, w in
                  [(9, 0, 4), (8, 3, 5), (7, 9, 2), (6, 12, 6), (5, 20, 1), (4, 22, 3), (3, 30, 9)]]
        path = sorted(tile_ranges(ranges, min_gap), key=lambda r: r.start)
        for prev, curr in zip(path, path[1:]):
            assert prev.end + min_gap < curr.start


class TestClustering:
    """Tests for range clustering."""

    def test_overlapping_windows_merge(self):
        msa = insertion_msa()
        ranges = find_window_ranges(msa, [3], copymin=3, ratio=2)
        clusters = cluster_ranges(msa, ranges, 0, copymin=3, ratio=2)
        assert len(clusters) == 1
        assert (clusters[0].start, clusters[0].end) == (2, 7)
        assert clusters[0].sequence == "GTAAAC"

    def test_clusters_are_disjoint(self):
        msa = insertion_msa()
        ranges = find_window_ranges(msa, [2, 3], copymin=3, ratio=2)
        clusters = sorted(cluster_ranges(msa, ranges, 0, copymin=3, ratio=2), key=lambda r: r.start)
        for prev, curr in zip(clusters, clusters[1:]):
            assert prev.end < curr.start

    def test_failing_cluster_dropped(self):
        msa = insertion_msa()
        clusters = cluster_ranges(msa, [candidate(4.0, 0, 3)], 0, copymin=3, ratio=2)
        assert clusters == []


class TestEdits:
    """Tests for applying replacements to a gapped consensus."""

    def test_apply_from_highest_start(self):
        edits = [ConsensusEdit(1, 2, "TTT"), ConsensusEdit(5, 5, "")]
        assert apply_edits("ACGTACGT", edits) == "ATTTTAGT"

    def test_columns_keep_width(self):
        cells = apply_edits_to_columns("ACGT--ACGT", [ConsensusEdit(2, 6, "GTAAA")])
        assert len(cells) == 10
        assert ''.join(cells).replace('-', '') == "ACGTAAACGT"

    def test_replacement_length(self):
        """The replaced span has exactly the length of the replacement."""
        gapped = "ACGT--ACGT"
        edit = ConsensusEdit(2, 6, "GTAAA")
        result = apply_edits(gapped, [edit])
        prefix = gapped[:edit.start].replace('-', '')
        suffix = gapped[edit.end + 1:].replace('-', '')
        assert result.startswith(prefix) and result.endswith(suffix)
        assert len(result) - len(prefix) - len(suffix) == len(edit.replacement)

    def test_overlapping_edits_rejected(self):
        with pytest.raises(ValueError):
            apply_edits("ACGTACGT", [ConsensusEdit(1, 3, "A"), ConsensusEdit(3, 5, "C")])

    def test_edit_outside_consensus(self):
        with pytest.raises(ValueError):
            apply_edits("ACGT", [ConsensusEdit(2, 4, "A")])

    def test_position_map(self):
        assert column_to_position_map("AC--GT") == [1, 2, 2, 2, 3, 4]


class TestResolveIndels:
    """Tests for the full detection, aggregation and application pass."""

    def test_windows_restore_insertion(self):
        msa = insertion_msa()
        config = IndelConfig(discrete_windows=[3], min_copy=3, min_ratio=2)
        resolution = resolve_indels(msa, config, consensus=msa.gapped_reference)
        assert resolution.consensus == "ACGTAAACGT"
        assert resolution.changed
        assert [(e.start, e.end) for e in resolution.applied] == [(2, 6)]

    def test_cluster_aggregation(self):
        msa = insertion_msa()
        config = IndelConfig(window_min=3, window_max=3, aggregation='cluster', min_copy=3, min_ratio=2)
        resolution = resolve_indels(msa, config, consensus=msa.gapped_reference)
        assert resolution.consensus == "ACGTAAACGT"

    def test_ruzzo_tompa_method(self):
        msa = insertion_msa()
        config = IndelConfig(ruzzo_tompa_threshold=10, min_copy=3, min_ratio=2)
        resolution = resolve_indels(msa, config, consensus=msa.gapped_reference)
        assert resolution.consensus == "ACGTAAACGT"
        assert len(resolution.audit) == 1

    def test_overlapping_tiles_trimmed(self):
        """A negative min_gap lets tiles overlap; the later tile is cut back before applying."""
        msa = two_site_msa()
        config = IndelConfig(discrete_windows=[5], min_copy=3, min_ratio=2, min_gap=-1)
        resolution = resolve_indels(msa, config, consensus=msa.gapped_reference)
        assert [(e.start, e.end) for e in resolution.applied] == [(7, 12), (0, 6)]
        assert resolution.applied[0].replacement == "CGTTTA"
        assert resolution.consensus == "ACGTAAACGTTTACGTACGT"

    def test_skip_decision(self):
        msa = insertion_msa()
        config = IndelConfig(discrete_windows=[3], min_copy=3, min_ratio=2)
        resolution = resolve_indels(msa, config, consensus=msa.gapped_reference,
                                    decide=lambda r, old: SKIP)
        assert resolution.consensus == REFERENCE
        assert not resolution.changed

    def test_prompt_decision(self):
        answers = iter(["x", "s"])
        assert prompt_edit_decision(candidate(1, 0, 1), "AC", input_func=lambda _: next(answers)) == SKIP
        assert prompt_edit_decision(candidate(1, 0, 1), "AC", input_func=lambda _: "") == ACCEPT
        assert prompt_edit_decision(candidate(1, 0, 1), "AC", input_func=lambda _: "d") == DONE


class TestIndelConfig:
    """Tests for option validation."""

    def test_window_sizes(self):
        assert parse_window_sizes("7, 15,24") == [7, 15, 24]
        assert IndelConfig(window_min=3, window_max=5).window_sizes == [3, 4, 5]

    def test_bad_window_sizes(self):
        with pytest.raises(ConfigurationError):
            parse_window_sizes("7,x")

    @pytest.mark.parametrize("kwargs", [
        {},
        {'discrete_windows': [7], 'window_min': 3, 'window_max': 5},
        {'window_min': 3},
        {'discrete_windows': [7], 'ruzzo_tompa_threshold': 5.0},
        {'discrete_windows': [7], 'aggregation': 'merge'},
    ])
    def test_invalid_combinations(self, kwargs):
        with pytest.raises(ConfigurationError):
            IndelConfig(**kwargs).validate()

    def test_methods(self):
        assert IndelConfig(discrete_windows=[3]).method == 'blocker'
        assert IndelConfig(ruzzo_tompa_threshold=2.0).method == 'ruzzo_tompa'


class TestIndelsCommandLine:
    """Tests for the terefine-indels entry point."""

    @pytest.fixture
    def temp_dir(self):
        """Create temporary directory for testing."""
        test_dir = tempfile.mkdtemp(prefix='terefine_indels_test_')
        yield test_dir
        shutil.rmtree(test_dir)

    def test_aligned_fasta_input(self, temp_dir, capsys):
        msa_path = os.path.join(temp_dir, "family.fa")
        with open(msa_path, 'w') as f:
            f.write(">ref\nACGT--ACGT\n")
            for i in range(4):
                f.write(f">ins{i}\nACGTAAACGT\n")
            f.write(">plain\nACGT--ACGT\n")
        cons_path = os.path.join(temp_dir, "cons.fa")

        assert main(['--msa', msa_path, '--discrete-windows', '3', '--min-copy', '3',
                     '--cons', cons_path, '--log-level', 'WARNING']) == 0
        assert ">cons\nACGTAAACGT" in capsys.readouterr().out
        with open(cons_path) as f:
            assert f.read().split("\n")[1] == "ACGTAAACGT"

    def test_conflicting_options_exit(self, temp_dir):
        msa_path = os.path.join(temp_dir, "family.fa")
        with open(msa_path, 'w') as f:
            f.write(">ref\nACGT\n>a\nACGT\n")
        with pytest.raises(SystemExit) as excinfo:
            main(['--msa', msa_path, '--discrete-windows', '3', '--window-min', '2',
                  '--window-max', '4', '--log-level', 'CRITICAL'])
        assert excinfo.value.code == 1

    def test_crossmatch_input_requires_reference(self, temp_dir):
        path = os.path.join(temp_dir, "family.out")
        with open(path, 'w') as f:
            f.write("  300 0.00 0.00 0.00  a  1 4 (0)  ref  1 4 (0)\n")
        with pytest.raises(SystemExit):
            main(['--msa', path, '--discrete-windows', '3', '--log-level', 'CRITICAL'])
