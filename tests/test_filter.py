"""Tests for shared-read filtering."""

from __future__ import annotations

import pytest

from tests.generate_test_data import make_store
from virosplit.extract import extract_read_ids, extract_read_ids_from_bam, load_alignment_store
from virosplit.filter import filter_alignment_store, filter_sample, write_filtered_bam
from virosplit.models import ReferenceTrack, SharedReadSet
from virosplit.resolve import resolve_shared_reads

HUMAN = ReferenceTrack.HUMAN
VIRUS = ReferenceTrack.VIRUS


class TestFilterStore:
    def test_scenario_a(self, scenario_a):
        human, virus = scenario_a
        shared = resolve_shared_reads(extract_read_ids(human), extract_read_ids(virus))
        fh, fv = filter_sample(human, virus, shared)
        assert "r2" not in fh and "r2" not in fv
        assert extract_read_ids(fh).ids == {"r1", "r3"}
        assert extract_read_ids(fv).ids == {"r4"}
        # unmapped records are kept
        assert "r4" in fh

    def test_scenario_b_nothing_removed(self):
        human = make_store("S2", HUMAN, {"r1": 1, "r2": 2})
        virus = make_store("S2", VIRUS, {}, unmapped=["r1", "r2"])
        shared = resolve_shared_reads(extract_read_ids(human), extract_read_ids(virus))
        fh, fv = filter_sample(human, virus, shared)
        assert fh.records == human.records
        assert fv.records == virus.records
        assert fh.removed == fv.removed == 0

    def test_filtered_tracks_are_disjoint(self, scenario_a):
        human, virus = scenario_a
        shared = resolve_shared_reads(extract_read_ids(human), extract_read_ids(virus))
        fh, fv = filter_sample(human, virus, shared)
        assert extract_read_ids(fh).ids.isdisjoint(extract_read_ids(fv).ids)

    def test_size_equation(self, scenario_a):
        human, _ = scenario_a
        shared = SharedReadSet("S1", {"r2", "r4"})
        filtered = filter_alignment_store(human, shared)
        removed = sum(1 for r in human if r.read_id in shared)
        assert len(filtered) == len(human) - removed
        assert filtered.removed == removed

    def test_idempotent(self, scenario_a):
        human, _ = scenario_a
        shared = SharedReadSet("S1", {"r2"})
        once = filter_alignment_store(human, shared)
        twice = filter_alignment_store(once, shared)
        assert once == twice
        assert twice.removed == 0

    def test_order_preserved(self):
        store = make_store("S1", HUMAN, {"a": 10, "b": 20, "c": 30, "d": 40})
        filtered = filter_alignment_store(store, SharedReadSet("S1", {"b"}))
        assert [r.read_id for r in filtered] == ["a", "c", "d"]

    def test_sample_mismatch(self, scenario_a):
        human, _ = scenario_a
        with pytest.raises(ValueError):
            filter_alignment_store(human, SharedReadSet("S2", {"r1"}))

    def test_same_track_pair_rejected(self, scenario_a):
        human, _ = scenario_a
        with pytest.raises(ValueError):
            filter_sample(human, human, SharedReadSet("S1"))


class TestFilterBam:
    def test_write_filtered_bam(self, sample_bams, tmp_path):
        shared = SharedReadSet("S1", sample_bams["shared_ids"])
        dst = tmp_path / "S1.filtered.bam"
        kept, removed = write_filtered_bam(sample_bams["human_bam"], shared, dst)
        # every shared read has one primary record, one of them also a secondary
        assert removed == len(shared) + 1
        assert kept + removed == sample_bams["human_records"]
        assert dst.exists()
        assert extract_read_ids_from_bam(dst, "S1", HUMAN).ids.isdisjoint(shared.ids)

    def test_filter_sample_writes_bams(self, sample_bams, tmp_path):
        human = load_alignment_store(sample_bams["human_bam"], "S1", HUMAN)
        virus = load_alignment_store(sample_bams["virus_bam"], "S1", VIRUS)
        shared = resolve_shared_reads(extract_read_ids(human), extract_read_ids(virus))
        out_dirs = {HUMAN: tmp_path / "human", VIRUS: tmp_path / "virus"}
        fh, fv = filter_sample(human, virus, shared, out_dirs)
        assert fh.path == tmp_path / "human" / "S1.filtered.bam"
        assert fv.path.exists()
        from_bam = load_alignment_store(fv.path, "S1", VIRUS)
        assert from_bam.records == fv.records

    def test_rerun_replaces_earlier_output(self, sample_bams, tmp_path):
        human = load_alignment_store(sample_bams["human_bam"], "S1", HUMAN)
        virus = load_alignment_store(sample_bams["virus_bam"], "S1", VIRUS)
        out_dirs = {HUMAN: tmp_path / "human", VIRUS: tmp_path / "virus"}

        filter_sample(human, virus, SharedReadSet("S1"), out_dirs)
        shared = resolve_shared_reads(extract_read_ids(human), extract_read_ids(virus))
        fh, fv = filter_sample(human, virus, shared, out_dirs)

        for filtered, track in ((fh, HUMAN), (fv, VIRUS)):
            on_disk = load_alignment_store(filtered.path, "S1", track)
            assert on_disk.records == filtered.records
            assert extract_read_ids(on_disk).ids.isdisjoint(shared.ids)
        assert (tmp_path / "human" / "S1.filtered.bam.bai").exists()
        assert not list((tmp_path / "human").glob(".*partial"))

    def test_sam_source(self, sample_bams, tmp_path):
        import pysam

        sam = tmp_path / "S1.human.sam"
        with pysam.AlignmentFile(str(sample_bams["human_bam"]), "rb") as src, pysam.AlignmentFile(
            str(sam), "w", template=src
        ) as dst:
            for aln in src.fetch(until_eof=True):
                dst.write(aln)
        shared = SharedReadSet("S1", sample_bams["shared_ids"])
        kept, removed = write_filtered_bam(sam, shared, tmp_path / "S1.filtered.bam")
        assert kept + removed == sample_bams["human_records"]
        assert removed == len(shared) + 1
