"""Tests for read-ID extraction from alignments."""

from __future__ import annotations

import pytest

from tests.generate_test_data import make_store
from virosplit.errors import InputMissing, MalformedAlignment
from virosplit.extract import (
    count_mapped_reads,
    extract_read_ids,
    extract_read_ids_from_bam,
    is_valid_read_id,
    load_alignment_store,
)
from virosplit.models import AlignmentRecord, AlignmentStore, Coordinate, ReferenceTrack

HUMAN = ReferenceTrack.HUMAN
VIRUS = ReferenceTrack.VIRUS


class TestReadIdGrammar:
    @pytest.mark.parametrize("rid", ["r1", "SIM:S1:1101:7", "HWI-ST:1:2:3:4/1", "SRR123.45"])
    def test_valid(self, rid):
        assert is_valid_read_id(rid)

    @pytest.mark.parametrize("rid", ["", "*", "read 1", "bad@id", "x" * 255])
    def test_invalid(self, rid):
        assert not is_valid_read_id(rid)


class TestExtractFromStore:
    def test_mapped_only(self, scenario_a):
        human, virus = scenario_a
        assert extract_read_ids(human).ids == {"r1", "r2", "r3"}
        assert extract_read_ids(virus).ids == {"r2", "r4"}

    def test_size_bounded_by_store(self, scenario_a):
        for store in scenario_a:
            ids = extract_read_ids(store)
            assert len(ids) <= len(store)

    def test_equal_size_when_everything_mapped(self):
        store = make_store("S1", HUMAN, {"a": 1, "b": 2, "c": 3})
        assert len(extract_read_ids(store)) == len(store)

    def test_smaller_when_some_unmapped(self):
        store = make_store("S1", HUMAN, {"a": 1}, unmapped=["b"])
        assert len(extract_read_ids(store)) < len(store)

    def test_empty_store(self):
        ids = extract_read_ids(AlignmentStore("S1", VIRUS))
        assert len(ids) == 0
        assert ids.track is VIRUS

    def test_nothing_mapped(self):
        store = make_store("S1", VIRUS, {}, unmapped=["a", "b"])
        assert len(extract_read_ids(store)) == 0

    def test_malformed_id_raises(self):
        records = [
            AlignmentRecord("ok", True, HUMAN, Coordinate("c", 0, 50)),
            AlignmentRecord("bad id", True, HUMAN, Coordinate("c", 10, 60)),
        ]
        store = AlignmentStore.from_records("S9", HUMAN, records)
        with pytest.raises(MalformedAlignment) as info:
            extract_read_ids(store)
        assert info.value.sample_id == "S9"
        assert info.value.examples == ("bad id",)
        assert info.value.n_bad == 1


class TestExtractFromBam:
    def test_load_store(self, sample_bams):
        store = load_alignment_store(sample_bams["human_bam"], "S1", HUMAN)
        assert len(store) == sample_bams["human_records"]
        assert store.path == sample_bams["human_bam"]
        # unmapped records sort last, like samtools sort
        mapped_flags = [r.mapped for r in store]
        assert mapped_flags == sorted(mapped_flags, reverse=True)

    def test_secondary_flagged(self, sample_bams):
        store = load_alignment_store(sample_bams["human_bam"], "S1", HUMAN)
        assert sum(not r.primary for r in store) == 1

    def test_extract_matches_generated(self, sample_bams):
        for track, key in ((HUMAN, "human"), (VIRUS, "virus")):
            store = load_alignment_store(sample_bams[f"{key}_bam"], "S1", track)
            assert extract_read_ids(store).ids == sample_bams[f"{key}_ids"]

    def test_streaming_variant_agrees(self, sample_bams):
        store = load_alignment_store(sample_bams["virus_bam"], "S1", VIRUS)
        streamed = extract_read_ids_from_bam(sample_bams["virus_bam"], "S1", VIRUS)
        assert streamed == extract_read_ids(store)

    def test_count_mapped_reads(self, sample_bams):
        assert count_mapped_reads(sample_bams["human_bam"]) == len(sample_bams["human_ids"])

    def test_missing_bam(self, tmp_path):
        with pytest.raises(InputMissing):
            load_alignment_store(tmp_path / "nope.bam", "S1", HUMAN)
        with pytest.raises(InputMissing):
            extract_read_ids_from_bam(tmp_path / "nope.bam", "S1", HUMAN)


class TestCigarlessRecords:
    @pytest.fixture
    def cigarless_bam(self, tmp_path):
        from tests.generate_test_data import VIRUS_CONTIGS, write_bam

        reads = [("v:1", "HPV16", 100, 0), ("v:2", "HPV16", 200, 0), ("v:3", None, 0, 4)]
        return write_bam(tmp_path / "v.bam", VIRUS_CONTIGS, reads, no_cigar={"v:2"})

    def test_span_falls_back_to_read_length(self, cigarless_bam):
        from tests.generate_test_data import READ_LEN

        store = load_alignment_store(cigarless_bam, "S1", VIRUS)
        rec = next(r for r in store if r.read_id == "v:2")
        assert rec.mapped
        assert rec.coordinate == Coordinate("HPV16", 200, 200 + READ_LEN)

    def test_counted_as_mapped(self, cigarless_bam):
        store = load_alignment_store(cigarless_bam, "S1", VIRUS)
        assert extract_read_ids(store).ids == {"v:1", "v:2"}
        assert extract_read_ids_from_bam(cigarless_bam, "S1", VIRUS).ids == {"v:1", "v:2"}

    def test_pass1_accepts_cigarless_fragment(self, cigarless_bam, cohort):
        from virosplit.annotation import read_gtf
        from virosplit.quantify import assemble_transcripts

        store = load_alignment_store(cigarless_bam, "S1", VIRUS)
        model = assemble_transcripts(store, read_gtf(cohort["virus_gtf"]))
        assert "E6.t1" in {t.transcript_id for t in model.transcripts}


class TestSamInput:
    def test_sam_file_loads(self, sample_bams, tmp_path):
        import pysam

        sam = tmp_path / "S1.virus.sam"
        with pysam.AlignmentFile(str(sample_bams["virus_bam"]), "rb") as src, pysam.AlignmentFile(
            str(sam), "w", template=src
        ) as dst:
            for aln in src.fetch(until_eof=True):
                dst.write(aln)
        store = load_alignment_store(sam, "S1", VIRUS)
        assert len(store) == sample_bams["virus_records"]
        assert extract_read_ids_from_bam(sam, "S1", VIRUS).ids == sample_bams["virus_ids"]
        assert count_mapped_reads(sam) == len(sample_bams["virus_ids"])
