"""Tests for shared-read resolution."""

from __future__ import annotations

import pytest

from virosplit.errors import ReferenceMismatch
from virosplit.models import ReadIdSet, ReferenceTrack
from virosplit.resolve import check_read_id_compatibility, read_id_shape, resolve_shared_reads

HUMAN = ReferenceTrack.HUMAN
VIRUS = ReferenceTrack.VIRUS


def _ids(track, *ids, sample="S1"):
    return ReadIdSet(sample, track, frozenset(ids))


class TestResolve:
    def test_scenario_a(self):
        shared = resolve_shared_reads(_ids(HUMAN, "r1", "r2", "r3"), _ids(VIRUS, "r2", "r4"))
        assert shared.ids == {"r2"}
        assert shared.sample_id == "S1"

    def test_symmetric(self):
        a = _ids(HUMAN, "r1", "r2", "r3")
        b = _ids(VIRUS, "r2", "r3", "r9")
        assert resolve_shared_reads(a, b) == resolve_shared_reads(b, a)

    def test_scenario_b_empty_virus(self):
        shared = resolve_shared_reads(_ids(HUMAN, "r1", "r2"), _ids(VIRUS))
        assert len(shared) == 0

    def test_both_empty(self):
        assert len(resolve_shared_reads(_ids(HUMAN), _ids(VIRUS))) == 0

    def test_different_samples_rejected(self):
        with pytest.raises(ValueError):
            resolve_shared_reads(_ids(HUMAN, "r1"), _ids(VIRUS, "r1", sample="S2"))

    def test_same_track_rejected(self):
        with pytest.raises(ValueError):
            resolve_shared_reads(_ids(HUMAN, "r1"), _ids(HUMAN, "r1"))


class TestIdFormats:
    def test_shape(self):
        assert read_id_shape("A:B:C/1") == (3, True)
        assert read_id_shape("SRR123.4") == (1, False)

    def test_incompatible_formats_raise(self):
        a = _ids(HUMAN, "HWI:1:2:3:4/1", "HWI:1:2:3:5/1")
        b = _ids(VIRUS, "SRR123.4", "SRR123.5")
        with pytest.raises(ReferenceMismatch) as info:
            resolve_shared_reads(a, b)
        assert info.value.sample_id == "S1"

    def test_partial_overlap_of_formats_allowed(self):
        a = _ids(HUMAN, "A:1", "B")
        b = _ids(VIRUS, "C")
        check_read_id_compatibility(a, b)

    def test_empty_side_skips_check(self):
        check_read_id_compatibility(_ids(HUMAN, "A:1:2/1"), _ids(VIRUS))
