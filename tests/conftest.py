"""Pytest fixtures for ViroSplit tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from tests.generate_test_data import make_store
from virosplit.models import AlignmentStore, ReferenceTrack

HUMAN = ReferenceTrack.HUMAN
VIRUS = ReferenceTrack.VIRUS


@pytest.fixture(scope="session")
def cohort(tmp_path_factory) -> dict:
    """Synthetic two-sample cohort (BAMs, GTFs, manifest), generated once."""
    from tests.generate_test_data import generate_cohort

    d = tmp_path_factory.mktemp("virosplit_cohort")
    return generate_cohort(d, ("S1", "S2"))


@pytest.fixture(scope="session")
def sample_bams(cohort) -> dict:
    return cohort["samples"]["S1"]


@pytest.fixture
def scenario_a() -> tuple[AlignmentStore, AlignmentStore]:
    """S1: human {r1,r2,r3}, virus {r2,r4}."""
    human = make_store("S1", HUMAN, {"r1": 100, "r2": 200, "r3": 300}, unmapped=["r4"])
    virus = make_store("S1", VIRUS, {"r2": 10, "r4": 40}, unmapped=["r1", "r3"])
    return human, virus


@pytest.fixture
def tmp_out(tmp_path) -> Path:
    d = tmp_path / "out"
    d.mkdir()
    return d
