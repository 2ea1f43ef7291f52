"""End-to-end pipeline tests on pre-aligned synthetic BAMs (builtin quantifier)."""

from __future__ import annotations

import pandas as pd
import pytest

from virosplit.config import ViroSplitConfig
from virosplit.extract import extract_read_ids_from_bam
from virosplit.manifest import load_manifest
from virosplit.models import ReferenceTrack, UnitKey
from virosplit.pipeline import (
    PARTNER_FAILED,
    RunSummary,
    StageEvent,
    UnitState,
    advance,
    run_pipeline,
)

HUMAN = ReferenceTrack.HUMAN
VIRUS = ReferenceTrack.VIRUS


def _cfg(cohort, out, **kw) -> ViroSplitConfig:
    return ViroSplitConfig(
        output_dir=out,
        human_annotation=cohort["human_gtf"],
        virus_annotation=cohort["virus_gtf"],
        threads=1,
        jobs=2,
        **kw,
    )


# ──────────────────────────────────────────────────────────────────────
# State machine and run summary
# ──────────────────────────────────────────────────────────────────────


class TestUnitState:
    def test_forward_only(self):
        assert advance(UnitState.PENDING, UnitState.ALIGNED) is UnitState.ALIGNED
        with pytest.raises(ValueError):
            advance(UnitState.PENDING, UnitState.FILTERED)

    def test_any_live_state_can_fail(self):
        assert advance(UnitState.ASSEMBLED, UnitState.FAILED) is UnitState.FAILED
        assert advance(UnitState.PENDING, UnitState.EXCLUDED) is UnitState.EXCLUDED

    def test_terminal_is_final(self):
        with pytest.raises(ValueError):
            advance(UnitState.FAILED, UnitState.ALIGNED)

    def test_summary_folds_events(self):
        u = UnitKey("S1", HUMAN)
        v = UnitKey("S1", VIRUS)
        events = [
            StageEvent(u, UnitState.ALIGNED),
            StageEvent(u, UnitState.EXTRACTED),
            StageEvent(v, UnitState.FAILED, "boom"),
        ]
        summary = RunSummary.from_events([u, v], events)
        assert summary.status("S1", HUMAN).state is UnitState.EXTRACTED
        assert summary.status("S1", VIRUS).detail == "boom"
        assert summary.status("S1", VIRUS).reached is UnitState.PENDING
        assert [s.unit for s in summary.failed] == [v]
        assert list(summary.to_frame()["state"]) == ["extracted", "failed"]


# ──────────────────────────────────────────────────────────────────────
# Full runs
# ──────────────────────────────────────────────────────────────────────


class TestRunPipeline:
    @pytest.fixture(scope="class")
    def full_run(self, cohort, tmp_path_factory):
        out = tmp_path_factory.mktemp("run")
        samples = load_manifest(cohort["manifest"])
        result = run_pipeline(samples, cfg=_cfg(cohort, out), skip_visualize=True)
        return result, out

    def test_every_unit_quantified(self, full_run):
        result, _ = full_run
        assert result.summary.ok
        assert len(result.summary.units) == 4
        assert len(result.tables) == 4

    def test_reconciliation_counts(self, full_run, cohort):
        result, _ = full_run
        stats = {s.sample_id: s for s in result.reconciliation}
        for sid, info in cohort["samples"].items():
            s = stats[sid]
            assert s.shared == len(info["shared_ids"])
            assert s.human_mapped == len(info["human_ids"])
            assert s.virus_mapped == len(info["virus_ids"])
            assert s.human_records == info["human_records"]
            # the shared reads' primaries plus one secondary hit
            assert s.human_kept == info["human_records"] - s.shared - 1
            assert s.virus_kept == info["virus_records"] - s.shared

    def test_filtered_bams_disjoint(self, full_run):
        _, out = full_run
        for sid in ("S1", "S2"):
            h = extract_read_ids_from_bam(out / "02_filtered" / "human" / f"{sid}.filtered.bam", sid, HUMAN)
            v = extract_read_ids_from_bam(out / "02_filtered" / "virus" / f"{sid}.filtered.bam", sid, VIRUS)
            assert h.ids and v.ids
            assert h.ids.isdisjoint(v.ids)

    def test_merge_includes_novel_locus(self, full_run):
        result, _ = full_run
        human = result.merged[HUMAN]
        assert human.samples == ("S1", "S2")
        assert "VSPLIT.1" in human.transcript_ids
        assert human.path.exists()

    def test_pass2_rows_match_merged_model(self, full_run):
        result, _ = full_run
        for table in result.tables:
            merged = result.merged[table.track]
            assert set(table.transcripts["transcript_id"]) == merged.transcript_ids

    def test_output_tables(self, full_run):
        _, out = full_run
        tables = out / "06_tables"
        for name in (
            "run_status.csv",
            "reconciliation_summary.csv",
            "human_gene_counts.csv",
            "human_gene_tpm.csv",
            "virus_gene_counts.csv",
            "virus_gene_tpm.csv",
            "merge_cohorts.csv",
            "output_manifest.csv",
        ):
            assert (tables / name).exists(), name
        status = pd.read_csv(tables / "run_status.csv")
        assert set(status["state"]) == {"quantified"}
        tpm = pd.read_csv(tables / "virus_gene_tpm.csv", index_col=0)
        assert list(tpm.columns) == ["S1", "S2"]
        assert tpm["S1"].sum() == pytest.approx(1e6)

    def test_duplicate_sample_ids_rejected(self, cohort, tmp_path):
        samples = load_manifest(cohort["manifest"])
        with pytest.raises(ValueError):
            run_pipeline(samples + samples[:1], cfg=_cfg(cohort, tmp_path))


class TestDegradedRuns:
    def test_scenario_d_viral_track_failure(self, tmp_path):
        from tests.generate_test_data import generate_cohort

        cohort = generate_cohort(tmp_path / "data", ("S1", "S2", "S3"), missing_virus="S3")
        samples = load_manifest(cohort["manifest"])
        result = run_pipeline(samples, cfg=_cfg(cohort, tmp_path / "out"), skip_visualize=True)

        virus = result.summary.status("S3", VIRUS)
        human = result.summary.status("S3", HUMAN)
        assert virus.state is UnitState.FAILED
        assert human.state is UnitState.EXCLUDED
        assert human.reached is UnitState.ASSEMBLED
        assert human.detail == PARTNER_FAILED

        for sid in ("S1", "S2"):
            for track in (HUMAN, VIRUS):
                assert result.summary.status(sid, track).state is UnitState.QUANTIFIED

        assert result.merged[HUMAN].samples == ("S1", "S2")
        assert result.merged[HUMAN].excluded_samples["S3"] == PARTNER_FAILED
        assert "S3" in result.merged[VIRUS].excluded_samples
        # the human pass-1 draft of S3 was still written
        assert (tmp_path / "out" / "03_assembly" / "human" / "S3.gtf").exists()

    def test_missing_reference_fails_track(self, cohort, tmp_path):
        samples = load_manifest(cohort["manifest"])
        cfg = _cfg(cohort, tmp_path)
        cfg.virus_annotation = tmp_path / "missing.gtf"
        result = run_pipeline(samples, cfg=cfg, skip_visualize=True)
        for sid in ("S1", "S2"):
            assert result.summary.status(sid, VIRUS).state is UnitState.FAILED
            assert result.summary.status(sid, HUMAN).state is UnitState.EXCLUDED
        assert VIRUS not in result.merged
        assert not result.summary.quantified

    def test_unexpected_pass1_error_fails_only_that_unit(self, cohort, tmp_path, monkeypatch):
        import virosplit.pipeline as pipeline

        real_pass1 = pipeline.run_pass1

        def flaky(store, *args, **kwargs):
            if store.unit == UnitKey("S2", VIRUS):
                raise KeyError("transcript_id")
            return real_pass1(store, *args, **kwargs)

        monkeypatch.setattr(pipeline, "run_pass1", flaky)
        samples = load_manifest(cohort["manifest"])
        result = run_pipeline(samples, cfg=_cfg(cohort, tmp_path), skip_visualize=True)

        broken = result.summary.status("S2", VIRUS)
        assert broken.state is UnitState.FAILED
        assert "KeyError" in broken.detail
        assert result.summary.status("S2", HUMAN).state is UnitState.QUANTIFIED
        for track in (HUMAN, VIRUS):
            assert result.summary.status("S1", track).state is UnitState.QUANTIFIED
        assert result.merged[VIRUS].samples == ("S1",)
        assert (tmp_path / "06_tables" / "run_status.csv").exists()

    def test_crashed_sample_worker_fails_both_tracks(self, cohort, tmp_path, monkeypatch):
        import virosplit.pipeline as pipeline

        real = pipeline._assemble_and_report

        def crash(store, *args, **kwargs):
            if store.sample_id == "S2":
                raise RuntimeError("worker crashed")
            return real(store, *args, **kwargs)

        monkeypatch.setattr(pipeline, "_assemble_and_report", crash)
        samples = load_manifest(cohort["manifest"])
        result = run_pipeline(samples, cfg=_cfg(cohort, tmp_path), skip_visualize=True)

        for track in (HUMAN, VIRUS):
            status = result.summary.status("S2", track)
            assert status.state is UnitState.FAILED
            assert "RuntimeError" in status.detail
            assert result.summary.status("S1", track).state is UnitState.QUANTIFIED
            assert result.merged[track].samples == ("S1",)

    def test_unexpected_extraction_error_excludes_partner(self, cohort, tmp_path, monkeypatch):
        import virosplit.pipeline as pipeline

        real_load = pipeline.load_alignment_store

        def flaky(bam, sample_id, track):
            if (sample_id, track) == ("S2", VIRUS):
                raise RuntimeError("corrupt block")
            return real_load(bam, sample_id, track)

        monkeypatch.setattr(pipeline, "load_alignment_store", flaky)
        samples = load_manifest(cohort["manifest"])
        result = run_pipeline(samples, cfg=_cfg(cohort, tmp_path), skip_visualize=True)

        assert result.summary.status("S2", VIRUS).state is UnitState.FAILED
        assert result.summary.status("S2", HUMAN).detail == PARTNER_FAILED
        assert result.summary.status("S1", VIRUS).state is UnitState.QUANTIFIED

    def test_barrier_timeout_excludes_straggler(self, cohort, tmp_path, monkeypatch):
        import threading

        import virosplit.pipeline as pipeline
        from virosplit.barrier import TrackBarrier

        released = threading.Event()
        real_release = TrackBarrier.release_partial

        def release_partial(barrier, reason):
            snapshot = real_release(barrier, reason)
            released.set()
            return snapshot

        real_pass1 = pipeline.run_pass1

        def slow(store, *args, **kwargs):
            # S2/virus only finishes pass 1 after the viral barrier gave up on it
            if store.unit == UnitKey("S2", VIRUS):
                released.wait(60)
            return real_pass1(store, *args, **kwargs)

        monkeypatch.setattr(TrackBarrier, "release_partial", release_partial)
        monkeypatch.setattr(pipeline, "run_pass1", slow)
        samples = load_manifest(cohort["manifest"])
        result = run_pipeline(
            samples, cfg=_cfg(cohort, tmp_path, barrier_timeout=5.0), skip_visualize=True
        )

        assert released.is_set()
        straggler = result.summary.status("S2", VIRUS)
        assert straggler.state is UnitState.EXCLUDED
        assert straggler.reached is UnitState.ASSEMBLED
        assert "timed out" in straggler.detail
        assert result.merged[VIRUS].samples == ("S1",)
        assert "S2" in result.merged[VIRUS].excluded_samples
        assert result.summary.status("S2", HUMAN).state is UnitState.QUANTIFIED
        assert result.summary.status("S1", VIRUS).state is UnitState.QUANTIFIED

    def test_with_plots(self, cohort, tmp_path):
        samples = load_manifest(cohort["manifest"])
        result = run_pipeline(samples, cfg=_cfg(cohort, tmp_path, top_n_genes=5))
        names = {p.name for p in result.plots}
        assert "read_reconciliation.png" in names
        assert "read_reconciliation.pdf" in names
        assert "human_top_genes.png" in names
        assert all(p.exists() for p in result.plots)


class TestPlotFormats:
    def test_only_requested_formats_written(self, tmp_path):
        from virosplit.pipeline import ReconciliationStats, _reconciliation_frame
        from virosplit.visualize import plot_reconciliation

        stats = [ReconciliationStats("S1", 75, 30, 45, 25, 5, 69, 25)]
        cfg = ViroSplitConfig(output_dir=tmp_path, plot_formats=("svg",))
        saved = plot_reconciliation(_reconciliation_frame(stats), tmp_path / "recon", cfg=cfg)
        assert saved == [tmp_path / "recon.svg"]
        assert saved[0].exists()
        assert not (tmp_path / "recon.png").exists()
