"""
Full pipeline orchestrator.

Chains every module together for a cohort of samples:

  Align (human ∥ virus) → Extract IDs → Resolve shared reads → Filter →
  Pass 1 → [per-track barrier] → Merge → Pass 2 → Tables + plots

Each ``(sample, track)`` pair is an independent unit.  Units run on a
thread pool; the only synchronisation points are the per-sample fan-in
before shared-read resolution and the per-track barrier before merging.

Failure policy is *degraded-continue*: a failed unit is recorded and
dropped from its track's merge, the rest of the cohort carries on.  When
one track of a sample fails before resolution, the surviving track still
runs pass 1 but is excluded from the merge and from pass 2, because its
reads were never reconciled against the other reference.

Workers return :class:`StageEvent` tuples instead of writing to shared
state; the run's :class:`RunSummary` is folded from them once, at the end.
"""

from __future__ import annotations

import dataclasses
import subprocess
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from virosplit.align import align_to_reference
from virosplit.barrier import CohortSnapshot, TrackBarrier
from virosplit.config import ViroSplitConfig
from virosplit.errors import InputMissing, PartialCohort, ViroSplitError
from virosplit.extract import extract_read_ids, load_alignment_store
from virosplit.filter import filter_alignment_store, filter_sample
from virosplit.manifest import validate_reference, validate_sample_inputs
from virosplit.models import (
    TRACKS,
    AbundanceTable,
    AlignmentStore,
    FilteredAlignmentStore,
    MergedTranscriptModel,
    ReadIdSet,
    ReferenceTrack,
    Sample,
    SharedReadSet,
    TranscriptModel,
    UnitKey,
)
from virosplit.quantify import build_expression_matrix, run_merge, run_pass1, run_pass2
from virosplit.resolve import resolve_shared_reads
from virosplit.utils import file_size_human, fmt_elapsed, get_logger

console = Console(stderr=True)

# Expected unit failures; anything else is also contained to its unit but
# logged with a traceback
UNIT_ERRORS = (ViroSplitError, subprocess.CalledProcessError, OSError, ValueError)

PARTNER_FAILED = "partner track failed; reads not reconciled"


def _log_failure(what: str, exc: Exception) -> str:
    """Log a unit failure (with traceback when unexpected); return its detail."""
    log = get_logger()
    if isinstance(exc, UNIT_ERRORS):
        log.error(f"{what} failed: {exc}")
        return str(exc)
    log.exception(f"{what} failed unexpectedly")
    return f"internal error: {type(exc).__name__}: {exc}"


# ---------------------------------------------------------------------------
# Unit state machine
# ---------------------------------------------------------------------------


class UnitState(str, Enum):
    PENDING = "pending"
    ALIGNED = "aligned"
    EXTRACTED = "extracted"
    FILTERED = "filtered"
    ASSEMBLED = "assembled"
    MERGED = "merged"
    QUANTIFIED = "quantified"
    FAILED = "failed"
    EXCLUDED = "excluded"

    @property
    def terminal(self) -> bool:
        return self in (UnitState.QUANTIFIED, UnitState.FAILED, UnitState.EXCLUDED)


PROGRESSION = (
    UnitState.PENDING,
    UnitState.ALIGNED,
    UnitState.EXTRACTED,
    UnitState.FILTERED,
    UnitState.ASSEMBLED,
    UnitState.MERGED,
    UnitState.QUANTIFIED,
)


def advance(current: UnitState, nxt: UnitState) -> UnitState:
    """Validate one transition; any live state may fail or be excluded."""
    if current.terminal:
        raise ValueError(f"No transition out of terminal state {current.value}")
    if nxt in (UnitState.FAILED, UnitState.EXCLUDED):
        return nxt
    if PROGRESSION.index(nxt) != PROGRESSION.index(current) + 1:
        raise ValueError(f"Illegal transition {current.value} → {nxt.value}")
    return nxt


@dataclass(frozen=True)
class StageEvent:
    unit: UnitKey
    state: UnitState
    detail: str = ""


@dataclass(frozen=True)
class UnitStatus:
    unit: UnitKey
    state: UnitState
    reached: UnitState  # last non-terminal stage completed
    detail: str = ""


@dataclass(frozen=True)
class RunSummary:
    """Final status of every (sample, track) unit."""

    units: tuple[UnitStatus, ...]

    @classmethod
    def from_events(cls, units: Sequence[UnitKey], events: Sequence[StageEvent]) -> "RunSummary":
        state = {u: UnitState.PENDING for u in units}
        reached = dict(state)
        detail = {u: "" for u in units}
        for ev in events:
            state[ev.unit] = advance(state[ev.unit], ev.state)
            if not ev.state.terminal or ev.state is UnitState.QUANTIFIED:
                reached[ev.unit] = ev.state
            if ev.detail:
                detail[ev.unit] = ev.detail
        return cls(tuple(UnitStatus(u, state[u], reached[u], detail[u]) for u in units))

    def status(self, sample_id: str, track: ReferenceTrack) -> UnitStatus:
        key = UnitKey(sample_id, track)
        for s in self.units:
            if s.unit == key:
                return s
        raise KeyError(str(key))

    @property
    def failed(self) -> tuple[UnitStatus, ...]:
        return tuple(s for s in self.units if s.state is UnitState.FAILED)

    @property
    def excluded(self) -> tuple[UnitStatus, ...]:
        return tuple(s for s in self.units if s.state is UnitState.EXCLUDED)

    @property
    def quantified(self) -> tuple[UnitStatus, ...]:
        return tuple(s for s in self.units if s.state is UnitState.QUANTIFIED)

    @property
    def ok(self) -> bool:
        return all(s.state is UnitState.QUANTIFIED for s in self.units)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "sample_id": s.unit.sample_id,
                    "track": s.unit.track.value,
                    "state": s.state.value,
                    "reached": s.reached.value,
                    "detail": s.detail,
                }
                for s in self.units
            ],
            columns=["sample_id", "track", "state", "reached", "detail"],
        )


@dataclass(frozen=True)
class ReconciliationStats:
    sample_id: str
    human_records: int
    virus_records: int
    human_mapped: int
    virus_mapped: int
    shared: int
    human_kept: int
    virus_kept: int


@dataclass(frozen=True)
class PipelineResult:
    """Container for all pipeline outputs, assembled once the run ends."""

    summary: RunSummary
    reconciliation: tuple[ReconciliationStats, ...] = ()
    merged: dict = field(default_factory=dict)  # track -> MergedTranscriptModel
    tables: tuple[AbundanceTable, ...] = ()
    plots: tuple[Path, ...] = ()
    elapsed_seconds: float = 0.0

    def tables_for(self, track: ReferenceTrack) -> tuple[AbundanceTable, ...]:
        return tuple(t for t in self.tables if t.track is track)

    def summary_table(self) -> Table:
        tbl = Table(title="ViroSplit Run Status", show_lines=True)
        tbl.add_column("Sample", style="bold cyan")
        tbl.add_column("Track")
        tbl.add_column("State")
        tbl.add_column("Details")
        styles = {
            UnitState.QUANTIFIED: "green",
            UnitState.FAILED: "red",
            UnitState.EXCLUDED: "yellow",
        }
        for s in self.summary.units:
            style = styles.get(s.state, "white")
            tbl.add_row(
                s.unit.sample_id,
                s.unit.track.value,
                f"[{style}]{s.state.value}[/{style}]",
                s.detail if s.state is not UnitState.QUANTIFIED else "",
            )
        return tbl


# ---------------------------------------------------------------------------
# Worker tasks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Extracted:
    store: AlignmentStore
    ids: ReadIdSet


@dataclass(frozen=True)
class _SampleOutcome:
    sample_id: str
    filtered: dict  # track -> FilteredAlignmentStore
    models: dict  # track -> TranscriptModel
    stats: Optional[ReconciliationStats]
    events: tuple[StageEvent, ...]


def _align_and_extract(
    sample: Sample,
    track: ReferenceTrack,
    cfg: ViroSplitConfig,
    reference_error: Optional[InputMissing],
) -> tuple[Optional[_Extracted], tuple[StageEvent, ...]]:
    unit = UnitKey(sample.sample_id, track)
    events: list[StageEvent] = []
    try:
        if reference_error is not None:
            raise reference_error
        validate_sample_inputs(sample, track)
        bam = sample.alignment_for(track)
        if bam is None:
            bam = align_to_reference(
                sample,
                track,
                cfg.reference(track).index,
                cfg.stage_dir("01_alignment", track),
                cfg=cfg,
            )
        store = load_alignment_store(bam, sample.sample_id, track)
        events.append(StageEvent(unit, UnitState.ALIGNED, f"{bam.name}: {len(store):,} records"))
        ids = extract_read_ids(store)
        events.append(StageEvent(unit, UnitState.EXTRACTED, f"{len(ids):,} mapped read IDs"))
        return _Extracted(store, ids), tuple(events)
    except Exception as exc:
        detail = _log_failure(str(unit), exc)
        return None, (*events, StageEvent(unit, UnitState.FAILED, detail))


def _assemble_and_report(
    store: FilteredAlignmentStore,
    barrier: TrackBarrier,
    reconciled: bool,
    cfg: ViroSplitConfig,
) -> tuple[Optional[TranscriptModel], list[StageEvent]]:
    unit = store.unit
    try:
        model = run_pass1(store, cfg.reference(store.track), cfg.stage_dir("03_assembly", store.track), cfg)
    except Exception as exc:
        detail = _log_failure(f"{unit} pass 1", exc)
        barrier.exclude(store.sample_id, f"pass 1 failed: {detail}")
        return None, [StageEvent(unit, UnitState.FAILED, f"pass 1: {detail}")]

    events = [StageEvent(unit, UnitState.ASSEMBLED, f"{len(model.transcripts):,} transcripts")]
    if not reconciled:
        barrier.exclude(store.sample_id, PARTNER_FAILED)
        events.append(StageEvent(unit, UnitState.EXCLUDED, PARTNER_FAILED))
    elif not barrier.arrive(store.sample_id, model):
        reason = barrier.exclusion_reason(store.sample_id) or "excluded before arrival"
        events.append(StageEvent(unit, UnitState.EXCLUDED, reason))
    return model, events


def _reconcile_sample(
    sample: Sample,
    extracted: dict,
    barriers: dict,
    cfg: ViroSplitConfig,
) -> _SampleOutcome:
    """Fan-in for one sample: resolve, filter both tracks, run pass 1."""
    sid = sample.sample_id
    try:
        return _reconcile(sample, extracted, barriers, cfg)
    except Exception as exc:
        detail = _log_failure(sid, exc)
        # never leave the merge barriers waiting on a crashed worker
        for barrier in barriers.values():
            barrier.abandon(sid, detail)
        events = tuple(StageEvent(UnitKey(sid, t), UnitState.FAILED, detail) for t in TRACKS)
        return _SampleOutcome(sid, {}, {}, None, events)


def _reconcile(
    sample: Sample,
    extracted: dict,
    barriers: dict,
    cfg: ViroSplitConfig,
) -> _SampleOutcome:
    log = get_logger()
    sid = sample.sample_id
    events: list[StageEvent] = []
    results: dict = {}
    for track in TRACKS:
        ext, ev = extracted[track].result()
        results[track] = ext
        events.extend(ev)

    failed = {e.unit.track: e.detail for e in events if e.state is UnitState.FAILED}
    for track, reason in failed.items():
        barriers[track].exclude(sid, f"failed before pass 1: {reason}")

    alive = [t for t in TRACKS if results[t] is not None]
    filtered: dict = {}
    stats: Optional[ReconciliationStats] = None
    reconciled = len(alive) == len(TRACKS)

    try:
        if reconciled:
            human, virus = results[ReferenceTrack.HUMAN], results[ReferenceTrack.VIRUS]
            shared = resolve_shared_reads(human.ids, virus.ids)
            out_dirs = {t: cfg.stage_dir("02_filtered", t) for t in TRACKS}
            fh, fv = filter_sample(human.store, virus.store, shared, out_dirs)
            filtered = {ReferenceTrack.HUMAN: fh, ReferenceTrack.VIRUS: fv}
            stats = ReconciliationStats(
                sample_id=sid,
                human_records=len(human.store),
                virus_records=len(virus.store),
                human_mapped=len(human.ids),
                virus_mapped=len(virus.ids),
                shared=len(shared),
                human_kept=len(fh),
                virus_kept=len(fv),
            )
        elif alive:
            track = alive[0]
            store = results[track].store
            log.warning(f"{sid}: {track.partner.value} track failed; {track.value} reads not reconciled")
            filtered = {track: filter_alignment_store(store, SharedReadSet(sid), path=store.path)}
    except Exception as exc:
        detail = _log_failure(f"{sid}: shared-read resolution", exc)
        for track in alive:
            barriers[track].exclude(sid, f"resolution failed: {detail}")
            events.append(StageEvent(UnitKey(sid, track), UnitState.FAILED, detail))
        return _SampleOutcome(sid, {}, {}, None, tuple(events))

    models: dict = {}
    for track, store in filtered.items():
        events.append(
            StageEvent(store.unit, UnitState.FILTERED, f"{len(store):,} kept, {store.removed:,} shared removed")
        )
        model, ev = _assemble_and_report(store, barriers[track], reconciled, cfg)
        events.extend(ev)
        if model is not None:
            models[track] = model

    return _SampleOutcome(sid, filtered, models, stats, tuple(events))


def _quantify_unit(
    outcome: Future,
    track: ReferenceTrack,
    merged: MergedTranscriptModel,
    cfg: ViroSplitConfig,
) -> tuple[Optional[AbundanceTable], tuple[StageEvent, ...]]:
    """Pass 2 for one merged-cohort member once its sample worker is done."""
    store = outcome.result().filtered.get(track)
    if store is None:
        # the sample worker crashed after delivering its pass-1 model
        return None, ()
    merged_event = StageEvent(store.unit, UnitState.MERGED, f"{len(merged.transcripts):,} transcripts")
    try:
        table = run_pass2(store, merged, cfg.stage_dir("05_quantification", track), cfg)
    except Exception as exc:
        detail = _log_failure(f"{store.unit} pass 2", exc)
        return None, (merged_event, StageEvent(store.unit, UnitState.FAILED, f"pass 2: {detail}"))
    return table, (merged_event, StageEvent(store.unit, UnitState.QUANTIFIED, f"{len(table.genes):,} genes"))


# ---------------------------------------------------------------------------
# Result table writer
# ---------------------------------------------------------------------------


def _reconciliation_frame(stats: Sequence[ReconciliationStats]) -> pd.DataFrame:
    cols = [f.name for f in dataclasses.fields(ReconciliationStats)]
    return pd.DataFrame([dataclasses.asdict(s) for s in stats], columns=cols)


def _write_result_tables(result: PipelineResult, cfg: ViroSplitConfig) -> None:
    """Write pipeline results as CSV tables for programmatic access."""
    log = get_logger()
    tables_dir = cfg.output_dir / "06_tables"
    tables_dir.mkdir(parents=True, exist_ok=True)

    # --- 1. Run status (every sample × track) ---
    status_path = tables_dir / "run_status.csv"
    result.summary.to_frame().to_csv(status_path, index=False)
    log.info(f"Saved run status → {status_path}")

    # --- 2. Shared-read reconciliation ---
    recon_path = tables_dir / "reconciliation_summary.csv"
    _reconciliation_frame(result.reconciliation).to_csv(recon_path, index=False)
    log.info(f"Saved reconciliation summary → {recon_path}")

    # --- 3. Per-track expression matrices ---
    for track in TRACKS:
        tables = result.tables_for(track)
        if not tables:
            continue
        for value, label in (("reads", "counts"), ("tpm", "tpm")):
            matrix = build_expression_matrix(tables, value, level="genes")
            path = tables_dir / f"{track.value}_gene_{label}.csv"
            matrix.to_csv(path)
            log.info(f"Saved {track.value} gene {label} matrix → {path}")
        tx = build_expression_matrix(tables, "reads", level="transcripts")
        tx.to_csv(tables_dir / f"{track.value}_transcript_counts.csv")

    # --- 4. Merge cohorts ---
    rows = []
    for track, merged in result.merged.items():
        rows.extend((track.value, s, "merged", "") for s in merged.samples)
        rows.extend((track.value, s, "excluded", r) for s, r in merged.excluded)
    pd.DataFrame(rows, columns=["track", "sample_id", "cohort", "reason"]).to_csv(
        tables_dir / "merge_cohorts.csv", index=False
    )

    # --- 5. Output file manifest ---
    manifest_rows = []
    for d in sorted(cfg.output_dir.rglob("*")):
        if d.is_file() and "tmp" not in d.relative_to(cfg.output_dir).parts:
            rel = d.relative_to(cfg.output_dir)
            manifest_rows.append((str(rel), d.stat().st_size, file_size_human(d)))
    manifest_df = pd.DataFrame(manifest_rows, columns=["File", "Bytes", "Size"])
    manifest_path = tables_dir / "output_manifest.csv"
    manifest_df.to_csv(manifest_path, index=False)
    log.info(f"Saved output manifest → {manifest_path}")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def _reference_errors(samples: Sequence[Sample], cfg: ViroSplitConfig) -> dict:
    log = get_logger()
    errors: dict = {}
    for track in TRACKS:
        needs_index = any(s.alignment_for(track) is None for s in samples)
        try:
            validate_reference(cfg.reference(track), needs_index=needs_index)
        except InputMissing as exc:
            log.error(f"{track.value} reference unusable: {exc}")
            errors[track] = exc
    return errors


def _wait_for_cohort(barrier: TrackBarrier, cfg: ViroSplitConfig) -> CohortSnapshot:
    log = get_logger()
    try:
        return barrier.wait(cfg.barrier_timeout)
    except PartialCohort as exc:
        log.warning(f"{exc}; continuing without them")
        return barrier.release_partial("merge barrier timed out")


def run_pipeline(
    samples: Sequence[Sample],
    *,
    cfg: Optional[ViroSplitConfig] = None,
    skip_visualize: bool = False,
) -> PipelineResult:
    """
    Execute the complete ViroSplit pipeline for a cohort.

    Parameters
    ----------
    samples : sequence of Sample
        Cohort from :func:`virosplit.manifest.load_manifest`.
    cfg : ViroSplitConfig
        Pipeline configuration (references, output directory, resources).
    skip_visualize : bool
        Do not render plots.

    Returns
    -------
    PipelineResult with the final status of every (sample, track) unit.
    """
    log = get_logger()
    if cfg is None:
        cfg = ViroSplitConfig()
    ids = [s.sample_id for s in samples]
    if len(set(ids)) != len(ids):
        raise ValueError("Sample ids must be unique within a run")

    cfg.ensure_dirs()
    log.info(f"System: {cfg.system_summary}")
    t0 = time.perf_counter()

    console.print(
        Panel.fit(
            "[bold magenta]ViroSplit[/bold magenta]: "
            "Cross-Genome Read Reconciliation for Virus–Host Transcriptomes\n"
            f"Samples: {len(samples)}  Quantifier: {cfg.quantifier}\n"
            f"Output: {cfg.output_dir}",
            border_style="blue",
        )
    )

    units = [UnitKey(s.sample_id, t) for s in samples for t in TRACKS]
    by_id = {s.sample_id: s for s in samples}
    ref_errors = _reference_errors(samples, cfg)
    barriers = {t: TrackBarrier(t, ids) for t in TRACKS}
    merge_events: list[StageEvent] = []
    merge_failures: dict = {}  # track -> (cohort sample ids, detail)
    quant_events: list[StageEvent] = []
    merged: dict = {}
    tables: list[AbundanceTable] = []

    with ThreadPoolExecutor(max_workers=max(1, cfg.jobs), thread_name_prefix="virosplit") as pool:
        # ---- Align + extract: one task per (sample, track) ----
        log.info("[bold]Step 1/4: Alignment + read-ID extraction[/bold]")
        extract_futs: dict[UnitKey, Future] = {
            u: pool.submit(
                _align_and_extract,
                by_id[u.sample_id],
                u.track,
                cfg,
                ref_errors.get(u.track),
            )
            for u in units
        }

        # ---- Resolve + filter + pass 1: one task per sample ----
        log.info("[bold]Step 2/4: Shared-read resolution, filtering, pass-1 assembly[/bold]")
        sample_futs: dict[str, Future] = {
            s.sample_id: pool.submit(
                _reconcile_sample,
                s,
                {t: extract_futs[UnitKey(s.sample_id, t)] for t in TRACKS},
                barriers,
                cfg,
            )
            for s in samples
        }

        # ---- Per-track barrier → merge → pass 2 ----
        log.info("[bold]Step 3/4: Merge + pass-2 re-quantification[/bold]")
        quant_futs: list[Future] = []
        for track in TRACKS:
            cohort = _wait_for_cohort(barriers[track], cfg)
            if not cohort.models:
                log.warning(f"No samples completed pass 1 for the {track.value} track; skipping merge")
                continue
            try:
                model = run_merge(
                    cohort.models,
                    track,
                    cfg.reference(track),
                    cfg.stage_dir("04_merge", track),
                    cfg,
                    excluded=cohort.excluded_samples,
                )
            except Exception as exc:
                detail = _log_failure(f"{track.value} merge", exc)
                merge_failures[track] = (cohort.samples, f"merge: {detail}")
                continue
            merged[track] = model
            # pass-2 tasks wait on their sample worker, never the main thread
            quant_futs.extend(
                pool.submit(_quantify_unit, sample_futs[sid], track, model, cfg)
                for sid in cohort.samples
            )

        outcomes = [sample_futs[s.sample_id].result() for s in samples]
        for fut in quant_futs:
            table, ev = fut.result()
            quant_events.extend(ev)
            if table is not None:
                tables.append(table)

    for track, (members, detail) in merge_failures.items():
        merge_events.extend(
            StageEvent(UnitKey(o.sample_id, track), UnitState.FAILED, detail)
            for o in outcomes
            if o.sample_id in members and track in o.filtered
        )

    # ---- Assemble the run summary once ----
    sample_events = [ev for o in outcomes for ev in o.events]
    summary = RunSummary.from_events(units, sample_events + merge_events + quant_events)
    result = PipelineResult(
        summary=summary,
        reconciliation=tuple(o.stats for o in outcomes if o.stats is not None),
        merged=merged,
        tables=tuple(sorted(tables, key=lambda t: (t.track.value, t.sample_id))),
    )
    _write_result_tables(result, cfg)

    plots: list[Path] = []
    if not skip_visualize and result.tables:
        log.info("[bold]Step 4/4: Generating Visualisations[/bold]")
        from virosplit.visualize import generate_all_plots

        plots = generate_all_plots(result, cfg.output_dir / "07_visualisation", cfg=cfg)
    else:
        log.info("Skipping visualisation")

    result = dataclasses.replace(
        result, plots=tuple(plots), elapsed_seconds=time.perf_counter() - t0
    )

    n_bad = len(summary.failed) + len(summary.excluded)
    colour = "green" if n_bad == 0 else "yellow"
    console.print(
        Panel.fit(
            f"[bold {colour}]Pipeline completed in {fmt_elapsed(result.elapsed_seconds)}[/bold {colour}]\n"
            f"Units quantified: {len(units) - n_bad}/{len(units)}  "
            f"failed: {len(summary.failed)}  excluded: {len(summary.excluded)}\n"
            f"Output directory: {cfg.output_dir}",
            border_style=colour,
        )
    )
    return result
