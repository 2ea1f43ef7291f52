"""
Two-pass abundance quantification.

For each track the quantifier runs:

  1. **Pass 1: per-sample assembly.**  Fragments of the filtered store
     are matched against the track's annotation.  Annotated transcripts
     with support, plus novel loci built from fragments that fit no
     annotated transcript, form the sample's :class:`TranscriptModel`.
  2. **Merge.**  All pass-1 models of the track are unioned into one
     :class:`MergedTranscriptModel`; the same transcript seen in several
     samples becomes one canonical entry and overlapping novel loci fuse.
  3. **Pass 2: guided re-quantification.**  Each sample's filtered store
     is quantified against the merged model only (no discovery), giving
     the final :class:`AbundanceTable`.

Abundance is estimated by expectation–maximisation over equivalence
classes (the set of transcripts a fragment is compatible with), with
length-normalised weights.  A fragment is one read identifier; its blocks
are the coordinates of its primary mapped records, so both mates of a pair
must fit a transcript.

The ``stringtie`` backend runs the same three steps through StringTie and
parses its GTF output back into the same types.
"""

from __future__ import annotations

import dataclasses
from collections import Counter, defaultdict
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

import pandas as pd

from virosplit.annotation import load_annotation, read_gtf, read_gtf_frame, write_gtf
from virosplit.config import ViroSplitConfig, require_tool
from virosplit.errors import InputMissing
from virosplit.models import (
    TRANSCRIPT_COLUMNS,
    AbundanceTable,
    AlignmentStore,
    Coordinate,
    MergedTranscriptModel,
    ReferenceBundle,
    ReferenceTrack,
    Transcript,
    TranscriptModel,
    aggregate_genes,
    merge_intervals,
)
from virosplit.utils import get_logger, run_cmd

BIN_SIZE = 16_384
MERGED_PREFIX = "VSPLIT"


# ---------------------------------------------------------------------------
# Fragment ↔ transcript compatibility
# ---------------------------------------------------------------------------


def collect_fragments(store: AlignmentStore) -> dict[str, tuple[Coordinate, ...]]:
    """Primary mapped blocks per read identifier."""
    frags: dict[str, list[Coordinate]] = defaultdict(list)
    for rec in store:
        if rec.mapped and rec.primary and rec.coordinate is not None:
            frags[rec.read_id].append(rec.coordinate)
    return {rid: tuple(blocks) for rid, blocks in frags.items()}


class TranscriptIndex:
    """Fixed-width bin index over transcript spans."""

    def __init__(self, transcripts: Sequence[Transcript]) -> None:
        self.transcripts = tuple(transcripts)
        self._bins: dict[tuple[str, int], list[int]] = defaultdict(list)
        for i, t in enumerate(self.transcripts):
            for b in range(t.start // BIN_SIZE, (t.end - 1) // BIN_SIZE + 1):
                self._bins[(t.contig, b)].append(i)

    def overlapping(self, block: Coordinate) -> set[int]:
        hits: set[int] = set()
        for b in range(block.start // BIN_SIZE, max(block.start, block.end - 1) // BIN_SIZE + 1):
            for i in self._bins.get((block.contig, b), ()):
                if self.transcripts[i].overlaps(block):
                    hits.add(i)
        return hits

    def compatible(self, blocks: Iterable[Coordinate]) -> tuple[int, ...]:
        """Transcripts that every block of a fragment overlaps."""
        common: Optional[set[int]] = None
        for block in blocks:
            hits = self.overlapping(block)
            common = hits if common is None else common & hits
            if not common:
                return ()
        return tuple(sorted(common or ()))


def equivalence_classes(
    fragments: Mapping[str, tuple[Coordinate, ...]], index: TranscriptIndex
) -> tuple[Counter, list[tuple[Coordinate, ...]]]:
    """Count fragments per compatible-transcript tuple; also return the unplaced ones."""
    classes: Counter = Counter()
    unplaced: list[tuple[Coordinate, ...]] = []
    for blocks in fragments.values():
        cls = index.compatible(blocks)
        if cls:
            classes[cls] += 1
        else:
            unplaced.append(blocks)
    return classes, unplaced


def estimate_abundance(
    classes: Mapping[tuple[int, ...], int],
    lengths: Sequence[int],
    *,
    max_iter: int = 500,
    tolerance: float = 1e-6,
) -> list[float]:
    """
    Expected fragment count per transcript.

    Fragments in a single-transcript class go wholly to that transcript;
    the rest are split in proportion to ``theta / length`` and theta is
    re-estimated until no relative abundance moves by more than
    *tolerance*.
    """
    counts = [0.0] * len(lengths)
    active = sorted({i for cls in classes for i in cls})
    if not active:
        return counts

    theta = {i: 1.0 / len(active) for i in active}
    expected = dict.fromkeys(active, 0.0)
    for _ in range(max(1, max_iter)):
        expected = dict.fromkeys(active, 0.0)
        for cls, k in classes.items():
            if len(cls) == 1:
                expected[cls[0]] += k
                continue
            weights = [theta[i] / max(lengths[i], 1) for i in cls]
            total = sum(weights)
            if total == 0:
                for i in cls:
                    expected[i] += k / len(cls)
                continue
            for i, w in zip(cls, weights):
                expected[i] += k * w / total
        n = sum(expected.values())
        new_theta = {i: v / n for i, v in expected.items()}
        delta = max(abs(new_theta[i] - theta[i]) for i in active)
        theta = new_theta
        if delta < tolerance:
            break

    for i, v in expected.items():
        counts[i] = v
    return counts


def _empty_frame() -> pd.DataFrame:
    return pd.DataFrame(columns=TRANSCRIPT_COLUMNS)


def abundance_frame(
    transcripts: Sequence[Transcript],
    counts: Sequence[float],
    *,
    total_fragments: int,
    mean_fragment_bases: float,
) -> pd.DataFrame:
    """Transcript-level table with coverage, FPKM and TPM."""
    if not transcripts:
        return _empty_frame()
    rpk = [c / (max(t.length, 1) / 1_000) for t, c in zip(transcripts, counts)]
    rpk_total = sum(rpk)
    rows = []
    for t, c, r in zip(transcripts, counts, rpk):
        length = max(t.length, 1)
        rows.append(
            {
                "transcript_id": t.transcript_id,
                "gene_id": t.gene_id,
                "contig": t.contig,
                "strand": t.strand,
                "start": t.start,
                "end": t.end,
                "length": t.length,
                "reads": c,
                "coverage": c * mean_fragment_bases / length,
                "fpkm": c * 1e9 / (length * total_fragments) if total_fragments else 0.0,
                "tpm": r / rpk_total * 1e6 if rpk_total else 0.0,
            }
        )
    return pd.DataFrame(rows, columns=TRANSCRIPT_COLUMNS)


def quantify_fragments(
    fragments: Mapping[str, tuple[Coordinate, ...]],
    transcripts: Sequence[Transcript],
    cfg: ViroSplitConfig,
) -> pd.DataFrame:
    """Run EM for *fragments* against a fixed transcript set; every transcript gets a row."""
    index = TranscriptIndex(transcripts)
    classes, _ = equivalence_classes(fragments, index)
    counts = estimate_abundance(
        classes,
        [t.length for t in index.transcripts],
        max_iter=cfg.em_max_iter,
        tolerance=cfg.em_tolerance,
    )
    bases = [sum(b.end - b.start for b in blocks) for blocks in fragments.values()]
    return abundance_frame(
        index.transcripts,
        counts,
        total_fragments=len(fragments),
        mean_fragment_bases=sum(bases) / len(bases) if bases else 0.0,
    )


# ---------------------------------------------------------------------------
# Pass 1: per-sample assembly
# ---------------------------------------------------------------------------


def assemble_novel_loci(
    unplaced: Iterable[tuple[Coordinate, ...]],
    sample_id: str,
    *,
    gap: int,
    min_reads: int,
) -> list[Transcript]:
    """Cluster unplaced fragment blocks into single-exon novel loci."""
    blocks: list[tuple[str, int, int, int]] = []
    for n, frag in enumerate(unplaced):
        for b in frag:
            blocks.append((b.contig, b.start, b.end, n))
    blocks.sort()

    loci: list[Transcript] = []
    cluster: Optional[list] = None  # [contig, start, end, fragment ids]

    def close(c: Optional[list]) -> None:
        if c is not None and len(c[3]) >= min_reads:
            tid = f"{sample_id}.novel.{len(loci) + 1}"
            loci.append(Transcript(tid, tid, c[0], ".", ((c[1], c[2]),), reference=False))

    for contig, start, end, frag_id in blocks:
        if cluster is not None and contig == cluster[0] and start <= cluster[2] + gap:
            cluster[2] = max(cluster[2], end)
            cluster[3].add(frag_id)
        else:
            close(cluster)
            cluster = [contig, start, end, {frag_id}]
    close(cluster)
    return loci


def assemble_transcripts(
    store: AlignmentStore,
    annotation: Sequence[Transcript],
    cfg: Optional[ViroSplitConfig] = None,
) -> TranscriptModel:
    """
    Pass 1: annotation-guided assembly of one filtered store.

    A store with no mapped reads yields an empty model.
    """
    log = get_logger()
    if cfg is None:
        cfg = ViroSplitConfig()

    fragments = collect_fragments(store)
    if not fragments:
        log.info(f"{store.sample_id}/{store.track.value}: no mapped fragments, empty model")
        return TranscriptModel(store.sample_id, store.track, (), _empty_frame())

    index = TranscriptIndex(annotation)
    classes, unplaced = equivalence_classes(fragments, index)
    supported = sorted({i for cls in classes for i in cls})
    novel = assemble_novel_loci(
        unplaced, store.sample_id, gap=cfg.merge_gap, min_reads=cfg.min_novel_reads
    )
    transcripts = tuple(index.transcripts[i] for i in supported) + tuple(novel)
    abundance = quantify_fragments(fragments, transcripts, cfg)

    log.info(
        f"{store.sample_id}/{store.track.value}: assembled {len(supported):,} annotated + "
        f"{len(novel):,} novel transcripts from {len(fragments):,} fragments "
        f"({len(unplaced):,} outside annotation)"
    )
    return TranscriptModel(store.sample_id, store.track, transcripts, abundance)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def _canonical_reference(versions: list[Transcript]) -> Transcript:
    log = get_logger()
    first = versions[0]
    same_locus = [v for v in versions if v.contig == first.contig and v.strand == first.strand]
    if len(same_locus) != len(versions):
        log.warning(
            f"Transcript {first.transcript_id} appears on different contigs/strands; "
            f"keeping {first.contig}{first.strand}"
        )
    exons = merge_intervals(e for v in same_locus for e in v.exons)
    return dataclasses.replace(first, exons=exons)


def _fuse_novel(novel: list[Transcript], gap: int) -> list[Transcript]:
    by_locus: dict[tuple[str, str], list[Transcript]] = defaultdict(list)
    for t in novel:
        by_locus[(t.contig, t.strand)].append(t)

    fused: list[tuple[str, str, tuple[tuple[int, int], ...]]] = []
    for (contig, strand), group in by_locus.items():
        group.sort(key=lambda t: (t.start, t.end))
        clusters: list[list[Transcript]] = []
        end = 0
        for t in group:
            if not clusters or t.start > end + gap:
                clusters.append([])
                end = t.end
            clusters[-1].append(t)
            end = max(end, t.end)
        for cluster in clusters:
            exons = merge_intervals((e for t in cluster for e in t.exons), gap)
            fused.append((contig, strand, exons))

    fused.sort(key=lambda f: (f[0], f[2][0][0], f[1]))
    out = []
    for n, (contig, strand, exons) in enumerate(fused, start=1):
        tid = f"{MERGED_PREFIX}.{n}"
        out.append(Transcript(tid, tid, contig, strand, exons, reference=False))
    return out


def merge_transcript_models(
    models: Sequence[TranscriptModel],
    track: ReferenceTrack,
    *,
    excluded: Optional[Mapping[str, str]] = None,
    cfg: Optional[ViroSplitConfig] = None,
) -> MergedTranscriptModel:
    """
    Union the pass-1 models of one track into a single reference set.

    Annotated transcripts seen in several samples collapse to one entry
    whose exons are the union of every version; novel loci that overlap
    (within ``merge_gap``) on the same contig and strand fuse into one
    ``VSPLIT.<n>`` locus.  The result is sorted and deterministic.
    """
    log = get_logger()
    if cfg is None:
        cfg = ViroSplitConfig()

    samples = [m.sample_id for m in models]
    dupes = sorted(s for s, n in Counter(samples).items() if n > 1)
    if dupes:
        raise ValueError(f"Duplicate pass-1 models for sample(s): {', '.join(dupes)}")
    for m in models:
        if m.track is not track:
            raise ValueError(f"Model of {m.sample_id} is {m.track.value}, not {track.value}")

    references: dict[str, list[Transcript]] = defaultdict(list)
    novel: list[Transcript] = []
    for m in models:
        for t in m.transcripts:
            if t.reference:
                references[t.transcript_id].append(t)
            else:
                novel.append(t)

    merged = [_canonical_reference(v) for v in references.values()]
    merged.extend(_fuse_novel(novel, cfg.merge_gap))
    merged.sort(key=lambda t: (t.contig, t.start, t.transcript_id))

    log.info(
        f"Merged {track.value} model: {len(merged):,} transcripts "
        f"({len(references):,} annotated, {len(merged) - len(references):,} novel) "
        f"from {len(models)} samples"
    )
    return MergedTranscriptModel(
        track=track,
        transcripts=tuple(merged),
        samples=tuple(sorted(samples)),
        excluded=tuple(sorted((excluded or {}).items())),
    )


# ---------------------------------------------------------------------------
# Pass 2: guided re-quantification
# ---------------------------------------------------------------------------


def requantify(
    store: AlignmentStore,
    merged: MergedTranscriptModel,
    cfg: Optional[ViroSplitConfig] = None,
) -> AbundanceTable:
    """Pass 2: quantify a filtered store against the merged reference only."""
    log = get_logger()
    if cfg is None:
        cfg = ViroSplitConfig()
    if store.track is not merged.track:
        raise ValueError(
            f"{store.sample_id}: {store.track.value} store cannot use the "
            f"{merged.track.value} merged model"
        )

    fragments = collect_fragments(store)
    transcripts = quantify_fragments(fragments, merged.transcripts, cfg)
    genes = aggregate_genes(transcripts)
    assigned = float(transcripts["reads"].sum()) if not transcripts.empty else 0.0
    log.info(
        f"{store.sample_id}/{store.track.value}: {assigned:,.0f} of {len(fragments):,} "
        f"fragments assigned to {len(genes):,} genes"
    )
    return AbundanceTable(store.sample_id, store.track, transcripts, genes)


# ---------------------------------------------------------------------------
# Cohort-level tables and writers
# ---------------------------------------------------------------------------


def build_expression_matrix(
    tables: Sequence[AbundanceTable], value: str = "reads", *, level: str = "genes"
) -> pd.DataFrame:
    """Pivot per-sample tables into a feature × sample matrix (missing → 0)."""
    key = "gene_id" if level == "genes" else "transcript_id"
    samples = [t.sample_id for t in tables]
    frames = []
    for t in tables:
        df = getattr(t, level)
        if not df.empty:
            frames.append(df[[key, value]].assign(sample_id=t.sample_id))
    if not frames:
        return pd.DataFrame(columns=samples, dtype=float).rename_axis(key)
    long = pd.concat(frames, ignore_index=True)
    matrix = long.pivot_table(index=key, columns="sample_id", values=value, aggfunc="sum", fill_value=0)
    matrix = matrix.reindex(columns=samples, fill_value=0)
    matrix.columns.name = None
    return matrix.sort_index()


def write_transcript_model(model: TranscriptModel, output_dir: Path) -> Path:
    """Write a pass-1 model as ``<sample>.gtf`` + ``<sample>.tsv``."""
    output_dir = Path(output_dir)
    extra = {}
    if not model.abundance.empty:
        for row in model.abundance.itertuples(index=False):
            extra[row.transcript_id] = {
                "cov": f"{row.coverage:.6f}",
                "FPKM": f"{row.fpkm:.6f}",
                "TPM": f"{row.tpm:.6f}",
            }
    gtf = write_gtf(model.transcripts, output_dir / f"{model.sample_id}.gtf", extra=extra)
    model.abundance.to_csv(output_dir / f"{model.sample_id}.tsv", sep="\t", index=False)
    return gtf


def write_abundance_table(table: AbundanceTable, output_dir: Path) -> tuple[Path, Path]:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    tx = output_dir / f"{table.sample_id}.transcripts.tsv"
    genes = output_dir / f"{table.sample_id}.genes.tsv"
    table.transcripts.to_csv(tx, sep="\t", index=False)
    table.genes.to_csv(genes, sep="\t", index=False)
    return tx, genes


# ---------------------------------------------------------------------------
# StringTie backend
# ---------------------------------------------------------------------------


def _mean_read_length(store: AlignmentStore) -> float:
    spans = [r.coordinate.end - r.coordinate.start for r in store if r.coordinate and r.primary]
    return sum(spans) / len(spans) if spans else 0.0


def _stringtie_frame(gtf: Path, transcripts: Sequence[Transcript], read_length: float) -> pd.DataFrame:
    raw = read_gtf_frame(gtf)
    raw = raw[raw["feature"] == "transcript"].copy()
    for key in ("cov", "FPKM", "TPM"):
        raw[key] = pd.to_numeric(
            raw["attributes"].str.extract(rf'{key} "([^"]*)"', expand=False), errors="coerce"
        ).fillna(0.0)
    attrs = raw.set_index("transcript_id")[["cov", "FPKM", "TPM"]].to_dict("index")
    rows = []
    for t in transcripts:
        a = attrs.get(t.transcript_id, {"cov": 0.0, "FPKM": 0.0, "TPM": 0.0})
        # prepDE.py: reads = coverage * length / read length
        reads = a["cov"] * t.length / read_length if read_length else 0.0
        rows.append(
            {
                "transcript_id": t.transcript_id,
                "gene_id": t.gene_id,
                "contig": t.contig,
                "strand": t.strand,
                "start": t.start,
                "end": t.end,
                "length": t.length,
                "reads": reads,
                "coverage": a["cov"],
                "fpkm": a["FPKM"],
                "tpm": a["TPM"],
            }
        )
    return pd.DataFrame(rows, columns=TRANSCRIPT_COLUMNS) if rows else _empty_frame()


def _require_bam(store: AlignmentStore) -> Path:
    if store.path is None or not Path(store.path).exists():
        raise InputMissing(
            store.path, sample_id=store.sample_id, track=store.track.value, what="filtered BAM"
        )
    return Path(store.path)


def stringtie_assemble(
    store: AlignmentStore, annotation_gtf: Path, output_dir: Path, cfg: ViroSplitConfig
) -> TranscriptModel:
    """Pass 1 through ``stringtie -G``."""
    if not any(r.mapped for r in store):
        return TranscriptModel(store.sample_id, store.track, (), _empty_frame())
    stringtie = require_tool("stringtie")
    bam = _require_bam(store)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    out_gtf = output_dir / f"{store.sample_id}.gtf"
    cmd = [
        stringtie,
        str(bam),
        "-G",
        str(annotation_gtf),
        "-o",
        str(out_gtf),
        "-A",
        str(output_dir / f"{store.sample_id}.gene_abund.tab"),
        "-l",
        store.sample_id,
        "-p",
        str(cfg.threads),
    ]
    run_cmd(cmd, desc="StringTie assembly", unit=store.unit)
    raw = read_gtf_frame(out_gtf)
    ref_ids = set(raw.loc[raw["attributes"].str.contains("reference_id", na=False), "transcript_id"])
    transcripts = tuple(
        dataclasses.replace(t, reference=t.transcript_id in ref_ids)
        for t in read_gtf(out_gtf)
    )
    frame = _stringtie_frame(out_gtf, transcripts, _mean_read_length(store))
    return TranscriptModel(store.sample_id, store.track, transcripts, frame)


def stringtie_merge(
    gtfs: Sequence[Path],
    track: ReferenceTrack,
    annotation_gtf: Path,
    output_dir: Path,
    cfg: ViroSplitConfig,
    *,
    samples: Sequence[str] = (),
    excluded: Optional[Mapping[str, str]] = None,
) -> MergedTranscriptModel:
    """Merge through ``stringtie --merge``."""
    stringtie = require_tool("stringtie")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    gtf_list = output_dir / "assemblies.txt"
    gtf_list.write_text("".join(f"{g}\n" for g in gtfs), encoding="utf-8")
    merged_gtf = output_dir / "merged.gtf"
    run_cmd(
        [
            stringtie,
            "--merge",
            "-G",
            str(annotation_gtf),
            "-g",
            str(cfg.merge_gap),
            "-o",
            str(merged_gtf),
            str(gtf_list),
        ],
        desc=f"StringTie merge ({track.value}, {len(gtfs)} samples)",
    )
    transcripts = tuple(
        dataclasses.replace(t, reference=not t.transcript_id.startswith("MSTRG."))
        for t in read_gtf(merged_gtf)
    )
    return MergedTranscriptModel(
        track=track,
        transcripts=transcripts,
        samples=tuple(sorted(samples)),
        excluded=tuple(sorted((excluded or {}).items())),
        path=merged_gtf,
    )


def stringtie_requantify(
    store: AlignmentStore, merged: MergedTranscriptModel, output_dir: Path, cfg: ViroSplitConfig
) -> AbundanceTable:
    """Pass 2 through ``stringtie -e -B``."""
    if merged.path is None:
        raise InputMissing(None, track=merged.track.value, what="merged GTF")
    if not any(r.mapped for r in store):
        transcripts = abundance_frame(
            merged.transcripts, [0.0] * len(merged.transcripts), total_fragments=0, mean_fragment_bases=0.0
        )
        return AbundanceTable(store.sample_id, store.track, transcripts, aggregate_genes(transcripts))
    stringtie = require_tool("stringtie")
    bam = _require_bam(store)
    sample_dir = Path(output_dir) / store.sample_id
    sample_dir.mkdir(parents=True, exist_ok=True)
    out_gtf = sample_dir / f"{store.sample_id}.gtf"
    run_cmd(
        [
            stringtie,
            "-e",
            "-B",
            "-G",
            str(merged.path),
            "-o",
            str(out_gtf),
            "-A",
            str(sample_dir / "gene_abund.tab"),
            "-p",
            str(cfg.threads),
            str(bam),
        ],
        desc="StringTie re-quantification",
        unit=store.unit,
    )
    transcripts = _stringtie_frame(out_gtf, merged.transcripts, _mean_read_length(store))
    return AbundanceTable(store.sample_id, store.track, transcripts, aggregate_genes(transcripts))


# ---------------------------------------------------------------------------
# Backend dispatch used by the pipeline
# ---------------------------------------------------------------------------


def run_pass1(
    store: AlignmentStore, bundle: ReferenceBundle, output_dir: Path, cfg: ViroSplitConfig
) -> TranscriptModel:
    """Pass 1 with the configured backend; writes ``<sample>.gtf`` / ``.tsv``."""
    if cfg.quantifier == "stringtie":
        return stringtie_assemble(store, bundle.annotation, output_dir, cfg)
    model = assemble_transcripts(store, load_annotation(bundle.annotation), cfg)
    write_transcript_model(model, output_dir)
    return model


def run_merge(
    models: Sequence[TranscriptModel],
    track: ReferenceTrack,
    bundle: ReferenceBundle,
    output_dir: Path,
    cfg: ViroSplitConfig,
    *,
    excluded: Optional[Mapping[str, str]] = None,
) -> MergedTranscriptModel:
    """Merge with the configured backend; writes ``merged.gtf``."""
    output_dir = Path(output_dir)
    if cfg.quantifier == "stringtie":
        gtfs = [
            cfg.stage_dir("03_assembly", track) / f"{m.sample_id}.gtf"
            for m in models
            if not m.is_empty
        ]
        return stringtie_merge(
            gtfs,
            track,
            bundle.annotation,
            output_dir,
            cfg,
            samples=[m.sample_id for m in models],
            excluded=excluded,
        )
    merged = merge_transcript_models(models, track, excluded=excluded, cfg=cfg)
    path = write_gtf(merged.transcripts, output_dir / "merged.gtf")
    return dataclasses.replace(merged, path=path)


def run_pass2(
    store: AlignmentStore, merged: MergedTranscriptModel, output_dir: Path, cfg: ViroSplitConfig
) -> AbundanceTable:
    """Pass 2 with the configured backend; writes per-sample TSVs."""
    if cfg.quantifier == "stringtie":
        table = stringtie_requantify(store, merged, output_dir, cfg)
    else:
        table = requantify(store, merged, cfg)
    write_abundance_table(table, output_dir)
    return table
