"""
Sample manifest and reference-bundle validation.

The manifest is a CSV or TSV table with one row per sample::

    sample_id  read1              read2              human_bam   virus_bam
    S1         S1_R1.fastq.gz     S1_R2.fastq.gz
    S2                                               S2.hg38.bam S2.vir.bam

``read2`` marks a sample as paired-end unless a ``paired`` column says
otherwise.  ``human_bam`` / ``virus_bam`` supply pre-computed alignments and
skip the aligner for that track.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pandas as pd

from virosplit.errors import InputMissing
from virosplit.models import ReferenceBundle, ReferenceTrack, Sample
from virosplit.utils import get_logger

REQUIRED_COLUMNS = ("sample_id",)
PATH_COLUMNS = ("read1", "read2", "human_bam", "virus_bam")
_TRUE = {"true", "yes", "1", "pe", "paired"}


def _opt_path(value, base: Path) -> Optional[Path]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    text = str(value).strip()
    if not text:
        return None
    p = Path(text).expanduser()
    return p if p.is_absolute() else base / p


def load_manifest(path: Path) -> list[Sample]:
    """
    Parse a sample manifest into immutable :class:`Sample` objects.

    Relative paths are resolved against the manifest's directory.  The
    separator is inferred from the extension (``.csv`` → comma, else tab).

    Raises
    ------
    ValueError
        If required columns are missing, a sample has no inputs at all, or a
        ``sample_id`` is duplicated.
    """
    log = get_logger()
    path = Path(path)
    sep = "," if path.suffix.lower() == ".csv" else "\t"
    df = pd.read_csv(path, sep=sep, dtype=str, comment="#").fillna("")
    df.columns = [c.strip() for c in df.columns]

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Manifest {path} is missing column(s): {', '.join(missing)}")

    df["sample_id"] = df["sample_id"].str.strip()
    dupes = sorted(df.loc[df["sample_id"].duplicated(), "sample_id"].unique())
    if dupes:
        raise ValueError(f"Duplicate sample_id(s) in manifest: {', '.join(dupes)}")

    base = path.parent
    samples: list[Sample] = []
    for row in df.to_dict("records"):
        sid = row["sample_id"]
        if not sid:
            raise ValueError(f"Manifest {path} contains a row without sample_id")
        paths = {c: _opt_path(row.get(c), base) for c in PATH_COLUMNS}
        if paths["read1"] is None and not (paths["human_bam"] or paths["virus_bam"]):
            raise ValueError(f"Sample '{sid}' has neither read files nor alignments")
        paired_flag = str(row.get("paired", "")).strip().lower()
        is_paired = paired_flag in _TRUE if paired_flag else paths["read2"] is not None
        samples.append(
            Sample(
                sample_id=sid,
                read1=paths["read1"],
                read2=paths["read2"],
                is_paired=is_paired,
                human_bam=paths["human_bam"],
                virus_bam=paths["virus_bam"],
            )
        )

    n_pe = sum(s.is_paired for s in samples)
    log.info(f"Manifest: {len(samples)} samples ({n_pe} paired-end) from {path.name}")
    return samples


def validate_sample_inputs(sample: Sample, track: ReferenceTrack) -> None:
    """Raise :class:`InputMissing` if *sample* cannot produce a *track* alignment."""
    bam = sample.alignment_for(track)
    if bam is not None:
        if not bam.exists():
            raise InputMissing(bam, sample_id=sample.sample_id, track=track.value, what="alignment")
        return
    if sample.read1 is None:
        raise InputMissing(None, sample_id=sample.sample_id, track=track.value, what="read file")
    if sample.is_paired and sample.read2 is None:
        raise InputMissing(None, sample_id=sample.sample_id, track=track.value, what="R2 read file")
    for p in sample.read_files:
        if not p.exists():
            raise InputMissing(p, sample_id=sample.sample_id, track=track.value, what="read file")


def validate_reference(bundle: ReferenceBundle, *, needs_index: bool) -> None:
    """Raise :class:`InputMissing` if the track's annotation (or index) is absent."""
    if bundle.annotation is None or not bundle.annotation.exists():
        raise InputMissing(bundle.annotation, track=bundle.track.value, what="annotation")
    if needs_index:
        if bundle.index is None:
            raise InputMissing(None, track=bundle.track.value, what="aligner index")
        prefix = bundle.index
        if not any(prefix.parent.glob(prefix.name + "*")):
            raise InputMissing(prefix, track=bundle.track.value, what="aligner index")
