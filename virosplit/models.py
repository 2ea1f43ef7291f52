"""
Core data model shared by every ViroSplit stage.

All artifacts are immutable: each stage (extract, resolve, filter,
assemble, merge, re-quantify) builds a new object instead of editing its
input.  Coordinates are 0-based, half-open, as in pysam.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, NamedTuple, Optional, Sequence

import pandas as pd


class ReferenceTrack(str, Enum):
    """The two reference axes every stage is parameterised by."""

    HUMAN = "human"
    VIRUS = "virus"

    @property
    def partner(self) -> "ReferenceTrack":
        return ReferenceTrack.VIRUS if self is ReferenceTrack.HUMAN else ReferenceTrack.HUMAN


TRACKS: tuple[ReferenceTrack, ...] = (ReferenceTrack.HUMAN, ReferenceTrack.VIRUS)


class UnitKey(NamedTuple):
    """Identity of one independent unit of work."""

    sample_id: str
    track: ReferenceTrack

    def __str__(self) -> str:
        return f"{self.sample_id}/{self.track.value}"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReferenceBundle:
    """Searchable index + gene annotation for one track."""

    track: ReferenceTrack
    index: Optional[Path] = None
    annotation: Optional[Path] = None


@dataclass(frozen=True)
class Sample:
    """One input specimen from the manifest."""

    sample_id: str
    read1: Optional[Path] = None
    read2: Optional[Path] = None
    is_paired: bool = False
    human_bam: Optional[Path] = None  # pre-aligned input, skips the aligner
    virus_bam: Optional[Path] = None

    def alignment_for(self, track: ReferenceTrack) -> Optional[Path]:
        return self.human_bam if track is ReferenceTrack.HUMAN else self.virus_bam

    @property
    def read_files(self) -> tuple[Path, ...]:
        return tuple(p for p in (self.read1, self.read2) if p is not None)


# ---------------------------------------------------------------------------
# Alignments
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class Coordinate:
    contig: str
    start: int
    end: int

    def overlaps(self, start: int, end: int) -> bool:
        return self.start < end and start < self.end


@dataclass(frozen=True)
class AlignmentRecord:
    """One read's mapping outcome against one reference."""

    read_id: str
    mapped: bool
    track: ReferenceTrack
    coordinate: Optional[Coordinate] = None
    primary: bool = True  # False for secondary / supplementary alignments

    def __post_init__(self) -> None:
        if not self.mapped and self.coordinate is not None:
            raise ValueError(f"Unmapped record '{self.read_id}' cannot carry a coordinate")


def _coordinate_key(rec: AlignmentRecord, rank: dict[str, int]) -> tuple:
    if rec.mapped and rec.coordinate is not None:
        c = rec.coordinate
        return (0, rank.get(c.contig, len(rank)), c.contig, c.start, c.end)
    # unmapped reads sort last, as samtools does
    return (1, 0, "", 0, 0)


@dataclass(frozen=True)
class AlignmentStore:
    """Coordinate-sorted records of one (sample, track), indexed by read_id."""

    sample_id: str
    track: ReferenceTrack
    records: tuple[AlignmentRecord, ...] = ()
    path: Optional[Path] = field(default=None, compare=False)
    _index: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "records", tuple(self.records))
        index: dict[str, list[int]] = {}
        for i, rec in enumerate(self.records):
            if rec.track is not self.track:
                raise ValueError(
                    f"Record '{rec.read_id}' belongs to the {rec.track.value} track, "
                    f"not {self.track.value}"
                )
            index.setdefault(rec.read_id, []).append(i)
        object.__setattr__(self, "_index", {k: tuple(v) for k, v in index.items()})

    @classmethod
    def from_records(
        cls,
        sample_id: str,
        track: ReferenceTrack,
        records: Iterable[AlignmentRecord],
        *,
        path: Optional[Path] = None,
        contig_order: Optional[Sequence[str]] = None,
    ) -> "AlignmentStore":
        """Build a store, sorting *records* by coordinate (stable for ties)."""
        rank = {name: i for i, name in enumerate(contig_order or ())}
        ordered = sorted(records, key=lambda r: _coordinate_key(r, rank))
        return cls(sample_id, track, tuple(ordered), path=path)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[AlignmentRecord]:
        return iter(self.records)

    def __contains__(self, read_id: object) -> bool:
        return read_id in self._index

    def lookup(self, read_id: str) -> tuple[AlignmentRecord, ...]:
        """All records (mates, secondaries) carrying *read_id*."""
        return tuple(self.records[i] for i in self._index.get(read_id, ()))

    @property
    def unit(self) -> UnitKey:
        return UnitKey(self.sample_id, self.track)


@dataclass(frozen=True)
class FilteredAlignmentStore(AlignmentStore):
    """An AlignmentStore with every shared read removed."""

    removed: int = field(default=0, compare=False)


@dataclass(frozen=True)
class ReadIdSet:
    sample_id: str
    track: ReferenceTrack
    ids: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "ids", frozenset(self.ids))

    def __len__(self) -> int:
        return len(self.ids)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.ids))

    def __contains__(self, read_id: object) -> bool:
        return read_id in self.ids


@dataclass(frozen=True)
class SharedReadSet:
    """Reads mapped in both tracks of one sample."""

    sample_id: str
    ids: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "ids", frozenset(self.ids))

    def __len__(self) -> int:
        return len(self.ids)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.ids))

    def __contains__(self, read_id: object) -> bool:
        return read_id in self.ids


# ---------------------------------------------------------------------------
# Transcripts and abundance
# ---------------------------------------------------------------------------

TRANSCRIPT_COLUMNS = [
    "transcript_id",
    "gene_id",
    "contig",
    "strand",
    "start",
    "end",
    "length",
    "reads",
    "coverage",
    "fpkm",
    "tpm",
]
GENE_COLUMNS = ["gene_id", "contig", "strand", "start", "end", "reads", "fpkm", "tpm"]


def merge_intervals(intervals: Iterable[tuple[int, int]], gap: int = 0) -> tuple[tuple[int, int], ...]:
    """Union of half-open intervals; those within *gap* bp are fused."""
    merged: list[list[int]] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1] + gap:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return tuple((s, e) for s, e in merged)


@dataclass(frozen=True)
class Transcript:
    transcript_id: str
    gene_id: str
    contig: str
    strand: str
    exons: tuple[tuple[int, int], ...]
    reference: bool = True  # False for novel loci assembled from reads

    def __post_init__(self) -> None:
        if not self.exons:
            raise ValueError(f"Transcript '{self.transcript_id}' has no exons")
        object.__setattr__(self, "exons", merge_intervals(self.exons))

    @property
    def start(self) -> int:
        return self.exons[0][0]

    @property
    def end(self) -> int:
        return self.exons[-1][1]

    @property
    def length(self) -> int:
        return sum(e - s for s, e in self.exons)

    def overlaps(self, coord: Coordinate) -> bool:
        if coord.contig != self.contig:
            return False
        return any(coord.overlaps(s, e) for s, e in self.exons)


def aggregate_genes(transcripts: pd.DataFrame) -> pd.DataFrame:
    """Sum transcript-level abundance into one row per gene."""
    if transcripts.empty:
        return pd.DataFrame(columns=GENE_COLUMNS)
    genes = (
        transcripts.groupby("gene_id", sort=True)
        .agg(
            contig=("contig", "first"),
            strand=("strand", "first"),
            start=("start", "min"),
            end=("end", "max"),
            reads=("reads", "sum"),
            fpkm=("fpkm", "sum"),
            tpm=("tpm", "sum"),
        )
        .reset_index()
    )
    return genes[GENE_COLUMNS]


@dataclass(frozen=True, eq=False)
class TranscriptModel:
    """Pass-1 assembly for one (sample, track)."""

    sample_id: str
    track: ReferenceTrack
    transcripts: tuple[Transcript, ...]
    abundance: pd.DataFrame

    @property
    def genes(self) -> pd.DataFrame:
        return aggregate_genes(self.abundance)

    @property
    def transcript_ids(self) -> frozenset[str]:
        return frozenset(t.transcript_id for t in self.transcripts)

    @property
    def is_empty(self) -> bool:
        return not self.transcripts


@dataclass(frozen=True, eq=False)
class MergedTranscriptModel:
    """Run-wide reference transcript set for one track."""

    track: ReferenceTrack
    transcripts: tuple[Transcript, ...]
    samples: tuple[str, ...] = ()
    excluded: tuple[tuple[str, str], ...] = ()  # (sample_id, reason)
    path: Optional[Path] = None

    @property
    def transcript_ids(self) -> frozenset[str]:
        return frozenset(t.transcript_id for t in self.transcripts)

    @property
    def excluded_samples(self) -> dict[str, str]:
        return dict(self.excluded)


@dataclass(frozen=True, eq=False)
class AbundanceTable:
    """Pass-2 abundance for one (sample, track)."""

    sample_id: str
    track: ReferenceTrack
    transcripts: pd.DataFrame
    genes: pd.DataFrame
