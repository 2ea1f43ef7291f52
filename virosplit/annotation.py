"""
GTF annotation I/O.

Reads gene annotations (and StringTie output, which is also GTF) into
:class:`Transcript` objects and writes transcript sets back out.  GTF is
1-based and closed; everything in memory is 0-based half-open.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Iterable, Mapping, Optional

import pandas as pd

from virosplit.models import Transcript
from virosplit.utils import ensure_parent, get_logger

GTF_COLUMNS = [
    "contig",
    "source",
    "feature",
    "start",
    "end",
    "score",
    "strand",
    "frame",
    "attributes",
]


def _attr(series: pd.Series, key: str) -> pd.Series:
    return series.str.extract(rf'(?:^|;)\s*{key} "([^"]*)"', expand=False)


def read_gtf_frame(path: Path) -> pd.DataFrame:
    """Raw GTF rows with ``gene_id`` / ``transcript_id`` pulled out."""
    try:
        df = pd.read_csv(
            path,
            sep="\t",
            comment="#",
            header=None,
            names=GTF_COLUMNS,
            dtype={"contig": str, "attributes": str},
        )
    except pd.errors.EmptyDataError:
        df = pd.DataFrame(columns=GTF_COLUMNS)
    df["attributes"] = df["attributes"].fillna("")
    df["transcript_id"] = _attr(df["attributes"], "transcript_id")
    df["gene_id"] = _attr(df["attributes"], "gene_id")
    return df


def read_gtf(path: Path, *, reference: bool = True) -> tuple[Transcript, ...]:
    """
    Parse transcripts from a GTF file.

    Exon rows define structure; transcripts without exon rows fall back to
    their ``transcript`` row as a single exon.  Rows lacking a
    ``transcript_id`` (plain ``gene`` lines) are ignored.
    """
    df = read_gtf_frame(path)
    df = df.dropna(subset=["transcript_id"])
    exons = df[df["feature"] == "exon"]
    with_exons = set(exons["transcript_id"])
    fallback = df[(df["feature"] == "transcript") & ~df["transcript_id"].isin(with_exons)]
    rows = pd.concat([exons, fallback], ignore_index=True)

    transcripts = []
    for tid, grp in rows.groupby("transcript_id", sort=False):
        gene_id = grp["gene_id"].dropna()
        transcripts.append(
            Transcript(
                transcript_id=str(tid),
                gene_id=str(gene_id.iloc[0]) if len(gene_id) else str(tid),
                contig=str(grp["contig"].iloc[0]),
                strand=str(grp["strand"].iloc[0]),
                exons=tuple((int(s) - 1, int(e)) for s, e in zip(grp["start"], grp["end"])),
                reference=reference,
            )
        )
    return tuple(sorted(transcripts, key=lambda t: (t.contig, t.start, t.transcript_id)))


@lru_cache(maxsize=8)
def _load_annotation_cached(path: str) -> tuple[Transcript, ...]:
    return read_gtf(Path(path))


def load_annotation(path: Path) -> tuple[Transcript, ...]:
    """Cached :func:`read_gtf`; annotations are shared read-only by all samples."""
    log = get_logger()
    transcripts = _load_annotation_cached(str(Path(path).resolve()))
    log.debug(f"Annotation {Path(path).name}: {len(transcripts):,} transcripts")
    return transcripts


def write_gtf(
    transcripts: Iterable[Transcript],
    path: Path,
    *,
    source: str = "virosplit",
    extra: Optional[Mapping[str, Mapping[str, object]]] = None,
) -> Path:
    """
    Write transcripts (one ``transcript`` line plus its ``exon`` lines each).

    *extra* maps transcript_id to additional attributes, e.g. coverage.
    """
    ensure_parent(Path(path))
    extra = extra or {}
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(f"# {source}\n")
        for t in transcripts:
            attrs = f'gene_id "{t.gene_id}"; transcript_id "{t.transcript_id}";'
            for key, value in extra.get(t.transcript_id, {}).items():
                attrs += f' {key} "{value}";'
            fh.write(
                f"{t.contig}\t{source}\ttranscript\t{t.start + 1}\t{t.end}\t.\t{t.strand}\t.\t{attrs}\n"
            )
            for n, (s, e) in enumerate(t.exons, start=1):
                fh.write(
                    f"{t.contig}\t{source}\texon\t{s + 1}\t{e}\t.\t{t.strand}\t.\t"
                    f'gene_id "{t.gene_id}"; transcript_id "{t.transcript_id}"; exon_number "{n}";\n'
                )
    return Path(path)
