"""
Read-ID extraction module.

Turns one (sample, track) alignment into the set of read identifiers that
mapped to that reference.  Unmapped records are dropped silently (they are
expected); identifiers that break the SAM QNAME grammar are not; they are
logged and raised as :class:`MalformedAlignment`, because a coerced or
dropped identifier would corrupt the cross-track intersection downstream.

BAM access goes through pysam.  ``load_alignment_store`` keeps the
header's contig order so the in-memory store sorts exactly like the
coordinate-sorted file it came from.
"""

from __future__ import annotations

import re
from pathlib import Path

import pysam

from virosplit.errors import InputMissing, MalformedAlignment
from virosplit.models import (
    AlignmentRecord,
    AlignmentStore,
    Coordinate,
    ReadIdSet,
    ReferenceTrack,
)
from virosplit.utils import file_size_human, get_logger

# SAM v1 QNAME: [!-?A-~]{1,254}; "*" means "no name"
QNAME_RE = re.compile(r"[!-?A-~]{1,254}")
MAX_EXAMPLES = 5


def is_valid_read_id(read_id: str) -> bool:
    return read_id != "*" and QNAME_RE.fullmatch(read_id) is not None


def open_mode(path: Path) -> str:
    """pysam read mode for a BAM or plain-text SAM file."""
    return "rb" if Path(path).suffix == ".bam" else "r"


def _coordinate(aln: pysam.AlignedSegment) -> Coordinate:
    # CIGAR "*" on a mapped record leaves reference_end unset
    end = aln.reference_end
    if end is None:
        end = aln.reference_start + max(aln.query_length or 0, 1)
    return Coordinate(aln.reference_name, aln.reference_start, end)


def load_alignment_store(bam_path: Path, sample_id: str, track: ReferenceTrack) -> AlignmentStore:
    """
    Read every record of a BAM/SAM file into an :class:`AlignmentStore`.

    Secondary and supplementary alignments are kept (the filter must see
    them) but flagged ``primary=False`` so quantification can skip them.
    """
    log = get_logger()
    bam_path = Path(bam_path)
    if not bam_path.exists():
        raise InputMissing(bam_path, sample_id=sample_id, track=track.value, what="alignment")

    records: list[AlignmentRecord] = []
    with pysam.AlignmentFile(str(bam_path), open_mode(bam_path)) as bam:
        contigs = list(bam.references)
        for aln in bam.fetch(until_eof=True):
            mapped = not aln.is_unmapped and aln.reference_name is not None
            coord = _coordinate(aln) if mapped else None
            records.append(
                AlignmentRecord(
                    read_id=aln.query_name or "*",
                    mapped=mapped,
                    track=track,
                    coordinate=coord,
                    primary=not (aln.is_secondary or aln.is_supplementary),
                )
            )

    log.debug(
        f"Loaded {len(records):,} records for {sample_id}/{track.value} "
        f"from {bam_path.name} ({file_size_human(bam_path)})"
    )
    return AlignmentStore.from_records(
        sample_id, track, records, path=bam_path, contig_order=contigs
    )


def _raise_malformed(sample_id: str, track: ReferenceTrack, bad: list[str]) -> None:
    log = get_logger()
    examples = bad[:MAX_EXAMPLES]
    log.error(
        f"{len(bad):,} malformed read identifier(s) in {sample_id}/{track.value}; "
        f"first {len(examples)}: {examples}"
    )
    raise MalformedAlignment(sample_id, track.value, examples, len(bad))


def extract_read_ids(store: AlignmentStore) -> ReadIdSet:
    """
    Return the set of read identifiers with at least one mapped record.

    An empty store, or one where nothing mapped, yields an empty set.
    """
    log = get_logger()
    ids: set[str] = set()
    bad: list[str] = []
    for rec in store:
        if not is_valid_read_id(rec.read_id):
            bad.append(rec.read_id)
            continue
        if rec.mapped:
            ids.add(rec.read_id)
    if bad:
        _raise_malformed(store.sample_id, store.track, bad)

    log.info(
        f"{store.sample_id}/{store.track.value}: {len(ids):,} mapped read IDs "
        f"from {len(store):,} records"
    )
    return ReadIdSet(store.sample_id, store.track, frozenset(ids))


def extract_read_ids_from_bam(bam_path: Path, sample_id: str, track: ReferenceTrack) -> ReadIdSet:
    """Streaming variant of :func:`extract_read_ids` that never builds a store."""
    bam_path = Path(bam_path)
    if not bam_path.exists():
        raise InputMissing(bam_path, sample_id=sample_id, track=track.value, what="alignment")
    ids: set[str] = set()
    bad: list[str] = []
    with pysam.AlignmentFile(str(bam_path), open_mode(bam_path)) as bam:
        for aln in bam.fetch(until_eof=True):
            qname = aln.query_name or "*"
            if not is_valid_read_id(qname):
                bad.append(qname)
            elif not aln.is_unmapped:
                ids.add(qname)
    if bad:
        _raise_malformed(sample_id, track, bad)
    return ReadIdSet(sample_id, track, frozenset(ids))


def count_mapped_reads(bam_path: Path) -> int:
    """Number of distinct read identifiers with a mapped record."""
    seen: set[str] = set()
    with pysam.AlignmentFile(str(bam_path), open_mode(bam_path)) as bam:
        for aln in bam.fetch(until_eof=True):
            if not aln.is_unmapped:
                seen.add(aln.query_name)
    return len(seen)
