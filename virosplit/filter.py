"""
Alignment filtering module.

Removes every record whose read identifier is in the sample's shared-read
set.  The same :class:`SharedReadSet` is applied to the human and the viral
alignment, so the two filtered tracks are read-disjoint by construction.

Records are dropped by identifier, so mates, secondary and supplementary
alignments of a shared read all go.  Retained records keep their
coordinate order.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import pysam

from virosplit.extract import open_mode
from virosplit.models import AlignmentStore, FilteredAlignmentStore, SharedReadSet
from virosplit.utils import file_size_human, get_logger


def filter_alignment_store(
    store: AlignmentStore,
    shared: SharedReadSet,
    *,
    path: Optional[Path] = None,
) -> FilteredAlignmentStore:
    """
    Return a new store without the records of shared reads.

    Applying the filter twice with the same set changes nothing the
    second time.
    """
    if store.sample_id != shared.sample_id:
        raise ValueError(
            f"Shared reads of '{shared.sample_id}' applied to store of '{store.sample_id}'"
        )
    kept = tuple(rec for rec in store if rec.read_id not in shared)
    return FilteredAlignmentStore(
        store.sample_id,
        store.track,
        kept,
        path=path,
        removed=len(store) - len(kept),
    )


def write_filtered_bam(src: Path, shared: SharedReadSet, dst: Path) -> tuple[int, int]:
    """
    Stream *src* (BAM or SAM) into *dst* without shared reads and index
    the result.

    The output is written next to *dst* under a temporary name and moved
    into place once complete, replacing any earlier file and its index.

    Returns ``(kept, removed)`` record counts.
    """
    log = get_logger()
    dst = Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)
    partial = dst.with_name(f".{dst.name}.partial")
    kept = removed = 0
    with pysam.AlignmentFile(str(src), open_mode(src)) as bam_in, pysam.AlignmentFile(
        str(partial), "wb", template=bam_in
    ) as bam_out:
        for aln in bam_in.fetch(until_eof=True):
            if aln.query_name in shared:
                removed += 1
                continue
            bam_out.write(aln)
            kept += 1
    stale_index = dst.with_name(dst.name + ".bai")
    if stale_index.exists():
        stale_index.unlink()
    os.replace(partial, dst)
    pysam.index(str(dst))
    log.debug(f"Filtered BAM: {dst.name} kept={kept:,} removed={removed:,} ({file_size_human(dst)})")
    return kept, removed


def filter_sample(
    human: AlignmentStore,
    virus: AlignmentStore,
    shared: SharedReadSet,
    output_dirs: Optional[dict] = None,
) -> tuple[FilteredAlignmentStore, FilteredAlignmentStore]:
    """
    Filter both tracks of one sample with the same shared-read set.

    *output_dirs* maps each track to a directory; a BAM-backed store then
    also gets a filtered BAM there, and the returned store points at it.
    """
    log = get_logger()
    if human.track is virus.track:
        raise ValueError(f"{human.sample_id}: both stores are from the {human.track.value} track")
    result = []
    for store in (human, virus):
        out_path = None
        if output_dirs and store.path is not None:
            out_path = Path(output_dirs[store.track]) / f"{store.sample_id}.filtered.bam"
        filtered = filter_alignment_store(store, shared, path=out_path)
        if out_path is not None:
            kept, _ = write_filtered_bam(store.path, shared, out_path)
            if kept != len(filtered):
                raise ValueError(
                    f"{out_path.name}: {kept:,} records written but the store kept {len(filtered):,}"
                )
        log.info(
            f"{store.sample_id}/{store.track.value}: kept {len(filtered):,} of "
            f"{len(store):,} records ({filtered.removed:,} shared removed)"
        )
        result.append(filtered)
    return result[0], result[1]
