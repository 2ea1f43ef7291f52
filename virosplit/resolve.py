"""
Shared-read resolution.

A read is *shared* when its identifier is mapped in both the human and the
viral alignment of the same sample.  Such reads are ambiguous
(cross-mapping contamination) and are later removed from both tracks.

The intersection is exact string equality.  It is only meaningful when the
two aligners report identifiers in the same format, so the resolver first
compares the identifier "shapes" of both sets and refuses to intersect
sets that have nothing in common.
"""

from __future__ import annotations

import re

from virosplit.errors import ReferenceMismatch
from virosplit.models import ReadIdSet, SharedReadSet
from virosplit.utils import get_logger

_MATE_SUFFIX = re.compile(r"/[12]$")

# (number of ':'-separated fields, has /1 or /2 mate suffix)
IdShape = tuple[int, bool]


def read_id_shape(read_id: str) -> IdShape:
    """Coarse format signature of one identifier."""
    has_suffix = _MATE_SUFFIX.search(read_id) is not None
    core = _MATE_SUFFIX.sub("", read_id)
    return (core.count(":") + 1, has_suffix)


def id_shapes(ids: ReadIdSet) -> frozenset[IdShape]:
    return frozenset(read_id_shape(r) for r in ids.ids)


def check_read_id_compatibility(a: ReadIdSet, b: ReadIdSet) -> None:
    """
    Raise :class:`ReferenceMismatch` when two non-empty sets share no
    identifier shape, e.g. ``HWI:1:2:3:4/1`` against ``SRR123.45``.
    """
    if not a.ids or not b.ids:
        return
    shapes_a, shapes_b = id_shapes(a), id_shapes(b)
    if shapes_a.isdisjoint(shapes_b):
        raise ReferenceMismatch(a.sample_id, shapes_a, shapes_b)


def resolve_shared_reads(a: ReadIdSet, b: ReadIdSet) -> SharedReadSet:
    """
    Intersect the two tracks' read-ID sets of one sample.

    Symmetric and deterministic; an empty input gives an empty result.

    Raises
    ------
    ValueError
        If the sets belong to different samples or to the same track.
    ReferenceMismatch
        If the identifier formats of the two tracks are incompatible.
    """
    log = get_logger()
    if a.sample_id != b.sample_id:
        raise ValueError(f"Cannot intersect read sets of '{a.sample_id}' and '{b.sample_id}'")
    if a.track is b.track:
        raise ValueError(f"Both read sets of '{a.sample_id}' are from the {a.track.value} track")

    check_read_id_compatibility(a, b)
    shared = SharedReadSet(a.sample_id, a.ids & b.ids)

    if shared:
        smaller = min(len(a), len(b))
        log.info(
            f"{a.sample_id}: {len(shared):,} shared reads "
            f"({100.0 * len(shared) / smaller:.2f}% of the smaller track)"
        )
    else:
        log.info(f"{a.sample_id}: no shared reads")
    return shared
