"""
Exception hierarchy for ViroSplit.

Every error that is fatal for a single (sample, track) unit derives from
:class:`ViroSplitError`; the orchestrator records these per unit and keeps
the rest of the cohort running.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional


class ViroSplitError(Exception):
    """Base class for pipeline errors attributable to one sample or track."""

    sample_id: Optional[str] = None
    track: Optional[str] = None


class InputMissing(ViroSplitError):
    """A read file, alignment or reference bundle could not be located."""

    def __init__(self, path: Optional[Path], *, sample_id: Optional[str] = None,
                 track: Optional[str] = None, what: str = "input") -> None:
        self.path = path
        self.sample_id = sample_id
        self.track = track
        where = f" for sample '{sample_id}'" if sample_id else ""
        where += f" ({track} track)" if track else ""
        super().__init__(f"Missing {what}{where}: {path if path is not None else 'not configured'}")


class MalformedAlignment(ViroSplitError):
    """An alignment store contains read identifiers that violate the QNAME grammar."""

    def __init__(self, sample_id: str, track: str, examples: Iterable[str], n_bad: int) -> None:
        self.sample_id = sample_id
        self.track = track
        self.examples = tuple(examples)
        self.n_bad = n_bad
        shown = ", ".join(repr(e) for e in self.examples)
        super().__init__(
            f"{n_bad} malformed read identifier(s) in {track} alignment of '{sample_id}': {shown}"
        )


class ReferenceMismatch(ViroSplitError):
    """Read identifiers of the two tracks have incompatible formats."""

    def __init__(self, sample_id: str, shapes_a: Iterable, shapes_b: Iterable) -> None:
        self.sample_id = sample_id
        self.shapes_a = tuple(sorted(shapes_a))
        self.shapes_b = tuple(sorted(shapes_b))
        super().__init__(
            f"Read identifier formats differ between tracks for '{sample_id}': "
            f"{self.shapes_a} vs {self.shapes_b}; intersection would be meaningless"
        )


class PartialCohort(ViroSplitError):
    """The merge barrier timed out with samples still outstanding."""

    def __init__(self, track: str, pending: Iterable[str]) -> None:
        self.track = track
        self.pending = tuple(sorted(pending))
        super().__init__(
            f"Merge barrier for {track} track timed out; pending: {', '.join(self.pending)}"
        )
