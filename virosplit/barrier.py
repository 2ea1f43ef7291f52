"""
Per-track merge barrier.

The merge for a track may only run once every sample scheduled for that
track has either delivered its pass-1 model or been excluded.  Workers
report into the barrier; the orchestrator blocks on :meth:`TrackBarrier.wait`.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Iterable, Optional

from virosplit.errors import PartialCohort
from virosplit.models import ReferenceTrack, TranscriptModel
from virosplit.utils import get_logger


@dataclass(frozen=True)
class CohortSnapshot:
    """Who made it into a track's merge, and who did not (with reasons)."""

    track: ReferenceTrack
    models: tuple[TranscriptModel, ...]
    excluded: tuple[tuple[str, str], ...]

    @property
    def samples(self) -> tuple[str, ...]:
        return tuple(m.sample_id for m in self.models)

    @property
    def excluded_samples(self) -> dict[str, str]:
        return dict(self.excluded)


class TrackBarrier:
    """Countdown over the expected sample ids of one track."""

    def __init__(self, track: ReferenceTrack, expected: Iterable[str]) -> None:
        self.track = track
        self._cond = threading.Condition()
        self._expected = frozenset(expected)
        self._arrived: dict[str, TranscriptModel] = {}
        self._excluded: dict[str, str] = {}

    def _check(self, sample_id: str) -> None:
        if sample_id not in self._expected:
            raise ValueError(f"Sample '{sample_id}' is not scheduled for the {self.track.value} track")
        if sample_id in self._arrived or sample_id in self._excluded:
            raise ValueError(f"Sample '{sample_id}' already reported to the {self.track.value} barrier")

    def arrive(self, sample_id: str, model: TranscriptModel) -> bool:
        """
        Deliver a pass-1 model.  Returns False if the sample was already
        excluded (e.g. it arrived after a barrier timeout).
        """
        if model.track is not self.track:
            raise ValueError(f"{model.track.value} model delivered to the {self.track.value} barrier")
        with self._cond:
            if sample_id in self._excluded:
                return False
            self._check(sample_id)
            self._arrived[sample_id] = model
            self._cond.notify_all()
        return True

    def exclude(self, sample_id: str, reason: str) -> None:
        """Drop a sample from the cohort; the first recorded reason wins."""
        log = get_logger()
        with self._cond:
            if sample_id in self._excluded:
                return
            self._check(sample_id)
            self._excluded[sample_id] = reason
            self._cond.notify_all()
        log.warning(f"{sample_id} excluded from {self.track.value} merge: {reason}")

    def abandon(self, sample_id: str, reason: str) -> None:
        """Exclude *sample_id* if it has not reported yet; otherwise do nothing."""
        with self._cond:
            if sample_id not in self._pending():
                return
        self.exclude(sample_id, reason)

    def exclusion_reason(self, sample_id: str) -> Optional[str]:
        with self._cond:
            return self._excluded.get(sample_id)

    def _pending(self) -> frozenset[str]:
        return self._expected.difference(self._arrived, self._excluded)

    @property
    def pending(self) -> frozenset[str]:
        with self._cond:
            return self._pending()

    @property
    def released(self) -> bool:
        return not self.pending

    def wait(self, timeout: Optional[float] = None) -> CohortSnapshot:
        """
        Block until every expected sample has reported.

        Raises :class:`PartialCohort` if *timeout* seconds pass first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                pending = self._pending()
                if not pending:
                    return self._snapshot()
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise PartialCohort(self.track.value, pending)
                self._cond.wait(remaining)

    def release_partial(self, reason: str) -> CohortSnapshot:
        """Exclude every sample still pending and return the cohort as it stands."""
        log = get_logger()
        with self._cond:
            pending = sorted(self._pending())
            for sample_id in pending:
                self._excluded[sample_id] = reason
            self._cond.notify_all()
            snapshot = self._snapshot()
        for sample_id in pending:
            log.warning(f"{sample_id} excluded from {self.track.value} merge: {reason}")
        return snapshot

    def _snapshot(self) -> CohortSnapshot:
        models = tuple(self._arrived[s] for s in sorted(self._arrived))
        return CohortSnapshot(self.track, models, tuple(sorted(self._excluded.items())))
