"""
Configuration management for ViroSplit.

Centralises default parameters, external tool paths, resource limits,
per-track reference bundles and quantifier settings so that every module
shares a single source of truth.
"""

from __future__ import annotations

import multiprocessing
import platform
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import psutil

from virosplit.models import ReferenceBundle, ReferenceTrack


# ---------------------------------------------------------------------------
# External tool discovery
# ---------------------------------------------------------------------------


def _find_tool(name: str) -> Optional[str]:
    """Return the absolute path to *name* if it is on PATH, else None."""
    return shutil.which(name)


def find_tools() -> dict[str, Optional[str]]:
    """Scan PATH for every external binary ViroSplit may call."""
    names = [
        "hisat2",
        "hisat2-build",
        "bowtie2",
        "bowtie2-build",
        "samtools",
        "stringtie",
    ]
    return {n: _find_tool(n) for n in names}


def require_tool(name: str) -> str:
    """Return the path to *name* or raise with a helpful message."""
    path = _find_tool(name)
    if path is None:
        raise EnvironmentError(
            f"Required external tool '{name}' was not found on PATH.\n"
            f"Please install it and make sure it is accessible.\n"
            f"  - hisat2:    https://github.com/DaehwanKimLab/hisat2\n"
            f"  - bowtie2:   https://github.com/BenLangmead/bowtie2\n"
            f"  - samtools:  https://github.com/samtools/samtools\n"
            f"  - stringtie: https://github.com/gpertea/stringtie\n"
        )
    return path


# ---------------------------------------------------------------------------
# System resource helpers
# ---------------------------------------------------------------------------


def total_memory_gb() -> float:
    """Return total physical memory in GiB."""
    return psutil.virtual_memory().total / (1024**3)


def default_threads() -> int:
    """Sensible default thread count (leave 1–2 cores free)."""
    n = multiprocessing.cpu_count()
    return max(1, n - 2)


def default_jobs() -> int:
    """Concurrent sample units; each external tool call also uses threads."""
    return max(1, min(4, default_threads() // 2))


# ---------------------------------------------------------------------------
# Pipeline configuration dataclass
# ---------------------------------------------------------------------------


PLOT_FORMATS = ("png", "pdf", "svg")


@dataclass
class ViroSplitConfig:
    """Master configuration object passed through the pipeline."""

    # --- I/O ---
    output_dir: Path = field(default_factory=lambda: Path("virosplit_output"))
    temp_dir: Optional[Path] = None  # defaults to output_dir / "tmp"
    log_file: Optional[Path] = None  # defaults to output_dir / "virosplit.log"

    # --- Computing resources ---
    threads: int = field(default_factory=default_threads)
    max_memory_gb: float = field(default_factory=lambda: min(total_memory_gb() * 0.8, 28.0))
    jobs: int = field(default_factory=default_jobs)  # (sample, track) units in flight

    # --- Alignment (external) ---
    aligner: str = "hisat2"  # "hisat2" or "bowtie2"
    human_index: Optional[Path] = None
    virus_index: Optional[Path] = None
    align_extra_args: str = ""

    # --- Annotation ---
    human_annotation: Optional[Path] = None
    virus_annotation: Optional[Path] = None

    # --- Quantification ---
    quantifier: str = "builtin"  # "builtin" or "stringtie"
    min_novel_reads: int = 3  # fragments needed to call a novel locus
    merge_gap: int = 50  # bp; StringTie's default -g
    em_max_iter: int = 500
    em_tolerance: float = 1e-6
    barrier_timeout: Optional[float] = None  # seconds; None waits forever

    # --- Visualisation ---
    top_n_genes: int = 20
    plot_formats: tuple = ("png", "pdf")  # any of png, pdf, svg
    dpi: int = 300

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        if self.temp_dir is None:
            self.temp_dir = self.output_dir / "tmp"
        else:
            self.temp_dir = Path(self.temp_dir)
        if self.log_file is None:
            self.log_file = self.output_dir / "virosplit.log"
        else:
            self.log_file = Path(self.log_file)
        for name in ("human_index", "virus_index", "human_annotation", "virus_annotation"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, Path(value))
        if self.aligner not in ("hisat2", "bowtie2"):
            raise ValueError(f"Unknown aligner '{self.aligner}' (expected hisat2 or bowtie2)")
        if self.quantifier not in ("builtin", "stringtie"):
            raise ValueError(
                f"Unknown quantifier '{self.quantifier}' (expected builtin or stringtie)"
            )
        self.plot_formats = tuple(self.plot_formats)
        unknown = set(self.plot_formats) - set(PLOT_FORMATS)
        if unknown:
            raise ValueError(
                f"Unknown plot format(s) {sorted(unknown)} (expected {', '.join(PLOT_FORMATS)})"
            )

    def ensure_dirs(self) -> None:
        """Create output and temp directories if they do not exist."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def reference(self, track: ReferenceTrack) -> ReferenceBundle:
        """Return the index + annotation bundle configured for *track*."""
        if track is ReferenceTrack.HUMAN:
            return ReferenceBundle(track, self.human_index, self.human_annotation)
        return ReferenceBundle(track, self.virus_index, self.virus_annotation)

    def stage_dir(self, stage: str, track: Optional[ReferenceTrack] = None) -> Path:
        """Numbered output directory for *stage*, optionally split by track."""
        d = self.output_dir / stage
        if track is not None:
            d = d / track.value
        return d

    @property
    def system_summary(self) -> str:
        mem = total_memory_gb()
        cpu = multiprocessing.cpu_count()
        return (
            f"OS={platform.system()} {platform.release()}  "
            f"CPUs={cpu}  RAM={mem:.1f} GiB  "
            f"Threads={self.threads}  Jobs={self.jobs}  MaxMem={self.max_memory_gb:.1f} GiB"
        )
