"""
Shared utility helpers for ViroSplit.

Covers logging, per-unit subprocess execution, file-size
helpers, and elapsed-time formatting.
"""

from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler

from virosplit.models import UnitKey

console = Console(stderr=True)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_logger: Optional[logging.Logger] = None


def get_logger(log_file: Optional[Path] = None) -> logging.Logger:
    """Return (and lazily configure) the package-wide logger.

    A *log_file* passed after the logger exists is attached as an extra
    DEBUG handler, so the CLI can name the file once the output directory
    is known.
    """
    global _logger
    if _logger is None:
        _logger = logging.getLogger("virosplit")
        _logger.setLevel(logging.DEBUG)

        # Rich console handler (INFO+)
        rh = RichHandler(console=console, show_path=False, markup=True)
        rh.setLevel(logging.INFO)
        _logger.addHandler(rh)

    if log_file is not None:
        target = str(Path(log_file).resolve())
        attached = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == target
            for h in _logger.handlers
        )
        if not attached:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setLevel(logging.DEBUG)
            fmt = logging.Formatter("%(asctime)s  %(levelname)-8s  %(threadName)s  %(message)s")
            fh.setFormatter(fmt)
            _logger.addHandler(fh)

    return _logger


# ---------------------------------------------------------------------------
# Subprocess runner
# ---------------------------------------------------------------------------


def run_cmd(
    cmd: Sequence[str],
    *,
    desc: str = "",
    unit: Optional[UnitKey] = None,
    capture: bool = False,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run an external tool for one (sample, track) unit.

    Failures are logged with the unit they belong to and re-raised, so the
    orchestrator can mark that unit FAILED and carry on with the rest.
    With ``capture=False`` the tool's stderr is folded into stdout.
    """
    log = get_logger()
    where = f"{unit}: " if unit is not None else ""
    argv = [str(c) for c in cmd]
    if desc:
        log.info(f"{where}[bold cyan]{desc}[/bold cyan]")
    log.debug(f"{where}CMD: {' '.join(argv)}")

    start = time.perf_counter()
    try:
        result = subprocess.run(
            argv,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else subprocess.STDOUT,
            text=True,
            check=check,
        )
    except FileNotFoundError:
        log.error(f"{where}{argv[0]} is not installed or not on PATH")
        raise
    except subprocess.CalledProcessError as exc:
        log.error(f"{where}{Path(argv[0]).name} exited with status {exc.returncode}")
        if exc.stderr:
            log.error(f"{where}{exc.stderr.strip()[-2000:]}")
        raise

    log.debug(f"{where}{Path(argv[0]).name} finished in {fmt_elapsed(time.perf_counter() - start)}")
    return result


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def file_size_human(path: Path) -> str:
    """Return human-readable file size string."""
    size = path.stat().st_size
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"


def fmt_elapsed(seconds: float) -> str:
    """Format seconds into H:MM:SS or M:SS."""
    h, rem = divmod(int(seconds), 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def ensure_parent(path: Path) -> Path:
    """Create parent directories and return *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    return path
