"""
Reference alignment module.

Aligns one sample's reads against one track's reference (human or viral)
and produces a coordinate-sorted, indexed BAM.  The same function serves
both tracks; only the index prefix and output directory differ.

Key design choices:
  • HISAT2 with ``--dta`` by default so spliced alignments carry the
    XS tags transcript assembly needs; Bowtie2 for unspliced references.
  • Unaligned reads are kept in the BAM (flag 4): the read-ID extractor
    reports them as unmapped rather than never seeing them.
  • Streams aligner SAM output directly into ``samtools sort`` via a pipe
    to avoid writing a large intermediate SAM file to disk.
"""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from typing import Optional

from virosplit.config import ViroSplitConfig, require_tool
from virosplit.models import ReferenceTrack, Sample, UnitKey
from virosplit.utils import file_size_human, fmt_elapsed, get_logger, run_cmd


def _aligner_cmd(
    sample: Sample, index_prefix: Path, cfg: ViroSplitConfig
) -> list[str]:
    aligner = require_tool(cfg.aligner)
    cmd = [aligner, "-x", str(index_prefix), "-p", str(cfg.threads)]
    if cfg.aligner == "hisat2":
        cmd.append("--dta")
    else:
        cmd.extend(["--very-sensitive", "--seed", "42"])
    if sample.is_paired:
        cmd.extend(["-1", str(sample.read1), "-2", str(sample.read2)])
    else:
        cmd.extend(["-U", str(sample.read1)])

    if cfg.align_extra_args:
        for arg in cfg.align_extra_args.split():
            if arg not in cmd:
                cmd.append(arg)
    return cmd


def align_to_reference(
    sample: Sample,
    track: ReferenceTrack,
    index_prefix: Path,
    output_dir: Path,
    *,
    cfg: Optional[ViroSplitConfig] = None,
) -> Path:
    """
    Align a sample's reads to one track's reference and coordinate-sort.

    Parameters
    ----------
    sample : Sample
        Sample whose read file(s) are aligned.
    track : ReferenceTrack
        Which reference the index belongs to (used for naming and logs).
    index_prefix : Path
        HISAT2 / Bowtie2 index prefix.
    output_dir : Path
        Directory for the BAM and alignment stats.
    cfg : ViroSplitConfig, optional
        Configuration object.

    Returns
    -------
    Path to ``<output_dir>/<sample_id>.sorted.bam``.
    """
    log = get_logger()
    if cfg is None:
        cfg = ViroSplitConfig()

    samtools = require_tool("samtools")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    sorted_bam = output_dir / f"{sample.sample_id}.sorted.bam"
    stats_file = output_dir / f"{sample.sample_id}.align_stats.txt"

    if sorted_bam.exists():
        log.info(f"Sorted BAM already exists, skipping alignment: {sorted_bam.name}")
        return sorted_bam

    threads = cfg.threads
    aln_cmd = _aligner_cmd(sample, index_prefix, cfg)
    sort_cmd = [
        samtools,
        "sort",
        "-@",
        str(threads),
        "-m",
        f"{max(1, int(cfg.max_memory_gb / threads))}G",
        "-T",
        str(cfg.temp_dir / f"{sample.sample_id}.{track.value}"),
        "-o",
        str(sorted_bam),
        "-",  # read from stdin
    ]
    cfg.temp_dir.mkdir(parents=True, exist_ok=True)

    log.info(
        f"Aligning {sample.sample_id} ({file_size_human(sample.read1)}) "
        f"to {track.value} index {index_prefix.name}  [{cfg.aligner}, threads={threads}]"
    )
    log.debug(f"CMD: {' '.join(aln_cmd)} | {' '.join(sort_cmd)}")
    start = time.perf_counter()

    aln_proc = subprocess.Popen(aln_cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    sort_proc = subprocess.Popen(
        sort_cmd,
        stdin=aln_proc.stdout,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    # Allow the aligner to receive SIGPIPE if sort exits
    aln_proc.stdout.close()

    _, sort_stderr = sort_proc.communicate()
    aln_stderr = aln_proc.stderr.read().decode("utf-8", errors="replace")
    aln_proc.wait()

    elapsed = time.perf_counter() - start
    stats_file.write_text(aln_stderr, encoding="utf-8")

    if aln_proc.returncode != 0:
        sorted_bam.unlink(missing_ok=True)
        raise subprocess.CalledProcessError(aln_proc.returncode, aln_cmd, stderr=aln_stderr)
    if sort_proc.returncode != 0:
        sorted_bam.unlink(missing_ok=True)
        err_msg = sort_stderr.decode("utf-8", errors="replace") if sort_stderr else ""
        raise subprocess.CalledProcessError(sort_proc.returncode, sort_cmd, stderr=err_msg)

    log.info(f"{track.value} alignment of {sample.sample_id} completed in {fmt_elapsed(elapsed)}")
    for line in aln_stderr.splitlines():
        if "overall alignment rate" in line:
            log.info(f"  {line.strip()}")
            break

    run_cmd(
        [samtools, "index", "-@", str(threads), str(sorted_bam)],
        desc=f"Indexing {sorted_bam.name}",
        unit=UnitKey(sample.sample_id, track),
    )

    log.info(f"Sorted BAM: {sorted_bam}  ({file_size_human(sorted_bam)})")
    return sorted_bam


def get_alignment_stats(stats_file: Path) -> dict:
    """
    Parse HISAT2 / Bowtie2 alignment statistics from the saved stderr output.

    Both aligners print the same summary block.  Returns a dict with keys
    like 'total_reads', 'aligned_0_times', 'aligned_1_time',
    'aligned_gt1_times', 'overall_alignment_rate'.
    """
    text = stats_file.read_text(encoding="utf-8")
    stats: dict = {}
    for line in text.splitlines():
        line = line.strip()
        if "reads; of these:" in line:
            stats["total_reads"] = int(line.split()[0])
        elif "aligned concordantly 0 times" in line or "aligned 0 times" in line:
            stats.setdefault("aligned_0_times", int(line.split()[0]))
        elif "aligned concordantly exactly 1 time" in line or "aligned exactly 1 time" in line:
            stats.setdefault("aligned_1_time", int(line.split()[0]))
        elif "aligned concordantly >1 times" in line or "aligned >1 times" in line:
            stats.setdefault("aligned_gt1_times", int(line.split()[0]))
        elif "overall alignment rate" in line:
            stats["overall_alignment_rate"] = line.split()[0]
    return stats
