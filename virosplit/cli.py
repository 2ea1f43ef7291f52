"""
Command-line interface for ViroSplit.

Usage examples
--------------
# Run the full pipeline on a cohort
virosplit run \\
    --manifest samples.csv \\
    --human-index ./refs/grch38/genome --human-gtf ./refs/grch38.gtf \\
    --virus-index ./refs/hpv16/genome  --virus-gtf ./refs/hpv16.gtf \\
    --output-dir ./results --threads 8 --jobs 4

# Run individual steps
virosplit align --sample-id S1 --read1 S1_R1.fq.gz --read2 S1_R2.fq.gz \\
    --track virus --index ./refs/hpv16/genome --output-dir ./aln
virosplit reconcile --sample-id S1 --human-bam S1.human.bam \\
    --virus-bam S1.virus.bam --output-dir ./filtered
virosplit quantify --manifest filtered.csv --track virus \\
    --annotation ./refs/hpv16.gtf --output-dir ./quant

# Check tool availability
virosplit check
"""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from virosplit import __version__
from virosplit.config import PLOT_FORMATS, ViroSplitConfig, find_tools
from virosplit.models import ReferenceTrack
from virosplit.utils import get_logger

console = Console(stderr=True)

# Banner
BANNER = r"""
 __     ___           ____        _ _ _
 \ \   / (_)_ __ ___ / ___| _ __ | (_) |_
  \ \ / /| | '__/ _ \___ \| '_ \| | | __|
   \ V / | | | | (_) |___) | |_) | | | |_
    \_/  |_|_|  \___/|____/| .__/|_|_|\__|
                           |_|
  Cross-Genome Read Reconciliation for Virus–Host Transcriptomes
"""

TRACK_CHOICE = click.Choice([t.value for t in ReferenceTrack])


# ======================================================================
# Top-level group
# ======================================================================


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__, prog_name="ViroSplit")
def main():
    """ViroSplit: Cross-Genome Read Reconciliation and Quantification."""
    pass


# ======================================================================
# virosplit check: verify external tools
# ======================================================================


@main.command()
def check():
    """Check that the external tools are installed."""
    console.print(BANNER, style="bold magenta")
    tools = find_tools()
    tbl = Table(title="External Tool Availability", show_lines=True)
    tbl.add_column("Tool", style="bold")
    tbl.add_column("Status")
    tbl.add_column("Path")

    all_ok = True
    for name, path in tools.items():
        if path:
            tbl.add_row(name, "[green]✔ Found[/green]", path)
        else:
            tbl.add_row(name, "[red]✘ Missing[/red]", "—")
            all_ok = False

    console.print(tbl)
    if all_ok:
        console.print("[bold green]All tools available![/bold green]")
    else:
        console.print(
            "[yellow]Some tools are missing. Install them and add to PATH.[/yellow]\n"
            "Alignment needs hisat2 or bowtie2 plus samtools; "
            "--quantifier stringtie needs stringtie."
        )


# ======================================================================
# virosplit align: one sample against one reference
# ======================================================================


@main.command("align")
@click.option("--sample-id", "-s", required=True, help="Sample identifier (names the BAM).")
@click.option("--read1", "-1", required=True, type=click.Path(exists=True), help="R1 FASTQ.")
@click.option("--read2", "-2", default=None, type=click.Path(exists=True), help="R2 FASTQ.")
@click.option("--track", required=True, type=TRACK_CHOICE, help="Reference the index belongs to.")
@click.option("--index", "-x", required=True, type=click.Path(), help="Aligner index prefix.")
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
@click.option(
    "--aligner", default="hisat2", type=click.Choice(["hisat2", "bowtie2"]), help="Aligner."
)
@click.option("--threads", "-t", default=None, type=int, help="Number of threads.")
def align_cmd(sample_id, read1, read2, track, index, output_dir, aligner, threads):
    """Align a sample's reads to the human or the viral reference."""
    from virosplit.align import align_to_reference
    from virosplit.models import Sample

    cfg = ViroSplitConfig(output_dir=output_dir, aligner=aligner)
    if threads:
        cfg.threads = threads
    get_logger(cfg.log_file)

    sample = Sample(
        sample_id,
        read1=Path(read1),
        read2=Path(read2) if read2 else None,
        is_paired=read2 is not None,
    )
    bam = align_to_reference(
        sample, ReferenceTrack(track), Path(index), Path(output_dir), cfg=cfg
    )
    console.print(f"[green]Alignment complete: {bam}[/green]")


# ======================================================================
# virosplit reconcile: shared reads out of both alignments
# ======================================================================


@main.command("reconcile")
@click.option("--sample-id", "-s", required=True, help="Sample identifier.")
@click.option(
    "--human-bam", required=True, type=click.Path(exists=True), help="Alignment to human."
)
@click.option(
    "--virus-bam", required=True, type=click.Path(exists=True), help="Alignment to virus."
)
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
def reconcile_cmd(sample_id, human_bam, virus_bam, output_dir):
    """Remove reads that map to both references from both alignments."""
    from virosplit.extract import extract_read_ids_from_bam
    from virosplit.filter import write_filtered_bam
    from virosplit.resolve import resolve_shared_reads

    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    get_logger(out / "virosplit.log")

    bams = {ReferenceTrack.HUMAN: Path(human_bam), ReferenceTrack.VIRUS: Path(virus_bam)}
    ids = {t: extract_read_ids_from_bam(p, sample_id, t) for t, p in bams.items()}
    shared = resolve_shared_reads(ids[ReferenceTrack.HUMAN], ids[ReferenceTrack.VIRUS])

    shared_path = out / f"{sample_id}.shared_reads.txt"
    shared_path.write_text("".join(f"{r}\n" for r in shared))

    tbl = Table(title=f"Reconciliation: {sample_id}", show_lines=True)
    tbl.add_column("Track", style="bold cyan")
    tbl.add_column("Mapped reads", justify="right")
    tbl.add_column("Records kept", justify="right")
    tbl.add_column("Records removed", justify="right")
    tbl.add_column("Filtered BAM", style="green")
    for track, bam in bams.items():
        dst = out / track.value / f"{sample_id}.filtered.bam"
        kept, removed = write_filtered_bam(bam, shared, dst)
        tbl.add_row(track.value, f"{len(ids[track]):,}", f"{kept:,}", f"{removed:,}", str(dst))
    console.print(tbl)
    console.print(f"[green]{len(shared):,} shared reads → {shared_path}[/green]")


# ======================================================================
# virosplit quantify: pass 1, merge, pass 2 for one track
# ======================================================================


@main.command("quantify")
@click.option(
    "--manifest",
    "-m",
    required=True,
    type=click.Path(exists=True),
    help="CSV/TSV with sample_id and a <track>_bam column of filtered BAMs.",
)
@click.option("--track", required=True, type=TRACK_CHOICE, help="Track to quantify.")
@click.option(
    "--annotation", "-g", required=True, type=click.Path(exists=True), help="GTF annotation."
)
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
@click.option(
    "--quantifier",
    default="builtin",
    type=click.Choice(["builtin", "stringtie"]),
    help="Assembly/quantification backend.",
)
@click.option("--min-novel-reads", default=3, show_default=True, help="Reads to call a novel locus.")
@click.option("--threads", "-t", default=None, type=int, help="Number of threads.")
def quantify_cmd(manifest, track, annotation, output_dir, quantifier, min_novel_reads, threads):
    """Two-pass quantification of already filtered alignments."""
    from virosplit.extract import load_alignment_store
    from virosplit.manifest import load_manifest
    from virosplit.quantify import build_expression_matrix, run_merge, run_pass1, run_pass2

    ref_track = ReferenceTrack(track)
    cfg = ViroSplitConfig(
        output_dir=output_dir,
        quantifier=quantifier,
        min_novel_reads=min_novel_reads,
        **{f"{track}_annotation": Path(annotation)},
    )
    if threads:
        cfg.threads = threads
    cfg.ensure_dirs()
    log = get_logger(cfg.log_file)
    bundle = cfg.reference(ref_track)

    samples = [s for s in load_manifest(Path(manifest)) if s.alignment_for(ref_track)]
    if not samples:
        raise click.UsageError(f"Manifest has no {track}_bam entries")

    stores = [load_alignment_store(s.alignment_for(ref_track), s.sample_id, ref_track) for s in samples]
    models = [run_pass1(st, bundle, cfg.stage_dir("03_assembly", ref_track), cfg) for st in stores]
    merged = run_merge(models, ref_track, bundle, cfg.stage_dir("04_merge", ref_track), cfg)
    tables = [
        run_pass2(st, merged, cfg.stage_dir("05_quantification", ref_track), cfg) for st in stores
    ]

    tables_dir = cfg.stage_dir("06_tables")
    tables_dir.mkdir(parents=True, exist_ok=True)
    for value, label in (("reads", "counts"), ("tpm", "tpm")):
        path = tables_dir / f"{track}_gene_{label}.csv"
        build_expression_matrix(tables, value).to_csv(path)
        log.info(f"Saved {track} gene {label} matrix → {path}")

    console.print(
        Panel.fit(
            f"[bold green]{len(tables)} samples quantified[/bold green]\n"
            f"Merged transcripts: {len(merged.transcripts):,}\n"
            f"Tables: {tables_dir}",
            border_style="green",
        )
    )


# ======================================================================
# virosplit run: full pipeline
# ======================================================================


@main.command("run")
@click.option(
    "--manifest",
    "-m",
    required=True,
    type=click.Path(exists=True),
    help="Sample manifest (CSV/TSV): sample_id, read1[, read2, human_bam, virus_bam].",
)
@click.option("--human-index", default=None, type=click.Path(), help="Human aligner index prefix.")
@click.option("--virus-index", default=None, type=click.Path(), help="Viral aligner index prefix.")
@click.option("--human-gtf", required=True, type=click.Path(), help="Human GTF annotation.")
@click.option("--virus-gtf", required=True, type=click.Path(), help="Viral GTF annotation.")
@click.option(
    "--output-dir", "-o", default="virosplit_output", type=click.Path(), help="Output directory."
)
@click.option("--threads", "-t", default=None, type=int, help="Threads per tool (default: auto).")
@click.option("--jobs", "-j", default=None, type=int, help="Concurrent sample units.")
@click.option(
    "--max-memory", default=None, type=float, help="Max memory in GB (default: 80% of RAM)."
)
@click.option("--aligner", default="hisat2", type=click.Choice(["hisat2", "bowtie2"]))
@click.option("--quantifier", default="builtin", type=click.Choice(["builtin", "stringtie"]))
@click.option("--min-novel-reads", default=3, help="Reads needed to call a novel locus.")
@click.option("--merge-gap", default=50, help="Gap (bp) for fusing transcripts into loci.")
@click.option(
    "--barrier-timeout",
    default=None,
    type=float,
    help="Seconds to wait for a track's cohort before merging without stragglers.",
)
@click.option("--top-n", default=20, help="Genes shown in the heatmaps.")
@click.option(
    "--plot-format",
    "plot_formats",
    multiple=True,
    default=("png", "pdf"),
    show_default=True,
    type=click.Choice(PLOT_FORMATS),
    help="Image format for plots; repeat for several.",
)
@click.option("--skip-visualize", is_flag=True, help="Skip visualisation step.")
def run_cmd(
    manifest,
    human_index,
    virus_index,
    human_gtf,
    virus_gtf,
    output_dir,
    threads,
    jobs,
    max_memory,
    aligner,
    quantifier,
    min_novel_reads,
    merge_gap,
    barrier_timeout,
    top_n,
    plot_formats,
    skip_visualize,
):
    """Run the complete ViroSplit pipeline on a cohort."""
    console.print(BANNER, style="bold magenta")

    cfg = ViroSplitConfig(
        output_dir=Path(output_dir),
        aligner=aligner,
        human_index=human_index,
        virus_index=virus_index,
        human_annotation=human_gtf,
        virus_annotation=virus_gtf,
        quantifier=quantifier,
        min_novel_reads=min_novel_reads,
        merge_gap=merge_gap,
        barrier_timeout=barrier_timeout,
        top_n_genes=top_n,
        plot_formats=plot_formats,
    )
    if threads:
        cfg.threads = threads
    if jobs:
        cfg.jobs = jobs
    if max_memory:
        cfg.max_memory_gb = max_memory

    get_logger(cfg.log_file)

    from virosplit.manifest import load_manifest
    from virosplit.pipeline import run_pipeline

    samples = load_manifest(Path(manifest))
    result = run_pipeline(samples, cfg=cfg, skip_visualize=skip_visualize)

    console.print(result.summary_table())
    if result.plots:
        console.print(f"Plots: {len(result.plots)} files in {cfg.output_dir}/07_visualisation/")
    if not result.summary.quantified:
        console.print("[bold red]No (sample, track) unit was quantified.[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
