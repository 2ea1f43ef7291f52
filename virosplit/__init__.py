"""
ViroSplit: Cross-Genome Read Reconciliation and Quantification for
Virus–Host Transcriptomes.

Pipeline: FASTQ → Align human + virus (HISAT2) → Extract read IDs →
Resolve shared reads → Filter both tracks → Assemble (pass 1) →
Merge per track → Re-quantify (pass 2) → Tables + plots
"""

__version__ = "0.1.0"
__author__ = "ViroSplit Team"
