#!/usr/bin/env python3
"""
Gene/bin helpers - place protein-coding genes onto the copy-number bins.

Works from a local GTF or gene BED file; nothing is fetched remotely.
"""
import argparse
import logging
import re
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from cn_store import load_bin_calls, normalize_chrom, setup_logging

logger = logging.getLogger(__name__)

AUTOSOMES = [f"chr{i}" for i in range(1, 23)]


def get_gene_name(attr_field: str) -> str:
    """Extract gene_name or gene_id from GTF attributes using regex"""
    m = re.search(r'gene_name "([^"]+)"', attr_field)
    if m:
        return m.group(1)
    m = re.search(r'gene_id "([^"]+)"', attr_field)
    if m:
        return m.group(1)
    return "NA"


def get_gene_biotype(attr_field: str) -> Optional[str]:
    m = re.search(r'gene_(?:bio)?type "([^"]+)"', attr_field)
    return m.group(1) if m else None


def gtf_to_bed(gtf_path: str, bed_out: str, biotype: Optional[str] = "protein_coding") -> int:
    """Write gene features of a GTF as BED (chrom,start,end,gene,strand). Returns genes written."""
    n = 0
    with open(gtf_path, "r") as fin, open(bed_out, "w") as fout:
        for line in fin:
            if not line or line.startswith("#"):
                continue
            parts = line.rstrip("\n").split("\t")
            if len(parts) < 9:
                continue
            chrom, source, feature, start, end, score, strand, frame, attrs = parts
            if feature != "gene":
                continue
            if biotype and get_gene_biotype(attrs) != biotype:
                continue
            try:
                start0 = max(0, int(start) - 1)  # GTF is 1-based inclusive; BED is 0-based half-open
                end0 = int(end)
            except ValueError:
                continue
            fout.write(f"{chrom}\t{start0}\t{end0}\t{get_gene_name(attrs)}\t{strand}\n")
            n += 1
    logger.info(f"Wrote {n:,} genes to {bed_out}")
    return n


def load_genes_bed(genes_bed: str) -> pd.DataFrame:
    """Load gene BED file: chrom,start,end,gene[,strand]"""
    g = pd.read_csv(genes_bed, sep="\t", header=None, comment="#")
    if g.shape[1] < 4:
        raise ValueError(f"Gene BED needs at least 4 columns (chrom,start,end,gene), got {g.shape[1]}")
    g = g.iloc[:, :5]
    g.columns = ["chrom", "start", "end", "gene", "strand"][:g.shape[1]]
    g["chrom"] = g["chrom"].map(normalize_chrom)
    g["start"] = pd.to_numeric(g["start"], errors="coerce")
    g["end"] = pd.to_numeric(g["end"], errors="coerce")
    g = g.dropna(subset=["start", "end"])
    g = g[(g["chrom"] != "") & (g["start"] < g["end"])]
    g["gene"] = g["gene"].astype(str).str.strip()
    return g.reset_index(drop=True)


def _gene_midpoints(genes: pd.DataFrame) -> np.ndarray:
    return np.round((genes["end"].to_numpy() - genes["start"].to_numpy()) / 2 + genes["start"].to_numpy())


def gene_bin_index(bins: pd.DataFrame, genes: pd.DataFrame,
                   chroms: Optional[Iterable[str]] = None) -> pd.DataFrame:
    """
    Index of the bin containing each gene's midpoint.

    Genes are restricted to `chroms` (autosomes by default) and sorted by
    position; genes whose midpoint falls in no bin are dropped.

    Returns:
        DataFrame: gene, chrom, mid_point, bin_index
    """
    chroms = list(chroms) if chroms is not None else AUTOSOMES
    g = genes[genes["chrom"].isin(chroms)].copy()
    g["_rank"] = g["chrom"].map(_chrom_rank)
    g = g.sort_values(["_rank", "start"], kind="stable")
    g["mid_point"] = _gene_midpoints(g).astype("int64")

    rows = []
    for chrom, sub in g.groupby("chrom", sort=False):
        on_chrom = bins.index[bins["chrom"] == chrom]
        if len(on_chrom) == 0:
            continue
        starts = bins.loc[on_chrom, "start"].to_numpy()
        ends = bins.loc[on_chrom, "end"].to_numpy()
        for gene, mid in zip(sub["gene"], sub["mid_point"]):
            hit = np.flatnonzero((starts <= mid) & (ends >= mid))
            if len(hit):
                rows.append({"gene": gene, "chrom": chrom, "mid_point": int(mid),
                             "bin_index": int(on_chrom[hit[0]])})
    out = pd.DataFrame(rows, columns=["gene", "chrom", "mid_point", "bin_index"])
    logger.info(f"Placed {len(out):,} / {len(g):,} genes onto bins")
    return out


def count_genes_per_bin(bins: pd.DataFrame, genes: pd.DataFrame) -> pd.DataFrame:
    """Number of genes overlapping each bin."""
    counts = np.zeros(len(bins), dtype=int)
    for chrom, sub in genes.groupby("chrom", sort=False):
        idx = np.flatnonzero(bins["chrom"].to_numpy() == chrom)
        if len(idx) == 0:
            continue
        bs = bins["start"].to_numpy()[idx]
        be = bins["end"].to_numpy()[idx]
        gs = sub["start"].to_numpy()
        ge = sub["end"].to_numpy()
        overlap = (gs[None, :] <= be[:, None]) & (ge[None, :] >= bs[:, None])
        counts[idx] = overlap.sum(axis=1)
    out = bins[["chrom", "start", "end"]].copy()
    out["gene_number"] = counts
    return out


def _chrom_rank(chrom: str) -> int:
    s = str(chrom).replace("chr", "")
    if s.isdigit():
        return int(s)
    return {"X": 23, "Y": 24, "M": 25}.get(s, 26)


def main():
    parser = argparse.ArgumentParser(description="Convert GTF genes to BED and/or count genes per copy-number bin")
    parser.add_argument("--gtf", help="Input GTF file (gene features)")
    parser.add_argument("--bed-out", help="Output BED file path (with --gtf)")
    parser.add_argument("--biotype", default="protein_coding", help="Keep genes of this biotype ('' for all)")
    parser.add_argument("--genes", help="Gene BED (chrom,start,end,gene[,strand])")
    parser.add_argument("--bins", help="Copy-number call table (chrom,start,end,...) providing bins")
    parser.add_argument("--out", help="Output table of genes per bin")
    args = parser.parse_args()

    setup_logging(1)
    genes_path = args.genes
    if args.gtf:
        if not args.bed_out:
            parser.error("--bed-out is required with --gtf")
        gtf_to_bed(args.gtf, args.bed_out, biotype=args.biotype or None)
        genes_path = genes_path or args.bed_out
    if args.bins and genes_path:
        bins, _ = load_bin_calls(args.bins, saturate=False)
        counts = count_genes_per_bin(bins, load_genes_bed(genes_path))
        counts.to_csv(args.out or "genes_per_bin.csv", index=False)


if __name__ == "__main__":
    main()
