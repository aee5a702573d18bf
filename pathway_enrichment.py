"""
Pathway Enrichment Adapter

Hands ranked gene lists from a DEResult to GSEApy and passes the returned
tables through with standardized column names. Pathway databases and the
enrichment statistics themselves are GSEApy's; nothing here validates them.

Classes:
    PathwayAdapter: gene selection plus Enrichr (ORA) and prerank (GSEA) calls
"""

import logging
import gseapy as gp
import pandas as pd
from typing import List, Optional, Sequence, Tuple

from de_engine import DEResult

logger = logging.getLogger(__name__)

ENRICHMENT_COLUMNS = ["pathway", "enrichment_score", "pvalue", "padj", "genes"]


class PathwayAdapter:
    """
    Adapter to GSEApy.

    Supports:
    - Gene selection from DE results by adjusted p-value
    - Over-representation analysis via Enrichr
    - Preranked GSEA on log2 fold changes
    - Graceful offline handling
    """

    def __init__(
        self,
        gene_sets: Sequence[str] = ("KEGG_2021_Human", "GO_Biological_Process_2023"),
        organism: str = "Human",
    ):
        self.gene_sets = list(gene_sets)
        self.organism = organism

    def select_genes(
        self, result: DEResult, padj_threshold: float = 0.05
    ) -> List[Tuple[str, float]]:
        """
        Genes with padj below the threshold, in result order.

        Args:
            result: DEResult (already sorted by padj)
            padj_threshold: adjusted p-value cut-off (default 0.05)

        Returns:
            List of (gene identifier, log2 fold change) pairs; empty if no
            gene passes
        """
        sig = result.results_df[result.results_df["padj"] < padj_threshold]
        pairs = list(zip(sig["gene"].astype(str), sig["log2FoldChange"].astype(float)))
        logger.info(
            f"Selected {len(pairs)} genes from {result.backend}/{result.contrast} "
            f"at padj < {padj_threshold}"
        )
        return pairs

    def run_enrichment(
        self, genes: Sequence[Tuple[str, float]], gene_sets: Optional[Sequence[str]] = None
    ) -> Tuple[pd.DataFrame, Optional[str]]:
        """
        Run an Enrichr over-representation query.

        Args:
            genes: (gene, log2FoldChange) pairs from select_genes
            gene_sets: Enrichr libraries (default: the adapter's gene_sets)

        Returns:
            Tuple of (results_df, error_message)
            - results_df: pathway, enrichment_score, pvalue, padj, genes
            - error_message: None if successful, error string otherwise
        """
        gene_list = [g for g, _ in genes]
        if not gene_list:
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS), "No genes provided for enrichment"

        try:
            enr = gp.enrichr(
                gene_list=gene_list,
                gene_sets=list(gene_sets or self.gene_sets),
                organism=self.organism,
                outdir=None,  # Don't save to disk
                cutoff=1.0,
            )
            return self.format_enrichr(enr.results), None
        except Exception as e:
            # Graceful offline handling
            error_msg = f"Enrichment analysis failed (possibly offline): {str(e)}"
            logger.warning(error_msg)
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS), error_msg

    def run_prerank(
        self,
        result: DEResult,
        gene_sets: Optional[Sequence[str]] = None,
        permutation_num: int = 1000,
        seed: int = 0,
    ) -> Tuple[pd.DataFrame, Optional[str]]:
        """
        Preranked GSEA on every tested gene, ranked by log2 fold change.

        Returns:
            Tuple of (results_df, error_message) as in run_enrichment
        """
        rnk = (
            result.results_df[["gene", "log2FoldChange"]]
            .sort_values("log2FoldChange", ascending=False, kind="mergesort")
            .reset_index(drop=True)
        )
        if rnk.empty:
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS), "No genes provided for enrichment"

        try:
            pre = gp.prerank(
                rnk=rnk,
                gene_sets=list(gene_sets or self.gene_sets),
                permutation_num=permutation_num,
                outdir=None,
                seed=seed,
                verbose=False,
            )
            return self.format_prerank(pre.res2d), None
        except Exception as e:
            error_msg = f"Prerank analysis failed (possibly offline): {str(e)}"
            logger.warning(error_msg)
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS), error_msg

    @staticmethod
    def format_enrichr(results_df: pd.DataFrame) -> pd.DataFrame:
        """Enrichr table to the standard columns, sorted by adjusted p-value."""
        standardized = pd.DataFrame(
            {
                "pathway": results_df["Term"],
                "enrichment_score": results_df["Combined Score"],
                "pvalue": results_df["P-value"],
                "padj": results_df["Adjusted P-value"],
                "genes": results_df["Genes"],
            }
        )
        return standardized.sort_values("padj", kind="mergesort").reset_index(drop=True)

    @staticmethod
    def format_prerank(res2d: pd.DataFrame) -> pd.DataFrame:
        """Prerank table to the standard columns, sorted by FDR."""
        genes = res2d["Lead_genes"] if "Lead_genes" in res2d else pd.Series("", index=res2d.index)
        standardized = pd.DataFrame(
            {
                "pathway": res2d["Term"],
                "enrichment_score": pd.to_numeric(res2d["NES"], errors="coerce"),
                "pvalue": pd.to_numeric(res2d["NOM p-val"], errors="coerce"),
                "padj": pd.to_numeric(res2d["FDR q-val"], errors="coerce"),
                "genes": genes,
            }
        )
        return standardized.sort_values("padj", kind="mergesort").reset_index(drop=True)
