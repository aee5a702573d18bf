"""
Backend A: negative-binomial GLM with Wald test, via PyDESeq2.

The cell-means design matrix is passed to PyDESeq2 directly, so every
contrast is a numeric vector over design columns. Fit once per design,
contrast many.
"""

import logging
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from count_matrix import CountMatrix
from de_engine import DEBackend, DEResult, FittedModel, finalize_results
from design_matrix import Contrast, DesignMatrix
from nb_glm import separated_genes

logger = logging.getLogger(__name__)


class NegativeBinomialGLMBackend(DEBackend):
    """
    Negative-binomial GLM, gene-wise dispersions shrunk toward the
    mean-dispersion trend, Wald test per contrast.

    Count outliers (Cook's distance) are replaced and refit where a group has
    enough replicates; genes still flagged get no p-value and are dropped
    with the other undefined rows. Independent filtering is disabled, so the
    Benjamini-Hochberg adjustment covers every gene that keeps a p-value.
    """

    name = "nb_glm"

    def __init__(self, max_iter: int = 50, min_replicates: int = 2, n_cpus: int = 1):
        super().__init__(max_iter=max_iter, min_replicates=min_replicates)
        self.n_cpus = n_cpus

    def fit(self, matrix: CountMatrix, design: DesignMatrix) -> FittedModel:
        """
        Fit the DESeq2 model once for this design.

        Args:
            matrix: post-triage CountMatrix (genes x samples)
            design: cell-means DesignMatrix over the same samples
        """
        matrix = self._aligned_counts(matrix, design)
        counts_df = pd.DataFrame(
            matrix.values.T.copy(), index=matrix.sample_ids, columns=matrix.gene_ids
        )  # samples x genes, integers
        design_df = design.matrix.copy()
        metadata_df = pd.DataFrame(
            {"group": design_df.idxmax(axis=1)}, index=design_df.index
        )

        inference = DefaultInference(n_cpus=self.n_cpus)
        dds = DeseqDataSet(
            counts=counts_df,
            metadata=metadata_df,
            design=design_df,
            refit_cooks=True,
            inference=inference,
            quiet=True,
        )
        dds.deseq2()
        logger.info(
            f"{self.name}: fitted {matrix.n_genes} genes x {matrix.n_samples} samples "
            f"on design columns {design.columns}"
        )
        return FittedModel(
            backend=self.name,
            design=design,
            gene_ids=matrix.gene_ids,
            state={"dds": dds, "counts": matrix.values, "inference": inference},
            provenance=matrix.provenance,
        )

    def test(self, model: FittedModel, contrast: Contrast) -> DEResult:
        """Wald test of one numeric contrast on a fitted model."""
        vector = self._check_contrast(model, contrast)
        dds = model.state["dds"]

        stat_res = DeseqStats(
            dds,
            contrast=vector,
            cooks_filter=True,
            independent_filter=False,
            inference=model.state["inference"],
            quiet=True,
        )
        stat_res.summary()

        results_df = stat_res.results_df.copy()
        results_df.index.name = None
        results_df = results_df.reset_index()
        results_df.columns = ["gene"] + list(results_df.columns[1:])
        # Columns: gene, baseMean, log2FoldChange, lfcSE, stat, pvalue, padj
        results_df = results_df.drop(columns=["padj"])

        columns = [model.design.columns.index(c) for c in contrast.referenced_columns]
        separated = separated_genes(model.state["counts"], model.design.values, columns)
        separated = pd.Series(separated, index=model.gene_ids).reindex(results_df["gene"])

        return finalize_results(
            results_df,
            backend=self.name,
            contrast=contrast.name,
            n_filtered=model.n_filtered,
            decision_id=model.provenance,
            undefined=separated.fillna(False).to_numpy(dtype=bool),
        )
