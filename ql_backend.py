"""
Backend B: quasi-likelihood negative-binomial model with F-tests.

Pipeline per design:
1. expression filter on counts-per-million
2. median-of-ratios size factors as log offsets
3. robust common NB dispersion (median of gene-wise moment estimates)
4. NB GLM by IRLS
5. QL dispersion = deviance / residual df, squeezed toward an abundance trend

Per contrast the deviance of the contrast-reduced model is compared with the
full model by an F-test on the squeezed QL dispersion.
"""

from dataclasses import dataclass
import logging
import numpy as np
import pandas as pd
from scipy import stats

from count_matrix import CountMatrix
from de_engine import DEBackend, DEResult, FittedModel, finalize_results
from design_matrix import Contrast, DesignMatrix
from moderation import squeeze_var, total_df
from nb_glm import GLMFit, fit_nb_glm, reduce_design, separated_genes
from normalizer import median_ratio_size_factors

logger = logging.getLogger(__name__)

_MIN_DISPERSION = 1e-4
_MAX_DISPERSION = 10.0


@dataclass
class QLState:
    counts: np.ndarray
    offset: np.ndarray
    size_factors: np.ndarray
    dispersion: float
    glm: GLMFit
    s2_post: np.ndarray
    df_total: np.ndarray
    df_prior: float
    ave_log_cpm: np.ndarray


def expression_filter(
    counts: np.ndarray, min_samples: int, min_count: int = 10, min_total_count: int = 15
) -> np.ndarray:
    """
    Genes expressed in enough samples to be worth testing.

    A gene passes if its CPM reaches min_count / median library size * 1e6
    in at least min_samples samples and its total count is >= min_total_count.
    """
    counts = np.asarray(counts, dtype=np.float64)
    lib = counts.sum(axis=0)
    cpm = counts / lib[None, :] * 1e6
    cpm_cutoff = min_count / np.median(lib) * 1e6
    keep = (cpm >= cpm_cutoff).sum(axis=1) >= min_samples
    return keep & (counts.sum(axis=1) >= min_total_count)


def common_dispersion(
    counts: np.ndarray, design: np.ndarray, offset: np.ndarray, max_iter: int = 10
) -> float:
    """
    Robust common NB dispersion.

    Starts from a Poisson fit, takes the median of gene-wise moment estimates
    sum(((y - mu)^2 - mu) / mu^2) / df, refits with that dispersion and
    repeats until the estimate settles or the iteration cap is hit.
    """
    y = np.asarray(counts, dtype=np.float64)
    df_res = y.shape[1] - int(np.linalg.matrix_rank(design))
    phi = 0.0
    for i in range(max_iter):
        mu = fit_nb_glm(y, design, offset, phi, max_iter=25).fitted
        mu = np.maximum(mu, 1e-8)
        moments = np.sum(((y - mu) ** 2 - mu) / mu**2, axis=1) / max(df_res, 1)
        new_phi = float(np.clip(np.median(moments), _MIN_DISPERSION, _MAX_DISPERSION))
        if abs(new_phi - phi) < 1e-4 * max(new_phi, _MIN_DISPERSION):
            return new_phi
        phi = new_phi
    logger.warning(f"Common dispersion did not settle after {max_iter} iterations (phi={phi:.4g})")
    return phi


class QuasiLikelihoodBackend(DEBackend):
    """Common-dispersion NB GLM with empirical-Bayes QL F-tests."""

    name = "ql_nb"

    def __init__(
        self,
        max_iter: int = 50,
        min_replicates: int = 2,
        min_count: int = 10,
        min_total_count: int = 15,
    ):
        super().__init__(max_iter=max_iter, min_replicates=min_replicates)
        self.min_count = min_count
        self.min_total_count = min_total_count

    def fit(self, matrix: CountMatrix, design: DesignMatrix) -> FittedModel:
        matrix = self._aligned_counts(matrix, design)
        X = design.values
        raw = matrix.values.astype(np.float64)

        keep = expression_filter(
            raw,
            min_samples=int(design.group_sizes.min()),
            min_count=self.min_count,
            min_total_count=self.min_total_count,
        )
        n_filtered = int((~keep).sum())
        counts = raw[keep]
        gene_ids = [g for g, k in zip(matrix.gene_ids, keep) if k]
        logger.info(
            f"{self.name}: expression filter kept {len(gene_ids)} of {matrix.n_genes} genes"
        )

        sf = median_ratio_size_factors(counts) if len(gene_ids) else np.ones(raw.shape[1])
        offset = np.log(sf)
        phi = common_dispersion(counts, X, offset, max_iter=self.max_iter)
        glm = fit_nb_glm(counts, X, offset, phi, max_iter=self.max_iter)

        df_res = glm.df_residual
        s2 = glm.deviance / df_res
        lib = counts.sum(axis=0)
        ave_log_cpm = np.log2(
            np.mean((counts + 0.5) / (lib[None, :] + 1.0) * 1e6, axis=1)
        )
        squeezed = squeeze_var(s2, df_res, covariate=ave_log_cpm)
        df_total = total_df(np.full(s2.shape, float(df_res)), squeezed.df_prior)

        logger.info(
            f"{self.name}: common dispersion {phi:.4g}, prior QL df {squeezed.df_prior:.3g}, "
            f"{int((~glm.converged).sum())} genes not converged"
        )
        return FittedModel(
            backend=self.name,
            design=design,
            gene_ids=gene_ids,
            state=QLState(
                counts=counts,
                offset=offset,
                size_factors=sf,
                dispersion=phi,
                glm=glm,
                s2_post=squeezed.var_post,
                df_total=df_total,
                df_prior=squeezed.df_prior,
                ave_log_cpm=ave_log_cpm,
            ),
            n_filtered=n_filtered,
            provenance=matrix.provenance,
        )

    def test(self, model: FittedModel, contrast: Contrast) -> DEResult:
        """QL F-test of the deviance increase when the contrast is constrained to zero."""
        vector = self._check_contrast(model, contrast)
        state: QLState = model.state
        X = model.design.values

        reduced = fit_nb_glm(
            state.counts,
            reduce_design(X, vector),
            state.offset,
            state.dispersion,
            max_iter=self.max_iter,
        )
        lr = np.maximum(reduced.deviance - state.glm.deviance, 0.0)
        with np.errstate(divide="ignore", invalid="ignore"):
            f_stat = lr / state.s2_post
        pvalue = stats.f.sf(f_stat, 1, state.df_total)

        lfc = state.glm.coefficients @ vector / np.log(2)
        base_mean = np.mean(state.counts / state.size_factors[None, :], axis=1)

        columns = [model.design.columns.index(c) for c in contrast.referenced_columns]
        undefined = (
            ~state.glm.converged
            | ~reduced.converged
            | separated_genes(state.counts, X, columns)
        )
        table = pd.DataFrame(
            {
                "gene": model.gene_ids,
                "log2FoldChange": lfc,
                "baseMean": base_mean,
                "pvalue": pvalue,
                "stat": f_stat,
                "logCPM": state.ave_log_cpm,
            }
        )
        return finalize_results(
            table,
            backend=self.name,
            contrast=contrast.name,
            n_filtered=model.n_filtered,
            decision_id=model.provenance,
            undefined=undefined,
        )
