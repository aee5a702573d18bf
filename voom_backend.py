"""
Backend C: precision-weighted linear model on log-CPM with empirical-Bayes
moderated t-tests (voom + limma).

Counts are converted to log2-CPM on TMM-scaled library sizes. An unweighted
fit gives residual standard deviations whose square roots are smoothed by
lowess against average log count; the smoothed curve evaluated at each
fitted value gives observation-level precision weights for the final
weighted least-squares fit.
"""

from dataclasses import dataclass
import logging
import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.nonparametric.smoothers_lowess import lowess

from count_matrix import CountMatrix
from de_engine import DEBackend, DEResult, FittedModel, finalize_results
from design_matrix import Contrast, DesignMatrix
from moderation import squeeze_var, total_df
from normalizer import tmm_norm_factors

logger = logging.getLogger(__name__)

_EPS = 1e-12


@dataclass
class VoomState:
    expression: np.ndarray  # genes x samples log2-CPM
    weights: np.ndarray  # genes x samples precision weights
    coefficients: np.ndarray  # genes x p
    cov_unscaled: np.ndarray  # genes x p x p
    s2_post: np.ndarray
    df_total: np.ndarray
    df_prior: float
    amean: np.ndarray
    base_mean: np.ndarray


def log_cpm(counts: np.ndarray, lib_size: np.ndarray) -> np.ndarray:
    """log2((y + 0.5) / (lib + 1) * 1e6)"""
    return np.log2((counts + 0.5) / (lib_size[None, :] + 1.0) * 1e6)


def weighted_lm_fit(y: np.ndarray, design: np.ndarray, weights: np.ndarray = None):
    """
    Gene-wise (weighted) least squares.

    Returns:
        (coefficients genes x p, unscaled covariance genes x p x p,
         residual variance per gene, fitted values genes x samples)
    """
    if weights is None:
        weights = np.ones_like(y)
    p = design.shape[1]
    df_res = design.shape[0] - int(np.linalg.matrix_rank(design))

    xtwx = np.einsum("np,gn,nq->gpq", design, weights, design)
    cov = np.linalg.inv(xtwx + 1e-12 * np.eye(p))
    xtwy = np.einsum("np,gn->gp", design, weights * y)
    beta = np.einsum("gpq,gq->gp", cov, xtwy)
    fitted = beta @ design.T
    s2 = np.sum(weights * (y - fitted) ** 2, axis=1) / max(df_res, 1)
    return beta, cov, s2, fitted


def voom_weights(
    expression: np.ndarray,
    fitted: np.ndarray,
    sigma: np.ndarray,
    lib_size: np.ndarray,
    span: float = 0.5,
) -> np.ndarray:
    """
    Observation-level precision weights from the mean-variance trend.

    sqrt(sigma) is smoothed against average log2 count; each observation's
    weight is the inverse fourth power of the trend at its fitted log2 count.
    """
    amean = expression.mean(axis=1)
    sx = amean + np.mean(np.log2(lib_size + 1.0)) - np.log2(1e6)
    sy = np.sqrt(np.clip(sigma, _EPS, None))
    trend = lowess(sy, sx, frac=span, it=3, return_sorted=True)

    fitted_count = 1e-6 * np.power(2.0, fitted) * (lib_size[None, :] + 1.0)
    fitted_logcount = np.log2(np.clip(fitted_count, _EPS, None))
    # constant beyond the observed range
    curve = np.interp(fitted_logcount, trend[:, 0], trend[:, 1])
    return 1.0 / np.power(np.clip(curve, _EPS, None), 4.0)


class VoomLimmaBackend(DEBackend):
    """voom precision weights, weighted linear model, moderated t-test."""

    name = "voom"

    def __init__(self, max_iter: int = 50, min_replicates: int = 2, span: float = 0.5):
        super().__init__(max_iter=max_iter, min_replicates=min_replicates)
        self.span = span

    def fit(self, matrix: CountMatrix, design: DesignMatrix) -> FittedModel:
        matrix = self._aligned_counts(matrix, design)
        X = design.values
        counts = matrix.values.astype(np.float64)

        factors = tmm_norm_factors(counts)
        lib_size = counts.sum(axis=0) * factors
        expression = log_cpm(counts, lib_size)

        _, _, s2_unweighted, fitted = weighted_lm_fit(expression, X)
        weights = voom_weights(expression, fitted, np.sqrt(s2_unweighted), lib_size, self.span)
        beta, cov, s2, _ = weighted_lm_fit(expression, X, weights)

        amean = expression.mean(axis=1)
        squeezed = squeeze_var(s2, design.df_residual, covariate=amean)
        df_total = total_df(np.full(s2.shape, float(design.df_residual)), squeezed.df_prior)
        scale = np.exp(np.mean(np.log(lib_size)))
        base_mean = np.mean(counts / lib_size[None, :] * scale, axis=1)

        logger.info(
            f"{self.name}: TMM factors {np.round(factors, 3).tolist()}, "
            f"prior df {squeezed.df_prior:.3g}"
        )
        return FittedModel(
            backend=self.name,
            design=design,
            gene_ids=matrix.gene_ids,
            state=VoomState(
                expression=expression,
                weights=weights,
                coefficients=beta,
                cov_unscaled=cov,
                s2_post=squeezed.var_post,
                df_total=df_total,
                df_prior=squeezed.df_prior,
                amean=amean,
                base_mean=base_mean,
            ),
            provenance=matrix.provenance,
        )

    def test(self, model: FittedModel, contrast: Contrast) -> DEResult:
        """Moderated t-test of one contrast."""
        vector = self._check_contrast(model, contrast)
        state: VoomState = model.state

        estimate = state.coefficients @ vector
        se_unscaled = np.sqrt(np.einsum("p,gpq,q->g", vector, state.cov_unscaled, vector))
        with np.errstate(divide="ignore", invalid="ignore"):
            t_stat = estimate / (se_unscaled * np.sqrt(state.s2_post))
        pvalue = 2.0 * stats.t.sf(np.abs(t_stat), state.df_total)

        table = pd.DataFrame(
            {
                "gene": model.gene_ids,
                "log2FoldChange": estimate,
                "baseMean": state.base_mean,
                "pvalue": pvalue,
                "stat": t_stat,
                "AveExpr": state.amean,
            }
        )
        return finalize_results(
            table,
            backend=self.name,
            contrast=contrast.name,
            n_filtered=model.n_filtered,
            decision_id=model.provenance,
        )
