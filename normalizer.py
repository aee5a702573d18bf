"""
Count normalization for visualization and distance-based quality signals.

Provides:
- Low-count gene pre-filtering with a fixed, logged threshold
- Median-of-ratios size factors (DESeq-style) and TMM factors (edgeR-style)
- Blind variance-stabilizing transform (parametric dispersion trend)
- Relative log expression (RLE)

The Normalizer output is never fed to the DE backends; each backend owns its
normalization policy and calls the factor functions here directly.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
import logging
import warnings
import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.stats import rankdata

from count_matrix import CountMatrix, SampleSheet
from errors import ConfigurationError

logger = logging.getLogger(__name__)


def default_min_samples(
    sheet: SampleSheet, factors: Sequence[str] = ("sex", "treatment")
) -> int:
    """Smallest group size of the factor cross: the default pre-filter minSamples."""
    sizes = sheet.group_sizes(factors)
    if sizes.empty:
        raise ConfigurationError("Sample sheet is empty")
    return int(sizes.min())


def filter_low_counts(
    matrix: CountMatrix, min_count: int = 10, min_samples: int = 3
) -> CountMatrix:
    """
    Keep genes with count >= min_count in at least min_samples samples.

    Args:
        matrix: raw CountMatrix
        min_count: per-sample count threshold (default: 10)
        min_samples: number of samples that must reach min_count

    Returns:
        New CountMatrix restricted to the retained genes
    """
    if min_samples < 1:
        raise ConfigurationError(f"min_samples must be >= 1, got {min_samples}")

    keep = (matrix.values >= min_count).sum(axis=1) >= min_samples
    n_before = matrix.n_genes
    n_after = int(keep.sum())
    logger.info(
        f"Pre-filter (count >= {min_count} in >= {min_samples} samples): "
        f"{n_before} genes -> {n_after} genes ({n_before - n_after} removed)"
    )
    if n_after == 0:
        logger.warning("Pre-filter removed every gene; check min_count / min_samples")

    gene_ids = [g for g, k in zip(matrix.gene_ids, keep) if k]
    return matrix.select_genes(gene_ids)


def median_ratio_size_factors(counts: np.ndarray) -> np.ndarray:
    """
    DESeq median-of-ratios size factors for a genes x samples count array.

    Uses genes that are non-zero in every sample. When no such gene exists the
    geometric mean is taken over positive counts only (the 'poscounts' variant).
    """
    counts = np.asarray(counts, dtype=np.float64)
    with np.errstate(divide="ignore"):
        log_counts = np.log(counts)

    all_positive = np.all(counts > 0, axis=1)
    if all_positive.any():
        log_geo = log_counts[all_positive].mean(axis=1)
        ratios = log_counts[all_positive] - log_geo[:, None]
        sf = np.exp(np.median(ratios, axis=0))
    else:
        n = counts.shape[1]
        pos = counts > 0
        masked = np.where(pos, log_counts, 0.0)
        n_pos = pos.sum(axis=1)
        usable = n_pos > 0
        log_geo = masked[usable].sum(axis=1) / n
        sf = np.empty(n)
        for j in range(n):
            sample_pos = pos[usable, j]
            sf[j] = np.exp(np.median((masked[usable, j] - log_geo)[sample_pos]))
        sf = sf / np.exp(np.mean(np.log(sf)))
    return sf


def _upper_quartile(counts: np.ndarray, lib_size: np.ndarray) -> np.ndarray:
    return np.quantile(counts / lib_size[None, :], 0.75, axis=0)


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float,
    sum_trim: float,
) -> float:
    ok = (obs > 0) & (ref > 0)
    obs = obs[ok]
    ref = ref[ok]
    if obs.size == 0:
        return 1.0

    log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
    abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
    v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    if np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2.0**f)


def tmm_norm_factors(
    counts: np.ndarray, logratio_trim: float = 0.3, sum_trim: float = 0.05
) -> np.ndarray:
    """
    Trimmed mean of M-values normalization factors (Robinson & Oshlack 2010).

    Reference sample: the one whose upper-quartile-scaled depth is closest to
    the mean. Factors are rescaled to a geometric mean of 1, so effective
    library sizes are ``lib_size * factors``.
    """
    counts = np.asarray(counts, dtype=np.float64)
    lib_size = counts.sum(axis=0)
    if np.any(lib_size <= 0):
        raise ConfigurationError("TMM normalization requires every sample to have counts")

    uq = _upper_quartile(counts, lib_size)
    ref_idx = int(np.argmin(np.abs(uq - uq.mean())))

    factors = np.array(
        [
            _tmm_factor(
                counts[:, j],
                counts[:, ref_idx],
                lib_size[j],
                lib_size[ref_idx],
                logratio_trim,
                sum_trim,
            )
            for j in range(counts.shape[1])
        ]
    )
    return factors / np.exp(np.mean(np.log(factors)))


@dataclass(frozen=True)
class DispersionTrend:
    """Fitted mean-dispersion relation used by the variance-stabilizing transform."""

    kind: str  # "parametric", "mean" or "poisson"
    asymptotic_dispersion: float
    extra_poisson: float


@dataclass(frozen=True)
class NormalizedMatrix:
    """Normalizer output: frames are genes x samples."""

    vst: pd.DataFrame
    rle: pd.DataFrame
    size_factors: pd.Series
    trend: DispersionTrend


class Normalizer:
    """
    Variance stabilization and log-ratio transforms for quality assessment.

    Args:
        max_iter: iteration cap for the parametric dispersion-trend fit
    """

    def __init__(self, max_iter: int = 10):
        self.max_iter = max_iter

    def size_factors(self, matrix: CountMatrix) -> pd.Series:
        return pd.Series(
            median_ratio_size_factors(matrix.values), index=matrix.sample_ids, name="size_factor"
        )

    def _moment_dispersions(self, normed: np.ndarray, sf: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        means = normed.mean(axis=1)
        variances = normed.var(axis=1, ddof=1)
        xim = np.mean(1.0 / sf)
        with np.errstate(divide="ignore", invalid="ignore"):
            disps = (variances - xim * means) / means**2
        disps = np.where(np.isfinite(disps), np.maximum(disps, 1e-8), 1e-8)
        return means, disps

    def fit_dispersion_trend(self, means: np.ndarray, disps: np.ndarray) -> DispersionTrend:
        """
        Fit dispersion = a0 + a1 / mean with a Gamma-family identity-link GLM.

        Genes with residual ratios outside [1e-4, 15] are excluded between
        iterations. Falls back to a constant (mean) trend if the fit fails.
        """
        usable = (means > 0) & (disps > 1e-6)
        if usable.sum() < 3:
            logger.warning("Too few overdispersed genes for a dispersion trend; using log2(x+1)")
            return DispersionTrend("poisson", 0.0, 0.0)

        m = means[usable]
        d = disps[usable]
        coefs = np.array([0.1, 1.0])
        for _ in range(self.max_iter):
            residuals = d / (coefs[0] + coefs[1] / m)
            good = (residuals > 1e-4) & (residuals < 15)
            if good.sum() < 3:
                break
            exog = np.column_stack([np.ones(good.sum()), 1.0 / m[good]])
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore")
                    fit = sm.GLM(
                        d[good],
                        exog,
                        family=sm.families.Gamma(link=sm.families.links.Identity()),
                    ).fit(start_params=coefs)
            except (ValueError, np.linalg.LinAlgError) as e:
                logger.warning(f"Parametric dispersion fit failed ({e}); using mean dispersion")
                break
            old = coefs
            coefs = np.asarray(fit.params)
            if not np.all(coefs > 0):
                logger.warning(
                    "Parametric dispersion trend has non-positive coefficients; "
                    "using mean dispersion"
                )
                break
            if np.sum(np.log(coefs / old) ** 2) < 1e-6:
                return DispersionTrend("parametric", float(coefs[0]), float(coefs[1]))
        else:
            logger.warning(
                f"Parametric dispersion fit did not converge in {self.max_iter} iterations; "
                "using mean dispersion"
            )

        # 10% trimmed mean, like a 'mean' fit type
        lo, hi = np.quantile(d, [0.1, 0.9])
        trimmed = d[(d >= lo) & (d <= hi)]
        return DispersionTrend("mean", float(trimmed.mean() if trimmed.size else d.mean()), 0.0)

    def variance_stabilize(
        self, matrix: CountMatrix, size_factors: Optional[pd.Series] = None
    ) -> Tuple[pd.DataFrame, DispersionTrend]:
        """
        Blind variance-stabilizing transform of a raw CountMatrix.

        Returns:
            (vst genes x samples DataFrame on a log2-like scale, fitted trend)
        """
        sf = (size_factors if size_factors is not None else self.size_factors(matrix)).to_numpy()
        normed = matrix.values / sf[None, :]
        means, disps = self._moment_dispersions(normed, sf)
        trend = self.fit_dispersion_trend(means, disps)

        a0 = trend.asymptotic_dispersion
        a1 = trend.extra_poisson
        if trend.kind == "parametric":
            vst = np.log(
                (1 + a1 + 2 * a0 * normed + 2 * np.sqrt(a0 * normed * (1 + a1 + a0 * normed)))
                / (4 * a0)
            ) / np.log(2)
        elif trend.kind == "mean" and a0 > 0:
            vst = (2 * np.arcsinh(np.sqrt(a0 * normed)) - np.log(a0) - np.log(4)) / np.log(2)
        else:
            vst = np.log2(normed + 1)

        frame = pd.DataFrame(vst, index=matrix.gene_ids, columns=matrix.sample_ids)
        return frame, trend

    def relative_log_expression(
        self, matrix: CountMatrix, size_factors: Optional[pd.Series] = None
    ) -> pd.DataFrame:
        """log2(normalized + 1) minus each gene's median across samples."""
        sf = (size_factors if size_factors is not None else self.size_factors(matrix)).to_numpy()
        log_norm = np.log2(matrix.values / sf[None, :] + 1)
        rle = log_norm - np.median(log_norm, axis=1, keepdims=True)
        return pd.DataFrame(rle, index=matrix.gene_ids, columns=matrix.sample_ids)

    def normalize(self, matrix: CountMatrix) -> NormalizedMatrix:
        if matrix.n_genes == 0:
            raise ConfigurationError("Cannot normalize a matrix with no genes")
        sf = self.size_factors(matrix)
        vst, trend = self.variance_stabilize(matrix, sf)
        rle = self.relative_log_expression(matrix, sf)
        logger.info(
            f"Normalized {matrix.n_genes} genes x {matrix.n_samples} samples "
            f"(dispersion trend: {trend.kind})"
        )
        return NormalizedMatrix(vst=vst, rle=rle, size_factors=sf, trend=trend)
