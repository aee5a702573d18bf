"""
Empirical-Bayes variance moderation shared by the quasi-likelihood and
weighted-linear-model backends.

Gene-wise variances s2 with df degrees of freedom are modelled as scaled
F-distributed around a prior s0^2 (optionally trended on an abundance
covariate) with df_prior degrees of freedom; posterior variances are the
df-weighted average of the two.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess


def trigamma(x):
    return polygamma(1, x)


def trigamma_inverse(x, max_iter: int = 50, tol: float = 1e-8) -> np.ndarray:
    """
    Solve trigamma(y) = x for y by Newton iteration.

    Starting value and step follow Smyth (2004); very large and very small
    arguments use the asymptotic solutions.
    """
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    y = np.full_like(x, np.nan)

    big = x > 1e7
    small = x < 1e-6
    y[big] = 1.0 / np.sqrt(x[big])
    y[small] = 1.0 / x[small]
    mid = ~big & ~small & np.isfinite(x) & (x > 0)
    if mid.any():
        xm = x[mid]
        ym = 0.5 + 1.0 / xm
        for _ in range(max_iter):
            tri = trigamma(ym)
            dif = tri * (1 - tri / xm) / polygamma(2, ym)
            ym = ym + dif
            if np.max(-dif / ym) < tol:
                break
        y[mid] = ym
    return y


def _trend(values: np.ndarray, covariate: np.ndarray, frac: float) -> np.ndarray:
    """Lowess fit of values on covariate, returned in input order."""
    span = float(np.ptp(covariate))
    return lowess(
        values,
        covariate,
        frac=frac,
        it=3,
        delta=0.01 * span,
        return_sorted=False,
    )


def fit_f_dist(
    s2: np.ndarray,
    df: np.ndarray,
    covariate: Optional[np.ndarray] = None,
    frac: float = 0.5,
) -> Tuple[np.ndarray, float]:
    """
    Moment estimate of the scaled-F prior for gene-wise variances.

    Args:
        s2: gene-wise variance estimates
        df: their residual degrees of freedom (scalar or per gene)
        covariate: optional abundance covariate for a trended prior

    Returns:
        (prior variance per gene, prior degrees of freedom); df_prior is
        np.inf when the variances show no excess dispersion
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape)
    ok = np.isfinite(s2) & (s2 > 1e-15) & np.isfinite(df) & (df > 0)
    if ok.sum() < 2:
        fallback = float(np.nanmean(s2[ok])) if ok.any() else 1.0
        return np.full(s2.shape, fallback), np.inf

    z = np.log(s2[ok])
    e = z - digamma(df[ok] / 2) + np.log(df[ok] / 2)

    if covariate is None or ok.sum() < 10:
        emean_ok = np.full(e.shape, e.mean())
        n_params = 1
    else:
        cov = np.asarray(covariate, dtype=np.float64)
        emean_ok = _trend(e, cov[ok], frac)
        n_params = 4

    n = e.size
    evar = np.sum((e - emean_ok) ** 2) / max(n - n_params, 1)
    evar -= np.mean(trigamma(df[ok] / 2))

    if covariate is None or ok.sum() < 10:
        emean = np.full(s2.shape, e.mean())
    else:
        order = np.argsort(cov[ok], kind="mergesort")
        emean = np.interp(cov, cov[ok][order], emean_ok[order])

    if evar > 0:
        df_prior = float(2 * trigamma_inverse(evar)[0])
        s0 = np.exp(emean + digamma(df_prior / 2) - np.log(df_prior / 2))
    else:
        df_prior = np.inf
        s0 = np.exp(emean)
    return s0, df_prior


@dataclass
class SqueezedVariance:
    var_post: np.ndarray
    var_prior: np.ndarray
    df_prior: float


def squeeze_var(
    s2: np.ndarray,
    df: np.ndarray,
    covariate: Optional[np.ndarray] = None,
) -> SqueezedVariance:
    """
    Shrink gene-wise variances toward their (trended) prior.

    Returns posterior variances (df*s2 + df_prior*s0^2) / (df + df_prior);
    when df_prior is infinite the posterior is the prior itself.
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape)
    prior, df_prior = fit_f_dist(s2, df, covariate)
    if np.isinf(df_prior):
        post = prior.copy()
    else:
        post = (df * s2 + df_prior * prior) / (df + df_prior)
    return SqueezedVariance(var_post=post, var_prior=prior, df_prior=df_prior)


def total_df(df_residual: np.ndarray, df_prior: float) -> np.ndarray:
    """Posterior degrees of freedom, capped at the pooled residual df."""
    df_residual = np.asarray(df_residual, dtype=np.float64)
    pooled = float(np.sum(df_residual))
    return np.minimum(df_residual + df_prior, pooled)
