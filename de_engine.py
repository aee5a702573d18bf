"""
Shared contract for the differential-expression backends.

Every backend implements ``fit(matrix, design) -> FittedModel`` and
``test(model, contrast) -> DEResult``. Result tables are finalized the same
way for all backends: undefined rows dropped and counted, Benjamini-Hochberg
adjustment across all tested genes, deterministic ordering.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import warnings
import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from count_matrix import CountMatrix, Gene, SampleSheet
from design_matrix import Contrast, DesignMatrix, build_treatment_design, treatment_contrasts
from design_matrix import validate_contrast
from errors import ConfigurationError, ConvergenceWarning, InputShapeError, stage

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["gene", "log2FoldChange", "baseMean", "pvalue", "padj"]


@dataclass
class FittedModel:
    """Backend-owned fitted state for one (matrix, design) pair."""

    backend: str
    design: DesignMatrix
    gene_ids: List[str]
    state: Any
    n_filtered: int = 0  # genes removed by the backend's own expression filter
    provenance: Optional[str] = None


@dataclass
class DEResult:
    """Per-gene result table of one backend for one contrast."""

    backend: str
    contrast: str
    results_df: pd.DataFrame  # columns: gene, log2FoldChange, baseMean, pvalue, padj, stat, ...
    n_tested: int
    n_dropped: int
    n_filtered: int = 0
    decision_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def n_significant(self, padj_threshold: float = 0.05) -> int:
        return int((self.results_df["padj"] < padj_threshold).sum())

    def significant(self, padj_threshold: float = 0.05) -> pd.DataFrame:
        return self.results_df[self.results_df["padj"] < padj_threshold].copy()

    def top_genes(self, n: int) -> List[str]:
        """First n genes by adjusted significance (the table is already ordered)."""
        return self.results_df["gene"].head(n).tolist()

    def annotated(self, genes: Mapping[str, Gene]) -> pd.DataFrame:
        """Result table joined with gene display name and chromosome."""
        df = self.results_df.copy()
        df["name"] = [genes[g].name if g in genes else None for g in df["gene"]]
        df["chromosome"] = [genes[g].chromosome if g in genes else None for g in df["gene"]]
        return df


def finalize_results(
    table: pd.DataFrame,
    backend: str,
    contrast: str,
    n_filtered: int = 0,
    decision_id: Optional[str] = None,
    undefined: Optional[np.ndarray] = None,
) -> DEResult:
    """
    Turn a raw per-gene statistics table into a DEResult.

    Rows with non-finite effect size, mean or p-value (or flagged in
    ``undefined``) are dropped and counted, never coerced. P-values are
    adjusted by Benjamini-Hochberg across the remaining genes and the table is
    sorted by padj, then pvalue, then gene identifier.

    Args:
        table: must contain gene, log2FoldChange, baseMean, pvalue
        undefined: optional boolean mask of rows known to be undefined
            (non-convergence, complete separation)
    """
    missing = [c for c in ("gene", "log2FoldChange", "baseMean", "pvalue") if c not in table]
    if missing:
        raise InputShapeError(f"{backend} result table is missing columns {missing}")

    table = table.reset_index(drop=True)
    bad = ~np.isfinite(table[["log2FoldChange", "baseMean", "pvalue"]].to_numpy(dtype=float)).all(
        axis=1
    )
    if undefined is not None:
        bad |= np.asarray(undefined, dtype=bool)

    n_dropped = int(bad.sum())
    messages = []
    if n_dropped:
        msg = (
            f"{backend}/{contrast}: dropped {n_dropped} of {len(table)} genes with "
            "undefined statistics (non-convergence, complete separation or count outliers)"
        )
        logger.warning(msg)
        warnings.warn(msg, ConvergenceWarning, stacklevel=2)
        messages.append(msg)

    kept = table.loc[~bad].copy()
    pvalues = kept["pvalue"].to_numpy(dtype=float).clip(0.0, 1.0)
    kept["pvalue"] = pvalues
    if len(kept):
        _, padj, _, _ = multipletests(pvalues, method="fdr_bh")
        kept["padj"] = np.maximum(padj, pvalues)
    else:
        kept["padj"] = pd.Series(dtype=float)

    kept["gene"] = kept["gene"].astype(str)
    kept = kept.sort_values(
        ["padj", "pvalue", "gene"], ascending=True, kind="mergesort"
    ).reset_index(drop=True)
    extra = [c for c in kept.columns if c not in RESULT_COLUMNS]
    kept = kept[RESULT_COLUMNS + extra]

    return DEResult(
        backend=backend,
        contrast=contrast,
        results_df=kept,
        n_tested=len(kept),
        n_dropped=n_dropped,
        n_filtered=n_filtered,
        decision_id=decision_id,
        warnings=messages,
    )


class DEBackend:
    """
    Base class for a differential-expression backend.

    Subclasses own their normalization and gene filtering and implement
    ``fit`` and ``test``.
    """

    name = "base"

    def __init__(self, max_iter: int = 50, min_replicates: int = 2):
        self.max_iter = max_iter
        self.min_replicates = min_replicates

    def fit(self, matrix: CountMatrix, design: DesignMatrix) -> FittedModel:
        raise NotImplementedError

    def test(self, model: FittedModel, contrast: Contrast) -> DEResult:
        raise NotImplementedError

    def _aligned_counts(self, matrix: CountMatrix, design: DesignMatrix) -> CountMatrix:
        if set(matrix.sample_ids) != set(design.sample_ids):
            raise InputShapeError(
                f"{self.name}: count matrix and design describe different samples",
                details={
                    "only_in_counts": sorted(set(matrix.sample_ids) - set(design.sample_ids)),
                    "only_in_design": sorted(set(design.sample_ids) - set(matrix.sample_ids)),
                },
            )
        if design.decision_id and matrix.provenance and design.decision_id != matrix.provenance:
            raise ConfigurationError(
                f"{self.name}: design was built from quality decision {design.decision_id} "
                f"but the count matrix comes from {matrix.provenance}"
            )
        return matrix.select_samples(design.sample_ids)

    def _check_contrast(self, model: FittedModel, contrast: Contrast) -> np.ndarray:
        validate_contrast(model.design, contrast, self.min_replicates)
        return contrast.vector.reindex(model.design.columns).to_numpy(dtype=np.float64)

    def run(self, matrix: CountMatrix, design: DesignMatrix, contrast: Contrast) -> DEResult:
        """Fit and test in one call; errors name this backend and contrast."""
        with stage(f"de:{contrast.name}:{self.name}"):
            validate_contrast(design, contrast, self.min_replicates)
            return self.test(self.fit(matrix, design), contrast)

    def global_test(
        self,
        matrix: CountMatrix,
        sheet: SampleSheet,
        reference: Optional[str] = None,
    ) -> DEResult:
        """
        Treatment effect regardless of sex.

        Fits a design with treatment as the sole factor and tests treated vs
        reference; this is not a union of the per-sex contrasts.
        """
        design = build_treatment_design(sheet, decision_id=matrix.provenance)
        contrasts = treatment_contrasts(design, reference)
        if len(contrasts) != 1:
            raise ConfigurationError(
                f"Global treatment test needs exactly two treatment levels, "
                f"got design columns {design.columns}",
                stage=f"de:treatment:{self.name}",
            )
        return self.run(matrix, design, contrasts[0])


def get_backend(name: str, **kwargs) -> DEBackend:
    """Instantiate a backend by registry name ('nb_glm', 'ql_nb', 'voom')."""
    from nb_glm_backend import NegativeBinomialGLMBackend
    from ql_backend import QuasiLikelihoodBackend
    from voom_backend import VoomLimmaBackend

    registry = {
        NegativeBinomialGLMBackend.name: NegativeBinomialGLMBackend,
        QuasiLikelihoodBackend.name: QuasiLikelihoodBackend,
        VoomLimmaBackend.name: VoomLimmaBackend,
    }
    if name not in registry:
        raise ConfigurationError(f"Unknown backend '{name}'. Available: {sorted(registry)}")
    return registry[name](**kwargs)


def run_backends(
    matrix: CountMatrix,
    design: DesignMatrix,
    contrast: Contrast,
    backends: Sequence[DEBackend],
    max_workers: int = 3,
    padj_threshold: float = 0.05,
) -> Dict[str, DEResult]:
    """
    Run independent backends on the same (matrix, design, contrast).

    Backends share no state, so they run concurrently. The first fatal
    error is re-raised after all workers finish.
    """
    validate_contrast(design, contrast, min(b.min_replicates for b in backends))
    results: Dict[str, DEResult] = {}
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(backends)))) as executor:
        futures: List[Tuple[str, Any]] = [
            (b.name, executor.submit(b.run, matrix, design, contrast)) for b in backends
        ]
        for name, future in futures:
            try:
                results[name] = future.result()
            except Exception:
                logger.error(f"Backend {name} failed on contrast {contrast.name}", exc_info=True)
                raise

    for name, res in results.items():
        logger.info(
            f"{name}/{contrast.name}: {res.n_tested} genes tested, {res.n_dropped} dropped, "
            f"{res.n_significant(padj_threshold)} with padj < {padj_threshold}"
        )
    return results
