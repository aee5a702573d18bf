"""
Quality triage: turn continuous per-sample quality signals into an auditable
exclude/keep decision.

Signals:
- PCA of the variance-stabilized matrix (outlier structure in PC1/PC2)
- Poisson dissimilarity between samples (Witten 2011) and hierarchical
  quality clusters built from it
- Correlation of PC1/PC2 with mapping-quality metrics

The decision itself is the explicit, versioned ExclusionSet supplied by the
caller. The signals are computed alongside it so a reviewer can see which
samples the formal rule would flag and where the curation differs.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import hashlib
import itertools
import json
import logging
import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform
from scipy.stats import fisher_exact, pearsonr
from sklearn.decomposition import PCA

from config import ExclusionSet
from count_matrix import MAPPING_METRICS, CountMatrix, SampleSheet
from errors import ConfigurationError
from normalizer import NormalizedMatrix, Normalizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PCAResult:
    """PCA embedding of samples."""

    coordinates: pd.DataFrame  # samples x PC1..PCk
    explained_variance_ratio: pd.Series
    genes_used: List[str]
    degenerate: bool = False


@dataclass(frozen=True)
class QualitySignals:
    """Intermediate triage signals, exposed for audit."""

    pca: PCAResult
    poisson_distance: pd.DataFrame
    clusters: pd.Series
    nearest_neighbor: pd.Series
    mapping_correlations: pd.DataFrame
    poor_cluster: Optional[int]
    biological_association: Dict[str, float]
    candidates: Tuple[str, ...]


def _goodness_of_fit(x: np.ndarray) -> float:
    """Poisson goodness of fit of a samples x features matrix under the MLE null."""
    row = x.sum(axis=1)
    col = x.sum(axis=0)
    null = np.outer(row, col) / row.sum()
    with np.errstate(divide="ignore", invalid="ignore"):
        chi = np.nansum((x - null) ** 2 / null, axis=1)
    return float(np.mean((chi - x.shape[1]) ** 2))


def find_best_transform(x: np.ndarray, n_grid: int = 50) -> float:
    """Power transform exponent that makes the counts closest to Poisson."""
    alphas = np.linspace(0.01, 1.0, n_grid)
    gof = np.array([_goodness_of_fit(x**a) for a in alphas])
    return float(alphas[int(np.argmin(np.abs(gof)))])


def poisson_distance(
    matrix: CountMatrix, transform: bool = True, beta: float = 1.0
) -> pd.DataFrame:
    """
    Pairwise Poisson dissimilarity between samples (Witten 2011).

    Each pair of samples is compared against the Poisson null model fitted to
    that pair, so sequencing depth does not drive the distance the way it does
    for Euclidean distance on raw counts.

    Args:
        matrix: raw CountMatrix
        transform: apply the goodness-of-fit power transform first
        beta: pseudo-count in the likelihood ratio

    Returns:
        Symmetric samples x samples DataFrame with a zero diagonal
    """
    x = matrix.values.T.astype(np.float64)
    if transform and x.sum() > 0:
        alpha = find_best_transform(x)
        x = x**alpha

    n = x.shape[0]
    dist = np.zeros((n, n))
    for i, j in itertools.combinations(range(n), 2):
        pair = x[[i, j]]
        row = pair.sum(axis=1)
        total = row.sum()
        if total == 0:
            continue
        null = np.outer(row, pair.sum(axis=0)) / total
        ni, nj = null
        di = (pair[0] + beta) / (ni + beta)
        dj = (pair[1] + beta) / (nj + beta)
        d = np.sum(ni + nj - ni * di - nj * dj + pair[0] * np.log(di) + pair[1] * np.log(dj))
        dist[i, j] = dist[j, i] = d

    return pd.DataFrame(dist, index=matrix.sample_ids, columns=matrix.sample_ids)


class QualityTriage:
    """
    Per-sample quality signals and the exclusion decision.

    Args:
        n_components: number of principal components to keep
        n_clusters: number of quality clusters cut from the distance tree
        top_variable_genes: PCA uses the most variable VST genes
        association_alpha: Fisher-test level at which a cluster counts as
            explained by a biological factor
        min_group_size: smallest sex x treatment group allowed after exclusion
        factors: biological factors of the design
    """

    def __init__(
        self,
        n_components: int = 5,
        n_clusters: int = 2,
        top_variable_genes: int = 500,
        association_alpha: float = 0.05,
        min_group_size: int = 2,
        factors: Sequence[str] = ("sex", "treatment"),
        normalizer: Optional[Normalizer] = None,
    ):
        self.n_components = n_components
        self.n_clusters = n_clusters
        self.top_variable_genes = top_variable_genes
        self.association_alpha = association_alpha
        self.min_group_size = min_group_size
        self.factors = tuple(factors)
        self.normalizer = normalizer or Normalizer()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def compute_pca(self, vst: pd.DataFrame) -> PCAResult:
        """
        PCA with samples as observations and the most variable genes as features.

        A matrix with no variance yields a degenerate all-zero embedding
        instead of an error.
        """
        n_genes, n_samples = vst.shape
        gene_var = vst.var(axis=1)
        top = gene_var.sort_values(ascending=False, kind="mergesort").index[
            : self.top_variable_genes
        ]
        X = vst.loc[top].T.to_numpy()
        k = max(1, min(self.n_components, n_samples, len(top)))
        pc_names = [f"PC{i + 1}" for i in range(k)]

        if n_samples < 2 or len(top) == 0 or float(X.var(axis=0).sum()) < 1e-12:
            logger.warning(
                "PCA input has no variance; reporting a degenerate embedding "
                f"({n_samples} samples, {len(top)} genes)"
            )
            coords = pd.DataFrame(np.zeros((n_samples, k)), index=vst.columns, columns=pc_names)
            ratio = pd.Series(np.zeros(k), index=pc_names, name="explained_variance_ratio")
            return PCAResult(coords, ratio, list(top), degenerate=True)

        pca = PCA(n_components=k, svd_solver="full")
        embedding = pca.fit_transform(X)
        coords = pd.DataFrame(embedding, index=vst.columns, columns=pc_names)
        ratio = pd.Series(
            pca.explained_variance_ratio_, index=pc_names, name="explained_variance_ratio"
        )
        return PCAResult(coords, ratio, list(top))

    def cluster_samples(self, distance: pd.DataFrame) -> pd.Series:
        """Average-linkage clusters (labels 1..n_clusters) of the distance matrix."""
        n = distance.shape[0]
        if n < 2 or self.n_clusters < 2:
            return pd.Series(np.ones(n, dtype=int), index=distance.index, name="quality_cluster")
        condensed = squareform(distance.to_numpy(), checks=False)
        tree = linkage(condensed, method="average")
        labels = fcluster(tree, t=min(self.n_clusters, n), criterion="maxclust")
        return pd.Series(labels.astype(int), index=distance.index, name="quality_cluster")

    @staticmethod
    def nearest_neighbor_distance(distance: pd.DataFrame) -> pd.Series:
        d = distance.to_numpy().astype(np.float64).copy()
        np.fill_diagonal(d, np.inf)
        nn = d.min(axis=1) if d.shape[0] > 1 else np.full(d.shape[0], np.nan)
        return pd.Series(nn, index=distance.index, name="nearest_neighbor_distance")

    def mapping_correlations(self, pca: PCAResult, sheet: SampleSheet) -> pd.DataFrame:
        """
        Pearson correlation of PC1/PC2 with each mapping-quality metric.

        Missing or constant metrics give NaN rather than an error.
        """
        meta = sheet.to_frame()
        rows = []
        for pc in [c for c in ("PC1", "PC2") if c in pca.coordinates.columns]:
            for metric in MAPPING_METRICS:
                values = meta[metric].astype(float)
                ok = values.notna()
                r, p = np.nan, np.nan
                x = pca.coordinates.loc[ok[ok].index, pc].to_numpy()
                y = values[ok].to_numpy()
                if ok.sum() >= 3 and np.ptp(x) > 0 and np.ptp(y) > 0:
                    r, p = pearsonr(x, y)
                rows.append({"component": pc, "metric": metric, "r": float(r), "pvalue": float(p)})
        return pd.DataFrame(rows, columns=["component", "metric", "r", "pvalue"])

    def find_candidates(
        self, clusters: pd.Series, sheet: SampleSheet
    ) -> Tuple[Optional[int], Dict[str, float], Tuple[str, ...]]:
        """
        Apply the formal quality rule.

        The poor cluster is the one with the lowest mean percent uniquely
        mapped. Its members are candidates unless cluster membership is
        associated (Fisher exact p < association_alpha) with sex or treatment.

        Returns:
            (poor cluster label or None, factor -> Fisher p-value, candidate ids)
        """
        meta = sheet.to_frame()
        unique = meta["pct_unique_mapped"].astype(float)
        if unique.isna().all() or clusters.nunique() < 2:
            return None, {}, ()

        means = unique.groupby(clusters.reindex(unique.index)).mean().dropna()
        if len(means) < 2:
            return None, {}, ()
        poor = int(means.sort_values(kind="mergesort").index[0])
        in_poor = clusters == poor

        association = {}
        for factor in ("sex", "treatment"):
            levels = meta[factor].astype(str)
            observed = sorted(levels.unique())
            if len(observed) != 2:
                continue
            first = levels == observed[0]
            table = [
                [int((in_poor & first).sum()), int((in_poor & ~first).sum())],
                [int((~in_poor & first).sum()), int((~in_poor & ~first).sum())],
            ]
            _, p = fisher_exact(table)
            association[factor] = float(p)

        if any(p < self.association_alpha for p in association.values()):
            explained_by = [f for f, p in association.items() if p < self.association_alpha]
            logger.info(
                f"Quality cluster {poor} is associated with {explained_by}; "
                "no quality-exclusion candidates"
            )
            return poor, association, ()

        candidates = tuple(s for s in sheet.sample_ids if in_poor.get(s, False))
        return poor, association, candidates

    def compute_signals(
        self,
        matrix: CountMatrix,
        sheet: SampleSheet,
        normalized: Optional[NormalizedMatrix] = None,
    ) -> QualitySignals:
        matrix = matrix.align(sheet)
        if normalized is None:
            normalized = self.normalizer.normalize(matrix)

        pca = self.compute_pca(normalized.vst[sheet.sample_ids])
        distance = poisson_distance(matrix)
        clusters = self.cluster_samples(distance)
        poor, association, candidates = self.find_candidates(clusters, sheet)
        return QualitySignals(
            pca=pca,
            poisson_distance=distance,
            clusters=clusters,
            nearest_neighbor=self.nearest_neighbor_distance(distance),
            mapping_correlations=self.mapping_correlations(pca, sheet),
            poor_cluster=poor,
            biological_association=association,
            candidates=candidates,
        )

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def _check_groups(self, sheet: SampleSheet, kept: SampleSheet) -> None:
        levels = [sorted(sheet.factor_values(f).unique()) for f in self.factors]
        all_groups = ["_".join(combo) for combo in itertools.product(*levels)]
        sizes = kept.group_sizes(self.factors).reindex(all_groups, fill_value=0)
        too_small = sizes[sizes < self.min_group_size]
        if not too_small.empty:
            group = too_small.index[0]
            raise ConfigurationError(
                f"Group '{group}' has {int(too_small.iloc[0])} samples after exclusion; "
                f"at least {self.min_group_size} are required for DE",
                stage="triage",
                details={"group_sizes": sizes.to_dict()},
            )

    def decide(
        self,
        matrix: CountMatrix,
        sheet: SampleSheet,
        exclusion: ExclusionSet,
        normalized: Optional[NormalizedMatrix] = None,
    ) -> "QualityDecision":
        """
        Compute quality signals and apply the explicit exclusion set.

        The result is deterministic given the same matrix, sheet and exclusion
        set. Neither input is modified.

        Raises:
            ConfigurationError: unknown sample in the exclusion set, or a
                sex x treatment group left with fewer than min_group_size samples
        """
        unknown = sorted(exclusion.sample_ids - set(sheet.sample_ids))
        if unknown:
            raise ConfigurationError(
                f"Exclusion set '{exclusion.label}' names unknown samples: {unknown}",
                stage="triage",
            )

        kept = sheet.exclude(exclusion.sample_ids)
        self._check_groups(sheet, kept)

        signals = self.compute_signals(matrix, sheet, normalized)

        excluded = {s: s in exclusion.sample_ids for s in sheet.sample_ids}
        candidates = set(signals.candidates)
        frame = pd.DataFrame(index=pd.Index(sheet.sample_ids, name="sample_id"))
        for pc in ("PC1", "PC2"):
            frame[pc] = (
                signals.pca.coordinates[pc] if pc in signals.pca.coordinates else np.nan
            )
        frame["nearest_neighbor_distance"] = signals.nearest_neighbor
        frame["quality_cluster"] = signals.clusters
        meta = sheet.to_frame()
        for metric in MAPPING_METRICS:
            frame[metric] = meta[metric]
        frame["candidate"] = [s in candidates for s in sheet.sample_ids]
        frame["excluded"] = [excluded[s] for s in sheet.sample_ids]

        payload = json.dumps(
            {
                "label": exclusion.label,
                "version": exclusion.version,
                "excluded": sorted(exclusion.sample_ids),
                "samples": sorted(sheet.sample_ids),
                "genes": sorted(matrix.gene_ids),
                "counts": hashlib.sha1(np.ascontiguousarray(matrix.values).tobytes()).hexdigest(),
            },
            sort_keys=True,
        )
        decision_id = hashlib.sha1(payload.encode()).hexdigest()[:12]

        extra = sorted(exclusion.sample_ids - candidates)
        missed = sorted(candidates - exclusion.sample_ids)
        if extra or missed:
            logger.warning(
                f"Exclusion set '{exclusion.label}' v{exclusion.version} differs from "
                f"quality candidates: excluded-not-flagged={extra}, flagged-not-excluded={missed}"
            )
        logger.info(
            f"Quality decision {decision_id}: excluding {len(exclusion.sample_ids)} of "
            f"{len(sheet)} samples ({len(candidates)} flagged by the quality rule)"
        )

        return QualityDecision(
            excluded=MappingProxyType(excluded),
            signals=frame,
            mapping_correlations=signals.mapping_correlations,
            explained_variance=signals.pca.explained_variance_ratio,
            poisson_distance=signals.poisson_distance,
            biological_association=dict(signals.biological_association),
            poor_cluster=signals.poor_cluster,
            exclusion_label=exclusion.label,
            exclusion_version=exclusion.version,
            decision_id=decision_id,
            degenerate_pca=signals.pca.degenerate,
        )


@dataclass(frozen=True, eq=False)
class QualityDecision:
    """Per-sample exclusion flags and the signal values behind them."""

    excluded: Mapping[str, bool]
    signals: pd.DataFrame
    mapping_correlations: pd.DataFrame
    explained_variance: pd.Series
    poisson_distance: pd.DataFrame
    biological_association: Dict[str, float]
    poor_cluster: Optional[int]
    exclusion_label: str
    exclusion_version: str
    decision_id: str
    degenerate_pca: bool = False

    @property
    def excluded_ids(self) -> List[str]:
        return [s for s, flag in self.excluded.items() if flag]

    @property
    def kept_ids(self) -> List[str]:
        return [s for s, flag in self.excluded.items() if not flag]

    @property
    def candidate_ids(self) -> List[str]:
        return self.signals.index[self.signals["candidate"]].tolist()

    def apply(self, matrix: CountMatrix, sheet: SampleSheet) -> Tuple[CountMatrix, SampleSheet]:
        """
        Produce the filtered matrix and sheet, stamped with this decision's id.

        Kept samples carry their quality-cluster label.
        """
        clusters = self.signals["quality_cluster"].dropna().astype(int).to_dict()
        kept_sheet = sheet.with_clusters(clusters).exclude(self.excluded_ids)
        kept_matrix = matrix.select_samples(kept_sheet.sample_ids, provenance=self.decision_id)
        return kept_matrix, kept_sheet

    def to_frame(self) -> pd.DataFrame:
        """Audit record: one row per sample with every signal and the decision."""
        out = self.signals.copy()
        out["decision_id"] = self.decision_id
        out["exclusion_label"] = self.exclusion_label
        out["exclusion_version"] = self.exclusion_version
        return out
