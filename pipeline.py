"""
End-to-end orchestration: pre-filter, normalize, triage, design, three DE
backends per contrast, consensus.

All context (config, exclusion set, backends) is passed in explicitly and
every stage returns new objects; nothing is kept at module level.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union
import logging
import pandas as pd

from config import AnalysisConfig, ExclusionSet
from consensus import ConsensusRanker, ConsensusReport
from count_matrix import CountMatrix, SampleSheet
from de_engine import DEBackend, DEResult, get_backend, run_backends
from design_matrix import (
    Contrast,
    DesignMatrix,
    build_design,
    build_treatment_design,
    treatment_contrasts,
)
from errors import AnalysisError, ConfigurationError, stage
from normalizer import NormalizedMatrix, Normalizer, default_min_samples, filter_low_counts
from quality_triage import QualityDecision, QualityTriage

logger = logging.getLogger(__name__)

ContrastSpec = Union[Contrast, Tuple[str, str]]


@contextmanager
def _logged_stage(name: str) -> Iterator[None]:
    try:
        with stage(name):
            yield
    except AnalysisError as e:
        logger.error(f"Stage '{e.stage}' failed: {e.message}", exc_info=True)
        raise


@dataclass
class AnalysisReport:
    """Everything one pipeline run produced, keyed for lookup and export."""

    config: AnalysisConfig
    decision: QualityDecision
    normalized: NormalizedMatrix
    matrix: CountMatrix  # post-triage, re-filtered
    sheet: SampleSheet
    designs: Dict[str, DesignMatrix]
    contrasts: Dict[str, Contrast]
    results: Dict[str, Dict[str, DEResult]] = field(default_factory=dict)
    consensus: Dict[str, ConsensusReport] = field(default_factory=dict)

    def result(self, contrast: str, backend: str) -> DEResult:
        try:
            return self.results[contrast][backend]
        except KeyError:
            raise ConfigurationError(
                f"No result for contrast '{contrast}' and backend '{backend}'; "
                f"contrasts: {sorted(self.results)}"
            ) from None

    def summary(self) -> pd.DataFrame:
        """One row per (contrast, backend) with tested, dropped and significant counts."""
        rows = []
        for contrast, by_backend in self.results.items():
            for backend, res in by_backend.items():
                rows.append(
                    {
                        "contrast": contrast,
                        "backend": backend,
                        "n_tested": res.n_tested,
                        "n_dropped": res.n_dropped,
                        "n_filtered": res.n_filtered,
                        "n_significant": res.n_significant(self.config.padj_threshold),
                        "decision_id": res.decision_id,
                    }
                )
        return pd.DataFrame(
            rows,
            columns=[
                "contrast",
                "backend",
                "n_tested",
                "n_dropped",
                "n_filtered",
                "n_significant",
                "decision_id",
            ],
        )


def default_backends(config: AnalysisConfig) -> List[DEBackend]:
    """Instantiate the configured backends with the config's thresholds."""
    backends = []
    for name in config.backends:
        kwargs = {"max_iter": config.max_iter, "min_replicates": config.min_group_size}
        if name == "nb_glm":
            kwargs["n_cpus"] = config.n_cpus
        elif name == "ql_nb":
            kwargs["min_count"] = config.ql_min_count
            kwargs["min_total_count"] = config.ql_min_total_count
        backends.append(get_backend(name, **kwargs))
    return backends


class ConsensusDEPipeline:
    """
    Quality triage followed by multi-backend differential expression.

    Args:
        config: thresholds for every stage (default: AnalysisConfig())
        backends: DEBackend instances; default built from config.backends
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        backends: Optional[Sequence[DEBackend]] = None,
    ):
        self.config = config or AnalysisConfig()
        self.backends = list(backends) if backends is not None else default_backends(self.config)
        if not self.backends:
            raise ConfigurationError("At least one DE backend is required")

    def _triage(self) -> QualityTriage:
        c = self.config
        return QualityTriage(
            n_components=c.n_components,
            n_clusters=c.n_clusters,
            top_variable_genes=c.top_variable_genes,
            association_alpha=c.association_alpha,
            min_group_size=c.min_group_size,
            factors=c.factors,
            normalizer=Normalizer(max_iter=c.max_iter),
        )

    def _prefilter(self, matrix: CountMatrix, sheet: SampleSheet) -> CountMatrix:
        min_samples = self.config.min_samples or default_min_samples(sheet, self.config.factors)
        return filter_low_counts(matrix, min_count=self.config.min_count, min_samples=min_samples)

    def _resolve_contrasts(
        self,
        designs: Dict[str, DesignMatrix],
        contrasts: Optional[Sequence[ContrastSpec]],
    ) -> Dict[str, Tuple[str, Contrast]]:
        """Map contrast name -> (design key, contrast)."""
        resolved: Dict[str, Tuple[str, Contrast]] = {}
        if contrasts is None:
            if "treatment" not in self.config.factors:
                raise ConfigurationError(
                    "No contrasts given and the design has no treatment factor", stage="design"
                )
            ref = self.config.treatment_reference
            for key in ("cross", "treatment"):
                for c in treatment_contrasts(designs[key], ref):
                    resolved[c.name] = (key, c)
            return resolved

        for spec in contrasts:
            if isinstance(spec, Contrast):
                key = next(
                    (k for k, d in designs.items() if list(spec.vector.index) == d.columns),
                    None,
                )
                if key is None:
                    available = {k: d.columns for k, d in designs.items()}
                    raise ConfigurationError(
                        f"Contrast '{spec.name}' matches no design; columns {available}",
                        stage="design",
                    )
                resolved[spec.name] = (key, spec)
            else:
                numerator, denominator = spec
                contrast = designs["cross"].contrast(numerator, denominator)
                resolved[contrast.name] = ("cross", contrast)
        return resolved

    def run(
        self,
        counts: CountMatrix,
        sheet: SampleSheet,
        exclusion: Optional[ExclusionSet] = None,
        contrasts: Optional[Sequence[ContrastSpec]] = None,
    ) -> AnalysisReport:
        """
        Run every stage.

        Args:
            counts: raw genes x samples CountMatrix
            sheet: sample metadata for the same samples
            exclusion: named, versioned exclusion set (default: exclude nothing)
            contrasts: Contrast objects or (numerator, denominator) group pairs
                on the sex x treatment design; default is treatment vs reference
                within each sex plus the pooled 'treatment' contrast

        Raises:
            InputShapeError, ConfigurationError: stamped with the failing stage
        """
        exclusion = exclusion or ExclusionSet()
        cfg = self.config

        with _logged_stage("input"):
            matrix = counts.align(sheet)

        with _logged_stage("normalize"):
            prefiltered = self._prefilter(matrix, sheet)
            normalized = Normalizer(max_iter=cfg.max_iter).normalize(prefiltered)

        with _logged_stage("triage"):
            decision = self._triage().decide(prefiltered, sheet, exclusion, normalized)
            kept_matrix, kept_sheet = decision.apply(prefiltered, sheet)
            kept_matrix = self._prefilter(kept_matrix, kept_sheet)

        with _logged_stage("design"):
            designs = {
                "cross": build_design(kept_sheet, cfg.factors, decision.decision_id),
                "treatment": build_treatment_design(kept_sheet, decision.decision_id),
            }
            resolved = self._resolve_contrasts(designs, contrasts)

        report = AnalysisReport(
            config=cfg,
            decision=decision,
            normalized=normalized,
            matrix=kept_matrix,
            sheet=kept_sheet,
            designs=designs,
            contrasts={name: c for name, (_, c) in resolved.items()},
        )

        for name, (key, contrast) in resolved.items():
            with _logged_stage(f"de:{name}"):
                report.results[name] = run_backends(
                    kept_matrix,
                    designs[key],
                    contrast,
                    self.backends,
                    max_workers=cfg.max_workers,
                    padj_threshold=cfg.padj_threshold,
                )

        if len(self.backends) >= 2:
            ranker = ConsensusRanker(top_n=cfg.top_n)
            with _logged_stage("consensus"):
                for name, by_backend in report.results.items():
                    report.consensus[name] = ranker.rank(list(by_backend.values()))

        logger.info(
            f"Analysis {decision.decision_id} finished: {len(resolved)} contrasts x "
            f"{len(self.backends)} backends"
        )
        return report
