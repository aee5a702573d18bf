"""
Analysis configuration.

Every numeric threshold used by the engine lives on AnalysisConfig; nothing
downstream hides its own constants. Configurations and exclusion sets can be
loaded from YAML files (see config/analysis.yaml).
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
import yaml

from errors import ConfigurationError

KNOWN_BACKENDS = ("nb_glm", "ql_nb", "voom")


@dataclass(frozen=True)
class AnalysisConfig:
    """Explicit thresholds for every stage of the analysis."""

    # Pre-filtering (Normalizer)
    min_count: int = 10
    min_samples: Optional[int] = None  # None = smallest sex x treatment group

    # QualityTriage
    n_components: int = 5
    n_clusters: int = 2
    top_variable_genes: int = 500
    association_alpha: float = 0.05
    min_group_size: int = 2

    # Design
    factors: Tuple[str, ...] = ("sex", "treatment")
    treatment_reference: Optional[str] = "control"

    # DEEngine
    backends: Tuple[str, ...] = KNOWN_BACKENDS
    max_iter: int = 50
    ql_min_count: int = 10
    ql_min_total_count: int = 15
    n_cpus: int = 1
    max_workers: int = 3

    # Consensus / pathway hand-off
    top_n: int = 1000
    padj_threshold: float = 0.05

    def __post_init__(self):
        # YAML hands us lists
        object.__setattr__(self, "factors", tuple(self.factors))
        object.__setattr__(self, "backends", tuple(self.backends))

        for name in ("min_count", "ql_min_count", "ql_min_total_count"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {getattr(self, name)}")
        for name in (
            "n_components",
            "n_clusters",
            "top_variable_genes",
            "max_iter",
            "n_cpus",
            "max_workers",
            "top_n",
        ):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.min_samples is not None and self.min_samples < 1:
            raise ConfigurationError(f"min_samples must be >= 1, got {self.min_samples}")
        if self.min_group_size < 2:
            raise ConfigurationError(
                f"min_group_size must be >= 2 for DE to run, got {self.min_group_size}"
            )
        for name in ("association_alpha", "padj_threshold"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ConfigurationError(f"{name} must be in (0, 1], got {value}")
        if not self.factors:
            raise ConfigurationError("At least one design factor is required")
        unknown = [b for b in self.backends if b not in KNOWN_BACKENDS]
        if unknown:
            raise ConfigurationError(
                f"Unknown backend(s) {unknown}. Available: {list(KNOWN_BACKENDS)}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ExclusionSet:
    """
    Named, versioned curation decision: the samples to exclude.

    The set is an explicit input so the same pipeline can be re-run with a
    different curation and produce diffable output.
    """

    label: str = "none"
    version: str = "1"
    sample_ids: frozenset = field(default_factory=frozenset)
    rationale: str = ""

    def __post_init__(self):
        object.__setattr__(self, "sample_ids", frozenset(str(s) for s in self.sample_ids))


def _read_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    config_file = Path(path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    with open(config_file, "r") as f:
        data = yaml.safe_load(f)
    return data or {}


def load_config(path: Union[str, Path]) -> AnalysisConfig:
    """
    Load AnalysisConfig from a YAML file.

    The file holds an ``analysis`` mapping whose keys are AnalysisConfig
    fields. Unknown keys are rejected so typos never fall back to defaults.
    """
    data = _read_yaml(path).get("analysis", {})
    allowed = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigurationError(
            f"Unknown config key(s) {unknown} in {path}", details={"allowed": sorted(allowed)}
        )
    return AnalysisConfig(**data)


def load_exclusion_set(path: Union[str, Path]) -> ExclusionSet:
    """
    Load an ExclusionSet from the ``exclusion`` mapping of a YAML file.

    Example:
        exclusion:
          label: mapping-quality-curation
          version: "2"
          samples: [S03, S07]
    """
    data = _read_yaml(path).get("exclusion")
    if data is None:
        raise ConfigurationError(f"No 'exclusion' section in {path}")
    return ExclusionSet(
        label=str(data.get("label", Path(path).stem)),
        version=str(data.get("version", "1")),
        sample_ids=frozenset(data.get("samples", []) or []),
        rationale=str(data.get("rationale", "")),
    )
