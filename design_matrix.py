"""
Design matrices and contrasts for the sex x treatment experiment.

Designs use cell-means coding (no intercept): one indicator column per
observed cross of factor levels, so every group gets its own coefficient and a
contrast is simply the difference of two columns.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import itertools
import logging
import numpy as np
import pandas as pd

from count_matrix import SampleSheet
from errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Contrast:
    """Named linear combination of design coefficients."""

    name: str
    vector: pd.Series  # indexed by design column
    numerator: Tuple[str, ...] = ()
    denominator: Tuple[str, ...] = ()

    @property
    def referenced_columns(self) -> List[str]:
        return self.vector.index[self.vector != 0].tolist()


@dataclass(frozen=True, eq=False)
class DesignMatrix:
    """Full-rank samples x groups indicator matrix."""

    matrix: pd.DataFrame
    factors: Tuple[str, ...]
    decision_id: Optional[str] = None

    @property
    def columns(self) -> List[str]:
        return self.matrix.columns.tolist()

    @property
    def sample_ids(self) -> List[str]:
        return self.matrix.index.tolist()

    @property
    def values(self) -> np.ndarray:
        return self.matrix.to_numpy(dtype=np.float64)

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.values))

    @property
    def df_residual(self) -> int:
        return self.matrix.shape[0] - self.rank

    @property
    def group_sizes(self) -> pd.Series:
        return self.matrix.sum(axis=0).astype(int)

    def contrast(
        self,
        numerator: str,
        denominator: str,
        name: Optional[str] = None,
    ) -> Contrast:
        """
        Contrast of one design group against another.

        Raises:
            ConfigurationError: if either group is not a design column
        """
        for group in (numerator, denominator):
            if group not in self.matrix.columns:
                raise ConfigurationError(
                    f"Contrast group '{group}' is not in the design; "
                    f"available groups: {self.columns}",
                    stage="design",
                )
        if numerator == denominator:
            raise ConfigurationError(
                f"Contrast compares group '{numerator}' with itself", stage="design"
            )
        vector = pd.Series(0.0, index=self.matrix.columns)
        vector[numerator] = 1.0
        vector[denominator] = -1.0
        return Contrast(
            name=name or f"{numerator}_vs_{denominator}",
            vector=vector,
            numerator=(numerator,),
            denominator=(denominator,),
        )

    def contrast_from_weights(self, weights: Dict[str, float], name: str) -> Contrast:
        """Arbitrary contrast, e.g. an average over groups."""
        unknown = [g for g in weights if g not in self.matrix.columns]
        if unknown:
            raise ConfigurationError(
                f"Contrast '{name}' references unknown groups {unknown}", stage="design"
            )
        vector = pd.Series(0.0, index=self.matrix.columns)
        for g, w in weights.items():
            vector[g] = float(w)
        if not np.any(vector.to_numpy()):
            raise ConfigurationError(f"Contrast '{name}' has all-zero weights", stage="design")
        return Contrast(
            name=name,
            vector=vector,
            numerator=tuple(g for g, w in weights.items() if w > 0),
            denominator=tuple(g for g, w in weights.items() if w < 0),
        )


def build_design(
    sheet: SampleSheet,
    factors: Sequence[str] = ("sex", "treatment"),
    decision_id: Optional[str] = None,
) -> DesignMatrix:
    """
    Cell-means design over the cross of the given factors.

    Args:
        sheet: post-exclusion sample sheet
        factors: categorical factors to cross (default: sex x treatment)
        decision_id: QualityDecision that produced the sheet

    Raises:
        ConfigurationError: a factor-level cell has zero samples, or the
            resulting matrix is not of full column rank
    """
    factors = tuple(factors)
    if len(sheet) == 0:
        raise ConfigurationError("Cannot build a design from an empty sample sheet", stage="design")

    values = {f: sheet.factor_values(f) for f in factors}
    levels = [sorted(values[f].unique()) for f in factors]
    groups = sheet.group_labels(factors)

    columns = ["_".join(combo) for combo in itertools.product(*levels)]
    sizes = groups.value_counts().reindex(columns, fill_value=0)
    empty = sizes[sizes == 0]
    if not empty.empty:
        raise ConfigurationError(
            f"Design cell(s) {empty.index.tolist()} of factors {list(factors)} "
            "have zero samples",
            stage="design",
            details={"group_sizes": sizes.to_dict()},
        )

    matrix = pd.DataFrame(
        {col: (groups == col).astype(np.float64) for col in columns},
        index=pd.Index(sheet.sample_ids, name="sample_id"),
    )
    rank = int(np.linalg.matrix_rank(matrix.to_numpy()))
    if rank < matrix.shape[1]:
        raise ConfigurationError(
            f"Design over {list(factors)} is rank deficient (rank {rank} < {matrix.shape[1]} columns)",
            stage="design",
        )

    logger.info(
        f"Built design over {list(factors)}: {matrix.shape[0]} samples, "
        f"{matrix.shape[1]} groups {sizes.to_dict()}"
    )
    return DesignMatrix(matrix=matrix, factors=factors, decision_id=decision_id)


def build_treatment_design(
    sheet: SampleSheet, decision_id: Optional[str] = None
) -> DesignMatrix:
    """Pooled design with treatment as the sole factor (sex-independent contrast)."""
    return build_design(sheet, factors=("treatment",), decision_id=decision_id)


def validate_contrast(design: DesignMatrix, contrast: Contrast, min_replicates: int = 2) -> None:
    """
    Check a contrast is estimable with residual variance.

    Raises:
        ConfigurationError: unknown design columns, no residual degrees of
            freedom, or a referenced group with fewer than min_replicates samples
    """
    missing = [c for c in contrast.vector.index if c not in design.matrix.columns]
    if missing or len(contrast.vector) != design.matrix.shape[1]:
        raise ConfigurationError(
            f"Contrast '{contrast.name}' does not match design columns {design.columns}",
            stage="design",
        )
    if design.df_residual < 1:
        raise ConfigurationError(
            f"Design has {design.df_residual} residual degrees of freedom; "
            f"contrast '{contrast.name}' cannot be tested",
            stage="design",
        )
    sizes = design.group_sizes
    for group in contrast.referenced_columns:
        if sizes[group] < min_replicates:
            raise ConfigurationError(
                f"Group '{group}' in contrast '{contrast.name}' has {int(sizes[group])} "
                f"samples; at least {min_replicates} are required",
                stage="design",
            )


def treatment_contrasts(
    design: DesignMatrix, reference: Optional[str] = None
) -> List[Contrast]:
    """
    Treatment-vs-reference contrasts for every design stratum.

    On the sex x treatment design this yields one contrast per sex
    (e.g. 'female:treated_vs_control'); on the treatment-only design it
    yields the single pooled contrast named 'treatment'.
    """
    if "treatment" not in design.factors:
        raise ConfigurationError(
            f"Design over {list(design.factors)} has no treatment factor", stage="design"
        )
    t_pos = design.factors.index("treatment")
    cells = [tuple(col.split("_")) for col in design.columns]
    if any(len(c) != len(design.factors) for c in cells):
        raise ConfigurationError(
            "Factor levels must not contain '_' to derive treatment contrasts", stage="design"
        )

    treatments = sorted({c[t_pos] for c in cells})
    if reference is None or reference not in treatments:
        if reference is not None:
            logger.warning(
                f"Treatment reference '{reference}' not observed; using '{treatments[0]}'"
            )
        reference = treatments[0]
    treated = [t for t in treatments if t != reference]

    contrasts = []
    strata = sorted({c[:t_pos] + c[t_pos + 1 :] for c in cells})
    for stratum in strata:
        for level in treated:
            num = "_".join(stratum[:t_pos] + (level,) + stratum[t_pos:])
            den = "_".join(stratum[:t_pos] + (reference,) + stratum[t_pos:])
            if num not in design.columns or den not in design.columns:
                continue
            prefix = f"{'_'.join(stratum)}:" if stratum else ""
            name = f"{prefix}{level}_vs_{reference}" if (stratum or len(treated) > 1) else "treatment"
            contrasts.append(design.contrast(num, den, name=name))
    return contrasts
