"""
Core data model: genes, samples and the immutable gene x sample count matrix.

Canonical orientation is genes x samples (gene identifiers as index, sample
identifiers as columns). Every selection returns a new CountMatrix so full and
filtered analyses can coexist.
"""

from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple
import logging
import numpy as np
import pandas as pd

from errors import InputShapeError

logger = logging.getLogger(__name__)

MAPPING_METRICS = ("pct_unique_mapped", "pct_multi_mapped", "pct_too_short")


@dataclass(frozen=True)
class Gene:
    """Reference annotation for one gene."""

    gene_id: str
    name: Optional[str] = None
    chromosome: Optional[str] = None


@dataclass(frozen=True)
class Sample:
    """One sequenced sample and its experimental factors."""

    sample_id: str
    sex: str
    treatment: str
    quality_cluster: Optional[int] = None
    pct_unique_mapped: Optional[float] = None
    pct_multi_mapped: Optional[float] = None
    pct_too_short: Optional[float] = None

    @property
    def group(self) -> str:
        """sex x treatment cross label, e.g. 'female_control'."""
        return f"{self.sex}_{self.treatment}"

    def factor(self, name: str) -> str:
        if name == "group":
            return self.group
        value = getattr(self, name, None)
        if value is None:
            raise InputShapeError(f"Sample '{self.sample_id}' has no factor '{name}'")
        return str(value)

    def with_cluster(self, label: Optional[int]) -> "Sample":
        return replace(self, quality_cluster=label)


class SampleSheet:
    """Ordered, immutable collection of Samples."""

    def __init__(self, samples: Iterable[Sample]):
        self._samples: Tuple[Sample, ...] = tuple(samples)
        self._index: Dict[str, int] = {}
        for i, s in enumerate(self._samples):
            if s.sample_id in self._index:
                raise InputShapeError(
                    f"Duplicate sample identifier '{s.sample_id}' in sample sheet"
                )
            self._index[s.sample_id] = i

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(self._samples)

    def __contains__(self, sample_id: object) -> bool:
        return sample_id in self._index

    def __getitem__(self, sample_id: str) -> Sample:
        try:
            return self._samples[self._index[sample_id]]
        except KeyError:
            raise InputShapeError(f"Sample '{sample_id}' not in sample sheet") from None

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SampleSheet) and self._samples == other._samples

    @property
    def sample_ids(self) -> List[str]:
        return [s.sample_id for s in self._samples]

    def factor_values(self, factor: str) -> pd.Series:
        return pd.Series(
            [s.factor(factor) for s in self._samples], index=self.sample_ids, name=factor
        )

    def group_labels(self, factors: Sequence[str] = ("sex", "treatment")) -> pd.Series:
        """Cross label of the given factors for every sample."""
        labels = ["_".join(s.factor(f) for f in factors) for s in self._samples]
        return pd.Series(labels, index=self.sample_ids, name="group")

    def group_sizes(self, factors: Sequence[str] = ("sex", "treatment")) -> pd.Series:
        return self.group_labels(factors).value_counts().sort_index()

    def select(self, sample_ids: Iterable[str]) -> "SampleSheet":
        return SampleSheet(self[s] for s in sample_ids)

    def exclude(self, sample_ids: Iterable[str]) -> "SampleSheet":
        drop = set(sample_ids)
        return SampleSheet(s for s in self._samples if s.sample_id not in drop)

    def with_clusters(self, clusters: Mapping[str, int]) -> "SampleSheet":
        return SampleSheet(s.with_cluster(clusters.get(s.sample_id)) for s in self._samples)

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "sex": s.sex,
                "treatment": s.treatment,
                "group": s.group,
                "quality_cluster": s.quality_cluster,
                **{m: getattr(s, m) for m in MAPPING_METRICS},
            }
            for s in self._samples
        ]
        df = pd.DataFrame(rows, index=pd.Index(self.sample_ids, name="sample_id"))
        return df

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "SampleSheet":
        """
        Build a sheet from a metadata table indexed by sample identifier.

        Required columns: sex, treatment. Optional: quality_cluster and the
        mapping-quality percentages.
        """
        missing = [c for c in ("sex", "treatment") if c not in df.columns]
        if missing:
            raise InputShapeError(f"Sample metadata is missing columns: {missing}")

        def _optional(row, column, cast):
            if column not in row or pd.isna(row[column]):
                return None
            return cast(row[column])

        samples = []
        for sample_id, row in df.iterrows():
            samples.append(
                Sample(
                    sample_id=str(sample_id),
                    sex=str(row["sex"]),
                    treatment=str(row["treatment"]),
                    quality_cluster=_optional(row, "quality_cluster", int),
                    pct_unique_mapped=_optional(row, "pct_unique_mapped", float),
                    pct_multi_mapped=_optional(row, "pct_multi_mapped", float),
                    pct_too_short=_optional(row, "pct_too_short", float),
                )
            )
        return cls(samples)


class CountMatrix:
    """
    Immutable genes x samples matrix of non-negative integer read counts.

    Args:
        counts: DataFrame with gene identifiers as index and sample identifiers
            as columns
        genes: optional reference annotation keyed by gene identifier
        provenance: id of the QualityDecision that produced this matrix, if any

    Raises:
        InputShapeError: NaN, negative or non-integer counts, duplicate ids
    """

    def __init__(
        self,
        counts: pd.DataFrame,
        genes: Optional[Mapping[str, Gene]] = None,
        provenance: Optional[str] = None,
    ):
        if counts.index.has_duplicates:
            dupes = counts.index[counts.index.duplicated()].unique().tolist()[:5]
            raise InputShapeError(f"Duplicate gene identifiers: {dupes}")
        if counts.columns.has_duplicates:
            dupes = counts.columns[counts.columns.duplicated()].unique().tolist()[:5]
            raise InputShapeError(f"Duplicate sample identifiers: {dupes}")

        try:
            values = counts.to_numpy(dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InputShapeError(f"Count table contains non-numeric values: {e}") from e

        if not np.isfinite(values).all():
            raise InputShapeError("Count table contains missing or infinite values")
        if (values < 0).any():
            n_neg = int((values < 0).sum())
            raise InputShapeError(f"Count table contains {n_neg} negative values")
        if not np.array_equal(values, np.round(values)):
            raise InputShapeError(
                "Count table contains non-integer values; raw counts are required"
            )

        values = values.astype(np.int64)
        values.flags.writeable = False
        self._values = values
        self._gene_ids = pd.Index([str(g) for g in counts.index], name="gene")
        self._sample_ids = pd.Index([str(s) for s in counts.columns], name="sample")
        self._genes: Dict[str, Gene] = dict(genes or {})
        self.provenance = provenance

    def __repr__(self) -> str:
        return (
            f"CountMatrix({self.n_genes} genes x {self.n_samples} samples, "
            f"provenance={self.provenance!r})"
        )

    @property
    def values(self) -> np.ndarray:
        """Read-only genes x samples integer array."""
        return self._values

    @property
    def gene_ids(self) -> List[str]:
        return self._gene_ids.tolist()

    @property
    def sample_ids(self) -> List[str]:
        return self._sample_ids.tolist()

    @property
    def genes(self) -> Dict[str, Gene]:
        return dict(self._genes)

    @property
    def n_genes(self) -> int:
        return self._values.shape[0]

    @property
    def n_samples(self) -> int:
        return self._values.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self._values.shape

    def library_sizes(self) -> pd.Series:
        return pd.Series(self._values.sum(axis=0), index=self._sample_ids, name="library_size")

    def to_frame(self) -> pd.DataFrame:
        """Writable copy as a genes x samples DataFrame."""
        return pd.DataFrame(self._values.copy(), index=self._gene_ids, columns=self._sample_ids)

    def _derive(self, frame: pd.DataFrame, provenance: Optional[str]) -> "CountMatrix":
        genes = {g: self._genes[g] for g in frame.index if g in self._genes}
        return CountMatrix(
            frame, genes=genes, provenance=provenance if provenance is not None else self.provenance
        )

    def select_samples(
        self, sample_ids: Iterable[str], provenance: Optional[str] = None
    ) -> "CountMatrix":
        sample_ids = list(sample_ids)
        missing = [s for s in sample_ids if s not in self._sample_ids]
        if missing:
            raise InputShapeError(f"Samples not in count matrix: {missing}")
        return self._derive(self.to_frame()[sample_ids], provenance)

    def drop_samples(
        self, sample_ids: Iterable[str], provenance: Optional[str] = None
    ) -> "CountMatrix":
        drop = set(sample_ids)
        return self.select_samples([s for s in self.sample_ids if s not in drop], provenance)

    def select_genes(self, gene_ids: Iterable[str]) -> "CountMatrix":
        gene_ids = list(gene_ids)
        return self._derive(self.to_frame().loc[gene_ids], None)

    def align(self, sheet: SampleSheet) -> "CountMatrix":
        """
        Check the matrix and sample sheet describe the same samples.

        Returns the matrix with columns in sample-sheet order.

        Raises:
            InputShapeError: if the identifier sets differ
        """
        in_counts = set(self.sample_ids)
        in_sheet = set(sheet.sample_ids)
        if in_counts != in_sheet:
            raise InputShapeError(
                "Sample identifiers differ between count matrix and metadata",
                details={
                    "only_in_counts": sorted(in_counts - in_sheet),
                    "only_in_metadata": sorted(in_sheet - in_counts),
                },
            )
        if self.sample_ids == sheet.sample_ids:
            return self
        return self.select_samples(sheet.sample_ids)

    @classmethod
    def from_samples_by_genes(
        cls, counts_df: pd.DataFrame, genes: Optional[Mapping[str, Gene]] = None
    ) -> "CountMatrix":
        """Build from a samples x genes table (the orientation PyDESeq2 uses)."""
        return cls(counts_df.T, genes=genes)
