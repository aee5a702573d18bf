"""
Table I/O at the boundary: CSV/TSV readers for counts, sample metadata and
gene annotation, and writers for result tables and the quality decision.

Readers validate shape and raise InputShapeError before any modelling runs.
"""

from pathlib import Path
from typing import Dict, Mapping, Optional, Union
import logging
import pandas as pd

from count_matrix import CountMatrix, Gene, SampleSheet
from de_engine import DEResult
from errors import InputShapeError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def read_table(file_path: PathLike) -> pd.DataFrame:
    """
    Read a CSV or TSV file with automatic delimiter detection.

    The first column becomes the index.

    Raises:
        InputShapeError: missing, empty or unparsable file
    """
    try:
        # Try comma delimiter first
        df = pd.read_csv(file_path, sep=",", index_col=0, float_precision="round_trip")

        # If no data column, try tab delimiter
        if len(df.columns) == 0:
            df = pd.read_csv(file_path, sep="\t", index_col=0, float_precision="round_trip")
    except pd.errors.EmptyDataError:
        raise InputShapeError(f"File is empty or contains no readable data: {file_path}")
    except pd.errors.ParserError as e:
        raise InputShapeError(f"Failed to parse table {file_path}: {str(e)}")
    except FileNotFoundError:
        raise InputShapeError(f"File not found: {file_path}")

    if df.empty:
        raise InputShapeError(f"File has no data rows: {file_path}")
    df.index = df.index.astype(str)
    return df


def read_gene_annotation(file_path: PathLike) -> Dict[str, Gene]:
    """Gene annotation table: gene id index, optional name and chromosome columns."""
    df = read_table(file_path)
    genes = {}
    for gene_id, row in df.iterrows():
        name = row.get("name")
        chromosome = row.get("chromosome")
        genes[gene_id] = Gene(
            gene_id=gene_id,
            name=None if pd.isna(name) else str(name),
            chromosome=None if pd.isna(chromosome) else str(chromosome),
        )
    return genes


def read_count_matrix(
    file_path: PathLike, genes: Optional[Mapping[str, Gene]] = None
) -> CountMatrix:
    """Genes x samples count table (gene identifiers in the first column)."""
    df = read_table(file_path)
    matrix = CountMatrix(df, genes=genes)
    logger.info(f"Loaded {matrix.n_genes} genes x {matrix.n_samples} samples from {file_path}")
    return matrix


def read_sample_sheet(file_path: PathLike) -> SampleSheet:
    """Sample metadata (sample id in the first column; sex, treatment, mapping metrics)."""
    return SampleSheet.from_frame(read_table(file_path))


def write_result(
    result: DEResult,
    file_path: PathLike,
    genes: Optional[Mapping[str, Gene]] = None,
) -> Path:
    """Write one result table, optionally annotated with gene name and chromosome."""
    df = result.annotated(genes) if genes else result.results_df.copy()
    df.insert(0, "contrast", result.contrast)
    df.insert(0, "backend", result.backend)
    df["decision_id"] = result.decision_id
    path = Path(file_path)
    df.to_csv(path, sep="\t" if path.suffix in (".tsv", ".txt") else ",", index=False)
    return path


def write_decision(decision, file_path: PathLike) -> Path:
    """Write the per-sample QualityDecision audit record."""
    path = Path(file_path)
    decision.to_frame().to_csv(path, sep="\t" if path.suffix in (".tsv", ".txt") else ",")
    return path


def write_report(report, out_dir: PathLike, genes: Optional[Mapping[str, Gene]] = None) -> Path:
    """
    Write every table of an AnalysisReport into out_dir.

    Files: decision.csv, summary.csv, one de_<contrast>_<backend>.csv per
    result and consensus_<contrast>.csv per contrast.
    """
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    write_decision(report.decision, out / "decision.csv")
    report.summary().to_csv(out / "summary.csv", index=False)
    for contrast, by_backend in report.results.items():
        slug = contrast.replace(":", "_")
        for backend, res in by_backend.items():
            write_result(res, out / f"de_{slug}_{backend}.csv", genes)
    for contrast, cons in report.consensus.items():
        slug = contrast.replace(":", "_")
        cons.membership_frame().to_csv(out / f"consensus_{slug}.csv")
    logger.info(f"Wrote analysis {report.decision.decision_id} to {out}")
    return out
