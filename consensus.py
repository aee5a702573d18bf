"""
Overlap of top-ranked genes across DE backends.

Purely descriptive: no weighting, no combined p-values. For one contrast the
top-N genes of every backend are intersected pairwise and jointly.
"""

from dataclasses import dataclass
from itertools import combinations
from typing import Dict, FrozenSet, List, Sequence, Tuple
import logging
import pandas as pd

from de_engine import DEResult
from errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsensusReport:
    """Set-valued overlap of per-backend top-N gene lists for one contrast."""

    contrast: str
    top_n: int
    sets: Dict[str, FrozenSet[str]]
    pairwise: Dict[Tuple[str, str], FrozenSet[str]]
    shared_by_all: FrozenSet[str]
    specific: Dict[str, FrozenSet[str]]

    @property
    def backends(self) -> List[str]:
        return list(self.sets)

    def counts(self) -> pd.DataFrame:
        """One row per set (each backend, each pair, all, backend-specific) with its size."""
        rows = [{"set": name, "n_genes": len(genes)} for name, genes in self.sets.items()]
        rows += [
            {"set": f"{a} & {b}", "n_genes": len(genes)} for (a, b), genes in self.pairwise.items()
        ]
        rows.append({"set": "all", "n_genes": len(self.shared_by_all)})
        rows += [
            {"set": f"only {name}", "n_genes": len(genes)} for name, genes in self.specific.items()
        ]
        return pd.DataFrame(rows)

    def membership_frame(self) -> pd.DataFrame:
        """Gene x backend boolean table over the union of top-N sets."""
        union = sorted(set().union(*self.sets.values()))
        frame = pd.DataFrame(
            {name: [g in genes for g in union] for name, genes in self.sets.items()},
            index=pd.Index(union, name="gene"),
        )
        frame["n_backends"] = frame.sum(axis=1)
        return frame.sort_values(["n_backends"], ascending=False, kind="mergesort")


class ConsensusRanker:
    """Compare top-N gene sets across backends for the same contrast."""

    def __init__(self, top_n: int = 1000):
        if top_n < 1:
            raise ConfigurationError(f"top_n must be >= 1, got {top_n}", stage="consensus")
        self.top_n = top_n

    def rank(self, results: Sequence[DEResult]) -> ConsensusReport:
        """
        Build the overlap report.

        Args:
            results: one DEResult per backend, all for the same contrast

        Raises:
            ConfigurationError: fewer than two results, duplicate backends, or
                results for different contrasts
        """
        results = list(results)
        if len(results) < 2:
            raise ConfigurationError(
                f"Consensus needs at least two backends, got {len(results)}", stage="consensus"
            )
        contrasts = sorted({r.contrast for r in results})
        if len(contrasts) != 1:
            raise ConfigurationError(
                f"Consensus requires results for one contrast, got {contrasts}",
                stage="consensus",
            )
        names = [r.backend for r in results]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate backends in consensus: {names}", stage="consensus")

        sets = {r.backend: frozenset(r.top_genes(self.top_n)) for r in results}
        pairwise = {(a, b): sets[a] & sets[b] for a, b in combinations(names, 2)}
        shared = frozenset.intersection(*sets.values())
        specific = {
            name: genes - frozenset().union(*(s for n, s in sets.items() if n != name))
            for name, genes in sets.items()
        }

        logger.info(
            f"Consensus for {contrasts[0]} (top {self.top_n}): "
            + ", ".join(f"{n}={len(s)}" for n, s in sets.items())
            + f", shared by all={len(shared)}"
        )
        return ConsensusReport(
            contrast=contrasts[0],
            top_n=self.top_n,
            sets=sets,
            pairwise=pairwise,
            shared_by_all=shared,
            specific=specific,
        )
