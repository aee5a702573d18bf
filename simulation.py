"""
Synthetic sex x treatment RNA-seq experiments for tests and demos.

Counts are negative-binomial draws around gene base means, with known
differentially expressed genes, optional sex-dependent genes and optional
technically poor samples (lower depth, multiplicative per-gene noise and
worse mapping statistics).
"""

from dataclasses import dataclass
from typing import List, Optional
import numpy as np
import pandas as pd

from config import ExclusionSet
from count_matrix import CountMatrix, Gene, Sample, SampleSheet

SEXES = ("female", "male")
TREATMENTS = ("control", "treated")


@dataclass(frozen=True)
class SimulatedExperiment:
    counts: CountMatrix
    sheet: SampleSheet
    de_genes: List[str]
    poor_samples: List[str]
    sex_genes: List[str]

    def exclusion(self, label: str = "simulated-poor", version: str = "1") -> ExclusionSet:
        """Exclusion set naming exactly the simulated poor samples."""
        return ExclusionSet(
            label=label,
            version=version,
            sample_ids=frozenset(self.poor_samples),
            rationale="samples simulated with degraded mapping quality",
        )


def _poor_sample_ids(groups: List[List[str]], n_poor: int) -> List[str]:
    """Spread poor samples round-robin over groups, taking replicates from the end."""
    poor = []
    depth = 0
    while len(poor) < n_poor:
        for members in groups:
            if len(poor) == n_poor:
                break
            if depth < len(members):
                poor.append(members[-1 - depth])
        depth += 1
    return poor


def simulate_experiment(
    n_genes: int = 1000,
    n_per_group: int = 3,
    n_de: int = 100,
    fold_change: float = 3.0,
    dispersion: float = 0.1,
    n_poor: int = 0,
    poor_noise: float = 2.0,
    n_sex_genes: int = 0,
    de_base_mean: float = 500.0,
    seed: Optional[int] = 0,
) -> SimulatedExperiment:
    """
    Simulate a balanced sex x treatment count experiment.

    Args:
        n_genes: number of genes (ids gene_0001, gene_0002, ...)
        n_per_group: replicates in each of the four sex x treatment cells
        n_de: genes changed by fold_change in treated samples (alternating
            up/down), same effect in both sexes
        fold_change: treated / control mean ratio of DE genes
        dispersion: negative-binomial dispersion of every gene
        n_poor: samples given degraded quality, spread evenly across groups
        poor_noise: sigma of the log-normal per-gene noise on poor samples
        n_sex_genes: non-DE genes with a 4-fold male / female difference
        de_base_mean: control mean of DE genes
        seed: random seed

    Returns:
        SimulatedExperiment with counts, sample sheet and the ground truth
    """
    if n_de + n_sex_genes > n_genes:
        raise ValueError("n_de + n_sex_genes must not exceed n_genes")
    if n_poor > 4 * n_per_group:
        raise ValueError("n_poor exceeds the number of samples")

    rng = np.random.default_rng(seed)
    width = max(4, len(str(n_genes)))
    gene_ids = [f"gene_{i + 1:0{width}d}" for i in range(n_genes)]

    # Sample layout: cells in sex x treatment order
    samples = []
    groups: List[List[str]] = []
    k = 0
    for sex in SEXES:
        for treatment in TREATMENTS:
            members = []
            for _ in range(n_per_group):
                k += 1
                members.append((f"S{k:02d}", sex, treatment))
            groups.append([m[0] for m in members])
            samples.extend(members)
    n_samples = len(samples)
    poor = set(_poor_sample_ids(groups, n_poor))

    # Gene base means (log-normal; most genes low, some high)
    base = np.clip(rng.lognormal(mean=4.0, sigma=1.5, size=n_genes), 5.0, 20000.0)
    order = rng.permutation(n_genes)
    de_idx = np.sort(order[:n_de])
    sex_idx = np.sort(order[n_de : n_de + n_sex_genes])
    base[de_idx] = de_base_mean

    mu = np.tile(base[:, None], (1, n_samples))
    treated = np.array([t == "treated" for _, _, t in samples])
    male = np.array([s == "male" for _, s, _ in samples])
    for j, gi in enumerate(de_idx):
        effect = fold_change if j % 2 == 0 else 1.0 / fold_change
        mu[gi, treated] *= effect
    mu[np.ix_(sex_idx, male)] *= 4.0

    # Depth and quality
    is_poor = np.array([sid in poor for sid, _, _ in samples])
    depth = rng.lognormal(mean=0.0, sigma=0.1, size=n_samples)
    depth[is_poor] *= 0.5
    mu = mu * depth[None, :]
    if is_poor.any():
        noise = rng.lognormal(mean=0.0, sigma=poor_noise, size=(n_genes, int(is_poor.sum())))
        mu[:, is_poor] *= noise

    phi = dispersion
    counts = rng.negative_binomial(n=1.0 / phi, p=1.0 / (1.0 + phi * mu))

    sheet = SampleSheet(
        Sample(
            sample_id=sid,
            sex=sex,
            treatment=treatment,
            pct_unique_mapped=float(rng.normal(60.0, 3.0) if sid in poor else rng.normal(85.0, 2.0)),
            pct_multi_mapped=float(rng.normal(15.0, 2.0) if sid in poor else rng.normal(5.0, 1.0)),
            pct_too_short=float(rng.normal(20.0, 3.0) if sid in poor else rng.normal(3.0, 1.0)),
        )
        for sid, sex, treatment in samples
    )

    sex_set = set(sex_idx.tolist())
    genes = {
        g: Gene(
            gene_id=g,
            name=f"SIM{i + 1}",
            chromosome="chrX" if i in sex_set else f"chr{i % 22 + 1}",
        )
        for i, g in enumerate(gene_ids)
    }
    frame = pd.DataFrame(counts, index=gene_ids, columns=[s[0] for s in samples])

    return SimulatedExperiment(
        counts=CountMatrix(frame, genes=genes),
        sheet=sheet,
        de_genes=[gene_ids[i] for i in de_idx],
        poor_samples=sorted(poor),
        sex_genes=[gene_ids[i] for i in sex_idx],
    )
